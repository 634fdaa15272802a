from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from decimal import Decimal
from typing import Any

import aiohttp
from solana.rpc.async_api import AsyncClient
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction

from trend_trader.common import guarded_call, log_event

from .deadline import CycleDeadline
from .errors import (
    ConfirmationTimeoutError,
    CycleTimeoutError,
    InsufficientBalanceError,
    SubmissionRejectedError,
    SwapError,
)
from .types import (
    SIGNATURE_CONFIRMED,
    SIGNATURE_EXPIRED,
    SIGNATURE_FAILED,
    SIGNATURE_PENDING,
    SignatureCheck,
    SwapIntent,
    SwapReceipt,
    decimal_to_str,
    from_atomic_amount,
    to_int,
)
from .wallet import SigningKey, WalletBalanceReader
from .watcher import JupiterWatcher

CONFIRMED_STATUSES = frozenset({"confirmed", "finalized"})
DRY_RUN_SIGNATURE_PREFIX = "dryrun-"


class RpcMethodError(RuntimeError):
    def __init__(self, *, method: str, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.method = method
        self.code = code
        self.data = data


class RpcTransportError(RpcMethodError):
    """The RPC node answered with something other than a JSON-RPC envelope."""

    def __init__(self, *, method: str, message: str, status: int, data: Any = None) -> None:
        super().__init__(method=method, message=message, data=data)
        self.status = status


def _error_payload_to_message(payload: Any) -> str:
    if isinstance(payload, dict):
        message = str(payload.get("message") or "").strip()
        data = payload.get("data")
        if isinstance(data, dict) and data.get("err") is not None:
            return f"{message} err={data.get('err')}".strip()
        if message:
            return message
    return str(payload)


def _is_insufficient_funds_error(message: str) -> bool:
    normalized = (message or "").lower()
    return "insufficient funds" in normalized or "insufficient lamports" in normalized


def confirmation_backoff_schedule(
    *,
    attempts: int,
    initial_seconds: float,
    multiplier: float,
    max_seconds: float,
) -> list[float]:
    delays: list[float] = []
    delay = max(0.0, initial_seconds)
    for _ in range(max(0, attempts)):
        delays.append(min(delay, max_seconds))
        delay *= max(1.0, multiplier)
    return delays


class DryRunSwapExecutor:
    def __init__(self, *, logger: logging.Logger, watcher: JupiterWatcher) -> None:
        self._logger = logger
        self._watcher = watcher

    async def connect(self) -> None:
        await self._watcher.connect()

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        await self._watcher.healthcheck()

    async def fetch_balance(self, *, mint: str, decimals: int) -> Decimal | None:
        return None

    async def execute(self, *, intent: SwapIntent, deadline: CycleDeadline) -> SwapReceipt:
        quote = await deadline.run(
            self._watcher.quote(
                input_mint=intent.input_mint,
                output_mint=intent.output_mint,
                amount=intent.amount_in_atomic,
                slippage_bps=intent.slippage_bps,
            ),
            step="quote",
        )
        amount_in = from_atomic_amount(to_int(quote.get("inAmount"), intent.amount_in_atomic), intent.input_decimals)
        amount_out = from_atomic_amount(to_int(quote.get("outAmount"), 0), intent.output_decimals)
        tx_signature = f"{DRY_RUN_SIGNATURE_PREFIX}{uuid.uuid4().hex}"

        log_event(
            self._logger,
            level="info",
            event="swap_simulated",
            message="Dry-run swap simulated from live quote",
            action=intent.action.value,
            amount_in=decimal_to_str(amount_in),
            amount_out=decimal_to_str(amount_out),
            tx_signature=tx_signature,
        )
        return SwapReceipt(
            status="dry_run",
            tx_signature=tx_signature,
            amount_in=amount_in,
            amount_out=amount_out,
            confirmation_status="simulated",
            metadata={"price_impact_pct": quote.get("priceImpactPct")},
        )

    async def check_signature(
        self,
        *,
        tx_signature: str,
        last_valid_block_height: int | None,
    ) -> SignatureCheck:
        if tx_signature.startswith(DRY_RUN_SIGNATURE_PREFIX):
            return SignatureCheck(status=SIGNATURE_CONFIRMED)
        return SignatureCheck(status=SIGNATURE_EXPIRED, error="dry-run executor cannot observe live signatures")


class LiveSwapExecutor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        signing_key: SigningKey,
        watcher: JupiterWatcher,
        confirm_max_attempts: int = 8,
        confirm_initial_backoff_seconds: float = 0.5,
        confirm_backoff_multiplier: float = 2.0,
        confirm_max_backoff_seconds: float = 8.0,
        rpc_timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._signing_key = signing_key
        self._watcher = watcher
        self._confirm_delays = confirmation_backoff_schedule(
            attempts=confirm_max_attempts,
            initial_seconds=confirm_initial_backoff_seconds,
            multiplier=confirm_backoff_multiplier,
            max_seconds=confirm_max_backoff_seconds,
        )
        self._rpc_timeout_seconds = rpc_timeout_seconds
        self._rpc_client: AsyncClient | None = None
        self._http_session: aiohttp.ClientSession | None = None
        self._balances: WalletBalanceReader | None = None

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required when DRY_RUN is false.")

        if self._rpc_client is None:
            self._rpc_client = AsyncClient(self._rpc_url)
            self._balances = WalletBalanceReader(
                logger=self._logger,
                rpc_client=self._rpc_client,
                owner=self._signing_key.pubkey,
            )
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._rpc_timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        await self._watcher.connect()

    async def close(self) -> None:
        if self._rpc_client is not None:
            await self._rpc_client.close()
            self._rpc_client = None
            self._balances = None

        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

        self._signing_key.destroy()

    async def healthcheck(self) -> None:
        await self._rpc_call("getLatestBlockhash", [{"commitment": "processed"}])

    async def fetch_balance(self, *, mint: str, decimals: int) -> Decimal | None:
        if self._balances is None:
            await self.connect()
        if self._balances is None:
            raise RuntimeError("Wallet balance reader is not initialized.")
        return await self._balances.fetch_balance(mint=mint, decimals=decimals)

    async def execute(self, *, intent: SwapIntent, deadline: CycleDeadline) -> SwapReceipt:
        quote = await deadline.run(
            self._watcher.quote(
                input_mint=intent.input_mint,
                output_mint=intent.output_mint,
                amount=intent.amount_in_atomic,
                slippage_bps=intent.slippage_bps,
            ),
            step="quote",
        )
        amount_in = from_atomic_amount(to_int(quote.get("inAmount"), intent.amount_in_atomic), intent.input_decimals)
        expected_amount_out = from_atomic_amount(to_int(quote.get("outAmount"), 0), intent.output_decimals)

        input_balance = await deadline.run(
            self.fetch_balance(mint=intent.input_mint, decimals=intent.input_decimals),
            step="balance",
        )
        if input_balance is not None and input_balance < amount_in:
            raise InsufficientBalanceError(
                f"Insufficient balance: required={amount_in} available={input_balance}",
                details={"required": decimal_to_str(amount_in), "available": decimal_to_str(input_balance)},
            )
        output_balance_before = await deadline.run(
            self.fetch_balance(mint=intent.output_mint, decimals=intent.output_decimals),
            step="balance",
        )

        swap = await deadline.run(
            self._watcher.build_swap_transaction(
                quote_response=quote,
                user_public_key=str(self._signing_key.pubkey),
                priority_fee_lamports=intent.priority_fee_lamports,
            ),
            step="swap_build",
        )
        last_valid_block_height_raw = to_int(swap.get("lastValidBlockHeight"), -1)
        last_valid_block_height = last_valid_block_height_raw if last_valid_block_height_raw >= 0 else None

        signed_tx_raw, tx_signature = self._sign_swap_transaction(str(swap["swapTransaction"]))
        submission_details = {
            "amount_in": decimal_to_str(amount_in),
            "expected_amount_out": decimal_to_str(expected_amount_out),
            "last_valid_block_height": last_valid_block_height,
        }

        try:
            await deadline.run(
                self._send_transaction(signed_tx_raw, tx_signature=tx_signature),
                step="submit",
                tx_signature=tx_signature,
            )
            confirmation_status = await self._await_confirmation(
                tx_signature=tx_signature,
                deadline=deadline,
                details=submission_details,
            )
        except CycleTimeoutError as error:
            raise CycleTimeoutError(
                str(error),
                step=error.step,
                tx_signature=tx_signature,
                details=submission_details,
            ) from error
        except SwapError:
            raise
        except Exception as error:
            # The signed transaction may already be on its way; the session must keep the signature.
            log_event(
                self._logger,
                level="exception",
                event="swap_outcome_unknown",
                message="Unexpected error after signing; recording the signature as pending",
                tx_signature=tx_signature,
            )
            raise ConfirmationTimeoutError(
                f"Swap outcome unknown after submission: {error!r}",
                tx_signature=tx_signature,
                details=submission_details,
            ) from error

        amount_out = expected_amount_out
        output_balance_after = await guarded_call(
            lambda: self.fetch_balance(mint=intent.output_mint, decimals=intent.output_decimals),
            logger=self._logger,
            event="post_swap_balance_failed",
            message="Failed to read post-swap balance; using quoted output amount",
            tx_signature=tx_signature,
        )
        if output_balance_before is not None and output_balance_after is not None:
            delta = output_balance_after - output_balance_before
            if delta > 0:
                amount_out = delta

        log_event(
            self._logger,
            level="info",
            event="swap_confirmed",
            message="Swap transaction confirmed",
            action=intent.action.value,
            tx_signature=tx_signature,
            confirmation_status=confirmation_status,
            amount_in=decimal_to_str(amount_in),
            amount_out=decimal_to_str(amount_out),
        )
        return SwapReceipt(
            status="confirmed",
            tx_signature=tx_signature,
            amount_in=amount_in,
            amount_out=amount_out,
            last_valid_block_height=last_valid_block_height,
            confirmation_status=confirmation_status,
            metadata={
                "expected_amount_out": decimal_to_str(expected_amount_out),
                "price_impact_pct": quote.get("priceImpactPct"),
            },
        )

    async def check_signature(
        self,
        *,
        tx_signature: str,
        last_valid_block_height: int | None,
    ) -> SignatureCheck:
        status = await self._fetch_signature_status(tx_signature, search_history=True)
        if status is not None:
            if status.get("err") is not None:
                return SignatureCheck(status=SIGNATURE_FAILED, error=str(status.get("err")))
            if str(status.get("confirmationStatus") or "") in CONFIRMED_STATUSES:
                return SignatureCheck(status=SIGNATURE_CONFIRMED)
            return SignatureCheck(status=SIGNATURE_PENDING)

        if last_valid_block_height is None:
            return SignatureCheck(status=SIGNATURE_PENDING)

        block_height = to_int(await self._rpc_call("getBlockHeight", [{"commitment": "confirmed"}]), -1)
        if block_height > last_valid_block_height:
            return SignatureCheck(
                status=SIGNATURE_EXPIRED,
                error=f"block height {block_height} passed last valid height {last_valid_block_height}",
            )
        return SignatureCheck(status=SIGNATURE_PENDING)

    def _sign_swap_transaction(self, swap_transaction_base64: str) -> tuple[bytes, str]:
        unsigned_tx = VersionedTransaction.from_bytes(base64.b64decode(swap_transaction_base64))
        message = unsigned_tx.message
        with self._signing_key.acquire() as keypair:
            signer_signature = keypair.sign_message(to_bytes_versioned(message))
        signed_tx = VersionedTransaction.populate(message, [signer_signature])
        if not signed_tx.signatures:
            raise SubmissionRejectedError("Signed transaction has no signatures.")
        return bytes(signed_tx), str(signed_tx.signatures[0])

    async def _send_transaction(self, signed_tx_raw: bytes, *, tx_signature: str) -> None:
        encoded = base64.b64encode(signed_tx_raw).decode("ascii")
        try:
            await self._rpc_call(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": "confirmed",
                        "maxRetries": 3,
                    },
                ],
            )
        except (RpcTransportError, aiohttp.ClientError, asyncio.TimeoutError) as error:
            # Delivery is unknown; confirmation polling decides the outcome.
            log_event(
                self._logger,
                level="warning",
                event="send_transaction_network_error",
                message="sendTransaction failed at the transport layer; polling for the signature",
                tx_signature=tx_signature,
                error=repr(error),
            )
        except RpcMethodError as error:
            details = {"tx_signature": tx_signature, "rpc_code": error.code}
            if _is_insufficient_funds_error(str(error)):
                raise InsufficientBalanceError(f"Transaction rejected: {error}", details=details) from error
            raise SubmissionRejectedError(f"Transaction rejected: {error}", details=details) from error

    async def _await_confirmation(
        self,
        *,
        tx_signature: str,
        deadline: CycleDeadline,
        details: dict[str, Any],
    ) -> str:
        for attempt, delay in enumerate(self._confirm_delays, start=1):
            await deadline.sleep(delay, step="confirm", tx_signature=tx_signature)
            try:
                status = await deadline.run(
                    self._fetch_signature_status(tx_signature, search_history=False),
                    step="confirm",
                    tx_signature=tx_signature,
                )
            except (RpcMethodError, aiohttp.ClientError, asyncio.TimeoutError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="confirmation_poll_failed",
                    message="Signature status poll failed; retrying",
                    tx_signature=tx_signature,
                    attempt=attempt,
                    error=repr(error),
                )
                continue

            if status is None:
                continue
            if status.get("err") is not None:
                raise SubmissionRejectedError(
                    f"Transaction failed on chain: {status.get('err')}",
                    tx_signature=tx_signature,
                    details={**details, "on_chain_error": str(status.get("err"))},
                )
            confirmation_status = str(status.get("confirmationStatus") or "")
            if confirmation_status in CONFIRMED_STATUSES:
                return confirmation_status

        raise ConfirmationTimeoutError(
            f"Transaction was not confirmed after {len(self._confirm_delays)} polls",
            tx_signature=tx_signature,
            details=details,
        )

    async def _fetch_signature_status(self, tx_signature: str, *, search_history: bool) -> dict[str, Any] | None:
        result = await self._rpc_call(
            "getSignatureStatuses",
            [[tx_signature], {"searchTransactionHistory": search_history}],
        )
        if not isinstance(result, dict):
            raise RpcMethodError(method="getSignatureStatuses", message=f"Unexpected response: {result}")
        values = result.get("value")
        if not isinstance(values, list) or not values:
            return None
        status = values[0]
        return status if isinstance(status, dict) else None

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            status = response.status
            text = await response.text()

        if status >= 400:
            raise RpcTransportError(
                method=method,
                status=status,
                message=f"RPC call failed: method={method} status={status}",
                data=text[:200],
            )
        try:
            body: Any = json.loads(text)
        except json.JSONDecodeError as error:
            raise RpcTransportError(
                method=method,
                status=status,
                message=f"Non-JSON RPC response for {method}: status={status}",
                data=text[:200],
            ) from error

        if not isinstance(body, dict):
            raise RpcMethodError(method=method, message=f"Invalid RPC response for {method}")

        if body.get("error"):
            error_payload = body["error"]
            code = error_payload.get("code") if isinstance(error_payload, dict) else None
            raise RpcMethodError(
                method=method,
                code=code,
                data=error_payload,
                message=f"RPC error for {method}: {_error_payload_to_message(error_payload)}",
            )

        return body.get("result")
