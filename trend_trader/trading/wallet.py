from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.core import RPCException
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from trend_trader.common import log_event

from .errors import BalanceUnavailableError, ConfigurationError
from .types import SOL_MINT, from_atomic_amount

SECRET_KEY_LENGTH = 64


def _zero(buffer: bytearray) -> None:
    for index in range(len(buffer)):
        buffer[index] = 0


class SigningKey:
    """Holds the wallet secret in a mutable buffer that can be wiped.

    A ``Keypair`` only exists inside ``acquire()``; the temporary copy handed
    to solders is zeroed on every exit path.
    """

    __slots__ = ("_secret", "_pubkey")

    def __init__(self, secret: bytes | bytearray) -> None:
        if len(secret) != SECRET_KEY_LENGTH:
            raise ConfigurationError("Wallet secret key must be 64 bytes.")
        self._secret = bytearray(secret)
        self._pubkey = Keypair.from_bytes(bytes(self._secret)).pubkey()

    @classmethod
    def from_string(cls, raw: str) -> "SigningKey":
        value = (raw or "").strip()
        if not value:
            raise ConfigurationError("WALLET_PRIVATE_KEY is empty.")

        if value.startswith("["):
            try:
                arr = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ConfigurationError("WALLET_PRIVATE_KEY JSON is malformed.") from exc
            if not isinstance(arr, list) or not all(isinstance(item, int) for item in arr):
                raise ConfigurationError("WALLET_PRIVATE_KEY JSON must be an integer array.")
            buffer = bytearray(arr)
            try:
                return cls(buffer)
            finally:
                _zero(buffer)

        try:
            keypair = Keypair.from_base58_string(value)
        except ValueError as exc:
            raise ConfigurationError("Unsupported WALLET_PRIVATE_KEY format.") from exc
        buffer = bytearray(bytes(keypair))
        try:
            return cls(buffer)
        finally:
            _zero(buffer)

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    @property
    def destroyed(self) -> bool:
        return not any(self._secret)

    @contextmanager
    def acquire(self) -> Iterator[Keypair]:
        if self.destroyed:
            raise RuntimeError("Signing key has been destroyed.")
        buffer = bytearray(self._secret)
        try:
            yield Keypair.from_bytes(bytes(buffer))
        finally:
            _zero(buffer)

    def destroy(self) -> None:
        _zero(self._secret)

    def __repr__(self) -> str:
        return f"SigningKey(pubkey={self._pubkey}, secret=<redacted>)"

    __str__ = __repr__


class WalletBalanceReader:
    def __init__(self, *, logger: logging.Logger, rpc_client: AsyncClient, owner: Pubkey) -> None:
        self._logger = logger
        self._rpc_client = rpc_client
        self._owner = owner

    async def fetch_balance(self, *, mint: str, decimals: int) -> Decimal:
        if mint == SOL_MINT:
            try:
                response = await self._rpc_client.get_balance(self._owner)
            except (SolanaRpcException, RPCException) as error:
                raise self._unavailable(mint, error) from error
            return from_atomic_amount(response.value, decimals)

        token_account = get_associated_token_address(self._owner, Pubkey.from_string(mint))
        try:
            response = await self._rpc_client.get_token_account_balance(token_account)
        except SolanaRpcException as error:
            raise self._unavailable(mint, error) from error
        except RPCException as error:
            log_event(
                self._logger,
                level="debug",
                event="token_account_missing",
                message="Associated token account is unavailable; treating balance as zero",
                mint=mint,
                error=str(error),
            )
            return Decimal(0)
        return from_atomic_amount(response.value.amount, decimals)

    def _unavailable(self, mint: str, error: Exception) -> BalanceUnavailableError:
        log_event(
            self._logger,
            level="warning",
            event="balance_read_failed",
            message="Wallet balance could not be read from the RPC node",
            mint=mint,
            error=repr(error),
        )
        return BalanceUnavailableError(f"Balance read failed for {mint}: {error!r}", details={"mint": mint})
