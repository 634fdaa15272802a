from __future__ import annotations

import asyncio
import json
import logging
import re
from decimal import Decimal
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from trend_trader.common import log_event

from .errors import InvalidPriceError, RouteUnavailableError, SubmissionRejectedError
from .types import (
    PRICE_SOURCE_JUPITER,
    PairConfig,
    PricePoint,
    from_atomic_amount,
    now_utc,
    validate_price,
)

DEFAULT_JUPITER_API_URL = "https://lite-api.jup.ag/swap/v1"
_HEADER_REDACTION_PATTERN = re.compile(r"(?i)(x-api-key\s*[:=]\s*)([^\s,;\"']+)")


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "details"):
            message = payload.get(key)
            if message:
                return str(message)
    return str(payload)


def _sanitize_endpoint_for_log(endpoint: str) -> str:
    parsed = urlsplit(endpoint)
    return urlunsplit((parsed.scheme, parsed.netloc, parsed.path or "/", "", ""))


def _sanitize_preview_for_log(text: str, *, limit: int = 240) -> str:
    if not text:
        return ""
    return _HEADER_REDACTION_PATTERN.sub(r"\1***", text)[:limit]


def _is_no_routes_error_text(text: str) -> bool:
    normalized = (text or "").lower()
    return (
        "no_routes_found" in normalized
        or "could_not_find_any_route" in normalized
        or "could not find any route" in normalized
        or "no route" in normalized
    )


def _endpoint(api_base_url: str, suffix: str) -> str:
    parsed = urlsplit(api_base_url)
    path = (parsed.path or "").rstrip("/")
    if path.endswith(f"/{suffix}"):
        path = path[: -len(suffix) - 1]
    return urlunsplit((parsed.scheme, parsed.netloc, f"{path}/{suffix}", parsed.query, parsed.fragment))


def quote_price(quote: dict[str, Any], *, input_decimals: int, output_decimals: int, base_is_input: bool) -> Decimal:
    in_amount = from_atomic_amount(quote.get("inAmount") or 0, input_decimals)
    out_amount = from_atomic_amount(quote.get("outAmount") or 0, output_decimals)
    if in_amount <= 0 or out_amount <= 0:
        raise InvalidPriceError(f"Quote has non-positive amounts: in={in_amount} out={out_amount}")
    return out_amount / in_amount if base_is_input else in_amount / out_amount


class JupiterWatcher:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str = DEFAULT_JUPITER_API_URL,
        api_key: str = "",
        timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url or DEFAULT_JUPITER_API_URL
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds
        self._quote_endpoint = _endpoint(self._api_base_url, "quote")
        self._swap_endpoint = _endpoint(self._api_base_url, "swap")
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.connect()

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> dict[str, Any]:
        if amount <= 0:
            raise RouteUnavailableError(f"Quote amount must be positive: {amount}")

        await self.connect()
        if self._session is None:
            raise RuntimeError("Jupiter HTTP session is not initialized.")

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }

        try:
            async with self._session.get(self._quote_endpoint, params=params, headers=self._build_headers()) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise RouteUnavailableError(f"Quote request failed: {error!r}") from error

        try:
            data: Any = json.loads(body)
        except json.JSONDecodeError:
            data = None

        if status >= 400 or not isinstance(data, dict) or "error" in data:
            error_text = _error_message_from_payload(data) if data is not None else body
            log_event(
                self._logger,
                level="warning",
                event="quote_unavailable",
                message="Jupiter quote request did not return a route",
                status=status,
                endpoint=_sanitize_endpoint_for_log(self._quote_endpoint),
                no_routes=_is_no_routes_error_text(error_text),
                body_preview=_sanitize_preview_for_log(body),
            )
            raise RouteUnavailableError(
                f"Quote failed: status={status} error={_sanitize_preview_for_log(error_text, limit=160)}",
                details={"status": status},
            )

        if int(data.get("outAmount") or 0) <= 0:
            raise RouteUnavailableError("Quote response is missing outAmount.", details={"status": status})

        return data

    async def fetch_price(self, pair: PairConfig) -> PricePoint:
        one_base_unit = 10**pair.base_decimals
        quote = await self.quote(
            input_mint=pair.base_mint,
            output_mint=pair.quote_mint,
            amount=one_base_unit,
            slippage_bps=0,
        )
        price = quote_price(
            quote,
            input_decimals=pair.base_decimals,
            output_decimals=pair.quote_decimals,
            base_is_input=True,
        )
        try:
            validate_price(price)
        except ValueError as error:
            raise InvalidPriceError(str(error)) from error

        log_event(
            self._logger,
            level="debug",
            event="price_observed",
            message="Observed pair price from Jupiter quote",
            pair=pair.symbol,
            price=str(price),
        )
        return PricePoint(timestamp=now_utc(), price=price, source=PRICE_SOURCE_JUPITER)

    async def build_swap_transaction(
        self,
        *,
        quote_response: dict[str, Any],
        user_public_key: str,
        priority_fee_lamports: int,
    ) -> dict[str, Any]:
        await self.connect()
        if self._session is None:
            raise RuntimeError("Jupiter HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "quoteResponse": quote_response,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        if priority_fee_lamports > 0:
            payload["prioritizationFeeLamports"] = priority_fee_lamports

        try:
            async with self._session.post(self._swap_endpoint, json=payload, headers=self._build_headers()) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise SubmissionRejectedError(f"Swap build request failed: {error!r}") from error

        try:
            data: Any = json.loads(body)
        except json.JSONDecodeError:
            data = None

        if status >= 400 or not isinstance(data, dict) or not data.get("swapTransaction"):
            error_text = _error_message_from_payload(data) if data is not None else body
            if _is_no_routes_error_text(error_text):
                raise RouteUnavailableError(f"Swap build found no route: {error_text}", details={"status": status})
            raise SubmissionRejectedError(
                f"Swap build failed: status={status} error={_sanitize_preview_for_log(error_text, limit=160)}",
                details={"status": status},
            )

        return data
