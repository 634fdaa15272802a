from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

import aiohttp

from trend_trader.common import log_event, sanitize_text
from trend_trader.trading.types import (
    CYCLE_STATUS_NOOP,
    CycleResult,
    TradeAction,
    TradingSession,
    now_utc,
)

DEFAULT_LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"
DEFAULT_NOTIFY_TIMEZONE = "Asia/Tokyo"
LINE_TEXT_LIMIT = 5000


def _fmt(value: Decimal | None, places: str = "0.0001") -> str:
    if value is None:
        return "-"
    return str(value.quantize(Decimal(places)))


def format_timestamp(moment: datetime, tz: ZoneInfo) -> str:
    return moment.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S %Z")


def _session_lines(session: TradingSession, *, base_symbol: str, quote_symbol: str) -> list[str]:
    if session.action is TradeAction.BUY:
        spent, received = quote_symbol, base_symbol
    else:
        spent, received = base_symbol, quote_symbol

    lines = [
        f"Action: {session.action.value.upper()}",
        f"In: {_fmt(session.amount_in)} {spent}",
    ]
    if session.succeeded:
        lines.append(f"Out: {_fmt(session.amount_out)} {received}")
        lines.append(f"Price: {_fmt(session.price)} {quote_symbol}")
    if session.realized_profit is not None:
        lines.append(f"Profit: {_fmt(session.realized_profit)} {quote_symbol}")
    if session.failure_reason:
        lines.append(f"Reason: {session.failure_reason}")
    if session.tx_signature:
        lines.append(f"Tx: {session.tx_signature}")
    return lines


def format_message(
    result: CycleResult,
    *,
    tz: ZoneInfo,
    pair_symbol: str = "SOL/USDC",
) -> str:
    base_symbol, _, quote_symbol = pair_symbol.partition("/")
    quote_symbol = quote_symbol or "USDC"
    lines: list[str] = []

    if result.resolved_session is not None:
        resolved = result.resolved_session
        header = "Pending trade confirmed" if resolved.succeeded else "Pending trade did not land"
        lines.append(header)
        lines.extend(_session_lines(resolved, base_symbol=base_symbol, quote_symbol=quote_symbol))
        lines.append("")

    session = result.session
    if session is not None and session.succeeded:
        lines.append("Trade executed!")
        lines.extend(_session_lines(session, base_symbol=base_symbol, quote_symbol=quote_symbol))
    elif session is not None:
        lines.append("Trading error...")
        lines.extend(_session_lines(session, base_symbol=base_symbol, quote_symbol=quote_symbol))
        if session.failure_detail:
            lines.append(session.failure_detail)
    elif result.status == CYCLE_STATUS_NOOP:
        lines.append("No trading opportunity found")
        if result.price is not None:
            lines.append(f"Price: {_fmt(result.price.price)} {quote_symbol}")
    else:
        lines.append(f"Cycle {result.status}")
        if result.error:
            lines.append(result.error)

    lines.append(f"Position: {result.position.state.value.upper()}")
    lines.append(f"Total: {_fmt(result.cumulative_profit)} {quote_symbol}")
    lines.append(f"Time: {format_timestamp(result.finished_at, tz)}")
    return sanitize_text("\n".join(lines))[:LINE_TEXT_LIMIT]


def format_error_message(error: BaseException | str, *, tz: ZoneInfo, moment: datetime | None = None) -> str:
    text = f"Trading error...\n{error}\nTime: {format_timestamp(moment or now_utc(), tz)}"
    return sanitize_text(text)[:LINE_TEXT_LIMIT]


class LineNotifier:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        channel_token: str,
        user_id: str,
        push_url: str = DEFAULT_LINE_PUSH_URL,
        timezone_name: str = DEFAULT_NOTIFY_TIMEZONE,
        pair_symbol: str = "SOL/USDC",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._channel_token = channel_token.strip()
        self._user_id = user_id.strip()
        self._push_url = push_url or DEFAULT_LINE_PUSH_URL
        self._tz = ZoneInfo(timezone_name or DEFAULT_NOTIFY_TIMEZONE)
        self._pair_symbol = pair_symbol
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._channel_token and self._user_id)

    async def connect(self) -> None:
        if not self.enabled:
            log_event(
                self._logger,
                level="warning",
                event="line_notifier_disabled",
                message="LINE_CHANNEL_TOKEN or LINE_USER_ID is missing; notifications are disabled",
            )
            return
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def notify(self, result: CycleResult) -> None:
        await self.send_text(format_message(result, tz=self._tz, pair_symbol=self._pair_symbol))

    async def notify_error(self, error: BaseException | str) -> None:
        await self.send_text(format_error_message(error, tz=self._tz))

    async def send_text(self, text: str) -> bool:
        if not self.enabled:
            return False
        if self._session is None:
            await self.connect()
        if self._session is None:
            return False

        payload: dict[str, Any] = {
            "to": self._user_id,
            "messages": [{"type": "text", "text": text}],
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._channel_token}",
        }

        try:
            async with self._session.post(self._push_url, json=payload, headers=headers) as response:
                status = response.status
                body = await response.text()
        except aiohttp.ClientError as error:
            log_event(
                self._logger,
                level="error",
                event="line_push_failed",
                message="Failed to send LINE message",
                error=str(error),
            )
            return False

        if status >= 400:
            log_event(
                self._logger,
                level="error",
                event="line_push_rejected",
                message="LINE API rejected the push message",
                status=status,
                body_preview=body[:240],
            )
            return False

        log_event(
            self._logger,
            level="info",
            event="line_push_sent",
            message="LINE message sent successfully",
        )
        return True
