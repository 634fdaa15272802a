from __future__ import annotations

import json
import logging

import pytest

from trend_trader.bot_runtime.logging import JsonFormatter
from trend_trader.common import guarded_call, log_event, sanitize_text


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("GET https://lite-api.jup.ag/swap/v1/quote?api_key=abc failed", "GET https://lite-api.jup.ag/swap/v1/quote failed"),
        ("x-api-key: secret123", "x-api-key: ***"),
        ("Authorization: Bearer tok.en-1", "Authorization: Bearer ***"),
        ("WALLET_PRIVATE_KEY=[1,2,3]", "WALLET_PRIVATE_KEY=***"),
        ("private_key: 5abcDEF", "private_key: ***"),
    ],
)
def test_sanitize_text_masks_secrets(raw, expected):
    assert sanitize_text(raw) == expected


class CapturingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.lines: list[dict] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(json.loads(JsonFormatter().format(record)))


@pytest.fixture
def captured():
    handler = CapturingHandler()
    logger = logging.getLogger("trend_trader.tests.logging")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)
    yield logger, handler.lines
    logger.removeHandler(handler)


def test_log_event_emits_structured_json(captured):
    logger, lines = captured

    log_event(
        logger,
        level="warning",
        event="quote_unavailable",
        message="Quote failed for https://rpc.example/?api-key=zzz",
        status=503,
        details={"url": "https://rpc.example/path?token=1"},
    )

    line = lines[0]
    assert line["level"] == "WARNING"
    assert line["severity"] == "WARNING"
    assert line["event"] == "quote_unavailable"
    assert line["status"] == 503
    assert line["message"] == "Quote failed for https://rpc.example/"
    assert line["details"] == {"url": "https://rpc.example/path"}


@pytest.mark.asyncio
async def test_guarded_call_logs_and_returns_default(captured):
    logger, lines = captured

    async def boom() -> int:
        raise RuntimeError("redis unavailable")

    result = await guarded_call(boom, logger=logger, event="cache_failed", message="Cache write failed", default=7)

    assert result == 7
    assert lines[0]["event"] == "cache_failed"
    assert lines[0]["error"] == "redis unavailable"


@pytest.mark.asyncio
async def test_guarded_call_can_reraise(captured):
    logger, _ = captured

    def boom() -> None:
        raise ValueError("bad")

    with pytest.raises(ValueError):
        await guarded_call(boom, logger=logger, event="x", message="x", reraise=True)
