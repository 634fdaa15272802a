from __future__ import annotations

import asyncio

import pytest

from trend_trader.trading.deadline import CycleDeadline
from trend_trader.trading.errors import CycleTimeoutError


async def raise_request_timeout() -> None:
    raise asyncio.TimeoutError()


@pytest.mark.asyncio
async def test_step_timeout_is_not_reported_as_deadline_expiry():
    deadline = CycleDeadline(240)

    with pytest.raises(asyncio.TimeoutError):
        await deadline.run(raise_request_timeout(), step="price")


@pytest.mark.asyncio
async def test_slow_step_exceeds_deadline():
    deadline = CycleDeadline(0.05)

    with pytest.raises(CycleTimeoutError) as excinfo:
        await deadline.run(asyncio.sleep(1), step="quote", tx_signature="sig")

    assert excinfo.value.step == "quote"
    assert excinfo.value.tx_signature == "sig"


@pytest.mark.asyncio
async def test_exhausted_deadline_never_starts_step():
    deadline = CycleDeadline(0)
    step = raise_request_timeout()

    with pytest.raises(CycleTimeoutError) as excinfo:
        await deadline.run(step, step="submit")

    assert "exhausted before submit" in str(excinfo.value)
    assert step.cr_frame is None
