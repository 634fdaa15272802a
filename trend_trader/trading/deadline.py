from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from .errors import CycleTimeoutError

T = TypeVar("T")


class CycleDeadline:
    def __init__(self, budget_seconds: float) -> None:
        self.budget_seconds = max(0.0, float(budget_seconds))
        self._started_at = asyncio.get_running_loop().time()

    def elapsed(self) -> float:
        return asyncio.get_running_loop().time() - self._started_at

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())

    async def sleep(self, seconds: float, *, step: str, tx_signature: str | None = None) -> None:
        remaining = self.remaining()
        if remaining <= 0:
            raise CycleTimeoutError(
                f"Cycle deadline exhausted before {step}",
                step=step,
                tx_signature=tx_signature,
            )
        await asyncio.sleep(min(seconds, remaining))

    async def run(self, awaitable: Awaitable[T], *, step: str, tx_signature: str | None = None) -> T:
        remaining = self.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CycleTimeoutError(
                f"Cycle deadline exhausted before {step}",
                step=step,
                tx_signature=tx_signature,
            )
        scope = asyncio.timeout(remaining)
        try:
            async with scope:
                return await awaitable
        except TimeoutError as exc:
            # A timeout raised by the step itself propagates unchanged.
            if not scope.expired():
                raise
            raise CycleTimeoutError(
                f"Cycle deadline exceeded during {step}",
                step=step,
                tx_signature=tx_signature,
            ) from exc
