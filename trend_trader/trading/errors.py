from __future__ import annotations

from typing import Any

from .types import (
    FAIL_REASON_BALANCE_UNAVAILABLE,
    FAIL_REASON_CONFIRMATION_TIMEOUT,
    FAIL_REASON_INSUFFICIENT_BALANCE,
    FAIL_REASON_ROUTE_UNAVAILABLE,
    FAIL_REASON_SUBMISSION_REJECTED,
    FAIL_REASON_TIMEOUT,
)


class TradingError(RuntimeError):
    pass


class ConfigurationError(ValueError):
    pass


class InvalidPriceError(TradingError):
    pass


class SwapError(TradingError):
    reason = "swap_failed"

    def __init__(
        self,
        message: str,
        *,
        tx_signature: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.tx_signature = tx_signature
        self.details = dict(details or {})

    @property
    def submitted(self) -> bool:
        return bool(self.tx_signature)


class RouteUnavailableError(SwapError):
    reason = FAIL_REASON_ROUTE_UNAVAILABLE


class InsufficientBalanceError(SwapError):
    reason = FAIL_REASON_INSUFFICIENT_BALANCE


class BalanceUnavailableError(SwapError):
    reason = FAIL_REASON_BALANCE_UNAVAILABLE


class SubmissionRejectedError(SwapError):
    reason = FAIL_REASON_SUBMISSION_REJECTED


class ConfirmationTimeoutError(SwapError):
    reason = FAIL_REASON_CONFIRMATION_TIMEOUT


class CycleTimeoutError(SwapError):
    reason = FAIL_REASON_TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        step: str,
        tx_signature: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, tx_signature=tx_signature, details=details)
        self.step = step


class StatePersistenceError(TradingError):
    pass


class PositionConflictError(StatePersistenceError):
    def __init__(
        self,
        *,
        expected_last_session_id: str | None,
        actual_last_session_id: str | None,
        sequence: int | None = None,
    ) -> None:
        if sequence is not None:
            message = (
                f"Session sequence {sequence} is already committed: "
                f"expected last_session_id={expected_last_session_id!r}"
            )
        else:
            message = (
                "Position snapshot changed concurrently: "
                f"expected last_session_id={expected_last_session_id!r}, found {actual_last_session_id!r}"
            )
        super().__init__(message)
        self.sequence = sequence
        self.expected_last_session_id = expected_last_session_id
        self.actual_last_session_id = actual_last_session_id
