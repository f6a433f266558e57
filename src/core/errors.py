from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


class EngineError(Exception):
    """Base class for every error the cost-basis engine reports to callers."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def as_json(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": {k: str(v) for k, v in self.details.items()}}


class ValidationError(EngineError):
    """Malformed input: sign mismatch, future date, unknown symbol, bad ratio."""

    code = "VALIDATION_ERROR"


class DivisionByZeroError(ValidationError):
    code = "DIVISION_BY_ZERO"


class OversellError(EngineError):
    """
    A sell exceeds the tracked open quantity.

    Signals missing history (e.g. an unrecorded transfer-in); never clamped.
    """

    code = "OVERSELL"

    def __init__(
        self,
        *,
        account_id: str,
        symbol_id: str,
        requested: Decimal,
        available: Decimal,
        transaction_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            f"Sell of {requested} {symbol_id} in account {account_id} exceeds open quantity {available}",
            account_id=account_id,
            symbol_id=symbol_id,
            requested=requested,
            available=available,
            transaction_id=transaction_id,
        )
        self.account_id = account_id
        self.symbol_id = symbol_id
        self.requested = requested
        self.available = available
        self.transaction_id = transaction_id


class IdempotencyConflict(EngineError):
    code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: tuple[Any, ...], existing_id: Optional[int]) -> None:
        super().__init__(
            f"Corporate action {key} already recorded (id={existing_id})",
            key=key,
            existing_id=existing_id,
        )
        self.key = key
        self.existing_id = existing_id


class RoundingToleranceExceeded(EngineError):
    """A conservation check failed beyond the configured epsilon (internal-consistency fault)."""

    code = "ROUNDING_TOLERANCE_EXCEEDED"

    def __init__(self, what: str, *, expected: Decimal, actual: Decimal, epsilon: Decimal) -> None:
        super().__init__(
            f"{what}: expected {expected}, got {actual} (epsilon {epsilon})",
            expected=expected,
            actual=actual,
            epsilon=epsilon,
        )
        self.expected = expected
        self.actual = actual
        self.epsilon = epsilon


class ReferencedTransactionError(EngineError):
    code = "TRANSACTION_REFERENCED"


class UnknownEntityError(EngineError):
    code = "NOT_FOUND"
