from __future__ import annotations

from typing import Any


class DeskplanError(Exception):
    """Base error for deskplan."""


class AppError(DeskplanError):
    """Error carrying an HTTP-style status and a machine-readable code."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            detail.update(self.details)
        return detail


class ValidationError(AppError):
    """Bad input rejected before any state change."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    """Unknown subscription, plan or tenant."""

    status_code = 404
    default_code = "NOT_FOUND"


class StateConflictError(AppError):
    """Transition not valid from the current subscription state."""

    status_code = 409
    default_code = "STATE_CONFLICT"


class PaymentRequiredError(AppError):
    """Payment gateway declined the charge; nothing was mutated."""

    status_code = 402
    default_code = "PAYMENT_FAILED"


class LimitExceededError(AppError):
    """Plan quota would be exceeded by the requested ticket operation."""

    status_code = 429
    default_code = "SUBSCRIPTION_LIMIT_REACHED"


class DependencyError(AppError):
    """Store or catalog unavailable while computing an enforcement decision."""

    status_code = 503
    default_code = "DEPENDENCY_UNAVAILABLE"
