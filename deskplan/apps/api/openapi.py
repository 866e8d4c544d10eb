from __future__ import annotations

from typing import Any

from deskplan.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Invalid input",
        _error_example(code="INVALID_PLAN", message="Invalid or inactive subscription plan"),
    ),
    402: _response(
        "Payment declined",
        _error_example(code="PAYMENT_FAILED", message="Payment was not authorized"),
    ),
    404: _response(
        "Not found",
        _error_example(code="SUBSCRIPTION_NOT_FOUND", message="Subscription not found"),
    ),
    409: _response(
        "Subscription state conflict",
        _error_example(code="NOT_IN_TRIAL", message="Subscription is not in trial status"),
    ),
    429: _response(
        "Plan limit reached",
        _error_example(
            code="SUBSCRIPTION_LIMIT_REACHED",
            message="Active ticket limit reached (5)",
            details={
                "limit_type": "active",
                "current_usage": {
                    "active_tickets": 5,
                    "completed_tickets": 0,
                    "total_tickets": 5,
                    "archived_tickets": 0,
                },
                "limits": {"active_tickets": 5, "completed_tickets": 50, "total_tickets": 55},
                "upgrade_message": "You've reached your active ticket limit of 5.",
                "suggested_plans": [],
            },
        ),
    ),
    503: _response(
        "Dependency unavailable",
        _error_example(code="DEPENDENCY_UNAVAILABLE", message="Subscription store unavailable"),
    ),
}
