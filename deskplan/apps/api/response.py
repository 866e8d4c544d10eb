from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

DataT = TypeVar("DataT")


class ApiMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ApiError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class Envelope(BaseModel, Generic[DataT]):
    """Body of every successful response: the payload under ``data``."""

    data: DataT
    meta: ApiMeta


class ErrorEnvelope(BaseModel):
    error: ApiError
    meta: ApiMeta


def request_id_for(request: Request) -> str:
    # The request middleware assigns one; handlers that run outside it fall back here.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def envelope(request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": ApiMeta(request_id=request_id_for(request)).model_dump()}


def error_envelope(
    request: Request,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ApiError(code=code, message=message, details=details)
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": ApiMeta(request_id=request_id_for(request)).model_dump(),
    }
