from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
API_PREFIX = f"/{API_VERSION}"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)

    @classmethod
    def for_request(cls, request: Request) -> "ResponseMeta":
        return cls(request_id=get_request_id(request))


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class Page(BaseModel, Generic[T]):
    """One offset page of an agent's policies or clients."""

    items: list[T]
    total: int
    limit: int
    offset: int


def get_request_id(request: Request) -> str:
    # The request middleware stores the id; handlers outside it fall back to the header.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": ResponseMeta.for_request(request).model_dump()}


def page_response(*, request: Request, page: Page[Any]) -> dict[str, Any]:
    return success_response(request=request, data=page.model_dump())


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": ResponseMeta.for_request(request).model_dump()}
