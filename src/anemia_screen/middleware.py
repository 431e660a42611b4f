from __future__ import annotations

import uuid
from collections.abc import Callable

from fastapi import Header
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from .config import Settings
from .errors import ErrorCode, app_error, new_error, status_for
from .logging import request_id_var


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("X-Request-ID")
        if not rid:
            rid = str(uuid.uuid4())
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Rejects uploads whose declared Content-Length exceeds `max_bytes` before the body is read."""

    def __init__(self, app: ASGIApp, max_bytes: int, paths: frozenset[str]) -> None:
        super().__init__(app)
        self._max_bytes = max_bytes
        self._paths = paths

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._paths:
            declared = request.headers.get("content-length")
            if declared is not None and declared.isdigit() and int(declared) > self._max_bytes:
                rid = request_id_var.get()
                body = new_error(ErrorCode.too_large, rid, "Request body too large")
                return JSONResponse(
                    status_code=status_for(ErrorCode.too_large), content=body.to_dict()
                )
        return await call_next(request)


def api_key_dependency(
settings: Settings) -> Callable[[str | None], None]:
    """Admin route guard; a blank configured key disables the check."""
    required_key = settings.security.api_key.strip()
    if required_key == "":

        def _pass(x_api_key: str | None = Header(default=None, convert_underscores=True)) -> None:
            return None

        return _pass

    def _check(x_api_key: str | None = Header(default=None, convert_underscores=True)) -> None:
        if x_api_key is None or x_api_key != required_key:
            raise app_error(ErrorCode.unauthorized)

    return _check
