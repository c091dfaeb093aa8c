from __future__ import annotations

import secrets
import uuid
from collections.abc import Callable

from fastapi import Header
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .config import Settings
from .errors import ErrorCode, app_error
from .request_context import request_id_var

_REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id for the request; echoes the caller's id or mints a UUID4."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get(_REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[_REQUEST_ID_HEADER] = rid
        return response


def api_key_dependency(settings: Settings) -> Callable[[str | None], None]:
    expected = settings.security.api_key.strip()

    def _check(x_api_key: str | None = Header(default=None)) -> None:
        if expected == "":
            return
        if x_api_key is None or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
            raise app_error(ErrorCode.unauthorized)

    return _check
