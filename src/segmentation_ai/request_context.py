from __future__ import annotations

from contextvars import ContextVar

# Set per request by RequestIdMiddleware; log formatters and error bodies read it.
# Empty outside a request (CLI runs, background reloads).
request_id_var: ContextVar[str] = ContextVar("segmentation_request_id", default="")
