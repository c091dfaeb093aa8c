from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    # Decode-level conditions; the decoder degrades to empty results instead of raising them
    topology_unsupported = "topology_unsupported"
    decode_degenerate = "decode_degenerate"
    # Model execution
    runtime_failure = "runtime_failure"
    service_not_ready = "service_not_ready"
    timeout = "timeout"
    # Request handling
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    preprocessing_failed = "preprocessing_failed"
    malformed_multipart = "malformed_multipart"
    unauthorized = "unauthorized"
    internal_error = "internal_error"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.topology_unsupported: "Model outputs match no supported segmentation layout.",
    ErrorCode.decode_degenerate: "Detection collapsed to an empty region.",
    ErrorCode.runtime_failure: "Model execution failed.",
    ErrorCode.service_not_ready: "No segmentation model is loaded.",
    ErrorCode.timeout: "Segmentation timed out.",
    ErrorCode.invalid_image: "Image could not be decoded.",
    ErrorCode.unsupported_media_type: "Only PNG and JPEG uploads are accepted.",
    ErrorCode.bad_dimensions: "Image side exceeds the configured limit.",
    ErrorCode.too_large: "Upload exceeds the configured size limit.",
    ErrorCode.preprocessing_failed: "Image could not be converted to a model input.",
    ErrorCode.malformed_multipart: "Expected exactly one multipart field named 'file'.",
    ErrorCode.unauthorized: "Missing or invalid API key.",
    ErrorCode.internal_error: "Unexpected server error.",
}

_STATUS: Final[dict[ErrorCode, int]] = {
    ErrorCode.runtime_failure: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.service_not_ready: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.timeout: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.invalid_image: status.HTTP_400_BAD_REQUEST,
    ErrorCode.unsupported_media_type: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    ErrorCode.bad_dimensions: status.HTTP_400_BAD_REQUEST,
    ErrorCode.too_large: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.preprocessing_failed: status.HTTP_400_BAD_REQUEST,
    ErrorCode.malformed_multipart: status.HTTP_400_BAD_REQUEST,
    ErrorCode.unauthorized: status.HTTP_401_UNAUTHORIZED,
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message, "request_id": self.request_id}


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def status_for(code: ErrorCode) -> int:
    # Anything unmapped, decode-level codes included, is a server fault
    return _STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def default_message(code: ErrorCode) -> str:
    return _DEFAULT_MESSAGE.get(code, "")


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else default_message(code)
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    msg = message if message is not None else default_message(code)
    return AppError(code, status_for(code), msg)


def runtime_failure(message: str) -> AppError:
    return app_error(ErrorCode.runtime_failure, message)
