from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_type = "invalid_type"
    too_large = "too_large"
    decode_error = "decode_error"
    load_error = "load_error"
    model_not_ready = "model_not_ready"
    inference_error = "inference_error"
    store_error = "store_error"
    timeout = "timeout"
    invalid_registration = "invalid_registration"
    malformed_multipart = "malformed_multipart"
    superseded = "superseded"
    unauthorized = "unauthorized"
    not_found = "not_found"
    internal_error = "internal_error"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_type: "Invalid file type. Please upload JPEG, PNG, or GIF.",
    ErrorCode.too_large: "File too large. Maximum size is 5MB.",
    ErrorCode.decode_error: "Failed to decode image.",
    ErrorCode.load_error: "Error loading model. Please reload and try again.",
    ErrorCode.model_not_ready: "Model not loaded yet.",
    ErrorCode.inference_error: "Error during analysis. Please try again.",
    ErrorCode.store_error: "Failed to save submission.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.invalid_registration: "Invalid registration data.",
    ErrorCode.malformed_multipart: "Malformed multipart body.",
    ErrorCode.superseded: "Submission replaced by a newer one.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.not_found: "Not found.",
    ErrorCode.internal_error: "Internal server error.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "message": self.message,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    """Build an AppError with the status and default message for `code`."""
    msg = message if message is not None else default_message(code)
    return AppError(code, status_for(code), msg)


def default_message(code: ErrorCode) -> str:
    return _DEFAULT_MESSAGE.get(code, "")


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else default_message(code)
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.invalid_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.decode_error:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.load_error:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.model_not_ready:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.store_error:
        return status.HTTP_502_BAD_GATEWAY
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.invalid_registration:
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if code is ErrorCode.malformed_multipart:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.superseded:
        return status.HTTP_409_CONFLICT
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code is ErrorCode.not_found:
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_500_INTERNAL_SERVER_ERROR
