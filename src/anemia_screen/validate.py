from __future__ import annotations

from typing import Final

from .config import Limits
from .errors import ErrorCode, app_error
from .types import ImageSubmission

# Declared MIME type -> Pillow format name expected after decoding
ALLOWED_TYPES: Final[dict[str, str]] = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
    "image/gif": "GIF",
}


def validate_submission(sub: ImageSubmission, limits: Limits) -> None:
    """Check type and size policy before any decoding work."""
    if sub.declared_mime_type not in ALLOWED_TYPES:
        raise app_error(ErrorCode.invalid_type)
    if sub.size_bytes > limits.max_bytes:
        mb = limits.max_bytes / (1024 * 1024)
        raise app_error(ErrorCode.too_large, f"File too large. Maximum size is {mb:g}MB.")
