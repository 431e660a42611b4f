"""Collaborator interfaces the screening pipeline depends on.

The pipeline never renders anything or touches storage directly; the HTTP
layer and the stores in :mod:`anemia_screen.store` provide these.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from .errors import ErrorCode
from .types import PredictionResult

if TYPE_CHECKING:
    from .inference.handle import ModelHandle
    from .registration import Registration
    from .store import SubmissionRecord


class Presentation(Protocol):
    def show_preview(self, data_url: str) -> None: ...

    def show_result(self, result: PredictionResult) -> None: ...

    def show_error(self, code: ErrorCode, message: str) -> None: ...

    def set_model_ready(self, ready: bool) -> None: ...


class RegistrationStore(Protocol):
    def save_submission(
        self, user_id: str, image_ref: str, result: PredictionResult
    ) -> str:
        """Persist one screening result; returns the record id.

        Raises ``AppError(ErrorCode.store_error)`` on failure.
        """
        ...

    def save_image(self, raw: bytes, mime: str) -> str:
        """Store uploaded image bytes; returns an image reference."""
        ...


class ModelSource(Protocol):
    def fetch_model(self, uri: str) -> ModelHandle:
        """Load model topology and weights from `uri` (blocking)."""
        ...


class UserDirectory(RegistrationStore, Protocol):
    """Registration store that also owns the user records behind `user_id`."""

    def register_user(self, reg: Registration) -> str: ...

    def get_user(self, user_id: str) -> Registration | None: ...

    def list_submissions(self, user_id: str) -> list[SubmissionRecord]: ...

    def load_image(self, ref: str) -> bytes | None:
        """Bytes of a stored image by reference or file name; None if unknown."""
        ...
