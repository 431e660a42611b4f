from __future__ import annotations

import json
import re
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from .errors import ErrorCode, app_error
from .logging import get_logger
from .registration import Registration
from .types import PredictionResult, RiskClass

_EXTENSIONS: Final[dict[str, str]] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
}
_MEDIA_TYPES: Final[dict[str, str]] = {
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
}
_IMAGE_NAME: Final[re.Pattern[str]] = re.compile(r"image-\d+-\d+\.(?:jpg|png|gif|bin)")


@dataclass(frozen=True)
class SubmissionRecord:
    record_id: str
    user_id: str
    image_ref: str
    risk_class: RiskClass
    confidence: float
    estimated_value: float
    message: str
    created_at: datetime

    @staticmethod
    def build(user_id: str, image_ref: str, result: PredictionResult) -> SubmissionRecord:
        return SubmissionRecord(
            record_id=uuid.uuid4().hex,
            user_id=user_id,
            image_ref=image_ref,
            risk_class=result.risk_class,
            confidence=result.confidence,
            estimated_value=result.estimated_value,
            message=result.message,
            created_at=datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "record_id": self.record_id,
            "user_id": self.user_id,
            "image_ref": self.image_ref,
            "risk_class": self.risk_class.value,
            "confidence": self.confidence,
            "estimated_value": self.estimated_value,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }

    @staticmethod
    def from_dict(d: dict[str, object]) -> SubmissionRecord:
        return SubmissionRecord(
            record_id=str(d["record_id"]),
            user_id=str(d["user_id"]),
            image_ref=str(d["image_ref"]),
            risk_class=RiskClass(str(d["risk_class"])),
            confidence=float(str(d["confidence"])),
            estimated_value=float(str(d["estimated_value"])),
            message=str(d["message"]),
            created_at=datetime.fromisoformat(str(d["created_at"])),
        )


def image_name(mime: str) -> str:
    """Unique upload file name: ``image-<epoch ms>-<random>.<ext>``."""
    ext = _EXTENSIONS.get(mime, ".bin")
    return f"image-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{ext}"


def image_ref_name(ref: str) -> str | None:
    """File name part of an image reference, or None if it is not one we issued."""
    name = ref.rsplit("/", 1)[-1]
    return name if _IMAGE_NAME.fullmatch(name) else None


def image_media_type(name: str) -> str:
    return _MEDIA_TYPES.get(Path(name).suffix, "application/octet-stream")


class MemoryRegistrationStore:
    """Process-local store; users, images and submissions live in dicts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, Registration] = {}
        self._images: dict[str, bytes] = {}
        self._submissions: dict[str, list[SubmissionRecord]] = {}

    def register_user(self, reg: Registration) -> str:
        user_id = uuid.uuid4().hex
        with self._lock:
            self._users[user_id] = reg
            self._submissions[user_id] = []
        return user_id

    def get_user(self, user_id: str) -> Registration | None:
        with self._lock:
            return self._users.get(user_id)

    def save_image(self, raw: bytes, mime: str) -> str:
        name = image_name(mime)
        with self._lock:
            self._images[name] = raw
        return f"memory://{name}"

    def load_image(self, ref: str) -> bytes | None:
        name = image_ref_name(ref)
        if name is None:
            return None
        with self._lock:
            return self._images.get(name)

    def save_submission(self, user_id: str, image_ref: str, result: PredictionResult) -> str:
        with self._lock:
            records = self._submissions.get(user_id)
            if records is None:
                raise app_error(ErrorCode.store_error, f"Unknown user: {user_id}")
            rec = SubmissionRecord.build(user_id, image_ref, result)
            records.append(rec)
        return rec.record_id

    def list_submissions(self, user_id: str) -> list[SubmissionRecord]:
        with self._lock:
            records = self._submissions.get(user_id)
            if records is None:
                raise app_error(ErrorCode.not_found, f"Unknown user: {user_id}")
            return list(records)


class FileRegistrationStore:
    """JSON documents on disk.

    Layout::

        <data_root>/users/<user_id>.json
        <data_root>/submissions/<user_id>/<record_id>.json
        <uploads_root>/image-<ms>-<rand>.<ext>
    """

    def __init__(self, data_root: Path, uploads_root: Path) -> None:
        self._users_dir = data_root / "users"
        self._subs_dir = data_root / "submissions"
        self._uploads = uploads_root
        self._lock = threading.Lock()
        self._logger = get_logger()

    def register_user(self, reg: Registration) -> str:
        user_id = uuid.uuid4().hex
        doc = dict(reg.to_dict())
        doc["user_id"] = user_id
        doc["created_at"] = datetime.now(UTC).isoformat()
        try:
            self._users_dir.mkdir(parents=True, exist_ok=True)
            _write_json(self._users_dir / f"{user_id}.json", doc)
        except OSError as exc:
            self._logger.error("user_write_failed user_id=%s error=%s", user_id, exc)
            raise app_error(ErrorCode.store_error, "Failed to save registration") from exc
        return user_id

    def get_user(self, user_id: str) -> Registration | None:
        path = self._user_path(user_id)
        if path is None or not path.exists():
            return None
        try:
            return Registration.from_dict(_read_json(path))
        except (OSError, ValueError, KeyError) as exc:
            raise app_error(ErrorCode.store_error, "Failed to read registration") from exc

    def save_image(self, raw: bytes, mime: str) -> str:
        path = self._uploads / image_name(mime)
        try:
            self._uploads.mkdir(parents=True, exist_ok=True)
            path.write_bytes(raw)
        except OSError as exc:
            self._logger.error("image_write_failed path=%s error=%s", path.as_posix(), exc)
            raise app_error(ErrorCode.store_error, "Failed to save image") from exc
        return path.as_posix()

    def load_image(self, ref: str) -> bytes | None:
        name = image_ref_name(ref)
        if name is None:
            return None
        path = self._uploads / name
        if not path.is_file():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            raise app_error(ErrorCode.store_error, "Failed to read image") from exc


    def save_submission(self, user_id: str, image_ref: str, result: PredictionResult) -> str:
        if self.get_user(user_id) is None:
            raise app_error(ErrorCode.store_error, f"Unknown user: {user_id}")
        rec = SubmissionRecord.build(user_id, image_ref, result)
        dest = self._subs_dir / user_id
        try:
            with self._lock:
                dest.mkdir(parents=True, exist_ok=True)
                _write_json(dest / f"{rec.record_id}.json", rec.to_dict())
        except OSError as exc:
            self._logger.error("submission_write_failed user_id=%s error=%s", user_id, exc)
            raise app_error(ErrorCode.store_error) from exc
        return rec.record_id

    def list_submissions(self, user_id: str) -> list[SubmissionRecord]:
        if self.get_user(user_id) is None:
            raise app_error(ErrorCode.not_found, f"Unknown user: {user_id}")
        dest = self._subs_dir / user_id
        if not dest.exists():
            return []
        try:
            records = [SubmissionRecord.from_dict(_read_json(p)) for p in dest.glob("*.json")]
        except (OSError, ValueError, KeyError) as exc:
            raise app_error(ErrorCode.store_error, "Failed to read submissions") from exc
        return sorted(records, key=lambda r: r.created_at)

    def _user_path(self, user_id: str) -> Path | None:
        # Ids are uuid hex; anything else cannot name a stored user
        if not user_id.isalnum():
            return None
        return self._users_dir / f"{user_id}.json"


def _write_json(path: Path, doc: dict[str, object]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(doc, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)


def _read_json(path: Path) -> dict[str, object]:
    obj: object = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object in {path.name}")
    return {str(k): v for k, v in obj.items()}
