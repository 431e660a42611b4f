from __future__ import annotations

import re
from datetime import date
from pathlib import Path

import pytest

from anemia_screen.errors import AppError, ErrorCode
from anemia_screen.registration import Registration
from anemia_screen.store import (
    FileRegistrationStore,
    MemoryRegistrationStore,
    image_media_type,
    image_name,
    image_ref_name,
)
from anemia_screen.types import PredictionResult, RiskClass

_REG = Registration(
    name="Somchai",
    surname="Jaidee",
    nationality="Thai",
    phone="0812345678",
    dob=date(1990, 5, 1),
)
_RESULT = PredictionResult(
    risk_class=RiskClass.at_risk,
    confidence=0.9,
    estimated_value=9.3,
    message="คุณมีความเสี่ยงต่อการเป็นภาวะโลหิตจาง",
)


def test_image_name_shape() -> None:
    assert re.fullmatch(r"image-\d+-\d+\.png", image_name("image/png"))
    assert image_name("image/jpg").endswith(".jpg")
    assert image_name("application/octet-stream").endswith(".bin")


def test_memory_store_roundtrip() -> None:
    store = MemoryRegistrationStore()
    uid = store.register_user(_REG)
    assert store.get_user(uid) == _REG
    ref = store.save_image(b"\x89PNG", "image/png")
    assert ref.startswith("memory://image-")
    assert store.load_image(ref) == b"\x89PNG"

    rid = store.save_submission(uid, ref, _RESULT)
    subs = store.list_submissions(uid)
    assert [s.record_id for s in subs] == [rid]
    assert subs[0].risk_class is RiskClass.at_risk
    assert subs[0].estimated_value == 9.3


def test_memory_store_unknown_user() -> None:
    store = MemoryRegistrationStore()
    assert store.get_user("nobody") is None
    with pytest.raises(AppError) as ei:
        store.save_submission("nobody", "memory://x", _RESULT)
    assert ei.value.code is ErrorCode.store_error
    with pytest.raises(AppError) as ei2:
        store.list_submissions("nobody")
    assert ei2.value.code is ErrorCode.not_found


def test_file_store_persists_json(tmp_path: Path) -> None:
    store = FileRegistrationStore(tmp_path / "data", tmp_path / "uploads")
    uid = store.register_user(_REG)
    assert (tmp_path / "data" / "users" / f"{uid}.json").exists()

    ref = store.save_image(b"GIF89a", "image/gif")
    assert Path(ref).read_bytes() == b"GIF89a"
    assert Path(ref).parent == tmp_path / "uploads"

    r1 = store.save_submission(uid, ref, _RESULT)
    r2 = store.save_submission(uid, ref, _RESULT)

    # A fresh instance reads the same documents back
    again = FileRegistrationStore(tmp_path / "data", tmp_path / "uploads")
    assert again.get_user(uid) == _REG
    subs = again.list_submissions(uid)
    assert {s.record_id for s in subs} == {r1, r2}
    assert all(s.message == _RESULT.message for s in subs)


def test_file_store_unknown_and_unsafe_ids(tmp_path: Path) -> None:
    store = FileRegistrationStore(tmp_path / "data", tmp_path / "uploads")
    assert store.get_user("../../etc/passwd") is None
    with pytest.raises(AppError) as ei:
        store.save_submission("missing", "x", _RESULT)
    assert ei.value.code is ErrorCode.store_error
    with pytest.raises(AppError) as ei2:
        store.list_submissions("missing")
    assert ei2.value.code is ErrorCode.not_found


def test_file_store_write_failure_is_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "uploads"
    blocker.write_text("not a directory", encoding="utf-8")
    store = FileRegistrationStore(tmp_path / "data", blocker)
    with pytest.raises(AppError) as ei:
        store.save_image(b"\xff\xd8", "image/jpeg")
    assert ei.value.code is ErrorCode.store_error
    assert ei.value.http_status == 502


def test_file_store_loads_images_by_ref_or_name(tmp_path: Path) -> None:
    store = FileRegistrationStore(tmp_path / "data", tmp_path / "uploads")
    ref = store.save_image(b"\x89PNG", "image/png")
    name = Path(ref).name
    assert store.load_image(ref) == b"\x89PNG"
    assert store.load_image(name) == b"\x89PNG"
    assert image_media_type(name) == "image/png"

    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")
    assert store.load_image("../secret.txt") is None
    assert store.load_image("image-1-2.png") is None
    assert image_ref_name("/etc/passwd") is None


def test_memory_store_loads_images_by_name() -> None:
    store = MemoryRegistrationStore()
    ref = store.save_image(b"GIF89a", "image/gif")
    name = image_ref_name(ref)
    assert name is not None and name.endswith(".gif")
    assert store.load_image(name) == b"GIF89a"
    assert store.load_image("memory://nothing") is None
