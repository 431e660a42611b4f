from __future__ import annotations

import asyncio
import base64
import importlib

import pytest
from _fakes import image_bytes
from PIL import ImageFile

import anemia_screen.decode as decode_module
from anemia_screen.config import Limits
from anemia_screen.decode import decode_bytes, decode_submission
from anemia_screen.errors import AppError, ErrorCode
from anemia_screen.types import ImageSubmission

_LIMITS = Limits(max_bytes=5 * 1024 * 1024, max_side_px=8192)


@pytest.mark.parametrize(
    ("fmt", "mime"),
    [("PNG", "image/png"), ("JPEG", "image/jpeg"), ("JPEG", "image/jpg"), ("GIF", "image/gif")],
)
def test_supported_formats_decode_to_rgb(fmt: str, mime: str) -> None:
    raw = image_bytes(fmt=fmt, size=(40, 30))
    out = decode_bytes(ImageSubmission.from_bytes(raw, mime), _LIMITS)
    img = out.image
    assert (img.width, img.height) == (40, 30)
    assert img.pixels.mode == "RGB"
    assert img.released is False
    img.release()
    assert img.released is True


def test_preview_is_data_url_of_original_bytes() -> None:
    raw = image_bytes(fmt="JPEG")
    out = decode_bytes(ImageSubmission.from_bytes(raw, "image/jpg"), _LIMITS)
    prefix = "data:image/jpeg;base64,"
    assert out.preview_data_url.startswith(prefix)
    assert base64.b64decode(out.preview_data_url[len(prefix) :]) == raw
    out.image.release()


def test_transparent_png_composited_on_white() -> None:
    raw = image_bytes(fmt="PNG", mode="RGBA", color=(0, 0, 0, 0))
    out = decode_bytes(ImageSubmission.from_bytes(raw, "image/png"), _LIMITS)
    assert out.image.pixels.getpixel((0, 0)) == (255, 255, 255)
    out.image.release()


def test_garbage_bytes_are_decode_error() -> None:
    sub = ImageSubmission.from_bytes(b"definitely not an image", "image/png")
    with pytest.raises(AppError) as ei:
        decode_bytes(sub, _LIMITS)
    assert ei.value.code is ErrorCode.decode_error
    assert ei.value.http_status == 400


def test_truncated_png_is_decode_error() -> None:
    raw = image_bytes(fmt="PNG", size=(64, 64))
    sub = ImageSubmission.from_bytes(raw[: len(raw) // 2], "image/png")
    with pytest.raises(AppError) as ei:
        decode_bytes(sub, _LIMITS)
    assert ei.value.code is ErrorCode.decode_error


def test_import_leaves_pillow_truncation_flag_alone(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ImageFile, "LOAD_TRUNCATED_IMAGES", True)
    importlib.reload(decode_module)
    assert ImageFile.LOAD_TRUNCATED_IMAGES is True


def test_declared_type_must_match_content() -> None:
    sub = ImageSubmission.from_bytes(image_bytes(fmt="PNG"), "image/jpeg")
    with pytest.raises(AppError) as ei:
        decode_bytes(sub, _LIMITS)
    assert ei.value.code is ErrorCode.decode_error
    assert "PNG" in ei.value.message


def test_oversized_dimensions_rejected() -> None:
    sub = ImageSubmission.from_bytes(image_bytes(size=(64, 8)), "image/png")
    with pytest.raises(AppError) as ei:
        decode_bytes(sub, Limits(max_bytes=1024 * 1024, max_side_px=32))
    assert ei.value.code is ErrorCode.decode_error


def test_decode_submission_runs_off_loop() -> None:
    sub = ImageSubmission.from_bytes(image_bytes(), "image/png")
    out = asyncio.run(decode_submission(sub, _LIMITS))
    assert out.image.pixels.getpixel((0, 0)) == (180, 40, 50)
    out.image.release()
