from __future__ import annotations

import asyncio
import base64
import io

from PIL import Image, ImageOps, UnidentifiedImageError

from .config import Limits
from .errors import AppError, ErrorCode, app_error
from .types import DecodedImage, DecodeOutput, ImageSubmission
from .validate import ALLOWED_TYPES


async def decode_submission(sub: ImageSubmission, limits: Limits) -> DecodeOutput:
    """Decode a validated submission off the event loop."""
    return await asyncio.to_thread(decode_bytes, sub, limits)


def decode_bytes(sub: ImageSubmission, limits: Limits) -> DecodeOutput:
    img = _open_image(sub.raw_bytes)
    try:
        expected = ALLOWED_TYPES.get(sub.declared_mime_type)
        if img.format != expected:
            raise app_error(
                ErrorCode.decode_error,
                f"Declared {sub.declared_mime_type} but content is {img.format or 'unknown'}",
            )
        w, h = img.size
        if max(w, h) > limits.max_side_px:
            raise app_error(ErrorCode.decode_error, "Image dimensions too large")
        rgb = _to_rgb(img)
    except AppError:
        img.close()
        raise
    except (OSError, ValueError, SyntaxError) as exc:
        img.close()
        raise app_error(ErrorCode.decode_error, f"Failed to decode image: {exc}") from None
    img.close()
    preview = _data_url(sub.raw_bytes, sub.declared_mime_type)
    return DecodeOutput(
        image=DecodedImage(pixels=rgb, width=rgb.size[0], height=rgb.size[1]),
        preview_data_url=preview,
    )


def _open_image(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
    except UnidentifiedImageError:
        raise app_error(ErrorCode.decode_error) from None
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.decode_error, "Decompression bomb triggered") from None
    try:
        img.load()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        img.close()
        raise app_error(ErrorCode.decode_error, f"Failed to decode image: {exc}") from None
    return img


def _to_rgb(img: Image.Image) -> Image.Image:
    # GIFs decode as their first frame
    oriented = ImageOps.exif_transpose(img)
    out: Image.Image = oriented if oriented is not None else img
    if out.mode == "P":
        out = out.convert("RGBA")
    if out.mode in ("RGBA", "LA"):
        rgba = out.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        out = Image.alpha_composite(bg, rgba)
    if out.mode != "RGB":
        out = out.convert("RGB")
    if out is img:
        out = img.copy()
    return out


def _data_url(raw: bytes, mime: str) -> str:
    media = "image/jpeg" if mime == "image/jpg" else mime
    return f"data:{media};base64,{base64.b64encode(raw).decode('ascii')}"
