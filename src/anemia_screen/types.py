from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from PIL import Image

# Ordered class probabilities as produced by the classifier (index 0 = at risk)
PredictionVector = tuple[float, ...]


class RiskClass(str, Enum):
    at_risk = "at_risk"
    low_risk = "low_risk"


@dataclass(frozen=True)
class ImageSubmission:
    raw_bytes: bytes = field(repr=False)
    declared_mime_type: str
    size_bytes: int
    filename: str | None = None

    @staticmethod
    def from_bytes(raw: bytes, mime: str, filename: str | None = None) -> ImageSubmission:
        return ImageSubmission(
            raw_bytes=raw,
            declared_mime_type=mime.strip().lower(),
            size_bytes=len(raw),
            filename=filename,
        )


@dataclass
class DecodedImage:
    """RGB pixel buffer; the holder must call release() once done with it."""

    pixels: Image.Image
    width: int
    height: int
    released: bool = False

    def release(self) -> None:
        if not self.released:
            self.pixels.close()
            self.released = True


@dataclass(frozen=True)
class DecodeOutput:
    image: DecodedImage
    preview_data_url: str


@dataclass(frozen=True)
class PredictionResult:
    risk_class: RiskClass
    confidence: float
    estimated_value: float
    message: str
