from __future__ import annotations

import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Final

import torch
import torch.nn.functional as F
from PIL import Image
from torch import Tensor

from ..config import Settings
from ..errors import ErrorCode, app_error
from ..logging import get_logger
from ..monitoring import log_memory
from ..types import DecodedImage, PredictionVector
from .handle import ModelHandle
from .lifecycle import ModelLifecycle
from .scope import TensorScope

_FORWARD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    RuntimeError,
    ValueError,
    TypeError,
    IndexError,
)


class InferenceEngine:
    """Bounded thread-pool inference over the lifecycle's READY model."""

    def __init__(self, lifecycle: ModelLifecycle, settings: Settings) -> None:
        self._lifecycle = lifecycle
        self._settings = settings
        self._logger = get_logger()
        self._pool = _make_pool(settings)
        torch.set_num_threads(1)

    async def predict(self, decoded: DecodedImage) -> PredictionVector:
        """Run one forward pass; `decoded` is released before this returns or raises."""
        handle = self._lifecycle.handle
        if handle is None or not self._lifecycle.is_ready():
            decoded.release()
            raise app_error(ErrorCode.model_not_ready)
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(self._pool, self._predict_impl, decoded, handle)
        timeout = float(self._settings.screening.predict_timeout_seconds)
        try:
            return await asyncio.wait_for(fut, timeout=timeout if timeout > 0 else None)
        except TimeoutError:
            # The worker keeps running and still releases its scope when done
            raise app_error(ErrorCode.timeout, "Prediction timed out") from None

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _predict_impl(self, decoded: DecodedImage, handle: ModelHandle) -> PredictionVector:
        try:
            with TensorScope() as scope:
                try:
                    batch = to_batch(decoded.pixels, handle.input_size, scope)
                    with torch.no_grad():
                        probs = handle.forward(batch, scope)
                    return to_vector(probs)
                except _FORWARD_ERRORS as exc:
                    self._logger.info("forward_failed model_id=%s error=%s", handle.model_id, exc)
                    raise app_error(ErrorCode.inference_error) from exc
        finally:
            decoded.release()
            log_memory("after_forward")


def to_batch(img: Image.Image, size: int, scope: TensorScope) -> Tensor:
    """RGB image -> float NHWC batch of one, bilinearly resized to `size` x `size`."""
    if img.mode != "RGB":
        raise ValueError(f"expected RGB pixels, got mode {img.mode}")
    w, h = img.size
    raw = bytearray(img.tobytes())
    hwc = scope.track(torch.frombuffer(raw, dtype=torch.uint8).reshape(h, w, 3))
    nchw = scope.track(hwc.permute(2, 0, 1).unsqueeze(0).to(dtype=torch.float32))
    resized = scope.track(
        F.interpolate(nchw, size=(size, size), mode="bilinear", align_corners=False)
    )
    return scope.track(resized.permute(0, 2, 3, 1).contiguous())


def to_vector(probs: Tensor) -> PredictionVector:
    if probs.ndim != 2 or int(probs.shape[0]) != 1:
        raise ValueError(f"expected (1, n_classes) output, got {tuple(probs.shape)}")
    return tuple(float(v) for v in probs[0].tolist())


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")
