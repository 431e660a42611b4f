from __future__ import annotations

from typing import Protocol

import torch
from torch import Tensor

from .manifest import ModelManifest
from .scope import TensorScope


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...


class ModelHandle:
    """A loaded classifier, shared read-only by every inference call.

    Accepts NHWC float batches with pixel values in [0, 255] and returns a
    ``(batch, n_classes)`` probability tensor.
    """

    def __init__(self, model: TorchModel, manifest: ModelManifest) -> None:
        model.eval()
        self._model = model
        self._manifest = manifest

    @property
    def manifest(self) -> ModelManifest:
        return self._manifest

    @property
    def model_id(self) -> str:
        return self._manifest.model_id

    @property
    def input_size(self) -> int:
        return self._manifest.input_size

    def forward(self, batch: Tensor, scope: TensorScope) -> Tensor:
        if batch.ndim != 4 or int(batch.shape[-1]) != 3:
            raise ValueError(f"expected NHWC batch with 3 channels, got {tuple(batch.shape)}")
        x = scope.track(batch.permute(0, 3, 1, 2).div(255.0))
        out = scope.track(self._model(x))
        if self._manifest.outputs == "logits":
            out = scope.track(torch.softmax(out, dim=1))
        return out
