from __future__ import annotations

import pickle
import tempfile
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Final

import httpx
import torch
from torch import Tensor

from ..errors import AppError, ErrorCode, app_error
from ..logging import get_logger
from .handle import ModelHandle, TorchModel
from .manifest import ModelManifest

_MANIFEST_NAME: Final[str] = "manifest.json"
_WEIGHTS_NAME: Final[str] = "model.pt"
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)
# Classifier head parameter name and expected input features per architecture
_HEADS: Final[dict[str, tuple[str, int]]] = {
    "resnet18": ("fc", 512),
    "mobilenet_v3_small": ("classifier.3", 1024),
}


class TorchModelSource:
    """Loads a manifest + state dict pair from a local directory or HTTP base URL."""

    def __init__(self, *, http_timeout_seconds: float = 30.0) -> None:
        self._http_timeout = float(http_timeout_seconds)
        self._logger = get_logger()

    def fetch_model(self, uri: str) -> ModelHandle:
        if uri.startswith(("http://", "https://")):
            with tempfile.TemporaryDirectory(prefix="anemia-model-") as td:
                local = Path(td)
                self._download(uri, local)
                return self._load_dir(local)
        return self._load_dir(Path(uri))

    def _download(self, base_url: str, dest: Path) -> None:
        base = base_url.rstrip("/")
        try:
            with httpx.Client(timeout=self._http_timeout, follow_redirects=True) as client:
                for name in (_MANIFEST_NAME, _WEIGHTS_NAME):
                    resp = client.get(f"{base}/{name}")
                    resp.raise_for_status()
                    (dest / name).write_bytes(resp.content)
                    self._logger.info(
                        "model_artifact_downloaded name=%s bytes=%d", name, len(resp.content)
                    )
        except httpx.HTTPError as exc:
            raise app_error(ErrorCode.load_error, f"Model download failed: {exc}") from exc

    def _load_dir(self, model_dir: Path) -> ModelHandle:
        manifest_path = model_dir / _MANIFEST_NAME
        model_path = model_dir / _WEIGHTS_NAME
        if not (manifest_path.exists() and model_path.exists()):
            raise app_error(ErrorCode.load_error, f"Model artifacts not found in {model_dir}")
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError) as exc:
            self._logger.info("manifest_load_failed path=%s", manifest_path.as_posix())
            raise app_error(ErrorCode.load_error, f"Invalid model manifest: {exc}") from exc
        model = build_model(manifest.arch, manifest.n_classes)
        try:
            sd = load_state_dict_file(model_path)
            validate_state_dict(sd, manifest.arch, manifest.n_classes)
            model.load_state_dict(sd)
        except AppError:
            raise
        except _LOAD_ERRORS as exc:
            self._logger.info("state_dict_load_failed path=%s", model_path.as_posix())
            raise app_error(ErrorCode.load_error, f"Invalid model weights: {exc}") from exc
        self._logger.info("model_loaded model_id=%s arch=%s", manifest.model_id, manifest.arch)
        return ModelHandle(model, manifest)


if TYPE_CHECKING:

    def build_model(arch: str, n_classes: int) -> TorchModel: ...
else:

    def build_model(arch: str, n_classes: int) -> TorchModel:
        import importlib

        tv_models = importlib.import_module("torchvision.models")
        fn_obj = getattr(tv_models, arch, None)
        if arch not in _HEADS or not callable(fn_obj):
            raise app_error(ErrorCode.load_error, f"Unsupported arch: {arch}")
        return fn_obj(weights=None, num_classes=int(n_classes))


if TYPE_CHECKING:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]: ...
else:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]:
        m = build_model(arch=arch, n_classes=n_classes)
        return {str(k): v for k, v in m.state_dict().items()}


def load_state_dict_file(path: Path) -> dict[str, Tensor]:
    obj: object = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
    sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
    if not isinstance(sd_obj, dict):
        raise ValueError("state dict file did not contain a dict")
    out: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if isinstance(k, str) and torch.is_tensor(v):
            out[k] = v
        else:
            raise ValueError("invalid state dict entry")
    return out


def validate_state_dict(sd: dict[str, Tensor], arch: str, n_classes: int) -> None:
    head = _HEADS.get(arch)
    if head is None:
        raise ValueError(f"unsupported arch: {arch}")
    prefix, expected_in = head
    w = sd.get(f"{prefix}.weight")
    b = sd.get(f"{prefix}.bias")
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != n_classes or int(b.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match n_classes")
    if int(w.shape[1]) != expected_in:
        raise ValueError("classifier head in_features does not match backbone")
