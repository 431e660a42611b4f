from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final, Literal

_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)
_ALLOWED_ARCHS: Final[tuple[str, ...]] = ("resnet18", "mobilenet_v3_small")

OutputKind = Literal["probs", "logits"]


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    arch: str
    n_classes: int
    input_size: int
    version: str
    created_at: datetime
    outputs: OutputKind

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        created_at_str = str(d["created_at"]) if "created_at" in d else ""
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now()
        n_classes = int(str(d.get("n_classes", 2)))
        input_size = int(str(d.get("input_size", 224)))
        if n_classes != 2:
            raise ValueError("screening models must have exactly 2 classes")
        if input_size <= 0:
            raise ValueError("input_size must be > 0")
        outputs = str(d.get("outputs", "probs")).strip()
        if outputs not in ("probs", "logits"):
            raise ValueError("outputs must be 'probs' or 'logits'")
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        arch = str(d.get("arch", "")).strip()
        version = str(d.get("version", "")).strip()
        if not schema_version or not model_id or not arch or not version:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        if arch not in _ALLOWED_ARCHS:
            raise ValueError(f"unsupported arch: {arch}")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            arch=arch,
            n_classes=n_classes,
            input_size=input_size,
            version=version,
            created_at=created,
            outputs="logits" if outputs == "logits" else "probs",
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "arch": self.arch,
            "n_classes": self.n_classes,
            "input_size": self.input_size,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "outputs": self.outputs,
        }
