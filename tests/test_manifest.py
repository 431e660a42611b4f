from __future__ import annotations

import json
from pathlib import Path

import pytest

from anemia_screen.inference.manifest import ModelManifest


def _base() -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": "conjunctiva_v1",
        "arch": "resnet18",
        "n_classes": 2,
        "input_size": 224,
        "version": "1.0.0",
        "created_at": "2024-03-01T10:00:00+00:00",
    }


def test_from_path_and_defaults(tmp_path: Path) -> None:
    p = tmp_path / "manifest.json"
    p.write_text(json.dumps(_base()), encoding="utf-8")
    m = ModelManifest.from_path(p)
    assert m.model_id == "conjunctiva_v1"
    assert m.outputs == "probs"
    assert m.created_at.year == 2024
    d = m.to_dict()
    assert d["arch"] == "resnet18" and d["n_classes"] == 2


def test_to_dict_round_trips() -> None:
    m = ModelManifest.from_dict(dict(_base(), outputs="logits"))
    assert ModelManifest.from_dict(m.to_dict()) == m


@pytest.mark.parametrize(
    "override",
    [
        {"n_classes": 10},
        {"input_size": 0},
        {"outputs": "scores"},
        {"schema_version": "v9"},
        {"arch": "vgg16"},
        {"model_id": ""},
    ],
)
def test_invalid_fields_rejected(override: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_dict(dict(_base(), **override))


def test_non_object_json_rejected() -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_json("[1, 2, 3]")
