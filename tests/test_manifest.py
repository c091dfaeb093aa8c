from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from segmentation_ai.inference.manifest import ModelManifest
from segmentation_ai.preprocess import preprocess_signature


def _base() -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": "seg_a",
        "arch": "yolo11n-seg",
        "input_width": 320,
        "input_height": 256,
        "input_layout": "NCHW",
        "labels_file": "coco.txt",
        "version": "1.0.0",
        "created_at": datetime(2025, 1, 2, tzinfo=UTC).isoformat(),
        "preprocess_hash": preprocess_signature(),
    }


def test_from_path_roundtrip(tmp_path: Path) -> None:
    p = tmp_path / "manifest.json"
    p.write_text(json.dumps(_base()), encoding="utf-8")
    m = ModelManifest.from_path(p)
    assert m.model_id == "seg_a"
    assert (m.input_width, m.input_height) == (320, 256)
    assert m.input_layout == "nchw"
    assert m.labels_file == "coco.txt"
    assert m.created_at.year == 2025


def test_defaults_for_optional_fields() -> None:
    d = _base()
    for k in ("input_width", "input_height", "input_layout", "labels_file"):
        d.pop(k)
    m = ModelManifest.from_dict(d)
    assert (m.input_width, m.input_height) == (640, 640)
    assert m.input_layout == "nhwc"
    assert m.labels_file == "labels.txt"


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("schema_version", "v9"),
        ("model_id", ""),
        ("preprocess_hash", " "),
        ("input_layout", "chw"),
        ("input_width", 0),
        ("labels_file", "../etc/passwd"),
    ],
)
def test_invalid_fields_raise(key: str, value: object) -> None:
    d = _base()
    d[key] = value
    with pytest.raises(ValueError):
        ModelManifest.from_dict(d)


def test_from_json_requires_object() -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_json("[1, 2]")
