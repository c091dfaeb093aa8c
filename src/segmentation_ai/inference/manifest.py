from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)
_LAYOUTS: Final[tuple[str, ...]] = ("nhwc", "nchw")
_DEFAULT_INPUT_SIDE: Final[int] = 640
_DEFAULT_LABELS_FILE: Final[str] = "labels.txt"


@dataclass(frozen=True)
class ModelManifest:
    """Sidecar metadata stored next to `model.pt` as `manifest.json`."""

    schema_version: str
    model_id: str
    arch: str
    input_width: int
    input_height: int
    input_layout: str
    labels_file: str
    version: str
    created_at: datetime
    preprocess_hash: str

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        return ModelManifest.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: Mapping[str, object]) -> ModelManifest:
        schema_version = _required(d, "schema_version")
        if schema_version not in _SCHEMA_VERSIONS:
            raise ValueError(f"unsupported manifest schema version {schema_version!r}")
        layout = _optional(d, "input_layout", "nhwc").lower()
        if layout not in _LAYOUTS:
            raise ValueError(f"input_layout must be one of {_LAYOUTS}")
        labels_file = _optional(d, "labels_file", _DEFAULT_LABELS_FILE)
        if "/" in labels_file or "\\" in labels_file:
            raise ValueError("labels_file must be a plain file name")
        return ModelManifest(
            schema_version=schema_version,
            model_id=_required(d, "model_id"),
            arch=_required(d, "arch"),
            input_width=_side(d, "input_width"),
            input_height=_side(d, "input_height"),
            input_layout=layout,
            labels_file=labels_file,
            version=_required(d, "version"),
            created_at=_created_at(d),
            preprocess_hash=_required(d, "preprocess_hash"),
        )


def _required(d: Mapping[str, object], key: str) -> str:
    v = str(d.get(key, "")).strip()
    if not v:
        raise ValueError(f"manifest field {key!r} is required")
    return v


def _optional(d: Mapping[str, object], key: str, default: str) -> str:
    v = str(d.get(key, default)).strip()
    return v or default


def _side(d: Mapping[str, object], key: str) -> int:
    n = int(str(d.get(key, _DEFAULT_INPUT_SIDE)))
    if n < 1:
        raise ValueError(f"{key} must be positive")
    return n


def _created_at(d: Mapping[str, object]) -> datetime:
    raw = str(d.get("created_at", "")).strip()
    return datetime.fromisoformat(raw) if raw else datetime.now(UTC)
