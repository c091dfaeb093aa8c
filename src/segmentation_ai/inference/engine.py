from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

import torch
from torch import Tensor

from ..config import Settings
from ..decode.pipeline import segment
from ..decode.topology import AxisLayout, ModelFamily, resolve_topology
from ..decode.types import SegmentOptions
from ..errors import AppError
from ..labels import LabelTable, ListLabelTable
from ..logging import get_logger
from ..preprocess import preprocess_signature
from .manifest import ModelManifest
from .runtime import InferenceRuntime, ModelHandle, TorchScriptRuntime
from .types import SegmentOutput

_MANIFEST_NAME: Final[str] = "manifest.json"
_MODEL_NAME: Final[str] = "model.pt"


@dataclass(frozen=True)
class _ArtifactStamp:
    manifest_mtime: float
    model_mtime: float

    @staticmethod
    def read(model_dir: Path) -> _ArtifactStamp | None:
        try:
            return _ArtifactStamp(
                manifest_mtime=(model_dir / _MANIFEST_NAME).stat().st_mtime,
                model_mtime=(model_dir / _MODEL_NAME).stat().st_mtime,
            )
        except OSError:
            get_logger().info("artifact_mtime_unavailable dir=%s", model_dir)
            return None

    def older_than(self, other: _ArtifactStamp) -> bool:
        return other.manifest_mtime > self.manifest_mtime or other.model_mtime > self.model_mtime


@dataclass(frozen=True)
class _LoadedModel:
    runtime: InferenceRuntime
    handle: ModelHandle
    manifest: ModelManifest
    labels: LabelTable
    family: ModelFamily


class SegmentationEngine:
    """Runs the active model and decodes its outputs on a bounded thread pool.

    The loaded model is swapped atomically under a lock, so a hot reload
    never mixes one model's outputs with another model's labels.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._options = SegmentOptions.from_settings(settings)
        self._pool = _make_pool(settings)
        self._lock = threading.RLock()
        self._runtime: InferenceRuntime | None = None
        self._handle: ModelHandle | None = None
        self._manifest: ModelManifest | None = None
        self._labels: LabelTable = ListLabelTable([])
        self._family: ModelFamily = ModelFamily.unsupported
        self._model_dir: Path | None = None
        self._stamp: _ArtifactStamp | None = None
        torch.set_num_threads(1)

    @property
    def ready(self) -> bool:
        return self._handle is not None and self._manifest is not None

    @property
    def model_id(self) -> str | None:
        man = self._manifest
        return man.model_id if man is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    @property
    def family(self) -> ModelFamily:
        return self._family

    @property
    def labels(self) -> LabelTable:
        return self._labels

    @property
    def options(self) -> SegmentOptions:
        return self._options

    def submit_segment(self, input_tensor: Tensor) -> Future[SegmentOutput]:
        return self._pool.submit(self._segment_impl, input_tensor)

    def _segment_impl(self, input_tensor: Tensor) -> SegmentOutput:
        with self._lock:
            runtime, handle, man = self._runtime, self._handle, self._manifest
            labels, family = self._labels, self._family
        if runtime is None or handle is None or man is None:
            raise RuntimeError("Model not loaded")
        outputs = runtime.run(handle, input_tensor)
        opts = replace(self._options, input_layout=_axis_layout(man))
        results = segment(input_tensor, outputs, labels, opts)
        return SegmentOutput(results=tuple(results), model_id=man.model_id, family=family.value)

    def try_load_active(self) -> None:
        """Load `<model_dir>/<active_model>`; on any artifact problem keep the current state."""
        model_dir = self._settings.segment.model_dir / self._settings.segment.active_model
        if not ((model_dir / _MANIFEST_NAME).exists() and (model_dir / _MODEL_NAME).exists()):
            return
        loaded = self._load_from(model_dir)
        if loaded is None:
            return
        stamp = _ArtifactStamp.read(model_dir)
        with self._lock:
            self._runtime = loaded.runtime
            self._handle = loaded.handle
            self._manifest = loaded.manifest
            self._labels = loaded.labels
            self._family = loaded.family
            self._model_dir = model_dir
            self._stamp = stamp

    def _load_from(self, model_dir: Path) -> _LoadedModel | None:
        log = get_logger()
        try:
            manifest = ModelManifest.from_path(model_dir / _MANIFEST_NAME)
        except (OSError, ValueError) as exc:
            log.info("manifest_load_failed model_dir=%s error=%s", model_dir, exc)
            return None
        if manifest.preprocess_hash != preprocess_signature():
            log.info("preprocess_signature_mismatch model_id=%s", manifest.model_id)
            return None
        labels = _load_labels(model_dir / manifest.labels_file)
        runtime = TorchScriptRuntime(
            model_dir / _MODEL_NAME, manifest.model_id, _input_shape(manifest)
        )
        try:
            handle = runtime.load_model()
        except AppError as err:
            log.info("model_load_failed model_id=%s error=%r", manifest.model_id, err.message)
            return None
        topo = resolve_topology(
            handle.output_shapes,
            labels.label_count(),
            default_num_classes=self._options.default_num_classes,
            min_features=self._options.min_features,
            min_anchors=self._options.min_anchors,
        )
        if not topo.supported:
            # Still served: every request decodes to an empty result list
            log.info(
                "model_topology_unsupported model_id=%s reason=%r", manifest.model_id, topo.reason
            )
        return _LoadedModel(runtime, handle, manifest, labels, topo.family)

    def reload_if_changed(self) -> bool:
        """Reload when the manifest or weights changed on disk; True if reloaded and ready."""
        model_dir, stamp = self._model_dir, self._stamp
        if model_dir is None or stamp is None:
            return False
        current = _ArtifactStamp.read(model_dir)
        if current is None or not stamp.older_than(current):
            return False
        self.try_load_active()
        return self.ready


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    size = settings.app.threads if settings.app.threads > 0 else min(4, os.cpu_count() or 1)
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="segment")


def _input_shape(man: ModelManifest) -> tuple[int, int, int, int]:
    if man.input_layout == "nchw":
        return (1, 3, man.input_height, man.input_width)
    return (1, man.input_height, man.input_width, 3)


def _axis_layout(man: ModelManifest) -> AxisLayout:
    if man.input_layout == "nchw":
        return AxisLayout.channels_first
    return AxisLayout.channels_last


def _load_labels(path: Path) -> LabelTable:
    try:
        return ListLabelTable.from_path(path)
    except (OSError, UnicodeDecodeError):
        # Decoding still works without names; classes fall back to "Class <index>"
        get_logger().info("labels_unavailable path=%s", path)
        return ListLabelTable([])
