from __future__ import annotations

from .detection import Detection
from .kernels import ResampleMethod
from .pipeline import segment
from .tensor import ElementKind, OutputTensor
from .topology import AxisLayout, ModelFamily, Topology, resolve_topology
from .types import ConfidencePolicy, SegmentationResult, SegmentOptions

__all__ = [
    "AxisLayout",
    "ConfidencePolicy",
    "Detection",
    "ElementKind",
    "ModelFamily",
    "OutputTensor",
    "ResampleMethod",
    "SegmentOptions",
    "SegmentationResult",
    "Topology",
    "resolve_topology",
    "segment",
]
