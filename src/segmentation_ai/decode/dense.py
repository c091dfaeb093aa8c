from __future__ import annotations

from typing import Final

import torch
from torch import Tensor

from ..labels import LabelTable, label_or_default
from ..logging import get_logger
from .kernels import ResampleMethod, resample
from .tensor import ElementKind, OutputTensor
from .topology import AxisLayout, Topology
from .types import SegmentationResult

_FLOAT_FOREGROUND: Final[float] = 0.5
_QUANTIZED_FOREGROUND: Final[int] = 128
_FOREGROUND_LABEL: Final[str] = "foreground"


def decode_dense(
    tensor: OutputTensor,
    topology: Topology,
    labels: LabelTable,
    input_size: tuple[int, int],
) -> list[SegmentationResult]:
    grid = _hwc_view(tensor, topology)
    if topology.channels == 1:
        return [_decode_binary(grid[:, :, 0], tensor.kind, labels, input_size)]
    return _decode_argmax(grid, labels, input_size)


def _hwc_view(tensor: OutputTensor, topology: Topology) -> Tensor:
    # Reorder axes to (H, W, C) purely through strides
    s = tensor.strides[-3:]
    shape = (topology.height, topology.width, topology.channels)
    if topology.layout is AxisLayout.channels_first:
        return tensor.view(shape, (s[1], s[2], s[0]))
    return tensor.view(shape, s)


def _decode_binary(
    values: Tensor, kind: ElementKind, labels: LabelTable, input_size: tuple[int, int]
) -> SegmentationResult:
    threshold = _QUANTIZED_FOREGROUND if kind is ElementKind.integer else _FLOAT_FOREGROUND
    mask = _to_input_size((values >= threshold).to(dtype=torch.uint8), input_size)
    total = int(mask.numel())
    fg = int(mask.sum().item())
    label = labels.label_at(1) if labels.label_count() >= 2 else _FOREGROUND_LABEL
    return SegmentationResult(id=1, label=label, confidence=fg / total, mask=mask)


def _decode_argmax(
    grid: Tensor, labels: LabelTable, input_size: tuple[int, int]
) -> list[SegmentationResult]:
    # argmax returns the first maximal channel, so ties go to the lower class index
    class_map = _to_input_size(torch.argmax(grid, dim=2), input_size)
    channels = int(grid.shape[2])
    total = int(class_map.numel())
    counts = torch.bincount(class_map.reshape(-1), minlength=channels)
    results: list[SegmentationResult] = []
    for cls in range(channels):
        n = int(counts[cls].item())
        if n == 0:
            continue
        results.append(
            SegmentationResult(
                id=cls,
                label=label_or_default(labels, cls),
                confidence=n / total,
                mask=(class_map == cls).to(dtype=torch.uint8),
            )
        )
    results.sort(key=lambda r: (-r.confidence, r.id))
    get_logger().debug(
        "dense_decoded classes=%d present=%d pixels=%d", channels, len(results), total
    )
    return results


def _to_input_size(grid: Tensor, input_size: tuple[int, int]) -> Tensor:
    h, w = input_size
    if int(grid.shape[0]) == h and int(grid.shape[1]) == w:
        return grid
    return resample(grid, h, w, ResampleMethod.nearest)
