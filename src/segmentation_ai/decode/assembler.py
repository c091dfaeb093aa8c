from __future__ import annotations

from collections.abc import Sequence

import torch

from ..errors import ErrorCode
from ..labels import LabelTable, label_or_default
from ..logging import get_logger
from .compositor import PrototypeBank, compose, upsample_in_box
from .detection import Detection
from .kernels import ResampleMethod, clamp
from .types import ConfidencePolicy, SegmentationResult


def assemble(
    detections: Sequence[Detection],
    bank: PrototypeBank,
    labels: LabelTable,
    input_size: tuple[int, int],
    *,
    mask_threshold: float,
    policy: ConfidencePolicy,
    method: ResampleMethod,
) -> list[SegmentationResult]:
    h, w = input_size
    results: list[SegmentationResult] = []
    for det in detections:
        x1, y1, x2, y2 = det.box
        probs = upsample_in_box(compose(det, bank), input_size, det.box, method)
        on = probs >= mask_threshold
        n_on = int(on.sum().item())
        if n_on == 0:
            get_logger().debug(
                "%s class=%d box=%s", ErrorCode.decode_degenerate.value, det.class_index, det.box
            )
            continue
        mask = torch.zeros((h, w), dtype=torch.uint8)
        mask[y1 : y2 + 1, x1 : x2 + 1] = on.to(dtype=torch.uint8)
        if policy is ConfidencePolicy.mask_fraction:
            conf = n_on / ((x2 - x1 + 1) * (y2 - y1 + 1))
        else:
            conf = det.score
        results.append(
            SegmentationResult(
                id=det.class_index,
                label=label_or_default(labels, det.class_index),
                confidence=clamp(float(conf), 0.0, 1.0),
                mask=mask,
                box=det.box,
            )
        )
    # Stable sort: ties keep detection order
    results.sort(key=lambda r: r.confidence, reverse=True)
    return results
