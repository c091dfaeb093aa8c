from __future__ import annotations

from dataclasses import dataclass
from typing import Final

import torch

from ..errors import ErrorCode
from ..logging import get_logger
from .kernels import round_half_away, sigmoid_tensor
from .tensor import OutputTensor
from .topology import Topology
from .types import Box

# Boxes whose components all stay within this bound are treated as normalized
_NORMALIZED_BOX_LIMIT: Final[float] = 1.5


@dataclass(frozen=True)
class Detection:
    class_index: int
    score: float
    box: Box
    mask_coefficients: tuple[float, ...]


def decode_detections(
    tensor: OutputTensor,
    topology: Topology,
    input_size: tuple[int, int],
    *,
    conf_threshold: float,
    max_detections: int,
) -> list[Detection]:
    """Decode a (1, features, anchors) tensor into candidate detections.

    Equivalent to scanning anchors in index order and keeping the first
    `max_detections` that pass the score filter and have a non-degenerate
    box. The cap is a scan-order cut, not a top-K by score, and no
    suppression is applied between overlapping detections.
    """
    if max_detections <= 0:
        return []
    h, w = input_size
    nc = topology.num_classes
    md = topology.mask_dims
    feats = tensor.view((topology.features, topology.anchors), tensor.strides[1:])

    boxes = feats[0:4]
    normalized = boxes.abs().amax(dim=0) <= _NORMALIZED_BOX_LIMIT
    scale = torch.tensor([w, h, w, h], dtype=torch.float64).unsqueeze(1)
    boxes = torch.where(normalized.unsqueeze(0), boxes * scale, boxes)
    cx, cy, bw, bh = boxes[0], boxes[1], boxes[2], boxes[3]

    # Class block holds raw logits
    scores, classes = sigmoid_tensor(feats[4 : 4 + nc]).max(dim=0)
    coeffs = feats[4 + nc : 4 + nc + md]

    x1 = torch.clamp(round_half_away(cx - bw / 2.0), 0, w - 1)
    y1 = torch.clamp(round_half_away(cy - bh / 2.0), 0, h - 1)
    x2 = torch.clamp(round_half_away(cx + bw / 2.0), 0, w - 1)
    y2 = torch.clamp(round_half_away(cy + bh / 2.0), 0, h - 1)

    passing = scores >= conf_threshold
    keep = passing & (x2 > x1) & (y2 > y1)
    picked = torch.nonzero(keep).reshape(-1)[:max_detections].tolist()

    out: list[Detection] = []
    for a in picked:
        out.append(
            Detection(
                class_index=int(classes[a].item()),
                score=float(scores[a].item()),
                box=(int(x1[a].item()), int(y1[a].item()), int(x2[a].item()), int(y2[a].item())),
                mask_coefficients=tuple(float(v) for v in coeffs[:, a].tolist()),
            )
        )
    degenerate = int((passing & ~keep).sum().item())
    log = get_logger()
    if degenerate:
        log.debug("%s anchors_skipped=%d", ErrorCode.decode_degenerate.value, degenerate)
    log.debug(
        "detections_decoded anchors=%d passing=%d degenerate=%d kept=%d",
        topology.anchors,
        int(passing.sum().item()),
        degenerate,
        len(out),
    )
    return out
