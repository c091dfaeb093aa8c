from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import torch
from PIL import Image
from torch import Tensor

from .kernels import ResampleMethod
from .topology import (
    DEFAULT_NUM_CLASSES,
    MIN_DETECTION_ANCHORS,
    MIN_DETECTION_FEATURES,
    AxisLayout,
)

if TYPE_CHECKING:
    from ..config import Settings

Box = tuple[int, int, int, int]


class ConfidencePolicy(str, Enum):
    score = "score"
    mask_fraction = "mask_fraction"


@dataclass(frozen=True)
class SegmentationResult:
    id: int
    label: str
    confidence: float
    mask: Tensor  # (H, W) uint8 in {0, 1} at input resolution
    box: Box | None = None

    @property
    def area(self) -> int:
        return int(self.mask.sum().item())

    def mask_image(self, scale: int = 255) -> Image.Image:
        m = (self.mask.to(dtype=torch.int32) * int(scale)).clamp(0, 255).to(dtype=torch.uint8)
        h = int(m.shape[0])
        w = int(m.shape[1])
        return Image.frombytes("L", (w, h), bytes(m.contiguous().reshape(-1).tolist()))


@dataclass(frozen=True)
class SegmentOptions:
    conf_threshold: float = 0.25
    mask_threshold: float = 0.5
    max_detections: int = 100
    resample: ResampleMethod = ResampleMethod.bilinear
    confidence_policy: ConfidencePolicy = ConfidencePolicy.score
    default_num_classes: int = DEFAULT_NUM_CLASSES
    min_features: int = MIN_DETECTION_FEATURES
    min_anchors: int = MIN_DETECTION_ANCHORS
    # Channel axis of the model input; None guesses it from the shape
    input_layout: AxisLayout | None = None

    @staticmethod
    def from_settings(s: Settings) -> SegmentOptions:
        seg = s.segment
        return SegmentOptions(
            conf_threshold=float(seg.conf_threshold),
            mask_threshold=float(seg.mask_threshold),
            max_detections=int(seg.max_detections),
            resample=ResampleMethod(seg.resample),
            confidence_policy=ConfidencePolicy(seg.confidence_policy),
            default_num_classes=int(seg.default_num_classes),
        )
