from __future__ import annotations

from dataclasses import dataclass

from ..decode.types import SegmentationResult


@dataclass(frozen=True)
class SegmentOutput:
    results: tuple[SegmentationResult, ...]
    model_id: str
    family: str
