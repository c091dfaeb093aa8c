from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class SegmentItem:
    id: int
    label: str
    confidence: float
    box: list[int] | None
    area: int
    mask_png_b64: str | None


@pydantic_dataclass(frozen=True)
class SegmentResponse:
    model_id: str
    family: str
    results: list[SegmentItem]
    latency_ms: int
