from __future__ import annotations

from enum import Enum
from typing import TypeVar

import torch
from torch import Tensor

_N = TypeVar("_N", int, float)


class ResampleMethod(str, Enum):
    nearest = "nearest"
    bilinear = "bilinear"


def sigmoid_tensor(t: Tensor) -> Tensor:
    if not t.is_floating_point():
        t = t.to(dtype=torch.float32)
    return torch.sigmoid(t)


def clamp(v: _N, lo: _N, hi: _N) -> _N:
    if v < lo:
        return lo
    if v > hi:
        return hi
    return v


def round_half_away(t: Tensor) -> Tensor:
    return torch.sign(t) * torch.floor(torch.abs(t) + 0.5)


def resample(grid: Tensor, out_h: int, out_w: int, method: ResampleMethod) -> Tensor:
    return resample_region(grid, out_h, out_w, (0, 0, out_w - 1, out_h - 1), method)


def resample_region(
    grid: Tensor,
    out_h: int,
    out_w: int,
    region: tuple[int, int, int, int],
    method: ResampleMethod,
) -> Tensor:
    """Resample a 2-D grid to (out_h, out_w), materializing only `region`.

    `region` is (x1, y1, x2, y2) with inclusive bounds in output coordinates.
    The source mapping is that of the full output grid, so a region cut from
    the full resample and a direct region resample are identical.

    Bilinear uses the corner-aligned mapping `scale = (in - 1) / (out - 1)`.
    Nearest maps `dst` to `floor(dst * in / out)`. Nearest keeps the input
    dtype; bilinear returns float32.
    """
    if grid.ndim != 2:
        raise ValueError("resample expects a 2-D grid")
    in_h = int(grid.shape[0])
    in_w = int(grid.shape[1])
    if in_h < 1 or in_w < 1 or out_h < 1 or out_w < 1:
        raise ValueError("resample dimensions must be positive")
    x1, y1, x2, y2 = region
    if not (0 <= x1 <= x2 < out_w and 0 <= y1 <= y2 < out_h):
        raise ValueError(f"region {region} outside output grid {out_w}x{out_h}")

    if method is ResampleMethod.nearest:
        sy = _nearest_indices(y1, y2, in_h, out_h)
        sx = _nearest_indices(x1, x2, in_w, out_w)
        return grid.index_select(0, sy).index_select(1, sx)

    y0i, y1i, wy = _bilinear_taps(y1, y2, in_h, out_h)
    x0i, x1i, wx = _bilinear_taps(x1, x2, in_w, out_w)
    g = grid.to(dtype=torch.float32)
    top = g.index_select(0, y0i)
    bottom = g.index_select(0, y1i)
    wx_row = wx.unsqueeze(0)
    top_blend = top.index_select(1, x0i) * (1.0 - wx_row) + top.index_select(1, x1i) * wx_row
    bot_blend = bottom.index_select(1, x0i) * (1.0 - wx_row) + bottom.index_select(1, x1i) * wx_row
    wy_col = wy.unsqueeze(1)
    return top_blend * (1.0 - wy_col) + bot_blend * wy_col


def _nearest_indices(lo: int, hi: int, in_len: int, out_len: int) -> Tensor:
    dst = torch.arange(lo, hi + 1, dtype=torch.int64)
    return torch.clamp((dst * in_len) // out_len, max=in_len - 1)


def _bilinear_taps(lo: int, hi: int, in_len: int, out_len: int) -> tuple[Tensor, Tensor, Tensor]:
    scale = (in_len - 1) / (out_len - 1) if out_len > 1 else 0.0
    src = torch.arange(lo, hi + 1, dtype=torch.float64) * scale
    i0 = torch.clamp(torch.floor(src).to(dtype=torch.int64), 0, in_len - 1)
    i1 = torch.clamp(i0 + 1, max=in_len - 1)
    frac = torch.clamp(src - i0.to(dtype=torch.float64), 0.0, 1.0).to(dtype=torch.float32)
    return i0, i1, frac
