from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

import torch
from torch import Tensor


class ElementKind(str, Enum):
    floating = "float"
    integer = "int"


@dataclass(frozen=True)
class OutputTensor:
    """Flat contiguous buffer with an explicit row-major shape/stride descriptor.

    Multi-dimensional access goes through stride arithmetic over `data`
    instead of nested containers. Strided views for vectorized math are
    built with `torch.as_strided` on the same buffer.
    """

    data: Tensor
    shape: tuple[int, ...]
    strides: tuple[int, ...]
    kind: ElementKind

    @staticmethod
    def from_tensor(t: Tensor) -> OutputTensor:
        flat = t.detach().to(device="cpu").contiguous().reshape(-1).clone()
        shape = tuple(int(d) for d in t.shape)
        kind = ElementKind.floating if t.is_floating_point() else ElementKind.integer
        return OutputTensor(data=flat, shape=shape, strides=_row_major(shape), kind=kind)

    @staticmethod
    def from_values(
        values: Sequence[float] | Sequence[int],
        shape: Sequence[int],
        kind: ElementKind | None = None,
    ) -> OutputTensor:
        dims = tuple(int(d) for d in shape)
        if any(d < 0 for d in dims):
            raise ValueError("shape dimensions must be non-negative")
        expected = math.prod(dims)
        if len(values) != expected:
            raise ValueError(f"expected {expected} values for shape {dims}, got {len(values)}")
        if kind is None:
            all_int = all(isinstance(v, int) for v in values)
            kind = ElementKind.integer if all_int else ElementKind.floating
        dtype = torch.int32 if kind is ElementKind.integer else torch.float32
        flat = torch.tensor(list(values), dtype=dtype)
        return OutputTensor(data=flat, shape=dims, strides=_row_major(dims), kind=kind)

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def numel(self) -> int:
        return int(self.data.numel())

    def offset(self, index: Sequence[int]) -> int:
        if len(index) != self.rank:
            raise IndexError(f"index rank {len(index)} does not match tensor rank {self.rank}")
        off = 0
        for axis, (i, dim, stride) in enumerate(zip(index, self.shape, self.strides, strict=True)):
            if not (0 <= i < dim):
                raise IndexError(f"index {i} out of range for axis {axis} of size {dim}")
            off += i * stride
        return off

    def at(self, *index: int) -> float:
        return float(self.data[self.offset(index)].item())

    def view(self, shape: Sequence[int], strides: Sequence[int]) -> Tensor:
        """Strided float64 view over the flat buffer; callers must not write through it."""
        return torch.as_strided(self.data, tuple(shape), tuple(strides)).to(dtype=torch.float64)


def _row_major(shape: tuple[int, ...]) -> tuple[int, ...]:
    strides: list[int] = []
    acc = 1
    for d in reversed(shape):
        strides.append(acc)
        acc *= d
    return tuple(reversed(strides))


def as_output_tensor(x: Tensor | OutputTensor) -> OutputTensor:
    if isinstance(x, OutputTensor):
        return x
    return OutputTensor.from_tensor(x)


def shape_of(x: Tensor | OutputTensor) -> tuple[int, ...]:
    if isinstance(x, OutputTensor):
        return x.shape
    return tuple(int(d) for d in x.shape)
