from __future__ import annotations

from dataclasses import dataclass

import torch
from torch import Tensor

from .detection import Detection
from .kernels import ResampleMethod, resample_region, sigmoid_tensor
from .tensor import OutputTensor
from .topology import AxisLayout, Topology
from .types import Box


@dataclass(frozen=True)
class PrototypeBank:
    protos: Tensor  # (K, Hm, Wm) float32

    @property
    def channels(self) -> int:
        return int(self.protos.shape[0])

    @property
    def height(self) -> int:
        return int(self.protos.shape[1])

    @property
    def width(self) -> int:
        return int(self.protos.shape[2])

    @staticmethod
    def from_output(tensor: OutputTensor, topology: Topology) -> PrototypeBank:
        s = tensor.strides[-3:]
        shape = (topology.mask_dims, topology.proto_height, topology.proto_width)
        if topology.proto_layout is AxisLayout.channels_last:
            view = tensor.view(shape, (s[2], s[0], s[1]))
        else:
            view = tensor.view(shape, s)
        return PrototypeBank(protos=view.to(dtype=torch.float32).contiguous())


def compose(detection: Detection, bank: PrototypeBank) -> Tensor:
    """Low-resolution mask probabilities: sigmoid of the coefficient-weighted prototype sum."""
    k = len(detection.mask_coefficients)
    if k != bank.channels:
        raise ValueError(f"{k} mask coefficients for a bank of {bank.channels} prototypes")
    coeffs = torch.tensor(detection.mask_coefficients, dtype=torch.float32)
    linear = coeffs @ bank.protos.reshape(k, -1)
    return sigmoid_tensor(linear.reshape(bank.height, bank.width))


def upsample_in_box(
    grid: Tensor, input_size: tuple[int, int], box: Box, method: ResampleMethod
) -> Tensor:
    h, w = input_size
    return resample_region(grid, h, w, box, method)
