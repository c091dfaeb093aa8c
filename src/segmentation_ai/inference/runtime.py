from __future__ import annotations

import threading
import zipfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..decode.tensor import OutputTensor
from ..errors import runtime_failure
from ..logging import get_logger

_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    zipfile.BadZipFile,
)


class TorchModule(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> object: ...


@dataclass(frozen=True)
class ModelHandle:
    """Opaque, read-only capability for one loaded model."""

    model_id: str
    input_shape: tuple[int, ...]
    output_shapes: tuple[tuple[int, ...], ...]
    module: TorchModule = field(repr=False, compare=False)


class InferenceRuntime(Protocol):
    def load_model(self) -> ModelHandle: ...
    def output_shape(self, handle: ModelHandle, index: int) -> tuple[int, ...]: ...
    def run(self, handle: ModelHandle, input_tensor: Tensor) -> tuple[OutputTensor, ...]: ...


def output_tensor_count(runtime: InferenceRuntime, handle: ModelHandle) -> int:
    # Enumerate by probing ascending indices; the first miss ends the list
    n = 0
    while True:
        try:
            runtime.output_shape(handle, n)
        except IndexError:
            return n
        n += 1


class TorchScriptRuntime:
    """Runs a TorchScript module on CPU.

    Output shapes are discovered once at load time by a forward pass on a
    zero tensor of the declared input shape.
    """

    def __init__(self, model_path: Path, model_id: str, input_shape: Sequence[int]) -> None:
        self._model_path = model_path
        self._model_id = model_id
        self._input_shape = tuple(int(d) for d in input_shape)
        self._lock = threading.Lock()
        self._handle: ModelHandle | None = None

    def load_model(self) -> ModelHandle:
        with self._lock:
            if self._handle is not None:
                return self._handle
            try:
                module = _load_scripted(self._model_path)
            except _LOAD_ERRORS as exc:
                raise runtime_failure(f"failed to load model {self._model_id}: {exc}") from exc
            module.eval()
            probe = _forward(module, torch.zeros(self._input_shape, dtype=torch.float32))
            shapes = tuple(tuple(int(d) for d in t.shape) for t in probe)
            handle = ModelHandle(
                model_id=self._model_id,
                input_shape=self._input_shape,
                output_shapes=shapes,
                module=module,
            )
            get_logger().info(
                "model_loaded model_id=%s input=%s outputs=%s",
                self._model_id,
                list(self._input_shape),
                [list(s) for s in shapes],
            )
            self._handle = handle
            return handle

    def output_shape(self, handle: ModelHandle, index: int) -> tuple[int, ...]:
        if not (0 <= index < len(handle.output_shapes)):
            raise IndexError(f"model has no output tensor at index {index}")
        return handle.output_shapes[index]

    def run(self, handle: ModelHandle, input_tensor: Tensor) -> tuple[OutputTensor, ...]:
        expected = output_tensor_count(self, handle)
        outputs = _forward(handle.module, input_tensor.to(dtype=torch.float32))
        if expected <= 1:
            return (OutputTensor.from_tensor(outputs[0]),)
        if len(outputs) < expected:
            raise runtime_failure(f"model returned {len(outputs)} outputs, expected {expected}")
        return tuple(OutputTensor.from_tensor(t) for t in outputs[:expected])


def _forward(module: TorchModule, x: Tensor) -> list[Tensor]:
    try:
        with torch.no_grad():
            raw = module(x)
    except (RuntimeError, ValueError, TypeError) as exc:
        raise runtime_failure(f"model execution failed: {exc}") from exc
    outs = _flatten_outputs(raw)
    if not outs:
        raise runtime_failure("model returned no tensors")
    return outs


def _flatten_outputs(raw: object) -> list[Tensor]:
    if isinstance(raw, Tensor):
        return [raw]
    if isinstance(raw, Mapping):
        return [t for v in raw.values() for t in _flatten_outputs(v)]
    if isinstance(raw, list | tuple):
        return [t for v in raw for t in _flatten_outputs(v)]
    raise runtime_failure(f"unsupported model output type {type(raw).__name__}")


if TYPE_CHECKING:

    def _load_scripted(path: Path) -> TorchModule: ...
else:

    def _load_scripted(path: Path) -> TorchModule:
        return torch.jit.load(path.as_posix(), map_location=torch.device("cpu"))
