from __future__ import annotations

import pytest
import torch
from _logcap import capture_json_logs

from segmentation_ai.decode.assembler import assemble
from segmentation_ai.decode.compositor import PrototypeBank, compose, upsample_in_box
from segmentation_ai.decode.detection import Detection
from segmentation_ai.decode.kernels import ResampleMethod
from segmentation_ai.decode.tensor import OutputTensor
from segmentation_ai.decode.topology import resolve_topology
from segmentation_ai.decode.types import ConfidencePolicy, SegmentationResult
from segmentation_ai.labels import ListLabelTable


def _bank(protos: torch.Tensor) -> PrototypeBank:
    return PrototypeBank(protos=protos.to(dtype=torch.float32))


def _assemble(
    dets: list[Detection],
    bank: PrototypeBank,
    policy: ConfidencePolicy = ConfidencePolicy.score,
    threshold: float = 0.5,
) -> list[SegmentationResult]:
    return assemble(
        dets,
        bank,
        ListLabelTable(["a", "b", "c"]),
        (20, 20),
        mask_threshold=threshold,
        policy=policy,
        method=ResampleMethod.bilinear,
    )


def test_bank_from_channels_last_output() -> None:
    k, h, w = 3, 4, 5
    chw = torch.arange(k * h * w, dtype=torch.float32).reshape(k, h, w)
    hwc = chw.permute(1, 2, 0).contiguous()
    topo = resolve_topology(
        [(1, 4 + 2 + k, 1), tuple(hwc.shape)], 2, min_features=1, min_anchors=1
    )
    bank = PrototypeBank.from_output(OutputTensor.from_tensor(hwc), topo)
    assert (bank.channels, bank.height, bank.width) == (k, h, w)
    assert torch.equal(bank.protos, chw)


def test_bank_from_channels_first_output() -> None:
    protos = torch.rand((1, 2, 3, 3))
    topo = resolve_topology([(1, 7, 1), (1, 2, 3, 3)], 1, min_features=1, min_anchors=1)
    bank = PrototypeBank.from_output(OutputTensor.from_tensor(protos), topo)
    assert torch.equal(bank.protos, protos[0])


def test_zero_coefficients_compose_to_one_half() -> None:
    bank = _bank(torch.randn((4, 6, 7)))
    det = Detection(class_index=0, score=0.9, box=(0, 0, 5, 5), mask_coefficients=(0.0,) * 4)
    grid = compose(det, bank)
    assert tuple(grid.shape) == (6, 7)
    assert torch.allclose(grid, torch.full((6, 7), 0.5))


def test_compose_is_sigmoid_of_weighted_sum() -> None:
    protos = torch.tensor([[[1.0, -1.0]], [[2.0, 0.5]]])
    det = Detection(class_index=0, score=0.9, box=(0, 0, 1, 1), mask_coefficients=(1.0, -2.0))
    grid = compose(det, _bank(protos))
    expected = torch.sigmoid(torch.tensor([[1.0 - 4.0, -1.0 - 1.0]]))
    assert torch.allclose(grid, expected)


def test_compose_rejects_coefficient_mismatch() -> None:
    det = Detection(class_index=0, score=0.9, box=(0, 0, 1, 1), mask_coefficients=(1.0,))
    with pytest.raises(ValueError):
        compose(det, _bank(torch.zeros((2, 3, 3))))


def test_upsample_in_box_only_covers_the_box() -> None:
    grid = torch.full((4, 4), 0.8)
    out = upsample_in_box(grid, (32, 32), (3, 5, 10, 7), ResampleMethod.nearest)
    assert tuple(out.shape) == (3, 8)


def test_assemble_pastes_mask_inside_box() -> None:
    bank = _bank(torch.ones((1, 4, 4)))
    det = Detection(class_index=2, score=0.7, box=(4, 6, 9, 8), mask_coefficients=(10.0,))
    res = _assemble([det], bank)
    assert len(res) == 1
    r = res[0]
    assert r.label == "c" and r.id == 2
    assert r.box == (4, 6, 9, 8)
    assert tuple(r.mask.shape) == (20, 20)
    assert r.area == 6 * 3
    assert int(r.mask[6:9, 4:10].sum()) == 18
    assert r.confidence == 0.7


def test_assemble_drops_empty_masks() -> None:
    bank = _bank(torch.ones((1, 4, 4)))
    det = Detection(class_index=0, score=0.9, box=(0, 0, 5, 5), mask_coefficients=(-10.0,))
    with capture_json_logs() as buf:
        assert _assemble([det], bank) == []
    assert "decode_degenerate class=0" in buf.getvalue()


def test_mask_threshold_is_inclusive() -> None:
    # A 1x1 grid upsamples without interpolation error
    bank = _bank(torch.ones((1, 1, 1)))
    det = Detection(class_index=0, score=0.9, box=(0, 0, 3, 3), mask_coefficients=(0.0,))
    assert len(_assemble([det], bank, threshold=0.5)) == 1
    assert _assemble([det], bank, threshold=0.51) == []


def test_mask_fraction_policy() -> None:
    # Left half of the prototype is on, right half off
    protos = torch.tensor([[[5.0, 5.0, -5.0, -5.0]] * 4])
    det = Detection(class_index=1, score=0.3, box=(0, 0, 19, 19), mask_coefficients=(1.0,))
    res = _assemble([det], _bank(protos), policy=ConfidencePolicy.mask_fraction)
    r = res[0]
    assert 0.0 < r.confidence < 1.0
    assert r.confidence == r.area / 400


def test_results_sorted_descending_and_stable() -> None:
    bank = _bank(torch.ones((1, 4, 4)))
    dets = [
        Detection(class_index=0, score=0.4, box=(0, 0, 3, 3), mask_coefficients=(10.0,)),
        Detection(class_index=1, score=0.9, box=(5, 5, 9, 9), mask_coefficients=(10.0,)),
        Detection(class_index=2, score=0.4, box=(10, 10, 12, 12), mask_coefficients=(10.0,)),
    ]
    res = _assemble(dets, bank)
    assert [r.id for r in res] == [1, 0, 2]


def test_mask_image_renders_binary_mask_as_grayscale() -> None:
    mask = torch.tensor([[0, 1, 1], [0, 0, 1]], dtype=torch.uint8)
    r = SegmentationResult(id=3, label="c", confidence=0.5, mask=mask, box=(0, 0, 2, 1))
    img = r.mask_image()
    assert img.mode == "L"
    assert img.size == (3, 2)
    assert list(img.getdata()) == [0, 255, 255, 0, 0, 255]
    assert r.area == 3
