from __future__ import annotations

import time
from collections.abc import Sequence

from torch import Tensor

from ..errors import ErrorCode
from ..labels import LabelTable
from ..logging import get_logger, log_event
from .assembler import assemble
from .compositor import PrototypeBank
from .dense import decode_dense
from .detection import decode_detections
from .tensor import OutputTensor, as_output_tensor, shape_of
from .topology import ModelFamily, resolve_input_size, resolve_topology
from .types import SegmentationResult, SegmentOptions


def segment(
    input_tensor: Tensor | OutputTensor,
    output_tensors: Sequence[Tensor | OutputTensor],
    labels: LabelTable,
    options: SegmentOptions | None = None,
) -> list[SegmentationResult]:
    """Turn raw model outputs into an ordered list of labelled masks.

    Pure apart from logging. Unsupported output topologies and unreadable
    input shapes yield an empty list; an empty list is also the normal
    outcome when nothing passes the thresholds.
    """
    opts = options or SegmentOptions()
    t0 = time.perf_counter()
    logger = get_logger()

    in_shape = shape_of(input_tensor)
    input_size = resolve_input_size(in_shape, opts.input_layout)
    if input_size is None:
        logger.info("%s input_shape=%s", ErrorCode.topology_unsupported.value, list(in_shape))
        return []

    outputs = tuple(as_output_tensor(t) for t in output_tensors)
    topo = resolve_topology(
        [o.shape for o in outputs],
        labels.label_count(),
        default_num_classes=opts.default_num_classes,
        min_features=opts.min_features,
        min_anchors=opts.min_anchors,
    )
    if not topo.supported:
        logger.info(
            "%s outputs=%s reason=%r",
            ErrorCode.topology_unsupported.value,
            [list(o.shape) for o in outputs],
            topo.reason,
        )
        return []

    n_detections = 0
    if topo.family is ModelFamily.dense:
        results = decode_dense(outputs[0], topo, labels, input_size)
    else:
        detections = decode_detections(
            outputs[0],
            topo,
            input_size,
            conf_threshold=opts.conf_threshold,
            max_detections=opts.max_detections,
        )
        n_detections = len(detections)
        bank = PrototypeBank.from_output(outputs[1], topo)
        results = assemble(
            detections,
            bank,
            labels,
            input_size,
            mask_threshold=opts.mask_threshold,
            policy=opts.confidence_policy,
            method=opts.resample,
        )

    dt_ms = int((time.perf_counter() - t0) * 1000.0)
    log_event(
        "segment_finished",
        fields={
            "latency_ms": dt_ms,
            "family": topo.family.value,
            "detections": n_detections,
            "results": len(results),
        },
    )
    return results
