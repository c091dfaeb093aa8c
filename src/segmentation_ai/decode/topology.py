from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Final

DEFAULT_NUM_CLASSES: Final[int] = 80
MIN_DETECTION_FEATURES: Final[int] = 100
MIN_DETECTION_ANCHORS: Final[int] = 1000
_BOX_FEATURES: Final[int] = 4
_IMAGE_CHANNELS: Final[tuple[int, ...]] = (1, 3, 4)


class ModelFamily(str, Enum):
    dense = "dense"
    detection_prototype = "detection_prototype"
    unsupported = "unsupported"


class AxisLayout(str, Enum):
    channels_last = "channels_last"
    channels_first = "channels_first"
    flat_feature = "flat_feature"


@dataclass(frozen=True)
class Topology:
    family: ModelFamily
    layout: AxisLayout | None = None
    # dense grid
    height: int = 0
    width: int = 0
    channels: int = 0
    # detection tensor
    features: int = 0
    anchors: int = 0
    num_classes: int = 0
    mask_dims: int = 0
    # prototype bank
    proto_layout: AxisLayout | None = None
    proto_height: int = 0
    proto_width: int = 0
    reason: str = ""

    @property
    def supported(self) -> bool:
        return self.family is not ModelFamily.unsupported


def unsupported(reason: str) -> Topology:
    return Topology(family=ModelFamily.unsupported, reason=reason)


def resolve_topology(
    output_shapes: Sequence[Sequence[int]],
    label_count: int,
    *,
    default_num_classes: int = DEFAULT_NUM_CLASSES,
    min_features: int = MIN_DETECTION_FEATURES,
    min_anchors: int = MIN_DETECTION_ANCHORS,
) -> Topology:
    """Classify a set of output tensor shapes into exactly one model family.

    This is the only place that interprets raw output shapes; decoders read
    the resolved `Topology` and never re-inspect shapes themselves.
    """
    shapes = [tuple(int(d) for d in s) for s in output_shapes]
    if not shapes:
        return unsupported("no output tensors")
    if any(d <= 0 for s in shapes for d in s):
        return unsupported("output tensor has an empty dimension")

    first = shapes[0]
    looks_like_detection = (
        len(first) == 3 and first[0] == 1 and first[1] >= min_features and first[2] >= min_anchors
    )

    if len(shapes) == 1:
        if looks_like_detection:
            return unsupported("detection tensor without a prototype tensor")
        if len(first) in (3, 4):
            return _resolve_dense(first, label_count)
        return unsupported(f"single output of rank {len(first)}")

    if not looks_like_detection:
        return unsupported(f"first of {len(shapes)} outputs does not match a detection layout")
    num_classes = label_count if label_count > 0 else default_num_classes
    return _resolve_detection(first, shapes[1], num_classes)


def _resolve_dense(shape: tuple[int, ...], label_count: int) -> Topology:
    if len(shape) == 3:
        h, w, c = shape
        return Topology(
            family=ModelFamily.dense, layout=AxisLayout.channels_last, height=h, width=w, channels=c
        )

    batch, a, b, c = shape
    if batch != 1:
        return unsupported(f"batched dense output (batch={batch})")
    layout: AxisLayout | None = None
    if label_count > 0:
        first_matches = a == label_count
        last_matches = c == label_count
        if first_matches and not last_matches:
            layout = AxisLayout.channels_first
        elif last_matches and not first_matches:
            layout = AxisLayout.channels_last
    if layout is None:
        # The two largest axes are spatial; ties resolve to channels-last
        if c <= a and c <= b:
            layout = AxisLayout.channels_last
        elif a <= b and a <= c:
            layout = AxisLayout.channels_first
        else:
            return unsupported(f"cannot place channel axis in dense shape {shape}")
    if layout is AxisLayout.channels_first:
        return Topology(family=ModelFamily.dense, layout=layout, height=b, width=c, channels=a)
    return Topology(family=ModelFamily.dense, layout=layout, height=a, width=b, channels=c)


def _resolve_detection(
    det_shape: tuple[int, ...], proto_shape: tuple[int, ...], num_classes: int
) -> Topology:
    _, features, anchors = det_shape
    mask_dims = features - _BOX_FEATURES - num_classes
    if mask_dims < 1:
        return unsupported(
            f"features={features} leave no mask coefficients for {num_classes} classes"
        )

    if len(proto_shape) == 4:
        if proto_shape[0] != 1:
            return unsupported(f"batched prototype tensor {proto_shape}")
        dims = proto_shape[1:]
    elif len(proto_shape) == 3:
        dims = proto_shape
    else:
        return unsupported(f"prototype tensor of rank {len(proto_shape)}")

    first_matches = dims[0] == mask_dims
    last_matches = dims[2] == mask_dims
    if first_matches and not last_matches:
        proto_layout = AxisLayout.channels_first
        ph, pw = dims[1], dims[2]
    elif last_matches and not first_matches:
        proto_layout = AxisLayout.channels_last
        ph, pw = dims[0], dims[1]
    else:
        return unsupported(f"prototype shape {proto_shape} has no unique axis of size {mask_dims}")

    return Topology(
        family=ModelFamily.detection_prototype,
        layout=AxisLayout.flat_feature,
        features=features,
        anchors=anchors,
        num_classes=num_classes,
        mask_dims=mask_dims,
        proto_layout=proto_layout,
        proto_height=ph,
        proto_width=pw,
    )


def resolve_input_size(
    shape: Sequence[int], layout: AxisLayout | None = None
) -> tuple[int, int] | None:
    """Return (height, width) of an image input tensor, or None if unrecognised.

    A known `layout` fixes the channel axis. Without one the channel axis is
    guessed; when both ends could hold channels, a lone 3 marks the channel
    axis and anything else reads as channels-last.
    """
    dims = tuple(int(d) for d in shape)
    if any(d <= 0 for d in dims):
        return None
    if len(dims) in (3, 4):
        lead = len(dims) - 3
        first, last = dims[lead], dims[-1]
        if layout is AxisLayout.channels_last:
            return dims[lead], dims[lead + 1]
        if layout is AxisLayout.channels_first:
            return dims[-2], dims[-1]
        if last in _IMAGE_CHANNELS and not (first == 3 and last != 3):
            return dims[lead], dims[lead + 1]
        if first in _IMAGE_CHANNELS:
            return dims[-2], dims[-1]
        return None
    if len(dims) == 2:
        return dims[0], dims[1]
    return None
