from __future__ import annotations

from typing import Final, Literal

import torch
from PIL import Image, ImageOps
from torch import Tensor

from .errors import AppError, ErrorCode, app_error

InputLayout = Literal["nhwc", "nchw"]

_PREPROCESS_SIGNATURE: Final[str] = "v1/exif+rgb+resize_bilinear+maxchannel_unit"
# Maximum channel value per Pillow mode; 8-bit modes fall through to 255
_MODE_MAX: Final[dict[str, int]] = {
    "I;16": 65535,
    "I;16B": 65535,
    "I;16L": 65535,
    "I": 65535,
}


def to_input_tensor(
    img: Image.Image, width: int, height: int, *, layout: InputLayout = "nhwc"
) -> Tensor:
    """Decode an image into a (1,H,W,3) or (1,3,H,W) float32 tensor in [0, 1].

    Channel values are divided by the maximum value representable in the
    source image's mode.
    """
    if width < 1 or height < 1:
        raise app_error(ErrorCode.preprocessing_failed, "target size must be positive")
    try:
        src = _oriented(img)
        max_value = float(_MODE_MAX.get(src.mode, 255))
        channels = _rgb_planes(src, width, height)
        t = torch.stack(channels, dim=-1) / max_value
        t = t.clamp(0.0, 1.0).unsqueeze(0).to(dtype=torch.float32)
        if layout == "nchw":
            t = t.permute(0, 3, 1, 2).contiguous()
        return t
    except AppError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError) as exc:
        raise app_error(ErrorCode.preprocessing_failed, str(exc)) from None


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def _oriented(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise app_error(ErrorCode.invalid_image, "EXIF transpose failed")
    return tmp


def _rgb_planes(img: Image.Image, width: int, height: int) -> list[Tensor]:
    if img.mode in ("I;16", "I;16B", "I;16L", "I"):
        # High bit depth grayscale: resize in 32-bit mode and replicate the plane
        plane = img.convert("I").resize((width, height), resample=Image.Resampling.BILINEAR)
        vals = torch.tensor(list(plane.getdata()), dtype=torch.float32).reshape(height, width)
        return [vals, vals, vals]
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        img = Image.alpha_composite(bg, rgba)
    rgb = img.convert("RGB").resize((width, height), resample=Image.Resampling.BILINEAR)
    buf: bytes = rgb.tobytes()
    flat = torch.tensor(list(buf), dtype=torch.float32).reshape(height, width, 3)
    return [flat[:, :, 0], flat[:, :, 1], flat[:, :, 2]]
