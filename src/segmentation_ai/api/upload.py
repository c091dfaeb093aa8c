from __future__ import annotations

import io
from typing import Final

from fastapi import Request, UploadFile
from PIL import Image, ImageFile, UnidentifiedImageError
from starlette.datastructures import FormData

from ..config import Limits
from ..errors import ErrorCode, app_error

ImageFile.LOAD_TRUNCATED_IMAGES = False

ACCEPTED_CONTENT_TYPES: Final[frozenset[str]] = frozenset({"image/png", "image/jpeg", "image/jpg"})


async def read_upload_image(
    request: Request, file: UploadFile, content_length: int | None, limits: Limits
) -> Image.Image:
    """Validate a single-image multipart upload and return the decoded image.

    Checks run cheapest first: form shape, declared content type, declared
    body length, actual byte count, decode, then pixel dimensions.
    """
    _require_single_file_part(await request.form())
    if (file.content_type or "").lower() not in ACCEPTED_CONTENT_TYPES:
        raise app_error(ErrorCode.unsupported_media_type)
    if content_length is not None and content_length > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "Request body too large")
    raw = await file.read()
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large)
    img = decode_image(raw)
    if max(img.size) > limits.max_side_px:
        raise app_error(ErrorCode.bad_dimensions)
    return img


def decode_image(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except UnidentifiedImageError:
        raise app_error(ErrorCode.invalid_image) from None
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Image pixel count exceeds decoder limit") from None
    except OSError:
        raise app_error(ErrorCode.invalid_image, "Image data is truncated or corrupt") from None
    return img


def _require_single_file_part(form: FormData) -> None:
    extra = [k for k in form if k != "file"]
    if extra:
        raise app_error(ErrorCode.malformed_multipart, f"Unexpected form field {extra[0]!r}")
    n_files = len(form.getlist("file"))
    if n_files > 1:
        raise app_error(ErrorCode.malformed_multipart, "Only one file part is allowed")
    if n_files == 0:
        raise app_error(ErrorCode.malformed_multipart, "Missing file part")
