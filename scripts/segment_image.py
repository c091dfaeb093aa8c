from __future__ import annotations

import argparse
import json
from collections.abc import Iterable
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from segmentation_ai.config import Settings
from segmentation_ai.errors import AppError
from segmentation_ai.inference.engine import SegmentationEngine
from segmentation_ai.inference.types import SegmentOutput
from segmentation_ai.logging import get_logger, init_logging
from segmentation_ai.preprocess import to_input_tensor


def _parse_args(argv: Iterable[str] | None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Segment one image with the active model")
    ap.add_argument("image", type=Path, help="Input PNG/JPEG path")
    ap.add_argument("--out-dir", type=Path, default=Path("out"), help="Where masks are written")
    ap.add_argument("--model-dir", type=Path, default=None, help="Override segment.model_dir")
    ap.add_argument("--model", type=str, default=None, help="Override segment.active_model")
    return ap.parse_args(list(argv) if argv is not None else None)


def write_outputs(out: SegmentOutput, out_dir: Path, stem: str) -> Path:
    """Write one PNG per mask plus a JSON summary; returns the summary path."""
    out_dir.mkdir(parents=True, exist_ok=True)
    entries: list[dict[str, object]] = []
    for rank, r in enumerate(out.results):
        name = f"{stem}_{rank:03d}_{r.id}.png"
        r.mask_image().save(out_dir / name, format="PNG")
        entries.append(
            {
                "id": r.id,
                "label": r.label,
                "confidence": r.confidence,
                "box": list(r.box) if r.box is not None else None,
                "area": r.area,
                "mask": name,
            }
        )
    summary = out_dir / f"{stem}.json"
    payload = {"model_id": out.model_id, "family": out.family, "results": entries}
    summary.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return summary


def main(argv: Iterable[str] | None = None) -> int:
    init_logging()
    log = get_logger()
    args = _parse_args(argv)
    s = Settings.load()
    seg = s.segment
    if args.model_dir is not None or args.model is not None:
        from dataclasses import replace

        seg = replace(
            seg,
            model_dir=args.model_dir if args.model_dir is not None else seg.model_dir,
            active_model=args.model if args.model is not None else seg.active_model,
        )
        s = replace(s, segment=seg)

    engine = SegmentationEngine(s)
    engine.try_load_active()
    man = engine.manifest
    if not engine.ready or man is None:
        log.error("model_not_loaded model_dir=%s model=%s", seg.model_dir, seg.active_model)
        return 2

    try:
        with Image.open(args.image) as img:
            layout = "nchw" if man.input_layout == "nchw" else "nhwc"
            tensor = to_input_tensor(img, man.input_width, man.input_height, layout=layout)
    except (OSError, UnidentifiedImageError) as exc:
        log.error("image_open_failed path=%s error=%s", args.image, exc)
        return 2
    except AppError as err:
        log.error("preprocess_failed code=%s message=%s", err.code.value, err.message)
        return 2

    try:
        out = engine.submit_segment(tensor).result(timeout=float(seg.predict_timeout_seconds))
    except FutureTimeout:
        log.error("segment_timeout seconds=%d", seg.predict_timeout_seconds)
        return 1
    except AppError as err:
        log.error("segment_failed code=%s message=%s", err.code.value, err.message)
        return 1

    summary = write_outputs(out, args.out_dir, args.image.stem)
    log.info("segment_written results=%d summary=%s", len(out.results), summary)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
