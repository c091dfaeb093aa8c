from __future__ import annotations

import base64
import io
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from torch import Tensor

from ..config import Limits, Settings
from ..decode.types import SegmentationResult
from ..errors import AppError, ErrorCode, app_error, new_error
from ..inference.engine import SegmentationEngine
from ..inference.manifest import ModelManifest
from ..inference.types import SegmentOutput
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..preprocess import to_input_tensor
from ..request_context import request_id_var
from ..version import get_version
from .schemas import SegmentResponse
from .upload import read_upload_image


class _ModelReloader:
    """Daemon thread polling `engine.reload_if_changed()` between app startup and shutdown."""

    def __init__(self, engine: SegmentationEngine, interval_seconds: float) -> None:
        self._engine = engine
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="model-reloader", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            if self._engine.reload_if_changed():
                get_logger().info("model_reloaded model_id=%s", self._engine.model_id)
            self._stop.wait(self._interval)


def _error_json(code: ErrorCode, status_code: int, message: str | None = None) -> JSONResponse:
    body = new_error(code, request_id_var.get(), message=message)
    return JSONResponse(status_code=status_code, content=body.to_dict())


async def _on_app_error(_: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, AppError):
        return _error_json(exc.code, exc.http_status, exc.message)
    return _error_json(ErrorCode.internal_error, 500, str(exc))


async def _on_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_exception type=%s", type(exc).__name__)
    return _error_json(ErrorCode.internal_error, 500)


def _register_probes(app: FastAPI, engine: SegmentationEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready", "model_id": engine.model_id, "family": engine.family.value}
        return {"status": "not_ready", "model_loaded": False, "build": get_version().build}

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    for path, endpoint in (("/healthz", _healthz), ("/readyz", _readyz), ("/version", _version)):
        app.add_api_route(path, endpoint, methods=["GET"])


def _manifest_summary(engine: SegmentationEngine, man: ModelManifest) -> dict[str, object]:
    return {
        "model_loaded": engine.ready,
        "model_id": man.model_id,
        "arch": man.arch,
        "family": engine.family.value,
        "input_width": man.input_width,
        "input_height": man.input_height,
        "input_layout": man.input_layout,
        "n_labels": engine.labels.label_count(),
        "version": man.version,
        "schema_version": man.schema_version,
        "created_at": man.created_at.isoformat(),
    }


def _register_models(app: FastAPI, engine: SegmentationEngine) -> None:
    async def _active() -> dict[str, object]:
        man = engine.manifest
        if man is None:
            return {"model_loaded": False, "model_id": None}
        return _manifest_summary(engine, man)

    app.add_api_route("/v1/models/active", _active, methods=["GET"])


def _mask_png_b64(result: SegmentationResult) -> str:
    buf = io.BytesIO()
    result.mask_image().save(buf, format="PNG", optimize=True)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _result_item(result: SegmentationResult, include_mask: bool) -> dict[str, object]:
    return {
        "id": int(result.id),
        "label": result.label,
        "confidence": float(result.confidence),
        "box": list(result.box) if result.box is not None else None,
        "area": result.area,
        "mask_png_b64": _mask_png_b64(result) if include_mask else None,
    }


def _ready_manifest(engine: SegmentationEngine) -> ModelManifest:
    man = engine.manifest
    if not engine.ready or man is None:
        raise app_error(ErrorCode.service_not_ready)
    return man


def _await_segment(engine: SegmentationEngine, tensor: Tensor, timeout_s: float) -> SegmentOutput:
    fut = engine.submit_segment(tensor)
    try:
        return fut.result(timeout=timeout_s)
    except FutureTimeout:
        fut.cancel()
        raise app_error(ErrorCode.timeout) from None
    except RuntimeError as err:
        # Raised by the engine when no model is loaded at execution time
        if "Model not loaded" in str(err):
            raise app_error(ErrorCode.service_not_ready) from None
        raise


def _register_segment(
    app: FastAPI,
    dep_api_key: Callable[[str | None], None],
    engine: SegmentationEngine,
    settings: Settings,
    limits: Limits,
) -> None:
    async def _segment(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        include_masks: bool | None = None,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        img = await read_upload_image(request, file, content_length, limits)
        man = _ready_manifest(engine)

        t0 = time.perf_counter()
        layout = "nchw" if man.input_layout == "nchw" else "nhwc"
        tensor = to_input_tensor(img, man.input_width, man.input_height, layout=layout)
        out = _await_segment(engine, tensor, float(settings.segment.predict_timeout_seconds))
        dt_ms = int((time.perf_counter() - t0) * 1000.0)

        with_masks = settings.segment.include_masks if include_masks is None else include_masks
        log_event(
            "segment_request_finished",
            fields={
                "latency_ms": dt_ms,
                "results": len(out.results),
                "family": out.family,
                "model_id": out.model_id,
            },
        )
        return {
            "model_id": out.model_id,
            "family": out.family,
            "results": [_result_item(r, bool(with_masks)) for r in out.results],
            "latency_ms": dt_ms,
        }

    api_dep: DependsParamType = Depends(dep_api_key)
    app.add_api_route(
        "/v1/segment",
        _segment,
        methods=["POST"],
        response_model=SegmentResponse,
        dependencies=[api_dep],
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], SegmentationEngine] | None = None,
    *,
    reload_interval_seconds: float | None = None,
) -> FastAPI:
    """Build the HTTP app around one segmentation engine.

    `engine_provider` swaps in a prebuilt engine (tests inject fakes this
    way); otherwise the configured active model is loaded. A positive
    `reload_interval_seconds` polls model artifacts for changes.
    """
    s = settings or Settings.load()
    init_logging()
    if engine_provider is not None:
        engine = engine_provider()
    else:
        engine = SegmentationEngine(s)
        engine.try_load_active()

    reloader: _ModelReloader | None = None
    if reload_interval_seconds is not None and reload_interval_seconds > 0:
        reloader = _ModelReloader(engine, float(reload_interval_seconds))

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        if reloader is not None:
            reloader.start()
        try:
            yield
        finally:
            if reloader is not None:
                reloader.stop()

    app = FastAPI(title="segmentation-ai", lifespan=_lifespan)
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _on_app_error)
    app.add_exception_handler(Exception, _on_unexpected)
    app.state.engine = engine

    _register_probes(app, engine)
    _register_models(app, engine)
    _register_segment(app, api_key_dependency(s), engine, s, Limits.from_settings(s))
    return app


app = create_app()
