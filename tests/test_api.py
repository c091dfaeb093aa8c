from __future__ import annotations

import base64
import io
import threading
from concurrent.futures import Future
from datetime import UTC, datetime
from io import BytesIO
from pathlib import Path

import torch
from fastapi.testclient import TestClient
from PIL import Image
from torch import Tensor

from segmentation_ai.api.app import create_app
from segmentation_ai.config import AppConfig, SecurityConfig, SegmentationConfig, Settings
from segmentation_ai.decode.topology import ModelFamily
from segmentation_ai.decode.types import SegmentationResult
from segmentation_ai.errors import runtime_failure
from segmentation_ai.inference.engine import SegmentationEngine
from segmentation_ai.inference.manifest import ModelManifest
from segmentation_ai.inference.runtime import ModelHandle
from segmentation_ai.inference.types import SegmentOutput
from segmentation_ai.labels import ListLabelTable
from segmentation_ai.preprocess import preprocess_signature


def _settings(**seg: object) -> Settings:
    return Settings(
        app=AppConfig(),
        segment=SegmentationConfig(**seg),  # type: ignore[arg-type]
        security=SecurityConfig(),
    )


def _mk_png_bytes(size: tuple[int, int] = (32, 24)) -> bytes:
    img = Image.new("RGB", size, (255, 255, 255))
    b = BytesIO()
    img.save(b, format="PNG")
    return b.getvalue()


class _Identity:
    def eval(self) -> object:
        return self

    def __call__(self, x: Tensor) -> object:
        return x


class _FakeEngine(SegmentationEngine):
    """Ready engine with a canned result; never touches a real model."""

    def __init__(self, settings: Settings, mode: str = "ok") -> None:
        super().__init__(settings)
        self._mode = mode
        self._manifest = ModelManifest(
            schema_version="v1",
            model_id="test_model",
            arch="tiny",
            input_width=4,
            input_height=4,
            input_layout="nhwc",
            labels_file="labels.txt",
            version="1.0.0",
            created_at=datetime.now(UTC),
            preprocess_hash=preprocess_signature(),
        )
        self._handle = ModelHandle(
            model_id="test_model",
            input_shape=(1, 4, 4, 3),
            output_shapes=((1, 4, 4, 1),),
            module=_Identity(),
        )
        self._labels = ListLabelTable(["background", "object"])
        self._family = ModelFamily.dense
        self.polled = threading.Event()
        self.seen: list[tuple[int, ...]] = []

    def reload_if_changed(self) -> bool:
        self.polled.set()
        return False

    def submit_segment(self, input_tensor: Tensor) -> Future[SegmentOutput]:
        self.seen.append(tuple(input_tensor.shape))
        f: Future[SegmentOutput] = Future()
        if self._mode == "hang":
            return f
        if self._mode == "fail":
            f.set_exception(runtime_failure("model execution failed: boom"))
            return f
        mask = torch.zeros((4, 4), dtype=torch.uint8)
        mask[1:3, 1:4] = 1
        r = SegmentationResult(id=1, label="object", confidence=0.875, mask=mask, box=(1, 1, 3, 2))
        f.set_result(SegmentOutput(results=(r,), model_id="test_model", family="dense"))
        return f


def _client(settings: Settings, mode: str = "ok") -> tuple[TestClient, _FakeEngine]:
    eng = _FakeEngine(settings, mode)
    return TestClient(create_app(settings, engine_provider=lambda: eng)), eng


def test_health_ready_version_without_model(tmp_path: Path) -> None:
    s = _settings(model_dir=tmp_path, active_model="absent")
    client = TestClient(create_app(s))
    r1 = client.get("/healthz")
    assert r1.status_code == 200 and r1.json() == {"status": "ok"}
    r2 = client.get("/readyz")
    assert r2.status_code == 200
    assert r2.json()["status"] == "not_ready"
    r3 = client.get("/version")
    assert r3.status_code == 200
    assert r3.json()["service"] == "segmentation-ai"
    r4 = client.get("/v1/models/active")
    assert r4.json() == {"model_loaded": False, "model_id": None}
    r5 = client.post("/v1/segment", files={"file": ("a.png", _mk_png_bytes(), "image/png")})
    assert r5.status_code == 503
    assert r5.json()["code"] == "service_not_ready"


def test_segment_positive_with_masks() -> None:
    client, eng = _client(_settings())
    r = client.post("/v1/segment", files={"file": ("a.png", _mk_png_bytes(), "image/png")})
    assert r.status_code == 200
    body = r.json()
    assert body["model_id"] == "test_model"
    assert body["family"] == "dense"
    assert isinstance(body["latency_ms"], int)
    (item,) = body["results"]
    assert item["label"] == "object" and item["id"] == 1
    assert item["box"] == [1, 1, 3, 2]
    assert item["area"] == 6
    png = Image.open(io.BytesIO(base64.b64decode(item["mask_png_b64"])))
    assert png.size == (4, 4)
    assert png.getpixel((1, 1)) == 255 and png.getpixel((0, 0)) == 0
    # Preprocessed to the manifest's input size and layout
    assert eng.seen == [(1, 4, 4, 3)]


def test_segment_without_masks() -> None:
    client, _ = _client(_settings(include_masks=True))
    r = client.post(
        "/v1/segment?include_masks=false",
        files={"file": ("a.png", _mk_png_bytes(), "image/png")},
    )
    assert r.status_code == 200
    assert r.json()["results"][0]["mask_png_b64"] is None


def test_models_active_reports_manifest() -> None:
    client, _ = _client(_settings())
    body = client.get("/v1/models/active").json()
    assert body["model_loaded"] is True
    assert body["model_id"] == "test_model"
    assert body["input_layout"] == "nhwc"
    assert body["n_labels"] == 2


def test_request_validation_errors() -> None:
    client, _ = _client(_settings())
    r1 = client.post("/v1/segment", files={"file": ("x.txt", b"hello", "text/plain")})
    assert r1.status_code == 415
    r2 = client.post("/v1/segment", files={"file": ("a.png", b"\x89PNG broken", "image/png")})
    assert r2.status_code == 400 and r2.json()["code"] == "invalid_image"
    r3 = client.post(
        "/v1/segment",
        files={"file": ("a.png", _mk_png_bytes(), "image/png")},
        data={"extra": "1"},
    )
    assert r3.status_code == 400 and r3.json()["code"] == "malformed_multipart"


def test_size_and_dimension_limits() -> None:
    client, _ = _client(_settings(max_image_mb=0))
    r1 = client.post("/v1/segment", files={"file": ("a.png", _mk_png_bytes(), "image/png")})
    assert r1.status_code == 413
    client2, _ = _client(_settings(max_image_side_px=16))
    r2 = client2.post("/v1/segment", files={"file": ("a.png", _mk_png_bytes(), "image/png")})
    assert r2.status_code == 400 and r2.json()["code"] == "bad_dimensions"


def test_timeout_and_runtime_failure() -> None:
    client, _ = _client(_settings(predict_timeout_seconds=0), mode="hang")
    r1 = client.post("/v1/segment", files={"file": ("a.png", _mk_png_bytes(), "image/png")})
    assert r1.status_code == 504 and r1.json()["code"] == "timeout"
    client2, _ = _client(_settings(), mode="fail")
    r2 = client2.post("/v1/segment", files={"file": ("a.png", _mk_png_bytes(), "image/png")})
    assert r2.status_code == 502 and r2.json()["code"] == "runtime_failure"


def test_api_key_and_request_id() -> None:
    s = Settings(app=AppConfig(), segment=SegmentationConfig(), security=SecurityConfig("k1"))
    client, _ = _client(s)
    files = {"file": ("a.png", _mk_png_bytes(), "image/png")}
    r1 = client.post("/v1/segment", files=files)
    assert r1.status_code == 401
    headers = {"X-API-Key": "k1", "X-Request-ID": "r-7"}
    r2 = client.post("/v1/segment", files=files, headers=headers)
    assert r2.status_code == 200
    assert r2.headers["X-Request-ID"] == "r-7"


def test_readyz_reports_loaded_model() -> None:
    client, _ = _client(_settings())
    body = client.get("/readyz").json()
    assert body == {"status": "ready", "model_id": "test_model", "family": "dense"}
    # A request id is minted when the caller sends none
    assert len(client.get("/healthz").headers["X-Request-ID"]) == 32


def test_background_reloader_polls_engine() -> None:
    s = _settings()
    eng = _FakeEngine(s)
    app = create_app(s, engine_provider=lambda: eng, reload_interval_seconds=0.01)
    with TestClient(app) as client:
        assert eng.polled.wait(timeout=5.0)
        assert client.get("/healthz").status_code == 200
    assert not any(t.name == "model-reloader" for t in threading.enumerate())


def test_no_reloader_without_interval() -> None:
    s = _settings()
    eng = _FakeEngine(s)
    app = create_app(s, engine_provider=lambda: eng)
    with TestClient(app) as client:
        assert client.get("/healthz").status_code == 200
        assert not eng.polled.wait(timeout=0.2)
