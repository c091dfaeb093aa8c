from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final, TypeVar

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/segmentation.toml")
_RESAMPLE_METHODS: Final[tuple[str, ...]] = ("nearest", "bilinear")
_CONFIDENCE_POLICIES: Final[tuple[str, ...]] = ("score", "mask_fraction")
_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class AppConfig:
    data_root: Path = Path("/data")
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class SegmentationConfig:
    model_dir: Path = Path("/data/segmentation/models")
    active_model: str = "yolo11n_seg_v1"
    conf_threshold: float = 0.25
    mask_threshold: float = 0.5
    max_detections: int = 100
    resample: str = "bilinear"
    confidence_policy: str = "score"
    default_num_classes: int = 80
    include_masks: bool = True
    max_image_mb: int = 8
    max_image_side_px: int = 4096
    predict_timeout_seconds: int = 30


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the API key check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    segment: SegmentationConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("SEGMENTATION_CONFIG")
        return Path(env_val) if env_val else _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        """Defaults, then APP__/SEGMENT__/SECURITY__ env vars, then the TOML file if present.

        Invalid values raise RuntimeError naming the offending field.
        """
        app = _merge(AppConfig(), _env_table("APP", _APP_FIELDS), _APP_FIELDS)
        seg = _merge(SegmentationConfig(), _env_table("SEGMENT", _SEGMENT_FIELDS), _SEGMENT_FIELDS)
        sec = _merge(SecurityConfig(), _env_table("SECURITY", _SECURITY_FIELDS), _SECURITY_FIELDS)

        cfg_path = cls._toml_path()
        if cfg_path.exists():
            try:
                raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
            except OSError as exc:
                raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
            except tomllib.TOMLDecodeError as exc:
                raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
            app = _merge(app, _toml_table(raw, "app"), _APP_FIELDS)
            seg = _merge(seg, _toml_table(raw, "segment"), _SEGMENT_FIELDS)
            sec_table = _toml_table(raw, "security")
            sec = _merge(sec, sec_table, _SECURITY_FIELDS)
            if sec_table.get("api_key_enabled") is False:
                sec = replace(sec, api_key="")
        return cls(app=app, segment=seg, security=sec)


_Parser = Callable[[object, str], object]
_C = TypeVar("_C")


def _as_str(v: object, _: str) -> object:
    return str(v)


def _as_path(v: object, _: str) -> object:
    return Path(str(v))


def _as_int(v: object, name: str) -> int:
    try:
        return int(str(v).strip())
    except ValueError:
        raise RuntimeError(f"{name} must be an integer") from None


def _as_bool(v: object, _: str) -> object:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in _TRUTHY


def _as_port(v: object, name: str) -> object:
    p = _as_int(v, name)
    if not (1 <= p <= 65535):
        raise RuntimeError(f"{name} out of range")
    return p


def _as_unit_float(v: object, name: str) -> object:
    try:
        f = float(str(v).strip())
    except ValueError:
        raise RuntimeError(f"{name} must be a number") from None
    if not (0.0 <= f <= 1.0):
        raise RuntimeError(f"{name} must be within [0, 1]")
    return f


def _as_positive_int(v: object, name: str) -> object:
    n = _as_int(v, name)
    if n < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return n


def _one_of(choices: tuple[str, ...]) -> _Parser:
    def _parse(v: object, name: str) -> object:
        s = str(v).strip().lower()
        if s not in choices:
            raise RuntimeError(f"{name} must be one of {choices}")
        return s

    return _parse


_APP_FIELDS: Final[dict[str, _Parser]] = {
    "data_root": _as_path,
    "threads": _as_int,
    "port": _as_port,
}

_SEGMENT_FIELDS: Final[dict[str, _Parser]] = {
    "model_dir": _as_path,
    "active_model": _as_str,
    "conf_threshold": _as_unit_float,
    "mask_threshold": _as_unit_float,
    "max_detections": _as_positive_int,
    "resample": _one_of(_RESAMPLE_METHODS),
    "confidence_policy": _one_of(_CONFIDENCE_POLICIES),
    "default_num_classes": _as_positive_int,
    "include_masks": _as_bool,
    "max_image_mb": _as_int,
    "max_image_side_px": _as_positive_int,
    "predict_timeout_seconds": _as_int,
}

_SECURITY_FIELDS: Final[dict[str, _Parser]] = {
    "api_key": _as_str,
}


def _env_table(prefix: str, fields: Mapping[str, _Parser]) -> dict[str, object]:
    out: dict[str, object] = {}
    for name in fields:
        v = os.getenv(f"{prefix}__{name.upper()}")
        if v is not None and v != "":
            out[name] = v
    return out


def _merge(base: _C, data: Mapping[str, object], fields: Mapping[str, _Parser]) -> _C:
    updates = {name: parse(data[name], name) for name, parse in fields.items() if name in data}
    if not updates:
        return base
    return replace(base, **updates)  # type: ignore[type-var]


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.segment.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.segment.max_image_side_px),
        )
