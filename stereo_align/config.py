from __future__ import annotations

import json
from dataclasses import dataclass, asdict, field, fields
from pathlib import Path
from typing import Any, Optional

from align_pipeline.config import (
    CenteringSpec,
    DetectorParams,
    FiducialSpec,
    FusionThresholds,
    PatternSpec,
    PoseTolerance,
    RectifyPolicy,
)


@dataclass
class CalibrationPaths:
    """Locations of the five calibration artifacts (OpenCV FileStorage files)."""

    left_intrinsics: str = "calib/left_intrinsics.yml"
    right_intrinsics: str = "calib/right_intrinsics.yml"
    stereo_extrinsics: str = "calib/stereo_extrinsics.yml"
    rectify_params: str = "calib/rectify_params.yml"
    rectify_maps: str = "calib/rectify_maps.yml"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RuntimeConfig:
    submit_capacity: int = 8
    stage_capacity: int = 4
    result_capacity: int = 64
    shutdown_grace_sec: float = 5.0
    poll_interval_sec: float = 0.05

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineConfig:
    rig_name: str = "rig"
    width: int = 1920
    height: int = 1080
    log_level: str = "INFO"
    log_file: Optional[str] = None
    input_dir: Optional[str] = None
    dry_run: bool = False
    max_frames: Optional[int] = None
    calibration: CalibrationPaths = field(default_factory=CalibrationPaths)
    pattern: PatternSpec = field(default_factory=PatternSpec)
    fiducial: FiducialSpec = field(default_factory=FiducialSpec)
    detector: DetectorParams = field(default_factory=DetectorParams)
    pose: PoseTolerance = field(default_factory=PoseTolerance)
    rectify: RectifyPolicy = field(default_factory=RectifyPolicy)
    fusion: FusionThresholds = field(default_factory=FusionThresholds)
    centering: CenteringSpec = field(default_factory=CenteringSpec)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    @property
    def image_size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "PipelineConfig":
        for key, value in kwargs.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)
        return self


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce(current: Any, value: Any, name: str) -> Any:
    if value is None:
        return None
    if isinstance(current, bool):
        return _as_bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, tuple):
        if not isinstance(value, (list, tuple)) or len(value) != len(current):
            raise ValueError(f"{name} must be a list of {len(current)} numbers")
        return tuple(float(v) for v in value)
    if isinstance(current, str):
        return str(value)
    return value


def _load_section(section: Any, raw: Any, name: str) -> Any:
    if raw is None:
        return section
    if not isinstance(raw, dict):
        raise ValueError(f"{name} must be a mapping")
    known = {f.name for f in fields(section)}
    for key, value in raw.items():
        if key not in known:
            raise ValueError(f"unknown key {name}.{key}")
        setattr(section, key, _coerce(getattr(section, key), value, f"{name}.{key}"))
    return section


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "YAML config requested but PyYAML is not installed. "
            "Install with: pip install pyyaml"
        ) from exc
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def load_config(path: str | Path) -> PipelineConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")

    cfg = PipelineConfig()
    cfg.rig_name = str(raw.get("rig_name", cfg.rig_name))
    cfg.width = int(raw.get("width", cfg.width))
    cfg.height = int(raw.get("height", cfg.height))
    cfg.log_level = str(raw.get("log_level", cfg.log_level)).upper()
    cfg.log_file = raw.get("log_file", cfg.log_file)
    cfg.input_dir = raw.get("input_dir", cfg.input_dir)
    cfg.dry_run = _as_bool(raw.get("dry_run", cfg.dry_run))
    cfg.max_frames = raw.get("max_frames", cfg.max_frames)
    if cfg.max_frames is not None:
        cfg.max_frames = int(cfg.max_frames)

    # Calibration paths are resolved relative to the config file
    _load_section(cfg.calibration, raw.get("calibration"), "calibration")
    for key, value in cfg.calibration.as_dict().items():
        if not Path(value).is_absolute():
            setattr(cfg.calibration, key, str(p.parent / value))

    _load_section(cfg.pattern, raw.get("pattern"), "pattern")
    _load_section(cfg.fiducial, raw.get("fiducial"), "fiducial")
    if cfg.fiducial.marker_id is not None:
        cfg.fiducial.marker_id = int(cfg.fiducial.marker_id)
    _load_section(cfg.detector, raw.get("detector"), "detector")
    _load_section(cfg.pose, raw.get("pose"), "pose")
    _load_section(cfg.rectify, raw.get("rectify"), "rectify")
    _load_section(cfg.fusion, raw.get("fusion"), "fusion")
    _load_section(cfg.centering, raw.get("centering"), "centering")
    _load_section(cfg.runtime, raw.get("runtime"), "runtime")

    if cfg.width <= 0 or cfg.height <= 0:
        raise ValueError("width and height must be positive")
    if cfg.runtime.submit_capacity < 1 or cfg.runtime.stage_capacity < 1 or cfg.runtime.result_capacity < 1:
        raise ValueError("queue capacities must be at least 1")
    return cfg
