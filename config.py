# config.py
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, List, Optional

from logging_utils import log_error


@dataclass
class CompensatorConfig:
    # gain applied to the measured drift rate (negative feedback)
    aggressivity: float = 0.5

    # deadband / outlier limits, in pixels of the imaging camera
    min_drift_limit_px: float = 0.3
    max_drift_limit_px: float = 5.0

    # snapshot exposure (None => PlatesolveSettings.exposure_s), never below min_duration_s
    snapshot_exposure_s: Optional[float] = None
    min_duration_s: float = 1.0

    # measure only every N light frames
    after_exposures: int = 1

    ignore_filter_changes: bool = False
    ignore_focus_changes: bool = False


@dataclass
class PlatesolveSettings:
    exposure_s: float = 5.0
    gain: int = -1  # -1 => camera gain

    search_radius_deg: float = 30.0
    max_objects: int = 500
    regions: int = 5000
    blind_failover: bool = True

    # software reduction applied after camera binning (1 = off)
    downsample: int = 1

    # Instrument
    focal_length_mm: float = 1000.0
    pixel_size_um: float = 3.76


@dataclass
class AppConfig:
    compensator: CompensatorConfig = field(default_factory=CompensatorConfig)
    platesolve: PlatesolveSettings = field(default_factory=PlatesolveSettings)

    debug: bool = False
    log_to_file: bool = False
    log_path: str = "./flexure_compensator.log"


def copy_config(cfg: AppConfig) -> AppConfig:
    """
    Copia profunda (un nivel) para evitar aliasing con los defaults.
    """
    out = replace(cfg)
    out.compensator = replace(cfg.compensator)
    out.platesolve = replace(cfg.platesolve)
    return out


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if current is None and value is not None:
        return float(value)
    return value


def apply_params(cfg: AppConfig, **kwargs: Any) -> AppConfig:
    """
    Actualiza config en caliente (robusto a kwargs extra).

    Keys are matched against CompensatorConfig first, then PlatesolveSettings,
    then AppConfig itself. Unknown keys are ignored.
    """
    for k, v in kwargs.items():
        for target in (cfg.compensator, cfg.platesolve, cfg):
            names = {f.name for f in fields(target)}
            if k not in names or k in ("compensator", "platesolve"):
                continue
            try:
                setattr(target, k, _coerce(getattr(target, k), v))
            except (TypeError, ValueError) as exc:
                log_error(None, f"Config: failed to apply param {k}={v!r}", exc)
            break
    return cfg


def validate_config(cfg: AppConfig) -> List[str]:
    issues: List[str] = []
    c = cfg.compensator
    if c.after_exposures < 1:
        issues.append("after_exposures must be >= 1")
    if c.aggressivity < 0.0:
        issues.append("aggressivity must be >= 0")
    if c.min_drift_limit_px < 0.0:
        issues.append("min_drift_limit_px must be >= 0")
    if c.max_drift_limit_px < c.min_drift_limit_px:
        issues.append("max_drift_limit_px must be >= min_drift_limit_px")
    if c.min_duration_s < 0.0:
        issues.append("min_duration_s must be >= 0")
    p = cfg.platesolve
    if p.exposure_s <= 0.0:
        issues.append("platesolve exposure_s must be > 0")
    if p.downsample < 1:
        issues.append("platesolve downsample must be >= 1")
    if p.focal_length_mm <= 0.0 or p.pixel_size_um <= 0.0:
        issues.append("focal_length_mm and pixel_size_um must be > 0")
    return issues
