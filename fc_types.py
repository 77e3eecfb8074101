# fc_types.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Tuple, Protocol

import numpy as np
from astropy.coordinates import SkyCoord


class ImageType(str, Enum):
    LIGHT = "LIGHT"
    DARK = "DARK"
    FLAT = "FLAT"
    BIAS = "BIAS"
    SNAPSHOT = "SNAPSHOT"


class CyclePhase(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class TriggerStatus(str, Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    DISABLED = "DISABLED"


# ============================================================
# Errors
# ============================================================

class CompensatorError(RuntimeError):
    pass


class CameraConnectionLostError(CompensatorError):
    pass


class DeviceNotConnectedError(CompensatorError):
    pass


class ExposureFailedError(CompensatorError):
    pass


class CycleCancelled(CompensatorError):
    pass


# ============================================================
# Exposures
# ============================================================

@dataclass(frozen=True)
class Binning:
    x: int = 1
    y: int = 1

    @property
    def name(self) -> str:
        return f"{self.x}x{self.y}"


@dataclass(frozen=True)
class ExposureItem:
    """
    An imaging exposure as seen around a sequence boundary.
    """
    image_type: ImageType
    exposure_s: float
    binning: Binning = field(default_factory=Binning)


@dataclass(frozen=True)
class ExposureSpec:
    exposure_s: float
    image_type: ImageType = ImageType.SNAPSHOT
    binning: Binning = field(default_factory=Binning)
    gain: int = 0
    count: int = 1


@dataclass
class ExposureData:
    """
    Downloaded exposure.

    - raw: 2D (mono/Bayer) or HxWx3 array as returned by the camera
    - fmt: "MONO16" | "RAW16" | "RGB48" | ...
    - meta: binning, exposure time, image type, coordinates, filter, focus...
    """
    raw: np.ndarray
    fmt: str = "MONO16"
    bayer_pattern: str = "RGGB"
    meta: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# Device infos
# ============================================================

@dataclass(frozen=True)
class CameraInfo:
    connected: bool = False
    gain: Optional[int] = None
    pixel_size_um: float = 0.0


@dataclass(frozen=True)
class TelescopeInfo:
    connected: bool = False
    coordinates: Optional[SkyCoord] = None


@dataclass(frozen=True)
class GuiderInfo:
    connected: bool = False
    pixel_scale: float = 0.0  # arcsec/px of the guide camera
    can_set_shift_rate: bool = False
    can_get_lock_position: bool = False


@dataclass(frozen=True)
class FilterInfo:
    name: str
    position: int


@dataclass(frozen=True)
class FilterWheelInfo:
    connected: bool = False
    selected_filter: Optional[FilterInfo] = None


@dataclass(frozen=True)
class FocuserInfo:
    connected: bool = False
    position: int = 0


# ============================================================
# Drift model entities
# ============================================================

@dataclass(frozen=True)
class LockPosition:
    x: float
    y: float
    t: float  # epoch seconds

    def __str__(self) -> str:
        return f"x={self.x:.3f} y={self.y:.3f} t={self.t:.3f}"


@dataclass(frozen=True)
class Sample:
    """
    One solved reference exposure. Only built from a successful solve.
    """
    t: float
    coordinates: SkyCoord
    pixel_scale: float
    binning: Binning
    filter_position: Optional[int] = None
    focus_position: Optional[int] = None


@dataclass(frozen=True)
class CycleContext:
    phase: CyclePhase
    binning: Binning
    exposure_s: float
    filter_position: Optional[int] = None
    focus_position: Optional[int] = None


@dataclass
class ValidityFlags:
    """
    Session-scoped "already warned" flags. Once set they stay set.
    """
    pixel_scale_warned: bool = False
    nan_warned: bool = False

    def mark(self, name: str) -> bool:
        """
        Marks the flag and returns True only the first time.
        """
        if getattr(self, name):
            return False
        setattr(self, name, True)
        return True


@dataclass(frozen=True)
class DriftSnapshot:
    running: bool
    shift_rate_ra: float       # arcsec/h
    shift_rate_dec: float      # arcsec/h
    has_reference: bool
    reference_ra_deg: Optional[float]
    reference_dec_deg: Optional[float]
    reference_t: Optional[float]
    last_lock_position: Optional[LockPosition]
    reference_stale: bool
    max_exposure_s: float
    image_count: int
    progress_exposures: int
    image_rms_arcsec: float


# ============================================================
# Collaborator contracts
# ============================================================

class CameraService(Protocol):
    def info(self) -> CameraInfo: ...

    def capture(self, spec: ExposureSpec, cancel: threading.Event) -> None: ...

    def download(self, cancel: threading.Event) -> Optional[ExposureData]: ...

    def abort_exposure(self) -> None: ...


class FieldSolverService(Protocol):
    def solve(self, image: np.ndarray, hint: Any, cancel: threading.Event) -> Any: ...


class GuiderService(Protocol):
    def info(self) -> GuiderInfo: ...

    def lock_position(self) -> Optional[LockPosition]: ...

    def set_shift_rate(self, ra_per_s: float, dec_per_s: float, cancel: threading.Event) -> None: ...

    def stop_shifting(self, cancel: threading.Event) -> None: ...


class TelescopeService(Protocol):
    def info(self) -> TelescopeInfo: ...

    def current_position(self) -> SkyCoord: ...


class FilterWheelService(Protocol):
    def info(self) -> FilterWheelInfo: ...


class FocuserService(Protocol):
    def info(self) -> FocuserInfo: ...


def radec_deg(c: Optional[SkyCoord]) -> Tuple[Optional[float], Optional[float]]:
    if c is None:
        return None, None
    return float(c.ra.deg), float(c.dec.deg)
