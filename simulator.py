# simulator.py
from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np

import astropy.units as u
from astropy.coordinates import SkyCoord

from fc_types import (
    CameraConnectionLostError,
    CameraInfo,
    ExposureData,
    ExposureItem,
    ExposureSpec,
    FilterInfo,
    FilterWheelInfo,
    FocuserInfo,
    GuiderInfo,
    LockPosition,
    TelescopeInfo,
)
from capture import check_cancel
from events import EventHub, after_dither, after_meridian_flip, filter_changed, focus_changed
from platesolve import PlatesolveResult, SolveHint, pixel_scale_arcsec
from logging_utils import log_debug


# -------------------------
# Clock
# -------------------------
class SimClock:
    """
    Reloj manual (epoch seconds). advance() is the only way time moves.
    """

    def __init__(self, t0: float = 1_700_000_000.0) -> None:
        self._t = float(t0)
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._t

    def advance(self, dt_s: float) -> float:
        with self._lock:
            self._t += max(0.0, float(dt_s))
            return self._t


# -------------------------
# Rig model
# -------------------------
@dataclass
class RigOptics:
    focal_length_mm: float = 1000.0
    pixel_size_um: float = 3.76
    guide_pixel_scale: float = 3.0  # arcsec/px
    sensor_shape: tuple = (96, 128)


class SimRig:
    """
    Differential flexure model.

    The imaging camera drifts relative to the guide camera at
    (flexure + shift rate) arcsec/h on each axis; the guider lock point moves
    at the shift rate only. A perfect compensation is shift = -flexure.
    RA values are raw coordinate differences (not scaled by cos(dec)).
    """

    def __init__(
        self,
        *,
        center: Optional[SkyCoord] = None,
        flexure_ra_arcsec_h: float = 0.0,
        flexure_dec_arcsec_h: float = 0.0,
        optics: Optional[RigOptics] = None,
        clock: Optional[SimClock] = None,
        hub: Optional[EventHub] = None,
    ) -> None:
        self.center = center if center is not None else SkyCoord(ra=83.82 * u.deg, dec=-5.39 * u.deg)
        self.flexure_ra = float(flexure_ra_arcsec_h)
        self.flexure_dec = float(flexure_dec_arcsec_h)
        self.optics = optics or RigOptics()
        self.clock = clock or SimClock()
        self.hub = hub or EventHub()

        self.shift_ra = 0.0
        self.shift_dec = 0.0
        self.offset_ra = 0.0
        self.offset_dec = 0.0
        self.lock_x = 512.0
        self.lock_y = 384.0
        self._t_last = self.clock()
        self._lock = threading.RLock()

        self.camera = SimCamera(self)
        self.solver = SimSolver(self)
        self.guider = SimGuider(self)
        self.telescope = SimTelescope(self)
        self.filter_wheel = SimFilterWheel(self)
        self.focuser = SimFocuser(self)

    @property
    def pixel_scale(self) -> float:
        return pixel_scale_arcsec(self.optics.pixel_size_um, self.optics.focal_length_mm)

    def _integrate(self) -> None:
        now = self.clock()
        dt_h = (now - self._t_last) / 3600.0
        self._t_last = now
        if dt_h <= 0.0:
            return
        self.offset_ra += (self.flexure_ra + self.shift_ra) * dt_h
        self.offset_dec += (self.flexure_dec + self.shift_dec) * dt_h
        cos_dec = math.cos(math.radians(float(self.center.dec.deg)))
        ps = float(self.optics.guide_pixel_scale)
        self.lock_x += self.shift_ra * cos_dec / ps * dt_h
        self.lock_y += self.shift_dec / ps * dt_h

    def advance(self, dt_s: float) -> None:
        with self._lock:
            self._integrate()
            self.clock.advance(dt_s)
            self._integrate()

    def set_shift(self, ra_arcsec_h: float, dec_arcsec_h: float) -> None:
        with self._lock:
            self._integrate()
            self.shift_ra = float(ra_arcsec_h)
            self.shift_dec = float(dec_arcsec_h)

    def camera_coordinates_for_solve(self) -> SkyCoord:
        coords = self.camera.last_coordinates
        return coords if coords is not None else self.imaging_coordinates()

    def imaging_coordinates(self) -> SkyCoord:
        with self._lock:
            self._integrate()
            return SkyCoord(
                ra=self.center.ra + self.offset_ra * u.arcsec,
                dec=self.center.dec + self.offset_dec * u.arcsec,
            )

    def lock_position(self) -> LockPosition:
        with self._lock:
            self._integrate()
            return LockPosition(self.lock_x, self.lock_y, self.clock())

    # -------------------------
    # Host-side events
    # -------------------------
    def dither(self, dx_px: float, dy_px: float) -> None:
        with self._lock:
            self._integrate()
            self.lock_x += float(dx_px)
            self.lock_y += float(dy_px)
        self.hub.publish(after_dither(dx_px, dy_px))

    def meridian_flip(self) -> None:
        with self._lock:
            self._integrate()
            self.offset_ra = 0.0
            self.offset_dec = 0.0
        self.hub.publish(after_meridian_flip())


# -------------------------
# Devices
# -------------------------
def _star_field(shape: tuple, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    h, w = shape
    img = rng.normal(1000.0, 20.0, size=(h, w))
    ys = rng.integers(4, h - 4, size=20)
    xs = rng.integers(4, w - 4, size=20)
    yy, xx = np.mgrid[0:h, 0:w]
    for y0, x0 in zip(ys, xs):
        img += 20000.0 * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / 4.0)
    return np.clip(img, 0, 65535).astype(np.uint16)


class SimCamera:
    def __init__(self, rig: SimRig) -> None:
        self.rig = rig
        self.connected = True
        self.gain: Optional[int] = 120
        self.fail_capture: Optional[BaseException] = None
        self.download_returns_none = False
        self.captures: List[ExposureSpec] = []
        self.aborts = 0
        self._pending: Optional[SkyCoord] = None
        self.last_coordinates: Optional[SkyCoord] = None

    def info(self) -> CameraInfo:
        return CameraInfo(connected=self.connected, gain=self.gain, pixel_size_um=self.rig.optics.pixel_size_um)

    def capture(self, spec: ExposureSpec, cancel: threading.Event) -> None:
        if not self.connected:
            raise CameraConnectionLostError("simulated camera disconnected")
        if self.fail_capture is not None:
            exc, self.fail_capture = self.fail_capture, None
            raise exc
        check_cancel(cancel)
        self.captures.append(spec)
        self.rig.advance(spec.exposure_s)
        self._pending = self.rig.imaging_coordinates()

    def download(self, cancel: threading.Event) -> Optional[ExposureData]:
        check_cancel(cancel)
        coords, self._pending = self._pending, None
        if self.download_returns_none or coords is None:
            return None
        self.last_coordinates = coords
        raw = _star_field(self.rig.optics.sensor_shape, seed=len(self.captures))
        return ExposureData(raw=raw, fmt="MONO16", meta={"sim_coordinates": coords})

    def abort_exposure(self) -> None:
        self.aborts += 1
        self._pending = None


class SimSolver:
    """
    Returns the true imaging pointing of the last capture.

    fail_hinted / fail_blind: number of upcoming attempts of each kind that fail.
    on_solve: one-shot callback run while the solve is in flight.
    """

    def __init__(self, rig: SimRig) -> None:
        self.rig = rig
        self.fail_hinted = 0
        self.fail_blind = 0
        self.hints: List[SolveHint] = []
        self.shapes: List[tuple] = []
        self.cancel_on_solve: Optional[threading.Event] = None
        self.on_solve: Optional[Callable[[], None]] = None

    def solve(self, image: np.ndarray, hint: SolveHint, cancel: threading.Event) -> PlatesolveResult:
        self.hints.append(hint)
        self.shapes.append(tuple(image.shape))
        if self.cancel_on_solve is not None:
            self.cancel_on_solve.set()
        if self.on_solve is not None:
            cb, self.on_solve = self.on_solve, None
            cb()
        if hint.blind and self.fail_blind > 0:
            self.fail_blind -= 1
            return PlatesolveResult.failed("ERR_BLIND")
        if not hint.blind and self.fail_hinted > 0:
            self.fail_hinted -= 1
            return PlatesolveResult.failed("ERR_HINTED")
        coords = self.rig.camera_coordinates_for_solve()
        log_debug(None, f"SimSolver: solved {image.shape} -> {coords.ra.deg:.6f} {coords.dec.deg:.6f}")
        return PlatesolveResult(
            success=True,
            coordinates=coords,
            pixel_scale=self.rig.pixel_scale * max(1, int(hint.binning)) * self.rig.optics.sensor_shape[1] / image.shape[1],
            blind=hint.blind,
            status="OK",
        )


class SimGuider:
    def __init__(self, rig: SimRig) -> None:
        self.rig = rig
        self.connected = True
        self.pixel_scale: float = rig.optics.guide_pixel_scale
        self.can_set_shift_rate = True
        self.can_get_lock_position = True
        self.report_lock_position = True
        self.fail_set_rate: Optional[BaseException] = None
        self.rate_calls: List[tuple] = []
        self.stop_calls = 0

    def info(self) -> GuiderInfo:
        return GuiderInfo(
            connected=self.connected,
            pixel_scale=self.pixel_scale,
            can_set_shift_rate=self.can_set_shift_rate,
            can_get_lock_position=self.can_get_lock_position,
        )

    def lock_position(self) -> Optional[LockPosition]:
        if not self.report_lock_position:
            return None
        return self.rig.lock_position()

    def set_shift_rate(self, ra_per_s: float, dec_per_s: float, cancel: threading.Event) -> None:
        self.rate_calls.append((float(ra_per_s), float(dec_per_s), cancel.is_set()))
        if self.fail_set_rate is not None:
            raise self.fail_set_rate
        self.rig.set_shift(ra_per_s * 3600.0, dec_per_s * 3600.0)

    def stop_shifting(self, cancel: threading.Event) -> None:
        self.stop_calls += 1


class SimTelescope:
    def __init__(self, rig: SimRig) -> None:
        self.rig = rig
        self.connected = True

    def info(self) -> TelescopeInfo:
        return TelescopeInfo(connected=self.connected, coordinates=self.rig.center if self.connected else None)

    def current_position(self) -> SkyCoord:
        return self.rig.center


class SimFilterWheel:
    def __init__(self, rig: SimRig, filters: Sequence[str] = ("L", "R", "G", "B", "Ha")) -> None:
        self.rig = rig
        self.connected = True
        self.filters = [FilterInfo(name=n, position=i) for i, n in enumerate(filters)]
        self.selected = self.filters[0]

    def info(self) -> FilterWheelInfo:
        return FilterWheelInfo(connected=self.connected, selected_filter=self.selected if self.connected else None)

    def select(self, position: int) -> None:
        self.selected = self.filters[int(position)]
        self.rig.hub.publish(filter_changed(self.selected))


class SimFocuser:
    def __init__(self, rig: SimRig) -> None:
        self.rig = rig
        self.connected = True
        self.position = 10000

    def info(self) -> FocuserInfo:
        return FocuserInfo(connected=self.connected, position=self.position)

    def move(self, position: int) -> None:
        self.position = int(position)
        self.rig.hub.publish(focus_changed(self.position))


# -------------------------
# Host sequence
# -------------------------
def run_lights(compensator, rig: SimRig, items: Sequence[ExposureItem], cancel: Optional[threading.Event] = None) -> int:
    """
    Drives the compensator the way a sequencer does around each exposure:
    before the first light, then after each light combined with before the next.

    Returns the number of execute() calls.
    """
    calls = 0
    items = list(items)
    if items and compensator.should_trigger(items[0]):
        compensator.execute(cancel)
        calls += 1
    for i, item in enumerate(items):
        rig.advance(item.exposure_s)
        nxt = items[i + 1] if i + 1 < len(items) else None
        armed_after = compensator.should_trigger_after(item)
        armed_before = compensator.should_trigger(nxt)
        if armed_after or armed_before:
            compensator.execute(cancel)
            calls += 1
    return calls
