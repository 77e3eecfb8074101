# drift.py
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import astropy.units as u
from astropy.coordinates import Angle, SkyCoord

from fc_types import FilterInfo, LockPosition, Sample
from config import CompensatorConfig
from logging_utils import log_debug, log_info


# ============================================================
# State dataclasses
# ============================================================

@dataclass
class DriftState:
    # running estimate (arcsec/h), pushed to the guider as lock-point shift rate
    shift_rate_ra: float = 0.0
    shift_rate_dec: float = 0.0

    # reference sample; its t is the reference time for the next measurement
    last_sample: Optional[Sample] = None
    last_lock_position: Optional[LockPosition] = None
    last_filter: Optional[FilterInfo] = None
    last_focus_position: int = 0

    # longest light exposure seen since the last completed estimation
    max_exposure_s: float = 0.0

    # set by filter/focus change events, cleared by the next sample
    reference_stale: bool = False


class DriftDecision(str, Enum):
    NO_BASELINE = "NO_BASELINE"
    DEADBAND = "DEADBAND"
    OUTLIER = "OUTLIER"
    UPDATED = "UPDATED"


@dataclass(frozen=True)
class DriftMeasurement:
    drift_ra_arcsec: float
    drift_dec_arcsec: float
    distance_arcsec: float
    elapsed_s: float

    @property
    def elapsed_h(self) -> float:
        return self.elapsed_s / 3600.0


@dataclass(frozen=True)
class DriftOutput:
    decision: DriftDecision
    measurement: Optional[DriftMeasurement]
    exposure_ratio: float
    min_limit_arcsec: float
    max_limit_arcsec: float
    drift_rate_ra: float
    drift_rate_dec: float
    shift_rate_ra: float
    shift_rate_dec: float

    @property
    def rate_changed(self) -> bool:
        return self.decision == DriftDecision.UPDATED


# ============================================================
# Public API
# ============================================================

def make_drift_state() -> DriftState:
    return DriftState()


def clear_reference(state: DriftState) -> None:
    """
    Forget the reference sample and lock position. Rates are kept.
    """
    state.last_sample = None
    state.last_lock_position = None
    state.max_exposure_s = 0.0


def full_reset(state: DriftState) -> None:
    clear_reference(state)
    state.shift_rate_ra = 0.0
    state.shift_rate_dec = 0.0


def accumulate_interval(state: DriftState, exposure_s: float) -> None:
    state.max_exposure_s = max(float(state.max_exposure_s), float(exposure_s))


def compute_drift(last: Sample, coords: SkyCoord, now_t: float) -> DriftMeasurement:
    """
    RA drift is the raw coordinate difference (wrapped to +-180 deg), matching
    the cos(dec) scaling applied to the RA shift rate elsewhere. Distance is
    the true angular separation.
    """
    d_ra = Angle(coords.ra - last.coordinates.ra).wrap_at(180.0 * u.deg)
    d_dec = coords.dec - last.coordinates.dec
    sep = last.coordinates.separation(coords)
    return DriftMeasurement(
        drift_ra_arcsec=float(d_ra.to_value(u.arcsec)),
        drift_dec_arcsec=float(d_dec.to_value(u.arcsec)),
        distance_arcsec=float(sep.to_value(u.arcsec)),
        elapsed_s=float(now_t) - float(last.t),
    )


def exposure_ratio(elapsed_s: float, max_exposure_s: float) -> float:
    if max_exposure_s <= 0.0:
        return math.inf
    return float(elapsed_s) / float(max_exposure_s)


def estimate_drift(
    state: DriftState,
    measurement: Optional[DriftMeasurement],
    *,
    pixel_scale: float,
    cfg: CompensatorConfig,
    out_log=None,
) -> DriftOutput:
    """
    Un paso de estimación puro (no toca hardware ni muta state):
    deadband / outlier rejection and the negative-feedback rate update.
    The caller pushes the new rate and commits it.
    """
    if measurement is None:
        return DriftOutput(
            decision=DriftDecision.NO_BASELINE,
            measurement=None,
            exposure_ratio=0.0,
            min_limit_arcsec=0.0,
            max_limit_arcsec=0.0,
            drift_rate_ra=0.0,
            drift_rate_dec=0.0,
            shift_rate_ra=float(state.shift_rate_ra),
            shift_rate_dec=float(state.shift_rate_dec),
        )

    m = measurement
    log_debug(out_log, f"Drift: {m.drift_ra_arcsec:.3f} arcsec in RA in {m.elapsed_s / 60.0:.3f} minutes")
    log_debug(out_log, f"Drift: {m.drift_dec_arcsec:.3f} arcsec in Dec in {m.elapsed_s / 60.0:.3f} minutes")

    ratio = exposure_ratio(m.elapsed_s, state.max_exposure_s)
    lo = ratio * float(cfg.min_drift_limit_px) * float(pixel_scale)
    hi = ratio * float(cfg.max_drift_limit_px) * float(pixel_scale)

    base = dict(
        measurement=m,
        exposure_ratio=ratio,
        min_limit_arcsec=lo,
        max_limit_arcsec=hi,
        drift_rate_ra=0.0,
        drift_rate_dec=0.0,
        shift_rate_ra=float(state.shift_rate_ra),
        shift_rate_dec=float(state.shift_rate_dec),
    )

    if m.elapsed_s <= 0.0:
        log_info(out_log, "Drift: no time elapsed since the reference sample, leaving shift rate unchanged")
        return DriftOutput(decision=DriftDecision.DEADBAND, **base)

    if not math.isfinite(ratio):
        log_info(out_log, "Drift: no light exposure accumulated since the reference sample, leaving shift rate unchanged")
        return DriftOutput(decision=DriftDecision.DEADBAND, **base)

    if m.distance_arcsec < lo:
        log_info(
            out_log,
            f"Drift: less than {ratio:.2f} times the minimum drift ({cfg.min_drift_limit_px} px), leaving shift rate unchanged",
        )
        return DriftOutput(decision=DriftDecision.DEADBAND, **base)

    if m.distance_arcsec > hi:
        log_info(
            out_log,
            f"Drift: more than {ratio:.2f} times the maximum drift ({cfg.max_drift_limit_px} px), leaving shift rate unchanged",
        )
        return DriftOutput(decision=DriftDecision.OUTLIER, **base)

    rate_ra = m.drift_ra_arcsec / m.elapsed_h
    rate_dec = m.drift_dec_arcsec / m.elapsed_h
    gain = float(cfg.aggressivity)
    out = DriftOutput(
        decision=DriftDecision.UPDATED,
        **dict(
            base,
            drift_rate_ra=rate_ra,
            drift_rate_dec=rate_dec,
            shift_rate_ra=float(state.shift_rate_ra) - rate_ra * gain,
            shift_rate_dec=float(state.shift_rate_dec) - rate_dec * gain,
        ),
    )
    log_info(out_log, f"Drift: new shift rate {out.shift_rate_ra:.2f} | {out.shift_rate_dec:.2f} arcsec/hr")
    return out


def commit_sample(
    state: DriftState,
    sample: Sample,
    *,
    lock_position: Optional[LockPosition],
    filter_info: Optional[FilterInfo],
    focus_position: Optional[int],
) -> None:
    state.last_sample = sample
    state.last_lock_position = lock_position
    if filter_info is not None:
        state.last_filter = filter_info
    if focus_position is not None:
        state.last_focus_position = int(focus_position)
    state.reference_stale = False


def commit_estimate(state: DriftState, out: DriftOutput) -> None:
    if out.decision == DriftDecision.NO_BASELINE:
        return
    if out.rate_changed:
        state.shift_rate_ra = float(out.shift_rate_ra)
        state.shift_rate_dec = float(out.shift_rate_dec)
    state.max_exposure_s = 0.0
