# lock_position.py
from __future__ import annotations

import math
from typing import Optional

import numpy as np

from fc_types import GuiderInfo, LockPosition, ValidityFlags
from logging_utils import StatusSink, log_debug, log_warning


# |dist - expected| <= max(REL_TOL * expected, ABS_FLOOR_PX)
REL_TOL = 0.25
ABS_FLOOR_PX = 0.02


def expected_displacement_px(
    shift_rate_ra: float,
    shift_rate_dec: float,
    dec_deg: float,
    pixel_scale: float,
    elapsed_h: float,
) -> float:
    """
    Guide-camera pixels the lock point should have moved at the current shift
    rate (arcsec/h) over elapsed_h hours. RA rate is scaled by cos(dec).
    """
    vra = float(shift_rate_ra) * math.cos(math.radians(float(dec_deg))) / float(pixel_scale)
    vdec = float(shift_rate_dec) / float(pixel_scale)
    return float(np.sqrt((vra * vra + vdec * vdec) * float(elapsed_h) ** 2))


def within_tolerance(dist: float, expected: float) -> bool:
    return abs(float(dist) - float(expected)) <= max(REL_TOL * float(expected), ABS_FLOOR_PX)


def lock_position_still_valid(
    last: Optional[LockPosition],
    current: Optional[LockPosition],
    *,
    shift_rate_ra: float,
    shift_rate_dec: float,
    dec_deg: float,
    guider_info: Optional[GuiderInfo],
    flags: ValidityFlags,
    status: Optional[StatusSink] = None,
    out_log=None,
) -> bool:
    """
    Did the guider lock point move the way the applied shift rate predicts?

    Anything else (dither, slip, manual nudge) means the previous sample can't
    be compared with a new one. Degraded inputs never block: missing pixel
    scale or a non-finite prediction warn once per session and return True.
    """
    if last is None:
        return True

    if guider_info is None or not (guider_info.pixel_scale > 0.0):
        if flags.mark("pixel_scale_warned"):
            log_warning(
                out_log,
                "LockPosition: guider pixel scale not available. This can happen if the guider is not "
                "configured correctly (eg. missing focal length). Compensation continues, but unexpected "
                "guide star movements cannot be detected.",
            )
            if status is not None:
                status.warning("Guider pixel scale not available. Safety checks are reduced. See logs for details.")
        return True

    if current is None:
        log_debug(out_log, "LockPosition: guider did not report a lock position")
        return False

    dist = float(math.hypot(current.x - last.x, current.y - last.y))
    elapsed_h = (float(current.t) - float(last.t)) / 3600.0
    expected = expected_displacement_px(
        shift_rate_ra,
        shift_rate_dec,
        dec_deg,
        guider_info.pixel_scale,
        elapsed_h,
    )
    log_debug(out_log, f"LockPosition: dist={dist:.5f} time={elapsed_h:.5f}h expected={expected:.5f}")

    if not math.isfinite(expected):
        if flags.mark("nan_warned"):
            log_warning(
                out_log,
                "LockPosition: expected distance is not a finite number. This may be caused by invalid "
                "data from telescope or guider drivers.",
            )
            if status is not None:
                status.warning("A calculation error occurred. Safety checks are reduced. See logs for details.")
        return True

    ok = within_tolerance(dist, expected)
    if ok:
        log_debug(out_log, "LockPosition: distance from last lock point within 25% of the expected distance")
    else:
        log_debug(out_log, "LockPosition: distance from last lock point NOT within 25% of the expected distance")
    return ok
