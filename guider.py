# guider.py
from __future__ import annotations

import threading
from typing import Optional

from fc_types import GuiderInfo, GuiderService, LockPosition
from logging_utils import log_debug, log_error


ARCSEC_PER_HOUR_TO_PER_SECOND = 1.0 / 3600.0


class ShiftRateActuator:
    """
    Wrapper de alto nivel sobre el guider:

      - set_shift_rate(ra, dec)   arcsec/h -> guider native per-second units
      - stop_shifting()
      - zero()                    rate 0 + stop (teardown)
      - lock_position() / info()  passthroughs that never raise

    Every call gets its own never-cancelled token, so a teardown that runs
    while the sequence is being cancelled still leaves the guider at rate 0.
    Errors are logged and reported as False/None; they never propagate into
    the control loop.
    """

    def __init__(self, guider: GuiderService, *, out_log=None) -> None:
        self.guider = guider
        self.out_log = out_log
        self._lock = threading.Lock()

    @staticmethod
    def _token() -> threading.Event:
        return threading.Event()

    def set_shift_rate(self, ra_arcsec_h: float, dec_arcsec_h: float) -> bool:
        ra_s = float(ra_arcsec_h) * ARCSEC_PER_HOUR_TO_PER_SECOND
        dec_s = float(dec_arcsec_h) * ARCSEC_PER_HOUR_TO_PER_SECOND
        with self._lock:
            try:
                self.guider.set_shift_rate(ra_s, dec_s, self._token())
            except Exception as exc:
                log_error(self.out_log, "Guider: set shift rate failed", exc, throttle_s=2.0, throttle_key="guider_rate")
                return False
        log_debug(self.out_log, f"Guider: shift rate {ra_arcsec_h:.3f} | {dec_arcsec_h:.3f} arcsec/hr")
        return True

    def stop_shifting(self) -> bool:
        with self._lock:
            try:
                self.guider.stop_shifting(self._token())
            except Exception as exc:
                log_error(self.out_log, "Guider: stop shifting failed", exc, throttle_s=2.0, throttle_key="guider_stop")
                return False
        return True

    def zero(self) -> bool:
        ok1 = self.set_shift_rate(0.0, 0.0)
        ok2 = self.stop_shifting()
        return ok1 and ok2

    def lock_position(self) -> Optional[LockPosition]:
        try:
            return self.guider.lock_position()
        except Exception as exc:
            log_error(self.out_log, "Guider: failed to read lock position", exc, throttle_s=5.0, throttle_key="guider_lock")
            return None

    def info(self) -> Optional[GuiderInfo]:
        try:
            return self.guider.info()
        except Exception as exc:
            log_error(self.out_log, "Guider: failed to read info", exc, throttle_s=5.0, throttle_key="guider_info")
            return None
