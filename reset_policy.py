# reset_policy.py
from __future__ import annotations

from typing import Optional

from fc_types import FilterInfo, FilterWheelService, FocuserService
from config import CompensatorConfig
from drift import DriftState, full_reset
from events import Event
from guider import ShiftRateActuator
from logging_utils import log_debug, log_error, log_info


class ResetPolicy:
    """
    Decides when the accumulated drift state stops being comparable.

    - meridian flip: full reset and zero rate on the guider
    - dither: no-op
    - filter / focus change: the reference sample goes stale
    """

    def __init__(
        self,
        *,
        filter_wheel: Optional[FilterWheelService] = None,
        focuser: Optional[FocuserService] = None,
        out_log=None,
    ) -> None:
        self.filter_wheel = filter_wheel
        self.focuser = focuser
        self.out_log = out_log

    # -------------------------
    # Filter / focus
    # -------------------------
    def current_filter(self) -> Optional[FilterInfo]:
        if self.filter_wheel is None:
            return None
        try:
            info = self.filter_wheel.info()
        except Exception as exc:
            log_error(self.out_log, "Filter wheel: failed to read info", exc, throttle_s=10.0, throttle_key="fw_info")
            return None
        return info.selected_filter if info.connected else None

    def current_focus(self) -> Optional[int]:
        if self.focuser is None:
            return None
        try:
            info = self.focuser.info()
        except Exception as exc:
            log_error(self.out_log, "Focuser: failed to read info", exc, throttle_s=10.0, throttle_key="focuser_info")
            return None
        return int(info.position) if info.connected else None

    def _filter_connected(self) -> bool:
        if self.filter_wheel is None:
            return False
        try:
            return bool(self.filter_wheel.info().connected)
        except Exception as exc:
            log_error(self.out_log, "Filter wheel: failed to read info", exc, throttle_s=10.0, throttle_key="fw_info")
            return False

    def _focuser_connected(self) -> bool:
        if self.focuser is None:
            return False
        try:
            return bool(self.focuser.info().connected)
        except Exception as exc:
            log_error(self.out_log, "Focuser: failed to read info", exc, throttle_s=10.0, throttle_key="focuser_info")
            return False

    def is_filter_ok(self, state: DriftState, cfg: CompensatorConfig) -> bool:
        if not self._filter_connected():
            return True
        if cfg.ignore_filter_changes:
            log_debug(self.out_log, "Filter changes are to be ignored")
            return True
        last = state.last_filter
        if last is None:
            return False
        cur = self.current_filter()
        if cur is not None and cur.position == last.position:
            log_debug(self.out_log, f"Filter has not changed, was {last.name} and is {cur.name}")
            return True
        log_debug(self.out_log, f"Filter has changed, was {last.name} and is {cur.name if cur else 'unknown'}")
        return False

    def is_focus_ok(self, state: DriftState, cfg: CompensatorConfig) -> bool:
        if not self._focuser_connected():
            return True
        if cfg.ignore_focus_changes:
            log_debug(self.out_log, "Focus changes are to be ignored")
            return True
        cur = self.current_focus()
        if cur == state.last_focus_position:
            log_debug(self.out_log, f"Focus has not changed, was {state.last_focus_position} and is {cur}")
            return True
        log_debug(self.out_log, f"Focus has changed, was {state.last_focus_position} and is {cur}")
        return False

    def reference_ok(self, state: DriftState, cfg: CompensatorConfig) -> bool:
        if state.reference_stale:
            log_debug(self.out_log, "Reference sample marked stale by a filter/focus change")
            return False
        return self.is_filter_ok(state, cfg) and self.is_focus_ok(state, cfg)

    # -------------------------
    # Event handlers
    # -------------------------
    def on_meridian_flip(self, state: DriftState, actuator: ShiftRateActuator) -> None:
        log_info(self.out_log, "Meridian flip event received - restarting from shift rate zero")
        full_reset(state)
        actuator.zero()

    def on_dither(self, state: DriftState, event: Event) -> None:
        # TODO: confirm whether a dither should drop last_sample; the lock-position check covers it for now
        log_debug(self.out_log, "Dither event received")

    def on_filter_changed(self, state: DriftState, cfg: CompensatorConfig, event: Event) -> bool:
        if cfg.ignore_filter_changes or not self._filter_connected():
            return False
        new: Optional[FilterInfo] = event.payload.get("filter")
        last = state.last_filter
        if last is None or new is None or new.position != last.position:
            if state.last_sample is not None:
                log_info(self.out_log, f"Filter changed to {new.name if new else 'unknown'} - reference sample is stale")
            state.reference_stale = True
            return True
        return False

    def on_focus_changed(self, state: DriftState, cfg: CompensatorConfig, event: Event) -> bool:
        if cfg.ignore_focus_changes or not self._focuser_connected():
            return False
        pos = int(event.payload.get("position", 0))
        if pos != state.last_focus_position:
            if state.last_sample is not None:
                log_info(self.out_log, f"Focus moved to {pos} - reference sample is stale")
            state.reference_stale = True
            return True
        return False
