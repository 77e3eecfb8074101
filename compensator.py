# compensator.py
from __future__ import annotations

import contextlib
import threading
import time
from typing import Any, Callable, List, Optional

from fc_types import (
    Binning,
    CameraService,
    CycleCancelled,
    CycleContext,
    CyclePhase,
    DeviceNotConnectedError,
    DriftSnapshot,
    ExposureItem,
    FieldSolverService,
    FilterWheelService,
    FocuserService,
    GuiderService,
    ImageType,
    LockPosition,
    Sample,
    TelescopeService,
    TriggerStatus,
    ValidityFlags,
    radec_deg,
)
from config import AppConfig, copy_config, validate_config
from capture import SampleAcquirer, check_cancel
from drift import (
    DriftDecision,
    accumulate_interval,
    clear_reference,
    commit_estimate,
    commit_sample,
    compute_drift,
    estimate_drift,
    make_drift_state,
)
from events import Event, EventHub, EventType
from guider import ShiftRateActuator
from imaging import to_solvable_image
from lock_position import lock_position_still_valid
from logging_utils import StatusSink, log_debug, log_error, log_info, set_debug, set_log_file
from platesolve import FieldSolverAdapter, PlatesolveResult
from reset_policy import ResetPolicy
from trigger import TriggerStateMachine


class FlexureCompensator:
    """
    Orquestador del lazo de compensación de flexión diferencial.

    Around every LIGHT exposure of the host sequence:
    - after a light frame: snapshot + solve, compare with the reference sample,
      update and push the guider shift rate
    - before a light frame: take a fresh reference sample if the previous one
      can no longer be compared (lock point moved, filter/focus changed, ...)

    Host contract:
    - should_trigger(next_item) / should_trigger_after(previous_item)
    - execute(cancel) on the host's sequence thread
    - start()/stop() around the sequence block (or use as a context manager)

    DriftState is only read through get_state().
    """

    def __init__(
        self,
        cfg: AppConfig,
        *,
        camera: CameraService,
        solver: FieldSolverService,
        guider: GuiderService,
        telescope: Optional[TelescopeService] = None,
        filter_wheel: Optional[FilterWheelService] = None,
        focuser: Optional[FocuserService] = None,
        hub: Optional[EventHub] = None,
        notify: Optional[Callable[[str, str], Any]] = None,
        progress: Optional[Callable[[str], Any]] = None,
        out_log=None,
        config_provider: Optional[Callable[[], AppConfig]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = copy_config(cfg)
        self.out_log = out_log
        self.config_provider = config_provider
        self.clock = clock

        self.camera = camera
        self.telescope = telescope
        self.filter_wheel = filter_wheel
        self.focuser = focuser
        self.hub = hub if hub is not None else EventHub(out_log=out_log)

        self.status = StatusSink(notify, progress, out=out_log)
        self.acquirer = SampleAcquirer(
            camera,
            telescope=telescope,
            filter_wheel=filter_wheel,
            focuser=focuser,
            status=self.status,
            out_log=out_log,
        )
        self.solver = FieldSolverAdapter(solver, out_log=out_log)
        self.actuator = ShiftRateActuator(guider, out_log=out_log)
        self.policy = ResetPolicy(filter_wheel=filter_wheel, focuser=focuser, out_log=out_log)

        # State (protegido por _lock)
        self._lock = threading.RLock()
        self._state = make_drift_state()
        self._trigger = TriggerStateMachine(after_exposures=int(self.cfg.compensator.after_exposures))
        self._flags = ValidityFlags()
        self._running = False
        self._image_rms_arcsec = 0.0
        # bumped by every reset; a cycle that started under an older epoch commits nothing
        self._epoch = 0

        self.issues: List[str] = []

        self._subs: Optional[contextlib.ExitStack] = None
        self._lifetime = contextlib.ExitStack()
        self._lifetime.enter_context(self.hub.subscribe(EventType.STATUS_CHANGED, self._on_status_changed))
        self._disposed = False

        self._apply_logging(self.cfg)

    # -------------------------
    # Config
    # -------------------------
    @staticmethod
    def _apply_logging(cfg: AppConfig) -> None:
        set_debug(cfg.debug)
        set_log_file(cfg.log_path if cfg.log_to_file else None)

    def _refresh_config(self) -> AppConfig:
        if self.config_provider is not None:
            try:
                new_cfg = self.config_provider()
            except Exception as exc:
                log_error(self.out_log, "Config: provider failed, keeping previous settings", exc)
            else:
                if new_cfg is not None:
                    self.cfg = copy_config(new_cfg)
                    self._apply_logging(self.cfg)
        with self._lock:
            self._trigger.after_exposures = int(self.cfg.compensator.after_exposures)
        return self.cfg

    # -------------------------
    # Trigger entrypoints
    # -------------------------
    def should_trigger(self, next_item: Optional[ExposureItem]) -> bool:
        with self._lock:
            return self._trigger.should_trigger(next_item)

    def should_trigger_after(self, previous_item: Optional[ExposureItem]) -> bool:
        with self._lock:
            return self._trigger.should_trigger_after(previous_item)

    @property
    def progress_exposures(self) -> int:
        with self._lock:
            return self._trigger.progress_exposures

    @property
    def progress_exposures_plus_one(self) -> int:
        with self._lock:
            return self._trigger.progress_exposures_plus_one

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------
    # Device reads
    # -------------------------
    def _current_position(self):
        if self.telescope is None:
            return None
        try:
            return self.telescope.current_position()
        except Exception as exc:
            log_error(self.out_log, "Telescope: failed to read position", exc, throttle_s=10.0, throttle_key="tel_pos")
            return None

    def _current_dec_deg(self) -> float:
        _, dec = radec_deg(self._current_position())
        return float("nan") if dec is None else dec

    def _telescope_connected(self) -> bool:
        try:
            return bool(self.telescope.info().connected)
        except Exception as exc:
            log_error(self.out_log, "Telescope: failed to read info", exc, throttle_s=10.0, throttle_key="tel_info")
            return False

    def _require_connected(self) -> None:
        # no telescope configured means no hint, not a disconnection
        if self.telescope is not None and not self._telescope_connected():
            self.status.warning("No telescope connected")
            raise DeviceNotConnectedError("telescope not connected")
        ginfo = self.actuator.info()
        if ginfo is None or not ginfo.connected:
            self.status.warning("No guider connected")
            raise DeviceNotConnectedError("guider not connected")

    def _lock_valid(self, current: Optional[LockPosition]) -> bool:
        s = self._state
        return lock_position_still_valid(
            s.last_lock_position,
            current,
            shift_rate_ra=s.shift_rate_ra,
            shift_rate_dec=s.shift_rate_dec,
            dec_deg=self._current_dec_deg(),
            guider_info=self.actuator.info(),
            flags=self._flags,
            status=self.status,
            out_log=self.out_log,
        )

    # -------------------------
    # Snapshot + solve
    # -------------------------
    def _cycle_context(self, phase: CyclePhase, binning: Binning) -> CycleContext:
        fi = self.policy.current_filter()
        return CycleContext(
            phase=phase,
            binning=binning,
            exposure_s=self.acquirer.exposure_time(self.cfg.compensator, self.cfg.platesolve),
            filter_position=None if fi is None else int(fi.position),
            focus_position=self.policy.current_focus(),
        )

    def _snap_and_solve(self, ctx: CycleContext, cancel: threading.Event) -> PlatesolveResult:
        cfg = self.cfg
        binning = ctx.binning
        log_debug(self.out_log, f"Taking a snapshot and solving ({ctx.phase.value}, {binning.name}, {ctx.exposure_s}s)")
        spec = self.acquirer.make_spec(binning, cfg.compensator, cfg.platesolve, ctx.exposure_s)
        data = self.acquirer.acquire(spec, cancel)
        if data is None:
            return PlatesolveResult.failed("ERR_NO_IMAGE")
        check_cancel(cancel)

        self.status.progress("Solving")
        try:
            image = to_solvable_image(data, downsample=cfg.platesolve.downsample)
            hint = self.solver.make_hint(
                cfg.platesolve,
                approx_coordinates=self._current_position(),
                binning=binning,
            )
            res = self.solver.solve(image, hint, blind_failover=cfg.platesolve.blind_failover, cancel=cancel)
        finally:
            self.status.progress("")
        check_cancel(cancel)
        return res

    @staticmethod
    def _make_sample(t: float, res: PlatesolveResult, ctx: CycleContext) -> Sample:
        return Sample(
            t=float(t),
            coordinates=res.coordinates,
            pixel_scale=float(res.pixel_scale),
            binning=ctx.binning,
            filter_position=ctx.filter_position,
            focus_position=ctx.focus_position,
        )

    def _commit_sample(self, sample: Sample, lock_position: Optional[LockPosition]) -> None:
        commit_sample(
            self._state,
            sample,
            lock_position=lock_position,
            filter_info=self.policy.current_filter(),
            focus_position=self.policy.current_focus(),
        )
        if self._state.last_filter is not None:
            log_debug(self.out_log, f"Filter: {self._state.last_filter.name}")
        log_debug(self.out_log, f"Focus position: {self._state.last_focus_position}")
        self._trigger.mark_measured()

    def _solve_failed(self, *, clear_lock: bool) -> None:
        self.status.warning("Plate solve failed")
        with self._lock:
            self._state.last_sample = None
            if clear_lock:
                self._state.last_lock_position = None

    # -------------------------
    # Execute
    # -------------------------
    def execute(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Runs the armed after-check, then the armed before-check.

        Raises CycleCancelled (nothing committed by the interrupted check),
        DeviceNotConnectedError (telescope or guider; armed checks are kept),
        CameraConnectionLostError, ExposureFailedError. A failed solve is soft:
        the reference is dropped and execute() returns.
        """
        if cancel is None:
            cancel = threading.Event()
        cfg = self._refresh_config()
        log_debug(self.out_log, "Executing flexure compensator")
        self._require_connected()

        this_lock = self.actuator.lock_position()
        this_t = float(self.clock())

        with self._lock:
            epoch = self._epoch
            prev_max = self._state.max_exposure_s
            accumulate_interval(self._state, self._trigger.exposure_s)
            after_binning = self._trigger.take_after()
            before_binning = self._trigger.take_before()

        committed = False
        try:
            if after_binning is not None:
                ok, committed, this_lock, this_t = self._after_check(after_binning, cfg, cancel, epoch, this_lock, this_t)
                if not ok:
                    return
            if before_binning is not None:
                self._before_check(before_binning, cancel, epoch, this_lock, this_t)
        except CycleCancelled:
            log_info(self.out_log, "Flexure compensator: cycle cancelled")
            if not committed:
                with self._lock:
                    if self._epoch == epoch:
                        self._state.max_exposure_s = prev_max
            raise

    def _after_check(self, binning: Binning, cfg: AppConfig, cancel: threading.Event, epoch: int, this_lock, this_t: float):
        """
        Returns (continue, committed, lock_position, cycle_time).
        """
        with self._lock:
            log_debug(self.out_log, f"Last lock position   : {self._state.last_lock_position}")
            log_debug(self.out_log, f"Current lock position: {this_lock}")
            usable = (
                (self._state.last_lock_position is None or self._lock_valid(this_lock))
                and self.policy.reference_ok(self._state, cfg.compensator)
            )
            due = self._trigger.measurement_due

        if not usable:
            log_debug(
                self.out_log,
                "Just after exposure item - previous exposure no longer valid, "
                "a new reference image will be taken before next light sub",
            )
            return True, False, this_lock, this_t
        if not due:
            log_debug(self.out_log, f"Just after exposure item - measuring every {cfg.compensator.after_exposures} exposures")
            return True, False, this_lock, this_t

        log_debug(self.out_log, "Just after exposure item - starting capture for plate solving")
        ctx = self._cycle_context(CyclePhase.AFTER, binning)
        res = self._snap_and_solve(ctx, cancel)
        if not res.success:
            log_info(self.out_log, "Plate solve failed")
            self._solve_failed(clear_lock=False)
            return False, False, this_lock, this_t
        log_debug(self.out_log, f"Field plate solved - {FieldSolverAdapter.describe(res)}")

        with self._lock:
            if self._epoch != epoch:
                log_info(self.out_log, "Drift state was reset during the measurement, discarding it")
                return True, False, this_lock, this_t

            last = self._state.last_sample
            measurement = None
            if last is not None:
                measurement = compute_drift(last, res.coordinates, float(self.clock()))
            else:
                log_debug(
                    self.out_log,
                    "Image plate solved but no previous image at same location exists, leaving shift rate unchanged",
                )
            out = estimate_drift(
                self._state,
                measurement,
                pixel_scale=res.pixel_scale,
                cfg=cfg.compensator,
                out_log=self.out_log,
            )
            if out.decision == DriftDecision.UPDATED:
                self.actuator.set_shift_rate(out.shift_rate_ra, out.shift_rate_dec)
                this_lock = self.actuator.lock_position()
                this_t = float(self.clock())
                log_debug(self.out_log, f"Updated lock position: {this_lock}")
            commit_estimate(self._state, out)
            self._commit_sample(self._make_sample(this_t, res, ctx), this_lock)
        return True, True, this_lock, this_t

    def _before_check(self, binning: Binning, cancel: threading.Event, epoch: int, this_lock, this_t: float) -> None:
        cfg = self.cfg
        with self._lock:
            log_debug(self.out_log, f"Last lock position   : {self._state.last_lock_position}")
            log_debug(self.out_log, f"Current lock position: {this_lock}")
            stale = self._state.last_lock_position is None or not self._lock_valid(this_lock)
            if not stale:
                stale = not self.policy.reference_ok(self._state, cfg.compensator)

        if not stale:
            log_debug(self.out_log, "Just before exposure item - last plate solved capture still valid")
            return

        log_debug(self.out_log, "Just before exposure item - previous exposure not valid, starting capture for plate solving")
        ctx = self._cycle_context(CyclePhase.BEFORE, binning)
        res = self._snap_and_solve(ctx, cancel)
        if not res.success:
            log_error(self.out_log, "Plate solve failed")
            self._solve_failed(clear_lock=True)
            return
        log_debug(self.out_log, f"Field plate solved - {FieldSolverAdapter.describe(res)}")

        with self._lock:
            if self._epoch != epoch:
                log_info(self.out_log, "Drift state was reset during the measurement, discarding it")
                return
            self._commit_sample(self._make_sample(this_t, res, ctx), this_lock)
            self._state.max_exposure_s = 0.0
            log_debug(self.out_log, f"Lock position: {self._state.last_lock_position}")

    # -------------------------
    # Lifecycle
    # -------------------------
    def _clear_caches(self) -> None:
        with self._lock:
            clear_reference(self._state)
            self._epoch += 1

    def _subscribe(self) -> None:
        if self._subs is not None:
            self._subs.close()
        stack = contextlib.ExitStack()
        for event_type, handler in (
            (EventType.AFTER_MERIDIAN_FLIP, self._on_meridian_flip),
            (EventType.AFTER_DITHER, self._on_dither),
            (EventType.BEFORE_IMAGE_SAVED, self._on_before_image_saved),
            (EventType.FILTER_CHANGED, self._on_filter_changed),
            (EventType.FOCUS_CHANGED, self._on_focus_changed),
        ):
            stack.enter_context(self.hub.subscribe(event_type, handler))
        self._subs = stack

    def _unsubscribe(self) -> None:
        stack, self._subs = self._subs, None
        if stack is not None:
            stack.close()

    def start(self) -> None:
        log_debug(self.out_log, "Entering sequence block - registering event listeners")
        self._clear_caches()
        with self._lock:
            ra, dec = self._state.shift_rate_ra, self._state.shift_rate_dec
        self.actuator.set_shift_rate(ra, dec)
        self._subscribe()
        self._running = True

    def stop(self) -> None:
        log_debug(self.out_log, "Exiting sequence block - un-registering event listeners and stopping shifting")
        try:
            self._unsubscribe()
        finally:
            self.actuator.zero()
            self._clear_caches()
            self._running = False

    def turn_on(self) -> None:
        log_info(self.out_log, "Turning flexure compensator ON")
        self.start()

    def turn_off(self) -> None:
        log_info(self.out_log, "Turning flexure compensator OFF")
        self.stop()

    def set_status(self, status: TriggerStatus) -> None:
        status = TriggerStatus(status)
        if status == TriggerStatus.DISABLED:
            self.turn_off()
        elif status == TriggerStatus.CREATED:
            with self._lock:
                self._state.shift_rate_ra = 0.0
                self._state.shift_rate_dec = 0.0
            self.turn_on()

    def attach(self, parent_running: bool) -> None:
        if parent_running:
            self.start()

    def detach(self) -> None:
        self.stop()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._unsubscribe()
        self._lifetime.close()
        self._running = False

    def __enter__(self) -> "FlexureCompensator":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    # -------------------------
    # Event handlers
    # -------------------------
    def _on_meridian_flip(self, event: Event) -> None:
        with self._lock:
            self.policy.on_meridian_flip(self._state, self.actuator)
            self._trigger.rearm()
            self._epoch += 1

    def _on_dither(self, event: Event) -> None:
        with self._lock:
            self.policy.on_dither(self._state, event)

    def _on_filter_changed(self, event: Event) -> None:
        with self._lock:
            self.policy.on_filter_changed(self._state, self.cfg.compensator, event)

    def _on_focus_changed(self, event: Event) -> None:
        with self._lock:
            self.policy.on_focus_changed(self._state, self.cfg.compensator, event)

    def _on_before_image_saved(self, event: Event) -> None:
        if not self._running:
            return
        if event.payload.get("image_type") != ImageType.LIGHT:
            return
        rms = float(event.payload.get("rms_total", 0.0)) * float(event.payload.get("rms_scale", 0.0))
        with self._lock:
            self._image_rms_arcsec = rms

    def _on_status_changed(self, event: Event) -> None:
        self.set_status(event.payload["status"])

    # -------------------------
    # Diagnostics
    # -------------------------
    def validate(self) -> List[str]:
        issues: List[str] = []
        if not self.camera.info().connected:
            issues.append("Camera not connected")
        if self.telescope is None or not self.telescope.info().connected:
            issues.append("Telescope not connected")
        ginfo = self.actuator.info()
        if ginfo is None or not ginfo.connected:
            issues.append("Guider not connected")
        elif not ginfo.can_set_shift_rate:
            issues.append("Guider doesn't support shifting lock point")
        elif not ginfo.can_get_lock_position:
            issues.append("Guider doesn't support reading lock position")
        issues.extend(validate_config(self.cfg))
        self.issues = issues
        return list(issues)

    def get_state(self) -> DriftSnapshot:
        with self._lock:
            s = self._state
            ra, dec = radec_deg(s.last_sample.coordinates if s.last_sample is not None else None)
            return DriftSnapshot(
                running=self._running,
                shift_rate_ra=float(s.shift_rate_ra),
                shift_rate_dec=float(s.shift_rate_dec),
                has_reference=s.last_sample is not None,
                reference_ra_deg=ra,
                reference_dec_deg=dec,
                reference_t=None if s.last_sample is None else float(s.last_sample.t),
                last_lock_position=s.last_lock_position,
                reference_stale=bool(s.reference_stale),
                max_exposure_s=float(s.max_exposure_s),
                image_count=int(self._trigger.image_count),
                progress_exposures=int(self._trigger.progress_exposures),
                image_rms_arcsec=float(self._image_rms_arcsec),
            )

    def __repr__(self) -> str:
        return "Trigger: FlexureCompensator"
