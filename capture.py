# capture.py
from __future__ import annotations

import threading
import time
from typing import Optional, Dict, Any

from fc_types import (
    Binning,
    CameraConnectionLostError,
    CameraService,
    CycleCancelled,
    ExposureData,
    ExposureFailedError,
    ExposureSpec,
    FilterWheelService,
    FocuserService,
    ImageType,
    TelescopeService,
)
from config import CompensatorConfig, PlatesolveSettings
from logging_utils import StatusSink, log_debug, log_error


def check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise CycleCancelled("measurement cycle cancelled")


def _acquire_gate(gate: threading.Semaphore, cancel: Optional[threading.Event], poll_s: float = 0.05) -> None:
    # espera cancelable por el slot de captura
    while not gate.acquire(timeout=poll_s):
        check_cancel(cancel)
    if cancel is not None and cancel.is_set():
        gate.release()
        check_cancel(cancel)


class SampleAcquirer:
    """
    Takes one SNAPSHOT exposure with the current filter and focus and returns
    the downloaded data.

    At most one capture+download is in flight per acquirer: a second caller
    blocks on the gate until the first one's `finally` releases it.
    """

    def __init__(
        self,
        camera: CameraService,
        *,
        telescope: Optional[TelescopeService] = None,
        filter_wheel: Optional[FilterWheelService] = None,
        focuser: Optional[FocuserService] = None,
        status: Optional[StatusSink] = None,
        out_log=None,
    ) -> None:
        self.camera = camera
        self.telescope = telescope
        self.filter_wheel = filter_wheel
        self.focuser = focuser
        self.status = status or StatusSink(out=out_log)
        self.out_log = out_log
        self._gate = threading.Semaphore(1)

    def exposure_time(self, cfg: CompensatorConfig, ps: PlatesolveSettings, exposure_s: Optional[float] = None) -> float:
        if exposure_s is None:
            exposure_s = cfg.snapshot_exposure_s if cfg.snapshot_exposure_s is not None else ps.exposure_s
        return max(float(exposure_s), float(cfg.min_duration_s))

    def _gain(self, ps: PlatesolveSettings) -> int:
        gain = int(ps.gain)
        if gain == -1:
            gain = self.camera.info().gain or 0
        return int(gain)

    def make_spec(
        self,
        binning: Binning,
        cfg: CompensatorConfig,
        ps: PlatesolveSettings,
        exposure_s: Optional[float] = None,
    ) -> ExposureSpec:
        return ExposureSpec(
            exposure_s=self.exposure_time(cfg, ps, exposure_s),
            image_type=ImageType.SNAPSHOT,
            binning=Binning(binning.x, binning.y),
            gain=self._gain(ps),
            count=1,
        )

    def _fill_meta(self, data: ExposureData, spec: ExposureSpec) -> None:
        meta: Dict[str, Any] = dict(data.meta or {})
        meta["binning"] = spec.binning.name
        meta["exposure_s"] = float(spec.exposure_s)
        meta["image_type"] = spec.image_type.value
        meta["gain"] = int(spec.gain)
        meta["t_download"] = time.time()

        if self.telescope is not None:
            tinfo = self.telescope.info()
            if tinfo.connected and tinfo.coordinates is not None:
                meta["telescope_ra_deg"] = float(tinfo.coordinates.ra.deg)
                meta["telescope_dec_deg"] = float(tinfo.coordinates.dec.deg)
        if self.filter_wheel is not None:
            fw = self.filter_wheel.info()
            if fw.connected and fw.selected_filter is not None:
                meta["filter"] = fw.selected_filter.name
                meta["filter_position"] = int(fw.selected_filter.position)
        if self.focuser is not None:
            fo = self.focuser.info()
            if fo.connected:
                meta["focus_position"] = int(fo.position)
        data.meta = meta

    def acquire(self, spec: ExposureSpec, cancel: Optional[threading.Event] = None) -> Optional[ExposureData]:
        """
        Returns the downloaded exposure, or None if the download produced nothing.

        Raises CameraConnectionLostError, ExposureFailedError, CycleCancelled,
        or whatever unexpected error the camera raised (after aborting).
        """
        if cancel is None:
            cancel = threading.Event()

        self.status.progress("Waiting for camera")
        _acquire_gate(self._gate, cancel)
        try:
            if not self.camera.info().connected:
                self.status.warning("No camera connected")
                raise CameraConnectionLostError("camera not connected")

            log_debug(
                self.out_log,
                f"Capture: exposure for solving - binning {spec.binning.name} gain {spec.gain} exposure {spec.exposure_s}s",
            )
            self.status.progress("Exposing")
            self.camera.capture(spec, cancel)
            check_cancel(cancel)

            self.status.progress("Downloading")
            data = self.camera.download(cancel)
            check_cancel(cancel)

            if data is None:
                msg = f"Camera download failed (exposure {spec.exposure_s}s, type {spec.image_type.value}, gain {spec.gain})"
                log_error(self.out_log, f"Capture: {msg}")
                self.status.error(msg)
                return None

            self._fill_meta(data, spec)
            return data
        except CycleCancelled:
            self._abort()
            raise
        except ExposureFailedError as exc:
            log_error(self.out_log, f"Capture: exposure failed ({exc})")
            self.status.error(str(exc))
            raise
        except CameraConnectionLostError as exc:
            log_error(self.out_log, "Capture: camera connection lost", exc)
            self.status.error("Camera connection lost")
            raise
        except Exception as exc:
            self.status.error(f"Unexpected error\n{exc}")
            log_error(self.out_log, "Capture: unexpected error", exc)
            self._abort()
            raise
        finally:
            self.status.progress("")
            self._gate.release()

    def _abort(self) -> None:
        try:
            self.camera.abort_exposure()
        except Exception as exc:
            log_error(self.out_log, "Capture: abort exposure failed", exc)
