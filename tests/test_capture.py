from __future__ import annotations

import threading

import numpy as np
import pytest

from capture import SampleAcquirer, check_cancel
from config import CompensatorConfig, PlatesolveSettings
from fc_types import (
    Binning,
    CameraConnectionLostError,
    CameraInfo,
    CycleCancelled,
    ExposureData,
    ExposureFailedError,
    ImageType,
)
from logging_utils import StatusSink


class _Camera:
    """Scriptable camera double."""

    def __init__(self, *, connected=True, gain=None, data=None, on_capture=None):
        self.connected = connected
        self.gain = gain
        self.data = data if data is not None else ExposureData(raw=np.zeros((4, 4), dtype=np.uint16))
        self.on_capture = on_capture
        self.aborts = 0
        self.specs = []

    def info(self):
        return CameraInfo(connected=self.connected, gain=self.gain, pixel_size_um=3.76)

    def capture(self, spec, cancel):
        self.specs.append(spec)
        if self.on_capture is not None:
            self.on_capture(cancel)

    def download(self, cancel):
        return self.data

    def abort_exposure(self):
        self.aborts += 1


def _acquirer(camera, progress=None, notes=None, **kw):
    status = StatusSink(
        (lambda level, msg: notes.append((level, msg))) if notes is not None else None,
        progress,
    )
    return SampleAcquirer(camera, status=status, **kw)


def test_exposure_time_floor_and_override():
    acq = _acquirer(_Camera())
    ps = PlatesolveSettings(exposure_s=0.5)
    assert acq.exposure_time(CompensatorConfig(min_duration_s=2.0), ps) == 2.0
    assert acq.exposure_time(CompensatorConfig(min_duration_s=1.0), PlatesolveSettings(exposure_s=8.0)) == 8.0
    assert acq.exposure_time(CompensatorConfig(snapshot_exposure_s=3.0), ps) == 3.0
    assert acq.exposure_time(CompensatorConfig(), ps, exposure_s=12.0) == 12.0


def test_gain_fallback():
    cfg = CompensatorConfig()
    assert _acquirer(_Camera(gain=200)).make_spec(Binning(2, 2), cfg, PlatesolveSettings(gain=-1)).gain == 200
    assert _acquirer(_Camera(gain=None)).make_spec(Binning(), cfg, PlatesolveSettings(gain=-1)).gain == 0
    spec = _acquirer(_Camera(gain=200)).make_spec(Binning(2, 2), cfg, PlatesolveSettings(gain=50))
    assert spec.gain == 50
    assert spec.image_type == ImageType.SNAPSHOT
    assert spec.binning == Binning(2, 2)


def test_acquire_reports_progress_and_fills_meta(rig):
    statuses = []
    acq = _acquirer(
        rig.camera,
        progress=statuses.append,
        telescope=rig.telescope,
        filter_wheel=rig.filter_wheel,
        focuser=rig.focuser,
    )
    spec = acq.make_spec(Binning(1, 1), CompensatorConfig(), PlatesolveSettings())
    data = acq.acquire(spec)
    assert data is not None
    assert statuses == [
        "Flexure Compensator: Waiting for camera",
        "Flexure Compensator: Exposing",
        "Flexure Compensator: Downloading",
        "",
    ]
    meta = data.meta
    assert meta["binning"] == "1x1"
    assert meta["image_type"] == "SNAPSHOT"
    assert meta["filter"] == "L"
    assert meta["focus_position"] == 10000
    assert meta["telescope_ra_deg"] == pytest.approx(150.0)


def test_disconnected_camera():
    notes = []
    acq = _acquirer(_Camera(connected=False), notes=notes)
    spec = acq.make_spec(Binning(), CompensatorConfig(), PlatesolveSettings())
    with pytest.raises(CameraConnectionLostError):
        acq.acquire(spec)
    assert ("warning", "No camera connected") in notes


def test_download_none_returns_none():
    notes = []
    cam = _Camera()
    cam.download = lambda cancel: None
    acq = _acquirer(cam, notes=notes)
    assert acq.acquire(acq.make_spec(Binning(), CompensatorConfig(), PlatesolveSettings())) is None
    assert notes and notes[0][0] == "error"


def test_cancel_during_capture_aborts():
    def cancel_now(cancel):
        cancel.set()

    cam = _Camera(on_capture=cancel_now)
    acq = _acquirer(cam)
    with pytest.raises(CycleCancelled):
        acq.acquire(acq.make_spec(Binning(), CompensatorConfig(), PlatesolveSettings()), threading.Event())
    assert cam.aborts == 1
    # gate released
    assert acq._gate.acquire(blocking=False)


def test_exposure_failure_is_reraised_without_abort():
    def fail(cancel):
        raise ExposureFailedError("sensor timeout")

    notes = []
    cam = _Camera(on_capture=fail)
    acq = _acquirer(cam, notes=notes)
    with pytest.raises(ExposureFailedError):
        acq.acquire(acq.make_spec(Binning(), CompensatorConfig(), PlatesolveSettings()))
    assert cam.aborts == 0
    assert ("error", "sensor timeout") in notes


def test_unexpected_error_aborts_and_reraises():
    def fail(cancel):
        raise OSError("usb reset")

    cam = _Camera(on_capture=fail)
    acq = _acquirer(cam)
    with pytest.raises(OSError):
        acq.acquire(acq.make_spec(Binning(), CompensatorConfig(), PlatesolveSettings()))
    assert cam.aborts == 1


def test_waiting_for_the_gate_is_cancellable():
    acq = _acquirer(_Camera())
    acq._gate.acquire()
    cancel = threading.Event()
    timer = threading.Timer(0.1, cancel.set)
    timer.start()
    try:
        with pytest.raises(CycleCancelled):
            acq.acquire(acq.make_spec(Binning(), CompensatorConfig(), PlatesolveSettings()), cancel)
    finally:
        timer.cancel()
        acq._gate.release()


def test_captures_are_serialized():
    inside = []
    peak = []
    lock = threading.Lock()

    def slow(cancel):
        with lock:
            inside.append(1)
            peak.append(len(inside))
        threading.Event().wait(0.05)
        with lock:
            inside.pop()

    acq = _acquirer(_Camera(on_capture=slow))
    spec = acq.make_spec(Binning(), CompensatorConfig(), PlatesolveSettings())
    threads = [threading.Thread(target=acq.acquire, args=(spec,)) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert max(peak) == 1


def test_check_cancel():
    check_cancel(None)
    check_cancel(threading.Event())
    ev = threading.Event()
    ev.set()
    with pytest.raises(CycleCancelled):
        check_cancel(ev)
