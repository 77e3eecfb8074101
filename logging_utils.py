# logging_utils.py
from __future__ import annotations

import importlib.util
import sys
import threading
import time
import traceback
from typing import Optional, Dict

if importlib.util.find_spec("ipywidgets") is not None:
    import ipywidgets as W
else:
    W = None  # type: ignore


def _ts() -> str:
    # timestamp monotónico y consistente para logs
    return f"{time.monotonic():.3f}s"


_THROTTLE_LOCK = threading.Lock()
_THROTTLE_STATE: Dict[str, float] = {}

_FILE_LOCK = threading.Lock()
_LOG_PATH: Optional[str] = None
_DEBUG = False


def set_debug(enabled: bool) -> None:
    global _DEBUG
    _DEBUG = bool(enabled)


def set_log_file(path: Optional[str]) -> None:
    """
    Duplica cada línea a un archivo (append). None desactiva.
    """
    global _LOG_PATH
    with _FILE_LOCK:
        _LOG_PATH = str(path) if path else None


def reset_throttle() -> None:
    with _THROTTLE_LOCK:
        _THROTTLE_STATE.clear()


def _should_log(throttle_key: str, throttle_s: Optional[float]) -> bool:
    if throttle_s is None:
        return True
    now = time.monotonic()
    with _THROTTLE_LOCK:
        last = _THROTTLE_STATE.get(throttle_key, None)
        if last is not None and (now - last) < float(throttle_s):
            return False
        _THROTTLE_STATE[throttle_key] = now
    return True


def format_exc(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def append_to_output(out: "W.Output", msg: str) -> None:
    """
    Escribe en un ipywidgets.Output sin romper el notebook si falla.
    """
    if out is None:
        return
    try:
        with out:
            print(msg)
    except Exception:
        sys.stderr.write(f"[{_ts()}][Logging][ERROR] Failed to write to output widget.\n")
        sys.stderr.write(traceback.format_exc())
        sys.stderr.flush()


def _format_line(level: str, msg: str) -> str:
    thread_name = threading.current_thread().name
    return f"[{_ts()}][{thread_name}][{level}] {msg}"


def _write_console(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _write_file(line: str) -> None:
    with _FILE_LOCK:
        path = _LOG_PATH
        if path is None:
            return
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            sys.stderr.write(f"[{_ts()}][Logging][ERROR] Failed to write to {path}.\n")
            sys.stderr.flush()


def _emit(out: Optional["W.Output"], line: str) -> None:
    if out is not None:
        append_to_output(out, line)
    else:
        _write_console(line)
    _write_file(line)


def _log(
    level: str,
    out: Optional["W.Output"],
    msg: str,
    exc: Optional[BaseException],
    throttle_s: Optional[float],
    throttle_key: Optional[str],
) -> None:
    key = throttle_key or msg
    if not _should_log(key, throttle_s):
        return
    _emit(out, _format_line(level, msg))
    if exc is not None:
        _emit(out, format_exc(exc).rstrip("\n"))


def log_debug(
    out: Optional["W.Output"],
    msg: str,
    *,
    throttle_s: Optional[float] = None,
    throttle_key: Optional[str] = None,
) -> None:
    if not _DEBUG:
        return
    _log("DEBUG", out, msg, None, throttle_s, throttle_key)


def log_info(
    out: Optional["W.Output"],
    msg: str,
    *,
    throttle_s: Optional[float] = None,
    throttle_key: Optional[str] = None,
) -> None:
    _log("INFO", out, msg, None, throttle_s, throttle_key)


def log_warning(
    out: Optional["W.Output"],
    msg: str,
    *,
    throttle_s: Optional[float] = None,
    throttle_key: Optional[str] = None,
) -> None:
    _log("WARNING", out, msg, None, throttle_s, throttle_key)


def log_error(
    out: Optional["W.Output"],
    msg: str,
    exc: Optional[BaseException] = None,
    *,
    throttle_s: Optional[float] = None,
    throttle_key: Optional[str] = None,
) -> None:
    _log("ERROR", out, msg, exc, throttle_s, throttle_key)


class StatusSink:
    """
    User-facing notifications and progress status.

    - notify(level, msg): level in {"info", "warning", "error"}
    - progress(status): short status line; "" clears it

    Delivery failures are logged and never raised.
    """

    def __init__(self, notify=None, progress=None, *, source: str = "Flexure Compensator", out=None) -> None:
        self._notify = notify
        self._progress = progress
        self.source = source
        self.out = out

    def notify(self, level: str, msg: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(level, msg)
        except Exception as exc:
            log_error(self.out, "Notification: delivery failed", exc, throttle_s=10.0, throttle_key="notify_failed")

    def info(self, msg: str) -> None:
        self.notify("info", msg)

    def warning(self, msg: str) -> None:
        self.notify("warning", msg)

    def error(self, msg: str) -> None:
        self.notify("error", msg)

    def progress(self, status: str) -> None:
        if self._progress is None:
            return
        try:
            self._progress(f"{self.source}: {status}" if status else "")
        except Exception as exc:
            log_error(self.out, "Progress: delivery failed", exc, throttle_s=10.0, throttle_key="progress_failed")
