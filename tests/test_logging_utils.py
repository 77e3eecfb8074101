from __future__ import annotations

from logging_utils import (
    StatusSink,
    log_debug,
    log_error,
    log_info,
    log_warning,
    set_debug,
    set_log_file,
)


def test_levels_and_debug_switch(capsys):
    log_debug(None, "hidden")
    set_debug(True)
    log_debug(None, "shown")
    log_info(None, "info line")
    log_warning(None, "warn line")
    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "[DEBUG] shown" in out
    assert "[INFO] info line" in out
    assert "[WARNING] warn line" in out


def test_error_includes_traceback(capsys):
    try:
        raise ValueError("bad frame")
    except ValueError as exc:
        log_error(None, "Imaging: failed", exc)
    out = capsys.readouterr().out
    assert "[ERROR] Imaging: failed" in out
    assert "ValueError: bad frame" in out


def test_throttle(capsys):
    for _ in range(5):
        log_info(None, "spam", throttle_s=60.0, throttle_key="spam")
    assert capsys.readouterr().out.count("spam") == 1


def test_log_file(tmp_path, capsys):
    path = tmp_path / "fc.log"
    set_log_file(str(path))
    log_info(None, "to file")
    set_log_file(None)
    log_info(None, "not to file")
    text = path.read_text(encoding="utf-8")
    assert "to file" in text
    assert "not to file" not in text


def test_status_sink_never_raises(capsys):
    def broken(*args):
        raise RuntimeError("ui closed")

    sink = StatusSink(broken, broken)
    sink.warning("x")
    sink.progress("Exposing")
    assert "Notification: delivery failed" in capsys.readouterr().out


def test_status_sink_progress_prefix():
    got = []
    sink = StatusSink(progress=got.append, source="FC")
    sink.progress("Solving")
    sink.progress("")
    assert got == ["FC: Solving", ""]
