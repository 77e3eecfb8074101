from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("simulate_session", ROOT / "scripts" / "simulate_session.py")
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def test_parse_args_defaults(script):
    args = script.parse_args([])
    assert args.lights == 30
    assert args.flip_at is None


def test_runs_short_session_with_flip(script, capsys):
    script.main(["--lights", "6", "--exposure", "120", "--flip-at", "3"])
    out = capsys.readouterr().out
    assert "Session: 3/6 lights" in out
    assert "Session: 6/6 lights" in out
    assert "Session: done, 6 lights" in out
