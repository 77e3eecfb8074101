from __future__ import annotations

import pytest

from fc_types import GuiderInfo, LockPosition
from guider import ShiftRateActuator


class _Guider:
    def __init__(self, fail=None):
        self.fail = fail
        self.calls = []

    def info(self):
        if self.fail:
            raise self.fail
        return GuiderInfo(connected=True, pixel_scale=1.5)

    def lock_position(self):
        if self.fail:
            raise self.fail
        return LockPosition(1.0, 2.0, 3.0)

    def set_shift_rate(self, ra_per_s, dec_per_s, cancel):
        self.calls.append(("rate", ra_per_s, dec_per_s, cancel))
        if self.fail:
            raise self.fail

    def stop_shifting(self, cancel):
        self.calls.append(("stop", cancel))
        if self.fail:
            raise self.fail


def test_arcsec_per_hour_to_per_second():
    g = _Guider()
    act = ShiftRateActuator(g)
    assert act.set_shift_rate(36.0, -7.2)
    _, ra, dec, cancel = g.calls[0]
    assert ra == pytest.approx(0.01)
    assert dec == pytest.approx(-0.002)
    assert not cancel.is_set()


def test_each_call_gets_a_fresh_token():
    g = _Guider()
    act = ShiftRateActuator(g)
    act.zero()
    assert [c[0] for c in g.calls] == ["rate", "stop"]
    assert g.calls[0][-1] is not g.calls[1][-1]
    assert g.calls[0][1:3] == (0.0, 0.0)


def test_errors_are_swallowed_and_reported(capsys):
    g = _Guider(fail=RuntimeError("phd2 gone"))
    act = ShiftRateActuator(g)
    assert act.set_shift_rate(1.0, 1.0) is False
    assert act.stop_shifting() is False
    assert act.zero() is False
    assert act.lock_position() is None
    assert act.info() is None
    assert "Guider: set shift rate failed" in capsys.readouterr().out
