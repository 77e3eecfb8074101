from __future__ import annotations

import math

import pytest
from hypothesis import given, strategies as st

from fc_types import GuiderInfo, LockPosition, ValidityFlags
from lock_position import expected_displacement_px, lock_position_still_valid, within_tolerance
from logging_utils import StatusSink


_GUIDER = GuiderInfo(connected=True, pixel_scale=2.0, can_set_shift_rate=True, can_get_lock_position=True)


def _check(last, current, *, ra=0.0, dec=0.0, dec_deg=0.0, guider=_GUIDER, flags=None, status=None):
    return lock_position_still_valid(
        last,
        current,
        shift_rate_ra=ra,
        shift_rate_dec=dec,
        dec_deg=dec_deg,
        guider_info=guider,
        flags=flags if flags is not None else ValidityFlags(),
        status=status,
    )


def test_no_previous_lock_is_valid():
    assert _check(None, LockPosition(1.0, 1.0, 0.0)) is True


def test_missing_current_lock_is_invalid():
    assert _check(LockPosition(1.0, 1.0, 0.0), None) is False


@given(
    x=st.floats(min_value=-1e4, max_value=1e4),
    y=st.floats(min_value=-1e4, max_value=1e4),
    t=st.floats(min_value=0.0, max_value=2e9),
    ra=st.floats(min_value=-100.0, max_value=100.0),
    dec=st.floats(min_value=-100.0, max_value=100.0),
)
def test_same_position_is_valid(x, y, t, ra, dec):
    p = LockPosition(x, y, t)
    assert _check(p, p, ra=ra, dec=dec) is True


def test_expected_displacement():
    # 7200"/h in RA at dec 60 with 2"/px over half an hour -> 900 px
    assert expected_displacement_px(7200.0, 0.0, 60.0, 2.0, 0.5) == pytest.approx(900.0)
    assert expected_displacement_px(0.0, 3.0, 0.0, 1.0, 2.0) == pytest.approx(6.0)


def test_moves_as_predicted():
    last = LockPosition(100.0, 100.0, 0.0)
    # 36"/h Dec at 2"/px for one hour -> 18 px
    assert _check(last, LockPosition(100.0, 118.0, 3600.0), dec=36.0) is True
    assert _check(last, LockPosition(100.0, 122.0, 3600.0), dec=36.0) is True
    assert _check(last, LockPosition(100.0, 123.0, 3600.0), dec=36.0) is False


def test_unexpected_jump_is_invalid():
    last = LockPosition(100.0, 100.0, 0.0)
    assert _check(last, LockPosition(103.0, 96.0, 600.0)) is False


def test_absolute_floor():
    assert within_tolerance(0.02, 0.0) is True
    assert within_tolerance(0.021, 0.0) is False


def test_missing_pixel_scale_warns_once():
    notes = []
    status = StatusSink(lambda level, msg: notes.append((level, msg)))
    flags = ValidityFlags()
    bad = GuiderInfo(connected=True, pixel_scale=0.0)
    last = LockPosition(0.0, 0.0, 0.0)
    jump = LockPosition(50.0, 50.0, 10.0)

    for _ in range(5):
        assert _check(last, jump, guider=bad, flags=flags, status=status) is True
    assert _check(last, jump, guider=None, flags=flags, status=status) is True

    assert len(notes) == 1
    assert notes[0][0] == "warning"
    assert flags.pixel_scale_warned is True


def test_non_finite_expectation_warns_once():
    notes = []
    status = StatusSink(lambda level, msg: notes.append((level, msg)))
    flags = ValidityFlags()
    last = LockPosition(0.0, 0.0, 0.0)
    jump = LockPosition(50.0, 50.0, 10.0)

    for _ in range(3):
        assert _check(last, jump, ra=5.0, dec_deg=math.nan, flags=flags, status=status) is True
    assert len(notes) == 1
    assert flags.nan_warned is True
    assert flags.pixel_scale_warned is False
