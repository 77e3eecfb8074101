from __future__ import annotations

import pytest
import astropy.units as u
from astropy.coordinates import SkyCoord

from compensator import FlexureCompensator
from config import AppConfig
from fc_types import Binning, ExposureItem, ImageType
from logging_utils import reset_throttle, set_debug, set_log_file
from simulator import SimRig

# ---------- Shared fixtures ----------


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset module-level logging state between tests."""
    reset_throttle()
    set_debug(False)
    set_log_file(None)
    yield
    set_debug(False)
    set_log_file(None)


@pytest.fixture
def cfg() -> AppConfig:
    return AppConfig()


@pytest.fixture
def rig() -> SimRig:
    """Rig on the celestial equator with a pure RA flexure of 12 arcsec/h."""
    return SimRig(
        center=SkyCoord(ra=150.0 * u.deg, dec=0.0 * u.deg),
        flexure_ra_arcsec_h=12.0,
        flexure_dec_arcsec_h=0.0,
    )


@pytest.fixture
def notes() -> list:
    """Collects (level, message) notifications."""
    return []


@pytest.fixture
def make_comp(rig, cfg, notes):
    """Factory for a compensator wired to the simulated rig."""

    def _make(app_cfg: AppConfig = None, **kwargs) -> FlexureCompensator:
        kw = dict(
            camera=rig.camera,
            solver=rig.solver,
            guider=rig.guider,
            telescope=rig.telescope,
            filter_wheel=rig.filter_wheel,
            focuser=rig.focuser,
            hub=rig.hub,
            notify=lambda level, msg: notes.append((level, msg)),
            clock=rig.clock,
        )
        kw.update(kwargs)
        return FlexureCompensator(app_cfg or cfg, **kw)

    return _make


@pytest.fixture
def comp(make_comp):
    c = make_comp()
    c.start()
    yield c
    c.stop()
    c.dispose()


@pytest.fixture
def light() -> ExposureItem:
    return ExposureItem(ImageType.LIGHT, 300.0, Binning(1, 1))
