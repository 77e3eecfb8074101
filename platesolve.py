# platesolve.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

import astropy.units as u
from astropy.coordinates import SkyCoord

from fc_types import Binning, FieldSolverService
from config import PlatesolveSettings
from logging_utils import log_debug, log_error, log_info


__all__ = [
    "SolveHint",
    "PlatesolveResult",
    "FieldSolverAdapter",
    "pixel_scale_arcsec",
]

# arcsec per radian / 1000 (um -> mm)
_ARCSEC_PER_UM_PER_MM = 206.264806


# ============================================================
# Data types
# ============================================================

@dataclass(frozen=True)
class SolveHint:
    """
    Parameters handed to the external solver.

    coordinates=None means a blind solve.
    """
    coordinates: Optional[SkyCoord]
    pixel_scale_arcsec: float
    search_radius_deg: float
    binning: int = 1
    max_objects: int = 500
    regions: int = 5000

    @property
    def blind(self) -> bool:
        return self.coordinates is None


@dataclass(frozen=True)
class PlatesolveResult:
    success: bool
    coordinates: Optional[SkyCoord] = None
    pixel_scale: float = 0.0  # arcsec/px of the solved (binned) image
    blind: bool = False
    status: str = ""

    @staticmethod
    def failed(status: str = "ERR") -> "PlatesolveResult":
        return PlatesolveResult(success=False, status=status)


def pixel_scale_arcsec(pixel_size_um: float, focal_length_mm: float, binning: int = 1) -> float:
    if focal_length_mm <= 0.0:
        return 0.0
    return float(_ARCSEC_PER_UM_PER_MM * float(pixel_size_um) / float(focal_length_mm) * max(1, int(binning)))


def _as_result(res) -> PlatesolveResult:
    # el solver externo puede devolver cualquier objeto con success/coordinates/pixel_scale
    if isinstance(res, PlatesolveResult):
        return res
    if res is None:
        return PlatesolveResult.failed("ERR_NO_RESULT")
    success = bool(getattr(res, "success", False))
    coords = getattr(res, "coordinates", None)
    scale = float(getattr(res, "pixel_scale", 0.0) or 0.0)
    if success and coords is None:
        return PlatesolveResult.failed("ERR_NO_COORDINATES")
    return PlatesolveResult(success=success, coordinates=coords, pixel_scale=scale, status=str(getattr(res, "status", "")))


# ============================================================
# Adapter
# ============================================================

class FieldSolverAdapter:
    """
    Thin wrapper over an external plate solver.

    One hinted attempt, then (if enabled) one blind attempt. No other retries:
    a failed solve is reported to the caller, which decides what to reset.
    """

    def __init__(self, solver: FieldSolverService, *, out_log=None) -> None:
        self.solver = solver
        self.out_log = out_log

    def make_hint(
        self,
        settings: PlatesolveSettings,
        *,
        approx_coordinates: Optional[SkyCoord],
        binning: Binning,
    ) -> SolveHint:
        return SolveHint(
            coordinates=approx_coordinates,
            pixel_scale_arcsec=pixel_scale_arcsec(
                settings.pixel_size_um, settings.focal_length_mm, binning.x * max(1, int(settings.downsample))
            ),
            search_radius_deg=float(settings.search_radius_deg),
            binning=int(binning.x),
            max_objects=int(settings.max_objects),
            regions=int(settings.regions),
        )

    def _attempt(self, image: np.ndarray, hint: SolveHint, cancel: threading.Event) -> PlatesolveResult:
        res = _as_result(self.solver.solve(image, hint, cancel))
        if res.success and res.blind != hint.blind:
            res = replace(res, blind=hint.blind)
        return res

    def solve(
        self,
        image: np.ndarray,
        hint: SolveHint,
        *,
        blind_failover: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> PlatesolveResult:
        if cancel is None:
            cancel = threading.Event()

        res = self._attempt(image, hint, cancel)
        if res.success:
            log_debug(self.out_log, f"Platesolve: OK {self.describe(res)}")
            return res

        if not blind_failover or hint.blind:
            log_info(self.out_log, f"Platesolve: ERR status={res.status or 'FAILED'}")
            return res

        if cancel.is_set():
            return res

        log_info(self.out_log, "Platesolve: hinted solve failed, trying blind solve")
        blind = replace(hint, coordinates=None)
        try:
            res_blind = self._attempt(image, blind, cancel)
        except Exception as exc:
            log_error(self.out_log, "Platesolve: blind solve failed", exc)
            raise
        if not res_blind.success:
            log_info(self.out_log, f"Platesolve: ERR blind status={res_blind.status or 'FAILED'}")
        return res_blind

    @staticmethod
    def describe(res: PlatesolveResult) -> str:
        if not res.success or res.coordinates is None:
            return f"status={res.status or 'FAILED'}"
        c = res.coordinates
        ra = c.ra.to_string(unit=u.hourangle, sep=":", precision=2)
        dec = c.dec.to_string(unit=u.deg, sep=":", precision=1, alwayssign=True)
        return f"RA={ra} Dec={dec} scale={res.pixel_scale:.3f}\"/px blind={res.blind}"
