# imaging.py
from __future__ import annotations

import numpy as np
import cv2

from fc_types import ExposureData


def reduce_u16(u16: np.ndarray, factor: int) -> np.ndarray:
    """
    Block-average reduction by an integer factor. Rows and columns that do not
    fill a whole block are dropped.
    """
    f = int(factor)
    if f <= 1:
        return u16
    h = (u16.shape[0] // f) * f
    w = (u16.shape[1] // f) * f
    if h == 0 or w == 0:
        raise ValueError(f"downsample factor {f} too large for frame {u16.shape[:2]}")
    return cv2.resize(u16[:h, :w], (w // f, h // f), interpolation=cv2.INTER_AREA)


def _bayer_green_u16(u16: np.ndarray, bayer_pattern: str) -> np.ndarray:
    # RGGB/BGGR: greens at (0,1) and (1,0); GRBG/GBRG: greens at (0,0) and (1,1)
    p = (bayer_pattern or "RGGB").upper().strip()
    if p in ("GRBG", "GBRG"):
        g1 = u16[0::2, 0::2]
        g2 = u16[1::2, 1::2]
    else:
        g1 = u16[0::2, 1::2]
        g2 = u16[1::2, 0::2]
    h = min(g1.shape[0], g2.shape[0])
    w = min(g1.shape[1], g2.shape[1])
    g = ((g1[:h, :w].astype(np.uint32) + g2[:h, :w].astype(np.uint32)) // 2).astype(np.uint16)
    return cv2.resize(g, (u16.shape[1], u16.shape[0]), interpolation=cv2.INTER_LINEAR)


def to_mono_u16(raw: np.ndarray, fmt: str, bayer_pattern: str = "RGGB") -> np.ndarray:
    """
    Devuelve mono u16 apto para detección de estrellas.
    Soporta:
      - MONO8/MONO16 (o arrays 2D)
      - RGB24/RGB48 (arrays 3D, usa el canal verde)
      - RAW8/RAW16 Bayer (2D, promedio de los dos verdes)
    """
    f = (fmt or "").upper()
    raw = np.asarray(raw)

    if raw.ndim == 3 and raw.shape[2] >= 3:
        g = raw[..., 1]
        if g.dtype == np.uint8:
            return g.astype(np.uint16) * 257
        if g.dtype == np.uint16:
            return g
        return np.clip(g, 0, 65535).astype(np.uint16)

    if raw.ndim != 2:
        raise ValueError(f"unsupported image shape {raw.shape}")

    if raw.dtype == np.uint8:
        raw = raw.astype(np.uint16) * 257
    elif raw.dtype != np.uint16:
        raw = np.clip(raw, 0, 65535).astype(np.uint16)

    if "RAW" in f and raw.shape[0] >= 2 and raw.shape[1] >= 2:
        return _bayer_green_u16(raw, bayer_pattern)
    return raw


def to_solvable_image(data: ExposureData, *, downsample: int = 1) -> np.ndarray:
    """
    Converts a downloaded exposure into a contiguous 2D uint16 frame for the
    field solver. The solver sees the binned frame as delivered by the camera;
    `downsample` is an extra software reduction on top of it.
    """
    mono = to_mono_u16(data.raw, data.fmt, data.bayer_pattern)
    mono = reduce_u16(mono, downsample)
    return np.ascontiguousarray(mono)
