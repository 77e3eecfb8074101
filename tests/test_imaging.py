from __future__ import annotations

import numpy as np
import pytest

from fc_types import ExposureData
from imaging import reduce_u16, to_mono_u16, to_solvable_image


def test_mono16_passthrough():
    raw = np.arange(12, dtype=np.uint16).reshape(3, 4)
    out = to_mono_u16(raw, "MONO16")
    assert out.dtype == np.uint16
    np.testing.assert_array_equal(out, raw)


def test_mono8_is_scaled_to_full_range():
    raw = np.array([[0, 255]], dtype=np.uint8)
    out = to_mono_u16(raw, "MONO8")
    assert out.dtype == np.uint16
    np.testing.assert_array_equal(out, [[0, 65535]])


def test_rgb_uses_green_channel():
    raw = np.zeros((4, 4, 3), dtype=np.uint16)
    raw[..., 1] = 1234
    out = to_mono_u16(raw, "RGB48")
    assert out.shape == (4, 4)
    assert np.all(out == 1234)


def test_bayer_green_average_keeps_shape():
    raw = np.zeros((8, 8), dtype=np.uint16)
    raw[0::2, 1::2] = 1000  # G1 in RGGB
    raw[1::2, 0::2] = 3000  # G2 in RGGB
    out = to_mono_u16(raw, "RAW16", "RGGB")
    assert out.shape == raw.shape
    assert np.all(out == 2000)


def test_float_input_is_clipped():
    raw = np.array([[-5.0, 70000.0, 12.0]])
    np.testing.assert_array_equal(to_mono_u16(raw, "MONO16"), [[0, 65535, 12]])


def test_unsupported_shape():
    with pytest.raises(ValueError):
        to_mono_u16(np.zeros((2, 2, 2, 2), dtype=np.uint16), "MONO16")


def test_reduce_drops_partial_blocks():
    raw = np.full((43, 62), 500, dtype=np.uint16)
    assert reduce_u16(raw, 1) is raw
    out = reduce_u16(raw, 4)
    assert out.shape == (10, 15)
    assert out.dtype == np.uint16
    assert np.all(out == 500)


def test_reduce_averages_blocks():
    raw = np.array([[0, 4, 100, 100], [8, 12, 100, 100]], dtype=np.uint16)
    np.testing.assert_array_equal(reduce_u16(raw, 2), [[6, 100]])


def test_reduce_factor_larger_than_frame():
    with pytest.raises(ValueError):
        reduce_u16(np.zeros((3, 3), dtype=np.uint16), 4)


def test_to_solvable_image_is_contiguous():
    raw = np.full((20, 30), 7, dtype=np.uint16)[:, ::2]
    img = to_solvable_image(ExposureData(raw=raw, fmt="MONO16"))
    assert img.flags["C_CONTIGUOUS"]
    assert img.shape == (20, 15)


def test_to_solvable_image_downsample():
    raw = np.full((96, 128), 900, dtype=np.uint16)
    img = to_solvable_image(ExposureData(raw=raw, fmt="MONO16"), downsample=2)
    assert img.shape == (48, 64)
    assert img.flags["C_CONTIGUOUS"]
