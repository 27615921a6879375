import math

import numpy as np
import pytest

from lensfit.calibration import RadiusCalibration
from lensfit.radius_regularizer import (
    clamp_diffs_circular,
    closed_clamped_diffs,
    despike_circular,
    outline_to_hundredths,
    regularize_radii,
    smooth_circular,
)


def _series(n=800, spike_at=None, spike=0):
    theta = 2.0 * math.pi * np.arange(n) / n
    r = np.floor(1500.0 + 200.0 * np.cos(2.0 * theta) + 0.5).astype(np.int64)
    if spike_at is not None:
        r[spike_at] += spike
    return r


def test_closed_diffs_sum_to_zero():
    r = _series(spike_at=100, spike=300)
    diffs, lim = closed_clamped_diffs(r)
    assert int(diffs.sum()) == 0
    assert lim >= 12


def test_closure_spreads_large_residuals():
    # The wrap-around drop is clamped, leaving a residual larger than N
    r = np.arange(8, dtype=np.int64) * 100
    diffs, lim = closed_clamped_diffs(r, k=1.0, min_lim=1)
    assert int(diffs.sum()) == 0
    assert lim == 100


def test_clamp_preserves_mean_and_bounds_steps():
    r = _series(spike_at=10, spike=400)
    out = clamp_diffs_circular(r)
    assert abs(out.mean() - r.mean()) <= 0.5
    assert out.min() >= 0


def test_regularize_keeps_mean_within_one_hundredth():
    r = _series(spike_at=100, spike=300)
    out = regularize_radii(r)
    assert out.dtype == np.int64
    assert out.shape == r.shape
    assert abs(float(out.mean()) - float(r.mean())) <= 1.0


def test_regularize_removes_isolated_spike():
    clean = _series()
    out = regularize_radii(_series(spike_at=100, spike=300))
    assert abs(int(out[100]) - int(clean[100])) < 10


def test_regularize_constant_series_is_unchanged():
    r = np.full(800, 1700, dtype=np.int64)
    assert np.array_equal(regularize_radii(r), r)


def test_regularize_applies_bias_table():
    r = np.full(800, 1500, dtype=np.int64)
    bias = np.zeros(800)
    bias[:400] = 0.10
    bias[400:] = -0.10
    out = regularize_radii(r, RadiusCalibration(bias))
    assert out[200] < 1500 < out[600]
    assert abs(float(out.mean()) - 1500.0) <= 1.0


def test_regularize_rejects_bad_input():
    with pytest.raises(ValueError):
        regularize_radii(np.array([1.0, np.nan, 3.0]))
    with pytest.raises(ValueError):
        regularize_radii(np.full(800, 1500), RadiusCalibration(np.zeros(400)))


def test_stage_helpers_wrap_around():
    r = np.array([10, 10, 10, 10, 10, 10, 10, 90], dtype=np.int64)
    assert np.array_equal(despike_circular(r, 5), np.full(8, 10))
    smoothed = smooth_circular(np.array([0, 0, 0, 0, 0, 0, 0, 70], dtype=np.int64), 7)
    assert np.array_equal(smoothed, np.array([10, 10, 10, 0, 10, 10, 10, 10]))


def test_outline_to_hundredths_circle():
    theta = np.linspace(0.0, 2.0 * math.pi, 720, endpoint=False)
    outline = np.column_stack([300.0 + 160.0 * np.cos(theta), 200.0 + 160.0 * np.sin(theta)])
    radii = outline_to_hundredths(outline, (300.0, 200.0), px_per_mm=8.0, n=400)
    assert radii.shape == (400,)
    assert np.all(np.abs(radii - 2000) <= 3)
    with pytest.raises(ValueError):
        outline_to_hundredths(outline, (300.0, 200.0), px_per_mm=0.0)
