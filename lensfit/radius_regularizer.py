"""
Radius series regularization.

This module handles:
- Circular despiking (median) and smoothing (moving average)
- Per-angle bias correction from an explicit RadiusCalibration
- Robust circular diff clamp with exact closure
- Conversion of a pixel outline into a hundredths-of-mm reference series

regularize_radii runs five stages in a fixed order. Each stage relies on the
previous one: the diff clamp assumes spikes are already gone, and the final
smoothing assumes steps are already bounded.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

from lensfit.calibration import RadiusCalibration
from lensfit.contour import polygon_to_radii, resample_closed_polyline, smooth_closed_polyline
from lensfit.regularizer_constants import (
    # Stage constants
    DESPIKE_WIN,
    SMOOTH_WIN,
    CLAMP_K,
    CLAMP_MIN_HUND,
    MAD_FLOOR,
    # Outline conversion
    N_SAMPLES,
    RESAMPLE_ARC,
    SMOOTH_WIN_POLY,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegularizerParams:
    despike_win: int = DESPIKE_WIN
    smooth_win: int = SMOOTH_WIN
    clamp_k: float = CLAMP_K
    clamp_min: int = CLAMP_MIN_HUND


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5).astype(np.int64)


def _as_int_series(radii) -> np.ndarray:
    arr = np.asarray(radii)
    if arr.ndim != 1:
        raise ValueError(f"Radius series must be 1-D, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("Radius series contains non-finite values")
    return _round_half_up(arr)


# =============================================================================
# Stages
# =============================================================================

def despike_circular(radii: np.ndarray, window: int = DESPIKE_WIN) -> np.ndarray:
    """Circular median filter; even or unit windows pass through."""
    r = _as_int_series(radii)
    if window <= 1 or window % 2 == 0 or r.size < window:
        return r
    return ndimage.median_filter(r, size=window, mode="wrap").astype(np.int64)


def smooth_circular(radii: np.ndarray, window: int = SMOOTH_WIN) -> np.ndarray:
    """Circular moving average, rounded half up."""
    r = _as_int_series(radii)
    if window <= 1 or window % 2 == 0 or r.size < window:
        return r
    k = window // 2
    padded = np.concatenate([r[-k:], r, r[:k]])
    sums = np.convolve(padded, np.ones(window, dtype=np.int64), mode="valid")
    return _round_half_up(sums / float(window))


def closed_clamped_diffs(radii: np.ndarray, k: float = CLAMP_K,
                         min_lim: int = CLAMP_MIN_HUND) -> Tuple[np.ndarray, int]:
    """
    Circular differences clamped to +-lim and corrected to sum to zero.

    dif[i] = r[i] - r[i-1] with r[-1] = r[N-1]. The clamp limit is
    round(max(min_lim, k * MAD)) with MAD the median of |dif| (floored at 1).
    Any residual sum is spread one unit per index, cycling as needed.

    Returns:
        Tuple of (clamped diffs, limit)
    """
    r = _as_int_series(radii)
    n = r.size
    dif = r - np.roll(r, 1)

    mad = max(float(np.median(np.abs(dif))), MAD_FLOOR)
    lim = int(_round_half_up(max(float(min_lim), k * mad)))
    clamped = np.clip(dif, -lim, lim)

    residual = int(clamped.sum())
    if residual != 0:
        step = -1 if residual > 0 else 1
        full, extra = divmod(abs(residual), n)
        clamped = clamped + step * full
        clamped[:extra] += step

    return clamped, lim


def clamp_diffs_circular(radii: np.ndarray, k: float = CLAMP_K, min_lim: int = CLAMP_MIN_HUND,
                         target_mean: Optional[float] = None) -> np.ndarray:
    """
    Robust diff clamp with circular closure.

    Integrates the closed diffs from r[0], then shifts the series by a whole
    number of units so its mean lands on target_mean (the input mean when
    None). Values are floored at 0.

    Args:
        radii: Integer series
        k: MAD multiplier
        min_lim: Minimum clamp limit
        target_mean: Mean to re-center on

    Returns:
        int64 series
    """
    r = _as_int_series(radii)
    if r.size < 3:
        return r

    diffs, lim = closed_clamped_diffs(r, k, min_lim)
    out = r[0] + np.concatenate([[0], np.cumsum(diffs[1:])])

    mean_in = float(r.mean()) if target_mean is None else float(target_mean)
    delta = int(_round_half_up(mean_in - float(out.mean())))
    out = np.maximum(out + delta, 0)

    logger.debug(f"REG clamp lim={lim} clipped={int(np.sum(np.abs(r - np.roll(r, 1)) > lim))} delta={delta}")
    return out.astype(np.int64)


def regularize_radii(radii_hundredths: np.ndarray,
                     calibration: Optional[RadiusCalibration] = None,
                     params: RegularizerParams = RegularizerParams()) -> np.ndarray:
    """
    Clean a hundredths-of-mm radius series.

    Stages, in order:
    1. Circular median (despike)
    2. Circular moving average
    3. Bias correction (only when calibration is given)
    4. Diff clamp with closure, re-centered on the input mean
    5. Circular moving average

    Args:
        radii_hundredths: (N,) integer series, reference convention
        calibration: Optional bias table with the same N
        params: Window and clamp parameters

    Returns:
        Regularized int64 series
    """
    r = _as_int_series(radii_hundredths)
    if r.size == 0:
        return r
    if calibration is not None and calibration.n != r.size:
        raise ValueError(f"Calibration has {calibration.n} samples, radius series has {r.size}")

    mean_in = float(r.mean())

    out = despike_circular(r, params.despike_win)
    out = smooth_circular(out, params.smooth_win)
    if calibration is not None:
        out = calibration.apply(out)
    out = clamp_diffs_circular(out, params.clamp_k, params.clamp_min, target_mean=mean_in)
    out = smooth_circular(out, params.smooth_win)

    logger.debug(
        f"REG n={r.size} mean_in={mean_in:.2f} mean_out={float(out.mean()):.2f} "
        f"bias={'yes' if calibration is not None else 'no'}"
    )
    return out


# =============================================================================
# Outline Conversion
# =============================================================================

def outline_to_hundredths(outline_px: np.ndarray, center_px: Tuple[float, float],
                          px_per_mm: float, n: int = N_SAMPLES) -> np.ndarray:
    """
    Convert an image-space outline to a reference hundredths series.

    The outline is centered, scaled to mm and flipped to Y-up, then resampled
    by arc length, smoothed and ray-cast at N reference angles.

    Args:
        outline_px: (K, 2) image points
        center_px: Polar origin in image coordinates
        px_per_mm: Scale
        n: Output sample count

    Returns:
        (n,) int64 hundredths, floored at 0
    """
    if px_per_mm <= 0:
        raise ValueError(f"px_per_mm must be positive, got {px_per_mm}")
    pts = np.asarray(outline_px, dtype=np.float64)
    cx, cy = center_px
    poly_mm = np.column_stack([(pts[:, 0] - cx) / px_per_mm, -(pts[:, 1] - cy) / px_per_mm])

    resampled = resample_closed_polyline(poly_mm, RESAMPLE_ARC)
    smoothed = smooth_closed_polyline(resampled, SMOOTH_WIN_POLY)
    radii_mm = polygon_to_radii(smoothed, n, center=(0.0, 0.0), y_down=False)
    if not np.all(np.isfinite(radii_mm)):
        raise ValueError("Outline does not surround its center")
    return np.maximum(_round_half_up(radii_mm * 100.0), 0)
