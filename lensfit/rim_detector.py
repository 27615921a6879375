"""
Coarse inner rim detection on an ROI edge map.

This module handles:
- Probe row selection and the anti-brow rule
- Rim thickness estimation from paired edges
- Multi-scale left/right search (seed scan, then row-sum peak fallback)
- Top/bottom line search, bottom polyline and tilt
- Hypothesis confidence and best-hypothesis selection
- Fellow-eye mirror fallback

The detector never computes gradients: it reads the binary EdgeMap it is
given and hands the same EdgeMap back with its estimate.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

import numpy as np
from sklearn.linear_model import RANSACRegressor

from lensfit.rim_constants import (
    # ROI and signal
    MIN_ROI_W,
    MIN_ROI_H,
    MIN_EDGE_NNZ,
    BORDER_GUARD_PX,
    # Probe and brow
    BAND_HALF_PX,
    TOP_SEARCH_PAD,
    BOTTOM_SEARCH_PAD,
    BROW_PAD_FRAC,
    BROW_PAD_MIN,
    BROW_PAD_MAX,
    PROBE_TOP_MARGIN,
    # Scales
    SCALE_MIN,
    SCALE_MAX,
    SCALE_STEP,
    PX_PER_MM_MIN,
    PX_PER_MM_MAX,
    GUESS_FROM_ROI_K,
    GUESS_MIN,
    GUESS_MAX,
    MIN_EXPECTED_W_PX,
    GAP_MIN_PX,
    GAP_FRAC,
    # Left / right
    PEAK_THR_FRAC,
    LR_TOL_FRAC,
    LR_TOL_MIN_PX,
    LR_TOL_MAX_PX,
    TEMPLE_MARGIN_FRAC,
    TEMPLE_MARGIN_MIN_PX,
    TEMPLE_MARGIN_MAX_PX,
    SCAN_RATIO_MIN,
    SCAN_RATIO_MAX,
    PEAK_REFINE_PX,
    MIN_INNER_W_PX,
    W_RATIO_MIN,
    W_RATIO_MAX,
    # Thickness
    RIM_T_MM_MIN,
    RIM_T_MM_MAX,
    RIM_T_MM_FALLBACK,
    THICKNESS_Y_OFFSETS,
    THICKNESS_MIN_SAMPLES,
    SUPPORT_TOL_FRAC,
    SUPPORT_THR_FRAC,
    PENALTY_SHIFT_NO_SUPPORT,
    PENALTY_KEEP_NO_OUTER,
    # Lines
    LINE_INSET_PX,
    COVERAGE_INSET_PX,
    MIN_LINE_SPAN_PX,
    LINE_THR_FRAC,
    MIN_EXPECTED_H_PX,
    MIN_H_PX,
    MIN_H_FRAC,
    MAX_H_FRAC,
    MAX_H_ERR_REL,
    # Bottom polyline
    BOTTOM_POLY_STEP_X,
    BOTTOM_POLY_BAND_Y,
    BOTTOM_POLY_MIN_SPAN_PX,
    BOTTOM_POLY_THR_FRAC,
    TILT_MIN_POINTS,
    TILT_MIN_FIT_POINTS,
    TILT_RANSAC_RESIDUAL_PX,
    # Confidence
    CONF_W_WIDTH,
    CONF_W_HEIGHT,
    CONF_H_ERR_NORM,
    CONF_W_POLY,
    CONF_POLY_REF,
    CONF_W_COV_BOTTOM,
    CONF_W_COV_TOP,
    CONF_COV_REF,
    CONF_POLY_LOW,
    CONF_POLY_LOW_FACTOR,
    OK_CONF_MIN,
    # Mirror
    MIRROR_CONFIDENCE_FACTOR,
)
from lensfit.types import EdgeMap, RegionOfInterest, RimEstimate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RimDetectorParams:
    scale_min: float = SCALE_MIN
    scale_max: float = SCALE_MAX
    scale_step: float = SCALE_STEP
    peak_thr_frac: float = PEAK_THR_FRAC
    w_ratio_min: float = W_RATIO_MIN
    w_ratio_max: float = W_RATIO_MAX
    ok_conf_min: float = OK_CONF_MIN
    band_half_px: int = BAND_HALF_PX


def _round(v: float) -> int:
    """Round half up."""
    return int(math.floor(v + 0.5))


def _clamp(v, lo, hi):
    return max(lo, min(hi, v))


def build_scales(scale_min: float, scale_max: float, step: float) -> List[float]:
    if step <= 0 or scale_max < scale_min:
        return []
    count = int(math.floor((scale_max - scale_min) / step + 1e-6)) + 1
    return [round(scale_min + k * step, 6) for k in range(count)]


# =============================================================================
# Row Signal and Peaks
# =============================================================================

def probe_row_sum(edges: np.ndarray, y_center: int, band_half: int, y_min: int) -> Tuple[np.ndarray, float]:
    """
    Column sums of the edge map over a band of rows around the probe.

    Returns:
        Tuple of (per-column sum, maximum sum)
    """
    h = edges.shape[0]
    floor_y = _clamp(y_min, 0, h - 1)
    y0 = _clamp(y_center - band_half, floor_y, h - 1)
    y1 = _clamp(y_center + band_half, floor_y, h - 1)
    row_sum = edges[y0:y1 + 1].astype(np.float64).sum(axis=0)
    return row_sum, float(row_sum.max()) if row_sum.size else 0.0


def _is_peak(sig: np.ndarray, i: int, thr: float) -> bool:
    v = sig[i]
    if v < thr:
        return False
    left = sig[i - 1] if i > 0 else v
    right = sig[i + 1] if i < sig.size - 1 else v
    return v >= left and v >= right


def scan_first_peak(sig: np.ndarray, start: int, direction: int, stop: int, thr: float) -> Optional[int]:
    """First peak >= thr walking from start toward stop (inclusive)."""
    n = sig.size
    if n == 0 or direction not in (1, -1):
        return None
    x = _clamp(start, 0, n - 1)
    end = _clamp(stop, 0, n - 1)
    while (x <= end) if direction > 0 else (x >= end):
        if _is_peak(sig, x, thr):
            return x
        x += direction
    return None


def best_peak_near(sig: np.ndarray, x0: int, x1: int, thr: float, x_expected: int) -> Optional[int]:
    """Peak in [x0, x1] closest to x_expected; ties go to the stronger peak."""
    if sig.size == 0:
        return None
    lo = _clamp(min(x0, x1), 0, sig.size - 1)
    hi = _clamp(max(x0, x1), 0, sig.size - 1)

    best_x = None
    best_d = None
    best_v = -1.0
    for x in range(lo, hi + 1):
        if not _is_peak(sig, x, thr):
            continue
        d = abs(x - x_expected)
        if best_d is None or d < best_d or (d == best_d and sig[x] > best_v):
            best_x, best_d, best_v = x, d, sig[x]
    return best_x


# =============================================================================
# Rim Thickness
# =============================================================================

def _thickness_window(px_per_mm: float) -> Tuple[int, int]:
    t_min = _clamp(_round(px_per_mm * RIM_T_MM_MIN), 2, 120)
    t_max = _clamp(_round(px_per_mm * RIM_T_MM_MAX), t_min + 2, 160)
    return t_min, t_max


def estimate_rim_thickness(
    edges: np.ndarray,
    top_min_y: int,
    probe_y: int,
    x_nasal_expected: float,
    x_temple_expected: float,
    nasal_at_left: bool,
    tol_px: int,
    px_per_mm: float,
) -> float:
    """
    Median distance between paired edges near the expected inner edges.

    On each sampled row the edge nearest the expected position is paired
    with the next edge within [1 mm, 9 mm], looking inward first and then
    outward. Both sides are sampled independently.

    Returns:
        Thickness in px, clamp(2.5 mm, 3, 80) when fewer than 3 pairs exist
    """
    h, w = edges.shape
    fallback = float(_clamp(px_per_mm * RIM_T_MM_FALLBACK, 3.0, 80.0))
    if px_per_mm <= 0 or not math.isfinite(px_per_mm):
        return fallback

    t_min, t_max = _thickness_window(px_per_mm)
    x_min = _clamp(BORDER_GUARD_PX, 0, w - 1)
    x_max = max(w - 1 - BORDER_GUARD_PX, x_min)
    inward_nasal = 1 if nasal_at_left else -1

    def nearest_edge(row: np.ndarray, x_expected: float) -> Optional[int]:
        xc = _clamp(_round(x_expected), x_min, x_max)
        lo = _clamp(xc - tol_px, x_min, x_max)
        hi = _clamp(xc + tol_px, x_min, x_max)
        xs = np.flatnonzero(row[lo:hi + 1]) + lo
        if xs.size == 0:
            return None
        return int(xs[np.argmin(np.abs(xs - xc))])

    def second_edge(row: np.ndarray, x0: int, direction: int) -> Optional[int]:
        a = _clamp(x0 + direction * t_min, 0, w - 1)
        b = _clamp(x0 + direction * t_max, 0, w - 1)
        lo, hi = min(a, b), max(a, b)
        xs = np.flatnonzero(row[lo:hi + 1]) + lo
        if xs.size == 0:
            return None
        return int(xs[0] if direction > 0 else xs[-1])

    samples = []
    for dy in THICKNESS_Y_OFFSETS:
        y = _clamp(probe_y + dy, 0, h - 1)
        if y < top_min_y + 2:
            continue
        row = edges[y]
        for x_expected, inward in ((x_nasal_expected, inward_nasal), (x_temple_expected, -inward_nasal)):
            x0 = nearest_edge(row, x_expected)
            if x0 is None:
                continue
            x1 = second_edge(row, x0, inward)
            if x1 is None:
                x1 = second_edge(row, x0, -inward)
            if x1 is not None and abs(x1 - x0) >= 2:
                samples.append(abs(x1 - x0))

    if len(samples) < THICKNESS_MIN_SAMPLES:
        logger.debug(f"RIM thickness: {len(samples)} pairs, using fallback {fallback:.1f}px")
        return fallback
    samples.sort()
    return float(_clamp(samples[len(samples) // 2], 3.0, 120.0))


# =============================================================================
# Left / Right
# =============================================================================

def _guard_range(w: int) -> Tuple[int, int]:
    x_min = _clamp(BORDER_GUARD_PX, 0, w - 1)
    return x_min, max(w - 1 - BORDER_GUARD_PX, x_min)


def scan_from_seed(
    row_sum: np.ndarray, thr: float, exp_w: float, seed_x: int, px_per_mm: float
) -> Optional[Tuple[int, int, Optional[float]]]:
    """
    Walk outward from the seed to the first peak on each side (inner edges),
    then look for the paired outer edge one rim thickness further out.

    Returns:
        Tuple of (left, right, measured thickness or None), or None when the
        scan does not produce a plausible width
    """
    w = row_sum.size
    x_min, x_max = _guard_range(w)
    seed = _clamp(seed_x, x_min, x_max)

    left = scan_first_peak(row_sum, seed, -1, x_min, thr)
    right = scan_first_peak(row_sum, seed, 1, x_max, thr)
    if left is None or right is None:
        return None

    width = right - left
    ratio = width / exp_w
    if width < MIN_INNER_W_PX or not (SCAN_RATIO_MIN <= ratio <= SCAN_RATIO_MAX):
        return None

    t_min, t_max = _thickness_window(px_per_mm)
    outer_left = best_peak_near(row_sum, left - t_max, left - t_min, thr, left - t_min)
    outer_right = best_peak_near(row_sum, right + t_min, right + t_max, thr, right + t_min)
    pairs = [d for d in (left - outer_left if outer_left is not None else None,
                         outer_right - right if outer_right is not None else None) if d is not None]
    thickness = float(np.mean(pairs)) if pairs else None
    return left, right, thickness


def find_left_right_from_row_sum(
    row_sum: np.ndarray, thr: float, exp_w: float, seed_x: int, mid_x: float, side_sign: int
) -> Optional[Tuple[int, int]]:
    """
    Peak search over the row sum: nasal and temple scans toward each other,
    then a seed-centered window search.
    """
    w = row_sum.size
    if exp_w <= 1.0 or thr <= 0:
        return None
    x_min, x_max = _guard_range(w)
    dir_nasal = 1 if side_sign >= 0 else -1
    mid = _clamp(_round(mid_x), 0, w - 1)

    gap = max(GAP_MIN_PX, GAP_FRAC * exp_w)
    exp_temple = _round(mid + dir_nasal * (gap + exp_w))
    temple_margin = _clamp(_round(TEMPLE_MARGIN_FRAC * exp_w), TEMPLE_MARGIN_MIN_PX, TEMPLE_MARGIN_MAX_PX)
    temple_start = _clamp(exp_temple + dir_nasal * temple_margin, x_min, x_max)

    nasal0 = scan_first_peak(row_sum, mid, dir_nasal, temple_start, thr)
    temple0 = scan_first_peak(row_sum, temple_start, -dir_nasal, mid, thr)

    if nasal0 is not None and temple0 is not None:
        a, b = min(nasal0, temple0), max(nasal0, temple0)
        ratio = (b - a) / exp_w
        if SCAN_RATIO_MIN <= ratio <= SCAN_RATIO_MAX and b - a >= MIN_INNER_W_PX:
            a_ref = best_peak_near(row_sum, _clamp(a - PEAK_REFINE_PX, x_min, x_max),
                                   _clamp(a + PEAK_REFINE_PX, x_min, x_max), thr, a)
            b_ref = best_peak_near(row_sum, _clamp(b - PEAK_REFINE_PX, x_min, x_max),
                                   _clamp(b + PEAK_REFINE_PX, x_min, x_max), thr, b)
            if a_ref is not None and b_ref is not None and b_ref - a_ref >= MIN_INNER_W_PX:
                return a_ref, b_ref

    cx = float(_clamp(seed_x, x_min, x_max))
    exp_left = cx - exp_w * 0.5
    exp_right = cx + exp_w * 0.5
    tol = _clamp(_round(exp_w * LR_TOL_FRAC), LR_TOL_MIN_PX, LR_TOL_MAX_PX)

    left = best_peak_near(row_sum, _clamp(_round(exp_left - tol), x_min, x_max),
                          _clamp(_round(exp_left + tol), x_min, x_max), thr, _round(exp_left))
    right = best_peak_near(row_sum, _clamp(_round(exp_right - tol), x_min, x_max),
                           _clamp(_round(exp_right + tol), x_min, x_max), thr, _round(exp_right))
    if left is None or right is None or right - left < MIN_INNER_W_PX:
        return None
    return left, right


def refine_inner_edges(
    row_sum: np.ndarray, thr: float, exp_w: float, left_raw: int, right_raw: int, t_px: float
) -> Tuple[int, int]:
    """
    Decide whether each raw edge is the inner or the outer side of the rim.

    Each side may shift inward by one thickness. A shift needs a supporting
    peak where it lands; keeping an edge expects an outer partner. The
    combination with the lowest width error plus support penalty wins.
    """
    w = row_sum.size
    if t_px < 2:
        return left_raw, right_raw
    x_min, x_max = _guard_range(w)

    left0 = _clamp(left_raw, x_min, x_max)
    right0 = _clamp(right_raw, x_min, x_max)
    if right0 - left0 < MIN_INNER_W_PX:
        return left0, right0

    x_center = 0.5 * (left0 + right0)
    tol = _clamp(max(6, _round(t_px * SUPPORT_TOL_FRAC)), 4, 40)
    thr_support = thr * SUPPORT_THR_FRAC

    def support_near(x_target: float) -> float:
        xt = _round(x_target)
        a = _clamp(xt - tol, x_min, x_max)
        b = _clamp(xt + tol, x_min, x_max)
        return float(row_sum[a:b + 1].max())

    in_l = 1 if left0 < x_center else -1
    in_r = 1 if right0 < x_center else -1
    s_l_in = support_near(left0 + in_l * t_px)
    s_l_out = support_near(left0 - in_l * t_px)
    s_r_in = support_near(right0 + in_r * t_px)
    s_r_out = support_near(right0 - in_r * t_px)

    best = None
    best_pen = math.inf
    for l_in, r_in in ((False, False), (True, False), (False, True), (True, True)):
        ll = _clamp(_round(left0 + in_l * t_px) if l_in else left0, x_min, x_max)
        rr = _clamp(_round(right0 + in_r * t_px) if r_in else right0, x_min, x_max)
        if rr - ll < MIN_INNER_W_PX:
            continue
        pen = abs((rr - ll) - exp_w) / exp_w
        if l_in:
            pen += PENALTY_SHIFT_NO_SUPPORT if s_l_in < thr_support else 0.0
        else:
            pen += PENALTY_KEEP_NO_OUTER if s_l_out < thr_support else 0.0
        if r_in:
            pen += PENALTY_SHIFT_NO_SUPPORT if s_r_in < thr_support else 0.0
        else:
            pen += PENALTY_KEEP_NO_OUTER if s_r_out < thr_support else 0.0
        if pen < best_pen:
            best_pen, best = pen, (ll, rr)

    return best if best is not None else (left0, right0)


# =============================================================================
# Horizontal Lines
# =============================================================================

def find_horizontal_line(edges: np.ndarray, y_from: int, y_to: int, x_from: int, x_to: int) -> Optional[int]:
    """
    Row with the highest mean edge value, walking from y_from toward y_to.

    The first maximum met wins, so the row nearest y_from is preferred on ties.
    """
    h, w = edges.shape
    xa = _clamp(x_from, 0, w - 1)
    xb = _clamp(x_to, 0, w - 1)
    if xb - xa < MIN_LINE_SPAN_PX:
        return None
    ya = _clamp(y_from, 0, h - 1)
    yb = _clamp(y_to, 0, h - 1)

    step = 1 if yb >= ya else -1
    rows = np.arange(ya, yb + step, step)
    means = edges[rows, xa:xb + 1].astype(np.float64).mean(axis=1)
    return int(rows[int(np.argmax(means))])


def line_coverage(edges: np.ndarray, y: int, x_from: int, x_to: int) -> float:
    h, w = edges.shape
    yy = _clamp(y, 0, h - 1)
    xa = _clamp(x_from, 0, w - 1)
    xb = _clamp(x_to, 0, w - 1)
    if xb <= xa:
        return 0.0
    vals = edges[yy, xa:xb + 1].astype(np.float64)
    max_v = vals.max()
    if max_v <= 1e-6:
        return 0.0
    return float(np.mean(vals >= max_v * LINE_THR_FRAC))


def bottom_polyline(edges: np.ndarray, left_x: int, right_x: int, bottom_y: int,
                    top_min_y: int, probe_y: int) -> List[Tuple[int, int]]:
    """
    Sample the bottom rim every few pixels within a band around bottom_y.

    The band never reaches above the probe row. Points are median smoothed
    in y when there are enough of them.
    """
    h, w = edges.shape
    xa = _clamp(left_x + COVERAGE_INSET_PX, 0, w - 1)
    xb = _clamp(right_x - COVERAGE_INSET_PX, 0, w - 1)
    if xb - xa < BOTTOM_POLY_MIN_SPAN_PX:
        return []

    yc = _clamp(bottom_y, 0, h - 1)
    y_hard_lo = _clamp(max(top_min_y, probe_y - 1), 0, h - 1)
    y_lo = _clamp(max(yc - BOTTOM_POLY_BAND_Y, y_hard_lo), 0, h - 1)
    y_hi = _clamp(max(y_lo, yc + BOTTOM_POLY_BAND_Y), 0, h - 1)

    points = []
    for x in range(xa, xb + 1, BOTTOM_POLY_STEP_X):
        column = edges[y_lo:y_hi + 1, x]
        if column.max() > 0:
            points.append((x, y_lo + int(np.argmax(column))))

    if len(points) >= 7:
        ys = [p[1] for p in points]
        smoothed = []
        for i in range(len(points)):
            win = sorted(ys[max(0, i - 2):min(len(ys), i + 3)])
            smoothed.append(win[len(win) // 2])
        points = [(x, y) for (x, _), y in zip(points, smoothed)]

    return points


def polyline_coverage(edges: np.ndarray, points: List[Tuple[int, int]]) -> float:
    if not points:
        return 0.0
    vals = np.array([edges[y, x] for x, y in points], dtype=np.float64)
    max_v = vals.max()
    if max_v <= 1e-6:
        return 0.0
    return float(np.mean(vals >= max_v * BOTTOM_POLY_THR_FRAC))


def polyline_tilt_deg(points: List[Tuple[int, int]]) -> float:
    """Robust line fit over the middle 60% of the polyline, in degrees."""
    if len(points) < TILT_MIN_POINTS:
        return 0.0
    xs_sorted = sorted(p[0] for p in points)
    x_lo = xs_sorted[len(xs_sorted) // 5]
    x_hi = xs_sorted[len(xs_sorted) * 4 // 5]
    mid = np.array([p for p in points if x_lo <= p[0] <= x_hi], dtype=np.float64)
    if len(mid) < TILT_MIN_FIT_POINTS or np.ptp(mid[:, 0]) < 1e-9:
        return 0.0

    x = mid[:, 0].reshape(-1, 1)
    y = mid[:, 1]
    try:
        model = RANSACRegressor(residual_threshold=TILT_RANSAC_RESIDUAL_PX, random_state=42)
        model.fit(x, y)
        slope = float(model.estimator_.coef_[0])
    except ValueError as e:
        logger.debug(f"RANSAC tilt fit failed ({e}), using least squares")
        slope = float(np.polyfit(mid[:, 0], y, 1)[0])
    return math.degrees(math.atan(slope))


# =============================================================================
# Detection
# =============================================================================

def _resolve_roi_edge_map(edge_map: EdgeMap, roi: Optional[RegionOfInterest]) -> EdgeMap:
    if edge_map.roi is None:
        if roi is not None:
            return edge_map.crop(roi)
        return EdgeMap(edge_map.edges, edge_map.stats, RegionOfInterest(0, 0, edge_map.width, edge_map.height))
    if roi is not None and roi != edge_map.roi:
        raise ValueError(f"Edge map already covers {edge_map.roi}, cannot re-crop to {roi}")
    return edge_map


def detect_rim(
    edge_map: EdgeMap,
    midline_x: float,
    hbox_mm: float,
    roi: Optional[RegionOfInterest] = None,
    vbox_mm: Optional[float] = None,
    brow_bottom_y: Optional[float] = None,
    px_per_mm_guess: Optional[float] = None,
    bridge_row_y: Optional[float] = None,
    pupil: Optional[Tuple[float, float]] = None,
    seed_x: Optional[float] = None,
    params: RimDetectorParams = RimDetectorParams(),
    debug_dir: Optional[str] = None,
) -> Optional[Tuple[RimEstimate, EdgeMap]]:
    """
    Locate the inner rim box of one eye.

    All coordinate arguments are in source image coordinates; the estimate
    is ROI-local.

    Args:
        edge_map: Binary edge map, full-frame or already cropped to the ROI
        midline_x: Facial midline x
        hbox_mm: Inner box width of the reference contour
        roi: Eye ROI when edge_map is full-frame
        vbox_mm: Inner box height, optional
        brow_bottom_y: Eyebrow bottom; the top boundary never rises above it
        px_per_mm_guess: Rough face scale; derived from the ROI when None
        bridge_row_y: Preferred probe row
        pupil: Pupil center, probe row fallback
        seed_x: Forces the rim center x for every hypothesis
        params: Scale search parameters
        debug_dir: Directory to save debug images

    Returns:
        Tuple of (RimEstimate, the ROI EdgeMap), or None when the ROI is too
        small, the edge map too sparse or no hypothesis survives. A weak best
        hypothesis comes back with ok=False.
    """
    if hbox_mm is None or not math.isfinite(hbox_mm) or hbox_mm <= 1e-6:
        logger.warning(f"RIM invalid HBOX={hbox_mm}")
        return None
    vbox = float(vbox_mm) if vbox_mm is not None and math.isfinite(vbox_mm) else 0.0

    edge_map = _resolve_roi_edge_map(edge_map, roi)
    roi = edge_map.roi
    h, w = edge_map.height, edge_map.width
    if w < MIN_ROI_W or h < MIN_ROI_H:
        logger.warning(f"RIM ROI too small {w}x{h}")
        return None
    if edge_map.nnz < MIN_EDGE_NNZ:
        logger.warning(f"RIM edge map too sparse (nnz={edge_map.nnz})")
        return None
    edges = edge_map.edges

    # Probe row and anti-brow rule
    if bridge_row_y is not None:
        probe_src = bridge_row_y
    elif pupil is not None:
        probe_src = pupil[1]
    else:
        probe_src = roi.center[1]
    probe_raw = _clamp(_round(probe_src - roi.y), 0, h - 1)

    if brow_bottom_y is None:
        top_min0 = 0
    else:
        pad = _clamp(_round(h * BROW_PAD_FRAC), BROW_PAD_MIN, BROW_PAD_MAX)
        top_min0 = _clamp(_clamp(_round(brow_bottom_y - roi.y), 0, h - 1) + pad, 0, h - 1)
    top_min = _clamp(min(top_min0, _clamp(probe_raw - TOP_SEARCH_PAD, 0, h - 1)), 0, h - 1)
    probe_y = _clamp(probe_raw, min(top_min + PROBE_TOP_MARGIN, h - 1), h - 3)

    mid_local = float(_clamp(midline_x - roi.x, 0.0, w - 1.0))
    nasal_at_left = abs(roi.x - midline_x) <= abs(roi.x + w - 1 - midline_x)
    side_sign = 1 if nasal_at_left else -1

    logger.debug(
        f"RIM probe_raw={probe_raw} probe={probe_y} top_min0={top_min0} top_min={top_min} "
        f"mid_local={mid_local:.1f} nasal_at_left={nasal_at_left}"
    )

    if px_per_mm_guess is not None:
        guess_base = float(px_per_mm_guess)
    else:
        guess_base = _clamp(w / hbox_mm * GUESS_FROM_ROI_K, GUESS_MIN, GUESS_MAX)
    if not math.isfinite(guess_base) or guess_base <= 0:
        logger.warning(f"RIM invalid px/mm guess {guess_base}")
        return None

    seed_anchor = None if seed_x is None else _clamp(_round(seed_x - roi.x), 0, w - 1)

    row_sum, max_v = probe_row_sum(edges, probe_y, params.band_half_px, top_min)
    if max_v <= 1e-6:
        logger.warning("RIM no edges on the probe band")
        return None
    thr = max_v * params.peak_thr_frac

    # Thickness from the base hypothesis
    exp_w_hint = max(hbox_mm * guess_base, MIN_EXPECTED_W_PX)
    gap_hint = max(GAP_MIN_PX, GAP_FRAC * exp_w_hint)
    seed_hint = seed_anchor if seed_anchor is not None else mid_local + side_sign * (gap_hint + 0.5 * exp_w_hint)
    cx_base = float(_clamp(_round(seed_hint), 0, w - 1))
    exp_left, exp_right = cx_base - 0.5 * exp_w_hint, cx_base + 0.5 * exp_w_hint
    t_est = estimate_rim_thickness(
        edges, top_min, probe_y,
        x_nasal_expected=exp_left if nasal_at_left else exp_right,
        x_temple_expected=exp_right if nasal_at_left else exp_left,
        nasal_at_left=nasal_at_left,
        tol_px=_clamp(_round(exp_w_hint * LR_TOL_FRAC), LR_TOL_MIN_PX, LR_TOL_MAX_PX),
        px_per_mm=guess_base,
    )
    logger.debug(f"RIM t_est={t_est:.1f}px guess={guess_base:.2f}")

    best = None
    best_key = None
    for scale in build_scales(params.scale_min, params.scale_max, params.scale_step):
        px_this = _clamp(guess_base * scale, PX_PER_MM_MIN, PX_PER_MM_MAX)
        exp_w = max(hbox_mm * px_this, MIN_EXPECTED_W_PX)
        gap = max(GAP_MIN_PX, GAP_FRAC * exp_w)
        seed_used = seed_anchor if seed_anchor is not None else _clamp(
            _round(mid_local + side_sign * (gap + 0.5 * exp_w)), 0, w - 1)

        thickness = t_est
        scanned = scan_from_seed(row_sum, thr, exp_w, seed_used, px_this)
        if scanned is not None:
            left_raw, right_raw, measured_t = scanned
            if measured_t is not None:
                thickness = measured_t
            method = "seed_scan"
        else:
            found = find_left_right_from_row_sum(row_sum, thr, exp_w, seed_used, mid_local, side_sign)
            if found is None:
                logger.debug(f"RIM s={scale:.2f} no left/right")
                continue
            left_raw, right_raw = found
            method = "row_peaks"

        left_x, right_x = refine_inner_edges(row_sum, thr, exp_w, left_raw, right_raw, thickness)
        inner_w = right_x - left_x
        if inner_w < MIN_INNER_W_PX:
            continue
        ratio_w = inner_w / exp_w
        if not (params.w_ratio_min <= ratio_w <= params.w_ratio_max):
            logger.debug(f"RIM s={scale:.2f} width ratio {ratio_w:.2f} rejected")
            continue

        bottom_y = find_horizontal_line(
            edges, min(h - 1, probe_y + BOTTOM_SEARCH_PAD), h - 1,
            left_x + LINE_INSET_PX, right_x - LINE_INSET_PX,
        )
        if bottom_y is None:
            continue

        px_per_mm_x = inner_w / hbox_mm
        exp_h = vbox * px_per_mm_x if vbox > 1e-3 else None
        y_cap = _clamp(probe_y - TOP_SEARCH_PAD, 0, h - 1)
        if exp_h is not None and exp_h > MIN_EXPECTED_H_PX:
            top_y = _clamp(_round(bottom_y - exp_h), top_min, y_cap)
        else:
            top_y = find_horizontal_line(
                edges, y_cap, top_min, left_x + LINE_INSET_PX, right_x - LINE_INSET_PX,
            )
            if top_y is None:
                top_y = top_min

        inner_h = max(bottom_y - top_y, 1)
        min_h = max(MIN_H_PX, _round(h * MIN_H_FRAC))
        max_h = _round(h * MAX_H_FRAC)
        if not (min_h <= inner_h <= max_h):
            logger.debug(f"RIM s={scale:.2f} height {inner_h} outside [{min_h}, {max_h}]")
            continue

        err_h_rel = 0.0
        if exp_h is not None and exp_h > MIN_EXPECTED_H_PX:
            err_h_rel = _clamp(abs(inner_h - exp_h) / exp_h, 0.0, 9.0)
            if err_h_rel > MAX_H_ERR_REL:
                continue

        cov_b = line_coverage(edges, bottom_y, left_x + COVERAGE_INSET_PX, right_x - COVERAGE_INSET_PX)
        cov_t = line_coverage(edges, top_y, left_x + COVERAGE_INSET_PX, right_x - COVERAGE_INSET_PX)
        err_w = abs(inner_w - exp_w) / exp_w

        poly = bottom_polyline(edges, left_x, right_x, bottom_y, top_min, probe_y)
        poly_cov = polyline_coverage(edges, poly)
        tilt = polyline_tilt_deg(poly)

        conf = 1.0 - CONF_W_WIDTH * err_w
        if err_h_rel > 0:
            conf -= CONF_W_HEIGHT * _clamp(err_h_rel / CONF_H_ERR_NORM, 0.0, 1.0)
        conf += CONF_W_POLY * (poly_cov - CONF_POLY_REF)
        conf += CONF_W_COV_BOTTOM * (cov_b - CONF_COV_REF)
        conf += CONF_W_COV_TOP * (cov_t - CONF_COV_REF)
        if poly_cov < CONF_POLY_LOW:
            conf *= CONF_POLY_LOW_FACTOR
        conf = _clamp(conf, 0.0, 1.0)

        logger.debug(
            f"RIM s={scale:.2f} [{method}] L={left_x} R={right_x} W={inner_w} expW={exp_w:.1f} "
            f"top={top_y} bot={bottom_y} covB={cov_b:.2f} poly={poly_cov:.2f} conf={conf:.3f}"
        )

        # Equal confidence goes to the smaller width error
        key = (conf, -err_w)
        if best_key is None or key > best_key:
            best_key = key
            best = RimEstimate(
                ok=False,
                confidence=conf,
                roi=roi,
                probe_y=probe_y,
                top_y=top_y,
                bottom_y=bottom_y,
                inner_left_x=left_x,
                inner_right_x=right_x,
                nasal_at_left=nasal_at_left,
                scale=scale,
                rim_thickness_px=float(thickness),
                tilt_deg=tilt,
                bottom_polyline=tuple(poly),
            )

    if best is None:
        logger.warning("RIM no scale hypothesis survived")
        return None

    estimate = replace(best, ok=bool(best.confidence >= params.ok_conf_min))
    logger.debug(
        f"RIM best conf={estimate.confidence:.3f} ok={estimate.ok} W={estimate.inner_width_px} "
        f"H={estimate.height_px} scale={estimate.scale:.2f} px/mm_x={estimate.inner_width_px / hbox_mm:.3f}"
    )

    if debug_dir:
        from lensfit.debug_observer import DebugObserver, draw_rim_overlay
        DebugObserver(debug_dir).save_stage("04_rim_estimate", draw_rim_overlay(edges, estimate))

    return estimate, edge_map


# =============================================================================
# Fellow-Eye Mirror
# =============================================================================

def mirror_rim_estimate(estimate: RimEstimate, midline_x: float, target_roi: RegionOfInterest) -> RimEstimate:
    """
    Synthesize the fellow eye's estimate by reflecting across the midline.

    Left and right swap, top and bottom stay, confidence drops and ok is
    always False.

    Args:
        estimate: Estimate of the detected eye
        midline_x: Facial midline x, source coordinates
        target_roi: ROI of the eye being synthesized

    Returns:
        RimEstimate local to target_roi
    """
    g = estimate.to_global()

    def reflect(x: float) -> int:
        lx = _round(2.0 * midline_x - x) - target_roi.x
        return _clamp(lx, 0, target_roi.width - 1)

    def local_y(y: float) -> int:
        return _clamp(_round(y - target_roi.y), 0, target_roi.height - 1)

    left = reflect(g["inner_right_x"])
    right = reflect(g["inner_left_x"])
    polyline = tuple(sorted((reflect(x), local_y(y)) for x, y in g["bottom_polyline"]))

    return RimEstimate(
        ok=False,
        confidence=estimate.confidence * MIRROR_CONFIDENCE_FACTOR,
        roi=target_roi,
        probe_y=local_y(g["probe_y"]),
        top_y=local_y(g["top_y"]),
        bottom_y=local_y(g["bottom_y"]),
        inner_left_x=left,
        inner_right_x=right,
        nasal_at_left=abs(target_roi.x - midline_x) <= abs(target_roi.right - 1 - midline_x),
        scale=estimate.scale,
        rim_thickness_px=estimate.rim_thickness_px,
        tilt_deg=-estimate.tilt_deg,
        bottom_polyline=polyline,
        mirrored=True,
    )
