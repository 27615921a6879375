"""
Directional edge map builder.

This module turns a grayscale buffer into the binary edge map every later
stage reads. It never looks at color and never keeps state between calls.

Functions:
- compute_scharr_gradients: Signed 3x3 Scharr-style gradient field
- directional_score: Score favoring near-horizontal/near-vertical structure
- quantize_directions: 4-bin gradient direction for non-maximum suppression
- non_max_suppress: Keep pixels that dominate both neighbors along the gradient
- percentile_from_histogram: Histogram-based score percentile
- compute_thresholds: Adaptive high/low hysteresis thresholds
- hysteresis: Keep weak pixels 8-connected to a strong seed
- brow_kill_row: Row above which edges are forced to zero
- build_edge_map: Full-frame mode (border, kill line, flatten mask)
- build_annulus_edge_map: ROI mode restricted to a band around an ellipse
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np
from scipy import ndimage

from lensfit.edge_map_constants import (
    # Directional Score
    K_H,
    K_V,
    DIR_TAN_LOW_X100,
    DIR_TAN_HIGH_X100,
    # Thresholds
    EDGE_THR_FRAC,
    EDGE_THR_MIN,
    HYST_LOW_FRAC,
    P95_CAP_K,
    SCORE_PERCENTILE,
    HIST_BINS,
    # Signal Sufficiency
    MIN_VALID_SAMPLES,
    MAX_BORDER_FRAC,
    # Brow Kill
    BROW_KILL_MARGIN_PX,
    BROW_KILL_MAX_FRAC,
    # Annulus Mode
    BAND_MIN_PX,
    BAND_MAX_PX,
    BAND_K_T,
    DIR_MAX_ANGLE_DEG,
)
from lensfit.types import EdgeMap, EdgeStats, RegionOfInterest

logger = logging.getLogger(__name__)

# Direction bins
DIR_HORIZONTAL = 0   # gradient along x, edge runs vertically
DIR_DIAG_MAIN = 1    # gx and gy share sign
DIR_VERTICAL = 2     # gradient along y, edge runs horizontally
DIR_DIAG_ANTI = 3    # gx and gy have opposite signs

# Scores saturate at the int16 range
MAX_SCORE_VALUE = 32767


@dataclass(frozen=True)
class EdgeMapParams:
    """Tunables shared by both edge map modes."""
    k_h: float = K_H
    k_v: float = K_V
    thr_frac: float = EDGE_THR_FRAC
    thr_min: int = EDGE_THR_MIN
    hyst_low_frac: float = HYST_LOW_FRAC
    p95_cap_k: float = P95_CAP_K
    percentile: float = SCORE_PERCENTILE
    hist_bins: int = HIST_BINS
    min_valid_samples: int = MIN_VALID_SAMPLES


@dataclass(frozen=True)
class AnnulusParams:
    """Band and direction gating for the ROI/annulus mode."""
    band_min_px: float = BAND_MIN_PX
    band_max_px: float = BAND_MAX_PX
    band_k_t: float = BAND_K_T
    use_direction: bool = True
    dir_max_angle_deg: float = DIR_MAX_ANGLE_DEG


# =============================================================================
# Gradient and Score
# =============================================================================

def _to_gray_u8(image: np.ndarray) -> np.ndarray:
    """Validate an 8-bit buffer and convert BGR to gray if needed."""
    if image is None or image.size == 0:
        raise ValueError("Image is empty")
    if image.dtype != np.uint8:
        raise ValueError(f"Expected an 8-bit image, got dtype {image.dtype}")
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.ndim != 2:
        raise ValueError(f"Expected a 2-D grayscale or BGR image, got shape {image.shape}")
    return image


def compute_scharr_gradients(gray: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Signed 3x3 Scharr-style gradients (weights 3, 10, 3).

    Args:
        gray: 2-D uint8 image

    Returns:
        Tuple of (gx, gy) int32 arrays, zero on the 1-pixel border
    """
    p = _to_gray_u8(gray).astype(np.int32)
    h, w = p.shape
    gx = np.zeros((h, w), dtype=np.int32)
    gy = np.zeros((h, w), dtype=np.int32)
    if h < 3 or w < 3:
        return gx, gy

    gx[1:-1, 1:-1] = (
        3 * (p[:-2, 2:] - p[:-2, :-2])
        + 10 * (p[1:-1, 2:] - p[1:-1, :-2])
        + 3 * (p[2:, 2:] - p[2:, :-2])
    )
    gy[1:-1, 1:-1] = (
        3 * (p[2:, :-2] - p[:-2, :-2])
        + 10 * (p[2:, 1:-1] - p[:-2, 1:-1])
        + 3 * (p[2:, 2:] - p[:-2, 2:])
    )
    return gx, gy


def directional_score(gx: np.ndarray, gy: np.ndarray,
                      k_h: float = K_H, k_v: float = K_V) -> np.ndarray:
    """
    score = max(0, |gy| - k_h*|gx|, |gx| - k_v*|gy|), integer.

    Computed in x100 integer arithmetic so results are bit-identical across
    platforms.
    """
    ax = np.abs(gx.astype(np.int64))
    ay = np.abs(gy.astype(np.int64))
    kh100 = int(round(k_h * 100))
    kv100 = int(round(k_v * 100))
    hs100 = ay * 100 - kh100 * ax
    vs100 = ax * 100 - kv100 * ay
    s100 = np.maximum(0, np.maximum(hs100, vs100))
    return np.minimum(s100 // 100, MAX_SCORE_VALUE).astype(np.int32)


def quantize_directions(gx: np.ndarray, gy: np.ndarray) -> np.ndarray:
    """Quantize gradient direction into 0/45/90/135 degree bins."""
    gx64 = gx.astype(np.int64)
    gy64 = gy.astype(np.int64)
    ax = np.abs(gx64)
    ay = np.abs(gy64)

    dirs = np.full(gx.shape, DIR_DIAG_ANTI, dtype=np.uint8)
    dirs[(gx64 ^ gy64) >= 0] = DIR_DIAG_MAIN
    dirs[ay * 100 >= ax * DIR_TAN_HIGH_X100] = DIR_VERTICAL
    dirs[ay * 100 <= ax * DIR_TAN_LOW_X100] = DIR_HORIZONTAL
    dirs[(ax == 0) & (ay == 0)] = DIR_HORIZONTAL
    return dirs


def non_max_suppress(score: np.ndarray, dirs: np.ndarray) -> np.ndarray:
    """
    Non-maximum suppression along the quantized gradient direction.

    Returns:
        Boolean mask of pixels whose score is >= both neighbors
    """
    padded = np.pad(score, 1, mode="constant")
    h, w = score.shape

    def shifted(dy: int, dx: int) -> np.ndarray:
        return padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]

    neighbor_pairs = {
        DIR_HORIZONTAL: ((0, -1), (0, 1)),
        DIR_VERTICAL: ((-1, 0), (1, 0)),
        DIR_DIAG_MAIN: ((-1, -1), (1, 1)),
        DIR_DIAG_ANTI: ((-1, 1), (1, -1)),
    }

    keep = np.zeros(score.shape, dtype=bool)
    for d, (first, second) in neighbor_pairs.items():
        sel = dirs == d
        dominant = (score >= shifted(*first)) & (score >= shifted(*second))
        keep |= sel & dominant
    return keep


def percentile_from_histogram(positive_scores: np.ndarray, max_score: int,
                              q: float = SCORE_PERCENTILE,
                              bins: int = HIST_BINS) -> int:
    """
    Score percentile from a fixed-resolution histogram.

    Args:
        positive_scores: 1-D array of scores > 0
        max_score: Maximum score (bin scale)
        q: Quantile in [0, 1]
        bins: Histogram resolution

    Returns:
        Integer score at the requested quantile
    """
    total = int(positive_scores.size)
    if total == 0 or max_score <= 0:
        return 0

    bin_idx = (positive_scores.astype(np.int64) * (bins - 1)) // max_score
    hist = np.bincount(bin_idx, minlength=bins)
    target = min(max(int(total * q), 0), total - 1)

    cumulative = np.cumsum(hist)
    b = int(np.searchsorted(cumulative, target, side="right"))
    if b >= bins:
        return int(max_score)
    return int((b * max_score) // max(bins - 1, 1))


def compute_thresholds(max_score: int, p95: int,
                       params: EdgeMapParams = EdgeMapParams()) -> Tuple[int, int]:
    """
    High threshold = min(thr_frac*max, p95_cap_k*p95), floored; low = half of high.

    Returns:
        Tuple of (thr_high, thr_low)
    """
    thr_base = max(params.thr_min, int(params.thr_frac * max_score))
    thr_cap = max(params.thr_min, int(params.p95_cap_k * p95))
    thr_high = max(min(thr_base, thr_cap), params.thr_min)
    thr_low = max(params.thr_min, int(thr_high * params.hyst_low_frac))
    return thr_high, thr_low


def hysteresis(strong: np.ndarray, weak: np.ndarray) -> np.ndarray:
    """
    Keep every strong pixel plus weak pixels 8-connected to a strong one.

    Args:
        strong: Boolean mask of strong candidates
        weak: Boolean mask of weak candidates (may overlap strong)

    Returns:
        Boolean edge mask
    """
    candidates = strong | weak
    labels, count = ndimage.label(candidates, structure=np.ones((3, 3), dtype=bool))
    if count == 0:
        return np.zeros(strong.shape, dtype=bool)

    seeded = np.zeros(count + 1, dtype=bool)
    seeded[np.unique(labels[strong])] = True
    seeded[0] = False
    return seeded[labels]


# =============================================================================
# Shared Core
# =============================================================================

def _empty_edge_map(shape: Tuple[int, int], roi: Optional[RegionOfInterest],
                    samples: int = 0, max_score: int = 0,
                    band_px: float = 0.0, top_kill_y: int = 0) -> EdgeMap:
    stats = EdgeStats(max_score=max_score, samples=samples, band_px=band_px, top_kill_y=top_kill_y)
    return EdgeMap(np.zeros(shape, dtype=np.uint8), stats, roi)


def _edges_from_score(
    score: np.ndarray,
    dirs: np.ndarray,
    valid: np.ndarray,
    params: EdgeMapParams,
    roi: Optional[RegionOfInterest],
    band_px: float = 0.0,
    top_kill_y: int = 0,
    tag: str = "FULL",
) -> Tuple[EdgeMap, np.ndarray]:
    """Thresholds, NMS and hysteresis over a score field restricted to valid pixels."""
    score = np.where(valid, score, 0).astype(np.int32)
    positive = score[score > 0]
    samples = int(positive.size)
    max_score = int(positive.max()) if samples else 0

    if samples < params.min_valid_samples or max_score <= 0:
        logger.debug(f"EDGE[{tag}] not enough signal: samples={samples} max={max_score}")
        return _empty_edge_map(score.shape, roi, samples, max_score, band_px, top_kill_y), score

    p95 = percentile_from_histogram(positive, max_score, params.percentile, params.hist_bins)
    thr_high, thr_low = compute_thresholds(max_score, p95, params)

    local_max = non_max_suppress(score, dirs) & valid
    strong = local_max & (score >= thr_high)
    weak = local_max & (score >= thr_low) & ~strong

    if not strong.any():
        logger.debug(f"EDGE[{tag}] no strong pixels: thrH={thr_high} thrL={thr_low}")
        return _empty_edge_map(score.shape, roi, samples, max_score, band_px, top_kill_y), score

    kept = hysteresis(strong, weak)
    edges = np.where(kept, 255, 0).astype(np.uint8)
    nnz = int(np.count_nonzero(kept))
    density = nnz / float(kept.size)

    logger.debug(
        f"EDGE[{tag}] max={max_score} p95={p95} thrH={thr_high} thrL={thr_low} "
        f"strong={int(strong.sum())} weak={int(weak.sum())} nnz={nnz} dens={density:.4f}"
    )

    stats = EdgeStats(
        max_score=max_score,
        p95_score=p95,
        thr_high=thr_high,
        thr_low=thr_low,
        nnz=nnz,
        density=density,
        band_px=band_px,
        samples=samples,
        top_kill_y=top_kill_y,
    )
    return EdgeMap(edges, stats, roi), score


def _save_edge_debug(observer, gray: np.ndarray, score: np.ndarray, edge_map: EdgeMap, prefix: str) -> None:
    """Save score heat map and edge overlay."""
    from lensfit.debug_observer import draw_edge_overlay, draw_score_heatmap

    observer.save_stage(f"{prefix}_score", draw_score_heatmap(score))
    observer.save_stage(f"{prefix}_edges", draw_edge_overlay(gray, edge_map.edges))


# =============================================================================
# Public Builders
# =============================================================================

def brow_kill_row(brow_bottom_y: Optional[float], height: int) -> int:
    """
    Row above which every edge is forced to zero.

    Args:
        brow_bottom_y: Eyebrow bottom y in image coordinates, or None
        height: Image height

    Returns:
        Kill row in [0, 0.30*height]; 0 when no brow is known
    """
    if brow_bottom_y is None or not math.isfinite(brow_bottom_y):
        return 0
    kill = int(round(brow_bottom_y)) - BROW_KILL_MARGIN_PX
    return int(min(max(kill, 0), int(height * BROW_KILL_MAX_FRAC)))


def build_edge_map(
    image: np.ndarray,
    params: EdgeMapParams = EdgeMapParams(),
    border_px: int = 0,
    top_kill_y: int = 0,
    flatten_mask: Optional[np.ndarray] = None,
    debug_dir: Optional[str] = None,
) -> EdgeMap:
    """
    Full-frame edge map.

    Pixels under flatten_mask feed the gradient with their 3x3 box-blurred
    value instead of being zeroed, so mask boundaries do not create edges.

    Args:
        image: uint8 grayscale or BGR image
        params: Threshold parameters
        border_px: Hard border exclusion, capped at min(w, h)/3
        top_kill_y: Rows above this are forced to zero
        flatten_mask: Optional uint8/bool mask, same size as image
        debug_dir: Directory to save debug images

    Returns:
        EdgeMap; all-zero with empty stats when the image lacks signal
    """
    gray = _to_gray_u8(image)
    h, w = gray.shape

    if flatten_mask is not None:
        if flatten_mask.shape != gray.shape:
            raise ValueError(f"Mask shape {flatten_mask.shape} does not match image {gray.shape}")
        blurred = cv2.blur(gray, (3, 3), borderType=cv2.BORDER_REPLICATE)
        gray_in = np.where(flatten_mask > 0, blurred, gray).astype(np.uint8)
    else:
        gray_in = gray

    border = int(min(max(border_px, 0), int(min(w, h) * MAX_BORDER_FRAC)))
    kill = int(min(max(top_kill_y, 0), h))

    gx, gy = compute_scharr_gradients(gray_in)
    score = directional_score(gx, gy, params.k_h, params.k_v)
    dirs = quantize_directions(gx, gy)

    margin = max(1, border)
    valid = np.zeros((h, w), dtype=bool)
    y0 = max(margin, kill)
    y1 = h - margin
    x0 = margin
    x1 = w - margin
    if y1 > y0 and x1 > x0:
        valid[y0:y1, x0:x1] = True

    edge_map, masked_score = _edges_from_score(
        score, dirs, valid, params, roi=None, top_kill_y=kill, tag="FULL"
    )

    if debug_dir:
        from lensfit.debug_observer import DebugObserver
        _save_edge_debug(DebugObserver(debug_dir), gray, masked_score, edge_map, "01_full_frame")

    return edge_map


def _ellipse_band_and_normals(
    shape: Tuple[int, int], bbox: RegionOfInterest
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Approximate radial distance to the bbox ellipse and its unit normal field."""
    h, w = shape
    cx, cy = bbox.center
    a = max(bbox.width * 0.5, 1.0)
    b = max(bbox.height * 0.5, 1.0)

    ys, xs = np.mgrid[0:h, 0:w].astype(np.float64)
    dx = xs + 0.5 - cx
    dy = ys + 0.5 - cy
    rho = np.sqrt((dx / a) ** 2 + (dy / b) ** 2)
    dist_center = np.hypot(dx, dy)
    # Ray distance from the point to the ellipse boundary
    with np.errstate(divide="ignore", invalid="ignore"):
        dist = np.where(rho > 1e-9, dist_center - dist_center / rho, max(a, b))

    nx = dx / (a * a)
    ny = dy / (b * b)
    norm = np.hypot(nx, ny)
    norm[norm < 1e-12] = 1.0
    return np.abs(dist), nx / norm, ny / norm


def build_annulus_edge_map(
    gx: np.ndarray,
    gy: np.ndarray,
    bbox: RegionOfInterest,
    rim_thickness_px: float,
    params: EdgeMapParams = EdgeMapParams(),
    annulus: AnnulusParams = AnnulusParams(),
    roi: Optional[RegionOfInterest] = None,
) -> EdgeMap:
    """
    ROI-mode edge map restricted to a band around the ellipse inscribed in bbox.

    Args:
        gx, gy: Signed gradient field of the ROI (see compute_scharr_gradients)
        bbox: Approximate rim bounding box in the same local coordinates
        rim_thickness_px: Estimated rim thickness, sets the band half-width
        params: Threshold parameters
        annulus: Band and direction gating parameters
        roi: Where the gradient field sits in its source image

    Returns:
        EdgeMap with stats.band_px set
    """
    if gx.shape != gy.shape or gx.ndim != 2:
        raise ValueError(f"Gradient fields must be matching 2-D arrays, got {gx.shape} and {gy.shape}")

    h, w = gx.shape
    band = float(np.clip(annulus.band_k_t * max(rim_thickness_px, 0.0),
                         annulus.band_min_px, annulus.band_max_px))

    dist, nx, ny = _ellipse_band_and_normals((h, w), bbox)
    valid = dist <= band
    valid[0, :] = valid[-1, :] = False
    valid[:, 0] = valid[:, -1] = False

    if annulus.use_direction:
        gxf = gx.astype(np.float64)
        gyf = gy.astype(np.float64)
        mag = np.hypot(gxf, gyf)
        cos_tol = math.cos(math.radians(annulus.dir_max_angle_deg))
        with np.errstate(divide="ignore", invalid="ignore"):
            cos_angle = np.abs(gxf * nx + gyf * ny) / mag
        valid &= np.nan_to_num(cos_angle, nan=0.0) >= cos_tol

    score = directional_score(gx, gy, params.k_h, params.k_v)
    dirs = quantize_directions(gx, gy)

    logger.debug(f"EDGE[ANNULUS] band={band:.1f}px t={rim_thickness_px:.1f}px valid={int(valid.sum())}")

    edge_map, _ = _edges_from_score(score, dirs, valid, params, roi=roi, band_px=band, tag="ANNULUS")
    return edge_map
