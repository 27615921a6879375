"""
Radial contour tracing inside a calibration ring.

This module handles:
- Preprocessing (CLAHE, unsharp mask, blur, highlight flattening)
- Calibration ring detection (Hough circles scored by expected radius)
- Interior ROI that excludes a band around the ring
- Oversampled outside-to-inside ray casting against Canny edges
- Sub-pixel refinement of ray hits on the gradient magnitude
- Circular fill, smoothing, delta clamping and downsampling
- Contour-based fallback when ray coverage is too low

Traced contours use the image convention: theta_i = -2*pi*i/N in image
axes (Y down), index 0 on +X, origin at the ring center.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from lensfit.contour import (
    circular_mean,
    circular_median,
    fill_missing_circular,
    trace_points,
)
from lensfit.radius_regularizer import outline_to_hundredths
from lensfit.tracer_constants import (
    # Sampling
    N_RADII,
    OVERSAMPLING,
    RADIAL_STEP_PX,
    REFINE_WINDOW_PX,
    REFINE_STEP_PX,
    MAX_SUBPIXEL_OFFSET,
    MIN_PARABOLA_DENOMINATOR,
    R_MIN_FRAC,
    # Ring
    RING_DIAMETER_MM,
    HOUGH_DP,
    HOUGH_MIN_DIST_FRAC,
    HOUGH_PARAM1,
    HOUGH_PARAM2,
    HOUGH_MIN_R_FRAC,
    HOUGH_MAX_R_FRAC,
    RING_W_RADIUS,
    RING_W_CENTER,
    # Interior ROI
    MARGIN_MM_INSIDE,
    MIN_MARGIN_PX,
    MIN_ROI_RADIUS_PX,
    RING_BAND_MM,
    MIN_RING_BAND_PX,
    RAY_START_INSET_MM,
    RAY_START_INSET_MIN_PX,
    MIN_RAY_START_PX,
    # Preprocessing
    CLAHE_CLIP,
    CLAHE_TILES,
    SHARPEN_SIGMA,
    SHARPEN_AMOUNT,
    SHARPEN_BLUR_WEIGHT,
    BLUR_KSIZE,
    HIGHLIGHT_THR,
    HIGHLIGHT_DILATE,
    HIGHLIGHT_FILL_GRAY,
    CANNY_LOW,
    CANNY_HIGH,
    # Series cleaning
    SMOOTH_WIN_MEDIAN,
    SMOOTH_WIN_MEAN,
    MAX_JUMP_MM,
    CONTINUITY_BIG_K,
    CONTINUITY_ITERATIONS,
    # Coverage and fallback
    MIN_COVERAGE,
    FALLBACK_MIN_AREA,
    FALLBACK_MAX_CENTER_FRAC,
    FALLBACK_MIN_AREA_RATIO,
    FALLBACK_MAX_AREA_RATIO,
    FALLBACK_MAX_CIRCULARITY,
    FALLBACK_MAX_POINTS,
    # Confidence
    COVERAGE_HIGH,
    CONFIDENCE_HIGH,
    CONFIDENCE_MEDIUM,
    CONFIDENCE_FALLBACK,
)
from lensfit.types import (
    AngularConvention,
    PolarContour,
    RadiusUnit,
    RingDetection,
    TraceResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TracerParams:
    n_radii: int = N_RADII
    oversampling: int = OVERSAMPLING
    ring_diameter_mm: float = RING_DIAMETER_MM
    margin_mm_inside: float = MARGIN_MM_INSIDE
    ring_band_mm: float = RING_BAND_MM
    canny_low: int = CANNY_LOW
    canny_high: int = CANNY_HIGH
    min_coverage: float = MIN_COVERAGE
    max_circularity: float = FALLBACK_MAX_CIRCULARITY
    min_area_ratio: float = FALLBACK_MIN_AREA_RATIO
    max_area_ratio: float = FALLBACK_MAX_AREA_RATIO
    clahe: bool = True
    sharpen: bool = True
    max_jump_mm: float = MAX_JUMP_MM
    highlight_thr: float = HIGHLIGHT_THR
    highlight_dilate: int = HIGHLIGHT_DILATE
    highlight_fill_gray: float = HIGHLIGHT_FILL_GRAY


# =============================================================================
# Preprocessing
# =============================================================================

def preprocess_for_trace(image: np.ndarray, params: TracerParams = TracerParams()) -> np.ndarray:
    """
    Grayscale conditioning before ring detection and edge extraction.

    Args:
        image: uint8 BGR or grayscale image

    Returns:
        Conditioned uint8 grayscale image
    """
    if image.dtype != np.uint8:
        raise ValueError(f"Expected uint8 image, got {image.dtype}")
    if image.ndim == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim == 2:
        gray = image.copy()
    else:
        raise ValueError(f"Expected 2-D or 3-D image, got shape {image.shape}")

    if params.clahe:
        clahe = cv2.createCLAHE(clipLimit=CLAHE_CLIP, tileGridSize=(CLAHE_TILES, CLAHE_TILES))
        gray = clahe.apply(gray)

    if params.sharpen:
        blur = cv2.GaussianBlur(gray, (0, 0), SHARPEN_SIGMA)
        gray = cv2.addWeighted(gray, SHARPEN_AMOUNT, blur, SHARPEN_BLUR_WEIGHT, 0)

    gray = cv2.GaussianBlur(gray, (BLUR_KSIZE, BLUR_KSIZE), 0)

    # Flatten near-white glare so it does not create inner edges
    _, highlights = cv2.threshold(gray, params.highlight_thr, 255, cv2.THRESH_BINARY)
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))
    highlights = cv2.morphologyEx(highlights, cv2.MORPH_CLOSE, kernel)
    if params.highlight_dilate > 0:
        highlights = cv2.dilate(highlights, kernel, iterations=params.highlight_dilate)
    gray[highlights > 0] = int(params.highlight_fill_gray)
    gray = cv2.GaussianBlur(gray, (BLUR_KSIZE, BLUR_KSIZE), 0)

    return gray


# =============================================================================
# Ring Detection
# =============================================================================

def detect_ring(gray: np.ndarray, px_per_mm: float,
                params: TracerParams = TracerParams()) -> Optional[RingDetection]:
    """
    Find the calibration ring among Hough circle candidates.

    Candidates are scored by closeness to the expected radius and to the
    image center.

    Args:
        gray: Preprocessed grayscale image
        px_per_mm: Scale of the photo

    Returns:
        RingDetection, or None when Hough finds no circle
    """
    h, w = gray.shape[:2]
    side = min(w, h)
    expected_r = params.ring_diameter_mm * 0.5 * px_per_mm

    circles = cv2.HoughCircles(
        gray,
        cv2.HOUGH_GRADIENT,
        dp=HOUGH_DP,
        minDist=side * HOUGH_MIN_DIST_FRAC,
        param1=HOUGH_PARAM1,
        param2=HOUGH_PARAM2,
        minRadius=int(side * HOUGH_MIN_R_FRAC),
        maxRadius=int(side * HOUGH_MAX_R_FRAC),
    )
    if circles is None or circles.size == 0:
        logger.debug("RING no Hough candidates")
        return None

    cx_img, cy_img = w * 0.5, h * 0.5
    best = None
    for x, y, r in circles.reshape(-1, 3).astype(np.float64):
        score = -abs(r - expected_r) * RING_W_RADIUS - math.hypot(x - cx_img, y - cy_img) * RING_W_CENTER
        if best is None or score > best.score:
            best = RingDetection(float(x), float(y), float(r), float(expected_r), float(score))

    logger.debug(
        f"RING candidates={circles.reshape(-1, 3).shape[0]} best=({best.center_x:.1f},{best.center_y:.1f}) "
        f"r={best.radius_px:.1f} expected={expected_r:.1f}"
    )
    return best


def interior_mask(shape: Tuple[int, int], ring: RingDetection, px_per_mm: float,
                  params: TracerParams = TracerParams()) -> Tuple[np.ndarray, float, float]:
    """
    Disk inside the ring with the ring band removed.

    Returns:
        Tuple of (uint8 mask, interior radius px, band half-width px)
    """
    margin_px = max(params.margin_mm_inside * px_per_mm, MIN_MARGIN_PX)
    roi_r = max(MIN_ROI_RADIUS_PX, ring.radius_px - margin_px)
    band_px = max(params.ring_band_mm * px_per_mm, MIN_RING_BAND_PX)

    center = (int(round(ring.center_x)), int(round(ring.center_y)))
    mask = np.zeros(shape, dtype=np.uint8)
    cv2.circle(mask, center, int(roi_r), 255, -1)

    band = np.zeros(shape, dtype=np.uint8)
    cv2.circle(band, center, int(ring.radius_px + band_px), 255, -1)
    inner = np.zeros(shape, dtype=np.uint8)
    cv2.circle(inner, center, max(int(ring.radius_px - band_px), 0), 255, -1)
    band = cv2.subtract(band, inner)
    mask = cv2.subtract(mask, band)

    return mask, float(roi_r), float(band_px)


def trace_edges(gray: np.ndarray, mask: np.ndarray, params: TracerParams = TracerParams()) -> np.ndarray:
    """Canny edges restricted to the interior mask, closed with a 3x3 ellipse."""
    edges = cv2.Canny(gray, params.canny_low, params.canny_high)
    edges = cv2.bitwise_and(edges, mask)
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))
    return cv2.morphologyEx(edges, cv2.MORPH_CLOSE, kernel, iterations=1)


# =============================================================================
# Ray Casting
# =============================================================================

def cast_rays(edges: np.ndarray, cx: float, cy: float, r_outer: float, r_min: float,
              n_rays: int, step: float = RADIAL_STEP_PX) -> np.ndarray:
    """
    March each ray from r_outer inward and record the first edge hit.

    Ray i has angle -2*pi*i/n_rays in image axes.

    Returns:
        (n_rays,) radii in px, NaN where the ray found nothing
    """
    h, w = edges.shape[:2]
    if r_outer < r_min:
        return np.full(n_rays, np.nan)

    n_steps = int(math.floor((r_outer - r_min) / step + 1e-9)) + 1
    radii = r_outer - step * np.arange(n_steps)
    theta = -2.0 * math.pi * np.arange(n_rays) / n_rays

    xs = np.floor(cx + np.outer(np.cos(theta), radii) + 0.5).astype(np.int64)
    ys = np.floor(cy + np.outer(np.sin(theta), radii) + 0.5).astype(np.int64)
    inside = (xs >= 0) & (xs < w) & (ys >= 0) & (ys < h)

    hit = np.zeros(xs.shape, dtype=bool)
    hit[inside] = edges[ys[inside], xs[inside]] > 0

    any_hit = hit.any(axis=1)
    first = hit.argmax(axis=1)
    out = np.full(n_rays, np.nan)
    out[any_hit] = radii[first[any_hit]]
    return out


def refine_to_gradient_peak(gray: np.ndarray, radii: np.ndarray, cx: float, cy: float,
                            window: float = REFINE_WINDOW_PX,
                            step: float = REFINE_STEP_PX) -> np.ndarray:
    """
    Move ray hits onto the intensity step.

    The first Canny pixel met from outside lies on the background side of
    the edge. Each hit is shifted to the Sobel magnitude peak along its ray
    within +-window px, then refined with a parabola through the peak and
    the samples 1 px either side.

    Args:
        gray: Conditioned grayscale image the edges came from
        radii: (n_rays,) hit radii in px, NaN where the ray found nothing
        cx, cy: Ray origin

    Returns:
        (n_rays,) refined radii; NaN entries stay NaN
    """
    out = np.array(radii, dtype=np.float64)
    idx = np.flatnonzero(np.isfinite(out))
    if idx.size == 0:
        return out

    g = gray.astype(np.float32)
    magnitude = cv2.magnitude(cv2.Sobel(g, cv2.CV_32F, 1, 0, ksize=3),
                              cv2.Sobel(g, cv2.CV_32F, 0, 1, ksize=3))

    pad = max(int(round(1.0 / step)), 1)
    offsets = np.arange(-(window + pad * step), window + pad * step + 0.5 * step, step)
    theta = -2.0 * math.pi * idx / out.size
    r = out[idx, None] + offsets[None, :]
    map_x = (cx + np.cos(theta)[:, None] * r).astype(np.float32)
    map_y = (cy + np.sin(theta)[:, None] * r).astype(np.float32)
    profile = cv2.remap(magnitude, map_x, map_y, cv2.INTER_LINEAR,
                        borderMode=cv2.BORDER_CONSTANT, borderValue=0)

    rows = np.arange(idx.size)
    k = profile[:, pad:offsets.size - pad].argmax(axis=1) + pad
    g_center = profile[rows, k]
    g_minus = profile[rows, k - pad]
    g_plus = profile[rows, k + pad]

    # f(x) = a x^2 + b x + c through x = -1, 0, 1 (px)
    a = (g_plus + g_minus - 2.0 * g_center) / 2.0
    b = (g_plus - g_minus) / 2.0
    x_peak = np.zeros(idx.size)
    curved = a < -MIN_PARABOLA_DENOMINATOR
    x_peak[curved] = -b[curved] / (2.0 * a[curved])
    x_peak[np.abs(x_peak) > MAX_SUBPIXEL_OFFSET] = 0.0

    refined = r[rows, k] + x_peak * pad * step
    out[idx] = np.where(g_center > 0, refined, out[idx])
    return out


def smooth_circular_series(values: np.ndarray) -> np.ndarray:
    """Circular median then circular moving average."""
    return circular_mean(circular_median(values, SMOOTH_WIN_MEDIAN), SMOOTH_WIN_MEAN)


def clamp_circular_deltas(radii: np.ndarray, max_delta: float) -> np.ndarray:
    """
    Bound |r[i] - r[i-1]| by max_delta with a forward and a backward pass.

    The two passes are averaged, which flattens spikes without shrinking
    the contour toward either end.
    """
    r = np.asarray(radii, dtype=np.float64)
    n = r.size
    if n < 3:
        return r.copy()
    md = max(1.0, float(max_delta))

    fwd = np.empty(n)
    fwd[0] = r[0]
    for i in range(1, n):
        fwd[i] = fwd[i - 1] + min(max(r[i] - fwd[i - 1], -md), md)

    bwd = np.empty(n)
    bwd[-1] = r[-1]
    for i in range(n - 2, -1, -1):
        bwd[i] = bwd[i + 1] + min(max(r[i] - bwd[i + 1], -md), md)

    return (fwd + bwd) * 0.5


def clean_by_continuity(radii_mm: np.ndarray, max_jump_mm: float,
                        iterations: int = CONTINUITY_ITERATIONS) -> np.ndarray:
    """Replace isolated spikes with the mean of their agreeing neighbours."""
    cur = np.asarray(radii_mm, dtype=np.float64).copy()
    if cur.size < 3 or max_jump_mm <= 0:
        return cur
    big = max_jump_mm * CONTINUITY_BIG_K

    for _ in range(min(max(iterations, 1), 4)):
        prev = np.roll(cur, 1)
        nxt = np.roll(cur, -1)
        spike = (np.abs(cur - prev) > big) & (np.abs(cur - nxt) > big) & (np.abs(prev - nxt) <= max_jump_mm)
        cur = np.where(spike, (prev + nxt) * 0.5, cur)
    return cur


# =============================================================================
# Contour Fallback
# =============================================================================

def _close_and_subsample(points: np.ndarray, max_points: int = FALLBACK_MAX_POINTS) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if len(pts) > max_points:
        idx = (np.arange(max_points) * (len(pts) / float(max_points))).astype(np.int64)
        pts = pts[idx]
    if len(pts) >= 2 and not np.array_equal(pts[0], pts[-1]):
        pts = np.vstack([pts, pts[:1]])
    return pts


def fallback_outline(edges: np.ndarray, ring: RingDetection, roi_r: float,
                     params: TracerParams = TracerParams()) -> Optional[np.ndarray]:
    """
    Pick the best external contour of the edge map.

    Contours must sit near the ring center, cover a plausible fraction of the
    interior disk and be less circular than a perfect circle (the ring
    itself). Score = area_ratio * (1 - circularity).

    Returns:
        (K, 2) closed outline, or None
    """
    contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    roi_area = math.pi * roi_r * roi_r

    best = None
    best_score = -1.0
    for cnt in contours:
        area = cv2.contourArea(cnt)
        if area < FALLBACK_MIN_AREA:
            continue
        m = cv2.moments(cnt)
        mx = m["m10"] / (m["m00"] + 1e-6)
        my = m["m01"] / (m["m00"] + 1e-6)
        if math.hypot(mx - ring.center_x, my - ring.center_y) > roi_r * FALLBACK_MAX_CENTER_FRAC:
            continue

        perimeter = cv2.arcLength(cnt, True)
        if perimeter <= 1e-3:
            continue
        circularity = 4.0 * math.pi * area / (perimeter * perimeter)
        area_ratio = area / roi_area
        if not (params.min_area_ratio <= area_ratio <= params.max_area_ratio):
            continue
        if circularity > params.max_circularity:
            continue

        score = area_ratio * (1.0 - circularity)
        if score > best_score:
            best, best_score = cnt, score

    if best is None:
        logger.debug(f"TRACE fallback: no contour among {len(contours)} candidates")
        return None

    logger.debug(f"TRACE fallback: picked contour with {len(best)} points, score={best_score:.4f}")
    return _close_and_subsample(best.reshape(-1, 2))


# =============================================================================
# Public API
# =============================================================================

def trace_sharpness(gray: np.ndarray, mask: np.ndarray) -> float:
    """Standard deviation of the Laplacian inside the mask."""
    lap = cv2.Laplacian(gray, cv2.CV_32F)
    _, std = cv2.meanStdDev(lap, mask=mask)
    return float(std.ravel()[0])


def _trace_confidence(coverage: float) -> float:
    if coverage >= COVERAGE_HIGH:
        return CONFIDENCE_HIGH
    if coverage >= MIN_COVERAGE:
        return CONFIDENCE_MEDIUM
    return CONFIDENCE_FALLBACK


def trace_lens(
    image: np.ndarray,
    px_per_mm: float,
    params: TracerParams = TracerParams(),
    debug_dir: Optional[str] = None,
) -> Optional[TraceResult]:
    """
    Trace the lens outline inside the calibration ring.

    Args:
        image: uint8 BGR or grayscale photo of the lens on the ring
        px_per_mm: Scale of the photo
        params: Tracer parameters
        debug_dir: Directory to save debug images

    Returns:
        TraceResult with N radii in px and mm, or None when the ring or the
        outline cannot be found
    """
    if px_per_mm <= 0 or not math.isfinite(px_per_mm):
        raise ValueError(f"px_per_mm must be positive, got {px_per_mm}")

    gray = preprocess_for_trace(image, params)

    ring = detect_ring(gray, px_per_mm, params)
    if ring is None:
        logger.warning("Calibration ring not found")
        return None

    mask, roi_r, band_px = interior_mask(gray.shape, ring, px_per_mm, params)
    edges = trace_edges(gray, mask, params)

    r_outer = max(
        min(roi_r, ring.radius_px - band_px) - max(RAY_START_INSET_MIN_PX, RAY_START_INSET_MM * px_per_mm),
        MIN_RAY_START_PX,
    )
    r_min = roi_r * R_MIN_FRAC
    n_fine = params.n_radii * params.oversampling

    raw_fine = cast_rays(edges, ring.center_x, ring.center_y, r_outer, r_min, n_fine)
    raw_fine = refine_to_gradient_peak(gray, raw_fine, ring.center_x, ring.center_y)
    hits = int(np.isfinite(raw_fine).sum())
    coverage = hits / float(n_fine)

    logger.debug(
        f"TRACE coverage={coverage:.2f} hits={hits}/{n_fine} px/mm={px_per_mm:.2f} "
        f"ring_r={ring.radius_px:.1f} r_outer={r_outer:.1f} r_min={r_min:.1f}"
    )

    center = (ring.center_x, ring.center_y)
    if coverage >= params.min_coverage:
        max_jump_px = max(params.max_jump_mm * px_per_mm, 1.0)
        fine = clamp_circular_deltas(smooth_circular_series(fill_missing_circular(raw_fine)), max_jump_px)
        outline = trace_points(fine, center)

        radii_px = fine[(np.arange(params.n_radii) * n_fine) // params.n_radii]
        radii_mm = radii_px / px_per_mm
        if params.max_jump_mm > 0:
            radii_mm = clean_by_continuity(radii_mm, params.max_jump_mm)
        radii_px = radii_mm * px_per_mm
        method = "radial"
    else:
        outline = fallback_outline(edges, ring, roi_r, params)
        if outline is None or cv2.pointPolygonTest(outline.astype(np.float32), center, False) < 0:
            logger.warning(f"No outline found inside ring (coverage={coverage:.2f})")
            return None
        radii_mm = outline_to_hundredths(outline, center, px_per_mm, params.n_radii) / 100.0
        radii_px = radii_mm * px_per_mm
        method = "contour_fallback"

    sharpness = trace_sharpness(gray, mask)
    result = TraceResult(
        contour_px=PolarContour(radii_px, RadiusUnit.PIXELS, AngularConvention.IMAGE_TRACE, center),
        contour_mm=PolarContour(radii_mm, RadiusUnit.MILLIMETERS, AngularConvention.IMAGE_TRACE, center),
        ring=ring,
        coverage=coverage,
        method=method,
        confidence=_trace_confidence(coverage),
        sharpness=sharpness,
        outline=outline,
    )

    if debug_dir:
        from lensfit.debug_observer import DebugObserver, draw_edge_overlay, draw_trace_overlay
        observer = DebugObserver(debug_dir)
        observer.save_stage("01_trace_preprocessed", gray)
        observer.save_stage("02_trace_edges", draw_edge_overlay(gray, edges))
        observer.save_stage("03_trace_result", draw_trace_overlay(image, result, roi_r))

    return result
