"""
Arc-fit: place a known reference contour on an ROI edge map.

This module handles:
- Inner polygon construction (per-axis shrink from HBOX/VBOX)
- Ray correspondences between the model polygon and edge hits
- Graded edge support weighting hits and pairs
- Weighted 2-D Procrustes (rotation, uniform scale, translation)
- Scale / rotation / residual checks, bottom anchor and ROI bounds
- Iteration with graceful fallback to the last good solution

Model space is millimeters, Y up, centered on the box center. Image space is
ROI-local pixels, Y down.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from lensfit.arc_fit_constants import (
    # Inner polygon
    INNER_MARGIN_MM_PER_SIDE,
    MIN_INNER_SHRINK,
    MIN_POLYGON_POINTS,
    # Correspondences
    EXCLUDE_DEG_FROM,
    EXCLUDE_DEG_TO,
    STEP_DEG,
    R_SEARCH_REL_LO,
    R_SEARCH_REL_HI,
    MIN_SEARCH_T_PX,
    MAX_SEARCH_FRAC,
    SEARCH_STEP_PX,
    EDGE_SUPPORT_SIGMA,
    RAY_LAMBDA,
    EDGE_POW,
    W_MIN,
    MIN_PAIRS,
    # Checks
    MAX_ROTATION_DEG,
    TOL_SCALE_REL,
    RMS_MAX_PX,
    PX_PER_MM_MIN,
    PX_PER_MM_MAX,
    MIN_EDGE_DENSITY,
    ANCHOR_MIN_SHIFT_PX,
    # Iterations
    DEFAULT_ITERATIONS,
    MAX_ITERATIONS,
)
from lensfit.contour import ray_polygon_distances
from lensfit.types import EdgeMap, FailureKind, FitResult, Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArcFitParams:
    inner_margin_mm: float = INNER_MARGIN_MM_PER_SIDE
    exclude_deg_from: float = EXCLUDE_DEG_FROM
    exclude_deg_to: float = EXCLUDE_DEG_TO
    step_deg: float = STEP_DEG
    iterations: int = DEFAULT_ITERATIONS
    r_search_rel_lo: float = R_SEARCH_REL_LO
    r_search_rel_hi: float = R_SEARCH_REL_HI
    tol_scale_rel: float = TOL_SCALE_REL
    rms_max_px: float = RMS_MAX_PX
    max_rotation_deg: float = MAX_ROTATION_DEG
    min_pairs: int = MIN_PAIRS
    ray_lambda: float = RAY_LAMBDA
    edge_pow: float = EDGE_POW
    w_min: float = W_MIN


@dataclass(frozen=True)
class _Solution:
    placed: np.ndarray
    px_per_mm: float
    rotation_deg: float
    origin: Tuple[float, float]
    rms_px: float
    used_pairs: int


def _clamp_scale(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value) or value <= 1e-6:
        return None
    return min(max(float(value), PX_PER_MM_MIN), PX_PER_MM_MAX)


# =============================================================================
# Inner Polygon
# =============================================================================

def inner_polygon_mm(points_mm: np.ndarray, hbox_mm: float, vbox_mm: float,
                     margin_mm: float = INNER_MARGIN_MM_PER_SIDE) -> np.ndarray:
    """
    Center a reference outline on its box and shrink it to the inner rim.

    X and Y are shrunk independently so the margin is the same on every
    side; a uniform shrink would distort the shape.

    Args:
        points_mm: (K, 2) Y-up outline in mm
        hbox_mm, vbox_mm: Box size of the outline
        margin_mm: Margin removed from each side

    Returns:
        (K, 2) centered inner polygon, or an empty (0, 2) array when the box
        is not usable
    """
    pts = np.asarray(points_mm, dtype=np.float64)
    if not (math.isfinite(hbox_mm) and hbox_mm > 1e-9 and math.isfinite(vbox_mm) and vbox_mm > 1e-9):
        return np.zeros((0, 2), dtype=np.float64)

    cx = (pts[:, 0].min() + pts[:, 0].max()) * 0.5
    cy = (pts[:, 1].min() + pts[:, 1].max()) * 0.5

    inner_w = max(hbox_mm - 2.0 * margin_mm, hbox_mm * MIN_INNER_SHRINK)
    inner_h = max(vbox_mm - 2.0 * margin_mm, vbox_mm * MIN_INNER_SHRINK)
    sx = min(max(inner_w / hbox_mm, MIN_INNER_SHRINK), 1.0)
    sy = min(max(inner_h / vbox_mm, MIN_INNER_SHRINK), 1.0)

    return np.column_stack([(pts[:, 0] - cx) * sx, (pts[:, 1] - cy) * sy])


def place_points(polygon_mm: np.ndarray, origin: Tuple[float, float], px_per_mm: float,
                 rotation_deg: float = 0.0) -> np.ndarray:
    """Model polygon to ROI pixels: rotate, scale, flip Y, offset by origin."""
    theta = math.radians(rotation_deg)
    c, s = math.cos(theta), math.sin(theta)
    x = polygon_mm[:, 0]
    y = polygon_mm[:, 1]
    x_up = px_per_mm * (c * x - s * y)
    y_up = px_per_mm * (s * x + c * y)
    return np.column_stack([origin[0] + x_up, origin[1] - y_up])


# =============================================================================
# Correspondences
# =============================================================================

def _allowed_angles(step_deg: float, exclude_from: float, exclude_to: float) -> np.ndarray:
    deg = np.arange(0.0, 360.0, step_deg)
    a = np.mod(deg, 360.0)
    return deg[(a < exclude_from) | (a > exclude_to)]


def edge_support(edges: np.ndarray, sigma: float = EDGE_SUPPORT_SIGMA) -> np.ndarray:
    """
    Graded edge strength in [0, 1] from a binary edge map.

    Thick or doubled edges keep most of their blurred mass and score near 1;
    a thin line or isolated specks score lower.
    """
    binary = (np.asarray(edges) > 0).astype(np.float32)
    support = cv2.GaussianBlur(binary, (0, 0), sigma).astype(np.float64)
    top = float(support.max())
    if top <= 0.0:
        return support
    return np.clip(support / top, 0.0, 1.0)


def raycast_edges(edge_near: np.ndarray, support: np.ndarray, origin: Tuple[float, float],
                  directions: np.ndarray, r_pred: np.ndarray, rel_lo: float, rel_hi: float,
                  ray_lambda: float = RAY_LAMBDA,
                  edge_pow: float = EDGE_POW) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Best edge hit along each ray, closest to the predicted radius.

    Stronger edges earn up to ray_lambda px of slack, so a well supported
    edge can win over a faint one slightly nearer the prediction.

    Args:
        edge_near: (H, W) bool, edge present in the 3x3 neighbourhood
        support: (H, W) edge strength in [0, 1], see edge_support()
        origin: Ray origin, ROI-local pixels
        directions: (M, 2) unit image directions (Y down)
        r_pred: (M,) predicted radius per ray (px)
        rel_lo, rel_hi: Search window relative to r_pred

    Returns:
        (M,) hit flag, (M, 2) hit points and (M,) edge weight at each hit
    """
    h, w = edge_near.shape
    m = directions.shape[0]
    t0 = np.maximum(r_pred * rel_lo, MIN_SEARCH_T_PX)
    t1 = np.minimum(r_pred * rel_hi, min(w, h) * MAX_SEARCH_FRAC)
    hits = np.zeros(m, dtype=bool)
    points = np.zeros((m, 2), dtype=np.float64)
    weights = np.zeros(m, dtype=np.float64)
    if m == 0 or not np.any(t1 >= t0):
        return hits, points, weights

    steps = int(np.ceil(np.max(t1 - t0) / SEARCH_STEP_PX)) + 1
    t = t0[:, None] + SEARCH_STEP_PX * np.arange(steps)[None, :]
    in_window = t <= t1[:, None]

    x = origin[0] + t * directions[:, 0:1]
    y = origin[1] + t * directions[:, 1:2]
    ix = np.floor(x + 0.5).astype(np.int64)
    iy = np.floor(y + 0.5).astype(np.int64)
    inside = in_window & (ix >= 0) & (ix < w) & (iy >= 0) & (iy < h)

    edge = np.zeros_like(inside)
    edge[inside] = edge_near[iy[inside], ix[inside]]
    strength = np.zeros(t.shape, dtype=np.float64)
    strength[inside] = support[iy[inside], ix[inside]]

    edge_w = np.clip(strength, 0.0, 1.0) ** edge_pow
    score = np.where(edge, np.abs(t - r_pred[:, None]) - ray_lambda * edge_w, np.inf)
    best = np.argmin(score, axis=1)
    rows = np.arange(m)
    hits = np.isfinite(score[rows, best])
    points = np.column_stack([x[rows, best], y[rows, best]])
    weights = np.where(hits, edge_w[rows, best], 0.0)
    return hits, points, weights


def weighted_similarity(p: np.ndarray, q: np.ndarray, wgt: np.ndarray,
                        fixed_scale: Optional[float] = None) -> Optional[Tuple[float, float, float, float]]:
    """
    Weighted 2-D Procrustes mapping model points p onto image points q.

    Both point sets are Y up. Rotation comes from atan2 of the weighted cross
    and dot sums, scale in closed form unless fixed_scale is given.

    Returns:
        Tuple of (theta rad, scale, tx, ty), or None when p has no weighted
        spread to solve the scale from
    """
    sum_w = float(wgt.sum())
    mean_p = (wgt[:, None] * p).sum(axis=0) / sum_w
    mean_q = (wgt[:, None] * q).sum(axis=0) / sum_w
    pc = p - mean_p
    qc = q - mean_q

    a = float(np.sum(wgt * (pc[:, 0] * qc[:, 0] + pc[:, 1] * qc[:, 1])))
    b = float(np.sum(wgt * (pc[:, 0] * qc[:, 1] - pc[:, 1] * qc[:, 0])))
    theta = math.atan2(b, a)
    ct, st = math.cos(theta), math.sin(theta)

    if fixed_scale is not None:
        scale = float(fixed_scale)
    else:
        rx = ct * pc[:, 0] - st * pc[:, 1]
        ry = st * pc[:, 0] + ct * pc[:, 1]
        denom = float(np.sum(wgt * (rx * rx + ry * ry)))
        if denom <= 1e-12:
            return None
        scale = float(np.sum(wgt * (qc[:, 0] * rx + qc[:, 1] * ry))) / denom

    tx = float(mean_q[0] - scale * (ct * mean_p[0] - st * mean_p[1]))
    ty = float(mean_q[1] - scale * (st * mean_p[0] + ct * mean_p[1]))
    return theta, scale, tx, ty


# =============================================================================
# Single Solve
# =============================================================================

def _solve_once(
    polygon: np.ndarray,
    edge_near: np.ndarray,
    support: np.ndarray,
    origin: Tuple[float, float],
    px_per_mm_guess: float,
    theta_guess: float,
    nasal_ux: float,
    fixed: Optional[float],
    observed: Optional[float],
    bottom_anchor_y: Optional[float],
    params: ArcFitParams,
) -> Outcome:
    h, w = edge_near.shape

    deg = _allowed_angles(params.step_deg, params.exclude_deg_from, params.exclude_deg_to)
    rad = np.radians(deg)
    dirs_model = np.column_stack([np.cos(rad) * nasal_ux, np.sin(rad)])

    dist = ray_polygon_distances(polygon, dirs_model)
    has_p = np.isfinite(dist)
    dirs_model = dirs_model[has_p]
    p = dirs_model * dist[has_p, None]
    r_pred = dist[has_p] * px_per_mm_guess

    cg, sg = math.cos(theta_guess), math.sin(theta_guess)
    up_x = cg * dirs_model[:, 0] - sg * dirs_model[:, 1]
    up_y = sg * dirs_model[:, 0] + cg * dirs_model[:, 1]
    dirs_img = np.column_stack([up_x, -up_y])

    hits, q_img, edge_w = raycast_edges(edge_near, support, origin, dirs_img, r_pred,
                                        params.r_search_rel_lo, params.r_search_rel_hi,
                                        params.ray_lambda, params.edge_pow)
    p = p[hits]
    q = np.column_stack([q_img[hits, 0] - origin[0], -(q_img[hits, 1] - origin[1])])
    n_pairs = int(p.shape[0])
    if n_pairs < params.min_pairs:
        logger.warning(f"Arc-fit: not enough pairs={n_pairs} (min={params.min_pairs})")
        return Outcome.fail(FailureKind.INSUFFICIENT_SIGNAL, f"{n_pairs} correspondences")

    wgt = np.clip(params.w_min + (1.0 - params.w_min) * edge_w[hits], 0.05, 1.0)
    sum_w = float(wgt.sum())

    solved = weighted_similarity(p, q, wgt, fixed)
    if solved is None:
        return Outcome.fail(FailureKind.INSUFFICIENT_SIGNAL, "degenerate correspondences")
    theta, scale, tx, ty = solved
    rotation_deg = math.degrees(theta)
    if abs(rotation_deg) > params.max_rotation_deg:
        logger.warning(f"Arc-fit: rotation {rotation_deg:.1f} deg exceeds {params.max_rotation_deg:.0f}")
        return Outcome.fail(FailureKind.GEOMETRY_OUT_OF_TOLERANCE, f"rotation {rotation_deg:.1f} deg")
    if not math.isfinite(scale) or scale <= 1e-9:
        return Outcome.fail(FailureKind.GEOMETRY_OUT_OF_TOLERANCE, f"scale {scale}")

    new_origin = (origin[0] + tx, origin[1] - ty)

    ct, st = math.cos(theta), math.sin(theta)
    pred_x = scale * (ct * p[:, 0] - st * p[:, 1]) + tx
    pred_y = scale * (st * p[:, 0] + ct * p[:, 1]) + ty
    err = wgt * ((pred_x - q[:, 0]) ** 2 + (pred_y - q[:, 1]) ** 2)
    rms = math.sqrt(float(err.sum()) / sum_w)

    if fixed is not None and not (math.isfinite(rms) and rms <= params.rms_max_px):
        logger.warning(f"Arc-fit: fixed scale rms={rms:.2f} > {params.rms_max_px:.2f}")
        return Outcome.fail(FailureKind.GEOMETRY_OUT_OF_TOLERANCE, f"rms {rms:.2f}px")

    placed = place_points(polygon, new_origin, scale, rotation_deg)

    if bottom_anchor_y is not None and placed.size:
        dy_wanted = bottom_anchor_y - float(placed[:, 1].max())
        if abs(dy_wanted) >= ANCHOR_MIN_SHIFT_PX:
            dy = min(max(dy_wanted, -float(placed[:, 1].min())), (h - 1.0) - float(placed[:, 1].max()))
            if abs(dy - dy_wanted) > 2.0:
                logger.warning(f"Bottom anchor clamped: wanted={dy_wanted:.2f} applied={dy:.2f}")
            placed[:, 1] += dy
            new_origin = (new_origin[0], new_origin[1] + dy)

    outside = ((placed[:, 0] < 0) | (placed[:, 0] > w - 1) |
               (placed[:, 1] < 0) | (placed[:, 1] > h - 1))
    if np.any(outside):
        logger.warning(f"Arc-fit: placed contour leaves the ROI ({int(outside.sum())}/{len(placed)} points)")
        return Outcome.fail(FailureKind.OUT_OF_BOUNDS, f"{int(outside.sum())} points outside ROI")

    if observed is not None:
        rel = abs(scale - observed) / observed
        logger.debug(f"Arc-fit check: observed={observed:.3f} scale={scale:.3f} rel={rel:.3f} "
                     f"rms={rms:.1f} pairs={n_pairs} rot={rotation_deg:.1f}")
        if rel > params.tol_scale_rel:
            logger.warning(f"Arc-fit reject: scale off observed by {rel:.2f} > {params.tol_scale_rel:.2f}")
            return Outcome.fail(FailureKind.GEOMETRY_OUT_OF_TOLERANCE, f"scale off observed by {rel:.2f}")
        if not (math.isfinite(rms) and rms <= params.rms_max_px):
            logger.warning(f"Arc-fit reject: rms={rms:.2f} > {params.rms_max_px:.2f}")
            return Outcome.fail(FailureKind.GEOMETRY_OUT_OF_TOLERANCE, f"rms {rms:.2f}px")

    return Outcome.success(_Solution(placed, scale, rotation_deg, new_origin, rms, n_pairs))


# =============================================================================
# Main Entry Points
# =============================================================================

def place_reference(
    reference_mm: np.ndarray,
    edge_map: EdgeMap,
    origin: Tuple[float, float],
    midline_x: float,
    px_per_mm_guess: float,
    hbox_mm: Optional[float] = None,
    vbox_mm: Optional[float] = None,
    observed_px_per_mm: Optional[float] = None,
    fixed_px_per_mm: Optional[float] = None,
    bottom_anchor_y: Optional[float] = None,
    params: ArcFitParams = ArcFitParams(),
    debug_dir: Optional[str] = None,
) -> Outcome:
    """
    Fit a reference outline to an ROI edge map.

    Args:
        reference_mm: (K, 2) reference outline, Y-up mm (outer lens edge)
        edge_map: Binary ROI edge map
        origin: Seed origin, ROI-local pixels
        midline_x: Facial midline, ROI-local x
        px_per_mm_guess: Initial scale
        hbox_mm, vbox_mm: Box of the reference; measured from it when None
        observed_px_per_mm: Independent scale; soft check on the result
        fixed_px_per_mm: Scale lock; the solve only finds rotation and shift
        bottom_anchor_y: ROI-local y the placed bottom is shifted onto
        params: Fit parameters
        debug_dir: Optional directory for the fit overlay

    Returns:
        Outcome holding a FitResult. When a later iteration fails the last
        good iteration is returned.
    """
    pts = np.asarray(reference_mm, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError(f"reference_mm must be (K, 2), got {pts.shape}")
    if not (math.isfinite(origin[0]) and math.isfinite(origin[1])):
        raise ValueError(f"Seed origin must be finite, got {origin}")
    if not math.isfinite(px_per_mm_guess) or px_per_mm_guess <= 1e-6:
        raise ValueError(f"px_per_mm_guess must be positive, got {px_per_mm_guess}")

    if pts.shape[0] < MIN_POLYGON_POINTS:
        logger.warning(f"Arc-fit: reference has {pts.shape[0]} points (min={MIN_POLYGON_POINTS})")
        return Outcome.fail(FailureKind.INSUFFICIENT_SIGNAL, "reference outline too short")

    density = edge_map.density
    logger.debug(f"Arc-fit edge map: nnz={edge_map.nnz} density={density:.5f}")
    if density < MIN_EDGE_DENSITY:
        logger.warning(f"Arc-fit: edge map too sparse density={density:.5f} (min={MIN_EDGE_DENSITY})")
        return Outcome.fail(FailureKind.INSUFFICIENT_SIGNAL, f"edge density {density:.5f}")

    if hbox_mm is None:
        hbox_mm = float(pts[:, 0].max() - pts[:, 0].min())
    if vbox_mm is None:
        vbox_mm = float(pts[:, 1].max() - pts[:, 1].min())
    polygon = inner_polygon_mm(pts, hbox_mm, vbox_mm, params.inner_margin_mm)
    if polygon.shape[0] < MIN_POLYGON_POINTS:
        return Outcome.fail(FailureKind.INSUFFICIENT_SIGNAL, "unusable reference box")

    fixed = _clamp_scale(fixed_px_per_mm)
    observed = _clamp_scale(observed_px_per_mm)
    for name, ref in (("observed", observed), ("fixed", fixed)):
        if ref is not None and abs(px_per_mm_guess - ref) / ref > max(0.25, params.tol_scale_rel * 2.0):
            logger.warning(f"Arc-fit: initial guess {px_per_mm_guess:.2f} far from {name} {ref:.2f}")

    # Midline right of the ROI center: nasal side is +X
    nasal_ux = 1.0 if midline_x >= edge_map.width * 0.5 else -1.0

    edge_near = cv2.dilate((edge_map.edges > 0).astype(np.uint8), np.ones((3, 3), np.uint8)) > 0
    support = edge_support(edge_map.edges)

    current_origin = (float(origin[0]), float(origin[1]))
    guess = fixed if fixed is not None else float(px_per_mm_guess)
    theta_guess = 0.0
    last = None
    completed = 0
    failure = None

    for it in range(min(max(params.iterations, 1), MAX_ITERATIONS)):
        step = _solve_once(polygon, edge_near, support, current_origin, guess, theta_guess, nasal_ux,
                           fixed, observed, bottom_anchor_y, params)
        if not step.ok:
            failure = step
            break
        sol = step.value
        logger.debug(f"Arc-fit iter={it} pairs={sol.used_pairs} scale={sol.px_per_mm:.2f} "
                     f"rot={sol.rotation_deg:.2f} rms={sol.rms_px:.2f} "
                     f"origin=({sol.origin[0]:.2f},{sol.origin[1]:.2f})")
        last = sol
        completed += 1
        current_origin = sol.origin
        theta_guess = math.radians(sol.rotation_deg)
        guess = fixed if fixed is not None else sol.px_per_mm

    if last is None:
        return failure

    result = FitResult(
        placed_points=last.placed,
        px_per_mm=last.px_per_mm,
        rotation_deg=last.rotation_deg,
        origin=last.origin,
        rms_px=last.rms_px,
        used_pairs=last.used_pairs,
        iterations=completed,
        roi=edge_map.roi,
    )

    if debug_dir:
        from lensfit.debug_observer import DebugObserver, draw_fit_overlay
        observer = DebugObserver(debug_dir)
        observer.save_stage("05_arc_fit", draw_fit_overlay(edge_map.edges, result, origin))

    return Outcome.success(result)


def fit_arc(reference_mm: np.ndarray, edge_map: EdgeMap, origin: Tuple[float, float],
            midline_x: float, px_per_mm_guess: float, **kwargs) -> Optional[FitResult]:
    """Same as place_reference, returning the FitResult or None."""
    return place_reference(reference_mm, edge_map, origin, midline_x, px_per_mm_guess, **kwargs).value
