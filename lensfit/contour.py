"""
Polar contour geometry.

This module handles:
- Reference contour points (FIL convention: CCW, Y-up, index N/4 on +Y)
- Tracer contour points (image convention: theta = -2*pi*i/N, Y down)
- Right/left eye mirroring and angular rotation of radius series
- Polygon to polar radii by ray intersection
- Box metrics (HBOX, VBOX, FED, perimeter)
- Circular fill / smoothing helpers shared by the tracer and regularizer
"""

import logging
import math
from typing import Dict, Optional, Tuple

import numpy as np
from scipy import ndimage

from lensfit.types import AngularConvention, PolarContour, RadiusUnit

logger = logging.getLogger(__name__)


# =============================================================================
# Circular Series Helpers
# =============================================================================

def fill_missing_circular(values: np.ndarray, hit: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Fill missing samples by linear interpolation between the nearest hits.

    Misses are NaN (or False in hit). Interpolation wraps around the circle;
    a single hit is replicated everywhere.

    Args:
        values: 1-D series with NaN for misses
        hit: Optional boolean mask of valid samples

    Returns:
        Filled copy; unchanged copy when there are no hits
    """
    values = np.asarray(values, dtype=np.float64)
    n = values.size
    valid = np.isfinite(values)
    if hit is not None:
        valid &= np.asarray(hit, dtype=bool)

    idx = np.flatnonzero(valid)
    if idx.size == 0:
        return values.copy()
    if idx.size == 1:
        return np.full(n, values[idx[0]])

    # Unroll one period on each side so np.interp handles the wrap
    xp = np.concatenate([idx - n, idx, idx + n])
    fp = np.tile(values[idx], 3)
    return np.interp(np.arange(n), xp, fp)


def circular_median(values: np.ndarray, window: int) -> np.ndarray:
    return ndimage.median_filter(np.asarray(values, dtype=np.float64), size=window, mode="wrap")


def circular_mean(values: np.ndarray, window: int) -> np.ndarray:
    return ndimage.uniform_filter1d(np.asarray(values, dtype=np.float64), size=window, mode="wrap")


def rotate_radii(radii: np.ndarray, shift_steps: int) -> np.ndarray:
    """out[i] = radii[(i - shift) mod N]."""
    radii = np.asarray(radii)
    if radii.size == 0:
        return radii.copy()
    return np.roll(radii, shift_steps % radii.size)


def mirror_radii(radii: np.ndarray) -> np.ndarray:
    """
    Mirror a polar series across the Y axis (x -> -x).

    Angle theta maps to pi - theta, so index i maps to (N/2 - i) mod N in
    both angular conventions.
    """
    radii = np.asarray(radii)
    n = radii.size
    if n % 2:
        raise ValueError(f"Mirroring needs an even sample count, got {n}")
    src = (n // 2 - np.arange(n)) % n
    return radii[src].copy()


def mirror_contour(contour: PolarContour) -> PolarContour:
    """Right-eye shape to left-eye shape (or back)."""
    return PolarContour(mirror_radii(contour.radii), contour.unit, contour.convention, contour.origin)


def cardinal_indices(n: int) -> Tuple[int, int, int, int]:
    """Fixed indices of +X, +Y, -X, -Y for an N-sample reference contour."""
    return tuple(min(max(int(k / 4.0 * n), 0), n - 1) for k in range(4))


# =============================================================================
# Points
# =============================================================================

def reference_points(radii: np.ndarray, mirror: bool = False) -> np.ndarray:
    """
    Y-up model points for a reference (FIL) series.

    index 0 -> +X, index N/4 -> +Y, index N/2 -> -X, index 3N/4 -> -Y

    Args:
        radii: Radius series (any unit; points come out in that unit)
        mirror: Negate X to get the fellow eye

    Returns:
        (N, 2) array of (x, y) centered on the polar origin
    """
    radii = np.asarray(radii, dtype=np.float64)
    theta = 2.0 * math.pi * np.arange(radii.size) / radii.size
    x = radii * np.cos(theta)
    y = radii * np.sin(theta)
    if mirror:
        x = -x
    return np.column_stack([x, y])


def trace_points(radii_px: np.ndarray, center: Tuple[float, float]) -> np.ndarray:
    """
    Image points for a tracer series, theta_i = -2*pi*i/N in Y-down axes.

    Returns:
        (N, 2) array of image (x, y)
    """
    radii_px = np.asarray(radii_px, dtype=np.float64)
    theta = -2.0 * math.pi * np.arange(radii_px.size) / radii_px.size
    cx, cy = center
    return np.column_stack([cx + radii_px * np.cos(theta), cy + radii_px * np.sin(theta)])


def trace_to_reference(contour: PolarContour) -> PolarContour:
    """
    Re-tag a traced series as a reference series.

    theta = -2*pi*i/N in Y-down axes is the same physical direction as
    theta = +2*pi*i/N in Y-up axes, so the samples carry over unchanged;
    only the axes they are interpreted in change.
    """
    if contour.convention == AngularConvention.REFERENCE_CCW:
        return contour
    return PolarContour(contour.radii, contour.unit, AngularConvention.REFERENCE_CCW, (0.0, 0.0))


# =============================================================================
# Polygon -> Radii
# =============================================================================

def ray_polygon_distances(polygon: np.ndarray, directions: np.ndarray) -> np.ndarray:
    """
    Distance from the origin to the nearest polygon crossing along each ray.

    Args:
        polygon: (K, 2) closed point list, already relative to the ray origin
        directions: (M, 2) unit ray directions in the same axes

    Returns:
        (M,) distances, NaN where a ray misses
    """
    a = np.asarray(polygon, dtype=np.float64)
    e = np.roll(a, -1, axis=0) - a
    dirs = np.asarray(directions, dtype=np.float64)
    dx = dirs[:, 0:1]
    dy = dirs[:, 1:2]

    ax = a[None, :, 0]
    ay = a[None, :, 1]
    ex = e[None, :, 0]
    ey = e[None, :, 1]

    denom = dx * ey - dy * ex
    with np.errstate(divide="ignore", invalid="ignore"):
        t = (ax * ey - ay * ex) / denom
        u = (ax * dy - ay * dx) / denom
    ok = (np.abs(denom) > 1e-12) & (t >= 0.0) & (u >= 0.0) & (u <= 1.0)
    t = np.where(ok, t, np.inf)
    dist = t.min(axis=1)
    dist[~np.isfinite(dist)] = np.nan
    return dist


def polygon_to_radii(polygon: np.ndarray, n: int,
                     center: Optional[Tuple[float, float]] = None,
                     y_down: bool = True) -> np.ndarray:
    """
    Sample a closed polygon as N radii by ray intersection (nearest hit).

    Rays follow theta_i = -2*pi*i/N in image axes when y_down, otherwise
    theta_i = 2*pi*i/N in Y-up axes; both point the same physical way.
    Missed rays are filled circularly.

    Args:
        polygon: (K, 2) closed or open point list
        n: Number of rays
        center: Ray origin; polygon centroid when None
        y_down: Whether polygon is in image axes

    Returns:
        (n,) radii in polygon units; NaN everywhere if nothing was hit
    """
    pts = np.asarray(polygon, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[0] < 3:
        raise ValueError(f"Polygon needs at least 3 points, got shape {pts.shape}")

    if center is None:
        center = (float(pts[:, 0].mean()), float(pts[:, 1].mean()))

    a = pts - np.array(center)
    if y_down:
        a[:, 1] = -a[:, 1]

    theta = 2.0 * math.pi * np.arange(n) / n
    radii = ray_polygon_distances(a, np.column_stack([np.cos(theta), np.sin(theta)]))

    missed = int(np.isnan(radii).sum())
    if missed:
        logger.debug(f"polygon_to_radii: {missed}/{n} rays missed, filling circularly")
    return fill_missing_circular(radii)


def resample_closed_polyline(points: np.ndarray, count: int) -> np.ndarray:
    """Resample a closed polyline to count points evenly spaced by arc length."""
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[0] < 3:
        raise ValueError(f"Polyline needs at least 3 points, got shape {pts.shape}")
    if count < 3:
        raise ValueError(f"Resample count must be >= 3, got {count}")

    closed = np.vstack([pts, pts[:1]])
    seg = np.hypot(np.diff(closed[:, 0]), np.diff(closed[:, 1]))
    arc = np.concatenate([[0.0], np.cumsum(seg)])
    total = arc[-1]
    if total <= 0:
        return np.repeat(pts[:1], count, axis=0)

    s = np.arange(count) * (total / count)
    return np.column_stack([np.interp(s, arc, closed[:, 0]), np.interp(s, arc, closed[:, 1])])


def smooth_closed_polyline(points: np.ndarray, window: int) -> np.ndarray:
    """Circular moving average of x and y."""
    pts = np.asarray(points, dtype=np.float64)
    if window <= 1:
        return pts.copy()
    return np.column_stack([circular_mean(pts[:, 0], window), circular_mean(pts[:, 1], window)])


# =============================================================================
# Box Metrics
# =============================================================================

def box_metrics(radii_mm: np.ndarray) -> Dict[str, float]:
    """
    HBOX/VBOX/FED/perimeter of a reference series in millimeters.

    Returns:
        Dictionary containing:
        - hbox_mm: Bounding box width
        - vbox_mm: Bounding box height
        - fed_mm: Twice the largest radius
        - circ_mm: Closed polygon perimeter
    """
    radii_mm = np.asarray(radii_mm, dtype=np.float64)
    pts = reference_points(radii_mm)
    closed = np.vstack([pts, pts[:1]])
    perimeter = float(np.sum(np.hypot(np.diff(closed[:, 0]), np.diff(closed[:, 1]))))
    return {
        "hbox_mm": float(pts[:, 0].max() - pts[:, 0].min()),
        "vbox_mm": float(pts[:, 1].max() - pts[:, 1].min()),
        "fed_mm": float(2.0 * radii_mm.max()),
        "circ_mm": perimeter,
    }


def reference_contour_mm(radii_mm: np.ndarray) -> PolarContour:
    return PolarContour(np.asarray(radii_mm, dtype=np.float64), RadiusUnit.MILLIMETERS,
                        AngularConvention.REFERENCE_CCW)
