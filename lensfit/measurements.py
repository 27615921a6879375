"""
Derived face measurements from pupils, midline and fitted lens outlines.

All inputs are in the same image coordinates; every output is in mm and
clamped at zero. Right and left refer to the subject's eyes.
"""

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Point = Tuple[float, float]
# (x_min, y_min, x_max, y_max)
Box = Tuple[float, float, float, float]


@dataclass(frozen=True)
class EyeMeasurements:
    dnp_mm: Optional[float] = None
    fitting_height_mm: Optional[float] = None
    useful_diameter_mm: Optional[float] = None


@dataclass(frozen=True)
class FaceMeasurements:
    mode: str
    px_per_mm: float
    right: EyeMeasurements
    left: EyeMeasurements
    dnp_total_mm: Optional[float] = None
    bridge_mm: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check_scale(px_per_mm: float) -> None:
    if not math.isfinite(px_per_mm) or px_per_mm <= 0:
        raise ValueError(f"px_per_mm must be positive, got {px_per_mm}")


def min_distance_to_outline(point: Point, outline: np.ndarray) -> float:
    """Shortest distance from a point to a closed polyline."""
    a = np.asarray(outline, dtype=np.float64)
    b = np.roll(a, -1, axis=0)
    p = np.asarray(point, dtype=np.float64)

    v = b - a
    w = p - a
    c1 = np.einsum("ij,ij->i", v, w)
    c2 = np.einsum("ij,ij->i", v, v)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = np.where(c2 > 0, np.clip(c1 / c2, 0.0, 1.0), 0.0)
    proj = a + v * t[:, None]
    return float(np.min(np.hypot(p[0] - proj[:, 0], p[1] - proj[:, 1])))


def min_distance_to_box(point: Point, box: Box) -> float:
    x, y = point
    x0, y0, x1, y1 = box
    return float(min(abs(x - x0), abs(x1 - x), abs(y - y0), abs(y1 - y)))


def dnp_mm(pupil: Point, midline_x: float, px_per_mm: float) -> float:
    """Monocular pupillary distance: pupil to facial midline."""
    _check_scale(px_per_mm)
    return abs(pupil[0] - midline_x) / px_per_mm


def bridge_mm(box_a: Box, box_b: Box, px_per_mm: float) -> float:
    """Horizontal gap between two fitted boxes, in either order."""
    _check_scale(px_per_mm)
    first, second = sorted((box_a, box_b), key=lambda b: b[0] + b[2])
    return max(0.0, (second[0] - first[2]) / px_per_mm)


def fitting_height_mm(pupil: Point, box: Box, px_per_mm: float) -> float:
    """Pupil down to the bottom of the fitted box."""
    _check_scale(px_per_mm)
    return max(0.0, (box[3] - pupil[1]) / px_per_mm)


def useful_diameter_mm(pupil: Point, px_per_mm: float,
                       outline: Optional[np.ndarray] = None,
                       box: Optional[Box] = None) -> Optional[float]:
    """
    Twice the shortest pupil-to-outline distance.

    Falls back to the box edges when the outline has fewer than two points.
    """
    _check_scale(px_per_mm)
    if outline is not None and len(outline) >= 2:
        d = min_distance_to_outline(pupil, outline)
    elif box is not None:
        d = min_distance_to_box(pupil, box)
    else:
        return None
    return max(0.0, 2.0 * d / px_per_mm)


def _eye(pupil: Optional[Point], midline_x: float, px_per_mm: float,
         box: Optional[Box], outline: Optional[np.ndarray]) -> EyeMeasurements:
    if pupil is None:
        return EyeMeasurements()
    return EyeMeasurements(
        dnp_mm=dnp_mm(pupil, midline_x, px_per_mm),
        fitting_height_mm=fitting_height_mm(pupil, box, px_per_mm) if box is not None else None,
        useful_diameter_mm=useful_diameter_mm(pupil, px_per_mm, outline, box),
    )


def compute_face_measurements(
    midline_x: float,
    px_per_mm: float,
    right_pupil: Optional[Point] = None,
    left_pupil: Optional[Point] = None,
    right_box: Optional[Box] = None,
    left_box: Optional[Box] = None,
    right_outline: Optional[np.ndarray] = None,
    left_outline: Optional[np.ndarray] = None,
) -> FaceMeasurements:
    """
    Per-eye DNP, fitting height and useful diameter plus the bridge.

    Args:
        midline_x: Facial midline
        px_per_mm: Face scale (from the arc-fit)
        right_pupil, left_pupil: Pupil centers; None when not detected
        right_box, left_box: Fitted box (x_min, y_min, x_max, y_max)
        right_outline, left_outline: Fitted outline points

    Returns:
        FaceMeasurements; mode is "binocular", "right_only" or "left_only"
    """
    _check_scale(px_per_mm)
    if right_pupil is None and left_pupil is None:
        raise ValueError("At least one pupil is required for face measurements")

    if right_pupil is not None and left_pupil is not None:
        mode = "binocular"
    elif right_pupil is not None:
        mode = "right_only"
    else:
        mode = "left_only"

    right = _eye(right_pupil, midline_x, px_per_mm, right_box, right_outline)
    left = _eye(left_pupil, midline_x, px_per_mm, left_box, left_outline)

    total = None
    if right.dnp_mm is not None and left.dnp_mm is not None:
        total = right.dnp_mm + left.dnp_mm

    bridge = None
    if right_box is not None and left_box is not None:
        bridge = bridge_mm(right_box, left_box, px_per_mm)

    logger.debug(f"Measurements[{mode}]: dnp=({right.dnp_mm}, {left.dnp_mm}) bridge={bridge} "
                 f"px/mm={px_per_mm:.3f}")
    return FaceMeasurements(mode, float(px_per_mm), right, left, total, bridge)
