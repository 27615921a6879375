"""
Seed origin and scale for arc-fit.

The seed is ROI-local. Without a usable rim estimate it is planted where
the reference box is expected from the midline, HBOX/VBOX and the scale
guess; it never depends on the pupil.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from lensfit.types import RegionOfInterest, RimEstimate

logger = logging.getLogger(__name__)

DEFAULT_PX_PER_MM = 5.0
PX_PER_MM_MIN = 2.5
PX_PER_MM_MAX = 20.0
MIN_EXPECTED_PX = 60.0


@dataclass(frozen=True)
class ArcSeed:
    origin: Tuple[float, float]
    px_per_mm: float
    source: str


def _clamp(v, lo, hi):
    return max(lo, min(hi, v))


def clamp_scale(px_per_mm: Optional[float]) -> float:
    """Clamp a scale guess to [2.5, 20]; invalid guesses become 5."""
    if px_per_mm is None or not math.isfinite(px_per_mm) or px_per_mm <= 1e-6:
        return DEFAULT_PX_PER_MM
    return _clamp(float(px_per_mm), PX_PER_MM_MIN, PX_PER_MM_MAX)


def seed_from_geometry(
    roi: RegionOfInterest,
    hbox_mm: float,
    vbox_mm: float,
    px_per_mm_guess: Optional[float],
    midline_x: float,
    bridge_row_y: Optional[float] = None,
) -> ArcSeed:
    """
    Expected rim center from the midline and the reference box size.

    Args:
        roi: Eye ROI, source coordinates
        hbox_mm, vbox_mm: Reference box size
        px_per_mm_guess: Face scale guess
        midline_x: Facial midline, source coordinates
        bridge_row_y: Vertical reference row; ROI at 52% height when None

    Returns:
        ArcSeed with an ROI-local origin
    """
    px = clamp_scale(px_per_mm_guess)
    exp_w = max(hbox_mm * px, MIN_EXPECTED_PX)
    exp_h = max(vbox_mm * px, MIN_EXPECTED_PX)

    roi_cx = roi.x + roi.width * 0.5
    side = 1.0 if roi_cx >= midline_x else -1.0

    gap = max(18.0, 0.10 * exp_w)
    gx = midline_x + side * (gap + 0.5 * exp_w)
    y_ref = bridge_row_y if bridge_row_y is not None else roi.y + 0.52 * roi.height
    gy = y_ref + 0.10 * exp_h

    lx = _clamp(gx - roi.x, 0.0, roi.width - 1.0)
    ly = _clamp(gy - roi.y, 0.0, roi.height - 1.0)
    logger.debug(f"SEED[expected] origin_local=({lx:.1f},{ly:.1f}) px/mm={px:.2f}")
    return ArcSeed((lx, ly), px, "expected")


def seed_from_rim(estimate: RimEstimate, hbox_mm: float) -> ArcSeed:
    """Rim box center and the scale implied by its inner width."""
    cx, cy = estimate.center
    px = clamp_scale(estimate.inner_width_px / hbox_mm if hbox_mm > 0 else None)
    return ArcSeed((float(cx), float(cy)), px, "rim_mirrored" if estimate.mirrored else "rim")


def arc_seed(
    roi: RegionOfInterest,
    hbox_mm: float,
    vbox_mm: float,
    px_per_mm_guess: Optional[float],
    midline_x: float,
    rim: Optional[RimEstimate] = None,
    bridge_row_y: Optional[float] = None,
) -> ArcSeed:
    """Prefer an ok or mirrored rim estimate; otherwise fall back to the expected geometry."""
    if rim is not None and (rim.ok or rim.mirrored):
        return seed_from_rim(rim, hbox_mm)
    return seed_from_geometry(roi, hbox_mm, vbox_mm, px_per_mm_guess, midline_x, bridge_row_y)
