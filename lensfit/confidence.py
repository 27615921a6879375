"""
Confidence scoring utilities.

This module handles:
- Lens trace confidence (ring, coverage, method, sharpness)
- Per-eye fit confidence (rim, residual, support, scale, refinement)
- Confidence level classification

All thresholds and weights are imported from confidence_constants.py.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np

from lensfit.confidence_constants import (
    # Trace confidence constants
    RING_MAX_RADIUS_DEVIATION,
    SHARPNESS_GOOD,
    TRACE_WEIGHT_RING,
    TRACE_WEIGHT_COVERAGE,
    TRACE_WEIGHT_METHOD,
    TRACE_WEIGHT_SHARPNESS,
    # Fit confidence constants
    FIT_PAIRS_GOOD,
    FIT_RMS_ZERO_PX,
    FIT_SCALE_ZERO_REL,
    FIT_WEIGHT_RIM,
    FIT_WEIGHT_RMS,
    FIT_WEIGHT_PAIRS,
    FIT_WEIGHT_SCALE,
    FIT_WEIGHT_REFINE,
    MIRRORED_RIM_FACTOR,
    # Levels
    CONFIDENCE_LEVEL_HIGH_THRESHOLD,
    CONFIDENCE_LEVEL_MEDIUM_THRESHOLD,
)
from lensfit.types import FitResult, RefinementResult, RimEstimate, RingDetection, TraceResult

logger = logging.getLogger(__name__)


def _clip01(v: float) -> float:
    return float(np.clip(v, 0, 1))


def confidence_level(overall: float) -> str:
    if overall > CONFIDENCE_LEVEL_HIGH_THRESHOLD:
        return "high"
    if overall >= CONFIDENCE_LEVEL_MEDIUM_THRESHOLD:
        return "medium"
    return "low"


def compute_ring_confidence(ring: RingDetection) -> float:
    """Agreement of the detected ring radius with the radius implied by the scale."""
    if ring.expected_radius_px <= 0:
        return 0.0
    deviation = abs(ring.radius_px - ring.expected_radius_px) / ring.expected_radius_px
    return _clip01(1.0 - deviation / RING_MAX_RADIUS_DEVIATION)


def compute_trace_confidence(trace: TraceResult) -> Dict[str, Any]:
    """
    Combine ring, coverage, method and sharpness scores for a lens trace.

    Args:
        trace: Output from trace_lens()

    Returns:
        Dictionary containing:
        - ring, coverage, method, sharpness: Component scores [0, 1]
        - overall: Weighted overall confidence [0, 1]
        - level: "high", "medium", or "low"
    """
    ring = compute_ring_confidence(trace.ring)
    coverage = _clip01(trace.coverage)
    method = _clip01(trace.confidence)
    sharpness = _clip01(trace.sharpness / SHARPNESS_GOOD)

    overall = _clip01(
        TRACE_WEIGHT_RING * ring +
        TRACE_WEIGHT_COVERAGE * coverage +
        TRACE_WEIGHT_METHOD * method +
        TRACE_WEIGHT_SHARPNESS * sharpness
    )
    return {
        "ring": ring,
        "coverage": coverage,
        "method": method,
        "sharpness": sharpness,
        "overall": overall,
        "level": confidence_level(overall),
    }


def compute_fit_confidence(
    fit: Optional[FitResult],
    rim: Optional[RimEstimate] = None,
    refinement: Optional[RefinementResult] = None,
    observed_px_per_mm: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Combine the stages of one eye fit into a confidence.

    A missing fit scores 0 overall. A missing rim or refinement scores 0 for
    that component only; a missing observed scale is not applicable and
    scores 1.

    Args:
        fit: Arc-fit result
        rim: Rim estimate used to seed the fit
        refinement: Sampling refinement of the placed contour
        observed_px_per_mm: Independent scale the fit was checked against

    Returns:
        Dictionary with component scores, overall and level
    """
    if fit is None:
        return {"rim": 0.0, "rms": 0.0, "pairs": 0.0, "scale": 0.0, "refine": 0.0,
                "overall": 0.0, "level": "low"}

    rim_score = 0.0
    if rim is not None:
        rim_score = _clip01(rim.confidence * (MIRRORED_RIM_FACTOR if rim.mirrored else 1.0))

    rms_score = _clip01(1.0 - fit.rms_px / FIT_RMS_ZERO_PX)
    pairs_score = _clip01(fit.used_pairs / float(FIT_PAIRS_GOOD))

    if observed_px_per_mm:
        rel = abs(fit.px_per_mm - observed_px_per_mm) / observed_px_per_mm
        scale_score = _clip01(1.0 - rel / FIT_SCALE_ZERO_REL)
    else:
        scale_score = 1.0

    refine_score = _clip01(refinement.best.score) if refinement is not None else 0.0

    overall = _clip01(
        FIT_WEIGHT_RIM * rim_score +
        FIT_WEIGHT_RMS * rms_score +
        FIT_WEIGHT_PAIRS * pairs_score +
        FIT_WEIGHT_SCALE * scale_score +
        FIT_WEIGHT_REFINE * refine_score
    )
    logger.debug(f"Fit confidence: rim={rim_score:.2f} rms={rms_score:.2f} pairs={pairs_score:.2f} "
                 f"scale={scale_score:.2f} refine={refine_score:.2f} -> {overall:.2f}")
    return {
        "rim": rim_score,
        "rms": rms_score,
        "pairs": pairs_score,
        "scale": scale_score,
        "refine": refine_score,
        "overall": overall,
        "level": confidence_level(overall),
    }
