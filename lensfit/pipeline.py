"""
End-to-end orchestration of the lens engine.

This module handles:
- Lens photo -> traced contour -> regularized FIL text and box metrics
- Face photo + landmarks + reference contour -> per-eye rim, arc-fit and
  refinement, with a fellow-eye mirror fallback
- Derived face measurements and plain-dict reports for JSON output

Landmark detection is external; landmarks arrive as a FaceLandmarks value
(usually parsed from a JSON file by the CLI).
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from lensfit.arc_fitter import ArcFitParams, place_reference
from lensfit.arc_seed import arc_seed, clamp_scale
from lensfit.calibration import RadiusCalibration
from lensfit.confidence import compute_fit_confidence, compute_trace_confidence
from lensfit.contour import box_metrics, reference_points, trace_to_reference
from lensfit.edge_map import EdgeMapParams, brow_kill_row, build_edge_map
from lensfit.fil_format import FilRecord, format_fil
from lensfit.measurements import compute_face_measurements
from lensfit.radial_tracer import TracerParams, trace_lens
from lensfit.radius_regularizer import RegularizerParams, regularize_radii
from lensfit.rim_detector import RimDetectorParams, detect_rim, mirror_rim_estimate
from lensfit.sampling_refiner import RefinerParams, ScoringStrategy, refine_placement
from lensfit.types import EdgeMap, FailureKind, Outcome, RegionOfInterest, RimEstimate

logger = logging.getLogger(__name__)

# Hard border exclusion of the face edge map
FACE_BORDER_PX = 4

# Rim-derived scales of both eyes are averaged when they agree this well
SCALE_AGREEMENT_REL = 0.18

# Inner box never shrinks below this, mm
MIN_INNER_BOX_MM = 10.0

# Bottom anchor below the seed when no ok rim exists, fraction of inner VBOX
BOTTOM_ANCHOR_VBOX_FRAC = 0.40

# Arc-fit skips only the straight-down ray on faces
FACE_EXCLUDE_DEG_FROM = 89.0
FACE_EXCLUDE_DEG_TO = 91.0

EYES = ("right", "left")


# =============================================================================
# Inputs
# =============================================================================

Point = Tuple[float, float]


@dataclass(frozen=True)
class EyeLandmarks:
    """Landmarks of one eye, source image coordinates."""
    roi: RegionOfInterest
    pupil: Optional[Point] = None
    brow_bottom_y: Optional[float] = None


@dataclass(frozen=True)
class FaceLandmarks:
    """
    Landmarks of a face photo.

    right/left are the subject's eyes: the right eye takes the reference
    contour as stored, the left eye its mirror.
    """
    midline_x: float
    right: EyeLandmarks
    left: EyeLandmarks
    px_per_mm_guess: Optional[float] = None
    bridge_row_y: Optional[float] = None

    def eye(self, name: str) -> EyeLandmarks:
        return self.right if name == "right" else self.left

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FaceLandmarks":
        """
        Build from the landmark JSON layout.

        Expected keys: midline_x, right/left each with roi {x, y, width,
        height} and optional pupil [x, y] and brow_bottom_y; optional
        px_per_mm_guess and bridge_row_y.
        """
        if "midline_x" not in data:
            raise ValueError("Landmarks need a midline_x")

        def eye(name: str) -> EyeLandmarks:
            if name not in data or "roi" not in data[name]:
                raise ValueError(f"Landmarks need a {name} eye ROI")
            e = data[name]
            r = e["roi"]
            pupil = e.get("pupil")
            return EyeLandmarks(
                roi=RegionOfInterest(int(r["x"]), int(r["y"]), int(r["width"]), int(r["height"])),
                pupil=(float(pupil[0]), float(pupil[1])) if pupil is not None else None,
                brow_bottom_y=float(e["brow_bottom_y"]) if e.get("brow_bottom_y") is not None else None,
            )

        return cls(
            midline_x=float(data["midline_x"]),
            right=eye("right"),
            left=eye("left"),
            px_per_mm_guess=data.get("px_per_mm_guess"),
            bridge_row_y=data.get("bridge_row_y"),
        )


# =============================================================================
# Lens Trace
# =============================================================================

def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5).astype(np.int64)


def trace_lens_photo(
    image: np.ndarray,
    px_per_mm: float,
    calibration: Optional[RadiusCalibration] = None,
    job_id: str = "LENS",
    tracer_params: TracerParams = TracerParams(),
    regularizer_params: RegularizerParams = RegularizerParams(),
    debug_dir: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Trace a lens on its calibration ring and produce FIL content.

    Args:
        image: Photo of the lens inside the ring
        px_per_mm: Photo scale
        calibration: Optional per-angle bias table
        job_id: Job written into the FIL
        tracer_params: Tracer parameters
        regularizer_params: Regularizer parameters
        debug_dir: Directory to save debug images

    Returns:
        Dictionary containing:
        - fil_text: FIL content, or None on failure
        - radii_hundredths: Regularized series (list of int)
        - metrics: hbox_mm, vbox_mm, fed_mm, circ_mm
        - method, coverage, ring: Trace diagnostics
        - confidence: Trace confidence breakdown
        - fail_reason: None on success
    """
    trace = trace_lens(image, px_per_mm, tracer_params, debug_dir=debug_dir)
    if trace is None:
        outcome = Outcome.fail(FailureKind.NOT_FOUND, "calibration ring or lens outline not found")
        return {
            "fil_text": None,
            "radii_hundredths": None,
            "metrics": None,
            "method": None,
            "coverage": None,
            "ring": None,
            "confidence": None,
            "fallback_reason": None,
            "fail_reason": outcome.fail_reason,
        }

    reference = trace_to_reference(trace.contour_mm)
    raw = _round_half_up(reference.radii * 100.0)
    radii = regularize_radii(raw, calibration, regularizer_params)
    metrics = box_metrics(radii / 100.0)
    confidence = compute_trace_confidence(trace)

    logger.debug(
        f"Lens trace: method={trace.method} coverage={trace.coverage:.2f} "
        f"hbox={metrics['hbox_mm']:.2f} vbox={metrics['vbox_mm']:.2f} fed={metrics['fed_mm']:.2f}"
    )

    if debug_dir:
        from lensfit.debug_observer import save_radius_profile
        save_radius_profile(radii / 100.0, debug_dir, reference_mm=raw / 100.0)

    ring = trace.ring
    return {
        "fil_text": format_fil(radii, job_id),
        "radii_hundredths": [int(v) for v in radii],
        "metrics": {k: round(v, 2) for k, v in metrics.items()},
        "method": trace.method,
        "coverage": round(trace.coverage, 3),
        "ring": {
            "center": [round(ring.center_x, 1), round(ring.center_y, 1)],
            "radius_px": round(ring.radius_px, 1),
            "expected_radius_px": round(ring.expected_radius_px, 1),
        },
        "confidence": confidence,
        "fallback_reason": (
            Outcome.fail(FailureKind.COVERAGE_TOO_LOW, f"coverage {trace.coverage:.2f}").fail_reason
            if trace.method != "radial" else None
        ),
        "fail_reason": None,
    }


# =============================================================================
# Face Fit
# =============================================================================

def inner_box_mm(hbox_mm: float, vbox_mm: float, margin_mm: float) -> Tuple[float, float]:
    """Reference box shrunk by the rim margin on every side."""
    return (max(hbox_mm - 2.0 * margin_mm, MIN_INNER_BOX_MM),
            max(vbox_mm - 2.0 * margin_mm, MIN_INNER_BOX_MM))


def build_face_edge_map(image: np.ndarray, landmarks: FaceLandmarks,
                        params: EdgeMapParams = EdgeMapParams(),
                        debug_dir: Optional[str] = None) -> EdgeMap:
    """Full-frame edge map with the brow kill line and a hard border."""
    h = image.shape[0]
    brows = [e.brow_bottom_y for e in (landmarks.right, landmarks.left) if e.brow_bottom_y is not None]
    kill = brow_kill_row(min(brows), h) if brows else 0
    return build_edge_map(image, params, border_px=FACE_BORDER_PX, top_kill_y=kill, debug_dir=debug_dir)


def official_px_per_mm(
    right: Optional[RimEstimate],
    left: Optional[RimEstimate],
    hbox_inner_mm: float,
    guess: Optional[float],
) -> Tuple[float, str]:
    """
    Face scale from the rim inner widths.

    Both eyes are averaged when they agree within SCALE_AGREEMENT_REL;
    otherwise the one closer to the guess wins. Without an ok rim the guess
    is used.

    Returns:
        Tuple of (px_per_mm, source)
    """
    def from_rim(rim: Optional[RimEstimate]) -> Optional[float]:
        if rim is None or not rim.ok or rim.inner_width_px <= 1:
            return None
        return rim.inner_width_px / hbox_inner_mm

    od, oi = from_rim(right), from_rim(left)
    g = clamp_scale(guess)

    if od is not None and oi is not None:
        avg = 0.5 * (od + oi)
        if abs(od - oi) / avg <= SCALE_AGREEMENT_REL:
            return clamp_scale(avg), "rim_both"
        pick = od if abs(od - g) <= abs(oi - g) else oi
        logger.warning(f"Rim scales disagree od={od:.3f} oi={oi:.3f}, picked {pick:.3f} (guess={g:.3f})")
        return clamp_scale(pick), "rim_closest"
    if od is not None:
        return clamp_scale(od), "rim_right"
    if oi is not None:
        return clamp_scale(oi), "rim_left"
    logger.warning(f"No ok rim estimate, using scale guess {g:.3f}")
    return g, "guess"


def _clamp(v, lo, hi):
    return max(lo, min(hi, v))


def fit_eye(
    image: np.ndarray,
    eye: EyeLandmarks,
    reference_mm: np.ndarray,
    midline_x: float,
    px_per_mm: float,
    hbox_mm: float,
    vbox_mm: float,
    edge_map: Optional[EdgeMap] = None,
    rim: Optional[RimEstimate] = None,
    bridge_row_y: Optional[float] = None,
    arc_params: ArcFitParams = ArcFitParams(),
    rim_params: RimDetectorParams = RimDetectorParams(),
    refiner_params: Optional[RefinerParams] = RefinerParams(),
    debug_dir: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Rim detection, arc-fit and refinement for one eye.

    Args:
        image: Face photo
        eye: Landmarks of this eye
        reference_mm: (K, 2) reference outline for this eye, Y-up mm
        midline_x: Facial midline, source coordinates
        px_per_mm: Face scale (observed scale for the arc-fit check)
        hbox_mm, vbox_mm: Reference box
        edge_map: Full-frame or ROI edge map; built from the image when None
        rim: Precomputed rim estimate; detected when None
        bridge_row_y: Vertical reference row
        arc_params: Arc-fit parameters
        rim_params: Rim detector parameters
        refiner_params: Refinement parameters; None skips refinement
        debug_dir: Directory to save debug images

    Returns:
        Dictionary containing:
        - roi: ROI the fit ran in
        - rim: RimEstimate or None
        - seed: ArcSeed
        - outcome: Outcome of the arc-fit
        - fit: FitResult or None
        - refinement: RefinementResult or None
        - outline: (K, 2) final outline, source coordinates, or None
        - box: (x_min, y_min, x_max, y_max) of the outline, or None
        - confidence: Fit confidence breakdown
    """
    if edge_map is None:
        edge_map = build_edge_map(image, border_px=FACE_BORDER_PX,
                                  top_kill_y=brow_kill_row(eye.brow_bottom_y, image.shape[0]))

    hbox_inner, vbox_inner = inner_box_mm(hbox_mm, vbox_mm, arc_params.inner_margin_mm)

    if rim is None:
        detected = detect_rim(edge_map, midline_x, hbox_inner, roi=eye.roi, vbox_mm=vbox_inner,
                              brow_bottom_y=eye.brow_bottom_y, px_per_mm_guess=px_per_mm,
                              bridge_row_y=bridge_row_y, pupil=eye.pupil, params=rim_params,
                              debug_dir=debug_dir)
        if detected is not None:
            rim, roi_edges = detected
        else:
            roi_edges = edge_map.crop(eye.roi) if edge_map.roi is None else edge_map
    else:
        roi_edges = edge_map.crop(rim.roi) if edge_map.roi is None else edge_map

    roi = roi_edges.roi
    seed = arc_seed(roi, hbox_inner, vbox_inner, px_per_mm, midline_x, rim, bridge_row_y)

    if rim is not None and rim.ok:
        anchor = float(rim.bottom_y)
    else:
        anchor = seed.origin[1] + BOTTOM_ANCHOR_VBOX_FRAC * vbox_inner * px_per_mm
    anchor = _clamp(anchor, 0.0, roi.height - 1.0)
    mid_local = _clamp(midline_x - roi.x, 0.0, roi.width - 1.0)

    outcome = place_reference(
        reference_mm, roi_edges, seed.origin, mid_local, seed.px_per_mm,
        hbox_mm=hbox_mm, vbox_mm=vbox_mm, observed_px_per_mm=px_per_mm,
        bottom_anchor_y=anchor, params=arc_params, debug_dir=debug_dir,
    )
    fit = outcome.value

    refinement = None
    outline = None
    if fit is not None:
        outline = fit.points_global()
        if refiner_params is not None:
            cutoff = eye.pupil[1] if eye.pupil is not None else bridge_row_y
            refinement = refine_placement(image, roi, outline, cutoff, refiner_params)
            outline = np.array(refinement.best.points)
            if debug_dir:
                from lensfit.debug_observer import DebugObserver, draw_refinement_overlay
                DebugObserver(debug_dir).draw_and_save("06_refinement", image, draw_refinement_overlay, refinement)
    else:
        logger.warning(f"Arc-fit failed: {outcome.fail_reason}")

    box = None
    if outline is not None:
        box = (float(outline[:, 0].min()), float(outline[:, 1].min()),
               float(outline[:, 0].max()), float(outline[:, 1].max()))

    return {
        "roi": roi,
        "rim": rim,
        "seed": seed,
        "outcome": outcome,
        "fit": fit,
        "refinement": refinement,
        "outline": outline,
        "box": box,
        "confidence": compute_fit_confidence(fit, rim, refinement, px_per_mm),
    }


def _rounded(values, ndigits: int = 2) -> List[float]:
    return [round(float(v), ndigits) for v in values]


def eye_report(result: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-friendly view of a fit_eye result."""
    rim: Optional[RimEstimate] = result["rim"]
    fit = result["fit"]
    refinement = result["refinement"]
    seed = result["seed"]

    rim_out = None
    if rim is not None:
        g = rim.to_global()
        rim_out = {
            "ok": bool(rim.ok),
            "confidence": round(rim.confidence, 3),
            "mirrored": bool(rim.mirrored),
            "inner_left_x": int(g["inner_left_x"]),
            "inner_right_x": int(g["inner_right_x"]),
            "top_y": int(g["top_y"]),
            "bottom_y": int(g["bottom_y"]),
            "inner_width_px": int(rim.inner_width_px),
            "height_px": int(rim.height_px),
            "tilt_deg": round(rim.tilt_deg, 2),
        }

    fit_out = None
    if fit is not None:
        ox, oy = fit.roi.to_global(*fit.origin) if fit.roi is not None else fit.origin
        fit_out = {
            "px_per_mm": round(fit.px_per_mm, 4),
            "rotation_deg": round(fit.rotation_deg, 2),
            "origin": [round(ox, 2), round(oy, 2)],
            "rms_px": round(fit.rms_px, 3),
            "used_pairs": fit.used_pairs,
            "iterations": fit.iterations,
        }

    refine_out = None
    if refinement is not None:
        refine_out = {
            "dx": refinement.best.dx,
            "dy": refinement.best.dy,
            "scale": refinement.best.scale,
            "score": round(refinement.best.score, 4),
            "identity_score": round(refinement.identity.score, 4),
            "improved": refinement.improved,
        }

    seed_origin = result["roi"].to_global(*seed.origin)
    return {
        "rim": rim_out,
        "seed": {
            "origin_local": _rounded(seed.origin),
            "origin": _rounded(seed_origin),
            "px_per_mm": round(seed.px_per_mm, 4),
            "source": seed.source,
        },
        "fit": fit_out,
        "refinement": refine_out,
        "box": _rounded(result["box"]) if result["box"] is not None else None,
        "confidence": result["confidence"],
        "fail_reason": result["outcome"].fail_reason,
    }


def fit_face(
    image: np.ndarray,
    landmarks: FaceLandmarks,
    reference: FilRecord,
    iterations: int = 2,
    refine: bool = True,
    scoring: ScoringStrategy = ScoringStrategy.TEMPLATE,
    debug_dir: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Fit the reference contour onto both eyes of a face photo.

    Args:
        image: Face photo
        landmarks: Midline, eye ROIs, pupils and brows
        reference: Parsed FIL of the frame, right-eye shape
        iterations: Arc-fit iterations
        refine: Run the sampling refinement
        scoring: Refinement scoring strategy
        debug_dir: Directory to save debug images

    Returns:
        Dictionary containing:
        - px_per_mm, scale_source: Official face scale and where it came from
        - right, left: eye_report of each eye
        - measurements: FaceMeasurements.as_dict(), or None without pupils
        - fail_reason: None when at least one eye fitted
    """
    h, w = image.shape[:2]
    landmarks = replace(
        landmarks,
        right=replace(landmarks.right, roi=landmarks.right.roi.clip_to(w, h)),
        left=replace(landmarks.left, roi=landmarks.left.roi.clip_to(w, h)),
    )

    metrics = box_metrics(reference.radii_mm)
    hbox_mm = reference.hbox_mm or metrics["hbox_mm"]
    vbox_mm = reference.vbox_mm or metrics["vbox_mm"]

    arc_params = replace(ArcFitParams(), exclude_deg_from=FACE_EXCLUDE_DEG_FROM,
                         exclude_deg_to=FACE_EXCLUDE_DEG_TO, iterations=iterations)
    refiner_params = replace(RefinerParams(), strategy=ScoringStrategy(scoring)) if refine else None
    hbox_inner, vbox_inner = inner_box_mm(hbox_mm, vbox_mm, arc_params.inner_margin_mm)

    edge_map = build_face_edge_map(image, landmarks, debug_dir=debug_dir)
    guess = landmarks.px_per_mm_guess

    rims: Dict[str, Optional[RimEstimate]] = {}
    roi_maps: Dict[str, EdgeMap] = {}
    for name in EYES:
        eye = landmarks.eye(name)
        detected = detect_rim(edge_map, landmarks.midline_x, hbox_inner, roi=eye.roi, vbox_mm=vbox_inner,
                              brow_bottom_y=eye.brow_bottom_y, px_per_mm_guess=guess,
                              bridge_row_y=landmarks.bridge_row_y, pupil=eye.pupil, debug_dir=debug_dir)
        rims[name] = detected[0] if detected is not None else None
        roi_maps[name] = detected[1] if detected is not None else edge_map.crop(eye.roi)

    for name, fellow in (("right", "left"), ("left", "right")):
        mine, other = rims[name], rims[fellow]
        if (mine is None or not mine.ok) and other is not None and other.ok:
            logger.warning(f"Rim of {name} eye missing, mirroring the {fellow} eye across the midline")
            rims[name] = mirror_rim_estimate(other, landmarks.midline_x, roi_maps[name].roi)

    px_per_mm, scale_source = official_px_per_mm(rims["right"], rims["left"], hbox_inner, guess)
    logger.debug(f"Face scale px/mm={px_per_mm:.3f} source={scale_source}")

    radii = np.asarray(reference.radii_mm, dtype=np.float64)
    shapes = {"right": reference_points(radii), "left": reference_points(radii, mirror=True)}

    results = {}
    for name in EYES:
        eye = landmarks.eye(name)
        results[name] = fit_eye(
            image, eye, shapes[name], landmarks.midline_x, px_per_mm, hbox_mm, vbox_mm,
            edge_map=roi_maps[name], rim=rims[name], bridge_row_y=landmarks.bridge_row_y,
            arc_params=arc_params, refiner_params=refiner_params, debug_dir=debug_dir,
        )

    fitted = [results[n]["fit"] for n in EYES if results[n]["fit"] is not None]
    face_scale = float(np.mean([f.px_per_mm for f in fitted])) if fitted else px_per_mm

    measurements = None
    right_eye, left_eye = landmarks.right, landmarks.left
    if right_eye.pupil is not None or left_eye.pupil is not None:
        measurements = compute_face_measurements(
            landmarks.midline_x, face_scale,
            right_pupil=right_eye.pupil, left_pupil=left_eye.pupil,
            right_box=results["right"]["box"], left_box=results["left"]["box"],
            right_outline=results["right"]["outline"], left_outline=results["left"]["outline"],
        ).as_dict()

    fail_reason = None
    if not fitted:
        reasons = [f"{n}: {results[n]['outcome'].fail_reason}" for n in EYES]
        fail_reason = "; ".join(reasons)

    return {
        "px_per_mm": round(face_scale, 4) if math.isfinite(face_scale) else None,
        "scale_source": scale_source,
        "official_px_per_mm": round(px_per_mm, 4),
        "right": eye_report(results["right"]),
        "left": eye_report(results["left"]),
        "measurements": measurements,
        "fail_reason": fail_reason,
    }
