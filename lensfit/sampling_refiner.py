"""
Sampling refinement of a placed contour against image intensities.

This module handles:
- The ContourScorer interface and its built-in strategies
- Template scoring: intensity difference straddling the contour normal
- Geometric scoring: distance to the first intensity step along the normal
- A small grid search over integer shifts and scale multipliers

Points are in the coordinates of the image being sampled. Only the lower part
of the contour is scored by default because the upper rim is the part most
often hidden by brows and lashes.
"""

import abc
import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from lensfit.refiner_constants import (
    # Template scoring
    SAMPLE_STEP_PX,
    NORMAL_SAMPLE_DIST_PX,
    THR_RESP,
    MIN_COVERAGE,
    RESP_REF,
    MIN_TEMPLATE_POINTS,
    # Candidate grid
    REFINE_DX_PX,
    REFINE_DY_PX,
    REFINE_SCALE_STEPS,
    # Geometric scoring
    GEOM_D_MAX_PX,
    GEOM_STEP_PX,
    GEOM_MIN_GRAD,
    GEOM_THR_FRAC,
    GEOM_MAX_HIT_DIST_PX,
    GEOM_RMS_REF_PX,
    GEOM_BOTTOM_KEEP_FRAC,
    GEOM_MIN_POINTS,
)
from lensfit.types import RefinementCandidate, RefinementResult, RegionOfInterest

logger = logging.getLogger(__name__)


class ScoringStrategy(enum.Enum):
    TEMPLATE = "template"
    GEOMETRIC = "geometric"


@dataclass(frozen=True)
class RefinerParams:
    sample_step_px: float = SAMPLE_STEP_PX
    normal_dist_px: float = NORMAL_SAMPLE_DIST_PX
    thr_resp: float = THR_RESP
    min_coverage: float = MIN_COVERAGE
    resp_ref: float = RESP_REF
    clamp_to_roi: bool = True
    use_bottom_only: bool = True
    dx_px: int = REFINE_DX_PX
    dy_px: int = REFINE_DY_PX
    scale_steps: Tuple[float, ...] = REFINE_SCALE_STEPS
    strategy: ScoringStrategy = ScoringStrategy.TEMPLATE


@dataclass(frozen=True)
class GeometricParams:
    d_max_px: float = GEOM_D_MAX_PX
    step_px: float = GEOM_STEP_PX
    min_grad: float = GEOM_MIN_GRAD
    thr_frac: float = GEOM_THR_FRAC
    max_hit_dist_px: float = GEOM_MAX_HIT_DIST_PX
    rms_ref_px: float = GEOM_RMS_REF_PX
    bottom_keep_frac: float = GEOM_BOTTOM_KEEP_FRAC


@dataclass(frozen=True)
class SampleScore:
    """
    Score of one contour placement.

    median is the median normal response for template scoring and the
    median hit distance (px) for geometric scoring.
    """
    score: float
    coverage: float
    median: float
    samples: int
    extra: dict = field(default_factory=dict)


_EMPTY = SampleScore(0.0, 0.0, 0.0, 0)


# =============================================================================
# Sampling Helpers
# =============================================================================

def to_luma(image: np.ndarray) -> np.ndarray:
    """Float32 luma (0.299 R + 0.587 G + 0.114 B) of a gray or BGR image."""
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim != 2:
        raise ValueError(f"Expected a 2-D or 3-channel image, got shape {image.shape}")
    return image.astype(np.float32)


def sample_bilinear(gray: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """Bilinear samples with coordinates clamped to the image."""
    h, w = gray.shape
    if w <= 1 or h <= 1:
        return np.zeros(np.shape(xs), dtype=np.float64)
    xf = np.clip(xs, 0.0, w - 1.0)
    yf = np.clip(ys, 0.0, h - 1.0)
    x0 = xf.astype(np.int64)
    y0 = yf.astype(np.int64)
    x1 = np.minimum(x0 + 1, w - 1)
    y1 = np.minimum(y0 + 1, h - 1)
    dx = xf - x0
    dy = yf - y0

    g = gray.astype(np.float64, copy=False)
    a0 = g[y0, x0] + (g[y0, x1] - g[y0, x0]) * dx
    a1 = g[y1, x0] + (g[y1, x1] - g[y1, x0]) * dx
    return a0 + (a1 - a0) * dy


def _inside(roi: Optional[RegionOfInterest], pts: np.ndarray) -> np.ndarray:
    if roi is None:
        return np.ones(len(pts), dtype=bool)
    return ((pts[:, 0] >= roi.x) & (pts[:, 0] < roi.right) &
            (pts[:, 1] >= roi.y) & (pts[:, 1] < roi.bottom))


def neighbour_normals(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Unit normals from the previous and next point (clamped at the ends).

    Returns:
        (K, 2) normals and a (K,) mask of points whose neighbours are not
        degenerate
    """
    n = len(pts)
    idx = np.arange(n)
    p0 = pts[np.maximum(idx - 1, 0)]
    p1 = pts[np.minimum(idx + 1, n - 1)]
    t = p1 - p0
    length = np.hypot(t[:, 0], t[:, 1])
    valid = length > 1e-3
    safe = np.where(valid, length, 1.0)
    return np.column_stack([-t[:, 1] / safe, t[:, 0] / safe]), valid


def transform_about_centroid(points: np.ndarray, center: Tuple[float, float],
                             scale: float, dx: float, dy: float) -> np.ndarray:
    c = np.asarray(center, dtype=np.float64)
    return c + (points - c) * scale + np.array([dx, dy], dtype=np.float64)


# =============================================================================
# Scorers
# =============================================================================

class ContourScorer(abc.ABC):
    """Scores how well a placed contour sits on an image edge."""

    @abc.abstractmethod
    def score(self, gray: np.ndarray, roi: Optional[RegionOfInterest], points: np.ndarray,
              cutoff_y: Optional[float] = None) -> SampleScore:
        """
        Args:
            gray: Float luma image
            roi: Samples outside this rectangle are skipped (None = whole image)
            points: (K, 2) placed contour, image coordinates
            cutoff_y: Horizontal reference row; only points below it are scored

        Returns:
            SampleScore, score in [0, 1]
        """


class TemplateScorer(ContourScorer):
    """Coverage of strong normal-cross responses times their normalized median."""

    def __init__(self, params: RefinerParams = RefinerParams()):
        self.params = params

    def prepare(self, roi: Optional[RegionOfInterest], points: np.ndarray,
                cutoff_y: Optional[float]) -> np.ndarray:
        if len(points) == 0:
            return points
        mid_y = (points[:, 1].min() + points[:, 1].max()) * 0.5
        y_cut = mid_y if cutoff_y is None else max(mid_y, cutoff_y)

        keep = np.ones(len(points), dtype=bool)
        if self.params.use_bottom_only:
            keep &= points[:, 1] >= y_cut
        if self.params.clamp_to_roi:
            keep &= _inside(roi, points)
        filtered = points[keep]
        return filtered if len(filtered) >= MIN_TEMPLATE_POINTS else points

    def responses(self, gray: np.ndarray, roi: Optional[RegionOfInterest], pts: np.ndarray) -> np.ndarray:
        """Normal-cross responses sampled every sample_step_px along the polyline."""
        p = self.params
        n = len(pts)
        a = pts[:-1]
        b = pts[1:]
        seg = np.hypot(b[:, 0] - a[:, 0], b[:, 1] - a[:, 1])
        usable = np.flatnonzero(seg > 1e-3)
        if usable.size == 0:
            return np.zeros(0)

        # Tangent of segment i is taken across its end point i + 1
        cur = usable + 1
        t = pts[np.minimum(cur + 1, n - 1)] - pts[np.maximum(cur - 1, 0)]
        norm = np.maximum(np.hypot(t[:, 0], t[:, 1]), 1e-6)
        normals = np.column_stack([-t[:, 1] / norm, t[:, 0] / norm])

        steps = np.maximum(1, np.floor(seg[usable] / p.sample_step_px + 0.5).astype(np.int64))
        counts = steps + 1
        owner = np.repeat(np.arange(usable.size), counts)
        starts = np.cumsum(counts) - counts
        k = np.arange(int(counts.sum())) - np.repeat(starts, counts)
        frac = k / steps[owner]

        seg_a = a[usable][owner]
        seg_b = b[usable][owner]
        samples = seg_a + (seg_b - seg_a) * frac[:, None]
        nrm = normals[owner]

        if p.clamp_to_roi:
            keep = _inside(roi, samples)
            samples = samples[keep]
            nrm = nrm[keep]

        d = p.normal_dist_px
        i1 = sample_bilinear(gray, samples[:, 0] - nrm[:, 0] * d, samples[:, 1] - nrm[:, 1] * d)
        i2 = sample_bilinear(gray, samples[:, 0] + nrm[:, 0] * d, samples[:, 1] + nrm[:, 1] * d)
        return np.abs(i2 - i1)

    def score(self, gray, roi, points, cutoff_y=None) -> SampleScore:
        p = self.params
        pts = self.prepare(roi, np.asarray(points, dtype=np.float64), cutoff_y)
        if len(pts) < MIN_TEMPLATE_POINTS:
            return _EMPTY

        resp = self.responses(gray, roi, pts)
        if resp.size == 0:
            return _EMPTY

        samples = int(resp.size)
        coverage = float(np.count_nonzero(resp >= p.thr_resp)) / samples
        median = float(np.percentile(resp, 50))
        extra = {
            "mean": float(resp.mean()),
            "p10": float(np.percentile(resp, 10)),
            "p90": float(np.percentile(resp, 90)),
        }
        if coverage < p.min_coverage * 0.5:
            return SampleScore(0.0, coverage, median, samples, extra)

        resp_norm = min(max(median / p.resp_ref, 0.0), 1.0)
        return SampleScore(min(max(coverage, 0.0), 1.0) * resp_norm, coverage, median, samples, extra)


class GeometricScorer(ContourScorer):
    """Coverage of nearby intensity steps, damped by their RMS distance."""

    def __init__(self, params: GeometricParams = GeometricParams()):
        self.params = params

    def prepare(self, roi: Optional[RegionOfInterest], points: np.ndarray,
                cutoff_y: Optional[float]) -> np.ndarray:
        """
        Lowest bottom_keep_frac of the points below the cutoff, in contour order.

        Contour order is kept so neighbours stay neighbours for the normals.
        """
        if len(points) == 0:
            return points
        if cutoff_y is None:
            cutoff_y = (points[:, 1].min() + points[:, 1].max()) * 0.5
        keep = (points[:, 1] >= cutoff_y) & _inside(roi, points)
        filtered = points[keep]
        if len(filtered) == 0:
            return filtered

        ys = np.sort(filtered[:, 1])
        start = min(max(int(len(ys) * (1.0 - self.params.bottom_keep_frac)), 0), len(ys) - 1)
        return filtered[filtered[:, 1] >= ys[start]]

    def _profiles(self, gray: np.ndarray, pts: np.ndarray, normals: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Absolute intensity steps along +normal and -normal, shape (K, 2, D - 1)."""
        p = self.params
        d = np.arange(0.0, p.d_max_px + 1e-9, p.step_px)
        sign = np.array([1.0, -1.0])
        off = sign[None, :, None] * d[None, None, :]
        xs = pts[:, 0, None, None] + normals[:, 0, None, None] * off
        ys = pts[:, 1, None, None] + normals[:, 1, None, None] * off
        vals = sample_bilinear(gray, xs, ys)
        return np.abs(np.diff(vals, axis=2)), d[1:]

    def score(self, gray, roi, points, cutoff_y=None) -> SampleScore:
        p = self.params
        pts = self.prepare(roi, np.asarray(points, dtype=np.float64), cutoff_y)
        if len(pts) < GEOM_MIN_POINTS:
            return _EMPTY

        normals, valid = neighbour_normals(pts)
        steps, dist = self._profiles(gray, pts, normals)

        max_grad = steps.max(axis=(1, 2))
        usable = valid & (max_grad > 0.0)
        samples = len(pts)
        if not np.any(usable):
            return SampleScore(0.0, 0.0, float("nan"), samples)

        graded = np.sort(max_grad[usable])
        med_grad = float(graded[len(graded) // 2])
        thr = max(p.min_grad, med_grad * p.thr_frac)

        above = steps >= thr
        first = np.where(above.any(axis=2), dist[np.argmax(above, axis=2)], np.inf)
        hit_d = first.min(axis=1)
        hit = usable & (hit_d <= p.max_hit_dist_px)
        hits = hit_d[hit]

        coverage = hits.size / float(samples)
        if hits.size == 0:
            return SampleScore(0.0, coverage, float("nan"), samples, {"thr_grad": thr})

        rms = float(np.sqrt(np.mean(hits ** 2)))
        ordered = np.sort(hits)
        median = float(ordered[hits.size // 2])
        p90 = float(ordered[min(max(int(hits.size * 0.90), 0), hits.size - 1)])
        score = coverage * min(max(1.0 - rms / p.rms_ref_px, 0.0), 1.0)
        return SampleScore(score, coverage, median, samples,
                           {"thr_grad": thr, "rms_px": rms, "p90_px": p90})


def resolve_scorer(strategy: Union[ScoringStrategy, str] = ScoringStrategy.TEMPLATE,
                   params: RefinerParams = RefinerParams(),
                   geometric: GeometricParams = GeometricParams()) -> ContourScorer:
    """Build the scorer for a strategy name or enum member."""
    strategy = ScoringStrategy(strategy)
    if strategy == ScoringStrategy.GEOMETRIC:
        return GeometricScorer(geometric)
    return TemplateScorer(params)


# =============================================================================
# Refinement
# =============================================================================

def refine_placement(
    image: np.ndarray,
    roi: Optional[RegionOfInterest],
    points: np.ndarray,
    cutoff_y: Optional[float] = None,
    params: RefinerParams = RefinerParams(),
    scorer: Optional[ContourScorer] = None,
) -> RefinementResult:
    """
    Grid search of small shifts and scales around a placed contour.

    The identity candidate wins ties, so the result never scores below the
    input placement.

    Args:
        image: Gray or BGR image the points live in
        roi: Eye ROI in image coordinates
        points: (K, 2) placed contour, image coordinates
        cutoff_y: Horizontal reference row (e.g. pupil row)
        params: Grid and template parameters
        scorer: Scoring strategy; resolved from params.strategy when None

    Returns:
        RefinementResult with the best, the identity and every candidate
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2 or len(pts) == 0:
        raise ValueError(f"points must be a non-empty (K, 2) array, got {pts.shape}")

    gray = to_luma(image)
    if scorer is None:
        scorer = resolve_scorer(params.strategy, params)

    center = (float(pts[:, 0].mean()), float(pts[:, 1].mean()))
    candidates: List[RefinementCandidate] = []
    identity = None

    for s in params.scale_steps:
        for dy in range(-params.dy_px, params.dy_px + 1):
            for dx in range(-params.dx_px, params.dx_px + 1):
                moved = transform_about_centroid(pts, center, s, dx, dy)
                res = scorer.score(gray, roi, moved, cutoff_y)
                cand = RefinementCandidate(dx=dx, dy=dy, scale=float(s), score=float(res.score),
                                           coverage=float(res.coverage), median_response=float(res.median),
                                           samples=res.samples, points=moved)
                candidates.append(cand)
                if cand.is_identity:
                    identity = cand

    if identity is None:
        res = scorer.score(gray, roi, pts, cutoff_y)
        identity = RefinementCandidate(dx=0, dy=0, scale=1.0, score=float(res.score),
                                       coverage=float(res.coverage), median_response=float(res.median),
                                       samples=res.samples, points=pts)

    best = identity
    for cand in candidates:
        if cand.score > best.score:
            best = cand

    logger.debug(f"Refine[{type(scorer).__name__}]: identity={identity.score:.3f} "
                 f"best={best.score:.3f} at dx={best.dx} dy={best.dy} s={best.scale:.3f}")
    return RefinementResult(best=best, identity=identity, candidates=tuple(candidates))
