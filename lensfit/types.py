"""
Immutable value types shared by every stage of the lens contour pipeline.

This module handles:
- Regions of interest with explicit local/global coordinate translation
- Edge maps and their threshold statistics
- Polar contours tagged with unit and angular convention
- Rim estimates, arc-fit results and refinement candidates
- The failure taxonomy and the Outcome wrapper used by the pipeline

Arrays held by these types are copied and marked read-only on construction,
so a stage can never mutate another stage's buffers.
"""

import enum
import math
from dataclasses import dataclass
from typing import Generic, Optional, Tuple, TypeVar

import numpy as np


T = TypeVar("T")


def _frozen_array(values, dtype) -> np.ndarray:
    """Copy values into a new read-only array."""
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


# =============================================================================
# Failure taxonomy
# =============================================================================

class FailureKind(enum.Enum):
    """Why a stage declined to produce a result."""
    INSUFFICIENT_SIGNAL = "insufficient_signal"
    GEOMETRY_OUT_OF_TOLERANCE = "geometry_out_of_tolerance"
    COVERAGE_TOO_LOW = "coverage_too_low"
    OUT_OF_BOUNDS = "out_of_bounds"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Either a value or a failure kind with a human readable reason.

    Expected optical failures travel through Outcome; contract violations
    raise ValueError instead.
    """
    value: Optional[T] = None
    failure: Optional[FailureKind] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None and self.failure is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, failure: FailureKind, reason: str) -> "Outcome[T]":
        return cls(failure=failure, reason=reason)

    @property
    def fail_reason(self) -> Optional[str]:
        """Short machine-friendly reason for JSON output."""
        if self.failure is None:
            return None
        return f"{self.failure.value}: {self.reason}" if self.reason else self.failure.value


# =============================================================================
# Regions
# =============================================================================

@dataclass(frozen=True)
class RegionOfInterest:
    """
    Axis-aligned rectangle in the coordinate space of a named source image.

    x/y are the top-left corner in source coordinates. Local coordinates are
    relative to that corner.
    """
    x: int
    y: int
    width: int
    height: int
    source: str = "image"

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"ROI must have positive size, got {self.width}x{self.height}")

    @classmethod
    def from_bounds(cls, x_min: float, y_min: float, x_max: float, y_max: float,
                    source: str = "image") -> "RegionOfInterest":
        x0 = int(math.floor(x_min))
        y0 = int(math.floor(y_min))
        return cls(x0, y0, int(math.ceil(x_max)) - x0, int(math.ceil(y_max)) - y0, source)

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width * 0.5, self.y + self.height * 0.5)

    def contains(self, gx: float, gy: float) -> bool:
        """Whether a global point lies inside the ROI."""
        return self.x <= gx < self.right and self.y <= gy < self.bottom

    def to_local(self, gx: float, gy: float) -> Tuple[float, float]:
        return (gx - self.x, gy - self.y)

    def to_global(self, lx: float, ly: float) -> Tuple[float, float]:
        return (lx + self.x, ly + self.y)

    def clip_to(self, image_width: int, image_height: int) -> "RegionOfInterest":
        """Intersect with the bounds of its source image."""
        x0 = max(0, self.x)
        y0 = max(0, self.y)
        x1 = min(image_width, self.right)
        y1 = min(image_height, self.bottom)
        if x1 <= x0 or y1 <= y0:
            raise ValueError(f"ROI {self} does not overlap a {image_width}x{image_height} image")
        return RegionOfInterest(x0, y0, x1 - x0, y1 - y0, self.source)

    def crop(self, image: np.ndarray) -> np.ndarray:
        """Return a view of image restricted to this ROI."""
        return image[self.y:self.bottom, self.x:self.right]

    def as_dict(self):
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


# =============================================================================
# Edge maps
# =============================================================================

@dataclass(frozen=True)
class EdgeStats:
    """Threshold bookkeeping recorded by the edge map builder."""
    max_score: int = 0
    p95_score: int = 0
    thr_high: int = 0
    thr_low: int = 0
    nnz: int = 0
    density: float = 0.0
    band_px: float = 0.0
    samples: int = 0
    top_kill_y: int = 0


@dataclass(frozen=True, eq=False)
class EdgeMap:
    """
    Binary edge map (0 / 255), same indexing as its source image or ROI crop.

    When roi is set, pixel (0, 0) of edges corresponds to (roi.x, roi.y) in
    the source image.
    """
    edges: np.ndarray
    stats: EdgeStats = EdgeStats()
    roi: Optional[RegionOfInterest] = None

    def __post_init__(self):
        if self.edges.ndim != 2:
            raise ValueError(f"Edge map must be 2-D, got shape {self.edges.shape}")
        object.__setattr__(self, "edges", _frozen_array(self.edges, np.uint8))
        if self.roi is not None and (self.roi.width, self.roi.height) != (self.width, self.height):
            raise ValueError(
                f"ROI size {self.roi.width}x{self.roi.height} does not match "
                f"edge map {self.width}x{self.height}"
            )

    @property
    def width(self) -> int:
        return int(self.edges.shape[1])

    @property
    def height(self) -> int:
        return int(self.edges.shape[0])

    @property
    def nnz(self) -> int:
        return int(np.count_nonzero(self.edges))

    @property
    def density(self) -> float:
        return self.nnz / float(self.edges.size)

    @property
    def is_empty(self) -> bool:
        return self.nnz == 0

    def crop(self, roi: RegionOfInterest) -> "EdgeMap":
        """Cut an ROI out of a full-frame edge map without recomputing edges."""
        clipped = roi.clip_to(self.width, self.height)
        sub = clipped.crop(self.edges)
        nnz = int(np.count_nonzero(sub))
        stats = EdgeStats(
            max_score=self.stats.max_score,
            p95_score=self.stats.p95_score,
            thr_high=self.stats.thr_high,
            thr_low=self.stats.thr_low,
            nnz=nnz,
            density=nnz / float(sub.size),
            band_px=self.stats.band_px,
            samples=self.stats.samples,
            top_kill_y=max(0, self.stats.top_kill_y - clipped.y),
        )
        return EdgeMap(sub, stats, clipped)


# =============================================================================
# Polar contours
# =============================================================================

class RadiusUnit(enum.Enum):
    PIXELS = "px"
    MILLIMETERS = "mm"
    HUNDREDTHS = "hundredths_mm"


class AngularConvention(enum.Enum):
    """
    Angle-to-index mapping of a polar contour.

    IMAGE_TRACE: theta_i = -2*pi*i/N applied in image axes (Y down), index 0
        on the image +X axis. Produced by the radial tracer.
    REFERENCE_CCW: theta_i = 2*pi*i/N in Y-up axes, index 0 on +X and index
        N/4 on +Y. Used by FIL reference contours.
    """
    IMAGE_TRACE = "image_trace"
    REFERENCE_CCW = "reference_ccw"


@dataclass(frozen=True, eq=False)
class PolarContour:
    """N radius samples at a fixed angular step from a named origin."""
    radii: np.ndarray
    unit: RadiusUnit
    convention: AngularConvention
    origin: Tuple[float, float] = (0.0, 0.0)

    def __post_init__(self):
        radii = np.asarray(self.radii, dtype=np.float64)
        if radii.ndim != 1 or radii.size < 8:
            raise ValueError(f"Polar contour needs a 1-D series of >= 8 samples, got shape {radii.shape}")
        if not np.all(np.isfinite(radii)):
            raise ValueError("Polar contour radii must be finite")
        object.__setattr__(self, "radii", _frozen_array(radii, np.float64))

    @property
    def n(self) -> int:
        return int(self.radii.size)

    @property
    def angle_step(self) -> float:
        return 2.0 * math.pi / self.n

    def to_unit(self, unit: RadiusUnit, px_per_mm: Optional[float] = None) -> "PolarContour":
        """
        Convert radii to another unit.

        Args:
            unit: Target unit
            px_per_mm: Required whenever pixels are on either side of the conversion

        Returns:
            New PolarContour with the same convention and origin
        """
        if unit == self.unit:
            return self

        to_mm = {RadiusUnit.MILLIMETERS: 1.0, RadiusUnit.HUNDREDTHS: 0.01}
        if RadiusUnit.PIXELS in (unit, self.unit):
            if px_per_mm is None or px_per_mm <= 0:
                raise ValueError(f"px_per_mm must be positive to convert {self.unit.value} -> {unit.value}")
            to_mm[RadiusUnit.PIXELS] = 1.0 / px_per_mm

        radii_mm = self.radii * to_mm[self.unit]
        return PolarContour(radii_mm / to_mm[unit], unit, self.convention, self.origin)

    def to_hundredths(self, px_per_mm: Optional[float] = None) -> np.ndarray:
        """Integer hundredths-of-mm series, as stored in FIL files."""
        converted = self.to_unit(RadiusUnit.HUNDREDTHS, px_per_mm)
        return np.rint(converted.radii).astype(np.int64)


# =============================================================================
# Rim estimates and fits
# =============================================================================

@dataclass(frozen=True)
class RimEstimate:
    """
    Coarse inner rim box, ROI-local.

    ok=False still carries geometry and confidence so callers can seed from it.
    """
    ok: bool
    confidence: float
    roi: RegionOfInterest
    probe_y: int
    top_y: int
    bottom_y: int
    inner_left_x: int
    inner_right_x: int
    nasal_at_left: bool
    scale: float = 1.0
    rim_thickness_px: float = 0.0
    tilt_deg: float = 0.0
    bottom_polyline: Tuple[Tuple[int, int], ...] = ()
    mirrored: bool = False

    @property
    def inner_width_px(self) -> int:
        return self.inner_right_x - self.inner_left_x

    @property
    def height_px(self) -> int:
        return self.bottom_y - self.top_y

    @property
    def nasal_inner_x(self) -> int:
        return self.inner_left_x if self.nasal_at_left else self.inner_right_x

    @property
    def temple_inner_x(self) -> int:
        return self.inner_right_x if self.nasal_at_left else self.inner_left_x

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.inner_left_x + self.inner_right_x) * 0.5, (self.top_y + self.bottom_y) * 0.5)

    def to_global(self):
        """Box edges translated into the source image coordinates."""
        ox, oy = self.roi.x, self.roi.y
        return {
            "inner_left_x": self.inner_left_x + ox,
            "inner_right_x": self.inner_right_x + ox,
            "nasal_inner_x": self.nasal_inner_x + ox,
            "temple_inner_x": self.temple_inner_x + ox,
            "top_y": self.top_y + oy,
            "bottom_y": self.bottom_y + oy,
            "probe_y": self.probe_y + oy,
            "bottom_polyline": [(x + ox, y + oy) for x, y in self.bottom_polyline],
        }


@dataclass(frozen=True, eq=False)
class FitResult:
    """Reference contour placed onto an ROI by arc-fit."""
    placed_points: np.ndarray
    px_per_mm: float
    rotation_deg: float
    origin: Tuple[float, float]
    rms_px: float
    used_pairs: int
    iterations: int = 1
    roi: Optional[RegionOfInterest] = None

    def __post_init__(self):
        pts = np.asarray(self.placed_points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[1] != 2:
            raise ValueError(f"placed_points must be (K, 2), got {pts.shape}")
        object.__setattr__(self, "placed_points", _frozen_array(pts, np.float64))

    def points_global(self) -> np.ndarray:
        if self.roi is None:
            return np.array(self.placed_points)
        return self.placed_points + np.array([self.roi.x, self.roi.y], dtype=np.float64)

    def bounding_box(self) -> Tuple[float, float, float, float]:
        """(x_min, y_min, x_max, y_max) of the placed points, ROI-local."""
        pts = self.placed_points
        return (float(pts[:, 0].min()), float(pts[:, 1].min()),
                float(pts[:, 0].max()), float(pts[:, 1].max()))


@dataclass(frozen=True, eq=False)
class RefinementCandidate:
    """One perturbation of a placed contour and its sampling score."""
    dx: int
    dy: int
    scale: float
    score: float
    coverage: float
    median_response: float
    samples: int
    points: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "points", _frozen_array(self.points, np.float64))

    @property
    def is_identity(self) -> bool:
        return self.dx == 0 and self.dy == 0 and self.scale == 1.0


@dataclass(frozen=True)
class RefinementResult:
    best: RefinementCandidate
    identity: RefinementCandidate
    candidates: Tuple[RefinementCandidate, ...]

    @property
    def improved(self) -> bool:
        return not self.best.is_identity


# =============================================================================
# Tracing
# =============================================================================

@dataclass(frozen=True)
class RingDetection:
    center_x: float
    center_y: float
    radius_px: float
    expected_radius_px: float
    score: float


@dataclass(frozen=True, eq=False)
class TraceResult:
    """Polar contour traced inside a calibration ring."""
    contour_px: PolarContour
    contour_mm: PolarContour
    ring: RingDetection
    coverage: float
    method: str
    confidence: float
    sharpness: float
    outline: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "outline", _frozen_array(self.outline, np.float64))
