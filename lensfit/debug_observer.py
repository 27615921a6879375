"""
Debug visualization observer for the lens pipeline.

This module provides a non-intrusive way to capture and visualize intermediate
processing stages without polluting core algorithm implementations.

It also contains all drawing utility functions used for debug visualizations.
"""

import logging
import os
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

import cv2
import numpy as np

from lensfit.types import FitResult, RefinementResult, RimEstimate, TraceResult
from lensfit.viz_constants import Color, FontScale, Layout, Size, put_outlined_text

logger = logging.getLogger(__name__)


class DebugObserver:
    """
    Observer for capturing and saving intermediate processing stages.

    Stage functions build one only when a debug directory is given, so the
    algorithms never touch the filesystem on their own.
    """

    def __init__(self, debug_dir: str):
        """
        Initialize debug observer.

        Args:
            debug_dir: Directory where debug images will be saved
        """
        self.debug_dir = Path(debug_dir)
        self.debug_dir.mkdir(parents=True, exist_ok=True)
        self._stage_counter = {}

    def save_stage(self, name: str, image: np.ndarray) -> None:
        """
        Save an intermediate processing stage image.

        Args:
            name: Stage name (used as filename prefix)
            image: Image to save
        """
        if image is None or image.size == 0:
            return

        # Counter for stages saved more than once (e.g. one per eye)
        if name in self._stage_counter:
            self._stage_counter[name] += 1
            filename = f"{name}_{self._stage_counter[name]}.png"
        else:
            self._stage_counter[name] = 0
            filename = f"{name}.png"

        self._save_with_compression(image, filename)

    def draw_and_save(self, name: str, image: np.ndarray,
                      draw_func: Callable, *args, **kwargs) -> None:
        """
        Apply a drawing function to an image and save the result.

        Args:
            name: Stage name for the output file
            image: Base image to draw on
            draw_func: Function that takes (image, *args, **kwargs) and returns annotated image
        """
        if image is None or image.size == 0:
            return
        self.save_stage(name, draw_func(image, *args, **kwargs))

    def _save_with_compression(self, image: np.ndarray, filename: str) -> None:
        output_path = self.debug_dir / filename

        h, w = image.shape[:2]
        if max(h, w) > Layout.MAX_SAVE_DIM:
            scale = Layout.MAX_SAVE_DIM / max(h, w)
            image = cv2.resize(image, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA)

        cv2.imwrite(str(output_path), image, [cv2.IMWRITE_PNG_COMPRESSION, Layout.PNG_COMPRESSION])
        logger.debug(f"Saved debug stage {output_path}")


# =============================================================================
# Drawing Functions for Debug Visualization
# =============================================================================

def _to_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    return image.copy()


def _polyline(vis: np.ndarray, points: np.ndarray, color, closed: bool = True,
              thickness: int = Size.LINE_NORMAL) -> None:
    pts = np.round(np.asarray(points, dtype=np.float64)).astype(np.int32).reshape(-1, 1, 2)
    if len(pts) >= 2:
        cv2.polylines(vis, [pts], closed, color, thickness, cv2.LINE_AA)


def _text_lines(vis: np.ndarray, lines: Sequence[str], color=Color.TEXT_PRIMARY) -> None:
    for k, line in enumerate(lines):
        y = Layout.TEXT_FIRST_Y + k * Layout.LINE_HEIGHT
        put_outlined_text(vis, line, (Layout.TEXT_OFFSET_X, y), FontScale.BODY, color)


def draw_score_heatmap(score: np.ndarray) -> np.ndarray:
    """Directional edge score as a JET heat map, normalized to its maximum."""
    score = np.asarray(score, dtype=np.float64)
    peak = float(score.max()) if score.size else 0.0
    scaled = np.zeros(score.shape, dtype=np.uint8) if peak <= 0 else \
        np.clip(score * (255.0 / peak), 0, 255).astype(np.uint8)
    return cv2.applyColorMap(scaled, cv2.COLORMAP_JET)


def draw_edge_overlay(gray: np.ndarray, edges: np.ndarray) -> np.ndarray:
    """Edge pixels painted over the gray image."""
    vis = _to_bgr(gray)
    vis[np.asarray(edges) > 0] = Color.EDGE
    return vis


def draw_trace_overlay(image: np.ndarray, result: TraceResult, roi_r: float) -> np.ndarray:
    """Ring, interior disk and traced outline with coverage and method."""
    vis = _to_bgr(image)
    ring = result.ring
    center = (int(round(ring.center_x)), int(round(ring.center_y)))
    cv2.circle(vis, center, int(round(ring.radius_px)), Color.RING, Size.LINE_THICK, cv2.LINE_AA)
    cv2.circle(vis, center, int(round(roi_r)), Color.INTERIOR_ROI, Size.LINE_NORMAL, cv2.LINE_AA)
    cv2.drawMarker(vis, center, Color.RING, cv2.MARKER_CROSS, Size.MARKER_SIZE, Size.LINE_NORMAL)
    _polyline(vis, result.outline, Color.TRACE, thickness=Size.LINE_THICK)
    _text_lines(vis, [
        f"method={result.method} coverage={result.coverage:.2f}",
        f"confidence={result.confidence:.2f} sharpness={result.sharpness:.1f}",
    ])
    return vis


def draw_rim_overlay(edges: np.ndarray, estimate: RimEstimate) -> np.ndarray:
    """Inner rim box, probe row and bottom polyline on the ROI edge map."""
    vis = _to_bgr(edges)
    w = vis.shape[1]
    cv2.line(vis, (0, estimate.probe_y), (w - 1, estimate.probe_y), Color.PROBE_ROW, Size.LINE_NORMAL)
    cv2.rectangle(vis, (estimate.inner_left_x, estimate.top_y),
                  (estimate.inner_right_x, estimate.bottom_y), Color.RIM_BOX, Size.LINE_THICK)
    for x, y in estimate.bottom_polyline:
        cv2.circle(vis, (int(x), int(y)), Size.POINT_RADIUS, Color.BOTTOM_POLYLINE, -1)
    color = Color.TEXT_SUCCESS if estimate.ok else Color.TEXT_ERROR
    _text_lines(vis, [
        f"ok={estimate.ok} conf={estimate.confidence:.2f} scale={estimate.scale:.2f}",
        f"w={estimate.inner_width_px} h={estimate.height_px} tilt={estimate.tilt_deg:.1f}",
    ], color)
    return vis


def draw_fit_overlay(edges: np.ndarray, fit: FitResult, seed_origin: Tuple[float, float]) -> np.ndarray:
    """Placed reference contour with the seed and solved origins."""
    vis = _to_bgr(edges)
    _polyline(vis, fit.placed_points, Color.FIT, thickness=Size.LINE_THICK)
    seed = (int(round(seed_origin[0])), int(round(seed_origin[1])))
    solved = (int(round(fit.origin[0])), int(round(fit.origin[1])))
    cv2.drawMarker(vis, seed, Color.SEED, cv2.MARKER_TILTED_CROSS, Size.MARKER_SIZE, Size.LINE_THICK)
    cv2.drawMarker(vis, solved, Color.FIT_ORIGIN, cv2.MARKER_CROSS, Size.MARKER_SIZE, Size.LINE_THICK)
    _text_lines(vis, [
        f"px/mm={fit.px_per_mm:.3f} rot={fit.rotation_deg:.2f}",
        f"rms={fit.rms_px:.2f}px pairs={fit.used_pairs} iters={fit.iterations}",
    ])
    return vis


def draw_refinement_overlay(image: np.ndarray, refinement: RefinementResult) -> np.ndarray:
    """Input placement against the refined one."""
    vis = _to_bgr(image)
    _polyline(vis, refinement.identity.points, Color.FIT)
    _polyline(vis, refinement.best.points, Color.REFINED, thickness=Size.LINE_THICK)
    best = refinement.best
    _text_lines(vis, [
        f"identity={refinement.identity.score:.3f} best={best.score:.3f}",
        f"dx={best.dx} dy={best.dy} scale={best.scale:.3f}",
    ])
    return vis


def save_radius_profile(radii_mm: np.ndarray, debug_dir: str,
                        reference_mm: Optional[np.ndarray] = None,
                        name: str = "06_radius_profile.png") -> None:
    """Helper to save a radius-vs-index plot (requires matplotlib)."""
    try:
        import matplotlib
        matplotlib.use('Agg')
        import matplotlib.pyplot as plt
    except ImportError:
        return

    radii_mm = np.asarray(radii_mm, dtype=np.float64)
    if radii_mm.size == 0:
        return

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.plot(radii_mm, color='magenta', linewidth=1.5, label='Radii')
    if reference_mm is not None:
        ax.plot(np.asarray(reference_mm, dtype=np.float64), color='gray', linestyle='--',
                linewidth=1, label='Reference')
    ax.set_xlabel('Sample index', fontsize=12)
    ax.set_ylabel('Radius (mm)', fontsize=12)
    ax.set_title('Polar Radius Profile', fontsize=14, fontweight='bold')
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)

    os.makedirs(debug_dir, exist_ok=True)
    plt.savefig(os.path.join(debug_dir, name), dpi=150, bbox_inches='tight')
    plt.close(fig)
