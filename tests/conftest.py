import math
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

# Allow importing lensfit and measure_lens from repository root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from lensfit.types import EdgeMap  # noqa: E402

LENS_PX_PER_MM = 8.0
LENS_CENTER = (500, 500)


def lens_radius_mm(theta):
    """Synthetic lens shape, 12 to 18 mm."""
    return 15.0 + 2.5 * np.cos(2.0 * theta) + 0.5 * np.sin(theta)


def lens_polygon_px(n=1440, px_per_mm=LENS_PX_PER_MM, center=LENS_CENTER):
    """Lens outline in image axes (Y down)."""
    theta = 2.0 * math.pi * np.arange(n) / n
    r = lens_radius_mm(theta) * px_per_mm
    return np.column_stack([center[0] + r * np.cos(theta), center[1] - r * np.sin(theta)])


def lens_coverage(px_per_mm=LENS_PX_PER_MM, half=160, ss=4):
    """Fraction of each pixel inside the lens, on a square of 2*half px around the center."""
    offs = (np.arange(2 * half * ss) + 0.5) / ss - half - 0.5
    dx, dy = np.meshgrid(offs, offs)
    inside = np.hypot(dx, dy) <= lens_radius_mm(np.arctan2(-dy, dx)) * px_per_mm
    return inside.reshape(2 * half, ss, 2 * half, ss).mean(axis=(1, 3))


@pytest.fixture
def lens_scene():
    """1000x1000 photo: dark ring of 75 mm diameter around a dark lens with area-weighted edges."""
    image = np.full((1000, 1000), 200, dtype=np.uint8)
    ring_r = int(round(37.5 * LENS_PX_PER_MM))
    cv2.circle(image, LENS_CENTER, ring_r, 0, 10)
    half = 160
    cx, cy = LENS_CENTER
    lens = 200.0 - 140.0 * lens_coverage(half=half)
    image[cy - half:cy + half, cx - half:cx + half] = np.floor(lens + 0.5).astype(np.uint8)
    return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR), lens_polygon_px()


@pytest.fixture
def uniform_image():
    return np.full((480, 640, 3), 128, dtype=np.uint8)


@pytest.fixture
def rim_edges():
    """
    400x300 ROI edge map with a rim drawn as two nested rectangles.

    Inner box x 100..300, y 60..220; outer box 10 px further out.
    """
    edges = np.zeros((300, 400), dtype=np.uint8)
    cv2.rectangle(edges, (100, 60), (300, 220), 255, 1)
    cv2.rectangle(edges, (90, 50), (310, 230), 255, 1)
    return EdgeMap(edges)


@pytest.fixture
def reference_radii_mm():
    """800-sample reference series of an ellipse-like lens, 50 x 40 mm box."""
    theta = 2.0 * math.pi * np.arange(800) / 800
    a, b = 25.0, 20.0
    return a * b / np.sqrt((b * np.cos(theta)) ** 2 + (a * np.sin(theta)) ** 2)
