import math

import numpy as np
import pytest

from lensfit.contour import (
    box_metrics,
    cardinal_indices,
    fill_missing_circular,
    mirror_contour,
    mirror_radii,
    polygon_to_radii,
    ray_polygon_distances,
    reference_points,
    resample_closed_polyline,
    rotate_radii,
    trace_points,
    trace_to_reference,
)
from lensfit.types import AngularConvention, PolarContour, RadiusUnit


def test_fill_missing_wraps_around():
    filled = fill_missing_circular(np.array([np.nan, 1.0, np.nan, 3.0]))
    assert np.allclose(filled, [2.0, 1.0, 2.0, 3.0])

    single = fill_missing_circular(np.array([np.nan, 5.0, np.nan]))
    assert np.allclose(single, 5.0)

    empty = fill_missing_circular(np.full(3, np.nan))
    assert np.all(np.isnan(empty))


def test_rotate_radii():
    r = np.arange(5)
    assert np.array_equal(rotate_radii(r, 1), [4, 0, 1, 2, 3])
    assert np.array_equal(rotate_radii(r, -6), [1, 2, 3, 4, 0])


def test_mirror_radii_is_an_involution():
    r = np.arange(16, dtype=np.float64)
    m = mirror_radii(r)
    assert m[0] == r[8]
    assert m[4] == r[4]
    assert np.array_equal(mirror_radii(m), r)
    with pytest.raises(ValueError):
        mirror_radii(np.arange(7))


def test_mirror_radii_matches_mirrored_points(reference_radii_mm):
    r = reference_radii_mm * (1.0 + 0.1 * np.sin(np.arange(800) * 2.0 * math.pi / 800))
    n = r.size
    mirrored_series = reference_points(mirror_radii(r))
    mirrored_points = reference_points(r, mirror=True)
    idx = (n // 2 - np.arange(n)) % n
    assert np.allclose(mirrored_series[idx], mirrored_points)


def test_mirror_contour_keeps_tags():
    c = PolarContour(np.arange(1.0, 17.0), RadiusUnit.MILLIMETERS, AngularConvention.REFERENCE_CCW)
    m = mirror_contour(c)
    assert m.unit == c.unit and m.convention == c.convention


def test_reference_points_cardinal_directions():
    r = np.full(8, 10.0)
    pts = reference_points(r)
    i_px, i_py, i_nx, i_ny = cardinal_indices(8)
    assert np.allclose(pts[i_px], [10.0, 0.0])
    assert np.allclose(pts[i_py], [0.0, 10.0])
    assert np.allclose(pts[i_nx], [-10.0, 0.0])
    assert np.allclose(pts[i_ny], [0.0, -10.0])


def test_trace_points_go_clockwise_on_screen():
    pts = trace_points(np.full(4, 10.0), (50.0, 50.0))
    # index 1 is -90 degrees in image axes, i.e. up on screen
    assert np.allclose(pts[1], [50.0, 40.0])


def test_trace_to_reference_keeps_samples():
    radii = np.linspace(10.0, 12.0, 16)
    traced = PolarContour(radii, RadiusUnit.MILLIMETERS, AngularConvention.IMAGE_TRACE, (300.0, 200.0))
    ref = trace_to_reference(traced)
    assert ref.convention == AngularConvention.REFERENCE_CCW
    assert ref.origin == (0.0, 0.0)
    assert np.array_equal(ref.radii, radii)
    assert trace_to_reference(ref) is ref


def test_ray_polygon_distances_square():
    square = np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]])
    dirs = np.array([[1.0, 0.0], [0.0, 1.0], [math.sqrt(0.5), math.sqrt(0.5)]])
    d = ray_polygon_distances(square, dirs)
    assert np.allclose(d, [1.0, 1.0, math.sqrt(2.0)])

    off = square + np.array([5.0, 0.0])
    assert np.isnan(ray_polygon_distances(off, np.array([[-1.0, 0.0]]))[0])


def test_polygon_to_radii_directions():
    # Rectangle wider than tall, image axes
    rect = np.array([[0.0, 0.0], [40.0, 0.0], [40.0, 20.0], [0.0, 20.0]])
    radii = polygon_to_radii(rect, 8, center=(20.0, 10.0), y_down=True)
    assert radii[0] == pytest.approx(20.0)
    assert radii[2] == pytest.approx(10.0)
    assert radii[4] == pytest.approx(20.0)
    with pytest.raises(ValueError):
        polygon_to_radii(rect[:2], 8)


def test_resample_closed_polyline_is_even():
    square = np.array([[0.0, 0.0], [10.0, 0.0], [10.0, 10.0], [0.0, 10.0]])
    pts = resample_closed_polyline(square, 8)
    closed = np.vstack([pts, pts[:1]])
    steps = np.hypot(np.diff(closed[:, 0]), np.diff(closed[:, 1]))
    assert np.allclose(steps, 5.0)


def test_box_metrics_circle():
    geo = box_metrics(np.full(800, 20.0))
    assert geo["hbox_mm"] == pytest.approx(40.0)
    assert geo["vbox_mm"] == pytest.approx(40.0, abs=1e-3)
    assert geo["fed_mm"] == pytest.approx(40.0)
    assert geo["circ_mm"] == pytest.approx(2.0 * math.pi * 20.0, abs=0.01)


def test_box_metrics_ellipse(reference_radii_mm):
    geo = box_metrics(reference_radii_mm)
    assert geo["hbox_mm"] == pytest.approx(50.0, abs=1e-6)
    assert geo["vbox_mm"] == pytest.approx(40.0, abs=1e-6)
