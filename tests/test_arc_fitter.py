import math

import cv2
import numpy as np
import pytest

from lensfit.arc_fitter import (
    ArcFitParams,
    edge_support,
    fit_arc,
    inner_polygon_mm,
    place_points,
    place_reference,
    raycast_edges,
    weighted_similarity,
)
from lensfit.contour import reference_points
from lensfit.types import EdgeMap, FailureKind, RegionOfInterest

ORIGIN = (250.0, 200.0)
SCALE = 8.0


def _scene(reference_mm):
    """500x400 ROI edge map with the inner polygon drawn at 8 px/mm."""
    edges = np.zeros((400, 500), dtype=np.uint8)
    placed = place_points(inner_polygon_mm(reference_mm, 50.0, 40.0), ORIGIN, SCALE)
    cv2.polylines(edges, [np.round(placed).astype(np.int32).reshape(-1, 1, 2)], True, 255, 1)
    return EdgeMap(edges, roi=RegionOfInterest(100, 50, 500, 400)), placed


@pytest.fixture
def reference_mm(reference_radii_mm):
    return reference_points(reference_radii_mm)


def test_inner_polygon_shrinks_each_side_by_margin(reference_mm):
    poly = inner_polygon_mm(reference_mm, 50.0, 40.0)
    assert poly[:, 0].max() - poly[:, 0].min() == pytest.approx(48.0, abs=1e-6)
    assert poly[:, 1].max() - poly[:, 1].min() == pytest.approx(38.0, abs=1e-6)
    assert abs(poly[:, 0].max() + poly[:, 0].min()) < 1e-6
    assert inner_polygon_mm(reference_mm, 0.0, 40.0).shape == (0, 2)


def test_place_points_flips_y():
    pts = place_points(np.array([[1.0, 2.0]]), (10.0, 20.0), 4.0)
    assert np.allclose(pts, [[14.0, 12.0]])
    turned = place_points(np.array([[1.0, 0.0]]), (0.0, 0.0), 1.0, rotation_deg=90.0)
    assert np.allclose(turned, [[0.0, -1.0]], atol=1e-12)


def test_exact_seed_recovers_placement(reference_mm):
    edge_map, placed = _scene(reference_mm)
    outcome = place_reference(reference_mm, edge_map, ORIGIN, midline_x=0.0, px_per_mm_guess=SCALE)

    assert outcome.ok
    fit = outcome.value
    assert fit.px_per_mm == pytest.approx(SCALE, rel=0.01)
    assert abs(fit.rotation_deg) < 0.5
    assert abs(fit.origin[0] - ORIGIN[0]) < 1.5
    assert abs(fit.origin[1] - ORIGIN[1]) < 1.5
    assert fit.rms_px < 2.0
    assert fit.used_pairs >= 50
    assert fit.iterations == 2
    assert fit.roi == edge_map.roi
    assert np.allclose(fit.points_global()[0], fit.placed_points[0] + [100.0, 50.0])


def test_scale_guess_off_by_five_percent(reference_mm):
    edge_map, _ = _scene(reference_mm)
    fit = fit_arc(reference_mm, edge_map, ORIGIN, 0.0, SCALE * 1.05)
    assert fit is not None
    assert fit.px_per_mm == pytest.approx(SCALE, rel=0.02)


def test_fixed_scale_is_kept(reference_mm):
    edge_map, _ = _scene(reference_mm)
    fit = fit_arc(reference_mm, edge_map, ORIGIN, 0.0, 7.0, fixed_px_per_mm=SCALE)
    assert fit is not None
    assert fit.px_per_mm == SCALE


def test_bottom_anchor_sets_lowest_point(reference_mm):
    edge_map, placed = _scene(reference_mm)
    anchor = float(placed[:, 1].max()) + 3.0
    fit = fit_arc(reference_mm, edge_map, ORIGIN, 0.0, SCALE, bottom_anchor_y=anchor)
    assert fit is not None
    assert fit.bounding_box()[3] == pytest.approx(anchor, abs=1e-6)


def test_observed_scale_disagreement_is_rejected(reference_mm):
    edge_map, _ = _scene(reference_mm)
    outcome = place_reference(reference_mm, edge_map, ORIGIN, 0.0, SCALE, observed_px_per_mm=12.0)
    assert not outcome.ok
    assert outcome.failure == FailureKind.GEOMETRY_OUT_OF_TOLERANCE


def test_empty_edge_map_is_insufficient_signal(reference_mm):
    outcome = place_reference(reference_mm, EdgeMap(np.zeros((400, 500), dtype=np.uint8)), ORIGIN, 0.0, SCALE)
    assert outcome.failure == FailureKind.INSUFFICIENT_SIGNAL
    assert outcome.fail_reason.startswith("insufficient_signal")
    assert fit_arc(reference_mm, EdgeMap(np.zeros((400, 500), dtype=np.uint8)), ORIGIN, 0.0, SCALE) is None


def test_too_few_pairs_is_insufficient_signal(reference_mm):
    edges = np.zeros((400, 500), dtype=np.uint8)
    edges[352, 230:271] = 255
    outcome = place_reference(reference_mm, EdgeMap(edges), ORIGIN, 0.0, SCALE)
    assert outcome.failure == FailureKind.INSUFFICIENT_SIGNAL


def test_single_iteration(reference_mm):
    edge_map, _ = _scene(reference_mm)
    fit = fit_arc(reference_mm, edge_map, ORIGIN, 0.0, SCALE, params=ArcFitParams(iterations=1))
    assert fit.iterations == 1


def test_contract_violations_raise(reference_mm):
    edge_map, _ = _scene(reference_mm)
    with pytest.raises(ValueError):
        place_reference(np.zeros((10, 3)), edge_map, ORIGIN, 0.0, SCALE)
    with pytest.raises(ValueError):
        place_reference(reference_mm, edge_map, ORIGIN, 0.0, 0.0)
    with pytest.raises(ValueError):
        place_reference(reference_mm, edge_map, (float("nan"), 0.0), 0.0, SCALE)


def test_edge_support_grades_thick_over_thin():
    edges = np.zeros((60, 60), dtype=np.uint8)
    edges[:, 10] = 255
    edges[:, 39:42] = 255
    support = edge_support(edges)
    assert support.max() == pytest.approx(1.0)
    assert support[30, 40] > 0.95
    assert support[30, 10] < 0.5
    assert not edge_support(np.zeros((5, 5), dtype=np.uint8)).any()


def test_strong_edge_wins_over_nearer_speck():
    edges = np.zeros((100, 100), dtype=np.uint8)
    edges[50, 56] = 255      # 2.85 px short of the prediction
    edges[:, 62:65] = 255    # 3.15 px beyond it
    edge_near = edges > 0
    origin = (19.15, 50.0)
    direction = np.array([[1.0, 0.0]])
    r_pred = np.array([39.7])

    hits, points, weights = raycast_edges(edge_near, edge_support(edges), origin, direction, r_pred, 0.5, 1.5)
    assert hits[0]
    assert points[0, 0] == pytest.approx(62.0)
    assert weights[0] > 0.5

    # Flat support leaves only the distance, which favours the speck
    hits, points, weights = raycast_edges(edge_near, np.ones((100, 100)), origin, direction, r_pred, 0.5, 1.5)
    assert hits[0]
    assert points[0, 0] == pytest.approx(56.0)
    assert weights[0] == pytest.approx(1.0)


def test_weighted_similarity_follows_heavy_pairs():
    n = 24
    ang = 2.0 * np.pi * np.arange(n) / n
    p = 10.0 * np.column_stack([np.cos(ang), np.sin(ang)])
    rot = math.radians(5.0)
    turned = np.column_stack([math.cos(rot) * p[:, 0] - math.sin(rot) * p[:, 1],
                              math.sin(rot) * p[:, 0] + math.cos(rot) * p[:, 1]])
    strong = np.arange(n) % 2 == 0
    q = np.where(strong[:, None], 5.0, 7.0) * turned + np.array([30.0, -4.0])
    wgt = np.where(strong, 1.0, 0.1)

    theta, scale, tx, ty = weighted_similarity(p, q, wgt)
    assert math.degrees(theta) == pytest.approx(5.0)
    assert scale == pytest.approx(5.7 / 1.1)
    assert tx == pytest.approx(30.0)
    assert ty == pytest.approx(-4.0)

    _, even, _, _ = weighted_similarity(p, q, np.ones(n))
    assert even == pytest.approx(6.0)

    _, fixed, _, _ = weighted_similarity(p, q, wgt, fixed_scale=6.5)
    assert fixed == 6.5
    assert weighted_similarity(np.zeros((3, 2)), np.ones((3, 2)), np.ones(3)) is None
