import numpy as np
import pytest

from lensfit.rim_detector import (
    bottom_polyline,
    build_scales,
    detect_rim,
    find_horizontal_line,
    mirror_rim_estimate,
    polyline_tilt_deg,
    refine_inner_edges,
)
from lensfit.types import EdgeMap, RegionOfInterest, RimEstimate


def _detect(edge_map, **kwargs):
    args = dict(midline_x=80.0, hbox_mm=50.0, px_per_mm_guess=4.0, bridge_row_y=150.0)
    args.update(kwargs)
    return detect_rim(edge_map, **args)


def test_build_scales():
    scales = build_scales(0.75, 1.20, 0.05)
    assert len(scales) == 10
    assert scales[0] == pytest.approx(0.75)
    assert scales[-1] == pytest.approx(1.20)


def test_detects_inner_box(rim_edges):
    detected = _detect(rim_edges)
    assert detected is not None
    rim, roi_map = detected

    assert rim.ok
    assert rim.nasal_at_left
    assert abs(rim.inner_left_x - 100) <= 1
    assert abs(rim.inner_right_x - 300) <= 1
    assert abs(rim.inner_width_px - 200) <= 2
    assert rim.bottom_y == 220
    assert rim.top_y == 60
    assert rim.rim_thickness_px == pytest.approx(10.0, abs=1.0)
    assert abs(rim.tilt_deg) < 1.0
    assert roi_map.roi == RegionOfInterest(0, 0, 400, 300)


def test_width_wins_over_a_wrong_vbox(rim_edges):
    rim, _ = _detect(rim_edges, vbox_mm=90.0)
    assert rim.ok
    assert abs(rim.inner_width_px - 200) <= 2
    assert rim.bottom_y == 220
    assert rim.confidence < 1.0


def test_consistent_vbox_places_top(rim_edges):
    rim, _ = _detect(rim_edges, vbox_mm=40.0)
    assert rim.top_y == 60
    assert rim.confidence == pytest.approx(1.0)


def test_empty_or_small_maps_return_none(rim_edges):
    assert _detect(EdgeMap(np.zeros((300, 400), dtype=np.uint8))) is None
    assert _detect(EdgeMap(np.full((60, 80), 255, dtype=np.uint8))) is None
    assert _detect(rim_edges, hbox_mm=0.0) is None


def test_full_frame_map_is_cropped_to_roi(rim_edges):
    frame = np.zeros((500, 700), dtype=np.uint8)
    frame[100:400, 200:600] = rim_edges.edges
    roi = RegionOfInterest(200, 100, 400, 300)
    rim, roi_map = _detect(EdgeMap(frame), roi=roi, midline_x=280.0, bridge_row_y=250.0)
    assert roi_map.roi == roi
    assert rim.to_global()["inner_left_x"] == rim.inner_left_x + 200
    assert abs(rim.inner_width_px - 200) <= 2


def test_cropped_map_cannot_be_recropped(rim_edges):
    cropped = EdgeMap(rim_edges.edges, roi=RegionOfInterest(0, 0, 400, 300))
    with pytest.raises(ValueError):
        _detect(cropped, roi=RegionOfInterest(10, 10, 200, 200))


def test_refine_prefers_edges_with_outer_partner():
    sig = np.zeros(400)
    sig[[90, 100, 300, 310]] = 1000.0
    # Raw edges on the outer lines shift inward onto the inner ones
    assert refine_inner_edges(sig, 220.0, 200.0, 90, 310, 10.0) == (100, 300)
    assert refine_inner_edges(sig, 220.0, 200.0, 100, 300, 10.0) == (100, 300)


def test_horizontal_line_prefers_start_on_ties():
    edges = np.zeros((100, 120), dtype=np.uint8)
    edges[40, 10:110] = 255
    edges[60, 10:110] = 255
    assert find_horizontal_line(edges, 0, 99, 10, 109) == 40
    assert find_horizontal_line(edges, 99, 0, 10, 109) == 60
    assert find_horizontal_line(edges, 0, 99, 10, 30) is None


def test_bottom_polyline_and_tilt():
    edges = np.zeros((200, 300), dtype=np.uint8)
    for x in range(300):
        edges[150 + x // 20, x] = 255
    poly = bottom_polyline(edges, 20, 280, 157, 0, 100)
    assert len(poly) > 20
    assert all(abs(y - (150 + x // 20)) <= 1 for x, y in poly)
    assert polyline_tilt_deg(poly) == pytest.approx(np.degrees(np.arctan(1 / 20.0)), abs=0.8)
    assert polyline_tilt_deg(poly[:3]) == 0.0


def test_mirror_reflects_across_midline():
    source = RimEstimate(
        ok=True, confidence=0.9, roi=RegionOfInterest(500, 100, 400, 300), probe_y=150,
        top_y=60, bottom_y=220, inner_left_x=100, inner_right_x=300, nasal_at_left=True,
        bottom_polyline=((110, 220), (200, 221)),
    )
    target = RegionOfInterest(0, 100, 400, 300)
    mirrored = mirror_rim_estimate(source, midline_x=450.0, target_roi=target)

    assert mirrored.mirrored
    assert not mirrored.ok
    assert mirrored.confidence == pytest.approx(0.9 * 0.6)
    assert (mirrored.inner_left_x, mirrored.inner_right_x) == (100, 300)
    assert (mirrored.top_y, mirrored.bottom_y) == (60, 220)
    assert not mirrored.nasal_at_left
    assert mirrored.roi == target
    assert [p[0] for p in mirrored.bottom_polyline] == sorted(p[0] for p in mirrored.bottom_polyline)
