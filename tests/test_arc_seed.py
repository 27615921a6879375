import pytest

from lensfit.arc_seed import arc_seed, clamp_scale, seed_from_geometry, seed_from_rim
from lensfit.types import RegionOfInterest, RimEstimate

ROI = RegionOfInterest(0, 0, 400, 300)


def _rim(ok=True, mirrored=False):
    return RimEstimate(
        ok=ok, confidence=0.9 if ok else 0.3, roi=ROI, probe_y=150, top_y=60, bottom_y=220,
        inner_left_x=100, inner_right_x=300, nasal_at_left=True, mirrored=mirrored,
    )


def test_clamp_scale():
    assert clamp_scale(None) == 5.0
    assert clamp_scale(float("nan")) == 5.0
    assert clamp_scale(-3.0) == 5.0
    assert clamp_scale(1.0) == 2.5
    assert clamp_scale(100.0) == 20.0
    assert clamp_scale(7.5) == 7.5


def test_geometry_seed_from_midline():
    seed = seed_from_geometry(ROI, 48.0, 38.0, 4.0, midline_x=0.0)
    assert seed.source == "expected"
    assert seed.px_per_mm == 4.0
    # gap = max(18, 19.2); box center = midline + gap + 96
    assert seed.origin[0] == pytest.approx(115.2)
    assert seed.origin[1] == pytest.approx(156.0 + 15.2)


def test_geometry_seed_mirrors_with_side():
    roi = RegionOfInterest(0, 0, 400, 300)
    seed = seed_from_geometry(roi, 48.0, 38.0, 4.0, midline_x=500.0, bridge_row_y=100.0)
    assert seed.origin[0] == pytest.approx(500.0 - 115.2)
    assert seed.origin[1] == pytest.approx(115.2)


def test_geometry_seed_is_clamped_to_roi():
    seed = seed_from_geometry(ROI, 48.0, 38.0, 4.0, midline_x=1000.0, bridge_row_y=1000.0)
    assert seed.origin == (399.0, 299.0)


def test_rim_seed():
    seed = seed_from_rim(_rim(), 50.0)
    assert seed.origin == (200.0, 140.0)
    assert seed.px_per_mm == pytest.approx(4.0)
    assert seed.source == "rim"


def test_arc_seed_prefers_usable_rim():
    assert arc_seed(ROI, 50.0, 40.0, 4.0, 0.0, rim=_rim()).source == "rim"
    assert arc_seed(ROI, 50.0, 40.0, 4.0, 0.0, rim=_rim(ok=False, mirrored=True)).source == "rim_mirrored"
    assert arc_seed(ROI, 50.0, 40.0, 4.0, 0.0, rim=_rim(ok=False)).source == "expected"
    assert arc_seed(ROI, 50.0, 40.0, 4.0, 0.0).source == "expected"
