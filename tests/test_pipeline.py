import json

import numpy as np
import pytest

from conftest import LENS_PX_PER_MM
from lensfit.fil_format import format_fil, parse_fil
from lensfit.pipeline import (
    FaceLandmarks,
    fit_face,
    inner_box_mm,
    official_px_per_mm,
    trace_lens_photo,
)
from lensfit.types import RegionOfInterest, RimEstimate


def _rim(width, ok=True):
    return RimEstimate(ok=ok, confidence=0.9 if ok else 0.2, roi=RegionOfInterest(0, 0, 400, 300),
                       probe_y=150, top_y=60, bottom_y=220, inner_left_x=100,
                       inner_right_x=100 + width, nasal_at_left=True)


def _landmarks_dict(**overrides):
    data = {
        "midline_x": 320,
        "right": {"roi": {"x": 40, "y": 100, "width": 240, "height": 200}, "pupil": [160, 200],
                  "brow_bottom_y": 110},
        "left": {"roi": {"x": 360, "y": 100, "width": 240, "height": 200}, "pupil": [480, 200]},
    }
    data.update(overrides)
    return data


def _reference(reference_radii_mm):
    hundredths = np.floor(reference_radii_mm * 100.0 + 0.5).astype(np.int64)
    return parse_fil(format_fil(hundredths, "REF"))


# =============================================================================
# Scale and inputs
# =============================================================================

def test_official_scale_from_both_rims():
    px, source = official_px_per_mm(_rim(200), _rim(210), 50.0, None)
    assert source == "rim_both"
    assert px == pytest.approx(4.1)


def test_official_scale_disagreeing_rims_pick_closest_to_guess():
    px, source = official_px_per_mm(_rim(200), _rim(300), 50.0, 5.5)
    assert source == "rim_closest"
    assert px == pytest.approx(6.0)


def test_official_scale_single_rim_and_guess():
    assert official_px_per_mm(_rim(200), _rim(300, ok=False), 50.0, None) == (pytest.approx(4.0), "rim_right")
    assert official_px_per_mm(None, _rim(250), 50.0, None) == (pytest.approx(5.0), "rim_left")
    assert official_px_per_mm(None, None, 50.0, None) == (5.0, "guess")
    assert official_px_per_mm(None, None, 50.0, 100.0) == (20.0, "guess")


def test_inner_box_floors():
    assert inner_box_mm(50.0, 40.0, 1.0) == (48.0, 38.0)
    assert inner_box_mm(11.0, 5.0, 1.0) == (10.0, 10.0)


def test_landmarks_from_dict():
    lm = FaceLandmarks.from_dict(_landmarks_dict(px_per_mm_guess=4.5))
    assert lm.midline_x == 320.0
    assert lm.right.roi == RegionOfInterest(40, 100, 240, 200)
    assert lm.right.pupil == (160.0, 200.0)
    assert lm.right.brow_bottom_y == 110.0
    assert lm.left.brow_bottom_y is None
    assert lm.px_per_mm_guess == 4.5
    assert lm.eye("left") is lm.left


def test_landmarks_require_midline_and_rois():
    data = _landmarks_dict()
    del data["midline_x"]
    with pytest.raises(ValueError):
        FaceLandmarks.from_dict(data)
    with pytest.raises(ValueError):
        FaceLandmarks.from_dict(_landmarks_dict(left={"pupil": [480, 200]}))


# =============================================================================
# Face fit
# =============================================================================

def test_fit_face_without_edges(uniform_image, reference_radii_mm):
    landmarks = FaceLandmarks.from_dict(_landmarks_dict())
    result = fit_face(uniform_image, landmarks, _reference(reference_radii_mm))

    assert result["fail_reason"] is not None
    assert "insufficient_signal" in result["fail_reason"]
    assert result["px_per_mm"] == 5.0
    assert result["scale_source"] == "guess"
    assert result["right"]["fit"] is None
    assert result["right"]["rim"] is None
    assert result["left"]["seed"]["source"] == "expected"

    m = result["measurements"]
    assert m["mode"] == "binocular"
    assert m["right"]["dnp_mm"] == pytest.approx(32.0)
    assert m["left"]["dnp_mm"] == pytest.approx(32.0)
    assert m["right"]["fitting_height_mm"] is None

    json.dumps(result)


def test_fit_face_without_pupils_has_no_measurements(uniform_image, reference_radii_mm):
    data = _landmarks_dict()
    del data["right"]["pupil"]
    del data["left"]["pupil"]
    result = fit_face(uniform_image, FaceLandmarks.from_dict(data), _reference(reference_radii_mm), refine=False)
    assert result["measurements"] is None
    assert result["right"]["refinement"] is None


# =============================================================================
# Lens trace
# =============================================================================

def test_trace_without_ring_fails(uniform_image):
    result = trace_lens_photo(uniform_image, LENS_PX_PER_MM)
    assert result["fil_text"] is None
    assert result["fail_reason"].startswith("not_found")


def test_trace_produces_fil(lens_scene):
    image, _ = lens_scene
    result = trace_lens_photo(image, LENS_PX_PER_MM, job_id="J7")

    assert result["fail_reason"] is None
    assert result["method"] == "radial"
    assert result["fallback_reason"] is None

    rec = parse_fil(result["fil_text"])
    assert rec.n == 800
    assert rec.job_id == "J7"
    assert np.array_equal(rec.hundredths(), result["radii_hundredths"])
    assert 1150 <= min(result["radii_hundredths"]) <= max(result["radii_hundredths"]) <= 1850

    # 17.5 mm at 0 and 180 degrees, 13 mm up and 12 mm down
    assert result["metrics"]["hbox_mm"] == pytest.approx(35.0, abs=1.0)
    assert result["metrics"]["vbox_mm"] == pytest.approx(25.0, abs=1.0)
    json.dumps(result)
