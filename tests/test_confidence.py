import numpy as np
import pytest

from lensfit.confidence import (
    compute_fit_confidence,
    compute_ring_confidence,
    confidence_level,
)
from lensfit.types import FitResult, RegionOfInterest, RimEstimate, RingDetection


def _fit(rms=0.0, pairs=120, px_per_mm=8.0):
    pts = np.array([[0.0, 0.0], [10.0, 0.0], [10.0, 10.0]])
    return FitResult(placed_points=pts, px_per_mm=px_per_mm, rotation_deg=0.0,
                     origin=(5.0, 5.0), rms_px=rms, used_pairs=pairs)


def _rim(confidence=1.0, mirrored=False):
    return RimEstimate(ok=not mirrored, confidence=confidence, roi=RegionOfInterest(0, 0, 400, 300),
                       probe_y=150, top_y=60, bottom_y=220, inner_left_x=100, inner_right_x=300,
                       nasal_at_left=True, mirrored=mirrored)


def test_confidence_levels():
    assert confidence_level(0.9) == "high"
    assert confidence_level(0.85) == "medium"
    assert confidence_level(0.6) == "medium"
    assert confidence_level(0.59) == "low"


def test_ring_confidence():
    assert compute_ring_confidence(RingDetection(0, 0, 300.0, 300.0, 1.0)) == pytest.approx(1.0)
    assert compute_ring_confidence(RingDetection(0, 0, 330.0, 300.0, 1.0)) == pytest.approx(0.6)
    assert compute_ring_confidence(RingDetection(0, 0, 500.0, 300.0, 1.0)) == 0.0
    assert compute_ring_confidence(RingDetection(0, 0, 300.0, 0.0, 1.0)) == 0.0


def test_missing_fit_scores_zero():
    conf = compute_fit_confidence(None)
    assert conf["overall"] == 0.0
    assert conf["level"] == "low"


def test_fit_without_optional_stages():
    conf = compute_fit_confidence(_fit())
    assert conf["rim"] == 0.0
    assert conf["refine"] == 0.0
    assert conf["scale"] == 1.0
    assert conf["overall"] == pytest.approx(0.6)


def test_fit_components():
    conf = compute_fit_confidence(_fit(rms=10.0, pairs=60), rim=_rim(), observed_px_per_mm=8.0)
    assert conf["rms"] == pytest.approx(0.5)
    assert conf["pairs"] == pytest.approx(0.5)
    assert conf["rim"] == pytest.approx(1.0)
    assert conf["scale"] == pytest.approx(1.0)
    assert conf["overall"] == pytest.approx(0.2 + 0.15 + 0.075 + 0.15)


def test_scale_disagreement_and_mirrored_rim():
    conf = compute_fit_confidence(_fit(px_per_mm=8.6), rim=_rim(mirrored=True), observed_px_per_mm=8.0)
    assert conf["rim"] == pytest.approx(0.8)
    assert conf["scale"] == pytest.approx(1.0 - 0.075 / 0.15)
