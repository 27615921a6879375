import numpy as np
import pytest

from lensfit.measurements import (
    bridge_mm,
    compute_face_measurements,
    dnp_mm,
    fitting_height_mm,
    min_distance_to_outline,
    useful_diameter_mm,
)

RIGHT_BOX = (300.0, 250.0, 450.0, 350.0)
LEFT_BOX = (550.0, 250.0, 700.0, 350.0)


def test_dnp():
    assert dnp_mm((400.0, 300.0), 500.0, 5.0) == pytest.approx(20.0)
    assert dnp_mm((620.0, 300.0), 500.0, 5.0) == pytest.approx(24.0)


def test_bridge_is_order_independent_and_clamped():
    assert bridge_mm(RIGHT_BOX, LEFT_BOX, 5.0) == pytest.approx(20.0)
    assert bridge_mm(LEFT_BOX, RIGHT_BOX, 5.0) == pytest.approx(20.0)
    overlapping = (400.0, 250.0, 600.0, 350.0)
    assert bridge_mm(RIGHT_BOX, overlapping, 5.0) == 0.0


def test_fitting_height():
    assert fitting_height_mm((400.0, 300.0), RIGHT_BOX, 5.0) == pytest.approx(10.0)
    assert fitting_height_mm((400.0, 400.0), RIGHT_BOX, 5.0) == 0.0


def test_useful_diameter_prefers_outline():
    square = np.array([[370.0, 270.0], [430.0, 270.0], [430.0, 330.0], [370.0, 330.0]])
    assert min_distance_to_outline((400.0, 300.0), square) == pytest.approx(30.0)
    assert useful_diameter_mm((400.0, 300.0), 5.0, outline=square, box=RIGHT_BOX) == pytest.approx(12.0)
    assert useful_diameter_mm((400.0, 300.0), 5.0, outline=square[:1], box=RIGHT_BOX) == pytest.approx(20.0)
    assert useful_diameter_mm((400.0, 300.0), 5.0) is None


def test_binocular_measurements():
    m = compute_face_measurements(500.0, 5.0, right_pupil=(400.0, 300.0), left_pupil=(620.0, 300.0),
                                  right_box=RIGHT_BOX, left_box=LEFT_BOX)
    assert m.mode == "binocular"
    assert m.dnp_total_mm == pytest.approx(44.0)
    assert m.bridge_mm == pytest.approx(20.0)
    assert m.right.fitting_height_mm == pytest.approx(10.0)

    d = m.as_dict()
    assert d["right"]["dnp_mm"] == pytest.approx(20.0)
    assert d["left"]["useful_diameter_mm"] == pytest.approx(2.0 * 50.0 / 5.0)


def test_monocular_modes():
    right = compute_face_measurements(500.0, 5.0, right_pupil=(400.0, 300.0))
    assert right.mode == "right_only"
    assert right.left.dnp_mm is None
    assert right.dnp_total_mm is None
    assert right.bridge_mm is None

    left = compute_face_measurements(500.0, 5.0, left_pupil=(620.0, 300.0))
    assert left.mode == "left_only"
    assert left.left.dnp_mm == pytest.approx(24.0)


def test_invalid_inputs():
    with pytest.raises(ValueError):
        compute_face_measurements(500.0, 5.0)
    with pytest.raises(ValueError):
        compute_face_measurements(500.0, 0.0, right_pupil=(400.0, 300.0))
    with pytest.raises(ValueError):
        dnp_mm((400.0, 300.0), 500.0, float("nan"))
