import cv2
import numpy as np
import pytest

from lensfit.edge_map import (
    EdgeMapParams,
    brow_kill_row,
    build_annulus_edge_map,
    build_edge_map,
    compute_scharr_gradients,
    compute_thresholds,
    hysteresis,
    percentile_from_histogram,
)
from lensfit.types import RegionOfInterest


def _square_image():
    image = np.full((200, 200), 200, dtype=np.uint8)
    image[50:150, 50:150] = 60
    return image


def test_uniform_image_gives_empty_map():
    em = build_edge_map(np.full((120, 160), 90, dtype=np.uint8))
    assert em.is_empty
    assert em.stats.samples == 0


def test_edge_map_is_deterministic():
    image = _square_image()
    a = build_edge_map(image)
    b = build_edge_map(image.copy())
    assert not a.is_empty
    assert np.array_equal(a.edges, b.edges)
    assert a.stats == b.stats


def test_edges_follow_the_square_outline():
    em = build_edge_map(_square_image())
    ys, xs = np.nonzero(em.edges)
    near_x = (np.abs(xs - 49.5) <= 2) | (np.abs(xs - 149.5) <= 2)
    near_y = (np.abs(ys - 49.5) <= 2) | (np.abs(ys - 149.5) <= 2)
    assert np.all(near_x | near_y)


def test_bgr_input_matches_gray():
    gray = _square_image()
    bgr = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
    assert np.array_equal(build_edge_map(gray).edges, build_edge_map(bgr).edges)


def test_top_kill_and_border_are_respected():
    em = build_edge_map(_square_image(), border_px=60, top_kill_y=100)
    assert em.stats.top_kill_y == 100
    assert not np.any(em.edges[:100])
    assert not np.any(em.edges[:, :60])
    assert not np.any(em.edges[:, 140:])


def test_non_uint8_image_is_rejected():
    with pytest.raises(ValueError):
        build_edge_map(np.zeros((50, 50), dtype=np.float32))


def test_flatten_mask_shape_must_match():
    with pytest.raises(ValueError):
        build_edge_map(_square_image(), flatten_mask=np.zeros((10, 10), dtype=np.uint8))


def test_hysteresis_keeps_weak_pixels_connected_to_strong():
    strong = np.zeros((10, 10), dtype=bool)
    weak = np.zeros((10, 10), dtype=bool)
    strong[1, 1] = True
    weak[1, 2:6] = True
    weak[2, 6] = True  # diagonal neighbour still connects
    weak[8, 8] = True

    out = hysteresis(strong, weak)
    assert out[1, 1]
    assert np.all(out[1, 2:6])
    assert out[2, 6]
    assert not out[8, 8]
    assert np.all(out[strong])


def test_hysteresis_without_candidates():
    empty = np.zeros((5, 5), dtype=bool)
    assert not hysteresis(empty, empty).any()


def test_thresholds_are_capped_by_p95():
    params = EdgeMapParams()
    high, low = compute_thresholds(1000, 50, params)
    assert high == int(params.p95_cap_k * 50)
    assert low == max(params.thr_min, int(high * params.hyst_low_frac))

    high, low = compute_thresholds(10, 5, params)
    assert high == params.thr_min
    assert low == params.thr_min


def test_percentile_from_histogram():
    scores = np.arange(1, 1001)
    p = percentile_from_histogram(scores, 1000, 0.95)
    assert abs(p - 950) <= 2
    assert percentile_from_histogram(np.zeros(0), 0) == 0


def test_brow_kill_row():
    assert brow_kill_row(None, 500) == 0
    assert brow_kill_row(100.0, 500) == 82
    assert brow_kill_row(5.0, 500) == 0
    assert brow_kill_row(400.0, 500) == 150


def test_annulus_edges_stay_in_band():
    image = np.full((200, 300), 200, dtype=np.uint8)
    cv2.ellipse(image, (150, 100), (100, 60), 0, 0, 360, 60, -1)
    # Strong clutter far outside the band
    image[5:30, 5:30] = 0
    gx, gy = compute_scharr_gradients(image)

    bbox = RegionOfInterest(50, 40, 200, 120)
    em = build_annulus_edge_map(gx, gy, bbox, rim_thickness_px=4.0)
    assert em.stats.band_px == pytest.approx(7.0)
    assert not em.is_empty
    assert not np.any(em.edges[:35, :35])

    ys, xs = np.nonzero(em.edges)
    rho = np.sqrt(((xs + 0.5 - 150.0) / 100.0) ** 2 + ((ys + 0.5 - 100.0) / 60.0) ** 2)
    assert np.all(np.abs(rho - 1.0) < 0.15)


def test_annulus_rejects_mismatched_gradients():
    with pytest.raises(ValueError):
        build_annulus_edge_map(np.zeros((10, 10)), np.zeros((10, 12)), RegionOfInterest(0, 0, 10, 10), 3.0)
