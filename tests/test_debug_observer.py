import numpy as np

from lensfit.debug_observer import DebugObserver, draw_edge_overlay


def test_save_stage_numbers_repeats(tmp_path):
    observer = DebugObserver(str(tmp_path / "debug"))
    image = np.zeros((20, 30, 3), dtype=np.uint8)
    observer.save_stage("04_rim_estimate", image)
    observer.save_stage("04_rim_estimate", image)
    assert (tmp_path / "debug" / "04_rim_estimate.png").exists()
    assert (tmp_path / "debug" / "04_rim_estimate_1.png").exists()


def test_empty_images_are_skipped(tmp_path):
    observer = DebugObserver(str(tmp_path))
    observer.save_stage("empty", np.zeros((0, 0), dtype=np.uint8))
    observer.draw_and_save("none", None, draw_edge_overlay)
    assert list(tmp_path.iterdir()) == []


def test_edge_overlay_is_color():
    gray = np.full((10, 10), 100, dtype=np.uint8)
    edges = np.zeros((10, 10), dtype=np.uint8)
    edges[5, :] = 255
    vis = draw_edge_overlay(gray, edges)
    assert vis.shape == (10, 10, 3)
    assert not np.array_equal(vis[5, 0], vis[0, 0])
