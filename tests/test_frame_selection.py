import cv2
import numpy as np
import pytest

from lensfit.frame_selection import (
    FrameStrategy,
    LaplacianVarianceScorer,
    TenengradScorer,
    resolve_frame_scorer,
    select_sharpest_frame,
)


def _checkerboard(size=128, cell=8):
    yy, xx = np.mgrid[0:size, 0:size]
    return (((yy // cell) + (xx // cell)) % 2 * 255).astype(np.uint8)


def test_sharp_frame_wins():
    sharp = _checkerboard()
    blurred = cv2.GaussianBlur(sharp, (0, 0), 3.0)
    result = select_sharpest_frame([blurred, sharp, blurred])
    assert result["index"] == 1
    assert result["top"] == [1]
    assert len(result["scores"]) == 3


def test_ties_keep_the_earlier_frame():
    frame = _checkerboard()
    result = select_sharpest_frame([frame, frame.copy(), frame.copy()], top_k=2)
    assert result["index"] == 0
    assert result["top"] == [0, 1]


def test_tenengrad_by_name_and_bgr_input():
    sharp = cv2.cvtColor(_checkerboard(), cv2.COLOR_GRAY2BGR)
    blurred = cv2.GaussianBlur(sharp, (0, 0), 3.0)
    result = select_sharpest_frame([blurred, sharp], strategy="tenengrad")
    assert result["index"] == 1


def test_tiny_and_flat_frames_score_zero():
    assert LaplacianVarianceScorer().score(np.zeros((4, 4), dtype=np.uint8)) == 0.0
    assert TenengradScorer().score(np.full((32, 32), 90, dtype=np.uint8)) == 0.0


def test_resolve_and_errors():
    assert isinstance(resolve_frame_scorer(FrameStrategy.TENENGRAD), TenengradScorer)
    with pytest.raises(ValueError):
        resolve_frame_scorer("sobel")
    with pytest.raises(ValueError):
        select_sharpest_frame([])
