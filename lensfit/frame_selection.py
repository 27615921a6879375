"""
Sharpness scoring for picking the best frame of a burst.

This module handles:
- The FrameScorer interface and its built-in strategies
- Laplacian variance (the burst default) and Tenengrad energy
- Ranking a list of frames and keeping the sharpest
"""

import abc
import enum
import logging
from typing import Dict, List, Sequence, Tuple, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Frames smaller than this on either side score 0
MIN_FRAME_SIDE = 8

# Pixel stride of the Laplacian variance
LAPLACIAN_SUBSAMPLE = 2


class FrameStrategy(enum.Enum):
    LAPLACIAN_VARIANCE = "laplacian_variance"
    TENENGRAD = "tenengrad"


def _gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.ndim != 2:
        raise ValueError(f"Expected a 2-D or 3-channel frame, got shape {image.shape}")
    return image


class FrameScorer(abc.ABC):
    """Higher score = sharper frame."""

    @abc.abstractmethod
    def score(self, image: np.ndarray) -> float:
        ...


class LaplacianVarianceScorer(FrameScorer):
    """Variance of the 4-neighbour Laplacian on a subsampled grid."""

    def score(self, image):
        gray = _gray(image)
        h, w = gray.shape
        if w < MIN_FRAME_SIDE or h < MIN_FRAME_SIDE:
            return 0.0
        lap = cv2.Laplacian(gray, cv2.CV_64F, ksize=1)
        sub = lap[1:h - 1:LAPLACIAN_SUBSAMPLE, 1:w - 1:LAPLACIAN_SUBSAMPLE]
        if sub.size <= 10:
            return 0.0
        return float(sub.var())


class TenengradScorer(FrameScorer):
    """Mean squared Sobel gradient magnitude."""

    def score(self, image):
        gray = _gray(image)
        h, w = gray.shape
        if w < MIN_FRAME_SIDE or h < MIN_FRAME_SIDE:
            return 0.0
        gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
        return float(np.mean(gx * gx + gy * gy))


_SCORERS = {
    FrameStrategy.LAPLACIAN_VARIANCE: LaplacianVarianceScorer,
    FrameStrategy.TENENGRAD: TenengradScorer,
}


def resolve_frame_scorer(strategy: Union[FrameStrategy, str] = FrameStrategy.LAPLACIAN_VARIANCE) -> FrameScorer:
    return _SCORERS[FrameStrategy(strategy)]()


def select_sharpest_frame(
    frames: Sequence[np.ndarray],
    strategy: Union[FrameStrategy, str] = FrameStrategy.LAPLACIAN_VARIANCE,
    top_k: int = 1,
) -> Dict[str, object]:
    """
    Score every frame and pick the sharpest.

    Args:
        frames: Gray or BGR images
        strategy: Sharpness strategy
        top_k: How many indices to return in "top"

    Returns:
        Dictionary containing:
        - index: Index of the sharpest frame
        - scores: Score per frame, input order
        - top: Indices of the top_k frames, sharpest first
    """
    if len(frames) == 0:
        raise ValueError("select_sharpest_frame needs at least one frame")

    scorer = resolve_frame_scorer(strategy)
    scores: List[float] = [scorer.score(f) for f in frames]

    # Stable sort keeps the earlier frame on ties
    ranked: List[Tuple[int, float]] = sorted(enumerate(scores), key=lambda t: -t[1])
    top = [i for i, _ in ranked[:max(1, top_k)]]

    logger.debug(f"Frame selection[{FrameStrategy(strategy).value}]: best={top[0]} "
                 f"score={scores[top[0]]:.2f} of {len(frames)}")
    return {"index": top[0], "scores": scores, "top": top}
