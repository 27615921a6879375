"""
Shared visualization constants for debug output across all stages.

This module provides centralized configuration for fonts, colors, sizes, and
layout used in debug visualizations of the lens pipeline.

Used by:
- debug_observer.py - Edge, trace, rim, fit and refinement overlays

Example usage:
    from lensfit.viz_constants import Color, FontScale, FONT_FACE

    cv2.putText(img, "conf=0.82", (10, 24), FONT_FACE,
                FontScale.BODY, Color.WHITE, FontThickness.BODY, cv2.LINE_AA)
"""

import cv2

# ============================================================================
# FONT SETTINGS
# ============================================================================

FONT_FACE = cv2.FONT_HERSHEY_SIMPLEX


class FontScale:
    """
    Font scale constants for text hierarchy levels.

    Eye ROIs are a few hundred pixels wide, so these are smaller than the
    scales used on full frames.
    """
    TITLE = 1.2
    BODY = 0.6


class FontThickness:
    TITLE = 2
    BODY = 1

    # Outline thickness (draw first for outline effect)
    TITLE_OUTLINE = 4
    BODY_OUTLINE = 3


# ============================================================================
# COLORS (BGR format for OpenCV)
# ============================================================================

class Color:
    """
    Standard colors used across all visualizations.

    All colors in BGR format (Blue, Green, Red) as required by OpenCV.
    """
    WHITE = (255, 255, 255)
    BLACK = (0, 0, 0)
    RED = (0, 0, 255)
    GREEN = (0, 255, 0)
    BLUE = (255, 0, 0)
    CYAN = (255, 255, 0)
    YELLOW = (0, 255, 255)
    MAGENTA = (255, 0, 255)
    ORANGE = (0, 128, 255)

    # Semantic colors
    EDGE = GREEN             # Edge map pixels
    RING = CYAN              # Calibration ring
    INTERIOR_ROI = YELLOW    # Interior disk of the ring
    TRACE = MAGENTA          # Traced lens outline
    RIM_BOX = ORANGE         # Coarse rim box
    PROBE_ROW = YELLOW       # Rim probe row
    BOTTOM_POLYLINE = CYAN   # Bottom polyline samples
    FIT = MAGENTA            # Placed reference contour
    SEED = RED               # Arc-fit seed origin
    FIT_ORIGIN = CYAN        # Solved origin
    REFINED = GREEN          # Refined contour

    TEXT_PRIMARY = WHITE
    TEXT_SUCCESS = GREEN
    TEXT_ERROR = RED


# ============================================================================
# DRAWING SIZES
# ============================================================================

class Size:
    """Size constants in pixels."""
    POINT_RADIUS = 2
    MARKER_SIZE = 10
    LINE_THICK = 2
    LINE_NORMAL = 1


# ============================================================================
# LAYOUT CONSTANTS
# ============================================================================

class Layout:
    TEXT_OFFSET_X = 8
    TEXT_FIRST_Y = 20
    LINE_HEIGHT = 20

    # Debug images are downsampled above this size
    MAX_SAVE_DIM = 1920
    PNG_COMPRESSION = 6


def put_outlined_text(image, text, position, font_scale=FontScale.BODY, color=Color.TEXT_PRIMARY):
    """Draw text with a black outline for visibility on any background."""
    thickness = FontThickness.TITLE if font_scale >= FontScale.TITLE else FontThickness.BODY
    outline = FontThickness.TITLE_OUTLINE if font_scale >= FontScale.TITLE else FontThickness.BODY_OUTLINE
    cv2.putText(image, text, position, FONT_FACE, font_scale, Color.BLACK, outline, cv2.LINE_AA)
    cv2.putText(image, text, position, FONT_FACE, font_scale, color, thickness, cv2.LINE_AA)


__all__ = [
    'FONT_FACE',
    'FontScale',
    'FontThickness',
    'Color',
    'Size',
    'Layout',
    'put_outlined_text',
]
