"""
Constants for sampling refinement of a placed contour.

All distances are in pixels of the image being sampled.
"""

# =============================================================================
# Template Scoring (normal cross intensity difference)
# =============================================================================

# Arc length between samples along the contour
SAMPLE_STEP_PX = 2.0

# Each sample reads the image this far on both sides of the contour
NORMAL_SAMPLE_DIST_PX = 5.0

# Response counted as an inlier from here
THR_RESP = 8.0

# Candidates below half of this coverage score 0
MIN_COVERAGE = 0.35

# Median response that normalizes to 1
RESP_REF = 20.0

# Polylines shorter than this are not scored
MIN_TEMPLATE_POINTS = 6


# =============================================================================
# Candidate Grid
# =============================================================================

REFINE_DX_PX = 2
REFINE_DY_PX = 2
REFINE_SCALE_STEPS = (0.985, 1.0, 1.015)


# =============================================================================
# Geometric Scoring (first intensity step along the normal)
# =============================================================================

# Scan reach and step along each normal
GEOM_D_MAX_PX = 14.0
GEOM_STEP_PX = 1.0

# Step threshold = max(GEOM_MIN_GRAD, GEOM_THR_FRAC * median of per-point max steps)
GEOM_MIN_GRAD = 6.0
GEOM_THR_FRAC = 0.55

# Hits further than this from the contour are ignored
GEOM_MAX_HIT_DIST_PX = 12.0

# RMS hit distance that drives the score to 0
GEOM_RMS_REF_PX = 4.5

# Lowest fraction of the bottom half that is scored
GEOM_BOTTOM_KEEP_FRAC = 0.60

GEOM_MIN_POINTS = 8
