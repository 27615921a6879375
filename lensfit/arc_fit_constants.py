"""
Constants for arc-fit placement of a reference contour on an ROI edge map.
"""

# =============================================================================
# Inner Polygon
# =============================================================================

# Reference contour is the outer lens edge; the rim edge sits this far inside
# on every side
INNER_MARGIN_MM_PER_SIDE = 1.0

# Per-axis shrink never goes below this fraction of HBOX / VBOX
MIN_INNER_SHRINK = 0.80

# Fewer polygon points than this aborts the fit
MIN_POLYGON_POINTS = 10


# =============================================================================
# Correspondences
# =============================================================================

# Angles measured from the nasal direction, Y up; this range is skipped
EXCLUDE_DEG_FROM = 40.0
EXCLUDE_DEG_TO = 140.0

# Angular step between correspondence rays
STEP_DEG = 2.0

# Image search window along each ray, relative to the predicted radius
R_SEARCH_REL_LO = 0.70
R_SEARCH_REL_HI = 1.35

# Search window never starts closer than this to the origin
MIN_SEARCH_T_PX = 10.0

# ... nor extends past this fraction of the shorter ROI side
MAX_SEARCH_FRAC = 0.60

# Search step along a ray (px)
SEARCH_STEP_PX = 1.0

# Graded edge support: binary edges blurred with this sigma (px), scaled so
# the strongest edge in the ROI is 1
EDGE_SUPPORT_SIGMA = 1.5

# Score of a hit = |t - r_pred| - RAY_LAMBDA * edge_weight,
# edge_weight = support ** EDGE_POW
RAY_LAMBDA = 0.85
EDGE_POW = 1.4

# Pair weight = W_MIN + (1 - W_MIN) * edge_weight
W_MIN = 0.10

MIN_PAIRS = 50


# =============================================================================
# Solution Checks
# =============================================================================

MAX_ROTATION_DEG = 25.0

# Relative agreement required with an independently observed scale
TOL_SCALE_REL = 0.15

# Residual budget (px)
RMS_MAX_PX = 20.0

# Clamp for observed / fixed / guessed scales
PX_PER_MM_MIN = 2.5
PX_PER_MM_MAX = 20.0

# Edge maps sparser than this are not worth fitting
MIN_EDGE_DENSITY = 0.00015

# Bottom anchor shifts below this are skipped
ANCHOR_MIN_SHIFT_PX = 0.25


# =============================================================================
# Iterations
# =============================================================================

DEFAULT_ITERATIONS = 2
MAX_ITERATIONS = 3
