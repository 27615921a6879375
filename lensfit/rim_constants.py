"""
Constants for the coarse rim detector.

Pixel quantities are ROI-local. Quantities ending in _MM are multiplied by a
pixels-per-mm guess before use.
"""

# =============================================================================
# ROI and Signal Requirements
# =============================================================================

MIN_ROI_W = 120
MIN_ROI_H = 90

# Fewer edge pixels than this in the ROI aborts detection
MIN_EDGE_NNZ = 50

# Peaks closer than this to the ROI sides are ignored
BORDER_GUARD_PX = 16


# =============================================================================
# Probe Row and Brow Rule
# =============================================================================

# Half-height of the row band summed around the probe row
BAND_HALF_PX = 14

# Top boundary must stay this far above the probe row
TOP_SEARCH_PAD = 10

# Bottom boundary search starts this far below the probe row
BOTTOM_SEARCH_PAD = 20

# Pad below the brow line: clamp(round(BROW_PAD_FRAC * h), BROW_PAD_MIN, BROW_PAD_MAX)
BROW_PAD_FRAC = 0.02
BROW_PAD_MIN = 6
BROW_PAD_MAX = 18

# Probe row never goes closer than this to the allowed top
PROBE_TOP_MARGIN = 2


# =============================================================================
# Scale Hypotheses
# =============================================================================

SCALE_MIN = 0.75
SCALE_MAX = 1.20
SCALE_STEP = 0.05

# Per-hypothesis px/mm is clamped to this range
PX_PER_MM_MIN = 3.5
PX_PER_MM_MAX = 8.0

# Without a guess: clamp(w / hbox * GUESS_FROM_ROI_K, GUESS_MIN, GUESS_MAX)
GUESS_FROM_ROI_K = 0.82
GUESS_MIN = 4.0
GUESS_MAX = 7.0

# Expected width never below this
MIN_EXPECTED_W_PX = 80.0

# Gap between midline and nasal rim: max(GAP_MIN_PX, GAP_FRAC * expected width)
GAP_MIN_PX = 18.0
GAP_FRAC = 0.10


# =============================================================================
# Left / Right Search
# =============================================================================

# Peak threshold as a fraction of the strongest column sum
PEAK_THR_FRAC = 0.22

# Seed window tolerance: clamp(round(LR_TOL_FRAC * expected width), MIN, MAX)
LR_TOL_FRAC = 0.32
LR_TOL_MIN_PX = 30
LR_TOL_MAX_PX = 180

# Temple scan starts beyond the expected temple edge by
# clamp(round(TEMPLE_MARGIN_FRAC * expected width), MIN, MAX)
TEMPLE_MARGIN_FRAC = 0.25
TEMPLE_MARGIN_MIN_PX = 24
TEMPLE_MARGIN_MAX_PX = 140

# Width ratio accepted by the directional scans
SCAN_RATIO_MIN = 0.85
SCAN_RATIO_MAX = 1.15

# Peak refinement half window
PEAK_REFINE_PX = 14

# Narrowest plausible inner width
MIN_INNER_W_PX = 60

# Final inner width / expected width band
W_RATIO_MIN = 0.90
W_RATIO_MAX = 1.25


# =============================================================================
# Rim Thickness
# =============================================================================

RIM_T_MM_MIN = 1.0
RIM_T_MM_MAX = 9.0
RIM_T_MM_FALLBACK = 2.5

# Rows sampled around the probe for the thickness estimate
THICKNESS_Y_OFFSETS = (-8, -4, 0, 4, 8, 14, 20)

# Minimum measurements before the median is trusted
THICKNESS_MIN_SAMPLES = 3

# Inner refinement: support window = clamp(max(6, round(0.3 * t)), 4, 40)
SUPPORT_TOL_FRAC = 0.30
SUPPORT_THR_FRAC = 0.80
PENALTY_SHIFT_NO_SUPPORT = 0.55
PENALTY_KEEP_NO_OUTER = 0.12


# =============================================================================
# Top / Bottom Lines
# =============================================================================

# Line search inset from the inner edges
LINE_INSET_PX = 8
COVERAGE_INSET_PX = 6

# Minimum span for a line search
MIN_LINE_SPAN_PX = 40

# Coverage threshold as fraction of the line maximum
LINE_THR_FRAC = 0.22

# Expected height (from VBOX) is used only above this
MIN_EXPECTED_H_PX = 60.0

# Inner height bounds: [max(MIN_H_PX, MIN_H_FRAC * h), MAX_H_FRAC * h]
MIN_H_PX = 70
MIN_H_FRAC = 0.18
MAX_H_FRAC = 0.92

# Height hypotheses further off than this are rejected
MAX_H_ERR_REL = 0.65


# =============================================================================
# Bottom Polyline
# =============================================================================

BOTTOM_POLY_STEP_X = 5
BOTTOM_POLY_BAND_Y = 10
BOTTOM_POLY_MIN_SPAN_PX = 50
BOTTOM_POLY_THR_FRAC = 0.35

# Tilt is fitted on the middle of the polyline (20%..80% of x)
TILT_MIN_POINTS = 8
TILT_MIN_FIT_POINTS = 6
TILT_RANSAC_RESIDUAL_PX = 2.0


# =============================================================================
# Confidence
# =============================================================================

CONF_W_WIDTH = 1.35
CONF_W_HEIGHT = 0.35
CONF_H_ERR_NORM = 0.35
CONF_W_POLY = 0.30
CONF_POLY_REF = 0.55
CONF_W_COV_BOTTOM = 0.10
CONF_W_COV_TOP = 0.02
CONF_COV_REF = 0.60
CONF_POLY_LOW = 0.22
CONF_POLY_LOW_FACTOR = 0.55

OK_CONF_MIN = 0.55


# =============================================================================
# Fellow-Eye Mirror
# =============================================================================

MIRROR_CONFIDENCE_FACTOR = 0.6
