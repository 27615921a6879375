"""
Constants for the directional edge map builder.

This module contains the gradient scoring weights and thresholds used by
both the full-frame and the annulus edge map modes.
"""

# =============================================================================
# Directional Score Constants
# =============================================================================

# Cross-axis penalty: score = max(|gy| - K_H*|gx|, |gx| - K_V*|gy|)
# Diagonal texture scores low, horizontal/vertical rim structure scores high
K_H = 0.60
K_V = 0.60

# Direction quantization ratios (x100 integer arithmetic)
# |gy|/|gx| <= tan(22.5deg) -> horizontal gradient bin
DIR_TAN_LOW_X100 = 41
# |gy|/|gx| >= tan(67.5deg) -> vertical gradient bin
DIR_TAN_HIGH_X100 = 241


# =============================================================================
# Threshold Constants
# =============================================================================

# High threshold as fraction of the maximum score
EDGE_THR_FRAC = 0.16

# Absolute floor for both thresholds
EDGE_THR_MIN = 6

# Low threshold as fraction of the high threshold
HYST_LOW_FRAC = 0.50

# High threshold cap relative to the 95th percentile score
P95_CAP_K = 1.10

# Percentile used for the adaptive cap
SCORE_PERCENTILE = 0.95

# Histogram resolution for the percentile estimate
HIST_BINS = 2048


# =============================================================================
# Signal Sufficiency Constants
# =============================================================================

# Minimum pixels with positive score before thresholds are meaningful
MIN_VALID_SAMPLES = 256

# Border exclusion is capped at this fraction of min(width, height)
MAX_BORDER_FRAC = 1.0 / 3.0


# =============================================================================
# Brow Kill Constants
# =============================================================================

# Rows killed above brow bottom minus this margin
BROW_KILL_MARGIN_PX = 18

# Kill row never goes below this fraction of image height
BROW_KILL_MAX_FRAC = 0.30


# =============================================================================
# Annulus Mode Constants
# =============================================================================

# Band half-width = clamp(BAND_K_T * rim_thickness, BAND_MIN_PX, BAND_MAX_PX)
BAND_MIN_PX = 6.0
BAND_MAX_PX = 42.0
BAND_K_T = 1.75

# Gradient must lie within this angle of the ellipse normal
DIR_MAX_ANGLE_DEG = 25.0
