"""
Constants for confidence scoring module.

This module contains thresholds and weights used in confidence calculation
for lens tracing and for reference contour fitting on a face.
"""

# =============================================================================
# Trace Confidence Constants
# =============================================================================

# Ring radius deviation (fraction of expected) that drives the ring score to 0
RING_MAX_RADIUS_DEVIATION = 0.25

# Laplacian standard deviation inside the ROI considered fully sharp
SHARPNESS_GOOD = 12.0

# Trace confidence component weights
TRACE_WEIGHT_RING = 0.20       # Ring detection: 20%
TRACE_WEIGHT_COVERAGE = 0.40   # Ray coverage: 40%
TRACE_WEIGHT_METHOD = 0.25     # Radial vs fallback: 25%
TRACE_WEIGHT_SHARPNESS = 0.15  # Sharpness: 15%


# =============================================================================
# Fit Confidence Constants
# =============================================================================

# Correspondence count considered fully supported
FIT_PAIRS_GOOD = 120

# Residual (px) that drives the rms score to 0
FIT_RMS_ZERO_PX = 20.0

# Scale disagreement (relative) that drives the scale score to 0
FIT_SCALE_ZERO_REL = 0.15

# Fit confidence component weights
FIT_WEIGHT_RIM = 0.20        # Rim detection: 20%
FIT_WEIGHT_RMS = 0.30        # Residual: 30%
FIT_WEIGHT_PAIRS = 0.15      # Correspondence support: 15%
FIT_WEIGHT_SCALE = 0.15      # Scale agreement: 15%
FIT_WEIGHT_REFINE = 0.20     # Sampling refinement: 20%

# Rim confidence is scaled down when the rim was mirrored from the fellow eye
MIRRORED_RIM_FACTOR = 0.8


# =============================================================================
# Confidence Levels
# =============================================================================

CONFIDENCE_LEVEL_HIGH_THRESHOLD = 0.85   # > 0.85 = high
CONFIDENCE_LEVEL_MEDIUM_THRESHOLD = 0.6  # >= 0.6 = medium, < 0.6 = low
