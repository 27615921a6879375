"""
Constants for the radius regularizer and the outline-to-radii conversion.

All radius quantities are in hundredths of a millimeter.
"""

# =============================================================================
# Regularizer Stages
# =============================================================================

# Circular median window used to kill isolated spikes (odd)
DESPIKE_WIN = 5

# Circular moving-average window, used before and after the clamp (odd)
SMOOTH_WIN = 7

# Diff clamp limit = max(CLAMP_MIN_HUND, CLAMP_K * MAD(|diff|))
CLAMP_K = 7.0

# Minimum clamp limit (0.12 mm)
CLAMP_MIN_HUND = 12

# MAD floor so a perfectly smooth series still gets a usable limit
MAD_FLOOR = 1.0


# =============================================================================
# Outline Conversion
# =============================================================================

# Output sample count
N_SAMPLES = 800

# Closed outline is resampled to this many points by arc length
RESAMPLE_ARC = 1600

# Circular smoothing window applied to the resampled outline (odd)
SMOOTH_WIN_POLY = 9
