"""
Constants for the radial contour tracer.

Distances ending in _MM are converted to pixels with the caller's scale.
"""

# =============================================================================
# Sampling
# =============================================================================

# Output radius samples
N_RADII = 800

# Angular oversampling during the ray cast
OVERSAMPLING = 3

# Ray march step (px), outside to inside
RADIAL_STEP_PX = 0.8

# Hits are moved to the gradient-magnitude peak within +-REFINE_WINDOW_PX,
# sampled every REFINE_STEP_PX and fitted with a parabola over +-1 px
REFINE_WINDOW_PX = 2.0
REFINE_STEP_PX = 0.25
MAX_SUBPIXEL_OFFSET = 0.5
MIN_PARABOLA_DENOMINATOR = 1e-6

# Inner stop radius as a fraction of the interior ROI radius
R_MIN_FRAC = 0.35


# =============================================================================
# Calibration Ring
# =============================================================================

# Physical diameter of the reference ring
RING_DIAMETER_MM = 75.0

# Hough accumulator resolution ratio
HOUGH_DP = 1.2

# Minimum distance between circle centers (fraction of min(w, h))
HOUGH_MIN_DIST_FRAC = 0.6

# Canny high threshold used inside HoughCircles
HOUGH_PARAM1 = 160.0

# Accumulator threshold
HOUGH_PARAM2 = 38.0

# Radius search range (fraction of min(w, h))
HOUGH_MIN_R_FRAC = 0.15
HOUGH_MAX_R_FRAC = 0.49

# Candidate score = -|r - expected| * W_RADIUS - dist_to_center * W_CENTER
RING_W_RADIUS = 0.8
RING_W_CENTER = 0.2


# =============================================================================
# Interior ROI
# =============================================================================

# Interior disk radius = ring radius - margin
MARGIN_MM_INSIDE = 6.0
MIN_MARGIN_PX = 2.0
MIN_ROI_RADIUS_PX = 8.0

# Half-width of the excluded band around the ring
RING_BAND_MM = 3.0
MIN_RING_BAND_PX = 2.0

# Ray start is pulled in by max(RAY_START_INSET_MIN_PX, RAY_START_INSET_MM * px/mm)
RAY_START_INSET_MM = 1.0
RAY_START_INSET_MIN_PX = 1.5
MIN_RAY_START_PX = 4.0


# =============================================================================
# Preprocessing
# =============================================================================

CLAHE_CLIP = 2.0
CLAHE_TILES = 8

# Unsharp mask: gray * SHARPEN_AMOUNT + blur * SHARPEN_BLUR_WEIGHT
SHARPEN_SIGMA = 1.0
SHARPEN_AMOUNT = 1.5
SHARPEN_BLUR_WEIGHT = -0.5

BLUR_KSIZE = 5

# Highlight flattening; the default threshold is above 255 so it stays off
HIGHLIGHT_THR = 280.0
HIGHLIGHT_DILATE = 3
HIGHLIGHT_FILL_GRAY = 180.0

CANNY_LOW = 40
CANNY_HIGH = 120


# =============================================================================
# Series Cleaning
# =============================================================================

SMOOTH_WIN_MEDIAN = 5
SMOOTH_WIN_MEAN = 9

# Max radius change per fine angular step
MAX_JUMP_MM = 0.2

# A sample is an isolated spike if it differs from both neighbours by more
# than CONTINUITY_BIG_K * MAX_JUMP_MM while they agree within MAX_JUMP_MM
CONTINUITY_BIG_K = 1.5
CONTINUITY_ITERATIONS = 2


# =============================================================================
# Coverage and Fallback
# =============================================================================

MIN_COVERAGE = 0.60

# Contour fallback filters
FALLBACK_MIN_AREA = 10.0
FALLBACK_MAX_CENTER_FRAC = 0.40
FALLBACK_MIN_AREA_RATIO = 0.02
FALLBACK_MAX_AREA_RATIO = 0.85
FALLBACK_MAX_CIRCULARITY = 0.92
FALLBACK_MAX_POINTS = 2000


# =============================================================================
# Confidence
# =============================================================================

COVERAGE_HIGH = 0.80
CONFIDENCE_HIGH = 0.9
CONFIDENCE_MEDIUM = 0.7
CONFIDENCE_FALLBACK = 0.5
