"""
Lens contour acquisition and reference fitting.
"""

from .edge_map import build_edge_map, build_annulus_edge_map
from .radial_tracer import trace_lens
from .radius_regularizer import regularize_radii
from .rim_detector import detect_rim, mirror_rim_estimate
from .arc_fitter import place_reference, fit_arc
from .sampling_refiner import refine_placement
from .fil_format import format_fil, parse_fil, read_fil, write_fil
from .calibration import load_bias_table
from .pipeline import trace_lens_photo, fit_eye, fit_face

__all__ = [
    "build_edge_map",
    "build_annulus_edge_map",
    "trace_lens",
    "regularize_radii",
    "detect_rim",
    "mirror_rim_estimate",
    "place_reference",
    "fit_arc",
    "refine_placement",
    "format_fil",
    "parse_fil",
    "read_fil",
    "write_fil",
    "load_bias_table",
    "trace_lens_photo",
    "fit_eye",
    "fit_face",
]
