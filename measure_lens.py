#!/usr/bin/env python3
"""
Lens Contour Measurement Tool

Traces an eyeglass lens photographed on a calibration ring into a FIL file,
or fits a stored FIL contour onto the rims of a face photo to derive
pupillary distances, bridge and fitting heights.

Usage:
    python measure_lens.py trace --input lens.jpg --px-per-mm 10 --fil lens.fil --output trace.json
    python measure_lens.py fit --input face.jpg --landmarks face.json --fil lens.fil --output fit.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from lensfit.calibration import load_bias_table
from lensfit.fil_format import read_fil, write_fil
from lensfit.frame_selection import FrameStrategy, select_sharpest_frame
from lensfit.pipeline import FaceLandmarks, fit_face, trace_lens_photo
from lensfit.sampling_refiner import ScoringStrategy

SUPPORTED_SUFFIXES = [".jpg", ".jpeg", ".png"]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Trace eyeglass lenses into FIL files and fit FIL contours onto face photos.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python measure_lens.py trace --input lens.jpg --px-per-mm 10 --fil lens.fil --output trace.json
    python measure_lens.py trace --input lens.jpg --px-per-mm 10 --fil lens.fil --bias bias.txt --job J42
    python measure_lens.py fit --input face.jpg --landmarks face.json --fil lens.fil --output fit.json
    python measure_lens.py fit --input f1.jpg f2.jpg f3.jpg --landmarks face.json --fil lens.fil --output fit.json
        """,
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # Lens trace
    trace = sub.add_parser("trace", help="Trace a lens photo into a FIL file")
    trace.add_argument(
        "--input",
        type=str,
        required=True,
        help="Path to lens photo (JPG/PNG)",
    )
    trace.add_argument(
        "--px-per-mm",
        type=float,
        required=True,
        help="Scale of the lens photo in pixels per millimeter",
    )
    trace.add_argument(
        "--fil",
        type=str,
        required=True,
        help="Path to write the FIL file",
    )
    trace.add_argument(
        "--output",
        type=str,
        default=None,
        help="Path to output JSON report",
    )
    trace.add_argument(
        "--bias",
        type=str,
        default=None,
        help="Per-angle radius bias table (one mm value per line)",
    )
    trace.add_argument(
        "--job",
        type=str,
        default="LENS",
        help="Job identifier written into the FIL (default: LENS)",
    )
    trace.add_argument(
        "--debug-dir",
        type=str,
        default=None,
        help="Directory to save debug images",
    )

    # Face fit
    fit = sub.add_parser("fit", help="Fit a FIL contour onto a face photo")
    fit.add_argument(
        "--input",
        type=str,
        nargs="+",
        required=True,
        help="Face photo(s); with several frames the sharpest is used",
    )
    fit.add_argument(
        "--landmarks",
        type=str,
        required=True,
        help="Landmark JSON (midline, eye ROIs, pupils, brows)",
    )
    fit.add_argument(
        "--fil",
        type=str,
        required=True,
        help="FIL file of the frame",
    )
    fit.add_argument(
        "--output",
        type=str,
        required=True,
        help="Path to output JSON report",
    )
    fit.add_argument(
        "--iterations",
        type=int,
        default=2,
        choices=[1, 2, 3],
        help="Arc-fit iterations (default: 2)",
    )
    fit.add_argument(
        "--no-refine",
        action="store_true",
        help="Skip the sampling refinement",
    )
    fit.add_argument(
        "--scoring",
        type=str,
        default=ScoringStrategy.TEMPLATE.value,
        choices=[s.value for s in ScoringStrategy],
        help="Refinement scoring strategy (default: template)",
    )
    fit.add_argument(
        "--frame-strategy",
        type=str,
        default=FrameStrategy.LAPLACIAN_VARIANCE.value,
        choices=[s.value for s in FrameStrategy],
        help="Sharpness measure for picking among several frames",
    )
    fit.add_argument(
        "--debug-dir",
        type=str,
        default=None,
        help="Directory to save debug images",
    )

    return parser.parse_args(argv)


def validate_input(input_path: str) -> Optional[str]:
    """
    Validate input file exists and is a supported image format.

    Returns:
        Error message if validation fails, None if valid
    """
    path = Path(input_path)

    if not path.exists():
        return f"Input file not found: {input_path}"

    if not path.is_file():
        return f"Input path is not a file: {input_path}"

    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        return f"Unsupported image format: {suffix}. Use JPG or PNG."

    return None


def load_image(input_path: str) -> Optional[np.ndarray]:
    """Load a BGR image, None if it cannot be decoded."""
    return cv2.imread(input_path)


def save_output(output: Dict[str, Any], output_path: str) -> None:
    """Save output dictionary to JSON file."""
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        json.dump(output, f, indent=2)


def run_trace(args: argparse.Namespace) -> int:
    error = validate_input(args.input)
    if error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    image = load_image(args.input)
    if image is None:
        print(f"Error: Failed to load image: {args.input}", file=sys.stderr)
        return 1
    print(f"Loaded image: {args.input} ({image.shape[1]}x{image.shape[0]})")

    calibration = None
    if args.bias:
        try:
            calibration = load_bias_table(args.bias)
        except (OSError, ValueError) as e:
            print(f"Error: Failed to load bias table: {e}", file=sys.stderr)
            return 1
        print(f"Bias table loaded: {calibration.n} samples, mean={calibration.mean_mm:.3f}mm")

    result = trace_lens_photo(image, args.px_per_mm, calibration, job_id=args.job, debug_dir=args.debug_dir)

    if result["radii_hundredths"] is not None:
        fil_path = write_fil(args.fil, np.asarray(result["radii_hundredths"]), args.job)
        print(f"Trace: method={result['method']} coverage={result['coverage']:.2f}")
        m = result["metrics"]
        print(f"Box: HBOX={m['hbox_mm']:.2f}mm VBOX={m['vbox_mm']:.2f}mm FED={m['fed_mm']:.2f}mm")
        print(f"FIL saved to: {fil_path}")

    if args.output:
        report = {k: v for k, v in result.items() if k != "fil_text"}
        save_output(report, args.output)
        print(f"Results saved to: {args.output}")

    if result["fail_reason"]:
        print(f"Trace failed: {result['fail_reason']}")
        return 1
    print(f"Confidence: {result['confidence']['overall']:.3f} ({result['confidence']['level']})")
    return 0


def run_fit(args: argparse.Namespace) -> int:
    frames = []
    for path in args.input:
        error = validate_input(path)
        if error:
            print(f"Error: {error}", file=sys.stderr)
            return 1
        image = load_image(path)
        if image is None:
            print(f"Error: Failed to load image: {path}", file=sys.stderr)
            return 1
        frames.append(image)

    index = 0
    if len(frames) > 1:
        selection = select_sharpest_frame(frames, args.frame_strategy)
        index = selection["index"]
        print(f"Sharpest frame: {args.input[index]} (score={selection['scores'][index]:.1f})")
    image = frames[index]
    print(f"Loaded image: {args.input[index]} ({image.shape[1]}x{image.shape[0]})")

    try:
        with open(args.landmarks, "r") as f:
            landmarks = FaceLandmarks.from_dict(json.load(f))
        reference = read_fil(args.fil)
    except (OSError, ValueError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"FIL loaded: {reference.n} radii, job={reference.job_id}")

    result = fit_face(
        image,
        landmarks,
        reference,
        iterations=args.iterations,
        refine=not args.no_refine,
        scoring=ScoringStrategy(args.scoring),
        debug_dir=args.debug_dir,
    )
    result["frame"] = args.input[index]

    save_output(result, args.output)
    print(f"Results saved to: {args.output}")

    for name in ("right", "left"):
        eye = result[name]
        if eye["fit"] is not None:
            print(f"{name.capitalize()} eye: px/mm={eye['fit']['px_per_mm']:.3f} "
                  f"rms={eye['fit']['rms_px']:.2f}px confidence={eye['confidence']['overall']:.3f}")
        else:
            print(f"{name.capitalize()} eye: not fitted ({eye['fail_reason']})")

    if result["fail_reason"]:
        print(f"Fit failed: {result['fail_reason']}")
        return 1

    m = result["measurements"]
    if m is not None:
        print(f"DNP: right={m['right']['dnp_mm']} left={m['left']['dnp_mm']} total={m['dnp_total_mm']}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command == "trace":
        return run_trace(args)
    return run_fit(args)


if __name__ == "__main__":
    sys.exit(main())
