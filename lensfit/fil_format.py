"""
FIL text format: writer and tolerant parser.

A FIL record stores one lens outline as N radii in hundredths of a
millimeter (reference convention: CCW, index 0 on +X, index N/4 on +Y)
plus box metrics. Files are Latin-1 text, key=value per line.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from lensfit.contour import box_metrics, reference_contour_mm
from lensfit.types import PolarContour

logger = logging.getLogger(__name__)

DEFAULT_N = 800
VALUES_PER_LINE = 8
MANUFACTURER_TAG = "MEDIRDNP"
ENCODING = "latin-1"

# R values at or above this are hundredths of a millimeter, below are mm
HUNDREDTHS_THRESHOLD = 200.0

_R_LINE = re.compile(r"(?m)^\s*R\s*=\s*(.+)$")
_TOKEN_SPLIT = re.compile(r"[;,\s]+")
_TRCFMT = re.compile(r"(?im)^\s*TRCFMT\s*=\s*\d+\s*;\s*(\d+)")
_JOB = re.compile(r'(?im)^\s*JOB\s*=\s*"?([^"\r\n]*)"?')


@dataclass(frozen=True, eq=False)
class FilRecord:
    """Parsed FIL content, radii in millimeters."""
    radii_mm: np.ndarray
    n: int
    job_id: Optional[str] = None
    hbox_mm: Optional[float] = None
    vbox_mm: Optional[float] = None
    fed_mm: Optional[float] = None
    circ_mm: Optional[float] = None

    def contour(self) -> PolarContour:
        return reference_contour_mm(self.radii_mm)

    def hundredths(self) -> np.ndarray:
        return np.floor(np.asarray(self.radii_mm, dtype=np.float64) * 100.0 + 0.5).astype(np.int64)


def _mm_value(raw: float) -> float:
    return raw / 100.0 if raw >= HUNDREDTHS_THRESHOLD else raw


def _mm_field(text: str, name: str) -> Optional[float]:
    """First NAME=<number> anywhere in the text. Box fields are always mm."""
    match = re.search(rf"(?i)\b{name}\s*=\s*([-+]?\d+(?:\.\d+)?)", text)
    if match is None:
        return None
    return float(match.group(1))


# =============================================================================
# Writer
# =============================================================================

def format_fil(radii_hundredths: np.ndarray, job_id: str) -> str:
    """
    Build FIL text from an integer hundredths-of-mm reference series.

    Box metrics are recomputed from the radii so they always agree with them.

    Args:
        radii_hundredths: (N,) integer radii, reference convention
        job_id: Job identifier written to JOB and FRAM

    Returns:
        FIL text with trailing newline
    """
    radii = np.asarray(radii_hundredths)
    if radii.ndim != 1 or radii.size == 0:
        raise ValueError(f"FIL radii must be a non-empty 1-D series, got shape {radii.shape}")
    if np.any(radii < 0):
        raise ValueError("FIL radii must be non-negative")
    values = np.rint(radii).astype(np.int64)

    geo = box_metrics(values / 100.0)

    lines = [
        "REQ=FIL",
        f'JOB="{job_id}"',
        "STATUS=0",
        f"TRCFMT=1;{values.size};E;R;D",
    ]
    for start in range(0, values.size, VALUES_PER_LINE):
        chunk = values[start:start + VALUES_PER_LINE]
        lines.append("R=" + "".join(f"{int(v)};" for v in chunk))
    lines += [
        "",
        f"CIRC={geo['circ_mm']:.2f};?",
        f"FED={geo['fed_mm']:.2f};?",
        f"HBOX={geo['hbox_mm']:.2f};?",
        f"VBOX={geo['vbox_mm']:.2f};?",
        "",
        f"FMFR={MANUFACTURER_TAG}",
        f"FRAM={job_id}",
        f"EYESIZ={geo['fed_mm']:.2f}",
        "",
    ]
    return "\n".join(lines) + "\n"


def write_fil(path: Union[str, Path], radii_hundredths: np.ndarray, job_id: str) -> Path:
    """Write FIL text to disk (Latin-1)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(format_fil(radii_hundredths, job_id).encode(ENCODING))
    logger.debug(f"FIL written: {path} ({len(radii_hundredths)} radii)")
    return path


# =============================================================================
# Parser
# =============================================================================

def parse_fil(text: str, expected_n: Optional[int] = None) -> FilRecord:
    """
    Parse FIL text.

    R values may be hundredths integers or mm floats; values >= 200 are taken
    as hundredths. HBOX/VBOX/FED/CIRC are plain mm and may appear
    anywhere. Missing radii are padded with the last value, extra radii
    ignored.

    Args:
        text: FIL content
        expected_n: Sample count; TRCFMT or 800 when None

    Returns:
        FilRecord with radii in mm

    Raises:
        ValueError: If the text holds no radius values
    """
    if expected_n is None:
        trc = _TRCFMT.search(text)
        expected_n = int(trc.group(1)) if trc else DEFAULT_N
    if expected_n <= 0:
        raise ValueError(f"expected_n must be positive, got {expected_n}")

    values = []
    for match in _R_LINE.finditer(text):
        for token in _TOKEN_SPLIT.split(match.group(1)):
            if not token:
                continue
            try:
                raw = float(token)
            except ValueError:
                continue
            values.append(_mm_value(raw))
            if len(values) >= expected_n:
                break
        if len(values) >= expected_n:
            break

    if not values:
        raise ValueError("FIL text contains no R= radius values")

    if len(values) < expected_n:
        logger.warning(f"FIL has {len(values)} radii, padding to {expected_n} with the last value")
        values += [values[-1]] * (expected_n - len(values))

    job = _JOB.search(text)
    return FilRecord(
        radii_mm=np.array(values, dtype=np.float64),
        n=expected_n,
        job_id=job.group(1).strip() if job else None,
        hbox_mm=_mm_field(text, "HBOX"),
        vbox_mm=_mm_field(text, "VBOX"),
        fed_mm=_mm_field(text, "FED"),
        circ_mm=_mm_field(text, "CIRC"),
    )


def read_fil(path: Union[str, Path], expected_n: Optional[int] = None) -> FilRecord:
    return parse_fil(Path(path).read_bytes().decode(ENCODING), expected_n)
