"""
Per-angle radius calibration (bias table).

The bias table is a flat text file of N millimeter values, one per line,
with blank lines and '#' comments ignored. It is loaded once into an
immutable RadiusCalibration and passed explicitly to the regularizer.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union

import numpy as np

from lensfit.contour import rotate_radii
from lensfit.types import _frozen_array

logger = logging.getLogger(__name__)

DEFAULT_BIAS_SAMPLES = 800


@dataclass(frozen=True, eq=False)
class RadiusCalibration:
    """Immutable per-angle additive radius correction, in mm."""
    bias_mm: np.ndarray

    def __post_init__(self):
        bias = np.asarray(self.bias_mm, dtype=np.float64)
        if bias.ndim != 1 or bias.size == 0:
            raise ValueError(f"Bias table must be a non-empty 1-D series, got shape {bias.shape}")
        if not np.all(np.isfinite(bias)):
            raise ValueError("Bias table contains non-finite values")
        object.__setattr__(self, "bias_mm", _frozen_array(bias, np.float64))

    @property
    def n(self) -> int:
        return int(self.bias_mm.size)

    @property
    def mean_mm(self) -> float:
        return float(self.bias_mm.mean())

    def rotated(self, shift_steps: int) -> "RadiusCalibration":
        """Table rotated so out[i] = bias[(i - shift) mod N]."""
        if shift_steps % self.n == 0:
            return self
        return RadiusCalibration(rotate_radii(self.bias_mm, shift_steps))

    def correction_hundredths(self) -> np.ndarray:
        """Zero-mean per-angle correction in hundredths of mm."""
        return (self.bias_mm - self.mean_mm) * 100.0

    def apply(self, radii_hundredths: np.ndarray) -> np.ndarray:
        """
        Subtract the zero-mean bias from an integer hundredths series.

        Args:
            radii_hundredths: (N,) integer series

        Returns:
            Corrected int64 series, rounded half up and floored at 0
        """
        radii = np.asarray(radii_hundredths)
        if radii.shape != self.bias_mm.shape:
            raise ValueError(f"Radius series of length {radii.size} does not match bias table of {self.n}")
        corrected = np.floor(radii - self.correction_hundredths() + 0.5)
        return np.maximum(corrected, 0).astype(np.int64)


def parse_bias_lines(lines: Iterable[str], expected_n: int = DEFAULT_BIAS_SAMPLES) -> RadiusCalibration:
    """
    Build a calibration from text lines.

    Raises:
        ValueError: On a non-numeric line or a value count other than expected_n
    """
    values = []
    for lineno, line in enumerate(lines, start=1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        try:
            values.append(float(text))
        except ValueError:
            raise ValueError(f"Bias table line {lineno} is not a number: {text!r}")

    if len(values) != expected_n:
        raise ValueError(f"Bias table must have {expected_n} values, has {len(values)}")
    return RadiusCalibration(np.array(values, dtype=np.float64))


def load_bias_table(path: Union[str, Path], expected_n: int = DEFAULT_BIAS_SAMPLES,
                    shift_steps: int = 0) -> RadiusCalibration:
    """
    Load a bias table file.

    Args:
        path: Text file with one mm value per line
        expected_n: Required value count
        shift_steps: Optional angular rotation applied after loading

    Returns:
        RadiusCalibration
    """
    path = Path(path)
    with path.open("r", encoding="latin-1") as f:
        calibration = parse_bias_lines(f, expected_n)
    logger.debug(f"Loaded bias table {path.name}: n={calibration.n} mean={calibration.mean_mm:.4f}mm")
    return calibration.rotated(shift_steps)
