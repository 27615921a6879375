import math

import numpy as np
import pytest

from lensfit.calibration import load_bias_table, parse_bias_lines
from lensfit.contour import box_metrics
from lensfit.fil_format import format_fil, parse_fil, read_fil, write_fil


def _radii_hundredths(n=800):
    theta = 2.0 * math.pi * np.arange(n) / n
    return np.floor(2200.0 + 300.0 * np.cos(2.0 * theta) + 0.5).astype(np.int64)


# =============================================================================
# FIL
# =============================================================================

def test_format_layout():
    radii = _radii_hundredths()
    text = format_fil(radii, "J42")
    lines = text.splitlines()

    assert lines[0] == "REQ=FIL"
    assert 'JOB="J42"' in lines
    assert "TRCFMT=1;800;E;R;D" in lines
    r_lines = [line for line in lines if line.startswith("R=")]
    assert len(r_lines) == 100
    assert r_lines[0] == "R=" + "".join(f"{v};" for v in radii[:8])
    assert "FMFR=MEDIRDNP" in lines
    assert "FRAM=J42" in lines
    assert text.endswith("\n")


def test_format_then_parse_hundredths():
    radii = _radii_hundredths()
    rec = parse_fil(format_fil(radii, "J42"))

    assert rec.n == 800
    assert rec.job_id == "J42"
    assert np.array_equal(rec.hundredths(), radii)

    geo = box_metrics(radii / 100.0)
    assert rec.hbox_mm == pytest.approx(geo["hbox_mm"], abs=0.006)
    assert rec.vbox_mm == pytest.approx(geo["vbox_mm"], abs=0.006)
    assert rec.fed_mm == pytest.approx(geo["fed_mm"], abs=0.006)


def test_box_fields_of_a_large_lens_stay_in_mm():
    theta = 2.0 * math.pi * np.arange(800) / 800
    radii = np.floor(3400.0 + 200.0 * np.cos(2.0 * theta) + 0.5).astype(np.int64)
    text = format_fil(radii, "BIG")
    rec = parse_fil(text)

    geo = box_metrics(radii / 100.0)
    assert geo["circ_mm"] > 200.0
    assert f"CIRC={geo['circ_mm']:.2f};?" in text.splitlines()
    assert rec.circ_mm == pytest.approx(geo["circ_mm"], abs=0.006)
    assert rec.fed_mm == pytest.approx(72.0, abs=0.006)
    assert rec.hbox_mm == pytest.approx(geo["hbox_mm"], abs=0.006)
    assert rec.vbox_mm == pytest.approx(geo["vbox_mm"], abs=0.006)
    assert np.array_equal(rec.hundredths(), radii)


def test_parse_millimeter_radii_and_hbox_anywhere():
    text = "\n".join([
        "HBOX=50.12;?",
        "TRCFMT=1;8;E;R;D",
        "R=20.5;21.0;21.5;22.0",
        "R=22.5;23.0;23.5;24.0",
        "VBOX=38.40;?",
    ])
    rec = parse_fil(text)
    assert rec.n == 8
    assert np.allclose(rec.radii_mm, [20.5, 21.0, 21.5, 22.0, 22.5, 23.0, 23.5, 24.0])
    assert rec.hbox_mm == pytest.approx(50.12)
    assert rec.vbox_mm == pytest.approx(38.40)
    assert rec.job_id is None


def test_parse_pads_missing_and_ignores_extra_radii():
    rec = parse_fil("R=2000;2100;2200", expected_n=6)
    assert np.allclose(rec.radii_mm, [20.0, 21.0, 22.0, 22.0, 22.0, 22.0])

    rec = parse_fil("R=2000;2100;2200;2300;2400", expected_n=3)
    assert np.allclose(rec.radii_mm, [20.0, 21.0, 22.0])


def test_parse_tolerates_separators_and_junk_tokens():
    rec = parse_fil("R= 2000, 2100 ;x; 2200;2300", expected_n=4)
    assert np.allclose(rec.radii_mm, [20.0, 21.0, 22.0, 23.0])


def test_parse_without_radii_fails():
    with pytest.raises(ValueError):
        parse_fil('REQ=FIL\nJOB="X"\nHBOX=50.00;?\n')


def test_format_rejects_negative_radii():
    with pytest.raises(ValueError):
        format_fil(np.array([100, -1, 100]), "X")


def test_write_and_read_file(tmp_path):
    radii = _radii_hundredths()
    path = write_fil(tmp_path / "out" / "lens.fil", radii, "JOB-7")
    rec = read_fil(path)
    assert rec.job_id == "JOB-7"
    assert np.array_equal(rec.hundredths(), radii)


# =============================================================================
# Bias table
# =============================================================================

def test_parse_bias_lines_skips_comments():
    lines = ["# bias table", "", "0.10", "0.00", "-0.10", "0.00"]
    cal = parse_bias_lines(lines, expected_n=4)
    assert cal.n == 4
    assert cal.mean_mm == pytest.approx(0.0)
    assert np.allclose(cal.correction_hundredths(), [10.0, 0.0, -10.0, 0.0])


def test_parse_bias_lines_rejects_wrong_count_and_text():
    with pytest.raises(ValueError):
        parse_bias_lines(["0.1", "0.2"], expected_n=3)
    with pytest.raises(ValueError):
        parse_bias_lines(["0.1", "abc", "0.2"], expected_n=3)


def test_bias_apply_is_zero_mean():
    cal = parse_bias_lines(["0.15", "0.05", "0.05", "0.15"], expected_n=4)
    out = cal.apply(np.array([1000, 1000, 1000, 1000]))
    assert np.array_equal(out, [995, 1005, 1005, 995])
    with pytest.raises(ValueError):
        cal.apply(np.array([1000, 1000]))


def test_load_bias_table_with_shift(tmp_path):
    path = tmp_path / "bias.txt"
    path.write_text("0.1\n0.2\n0.3\n0.4\n")
    cal = load_bias_table(path, expected_n=4, shift_steps=1)
    assert np.allclose(cal.bias_mm, [0.4, 0.1, 0.2, 0.3])
