import json

import cv2
import numpy as np

import measure_lens
from lensfit.fil_format import read_fil, write_fil


def _write_reference(path, reference_radii_mm):
    hundredths = np.floor(reference_radii_mm * 100.0 + 0.5).astype(np.int64)
    return write_fil(path, hundredths, "REF")


def _write_landmarks(path, **overrides):
    data = {
        "midline_x": 320,
        "right": {"roi": {"x": 40, "y": 100, "width": 240, "height": 200}, "pupil": [160, 200]},
        "left": {"roi": {"x": 360, "y": 100, "width": 240, "height": 200}, "pupil": [480, 200]},
    }
    data.update(overrides)
    path.write_text(json.dumps(data))
    return path


def test_parse_args_defaults():
    args = measure_lens.parse_args(["trace", "--input", "lens.jpg", "--px-per-mm", "8", "--fil", "lens.fil"])
    assert args.command == "trace"
    assert args.px_per_mm == 8.0
    assert args.job == "LENS"
    assert args.output is None
    assert args.bias is None

    args = measure_lens.parse_args([
        "fit", "--input", "a.png", "b.png", "--landmarks", "face.json",
        "--fil", "lens.fil", "--output", "fit.json",
    ])
    assert args.input == ["a.png", "b.png"]
    assert args.iterations == 2
    assert args.scoring == "template"
    assert args.frame_strategy == "laplacian_variance"
    assert not args.no_refine


def test_validate_input(tmp_path):
    assert "not found" in measure_lens.validate_input(str(tmp_path / "missing.jpg"))
    assert "not a file" in measure_lens.validate_input(str(tmp_path))
    text = tmp_path / "notes.txt"
    text.write_text("x")
    assert "Unsupported" in measure_lens.validate_input(str(text))


def test_trace_missing_input_returns_error(tmp_path):
    code = measure_lens.main([
        "trace", "--input", str(tmp_path / "missing.png"), "--px-per-mm", "8",
        "--fil", str(tmp_path / "lens.fil"),
    ])
    assert code == 1
    assert not (tmp_path / "lens.fil").exists()


def test_trace_writes_fil_and_report(tmp_path, lens_scene):
    image, _ = lens_scene
    photo = tmp_path / "lens.png"
    cv2.imwrite(str(photo), image)

    code = measure_lens.main([
        "trace", "--input", str(photo), "--px-per-mm", "8",
        "--fil", str(tmp_path / "out" / "lens.fil"), "--output", str(tmp_path / "trace.json"),
        "--job", "J9",
    ])
    assert code == 0
    rec = read_fil(tmp_path / "out" / "lens.fil")
    assert rec.n == 800
    assert rec.job_id == "J9"

    report = json.loads((tmp_path / "trace.json").read_text())
    assert "fil_text" not in report
    assert report["method"] == "radial"
    assert report["fail_reason"] is None
    assert np.array_equal(rec.hundredths(), report["radii_hundredths"])


def test_fit_on_blank_photo_reports_failure(tmp_path, uniform_image, reference_radii_mm):
    photo = tmp_path / "face.png"
    cv2.imwrite(str(photo), uniform_image)
    fil = _write_reference(tmp_path / "ref.fil", reference_radii_mm)
    landmarks = _write_landmarks(tmp_path / "face.json")
    output = tmp_path / "fit.json"

    code = measure_lens.main([
        "fit", "--input", str(photo), "--landmarks", str(landmarks),
        "--fil", str(fil), "--output", str(output),
    ])
    assert code == 1
    report = json.loads(output.read_text())
    assert report["fail_reason"]
    assert report["frame"] == str(photo)
    assert report["scale_source"] == "guess"


def test_fit_with_bad_landmarks(tmp_path, uniform_image, reference_radii_mm):
    photo = tmp_path / "face.png"
    cv2.imwrite(str(photo), uniform_image)
    fil = _write_reference(tmp_path / "ref.fil", reference_radii_mm)
    landmarks = tmp_path / "face.json"
    landmarks.write_text(json.dumps({"right": {}, "left": {}}))
    output = tmp_path / "fit.json"

    code = measure_lens.main([
        "fit", "--input", str(photo), "--landmarks", str(landmarks),
        "--fil", str(fil), "--output", str(output),
    ])
    assert code == 1
    assert not output.exists()


def test_fit_picks_sharpest_frame(tmp_path, uniform_image, reference_radii_mm):
    flat = tmp_path / "flat.png"
    busy = tmp_path / "busy.png"
    cv2.imwrite(str(flat), uniform_image)
    noisy = uniform_image.copy()
    # Texture above both eye ROIs keeps the fit itself on blank ground
    yy, xx = np.mgrid[0:60, 0:640]
    noisy[0:60][((yy // 4 + xx // 4) % 2) == 1] = 255
    cv2.imwrite(str(busy), noisy)
    fil = _write_reference(tmp_path / "ref.fil", reference_radii_mm)
    landmarks = _write_landmarks(tmp_path / "face.json")
    output = tmp_path / "fit.json"

    measure_lens.main([
        "fit", "--input", str(flat), str(busy), "--landmarks", str(landmarks),
        "--fil", str(fil), "--output", str(output), "--no-refine",
    ])
    report = json.loads(output.read_text())
    assert report["frame"] == str(busy)
