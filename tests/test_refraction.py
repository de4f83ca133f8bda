"""单测：折射校正流水线的计算与 msgpack 模型加载。"""

from __future__ import annotations

from pathlib import Path

import msgpack
import numpy as np
import pytest

from eye3d.refraction import (
    CorrectionPipeline,
    RefractionModelLoadError,
    Refractionizer,
    refraction_model_filename,
)


def test_pipeline_applies_features_scaler_and_regression() -> None:
    # 特征 x0^2 与 x0*x1；标准化后线性组合。
    pipeline = CorrectionPipeline(
        powers=[[2, 0], [1, 1]],
        mean=[1.0, 2.0],
        var=[4.0, 1.0],
        coef=[[3.0, -1.0]],
        intercept=[0.5],
    )
    out = pipeline.correct(np.array([[3.0, 2.0]]))
    # f = [9, 6] -> [(9-1)/2, (6-2)/1] = [4, 4] -> 3*4 - 4 + 0.5
    assert out.shape == (1, 1)
    assert out[0, 0] == pytest.approx(8.5)


def test_pipeline_rejects_wrong_input_dimension() -> None:
    pipeline = CorrectionPipeline(powers=[[1]], mean=[0.0], var=[1.0], coef=[[1.0]], intercept=[0.0])
    with pytest.raises(ValueError):
        pipeline.correct(np.zeros((1, 2)))


def test_pipeline_rejects_inconsistent_shapes() -> None:
    with pytest.raises(ValueError):
        CorrectionPipeline(powers=[[1, 0], [0, 1]], mean=[0.0], var=[1.0, 1.0], coef=[[1.0, 1.0]], intercept=[0.0])


def test_refractionizer_with_identity_models(refractionizer: Refractionizer) -> None:
    x = np.array([[1.0, 2.0, 30.0, 0.1, -0.2, -0.97, 2.5]])
    assert np.allclose(refractionizer.correct_pupil_circle(x), x[:, 3:])
    assert np.allclose(refractionizer.correct_gaze_vector(x), x[:, 3:6])
    assert np.allclose(refractionizer.correct_radius(x), x[:, 6:])
    assert np.allclose(refractionizer.correct_sphere_center(x[:, :3]), x[:, :3])


def test_load_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(RefractionModelLoadError):
        CorrectionPipeline.load("radius", "default", 3, tmp_path)


def test_refractionizer_fails_when_any_model_is_missing(refraction_model_dir: Path) -> None:
    (refraction_model_dir / refraction_model_filename("gaze_vector", "default", 3)).unlink()
    with pytest.raises(RefractionModelLoadError):
        Refractionizer(custom_load_dir=refraction_model_dir)


def test_load_version_mismatch_raises(refraction_model_dir: Path) -> None:
    path = refraction_model_dir / refraction_model_filename("radius", "default", 3)
    payload = msgpack.unpackb(path.read_bytes(), raw=False)
    payload["version"] = 2
    path.write_bytes(msgpack.packb(payload, use_bin_type=True))

    with pytest.raises(RefractionModelLoadError, match="version"):
        CorrectionPipeline.load("radius", "default", 3, refraction_model_dir)


def test_load_malformed_model_raises(tmp_path: Path) -> None:
    path = tmp_path / refraction_model_filename("radius", "default", 3)
    path.write_bytes(msgpack.packb({"version": 1, "steps": {}}, use_bin_type=True))
    with pytest.raises(RefractionModelLoadError):
        CorrectionPipeline.load("radius", "default", 3, tmp_path)

    path.write_bytes(b"\xc1")
    with pytest.raises(RefractionModelLoadError):
        CorrectionPipeline.load("radius", "default", 3, tmp_path)


def test_load_uses_naming_convention(tmp_path: Path) -> None:
    assert refraction_model_filename("pupil_circle", "custom", 2) == "custom_refraction_model_pupil_circle_degree_2.msgpack"
    with pytest.raises(RefractionModelLoadError, match="custom_refraction_model_radius_degree_2"):
        CorrectionPipeline.load("radius", "custom", 2, tmp_path)
