"""pytest 运行期配置。

该仓库采用 src-layout（包代码在 ./src 下）。
为了让开发者直接在仓库根目录执行 `python -m pytest` 时也能导入 `eye3d`，
这里在测试收集阶段把 ./src 注入到 sys.path。

另外提供两类共享夹具：
- 恒等折射模型：写到临时目录的 msgpack 文件，校正前后数值不变，
  便于在不依赖真实训练产物的情况下验证几何流程。
- 三维圆 -> 图像椭圆的精确投影，用于构造无噪声的合成观测。
"""

from __future__ import annotations

import math
import sys
from pathlib import Path
from typing import Callable

import msgpack
import numpy as np
import pytest


def _ensure_src_on_syspath() -> None:
    """将仓库的 ./src 目录加入 sys.path（若尚未存在）。"""

    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"

    src_str = str(src_dir)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)


_ensure_src_on_syspath()

from eye3d.geometry.primitives import Ellipse  # noqa: E402
from eye3d.refraction import Refractionizer, refraction_model_filename  # noqa: E402


def _identity_model(n_inputs: int, selected: list[int]) -> dict:
    """一阶多项式 + 零均值单位方差 + 选择矩阵：输出等于被选中的输入分量。"""

    coef = np.zeros((len(selected), n_inputs), dtype=np.float64)
    for row, col in enumerate(selected):
        coef[row, col] = 1.0
    return {
        "version": 1,
        "steps": {
            "PolynomialFeatures": {"params": {"degree": 1}, "powers": np.eye(n_inputs).tolist()},
            "StandardScaler": {"params": {}, "mean": [0.0] * n_inputs, "var": [1.0] * n_inputs},
            "LinearRegression": {"params": {}, "coef": coef.tolist(), "intercept": [0.0] * len(selected)},
        },
    }


def write_identity_refraction_models(directory: Path, type_: str = "default", degree: int = 3) -> Path:
    models = {
        "sphere_center": _identity_model(3, [0, 1, 2]),
        "pupil_circle": _identity_model(7, [3, 4, 5, 6]),
        "gaze_vector": _identity_model(7, [3, 4, 5]),
        "radius": _identity_model(7, [6]),
    }
    directory.mkdir(parents=True, exist_ok=True)
    for feature, payload in models.items():
        path = directory / refraction_model_filename(feature, type_, degree)
        path.write_bytes(msgpack.packb(payload, use_bin_type=True))
    return directory


@pytest.fixture()
def refraction_model_dir(tmp_path: Path) -> Path:
    return write_identity_refraction_models(tmp_path / "refraction_models")


@pytest.fixture()
def refractionizer(refraction_model_dir: Path) -> Refractionizer:
    return Refractionizer(custom_load_dir=refraction_model_dir)


def project_circle_to_ellipse(
    center: np.ndarray, normal: np.ndarray, radius: float, focal_length: float
) -> Ellipse:
    """三维圆在中心化图像平面上的精确投影椭圆。

    说明：
        圆所在平面坐标 (a, b, 1) 经 H = K [u v c] 映射到图像齐次坐标，
        图像二次曲线为 H^{-T} diag(1, 1, -r^2) H^{-1}，再化成中心/半轴/角度。
    """

    center = np.asarray(center, dtype=np.float64)
    normal = np.asarray(normal, dtype=np.float64)
    normal = normal / np.linalg.norm(normal)

    helper = np.array([1.0, 0.0, 0.0]) if abs(normal[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    u = np.cross(normal, helper)
    u /= np.linalg.norm(u)
    v = np.cross(normal, u)

    K = np.diag([focal_length, focal_length, 1.0])
    H = K @ np.column_stack([u, v, center])
    H_inv = np.linalg.inv(H)
    C = H_inv.T @ np.diag([1.0, 1.0, -radius * radius]) @ H_inv

    M2 = C[:2, :2]
    d = C[:2, 2]
    x0 = -np.linalg.solve(M2, d)
    k = float(d @ x0 + C[2, 2])

    w, V = np.linalg.eigh(M2)
    axes = np.sqrt(-k / w)
    major_idx = int(np.argmax(axes))
    minor_idx = 1 - major_idx
    angle = math.atan2(float(V[1, major_idx]), float(V[0, major_idx]))
    return Ellipse(x0, float(axes[major_idx]), float(axes[minor_idx]), angle)


@pytest.fixture()
def project_circle() -> Callable[..., Ellipse]:
    return project_circle_to_ellipse
