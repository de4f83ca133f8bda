"""几何小工具：归一化与球坐标转换。

球坐标约定（相机坐标系，y 轴为极轴）：
    - phi = atan2(z, x)
    - theta = acos(y / |v|)
"""

from __future__ import annotations

import math

import numpy as np


def normalize(v: np.ndarray, axis: int = -1) -> np.ndarray:
    """按 axis 归一化；零向量原样返回（不产生 NaN）。"""

    v = np.asarray(v, dtype=np.float64)
    n = np.linalg.norm(v, axis=axis, keepdims=True)
    safe = np.where(n > 0.0, n, 1.0)
    return v / safe


def cart2sph(x: np.ndarray) -> tuple[float, float]:
    """三维方向向量 -> (phi, theta)。"""

    x = np.asarray(x, dtype=np.float64).reshape(3)
    phi = math.atan2(float(x[2]), float(x[0]))
    norm = float(np.linalg.norm(x))
    if norm <= 0.0:
        return (phi, float("nan"))
    cos_theta = min(1.0, max(-1.0, float(x[1]) / norm))
    return (phi, math.acos(cos_theta))


def sph2cart(phi: float, theta: float) -> np.ndarray:
    """(phi, theta) -> 单位方向向量。"""

    return np.array(
        [
            math.sin(theta) * math.cos(phi),
            math.cos(theta),
            math.sin(theta) * math.sin(phi),
        ],
        dtype=np.float64,
    )
