"""角膜折射校正（refraction correction）。

每个被校正的量（radius / gaze_vector / sphere_center / pupil_circle）对应一份
预先拟合好的流水线：PolynomialFeatures -> StandardScaler -> LinearRegression。
这里只负责加载与应用系数，不负责训练。

模型文件（msgpack）：
    文件名：`{type}_refraction_model_{feature}_degree_{degree}.msgpack`
    内容：
        {
          "version": 1,
          "steps": {
            "PolynomialFeatures": {"params": {...}, "powers": [[...]]},
            "StandardScaler": {"params": {...}, "mean": [...], "var": [...]},
            "LinearRegression": {"params": {...}, "coef": [[...]], "intercept": [...]}
          }
        }

说明：
    - 版本号必须与 `REFRACTION_MODEL_VERSION` 一致，否则视为加载失败。
    - 加载失败一律抛 `RefractionModelLoadError`，由 Detector 在构造时直接失败。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import msgpack
import numpy as np

from eye3d.logging_utils import default_logger

REFRACTION_MODEL_VERSION = 1

REFRACTION_FEATURES = ("radius", "gaze_vector", "sphere_center", "pupil_circle")

DEFAULT_REFRACTION_MODEL_DIR = Path(__file__).resolve().parent / "refraction_models"


class RefractionModelLoadError(RuntimeError):
    """折射模型文件缺失、不可读或版本不匹配。"""


def refraction_model_filename(feature: str, type_: str, degree: int) -> str:
    """按命名约定解析模型文件名。"""

    return f"{type_}_refraction_model_{feature}_degree_{int(degree)}.msgpack"


@dataclass(frozen=True, eq=False)
class CorrectionPipeline:
    """单个量的折射校正系数（只读）。

    属性:
        powers: 多项式指数表，shape=(F,D)。
        mean: 每个特征的均值，shape=(F,)。
        var: 每个特征的方差，shape=(F,)。
        coef: 线性回归系数，shape=(K,F)。
        intercept: 线性回归截距，shape=(K,)。
    """

    powers: np.ndarray
    mean: np.ndarray
    var: np.ndarray
    coef: np.ndarray
    intercept: np.ndarray

    def __post_init__(self) -> None:
        powers = np.asarray(self.powers, dtype=np.float64)
        if powers.ndim != 2:
            raise ValueError(f"powers 应为二维数组，实际 shape={powers.shape}")
        n_features = int(powers.shape[0])

        mean = np.asarray(self.mean, dtype=np.float64).reshape(-1)
        var = np.asarray(self.var, dtype=np.float64).reshape(-1)
        coef = np.atleast_2d(np.asarray(self.coef, dtype=np.float64))
        intercept = np.asarray(self.intercept, dtype=np.float64).reshape(-1)

        if mean.shape[0] != n_features or var.shape[0] != n_features:
            raise ValueError(f"mean/var 长度应为 {n_features}，实际为 {mean.shape[0]}/{var.shape[0]}")
        if coef.shape[1] != n_features:
            raise ValueError(f"coef 列数应为 {n_features}，实际 shape={coef.shape}")
        if intercept.shape[0] != coef.shape[0]:
            raise ValueError(f"intercept 长度应为 {coef.shape[0]}，实际为 {intercept.shape[0]}")

        for name, value in (("powers", powers), ("mean", mean), ("var", var), ("coef", coef), ("intercept", intercept)):
            value.setflags(write=False)
            object.__setattr__(self, name, value)

    @property
    def n_inputs(self) -> int:
        return int(self.powers.shape[1])

    @property
    def n_outputs(self) -> int:
        return int(self.coef.shape[0])

    def correct(self, x: np.ndarray) -> np.ndarray:
        """对每一行输入做：多项式展开 -> 标准化 -> 线性映射。

        Args:
            x: shape=(N,D)。

        Returns:
            shape=(N,K)。
        """

        x = np.atleast_2d(np.asarray(x, dtype=np.float64))
        if x.shape[1] != self.n_inputs:
            raise ValueError(f"输入维度应为 {self.n_inputs}，实际 shape={x.shape}")

        # features[n, i] = prod_j x[n, j] ** powers[i, j]
        features = np.prod(x[:, None, :] ** self.powers[None, :, :], axis=2)
        features = (features - self.mean) / np.sqrt(self.var)
        return features @ self.coef.T + self.intercept

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "CorrectionPipeline":
        """从 msgpack 解码后的字典构造。"""

        if not isinstance(data, dict):
            raise RefractionModelLoadError("refraction model root must be a mapping")

        version = data.get("version")
        if version != REFRACTION_MODEL_VERSION:
            raise RefractionModelLoadError(
                f"refraction model version mismatch: expected {REFRACTION_MODEL_VERSION}, got {version!r}"
            )

        try:
            steps = data["steps"]
            return cls(
                powers=steps["PolynomialFeatures"]["powers"],
                mean=steps["StandardScaler"]["mean"],
                var=steps["StandardScaler"]["var"],
                coef=steps["LinearRegression"]["coef"],
                intercept=steps["LinearRegression"]["intercept"],
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RefractionModelLoadError(f"malformed refraction model: {exc}") from exc

    @classmethod
    def load(
        cls,
        feature: str,
        type_: str = "default",
        degree: int = 3,
        directory: Path | str | None = None,
    ) -> "CorrectionPipeline":
        """按命名约定加载某个量的校正流水线。

        Raises:
            RefractionModelLoadError: 文件缺失、解码失败、版本不匹配或数组形状不合法。
        """

        base = Path(directory).expanduser() if directory is not None else DEFAULT_REFRACTION_MODEL_DIR
        path = base / refraction_model_filename(feature, type_, degree)
        try:
            payload = path.read_bytes()
        except OSError as exc:
            raise RefractionModelLoadError(f"cannot read refraction model {path}: {exc}") from exc

        try:
            data = msgpack.unpackb(payload, raw=False)
        except Exception as exc:
            raise RefractionModelLoadError(f"cannot decode refraction model {path}: {exc}") from exc

        return cls.from_mapping(data)


class Refractionizer:
    """四个折射校正流水线的集合；构造时一次性加载。

    输入特征约定：
        - sphere_center: [sphere_center(3)] -> [sphere_center(3)]
        - pupil_circle: [sphere_center(3), gaze_vector(3), radius] -> [gaze_vector(3), radius]
        - gaze_vector: [sphere_center(3), gaze_vector(3), radius] -> [gaze_vector(3)]
        - radius: [sphere_center(3), gaze_vector(3), radius] -> [radius]

    说明：
        逐帧流程（`Detector3D`）只用到 sphere_center 与 pupil_circle；
        `correct_radius` / `correct_gaze_vector` 同样在构造时加载，作为公开接口
        供单独校正半径或视线方向时调用。
    """

    def __init__(
        self,
        type_: str = "default",
        degree: int = 3,
        custom_load_dir: Path | str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or default_logger()
        self.type_ = str(type_)
        self.degree = int(degree)

        pipelines: dict[str, CorrectionPipeline] = {}
        for feature in REFRACTION_FEATURES:
            pipelines[feature] = CorrectionPipeline.load(feature, self.type_, self.degree, custom_load_dir)
        self._pipelines = pipelines

        self._logger.debug(
            "loaded refraction models type=%s degree=%d dir=%s",
            self.type_,
            self.degree,
            custom_load_dir or DEFAULT_REFRACTION_MODEL_DIR,
        )

    def pipeline(self, feature: str) -> CorrectionPipeline:
        return self._pipelines[feature]

    def correct_radius(self, x: np.ndarray) -> np.ndarray:
        return self._pipelines["radius"].correct(x)

    def correct_gaze_vector(self, x: np.ndarray) -> np.ndarray:
        return self._pipelines["gaze_vector"].correct(x)

    def correct_sphere_center(self, x: np.ndarray) -> np.ndarray:
        return self._pipelines["sphere_center"].correct(x)

    def correct_pupil_circle(self, x: np.ndarray) -> np.ndarray:
        return self._pipelines["pupil_circle"].correct(x)


__all__ = [
    "CorrectionPipeline",
    "DEFAULT_REFRACTION_MODEL_DIR",
    "REFRACTION_FEATURES",
    "REFRACTION_MODEL_VERSION",
    "RefractionModelLoadError",
    "Refractionizer",
    "refraction_model_filename",
]
