"""双球模型（two-sphere model）：由一组观测拟合眼球球心。

流程（与 pye3d 的 TwoSphereModel 同构）：
    1) 2D：所有观测的“投影视线”在图像平面上应交于球心投影，解
       sum(aux_2d) 的 2x2 正规方程得到 sphere_center_2d。
    2) 3D：用 sphere_center_2d 在两组候选间消歧，再对选中的 Dierkes 直线解
       3x3 正规方程，得到三维球心；可叠加高斯先验：

           (sum A_i + w I) c = sum b_i + w c0,   w = prior_strength * N

    3) 折射校正后发布 `SphereEstimate`（整体替换一个属性，读方无需加锁）。

说明：
    - 矩阵秩不足（例如所有视线重合）且无先验时结果为 NaN，不会发布，
      调用方视为“尚未就绪”。
    - 观测快照可由调用方传入（后台线程拟合时使用），否则读取自身存储。
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from eye3d.camera import CameraModel
from eye3d.geometry.primitives import Circle3D, Line
from eye3d.geometry.projections import (
    intersect_line_sphere,
    nearest_point_on_sphere_to_line,
    project_point_into_image_plane,
)
from eye3d.geometry.utils import normalize
from eye3d.logging_utils import default_logger
from eye3d.observation import EYE_RADIUS_DEFAULT, Observation, ObservationStorage
from eye3d.refraction import Refractionizer

DEFAULT_SPHERE_CENTER = (0.0, 0.0, 35.0)


class InsufficientDataError(RuntimeError):
    """没有可用观测时请求拟合。"""


def _solve_normal_equations(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """解小规模正规方程；秩不足时返回 NaN 向量。

    说明：
        与 `np.linalg.solve` 不同，这里先用 lstsq 拿到秩，避免奇异矩阵上
        抛异常或给出任意的最小范数解。
    """

    x, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if int(rank) < int(A.shape[1]):
        return np.full(A.shape[1], np.nan, dtype=np.float64)
    return np.asarray(x, dtype=np.float64)


@dataclass(frozen=True, eq=False)
class SphereEstimate:
    """一次拟合的发布结果（只读）。

    属性:
        sphere_center: 未经折射校正的球心，shape=(3,)。
        corrected_sphere_center: 折射校正后的球心，shape=(3,)。
        projected_sphere_center: 球心在中心化图像坐标下的投影，shape=(2,)。
        rms_residual: Dierkes 直线到球心的 RMS 距离；未计算时为 NaN。
    """

    sphere_center: np.ndarray
    corrected_sphere_center: np.ndarray
    projected_sphere_center: np.ndarray
    rms_residual: float = float("nan")


class TwoSphereModel:
    """单一时间尺度的眼球模型：一个观测存储 + 当前球心估计。"""

    def __init__(
        self,
        camera: CameraModel,
        storage: ObservationStorage,
        refractionizer: Refractionizer,
        logger: logging.Logger | None = None,
    ) -> None:
        self.camera = camera
        self.storage = storage
        self.refractionizer = refractionizer
        self._logger = logger or default_logger()
        self._estimate = self._make_estimate(np.asarray(DEFAULT_SPHERE_CENTER, dtype=np.float64))

    # ---------------------------------------------------------------- 状态

    @property
    def estimate(self) -> SphereEstimate:
        return self._estimate

    @property
    def sphere_center(self) -> np.ndarray:
        return self._estimate.sphere_center

    @property
    def corrected_sphere_center(self) -> np.ndarray:
        return self._estimate.corrected_sphere_center

    @property
    def projected_sphere_center(self) -> np.ndarray:
        return self._estimate.projected_sphere_center

    @property
    def rms_residual(self) -> float:
        return self._estimate.rms_residual

    def set_sphere_center(self, center: np.ndarray) -> None:
        self._estimate = self._make_estimate(np.asarray(center, dtype=np.float64).reshape(3))

    def add_observation(self, observation: Observation) -> None:
        self.storage.add(observation)

    def n_observations(self) -> int:
        return self.storage.count()

    def clear(self) -> None:
        self.storage.clear()
        self.set_sphere_center(np.asarray(DEFAULT_SPHERE_CENTER, dtype=np.float64))

    def _make_estimate(self, center: np.ndarray, rms_residual: float = float("nan")) -> SphereEstimate:
        corrected = self.refractionizer.correct_sphere_center(center.reshape(1, 3))[0]
        return SphereEstimate(
            sphere_center=center,
            corrected_sphere_center=np.asarray(corrected, dtype=np.float64),
            projected_sphere_center=project_point_into_image_plane(center, self.camera.focal_length),
            rms_residual=float(rms_residual),
        )

    def _snapshot(self, observations: Sequence[Observation] | None) -> list[Observation]:
        if observations is None:
            return self.storage.observations()
        return list(observations)

    # ---------------------------------------------------------------- 拟合

    def estimate_sphere_center_2d(self, observations: Sequence[Observation] | None = None) -> np.ndarray:
        """所有投影视线的最小二乘交点（中心化图像坐标）。

        Raises:
            InsufficientDataError: 没有观测。
        """

        obs = self._snapshot(observations)
        if not obs:
            raise InsufficientDataError("no observations to estimate the 2D sphere center")

        aux = np.sum(np.stack([o.aux_2d for o in obs], axis=0), axis=0)
        return _solve_normal_equations(aux[:, :2], aux[:, 2])

    def _disambiguate_aux_3d(self, obs: Sequence[Observation], center_2d: np.ndarray) -> np.ndarray:
        """按投影视线是否背离 2D 球心选择候选，返回 shape=(N,3,4)。"""

        chosen = np.empty((len(obs), 3, 4), dtype=np.float64)
        for k, o in enumerate(obs):
            gaze_2d = o.gaze_2d
            away = float(np.dot(gaze_2d.direction, gaze_2d.origin - center_2d)) > 0.0
            chosen[k] = o.aux_3d[0 if away else 1]
        return chosen

    def estimate_sphere_center_3d(
        self,
        center_2d: np.ndarray,
        prior_3d: np.ndarray | None = None,
        prior_strength: float = 0.0,
        calculate_rms_residual: bool = False,
        observations: Sequence[Observation] | None = None,
    ) -> tuple[np.ndarray, float]:
        """三维球心（Dierkes 直线的最小二乘交点，可带先验）。

        Returns:
            (center, rms_residual)；未请求 RMS 时 rms_residual 为 NaN。

        Raises:
            InsufficientDataError: 没有观测。
        """

        obs = self._snapshot(observations)
        if not obs:
            raise InsufficientDataError("no observations to estimate the 3D sphere center")

        center_2d = np.asarray(center_2d, dtype=np.float64).reshape(2)
        aux = self._disambiguate_aux_3d(obs, center_2d)
        total = np.sum(aux, axis=0)
        A = total[:, :3].copy()
        b = total[:, 3].copy()

        if prior_3d is not None and float(prior_strength) > 0.0:
            w = float(prior_strength) * float(len(obs))
            A += w * np.eye(3)
            b += w * np.asarray(prior_3d, dtype=np.float64).reshape(3)

        center = _solve_normal_equations(A, b)

        rms = float("nan")
        if calculate_rms_residual and np.all(np.isfinite(center)):
            residuals = np.einsum("nij,j->ni", aux[:, :, :3], center) - aux[:, :, 3]
            rms = math.sqrt(float(np.mean(np.sum(residuals**2, axis=1))))
        return center, rms

    def estimate_sphere_center(
        self,
        from_2d: np.ndarray | None = None,
        prior_3d: np.ndarray | None = None,
        prior_strength: float = 0.0,
        calculate_rms_residual: bool = False,
        observations: Sequence[Observation] | None = None,
    ) -> SphereEstimate | None:
        """完整拟合并发布；结果非有限时不发布，返回 None。"""

        obs = self._snapshot(observations)
        center_2d = self.estimate_sphere_center_2d(obs) if from_2d is None else np.asarray(from_2d, dtype=np.float64)
        if not np.all(np.isfinite(center_2d)):
            self._logger.warning("2D sphere center is not finite (n=%d), keep previous estimate", len(obs))
            return None

        center, rms = self.estimate_sphere_center_3d(
            center_2d,
            prior_3d=prior_3d,
            prior_strength=prior_strength,
            calculate_rms_residual=calculate_rms_residual,
            observations=obs,
        )
        if not np.all(np.isfinite(center)):
            self._logger.warning("3D sphere center is not finite (n=%d), keep previous estimate", len(obs))
            return None

        estimate = self._make_estimate(center, rms)
        self._estimate = estimate
        return estimate

    # ---------------------------------------------------------------- 瞳孔

    def predict_pupil_circle(self, observation: Observation, use_unprojection: bool = False) -> Circle3D | None:
        """在当前眼球上定位瞳孔圆；观测无效时返回 None。

        默认做“3D search”：从光心穿过椭圆中心的射线与眼球求交（不相交时取球面
        上离射线最近的点），法向为瞳孔相对球心的方向，半径按深度比例缩放单位
        半径的反投影圆。`use_unprojection=True` 时直接返回消歧后的反投影圆。
        """

        if observation.invalid or observation.circle_3d_pair is None:
            return None

        estimate = self._estimate
        if use_unprojection:
            gaze_2d = observation.gaze_2d
            away = float(np.dot(gaze_2d.direction, gaze_2d.origin - estimate.projected_sphere_center)) > 0.0
            return observation.circle_3d_pair[0 if away else 1]

        cx, cy = float(observation.ellipse.center[0]), float(observation.ellipse.center[1])
        ray = Line(np.zeros(3), np.array([cx, cy, self.camera.focal_length], dtype=np.float64))

        pupil = intersect_line_sphere(ray, estimate.sphere_center, EYE_RADIUS_DEFAULT)
        if pupil is None:
            pupil = nearest_point_on_sphere_to_line(ray, estimate.sphere_center, EYE_RADIUS_DEFAULT)

        gaze = normalize(pupil - estimate.sphere_center)
        unit_circle = observation.circle_3d_pair[0]
        radius = float(np.linalg.norm(pupil)) / float(np.linalg.norm(unit_circle.center)) * unit_circle.radius
        return Circle3D(pupil, gaze, radius)

    def apply_refraction_correction(self, circle: Circle3D) -> Circle3D:
        """对瞳孔圆做折射校正，并重新锚定到校正后的眼球表面。"""

        estimate = self._estimate
        features = np.concatenate([estimate.sphere_center, circle.normal, [circle.radius]]).reshape(1, 7)
        corrected = self.refractionizer.correct_pupil_circle(features)[0]
        gaze = normalize(corrected[:3])
        center = estimate.corrected_sphere_center + EYE_RADIUS_DEFAULT * gaze
        return Circle3D(center, gaze, float(corrected[3]))


__all__ = [
    "DEFAULT_SPHERE_CENTER",
    "InsufficientDataError",
    "SphereEstimate",
    "TwoSphereModel",
]
