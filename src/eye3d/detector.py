"""三维眼球检测器：多时间尺度模型 + 更新节奏 + Kalman 平滑。

每帧流程（`Detector3D.update_and_detect`）：
    1) 像素坐标椭圆 -> 中心化（y 向上）坐标，反投影得到 Observation；
    2) 观测送入短期 / 长期 / 超长期三个模型（各自的存储负责过滤）；
    3) 长期与超长期模型按各自的 `ModelUpdateSchedule` 重新拟合；
       超长期无先验，长期以超长期球心为先验。Async 模式下放到后台线程；
    4) 短期模型每帧同步重拟合（长期球心作为消歧依据与先验）；
    5) Kalman 预测；置信度足够时用“长期球心 + 短期法向”构造瞳孔圆并做
       折射校正，否则由 Kalman 预测值在长期眼球上重建瞳孔圆；
    6) 观测圆有效且置信度足够时做 Kalman 校正，输出平滑后的姿态。

说明：
    - 输出为 `DetectionResult`，可 `to_dict()` 成 JSON 友好的记录。
    - 模型的球心估计通过整体替换属性发布，读方无需加锁。
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from eye3d.camera import CameraModel
from eye3d.config import DetectorConfig
from eye3d.geometry.primitives import Circle3D, Ellipse
from eye3d.geometry.utils import sph2cart
from eye3d.kalman import KalmanFilter
from eye3d.logging_utils import default_logger
from eye3d.observation import (
    EYE_RADIUS_DEFAULT,
    BinBufferedObservationStorage,
    BufferedObservationStorage,
    Observation,
)
from eye3d.refraction import Refractionizer
from eye3d.two_sphere_model import TwoSphereModel

_SHORT_TERM_BUFFER_LENGTH = 10
_N_BINS_HORIZONTAL = 10
_ULTRA_LONG_TERM_BIN_BUFFER_LENGTH = 60
_ULTRA_LONG_TERM_FORGET_TIME = 60.0
_PRIOR_STRENGTH = 0.1


class DetectorMode(Enum):
    """长期模型的重拟合时机。"""

    BLOCKING = "blocking"
    """在触发的那一帧内同步重拟合。"""

    ASYNC = "async"
    """提交到后台线程，完成后发布；读方看到的是最近一次完成的结果。"""


class ModelUpdateSchedule:
    """长期模型的更新节奏：预热期内每次都更新，之后按固定间隔更新。

    状态机：未开始 -> 预热 -> 周期更新；`paused` 与之正交，任意时刻可设置。
    """

    def __init__(self, update_interval: float, warmup_duration: float) -> None:
        self.update_interval = float(update_interval)
        self.warmup_duration = float(warmup_duration)
        self.warmup_start: float | None = None
        self.last_update: float | None = None
        self._paused = False

    def update_due(self, now: float) -> bool:
        now = float(now)
        if self._paused:
            return False

        if self.warmup_start is None:
            self.warmup_start = now
            return True

        if now - self.warmup_start < self.warmup_duration:
            return True

        if self.last_update is None:
            self.last_update = now
            return True

        if now - self.last_update > self.update_interval:
            self.last_update = now
            return True
        return False

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused


def _safe_float(x: float) -> float | None:
    v = float(x)
    return v if math.isfinite(v) else None


def _safe_floats(x: np.ndarray) -> list[float | None]:
    """把 ndarray 转成 JSON 友好的纯 Python 列表（非有限值记为 None）。"""

    return [_safe_float(v) for v in np.asarray(x, dtype=np.float64).reshape(-1)]


@dataclass(frozen=True, eq=False)
class ModelSnapshot:
    """某一时间尺度模型在输出时刻的状态。"""

    sphere_center: np.ndarray
    corrected_sphere_center: np.ndarray
    projected_sphere_center: np.ndarray
    rms_residual: float
    n_observations: int

    @classmethod
    def of(cls, model: TwoSphereModel) -> "ModelSnapshot":
        estimate = model.estimate
        return cls(
            sphere_center=estimate.sphere_center,
            corrected_sphere_center=estimate.corrected_sphere_center,
            projected_sphere_center=estimate.projected_sphere_center,
            rms_residual=estimate.rms_residual,
            n_observations=model.n_observations(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sphere_center": _safe_floats(self.sphere_center),
            "corrected_sphere_center": _safe_floats(self.corrected_sphere_center),
            "projected_sphere_center": _safe_floats(self.projected_sphere_center),
            "rms_residual": _safe_float(self.rms_residual),
            "n_observations": int(self.n_observations),
        }


@dataclass(frozen=True, eq=False)
class DetectionResult:
    """单帧输出。

    属性:
        timestamp: 帧时间戳（秒）。
        confidence: 观测的融合置信度。
        circle: 本帧瞳孔圆（观测值；观测不可用时为 Kalman 重建值）。
        phi: 平滑后的视线方位角。
        theta: 平滑后的视线极角。
        pupil_radius: 平滑后的瞳孔半径。
        diameter_3d: 2 * pupil_radius。
        models: 各时间尺度模型的快照，键为 short_term/long_term/ultra_long_term。
    """

    timestamp: float
    confidence: float
    circle: Circle3D
    phi: float
    theta: float
    pupil_radius: float
    diameter_3d: float
    models: dict[str, ModelSnapshot] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": float(self.timestamp),
            "confidence": float(self.confidence),
            "circle": {
                "center": _safe_floats(self.circle.center),
                "normal": _safe_floats(self.circle.normal),
                "radius": _safe_float(self.circle.radius),
            },
            "phi": _safe_float(self.phi),
            "theta": _safe_float(self.theta),
            "pupil_radius": _safe_float(self.pupil_radius),
            "diameter_3d": _safe_float(self.diameter_3d),
            "models": {name: snap.to_dict() for name, snap in self.models.items()},
        }


class Detector3D:
    """由二维瞳孔椭圆流估计三维眼球姿态。

    说明：
        - 不传 refractionizer 时，按配置从磁盘加载折射模型（缺失即构造失败）。
        - Async 模式会创建一个单线程的后台执行器，用完应调用 `close()`。
    """

    def __init__(
        self,
        camera: CameraModel,
        config: DetectorConfig | None = None,
        refractionizer: Refractionizer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or DetectorConfig()
        self._logger = logger or default_logger()
        self._refractionizer = refractionizer or Refractionizer(
            type_=self._config.refraction_model_type,
            degree=self._config.refraction_model_degree,
            custom_load_dir=self._config.refraction_model_dir,
            logger=self._logger,
        )
        self._camera = camera
        self._long_term_mode = DetectorMode(self._config.long_term_mode)
        self._is_long_term_model_frozen = False

        self._executor: ThreadPoolExecutor | None = None
        self._pending: dict[str, Future] = {}

        self.reset()

    # ---------------------------------------------------------------- 属性

    @property
    def camera(self) -> CameraModel:
        return self._camera

    @property
    def config(self) -> DetectorConfig:
        return self._config

    @property
    def long_term_mode(self) -> DetectorMode:
        return self._long_term_mode

    @property
    def is_long_term_model_frozen(self) -> bool:
        return self._is_long_term_model_frozen

    # ---------------------------------------------------------------- 控制

    def reset(self) -> None:
        """重建三个模型、两个更新节奏与 Kalman 滤波器（丢弃全部累计状态）。"""

        cfg = self._config
        camera = self._camera

        self.short_term_model = TwoSphereModel(
            camera,
            BufferedObservationStorage(
                confidence_threshold=cfg.threshold_short_term,
                buffer_length=_SHORT_TERM_BUFFER_LENGTH,
            ),
            self._refractionizer,
            logger=self._logger,
        )
        self.long_term_model = TwoSphereModel(
            camera,
            BinBufferedObservationStorage(
                camera,
                confidence_threshold=cfg.threshold_long_term,
                n_bins_horizontal=_N_BINS_HORIZONTAL,
                bin_buffer_length=cfg.long_term_buffer_size,
                forget_min_observations=cfg.long_term_forget_observations,
                forget_min_time=cfg.long_term_forget_time,
            ),
            self._refractionizer,
            logger=self._logger,
        )
        self.ultra_long_term_model = TwoSphereModel(
            camera,
            BinBufferedObservationStorage(
                camera,
                confidence_threshold=cfg.threshold_long_term,
                n_bins_horizontal=_N_BINS_HORIZONTAL,
                bin_buffer_length=_ULTRA_LONG_TERM_BIN_BUFFER_LENGTH,
                forget_min_observations=2 * cfg.long_term_forget_observations,
                forget_min_time=_ULTRA_LONG_TERM_FORGET_TIME,
            ),
            self._refractionizer,
            logger=self._logger,
        )

        self.long_term_schedule = ModelUpdateSchedule(
            update_interval=cfg.model_update_interval_long_term,
            warmup_duration=cfg.model_warmup_duration,
        )
        self.ultra_long_term_schedule = ModelUpdateSchedule(
            update_interval=cfg.model_update_interval_ult_long_term,
            warmup_duration=cfg.model_warmup_duration,
        )
        if self._is_long_term_model_frozen:
            self.long_term_schedule.pause()
            self.ultra_long_term_schedule.pause()

        # 旧模型上仍在运行的后台拟合只会发布到被丢弃的模型上。
        self._pending = {}
        self.kalman = KalmanFilter(logger=self._logger)
        self._logger.debug("detector reset (mode=%s)", self._long_term_mode.value)

    def set_long_term_mode(self, mode: DetectorMode | str) -> None:
        mode = DetectorMode(mode)
        if mode is self._long_term_mode:
            return
        self._long_term_mode = mode
        self.reset()

    def reset_camera(self, camera: CameraModel) -> None:
        self._camera = camera
        self.reset()

    def set_is_long_term_model_frozen(self, frozen: bool) -> None:
        self._is_long_term_model_frozen = bool(frozen)
        for schedule in (self.long_term_schedule, self.ultra_long_term_schedule):
            if self._is_long_term_model_frozen:
                schedule.pause()
            else:
                schedule.resume()

    def close(self) -> None:
        """关闭后台执行器（等待进行中的拟合完成）。"""

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._pending = {}

    # ---------------------------------------------------------------- 每帧

    def update_and_detect(self, ellipse: Ellipse, confidence: float, timestamp: float) -> DetectionResult:
        """处理一帧像素坐标下的瞳孔椭圆。"""

        cfg = self._config
        timestamp = float(timestamp)

        observation = Observation.from_ellipse(
            self._to_centered(ellipse),
            confidence_2d=confidence,
            timestamp=timestamp,
            focal_length=self._camera.focal_length,
        )
        if observation.invalid:
            self._logger.debug("unprojection failed at t=%.6f", timestamp)

        for model in (self.short_term_model, self.long_term_model, self.ultra_long_term_model):
            model.add_observation(observation)

        self._update_long_term_models(timestamp)
        self._update_short_term_model()

        phi, theta, radius = self.kalman.predict(timestamp)

        circle: Circle3D | None = None
        if observation.confidence > cfg.threshold_swirski:
            circle = self._predict_pupil_circle(observation)
        measured = circle is not None
        if circle is None:
            circle = self._circle_from_kalman(phi, theta, radius)

        if (
            measured
            and circle.is_valid()
            and observation.confidence > cfg.threshold_kalman
        ):
            phi_m, theta_m, radius_m = circle.spherical_representation()
            if math.isfinite(phi_m) and math.isfinite(theta_m):
                phi, theta, radius = self.kalman.correct(phi_m, theta_m, radius_m)

        return DetectionResult(
            timestamp=timestamp,
            confidence=observation.confidence,
            circle=circle,
            phi=phi,
            theta=theta,
            pupil_radius=radius,
            diameter_3d=2.0 * radius,
            models={
                "short_term": ModelSnapshot.of(self.short_term_model),
                "long_term": ModelSnapshot.of(self.long_term_model),
                "ultra_long_term": ModelSnapshot.of(self.ultra_long_term_model),
            },
        )

    def _to_centered(self, ellipse: Ellipse) -> Ellipse:
        """像素坐标（原点左上、y 向下）-> 中心化坐标（原点为图像中心、y 向上）。"""

        width, height = self._camera.resolution
        cx, cy = float(ellipse.center[0]), float(ellipse.center[1])
        return Ellipse(
            center=np.array([cx - 0.5 * width, 0.5 * height - cy], dtype=np.float64),
            major_radius=ellipse.major_radius,
            minor_radius=ellipse.minor_radius,
            angle=-ellipse.angle,
        )

    def _update_long_term_models(self, now: float) -> None:
        if self.long_term_model.n_observations() <= 0:
            return

        if self.ultra_long_term_schedule.update_due(now):
            self._refit("ultra_long_term", self.ultra_long_term_model, prior_3d=None)

        if self.long_term_schedule.update_due(now):
            self._refit(
                "long_term",
                self.long_term_model,
                prior_3d=self.ultra_long_term_model.sphere_center.copy(),
            )

    def _refit(self, name: str, model: TwoSphereModel, prior_3d: np.ndarray | None) -> None:
        observations = model.storage.observations()
        if not observations:
            return

        prior_strength = _PRIOR_STRENGTH if prior_3d is not None else 0.0
        kwargs = dict(
            prior_3d=prior_3d,
            prior_strength=prior_strength,
            calculate_rms_residual=self._config.calculate_rms_residual,
            observations=observations,
        )

        if self._long_term_mode is DetectorMode.BLOCKING:
            model.estimate_sphere_center(**kwargs)
            return

        pending = self._pending.get(name)
        if pending is not None:
            if not pending.done():
                self._logger.debug("%s refit still running, skip", name)
                return
            # 取结果以便把后台异常抛给调用方
            pending.result()

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="eye3d-refit")
        self._pending[name] = self._executor.submit(model.estimate_sphere_center, **kwargs)

    def _update_short_term_model(self) -> None:
        observations = self.short_term_model.storage.observations()
        if not observations:
            return

        from_2d = None
        if self.long_term_model.n_observations() > 0:
            from_2d = self.long_term_model.projected_sphere_center.copy()

        self.short_term_model.estimate_sphere_center(
            from_2d=from_2d,
            prior_3d=self.long_term_model.sphere_center.copy(),
            prior_strength=_PRIOR_STRENGTH,
            calculate_rms_residual=self._config.calculate_rms_residual,
            observations=observations,
        )

    def _predict_pupil_circle(self, observation: Observation) -> Circle3D | None:
        """长期模型给出位置与半径，短期模型给出法向，再做折射校正。"""

        long_circle = self.long_term_model.predict_pupil_circle(observation)
        short_circle = self.short_term_model.predict_pupil_circle(observation)
        if long_circle is None or short_circle is None:
            return None

        combined = Circle3D(long_circle.center, short_circle.normal, long_circle.radius)
        return self.long_term_model.apply_refraction_correction(combined)

    def _circle_from_kalman(self, phi: float, theta: float, radius: float) -> Circle3D:
        gaze = sph2cart(phi, theta)
        center = self.long_term_model.corrected_sphere_center + EYE_RADIUS_DEFAULT * gaze
        return Circle3D(center, gaze, radius)


__all__ = [
    "DetectionResult",
    "Detector3D",
    "DetectorMode",
    "ModelSnapshot",
    "ModelUpdateSchedule",
]
