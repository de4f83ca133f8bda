"""瞳孔姿态的时间平滑：匀加速度模型的 Kalman 滤波（OpenCV 实现）。

状态（7 维）：[phi, theta, d_phi, d_theta, dd_phi, dd_theta, radius]
观测（3 维）：[phi, theta, radius]

说明：
    - 首次 predict 不推进滤波器，直接返回“正视相机”的先验 (-π/2, π/2, 0)。
    - 时间戳不递增（t <= last_call）时沿用上一次的状态转移矩阵。
"""

from __future__ import annotations

import logging
import math

import cv2
import numpy as np

from eye3d.logging_utils import default_logger

_STATE_DIM = 7
_MEASUREMENT_DIM = 3

_INITIAL_PREDICTION = (-math.pi / 2.0, math.pi / 2.0, 0.0)


def _transition_matrix(dt: float) -> np.ndarray:
    dt = float(dt)
    half_dt2 = 0.5 * dt * dt
    return np.array(
        [
            [1.0, 0.0, dt, 0.0, half_dt2, 0.0, 0.0],
            [0.0, 1.0, 0.0, dt, 0.0, half_dt2, 0.0],
            [0.0, 0.0, 1.0, 0.0, dt, 0.0, 0.0],
            [0.0, 0.0, 0.0, 1.0, 0.0, dt, 0.0],
            [0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0],
            [0.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0],
        ],
        dtype=np.float32,
    )


class KalmanFilter:
    """对 `cv2.KalmanFilter` 的薄封装。"""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or default_logger()

        kf = cv2.KalmanFilter(_STATE_DIM, _MEASUREMENT_DIM, 0, cv2.CV_32F)
        kf.measurementMatrix = np.array(
            [
                [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
                [0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0],
                [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0],
            ],
            dtype=np.float32,
        )
        kf.processNoiseCov = np.eye(_STATE_DIM, dtype=np.float32) * np.float32(1e-4)
        kf.measurementNoiseCov = np.eye(_MEASUREMENT_DIM, dtype=np.float32) * np.float32(1e-5)

        state = np.array([[0.0], [0.0], [0.0], [0.0], [0.0], [0.0], [2.0]], dtype=np.float32)
        kf.statePre = state.copy()
        kf.statePost = state.copy()
        kf.errorCovPre = np.eye(_STATE_DIM, dtype=np.float32)
        kf.errorCovPost = np.eye(_STATE_DIM, dtype=np.float32)

        self.filter = kf
        self.last_call: float | None = None

    def predict(self, t: float) -> tuple[float, float, float]:
        """推进到时刻 t，返回预测的 (phi, theta, radius)。"""

        t = float(t)
        if self.last_call is None:
            self.last_call = t
            return _INITIAL_PREDICTION

        if t > self.last_call:
            self.filter.transitionMatrix = _transition_matrix(t - self.last_call)
        else:
            self._logger.warning(
                "kalman predict with non-increasing timestamp (t=%.6f, last=%.6f), reuse previous transition",
                t,
                self.last_call,
            )

        prediction = self.filter.predict()
        self.last_call = t
        return (float(prediction[0, 0]), float(prediction[1, 0]), float(prediction[6, 0]))

    def correct(self, phi: float, theta: float, radius: float) -> tuple[float, float, float]:
        """用一次观测校正，返回校正后的 (phi, theta, radius)。"""

        measurement = np.array([[phi], [theta], [radius]], dtype=np.float32)
        state = self.filter.correct(measurement)
        return (float(state[0, 0]), float(state[1, 0]), float(state[6, 0]))


__all__ = ["KalmanFilter"]
