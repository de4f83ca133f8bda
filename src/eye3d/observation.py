"""观测（Observation）与观测存储策略。

Observation：
    一帧瞳孔椭圆反投影后的结果，构造后不可变。除两组候选三维圆外，还预先算好
    最小二乘拟合球心时要用到的辅助矩阵：

    - aux_2d，shape=(2,3)：[I - d d^T | (I - d d^T) o]，o/d 为投影到图像平面的
      视线（2D 直线）。对所有观测求和后解 A c = b，即“到多条直线距离平方和最小的点”。
    - aux_3d，shape=(2,3,4)：两组候选各一份，形式同上，对应三维 Dierkes 直线。

存储策略（统一接口 add/observations/clear/count）：
    - UnboundedObservationStorage：只过滤无效观测，不设上限。
    - BufferedObservationStorage：按置信度过滤 + 定长 FIFO。
    - BinBufferedObservationStorage：图像平面分格，每格定长 FIFO，并按时间/数量遗忘。
"""

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from eye3d.camera import CameraModel
from eye3d.geometry.primitives import Circle3D, Ellipse, Line
from eye3d.geometry.projections import project_line_into_image_plane, unproject_ellipse
from eye3d.geometry.utils import normalize

# 瞳孔平面到眼球中心的距离（与相机坐标单位一致）。
EYE_RADIUS_DEFAULT = 10.392304845413264


def _projector_aux(origin: np.ndarray, direction: np.ndarray) -> np.ndarray:
    """构造 [I - d d^T | (I - d d^T) o]，shape=(D, D+1)。"""

    dim = int(origin.shape[0])
    v = direction.reshape(dim, 1)
    P = np.eye(dim) - v @ v.T
    aux = np.empty((dim, dim + 1), dtype=np.float64)
    aux[:, :dim] = P
    aux[:, dim] = P @ origin
    return aux


@dataclass(frozen=True, eq=False)
class Observation:
    """单帧观测。

    属性:
        ellipse: 中心化图像坐标系下的瞳孔椭圆。
        confidence_2d: 2D 检测置信度。
        confidence: 融合置信度；反投影失败时为 0。
        timestamp: 时间戳（秒）。
        invalid: 反投影是否失败。
        circle_3d_pair: 两组候选三维圆（单位半径）；失败时为 None。
        gaze_3d_pair: 两组候选的三维视线（圆心 + 法向）。
        gaze_2d: 候选 0 的视线投影到图像平面的 2D 直线。
        aux_2d: shape=(2,3)。
        aux_3d: shape=(2,3,4)。
    """

    ellipse: Ellipse
    confidence_2d: float
    confidence: float
    timestamp: float
    invalid: bool
    circle_3d_pair: tuple[Circle3D, Circle3D] | None = None
    gaze_3d_pair: tuple[Line, Line] | None = None
    gaze_2d: Line | None = None
    aux_2d: np.ndarray | None = None
    aux_3d: np.ndarray | None = None

    @classmethod
    def from_ellipse(
        cls,
        ellipse: Ellipse,
        confidence_2d: float,
        timestamp: float,
        focal_length: float,
    ) -> "Observation":
        """反投影椭圆并预计算辅助矩阵；反投影失败时返回 invalid 观测。"""

        circles = unproject_ellipse(ellipse, focal_length)
        if circles is None:
            return cls(
                ellipse=ellipse,
                confidence_2d=float(confidence_2d),
                confidence=0.0,
                timestamp=float(timestamp),
                invalid=True,
            )

        circle_pair = (circles[0], circles[1])
        gaze_3d_pair = (
            Line(circle_pair[0].center, circle_pair[0].normal),
            Line(circle_pair[1].center, circle_pair[1].normal),
        )
        gaze_2d = project_line_into_image_plane(gaze_3d_pair[0], focal_length)

        aux_2d = _projector_aux(gaze_2d.origin, gaze_2d.direction)
        aux_3d = np.empty((2, 3, 4), dtype=np.float64)
        for i in range(2):
            dierkes = _dierkes_line(circle_pair[i])
            aux_3d[i] = _projector_aux(dierkes.origin, dierkes.direction)

        return cls(
            ellipse=ellipse,
            confidence_2d=float(confidence_2d),
            confidence=float(confidence_2d),
            timestamp=float(timestamp),
            invalid=False,
            circle_3d_pair=circle_pair,
            gaze_3d_pair=gaze_3d_pair,
            gaze_2d=gaze_2d,
            aux_2d=aux_2d,
            aux_3d=aux_3d,
        )

    def get_dierkes_line(self, i: int) -> Line:
        """第 i 组候选对应的 Dierkes 直线。"""

        if self.circle_3d_pair is None:
            raise ValueError("invalid observation has no Dierkes line")
        return _dierkes_line(self.circle_3d_pair[i])


def _dierkes_line(circle: Circle3D) -> Line:
    """Dierkes 直线：起点为圆心逆法向后退眼球半径，方向为圆心所在视线方向。

    法向朝向相机，球心在瞳孔后方。反投影的尺度未知（单位半径），真实瞳孔沿
    视线方向缩放，对应的球心也随之落在这条直线上。
    """

    origin = circle.center - EYE_RADIUS_DEFAULT * circle.normal
    return Line(origin, normalize(circle.center))


class ObservationStorage(Protocol):
    """观测存储的最小接口。"""

    def add(self, observation: Observation) -> None:
        ...

    def observations(self) -> list[Observation]:
        ...

    def clear(self) -> None:
        ...

    def count(self) -> int:
        ...


class UnboundedObservationStorage:
    """只过滤无效观测、不设上限的存储。"""

    def __init__(self) -> None:
        self._observations: list[Observation] = []

    def add(self, observation: Observation) -> None:
        if observation.invalid:
            return
        self._observations.append(observation)

    def observations(self) -> list[Observation]:
        return list(self._observations)

    def clear(self) -> None:
        self._observations.clear()

    def count(self) -> int:
        return len(self._observations)


class BufferedObservationStorage:
    """置信度过滤 + 定长环形缓冲（满后先进先出）。"""

    def __init__(self, confidence_threshold: float, buffer_length: int) -> None:
        if int(buffer_length) <= 0:
            raise ValueError(f"buffer_length 必须为正整数，实际为 {buffer_length}")
        self.confidence_threshold = float(confidence_threshold)
        self.buffer_length = int(buffer_length)
        self._buffer: deque[Observation] = deque(maxlen=self.buffer_length)

    def add(self, observation: Observation) -> None:
        if observation.invalid or observation.confidence < self.confidence_threshold:
            return
        self._buffer.append(observation)

    def observations(self) -> list[Observation]:
        return list(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    def count(self) -> int:
        return len(self._buffer)


class BinBufferedObservationStorage:
    """图像平面分格的环形缓冲，附带按时间/数量的遗忘策略。

    分格：
        水平 n_bins_horizontal 格，格子在像素上是正方形，竖直格数由分辨率推出。
        每格只保留最近 bin_buffer_length 个观测。

    遗忘（forget_min_observations 与 forget_min_time 均给定时启用）：
        每次接纳新观测前，只要总数 >= forget_min_observations 且全局最旧的观测
        早于 now - forget_min_time，就淘汰它。时间戳相同时按插入顺序淘汰。
    """

    def __init__(
        self,
        camera: CameraModel,
        confidence_threshold: float,
        n_bins_horizontal: int,
        bin_buffer_length: int,
        forget_min_observations: int | None = None,
        forget_min_time: float | None = None,
    ) -> None:
        if int(n_bins_horizontal) <= 0:
            raise ValueError(f"n_bins_horizontal 必须为正整数，实际为 {n_bins_horizontal}")
        if int(bin_buffer_length) <= 0:
            raise ValueError(f"bin_buffer_length 必须为正整数，实际为 {bin_buffer_length}")

        self.camera = camera
        self.confidence_threshold = float(confidence_threshold)
        self.bin_buffer_length = int(bin_buffer_length)
        self.forget_min_observations = None if forget_min_observations is None else int(forget_min_observations)
        self.forget_min_time = None if forget_min_time is None else float(forget_min_time)

        res_x, res_y = camera.resolution
        self.pixels_per_bin = float(res_x) / float(n_bins_horizontal)
        self.w = int(n_bins_horizontal)
        self.h = max(1, int(round(float(res_y) / self.pixels_per_bin)))

        self._seq = itertools.count()
        self._count = 0
        self._bins: list[deque[tuple[int, Observation]]] = []
        self.clear()

    @property
    def n_bins(self) -> int:
        return self.w * self.h

    def add(self, observation: Observation) -> None:
        if observation.invalid or observation.confidence < self.confidence_threshold:
            return

        if self.forget_min_observations is not None and self.forget_min_time is not None:
            self._forget_old(
                now=observation.timestamp,
                min_observations=self.forget_min_observations,
                min_time=self.forget_min_time,
            )

        bucket = self._bins[self.bin_index(observation)]
        if len(bucket) == self.bin_buffer_length:
            bucket.popleft()
            self._count -= 1
        bucket.append((next(self._seq), observation))
        self._count += 1

    def bin_index(self, observation: Observation) -> int:
        """观测所在格子的一维索引（行优先）。"""

        res_x, res_y = self.camera.resolution
        cx, cy = float(observation.ellipse.center[0]), float(observation.ellipse.center[1])
        # 中心化、y 向上 -> 像素坐标
        x_px = cx + 0.5 * float(res_x)
        y_px = 0.5 * float(res_y) - cy

        col = int(np.clip(np.floor(x_px / self.pixels_per_bin), 0, self.w - 1))
        row = int(np.clip(np.floor(y_px / self.pixels_per_bin), 0, self.h - 1))
        return row * self.w + col

    def _forget_old(self, *, now: float, min_observations: int, min_time: float) -> None:
        cutoff = float(now) - float(min_time)

        while self._count >= min_observations and self._count > 0:
            oldest: deque[tuple[int, Observation]] | None = None
            for bucket in self._bins:
                if not bucket:
                    continue
                if oldest is None or (bucket[0][1].timestamp, bucket[0][0]) < (oldest[0][1].timestamp, oldest[0][0]):
                    oldest = bucket
            if oldest is None or not oldest[0][1].timestamp < cutoff:
                break
            oldest.popleft()
            self._count -= 1

    def observations(self) -> list[Observation]:
        entries = [entry for bucket in self._bins for entry in bucket]
        entries.sort(key=lambda e: e[0])
        return [obs for _, obs in entries]

    def clear(self) -> None:
        self._bins = [deque() for _ in range(self.n_bins)]
        self._count = 0

    def count(self) -> int:
        return self._count


__all__ = [
    "BinBufferedObservationStorage",
    "BufferedObservationStorage",
    "EYE_RADIUS_DEFAULT",
    "Observation",
    "ObservationStorage",
    "UnboundedObservationStorage",
]
