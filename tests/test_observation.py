"""单测：Observation 的预计算量与三种观测存储策略。"""

from __future__ import annotations

import numpy as np
import pytest

from eye3d.camera import CameraModel
from eye3d.geometry.primitives import Ellipse
from eye3d.observation import (
    EYE_RADIUS_DEFAULT,
    BinBufferedObservationStorage,
    BufferedObservationStorage,
    Observation,
    UnboundedObservationStorage,
)

FOCAL_LENGTH = 25.0


def _obs(t: float, confidence: float = 1.0, center: tuple[float, float] = (0.0, 0.0)) -> Observation:
    return Observation.from_ellipse(Ellipse(np.array(center), 5.0, 5.0, 0.0), confidence, t, FOCAL_LENGTH)


def _invalid_obs(t: float) -> Observation:
    return Observation.from_ellipse(Ellipse(np.zeros(2), 5.0, 0.0, 0.0), 1.0, t, FOCAL_LENGTH)


def test_observation_precomputes_aux_matrices() -> None:
    obs = _obs(0.0, confidence=0.9)
    assert not obs.invalid
    assert obs.confidence == pytest.approx(0.9)
    assert obs.circle_3d_pair is not None
    assert obs.aux_2d.shape == (2, 3)
    assert obs.aux_3d.shape == (2, 3, 4)


def test_invalid_observation_has_zero_confidence() -> None:
    obs = _invalid_obs(0.0)
    assert obs.invalid
    assert obs.confidence == 0.0
    assert obs.confidence_2d == 1.0
    assert obs.circle_3d_pair is None
    with pytest.raises(ValueError):
        obs.get_dierkes_line(0)


def test_dierkes_line_passes_behind_pupil() -> None:
    obs = _obs(0.0)
    line = obs.get_dierkes_line(0)
    # 单位圆位于 z = 5、法向朝向相机：直线起点在瞳孔后方一个眼球半径处。
    assert np.allclose(line.origin, [0.0, 0.0, 5.0 + EYE_RADIUS_DEFAULT], atol=1e-6)
    assert np.allclose(line.direction, [0.0, 0.0, 1.0], atol=1e-6)


def test_unbounded_storage_rejects_only_invalid() -> None:
    storage = UnboundedObservationStorage()
    storage.add(_obs(0.0, confidence=0.1))
    storage.add(_invalid_obs(1.0))
    storage.add(_obs(2.0))
    assert storage.count() == 2
    assert [o.timestamp for o in storage.observations()] == [0.0, 2.0]

    storage.clear()
    assert storage.count() == 0


def test_buffered_storage_filters_and_keeps_most_recent() -> None:
    storage = BufferedObservationStorage(confidence_threshold=0.8, buffer_length=3)
    storage.add(_obs(0.0, confidence=0.5))
    storage.add(_invalid_obs(0.5))
    for t in range(5):
        storage.add(_obs(float(t)))

    assert storage.count() == 3
    assert [o.timestamp for o in storage.observations()] == [2.0, 3.0, 4.0]


def test_buffered_storage_rejects_non_positive_length() -> None:
    with pytest.raises(ValueError):
        BufferedObservationStorage(confidence_threshold=0.8, buffer_length=0)


def test_bin_layout_and_index() -> None:
    camera = CameraModel(focal_length=FOCAL_LENGTH, resolution=(25.0, 25.0))
    storage = BinBufferedObservationStorage(camera, confidence_threshold=0.5, n_bins_horizontal=10, bin_buffer_length=2)
    assert (storage.w, storage.h) == (10, 10)
    assert storage.n_bins == 100

    # 中心化坐标 (0, 0) 对应像素 (12.5, 12.5)
    assert storage.bin_index(_obs(0.0)) == 5 * 10 + 5
    # 左上角
    assert storage.bin_index(_obs(0.0, center=(-12.5, 12.5))) == 0
    # 越界会被截断到边缘格子
    assert storage.bin_index(_obs(0.0, center=(100.0, -100.0))) == 99


def test_bin_buffer_is_fifo_per_bin() -> None:
    camera = CameraModel(focal_length=FOCAL_LENGTH, resolution=(25.0, 25.0))
    storage = BinBufferedObservationStorage(camera, confidence_threshold=0.5, n_bins_horizontal=10, bin_buffer_length=2)
    for t in range(3):
        storage.add(_obs(float(t)))
    storage.add(_obs(3.0, center=(-10.0, 10.0)))
    storage.add(_obs(4.0, confidence=0.1))

    assert storage.count() == 3
    assert [o.timestamp for o in storage.observations()] == [1.0, 2.0, 3.0]


def test_bin_storage_forgets_old_observations_above_floor() -> None:
    camera = CameraModel(focal_length=FOCAL_LENGTH, resolution=(25.0, 25.0))
    storage = BinBufferedObservationStorage(
        camera,
        confidence_threshold=0.5,
        n_bins_horizontal=10,
        bin_buffer_length=30,
        forget_min_observations=3,
        forget_min_time=5.0,
    )
    for t in (0.0, 1.0, 2.0):
        storage.add(_obs(t))
    assert storage.count() == 3

    storage.add(_obs(10.0))
    assert [o.timestamp for o in storage.observations()] == [1.0, 2.0, 10.0]


def test_bin_storage_does_not_forget_recent_observations() -> None:
    camera = CameraModel(focal_length=FOCAL_LENGTH, resolution=(25.0, 25.0))
    storage = BinBufferedObservationStorage(
        camera,
        confidence_threshold=0.5,
        n_bins_horizontal=10,
        bin_buffer_length=30,
        forget_min_observations=2,
        forget_min_time=5.0,
    )
    for t in (0.0, 1.0, 2.0, 3.0):
        storage.add(_obs(t))
    assert storage.count() == 4


def test_bin_storage_forgets_same_timestamp_in_insertion_order() -> None:
    camera = CameraModel(focal_length=FOCAL_LENGTH, resolution=(25.0, 25.0))
    storage = BinBufferedObservationStorage(
        camera,
        confidence_threshold=0.5,
        n_bins_horizontal=10,
        bin_buffer_length=30,
        forget_min_observations=2,
        forget_min_time=1.0,
    )
    first = _obs(0.0, center=(5.0, 5.0))
    second = _obs(0.0, center=(-5.0, -5.0))
    storage.add(first)
    storage.add(second)
    storage.add(_obs(10.0))

    remaining = storage.observations()
    assert len(remaining) == 2
    assert remaining[0] is second
