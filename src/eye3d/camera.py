"""相机模型（纯数据）。"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CameraModel:
    """针孔相机内参。

    属性:
        focal_length: 焦距（像素）。
        resolution: 图像分辨率 (width, height)（像素）。

    说明：
        构造后只读；所有模型与存储共享同一个实例（只引用，不拥有）。
    """

    focal_length: float
    resolution: tuple[float, float]

    def __post_init__(self) -> None:
        if not float(self.focal_length) > 0.0:
            raise ValueError(f"focal_length 必须为正数，实际为 {self.focal_length}")
        if len(self.resolution) != 2:
            raise ValueError(f"resolution 应为 (width, height)，实际为 {self.resolution}")
        w, h = float(self.resolution[0]), float(self.resolution[1])
        if w <= 0.0 or h <= 0.0:
            raise ValueError(f"resolution 必须为正数，实际为 {self.resolution}")
        object.__setattr__(self, "focal_length", float(self.focal_length))
        object.__setattr__(self, "resolution", (w, h))
