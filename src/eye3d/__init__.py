"""eye3d：由二维瞳孔椭圆流估计三维眼球姿态。

说明：
- 几何内核（反投影、求根）在子包 `eye3d.geometry`。
- 观测存储、双球模型、折射校正、Kalman 平滑分别在同名模块中。
- 对外推荐直接使用 `Detector3D` + `DetectorConfig`。
"""

from eye3d.camera import CameraModel
from eye3d.config import DetectorConfig, load_detector_config
from eye3d.detector import DetectionResult, Detector3D, DetectorMode, ModelSnapshot, ModelUpdateSchedule
from eye3d.geometry.primitives import Circle3D, Ellipse
from eye3d.refraction import RefractionModelLoadError, Refractionizer
from eye3d.two_sphere_model import InsufficientDataError

__all__ = [
    "CameraModel",
    "Circle3D",
    "DetectionResult",
    "Detector3D",
    "DetectorConfig",
    "DetectorMode",
    "Ellipse",
    "InsufficientDataError",
    "ModelSnapshot",
    "ModelUpdateSchedule",
    "RefractionModelLoadError",
    "Refractionizer",
    "load_detector_config",
]
