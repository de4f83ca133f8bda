"""几何基元：椭圆、直线、三维圆、二次曲线与二次锥面。

说明：
    - 这里只放“数据 + 确定性推导”，不做任何拟合。
    - 椭圆在中心化的图像坐标系下表达（原点为主点，y 向上）；
      由像素坐标到该坐标系的换算由 `eye3d.detector` 负责。
    - 角度单位统一为弧度。
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from eye3d.geometry.utils import cart2sph


@dataclass(frozen=True, eq=False)
class Ellipse:
    """二维椭圆。

    属性:
        center: 中心点，shape=(2,)。
        major_radius: 长半轴。
        minor_radius: 短半轴。
        angle: 长半轴相对 x 轴的旋转角（弧度）。

    不变量：
        major_radius >= minor_radius。若构造时传反，会交换两轴并把 angle 加 π/2。
    """

    center: np.ndarray
    major_radius: float
    minor_radius: float
    angle: float

    def __post_init__(self) -> None:
        center = np.asarray(self.center, dtype=np.float64).reshape(2)
        major = float(self.major_radius)
        minor = float(self.minor_radius)
        angle = float(self.angle)
        if minor > major:
            major, minor = minor, major
            angle = angle + math.pi / 2.0

        object.__setattr__(self, "center", center)
        object.__setattr__(self, "major_radius", major)
        object.__setattr__(self, "minor_radius", minor)
        object.__setattr__(self, "angle", angle)

    @property
    def circumference(self) -> float:
        # Ramanujan 近似
        a = self.minor_radius
        b = self.major_radius
        return math.pi * (3.0 * (a + b) - math.sqrt((3.0 * a + b) * (a + 3.0 * b)))

    @property
    def area(self) -> float:
        return math.pi * self.minor_radius * self.major_radius

    @property
    def circularity(self) -> float:
        if self.major_radius <= 0.0:
            return 0.0
        return self.minor_radius / self.major_radius


@dataclass(frozen=True, eq=False)
class Line:
    """直线（二维或三维）：origin + s * direction。

    direction 在构造时归一化；零向量保持为零（退化为“点”），不会产生 NaN。
    """

    origin: np.ndarray
    direction: np.ndarray

    def __post_init__(self) -> None:
        origin = np.asarray(self.origin, dtype=np.float64).reshape(-1)
        direction = np.asarray(self.direction, dtype=np.float64).reshape(-1)
        if origin.shape != direction.shape:
            raise ValueError(f"origin/direction 维度不一致：{origin.shape} vs {direction.shape}")

        norm = float(np.linalg.norm(direction))
        if norm > 0.0:
            direction = direction / norm

        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "direction", direction)

    @property
    def dim(self) -> int:
        return int(self.origin.shape[0])


@dataclass(frozen=True, eq=False)
class Circle3D:
    """三维圆：中心、单位法向与半径。"""

    center: np.ndarray
    normal: np.ndarray
    radius: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "center", np.asarray(self.center, dtype=np.float64).reshape(3))
        object.__setattr__(self, "normal", np.asarray(self.normal, dtype=np.float64).reshape(3))
        object.__setattr__(self, "radius", float(self.radius))

    def spherical_representation(self) -> tuple[float, float, float]:
        """返回 (phi, theta, radius)，phi/theta 为法向的球坐标。"""

        phi, theta = cart2sph(self.normal)
        return (phi, theta, self.radius)

    def is_valid(self) -> bool:
        if not math.isfinite(self.radius) or self.radius <= 0.0:
            return False
        return bool(np.all(np.isfinite(self.center)) and np.all(np.isfinite(self.normal)))


@dataclass(frozen=True)
class Conic:
    """平面二次曲线 A x^2 + B xy + C y^2 + D x + E y + F = 0。

    系数由椭圆确定性推导（整体乘以 a^2 b^2，不影响零点集）。
    """

    A: float
    B: float
    C: float
    D: float
    E: float
    F: float

    @classmethod
    def from_ellipse(cls, ellipse: Ellipse) -> "Conic":
        ax = math.cos(ellipse.angle)
        ay = math.sin(ellipse.angle)
        a2 = ellipse.major_radius**2
        b2 = ellipse.minor_radius**2
        cx = float(ellipse.center[0])
        cy = float(ellipse.center[1])

        A = a2 * ay * ay + b2 * ax * ax
        B = 2.0 * (b2 - a2) * ax * ay
        C = a2 * ax * ax + b2 * ay * ay
        return cls(
            A=A,
            B=B,
            C=C,
            D=-2.0 * A * cx - B * cy,
            E=-B * cx - 2.0 * C * cy,
            F=A * cx * cx + B * cx * cy + C * cy * cy - a2 * b2,
        )

    def discriminant(self) -> float:
        return self.B * self.B - 4.0 * self.A * self.C


@dataclass(frozen=True)
class Conicoid:
    """三维二次曲面（此处为锥面）：

        A x^2 + B y^2 + C z^2 + 2F yz + 2G zx + 2H xy + 2U x + 2V y + 2W z + D = 0

    由平面二次曲线与锥顶 (alpha, beta, gamma) 推导（Safaee-Rad 1992 eq. 3）。
    """

    A: float
    B: float
    C: float
    F: float
    G: float
    H: float
    U: float
    V: float
    W: float
    D: float

    @classmethod
    def from_conic(cls, conic: Conic, vertex: np.ndarray) -> "Conicoid":
        alpha, beta, gamma = (float(v) for v in np.asarray(vertex, dtype=np.float64).reshape(3))
        g2 = gamma * gamma

        return cls(
            A=g2 * conic.A,
            B=g2 * conic.C,
            C=(
                conic.A * alpha * alpha
                + conic.B * alpha * beta
                + conic.C * beta * beta
                + conic.D * alpha
                + conic.E * beta
                + conic.F
            ),
            F=-gamma * (conic.C * beta + conic.B / 2.0 * alpha + conic.E / 2.0),
            G=-gamma * (conic.B / 2.0 * beta + conic.A * alpha + conic.D / 2.0),
            H=g2 * conic.B / 2.0,
            U=g2 * conic.D / 2.0,
            V=g2 * conic.E / 2.0,
            W=-gamma * (conic.E / 2.0 * beta + conic.D / 2.0 * alpha + conic.F),
            D=g2 * conic.F,
        )
