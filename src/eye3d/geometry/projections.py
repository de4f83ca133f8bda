"""透视投影与椭圆反投影（unprojection）。

核心目标：
- 输入：中心化图像坐标系下的瞳孔椭圆 + 焦距
- 输出：两组候选三维圆（中心、法向、半径）

实现说明：
- 采用 Safaee-Rad 1992 的闭式解：以椭圆为底、相机光心为顶点构造锥面，
  求锥面矩阵的三个特征值（判别三次方程），再在标准型下求截出圆的平面。
- 特征值按降序排列，因此两组候选的顺序是确定的：候选 0 取 +l，候选 1 取 -l。
- 锥面轴与坐标轴对齐时（例如椭圆正好位于主点处），eq.(12) 的分母为 0，
  此时回退到 `numpy.linalg.eigh` 求特征向量。
- 所有坐标单位一致：焦距与椭圆同为像素；三维圆的尺度由 circle_radius 决定。
"""

from __future__ import annotations

import math

import numpy as np

from eye3d.geometry.primitives import Circle3D, Conic, Conicoid, Ellipse, Line
from eye3d.geometry.solvers import NoSolutionError, solve_cubic
from eye3d.geometry.utils import normalize

# 特征向量闭式解的相对残差容忍度，超过则回退到 eigh。
_EIGVEC_REL_TOL = 1e-6


def project_point_into_image_plane(point: np.ndarray, focal_length: float) -> np.ndarray:
    """三维点 -> 中心化图像坐标（按 focal_length / z 缩放）。"""

    point = np.asarray(point, dtype=np.float64).reshape(3)
    scale = float(focal_length) / float(point[2])
    return point[:2] * scale


def project_line_into_image_plane(line: Line, focal_length: float) -> Line:
    """三维直线 -> 图像平面上的二维直线。

    取 origin 与 origin + direction 两点分别投影。方向投影为零时（直线经过光心），
    得到的二维直线方向为零向量。
    """

    p1 = line.origin
    p2 = line.origin + line.direction
    p1_proj = project_point_into_image_plane(p1, focal_length)
    p2_proj = project_point_into_image_plane(p2, focal_length)
    return Line(p1_proj, p2_proj - p1_proj)


def intersect_line_sphere(line: Line, center: np.ndarray, radius: float) -> np.ndarray | None:
    """直线与球面的最近交点（沿 direction 参数最小的那个）；无交点返回 None。"""

    center = np.asarray(center, dtype=np.float64).reshape(3)
    d = line.direction
    oc = line.origin - center
    b = float(np.dot(d, oc))
    c = float(np.dot(oc, oc)) - float(radius) ** 2
    disc = b * b - c
    if disc < 0.0:
        return None
    t = -b - math.sqrt(disc)
    return line.origin + t * d


def nearest_point_on_sphere_to_line(line: Line, center: np.ndarray, radius: float) -> np.ndarray:
    """球面上距离直线最近的点（直线与球不相交时使用）。"""

    center = np.asarray(center, dtype=np.float64).reshape(3)
    d = line.direction
    closest_on_line = line.origin + float(np.dot(center - line.origin, d)) * d
    offset = closest_on_line - center
    if float(np.linalg.norm(offset)) <= 0.0:
        # 直线穿过球心：取朝向直线起点的一侧
        offset = -d
    return center + float(radius) * normalize(offset)


def _cone_matrix(a: float, b: float, c: float, f: float, g: float, h: float) -> np.ndarray:
    return np.array([[a, h, g], [h, b, f], [g, f, c]], dtype=np.float64)


def _eigenvectors_closed_form(
    a: float, b: float, f: float, g: float, h: float, lam: np.ndarray
) -> np.ndarray:
    """Safaee-Rad 1992 eq.(12)：每个特征值对应的方向余弦 (l_i, m_i, n_i)。

    Returns:
        T1，shape=(3,3)；第 k 列为第 k 个特征值对应的单位特征向量。
    """

    # numpy 标量：分母为 0 时得到 inf/nan 而不抛异常。
    g = np.float64(g)
    h = np.float64(h)

    with np.errstate(divide="ignore", invalid="ignore"):
        t1 = (b - lam) * g - f * h
        t2 = (a - lam) * f - g * h
        ratio = t1 / t2
        t3 = -(a - lam) * ratio / g - h / g

        mi = 1.0 / np.sqrt(1.0 + ratio**2 + t3**2)
        li = ratio * mi
        ni = t3 * mi

    return np.stack([li, mi, ni], axis=0)


def _canonical_rotation(
    a: float, b: float, c: float, f: float, g: float, h: float, lam: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """求旋转 T1（标准型坐标 -> 图像坐标），并保证右手系。

    Returns:
        (T1, lam)；回退到 eigh 时 lam 也替换为 eigh 的特征值（降序）。
    """

    M = _cone_matrix(a, b, c, f, g, h)
    T1 = _eigenvectors_closed_form(a, b, f, g, h, lam)

    scale = max(float(np.max(np.abs(lam))), 1e-300)
    residual = float(np.max(np.abs(M @ T1 - T1 * lam.reshape(1, 3)))) if np.all(np.isfinite(T1)) else math.inf
    if not residual <= _EIGVEC_REL_TOL * scale:
        # 闭式解分母退化：回退到对称矩阵特征分解（按特征值降序对齐）。
        w, V = np.linalg.eigh(M)
        order = np.argsort(w)[::-1]
        T1 = V[:, order]
        lam = w[order]

    # (l × m) · n < 0 说明是左手系，整体取反。
    li, mi, ni = T1[0, :], T1[1, :], T1[2, :]
    if float(np.dot(np.cross(li, mi), ni)) < 0.0:
        T1 = -T1
    return T1, lam


def unproject_conicoid(
    a: float,
    b: float,
    c: float,
    f: float,
    g: float,
    h: float,
    u: float,
    v: float,
    w: float,
    focal_length: float,
    circle_radius: float,
) -> list[tuple[np.ndarray, np.ndarray]]:
    """由锥面系数求两组 (center, normal) 候选（Safaee-Rad 1992）。

    Raises:
        NoSolutionError: 特征值不满足 λ0 >= λ1 > 0 > λ2，或圆心方程无实数解。
    """

    # 判别三次方程 eq.(10)：λ^3 - (a+b+c) λ^2 + (...) λ - det = 0
    lam = np.asarray(
        solve_cubic(
            1.0,
            -(a + b + c),
            b * c + c * a + a * b - f * f - g * g - h * h,
            -(a * b * c + 2.0 * f * g * h - a * f * f - b * g * g - c * h * h),
        ),
        dtype=np.float64,
    )
    if not np.all(np.isfinite(lam)) or lam[0] == lam[2]:
        # 实对称矩阵的特征多项式必有三个实根；求根器落入“单实根”分支只可能是
        # 判别式≈0 时的舍入误差（例如正圆锥，λ0 == λ1），此时直接做特征值分解。
        lam = np.sort(np.linalg.eigvalsh(_cone_matrix(a, b, c, f, g, h)))[::-1]
    if not (lam[1] > 0.0 and lam[2] < 0.0):
        raise NoSolutionError(f"cone eigenvalues have unexpected signs: {lam.tolist()}")

    T1, lam = _canonical_rotation(a, b, c, f, g, h, lam)
    if not (lam[1] > 0.0 and lam[2] < 0.0):
        raise NoSolutionError(f"cone eigenvalues have unexpected signs: {lam.tolist()}")

    # eq.(31)：满足 eq.(30) 时 m = 0
    denom = float(lam[0] - lam[2])
    n = math.sqrt(float(lam[1] - lam[2]) / denom)
    m = 0.0
    l = math.sqrt(max(0.0, float(lam[0] - lam[1]) / denom))

    li, mi, ni = T1[0, :], T1[1, :], T1[2, :]

    # eq.(14)：标准型坐标系下的平移
    T2 = -(u * li + v * mi + w * ni) / lam

    T0 = np.array([0.0, 0.0, float(focal_length)], dtype=np.float64)

    solutions: list[tuple[np.ndarray, np.ndarray]] = []
    for l_i in (l, -l):
        gaze = T1 @ np.array([l_i, m, n], dtype=np.float64)

        # eq.(19)，m = 0 时的化简形式；l = 0 为 sgn(l) 的间断点，需单独处理。
        if l_i == 0.0:
            T3 = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)
        else:
            sgn = 1.0 if l_i > 0.0 else -1.0
            T3 = np.array(
                [[0.0, -n * sgn, l_i], [sgn, 0.0, m], [0.0, abs(l_i), n]],
                dtype=np.float64,
            )

        # eq.(38)
        A = float(np.dot(lam, T3[:, 0] ** 2))
        B = float(np.dot(lam, T3[:, 0] * T3[:, 2]))
        C = float(np.dot(lam, T3[:, 1] * T3[:, 2]))
        D = float(np.dot(lam, T3[:, 2] ** 2))

        disc = B * B + C * C - A * D
        if not disc > 0.0 or A == 0.0:
            raise NoSolutionError("circle center equation has no real solution")

        # eq.(41)
        z_prime = A * float(circle_radius) / math.sqrt(disc)
        center_prime = np.array([-B / A * z_prime, -C / A * z_prime, z_prime], dtype=np.float64)

        # eq.(42)
        center = T1 @ (T3 @ center_prime + T2) + T0
        if center[2] < 0.0:
            # 圆心在相机后方：取 eq.(41) 的另一个解
            center = T1 @ (T3 @ (-center_prime) + T2) + T0

        # 法向朝向相机
        if float(np.dot(gaze, center)) > 0.0:
            gaze = -gaze
        solutions.append((center, normalize(gaze)))

    return solutions


def unproject_ellipse(ellipse: Ellipse, focal_length: float, radius: float = 1.0) -> list[Circle3D] | None:
    """椭圆 -> 两个候选三维圆；失败返回 None。

    失败情形：椭圆退化（半轴非正/非有限）、锥面无实数解、结果含非有限值。
    """

    if not (ellipse.minor_radius > 0.0 and math.isfinite(ellipse.major_radius)):
        return None
    if not np.all(np.isfinite(ellipse.center)):
        return None

    conic = Conic.from_ellipse(ellipse)
    if not conic.discriminant() < 0.0:
        return None
    cone = Conicoid.from_conic(conic, np.array([0.0, 0.0, -float(focal_length)]))

    try:
        pair = unproject_conicoid(
            cone.A,
            cone.B,
            cone.C,
            cone.F,
            cone.G,
            cone.H,
            cone.U,
            cone.V,
            cone.W,
            focal_length,
            radius,
        )
    except (NoSolutionError, ArithmeticError, np.linalg.LinAlgError):
        return None

    circles = [Circle3D(center, normal, radius) for center, normal in pair]
    if not all(circle.is_valid() for circle in circles):
        return None
    return circles


__all__ = [
    "intersect_line_sphere",
    "nearest_point_on_sphere_to_line",
    "project_line_into_image_plane",
    "project_point_into_image_plane",
    "unproject_conicoid",
    "unproject_ellipse",
]
