"""闭式多项式求根（线性 / 二次 / 三次）。

说明：
    - 只返回实根；无实根时抛出 `NoSolutionError`，由调用方转成“无效观测”。
    - 领头系数为 0 时退化到低一阶求解，并重复最后一个根以保持根的个数。
    - 返回值统一按降序排列，保证下游（锥面特征值）顺序可复现。

参考：
    - Numerical Recipes in C, §5.6（二次方程的稳定求法）。
    - 三次方程：先化为 y^3 + u y + v = 0，按判别式 4u^3/27 + v^2 的符号
      选择“一个实根”或“三角形式三个实根”。判别式接近 0 时数值不稳定，
      这是该算法本身的边界情形，这里不做额外处理。
"""

from __future__ import annotations

import math

import numpy as np

_M = float(np.finfo(np.float64).max)
_SQRT_M = math.sqrt(_M)
_CBRT_M = _M ** (1.0 / 3.0)


class NoSolutionError(ValueError):
    """求根失败：没有实数解（负判别式、退化方程等）。"""


def _cbrt(x: float) -> float:
    return float(np.cbrt(x))


def _desc(*roots: float) -> tuple[float, ...]:
    return tuple(sorted((float(r) for r in roots), reverse=True))


def solve_linear(a: float, b: float) -> float:
    """求解 a x + b = 0。

    a == 0 时：b == 0 视为任意解并返回 0；否则无解。
    """

    a = float(a)
    b = float(b)
    if a == 0.0:
        if b == 0.0:
            return 0.0
        raise NoSolutionError("linear equation has no solution")
    return -b / a


def solve_quadratic(a: float, b: float, c: float) -> tuple[float, float]:
    """求解 a x^2 + b x + c = 0，返回两个实根（降序）。"""

    a = float(a)
    b = float(b)
    c = float(c)
    if a == 0.0:
        root = solve_linear(b, c)
        return (root, root)

    det = b * b - 4.0 * a * c
    if det < 0.0:
        raise NoSolutionError("quadratic equation has no real solution")

    # 稳定形式：避免 b 与 sqrt(det) 相减导致的抵消误差。
    sign = 1.0 if b >= 0.0 else -1.0
    q = -0.5 * (b + sign * math.sqrt(det))
    if q == 0.0:
        # b == 0 且 c == 0：双重根 0
        return (0.0, 0.0)
    r1, r2 = _desc(q / a, c / q)
    return (r1, r2)


def solve_cubic(a: float, b: float, c: float, d: float) -> tuple[float, float, float]:
    """求解 a x^3 + b x^2 + c x + d = 0，返回三个实根（降序）。

    只有一个实根时，该根重复三次。
    """

    a = float(a)
    b = float(b)
    c = float(c)
    d = float(d)
    if a == 0.0:
        r1, r2 = solve_quadratic(b, c, d)
        r = _desc(r1, r2, r2)
        return (r[0], r[1], r[2])

    p = b / a
    q = c / a
    r = d / a

    # 纯立方：x^3 + r = 0
    if b == 0.0 and c == 0.0:
        y = -_cbrt(r)
        return (y, y, y)

    u = q - (p * p) / 3.0
    v = r - p * q / 3.0 + 2.0 * p * p * p / 27.0

    # 系数量级接近 double 上限时，直接用渐近根，避免 u^3 / v^2 溢出。
    if abs(p) > 27.0 * _CBRT_M:
        return (-p, -p, -p)
    if abs(q) > _SQRT_M:
        y = -_cbrt(v)
        return (y, y, y)
    if abs(u) > 3.0 * _CBRT_M / 4.0:
        y = _cbrt(4.0) * u / 3.0
        return (y, y, y)

    j = 4.0 * u * u * u / 27.0 + v * v

    if j > 0.0:
        # 一个实根
        w = math.sqrt(j)
        if v > 0.0:
            y = (u / 3.0) * _cbrt(2.0 / (w + v)) - _cbrt((w + v) / 2.0) - p / 3.0
        else:
            y = _cbrt((w - v) / 2.0) - (u / 3.0) * _cbrt(2.0 / (w - v)) - p / 3.0
        return (y, y, y)

    # 三个实根（三角形式）
    s = math.sqrt(-u / 3.0)
    if s == 0.0:
        # u == v == 0：三重根
        y = -p / 3.0
        return (y, y, y)
    t = -v / (2.0 * s * s * s)
    k = math.acos(min(1.0, max(-1.0, t))) / 3.0

    y1 = 2.0 * s * math.cos(k) - p / 3.0
    y2 = s * (-math.cos(k) + math.sqrt(3.0) * math.sin(k)) - p / 3.0
    y3 = s * (-math.cos(k) - math.sqrt(3.0) * math.sin(k)) - p / 3.0
    r1, r2, r3 = _desc(y1, y2, y3)
    return (r1, r2, r3)


__all__ = [
    "NoSolutionError",
    "solve_cubic",
    "solve_linear",
    "solve_quadratic",
]
