"""单测：闭式多项式求根（线性 / 二次 / 三次）。"""

from __future__ import annotations

import unittest

import numpy as np
import pytest

from eye3d.geometry.solvers import NoSolutionError, solve_cubic, solve_linear, solve_quadratic


class TestLinear(unittest.TestCase):
    def test_regular(self) -> None:
        self.assertAlmostEqual(solve_linear(2.0, -3.0), 1.5)

    def test_degenerate_identity_returns_zero(self) -> None:
        self.assertEqual(solve_linear(0.0, 0.0), 0.0)

    def test_degenerate_contradiction_raises(self) -> None:
        with self.assertRaises(NoSolutionError):
            solve_linear(0.0, 1.0)


def test_quadratic_two_distinct_roots_sorted_descending() -> None:
    # (x - 3)(x + 2)
    r = solve_quadratic(1.0, -1.0, -6.0)
    assert r == pytest.approx((3.0, -2.0), abs=1e-12)


def test_quadratic_leading_zero_repeats_linear_root() -> None:
    assert solve_quadratic(0.0, 2.0, -4.0) == (2.0, 2.0)


def test_quadratic_double_zero_root() -> None:
    assert solve_quadratic(5.0, 0.0, 0.0) == (0.0, 0.0)


def test_quadratic_negative_discriminant_raises() -> None:
    with pytest.raises(NoSolutionError):
        solve_quadratic(1.0, 0.0, 1.0)


def test_quadratic_is_stable_for_widely_separated_roots() -> None:
    # 根为 1e8 与 1e-8：朴素公式会在小根上丢失全部有效数字。
    r1, r2 = solve_quadratic(1.0, -(1e8 + 1e-8), 1.0)
    assert r1 == pytest.approx(1e8, rel=1e-12)
    assert r2 == pytest.approx(1e-8, rel=1e-9)


def test_cubic_three_distinct_roots() -> None:
    # (x - 1)(x - 2)(x - 3)
    r = solve_cubic(1.0, -6.0, 11.0, -6.0)
    assert r == pytest.approx((3.0, 2.0, 1.0), abs=1e-9)


def test_cubic_roots_satisfy_polynomial() -> None:
    coeffs = (2.0, -3.0, -11.0, 6.0)  # 2(x - 3)(x + 2)(x - 0.5)
    roots = solve_cubic(*coeffs)
    assert list(roots) == sorted(roots, reverse=True)
    for x in roots:
        assert abs(np.polyval(coeffs, x)) < 1e-9
    assert roots == pytest.approx((3.0, 0.5, -2.0), abs=1e-9)


def test_cubic_single_real_root_is_repeated() -> None:
    # x^3 + x - 2 = (x - 1)(x^2 + x + 2)
    r = solve_cubic(1.0, 0.0, 1.0, -2.0)
    assert r == pytest.approx((1.0, 1.0, 1.0), abs=1e-10)


def test_cubic_pure_cube() -> None:
    assert solve_cubic(1.0, 0.0, 0.0, -8.0) == pytest.approx((2.0, 2.0, 2.0), abs=1e-12)


def test_cubic_triple_root() -> None:
    # (x - 2)^3
    assert solve_cubic(1.0, -6.0, 12.0, -8.0) == pytest.approx((2.0, 2.0, 2.0), abs=1e-12)


def test_cubic_leading_zero_falls_back_to_quadratic() -> None:
    assert solve_cubic(0.0, 1.0, -1.0, -6.0) == pytest.approx((3.0, -2.0, -2.0), abs=1e-12)


def test_cubic_degenerate_without_solution_raises() -> None:
    with pytest.raises(NoSolutionError):
        solve_cubic(0.0, 1.0, 0.0, 1.0)


def test_cubic_random_real_roots_round_trip() -> None:
    rng = np.random.default_rng(20240607)
    checked = 0
    while checked < 500:
        roots = np.sort(rng.uniform(-10.0, 10.0, size=3))[::-1]
        # 近重根时三次方程本身病态，跳过
        if float(np.min(np.abs(np.diff(roots)))) < 0.1:
            continue
        scale = float(rng.uniform(0.5, 4.0))
        coeffs = scale * np.poly(roots)
        got = np.asarray(solve_cubic(*coeffs))
        assert np.allclose(got, roots, rtol=1e-6, atol=1e-6), (roots, got)
        checked += 1


class TestCubicHugeCoefficients(unittest.TestCase):
    """系数接近 double 上限时走渐近根分支，结果有限且不溢出。"""

    def test_huge_quadratic_coefficient(self) -> None:
        r = solve_cubic(1.0, 1e110, 1.0, 1.0)
        self.assertEqual(r, (-1e110, -1e110, -1e110))

    def test_huge_linear_coefficient(self) -> None:
        r = solve_cubic(1.0, 0.0, 1e160, 8.0)
        self.assertEqual(len(r), 3)
        for x in r:
            self.assertAlmostEqual(x, -2.0, places=12)

    def test_huge_depressed_coefficient(self) -> None:
        r = solve_cubic(1.0, 0.0, -1e110, 0.0)
        expected = float(np.cbrt(4.0)) * -1e110 / 3.0
        for x in r:
            self.assertTrue(np.isfinite(x))
            self.assertEqual(x, pytest.approx(expected, rel=1e-12))


if __name__ == "__main__":
    unittest.main()
