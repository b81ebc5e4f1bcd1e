#!/usr/bin/python3
"""
Test rational function interpolation.
"""
import unittest
import numpy as np
from libvna._rfi import check_range, rfi


def rational(x):
    return (1.0 + 2.0j * x + 0.5 * x**2) / (1.0 + 0.3 * x + 0.1j * x**2)


class TestRFI(unittest.TestCase):
    def test_table_points(self):
        xp = np.linspace(1.0, 10.0, 10)
        yp = rational(xp)
        for i, x in enumerate(xp):
            y, _ = rfi(xp, yp, x)
            self.assertEqual(y, yp[i])

    def test_rational(self):
        """
        A five point window reproduces a second order rational function.
        """
        xp = np.linspace(0.0, 4.0, 9)
        yp = rational(xp)
        segment = 0
        for x in np.linspace(0.05, 3.95, 27):
            y, segment = rfi(xp, yp, x, segment)
            self.assertTrue(np.isclose(y, rational(x), rtol=1.0e-9),
                            f"x={x}")
            self.assertTrue(xp[segment] <= x <= xp[segment + 1])

    def test_segment_hint(self):
        xp = np.linspace(0.0, 4.0, 9)
        yp = rational(xp)
        expected, _ = rfi(xp, yp, 0.7)
        for hint in (0, 3, 7, 100):
            y, segment = rfi(xp, yp, 0.7, hint)
            self.assertEqual(segment, 1)
            self.assertTrue(np.isclose(y, expected))

    def test_small_tables(self):
        y, _ = rfi([5.0], [2.0 + 1.0j], 5.0)
        self.assertEqual(y, 2.0 + 1.0j)
        # Two points fit 1 / (1 + d x).
        y, _ = rfi([0.0, 2.0], [1.0, 3.0], 1.0)
        self.assertTrue(np.isclose(y, 1.5))

    def test_ends_held(self):
        xp = [1.0, 2.0, 3.0]
        yp = [1.0, 4.0, 9.0]
        self.assertEqual(rfi(xp, yp, 0.5)[0], 1.0)
        self.assertEqual(rfi(xp, yp, 3.5)[0], 9.0)

    def test_check_range(self):
        xp = [100.0, 200.0]
        self.assertTrue(check_range(xp, 150.0))
        self.assertTrue(check_range(xp, 99.5))
        self.assertTrue(check_range(xp, 201.0))
        self.assertFalse(check_range(xp, 98.0))
        self.assertFalse(check_range(xp, 203.0))


if __name__ == '__main__':
    unittest.main()
