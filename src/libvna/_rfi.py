#
# Vector Network Analyzer Library
# Copyright © 2020-2023 D Scott Guthridge <scott_guthridge@rompromity.net>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
#
"""
Rational function interpolation.

Interpolate within an m-wide window of points using a ratio of
polynomials::

             n0 + n1 x + n2 x^2 + ...
    f(x) = --------------------------
              1 + d1 x + d2 x^2 + ...

For m odd, the order of both numerator and denominator is (m-1)/2.
For m even, the denominator has order m/2 and the numerator has order
one less.
"""

import numpy as np

EPS = 1.0e-25

# maximum number of points in the interpolation window
MAX_M = 5

# fraction of the frequency range we're allowed to extrapolate
F_EXTRAPOLATION = 0.01


def rfi(xp, yp, x, segment=0, m=None):
    """
    Interpolate the table (xp, yp) at x.

    Outside of the table, the end values are held.

    Args:
        xp (sequence of float): ascending x points
        yp (sequence of complex): y points
        x (float): point to interpolate
        segment (int, optional): index of the left end of the xp
            interval containing x, used as a search hint
        m (int, optional): number of points in the window, default
            min(len(xp), MAX_M)

    Returns:
        (y, segment): the interpolated value and an updated hint
    """
    n = len(xp)
    assert n >= 1
    if m is None:
        m = min(n, MAX_M)
    assert 1 <= m <= n

    if x <= xp[0]:
        return complex(yp[0]), 0
    if x >= xp[n - 1]:
        return complex(yp[n - 1]), max(n - 2, 0)

    # Use segment as a hint to find the interval bounding x.
    segment = min(max(segment, 0), n - 2)
    while x < xp[segment]:
        segment -= 1
    while x > xp[segment + 1]:
        segment += 1

    dx1 = abs(x - xp[segment])
    if dx1 <= EPS:
        return complex(yp[segment]), segment
    dx2 = abs(x - xp[segment + 1])
    if dx2 <= EPS:
        return complex(yp[segment + 1]), segment
    if dx1 <= dx2 or m < 2:
        nearest = segment
    else:
        nearest = segment + 1

    # Find the base of the m-wide window best centered around x.
    if m & 1:
        base = nearest - (m - 1) // 2
    else:
        base = segment - (m // 2 - 1)
    base = min(max(base, 0), n - m)

    # Bulirsch-Stoer ("Numerical Recipes in C", 2nd ed, pp. 112-113)
    cur = nearest - base
    c = np.array(yp[base:base + m], dtype=np.complex128)
    d = c + EPS
    y = complex(c[cur])
    cur -= 1
    for i in range(m - 1):
        for j in range(m - i - 1):
            c_d = c[j + 1] - d[j]
            h1 = x - xp[base + j]
            h2 = x - xp[base + i + j + 1]
            den = h1 * d[j] - h2 * c[j + 1]
            c[j] = c_d * h1 * d[j] / den
            d[j] = c_d * h2 * c[j + 1] / den
        if 2 * (cur + 1) < m - i:
            y += c[cur + 1]
        else:
            y += d[cur]
            cur -= 1
    return y, segment


def check_range(xp, x):
    """
    Return True if x is within the range of xp, allowing the
    permitted extrapolation.
    """
    lower = xp[0] * (1.0 - F_EXTRAPOLATION)
    upper = xp[-1] * (1.0 + F_EXTRAPOLATION)
    return lower <= x <= upper
