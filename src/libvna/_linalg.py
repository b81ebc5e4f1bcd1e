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
Dense complex matrix kernels: LU decomposition, left and right matrix
division, matrix inverse, Householder QR decomposition and least
squares solution.

The kernels return a determinant or rank alongside the result and never
raise on singular input: deciding what counts as singular is left to
the caller.
"""

import sys
import numpy as np

# smallest positive normal double
_DBL_MIN = sys.float_info.min


def _as_matrix(a, copy=True):
    """
    Return a as a 2-D complex C-ordered array.
    """
    a = np.array(a, dtype=np.complex128, order="C", copy=copy)
    if a.ndim != 2:
        raise ValueError(f"expected a matrix; got {a.ndim} dimensions")
    return a


def lu(a):
    """
    Replace a with its LU decomposition (Crout's method, row-scaled
    partial pivoting).

    On return, the strict lower triangle of a holds L (whose diagonal
    is implicitly one), and the upper triangle including the diagonal
    holds U, such that ``L @ U == a_original[row_index]``.

    Args:
        a (numpy.ndarray): n x n complex128 matrix, overwritten

    Returns:
        (row_index, determinant) where row_index[i] is the original
        row now at position i
    """
    n = a.shape[0]
    if a.shape != (n, n):
        raise ValueError("lu: matrix must be square")
    determinant = 1.0 + 0.0j
    row_index = np.arange(n)
    row_scale = np.max(np.abs(a), axis=1) if n else np.empty(0)

    for j in range(n):
        # U terms above the diagonal
        for i in range(j):
            a[i, j] -= np.dot(a[i, :i], a[:i, j])

        # diagonal U term and L terms below the diagonal
        best_index = j
        best_value = 0.0
        for i in range(j, n):
            a[i, j] -= np.dot(a[i, :j], a[:j, j])
            scale = row_scale[i]
            value = abs(a[i, j]) / scale if scale > 0.0 else 0.0
            if value > best_value:
                best_index = i
                best_value = value

        if best_index != j:
            a[[j, best_index], :] = a[[best_index, j], :]
            row_index[[j, best_index]] = row_index[[best_index, j]]
            row_scale[best_index] = row_scale[j]
            determinant = -determinant
        determinant *= a[j, j]

        if j != n - 1 and a[j, j] != 0.0:
            a[j + 1:, j] /= a[j, j]

    return row_index, determinant


def _lu_solve(a, row_index, b):
    """
    Solve L U x = b[row_index] given the packed factors from lu().
    """
    n = a.shape[0]
    x = b[row_index, :].copy()
    for i in range(1, n):
        x[i] -= a[i, :i] @ x[:i]
    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(n - 1, -1, -1):
            x[i] = (x[i] - a[i, i + 1:] @ x[i + 1:]) / a[i, i]
    return x


def mldivide(a, b):
    """
    Solve a @ x = b (matlab's left division a \\ b).

    Args:
        a (array_like): m x m coefficient matrix
        b (array_like): m x n right-hand side

    Returns:
        (x, determinant); a zero determinant means the system is
        singular and x is not meaningful
    """
    a = _as_matrix(a)
    b = _as_matrix(b)
    if b.shape[0] != a.shape[0]:
        raise ValueError("mldivide: rows of a and b must match")
    row_index, determinant = lu(a)
    if determinant == 0.0:
        return np.zeros(b.shape, dtype=np.complex128), determinant
    return _lu_solve(a, row_index, b), determinant


def mrdivide(b, a):
    """
    Solve x @ a = b (matlab's right division b / a).

    Args:
        b (array_like): m x n right-hand side
        a (array_like): n x n coefficient matrix

    Returns:
        (x, determinant)
    """
    a = _as_matrix(a)
    b = _as_matrix(b)
    if b.shape[1] != a.shape[0]:
        raise ValueError("mrdivide: columns of b must match rows of a")
    xt, determinant = mldivide(a.T, b.T)
    return np.ascontiguousarray(xt.T), determinant


def minverse(a):
    """
    Return (inverse of a, determinant of a).
    """
    a = _as_matrix(a)
    return mldivide(a, np.eye(a.shape[0], dtype=np.complex128))


def qrd(a):
    """
    Householder QR decomposition of a, in place.

    On return, the lower triangle of a including the diagonal holds the
    normalized Householder vectors v_k (zero above their active window),
    the strict upper triangle holds R above its diagonal, and the
    returned vector holds R's diagonal.

    Args:
        a (numpy.ndarray): m x n complex128 matrix, overwritten

    Returns:
        the length min(m, n) diagonal of R
    """
    rows, columns = a.shape
    diagonals = min(rows, columns)
    d = np.zeros(diagonals, dtype=np.complex128)
    for k in range(diagonals):
        subdot = np.vdot(a[k + 1:, k], a[k + 1:, k]).real
        akk = a[k, k]
        # Choose alpha opposite the phase of a_kk to avoid cancellation.
        alpha = -np.exp(1j * np.angle(akk)) * np.sqrt(abs(akk) ** 2 + subdot)
        d[k] = alpha
        a[k, k] -= alpha
        norm = np.sqrt(abs(a[k, k]) ** 2 + subdot)
        if norm != 0.0:
            a[k:, k] /= norm
        v = a[k:, k]
        if k + 1 < columns:
            a[k:, k + 1:] -= 2.0 * np.outer(v, v.conj() @ a[k:, k + 1:])
    return d


def _rank(d):
    magnitudes = np.abs(d)
    return int(np.count_nonzero(np.isfinite(magnitudes)
                                & (magnitudes >= _DBL_MIN)))


def qr(a):
    """
    QR decomposition of an m x n matrix.

    Returns:
        (q, r, rank) where q is m x m unitary, r is m x n upper
        triangular and rank counts the normal diagonal entries of r
    """
    a = _as_matrix(a)
    rows, columns = a.shape
    d = qrd(a)
    diagonals = len(d)
    q = np.eye(rows, dtype=np.complex128)
    for k in range(diagonals):
        v = a[k:, k]
        q[:, k:] -= 2.0 * np.outer(q[:, k:] @ v, v.conj())
    r = np.zeros((rows, columns), dtype=np.complex128)
    for i in range(diagonals):
        r[i, i] = d[i]
        r[i, i + 1:] = a[i, i + 1:]
    return q, r, _rank(d)


def qrsolve(a, b):
    """
    Least squares solution of a @ x = b using QR decomposition.

    When there are more equations than unknowns, x minimizes the
    2-norm of the residual.  When there are fewer, the excess unknowns
    are set to zero.

    Args:
        a (array_like): m x n coefficient matrix
        b (array_like): m x o right-hand side (or a vector of length m)

    Returns:
        (x, rank); x has n rows (or is a vector if b was a vector)
    """
    a = _as_matrix(a)
    b = np.array(b, dtype=np.complex128)
    vector = b.ndim == 1
    if vector:
        b = b.reshape(-1, 1)
    rows, columns = a.shape
    if b.shape[0] != rows:
        raise ValueError("qrsolve: rows of a and b must match")
    d = qrd(a)
    diagonals = len(d)
    for k in range(diagonals):
        v = a[k:, k]
        b[k:, :] -= 2.0 * np.outer(v, v.conj() @ b[k:, :])
    x = np.zeros((columns, b.shape[1]), dtype=np.complex128)
    with np.errstate(divide="ignore", invalid="ignore"):
        for i in range(diagonals - 1, -1, -1):
            x[i] = (b[i] - a[i, i + 1:diagonals] @ x[i + 1:diagonals]) / d[i]
    if vector:
        x = x.reshape(-1)
    return x, _rank(d)
