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
Simulated flawed VNA with random error terms.

The VNA is modeled in the E-parameter form::

    M = El + Er S (I - Em S)^-1 Et

where El holds directivity and leakage, Er and Et the reflection and
transmission tracking paths, and Em the port match and crosstalk.  Which
of the terms are populated depends on the calibration type being
simulated.  For UE14 and E12, each column of M comes from its own
system of error terms, as when the switch between driven ports changes
the match seen by the device.
"""

import cmath
import math
import numpy as np
from libvna.cal import CalType, Parameter

C = 2.9979246e+08               # speed of light (m/s)


def random_complex(rng, sigma, size=None):
    """
    Return circularly symmetric complex normal values with standard
    deviation sigma.
    """
    sigma /= math.sqrt(2.0)
    return rng.normal(0, sigma, size) + 1j * rng.normal(0, sigma, size)


class SmoothResponse:
    """
    Random second order response that varies smoothly with frequency.
    """
    def __init__(self, rng, fmin, fmax):
        self.numerator = rng.normal(0, 0.5, 3)
        fmin /= 10.0
        fmax *= 10.0
        fn = fmin * 10 ** (math.log10(fmax / fmin) * rng.random())
        self.wn = 2.0 * math.pi * fn
        self.zeta = 0.05 + abs(rng.normal(0, 0.95))

    def __call__(self, f):
        s = 2.0j * math.pi * f
        a, b, c = self.numerator
        d = self.wn**2 + 2.0 * self.zeta * self.wn * s + s**2
        return (a + b * 2.0 * self.zeta * self.wn * s + c * s**2) / d


class Cable:
    """
    Random length of lossy coaxial cable between the VNA and the DUT.
    """
    VF = 2.0 / 3.0              # velocity factor
    METAL_LOSS = 2.50e-7        # Np/m/Hz**(1/2)
    DIELECTRIC_LOSS = 5.86e-12  # Np/m/Hz

    def __init__(self, rng):
        self.length = 0.1 + 0.25 * rng.random()

    def __call__(self, f):
        gl = (self.METAL_LOSS * math.sqrt(f) + self.DIELECTRIC_LOSS * f
              + 2.0j * math.pi * f / (self.VF * C)) * self.length
        return cmath.exp(-gl)


class _System:
    """
    Error terms feeding one set of M columns.
    """
    def __init__(self, rng, ctype, m_rows, m_columns, ports, system,
                 column_systems, fmin, fmax):
        full = ctype in (CalType.T16, CalType.U16)
        leakage = ctype not in (CalType.T8, CalType.U8)

        def make(rows, columns, where):
            terms = np.full((rows, columns), None, dtype=object)
            for i in range(rows):
                for j in range(columns):
                    if where(i, j):
                        terms[i, j] = SmoothResponse(rng, fmin, fmax)
            return terms

        self.el = make(m_rows, m_columns, lambda i, j: i == j or leakage)
        self.er = make(m_rows, ports, lambda i, j: i != j and full)
        self.et = make(ports, m_columns, lambda i, j: i != j and full)
        self.em = make(ports, ports, lambda i, j: i == j or full)
        self.cables = [Cable(rng) for _ in range(ports)]
        self.m_rows = m_rows
        self.m_columns = m_columns
        self.ports = ports
        self.system = system
        self.column_systems = column_systems

    @staticmethod
    def _evaluate(terms, f):
        result = np.zeros(terms.shape, dtype=np.complex128)
        for index, term in np.ndenumerate(terms):
            if term is not None:
                result[index] = term(f)
        return result

    def get_eterms(self, f):
        el = self._evaluate(self.el, f)
        er = self._evaluate(self.er, f)
        et = self._evaluate(self.et, f)
        em = self._evaluate(self.em, f)
        for port, cable in enumerate(self.cables):
            t = cable(f)
            if port < self.m_rows:
                er[port, port] = t
            if self.column_systems:
                if port == self.system:
                    et[port, 0] = t
            elif port < self.m_columns:
                et[port, port] = t
        return el, er, et, em


class RandomErrorTerms:
    """
    Random error terms of the given type.

    Args:
        rng (numpy.random.Generator): random number generator
        ctype (CalType): error term type to simulate
        rows, columns (int): dimensions of the measurement matrix
        fmin, fmax (float): frequency range
        nf_vector (sequence of float, optional): standard deviation of
            the noise floor added to each measurement, one value or one
            per frequency
        tr_vector (sequence of float, optional): standard deviation of
            the tracking noise, proportional to the measured value
    """
    def __init__(self, rng, ctype, rows, columns, fmin, fmax,
                 nf_vector=None, tr_vector=None):
        column_systems = ctype in (CalType.UE14, CalType.E12)
        m_columns = 1 if column_systems else columns
        n_systems = columns if column_systems else 1
        ports = max(rows, columns)
        self.rng = rng
        self.ctype = ctype
        self.rows = rows
        self.columns = columns
        self.ports = ports
        self.fmin = fmin
        self.fmax = fmax
        self.column_systems = column_systems
        self.nf_vector = nf_vector
        self.tr_vector = tr_vector
        self.systems = [_System(rng, ctype, rows, m_columns, ports, i,
                                column_systems, fmin, fmax)
                        for i in range(n_systems)]

    def get_eterms(self, system, f):
        """
        Return (el, er, et, em) of a system at frequency f.
        """
        return self.systems[system].get_eterms(f)

    def _noise(self, findex, m):
        if self.nf_vector is None and self.tr_vector is None:
            return m

        def pick(vector):
            if vector is None:
                return 0.0
            return vector[0] if len(vector) == 1 else vector[findex]

        nf = pick(self.nf_vector)
        tr = pick(self.tr_vector)
        return (m + random_complex(self.rng, nf, m.shape)
                + m * random_complex(self.rng, tr, m.shape))

    def evaluate(self, calset, f_vector, s_matrix, ab=False):
        """
        Return what the flawed VNA measures for a device.

        Args:
            calset (Calset): calset used to make parameters from values
            f_vector (array_like): frequencies
            s_matrix: ports x ports matrix of numbers, tuples or
                Parameters giving the S parameters of the device
            ab (bool): return (a, b) instead of M, where a is an
                arbitrary reference matrix and M = B A^-1

        Returns:
            (frequencies x rows x columns) array of M, or the tuple
            (a, b)
        """
        ports = self.ports
        s_parameters = [[Parameter.from_value(calset, s_matrix[i][j])
                         for j in range(ports)] for i in range(ports)]
        frequencies = len(f_vector)
        result = np.empty((frequencies, self.rows, self.columns),
                          dtype=np.complex128)
        identity = np.identity(ports)
        for findex, f in enumerate(f_vector):
            s = np.array([[p.get_value(f) for p in row]
                          for row in s_parameters], dtype=np.complex128)
            for system in self.systems:
                el, er, et, em = system.get_eterms(f)
                m = el + er @ s @ np.linalg.inv(identity - em @ s) @ et
                if self.column_systems:
                    result[findex, :, system.system] = m[:, 0]
                else:
                    result[findex] = m
            result[findex] = self._noise(findex, result[findex])
        if not ab:
            return result
        return self._make_ab(f_vector, result)

    def _make_ab(self, f_vector, m):
        """
        Scale M by a reference matrix with a low-pass diagonal and
        high-pass off-diagonal of alternating sign.
        """
        frequencies = len(f_vector)
        wn = 2.0 * math.pi * self.fmax / 10.0
        zeta = 1.0 / math.sqrt(2.0)
        if self.column_systems:
            a = np.empty((frequencies, 1, self.columns), dtype=np.complex128)
        else:
            a = np.empty((frequencies, self.columns, self.columns),
                         dtype=np.complex128)
        b = np.empty_like(m)
        for findex, f in enumerate(f_vector):
            s = 2.0j * math.pi * f
            d = wn**2 + 2.0 * zeta * wn * s + s**2
            lp = wn**2 / d
            hp = s**2 / d
            if self.column_systems:
                a[findex, 0, :] = lp
                b[findex] = m[findex] * lp
                continue
            for i in range(self.columns):
                for j in range(self.columns):
                    if i == j:
                        a[findex, i, j] = lp
                    else:
                        a[findex, i, j] = hp if j & 1 else -hp
            b[findex] = m[findex] @ a[findex]
        return a, b
