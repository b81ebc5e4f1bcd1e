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
New calibration: accumulate measurements of calibration standards and
solve for the VNA error terms.

Each measured standard contributes one linear equation in the error
terms for every measured cell of M it determines.  When all standards
are fully known, the system is solved directly.  When some standards
contain unknown parameters, or when a measurement error model is given,
the system is nonlinear and is solved by Gauss-Newton iteration using
the variable projection method of Golub and LeVeque (1979): for a
given estimate of the unknown parameters p, solve the error terms x
as a linear least squares problem, project the remaining residual onto
the orthogonal complement of the coefficient matrix A(p), and correct
p using the Jacobian of that projection (Kaufman's approximation).
"""

from collections import namedtuple
import logging
import math
import numbers
import sys
import numpy as np
from scipy.interpolate import CubicSpline
from scipy.stats import chi2
from ._calibration import Calibration, frequency_first
from ._layout import CalType, Layout
from ._linalg import mldivide, mrdivide, qr, qrsolve
from ._parameter import CorrelatedParameter, Parameter, VectorParameter
from ._rfi import check_range
from .errors import MathError, UsageError, report

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1.0e-6
DEFAULT_ITERATION_LIMIT = 50
DEFAULT_PVALUE_LIMIT = 0.001
DEFAULT_Z0 = 50.0

# Backtracking line search gives up after this many halvings.
MAX_BACKTRACK = 6

# Inverse of the golden ratio and its square, used to limit the size
# of a Gauss-Newton step relative to the parameter vector.
PHI_INV = 0.61803398874989484820
PHI_INV2 = 0.38196601125010515180

# One term of an equation: index into the full term vector of its
# system, sign, the M cell multiplying it (or None) and the S cell
# multiplying it (or None).
_Term = namedtuple("_Term", "index negative m_cell s_cell")


class _Standard:
    """
    One measured calibration standard.

    Attributes:
        m: (frequencies x m_rows x m_columns) measurements, NaN where
            not measured
        given: (m_rows x m_columns) boolean mask of measured cells
        s: (s_rows x s_columns) object array of Parameter, or None
            for cells between two unconnected ports
        ports: sorted zero-based ports the standard connects
    """
    def __init__(self, m, given, s, ports):
        self.m = m
        self.given = given
        self.s = s
        self.ports = ports

    def reachable(self, match):
        """
        Return a boolean matrix whose (i, j) element is True if a
        signal entering port j can emerge from port i.
        """
        n = self.s.shape[0]
        reach = np.array([[self.s[i, j] is not match for j in range(n)]
                          for i in range(n)], dtype=bool)
        for k in range(n):
            reach |= np.outer(reach[:, k], reach[k, :])
        return reach


def _is_parameter_like(value):
    return (value is None or isinstance(value, (numbers.Number, Parameter,
                                                tuple))
            or np.ndim(value) < 2)


class Solver:
    """
    Solve for error terms from measurements of calibration standards.

    Args:
        calset (Calset): calibration set receiving the result
        ctype (CalType): error term type
        rows (int): number of VNA detectors (rows of the measurement
            matrix)
        columns (int): number of VNA driven ports (columns of the
            measurement matrix)
        frequency_vector (array_like): calibration frequencies
        z0 (complex, optional): reference impedance of the VNA ports

    Measurement arguments, a and b, are (frequencies x rows x columns)
    arrays.  The measured matrix is M = B A^-1.  When only M is
    available, pass it as the only matrix argument.  The measurement
    may be given in full or reduced to the rows and columns of the
    ports the standard connects.
    """
    def __init__(self, calset, ctype, rows, columns, frequency_vector,
                 *, z0=DEFAULT_Z0):
        self._calset = calset
        self._error_fn = calset._error_fn
        if isinstance(ctype, str):
            ctype = CalType.from_name(ctype)
        try:
            self._layout = Layout(ctype, rows, columns)
        except UsageError as e:
            raise report(self._error_fn, e) from None
        frequency_vector = np.array(frequency_vector, dtype=np.float64,
                                    ndmin=1)
        if frequency_vector.ndim != 1 or len(frequency_vector) < 1:
            raise report(self._error_fn, UsageError(
                "frequency_vector must be a non-empty vector"))
        if frequency_vector[0] < 0.0:
            raise report(self._error_fn, UsageError(
                "frequencies must be non-negative"))
        if np.any(np.diff(frequency_vector) <= 0.0):
            raise report(self._error_fn, UsageError(
                "frequencies must be in ascending order"))
        self._frequency_vector = frequency_vector
        self._z0 = complex(z0)
        self._standards = []
        self._held = []
        self._m_error = None
        self._et_tolerance = DEFAULT_TOLERANCE
        self._p_tolerance = DEFAULT_TOLERANCE
        self._iteration_limit = DEFAULT_ITERATION_LIMIT
        self._pvalue_limit = DEFAULT_PVALUE_LIMIT
        self._result = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        """
        Release the parameters held by this solver.
        """
        while self._held:
            self._held.pop().release()

    # ------------------------------------------------------------------
    # configuration

    @property
    def calset(self):
        return self._calset

    @property
    def layout(self):
        return self._layout

    @property
    def ctype(self):
        return self._layout.ctype

    @property
    def rows(self):
        return self._layout.m_rows

    @property
    def columns(self):
        return self._layout.m_columns

    @property
    def frequency_vector(self):
        return self._frequency_vector.copy()

    @property
    def frequencies(self):
        return len(self._frequency_vector)

    @property
    def z0(self):
        """reference impedance of the VNA ports"""
        return self._z0

    @z0.setter
    def z0(self, value):
        self._z0 = complex(value)
        self._result = None

    @property
    def et_tolerance(self):
        """RMS change in the error terms below which iteration stops"""
        return self._et_tolerance

    @et_tolerance.setter
    def et_tolerance(self, value):
        if not value >= 0.0:
            raise report(self._error_fn, UsageError(
                f"{value}: et_tolerance must be non-negative"))
        self._et_tolerance = float(value)
        self._result = None

    @property
    def p_tolerance(self):
        """RMS change in the unknown parameters below which iteration
        stops"""
        return self._p_tolerance

    @p_tolerance.setter
    def p_tolerance(self, value):
        if not value >= 0.0:
            raise report(self._error_fn, UsageError(
                f"{value}: p_tolerance must be non-negative"))
        self._p_tolerance = float(value)
        self._result = None

    @property
    def iteration_limit(self):
        return self._iteration_limit

    @iteration_limit.setter
    def iteration_limit(self, value):
        if int(value) < 1:
            raise report(self._error_fn, UsageError(
                f"{value}: iteration_limit must be at least 1"))
        self._iteration_limit = int(value)
        self._result = None

    @property
    def pvalue_limit(self):
        """reject the solution if the p-value falls below this limit"""
        return self._pvalue_limit

    @pvalue_limit.setter
    def pvalue_limit(self, value):
        if not 0.0 < value <= 1.0:
            raise report(self._error_fn, UsageError(
                f"{value}: pvalue_limit must be in (0, 1]"))
        self._pvalue_limit = float(value)
        self._result = None

    def set_m_error(self, frequency_vector, noise_vector,
                    tracking_vector=None):
        """
        Describe the measurement error of the VNA.

        Enables weighting of the equations by their expected error and
        the p-value test of the solution.

        Args:
            frequency_vector (array_like or None): frequencies at which
                noise and tracking are given; None means the
                calibration frequencies
            noise_vector (array_like or None): standard deviation of
                the noise floor; None disables error modeling
            tracking_vector (array_like, optional): standard deviation
                of the error proportional to the measured value

        A single value applies to all frequencies.  Otherwise, values
        are interpolated with a natural cubic spline.
        """
        if noise_vector is None:
            self._m_error = None
            self._result = None
            return
        noise = np.array(noise_vector, dtype=np.float64, ndmin=1)
        if tracking_vector is None:
            tracking = np.zeros_like(noise)
        else:
            tracking = np.array(tracking_vector, dtype=np.float64, ndmin=1)
        if np.any(~(noise > 0.0)):
            raise report(self._error_fn, UsageError(
                "noise values must be positive"))
        if np.any(~(tracking >= 0.0)):
            raise report(self._error_fn, UsageError(
                "tracking values must be non-negative"))
        if frequency_vector is None:
            frequency_vector = self._frequency_vector
        else:
            frequency_vector = np.array(frequency_vector, dtype=np.float64,
                                        ndmin=1)
            if np.any(np.diff(frequency_vector) <= 0.0):
                raise report(self._error_fn, UsageError(
                    "frequencies must be in ascending order"))
        self._m_error = (self._interpolate_m_error(frequency_vector, noise),
                         self._interpolate_m_error(frequency_vector,
                                                   tracking))
        self._result = None

    def _interpolate_m_error(self, frequency_vector, values):
        n = len(self._frequency_vector)
        if len(values) == 1:
            return np.full(n, values[0])
        if len(values) != len(frequency_vector):
            raise report(self._error_fn, UsageError(
                "frequency and error vectors must have the same length"))
        if frequency_vector is self._frequency_vector:
            return values.copy()
        if not (check_range(frequency_vector, self._frequency_vector[0])
                and check_range(frequency_vector,
                                self._frequency_vector[-1])):
            raise report(self._error_fn, UsageError(
                "error model frequencies must span the calibration "
                "frequency range"))
        spline = CubicSpline(frequency_vector, values, bc_type="natural")
        return spline(np.clip(self._frequency_vector, frequency_vector[0],
                              frequency_vector[-1]))

    # ------------------------------------------------------------------
    # adding standards

    def _hold(self, parameter):
        parameter.hold()
        self._held.append(parameter)

    def _parameter(self, value, delay_sum=0.0):
        """
        Return a held Parameter for value, rotated by the given total
        delay (seconds) if non-zero.
        """
        parameter = Parameter.from_value(self._calset, value)

        # Parameters made here from plain values belong to the solver
        # only; drop the calset's hold once the solver holds them.
        implicit = (not isinstance(value, Parameter)
                    and not parameter._predefined)
        if delay_sum != 0.0 and parameter is not self._calset.match:
            if parameter.is_unknown:
                raise report(self._error_fn, UsageError(
                    "delay cannot be applied to an unknown parameter"))
            f = self._frequency_vector
            rotated = VectorParameter(
                self._calset, f, parameter.get_value(f)
                * np.exp(-2.0j * math.pi * f * delay_sum))
            self._hold(rotated)
            rotated.delete()
            if implicit:
                parameter.delete()
            return rotated
        self._hold(parameter)
        if implicit:
            parameter.delete()
        return parameter

    def _get_m(self, a, b):
        """
        Validate a and b and return M = B A^-1 as a 3-D array.
        """
        n = len(self._frequency_vector)
        b = frequency_first(b, n)
        if b.ndim != 3 or b.shape[0] != n:
            raise report(self._error_fn, UsageError(
                f"measurement must have shape (frequencies={n}, rows, "
                f"columns); got {b.shape}"))
        if a is None:
            return b
        a = frequency_first(a, n)
        b_columns = b.shape[2]
        if self._layout.ctype.has_column_systems:
            if a.shape != (n, 1, b_columns):
                raise report(self._error_fn, UsageError(
                    f"a matrix must have shape ({n}, 1, {b_columns})"))
            if np.any(a == 0.0):
                findex = int(np.nonzero(a == 0.0)[0][0])
                raise report(self._error_fn, MathError(
                    f"'a' matrix is singular at frequency index {findex}"))
            return b / a
        if a.shape != (n, b_columns, b_columns):
            raise report(self._error_fn, UsageError(
                f"a matrix must have shape ({n}, {b_columns}, {b_columns})"))
        m = np.empty_like(b)
        for findex in range(n):
            m[findex], determinant = mrdivide(b[findex], a[findex])
            if determinant == 0.0 or not np.isfinite(determinant):
                raise report(self._error_fn, MathError(
                    f"'a' matrix is singular at frequency index {findex}"))
        return m

    def _add_common(self, a, b, s, port_map, delay_vector=None):
        """
        Add a standard with S matrix s connected to the 1-based ports
        in port_map.
        """
        layout = self._layout
        error_fn = self._error_fn
        ports = len(port_map)
        s_ports = layout.s_rows
        for port in port_map:
            if isinstance(port, bool) or not isinstance(
                    port, numbers.Integral) or port < 1:
                raise report(error_fn, UsageError(
                    f"{port!r}: invalid port index"))
            if port > s_ports:
                raise report(error_fn, UsageError(
                    f"port {port} exceeds the number of VNA ports "
                    f"({s_ports})"))
        if len(set(port_map)) != ports:
            raise report(error_fn, UsageError(
                f"{list(port_map)}: port appears more than once"))
        if delay_vector is None:
            delay_vector = [0.0] * ports
        elif len(delay_vector) != ports:
            raise report(error_fn, UsageError(
                "delay_vector must have one entry per port"))

        # Build the full S matrix: known parameters on the connected
        # ports, match between connected and unconnected ports, None
        # (undefined) between unconnected ports.
        match = self._calset.match
        connected = [p - 1 for p in port_map]
        full_s = np.full((s_ports, s_ports), None, dtype=object)
        for i in range(s_ports):
            for j in range(s_ports):
                if (i in connected) != (j in connected):
                    full_s[i, j] = match
        held = len(self._held)
        try:
            for i, pi in enumerate(connected):
                for j, pj in enumerate(connected):
                    full_s[pi, pj] = self._parameter(
                        s[i][j], delay_vector[i] + delay_vector[j])
            m = self._get_m(a, b)
            m_full, given = self._place_m(m, sorted(connected))
        except Exception:
            while len(self._held) > held:
                self._held.pop().release()
            raise
        self._standards.append(_Standard(m_full, given, full_s,
                                         sorted(connected)))
        self._result = None

    def _place_m(self, m, ports):
        """
        Expand a full or abbreviated measurement to full size.
        """
        layout = self._layout
        ctype = layout.ctype
        m_rows, m_columns = layout.m_rows, layout.m_columns
        if ctype.is_t:
            rows = [p for p in ports if p < m_rows]
            columns = (list(range(m_columns)) if ctype == CalType.T16
                       else ports)
        else:
            rows = (list(range(m_rows)) if ctype == CalType.U16
                    else ports)
            columns = [p for p in ports if p < m_columns]
        shape = m.shape[1:]
        given = np.zeros((m_rows, m_columns), dtype=bool)
        m_full = np.full((m.shape[0], m_rows, m_columns), np.nan,
                         dtype=np.complex128)
        if shape == (m_rows, m_columns):
            given[...] = True
            m_full[...] = m
        elif shape == (len(rows), len(columns)):
            given[np.ix_(rows, columns)] = True
            for i, row in enumerate(rows):
                for j, column in enumerate(columns):
                    m_full[:, row, column] = m[:, i, j]
        else:
            raise report(self._error_fn, UsageError(
                f"measurement matrix must be {len(rows)}x{len(columns)} "
                f"or {m_rows}x{m_columns}; got {shape[0]}x{shape[1]}"))
        return m_full, given

    def _shift(self, a, b):
        """
        Handle the forms where only a measurement matrix is given.
        """
        if b is None:
            return None, a
        return a, b

    def add_single_reflect(self, a, b=None, s11=None, port=1, delay=0.0):
        """
        Add a reflect standard on a single port.

        Args:
            a, b: measurement matrices; add_single_reflect(m, s11, ...)
                and add_single_reflect(None, m, s11, ...) are also
                accepted
            s11: reflection coefficient (number, tuple or Parameter)
            port (int): VNA port (1-based)
            delay (float): delay of the standard (seconds)
        """
        if s11 is None and b is not None and _is_parameter_like(b):
            a, b, s11 = None, a, b
        a, b = self._shift(a, b)
        if s11 is None:
            raise report(self._error_fn, UsageError("s11 is required"))
        self._add_common(a, b, [[s11]], [port], [delay])

    def add_double_reflect(self, a, b=None, s11=None, s22=None, port1=1,
                           port2=2, delay1=0.0, delay2=0.0):
        """
        Add a pair of reflect standards measured together on two
        ports, with no transmission between them.

        Args:
            a, b: measurement matrices
            s11: reflection coefficient on port1
            s22: reflection coefficient on port2
            port1, port2 (int): VNA ports (1-based)
            delay1, delay2 (float): delays of the standards (seconds)
        """
        if s22 is None and b is not None and _is_parameter_like(b):
            a, b, s11, s22 = None, a, b, s11
        a, b = self._shift(a, b)
        if s11 is None or s22 is None:
            raise report(self._error_fn, UsageError(
                "s11 and s22 are required"))
        self._add_common(a, b, [[s11, 0.0], [0.0, s22]], [port1, port2],
                         [delay1, delay2])

    def add_through(self, a, b=None, port1=1, port2=2, delay=0.0):
        """
        Add a perfect through standard between two ports.

        Args:
            a, b: measurement matrices
            port1, port2 (int): VNA ports (1-based)
            delay (float): total delay of the through (seconds)
        """
        if b is not None and _is_parameter_like(b):
            a, b, port1, port2 = None, a, b, port1
        a, b = self._shift(a, b)
        if delay != 0.0:
            f = self._frequency_vector
            through = (f, np.exp(-2.0j * math.pi * f * delay))
        else:
            through = 1.0
        self._add_common(a, b, [[0.0, through], [through, 0.0]],
                         [port1, port2])

    def add_line(self, a, b=None, s=None, port1=1, port2=2, delay1=0.0,
                 delay2=0.0):
        """
        Add a two-port standard with arbitrary 2x2 S parameters.

        Args:
            a, b: measurement matrices
            s: 2x2 matrix of numbers, tuples or Parameters
            port1, port2 (int): VNA ports (1-based)
            delay1, delay2 (float): delays on each side (seconds)
        """
        if s is None:
            a, b, s = None, a, b
        a, b = self._shift(a, b)
        if s is None or np.shape(s)[:2] != (2, 2):
            raise report(self._error_fn, UsageError(
                "s must be a 2x2 matrix"))
        self._add_common(a, b, s, [port1, port2], [delay1, delay2])

    def add_mapped_matrix(self, a, b=None, s=None, port_map=None,
                          delay_vector=None):
        """
        Add a multi-port standard with arbitrary S parameters.

        Args:
            a, b: measurement matrices
            s: square matrix of numbers, tuples or Parameters
            port_map (sequence of int, optional): VNA port (1-based)
                connected to each port of the standard; required if
                s is smaller than the number of VNA ports
            delay_vector (sequence of float, optional): delay on each
                port of the standard (seconds)
        """
        if s is None:
            a, b, s = None, a, b
        a, b = self._shift(a, b)
        if s is None or len(np.shape(s)) < 2:
            raise report(self._error_fn, UsageError(
                "s must be a square matrix"))
        n = len(s)
        if any(len(row) != n for row in s):
            raise report(self._error_fn, UsageError(
                "s must be a square matrix"))
        if port_map is None:
            if n != self._layout.s_rows:
                raise report(self._error_fn, UsageError(
                    "port_map is required when s is smaller than the "
                    "number of VNA ports"))
            port_map = list(range(1, n + 1))
        elif len(port_map) != n:
            raise report(self._error_fn, UsageError(
                "port_map must have one entry per row of s"))
        self._add_common(a, b, s, list(port_map), delay_vector)

    # ------------------------------------------------------------------
    # building the linear system

    def _equation_cells(self, standard, system):
        layout = self._layout
        ports = standard.ports
        given = standard.given

        # In 16-term systems every fully measured row (T) or column
        # (U) gives an equation for each connected port, since S is
        # known zero between connected and unconnected ports.
        if layout.ctype == CalType.T16:
            rows = [r for r in range(layout.m_rows) if given[r, :].all()]
            return [(r, c) for r in rows for c in ports]
        if layout.ctype == CalType.U16:
            columns = [c for c in range(layout.m_columns)
                       if given[:, c].all()]
            return [(r, c) for r in ports for c in columns]
        if layout.ctype.is_t:
            rows = [p for p in ports if p < layout.m_rows]
            return [(r, c) for r in rows for c in ports]
        columns = [p for p in ports if p < layout.m_columns]
        if layout.ctype.has_column_systems:
            columns = [c for c in columns if c == system]
        return [(r, c) for r in ports for c in columns]

    def _equation_terms(self, standard, row, column, system):
        """
        Generate the terms of the equation for cell (row, column).
        """
        layout = self._layout
        lookup = layout.lookup
        s = standard.s
        match = self._calset.match

        def known(i, j):
            if s[i, j] is None:
                raise report(self._error_fn, UsageError(
                    f"standard does not define s{i + 1}{j + 1}"))
            return s[i, j] is not match

        if layout.ctype.is_t:
            # Ts S + Ti - M Tx S - M Tm = 0
            for k in range(layout.s_rows):
                index = lookup("ts", row, k)
                if index is not None and known(k, column):
                    yield _Term(index, False, None, (k, column))
            index = lookup("ti", row, column)
            if index is not None:
                yield _Term(index, False, None, None)
            for k in range(layout.m_columns):
                for j in range(layout.s_rows):
                    index = lookup("tx", k, j)
                    if index is not None and known(j, column):
                        yield _Term(index, True, (row, k), (j, column))
            for k in range(layout.m_columns):
                index = lookup("tm", k, column)
                if index is not None:
                    yield _Term(index, True, (row, k), None)
        else:
            # Um M + Ui - S Ux M - S Us = 0
            t_column = 0 if layout.ctype.has_column_systems else column
            for k in range(layout.m_rows):
                index = lookup("um", row, k, system)
                if index is not None:
                    yield _Term(index, False, (k, column), None)
            index = lookup("ui", row, t_column, system)
            if index is not None:
                yield _Term(index, False, None, None)
            for k in range(layout.s_columns):
                if not known(row, k):
                    continue
                for j in range(layout.m_rows):
                    index = lookup("ux", k, j, system)
                    if index is not None:
                        yield _Term(index, True, (j, column), (row, k))
                index = lookup("us", k, t_column, system)
                if index is not None:
                    yield _Term(index, True, None, (row, k))

    def _build_system(self):
        """
        Flatten every equation of every standard into parallel arrays.
        """
        layout = self._layout
        ctype = layout.ctype
        match = self._calset.match
        skip_unreachable = ctype not in (CalType.T16, CalType.U16)
        slots = {}
        slot_parameters = []
        equation_standard = []
        equation_system = []
        columns = {name: [] for name in ("eq", "col", "sign", "std", "row",
                                         "column", "slot")}
        for system in range(layout.systems):
            offset = system * layout.t_terms
            for sindex, standard in enumerate(self._standards):
                reach = standard.reachable(match)
                for row, column in self._equation_cells(standard, system):
                    if (skip_unreachable and row != column
                            and not reach[row, column]):
                        continue
                    equation = len(equation_standard)
                    for term in self._equation_terms(standard, row, column,
                                                     system):
                        if term.m_cell is not None:
                            if not standard.given[term.m_cell]:
                                r, c = term.m_cell
                                raise report(self._error_fn, UsageError(
                                    f"standard requires measurement of "
                                    f"m{r + 1}{c + 1}"))
                            m_row, m_column = term.m_cell
                        else:
                            m_row, m_column = -1, -1
                        if term.s_cell is not None:
                            parameter = standard.s[term.s_cell]
                            slot = slots.get(id(parameter))
                            if slot is None:
                                slot = len(slot_parameters)
                                slots[id(parameter)] = slot
                                slot_parameters.append(parameter)
                        else:
                            slot = -1
                        columns["eq"].append(equation)
                        columns["col"].append(offset + term.index)
                        columns["sign"].append(-1.0 if term.negative
                                               else 1.0)
                        columns["std"].append(sindex)
                        columns["row"].append(m_row)
                        columns["column"].append(m_column)
                        columns["slot"].append(slot)
                    equation_standard.append(sindex)
                    equation_system.append(system)

        system = {name: np.array(values, dtype=np.float64 if name == "sign"
                                 else np.intp)
                  for name, values in columns.items()}
        system["equations"] = len(equation_standard)
        system["equation_standard"] = np.array(equation_standard,
                                               dtype=np.intp)
        system["slot_parameters"] = slot_parameters

        # Unknown parameters, including unknown correlates of unknown
        # parameters that appear in no standard.
        unknowns = []
        for parameter in slot_parameters:
            while parameter.is_unknown and parameter not in unknowns:
                unknowns.append(parameter)
                parameter = parameter.other
        system["unknowns"] = unknowns
        system["slot_unknown"] = np.array(
            [unknowns.index(p) if p.is_unknown else -1
             for p in slot_parameters], dtype=np.intp)
        system["correlated"] = [p for p in unknowns
                                if isinstance(p, CorrelatedParameter)]
        unity = [layout.unity_index(s) + s * layout.t_terms
                 for s in range(layout.systems)]
        system["unity"] = np.array(unity, dtype=np.intp)
        system["x_columns"] = np.array(
            [i for i in range(layout.systems * layout.t_terms)
             if i not in unity], dtype=np.intp)
        return system

    def _leakage_sources(self):
        """
        Return a dict mapping each off-diagonal M cell to the list of
        standards in which the cell measures only leakage.
        """
        layout = self._layout
        match = self._calset.match
        sources = {}
        for row in range(layout.m_rows):
            for column in range(layout.m_columns):
                if row != column:
                    sources[(row, column)] = []
        for sindex, standard in enumerate(self._standards):
            reach = standard.reachable(match)
            for (row, column), indices in sources.items():
                if standard.given[row, column] and not reach[row, column]:
                    indices.append(sindex)
        return sources

    # ------------------------------------------------------------------
    # solving

    def solve(self):
        """
        Solve for the error terms at each calibration frequency.

        Raises:
            MathError: too few standards, singular system, failure to
                converge, or (with a measurement error model) the
                p-value of the solution is below pvalue_limit
        """
        self._result = None
        layout = self._layout
        error_fn = self._error_fn
        if not self._standards:
            raise report(error_fn, MathError(
                "insufficient number of standards to solve error terms"))
        system = self._build_system()
        leakage_sources = (self._leakage_sources()
                           if layout.ctype.has_leakage else {})
        for cell, indices in leakage_sources.items():
            if not indices:
                raise report(error_fn, MathError(
                    f"leakage term system is singular: no standard "
                    f"isolates m{cell[0] + 1}{cell[1] + 1}"))

        unknowns = system["unknowns"]
        equations = system["equations"]
        if equations + len(system["correlated"]) < (layout.x_length
                                                     + len(unknowns)):
            raise report(error_fn, MathError(
                "insufficient number of standards to solve error terms"))

        n = len(self._frequency_vector)
        measured = np.stack([standard.m for standard in self._standards])
        terms = np.empty((n, layout.systems, layout.t_terms),
                         dtype=np.complex128)
        leakage = np.zeros((n, layout.m_rows, layout.m_columns),
                           dtype=np.complex128)
        p_values = np.empty((n, len(unknowns)), dtype=np.complex128)
        pvalues = np.ones(n) if self._m_error is not None else None
        for findex, f in enumerate(self._frequency_vector):
            m = measured[:, findex, :, :]
            m_corrected = m.copy()
            leakage_sumsq = {}
            for (row, column), indices in leakage_sources.items():
                values = m[indices, row, column]
                leakage[findex, row, column] = np.mean(values)
                leakage_sumsq[(row, column)] = (
                    np.sum(values), np.sum(np.abs(values) ** 2),
                    len(values))
                m_corrected[:, row, column] -= leakage[findex, row, column]
            x, p, pvalue = self._solve_frequency(
                findex, f, system, m, m_corrected, leakage_sumsq)
            for s in range(layout.systems):
                terms[findex, s] = layout.expand(
                    x[s * layout.unknowns:(s + 1) * layout.unknowns], s)
            p_values[findex] = p
            if pvalues is not None:
                pvalues[findex] = pvalue

        for i, parameter in enumerate(unknowns):
            parameter._set_solved(self._frequency_vector, p_values[:, i])
        self._result = (terms, leakage, pvalues)
        logger.debug("solved %s %dx%d over %d frequencies", layout.name,
                     layout.m_rows, layout.m_columns, n)

    def _coefficients(self, system, m, s_values):
        """
        Return the value of each term's coefficient (without x).
        """
        rows = system["row"]
        has_m = rows >= 0
        values = system["sign"].astype(np.complex128)
        values[has_m] *= m[system["std"][has_m], rows[has_m],
                           system["column"][has_m]]
        slots = system["slot"]
        has_s = slots >= 0
        values[has_s] *= s_values[slots[has_s]]
        return values

    def _assemble(self, system, m, s_values):
        """
        Build the linear system A x = b.
        """
        layout = self._layout
        values = self._coefficients(system, m, s_values)
        full = np.zeros((system["equations"],
                         layout.systems * layout.t_terms),
                        dtype=np.complex128)
        np.add.at(full, (system["eq"], system["col"]), values)
        a = full[:, system["x_columns"]]
        b = -full[:, system["unity"]].sum(axis=1)
        return a, b

    def _s_values(self, system, f, p):
        """
        Return the value of each parameter slot at f given unknowns p.
        """
        slot_unknown = system["slot_unknown"]
        values = np.empty(len(system["slot_parameters"]),
                          dtype=np.complex128)
        for slot, parameter in enumerate(system["slot_parameters"]):
            if slot_unknown[slot] >= 0:
                values[slot] = p[slot_unknown[slot]]
            else:
                values[slot] = parameter._value(f)
        return values

    def _weights(self, system, findex, m, s_values, t_full):
        """
        Return the weight (1 / standard deviation) of each equation
        by first order propagation of the measurement error.
        """
        layout = self._layout
        noise = self._m_error[0][findex]
        tracking = self._m_error[1][findex]
        cells = layout.m_rows * layout.m_columns
        rows = system["row"]
        has_m = rows >= 0
        derivative = system["sign"][has_m].astype(np.complex128)
        derivative *= t_full[system["col"][has_m]]
        slots = system["slot"][has_m]
        has_s = slots >= 0
        derivative[has_s] *= s_values[slots[has_s]]
        keys = (system["eq"][has_m] * cells + rows[has_m] * layout.m_columns
                + system["column"][has_m])
        partials = np.zeros(system["equations"] * cells,
                            dtype=np.complex128)
        np.add.at(partials, keys, derivative)
        partials = partials.reshape(system["equations"], cells)
        magnitudes = np.nan_to_num(np.abs(m[system["equation_standard"]]))
        variance = (noise ** 2 + tracking ** 2
                    * magnitudes.reshape(system["equations"], cells) ** 2)
        u = np.sqrt(np.sum(np.abs(partials) ** 2 * variance, axis=1))
        u[u == 0.0] = noise
        return 1.0 / u

    def _t_full(self, system, x):
        layout = self._layout
        t_full = np.ones(layout.systems * layout.t_terms,
                         dtype=np.complex128)
        t_full[system["x_columns"]] = x
        return t_full

    def _solve_simple(self, a, b, f):
        equations, unknowns = a.shape
        if equations < unknowns:
            raise report(self._error_fn, MathError(
                "insufficient number of standards to solve error terms"))
        if equations == unknowns:
            x, determinant = mldivide(a, b.reshape(-1, 1))
            if determinant == 0.0 or not np.isfinite(determinant):
                raise report(self._error_fn, MathError(
                    f"singular linear system at {f:e} Hz"))
            return x.reshape(-1)
        x, rank = qrsolve(a, b)
        if rank < unknowns:
            raise report(self._error_fn, MathError(
                f"singular linear system at {f:e} Hz"))
        return x

    def _solve_frequency(self, findex, f, system, m, m_corrected,
                         leakage_sumsq):
        """
        Solve the error terms and unknown parameters at one frequency.

        Returns:
            (x, p, pvalue)
        """
        layout = self._layout
        error_fn = self._error_fn
        unknowns = system["unknowns"]
        correlated = system["correlated"]
        p_length = len(unknowns)
        x_length = layout.x_length
        p = np.array([u.initial_value(f) for u in unknowns],
                     dtype=np.complex128)

        if p_length == 0 and self._m_error is None:
            a, b = self._assemble(system, m_corrected,
                                  self._s_values(system, f, p))
            return self._solve_simple(a, b, f), p, None

        w = None
        best_sum_d2 = math.inf
        best_x = best_p = best_d = None
        x_reference = layout.initial_x()
        backtracks = 0
        iteration = 0
        while True:
            s_values = self._s_values(system, f, p)
            a, b = self._assemble(system, m_corrected, s_values)
            if w is not None:
                a = a * w[:, np.newaxis]
                b = b * w
            q, r, rank = qr(a)
            if rank < x_length:
                raise report(error_fn, MathError(
                    f"singular linear system at {f:e} Hz"))
            x, _ = mldivide(r[:x_length, :x_length],
                            (q[:, :x_length].conj().T @ b).reshape(-1, 1))
            x = x.reshape(-1)

            # With an error model, weight the equations from the
            # first solution and start over.
            if self._m_error is not None and w is None:
                w = self._weights(system, findex, m, s_values,
                                  self._t_full(system, x))
                continue
            if p_length == 0:
                best_x, best_p = x, p
                break

            # Jacobian of the projected residual with respect to p.
            q2h = q[:, x_length:].conj().T
            t_full = self._t_full(system, x)
            slots = system["slot"]
            unknown_of_term = np.where(slots >= 0,
                                       system["slot_unknown"][slots], -1)
            selected = unknown_of_term >= 0
            eq = system["eq"][selected]
            values = self._coefficients(system, m_corrected,
                                        np.ones_like(s_values))[selected]
            values = values * t_full[system["col"][selected]]
            if w is not None:
                values *= w[eq]
            jr = np.zeros((system["equations"], p_length),
                          dtype=np.complex128)
            np.add.at(jr, (eq, unknown_of_term[selected]), values)
            j_rows = [q2h @ jr]
            k_rows = [q2h @ b]

            # Each correlated parameter adds (p_i - p_other) / sigma = 0.
            for parameter in correlated:
                c = 1.0 / parameter.get_sigma(f)
                row = np.zeros((1, p_length), dtype=np.complex128)
                i = unknowns.index(parameter)
                row[0, i] = c
                if parameter.other.is_unknown:
                    other = p[unknowns.index(parameter.other)]
                    row[0, unknowns.index(parameter.other)] = -c
                else:
                    other = parameter.other._value(f)
                j_rows.append(row)
                k_rows.append(np.array([-c * (p[i] - other)]))
            j_matrix = np.vstack(j_rows)
            k_vector = np.concatenate(k_rows)

            if j_matrix.shape[0] == p_length:
                d, determinant = mldivide(j_matrix, k_vector.reshape(-1, 1))
                if determinant == 0.0 or not np.isfinite(determinant):
                    raise report(error_fn, MathError(
                        f"singular linear system at {f:e} Hz"))
                d = d.reshape(-1)
            else:
                d, rank = qrsolve(j_matrix, k_vector)
                if rank < p_length:
                    raise report(error_fn, MathError(
                        f"singular linear system at {f:e} Hz"))

            sum_d2 = float(np.sum(np.abs(d) ** 2))
            logger.debug("f %e iteration %d: |d|^2 %e", f, iteration,
                         sum_d2)
            if sum_d2 < best_sum_d2:
                sum_dx2 = float(np.sum(np.abs(x - x_reference) ** 2))
                sum_p2 = max(float(np.sum(np.abs(p) ** 2)), 1.0)
                if sum_d2 > sum_p2 * PHI_INV2:
                    d *= math.sqrt(sum_p2 / sum_d2) * PHI_INV
                best_x, best_p, best_d = x, p.copy(), d
                x_reference = x
                best_sum_d2 = sum_d2
                if (sum_d2 / p_length <= self._p_tolerance ** 2
                        and sum_dx2 / x_length <= self._et_tolerance ** 2):
                    logger.debug("f %e converged after %d iterations",
                                 f, iteration)
                    break
                if w is not None:
                    w = self._weights(system, findex, m, s_values, t_full)
                p = p + d
                backtracks = 0
            elif sum_d2 / p_length <= sys.float_info.epsilon:
                break
            else:
                backtracks += 1
                if backtracks > MAX_BACKTRACK:
                    logger.debug("f %e: backtrack limit reached", f)
                    break
                best_d = best_d * 0.5
                p = best_p + best_d
            iteration += 1
            if iteration >= self._iteration_limit:
                raise report(error_fn, MathError(
                    f"system failed to converge at {f:e} Hz"))

        x, p = best_x, best_p
        pvalue = None
        if self._m_error is not None:
            pvalue = self._pvalue(system, findex, f, m, m_corrected, x, p,
                                  leakage_sumsq)
            if pvalue < self._pvalue_limit:
                raise report(error_fn, MathError(
                    f"p-value {pvalue:.3g} is below the limit "
                    f"{self._pvalue_limit:g} at {f:e} Hz"))
        return x, p, pvalue

    def _pvalue(self, system, findex, f, m, m_corrected, x, p,
                leakage_sumsq):
        """
        Return the probability of residuals at least as large as
        observed under the measurement error model.
        """
        layout = self._layout
        noise = self._m_error[0][findex]
        tracking = self._m_error[1][findex]
        s_values = self._s_values(system, f, p)
        a, b = self._assemble(system, m_corrected, s_values)
        w = self._weights(system, findex, m, s_values,
                          self._t_full(system, x))
        residuals = (a @ x - b) * w
        chisq = 2.0 * float(np.sum(np.abs(residuals) ** 2))
        df = 2 * system["equations"] - 2 * layout.x_length
        for total, sumsq, count in leakage_sumsq.values():
            if count > 1:
                n_mean_squared = abs(total) ** 2 / count
                weight = 1.0 / (noise ** 2 + n_mean_squared / count
                                * tracking ** 2)
                chisq += 2.0 * (sumsq - n_mean_squared) * weight
                df += 2 * (count - 1)
        if df < 1:
            return 0.0
        return float(chi2.sf(chisq, df))

    # ------------------------------------------------------------------
    # results

    @property
    def pvalue_vector(self):
        """
        p-value of the solution at each frequency, or None if no
        measurement error model was given.
        """
        if self._result is None or self._result[2] is None:
            return None
        return self._result[2].copy()

    def add_to_calset(self, name):
        """
        Add the solved calibration to the calset, replacing any
        calibration with the same name.

        Returns:
            the index of the new calibration
        """
        if self._result is None:
            raise report(self._error_fn, UsageError(
                "solve() must succeed before add_to_calset()"))
        terms, leakage, _ = self._result
        calibration = Calibration(self._calset, name, self._layout.ctype,
                                  self._layout.m_rows,
                                  self._layout.m_columns,
                                  self._frequency_vector, terms, leakage,
                                  z0=self._z0)
        return self._calset._add_calibration(calibration)
