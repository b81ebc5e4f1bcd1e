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
Solved calibration: error terms over frequency and the correction of
device under test measurements.
"""

import math
import numbers
import numpy as np
from ._layout import CalType, Layout
from ._linalg import mldivide, mrdivide, qrsolve
from ._rfi import check_range, rfi
from .data import NPData, PType
from .errors import MathError, UsageError, report


def frequency_first(x, frequencies):
    """
    Return x as a complex array with frequency as the first index.

    Measurements may be given as (frequencies x rows x columns), or
    with frequency as the innermost index, (rows x columns x
    frequencies), as many VNAs return one vector per measured cell.
    A single 2-D matrix is accepted when there is one frequency.
    """
    x = np.array(x, dtype=np.complex128)
    if x.ndim == 2 and frequencies == 1:
        return x[np.newaxis, ...]
    if x.ndim == 3 and x.shape[0] != frequencies and \
            x.shape[2] == frequencies:
        return np.ascontiguousarray(np.moveaxis(x, 2, 0))
    return x


class Calibration:
    """
    A named set of error terms in a Calset.

    Calibrations are made by Solver.add_to_calset() or by loading a
    calibration file; they are not normally constructed directly.

    Args:
        calset (Calset): the owning calset
        name (str): name of the calibration
        ctype (CalType): error term type
        rows, columns (int): dimensions of the measurement matrix
        frequency_vector (array_like): calibration frequencies
        terms (numpy.ndarray): (frequencies x systems x terms) error
            terms in the layout of ctype (UE14 for E12)
        leakage (numpy.ndarray): (frequencies x rows x columns) leakage
            terms; the diagonal is unused
        z0 (complex): reference impedance
        properties (dict, optional): user properties
    """
    def __init__(self, calset, name, ctype, rows, columns, frequency_vector,
                 terms, leakage, z0=50.0, properties=None):
        self._calset = calset
        self._error_fn = calset._error_fn
        self._name = name
        self._layout = Layout(ctype, rows, columns)
        self._frequency_vector = np.array(frequency_vector, dtype=np.float64)
        self._terms = np.array(terms, dtype=np.complex128)
        self._leakage = np.array(leakage, dtype=np.complex128)
        self._z0 = complex(z0)
        self.properties = {} if properties is None else properties

    @property
    def name(self):
        return self._name

    @property
    def ctype(self):
        return self._layout.ctype

    @property
    def layout(self):
        return self._layout

    @property
    def rows(self):
        return self._layout.m_rows

    @property
    def columns(self):
        return self._layout.m_columns

    @property
    def frequencies(self):
        return len(self._frequency_vector)

    @property
    def frequency_vector(self):
        return self._frequency_vector.copy()

    @property
    def fmin(self):
        return self._frequency_vector[0]

    @property
    def fmax(self):
        return self._frequency_vector[-1]

    @property
    def z0(self):
        return self._z0

    def get_error_terms(self):
        """
        Return the error terms as a dict mapping term class name to an
        array indexed first by frequency.

        Diagonal classes are (frequencies x n) arrays, full classes are
        (frequencies x rows x columns) arrays.  UE14 stores the terms of
        column system c in column c.  Leakage, "el", is a (frequencies
        x rows x columns) array with NaN on the diagonal.  E12 returns
        the classic el, er and em matrices (et is one).
        """
        layout = self._layout
        if layout.ctype == CalType.E12:
            return self._to_e12()
        result = {}
        n = self.frequencies
        for name, tc in layout.term_classes.items():
            size = layout.class_size(name)
            block = self._terms[:, :, tc.offset:tc.offset + size]
            if layout.ctype.has_column_systems:
                if tc.kind == "single":
                    result[name] = block[:, :, 0].copy()
                else:
                    result[name] = np.swapaxes(block, 1, 2).copy()
            elif tc.kind == "full":
                result[name] = block[:, 0, :].reshape(n, tc.rows, tc.columns)
            else:
                result[name] = block[:, 0, :].copy()
        if layout.ctype.has_leakage:
            result["el"] = self._leakage_with_nan()
        return result

    def _leakage_with_nan(self):
        el = self._leakage.copy()
        for i in range(min(self.rows, self.columns)):
            el[:, i, i] = np.nan
        return el

    def _to_e12(self):
        """
        Convert UE14 terms to classic E12 terms.
        """
        layout = self._layout
        offsets = {name: tc.offset
                   for name, tc in layout.term_classes.items()}
        rows, columns = self.rows, self.columns
        el = self._leakage.copy()
        er = np.empty_like(el)
        em = np.empty_like(el)
        for c in range(columns):
            terms = self._terms[:, c, :]
            um = terms[:, offsets["um"]:offsets["um"] + rows]
            ui = terms[:, offsets["ui"]]
            ux = terms[:, offsets["ux"]:offsets["ux"] + rows]
            us = terms[:, offsets["us"]]
            if np.any(um == 0.0):
                raise report(self._error_fn, MathError(
                    "cannot convert to E12: singular um term"))
            n = us - ui * ux[:, c] / um[:, c]
            el[:, c, c] = -ui / um[:, c]
            er[:, :, c] = n[:, np.newaxis] / um
            em[:, :, c] = ux / um
        return {"el": el, "er": er, "em": em}

    @classmethod
    def from_error_terms(cls, calset, name, ctype, rows, columns,
                         frequency_vector, error_terms, z0=50.0,
                         properties=None):
        """
        Make a Calibration from a dict in the form returned by
        get_error_terms().
        """
        ctype = CalType(ctype)
        layout = Layout(ctype, rows, columns)
        n = len(frequency_vector)
        terms = np.zeros((n, layout.systems, layout.t_terms),
                         dtype=np.complex128)
        leakage = np.zeros((n, rows, columns), dtype=np.complex128)
        if ctype == CalType.E12:
            el = np.asarray(error_terms["el"], dtype=np.complex128)
            er = np.asarray(error_terms["er"], dtype=np.complex128)
            em = np.asarray(error_terms["em"], dtype=np.complex128)
            offsets = {name: tc.offset
                       for name, tc in layout.term_classes.items()}
            for c in range(columns):
                er_c = er[:, c, c]
                terms[:, c, offsets["um"]:offsets["um"] + rows] = (
                    1.0 / er[:, :, c])
                terms[:, c, offsets["ui"]] = -el[:, c, c] / er_c
                terms[:, c, offsets["ux"]:offsets["ux"] + rows] = (
                    em[:, :, c] / er[:, :, c])
                terms[:, c, offsets["us"]] = (
                    1.0 - em[:, c, c] * el[:, c, c] / er_c)
            leakage[...] = el
        else:
            for term_name, tc in layout.term_classes.items():
                size = layout.class_size(term_name)
                value = np.asarray(error_terms[term_name], dtype=np.complex128)
                if ctype.has_column_systems:
                    if tc.kind == "single":
                        terms[:, :, tc.offset] = value
                    else:
                        terms[:, :, tc.offset:tc.offset + size] = (
                            np.swapaxes(value, 1, 2))
                else:
                    terms[:, 0, tc.offset:tc.offset + size] = (
                        value.reshape(n, size))
            if ctype.has_leakage:
                leakage[...] = np.nan_to_num(
                    np.asarray(error_terms["el"], dtype=np.complex128))
        for i in range(min(rows, columns)):
            leakage[:, i, i] = 0.0
        return cls(calset, name, ctype, rows, columns, frequency_vector,
                   terms, leakage, z0=z0, properties=properties)

    # ------------------------------------------------------------------
    # apply

    def _interpolate(self, f, segments):
        """
        Return (terms, leakage) interpolated at frequency f.
        """
        fv = self._frequency_vector
        systems, t_terms = self._terms.shape[1:]
        terms = np.empty((systems, t_terms), dtype=np.complex128)
        for s in range(systems):
            for t in range(t_terms):
                terms[s, t], segments[0] = rfi(fv, self._terms[:, s, t], f,
                                               segments[0])
        leakage = np.zeros(self._leakage.shape[1:], dtype=np.complex128)
        if self._layout.ctype.has_leakage:
            for i in range(self.rows):
                for j in range(self.columns):
                    if i != j:
                        leakage[i, j], segments[0] = rfi(
                            fv, self._leakage[:, i, j], f, segments[0])
        return terms, leakage

    def _rotations(self, m):
        """
        Split a ports x ports measurement of a rectangular calibration
        into the measurements made in each rotation of the DUT.

        Yields (index, values, port_map) where index is the row (T) or
        column (U) of the VNA measurement matrix, values holds it over
        frequency and port_map gives the zero-based DUT port facing
        each VNA port.  Rotation r means VNA port k faced DUT port
        (k + r) mod ports.
        """
        layout = self._layout
        rows, columns = layout.m_rows, layout.m_columns
        ports = layout.s_rows
        if layout.ctype.is_t:
            for i in range(ports):
                k = i % rows
                r = i - k
                port_map = [(v + r) % ports for v in range(ports)]
                yield k, m[:, i, [(c + r) % ports for c in range(columns)]], \
                    port_map
        else:
            for j in range(ports):
                c = j % columns
                r = j - c
                port_map = [(v + r) % ports for v in range(ports)]
                yield c, m[:, [(k + r) % ports for k in range(rows)], j], \
                    port_map

    def _get_m(self, frequencies, a, b, shapes):
        if b is None:
            m = frequency_first(a, frequencies)
            a = None
        else:
            m = frequency_first(b, frequencies)
        layout = self._layout
        if m.ndim != 3 or m.shape[0] != frequencies or m.shape[1:] not in (
                shapes):
            expected = " or ".join(f"({frequencies}, {r}, {c})"
                                   for r, c in shapes)
            raise report(self._error_fn, UsageError(
                f"measurement must be {expected}; got {m.shape}"))
        if a is None:
            return m
        a = frequency_first(a, frequencies)
        columns = m.shape[2]
        if layout.ctype.has_column_systems:
            if a.shape != (frequencies, 1, columns):
                raise report(self._error_fn, UsageError(
                    f"a matrix must be ({frequencies}, 1, {columns})"))
            if np.any(a == 0.0):
                raise report(self._error_fn, MathError(
                    "'a' matrix is singular"))
            return m / a
        if a.shape != (frequencies, columns, columns):
            raise report(self._error_fn, UsageError(
                f"a matrix must be ({frequencies}, {columns}, {columns})"))
        result = np.empty_like(m)
        for findex in range(frequencies):
            result[findex], determinant = mrdivide(m[findex], a[findex])
            if determinant == 0.0 or not np.isfinite(determinant):
                raise report(self._error_fn, MathError(
                    f"'a' matrix is singular at frequency index {findex}"))
        return result

    def apply_begin(self, frequency_vector, ports=None, *,
                    delay_vector=None):
        """
        Start correcting a device measured in one or more connections.

        Args:
            frequency_vector (array_like): ascending measurement
                frequencies within the calibration range
            ports (int, optional): number of DUT ports; defaults to the
                number of VNA ports
            delay_vector (sequence of float, optional): delay of each
                DUT port connection (seconds) to remove from the result

        Returns:
            Correction: add measurements with add_matrix(),
            add_column() or add_row(), then call get_data()
        """
        return Correction(self, frequency_vector, ports,
                          delay_vector=delay_vector)

    def apply(self, frequency_vector, a, b=None, *, delay_vector=None):
        """
        Correct measurements of a device under test.

        Args:
            frequency_vector (array_like): measurement frequencies,
                within the calibration range
            a, b: measured matrices as in Solver; apply(f, m),
                apply(f, None, m) and apply(f, a=a, b=b) are accepted.
                For a calibration with fewer columns than rows (or rows
                than columns), M may instead be ports x ports: the extra
                columns (rows) were measured with the DUT rotated so
                that VNA port k faced DUT port (k + r) mod ports, and are
                listed in DUT port order.
            delay_vector (sequence of float, optional): delay of each
                DUT port connection (seconds) to remove from the result

        Returns:
            NPData: the corrected S parameters
        """
        layout = self._layout
        frequency_vector = np.array(frequency_vector, dtype=np.float64,
                                    ndmin=1)
        if a is None and b is None:
            raise report(self._error_fn, UsageError("no measurement given"))
        if a is None:
            a, b = b, None
        shapes = [(layout.m_rows, layout.m_columns),
                  (layout.s_rows, layout.s_columns)]
        m = self._get_m(len(frequency_vector), a, b, shapes)
        correction = self.apply_begin(frequency_vector,
                                      delay_vector=delay_vector)
        if m.shape[1:] == shapes[0]:
            correction.add_matrix(m)
        else:
            for index, values, port_map in self._rotations(m):
                correction._add(index, values, port_map)
        return correction.get_data()

    def __repr__(self):
        return (f"<Calibration {self._name!r} {self.ctype.name} "
                f"{self.rows}x{self.columns}>")


class Correction:
    """
    Measurements of a device under test, collected for correction.

    Made by Calibration.apply_begin().  Each measured row (T error
    terms) or column (U error terms) of the VNA measurement matrix
    adds linear equations in the S parameters of the device; get_data()
    solves them, in the least squares sense when there are more
    equations than S parameters.

    The device may have more or fewer ports than the VNA.  A port map
    lists, for each VNA port, the DUT port (1-based) connected to it,
    or None if the VNA port is terminated.  DUT ports not connected to
    the VNA must be terminated in the reference impedance.
    """
    def __init__(self, calibration, frequency_vector, ports=None,
                 delay_vector=None):
        error_fn = calibration._error_fn
        layout = calibration.layout
        frequency_vector = np.array(frequency_vector, dtype=np.float64,
                                    ndmin=1)
        if frequency_vector.ndim != 1 or len(frequency_vector) < 1:
            raise report(error_fn, UsageError(
                "frequency_vector must be a non-empty vector"))
        if np.any(np.diff(frequency_vector) <= 0.0):
            raise report(error_fn, UsageError(
                "frequencies must be in ascending order"))
        for f in (frequency_vector[0], frequency_vector[-1]):
            if not check_range(calibration._frequency_vector, f):
                raise report(error_fn, UsageError(
                    f"frequency {f:e} outside of calibration range "
                    f"[{calibration.fmin:e}, {calibration.fmax:e}]"))
        if ports is None:
            ports = layout.s_rows
        if isinstance(ports, bool) or not isinstance(
                ports, numbers.Integral) or ports < 1:
            raise report(error_fn, UsageError(
                f"{ports!r}: invalid number of DUT ports"))
        if delay_vector is not None and len(delay_vector) != ports:
            raise report(error_fn, UsageError(
                f"delay_vector must have {ports} entries"))
        self._calibration = calibration
        self._layout = layout
        self._error_fn = error_fn
        self._frequency_vector = frequency_vector
        self._ports = ports
        self._delay_vector = delay_vector
        self._measurements = []
        self._covered = np.zeros((ports, ports), dtype=bool)

    @property
    def ports(self):
        """number of DUT ports"""
        return self._ports

    @property
    def frequency_vector(self):
        return self._frequency_vector.copy()

    def _port_map(self, port_map):
        """
        Validate a port map and return it zero-based, with -1 for
        VNA ports not connected to the DUT.
        """
        vna_ports = self._layout.s_rows
        if port_map is None:
            return [k if k < self._ports else -1 for k in range(vna_ports)]
        if len(port_map) != vna_ports:
            raise report(self._error_fn, UsageError(
                f"port_map must have {vna_ports} entries"))
        result = []
        for port in port_map:
            if port is None:
                result.append(-1)
                continue
            if isinstance(port, bool) or not isinstance(
                    port, numbers.Integral) or not 1 <= port <= self._ports:
                raise report(self._error_fn, UsageError(
                    f"{port!r}: invalid DUT port"))
            if port - 1 in result:
                raise report(self._error_fn, UsageError(
                    f"DUT port {port} appears more than once in port_map"))
            result.append(port - 1)
        return result

    def _vector(self, values, length):
        """
        Return a measured row or column as a (frequencies x length)
        array.
        """
        n = len(self._frequency_vector)
        values = np.array(values, dtype=np.complex128)
        if values.ndim == 1 and n == 1:
            values = values[np.newaxis, :]
        elif (values.ndim == 2 and values.shape[0] != n
              and values.shape[1] == n):
            values = values.T
        if values.shape != (n, length):
            raise report(self._error_fn, UsageError(
                f"measurement must be ({n}, {length}); got {values.shape}"))
        return values

    def _add(self, index, values, port_map):
        layout = self._layout
        if port_map[index] < 0:
            return
        if layout.ctype.is_t:
            for c in range(layout.s_columns):
                if port_map[c] >= 0:
                    self._covered[port_map[index], port_map[c]] = True
        else:
            for i in range(layout.s_rows):
                if port_map[i] >= 0:
                    self._covered[port_map[i], port_map[index]] = True
        self._measurements.append((index, values, port_map))

    def add_matrix(self, a, b=None, *, port_map=None):
        """
        Add a full measurement matrix.

        Args:
            a, b: measured matrices as in Solver; add_matrix(m) and
                add_matrix(a, b) are accepted
            port_map (sequence, optional): DUT port (1-based) or None
                for each VNA port; defaults to VNA port k on DUT port k
        """
        layout = self._layout
        port_map = self._port_map(port_map)
        m = self._calibration._get_m(len(self._frequency_vector), a, b,
                                     [(layout.m_rows, layout.m_columns)])
        if layout.ctype.is_t:
            for k in range(layout.m_rows):
                self._add(k, m[:, k, :], port_map)
        else:
            for c in range(layout.m_columns):
                self._add(c, m[:, :, c], port_map)

    def add_column(self, column, vector, *, port_map=None):
        """
        Add one column of the measurement matrix (U error terms only).

        Args:
            column (int): zero-based column of the measurement matrix
            vector (array_like): (frequencies x rows) measured values
            port_map (sequence, optional): as in add_matrix()
        """
        layout = self._layout
        if layout.ctype.is_t:
            raise report(self._error_fn, UsageError(
                f"{layout.ctype.name} error terms need whole rows: use "
                f"add_row()"))
        if not 0 <= column < layout.m_columns:
            raise report(self._error_fn, UsageError(
                f"{column}: invalid column"))
        port_map = self._port_map(port_map)
        self._add(column, self._vector(vector, layout.m_rows), port_map)

    def add_row(self, row, vector, *, port_map=None):
        """
        Add one row of the measurement matrix (T error terms only).

        Args:
            row (int): zero-based row of the measurement matrix
            vector (array_like): (frequencies x columns) measured values
            port_map (sequence, optional): as in add_matrix()
        """
        layout = self._layout
        if layout.ctype.is_u:
            raise report(self._error_fn, UsageError(
                f"{layout.ctype.name} error terms need whole columns: use "
                f"add_column()"))
        if not 0 <= row < layout.m_rows:
            raise report(self._error_fn, UsageError(f"{row}: invalid row"))
        port_map = self._port_map(port_map)
        self._add(row, self._vector(vector, layout.m_columns), port_map)

    def _equations(self, terms, leakage, findex):
        """
        Return (coefficients, rhs) of the linear equations in the
        flattened S matrix of the DUT at one frequency.
        """
        layout = self._layout
        ports = self._ports
        coefficients = []
        rhs = []
        if layout.ctype.is_t:
            mats = layout.matrices(terms[0])
            for k, values, port_map in self._measurements:
                m_row = values[findex].copy()
                for c in range(layout.m_columns):
                    if c != k:
                        m_row[c] -= leakage[k, c]
                # (Ts - M Tx) S = M Tm - Ti, row k
                left = mats["ts"][k, :] - m_row @ mats["tx"]
                right = m_row @ mats["tm"] - mats["ti"][k, :]
                for c in range(layout.s_columns):
                    if port_map[c] < 0:
                        continue
                    row = np.zeros(ports * ports, dtype=np.complex128)
                    for j in range(layout.s_rows):
                        if port_map[j] >= 0:
                            row[port_map[j] * ports + port_map[c]] += left[j]
                    coefficients.append(row)
                    rhs.append(right[c])
        else:
            column_systems = layout.ctype.has_column_systems
            for c, values, port_map in self._measurements:
                m_column = values[findex].copy()
                for k in range(layout.m_rows):
                    if k != c:
                        m_column[k] -= leakage[k, c]
                system = c if column_systems else 0
                t_column = 0 if column_systems else c
                mats = layout.matrices(terms[system], system)
                # S (Ux M + Us) = Um M + Ui, column c
                left = mats["ux"] @ m_column + mats["us"][:, t_column]
                right = mats["um"] @ m_column + mats["ui"][:, t_column]
                for i in range(layout.s_rows):
                    if port_map[i] < 0:
                        continue
                    row = np.zeros(ports * ports, dtype=np.complex128)
                    for j in range(layout.s_columns):
                        if port_map[j] >= 0:
                            row[port_map[i] * ports + port_map[j]] += left[j]
                    coefficients.append(row)
                    rhs.append(right[i])
        return np.array(coefficients), np.array(rhs)

    def get_data(self):
        """
        Solve for the S parameters of the device.

        Returns:
            NPData: the corrected S parameters

        Raises:
            UsageError: the measurements added do not cover every S
                parameter of the device
            MathError: the system of equations is singular
        """
        error_fn = self._error_fn
        calibration = self._calibration
        ports = self._ports
        for i, j in np.argwhere(~self._covered):
            separator = "," if ports >= 10 else ""
            raise report(error_fn, UsageError(
                f"no equation for s{i + 1}{separator}{j + 1}: measurement "
                f"does not determine every S parameter of the device"))

        frequencies = len(self._frequency_vector)
        result = NPData(PType.S, ports, ports, frequencies)
        result.frequency_vector = self._frequency_vector
        result.set_all_z0(calibration.z0)
        data = result.data_array
        segments = [0]
        unknowns = ports * ports
        for findex, f in enumerate(self._frequency_vector):
            terms, leakage = calibration._interpolate(f, segments)
            coefficients, rhs = self._equations(terms, leakage, findex)
            if len(rhs) == unknowns:
                s, determinant = mldivide(coefficients, rhs.reshape(-1, 1))
                if determinant == 0.0 or not np.isfinite(determinant):
                    raise report(error_fn, MathError(
                        f"singular system at {f:e} Hz"))
            else:
                s, rank = qrsolve(coefficients, rhs)
                if rank < unknowns:
                    raise report(error_fn, MathError(
                        f"singular system at {f:e} Hz"))
            s = s.reshape(ports, ports)
            if self._delay_vector is not None:
                for i in range(ports):
                    for j in range(ports):
                        s[i, j] /= np.exp(-2.0j * math.pi * f
                                          * (self._delay_vector[i]
                                             + self._delay_vector[j]))
            data[findex] = s
        return result
