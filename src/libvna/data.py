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
Network parameter data: a (frequencies x rows x columns) array of
network parameters with port reference impedances, conversion between
parameter types, and load/save in Touchstone and NPD formats.
"""

from collections import namedtuple
from enum import IntEnum
import logging
import os
import re
import numpy as np
from . import conv
from .errors import UsageError, report

logger = logging.getLogger(__name__)

DEFAULT_Z0 = 50.0
DEFAULT_FPRECISION = 7
DEFAULT_DPRECISION = 6

# fprecision and dprecision may not exceed this; larger values mean
# "exact" (hexadecimal floating point)
MAX_PRECISION = 15


class PType(IntEnum):
    """
    Network parameter type.
    """
    ANY = 0     #: any (untyped) data
    S = 1       #: scattering parameters
    T = 2       #: scattering-transfer parameters
    U = 3       #: inverse scattering-transfer parameters
    Z = 4       #: impedance parameters
    Y = 5       #: admittance parameters
    H = 6       #: hybrid parameters
    G = 7       #: inverse hybrid parameters
    A = 8       #: ABCD parameters
    B = 9       #: inverse ABCD parameters
    ZIN = 10    #: impedance looking into each port

    @property
    def is_matrix(self):
        return self not in (PType.ANY, PType.ZIN)

    @property
    def is_two_port(self):
        """True if the type is defined only for 2x2 matrices"""
        return self in (PType.T, PType.U, PType.H, PType.G, PType.A,
                        PType.B)

    @property
    def display_name(self):
        return "Zin" if self == PType.ZIN else self.name


class FileType(IntEnum):
    """
    File type for load and save.
    """
    AUTO = 0            #: determine from the filename
    TOUCHSTONE1 = 1     #: Touchstone version 1 (.s<n>p)
    TOUCHSTONE2 = 2     #: Touchstone version 2 (.ts)
    NPD = 3             #: network parameter data (.npd)


# One field group of the format: the parameter type the data are
# converted to and how each value is written.  Coordinates are "ri",
# "ma" and "db" for matrix types and Zin, "il", "rl" and "vswr" for S,
# and "prc", "prl", "src" and "srl" for Zin.
Format = namedtuple("Format", "ptype coordinate")

_COORDINATE_NAMES = {"ri": "ri", "ma": "ma", "db": "dB"}
_SPECIAL_FORMATS = {
    "il": Format(PType.S, "il"),
    "rl": Format(PType.S, "rl"),
    "vswr": Format(PType.S, "vswr"),
    "prc": Format(PType.ZIN, "prc"),
    "prl": Format(PType.ZIN, "prl"),
    "src": Format(PType.ZIN, "src"),
    "srl": Format(PType.ZIN, "srl"),
}
_FORMAT_RE = re.compile(r"^(zin|[stuzyhgab])(ri|ma|db)?$")


def parse_format(text):
    """
    Parse a comma separated format string into a list of Format.

    Raises:
        ValueError: invalid format
    """
    result = []
    for item in text.split(","):
        item = item.strip().lower()
        if item in _SPECIAL_FORMATS:
            result.append(_SPECIAL_FORMATS[item])
            continue
        match = _FORMAT_RE.match(item)
        if match is None:
            raise ValueError(f"{item!r}: invalid format")
        ptype = PType.ZIN if match.group(1) == "zin" else PType[
            match.group(1).upper()]
        coordinate = match.group(2) or "ri"
        if coordinate == "db" and ptype not in (PType.S, PType.T, PType.U):
            raise ValueError(f"{item!r}: dB is valid only for S, T and "
                             f"U parameters")
        result.append(Format(ptype, coordinate))
    return result


def format_name(fmt):
    """
    Return the canonical name of a Format.
    """
    if fmt.coordinate in _COORDINATE_NAMES:
        return fmt.ptype.display_name + _COORDINATE_NAMES[fmt.coordinate]
    return fmt.coordinate.upper()


def filetype_from_name(filename):
    """
    Return (filetype, ports) guessed from the filename suffix; ports
    is None unless given by a Touchstone 1 suffix.
    """
    suffix = os.path.splitext(filename)[1][1:].lower()
    if suffix == "ts":
        return FileType.TOUCHSTONE2, None
    match = re.fullmatch(r"s(\d+)p", suffix)
    if match is not None:
        return FileType.TOUCHSTONE1, int(match.group(1))
    if suffix == "npd":
        return FileType.NPD, None
    return FileType.AUTO, None


class NPData:
    """
    Network parameter data.

    Args:
        ptype (PType): parameter type
        rows, columns (int): dimensions of each parameter matrix
        frequencies (int): number of frequency points
        filename (str, optional): file to load; if ptype is also
            given, the loaded data are converted to ptype
        error_fn (callable, optional): called as
            error_fn(message, category) before each error is raised

    The frequency_vector, data_array, z0_vector and fz0_array
    properties return the live numpy arrays: assigning to their
    elements changes this object.  Assigning a whole new array
    resizes the object to fit.

    Reference impedances are kept either as one vector shared by all
    frequencies (z0_vector) or as one vector per frequency
    (fz0_array); has_fz0 tells which.
    """
    def __init__(self, ptype=PType.ANY, rows=0, columns=0, frequencies=0,
                 *, filename=None, error_fn=None):
        self._error_fn = error_fn
        self._format = None
        self._filetype = FileType.AUTO
        self._fprecision = DEFAULT_FPRECISION
        self._dprecision = DEFAULT_DPRECISION
        if filename is not None:
            self.init(PType.ANY, 0, 0, 0)
            self.load(filename)
            if ptype != PType.ANY and ptype != self._ptype:
                converted = self.convert(ptype)
                self._assign(converted)
            return
        self.init(ptype, rows, columns, frequencies)

    def _error(self, exception):
        return report(self._error_fn, exception)

    def _check_type(self, ptype, rows, columns):
        ptype = PType(ptype)
        if rows < 0 or columns < 0:
            raise self._error(UsageError(
                f"invalid dimensions {rows} x {columns}"))
        if rows != 0 or columns != 0:
            if ptype.is_two_port and (rows, columns) != (2, 2):
                raise self._error(UsageError(
                    f"{ptype.name} parameters must be 2x2"))
            if ptype.is_matrix and ptype != PType.S and rows != columns:
                raise self._error(UsageError(
                    f"{ptype.name} parameters must be square"))
            if ptype == PType.ZIN and rows != 1:
                raise self._error(UsageError(
                    "Zin data must have exactly one row"))
        return ptype

    def _assign(self, other):
        self._ptype = other._ptype
        self._frequency_vector = other._frequency_vector
        self._data = other._data
        self._z0 = other._z0
        self._fz0 = other._fz0

    # ------------------------------------------------------------------
    # dimensions

    def init(self, ptype, rows, columns, frequencies):
        """
        Resize and reset: zero data and frequencies, 50 ohm reference
        impedances on every port.
        """
        ptype = self._check_type(ptype, rows, columns)
        if frequencies < 0:
            raise self._error(UsageError(
                f"{frequencies}: invalid number of frequencies"))
        self._ptype = ptype
        self._frequency_vector = np.zeros(frequencies, dtype=np.float64)
        self._data = np.zeros((frequencies, rows, columns),
                              dtype=np.complex128)
        self._z0 = np.full(max(rows, columns), DEFAULT_Z0,
                           dtype=np.complex128)
        self._fz0 = None

    def resize(self, ptype, rows, columns, frequencies):
        """
        Change the type and dimensions, keeping existing values.

        Each matrix keeps its cells at the same row-major offset, so
        adding or removing rows keeps the remaining cells in place,
        while changing the number of columns shifts them.  New cells
        are zero and new reference impedances are 50 ohms.
        """
        ptype = self._check_type(ptype, rows, columns)
        if frequencies < 0:
            raise self._error(UsageError(
                f"{frequencies}: invalid number of frequencies"))
        old_frequencies = len(self._frequency_vector)
        old_ports = self.ports
        ports = max(rows, columns)
        common = min(old_frequencies, frequencies)

        frequency_vector = np.zeros(frequencies, dtype=np.float64)
        frequency_vector[:common] = self._frequency_vector[:common]
        cells = min(self._data.shape[1] * self._data.shape[2],
                    rows * columns)
        data = np.zeros((frequencies, rows * columns), dtype=np.complex128)
        data[:common, :cells] = self._data.reshape(
            old_frequencies, -1)[:common, :cells]
        data = data.reshape(frequencies, rows, columns)

        common_ports = min(old_ports, ports)
        if self._fz0 is not None:
            fz0 = np.full((frequencies, ports), DEFAULT_Z0,
                          dtype=np.complex128)
            fz0[:common, :common_ports] = self._fz0[:common, :common_ports]
            self._fz0 = fz0
        else:
            z0 = np.full(ports, DEFAULT_Z0, dtype=np.complex128)
            z0[:common_ports] = self._z0[:common_ports]
            self._z0 = z0
        self._ptype = ptype
        self._frequency_vector = frequency_vector
        self._data = data

    @property
    def ptype(self):
        """parameter type"""
        return self._ptype

    @ptype.setter
    def ptype(self, value):
        self._ptype = self._check_type(value, self.rows, self.columns)

    @property
    def rows(self):
        return self._data.shape[1]

    @property
    def columns(self):
        return self._data.shape[2]

    @property
    def ports(self):
        """number of reference impedances: max(rows, columns)"""
        return max(self._data.shape[1], self._data.shape[2])

    @property
    def frequencies(self):
        return self._data.shape[0]

    def _empty(self):
        return self.rows == 0 and self.columns == 0

    # ------------------------------------------------------------------
    # frequencies and data

    @property
    def frequency_vector(self):
        """vector of frequencies (Hz)"""
        return self._frequency_vector

    @frequency_vector.setter
    def frequency_vector(self, value):
        value = np.array(value, dtype=np.float64, ndmin=1)
        if value.ndim != 1:
            raise self._error(UsageError(
                "frequency_vector must be one dimensional"))
        if len(value) != self.frequencies:
            self.resize(self._ptype, self.rows, self.columns, len(value))
        self._frequency_vector[...] = value

    def add_frequency(self, f):
        """
        Append a frequency with a zero matrix.
        """
        if not f >= 0.0:
            raise self._error(UsageError(f"{f}: invalid frequency"))
        self.resize(self._ptype, self.rows, self.columns,
                    self.frequencies + 1)
        self._frequency_vector[-1] = f

    @property
    def data_array(self):
        """(frequencies x rows x columns) array of parameters"""
        return self._data

    @data_array.setter
    def data_array(self, value):
        value = np.array(value, dtype=np.complex128)
        if value.ndim != 3:
            raise self._error(UsageError(
                "data_array must have three dimensions"))
        frequencies, rows, columns = value.shape
        if value.shape != self._data.shape:
            self.resize(self._ptype, rows, columns, frequencies)
        self._data[...] = value

    def get_matrix(self, findex):
        """
        Return a copy of the matrix at frequency index findex.
        """
        return self._data[findex].copy()

    def set_matrix(self, findex, matrix):
        """
        Replace the matrix at frequency index findex.
        """
        matrix = np.asarray(matrix, dtype=np.complex128)
        if matrix.shape != self._data.shape[1:]:
            raise self._error(UsageError(
                f"matrix must be {self.rows}x{self.columns}; got "
                f"shape {matrix.shape}"))
        self._data[findex] = matrix

    # ------------------------------------------------------------------
    # reference impedances

    @property
    def has_fz0(self):
        """True if reference impedances vary with frequency"""
        return self._fz0 is not None

    @property
    def z0_vector(self):
        """
        Reference impedance of each port.  Reading this property when
        the impedances vary with frequency raises UsageError.
        """
        if self._fz0 is not None:
            raise self._error(UsageError(
                "reference impedances vary with frequency; use fz0_array"))
        return self._z0

    @z0_vector.setter
    def z0_vector(self, value):
        value = np.array(value, dtype=np.complex128, ndmin=1)
        if value.ndim != 1:
            raise self._error(UsageError(
                "z0_vector must be one dimensional"))
        ports = len(value)
        if ports != self.ports:
            if not self._empty():
                raise self._error(UsageError(
                    f"z0_vector must have {self.ports} elements"))
            self.resize(self._ptype, ports, ports, self.frequencies)
        self._fz0 = None
        self._z0 = value.copy()

    @property
    def fz0_array(self):
        """
        (frequencies x ports) reference impedances.  Reading this
        property converts the object to per-frequency impedances.
        """
        if self._fz0 is None:
            self.convert_to_fz0()
        return self._fz0

    @fz0_array.setter
    def fz0_array(self, value):
        value = np.array(value, dtype=np.complex128)
        if value.ndim != 2:
            raise self._error(UsageError(
                "fz0_array must have two dimensions"))
        frequencies, ports = value.shape
        if ports != self.ports or frequencies != self.frequencies:
            if not self._empty():
                raise self._error(UsageError(
                    f"fz0_array must have shape ({self.frequencies}, "
                    f"{self.ports})"))
            self.resize(self._ptype, ports, ports, frequencies)
        self._fz0 = value.copy()
        self._z0 = None

    def set_all_z0(self, z0):
        """
        Set every port's reference impedance to z0 at all frequencies.
        """
        self._fz0 = None
        self._z0 = np.full(self.ports, z0, dtype=np.complex128)

    def convert_to_fz0(self):
        """
        Switch to per-frequency reference impedances.
        """
        if self._fz0 is None:
            self._fz0 = np.tile(self._z0, (self.frequencies, 1))
            self._z0 = None

    def convert_to_z0(self):
        """
        Switch to frequency independent reference impedances.

        Raises:
            UsageError: the impedances differ between frequencies
        """
        if self._fz0 is None:
            return
        if self.frequencies == 0:
            z0 = np.full(self.ports, DEFAULT_Z0, dtype=np.complex128)
        else:
            z0 = self._fz0[0].copy()
            if np.any(self._fz0 != z0):
                raise self._error(UsageError(
                    "reference impedances differ between frequencies"))
        self._z0 = z0
        self._fz0 = None

    def _z0_for_conversion(self):
        """
        Return the reference impedances in the shape conv expects.
        """
        if self._fz0 is not None:
            return self._fz0
        return self._z0

    # ------------------------------------------------------------------
    # conversion

    def convert(self, ptype):
        """
        Return a new NPData holding these data converted to ptype.

        Raises:
            UsageError: the conversion is not possible
        """
        ptype = PType(ptype)
        source = self._ptype
        result = NPData(error_fn=self._error_fn)
        result._format = self._format
        result._filetype = self._filetype
        result._fprecision = self._fprecision
        result._dprecision = self._dprecision
        if ptype == source or ptype == PType.ANY:
            result._assign(self)
            result._frequency_vector = self._frequency_vector.copy()
            result._data = self._data.copy()
            result._z0 = None if self._z0 is None else self._z0.copy()
            result._fz0 = None if self._fz0 is None else self._fz0.copy()
            result._ptype = ptype if ptype != PType.ANY else source
            return result
        if not source.is_matrix:
            raise self._error(UsageError(
                f"cannot convert from {source.display_name} to "
                f"{ptype.display_name}"))
        if self.rows != self.columns:
            raise self._error(UsageError(
                "conversion requires square matrices"))
        if ptype.is_two_port and (self.rows, self.columns) != (2, 2):
            raise self._error(UsageError(
                f"{ptype.name} parameters require 2x2 matrices"))
        to_type = "zi" if ptype == PType.ZIN else ptype.name.lower()
        try:
            converted = conv.convert(self._data, source.name.lower(),
                                     to_type, self._z0_for_conversion())
        except (ValueError, np.linalg.LinAlgError) as e:
            raise self._error(UsageError(
                f"cannot convert {source.display_name} to "
                f"{ptype.display_name}: {e}")) from None
        if ptype == PType.ZIN:
            converted = converted.reshape(self.frequencies, 1, self.ports)
        result._ptype = ptype
        result._frequency_vector = self._frequency_vector.copy()
        result._data = np.array(converted, dtype=np.complex128)
        result._z0 = None if self._z0 is None else self._z0.copy()
        result._fz0 = None if self._fz0 is None else self._fz0.copy()
        return result

    # ------------------------------------------------------------------
    # load / save settings

    @property
    def format(self):
        """
        Comma separated list of parameter formats used by save, e.g.
        "Sri" or "Sdb,Zinri,VSWR".  Case insensitive.  Defaults to the
        data's own type in real, imaginary form.
        """
        if self._format is None:
            ptype = self._ptype if self._ptype != PType.ANY else PType.S
            return format_name(Format(ptype, "ri"))
        return ",".join(format_name(f) for f in self._format)

    @format.setter
    def format(self, value):
        if value is None:
            self._format = None
            return
        try:
            self._format = parse_format(value)
        except ValueError as e:
            raise self._error(UsageError(str(e))) from None

    def _get_formats(self):
        if self._format is None:
            ptype = self._ptype if self._ptype != PType.ANY else PType.S
            return [Format(ptype, "ri")]
        return list(self._format)

    @property
    def filetype(self):
        """FileType for load and save; AUTO uses the filename"""
        return self._filetype

    @filetype.setter
    def filetype(self, value):
        self._filetype = FileType(value)

    @property
    def fprecision(self):
        """significant digits for frequency values"""
        return self._fprecision

    @fprecision.setter
    def fprecision(self, value):
        if not 1 <= value:
            raise self._error(UsageError(
                f"{value}: invalid frequency precision"))
        self._fprecision = min(int(value), MAX_PRECISION + 1)

    @property
    def dprecision(self):
        """significant digits for data values"""
        return self._dprecision

    @dprecision.setter
    def dprecision(self, value):
        if not 1 <= value:
            raise self._error(UsageError(
                f"{value}: invalid data precision"))
        self._dprecision = min(int(value), MAX_PRECISION + 1)

    def _resolve_filetype(self, filename):
        filetype, ports = filetype_from_name(filename)
        if self._filetype != FileType.AUTO:
            filetype = self._filetype
        if filetype == FileType.AUTO:
            filetype = FileType.NPD
        return filetype, ports

    def load(self, filename):
        """
        Load network parameter data from a Touchstone or NPD file.

        The file type comes from the filetype property or, when AUTO,
        from the filename suffix: .s<n>p for Touchstone 1, .ts for
        Touchstone 2, otherwise NPD.
        """
        from . import _npd, _touchstone

        filetype, ports = self._resolve_filetype(filename)
        if filetype == FileType.NPD:
            _npd.load(self, filename)
        else:
            _touchstone.load(self, filename, ports)
        logger.debug("loaded %s: %s %dx%d, %d frequencies", filename,
                     self._ptype.display_name, self.rows, self.columns,
                     self.frequencies)

    def _prepare_save(self, filename):
        from . import _npd, _touchstone

        filetype, _ = self._resolve_filetype(filename)
        if filetype == FileType.NPD:
            return _npd.prepare(self, filename)
        return _touchstone.prepare(self, filename, filetype)

    def cksave(self, filename):
        """
        Check that save(filename) would succeed without writing the
        file.
        """
        self._prepare_save(filename)

    def save(self, filename):
        """
        Save the data in the format given by the format property.
        """
        writer = self._prepare_save(filename)
        writer()
        logger.debug("saved %s", filename)

    def __repr__(self):
        return (f"<NPData {self._ptype.display_name} {self.rows}x"
                f"{self.columns} frequencies={self.frequencies}>")
