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
Network parameter data (NPD) file format, plus the field encoding
shared with the Touchstone reader and writer.

An NPD file starts with a header of ``#:keyword value`` lines::

    #NPD
    #:version 1.0
    #:ports 2
    #:frequencies 3
    #:parameters Sri Zinma
    #:z0 50 +0j 75 +0j
    #:fprecision 7
    #:dprecision 6

followed by one data line per frequency: the frequency, then the real
and imaginary parts of each port's reference impedance when ``#:z0``
is ``PER-FREQUENCY``, then the fields of each parameter format in
order.  Other lines beginning with ``#`` and blank lines are comments.
"""

import math
import numpy as np
from .data import (Format, PType, format_name, parse_format,
                   MAX_PRECISION)
from .errors import UsageError, VNASyntaxError, VNASystemError, report

NPD_VERSION = "1.0"

# Preference when loading a file with several parameter formats:
# matrix types before Zin, then by how little conversion is needed.
_MATRIX_QUALITY = {"ri": 6, "ma": 5, "db": 4}
_ZIN_QUALITY = {"ri": 3, "prc": 2, "prl": 2, "src": 2, "srl": 2, "ma": 1}


def format_number(value, precision, plus=False):
    """
    Format a float with the given number of significant digits;
    precisions beyond MAX_PRECISION give exact hexadecimal notation.
    """
    if precision > MAX_PRECISION:
        text = float(value).hex()
        if plus and not text.startswith("-"):
            text = "+" + text
        return text
    sign = "+" if plus else ""
    return f"{value:{sign}.{precision}g}"


def parse_number(text):
    """
    Parse a decimal or hexadecimal floating point number.

    Raises:
        ValueError: not a number
    """
    try:
        return float(text)
    except ValueError:
        return float.fromhex(text)


def _angle(value):
    return math.degrees(np.angle(value))


def field_count(fmt, rows, columns):
    """
    Return the number of data fields a format occupies on a line.
    """
    ports = max(rows, columns)
    if fmt.coordinate == "il":
        return rows * columns - min(rows, columns)
    if fmt.coordinate in ("rl", "vswr"):
        return min(rows, columns)
    if fmt.ptype == PType.ZIN:
        return 2 * ports
    return 2 * rows * columns


def encode_fields(fmt, matrix, frequency):
    """
    Return the list of floats that represent one matrix in format fmt.

    Args:
        fmt (Format): parameter format
        matrix (numpy.ndarray): (rows x columns) values already
            converted to fmt.ptype; a (1 x ports) row for Zin
        frequency (float): frequency of the matrix, used by the Zin
            circuit formats
    """
    coordinate = fmt.coordinate
    rows, columns = matrix.shape
    if coordinate == "il":
        return [-20.0 * math.log10(abs(matrix[r, c]))
                for r in range(rows) for c in range(columns) if r != c]
    diagonal = [matrix[p, p] for p in range(min(rows, columns))]
    if coordinate == "rl":
        return [-20.0 * math.log10(abs(v)) for v in diagonal]
    if coordinate == "vswr":
        return [(1.0 + abs(v)) / abs(1.0 - abs(v)) for v in diagonal]
    result = []
    omega = 2.0 * math.pi * frequency
    for value in matrix.flatten():
        zr, zi = value.real, value.imag
        if coordinate == "ri":
            result.extend((zr, zi))
        elif coordinate == "ma":
            result.extend((abs(value), _angle(value)))
        elif coordinate == "db":
            result.extend((20.0 * math.log10(abs(value)), _angle(value)))
        elif coordinate == "prc":
            m2 = zr * zr + zi * zi
            result.extend((m2 / zr, -zi / (omega * m2)))
        elif coordinate == "prl":
            m2 = zr * zr + zi * zi
            result.extend((m2 / zr, m2 / (zi * omega)))
        elif coordinate == "src":
            result.extend((zr, -1.0 / (omega * zi)))
        elif coordinate == "srl":
            result.extend((zr, zi / omega))
        else:
            raise ValueError(f"{coordinate}: unknown coordinate")
    return result


def decode_value(coordinate, v1, v2, frequency):
    """
    Return the complex value represented by the field pair (v1, v2).
    """
    omega = 2.0 * math.pi * frequency
    if coordinate == "ri":
        return complex(v1, v2)
    if coordinate == "ma":
        return v1 * np.exp(1j * math.radians(v2))
    if coordinate == "db":
        return 10.0 ** (v1 / 20.0) * np.exp(1j * math.radians(v2))
    if coordinate == "prc":
        return 1.0 / (1.0 / v1 + 1j * omega * v2)
    if coordinate == "prl":
        return v1 / (1.0 - 1j * v1 / (omega * v2))
    if coordinate == "src":
        return v1 - 1j / (omega * v2)
    if coordinate == "srl":
        return v1 + 1j * omega * v2
    raise ValueError(f"{coordinate}: format cannot be loaded")


def converted_data(npdata, formats):
    """
    Return {ptype: (frequencies x rows x columns) array} holding the
    data converted to every type the formats need.

    Data of type ANY are written as-is under any type.
    """
    result = {}
    for fmt in formats:
        if fmt.ptype in result:
            continue
        if npdata.ptype in (fmt.ptype, PType.ANY):
            result[fmt.ptype] = npdata.data_array
        else:
            result[fmt.ptype] = npdata.convert(fmt.ptype).data_array
    return result


class _Reader:
    """
    Line reader tracking the line number for error messages.
    """
    def __init__(self, npdata, filename, fp):
        self.npdata = npdata
        self.filename = filename
        self.lines = fp.readlines()
        self.index = 0

    def error(self, message):
        return report(self.npdata._error_fn, VNASyntaxError(
            message, filename=self.filename, line=self.index))

    def next(self):
        """
        Return the next line stripped of trailing white space, or None
        at end of file.
        """
        if self.index >= len(self.lines):
            return None
        line = self.lines[self.index].rstrip()
        self.index += 1
        return line

    def number(self, text):
        try:
            return parse_number(text)
        except ValueError:
            raise self.error(f"{text}: number expected") from None

    def integer(self, keyword, fields):
        if len(fields) != 1:
            raise self.error(f"{keyword}: expected one argument")
        try:
            value = int(fields[0])
        except ValueError:
            raise self.error(f"{keyword}: {fields[0]}: expected a "
                             f"non-negative integer") from None
        if value < 0:
            raise self.error(f"{keyword}: {fields[0]}: expected a "
                             f"non-negative integer")
        return value


def load(npdata, filename):
    """
    Load an NPD file into npdata.
    """
    try:
        with open(filename, "r") as fp:
            reader = _Reader(npdata, filename, fp)
    except OSError as e:
        raise report(npdata._error_fn,
                     VNASystemError(f"{filename}: {e.strerror}")) from e

    line = reader.next()
    if line is None or not line.startswith("#NPD"):
        raise reader.error("expected #NPD")
    ports = rows = columns = frequencies = None
    formats = None
    z0 = None
    per_frequency = False
    fprecision = dprecision = None
    while True:
        line = reader.next()
        if line is None:
            break
        if line.startswith("#:"):
            fields = line[2:].split()
            if not fields:
                raise reader.error("expected a keyword after #:")
            keyword, args = fields[0], fields[1:]
            if keyword == "version":
                if args != [NPD_VERSION]:
                    raise reader.error(f"{' '.join(args)}: unsupported "
                                       f"version")
            elif keyword == "ports":
                ports = reader.integer(keyword, args)
            elif keyword == "rows":
                rows = reader.integer(keyword, args)
            elif keyword == "columns":
                columns = reader.integer(keyword, args)
            elif keyword == "frequencies":
                frequencies = reader.integer(keyword, args)
            elif keyword == "fprecision":
                fprecision = reader.integer(keyword, args)
            elif keyword == "dprecision":
                dprecision = reader.integer(keyword, args)
            elif keyword == "parameters":
                try:
                    formats = parse_format(",".join(
                        " ".join(args).replace(",", " ").split()))
                except ValueError as e:
                    raise reader.error(str(e)) from None
            elif keyword == "z0":
                if len(args) == 1 and args[0].upper() == "PER-FREQUENCY":
                    per_frequency = True
                else:
                    if len(args) % 2 != 0:
                        raise reader.error("expected real, imaginary "
                                           "pairs after #:z0")
                    parts = [reader.number(a.rstrip("j")) for a in args]
                    z0 = [complex(parts[i], parts[i + 1])
                          for i in range(0, len(parts), 2)]
            else:
                raise reader.error(f"{keyword}: unknown keyword")
            continue
        if line.startswith("#") or not line.strip():
            continue
        reader.index -= 1
        break

    if ports is None:
        if rows is None or columns is None:
            raise reader.error("required keyword #:ports missing")
    else:
        rows = columns = ports
    if frequencies is None:
        raise reader.error("required keyword #:frequencies missing")
    if formats is None:
        raise reader.error("required keyword #:parameters missing")
    ports = max(rows, columns)
    if z0 is not None and len(z0) != ports:
        raise reader.error(f"expected {ports} values after #:z0")

    # Choose the format needing the least conversion.
    best = None
    best_quality = 0
    offset = 1 + (2 * ports if per_frequency else 0)
    for fmt in formats:
        if fmt.ptype == PType.ZIN:
            quality = _ZIN_QUALITY.get(fmt.coordinate, 0)
        else:
            quality = _MATRIX_QUALITY.get(fmt.coordinate, 0)
        if quality > best_quality:
            best_quality = quality
            best = (fmt, offset)
        offset += field_count(fmt, rows, columns)
    if best is None:
        raise reader.error("file contains no parameter that can be loaded")
    fmt, start = best
    n_fields = offset
    if fmt.ptype == PType.ZIN:
        drows, dcolumns = 1, ports
    else:
        drows, dcolumns = rows, columns
        if fmt.ptype.is_two_port and (rows, columns) != (2, 2):
            raise reader.error(f"{format_name(fmt)} parameters require "
                               f"a 2x2 matrix")

    npdata.init(fmt.ptype, drows, dcolumns, frequencies)
    if z0 is not None:
        npdata.z0_vector = z0
    if per_frequency:
        fz0 = np.empty((frequencies, ports), dtype=np.complex128)
    for findex in range(frequencies):
        line = reader.next()
        while line is not None and (not line.strip() or
                                    line.startswith("#")):
            line = reader.next()
        if line is None:
            raise reader.error(f"expected {frequencies} data lines; "
                               f"found only {findex}")
        fields = line.split()
        if len(fields) != n_fields:
            raise reader.error(f"expected {n_fields} fields; found "
                               f"{len(fields)}")
        values = [reader.number(field) for field in fields]
        f = values[0]
        npdata.frequency_vector[findex] = f
        if per_frequency:
            for port in range(ports):
                fz0[findex, port] = complex(values[1 + 2 * port],
                                            values[2 + 2 * port])
        for cell in range(drows * dcolumns):
            v1 = values[start + 2 * cell]
            v2 = values[start + 2 * cell + 1]
            npdata.data_array[findex, cell // dcolumns,
                              cell % dcolumns] = decode_value(
                                  fmt.coordinate, v1, v2, f)
    while True:
        line = reader.next()
        if line is None:
            break
        if line.strip() and not line.startswith("#"):
            raise reader.error("extra lines at end of input")
    if per_frequency:
        npdata.fz0_array = fz0
    npdata._format = formats
    if fprecision is not None:
        npdata.fprecision = max(fprecision, 1)
    if dprecision is not None:
        npdata.dprecision = max(dprecision, 1)


def _field_names(fmt, rows, columns):
    """
    Return (label, description) for each field of a format.
    """
    ports = max(rows, columns)
    pair = (lambda r, c: f"{r + 1}{c + 1}") if ports <= 9 else (
        lambda r, c: f"{r + 1},{c + 1}")
    coordinate = fmt.coordinate
    if coordinate == "il":
        return [(f"IL{pair(r, c)}", "magnitude (dB)")
                for r in range(rows) for c in range(columns) if r != c]
    if coordinate == "rl":
        return [(f"RL{p + 1}", "magnitude (dB)")
                for p in range(min(rows, columns))]
    if coordinate == "vswr":
        return [(f"VSWR{p + 1}", "")
                for p in range(min(rows, columns))]
    if coordinate in ("prc", "prl", "src", "srl"):
        second = "C         (farads)" if coordinate.endswith("c") else \
            "L         (henries)"
        result = []
        for p in range(ports):
            name = f"{coordinate.upper()}{p + 1}"
            result.extend(((name, "R         (ohms)"), (name, second)))
        return result
    if fmt.ptype == PType.ZIN:
        names = [f"Zin{p + 1}" for p in range(ports)]
        unit = "ohms"
    else:
        names = [f"{fmt.ptype.name}{pair(r, c)}"
                 for r in range(rows) for c in range(columns)]
        unit = {PType.Z: "ohms", PType.Y: "siemens"}.get(
            fmt.ptype, "")
    if coordinate == "ri":
        descriptions = (f"real      ({unit})" if unit else "real",
                        f"imaginary ({unit})" if unit else "imaginary")
    elif coordinate == "ma":
        descriptions = (f"magnitude ({unit})" if unit else "magnitude",
                        "angle     (degrees)")
    else:
        descriptions = ("magnitude (dB)", "angle     (degrees)")
    result = []
    for name in names:
        result.extend((name, d) for d in descriptions)
    return result


def prepare(npdata, filename):
    """
    Validate npdata for saving as NPD and return a function that
    writes the file.
    """
    formats = npdata._get_formats()
    rows, columns = npdata.rows, npdata.columns
    if npdata.ptype == PType.ZIN:
        rows, columns = npdata.columns, npdata.columns
        for fmt in formats:
            if fmt.ptype != PType.ZIN:
                raise report(npdata._error_fn, UsageError(
                    f"{format_name(fmt)}: Zin data can be saved only "
                    f"in Zin formats"))
    for fmt in formats:
        if npdata.ptype == PType.ANY and fmt.ptype == PType.ZIN:
            raise report(npdata._error_fn, UsageError(
                "untyped data cannot be saved in Zin formats"))
    for fmt in formats:
        if fmt.coordinate == "db" and fmt.ptype not in (PType.S, PType.T,
                                                        PType.U):
            raise report(npdata._error_fn, UsageError(
                f"{format_name(fmt)}: only power or root-power parameters "
                f"can be written in dB in NPD files"))
        if fmt.coordinate == "il" and max(rows, columns) < 2:
            raise report(npdata._error_fn, UsageError(
                "insertion loss requires at least one off-diagonal "
                "element"))
        if fmt.ptype.is_two_port and (rows, columns) != (2, 2):
            raise report(npdata._error_fn, UsageError(
                f"{format_name(fmt)}: requires 2x2 matrices"))
    data = converted_data(npdata, formats)
    fprecision = npdata.fprecision
    dprecision = npdata.dprecision

    def write():
        ports = max(rows, columns)
        header = ["#NPD", f"#:version {NPD_VERSION}"]
        if rows == columns:
            header.append(f"#:ports {ports}")
        else:
            header.extend((f"#:rows {rows}", f"#:columns {columns}"))
        header.append(f"#:frequencies {npdata.frequencies}")
        header.append("#:parameters " + " ".join(
            format_name(f) for f in formats))
        if npdata.has_fz0:
            header.append("#:z0 PER-FREQUENCY")
        else:
            header.append("#:z0 " + " ".join(
                f"{format_number(z.real, dprecision)} "
                f"{format_number(z.imag, dprecision, plus=True)}j"
                for z in npdata.z0_vector))
        header.append(f"#:fprecision {min(fprecision, MAX_PRECISION + 1)}")
        header.append(f"#:dprecision {min(dprecision, MAX_PRECISION + 1)}")
        header.append("#")
        labels = [("f", "frequency (Hz)")]
        if npdata.has_fz0:
            for p in range(ports):
                labels.extend(((f"z0{p + 1}", "real      (ohms)"),
                               (f"z0{p + 1}", "imaginary (ohms)")))
        for fmt in formats:
            labels.extend(_field_names(fmt, rows, columns))
        width = max(len(label) for label, _ in labels)
        number_width = len(str(len(labels)))
        for i, (label, description) in enumerate(labels):
            header.append(f"# field {i + 1:{number_width}d}: "
                          f"{label:<{width}} {description}".rstrip())
        header.append("#")

        try:
            with open(filename, "w") as fp:
                for line in header:
                    fp.write(line + "\n")
                for findex, f in enumerate(npdata.frequency_vector):
                    fields = [format_number(f, fprecision)]
                    if npdata.has_fz0:
                        for z in npdata.fz0_array[findex]:
                            fields.append(format_number(z.real, dprecision,
                                                        plus=True))
                            fields.append(format_number(z.imag, dprecision,
                                                        plus=True))
                    for fmt in formats:
                        values = encode_fields(fmt, data[fmt.ptype][findex],
                                               f)
                        fields.extend(format_number(v, dprecision, plus=True)
                                      for v in values)
                    fp.write(" ".join(fields) + "\n")
        except OSError as e:
            raise report(npdata._error_fn,
                         VNASystemError(f"{filename}: {e.strerror}")) from e

    return write


__all__ = ["load", "prepare", "encode_fields", "decode_value",
           "format_number", "parse_number", "Format"]
