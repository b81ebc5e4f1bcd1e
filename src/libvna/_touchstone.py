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
Touchstone version 1 and 2 reader and writer.

Version 1 files carry the port count in the filename suffix (.s2p)
and normalize Z, Y, H and G data to the reference impedance given on
the option line.  Two-port data are written in column-major order
(11 21 12 22).  Version 2 files (.ts) declare the port count,
frequency count and optional per-port references in bracketed
keyword lines, and their data are not normalized.

Noise parameters are skipped on load and never written.
"""

import re
import numpy as np
from . import conv
from .data import FileType, Format, PType, format_name
from ._npd import decode_value, format_number, parse_number
from .errors import UsageError, VNASyntaxError, VNASystemError, report

_UNITS = {"hz": 1.0, "khz": 1.0e3, "mhz": 1.0e6, "ghz": 1.0e9}
_PTYPES = {"s": PType.S, "y": PType.Y, "z": PType.Z, "h": PType.H,
           "g": PType.G}
_COORDINATES = {"db": "db", "ma": "ma", "ri": "ri"}
_KEYWORD_RE = re.compile(r"^\[([^\]]*)\]\s*(.*)$")

# Touchstone 1 limit; larger systems are written as Touchstone 2.
MAX_TOUCHSTONE1_PORTS = 4


def _denormalize(data, ptype, z0):
    """
    Undo Touchstone 1 normalization of Z, Y, H and G data in place.
    """
    if ptype == PType.Z:
        data *= z0
    elif ptype == PType.Y:
        data /= z0
    elif ptype == PType.H:
        data[:, 0, 0] *= z0
        data[:, 1, 1] /= z0
    elif ptype == PType.G:
        data[:, 0, 0] /= z0
        data[:, 1, 1] *= z0


class _Parser:
    """
    Touchstone parser state.
    """
    def __init__(self, npdata, filename, lines):
        self.npdata = npdata
        self.filename = filename
        self.entries = []
        for number, line in enumerate(lines, start=1):
            line = line.split("!", 1)[0].strip()
            if line:
                self.entries.append((number, line))
        self.position = 0
        self.line = 0
        self.ptype = PType.S
        self.coordinate = "ma"
        self.multiplier = 1.0e9
        self.z0 = 50.0

    def error(self, message):
        return report(self.npdata._error_fn, VNASyntaxError(
            message, filename=self.filename, line=self.line))

    def peek(self):
        if self.position >= len(self.entries):
            return None
        return self.entries[self.position][1]

    def next(self):
        if self.position >= len(self.entries):
            return None
        self.line, text = self.entries[self.position]
        self.position += 1
        return text

    def keyword(self):
        """
        Return (keyword, rest) if the next line is a keyword line,
        else None.
        """
        text = self.peek()
        if text is None:
            return None
        match = _KEYWORD_RE.match(text)
        if match is None:
            return None
        return match.group(1).strip().lower(), match.group(2).strip()

    def number(self, text):
        try:
            return parse_number(text)
        except ValueError:
            raise self.error(f"{text}: number expected") from None

    def integer(self, keyword, text):
        try:
            value = int(text)
        except ValueError:
            value = -1
        if value < 0:
            raise self.error(f"expected a non-negative integer after "
                             f"[{keyword}]")
        return value

    def option_line(self, text):
        """
        Parse the "# <unit> <type> <format> R <z0>" option line.
        """
        fields = text[1:].lower().split()
        i = 0
        while i < len(fields):
            field = fields[i]
            if field in _UNITS:
                self.multiplier = _UNITS[field]
            elif field in _PTYPES:
                self.ptype = _PTYPES[field]
            elif field in _COORDINATES:
                self.coordinate = _COORDINATES[field]
            elif field == "r" and i + 1 < len(fields):
                i += 1
                self.z0 = self.number(fields[i])
                if not self.z0 > 0.0:
                    raise self.error("reference impedance must be "
                                     "positive")
            else:
                raise self.error(f"{field}: unexpected token on "
                                 f"option line")
            i += 1

    def data_tokens(self):
        """
        Return a list of (line, token) up to the next keyword line.
        """
        tokens = []
        while self.peek() is not None and self.keyword() is None:
            text = self.next()
            if text.startswith("#"):
                continue
            tokens.extend((self.line, t) for t in text.split())
        return tokens


def _read_matrices(parser, tokens, ports, frequencies, order, two_port):
    """
    Decode network data tokens.

    Args:
        order (str): "full", "upper" or "lower"
        two_port (str): "12_21" or "21_12" for two-port data

    Returns:
        (frequency_vector, data, used) where used is the number of
        tokens consumed
    """
    if order == "full":
        cells = [(r, c) for r in range(ports) for c in range(ports)]
    elif order == "upper":
        cells = [(r, c) for r in range(ports) for c in range(r, ports)]
    else:
        cells = [(r, c) for r in range(ports) for c in range(r + 1)]
    if ports == 2 and two_port == "21_12":
        cells = [(c, r) for r, c in cells]
    record = 1 + 2 * len(cells)
    frequency_vector = np.zeros(frequencies)
    data = np.zeros((frequencies, ports, ports), dtype=np.complex128)
    position = 0
    for findex in range(frequencies):
        if position + record > len(tokens):
            if position < len(tokens):
                parser.line = tokens[-1][0]
            raise parser.error(f"expected {frequencies} frequencies; "
                               f"found only {findex}")
        parser.line = tokens[position][0]
        values = [parser.number(t) for _, t in
                  tokens[position:position + record]]
        f = values[0] * parser.multiplier
        if findex > 0 and f <= frequency_vector[findex - 1]:
            raise parser.error("frequencies must be in increasing order")
        frequency_vector[findex] = f
        for k, (r, c) in enumerate(cells):
            value = decode_value(parser.coordinate, values[1 + 2 * k],
                                 values[2 + 2 * k], f)
            data[findex, r, c] = value
            if order != "full":
                data[findex, c, r] = value
        position += record
    return frequency_vector, data, position


def _load_version1(parser, ports):
    if ports is None:
        raise parser.error("Touchstone 1 file must have a .s<n>p suffix "
                           "giving the number of ports")
    if parser.ptype in (PType.H, PType.G) and ports != 2:
        raise parser.error(f"{parser.ptype.name} parameters require "
                           f"two ports")
    tokens = parser.data_tokens()
    record = 1 + 2 * ports * ports
    # Count records up to the first non-increasing frequency, which
    # starts the two-port noise block.
    frequencies = 0
    position = 0
    previous = None
    while position + record <= len(tokens):
        parser.line = tokens[position][0]
        f = parser.number(tokens[position][1])
        if previous is not None and f <= previous:
            break
        previous = f
        frequencies += 1
        position += record
    if position < len(tokens) and not (ports == 2 and frequencies > 0):
        parser.line = tokens[position][0]
        raise parser.error("incomplete data at end of file")
    frequency_vector, data, _ = _read_matrices(
        parser, tokens[:position], ports, frequencies, "full", "21_12")
    _denormalize(data, parser.ptype, parser.z0)
    return frequency_vector, data, np.full(ports, parser.z0)


def _load_version2(parser):
    ports = frequencies = None
    two_port = None
    reference = None
    order = "full"
    noise_frequencies = None
    while True:
        keyword = parser.keyword()
        text = parser.peek()
        if text is None:
            raise parser.error("expected [Network Data]")
        if keyword is None:
            parser.next()
            if text.startswith("#"):
                parser.option_line(text)
                continue
            raise parser.error(f"{text.split()[0]}: unexpected token")
        name, rest = keyword
        parser.next()
        if name == "number of ports":
            ports = parser.integer("Number of Ports", rest)
            if ports < 1:
                raise parser.error("[Number of Ports] must be positive")
        elif name == "two-port order" or name == "two-port data order":
            if rest not in ("12_21", "21_12"):
                raise parser.error("expected 12_21 or 21_12 after "
                                   "[Two-Port Order]")
            two_port = rest
        elif name == "number of frequencies":
            frequencies = parser.integer("Number of Frequencies", rest)
        elif name == "number of noise frequencies":
            noise_frequencies = parser.integer(
                "Number of Noise Frequencies", rest)
        elif name == "reference":
            if ports is None:
                raise parser.error("[Number of Ports] must appear before "
                                   "[Reference]")
            values = rest.split()
            while len(values) < ports and parser.peek() is not None \
                    and parser.keyword() is None:
                values.extend(parser.next().split())
            if len(values) != ports:
                raise parser.error(f"expected {ports} value(s) after "
                                   f"[Reference]")
            reference = [parser.number(v) for v in values]
        elif name == "matrix format":
            order = rest.lower()
            if order not in ("full", "upper", "lower"):
                raise parser.error("expected Full, Upper or Lower after "
                                   "[Matrix Format]")
        elif name == "mixed-mode order":
            raise parser.error("[Mixed-Mode Order] is not supported")
        elif name == "begin information":
            while parser.peek() is not None and \
                    (parser.keyword() or ("",))[0] != "end information":
                parser.next()
            if parser.next() is None:
                raise parser.error("expected [End Information]")
        elif name == "network data":
            break
        else:
            raise parser.error(f"[{name}]: unknown keyword")
    if ports is None:
        raise parser.error("[Number of Ports] must appear before "
                           "[Network Data]")
    if frequencies is None:
        raise parser.error("[Number of Frequencies] must appear before "
                           "[Network Data]")
    if ports == 2 and two_port is None:
        raise parser.error("[Two-Port Order] must appear before "
                           "[Network Data]")
    if ports != 2 and two_port is not None:
        raise parser.error(f"[Two-Port Order] may not be used with "
                           f"[Number of Ports] {ports}")
    if parser.ptype in (PType.H, PType.G) and ports != 2:
        raise parser.error(f"{parser.ptype.name} parameters require "
                           f"two ports")
    tokens = parser.data_tokens()
    frequency_vector, data, used = _read_matrices(
        parser, tokens, ports, frequencies, order, two_port)
    if used != len(tokens):
        parser.line = tokens[used][0]
        raise parser.error("extra data after last frequency")

    # Skip noise data and expect [End].
    keyword = parser.keyword()
    if noise_frequencies is not None:
        if keyword is None or keyword[0] != "noise data":
            raise parser.error("expected [Noise Data]")
        parser.next()
        parser.data_tokens()
        keyword = parser.keyword()
    if keyword is None or keyword[0] != "end":
        raise parser.error("expected [End]")
    if reference is None:
        reference = [parser.z0] * ports
    return frequency_vector, data, np.array(reference)


def load(npdata, filename, ports):
    """
    Load a Touchstone file into npdata.

    Args:
        ports (int or None): port count from a .s<n>p suffix
    """
    try:
        with open(filename, "r") as fp:
            lines = fp.readlines()
    except OSError as e:
        raise report(npdata._error_fn, VNASystemError(
            f"{filename}: {e.strerror}")) from e
    parser = _Parser(npdata, filename, lines)
    version = 1
    keyword = parser.keyword()
    if keyword is not None and keyword[0] == "version":
        parser.next()
        if not keyword[1].startswith("2."):
            raise parser.error(f"{keyword[1]}: unsupported version")
        version = 2
    if version == 1:
        text = parser.peek()
        if text is not None and text.startswith("#"):
            parser.option_line(parser.next())
        frequency_vector, data, z0 = _load_version1(parser, ports)
    else:
        frequency_vector, data, z0 = _load_version2(parser)

    nports = data.shape[1]
    npdata.init(parser.ptype, nports, nports, len(frequency_vector))
    npdata.frequency_vector[...] = frequency_vector
    npdata.data_array[...] = data
    npdata.z0_vector = z0.astype(np.complex128)
    npdata._format = [Format(parser.ptype, parser.coordinate)]


def prepare(npdata, filename, filetype):
    """
    Validate npdata for saving in Touchstone format and return a
    function that writes the file.
    """
    def usage(message):
        return report(npdata._error_fn, UsageError(message))

    formats = npdata._get_formats()
    if len(formats) != 1:
        raise usage("only a single format may be given for Touchstone "
                    "files")
    fmt = formats[0]
    if fmt.ptype not in _PTYPES.values() or \
            fmt.coordinate not in _COORDINATES:
        raise usage(f"{format_name(fmt)} format cannot be saved in "
                    f"Touchstone files")
    if npdata.has_fz0:
        raise usage("cannot save frequency-dependent reference "
                    "impedances in Touchstone files")
    if npdata.ptype == PType.ZIN or npdata.rows != npdata.columns:
        raise usage("Touchstone files require square matrices")
    ports = npdata.rows
    if fmt.ptype in (PType.H, PType.G) and ports != 2:
        raise usage(f"{fmt.ptype.name} parameters require two ports")
    z0 = npdata.z0_vector
    if np.any(z0.imag != 0.0) or np.any(z0.real <= 0.0):
        raise usage("reference impedances must be real and positive in "
                    "Touchstone files")
    if filetype == FileType.TOUCHSTONE1:
        mixed = ports > 0 and np.any(z0 != z0[0])
        if ports > MAX_TOUCHSTONE1_PORTS or mixed:
            if npdata.filetype != FileType.AUTO:
                if mixed:
                    raise usage("cannot save ports with different "
                                "reference impedances in Touchstone 1 "
                                "files")
                raise usage(f"cannot save more than "
                            f"{MAX_TOUCHSTONE1_PORTS} ports in Touchstone "
                            f"1 files")
            filetype = FileType.TOUCHSTONE2

    # Convert the data.  Touchstone 1 normalizes to z0 = 1.
    if filetype == FileType.TOUCHSTONE1 and fmt.ptype != PType.S:
        if npdata.ptype in (PType.S, PType.ANY):
            s = npdata.data_array
        else:
            s = npdata.convert(PType.S).data_array
        try:
            data = conv.convert(s, "s", fmt.ptype.name.lower(), 1.0)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise usage(f"cannot convert to {fmt.ptype.name} "
                        f"parameters: {e}") from None
    elif npdata.ptype in (fmt.ptype, PType.ANY):
        data = npdata.data_array
    else:
        data = npdata.convert(fmt.ptype).data_array
    fprecision = npdata.fprecision
    dprecision = npdata.dprecision
    z0_touchstone = z0[0].real if ports > 0 else 50.0

    def write():
        lines = []
        if filetype == FileType.TOUCHSTONE2:
            lines.append("[Version] 2.0")
        lines.append(f"# Hz {fmt.ptype.name} {fmt.coordinate.upper()} R "
                     f"{format_number(z0_touchstone, dprecision)}")
        if filetype == FileType.TOUCHSTONE2:
            lines.append(f"[Number of Ports] {ports}")
            if ports == 2:
                lines.append("[Two-Port Order] 12_21")
            lines.append(f"[Number of Frequencies] {npdata.frequencies}")
            if ports > 0 and np.any(z0 != z0[0]):
                lines.append("[Reference] " + " ".join(
                    format_number(z.real, dprecision) for z in z0))
            lines.append("[Network Data]")
        indent = " " * (len(format_number(1.0, fprecision)) + 4)
        for findex, f in enumerate(npdata.frequency_vector):
            line = format_number(f, fprecision)
            for row in range(ports):
                for column in range(ports):
                    # Break after every four columns and, except for
                    # two-ports, after every row.
                    if (column != 0 and column % 4 == 0) or \
                            (ports != 2 and row != 0 and column == 0):
                        lines.append(line)
                        line = indent
                    if filetype == FileType.TOUCHSTONE1 and ports == 2:
                        value = data[findex, column, row]
                    else:
                        value = data[findex, row, column]
                    if fmt.coordinate == "ri":
                        pair = (value.real, value.imag)
                    elif fmt.coordinate == "ma":
                        pair = (abs(value), np.degrees(np.angle(value)))
                    else:
                        pair = (20.0 * np.log10(abs(value)),
                                np.degrees(np.angle(value)))
                    line += " " + " ".join(
                        format_number(v, dprecision, plus=True)
                        for v in pair)
            lines.append(line)
        if filetype == FileType.TOUCHSTONE2:
            lines.append("[End]")
        try:
            with open(filename, "w") as fp:
                fp.write("\n".join(lines) + "\n")
        except OSError as e:
            raise report(npdata._error_fn, VNASystemError(
                f"{filename}: {e.strerror}")) from e

    return write
