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
Calibration set: parameter registry, named calibrations, properties,
and the .vnacal file format.

A .vnacal file is a "#VNACAL 3.0" line followed by a YAML document::

    properties: {...}
    calibrations:
      - name: cal
        type: TE10
        rows: 2
        columns: 2
        frequencies: 10
        z0: 50
        properties: {...}
        data:
          - f: 1.0000000e+09
            ts: [...]
            ...

Complex numbers are written as strings of the form "re+imj".
"""

import logging
import math
import numpy as np
import yaml
from ._calibration import Calibration
from ._layout import CalType
from ._parameter import ScalarParameter
from .errors import (UsageError, VersionError, VNASyntaxError,
                     VNASystemError, report)

logger = logging.getLogger(__name__)

MAGIC = "#VNACAL"
VERSION = "3.0"
DEFAULT_FPRECISION = 7
DEFAULT_DPRECISION = 6


class CalibrationList:
    """
    Sequence of the calibrations in a Calset, indexable by position
    or by name.
    """
    def __init__(self, calset):
        self._calset = calset
        self._items = []

    def _index(self, key):
        if isinstance(key, str):
            for i, calibration in enumerate(self._items):
                if calibration.name == key:
                    return i
            raise report(self._calset._error_fn, UsageError(
                f"{key}: calibration not found"))
        try:
            return range(len(self._items))[key]
        except (IndexError, TypeError):
            raise report(self._calset._error_fn, UsageError(
                f"{key!r}: invalid calibration index")) from None

    def __getitem__(self, key):
        return self._items[self._index(key)]

    def __delitem__(self, key):
        del self._items[self._index(key)]

    def __len__(self):
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def __contains__(self, name):
        return any(c.name == name for c in self._items)

    def names(self):
        return [c.name for c in self._items]


def _format_complex(value, precision):
    value = complex(value)
    return f"{value.real:+.{precision}e}{value.imag:+.{precision}e}j"


def _parse_complex(text, filename):
    if isinstance(text, (int, float)):
        return complex(text)
    if text is None:
        return complex(math.nan, math.nan)
    try:
        return complex(str(text).replace(" ", ""))
    except ValueError:
        raise VNASyntaxError(f"{text!r}: invalid complex number",
                             filename) from None


class Calset:
    """
    A set of calibrations and the parameters used to make them.

    Args:
        filename (str, optional): .vnacal file to load
        error_fn (callable, optional): called as
            error_fn(message, category) on every error before the
            corresponding exception is raised

    Attributes:
        properties (dict): global user properties saved with the set
        match, open, short (Parameter): predefined reflection
            parameters 0, +1 and -1
    """
    def __init__(self, filename=None, *, error_fn=None):
        self._error_fn = error_fn
        self._parameters = []
        self._calibrations = CalibrationList(self)
        self.properties = {}
        self.fprecision = DEFAULT_FPRECISION
        self.dprecision = DEFAULT_DPRECISION
        self.match = ScalarParameter(self, 0.0)
        self.open = ScalarParameter(self, 1.0)
        self.short = ScalarParameter(self, -1.0)
        for parameter in (self.match, self.open, self.short):
            parameter._predefined = True
        if filename is not None:
            self.load(filename)

    @property
    def error_fn(self):
        return self._error_fn

    # ------------------------------------------------------------------
    # parameter registry

    def _register_parameter(self, parameter):
        for i, p in enumerate(self._parameters):
            if p is None:
                self._parameters[i] = parameter
                return i
        self._parameters.append(parameter)
        return len(self._parameters) - 1

    def _unregister_parameter(self, index):
        self._parameters[index] = None

    def get_parameter(self, index):
        """
        Return the parameter with the given index.
        """
        if (not 0 <= index < len(self._parameters)
                or self._parameters[index] is None
                or self._parameters[index].deleted):
            raise report(self._error_fn, UsageError(
                f"{index}: invalid parameter index"))
        return self._parameters[index]

    # ------------------------------------------------------------------
    # calibrations

    @property
    def calibrations(self):
        """the calibrations in this set"""
        return self._calibrations

    def _add_calibration(self, calibration):
        items = self._calibrations._items
        for i, existing in enumerate(items):
            if existing.name == calibration.name:
                items[i] = calibration
                return i
        items.append(calibration)
        return len(items) - 1

    def find_calibration(self, name):
        """
        Return the index of the named calibration, or None.
        """
        for i, calibration in enumerate(self._calibrations):
            if calibration.name == name:
                return i
        return None

    def delete_calibration(self, key):
        """
        Delete a calibration by index or name.
        """
        del self._calibrations[key]

    # ------------------------------------------------------------------
    # save / load

    def _term_to_yaml(self, value):
        """
        Convert an array of complex values (NaN meaning absent) to
        nested lists of strings and None.
        """
        if np.ndim(value) == 0:
            if np.isnan(value):
                return None
            return _format_complex(value, self.dprecision)
        return [self._term_to_yaml(v) for v in value]

    def _calibration_to_yaml(self, calibration):
        z0 = calibration.z0
        terms = calibration.get_error_terms()
        data = []
        for findex, f in enumerate(calibration.frequency_vector):
            entry = {"f": float(f"{f:.{self.fprecision}e}")}
            for name, values in terms.items():
                entry[name] = self._term_to_yaml(values[findex])
            data.append(entry)
        return {
            "name": calibration.name,
            "type": calibration.ctype.name,
            "rows": calibration.rows,
            "columns": calibration.columns,
            "frequencies": calibration.frequencies,
            "z0": z0.real if z0.imag == 0.0 else _format_complex(
                z0, self.dprecision),
            "properties": calibration.properties,
            "data": data,
        }

    def save(self, filename):
        """
        Save the calibrations to a .vnacal file.
        """
        document = {
            "properties": self.properties,
            "calibrations": [self._calibration_to_yaml(c)
                             for c in self._calibrations],
        }
        try:
            with open(filename, "w") as file:
                file.write(f"{MAGIC} {VERSION}\n")
                yaml.safe_dump(document, file, default_flow_style=None,
                               sort_keys=False)
        except OSError as e:
            raise report(self._error_fn, VNASystemError(
                f"{filename}: {e.strerror}")) from e
        logger.debug("saved %d calibrations to %s", len(self._calibrations),
                     filename)

    def _calibration_from_yaml(self, entry, filename):
        try:
            name = str(entry["name"])
            ctype = CalType.from_name(str(entry["type"]))
            rows = int(entry["rows"])
            columns = int(entry["columns"])
            frequencies = int(entry["frequencies"])
            z0 = _parse_complex(entry.get("z0", 50.0), filename)
            properties = entry.get("properties") or {}
            data = entry["data"]
        except (KeyError, TypeError, ValueError, UsageError) as e:
            raise VNASyntaxError(f"invalid calibration entry: {e}",
                                 filename) from None
        if not isinstance(data, list) or len(data) != frequencies:
            raise VNASyntaxError(
                f"calibration {name}: expected {frequencies} frequencies",
                filename)
        frequency_vector = np.empty(frequencies)
        collected = {}
        for findex, point in enumerate(data):
            try:
                frequency_vector[findex] = float(point["f"])
            except (KeyError, TypeError, ValueError):
                raise VNASyntaxError(
                    f"calibration {name}: missing frequency", filename
                ) from None
            for key, value in point.items():
                if key == "f":
                    continue
                collected.setdefault(key, []).append(
                    np.vectorize(lambda v: _parse_complex(v, filename),
                                 otypes=[np.complex128])(
                                     np.array(value, dtype=object)))
        error_terms = {key: np.array(values)
                       for key, values in collected.items()}
        try:
            calibration = Calibration.from_error_terms(
                self, name, ctype, rows, columns, frequency_vector,
                error_terms, z0=z0, properties=properties)
        except (KeyError, ValueError) as e:
            raise VNASyntaxError(
                f"calibration {name}: invalid error terms: {e}",
                filename) from None
        return calibration

    def load(self, filename):
        """
        Load calibrations from a .vnacal file, adding them to this set.
        """
        try:
            try:
                with open(filename, "r") as file:
                    header = file.readline().split()
                    text = file.read()
            except OSError as e:
                raise VNASystemError(f"{filename}: {e.strerror}") from e
            if len(header) != 2 or header[0] != MAGIC:
                raise VNASyntaxError("not a .vnacal file", filename, 1)
            if header[1] != VERSION:
                raise VersionError(
                    f"{filename}: unsupported version {header[1]}")
            try:
                document = yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise VNASyntaxError(str(e), filename) from None
            if not isinstance(document, dict):
                raise VNASyntaxError("expected a map", filename)
            calibrations = [
                self._calibration_from_yaml(entry, filename)
                for entry in document.get("calibrations") or []]
        except (VNASystemError, VNASyntaxError, VersionError) as e:
            raise report(self._error_fn, e)
        self.properties.update(document.get("properties") or {})
        for calibration in calibrations:
            self._add_calibration(calibration)
        logger.debug("loaded %d calibrations from %s", len(calibrations),
                     filename)
