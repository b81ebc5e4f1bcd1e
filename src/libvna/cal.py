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
Vector network analyzer calibration.

A Calset holds calibration standard parameters and named
calibrations.  A Solver takes measurements of calibration standards
and solves for the error terms of the chosen CalType, then adds the
result to the Calset as a Calibration.  Calibration.apply() corrects
measurements of a device under test, returning S parameters;
Calibration.apply_begin() does the same for a device measured in
several connections through port maps.

Example:
    >>> from libvna.cal import CalType, Calset, Solver
    >>> calset = Calset()
    >>> solver = Solver(calset, CalType.E12, rows=2, columns=1,
    ...                 frequency_vector=f_vector)
    >>> solver.add_single_reflect(m_short, -1.0)
    >>> solver.add_single_reflect(m_open, 1.0)
    >>> solver.add_single_reflect(m_match, 0.0)
    >>> solver.add_through(m_through)
    >>> solver.solve()
    >>> solver.add_to_calset("cal")
    >>> calset.save("mycal.vnacal")
    >>> result = calset.calibrations["cal"].apply(f_vector, m_dut)
"""

from ._calibration import Calibration, Correction
from ._calset import Calset, CalibrationList
from ._layout import CalType, Layout
from ._parameter import (CorrelatedParameter, Parameter, ScalarParameter,
                         UnknownParameter, VectorParameter)
from ._solver import (DEFAULT_ITERATION_LIMIT, DEFAULT_PVALUE_LIMIT,
                      DEFAULT_TOLERANCE, Solver)
from .errors import (ErrorCategory, MathError, UsageError, VersionError,
                     VNAError, VNASyntaxError, VNASystemError)

__all__ = [
    "CalType",
    "Calibration",
    "CalibrationList",
    "Calset",
    "CorrelatedParameter",
    "Correction",
    "DEFAULT_ITERATION_LIMIT",
    "DEFAULT_PVALUE_LIMIT",
    "DEFAULT_TOLERANCE",
    "ErrorCategory",
    "Layout",
    "MathError",
    "Parameter",
    "ScalarParameter",
    "Solver",
    "UnknownParameter",
    "UsageError",
    "VNAError",
    "VNASyntaxError",
    "VNASystemError",
    "VectorParameter",
    "VersionError",
]
