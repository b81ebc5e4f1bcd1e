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
Error term layout: how many error terms each calibration type has for
given VNA dimensions and where each term class sits in the vector of
terms.

T types relate the measurement M to the true S parameters by::

    Ts S + Ti = M (Tx S + Tm)

U types by::

    Um M + Ui = S (Ux M + Us)

UE14 solves a separate U system for each column of M, and E12 is UE14
expressed in the classic el, er, em (and implied et = 1) form.
"""

from collections import namedtuple
from enum import IntEnum
import numpy as np
from .errors import UsageError


class CalType(IntEnum):
    """
    Error term type.

    Note:
        The T types require the VNA to have at least as many columns
        (driven ports) as rows (detectors); the U types, UE14 and E12
        require at least as many rows as columns.
    """
    T8 = 0      #: 8-term T parameters, no leakage
    U8 = 1      #: 8-term U parameters, no leakage
    TE10 = 2    #: 8-term T parameters plus off-diagonal leakage
    UE10 = 3    #: 8-term U parameters plus off-diagonal leakage
    T16 = 4     #: 16-term T parameters, all leakage paths
    U16 = 5     #: 16-term U parameters, all leakage paths
    UE14 = 6    #: 7 U terms per column plus leakage
    E12 = 7     #: classic 12-term SOLT, solved as UE14

    @classmethod
    def from_name(cls, name):
        """
        Return the CalType with the given name (case insensitive).
        """
        try:
            return cls[name.upper()]
        except KeyError:
            raise UsageError(f"{name}: unknown error term type") from None

    @property
    def is_t(self):
        return self in (CalType.T8, CalType.TE10, CalType.T16)

    @property
    def is_u(self):
        return not self.is_t

    @property
    def has_leakage(self):
        """True if the type keeps leakage terms outside the linear system"""
        return self in (CalType.TE10, CalType.UE10, CalType.UE14,
                        CalType.E12)

    @property
    def has_column_systems(self):
        """True if the type solves a separate system per M column"""
        return self in (CalType.UE14, CalType.E12)


# A class of error terms: offset into the per-system term vector, the
# shape of the full matrix, and how its terms are stored: "diagonal"
# (only the main diagonal), "full" (every cell, row-major) or "single"
# (one term at row <system>, column 0, used by UE14 and E12).
TermClass = namedtuple("TermClass", "offset rows columns kind")


class Layout:
    """
    Sizes and positions of the error terms.

    Args:
        ctype (CalType): error term type
        rows (int): rows in the measurement matrix (detectors)
        columns (int): columns in the measurement matrix (drivers)
    """
    def __init__(self, ctype, rows, columns):
        ctype = CalType(ctype)
        if rows < 1 or columns < 1:
            raise UsageError(f"invalid dimensions {rows} x {columns}")
        if ctype.is_t and rows > columns:
            raise UsageError(f"{ctype.name}: rows must be <= columns")
        if ctype.is_u and rows < columns:
            raise UsageError(f"{ctype.name}: rows must be >= columns")
        self.ctype = ctype
        self.m_rows = rows
        self.m_columns = columns
        self.s_rows = self.s_columns = max(rows, columns)

        m_rows, m_columns = rows, columns
        s_rows = s_columns = self.s_rows
        if ctype.is_t:
            kind = "full" if ctype == CalType.T16 else "diagonal"
            classes = (("ts", m_rows, s_rows, kind),
                       ("ti", m_rows, s_columns, kind),
                       ("tx", m_columns, s_rows, kind),
                       ("tm", m_columns, s_columns, kind))
        elif ctype.has_column_systems:
            classes = (("um", s_rows, m_rows, "diagonal"),
                       ("ui", s_rows, 1, "single"),
                       ("ux", s_columns, m_rows, "diagonal"),
                       ("us", s_columns, 1, "single"))
        else:
            kind = "full" if ctype == CalType.U16 else "diagonal"
            classes = (("um", s_rows, m_rows, kind),
                       ("ui", s_rows, m_columns, kind),
                       ("ux", s_columns, m_rows, kind),
                       ("us", s_columns, m_columns, kind))

        self.term_classes = {}
        offset = 0
        for name, r, c, kind in classes:
            self.term_classes[name] = TermClass(offset, r, c, kind)
            offset += self.class_size(name)
        self.t_terms = offset
        self.systems = m_columns if ctype.has_column_systems else 1
        if ctype.has_leakage:
            self.el_terms = m_rows * m_columns - min(m_rows, m_columns)
        else:
            self.el_terms = 0

    @property
    def name(self):
        return self.ctype.name

    @property
    def unknowns(self):
        """number of unknowns in each linear system"""
        return self.t_terms - 1

    @property
    def x_length(self):
        """total number of unknowns over all systems"""
        return self.systems * self.unknowns

    @property
    def error_terms(self):
        """total number of error terms, counting leakage"""
        if self.ctype == CalType.E12:
            return 3 * self.m_rows * self.m_columns
        return self.systems * self.t_terms + self.el_terms

    def class_size(self, name):
        """
        Return the number of terms stored for a term class.
        """
        tc = self.term_classes[name]
        if tc.kind == "diagonal":
            return min(tc.rows, tc.columns)
        if tc.kind == "single":
            return 1
        return tc.rows * tc.columns

    def lookup(self, name, row, column, system=0):
        """
        Return the index in the per-system term vector of the cell
        (row, column) of a term class, or None if the cell is
        structurally zero.
        """
        tc = self.term_classes[name]
        if row >= tc.rows or column >= tc.columns:
            return None
        if tc.kind == "diagonal":
            return tc.offset + row if row == column else None
        if tc.kind == "single":
            return tc.offset if row == system and column == 0 else None
        return tc.offset + row * tc.columns + column

    def unity_index(self, system=0):
        """
        Return the index of the term fixed at one in the given system.
        """
        if self.ctype.is_t:
            return self.lookup("tm", 0, 0)
        return self.lookup("um", system, system)

    def matrices(self, terms, system=0):
        """
        Expand a per-system term vector into the full term matrices.

        Returns:
            dict mapping each term class name to a complex matrix
        """
        result = {}
        for name, tc in self.term_classes.items():
            matrix = np.zeros((tc.rows, tc.columns), dtype=np.complex128)
            for row in range(tc.rows):
                for column in range(tc.columns):
                    index = self.lookup(name, row, column, system)
                    if index is not None:
                        matrix[row, column] = terms[index]
            result[name] = matrix
        return result

    def initial_x(self):
        """
        Return the vector of unknowns for a perfect VNA, all systems
        concatenated.
        """
        x = []
        ones = ("ts", "tm") if self.ctype.is_t else ("um", "us")
        for system in range(self.systems):
            terms = np.zeros(self.t_terms, dtype=np.complex128)
            for name in ones:
                tc = self.term_classes[name]
                if tc.kind == "single":
                    cells = [(system, 0)]
                else:
                    cells = [(i, i) for i in range(min(tc.rows, tc.columns))]
                for row, column in cells:
                    terms[self.lookup(name, row, column, system)] = 1.0
            x.append(np.delete(terms, self.unity_index(system)))
        return np.concatenate(x)

    def expand(self, x, system=0):
        """
        Return the full term vector of a system from its unknowns by
        inserting the unity term.
        """
        return np.insert(np.asarray(x, dtype=np.complex128),
                         self.unity_index(system), 1.0)

    def __repr__(self):
        return (f"Layout({self.ctype.name}, {self.m_rows}, "
                f"{self.m_columns})")
