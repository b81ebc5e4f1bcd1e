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
Calibration standard parameters.

A parameter describes one S-parameter of a calibration standard:
a constant, a frequency dependent vector, an unknown value the solver
determines, or an unknown value statistically correlated with another
parameter.  Every parameter is registered in a Calset, which hands out
integer indices and keeps the predefined match (0), open (+1) and
short (-1) parameters at indices 0, 1 and 2.
"""

import numbers
import numpy as np
from scipy.interpolate import CubicSpline
from ._rfi import check_range, rfi
from .errors import UsageError, report


class Parameter:
    """
    Base class of calibration parameters.

    A new parameter starts with one hold, owned by the calset.  Each
    Solver that uses the parameter adds a hold of its own.  Calling
    delete() drops the calset's hold; the parameter leaves the registry
    when the last hold is released, so solvers may keep using it.
    """
    is_unknown = False

    def __init__(self, calset):
        self._calset = calset
        self._hold_count = 1
        self._deleted = False
        self._predefined = False
        self._index = calset._register_parameter(self)

    @property
    def calset(self):
        """the Calset this parameter belongs to"""
        return self._calset

    @property
    def index(self):
        """index of the parameter in the calset's registry"""
        return self._index

    @property
    def deleted(self):
        """True if delete() has been called"""
        return self._deleted

    @staticmethod
    def from_value(calset, value):
        """
        Return a parameter representing value.

        Args:
            calset (Calset): calset that owns the parameter
            value: a Parameter (returned as is), a number, or a tuple
                (frequency_vector, gamma_vector)

        Note:
            The exact values 0, 1 and -1 map to the predefined match,
            open and short parameters.
        """
        if isinstance(value, Parameter):
            if value.calset is not calset:
                raise report(calset._error_fn, UsageError(
                    "parameter belongs to a different calset"))
            return value
        if isinstance(value, tuple):
            if len(value) != 2:
                raise report(calset._error_fn, UsageError(
                    "expected tuple of (frequency_vector, gamma_vector)"))
            return VectorParameter(calset, value[0], value[1])
        if not isinstance(value, numbers.Number):
            raise report(calset._error_fn, UsageError(
                f"{value!r}: invalid parameter value"))
        if value == 0.0:
            return calset.match
        if value == 1.0:
            return calset.open
        if value == -1.0:
            return calset.short
        return ScalarParameter(calset, value)

    def get_value(self, f):
        """
        Return the value of the parameter at frequency f.

        Args:
            f (float or array_like): frequency or vector of frequencies

        Returns:
            complex, or a numpy array of complex if f is a vector
        """
        if np.ndim(f) == 0:
            return self._value(float(f))
        return np.array([self._value(float(x)) for x in np.ravel(f)],
                        dtype=np.complex128).reshape(np.shape(f))

    def _value(self, f):
        raise NotImplementedError

    def frequency_range(self):
        """
        Return (fmin, fmax) over which the parameter is defined, or
        None if it is defined at all frequencies.
        """
        return None

    def hold(self):
        """
        Add a hold, keeping the parameter alive across delete().
        """
        self._hold_count += 1

    def release(self):
        """
        Drop a hold; remove the parameter from its calset when the
        last one goes.
        """
        assert self._hold_count > 0, "parameter released too many times"
        self._hold_count -= 1
        if self._hold_count == 0:
            self._free()

    def _free(self):
        self._calset._unregister_parameter(self._index)

    def delete(self):
        """
        Delete the parameter from its calset.  The predefined match,
        open and short parameters cannot be deleted.
        """
        if self._predefined:
            raise report(self._calset._error_fn, UsageError(
                "predefined parameters cannot be deleted"))
        if self._deleted:
            raise report(self._calset._error_fn, UsageError(
                f"parameter {self._index} already deleted"))
        self._deleted = True
        self.release()

    def __repr__(self):
        return f"<{type(self).__name__} {self._index}>"


class ScalarParameter(Parameter):
    """
    Frequency independent parameter.

    Args:
        calset (Calset): calset that owns the parameter
        value (complex): reflection or transmission coefficient
    """
    def __init__(self, calset, value):
        value = complex(value)
        if not np.isfinite(value):
            raise report(calset._error_fn, UsageError(
                f"{value}: parameter value must be finite"))
        self._gamma = value
        super().__init__(calset)

    @property
    def value(self):
        return self._gamma

    def _value(self, f):
        return self._gamma


class VectorParameter(Parameter):
    """
    Frequency dependent parameter, interpolated between the given
    points using rational function interpolation.

    Args:
        calset (Calset): calset that owns the parameter
        frequency_vector (array_like): non-negative, ascending frequencies
        gamma_vector (array_like): values at each frequency
    """
    def __init__(self, calset, frequency_vector, gamma_vector):
        frequency_vector = np.array(frequency_vector, dtype=np.float64,
                                    ndmin=1)
        gamma_vector = np.array(gamma_vector, dtype=np.complex128, ndmin=1)
        if frequency_vector.ndim != 1 or gamma_vector.ndim != 1:
            raise report(calset._error_fn, UsageError(
                "frequency and gamma vectors must be one dimensional"))
        if len(frequency_vector) < 1:
            raise report(calset._error_fn, UsageError(
                "vector parameter requires at least one frequency"))
        if len(frequency_vector) != len(gamma_vector):
            raise report(calset._error_fn, UsageError(
                "frequency and gamma vectors must have the same length"))
        if frequency_vector[0] < 0.0:
            raise report(calset._error_fn, UsageError(
                "frequencies must be non-negative"))
        if np.any(np.diff(frequency_vector) <= 0.0):
            raise report(calset._error_fn, UsageError(
                "frequencies must be in ascending order"))
        self._frequency_vector = frequency_vector
        self._gamma_vector = gamma_vector
        self._segment = 0
        super().__init__(calset)

    @property
    def frequency_vector(self):
        return self._frequency_vector.copy()

    @property
    def gamma_vector(self):
        return self._gamma_vector.copy()

    def frequency_range(self):
        return (self._frequency_vector[0], self._frequency_vector[-1])

    def _value(self, f):
        if not check_range(self._frequency_vector, f):
            raise report(self._calset._error_fn, UsageError(
                f"frequency {f:e} outside of parameter range "
                f"[{self._frequency_vector[0]:e}, "
                f"{self._frequency_vector[-1]:e}]"))
        value, self._segment = rfi(self._frequency_vector,
                                   self._gamma_vector, f, self._segment)
        return value


class UnknownParameter(Parameter):
    """
    Parameter of unknown value, solved by the Solver.

    Args:
        calset (Calset): calset that owns the parameter
        initial_guess: number, (frequency_vector, gamma_vector) tuple,
            or Parameter giving the starting value for the solver

    After a successful solve, the parameter holds the solved values
    over the calibration frequencies and get_value() interpolates them.
    """
    is_unknown = True

    def __init__(self, calset, initial_guess):
        guess = Parameter.from_value(calset, initial_guess)
        if guess.is_unknown:
            raise report(calset._error_fn, UsageError(
                "initial guess cannot be an unknown parameter"))
        guess.hold()
        self._other = guess
        self._solved_frequency_vector = None
        self._solved_vector = None
        self._segment = 0
        super().__init__(calset)

    @property
    def other(self):
        """parameter giving the initial guess or correlate"""
        return self._other

    @property
    def solved(self):
        """True if the solver has stored values in this parameter"""
        return self._solved_vector is not None

    def initial_value(self, f):
        """
        Return the starting value for the solver at frequency f.
        """
        return self._other._value(f)

    def _set_solved(self, frequency_vector, values):
        self._solved_frequency_vector = np.array(frequency_vector,
                                                 dtype=np.float64)
        self._solved_vector = np.array(values, dtype=np.complex128)
        self._segment = 0

    def frequency_range(self):
        if self._solved_vector is not None:
            return (self._solved_frequency_vector[0],
                    self._solved_frequency_vector[-1])
        return self._other.frequency_range()

    def _value(self, f):
        if self._solved_vector is None:
            return self.initial_value(f)
        if not check_range(self._solved_frequency_vector, f):
            raise report(self._calset._error_fn, UsageError(
                f"frequency {f:e} outside of solved range"))
        value, self._segment = rfi(self._solved_frequency_vector,
                                   self._solved_vector, f, self._segment)
        return value

    def _free(self):
        self._other.release()
        super()._free()


class CorrelatedParameter(UnknownParameter):
    """
    Unknown parameter known to be close to another parameter.

    Args:
        calset (Calset): calset that owns the parameter
        other: number, tuple or Parameter this one is correlated with;
            may itself be unknown
        frequency_vector (array_like or None): frequencies at which
            the sigmas are given; None if other is a vector parameter
            with the same number of frequencies as sigma_vector
        sigma_vector (array_like): standard deviation of the difference
            between the two parameters; a single value means constant

    Sigma is interpolated between frequencies by a natural cubic spline.
    """
    def __init__(self, calset, other, frequency_vector, sigma_vector):
        error_fn = calset._error_fn
        other = Parameter.from_value(calset, other)
        sigma_vector = np.array(sigma_vector, dtype=np.float64, ndmin=1)
        if sigma_vector.ndim != 1 or len(sigma_vector) < 1:
            raise report(error_fn, UsageError(
                "sigma_vector must be a non-empty vector"))
        if np.any(~(sigma_vector > 0.0)):
            raise report(error_fn, UsageError("sigma values must be > 0"))
        if frequency_vector is None:
            if len(sigma_vector) > 1:
                base = other
                while isinstance(base, UnknownParameter):
                    base = base.other
                if (not isinstance(base, VectorParameter)
                        or len(base.frequency_vector) != len(sigma_vector)):
                    raise report(error_fn, UsageError(
                        "frequency_vector may be omitted only when "
                        "correlated with a vector parameter of the "
                        "same length"))
                frequency_vector = base.frequency_vector
        else:
            frequency_vector = np.array(frequency_vector, dtype=np.float64,
                                        ndmin=1)
            if len(frequency_vector) != len(sigma_vector):
                raise report(error_fn, UsageError(
                    "frequency and sigma vectors must have the same length"))
            if frequency_vector[0] < 0.0:
                raise report(error_fn, UsageError(
                    "frequencies must be non-negative"))
            if np.any(np.diff(frequency_vector) <= 0.0):
                raise report(error_fn, UsageError(
                    "frequencies must be in ascending order"))
            other_range = other.frequency_range()
            if other_range is not None and (
                    frequency_vector[-1] < other_range[0]
                    or frequency_vector[0] > other_range[1]):
                raise report(error_fn, UsageError(
                    "sigma frequencies are disjoint from the frequency "
                    "range of the correlated parameter"))

        self._sigma_frequency_vector = frequency_vector
        self._sigma_vector = sigma_vector
        if len(sigma_vector) == 1:
            self._spline = None
        else:
            self._spline = CubicSpline(frequency_vector, sigma_vector,
                                       bc_type="natural")

        # Skip UnknownParameter's rejection of an unknown initial guess.
        other.hold()
        self._other = other
        self._solved_frequency_vector = None
        self._solved_vector = None
        self._segment = 0
        Parameter.__init__(self, calset)

    @property
    def sigma_vector(self):
        return self._sigma_vector.copy()

    @property
    def sigma_frequency_vector(self):
        if self._sigma_frequency_vector is None:
            return None
        return self._sigma_frequency_vector.copy()

    def get_sigma(self, f):
        """
        Return the standard deviation at frequency f.
        """
        if self._spline is None:
            return float(self._sigma_vector[0])
        f = min(max(f, self._sigma_frequency_vector[0]),
                self._sigma_frequency_vector[-1])
        return float(self._spline(f))
