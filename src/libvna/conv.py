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
Network parameter conversions.

Functions are named ``xtoy`` where x and y are each one of s, t, u, z,
y, h, g, a or b, plus ``xtozi`` giving the impedance looking into each
port with all other ports terminated in their reference impedances.
Each accepts an array of shape (..., ports, ports) and converts every
matrix in the leading dimensions.

Conversions that involve S, T or U parameters take a reference
impedance argument z0, which may be a scalar, a vector with one value
per port, or an array of shape ``x.shape[:-1]`` giving the impedances
for each matrix separately.  The default is 50 ohms.  Conversions
between S, T and U accept two reference impedance arguments, z1 and z2,
and renormalize from z1 to z2.  T, U, H, G, A and B parameters are
defined only for two-port networks.

The incident and reflected power waves a and b relate to voltage and
current at each port by::

    v = k (z0* a + z0 b)
    i = k (a - b)
    k = sqrt(|Re z0|) / Re z0

Example:
    >>> import libvna.conv as vc
    >>> vc.ztos([[75.0, 0.0], [0.0, 50.0]])
    array([[0.2+0.j, 0. +0.j],
           [0. +0.j, 0. +0.j]])
"""

import numpy as np

DEFAULT_Z0 = 50.0

_TYPES = "stuzyhgab"
_WAVE_TYPES = "stu"
_TWO_PORT_TYPES = "tuhgab"

__all__ = ["DEFAULT_Z0", "convert"]


def _stack(*rows):
    return np.stack(rows, axis=-2)


# Each entry returns the (input, output) port variables of a parameter
# type, where the parameter matrix X satisfies output = X @ input.  The
# arguments v, i, a and b have shape (..., ports, 2*ports), each row
# expressing one port variable as a combination of [v; i].
_DEFINITIONS = {
    "s": lambda v, i, a, b: (a, b),
    "t": lambda v, i, a, b: (_stack(a[..., 1, :], b[..., 1, :]),
                             _stack(b[..., 0, :], a[..., 0, :])),
    "u": lambda v, i, a, b: (_stack(b[..., 0, :], a[..., 0, :]),
                             _stack(a[..., 1, :], b[..., 1, :])),
    "z": lambda v, i, a, b: (i, v),
    "y": lambda v, i, a, b: (v, i),
    "h": lambda v, i, a, b: (_stack(i[..., 0, :], v[..., 1, :]),
                             _stack(v[..., 0, :], i[..., 1, :])),
    "g": lambda v, i, a, b: (_stack(v[..., 0, :], i[..., 1, :]),
                             _stack(i[..., 0, :], v[..., 1, :])),
    "a": lambda v, i, a, b: (_stack(v[..., 1, :], -i[..., 1, :]),
                             _stack(v[..., 0, :], i[..., 0, :])),
    "b": lambda v, i, a, b: (_stack(v[..., 0, :], i[..., 0, :]),
                             _stack(v[..., 1, :], -i[..., 1, :])),
}


def _check_matrix(x, ptypes):
    x = np.asarray(x, dtype=np.complex128)
    if x.ndim < 2 or x.shape[-1] != x.shape[-2]:
        raise ValueError(f"expected square matrices; got shape {x.shape}")
    if x.shape[-1] != 2 and any(t in _TWO_PORT_TYPES for t in ptypes):
        raise ValueError(f"{'/'.join(t.upper() for t in ptypes)} "
                         f"conversion requires 2x2 matrices")
    return x


def _check_z0(z0, shape):
    """
    Return z0 broadcast to shape, where shape is x.shape[:-1].
    """
    z0 = np.asarray(z0, dtype=np.complex128)
    if z0.ndim == 0 or z0.shape == shape[-1:] or z0.shape == shape:
        return np.broadcast_to(z0, shape)
    raise ValueError(f"z0 must be a scalar, a vector of length "
                     f"{shape[-1]} or have shape {shape}; "
                     f"got shape {z0.shape}")


def _port_variables(z0):
    """
    Return v, i, a and b as rows over [v; i] for the given impedances.
    """
    ports = z0.shape[-1]
    eye = np.eye(ports)
    zero = np.zeros((ports, ports))
    v = np.concatenate((eye, zero), axis=-1)
    i = np.concatenate((zero, eye), axis=-1)
    r = z0.real
    if np.any(r == 0.0):
        raise ValueError("reference impedances must have non-zero "
                         "real part")
    scale = (2.0 * np.sqrt(np.abs(r)))[..., np.newaxis]
    zc = z0[..., np.newaxis]
    a = (v + zc * i) / scale
    b = (v - np.conj(zc) * i) / scale
    v = np.broadcast_to(v, a.shape)
    i = np.broadcast_to(i, a.shape)
    return v, i, a, b


def _matrices(ptype, z0):
    """
    Return the (input, output) rows of ptype at impedances z0.
    """
    return _DEFINITIONS[ptype](*_port_variables(z0))


def convert(x, from_type, to_type, z1=DEFAULT_Z0, z2=None):
    """
    Convert between network parameter types.

    The network is represented as the subspace of port voltages and
    currents it permits: the columns of W where ``M_x @ W = [I; X]``
    and M_x maps [v; i] to the input and output variables of the
    source type.  The target matrix is then ``out @ inv(in)`` where
    in and out are the target type's variables over W.

    Args:
        x (array_like): (..., ports, ports) parameter matrices
        from_type (str): one of s, t, u, z, y, h, g, a, b
        to_type (str): one of s, t, u, z, y, h, g, a, b, or zi for
            input impedances
        z1 (complex or array_like): reference impedances of x
        z2 (complex or array_like, optional): reference impedances of
            the result, defaulting to z1

    Returns:
        numpy.ndarray of the converted matrices, or of shape
        x.shape[:-1] for zi

    Raises:
        ValueError: bad dimensions or unknown parameter type
        numpy.linalg.LinAlgError: the result type does not exist for
            this network
    """
    from_type = from_type.lower()
    to_type = to_type.lower()
    if from_type not in _TYPES:
        raise ValueError(f"{from_type}: unknown parameter type")
    if to_type != "zi" and to_type not in _TYPES:
        raise ValueError(f"{to_type}: unknown parameter type")
    x = _check_matrix(x, (from_type, to_type))
    shape = x.shape[:-1]
    z1 = _check_z0(z1, shape)
    z2 = z1 if z2 is None else _check_z0(z2, shape)
    if to_type == "zi":
        s = convert(x, from_type, "s", z1) if from_type != "s" else x
        d = np.diagonal(s, axis1=-2, axis2=-1)
        return (d * z1 + np.conj(z1)) / (1.0 - d)
    if from_type == to_type and (from_type not in _WAVE_TYPES
                                 or np.array_equal(z1, z2)):
        return x.copy()

    ports = x.shape[-1]
    x_in, x_out = _matrices(from_type, z1)
    m = np.concatenate((x_in, x_out), axis=-2)
    eye = np.broadcast_to(np.eye(ports, dtype=np.complex128), x.shape)
    w = np.linalg.solve(m, np.concatenate((eye, x), axis=-2))
    y_in, y_out = _matrices(to_type, z2)
    y_in = y_in @ w
    y_out = y_out @ w
    # y_out @ inv(y_in), done as a left solve on the transposes
    return np.swapaxes(np.linalg.solve(np.swapaxes(y_in, -1, -2),
                                       np.swapaxes(y_out, -1, -2)),
                       -1, -2)


def _make_conversion(from_type, to_type):
    waves = from_type in _WAVE_TYPES or to_type in _WAVE_TYPES
    name = f"{from_type}to{to_type}"
    if to_type == "zi":
        target = "input impedances"
    else:
        target = f"{to_type.upper()} parameters"
    description = f"Convert {from_type.upper()} parameters to {target}."
    if from_type in _WAVE_TYPES and to_type in _WAVE_TYPES:
        def conversion(x, z1=DEFAULT_Z0, z2=None):
            return convert(x, from_type, to_type, z1, z2)
        conversion.__doc__ = description + """

    Args:
        x (array_like): (..., 2, 2) or (..., n, n) parameter matrices
        z1 (complex or array_like): reference impedances of x
        z2 (complex or array_like, optional): reference impedances of
            the result, defaulting to z1
    """
    elif waves or to_type == "zi":
        def conversion(x, z0=DEFAULT_Z0):
            return convert(x, from_type, to_type, z0)
        conversion.__doc__ = description + """

    Args:
        x (array_like): (..., n, n) parameter matrices
        z0 (complex or array_like): reference impedances
    """
    else:
        def conversion(x):
            return convert(x, from_type, to_type)
        conversion.__doc__ = description + """

    Args:
        x (array_like): (..., n, n) parameter matrices
    """
    conversion.__name__ = conversion.__qualname__ = name
    return conversion


for _from in _TYPES:
    for _to in list(_TYPES) + ["zi"]:
        if _from == _to and _from not in _WAVE_TYPES:
            continue
        globals()[f"{_from}to{_to}"] = _make_conversion(_from, _to)
        __all__.append(f"{_from}to{_to}")
del _from, _to
