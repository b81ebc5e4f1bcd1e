#!/usr/bin/python3
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
Example of "through", "reflect", "line" (TRL) calibration in TE10
error terms, where the reflect and line standards are only partially
known.  The solver finds their actual values along with the error
terms.
"""

import cmath
from math import pi, sqrt
import numpy as np
from matplotlib import pyplot as plt
from libvna.cal import Calset, CalType, Solver, UnknownParameter
import random_error_terms as ret

C = 2.9979246e+08                       # speed of light (m/s)

# Calibration frequency range and number of points
C_FMIN = 1.0e+9
C_FMAX = 8.0e+9
C_FREQUENCIES = 50

# The line is a quarter wave long at the center frequency.
FC = (C_FMIN + C_FMAX) / 2.0
ER_EFF = 8.25                           # effective permittivity
VF = 1.0 / sqrt(ER_EFF)                 # velocity factor
LINE_LENGTH = 0.25 * C * VF / FC        # meters
LINE_LOSS = 0.5                         # Np/m at 1 GHz, actual line

# The actual reflect is a slightly lossy short behind a short offset.
REFLECT_MAGNITUDE = 0.98
REFLECT_DELAY = 5.0e-12


def ideal_line(f):
    return cmath.exp(-2.0j * pi * f * LINE_LENGTH / (C * VF))


def actual_line(f):
    loss = LINE_LOSS * sqrt(f / 1.0e+9) * LINE_LENGTH
    return cmath.exp(-loss) * ideal_line(f)


def actual_reflect(f):
    return -REFLECT_MAGNITUDE * cmath.exp(-4.0j * pi * f * REFLECT_DELAY)


def make_calibration(eterms, sim_calset, f_vector):
    """
    Solve for the error terms and the unknown standards, save the
    calibration to TRL.vnacal and return the solved (reflect, line)
    parameters.
    """
    calset = Calset()
    solver = Solver(calset, CalType.TE10, 2, 2, f_vector)

    # Through
    m = eterms.evaluate(sim_calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
    solver.add_through(m, 1, 2)

    # Reflect: the same unknown standard on both ports, starting from
    # a perfect short.
    reflect = (f_vector, np.array([actual_reflect(f) for f in f_vector]))
    unknown_reflect = UnknownParameter(calset, -1.0)
    m = eterms.evaluate(sim_calset, f_vector,
                        [[reflect, 0.0], [0.0, reflect]])
    solver.add_double_reflect(m, s11=unknown_reflect, s22=unknown_reflect,
                              port1=1, port2=2)

    # Line: unknown transmission starting from the ideal line.
    line = (f_vector, np.array([actual_line(f) for f in f_vector]))
    ideal = np.array([ideal_line(f) for f in f_vector])
    unknown_line = UnknownParameter(calset, (f_vector, ideal))
    m = eterms.evaluate(sim_calset, f_vector, [[0.0, line], [line, 0.0]])
    solver.add_line(m, s=[[0.0, unknown_line], [unknown_line, 0.0]],
                    port1=1, port2=2)

    solver.solve()
    solver.add_to_calset("TE10")
    calset.save("TRL.vnacal")
    return unknown_reflect, unknown_line


def apply_calibration(eterms, sim_calset, f_vector):
    """
    Correct measurements of a random two-port and return the
    (measured, expected, corrected) arrays.
    """
    calset = Calset("TRL.vnacal")
    calibration = calset.calibrations["TE10"]
    rng = np.random.default_rng(seed=5)
    expected = 0.3 * ret.random_complex(rng, 1.0, (len(f_vector), 2, 2))
    s = [[(f_vector, expected[:, i, j]) for j in range(2)]
         for i in range(2)]
    measured = eterms.evaluate(sim_calset, f_vector, s)
    result = calibration.apply(f_vector, measured)
    return measured, expected, result.data_array


def plot_standards(f_vector, unknown_reflect, unknown_line):
    fig, (ax1, ax2) = plt.subplots(1, 2)
    reflect = [unknown_reflect.get_value(f) for f in f_vector]
    line = [unknown_line.get_value(f) for f in f_vector]
    ax1.plot(f_vector, np.abs(reflect), label="solved |Γ|")
    ax1.plot(f_vector, [abs(actual_reflect(f)) for f in f_vector], "o",
             markersize=2, label="actual |Γ|")
    ax1.set_title("reflect")
    ax2.plot(f_vector, np.angle(line, deg=True), label="solved ∠")
    ax2.plot(f_vector, [np.angle(actual_line(f), deg=True)
                        for f in f_vector], "o", markersize=2,
             label="actual ∠")
    ax2.set_title("line")
    for ax in (ax1, ax2):
        ax.set_xlabel("frequency (Hz)")
        ax.grid()
        ax.legend()
    fig.tight_layout()


def plot_correction(f_vector, measured, expected, corrected):
    fig, axs = plt.subplots(2, 2, sharex=True)
    for row in range(2):
        for column in range(2):
            ax = axs[row, column]
            ax.plot(f_vector, np.abs(measured[:, row, column]), ":",
                    label="measured")
            ax.plot(f_vector, np.abs(expected[:, row, column]), "o",
                    markersize=2, label="expected")
            ax.plot(f_vector, np.abs(corrected[:, row, column]),
                    label="corrected")
            ax.set_title(f"|S{row + 1}{column + 1}|")
            ax.grid()
            ax.legend()
    fig.tight_layout()


eterms = ret.RandomErrorTerms(np.random.default_rng(seed=2), CalType.TE10,
                              2, 2, C_FMIN, C_FMAX)
sim_calset = Calset()
f_vector = np.linspace(C_FMIN, C_FMAX, C_FREQUENCIES)
unknown_reflect, unknown_line = make_calibration(eterms, sim_calset, f_vector)
plot_standards(f_vector, unknown_reflect, unknown_line)
plot_correction(f_vector, *apply_calibration(eterms, sim_calset, f_vector))
plt.show()
