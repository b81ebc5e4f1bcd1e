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
Short, open, load, through (SOLT) calibration of a simulated VNA that
drives only its first port, and correction of a two-port device
measured once forward and once with its connections reversed.

The simulated VNA returns each measurement with frequency as the
innermost index, (rows x columns x frequencies), as many instruments
do.  The calibration is saved to SOLT.vnacal and the corrected
device parameters to SOLT-dut.s2p.
"""

from math import log10, pi
import numpy as np
from matplotlib import pyplot as plt
from libvna.cal import Calset, CalType, Solver
from libvna.conv import ztos
import random_error_terms as ret

# Frequency range
F_MIN = 10.0e+6
F_MAX = 1.0e+9

# The VNA has two detectors and drives only port 1.
C_ROWS = 2
C_COLUMNS = 1
C_FREQUENCIES = 50

# Device measurements use more points than the calibration; apply
# interpolates the error terms.
M_FREQUENCIES = 100

# The device under test is an L-C low-pass divider with a cut-off
# frequency of 100 MHz.
Z0 = 50.0
WC = 2.0 * pi * 100.0e+6
L = Z0 / WC
C = 1.0 / (Z0 * WC)


def dut_parameters(f_vector):
    """
    Return the (frequencies x 2 x 2) S parameters of the device.
    """
    s = 2.0j * pi * np.asarray(f_vector)
    zl = s * L
    zc = 1.0 / (s * C)
    z = np.empty((len(f_vector), 2, 2), dtype=np.complex128)
    z[:, 0, 0] = zl + zc
    z[:, 0, 1] = z[:, 1, 0] = z[:, 1, 1] = zc
    return ztos(z, Z0)


def measure(eterms, calset, f_vector, s):
    """
    Measure a device with the flawed VNA.

    Args:
        eterms (RandomErrorTerms): the simulated VNA
        calset (Calset): calset used to hold device parameters
        f_vector: measurement frequencies
        s: 2x2 matrix of numbers or (frequencies x 2 x 2) array

    Returns:
        (2 x 1 x frequencies) complex array
    """
    if isinstance(s, np.ndarray) and s.ndim == 3:
        s = [[(f_vector, s[:, i, j]) for j in range(2)] for i in range(2)]
    m = eterms.evaluate(calset, f_vector, s)
    return np.moveaxis(m, 0, -1)


def make_calibration(eterms, sim_calset):
    """
    Solve E12 error terms from short, open, load and through
    measurements and save them to SOLT.vnacal.
    """
    calset = Calset()
    f_vector = np.logspace(log10(F_MIN), log10(F_MAX), C_FREQUENCIES)
    solver = Solver(calset, CalType.E12, C_ROWS, C_COLUMNS, f_vector)

    # Short, open and load on port 1 with port 2 terminated.
    for gamma in (-1.0, 1.0, 0.0):
        m = measure(eterms, sim_calset, f_vector, [[gamma, 0.0], [0.0, 0.0]])
        solver.add_single_reflect(None, m, gamma, 1)

    # Through between ports 1 and 2.
    m = measure(eterms, sim_calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
    solver.add_through(None, m, 1, 2)

    solver.solve()
    solver.add_to_calset("cal_2x1")
    calset.properties = {"vna": "simulated", "standards": "SOLT"}
    calset.save("SOLT.vnacal")


def apply_calibration(eterms, sim_calset):
    """
    Correct measurements of the device and return (f_vector,
    measured, expected, corrected).
    """
    calset = Calset("SOLT.vnacal")
    calibration = calset.calibrations["cal_2x1"]
    f_vector = np.logspace(log10(F_MIN), log10(F_MAX), M_FREQUENCIES)
    expected = dut_parameters(f_vector)

    # The VNA measures only S11 and S21.  With the device reversed,
    # the same detectors see S22 and S12.
    m1 = measure(eterms, sim_calset, f_vector, expected)
    m2 = measure(eterms, sim_calset, f_vector, expected[:, ::-1, ::-1])

    # Combine into a 2x2 matrix in device port order: flip m2 so that
    # S12 lands in row 1 and S22 in row 2.
    measured = np.hstack((m1, np.flipud(m2)))
    result = calibration.apply(f_vector, None, measured)
    result.format = "Sdb"
    result.save("SOLT-dut.s2p")
    return (f_vector, np.moveaxis(measured, -1, 0), expected,
            result.data_array)


def make_plots(f_vector, measured, expected, corrected):
    """
    Plot the magnitude of each S parameter in dB.
    """
    def db(x):
        return 20.0 * np.log10(np.abs(x))

    fig, axs = plt.subplots(2, 2, sharex=True)
    for row in range(2):
        for column in range(2):
            ax = axs[row, column]
            name = f"S{row + 1}{column + 1}"
            ax.semilogx(f_vector, db(measured[:, row, column]), ":",
                        color="C0", label="measured")
            ax.semilogx(f_vector, db(expected[:, row, column]), "o",
                        color="C1", markersize=2, label="expected")
            ax.semilogx(f_vector, db(corrected[:, row, column]),
                        color="C2", label="corrected")
            ax.set_title(name)
            ax.set_ylabel("dB")
            ax.set_xlim([F_MIN, F_MAX])
            ax.grid()
            ax.legend()
    for ax in axs[1]:
        ax.set_xlabel("frequency (Hz)")
    fig.tight_layout()
    plt.show()


rng = np.random.default_rng(seed=1)
eterms = ret.RandomErrorTerms(rng, CalType.E12, C_ROWS, C_COLUMNS,
                              F_MIN, F_MAX)
sim_calset = Calset()
make_calibration(eterms, sim_calset)
make_plots(*apply_calibration(eterms, sim_calset))
