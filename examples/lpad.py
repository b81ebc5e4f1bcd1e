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
Find the S parameters and port impedances of a minimum loss L-pad
matching 75 ohms to 50 ohms.
"""

import numpy as np
from libvna.conv import stoa, stozi, ztos

Z1 = 75.0
Z2 = 50.0

# Series resistor on the 75 ohm side, shunt resistor on the 50 ohm side
r1 = np.sqrt(Z1 * (Z1 - Z2))
r2 = Z2 * np.sqrt(Z1 / (Z1 - Z2))
z = np.array([[r1 + r2, r2], [r2, r2]])
print("z:\n", z)

s = ztos(z, [Z1, Z2])
print("\ns:\n", s)

# Matched on both sides, so |s21| is the loss of the pad.
print(f"\ninsertion loss: {-20.0 * np.log10(abs(s[1, 0])):.3f} dB")

# ABCD parameters do not depend on the reference impedances.
print("\nabcd:\n", stoa(s, [Z1, Z2]))

zin = stozi(s, [Z1, Z2])
print("\nzin:\n", zin)
