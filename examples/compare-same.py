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
Exit with status 0 if two network parameter files hold the same S
parameters within tolerance, otherwise print the difference and exit
with status 1.  The files may be in different formats.
"""

import argparse
import sys
import numpy as np
from libvna.data import NPData, PType
from libvna.errors import VNAError


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("-a", "--atol", type=float, default=1.0e-4,
                        help="absolute tolerance")
    parser.add_argument("-r", "--rtol", type=float, default=1.0e-4,
                        help="relative tolerance")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="print the largest difference")
    parser.add_argument("file1")
    parser.add_argument("file2")
    args = parser.parse_args()

    try:
        npd1 = NPData(PType.S, filename=args.file1)
        npd2 = NPData(PType.S, filename=args.file2)
    except VNAError as e:
        print(f"{parser.prog}: {e}", file=sys.stderr)
        sys.exit(2)

    shape1 = npd1.data_array.shape
    shape2 = npd2.data_array.shape
    if shape1 != shape2:
        print(f"shapes differ: {shape1} != {shape2}")
        sys.exit(1)
    if not np.allclose(npd1.frequency_vector, npd2.frequency_vector,
                       rtol=args.rtol, atol=args.atol):
        print("frequencies differ")
        sys.exit(1)
    difference = np.max(np.abs(npd1.data_array - npd2.data_array),
                        initial=0.0)
    if args.verbose:
        print(f"max difference: {difference:e}")
    if not np.allclose(npd1.data_array, npd2.data_array,
                       rtol=args.rtol, atol=args.atol):
        print(f"data differ by up to {difference:e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
