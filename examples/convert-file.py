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
Convert a network parameter file between Touchstone 1, Touchstone 2
and NPD formats, optionally changing the parameter format.
"""

import argparse
import sys
from libvna.data import FileType, NPData
from libvna.errors import VNAError

DESCRIPTION = """
format is a comma-separated list of:
  s[ri|ma|dB]  scattering parameters
  t[ri|ma|dB]  scattering-transfer parameters
  u[ri|ma|dB]  inverse scattering-transfer parameters
  z[ri|ma]     impedance parameters
  y[ri|ma]     admittance parameters
  h[ri|ma]     hybrid parameters
  g[ri|ma]     inverse-hybrid parameters
  a[ri|ma]     ABCD parameters
  b[ri|ma]     inverse ABCD parameters
  Zin[ri|ma]   input impedances
  PRC          Zin as parallel RC
  PRL          Zin as parallel RL
  SRC          Zin as series RC
  SRL          Zin as series RL
  IL           insertion loss
  RL           return loss
  VSWR         voltage standing wave ratio

coordinates:
  ri  real, imaginary
  ma  magnitude, angle
  dB  decibels, angle

Specifiers are case-insensitive.  Only a single matrix type in ri, ma
or dB may be written to Touchstone files.

file types:
  Touchstone v1:          .s1p, .s2p, .s3p, .s4p
  Touchstone v2:          .ts
  Network Parameter Data: .npd
"""


def main():
    parser = argparse.ArgumentParser(
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("-f", "--format",
                        help="parameter format of the output file")
    parser.add_argument("-p", "--precision", type=int,
                        help="significant digits of data values; "
                             "16 or more writes exact values")
    parser.add_argument("input_file", metavar="input-file")
    parser.add_argument("output_file", metavar="output-file")
    args = parser.parse_args()

    try:
        npd = NPData(filename=args.input_file)
        npd.filetype = FileType.AUTO
        if args.format:
            npd.format = args.format
        if args.precision is not None:
            npd.dprecision = args.precision
        npd.save(args.output_file)
    except VNAError as e:
        print(f"{parser.prog}: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
