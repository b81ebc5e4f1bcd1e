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
Compare the accuracy of T16 error terms solved with and without
modeling of measurement noise and calibration standard uncertainty.

Each trial simulates a VNA with random error terms, noisy detectors
and standards that deviate randomly from their nominal values, solves
the error terms, and finds the RMS difference from the actual terms.
The cumulative distributions of the two cases are plotted.
"""

import math
import sys
import matplotlib.pyplot as plt
import numpy as np
from scipy.ndimage import gaussian_filter1d
from libvna.cal import (Calset, CalType, CorrelatedParameter, MathError,
                        ScalarParameter, Solver, UnknownParameter)
import random_error_terms as ret

TRIALS = 2000
NOISE_FLOOR = 0.002
TRACKING_ERROR = 0.02
CONNECTION_ERROR = 0.02
FREQUENCY = 1.0e+9      # arbitrary test frequency

# Reflect pairs measured on ports 1 and 2, changing one side at a time.
REFLECT_SEQUENCE = (("load", "short"), ("open", "short"), ("open", "load"),
                    ("short", "load"), ("short", "open"), ("load", "open"),
                    ("load", "short"), ("open", "short"))
NOMINAL = {"short": -1.0, "open": 1.0, "load": 0.0}


def e_terms_from_t(terms):
    """
    Return (el, er, et, em) from T16 error terms, scaled so that
    et[0, 0] is one.
    """
    ts, ti, tx, tm = (terms[name][0] for name in ("ts", "ti", "tx", "tm"))
    et = np.linalg.inv(tm)
    el = ti @ et
    er = ts - ti @ et @ tx
    em = -et @ tx
    k = et[0, 0]
    return el, er * k, et / k, em


def run_trial(rng, model_errors):
    f_vector = [FREQUENCY]
    eterms = ret.RandomErrorTerms(rng, CalType.T16, 2, 2, FREQUENCY,
                                  FREQUENCY, nf_vector=[NOISE_FLOOR],
                                  tr_vector=[TRACKING_ERROR])
    calset = Calset()
    solver = Solver(calset, CalType.T16, rows=2, columns=2,
                    frequency_vector=f_vector)
    if model_errors:
        solver.set_m_error(f_vector, [NOISE_FLOOR], [TRACKING_ERROR])
        solver.et_tolerance = NOISE_FLOOR / 10.0
        solver.p_tolerance = NOISE_FLOOR / 10.0

    def actual(name):
        return ScalarParameter(calset, NOMINAL[name] + ret.random_complex(
            rng, CONNECTION_ERROR))

    def nominal(name):
        if model_errors:
            return CorrelatedParameter(calset, NOMINAL[name], f_vector,
                                       [CONNECTION_ERROR])
        return NOMINAL[name]

    # Each physical standard is connected once per pair; a change on
    # one side leaves the other side's standard in place.
    left = right = None
    for left_name, right_name in REFLECT_SEQUENCE:
        if left is None or left[0] != left_name:
            left = (left_name, actual(left_name), nominal(left_name))
        if right is None or right[0] != right_name:
            right = (right_name, actual(right_name), nominal(right_name))
        m = eterms.evaluate(calset, f_vector, [[left[1], 0.0],
                                               [0.0, right[1]]])
        solver.add_double_reflect(m, s11=left[2], s22=right[2])

    # Unknown through with imperfect terminations.
    t_actual = (rng.uniform(0.75, 1.0) *
                1j ** rng.uniform(-0.2 * math.pi, 0.2 * math.pi))
    s = [[actual("load"), t_actual], [t_actual, actual("load")]]
    m = eterms.evaluate(calset, f_vector, s)
    t = UnknownParameter(calset, 1.0)
    solver.add_line(m, s=[[nominal("load"), t], [t, nominal("load")]])

    solver.solve()
    solver.add_to_calset("trial")
    computed = e_terms_from_t(calset.calibrations["trial"].get_error_terms())

    a_el, a_er, a_et, a_em = eterms.get_eterms(0, FREQUENCY)
    k = a_et[0, 0]
    expected = (a_el, a_er * k, a_et / k, a_em)
    total = sum(np.sum(np.abs(c - e)**2) for c, e in zip(computed, expected))
    return math.sqrt(total / 15)


def run_trials(rng, model_errors):
    errors = []
    for _ in range(TRIALS):
        try:
            errors.append(run_trial(rng, model_errors))
        except MathError:
            continue
    return np.array(errors)


def smoothed_cdf(errors, bins=1000, smoothness=7):
    """
    Return (bin centers, CDF) of the errors, ignoring the worst 1%.
    """
    data = np.sort(errors)[:-max(1, len(errors) // 100)]
    hist, edges = np.histogram(data, bins=bins, density=True)
    smoothed = gaussian_filter1d(hist, sigma=smoothness)
    smoothed /= np.sum(smoothed)
    return (edges[:-1] + edges[1:]) / 2, np.cumsum(smoothed)


rng = np.random.default_rng(seed=3)
results = {"No": run_trials(rng, False), "Yes": run_trials(rng, True)}

print("Error Modeling   Mean    25 Pctile  Median   75 Pctile Success Rate")
print("-------------- --------- --------- --------- --------- ------------")
for label, errors in results.items():
    rate = len(errors) / TRIALS
    if rate < 0.9:
        print(f"Invalid result: success rate with error modeling "
              f"{label.lower()} is only {rate * 100:5.1f}%.")
        sys.exit(1)
    p25, median, p75 = np.percentile(errors, [25, 50, 75])
    print(f"      {label:<3s}      {np.mean(errors):9.5f} {p25:9.5f} "
          f"{median:9.5f} {p75:9.5f} {rate * 100:11.2f}%")

plt.figure(figsize=(10, 6))
for label, name in (("Yes", "With Error Modeling"),
                    ("No", "Without Error Modeling")):
    centers, cdf = smoothed_cdf(results[label])
    plt.plot(centers, cdf, label=name)
plt.xlim(left=0)
plt.ylim(0, 1)
plt.grid(True)
plt.xlabel("RMS Error of Calibration Error Terms")
plt.ylabel("Cumulative Probability")
plt.title("Cumulative Probability Distribution")
plt.legend()
plt.savefig("error-modeling-cdfs.png")
plt.show()
