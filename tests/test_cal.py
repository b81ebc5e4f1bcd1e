#!/usr/bin/python3
"""
Test the libvna.cal module.
"""
from libvna.cal import (DEFAULT_PVALUE_LIMIT, CalType, Calset,
                        CorrelatedParameter, ErrorCategory,
                        MathError, Solver, UnknownParameter, UsageError,
                        VectorParameter)
from libvna.conv import ytos, ztos
import math
import numpy as np
import os
import sys
import tempfile
import unittest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'examples'))
import random_error_terms as ret

rng = np.random.default_rng(seed=7)

fmin = 1.0e+9
fmax = 10.0e+9
points = 10
f_vector = np.linspace(fmin, fmax, num=points)


def lc_filter(f_vector, high_pass=False):
    """
    Return the S parameters of an LC divider as (frequencies x 2 x 2).
    """
    l = 2.5e-9
    c = 1.0e-12
    jω = 2.0j * math.pi * np.asarray(f_vector)
    zl = jω * l
    zc = 1.0 / (jω * c)
    z1, z2 = (zc, zl) if high_pass else (zl, zc)
    z = np.empty((len(jω), 2, 2), dtype=complex)
    z[:, 0, 0] = z1 + z2
    z[:, 0, 1] = z2
    z[:, 1, 0] = z2
    z[:, 1, 1] = z2
    return ztos(z)


def rlc_triangle(f_vector):
    """
    Return the S parameters of a 3-port DUT: capacitor between ports 1
    and 2, inductor between ports 2 and 3, resistor between ports 3
    and 1.
    """
    l = 2.5e-9
    c = 1.0e-12
    g = 1.0 / 50.0
    expected = np.empty((len(f_vector), 3, 3), dtype=complex)
    for findex, f in enumerate(f_vector):
        jω = 2.0j * math.pi * f
        yl = 1.0 / (jω * l)
        yc = jω * c
        expected[findex] = ytos([[yc + g, -yc, -g],
                                 [-yc, yc + yl, -yl],
                                 [-g, -yl, yl + g]])
    return expected


def vector_matrix(calset, f_vector, s):
    """
    Turn (frequencies x n x n) values into an n x n matrix of
    VectorParameters.
    """
    n = s.shape[1]
    result = np.empty((n, n), dtype=object)
    for i in range(n):
        for j in range(n):
            result[i, j] = VectorParameter(calset, f_vector, s[:, i, j])
    return result


def delay_factor(delay, f_vector=f_vector):
    return np.exp(-2.0j * math.pi * delay * f_vector)


def add_reflect_pairs(solver, eterms, calset):
    """
    Add short-open, match-short and open-match double reflects and a
    through, measured in full.
    """
    for s11, s22 in ((-1.0, 1.0), (0.0, -1.0), (1.0, 0.0)):
        m = eterms.evaluate(calset, f_vector, [[s11, 0.0], [0.0, s22]])
        solver.add_double_reflect(m, s11, s22)
    m = eterms.evaluate(calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
    solver.add_through(m)


class TestSolve(unittest.TestCase):
    def test_SOLT(self):
        eterms = ret.RandomErrorTerms(rng, CalType.E12, 2, 1, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.E12, rows=2, columns=1,
                        frequency_vector=f_vector)
        delay_short   = rng.normal() / fmax
        delay_open    = rng.normal() / fmax
        delay_match   = rng.normal() / fmax
        delay_through = rng.normal() / fmax
        delay_dut1    = rng.normal() / fmax
        delay_dut2    = rng.normal() / fmax

        # Short, open and match, each behind its own offset.
        for gamma, delay in ((-1.0, delay_short), (1.0, delay_open),
                             (0.0, delay_match)):
            s11 = VectorParameter(calset, f_vector,
                                  gamma * delay_factor(2.0 * delay))
            m = eterms.evaluate(calset, f_vector, [[s11, 0.0], [0.0, 0.0]])
            solver.add_single_reflect(m, gamma, delay=delay)

        # Through with delay.
        s21 = VectorParameter(calset, f_vector, delay_factor(delay_through))
        m = eterms.evaluate(calset, f_vector, [[0.0, s21], [s21, 0.0]])
        solver.add_through(m, delay=delay_through)

        solver.solve()
        solver.add_to_calset('cal')

        # Measure the DUT forward and reversed, then combine into a
        # 2x2 matrix in DUT port order.
        expected = lc_filter(f_vector)
        r1 = delay_factor(delay_dut1)
        r2 = delay_factor(delay_dut2)
        delayed = expected.copy()
        delayed[:, 0, 0] *= r1 * r1
        delayed[:, 0, 1] *= r1 * r2
        delayed[:, 1, 0] *= r1 * r2
        delayed[:, 1, 1] *= r2 * r2
        s = vector_matrix(calset, f_vector, delayed)
        m1 = eterms.evaluate(calset, f_vector, s)
        m2 = eterms.evaluate(calset, f_vector, np.flip(s, (0, 1)))
        m = np.concatenate((m1, np.flip(m2, axis=1)), axis=2)
        calibration = calset.calibrations[0]
        result = calibration.apply(f_vector, m,
                                   delay_vector=[delay_dut1, delay_dut2])
        self.assertTrue(np.allclose(result.data_array, expected,
                                    rtol=1.0e-5, atol=1.0e-5))

        # Measurements with frequency as the innermost index.
        result = calibration.apply(f_vector, np.moveaxis(m, 0, -1),
                                   delay_vector=[delay_dut1, delay_dut2])
        self.assertTrue(np.allclose(result.data_array, expected,
                                    rtol=1.0e-5, atol=1.0e-5))

    def test_TE10(self):
        eterms = ret.RandomErrorTerms(rng, CalType.TE10, 2, 2, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.TE10, rows=2, columns=2,
                        frequency_vector=f_vector)
        delay_short   = rng.normal() / fmax
        delay_open    = rng.normal() / fmax
        delay_match   = rng.normal() / fmax
        delay_through = rng.normal() / fmax
        delay_dut1    = rng.normal() / fmax
        delay_dut2    = rng.normal() / fmax

        # Short-open standard.
        s11 = VectorParameter(calset, f_vector,
                              -delay_factor(2.0 * delay_short))
        s22 = VectorParameter(calset, f_vector,
                              delay_factor(2.0 * delay_open))
        m = eterms.evaluate(calset, f_vector, [[s11, 0.0], [0.0, s22]])
        solver.add_double_reflect(m, -1.0, 1.0,
                                  delay1=delay_short, delay2=delay_open)

        # Match-short standard.
        s22 = VectorParameter(calset, f_vector,
                              -delay_factor(2.0 * delay_short))
        m = eterms.evaluate(calset, f_vector, [[0.0, 0.0], [0.0, s22]])
        solver.add_double_reflect(m, 0.0, -1.0,
                                  delay1=delay_match, delay2=delay_short)

        # Through standard, given as a line.
        s12 = VectorParameter(calset, f_vector, delay_factor(delay_through))
        m = eterms.evaluate(calset, f_vector, [[0.0, s12], [s12, 0.0]])
        solver.add_line(m, [[0.0, 1.0], [1.0, 0.0]], delay2=delay_through)

        solver.solve()
        solver.add_to_calset('cal')

        expected = lc_filter(f_vector, high_pass=True)
        r1 = delay_factor(delay_dut1)
        r2 = delay_factor(delay_dut2)
        delayed = expected * np.stack([
            np.stack([r1 * r1, r1 * r2], axis=-1),
            np.stack([r1 * r2, r2 * r2], axis=-1)], axis=-2)
        m = eterms.evaluate(calset, f_vector,
                            vector_matrix(calset, f_vector, delayed))
        calibration = calset.calibrations['cal']
        result = calibration.apply(f_vector, m,
                                   delay_vector=[delay_dut1, delay_dut2])
        self.assertTrue(np.allclose(result.data_array, expected,
                                    rtol=1.0e-5, atol=1.0e-5))

    def test_square_2x2(self):
        expected = lc_filter(f_vector)
        for ctype in (CalType.T8, CalType.U8, CalType.TE10, CalType.UE10,
                      CalType.UE14, CalType.E12):
            with self.subTest(ctype=ctype.name):
                eterms = ret.RandomErrorTerms(rng, ctype, 2, 2, fmin, fmax)
                calset = Calset()
                solver = Solver(calset, ctype, 2, 2, f_vector)
                add_reflect_pairs(solver, eterms, calset)
                solver.solve()
                solver.add_to_calset(ctype.name)
                m = eterms.evaluate(calset, f_vector,
                                    vector_matrix(calset, f_vector, expected))
                result = calset.calibrations[ctype.name].apply(f_vector, m)
                self.assertEqual(result.ports, 2)
                self.assertTrue(np.allclose(result.data_array, expected,
                                            rtol=1.0e-5, atol=1.0e-5))

    def test_rectangular(self):
        expected = lc_filter(f_vector)
        for ctype, rows, columns in ((CalType.T8, 1, 2),
                                     (CalType.TE10, 1, 2),
                                     (CalType.U8, 2, 1),
                                     (CalType.UE10, 2, 1),
                                     (CalType.UE14, 2, 1)):
            with self.subTest(ctype=ctype.name, rows=rows, columns=columns):
                eterms = ret.RandomErrorTerms(rng, ctype, rows, columns,
                                              fmin, fmax)
                calset = Calset()
                solver = Solver(calset, ctype, rows, columns, f_vector)
                for gamma in (-1.0, 1.0, 0.0):
                    m = eterms.evaluate(calset, f_vector,
                                        [[gamma, 0.0], [0.0, 0.0]])
                    solver.add_single_reflect(m, gamma)
                m = eterms.evaluate(calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
                solver.add_through(m)
                solver.solve()
                solver.add_to_calset('cal')
                calibration = calset.calibrations['cal']

                s = vector_matrix(calset, f_vector, expected)
                m1 = eterms.evaluate(calset, f_vector, s)
                m2 = eterms.evaluate(calset, f_vector, np.flip(s, (0, 1)))
                if rows == 1:
                    m = np.concatenate((m1, np.flip(m2, axis=2)), axis=1)
                else:
                    m = np.concatenate((m1, np.flip(m2, axis=1)), axis=2)
                result = calibration.apply(f_vector, m)
                self.assertTrue(np.allclose(result.data_array, expected,
                                            rtol=1.0e-5, atol=1.0e-5))

                # One direction alone cannot determine all of S.
                with self.assertRaises(UsageError):
                    calibration.apply(f_vector, m1)

    def test_16_term_3x3(self):
        for ctype in (CalType.T16, CalType.U16):
            with self.subTest(ctype=ctype.name):
                eterms = ret.RandomErrorTerms(rng, ctype, 3, 3, fmin, fmax)
                calset = Calset()
                solver = Solver(calset, ctype, rows=3, columns=3,
                                frequency_vector=f_vector)
                for _ in range(5):
                    delays = rng.normal(size=3) / fmax
                    s_matrix = ret.random_complex(rng, 1.0, (3, 3))
                    s_delayed = np.empty((3, 3), dtype=object)
                    for i in range(3):
                        for j in range(3):
                            s_delayed[i, j] = VectorParameter(
                                calset, f_vector, s_matrix[i, j]
                                * delay_factor(delays[i] + delays[j]))
                    m = eterms.evaluate(calset, f_vector, s_delayed)
                    solver.add_mapped_matrix(m, s_matrix,
                                             port_map=[1, 2, 3],
                                             delay_vector=list(delays))
                solver.solve()
                solver.add_to_calset('cal')

                expected = rlc_triangle(f_vector)
                m = eterms.evaluate(calset, f_vector,
                                    vector_matrix(calset, f_vector, expected))
                result = calset.calibrations[0].apply(f_vector, m)
                self.assertTrue(np.allclose(result.data_array, expected,
                                            rtol=1.0e-5, atol=1.0e-5))

    def test_16_term_2x2(self):
        """
        Each single reflect is measured in full with the other port
        terminated in an unknown load.
        """
        expected = lc_filter(f_vector)
        load = 0.3 + 0.2j
        for ctype in (CalType.T16, CalType.U16):
            with self.subTest(ctype=ctype.name):
                eterms = ret.RandomErrorTerms(rng, ctype, 2, 2, fmin, fmax)
                calset = Calset()
                solver = Solver(calset, ctype, 2, 2, f_vector)
                for gamma in (-1.0, 1.0, 0.0):
                    m = eterms.evaluate(calset, f_vector,
                                        [[gamma, 0.0], [0.0, load]])
                    solver.add_single_reflect(m, s11=gamma, port=1)
                    m = eterms.evaluate(calset, f_vector,
                                        [[load, 0.0], [0.0, gamma]])
                    solver.add_single_reflect(m, s11=gamma, port=2)
                m = eterms.evaluate(calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
                solver.add_through(m, 1, 2)
                line = [[0.2, 0.7j], [0.7j, 0.2]]
                m = eterms.evaluate(calset, f_vector, line)
                solver.add_line(m, line)
                solver.solve()
                solver.add_to_calset('cal')
                m = eterms.evaluate(calset, f_vector,
                                    vector_matrix(calset, f_vector, expected))
                result = calset.calibrations[0].apply(f_vector, m)
                self.assertTrue(np.allclose(result.data_array, expected,
                                            rtol=1.0e-5, atol=1.0e-5))

    def test_square_1x1(self):
        dut = 0.3 - 0.4j
        for ctype in (CalType.T8, CalType.U8, CalType.TE10, CalType.UE10,
                      CalType.UE14, CalType.E12):
            with self.subTest(ctype=ctype.name):
                eterms = ret.RandomErrorTerms(rng, ctype, 1, 1, fmin, fmax)
                calset = Calset()
                solver = Solver(calset, ctype, 1, 1, f_vector)
                for gamma in (-1.0, 1.0, 0.0):
                    m = eterms.evaluate(calset, f_vector, [[gamma]])
                    solver.add_single_reflect(m, gamma)
                solver.solve()
                solver.add_to_calset('cal')
                m = eterms.evaluate(calset, f_vector, [[dut]])
                result = calset.calibrations[0].apply(f_vector, m)
                self.assertEqual(result.ports, 1)
                self.assertTrue(np.allclose(result.data_array[:, 0, 0], dut,
                                            rtol=1.0e-5, atol=1.0e-5))

    def test_square_4x4(self):
        # Reflects on every port at once, the three pairings of throughs
        # and two arbitrary known standards, all measured in full.
        permutations = ([1, 0, 3, 2], [2, 3, 0, 1], [3, 2, 1, 0])
        standards = [np.diag(gammas) for gammas in ((-1.0, 1.0, 0.0, -1.0),
                                                     (1.0, 0.0, -1.0, 1.0),
                                                     (0.0, -1.0, 1.0, 0.0))]
        standards += [np.eye(4)[permutation] for permutation in permutations]
        standards += [ret.random_complex(rng, 0.5, (4, 4)) for _ in range(2)]
        dut = ret.random_complex(rng, 0.3, (4, 4))
        for ctype in (CalType.T8, CalType.U8, CalType.TE10, CalType.UE14):
            with self.subTest(ctype=ctype.name):
                eterms = ret.RandomErrorTerms(rng, ctype, 4, 4, fmin, fmax)
                calset = Calset()
                solver = Solver(calset, ctype, 4, 4, f_vector)
                for s in standards:
                    m = eterms.evaluate(calset, f_vector, s)
                    solver.add_mapped_matrix(m, s, port_map=[1, 2, 3, 4])
                solver.solve()
                solver.add_to_calset('cal')
                m = eterms.evaluate(calset, f_vector, dut)
                result = calset.calibrations[0].apply(f_vector, m)
                self.assertEqual(result.ports, 4)
                self.assertTrue(np.allclose(result.data_array, dut,
                                            rtol=1.0e-5, atol=1.0e-5))

    def test_abbreviated_3x3(self):
        """
        Abbreviated measurements list their rows and columns in
        ascending port order, whatever order the ports are given in.
        """
        eterms = ret.RandomErrorTerms(rng, CalType.T8, 3, 3, fmin, fmax)
        calset = Calset()
        full = Solver(calset, CalType.T8, 3, 3, f_vector)
        abbreviated = Solver(calset, CalType.T8, 3, 3, f_vector)
        for (port1, port2), (s11, s22) in (((3, 1), (-1.0, 1.0)),
                                           ((3, 1), (0.0, -1.0)),
                                           ((3, 1), (1.0, 0.0)),
                                           ((2, 3), (-1.0, 1.0)),
                                           ((2, 3), (0.0, -1.0)),
                                           ((2, 3), (1.0, 0.0))):
            s = np.zeros((3, 3), dtype=object)
            s[port1 - 1, port1 - 1] = s11
            s[port2 - 1, port2 - 1] = s22
            m = eterms.evaluate(calset, f_vector, s)
            full.add_double_reflect(m, s11=s11, s22=s22,
                                    port1=port1, port2=port2)
            ports = sorted((port1 - 1, port2 - 1))
            abbreviated.add_double_reflect(m[:, ports][:, :, ports],
                                           s11=s11, s22=s22,
                                           port1=port1, port2=port2)
        for port1, port2 in ((3, 1), (2, 3)):
            s = np.zeros((3, 3), dtype=object)
            s[port1 - 1, port2 - 1] = s[port2 - 1, port1 - 1] = 1.0
            m = eterms.evaluate(calset, f_vector, s)
            full.add_through(m, port1, port2)
            ports = sorted((port1 - 1, port2 - 1))
            abbreviated.add_through(m[:, ports][:, :, ports], port1, port2)
        for name, solver in (("full", full), ("abbreviated", abbreviated)):
            solver.solve()
            solver.add_to_calset(name)
        expected = calset.calibrations["full"].get_error_terms()
        result = calset.calibrations["abbreviated"].get_error_terms()
        for name in ("ts", "ti", "tx", "tm"):
            self.assertTrue(np.allclose(result[name], expected[name]), name)

        # A matrix in the order the ports were given is a different
        # measurement.
        solver = Solver(calset, CalType.T8, 3, 3, f_vector)
        with self.assertRaises(UsageError):
            solver.add_through(np.zeros((points, 3, 2)), 3, 1)

    def test_ab(self):
        expected = lc_filter(f_vector)
        for ctype in (CalType.TE10, CalType.UE14):
            with self.subTest(ctype=ctype.name):
                eterms = ret.RandomErrorTerms(rng, ctype, 2, 2, fmin, fmax)
                calset = Calset()
                solver = Solver(calset, ctype, 2, 2, f_vector)
                for s11, s22 in ((-1.0, 1.0), (0.0, -1.0), (1.0, 0.0)):
                    a, b = eterms.evaluate(calset, f_vector,
                                           [[s11, 0.0], [0.0, s22]], ab=True)
                    solver.add_double_reflect(a, b, s11, s22)
                a, b = eterms.evaluate(calset, f_vector,
                                       [[0.0, 1.0], [1.0, 0.0]], ab=True)
                solver.add_through(a, b, 1, 2)
                solver.solve()
                solver.add_to_calset('cal')
                a, b = eterms.evaluate(
                    calset, f_vector,
                    vector_matrix(calset, f_vector, expected), ab=True)
                result = calset.calibrations[0].apply(f_vector, a, b)
                self.assertTrue(np.allclose(result.data_array, expected,
                                            rtol=1.0e-5, atol=1.0e-5))

    def test_frequency_last(self):
        eterms = ret.RandomErrorTerms(rng, CalType.E12, 2, 1, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.E12, 2, 1, f_vector)
        for gamma in (-1.0, 1.0, 0.0):
            m = eterms.evaluate(calset, f_vector, [[gamma, 0.0], [0.0, 0.0]])
            self.assertEqual(np.moveaxis(m, 0, -1).shape, (2, 1, points))
            solver.add_single_reflect(np.moveaxis(m, 0, -1), gamma)
        m = eterms.evaluate(calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
        solver.add_through(np.moveaxis(m, 0, -1))
        solver.solve()
        solver.add_to_calset('cal')
        self.assertEqual(len(calset.calibrations), 1)


class TestCorrection(unittest.TestCase):
    def _t8_calibration(self):
        eterms = ret.RandomErrorTerms(rng, CalType.T8, 2, 2, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.T8, 2, 2, f_vector)
        add_reflect_pairs(solver, eterms, calset)
        solver.solve()
        solver.add_to_calset('cal')
        return eterms, calset, calset.calibrations['cal']

    def test_three_port_dut(self):
        """
        A 3-port DUT measured two ports at a time, the third port
        terminated in the reference impedance.
        """
        eterms, calset, calibration = self._t8_calibration()
        expected = rlc_triangle(f_vector)
        correction = calibration.apply_begin(f_vector, 3)
        self.assertEqual(correction.ports, 3)
        for port_map in ([1, 2], [1, 3], [3, 2]):
            ports = [port - 1 for port in port_map]
            s = vector_matrix(calset, f_vector,
                              expected[:, ports][:, :, ports])
            m = eterms.evaluate(calset, f_vector, s)
            correction.add_matrix(m, port_map=port_map)
        result = correction.get_data()
        self.assertEqual(result.ports, 3)
        self.assertTrue(np.allclose(result.data_array, expected,
                                    rtol=1.0e-5, atol=1.0e-5))

        # One connection leaves S13, S23, S31, S32 and S33 unknown.
        correction = calibration.apply_begin(f_vector, 3)
        s = vector_matrix(calset, f_vector, expected[:, :2, :2])
        correction.add_matrix(eterms.evaluate(calset, f_vector, s))
        with self.assertRaises(UsageError):
            correction.get_data()

    def test_one_port_dut(self):
        eterms, calset, calibration = self._t8_calibration()
        dut = 0.25 + 0.5j
        m = eterms.evaluate(calset, f_vector, [[dut, 0.0], [0.0, 0.0]])
        correction = calibration.apply_begin(f_vector, 1)
        correction.add_matrix(m)
        result = correction.get_data()
        self.assertEqual(result.ports, 1)
        self.assertTrue(np.allclose(result.data_array[:, 0, 0], dut,
                                    rtol=1.0e-5, atol=1.0e-5))

        # The same measurement with the DUT given explicitly on VNA
        # port 2.
        m = eterms.evaluate(calset, f_vector, [[0.0, 0.0], [0.0, dut]])
        correction = calibration.apply_begin(f_vector, 1)
        correction.add_matrix(m, port_map=[None, 1])
        result = correction.get_data()
        self.assertTrue(np.allclose(result.data_array[:, 0, 0], dut,
                                    rtol=1.0e-5, atol=1.0e-5))

    def test_columns(self):
        eterms = ret.RandomErrorTerms(rng, CalType.E12, 2, 1, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.E12, 2, 1, f_vector)
        for gamma in (-1.0, 1.0, 0.0):
            m = eterms.evaluate(calset, f_vector, [[gamma, 0.0], [0.0, 0.0]])
            solver.add_single_reflect(m, gamma)
        m = eterms.evaluate(calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
        solver.add_through(m)
        solver.solve()
        solver.add_to_calset('cal')
        calibration = calset.calibrations['cal']

        # Forward, then reversed with DUT port 2 on VNA port 1.
        expected = lc_filter(f_vector)
        s = vector_matrix(calset, f_vector, expected)
        m1 = eterms.evaluate(calset, f_vector, s)
        m2 = eterms.evaluate(calset, f_vector, np.flip(s, (0, 1)))
        correction = calibration.apply_begin(f_vector)
        correction.add_column(0, m1[:, :, 0])
        with self.assertRaises(UsageError):
            correction.get_data()
        correction.add_column(0, m2[:, :, 0], port_map=[2, 1])
        result = correction.get_data()
        self.assertTrue(np.allclose(result.data_array, expected,
                                    rtol=1.0e-5, atol=1.0e-5))

        with self.assertRaises(UsageError):
            correction.add_row(0, m1[:, :, 0])
        with self.assertRaises(UsageError):
            correction.add_column(1, m1[:, :, 0])
        with self.assertRaises(UsageError):
            correction.add_column(0, m1[:, :1, 0])

    def test_bad_port_map(self):
        _, _, calibration = self._t8_calibration()
        m = np.zeros((points, 2, 2), dtype=complex)
        correction = calibration.apply_begin(f_vector, 3)
        for port_map in ([1, 4], [2, 2], [1], [0, 1], [1.0, 2]):
            with self.subTest(port_map=port_map):
                with self.assertRaises(UsageError):
                    correction.add_matrix(m, port_map=port_map)
        with self.assertRaises(UsageError):
            calibration.apply_begin(f_vector, 0)
        with self.assertRaises(UsageError):
            calibration.apply_begin(f_vector[::-1])
        with self.assertRaises(UsageError):
            calibration.apply_begin(f_vector, 3, delay_vector=[0.0, 0.0])


class TestUnknownParameters(unittest.TestCase):
    def test_TRL(self):
        f_trl = np.linspace(2.0e+9, 7.0e+9, num=points)
        eterms = ret.RandomErrorTerms(rng, CalType.TE10, 2, 2,
                                      f_trl[0], f_trl[-1])
        calset = Calset()
        solver = Solver(calset, CalType.TE10, 2, 2, f_trl)

        # Through.
        m = eterms.evaluate(calset, f_trl, [[0.0, 1.0], [1.0, 0.0]])
        solver.add_through(m)

        # Reflect: a poor short, the same on both ports.
        actual_reflect = -0.95 + 0.05j
        reflect = UnknownParameter(calset, -1.0)
        m = eterms.evaluate(calset, f_trl,
                            [[actual_reflect, 0.0], [0.0, actual_reflect]])
        solver.add_double_reflect(m, reflect, reflect)

        # Line: nominally a quarter wave at 4.5 GHz, with some loss and
        # a length error.
        ideal = np.exp(-0.5j * math.pi * f_trl / 4.5e+9)
        actual_line = 0.98 * np.exp(-0.55j * math.pi * f_trl / 4.5e+9)
        line = UnknownParameter(calset, (f_trl, ideal))
        l = VectorParameter(calset, f_trl, actual_line)
        m = eterms.evaluate(calset, f_trl, [[0.0, l], [l, 0.0]])
        solver.add_line(m, [[0.0, line], [line, 0.0]])

        solver.solve()
        solver.add_to_calset('TRL')
        self.assertTrue(reflect.solved)
        self.assertTrue(np.allclose(reflect.get_value(f_trl), actual_reflect,
                                    atol=1.0e-6))
        self.assertTrue(np.allclose(line.get_value(f_trl), actual_line,
                                    atol=1.0e-6))

        expected = lc_filter(f_trl)
        m = eterms.evaluate(calset, f_trl,
                            vector_matrix(calset, f_trl, expected))
        result = calset.calibrations['TRL'].apply(f_trl, m)
        self.assertTrue(np.allclose(result.data_array, expected,
                                    rtol=1.0e-5, atol=1.0e-5))

    def test_correlated(self):
        eterms = ret.RandomErrorTerms(rng, CalType.T8, 2, 2, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.T8, 2, 2, f_vector)

        # The open is known only approximately.
        actual_open = 0.99 + 0.01j
        open_ = CorrelatedParameter(calset, 1.0, None, [1.0e+3])
        for s11, s22, p11, p22 in ((-1.0, actual_open, -1.0, open_),
                                   (0.0, -1.0, 0.0, -1.0),
                                   (actual_open, 0.0, open_, 0.0)):
            m = eterms.evaluate(calset, f_vector, [[s11, 0.0], [0.0, s22]])
            solver.add_double_reflect(m, p11, p22)
        m = eterms.evaluate(calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
        solver.add_through(m)
        solver.solve()
        self.assertTrue(np.allclose(open_.get_value(f_vector), actual_open,
                                    atol=1.0e-3))
        self.assertEqual(open_.get_sigma(fmin), 1.0e+3)

    def test_perfect_start(self):
        """
        A solve that starts at the answer converges on the first
        iteration.
        """
        calset = Calset()
        solver = Solver(calset, CalType.T8, 2, 2, f_vector)
        solver.iteration_limit = 1
        reflect = UnknownParameter(calset, -1.0)
        for s11, s22, p11 in ((-1.0, 1.0, reflect), (0.0, -1.0, 0.0),
                              (1.0, 0.0, 1.0)):
            m = np.empty((points, 2, 2), dtype=complex)
            m[:] = [[s11, 0.0], [0.0, s22]]
            solver.add_double_reflect(m, p11, s22)
        m = np.empty((points, 2, 2), dtype=complex)
        m[:] = [[0.0, 1.0], [1.0, 0.0]]
        solver.add_through(m)
        solver.solve()
        self.assertTrue(np.allclose(reflect.get_value(f_vector), -1.0))

    def test_repeatable(self):
        eterms = ret.RandomErrorTerms(rng, CalType.TE10, 2, 2, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.TE10, 2, 2, f_vector)
        reflect = UnknownParameter(calset, -1.0)
        actual_reflect = -0.9 + 0.1j
        for s11, s22, p11, p22 in ((actual_reflect, 1.0, reflect, 1.0),
                                   (0.0, actual_reflect, 0.0, reflect),
                                   (1.0, 0.0, 1.0, 0.0)):
            m = eterms.evaluate(calset, f_vector, [[s11, 0.0], [0.0, s22]])
            solver.add_double_reflect(m, p11, p22)
        m = eterms.evaluate(calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
        solver.add_through(m)
        solver.solve()
        solver.add_to_calset('first')
        solver.solve()
        solver.add_to_calset('second')
        first = calset.calibrations['first'].get_error_terms()
        second = calset.calibrations['second'].get_error_terms()
        self.assertEqual(first.keys(), second.keys())
        for name in first:
            self.assertTrue(np.array_equal(first[name], second[name],
                                           equal_nan=True), name)

    def test_solver_holds(self):
        """
        A parameter deleted while a solver uses it stays valid until
        the solver is closed.
        """
        calset = Calset()
        reflect = UnknownParameter(calset, -1.0)
        index = reflect.index
        with Solver(calset, CalType.E12, 1, 1, f_vector) as solver:
            solver.add_single_reflect(np.zeros((points, 1, 1)), reflect)
            reflect.delete()
            self.assertEqual(reflect.get_value(fmin), -1.0)
            other = VectorParameter(calset, f_vector, np.zeros(points))
            self.assertNotEqual(other.index, index)
        other = VectorParameter(calset, f_vector, np.zeros(points))
        self.assertEqual(other.index, index)


class TestMeasurementError(unittest.TestCase):
    def _solver(self, noise):
        eterms = ret.RandomErrorTerms(rng, CalType.T8, 2, 2, fmin, fmax,
                                      nf_vector=[noise])
        calset = Calset()
        solver = Solver(calset, CalType.T8, 2, 2, f_vector)
        add_reflect_pairs(solver, eterms, calset)
        return solver

    def test_pvalue(self):
        solver = self._solver(1.0e-5)
        solver.set_m_error(None, [1.0e-5])
        self.assertEqual(solver.pvalue_limit, DEFAULT_PVALUE_LIMIT)
        solver.solve()
        pvalues = solver.pvalue_vector
        self.assertEqual(pvalues.shape, (points,))
        self.assertTrue(np.all((pvalues >= DEFAULT_PVALUE_LIMIT)
                               & (pvalues <= 1.0)))

    def test_failed_solve_clears_result(self):
        solver = self._solver(1.0e-5)
        solver.set_m_error(None, [1.0e-5])
        solver.solve()
        solver.pvalue_limit = 1.0
        with self.assertRaises(MathError):
            solver.solve()
        with self.assertRaises(UsageError):
            solver.add_to_calset('cal')

    def test_setting_clears_result(self):
        for name, value in (('et_tolerance', 1.0e-8),
                            ('p_tolerance', 1.0e-8),
                            ('iteration_limit', 50),
                            ('pvalue_limit', 0.01),
                            ('z0', 75.0)):
            with self.subTest(name=name):
                solver = self._solver(1.0e-5)
                solver.solve()
                setattr(solver, name, value)
                with self.assertRaises(UsageError):
                    solver.add_to_calset('cal')
                solver.solve()
                self.assertEqual(solver.add_to_calset('cal'), 0)

    def test_no_error_model(self):
        solver = self._solver(1.0e-5)
        solver.solve()
        self.assertIsNone(solver.pvalue_vector)

    def test_pvalue_rejected(self):
        # The noise is far larger than the model admits.
        solver = self._solver(1.0e-3)
        solver.set_m_error([fmin, fmax], [1.0e-12, 1.0e-12])
        with self.assertRaises(MathError):
            solver.solve()

    def test_bad_error_model(self):
        solver = self._solver(1.0e-5)
        with self.assertRaises(UsageError):
            solver.set_m_error(None, [0.0])
        with self.assertRaises(UsageError):
            solver.set_m_error(None, [1.0e-3], [-1.0])
        with self.assertRaises(UsageError):
            solver.pvalue_limit = 0.0


class TestErrors(unittest.TestCase):
    def setUp(self):
        self.messages = []
        self.calset = Calset(error_fn=lambda message, category:
                             self.messages.append((message, category)))

    def test_bad_dimensions(self):
        with self.assertRaises(UsageError):
            Solver(self.calset, CalType.T8, 2, 1, f_vector)
        with self.assertRaises(UsageError):
            Solver(self.calset, CalType.U8, 1, 2, f_vector)
        self.assertEqual(len(self.messages), 2)
        self.assertEqual(self.messages[0][1], ErrorCategory.USAGE)

    def test_bad_frequencies(self):
        with self.assertRaises(UsageError):
            Solver(self.calset, CalType.T8, 2, 2, [2.0e+9, 1.0e+9])
        with self.assertRaises(UsageError):
            Solver(self.calset, CalType.T8, 2, 2, [-1.0, 1.0e+9])

    def test_no_standards(self):
        solver = Solver(self.calset, CalType.T8, 2, 2, f_vector)
        with self.assertRaises(MathError):
            solver.solve()
        self.assertEqual(self.messages[-1][1], ErrorCategory.MATH)
        with self.assertRaises(UsageError):
            solver.add_to_calset('cal')

    def test_insufficient_standards(self):
        eterms = ret.RandomErrorTerms(rng, CalType.T8, 2, 2, fmin, fmax)
        solver = Solver(self.calset, CalType.T8, 2, 2, f_vector)
        m = eterms.evaluate(self.calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
        solver.add_through(m)
        with self.assertRaises(MathError):
            solver.solve()

    def test_no_isolation(self):
        # Without a reflect standard, nothing measures leakage alone.
        eterms = ret.RandomErrorTerms(rng, CalType.TE10, 2, 2, fmin, fmax)
        solver = Solver(self.calset, CalType.TE10, 2, 2, f_vector)
        m = eterms.evaluate(self.calset, f_vector, [[0.0, 1.0], [1.0, 0.0]])
        solver.add_through(m)
        with self.assertRaises(MathError):
            solver.solve()

    def test_bad_ports(self):
        solver = Solver(self.calset, CalType.T8, 2, 2, f_vector)
        m = np.zeros((points, 2, 2), dtype=complex)
        with self.assertRaises(UsageError):
            solver.add_single_reflect(m, -1.0, port=3)
        with self.assertRaises(UsageError):
            solver.add_through(m, 1, 1)
        with self.assertRaises(UsageError):
            solver.add_single_reflect(np.zeros((points, 3, 3)), -1.0)

    def test_apply_out_of_range(self):
        eterms = ret.RandomErrorTerms(rng, CalType.T8, 2, 2, fmin, fmax)
        solver = Solver(self.calset, CalType.T8, 2, 2, f_vector)
        add_reflect_pairs(solver, eterms, self.calset)
        solver.solve()
        solver.add_to_calset('cal')
        m = np.zeros((1, 2, 2), dtype=complex)
        with self.assertRaises(UsageError):
            self.calset.calibrations[0].apply([2.0 * fmax], m)

    def test_delay_on_unknown(self):
        solver = Solver(self.calset, CalType.E12, 2, 1, f_vector)
        unknown = UnknownParameter(self.calset, -1.0)
        m = np.zeros((points, 2, 1), dtype=complex)
        with self.assertRaises(UsageError):
            solver.add_single_reflect(m, unknown, delay=1.0e-10)


class TestCalsetFile(unittest.TestCase):
    def test_save_load(self):
        for ctype, rows, columns in ((CalType.E12, 2, 2),
                                     (CalType.TE10, 2, 2),
                                     (CalType.U8, 2, 2)):
            with self.subTest(ctype=ctype.name):
                eterms = ret.RandomErrorTerms(rng, ctype, rows, columns,
                                              fmin, fmax)
                calset = Calset()
                calset.properties['foo'] = 47
                calset.properties['bar'] = ['a', 'b']
                solver = Solver(calset, ctype, rows, columns, f_vector)
                add_reflect_pairs(solver, eterms, calset)
                solver.solve()
                solver.add_to_calset('cal')
                calset.calibrations['cal'].properties['dut'] = 'LC'
                calset.dprecision = 12

                with tempfile.TemporaryDirectory() as tmpdir:
                    filename = os.path.join(tmpdir, 'test.vnacal')
                    calset.save(filename)
                    loaded = Calset(filename)

                self.assertEqual(loaded.properties['foo'], 47)
                self.assertEqual(loaded.properties['bar'], ['a', 'b'])
                self.assertEqual(loaded.calibrations.names(), ['cal'])
                calibration = loaded.calibrations['cal']
                self.assertEqual(calibration.ctype, ctype)
                self.assertEqual(calibration.rows, rows)
                self.assertEqual(calibration.columns, columns)
                self.assertEqual(calibration.properties['dut'], 'LC')
                self.assertTrue(np.allclose(calibration.frequency_vector,
                                            f_vector))

                expected = lc_filter(f_vector)
                m = eterms.evaluate(calset, f_vector,
                                    vector_matrix(calset, f_vector,
                                                  expected))
                result = calibration.apply(f_vector, m)
                self.assertTrue(np.allclose(result.data_array, expected,
                                            rtol=1.0e-5, atol=1.0e-5))

    def test_replace_and_delete(self):
        eterms = ret.RandomErrorTerms(rng, CalType.T8, 2, 2, fmin, fmax)
        calset = Calset()
        solver = Solver(calset, CalType.T8, 2, 2, f_vector)
        add_reflect_pairs(solver, eterms, calset)
        solver.solve()
        self.assertEqual(solver.add_to_calset('a'), 0)
        self.assertEqual(solver.add_to_calset('b'), 1)
        self.assertEqual(solver.add_to_calset('a'), 0)
        self.assertEqual(len(calset.calibrations), 2)
        self.assertEqual(calset.find_calibration('b'), 1)
        calset.delete_calibration('a')
        self.assertEqual(calset.calibrations.names(), ['b'])
        self.assertIsNone(calset.find_calibration('a'))
        with self.assertRaises(UsageError):
            calset.calibrations['a']

    def test_bad_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filename = os.path.join(tmpdir, 'bad.vnacal')
            with open(filename, 'w') as f:
                f.write('#VNACAL 9.0\n')
            with self.assertRaises(ValueError):
                Calset(filename)
            with open(filename, 'w') as f:
                f.write('not a calibration file\n')
            with self.assertRaises(ValueError):
                Calset(filename)
            with self.assertRaises(OSError):
                Calset(os.path.join(tmpdir, 'missing.vnacal'))


if __name__ == '__main__':
    unittest.main()
