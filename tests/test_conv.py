#!/usr/bin/python3
"""
Test the libvna.conv module.
"""

import unittest
import numpy as np
import libvna.conv as vc

TRIALS = 20

rng = np.random.default_rng(seed=11)


def crandn(size=None):
    """
    Return gaussian complex random numbers.
    """
    return np.sqrt(0.5) * (rng.normal(size=size) +
                           1j * rng.normal(size=size))


def port_variables(s, z0):
    """
    Drive a network with random incident waves and return the port
    variables (a, b, v, i) as column vectors.
    """
    n = s.shape[0]
    z0 = np.asarray(z0)
    a = crandn((n, 1))
    b = s @ a
    k = (np.sqrt(np.abs(z0.real)) / z0.real).reshape(n, 1)
    zc = z0.reshape(n, 1)
    v = k * (np.conj(zc) * a + zc * b)
    i = k * (a - b)
    return a, b, v, i


def two_port_definitions(a, b, v, i):
    """
    Return the (input, output) column vectors of each two-port
    parameter type, where output = X @ input.
    """
    a1, a2 = a[:, 0]
    b1, b2 = b[:, 0]
    v1, v2 = v[:, 0]
    i1, i2 = i[:, 0]
    col = lambda *x: np.array(x).reshape(-1, 1)
    return {
        "s": (col(a1, a2), col(b1, b2)),
        "t": (col(a2, b2), col(b1, a1)),
        "u": (col(b1, a1), col(a2, b2)),
        "z": (col(i1, i2), col(v1, v2)),
        "y": (col(v1, v2), col(i1, i2)),
        "h": (col(i1, v2), col(v1, i2)),
        "g": (col(v1, i2), col(i1, v2)),
        "a": (col(v2, -i2), col(v1, i1)),
        "b": (col(v1, i1), col(v2, -i2)),
    }


class TestConversions(unittest.TestCase):
    def test_2x2(self):
        """
        Check every 2x2 conversion against the definitions.
        """
        types = "stuzyhgab"
        for _ in range(TRIALS):
            z0 = crandn(2)
            s = crandn((2, 2))
            a, b, v, i = port_variables(s, z0)
            definitions = two_port_definitions(a, b, v, i)
            zi = (np.diagonal(s) * z0 + np.conj(z0)) / (1.0 - np.diagonal(s))

            # Convert from S and verify the definition of each type.
            x = {"s": s}
            for to in types[1:]:
                x[to] = vc.convert(s, "s", to, z0)
                c, d = definitions[to]
                self.assertTrue(np.allclose(x[to] @ c, d), f"s to {to}")
            self.assertTrue(np.allclose(vc.stozi(s, z0), zi))

            # Convert between every other pair through the named
            # functions.
            for src in types:
                for to in types:
                    if src == to:
                        continue
                    function = getattr(vc, f"{src}to{to}")
                    if src in "stu" or to in "stu":
                        result = function(x[src], z0)
                    else:
                        result = function(x[src])
                    self.assertTrue(np.allclose(result, x[to]),
                                    f"{src} to {to}")
                zin = getattr(vc, f"{src}tozi")(x[src], z0)
                self.assertTrue(np.allclose(zin, zi), f"{src} to zi")

    def test_nxn(self):
        """
        Check the N-port conversions among S, Z and Y.
        """
        for n in (1, 3, 4):
            z0 = 50.0 + 10.0 * crandn(n)
            z0 = np.abs(z0.real) + 1j * z0.imag
            s = crandn((n, n))
            a, b, v, i = port_variables(s, z0)
            z = vc.stoz(s, z0)
            y = vc.stoy(s, z0)
            self.assertTrue(np.allclose(z @ i, v))
            self.assertTrue(np.allclose(y @ v, i))
            self.assertTrue(np.allclose(vc.ztoy(z), y))
            self.assertTrue(np.allclose(vc.ytoz(y), z))
            self.assertTrue(np.allclose(vc.ztos(z, z0), s))
            self.assertTrue(np.allclose(vc.ytos(y, z0), s))
            zin = vc.ztozi(z, z0)
            self.assertEqual(zin.shape, (n,))
            self.assertTrue(np.allclose(vc.stozi(s, z0), zin))

    def test_renormalize(self):
        """
        Renormalize S and T parameters to new reference impedances.
        """
        z1 = [50.0, 75.0]
        z2 = [75.0, 50.0]
        s = crandn((2, 2))
        s2 = vc.stos(s, z1, z2)
        self.assertTrue(np.allclose(vc.stoz(s, z1), vc.stoz(s2, z2)))
        self.assertTrue(np.allclose(vc.stos(s2, z2, z1), s))
        t2 = vc.stot(s, z1, z2)
        self.assertTrue(np.allclose(vc.ttos(t2, z2), s2))

    def test_l_pad(self):
        """
        A matched 75 to 50 ohm L-pad reflects nothing on either side.
        """
        z1 = 75.0
        z2 = 50.0
        r1 = np.sqrt(z1 * (z1 - z2))
        r2 = z2 * np.sqrt(z1 / (z1 - z2))
        z = [[r1 + r2, r2], [r2, r2]]
        s = vc.ztos(z, [z1, z2])
        self.assertAlmostEqual(abs(s[0, 0]), 0.0)
        self.assertAlmostEqual(abs(s[1, 1]), 0.0)
        self.assertTrue(np.allclose(vc.stozi(s, [z1, z2]), [z1, z2]))

    def test_broadcast(self):
        """
        Convert a stack of matrices with per-matrix impedances.
        """
        s = crandn((5, 3, 2, 2))
        z0 = 50.0 + np.abs(crandn((5, 3, 2)))
        z = vc.stoz(s, z0)
        self.assertEqual(z.shape, (5, 3, 2, 2))
        for index in np.ndindex(5, 3):
            self.assertTrue(np.allclose(z[index],
                                        vc.stoz(s[index], z0[index])))
        self.assertEqual(vc.stozi(s, z0).shape, (5, 3, 2))

    def test_errors(self):
        with self.assertRaises(ValueError):
            vc.stoz(np.zeros((2, 3)))
        with self.assertRaises(ValueError):
            vc.stot(np.zeros((3, 3)))
        with self.assertRaises(ValueError):
            vc.convert(np.zeros((2, 2)), "s", "q")
        with self.assertRaises(ValueError):
            vc.stoz(np.zeros((2, 2)), [50.0, 50.0, 50.0])
        with self.assertRaises(ValueError):
            vc.stoz(np.zeros((2, 2)), 1j)


if __name__ == '__main__':
    unittest.main()
