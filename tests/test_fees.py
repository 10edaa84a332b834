#!/usr/bin/env python3
"""
Fee estimation tests.

size = 10 + 148*inputs + 34*outputs, fee = ceil(size * rate).
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fillswap.htlc.fees import estimate_fee, estimate_size
from fillswap.errors import InvalidParameter


class TestEstimateFee(unittest.TestCase):

    def test_single_input_single_output(self):
        self.assertEqual(estimate_size(1, 1), 192)
        self.assertEqual(estimate_fee(1, 1, 10), 1920)

    def test_replacement_rate(self):
        self.assertEqual(estimate_fee(1, 1, 15), 2880)

    def test_multiple_inputs_outputs(self):
        self.assertEqual(estimate_size(2, 2), 374)
        self.assertEqual(estimate_fee(2, 2, 1), 374)

    def test_fractional_rate_rounds_up(self):
        self.assertEqual(estimate_fee(1, 1, 2.3), 442)

    def test_deterministic(self):
        self.assertEqual(estimate_fee(3, 2, 7), estimate_fee(3, 2, 7))

    def test_rejects_invalid_parameters(self):
        for args in [(0, 1, 10), (1, 0, 10), (1, 1, 0), (1, 1, 0.5), (-1, 1, 10)]:
            with self.subTest(args=args):
                with self.assertRaises(InvalidParameter):
                    estimate_fee(*args)

    def test_invalid_parameter_is_value_error(self):
        with self.assertRaises(ValueError):
            estimate_fee(0, 0, 0)

    def test_custom_minimum_rate(self):
        with self.assertRaises(InvalidParameter):
            estimate_fee(1, 1, 4, min_fee_rate=5)
        self.assertEqual(estimate_fee(1, 1, 5, min_fee_rate=5), 960)


if __name__ == "__main__":
    unittest.main(verbosity=2)
