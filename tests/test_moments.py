import math
import torch as t

from epgraph.moments import (
    log_odds_positive,
    truncated_moments,
    linear_update,
    local_square_difference,
    gamma_precision_message,
)

import unittest


def tensor(*xs):
    return t.tensor(xs, dtype=t.float64)


class TestTruncation(unittest.TestCase):
    def test_standard_half_normal(self):
        mean, var = truncated_moments(tensor(0.), tensor(1.), tensor(1.))
        self.assertAlmostEqual(mean.item(), math.sqrt(2 / math.pi))
        self.assertAlmostEqual(var.item(), 1 - 2 / math.pi)

        mean, var = truncated_moments(tensor(0.), tensor(1.), tensor(0.))
        self.assertAlmostEqual(mean.item(), -math.sqrt(2 / math.pi))
        self.assertAlmostEqual(var.item(), 1 - 2 / math.pi)

    def test_uninformative_observation(self):
        mean, var = truncated_moments(tensor(1.5), tensor(2.), tensor(0.5))
        self.assertAlmostEqual(mean.item(), 1.5)
        self.assertAlmostEqual(var.item(), 2.)

    def test_far_tail_stays_finite(self):
        mean, var = truncated_moments(tensor(-50., -1e3), tensor(1., 1.), tensor(1., 1.))
        self.assertTrue(t.isfinite(mean).all())
        self.assertTrue(t.isfinite(var).all())
        self.assertTrue((mean > 0).all())
        self.assertTrue((var > 0).all())

    def test_degenerate_variances(self):
        mean, var = truncated_moments(tensor(1., 2.), tensor(0., math.inf), tensor(1., 1.))
        self.assertEqual(mean.tolist(), [1., 2.])
        self.assertEqual(var.tolist(), [0., math.inf])


class TestLogOdds(unittest.TestCase):
    def test_log_odds(self):
        result = log_odds_positive(tensor(0., 1., 1., 1.), tensor(1., 1., math.inf, 0.))
        self.assertAlmostEqual(result[0].item(), 0.)
        p = t.special.ndtr(tensor(1.)).item()
        self.assertAlmostEqual(result[1].item(), math.log(p / (1 - p)))
        self.assertAlmostEqual(result[2].item(), 0.)
        self.assertEqual(result[3].item(), math.inf)


class TestLinearUpdate(unittest.TestCase):
    def test_single_term(self):
        mean, var = linear_update(tensor(0.), tensor(1.), 1., tensor(0.), tensor(1.), tensor(1.), tensor(0.5))
        self.assertAlmostEqual(mean.item(), 1.)
        self.assertAlmostEqual(var.item(), 0.5)

    def test_difference(self):
        #d = a - b with a, b ~ N(0, 1); moving d up moves b down by the same amount
        mean, var = linear_update(tensor(0.), tensor(1.), -1., tensor(0.), tensor(2.), tensor(1.), tensor(1.))
        self.assertAlmostEqual(mean.item(), -0.5)
        self.assertAlmostEqual(var.item(), 0.75)

    def test_uniform_sum(self):
        mean, var = linear_update(tensor(3.), tensor(math.inf), 1., tensor(0.), tensor(math.inf), tensor(1.), tensor(1.))
        self.assertEqual(mean.item(), 3.)
        self.assertEqual(var.item(), math.inf)


class TestPrecisionMessage(unittest.TestCase):
    def test_local_square_difference(self):
        self.assertEqual(local_square_difference(tensor(2.), tensor(0.), tensor(1.)).item(), 4.)
        self.assertAlmostEqual(local_square_difference(tensor(0.), tensor(math.inf), tensor(4.)).item(), 0.25)
        #Prior N(1, 1) on the difference, times a likelihood N(0, 1): posterior N(0.5, 0.5)
        self.assertAlmostEqual(local_square_difference(tensor(1.), tensor(1.), tensor(1.)).item(), 0.75)

    def test_gamma_message(self):
        shape, rate = gamma_precision_message(tensor(2., math.inf))
        self.assertEqual(shape.tolist(), [1.5, 1.])
        self.assertEqual(rate.tolist(), [1., 0.])


if __name__ == '__main__':
    unittest.main()
