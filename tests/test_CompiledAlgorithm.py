import math
import torch as t

from epgraph import (
    Model,
    Gaussian,
    Gamma,
    Bernoulli,
    Discrete,
    Random,
    GaussianFromMeanAndPrecision,
    DiscreteFromTable,
    Subarray,
    Plus,
    IsGreater,
    ConstrainPositive,
    BindError,
    MissingObservedError,
    QueryError,
    ShapeMismatchError,
    TypeMismatchError,
    UnknownObservedNameError,
)
from epgraph.Runtime import InferenceRuntime

import unittest


def gaussian_mean_model():
    """mu ~ N(0, 1), y[n] ~ N(mu, 1)"""
    m = Model("GaussianMean")
    N = m.declare_observed("N")
    n = m.declare_range("n", N)
    y = m.declare_observed("y", (n,), dtype=float)
    mu = m.declare_variable("mu", Gaussian)
    m.add_factor(GaussianFromMeanAndPrecision(mu, 0., 1.))
    with m.foreach(n):
        m.add_factor(GaussianFromMeanAndPrecision(y[n], mu, 1.))
    return m


def fit(y, iterations=5):
    algorithm = gaussian_mean_model().compile()
    algorithm.bind_observed("N", len(y))
    algorithm.bind_observed("y", y)
    algorithm.execute(iterations)
    return algorithm


class TestConjugate(unittest.TestCase):
    def test_exact_posterior(self):
        y = [0.5, 1.2, 0.9]
        algorithm = fit(y)
        mu = algorithm.marginal("mu")
        self.assertIsInstance(mu, Gaussian)
        self.assertEqual(tuple(mu.batch_shape), ())
        self.assertAlmostEqual(mu.precision.item(), 1 + len(y))
        self.assertAlmostEqual(mu.mean().item(), sum(y) / (1 + len(y)))
        self.assertEqual(algorithm.iterations_done, 5)
        self.assertEqual(algorithm.clamp_count, 0)

    def test_marginal_is_idempotent(self):
        algorithm = fit([0.5, 1.2, 0.9])
        a = algorithm.marginal("mu")
        b = algorithm.marginal("mu")
        self.assertTrue(a.allclose(b))
        self.assertIsNot(a.precision, b.precision)

        #Changing the returned marginal doesn't change the algorithm's state
        a.precision.fill_(100.)
        self.assertTrue(algorithm.marginal("mu").allclose(b))

    def test_rebind_matches_fresh(self):
        algorithm = fit([0.5, 1.2, 0.9])
        algorithm.bind_observed("N", 2)
        algorithm.bind_observed("y", [-1., 3.])
        algorithm.execute(5)

        fresh = fit([-1., 3.])
        self.assertTrue(algorithm.marginal("mu").allclose(fresh.marginal("mu")))

    def test_update_continues(self):
        algorithm = fit([0.5, 1.2], iterations=1)
        algorithm.update(2)
        self.assertEqual(algorithm.iterations_done, 3)
        self.assertTrue(algorithm.marginal("mu").allclose(fit([0.5, 1.2], iterations=3).marginal("mu")))

        #After a rebind, update starts again from scratch
        algorithm.bind_observed("y", [1., 1.])
        algorithm.update(2)
        self.assertEqual(algorithm.iterations_done, 2)
        self.assertTrue(algorithm.marginal("mu").allclose(fit([1., 1.]).marginal("mu")))

    def test_prior_before_execute(self):
        algorithm = gaussian_mean_model().compile()
        with self.assertRaises(QueryError):
            algorithm.marginal("mu")

        algorithm.bind_observed("N", 2)
        algorithm.bind_observed("y", [1., 2.])
        mu = algorithm.marginal("mu")
        self.assertAlmostEqual(mu.mean().item(), 0.)
        self.assertAlmostEqual(mu.variance().item(), 1.)

    def test_observer(self):
        algorithm = gaussian_mean_model().compile()
        ops = []
        algorithm.add_observer(lambda alg, op: ops.append(op))
        algorithm.bind_observed("N", 2)
        algorithm.bind_observed("y", [1., 2.])
        algorithm.execute(3)
        self.assertEqual(len(ops), 3*len(algorithm.schedule))


class TestBinding(unittest.TestCase):
    def setUp(self):
        self.algorithm = gaussian_mean_model().compile()

    def test_unknown_name(self):
        with self.assertRaises(UnknownObservedNameError):
            self.algorithm.bind_observed("z", 1.)
        with self.assertRaises(KeyError):
            self.algorithm.bind_observed("mu", 1.)
        self.assertEqual(self.algorithm.observed_names, ["N", "y"])

    def test_length_mismatch_at_bind(self):
        algorithm = self.algorithm
        algorithm.bind_observed("N", 3)
        with self.assertRaises(ShapeMismatchError):
            algorithm.bind_observed("y", [1., 2.])
        #The failed bind didn't store anything
        with self.assertRaises(MissingObservedError):
            algorithm.execute(1)
        self.assertEqual(algorithm.iterations_done, 0)

        algorithm.bind_observed("y", [1., 2., 3.])
        algorithm.execute(1)
        self.assertEqual(algorithm.iterations_done, 1)

    def test_length_mismatch_at_execute(self):
        algorithm = self.algorithm
        #N isn't known yet, so y can't be checked until execute
        algorithm.bind_observed("y", [1., 2., 3.])
        algorithm.bind_observed("N", 2)
        with self.assertRaises(ShapeMismatchError):
            algorithm.execute(10)
        self.assertEqual(algorithm.iterations_done, 0)
        with self.assertRaises(QueryError):
            algorithm.marginal("mu")

    def test_wrong_type(self):
        self.algorithm.bind_observed("N", 2)
        with self.assertRaises(TypeMismatchError):
            self.algorithm.bind_observed("y", [True, False])
        with self.assertRaises(TypeMismatchError):
            self.algorithm.bind_observed("N", 2.5)

    def test_unused_observed(self):
        m = gaussian_mean_model()
        m.declare_observed("unused", dtype=float)
        algorithm = m.compile()
        with self.assertWarns(UserWarning):
            algorithm.bind_observed("unused", 1.)

    def test_invalid_iterations(self):
        with self.assertRaises(ValueError):
            self.algorithm.execute(-1)


class TestQueries(unittest.TestCase):
    def setUp(self):
        m = gaussian_mean_model()
        m.declare_variable("sigma", Gamma)
        self.algorithm = m.compile(infer=["mu"])
        self.algorithm.bind_observed("N", 1)
        self.algorithm.bind_observed("y", [1.])
        self.algorithm.execute(1)

    def test_errors(self):
        with self.assertRaises(QueryError):
            self.algorithm.marginal("y")
        with self.assertRaises(QueryError):
            self.algorithm.marginal("nothing")
        with self.assertRaises(QueryError):
            self.algorithm.marginal("sigma")
        with self.assertRaises(TypeMismatchError):
            self.algorithm.marginal("mu", Gamma)
        self.assertIsInstance(self.algorithm.marginal("mu", Gaussian), Gaussian)

    def test_carried_needs_recording(self):
        with self.assertRaises(QueryError):
            self.algorithm.carried("n")

    def test_marginals(self):
        self.assertEqual(list(self.algorithm.marginals().keys()), ["mu"])


class TestFactorKinds(unittest.TestCase):
    def test_model_selector(self):
        m = Model()
        selector = m.declare_variable("ModelSelector", Bernoulli)
        m.add_factor(Random(selector, Bernoulli.from_probability(0.5)))
        algorithm = m.compile()
        algorithm.execute(1)
        self.assertAlmostEqual(algorithm.marginal("ModelSelector").probability_true().item(), 0.5)

    def test_discrete_table(self):
        m = Model()
        z = m.declare_variable("z", Discrete, dimension=2)
        x = m.declare_observed("x")
        m.add_factor(Random(z, Discrete.from_probabilities([0.3, 0.7])))
        m.add_factor(DiscreteFromTable(x, z, [[0.9, 0.1], [0.2, 0.8]]))
        algorithm = m.compile()
        algorithm.bind_observed("x", 1)
        algorithm.execute(2)

        expected = t.tensor([0.3*0.1, 0.7*0.8], dtype=t.float64)
        expected = expected / expected.sum()
        self.assertTrue(t.allclose(algorithm.marginal("z").probabilities(), expected))

    def test_plus(self):
        m = Model()
        a = m.declare_variable("a", Gaussian)
        b = m.declare_variable("b", Gaussian)
        c = m.declare_variable("c", Gaussian)
        m.add_factor(GaussianFromMeanAndPrecision(a, 1., 1.))
        m.add_factor(GaussianFromMeanAndPrecision(b, 2., 0.5))
        m.add_factor(Plus(c, a, b))
        algorithm = m.compile()
        algorithm.execute(2)

        result = algorithm.marginal("c")
        self.assertAlmostEqual(result.mean().item(), 3.)
        self.assertAlmostEqual(result.variance().item(), 3.)

    def test_is_greater(self):
        m = Model()
        a = m.declare_variable("a", Gaussian)
        b = m.declare_variable("b", Gaussian)
        o = m.declare_variable("o", Bernoulli)
        m.add_factor(GaussianFromMeanAndPrecision(a, 1., 1.))
        m.add_factor(GaussianFromMeanAndPrecision(b, 0., 1.))
        m.add_factor(IsGreater(o, a, b))
        algorithm = m.compile()
        algorithm.execute(2)

        expected = t.special.ndtr(t.tensor(1 / math.sqrt(2), dtype=t.float64)).item()
        self.assertAlmostEqual(algorithm.marginal("o").probability_true().item(), expected)
        #Nothing is known about o, so a is unchanged
        self.assertAlmostEqual(algorithm.marginal("a").mean().item(), 1.)

    def test_subarray(self):
        m = Model()
        player = m.declare_range("player", 3)
        k = m.declare_range("k", 2)
        means = m.declare_observed("means", (player,), dtype=float)
        idx = m.declare_observed("idx", (k,), value_range=player)
        skills = m.declare_variable_array("skills", Gaussian, (player,))
        chosen = m.declare_variable_array("chosen", Gaussian, (k,))
        with m.foreach(player):
            m.add_factor(GaussianFromMeanAndPrecision(skills[player], means[player], 1.))
        with m.foreach(k):
            m.add_factor(Subarray(chosen[k], skills[idx[k]]))
        algorithm = m.compile()
        algorithm.bind_observed("means", [10., 20., 30.])
        algorithm.bind_observed("idx", [2, 0])
        algorithm.execute(2)

        self.assertTrue(t.allclose(algorithm.marginal("chosen").mean(), t.tensor([30., 10.], dtype=t.float64)))
        self.assertTrue(t.allclose(algorithm.marginal("skills").mean(), t.tensor([10., 20., 30.], dtype=t.float64)))

    def test_learned_precision(self):
        m = Model()
        N = m.declare_observed("N")
        n = m.declare_range("n", N)
        y = m.declare_observed("y", (n,), dtype=float)
        tau = m.declare_variable("tau", Gamma)
        m.add_factor(Random(tau, Gamma(1., 1.)))
        with m.foreach(n):
            m.add_factor(GaussianFromMeanAndPrecision(y[n], 0., tau))
        algorithm = m.compile()
        algorithm.bind_observed("N", 4)
        algorithm.bind_observed("y", [1., -1., 1., -1.])
        algorithm.execute(3)

        #Gamma(1 + n/2, 1 + sum(y^2)/2)
        tau = algorithm.marginal("tau")
        self.assertAlmostEqual(tau.shape.item(), 3.)
        self.assertAlmostEqual(tau.rate.item(), 3.)

    def test_jagged_marginal(self):
        m = Model()
        G = m.declare_observed("G")
        g = m.declare_range("g", G)
        L = m.declare_observed("L", (g,))
        gp = m.declare_range("gp", L[g])
        x = m.declare_variable_array("x", Gaussian, (g, gp))
        with m.foreach(g, gp):
            m.add_factor(GaussianFromMeanAndPrecision(x[g, gp], 1., 2.))
        algorithm = m.compile()
        algorithm.bind_observed("G", 3)
        algorithm.bind_observed("L", [1, 0, 2])
        algorithm.execute(1)

        parts = algorithm.marginal("x")
        self.assertEqual([len(p) for p in parts], [1, 0, 2])
        self.assertTrue(t.allclose(parts[2].precision, t.full((2,), 2., dtype=t.float64)))


class TestClamping(unittest.TestCase):
    def test_improper_messages_are_clamped(self):
        runtime = InferenceRuntime({}, [], min_precision=1e-6)
        result = runtime.proper(Gaussian.from_natural(t.tensor([1., 2.], dtype=t.float64), t.tensor([1., -4.], dtype=t.float64)), "test")
        self.assertEqual(runtime.clamp_count, 1)
        self.assertTrue(result.is_proper().all())
        self.assertEqual(result.precision.tolist(), [1., 1e-6])
        self.assertAlmostEqual(result[1].mean().item(), -0.5)


if __name__ == '__main__':
    unittest.main()
