import torch as t

from epgraph import (
    Model,
    Gaussian,
    Bernoulli,
    GaussianFromMeanAndPrecision,
    ConstrainTrue,
    ConstrainPositive,
    Random,
    Copy,
    SequentialCarry,
    Update,
    CyclicDependencyError,
)
from epgraph.Resolver import resolve_ranges
from epgraph.Schedule import ScheduleBuilder

import unittest


def build(m, observed=None):
    return ScheduleBuilder(m).build(resolve_ranges(m, {} if observed is None else observed))


class TestOrdering(unittest.TestCase):
    def test_topological_order(self):
        m = Model()
        a = m.declare_variable("a", Gaussian)
        b = m.declare_variable("b", Gaussian)
        #b is declared from a before a's own prior is declared
        m.add_factor(GaussianFromMeanAndPrecision(b, a, 1.), name="b_given_a")
        m.add_factor(GaussianFromMeanAndPrecision(a, 0., 1.), name="a_prior")

        builder = ScheduleBuilder(m)
        self.assertEqual([block.name for block in builder.order], ["a_prior", "b_given_a"])

        schedule = builder.build(resolve_ranges(m, {}))
        self.assertEqual(schedule.describe(), [
            "Update(a_prior, forward)",
            "Update(b_given_a, forward)",
            "Update(a_prior, backward)",
            "Update(b_given_a, distribute)",
            "Update(a_prior, distribute)",
        ])

    def test_constraints_last(self):
        m = Model()
        z = m.declare_variable("z", Bernoulli)
        mu = m.declare_variable("mu", Gaussian)
        m.add_factor(ConstrainTrue(z))
        m.add_factor(Random(z, Bernoulli.from_probability(0.5)))
        m.add_factor(GaussianFromMeanAndPrecision(mu, 0., 1.))

        schedule = build(m)
        forward = [op.block for op in schedule if op.direction == "forward"]
        self.assertEqual([b.name for b in forward], ["Random#1", "GaussianFromMeanAndPrecision#2", "ConstrainTrue#0"])
        self.assertTrue(forward[-1].is_constraint)

    def test_expanded_blocks(self):
        m = Model()
        x = m.declare_variable("x", Gaussian)
        m.add_factor(GaussianFromMeanAndPrecision(x, 0., 1.))
        m.add_constraint("between", x, -1., 1.)
        names = [b.name for b in ScheduleBuilder(m).blocks]
        self.assertEqual(names, ["GaussianFromMeanAndPrecision#0", "ConstrainBetween#1.0", "ConstrainBetween#1.1"])


class TestSequential(unittest.TestCase):
    def chain(self, sequential=True):
        m = Model()
        N = m.declare_observed("N")
        i = m.declare_range("i", N, sequential=sequential)
        x = m.declare_variable_array("x", Gaussian, (i,))
        with m.foreach(i):
            m.add_factor(GaussianFromMeanAndPrecision(x[i], 0., 1.))
            with m.condition(i > 0):
                m.add_factor(ConstrainPositive(x[i] - x[i - 1]))
        return m, N, i

    def test_chain(self):
        from epgraph.Resolver import flatten_observed

        m, N, i = self.chain()
        schedule = build(m, {"N": flatten_observed(N, 3)})

        #Each index: the prior and the constraint forward, then the prior backward
        self.assertEqual(len(schedule), 3*3 + 2)
        carries = [op for op in schedule if isinstance(op, SequentialCarry)]
        self.assertEqual([c.index for c in carries], [1, 2])
        self.assertEqual(carries[0].arrays, ())

        indices = [op.index for op in schedule if isinstance(op, Update)]
        self.assertEqual(indices, sorted(indices))

    def test_schedule_depends_on_size(self):
        from epgraph.Resolver import flatten_observed

        m, N, i = self.chain()
        builder = ScheduleBuilder(m)
        short = builder.build(resolve_ranges(m, {"N": flatten_observed(N, 1)}))
        empty = builder.build(resolve_ranges(m, {"N": flatten_observed(N, 0)}))
        self.assertEqual(len(short), 3)
        self.assertEqual(len(empty), 0)

    def test_shared_arrays_are_carried(self):
        m = Model()
        game = m.declare_range("game", 3, sequential=True)
        skill = m.declare_variable("skill", Gaussian)
        perf = m.declare_variable_array("perf", Gaussian, (game,))
        m.add_factor(GaussianFromMeanAndPrecision(skill, 0., 1.))
        with m.foreach(game):
            m.add_factor(GaussianFromMeanAndPrecision(perf[game], skill, 1.))
            m.add_factor(ConstrainPositive(perf[game]))

        carries = [op for op in build(m) if isinstance(op, SequentialCarry)]
        self.assertEqual(len(carries), 2)
        self.assertEqual(carries[0].arrays, ("skill",))

    def test_cycle_across_blocks(self):
        def model(sequential):
            m = Model()
            i = m.declare_range("i", 3, sequential=sequential)
            x = m.declare_variable_array("x", Gaussian, (i,))
            y = m.declare_variable_array("y", Gaussian, (i,))
            with m.foreach(i):
                m.add_factor(GaussianFromMeanAndPrecision(x[i], 0., 1.))
                m.add_factor(Copy(x[i], y[i - 1]), name="x_from_y")
                m.add_factor(Copy(y[i], x[i]), name="y_from_x")
            return m

        m = model(sequential=False)
        with self.assertRaises(CyclicDependencyError) as cm:
            m.compile()
        self.assertIn("x_from_y", str(cm.exception))
        self.assertFalse(m.compiled)

        #Over a sequential range, the cycle is broken by updating one index at a time
        names = [b.name for b in ScheduleBuilder(model(sequential=True)).order]
        self.assertEqual(sorted(names), sorted(["GaussianFromMeanAndPrecision#0", "x_from_y", "y_from_x"]))

    def test_jagged_ranges_follow_parent(self):
        m = Model()
        G = m.declare_observed("G")
        g = m.declare_range("g", G)
        L = m.declare_observed("L", (g,))
        gp = m.declare_range("gp", L[g])
        x = m.declare_variable_array("x", Gaussian, (g, gp))
        with m.foreach(g, gp):
            m.add_factor(GaussianFromMeanAndPrecision(x[g, gp], 0., 1.))
        self.assertFalse(gp.is_sequential)

        m.mark_sequential(g)
        self.assertTrue(gp.is_sequential)
        self.assertIs(ScheduleBuilder(m).blocks[0].sequential_range, g)

    def test_unordered_cycle(self):
        m, N, i = self.chain(sequential=False)
        x = m.variables["x"]
        with m.foreach(i):
            with m.condition(i > 0):
                m.add_factor(GaussianFromMeanAndPrecision(x[i], x[i - 1], 1.))
        with self.assertRaises(CyclicDependencyError):
            m.compile()
        self.assertFalse(m.compiled)

        m.mark_sequential(i)
        m.compile()


if __name__ == '__main__':
    unittest.main()
