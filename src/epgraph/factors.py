"""
Factor kinds.

A factor is declared with ``Model.add_factor`` (or ``Model.add_constraint``), inside the ranges given by
``Model.foreach``.  Each factor has a list of slots (its arguments).  A slot holds either a reference to
a variable array element (which receives messages), or a fixed value: a constant, or an observed value
(which is treated as a point mass, or as a distribution for distribution-valued observed placeholders).

The runtime calls ``factor.messages(inputs, targets)`` with a batch over the factor's instances:

* ``inputs`` maps each slot index to a batched distribution; for variable slots that's the cavity
  (the belief with this factor's own message divided out), except for ``variational_slots``, which
  get the full belief.
* ``targets`` lists the slot indices that need new messages.

and gets back a dict mapping each target slot index to the new (batched) message.
"""
import torch as t
from opt_einsum import contract

from .utils import *
from .defaults import DTYPE
from .dist import ExpFamily, Gaussian, Gamma, Bernoulli, Discrete, family_name
from .moments import log_odds_positive, truncated_moments, linear_update, local_square_difference, gamma_precision_message
from .Range import IndexExpr, Range
from .Observed import ObservedPlaceholder, ObservedLookup, Equal
from .Variable import VariableArray, VariableRef, LinearExpr, Greater, as_linear
from .exceptions import ModelError, ShapeMismatchError, TypeMismatchError


#### Slots

numeric_dtypes = {
    Gaussian:  (float, int),
    Gamma:     (float, int),
    Bernoulli: (bool, int),
    Discrete:  (int,),
}


class Slot():
    """
    One argument of a factor.

    Arguments:
        name (str): used in error messages.
        arg: a ``VariableRef``, an ``ObservedLookup`` or a constant distribution.
        family: the distribution family of messages on this slot.
    """
    def __init__(self, name:str, arg, family, coef:float=1., dimension:int=None):
        self.name = name
        self.arg = arg
        self.family = family
        self.coef = coef
        self.dimension = dimension

    @property
    def is_variable(self):
        return isinstance(self.arg, VariableRef)

    @property
    def array(self):
        return self.arg.array if self.is_variable else None

    def ranges(self):
        return () if isinstance(self.arg, ExpFamily) else self.arg.ranges()

    def placeholders(self):
        return () if isinstance(self.arg, ExpFamily) else self.arg.placeholders()

    @property
    def data_dependent(self):
        return (not isinstance(self.arg, ExpFamily)) and self.arg.data_dependent

    def fixed(self, ctx):
        """
        The fixed input for each instance (for non-variable slots), and the validity mask.
        """
        if isinstance(self.arg, ExpFamily):
            dist = self.arg.to(ctx.device)
            return dist.expand((ctx.n,)), t.ones(ctx.n, dtype=t.bool, device=ctx.device)

        values, valid = self.arg.gather(ctx)
        if isinstance(values, ExpFamily):
            return values, valid
        return self.point_mass(values, valid)

    def point_mass(self, values, valid):
        if self.family is Bernoulli:
            return Bernoulli.point_mass(values.to(t.bool)), valid
        if self.family is Discrete:
            values = values.to(t.long)
            valid = valid & (0 <= values) & (values < self.dimension)
            values = t.where(valid, values, t.zeros_like(values))
            return Discrete.point_mass(values, self.dimension), valid
        return self.family.point_mass(values.to(DTYPE)), valid

    def __repr__(self):
        return f"{self.name}={self.arg}"


def make_slot(name:str, x, family, coef:float=1., dimension:int=None, allow_constant:bool=True):
    if isinstance(x, VariableArray):
        x = x.full()
    if isinstance(x, ObservedPlaceholder):
        x = x.full()

    if isinstance(x, VariableRef):
        if x.family is not family:
            raise TypeMismatchError(f"{name} must be {family.__name__}, but {x.array.name} is {x.family.__name__}")
        if family is Discrete and dimension is not None and x.array.dimension != dimension:
            raise TypeMismatchError(f"{name} must have dimension {dimension}, but {x.array.name} has dimension {x.array.dimension}")
        return Slot(name, x, family, coef, x.array.dimension if family is Discrete else dimension)

    if isinstance(x, ObservedLookup):
        dtype = x.placeholder.dtype
        if x.placeholder.is_distribution:
            if dtype is not family:
                raise TypeMismatchError(f"{name} must be {family.__name__}, but observed {x.placeholder.name} holds {dtype.__name__} values")
        elif dtype not in numeric_dtypes[family]:
            raise TypeMismatchError(f"{name} must be {family.__name__}, can't use observed {x.placeholder.name} with dtype {dtype.__name__}")
        if x.offset != 0:
            raise ModelError(f"Offset lookups like {x} can only be used as indices")
        return Slot(name, x, family, coef, dimension)

    if not allow_constant:
        raise TypeMismatchError(f"{name} must be a variable or an observed value, got {x!r}")

    if isinstance(x, ExpFamily):
        if type(x) is not family:
            raise TypeMismatchError(f"{name} must be {family.__name__}, got a constant {type(x).__name__}")
        if len(x.batch_shape) != 0:
            raise ShapeMismatchError(f"Constant distributions used as factor arguments must be scalars; {name} has batch shape {tuple(x.batch_shape)}")
        return Slot(name, x, family, coef, dimension)

    if isinstance(x, (bool, *Number, t.Tensor)):
        if family is Bernoulli:
            return Slot(name, Bernoulli.point_mass(bool(x)), family, coef)
        if family is Discrete:
            return Slot(name, Discrete.point_mass(int(x), dimension), family, coef, dimension)
        if isinstance(x, bool):
            raise TypeMismatchError(f"{name} must be {family.__name__}, got a bool")
        return Slot(name, family.point_mass(float(x)), family, coef)

    raise TypeMismatchError(f"Can't use {x!r} as argument {name}")


#### Base class

class Factor():
    """
    Base class for factors.

    Subclasses set ``self.slots`` and implement ``messages``.  ``output_slot`` is the index of the
    slot the factor defines (or None), which is used to order factors in the schedule.
    """
    is_constraint = False
    output_slot = 0

    def __init__(self):
        self.slots = []

    @property
    def kind(self):
        return type(self).__name__

    @property
    def variational_slots(self):
        return ()

    def expand(self):
        """
        The leaf factors this declaration stands for, each with a tuple of gates (see ``Switch``).
        """
        return [(self, ())]

    def ranges(self):
        return ordered_unique([r for s in self.slots for r in s.ranges()])

    def placeholders(self):
        return ordered_unique([p for s in self.slots for p in s.placeholders()])

    def variable_slots(self):
        return [i for (i, s) in enumerate(self.slots) if s.is_variable]

    def writes(self):
        if self.output_slot is None or self.output_slot >= len(self.slots):
            return ()
        slot = self.slots[self.output_slot]
        return (slot.array,) if slot.is_variable else ()

    def reads(self):
        return ordered_unique([s.array for (i, s) in enumerate(self.slots) if s.is_variable and i != self.output_slot])

    def messages(self, inputs:dict, targets:list):
        raise NotImplementedError()

    def __repr__(self):
        return f"{self.kind}({', '.join(repr(s) for s in self.slots)})"


#### Stochastic factors

class Random(Factor):
    """
    ``out ~ prior``, where the prior is a constant distribution or a distribution-valued observed lookup.

    .. code-block:: python

       model.add_factor(Random(RaterPrecisions, Gamma.from_shape_and_rate(10., 1.)))
       model.add_factor(Random(RaterDrawMargins[rater], RaterDrawMarginsPrior[rater]))
    """
    def __init__(self, out, prior):
        super().__init__()
        out_slot = make_slot("out", out, out_family(out), allow_constant=False)
        if isinstance(prior, (bool, *Number)) or (isinstance(prior, ObservedLookup) and not prior.placeholder.is_distribution):
            raise TypeMismatchError(f"Prior of {out} must be a distribution")
        self.slots = [
            out_slot,
            make_slot("prior", prior, out_slot.family, dimension=out_slot.dimension),
        ]

    def messages(self, inputs, targets):
        result = {}
        if 0 in targets:
            result[0] = inputs[1]
        if 1 in targets:
            result[1] = inputs[0]
        return result


class GaussianFromMeanAndPrecision(Factor):
    """
    ``out ~ N(mean, 1/precision)``.

    Messages to ``out`` and ``mean`` are exact when the precision is a point mass (a constant, an observed
    value, or a variable whose belief is a point mass).  Otherwise the expected precision under its
    belief is plugged in, and the precision receives the variational message Gamma(3/2, E[(out-mean)^2]/2).
    """
    def __init__(self, out, mean, precision):
        super().__init__()
        self.slots = [
            make_slot("out", out, Gaussian),
            make_slot("mean", mean, Gaussian),
            make_slot("precision", precision, Gamma),
        ]

    @property
    def variational_slots(self):
        return (2,) if self.slots[2].is_variable else ()

    def messages(self, inputs, targets):
        out, mean, precision = inputs[0], inputs[1], inputs[2]

        point = precision.is_point_mass()
        tau = t.where(point, precision.shape, precision.mean())
        tau = t.where(t.isfinite(tau) & (tau >= 0), tau, t.zeros_like(tau))
        noise = t.reciprocal(tau)

        m_out, v_out = out.mean_and_variance()
        m_mean, v_mean = mean.mean_and_variance()

        result = {}
        if 0 in targets:
            result[0] = Gaussian.from_mean_and_variance(m_mean, v_mean + noise)
        if 1 in targets:
            result[1] = Gaussian.from_mean_and_variance(m_out, v_out + noise)
        if 2 in targets:
            esq = local_square_difference(m_out - m_mean, v_out + v_mean, tau)
            shape, rate = gamma_precision_message(esq)
            msg = Gamma._new(shape, rate)
            result[2] = Gamma.where(point, msg.uniform_like(), msg)
        return result


class DiscreteFromTable(Factor):
    """
    ``out ~ table[parent]``: a conditional probability table with ``table[k, j] = P(out = j | parent = k)``.
    Exact sum-product messages.
    """
    def __init__(self, out, parent, table):
        super().__init__()
        table = as_tensor(table)
        if table.ndim != 2:
            raise ShapeMismatchError(f"Probability table must be a matrix, got shape {tuple(table.shape)}")
        if (table < 0).any():
            raise ValueError("Probability table can't contain negative entries")
        self.table = table / table.sum(-1, keepdim=True)
        self.slots = [
            make_slot("out", out, Discrete, dimension=table.shape[1]),
            make_slot("parent", parent, Discrete, dimension=table.shape[0]),
        ]

    def messages(self, inputs, targets):
        table = self.table.to(inputs[0].device)
        result = {}
        if 0 in targets:
            result[0] = Discrete(contract('nk,kj->nj', inputs[1].probabilities(), table).log())
        if 1 in targets:
            result[1] = Discrete(contract('nj,kj->nk', inputs[0].probabilities(), table).log())
        return result


class Copy(Factor):
    """
    ``out = source`` for any family.  The source can be indexed by observed indices, which makes this a gather.
    """
    def __init__(self, out, source):
        super().__init__()
        out_slot = make_slot("out", out, out_family(out), allow_constant=False)
        self.slots = [
            out_slot,
            make_slot("source", source, out_slot.family, dimension=out_slot.dimension),
        ]

    def messages(self, inputs, targets):
        result = {}
        if 0 in targets:
            result[0] = inputs[1]
        if 1 in targets:
            result[1] = inputs[0]
        return result


class Subarray(Copy):
    """
    ``out[i] = source[indices[i]]``: picks the elements of ``source`` used inside a plate.
    Written as ``Subarray(GamePlayerSkills[game, gamePlayer], PlayerSkills[PlayerIndices[game, gamePlayer]])``.
    """


#### Linear factors

class LinearFactor(Factor):
    """
    Base class for factors involving ``d = sum_k coef_k x_k + constant`` over Gaussian terms.
    Slot 0 is the output; slots 1.. are the terms.
    """
    out_family = Gaussian

    def __init__(self, out, expr):
        super().__init__()
        expr = as_linear(expr)
        if 0 == len(expr.terms):
            raise ModelError(f"{self.kind} needs at least one non-constant term")
        self.constant = expr.constant
        self.slots = [self._out_slot(out)]
        for (k, (coef, term)) in enumerate(expr.terms):
            self.slots.append(make_slot(f"term{k}", term, Gaussian, coef=coef))

    def _out_slot(self, out):
        return make_slot("out", out, self.out_family)

    def term_moments(self, inputs):
        coefs, means, variances = [], [], []
        for k in range(1, len(self.slots)):
            mean, variance = inputs[k].mean_and_variance()
            coefs.append(self.slots[k].coef)
            means.append(mean)
            variances.append(variance)
        return coefs, means, variances

    @staticmethod
    def combine(coefs, means, variances, constant:float, skip:int=None):
        mean = constant
        variance = 0.
        for (k, (c, m, v)) in enumerate(zip(coefs, means, variances)):
            if k != skip:
                mean = mean + c*m
                variance = variance + c*c*v
        return mean, variance


class Plus(LinearFactor):
    """``out = a + b``"""
    def __init__(self, out, a, b):
        super().__init__(out, as_linear(a) + as_linear(b))

    def messages(self, inputs, targets):
        coefs, means, variances = self.term_moments(inputs)
        result = {}
        if 0 in targets:
            result[0] = Gaussian.from_mean_and_variance(*self.combine(coefs, means, variances, self.constant))

        m_out, v_out = inputs[0].mean_and_variance()
        for k in targets:
            if k == 0:
                continue
            j = k-1
            rest_mean, rest_var = self.combine(coefs, means, variances, self.constant, skip=j)
            c = coefs[j]
            result[k] = Gaussian.from_mean_and_variance((m_out - rest_mean) / c, (v_out + rest_var) / (c*c))
        return result


class Difference(Plus):
    """``out = a - b``"""
    def __init__(self, out, a, b):
        LinearFactor.__init__(self, out, as_linear(a) - as_linear(b))


class IsGreater(LinearFactor):
    """
    ``out = (a > b)``, with ``out`` Bernoulli.

    The message to ``out`` is exact.  The messages to the terms project the Gaussian cavity of
    ``a - b``, weighted by the Bernoulli cavity of ``out``, onto a Gaussian by moment matching
    (a truncated Gaussian when ``out`` is known).

    With ``out=None`` the comparison is constrained to be true.
    """
    out_family = Bernoulli

    def __init__(self, out, a, b=0.):
        if isinstance(a, Greater):
            a, b = a.a, a.b
        super().__init__(out, as_linear(a) - as_linear(b))
        if out is None:
            self.is_constraint = True

    def _out_slot(self, out):
        if out is None:
            return make_slot("out", True, Bernoulli)
        return make_slot("out", out, Bernoulli)

    def messages(self, inputs, targets):
        coefs, means, variances = self.term_moments(inputs)
        d_mean, d_var = self.combine(coefs, means, variances, self.constant)
        d_mean = d_mean + t.zeros_like(inputs[0].log_odds)
        d_var = d_var + t.zeros_like(inputs[0].log_odds)

        result = {}
        if 0 in targets:
            result[0] = Bernoulli(log_odds_positive(d_mean, d_var))

        term_targets = [k for k in targets if k != 0]
        if term_targets:
            post_mean, post_var = truncated_moments(d_mean, d_var, inputs[0].probability_true())
            for k in term_targets:
                j = k-1
                mean, variance = linear_update(means[j], variances[j], coefs[j], d_mean, d_var, post_mean, post_var)
                posterior = Gaussian.from_mean_and_variance(mean, variance)
                result[k] = posterior.ratio(inputs[k])
        return result


def out_family(out):
    if isinstance(out, VariableArray):
        return out.family
    if isinstance(out, VariableRef):
        return out.family
    raise TypeMismatchError(f"The output of a factor must be a variable, got {out!r}")


#### Constraints

class Constraint(Factor):
    """
    Base class for constraints: declarations that expand into constraint leaves, and define no variable.
    """
    is_constraint = True
    output_slot = None

    def __init__(self):
        super().__init__()
        self.leaves = []

    def expand(self):
        return [(leaf, ()) for leaf in self.leaves]

    def ranges(self):
        return ordered_unique([r for leaf in self.leaves for r in leaf.ranges()])

    def placeholders(self):
        return ordered_unique([p for leaf in self.leaves for p in leaf.placeholders()])

    def __repr__(self):
        return f"{self.kind}({', '.join(repr(leaf) for leaf in self.leaves)})"


def constant_bernoulli(value:bool, out):
    leaf = Random(out, Bernoulli.point_mass(value))
    leaf.is_constraint = True
    leaf.output_slot = None
    return leaf


def greater_leaf(a, b, value:bool=True):
    leaf = IsGreater(None, a, b)
    if not value:
        leaf.slots[0] = make_slot("out", False, Bernoulli)
    return leaf


class ConstrainTrue(Constraint):
    """
    Constrains a Bernoulli variable, or a comparison ``a > b`` of Gaussian quantities, to be true.
    """
    value = True

    def __init__(self, arg):
        super().__init__()
        if isinstance(arg, Greater):
            self.leaves = [greater_leaf(arg.a, arg.b, self.value)]
        elif isinstance(arg, (VariableArray, VariableRef)):
            if out_family(arg) is not Bernoulli:
                raise TypeMismatchError(f"{self.kind} needs a Bernoulli variable or a comparison, {arg} is {out_family(arg).__name__}")
            self.leaves = [constant_bernoulli(self.value, arg)]
        else:
            raise TypeMismatchError(f"{self.kind} needs a Bernoulli variable or a comparison, got {arg!r}")


class ConstrainFalse(ConstrainTrue):
    value = False


class ConstrainPositive(Constraint):
    """``x > 0`` for a Gaussian quantity (e.g. a difference of two variables)."""
    def __init__(self, arg):
        super().__init__()
        self.leaves = [greater_leaf(arg, 0.)]


class ConstrainBetween(Constraint):
    """``lower < x < upper``; expands to two comparison constraints."""
    def __init__(self, arg, lower, upper):
        super().__init__()
        self.leaves = [greater_leaf(arg, lower), greater_leaf(upper, arg)]


constraint_kinds = {
    "true": ConstrainTrue,
    "false": ConstrainFalse,
    "positive": ConstrainPositive,
    "between": ConstrainBetween,
}


#### Gated factors

class Gate():
    """
    Restricts a leaf factor to the instances where ``expr`` takes a given value,
    or (with ``value_range``) any value in ``[0, size)``.
    """
    def __init__(self, expr, value=None, value_range=None):
        self.expr = expr
        self.value = value
        self.value_range = value_range

    def ranges(self):
        return self.expr.ranges()

    def placeholders(self):
        return self.expr.placeholders()

    def mask(self, ctx):
        values, valid = self.expr.evaluate(ctx)
        if self.value_range is None:
            return valid & (values == int(self.value))
        size = self.value_range if isinstance(self.value_range, int) else ctx.resolved.size(self.value_range)
        return valid & (0 <= values) & (values < size)

    def __repr__(self):
        if self.value_range is None:
            return f"{self.expr} == {self.value!r}"
        return f"{self.expr} in range({self.value_range.name if isinstance(self.value_range, Range) else self.value_range})"


class Switch(Factor):
    """
    Chooses between factors according to a discrete index expression, for each instance.

    ``branches`` is either a dict mapping discriminant values to a factor (or list of factors),
    or a single factor (or list of factors) used for every value in the discriminant's ``value_range``.

    .. code-block:: python

       isDraw = PlayerRanks[game, gamePlayer].eq(PlayerRanks[game, gamePlayer - 1])
       model.add_factor(Switch(isDraw, {
           True:  ConstrainBetween(diff, -margin, margin),
           False: ConstrainTrue(diff > margin),
       }))
    """
    output_slot = None

    def __init__(self, discriminant, branches):
        super().__init__()
        if isinstance(discriminant, ObservedPlaceholder):
            discriminant = discriminant.full()
        if not isinstance(discriminant, (ObservedLookup, Equal)):
            raise TypeMismatchError(f"Switch discriminant must be an integer observed lookup or an equality, got {discriminant!r}")
        if isinstance(discriminant, ObservedLookup) and discriminant.placeholder.dtype not in (int, bool):
            raise TypeMismatchError(f"Switch discriminant {discriminant} must be an integer or bool observed value")
        self.discriminant = discriminant

        if isinstance(branches, dict):
            self.branches = {value: as_factor_list(fs) for (value, fs) in branches.items()}
            self.value_range = None
        else:
            value_range = discriminant.placeholder.value_range if isinstance(discriminant, ObservedLookup) else 2
            if value_range is None:
                raise ModelError(f"Switch on {discriminant} with a single branch needs the observed value to be declared with a value_range")
            self.branches = {None: as_factor_list(branches)}
            self.value_range = value_range

    @property
    def is_constraint(self):
        return all(f.is_constraint for fs in self.branches.values() for f in fs)

    def expand(self):
        result = []
        for (value, factors) in self.branches.items():
            if value is None:
                gate = Gate(self.discriminant, value_range=self.value_range)
            else:
                gate = Gate(self.discriminant, value=value)
            for f in factors:
                for (leaf, gates) in f.expand():
                    result.append((leaf, (gate, *gates)))
        return result

    def ranges(self):
        return ordered_unique([*self.discriminant.ranges(), *[r for fs in self.branches.values() for f in fs for r in f.ranges()]])

    def placeholders(self):
        return ordered_unique([*self.discriminant.placeholders(), *[p for fs in self.branches.values() for f in fs for p in f.placeholders()]])

    def writes(self):
        return ordered_unique([a for fs in self.branches.values() for f in fs for a in f.writes()])

    def __repr__(self):
        return f"Switch({self.discriminant}, {self.branches})"


def as_factor_list(fs):
    if isinstance(fs, Factor):
        return [fs]
    fs = list(fs)
    for f in fs:
        if not isinstance(f, Factor):
            raise TypeMismatchError(f"Switch branches must be factors, got {f!r}")
    return fs
