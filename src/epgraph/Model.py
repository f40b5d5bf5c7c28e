import logging
from contextlib import contextmanager

from .utils import *
from .defaults import MIN_PRECISION
from .Range import Range, IndexCondition
from .Observed import ObservedPlaceholder, ObservedLookup, Equal
from .Variable import VariableArray
from .factors import Factor, constraint_kinds
from .exceptions import DuplicateNameError, ModelError, ScopeError, ShapeMismatchError, TypeMismatchError

logger = logging.getLogger(__name__)


class FactorDeclaration():
    """
    A factor as declared: the factor itself, plus the ranges it's replicated over, the conditions
    active when it was added, and its position in declaration order.
    """
    def __init__(self, factor:Factor, ranges:tuple, conditions:tuple, index:int, name:str):
        self.factor = factor
        self.ranges = ranges
        self.conditions = conditions
        self.index = index
        self.name = name

    def __repr__(self):
        return f"FactorDeclaration({self.name}, ranges={[r.name for r in self.ranges]})"


class Model():
    """
    Declarative builder for a factor graph.  Nothing is computed until the model is compiled.

    .. code-block:: python

       model = Model()
       n = model.declare_range("n", model.declare_observed("N"))
       y = model.declare_observed("y", (n,), dtype=float)
       mu = model.declare_variable("mu", Gaussian)

       model.add_factor(GaussianFromMeanAndPrecision(mu, 0., 1.))
       with model.foreach(n):
           model.add_factor(GaussianFromMeanAndPrecision(y[n], mu, 1.))

       algorithm = model.compile()

    Names are shared between ranges, variable arrays and observed placeholders, and must be unique.
    """
    def __init__(self, name:str="Model"):
        self.name = name
        self.ranges = {}
        self.variables = {}
        self.observed = {}
        self.factors = []
        self.compiled = False

        self._foreach = []
        self._conditions = []

    #### Checks

    def _check_mutable(self):
        if self.compiled:
            raise ModelError(f"{self.name} has been compiled, so can't be modified")

    def _check_new_name(self, name:str):
        check_name(name)
        if name in self.ranges or name in self.variables or name in self.observed:
            raise DuplicateNameError(f"{name} is already declared in {self.name}")

    def _check_own(self, x):
        if x.model is not self:
            raise ScopeError(f"{x} was not declared in {self.name}")

    def _check_ranges(self, ranges, what:str):
        ranges = tuple(ranges)
        for r in ranges:
            if not isinstance(r, Range):
                raise TypeMismatchError(f"Ranges of {what} must be Range objects, got {r!r}")
            self._check_own(r)
        dups = list_duplicates(ranges)
        if 0 != len(dups):
            raise ShapeMismatchError(f"{what} uses {[r.name for r in dups]} more than once")
        for (i, r) in enumerate(ranges):
            if r.is_jagged and r.parent not in ranges[:i]:
                raise ScopeError(f"{what} uses jagged range {r.name} without its parent {r.parent.name} before it")
        return ranges

    #### Declarations

    def declare_range(self, name:str, size, sequential:bool=False):
        """
        Declares a range (plate).  ``size`` is an int, a scalar integer observed placeholder,
        ``placeholder +/- k``, or an observed array indexed by an outer range (a jagged range).
        """
        self._check_mutable()
        self._check_new_name(name)
        for p in ([] if isinstance(size, int) else _size_placeholders(size)):
            self._check_own(p)
        r = Range(name, size, sequential=sequential, model=self)
        if r.parent is not None:
            self._check_own(r.parent)
        self.ranges[name] = r
        return r

    def mark_sequential(self, r:Range):
        """
        Marks a range as sequential: its indices are processed in order, one after the other.
        """
        self._check_mutable()
        self._check_own(r)
        r.sequential = True

    def declare_variable_array(self, name:str, family, ranges=(), dimension:int=None):
        self._check_mutable()
        self._check_new_name(name)
        ranges = self._check_ranges(ranges, name)
        v = VariableArray(name, family, ranges, dimension=dimension, model=self)
        self.variables[name] = v
        return v

    def declare_variable(self, name:str, family, dimension:int=None):
        return self.declare_variable_array(name, family, (), dimension=dimension)

    def declare_observed(self, name:str, ranges=(), dtype=int, value_range=None):
        """
        Declares an observed placeholder, whose value is bound by name before running inference.

        Keyword Arguments:
            ranges (tuple[Range]): the shape of the value.
            dtype: ``int``, ``float``, ``bool``, or a distribution family (e.g. ``Gamma``) for observed priors.
            value_range (Range or int): the values of an integer observed lie in ``[0, size)``.
        """
        self._check_mutable()
        self._check_new_name(name)
        ranges = self._check_ranges(ranges, name)
        if isinstance(value_range, Range):
            self._check_own(value_range)
            if value_range.is_jagged:
                raise ShapeMismatchError(f"value_range of {name} can't be the jagged range {value_range.name}")
        p = ObservedPlaceholder(name, ranges, dtype=dtype, value_range=value_range, model=self)
        self.observed[name] = p
        return p

    #### Blocks

    @contextmanager
    def foreach(self, *ranges):
        """
        Factors added inside ``with model.foreach(r1, r2):`` are replicated over ``r1`` and ``r2``
        (in addition to any enclosing ``foreach``).
        """
        ranges = self._check_ranges([*self._foreach, *ranges], "foreach")[len(self._foreach):]
        self._foreach.extend(ranges)
        try:
            yield ranges[0] if len(ranges) == 1 else ranges
        finally:
            del self._foreach[len(self._foreach) - len(ranges):]

    @contextmanager
    def condition(self, cond):
        """
        Factors added inside ``with model.condition(gamePlayer > 0):`` are only active for the
        instances where the condition holds.
        """
        if not isinstance(cond, (IndexCondition, Equal)):
            raise TypeMismatchError(f"Conditions must be comparisons of ranges (e.g. `r > 0`) or equalities, got {cond!r}")
        self._conditions.append(cond)
        try:
            yield cond
        finally:
            self._conditions.pop()

    #### Factors

    def add_factor(self, factor:Factor, enclosing_ranges=None, name:str=None):
        """
        Adds a factor, replicated over ``enclosing_ranges`` (by default, the ranges of the enclosing
        ``foreach`` blocks), and subject to the enclosing ``condition`` blocks.
        """
        self._check_mutable()
        if not isinstance(factor, Factor):
            raise TypeMismatchError(f"Expected a factor, got {factor!r}")

        ranges = tuple(self._foreach) if enclosing_ranges is None else self._check_ranges(enclosing_ranges, factor.kind)
        conditions = tuple(self._conditions)
        index = len(self.factors)
        name = f"{factor.kind}#{index}" if name is None else name

        used_ranges = [*factor.ranges(), *[r for c in conditions for r in c.ranges()]]
        placeholders = [*factor.placeholders(), *[p for c in conditions for p in c.placeholders()]]
        for (leaf, gates) in factor.expand():
            for slot in leaf.slots:
                if slot.is_variable:
                    self._check_own(slot.array)
                    if not slot.arg.complete:
                        raise ShapeMismatchError(f"{name}: {slot.arg} must be indexed by all {len(slot.array.ranges)} dimension(s) of {slot.array.name}")
                elif isinstance(slot.arg, ObservedLookup) and not slot.arg.complete:
                    raise ShapeMismatchError(f"{name}: {slot.arg} must be indexed by all {len(slot.arg.placeholder.ranges)} dimension(s) of {slot.arg.placeholder.name}")
            for gate in gates:
                used_ranges.extend(gate.ranges())
                placeholders.extend(gate.placeholders())

        for p in placeholders:
            self._check_own(p)
        for r in ordered_unique(used_ranges):
            self._check_own(r)
            if r not in ranges:
                raise ScopeError(f"{name} uses range {r.name}, which is not one of its enclosing ranges {[r.name for r in ranges]}")

        decl = FactorDeclaration(factor, ranges, conditions, index, name)
        self.factors.append(decl)
        logger.debug("Added %s over %s", name, [r.name for r in ranges])
        return decl

    def add_constraint(self, kind, arg, *params):
        """
        ``model.add_constraint("between", x, lower, upper)`` is the same as
        ``model.add_factor(ConstrainBetween(x, lower, upper))``.  ``kind`` is one of
        ``"true"``, ``"false"``, ``"positive"``, ``"between"``, or a constraint class.
        """
        if isinstance(kind, str):
            if kind not in constraint_kinds:
                raise ModelError(f"Unknown constraint {kind}; expected one of {list(constraint_kinds.keys())}")
            kind = constraint_kinds[kind]
        return self.add_factor(kind(arg, *params))

    #### Queries

    def size_placeholders(self):
        """Observed placeholders that determine range sizes."""
        return ordered_unique([p for r in self.ranges.values() for p in r.size_placeholders()])

    def used_placeholders(self):
        result = list(self.size_placeholders())
        for decl in self.factors:
            result.extend(decl.factor.placeholders())
            result.extend(p for c in decl.conditions for p in c.placeholders())
            for (_, gates) in decl.factor.expand():
                result.extend(p for g in gates for p in g.placeholders())
        return ordered_unique(result)

    def compile(self, infer=None, min_precision:float=MIN_PRECISION, record_carried:bool=False):
        """
        Compiles the model into a ``CompiledInferenceAlgorithm``.  The model can't be modified afterwards.

        Keyword Arguments:
            infer (list): names (or arrays) of the variables whose marginals can be queried.  Defaults to all.
            min_precision (float): floor used when clamping improper messages.
            record_carried (bool): record the beliefs carried between the indices of sequential ranges.
        """
        from .CompiledAlgorithm import CompiledInferenceAlgorithm

        if infer is None:
            infer = list(self.variables.keys())
        else:
            infer = [v.name if isinstance(v, VariableArray) else v for v in infer]
            for name in infer:
                if name not in self.variables:
                    raise ModelError(f"Can't infer {name}: it isn't a variable declared in {self.name}")

        logger.debug("Compiling %s with %d factor(s), inferring %s", self.name, len(self.factors), infer)
        algorithm = CompiledInferenceAlgorithm(self, infer, min_precision=min_precision, record_carried=record_carried)
        self.compiled = True
        return algorithm


def _size_placeholders(size):
    if isinstance(size, ObservedPlaceholder):
        return [size]
    if isinstance(size, ObservedLookup):
        return size.placeholders()
    return []
