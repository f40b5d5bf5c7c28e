import torch as t

from .utils import *
from .dist import ExpFamily, Gaussian, Discrete, family_name
from .Range import IndexExpr, Range
from .Observed import ObservedPlaceholder, ObservedLookup, as_index_expr
from .exceptions import ModelError, ShapeMismatchError, TypeMismatchError


class VariableArray():
    """
    A named array of random variables, one for each combination of its ranges.

    Don't construct these directly; use ``Model.declare_variable_array`` or ``Model.declare_variable``.
    Index with ranges or index expressions to refer to elements inside factors:

    .. code-block:: python

       skills = model.declare_variable_array("PlayerSkills", Gaussian, (player,))
       skills[PlayerIndices[game, gamePlayer]]
    """
    def __init__(self, name:str, family, ranges:tuple=(), dimension:int=None, model=None):
        if not (isinstance(family, type) and issubclass(family, ExpFamily)):
            raise TypeMismatchError(f"Family of {name} must be a distribution family such as Gaussian, got {family!r}")
        if family is Discrete:
            if not isinstance(dimension, int) or dimension < 1:
                raise ModelError(f"Discrete variable {name} needs a positive integer dimension")
        elif dimension is not None:
            raise ModelError(f"Only Discrete variables take a dimension, but {name} is {family.__name__}")

        for r in ranges:
            if r.is_jagged and r.parent not in ranges[:ranges.index(r)]:
                raise ShapeMismatchError(f"{name} is indexed by jagged range {r.name}, so must be indexed by its parent {r.parent.name} first")

        self.name = name
        self.family = family
        self.ranges = tuple(ranges)
        self.dimension = dimension
        self.model = model

    @property
    def is_scalar(self):
        return 0 == len(self.ranges)

    @property
    def is_jagged(self):
        return any(r.is_jagged for r in self.ranges)

    def __getitem__(self, idx):
        return VariableRef(self, idx if isinstance(idx, tuple) else (idx,))

    def full(self):
        return VariableRef(self, self.ranges)

    def __neg__(self):
        return -self.full()

    def __add__(self, other):
        return self.full() + other

    def __radd__(self, other):
        return other + self.full()

    def __sub__(self, other):
        return self.full() - other

    def __rsub__(self, other):
        return other - self.full()

    def __gt__(self, other):
        return self.full() > other

    def __lt__(self, other):
        return self.full() < other

    def __repr__(self):
        return f"VariableArray({self.name}, {self.family.__name__}, ranges={[r.name for r in self.ranges]})"

    __hash__ = object.__hash__


class VariableRef():
    """
    ``array[i, j]``: refers to one element of a variable array for each factor instance.
    """
    def __init__(self, array:VariableArray, indices:tuple):
        indices = tuple(as_index_expr(i) for i in indices)
        if len(array.ranges) < len(indices):
            raise ShapeMismatchError(f"{array.name} has {len(array.ranges)} dimension(s), but was indexed with {len(indices)}")
        self.array = array
        self.indices = indices

    @property
    def family(self):
        return self.array.family

    @property
    def complete(self):
        return len(self.indices) == len(self.array.ranges)

    @property
    def data_dependent(self):
        return any(i.data_dependent for i in self.indices)

    def __getitem__(self, idx):
        idx = idx if isinstance(idx, tuple) else (idx,)
        return VariableRef(self.array, (*self.indices, *idx))

    def ranges(self):
        return ordered_unique([r for i in self.indices for r in i.ranges()])

    def placeholders(self):
        return ordered_unique([p for i in self.indices for p in i.placeholders()])

    def flat_index(self, ctx):
        """
        Flat element index into the array for each instance, and the validity mask.
        """
        if not self.complete:
            raise ShapeMismatchError(f"{self} must be indexed by all {len(self.array.ranges)} dimension(s) of {self.array.name}")
        cols = []
        valid = t.ones(ctx.n, dtype=t.bool, device=ctx.device)
        for index in self.indices:
            col, ok = index.evaluate(ctx)
            cols.append(col)
            valid = valid & ok
        flat, ok = ctx.layout(self.array.ranges).flat_index(cols, ctx.n)
        return flat, valid & ok

    def __neg__(self):
        return -LinearExpr.from_term(self)

    def __add__(self, other):
        return LinearExpr.from_term(self) + other

    def __radd__(self, other):
        return other + LinearExpr.from_term(self)

    def __sub__(self, other):
        return LinearExpr.from_term(self) - other

    def __rsub__(self, other):
        return as_linear(other) - LinearExpr.from_term(self)

    def __gt__(self, other):
        return Greater(self, other)

    def __lt__(self, other):
        return Greater(other, self)

    def __repr__(self):
        idx = "".join(f"[{i.name if isinstance(i, Range) else i}]" for i in self.indices)
        return f"{self.array.name}{idx}"


def check_gaussian_term(x):
    if isinstance(x, VariableRef):
        family = x.family
    elif isinstance(x, ObservedLookup):
        if x.placeholder.dtype is float or x.placeholder.dtype is int:
            return
        family = x.placeholder.dtype
    elif isinstance(x, ExpFamily):
        family = type(x)
    else:
        raise TypeMismatchError(f"Can't use {x!r} in a sum of Gaussian variables")
    if family is not Gaussian:
        raise TypeMismatchError(f"Only Gaussian quantities can be added or compared, {x} is {family_name(family)}")


class LinearExpr():
    """
    ``sum_k coef_k * term_k + constant``, where each term is a Gaussian variable reference,
    a float/Gaussian observed lookup, or a constant Gaussian.

    Built by arithmetic on ``VariableRef``s (``perf[gamePlayer - 1] - perf[gamePlayer]``) and
    consumed by the linear factors (``Plus``, ``Difference``, ``IsGreater``) and the constraints.
    """
    def __init__(self, terms=(), constant:float=0.):
        for (_, term) in terms:
            check_gaussian_term(term)
        self.terms = list(terms)
        self.constant = float(constant)

    @classmethod
    def from_term(cls, term, coef:float=1.):
        return cls([(coef, term)])

    def __neg__(self):
        return LinearExpr([(-c, x) for (c, x) in self.terms], -self.constant)

    def __add__(self, other):
        other = as_linear(other)
        return LinearExpr([*self.terms, *other.terms], self.constant + other.constant)

    def __radd__(self, other):
        return as_linear(other) + self

    def __sub__(self, other):
        return self + (-as_linear(other))

    def __rsub__(self, other):
        return as_linear(other) - self

    def __mul__(self, k):
        if not isinstance(k, Number) or isinstance(k, bool):
            raise TypeMismatchError("Linear expressions can only be scaled by a constant")
        return LinearExpr([(k*c, x) for (c, x) in self.terms], k*self.constant)

    __rmul__ = __mul__

    def __gt__(self, other):
        return Greater(self, other)

    def __lt__(self, other):
        return Greater(other, self)

    def ranges(self):
        return ordered_unique([r for (_, x) in self.terms if not isinstance(x, ExpFamily) for r in x.ranges()])

    def placeholders(self):
        return ordered_unique([p for (_, x) in self.terms if not isinstance(x, ExpFamily) for p in x.placeholders()])

    def __repr__(self):
        parts = [f"{c:g}*{x}" for (c, x) in self.terms]
        if self.constant != 0. or 0 == len(parts):
            parts.append(f"{self.constant:g}")
        return " + ".join(parts)


def as_linear(x):
    if isinstance(x, LinearExpr):
        return x
    if isinstance(x, VariableArray):
        x = x.full()
    if isinstance(x, ObservedPlaceholder):
        x = x.full()
    if isinstance(x, (VariableRef, ObservedLookup, ExpFamily)):
        return LinearExpr.from_term(x)
    if isinstance(x, Number) and not isinstance(x, bool):
        return LinearExpr((), x)
    raise TypeMismatchError(f"Can't use {x!r} as a Gaussian quantity")


class Greater():
    """
    ``a > b`` for Gaussian quantities.  Pass to ``IsGreater``, ``ConstrainTrue`` or ``ConstrainFalse``.
    """
    def __init__(self, a, b):
        self.a = as_linear(a)
        self.b = as_linear(b)

    @property
    def difference(self):
        return self.a - self.b

    def __repr__(self):
        return f"({self.a}) > ({self.b})"
