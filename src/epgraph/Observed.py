import torch as t

from .utils import *
from .dist import ExpFamily, family_name
from .Range import IndexExpr, Range, Shifted
from .exceptions import ModelError, ShapeMismatchError, TypeMismatchError

observed_dtypes = (int, float, bool)


def as_index_expr(x):
    if isinstance(x, IndexExpr):
        return x
    if isinstance(x, int) and not isinstance(x, bool):
        return ConstantIndex(x)
    raise TypeMismatchError(f"Can't use {x!r} as an index; expected a Range, an offset range, an integer observed lookup or an int")


class ConstantIndex(IndexExpr):
    def __init__(self, value:int):
        self.value = value

    def evaluate(self, ctx):
        values = t.full((ctx.n,), self.value, dtype=t.long, device=ctx.device)
        return values, t.ones_like(values, dtype=t.bool)

    def __repr__(self):
        return str(self.value)


class ObservedPlaceholder():
    """
    A named input whose value is supplied with ``CompiledInferenceAlgorithm.bind_observed`` before
    each run.  Don't construct these directly; use ``Model.declare_observed``.

    Arguments:
        name (str)
        ranges (tuple[Range]):
            The shape: one dimension per range (a jagged range gives a jagged value, e.g. a list of lists).
        dtype:
            ``int``, ``float``, ``bool``, or a distribution family such as ``Gamma`` for observed priors.
        value_range (Range or int):
            For integer observed values used as indices or switch discriminants: the values must
            lie in ``[0, size)``.
    """
    def __init__(self, name:str, ranges:tuple=(), dtype=int, value_range=None, model=None):
        if not (dtype in observed_dtypes or (isinstance(dtype, type) and issubclass(dtype, ExpFamily))):
            raise TypeMismatchError(f"dtype of observed {name} must be int, float, bool or a distribution family, got {dtype!r}")
        if value_range is not None:
            if dtype is not int:
                raise TypeMismatchError(f"Only integer observed values can have a value_range; {name} has dtype {dtype.__name__}")
            if not isinstance(value_range, (Range, int)) or isinstance(value_range, bool):
                raise TypeMismatchError(f"value_range of {name} must be a Range or an int")

        self.name = name
        self.ranges = tuple(ranges)
        self.dtype = dtype
        self.value_range = value_range
        self.model = model

    @property
    def is_distribution(self):
        return self.dtype not in observed_dtypes

    @property
    def is_scalar(self):
        return 0 == len(self.ranges)

    def lookup(self):
        return ObservedLookup(self, ())

    def full(self):
        """The whole array, indexed by its own ranges."""
        return ObservedLookup(self, self.ranges)

    def __getitem__(self, idx):
        return ObservedLookup(self, idx if isinstance(idx, tuple) else (idx,))

    def __add__(self, k):
        return self.lookup() + k

    def __sub__(self, k):
        return self.lookup() - k

    def eq(self, other):
        return self.lookup().eq(other)

    def __repr__(self):
        return f"ObservedPlaceholder({self.name}, ranges={[r.name for r in self.ranges]}, dtype={self.dtype.__name__})"


class ObservedLookup(IndexExpr):
    """
    ``placeholder[i, j] + offset``: the value of an observed array for each instance.

    Integer lookups can be used as indices (``PlayerSkills[PlayerIndices[game, gamePlayer]]``).
    Float, bool and distribution lookups can be used as fixed factor arguments.
    """
    data_dependent = True

    def __init__(self, placeholder:ObservedPlaceholder, indices:tuple, offset:int=0):
        indices = tuple(as_index_expr(i) for i in indices)
        if len(placeholder.ranges) < len(indices):
            raise ShapeMismatchError(f"Observed {placeholder.name} has {len(placeholder.ranges)} dimension(s), but was indexed with {len(indices)}")
        self.placeholder = placeholder
        self.indices = indices
        self.offset = offset

    @property
    def complete(self):
        return len(self.indices) == len(self.placeholder.ranges)

    def __getitem__(self, idx):
        if self.offset != 0:
            raise ModelError(f"Can't index into {self}")
        idx = idx if isinstance(idx, tuple) else (idx,)
        return ObservedLookup(self.placeholder, (*self.indices, *idx))

    def _shift(self, k):
        if self.placeholder.dtype is not int:
            raise TypeMismatchError(f"Can only offset integer observed values; {self.placeholder.name} has dtype {self.placeholder.dtype.__name__}")
        if not isinstance(k, int) or isinstance(k, bool):
            raise TypeMismatchError(f"Can only offset {self.placeholder.name} by an int")
        return ObservedLookup(self.placeholder, self.indices, self.offset + k)

    def __add__(self, k):
        return self._shift(k)

    def __sub__(self, k):
        return self._shift(-k)

    def eq(self, other):
        return Equal(self, other)

    def ranges(self):
        return ordered_unique([r for i in self.indices for r in i.ranges()])

    def placeholders(self):
        return ordered_unique([self.placeholder, *[p for i in self.indices for p in i.placeholders()]])

    def gather(self, ctx):
        """
        Returns the raw observed values for each instance (a tensor, or a batched distribution for
        distribution-valued placeholders) along with the validity mask.
        """
        if not self.complete:
            raise ShapeMismatchError(f"{self} must be indexed by all {len(self.placeholder.ranges)} dimension(s) of {self.placeholder.name}")
        cols = []
        valid = t.ones(ctx.n, dtype=t.bool, device=ctx.device)
        for index in self.indices:
            col, ok = index.evaluate(ctx)
            cols.append(col)
            valid = valid & ok

        flat, ok = ctx.layout(self.placeholder.ranges).flat_index(cols, ctx.n)
        valid = valid & ok

        values = ctx.values(self.placeholder)
        numel = values.numel() if isinstance(values, ExpFamily) else values.shape[0]
        if numel == 0:
            #Nothing to gather from, so every instance is invalid.
            invalid = t.zeros_like(valid)
            if isinstance(values, ExpFamily):
                nat = [t.zeros((ctx.n, *p.shape[1:]), dtype=p.dtype, device=ctx.device) for p in values.natural()]
                return type(values).from_natural(*nat), invalid
            return t.zeros(ctx.n, dtype=values.dtype, device=ctx.device), invalid
        flat = t.where(valid, flat, t.zeros_like(flat))
        return values[flat], valid

    def evaluate(self, ctx):
        if self.placeholder.dtype not in (int, bool):
            raise TypeMismatchError(f"Only integer or bool observed values can be used as indices, {self.placeholder.name} has dtype {family_name(self.placeholder.dtype)}")
        values, valid = self.gather(ctx)
        return values.to(t.long) + self.offset, valid

    def __repr__(self):
        idx = "".join(f"[{i.name if isinstance(i, Range) else i}]" for i in self.indices)
        offset = "" if self.offset == 0 else (f" + {self.offset}" if self.offset > 0 else f" - {-self.offset}")
        return f"{self.placeholder.name}{idx}{offset}"


class Equal(IndexExpr):
    """
    Elementwise equality of two integer index expressions, e.g.
    ``PlayerRanks[game, gamePlayer].eq(PlayerRanks[game, gamePlayer - 1])``.

    Evaluates to 1 where equal and 0 otherwise, so it can be used as a switch discriminant
    (with branches ``True`` and ``False``) or as a condition.
    """
    def __init__(self, a, b):
        self.a = as_index_expr(a)
        self.b = as_index_expr(b)

    @property
    def data_dependent(self):
        return self.a.data_dependent or self.b.data_dependent

    def ranges(self):
        return ordered_unique([*self.a.ranges(), *self.b.ranges()])

    def placeholders(self):
        return ordered_unique([*self.a.placeholders(), *self.b.placeholders()])

    def evaluate(self, ctx):
        va, oka = self.a.evaluate(ctx)
        vb, okb = self.b.evaluate(ctx)
        return (va == vb).to(t.long), oka & okb

    def mask(self, ctx):
        values, valid = self.evaluate(ctx)
        return (values == 1) & valid

    def __repr__(self):
        return f"({self.a} == {self.b})"
