import operator
import torch as t

from .utils import *
from .exceptions import ModelError, ShapeMismatchError, TypeMismatchError


class IndexExpr():
    """
    Anything that can be used as an index: a ``Range``, ``range + k``, an observed lookup, etc.

    Index expressions are evaluated against an index context (see ``Resolver.IndexContext``),
    which provides, for every instance of a factor block, the current value of each enclosing range.
    ``evaluate`` returns two tensors over the instances: the (long) index values, and a bool mask
    that's False wherever the expression can't be evaluated (e.g. a lookup out of range).
    """
    #True if the value depends on observed data, rather than just range arithmetic.
    data_dependent = False

    def ranges(self):
        return ()

    def placeholders(self):
        return ()

    def evaluate(self, ctx):
        raise NotImplementedError()


class Range(IndexExpr):
    """
    A named index set (a plate).

    Don't construct these directly; use ``Model.declare_range``.

    ``size`` can be:

    * an ``int``,
    * a scalar integer observed placeholder (``GameCount``), optionally offset (``ThresholdCount - 1``),
    * an observed array indexed by an outer range (``GamePlayerCount[game]``), which makes this range
      jagged: its size depends on the index of the parent range.
    """
    def __init__(self, name:str, size, sequential:bool=False, model=None):
        from .Observed import ObservedPlaceholder, ObservedLookup

        self.name = name
        self.model = model
        self.sequential = sequential
        self.parent = None

        if isinstance(size, bool):
            raise TypeMismatchError(f"Size of range {name} must be an int or an integer observed value, not a bool")

        if isinstance(size, int):
            if size < 0:
                raise ShapeMismatchError(f"Size of range {name} must be non-negative, got {size}")
            self.size_source = size
        else:
            if isinstance(size, ObservedPlaceholder):
                size = size.lookup()
            if not isinstance(size, ObservedLookup):
                raise TypeMismatchError(f"Size of range {name} must be an int or an integer observed value, got {type(size).__name__}")
            if size.placeholder.dtype is not int:
                raise TypeMismatchError(f"Range {name} is sized by {size.placeholder.name}, which must be declared with dtype=int")

            if len(size.indices) == 0 and size.placeholder.is_scalar:
                pass
            elif len(size.indices) == 1 and isinstance(size.indices[0], Range) and size.placeholder.ranges == size.indices:
                self.parent = size.indices[0]
                if self.parent.parent is not None:
                    raise ShapeMismatchError(f"Range {name} is sized by a lookup over {self.parent.name}, which is itself jagged; only one level of jaggedness is supported")
            else:
                raise ShapeMismatchError(f"Range {name} must be sized by a scalar observed value or an observed array indexed by a single outer range")
            self.size_source = size

    @property
    def is_jagged(self):
        return self.parent is not None

    @property
    def is_sequential(self):
        """
        True if the range is processed one index at a time: either it's marked sequential, or it's
        nested in (i.e. jagged over) a sequential range.
        """
        return self.sequential or (self.parent is not None and self.parent.is_sequential)

    @property
    def is_fixed_size(self):
        return isinstance(self.size_source, int)

    def size_placeholders(self):
        return () if self.is_fixed_size else self.size_source.placeholders()

    def __repr__(self):
        return f"Range({self.name})"

    def ranges(self):
        return (self,)

    def evaluate(self, ctx):
        values = ctx.cols[self]
        return values, t.ones_like(values, dtype=t.bool)

    def __add__(self, k):
        return Shifted(self, k)

    def __sub__(self, k):
        return Shifted(self, -k)

    def __gt__(self, k):
        return IndexCondition(self, ">", k)

    def __ge__(self, k):
        return IndexCondition(self, ">=", k)

    def __lt__(self, k):
        return IndexCondition(self, "<", k)

    def __le__(self, k):
        return IndexCondition(self, "<=", k)

    __hash__ = object.__hash__


class Shifted(IndexExpr):
    """
    ``range + offset``.  Instances where the shifted index falls outside the indexed dimension
    are inactive for the factor using it.
    """
    def __init__(self, range:Range, offset:int):
        if not isinstance(offset, int) or isinstance(offset, bool):
            raise TypeMismatchError(f"Can only shift range {range.name} by an int, got {type(offset).__name__}")
        self.range = range
        self.offset = offset

    def __add__(self, k):
        return Shifted(self.range, self.offset + k)

    def __sub__(self, k):
        return Shifted(self.range, self.offset - k)

    def ranges(self):
        return (self.range,)

    def evaluate(self, ctx):
        values, valid = self.range.evaluate(ctx)
        return values + self.offset, valid

    def __repr__(self):
        sign = "+" if self.offset >= 0 else "-"
        return f"{self.range.name} {sign} {abs(self.offset)}"


comparison_ops = {
    ">":  operator.gt,
    ">=": operator.ge,
    "<":  operator.lt,
    "<=": operator.le,
}


class IndexCondition():
    """
    A comparison between an index expression and an int, e.g. ``gamePlayer > 0``.
    Used with ``Model.condition`` to switch factor instances on and off.
    """
    def __init__(self, expr:IndexExpr, op:str, value:int):
        if op not in comparison_ops:
            raise ModelError(f"Unknown comparison {op}")
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeMismatchError(f"Can only compare {expr} with an int, got {type(value).__name__}")
        self.expr = expr
        self.op = op
        self.value = value

    def ranges(self):
        return self.expr.ranges()

    def placeholders(self):
        return self.expr.placeholders()

    def mask(self, ctx):
        values, valid = self.expr.evaluate(ctx)
        return comparison_ops[self.op](values, self.value) & valid

    def __repr__(self):
        return f"{self.expr} {self.op} {self.value}"
