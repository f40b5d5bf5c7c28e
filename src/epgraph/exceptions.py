"""Exception classes for epgraph.

Every exception raised on purpose by epgraph derives from ``EPGraphError``.
Structural problems (names, shapes, scopes) are raised by the call that
introduces them and leave the model or algorithm in its last valid state.
``ImproperMessageError`` is the one recoverable error: the inference runtime
catches it and clamps the offending message.
"""


class EPGraphError(Exception):
    """Base class for all exceptions in the epgraph package."""


class ModelError(EPGraphError):
    """Raised when a model declaration is invalid."""


class DuplicateNameError(ModelError):
    """Raised when a range, variable or observed placeholder reuses a name."""


class ShapeMismatchError(ModelError):
    """Raised when a value, range size or index disagrees with a declared shape.

    Raised at declaration time (e.g. a jagged range indexed without its parent),
    at bind time (an observed array of the wrong length) and at shape
    resolution time (a size array whose length differs from its parent range).
    """


class ScopeError(ShapeMismatchError):
    """Raised when a factor references a range outside its enclosing ranges,
    or a range/variable that was not declared in the same model."""


class CyclicDependencyError(ShapeMismatchError):
    """Raised when factor instances of an unordered range depend on each other
    within one sweep (e.g. ``x[i]`` defined from ``x[i - 1]``). Mark the range
    sequential to process it as a chain."""


class TypeMismatchError(EPGraphError, TypeError):
    """Raised when a distribution family does not match the one registered for
    a variable or expected by a factor slot."""


class BindError(EPGraphError):
    """Raised when an observed value cannot be bound."""


class UnknownObservedNameError(BindError, KeyError):
    """Raised when binding a name that is not a declared observed placeholder."""

    def __str__(self):
        return Exception.__str__(self)


class QueryError(EPGraphError):
    """Raised when a marginal is requested for a name that can't be queried."""


class ExecutionError(EPGraphError):
    """Raised when running the schedule fails in a way that can't be recovered
    locally. The algorithm needs fresh observed bindings before retrying."""


class MissingObservedError(ExecutionError):
    """Raised when a value needed for execution was never bound."""


class ImproperMessageError(EPGraphError, ArithmeticError):
    """Raised when a message or cavity has negative precision (or is NaN).

    :param message: Error message
    :param result: the improper distribution that was produced
    :param mask: boolean tensor over the batch, True where improper
    """

    def __init__(self, message, result=None, mask=None):
        super().__init__(message)
        self.result = result
        self.mask = mask
