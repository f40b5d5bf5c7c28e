import logging
import warnings

import torch as t
import torch.nn as nn

from .utils import *
from .defaults import MIN_PRECISION, DEFAULT_ITERATIONS
from .Range import Range
from .Resolver import resolve_ranges, flatten_observed, check_observed_shape, wire_block
from .Schedule import ScheduleBuilder
from .Runtime import InferenceRuntime
from .Stores import ObservedStore
from .exceptions import (
    BindError,
    MissingObservedError,
    QueryError,
    ShapeMismatchError,
    TypeMismatchError,
    UnknownObservedNameError,
)

logger = logging.getLogger(__name__)


class CompiledInferenceAlgorithm(nn.Module):
    """
    Runs inference on a compiled ``Model``.  Returned by ``Model.compile``.

    Bind observed values by name, run a number of sweeps, and query marginals by name:

    .. code-block:: python

       algorithm = model.compile()
       algorithm.bind_observed("N", 3)
       algorithm.bind_observed("y", [0.5, 1.2, 0.9])
       algorithm.execute(10)
       algorithm.marginal("mu")

    The algorithm can be re-run any number of times with new bindings.  The update schedule is cached
    for each distinct set of range sizes; binding a value that determines a range size causes the
    sizes to be resolved again at the next ``execute``.

    Arguments:
        model (Model): the (now frozen) model.
        infer (list[str]): the variables whose marginals can be queried.

    Keyword Arguments:
        min_precision (float): floor used when clamping improper messages.
        record_carried (bool): record the beliefs carried between indices of sequential ranges
            (see ``carried``).
    """
    def __init__(self, model, infer:list, min_precision:float=MIN_PRECISION, record_carried:bool=False):
        super().__init__()

        #A tensor that e.g. moves to GPU when we call `algorithm.to(device='cuda')`.
        self.register_buffer("_device_tensor", t.zeros(()))

        self.model = model
        self.infer = list(infer)
        self.min_precision = min_precision
        self.record_carried = record_carried

        #Put observed values in an ObservedStore so that they are registered properly, and move to device as requested.
        self._observed = ObservedStore()

        self._builder = ScheduleBuilder(model)
        self._schedules = {}
        self._resolved = None
        self._shape_dirty = True
        self._unchecked = set()
        self._runtime = None
        self._stale = True
        self._iterations_done = 0
        self._observers = []

        self._size_names = set(p.name for p in model.size_placeholders())
        self._used_names = set(p.name for p in model.used_placeholders())

    @property
    def device(self):
        return self._device_tensor.device

    @property
    def observed_names(self):
        return list(self.model.observed.keys())

    @property
    def iterations_done(self):
        """Sweeps run since the last ``execute`` started from scratch."""
        return self._iterations_done

    @property
    def clamp_count(self):
        """Number of improper message elements clamped since the last ``execute``."""
        return 0 if self._runtime is None else self._runtime.clamp_count

    @property
    def schedule(self):
        """The schedule used by the last run, or None."""
        if self._resolved is None:
            return None
        return self._schedules.get(self._resolved.signature())

    #### Binding

    def bind_observed(self, name:str, value):
        """
        Binds (or rebinds) the value of an observed placeholder.  The value is copied.

        Shapes are checked immediately when all the relevant range sizes are known, and otherwise
        at the next ``execute``.

        Raises:
            UnknownObservedNameError: ``name`` isn't an observed placeholder of the model.
            ShapeMismatchError: the value doesn't match the placeholder's ranges.
            TypeMismatchError: the values don't match the placeholder's dtype.
        """
        if name not in self.model.observed:
            raise UnknownObservedNameError(f"{name} is not an observed value of {self.model.name}; observed values are {self.observed_names}")
        placeholder = self.model.observed[name]
        value = flatten_observed(placeholder, value, device=self.device)
        checked = self._check_now(value)

        self._observed.set(value)
        if checked:
            self._unchecked.discard(name)
        else:
            self._unchecked.add(name)
        if name in self._size_names:
            self._shape_dirty = True
        self._stale = True

        if name not in self._used_names:
            warnings.warn(f"Observed value {name} is bound, but isn't used by any factor or range of {self.model.name}")

    set_observed_value = bind_observed

    def _check_now(self, value):
        """
        Checks a new value against the current sizes of its ranges, if they can be resolved.
        Returns False if they can't be resolved yet.
        """
        p = value.placeholder
        observed = {**self._observed.to_dict(), p.name: value}
        ranges = [*p.ranges, *([p.value_range] if isinstance(p.value_range, Range) else [])]
        try:
            resolved = resolve_ranges(self.model, observed, ranges=ranges, device=self.device)
        except (MissingObservedError, ShapeMismatchError):
            return False
        check_observed_shape(value, resolved)
        return True

    #### Execution

    def _prepare(self):
        """
        Resolves range sizes (if needed), checks every observed value, wires the factor blocks to the
        current bindings, and builds fresh message state.  Nothing is computed if any of that fails.
        """
        self._runtime = None
        self._iterations_done = 0
        observed = self._observed.to_dict()

        missing = [p.name for p in self.model.used_placeholders() if p.name not in observed]
        if missing:
            raise MissingObservedError(f"Observed value(s) {missing} must be bound before running {self.model.name}")

        if self._shape_dirty or self._resolved is None:
            self._resolved = resolve_ranges(self.model, observed, device=self.device)
            self._unchecked = set(observed.keys())
            self._shape_dirty = False

        for name in sorted(self._unchecked):
            check_observed_shape(observed[name], self._resolved)
        self._unchecked = set()

        schedule = self._get_schedule()
        wirings = [wire_block(block, self._resolved, observed) for block in self._builder.blocks]
        arrays = {
            name: (array, self._resolved.layout(array.ranges).numel)
            for (name, array) in self.model.variables.items()
        }
        self._runtime = InferenceRuntime(
            arrays,
            wirings,
            min_precision=self.min_precision,
            record_carried=self.record_carried,
            observer=self._notify if self._observers else None,
            device=self.device,
        )
        self._stale = False
        return schedule

    def _get_schedule(self):
        signature = self._resolved.signature()
        if signature not in self._schedules:
            self._schedules[signature] = self._builder.build(self._resolved)
        return self._schedules[signature]

    def execute(self, iterations:int=DEFAULT_ITERATIONS):
        """
        Runs exactly ``iterations`` sweeps from the initial message state, using the current bindings.
        Equivalent to a freshly compiled algorithm with the same bindings.
        """
        if not isinstance(iterations, int) or iterations < 0:
            raise ValueError(f"iterations must be a non-negative int, got {iterations!r}")
        schedule = self._prepare()
        self._runtime.run(schedule, iterations)
        self._iterations_done = iterations
        logger.debug("Ran %d sweep(s) of %d op(s); clamped %d element(s)", iterations, len(schedule), self.clamp_count)

    def update(self, iterations:int=1):
        """
        Runs ``iterations`` more sweeps, continuing from the current message state.  If the bindings
        have changed since the last run (or nothing has run yet), this is the same as ``execute``.
        """
        if self._runtime is None or self._stale:
            logger.debug("Bindings changed since the last run, so starting from scratch")
            return self.execute(iterations)
        self._runtime.run(self._get_schedule(), iterations)
        self._iterations_done += iterations

    #### Observers

    def add_observer(self, fn):
        """
        Registers ``fn(algorithm, op)``, called after every op of every sweep (from the next run on).
        """
        self._observers.append(fn)
        if self._runtime is not None:
            self._runtime.observer = self._notify

    def _notify(self, op):
        for fn in self._observers:
            fn(self, op)

    #### Queries

    def marginal(self, name:str, family=None):
        """
        The posterior marginal of a variable array: the normalised product of its incoming messages.

        Returns a scalar distribution for scalar variables, a batched distribution shaped like the
        ranges for rectangular arrays, and a list (one batched distribution per outer index) for jagged
        arrays.  Before any ``execute``, returns the priors.

        Raises:
            QueryError: ``name`` is unknown, observed, or not one of the inferred variables.
            TypeMismatchError: ``family`` is given, and isn't the family of the variable.
        """
        if name in self.model.observed:
            raise QueryError(f"{name} is observed, so it has no marginal")
        if name not in self.model.variables:
            raise QueryError(f"{name} is not a variable of {self.model.name}")
        if name not in self.infer:
            raise QueryError(f"{name} was not among the variables to infer when {self.model.name} was compiled")
        array = self.model.variables[name]
        if family is not None and family is not array.family:
            raise TypeMismatchError(f"{name} is {array.family.__name__}, not {getattr(family, '__name__', family)}")

        if self._runtime is None:
            try:
                self._prepare()
            except (MissingObservedError, ShapeMismatchError, BindError) as e:
                raise QueryError(f"Can't compute the marginal of {name}: {e}") from e

        flat = self._runtime.marginal(name)
        layout = self._resolved.layout(array.ranges)
        if array.is_scalar:
            return flat[0]
        if layout.is_rectangular:
            return flat.reshape(*layout.shape)
        return layout.split(flat)

    def marginals(self):
        return {name: self.marginal(name) for name in self.infer}

    def carried(self, range_name:str):
        """
        The beliefs carried between the indices of a sequential range in the last sweep:
        a dict mapping each index ``i > 0`` to a dict of array name to (flat) belief, taken
        just before the updates for index ``i`` began.
        """
        if not self.record_carried:
            raise QueryError("Carried beliefs are only recorded when compiled with record_carried=True")
        if range_name not in self.model.ranges:
            raise QueryError(f"{range_name} is not a range of {self.model.name}")
        if self._runtime is None:
            return {}
        return dict(self._runtime.carried.get(range_name, {}))
