"""
Turns ranges with (possibly data-dependent, possibly jagged) sizes into concrete index spaces, and
evaluates the index expressions of each factor block against the current observed values.

Every variable array and observed placeholder is stored flat: element ``e`` of an array over ranges
``(r_1, ..., r_k)`` is the ``e``'th index tuple in row-major order.  For jagged ranges, the number of
inner indices depends on the outer index, which is why everything is flat rather than a dense tensor.
"""
import logging
import math
import torch as t

from .utils import *
from .defaults import DTYPE
from .dist import ExpFamily, family_name
from .Range import Range
from .exceptions import BindError, MissingObservedError, ShapeMismatchError, TypeMismatchError

logger = logging.getLogger(__name__)


class Layout():
    """
    Row-major enumeration of the index tuples of a list of ranges.

    Built level by level: at level ``k`` there's one "prefix" for each index tuple of the first ``k``
    ranges, and ``sizes[k][prefix]`` is the size of range ``k`` for that prefix (constant unless the
    range is jagged).  ``starts[k][prefix]`` is the flat index of that prefix's first child.

    Attributes:
        numel (int): number of index tuples.
        cols (dict[Range, tensor]): the value of each range, for each index tuple.
    """
    def __init__(self, ranges, resolved):
        self.ranges = tuple(ranges)
        device = resolved.device
        self.sizes = []
        self.starts = []
        self.dims = tuple(None if r.is_jagged else resolved.size(r) for r in self.ranges)

        count = 1
        cols = []
        for (k, r) in enumerate(self.ranges):
            if r.is_jagged:
                if r.parent not in self.ranges[:k]:
                    raise ShapeMismatchError(f"Jagged range {r.name} must come after its parent {r.parent.name}")
                parent_col = cols[self.ranges.index(r.parent)]
                sizes = resolved.sizes(r)[parent_col]
            else:
                sizes = t.full((count,), resolved.size(r), dtype=t.long, device=device)
            starts = t.cumsum(sizes, 0) - sizes
            total = int(sizes.sum())

            cols = [c.repeat_interleave(sizes) for c in cols]
            cols.append(t.arange(total, device=device) - starts.repeat_interleave(sizes))

            self.sizes.append(sizes)
            self.starts.append(starts)
            count = total

        self.numel = count
        self.cols = dict(zip(self.ranges, cols))

    @property
    def is_rectangular(self):
        return not any(r.is_jagged for r in self.ranges)

    @property
    def shape(self):
        """Shape of the equivalent dense array (only for rectangular layouts)."""
        assert self.is_rectangular
        return self.dims

    def flat_index(self, cols, n:int):
        """
        Maps ``n`` index tuples (given as one tensor per range) to flat element indices.

        Returns:
            flat (tensor[long]): flat indices (0 where invalid).
            valid (tensor[bool]): False where some index is out of range.
        """
        device = self.sizes[0].device if self.sizes else None
        flat = t.zeros(n, dtype=t.long, device=device)
        valid = t.ones(n, dtype=t.bool, device=device)
        for (k, col) in enumerate(cols):
            sizes = self.sizes[k]
            if sizes.numel() == 0:
                return t.zeros_like(flat), t.zeros_like(valid)
            valid = valid & (0 <= col) & (col < sizes[flat])
            flat = self.starts[k][flat] + t.where(valid, col, t.zeros_like(col))
            flat = t.where(valid, flat, t.zeros_like(flat))
        return flat, valid

    def split(self, x):
        """
        Splits a flat batch (tensor or distribution) into a list over the first range.
        """
        first = self.cols[self.ranges[0]]
        outer_size = int(self.sizes[0][0])
        return [x[(first == i).nonzero().flatten()] for i in range(outer_size)]


class ResolvedRanges():
    """
    Concrete sizes of every range for the current bindings.

    Fixed-size ranges resolve to an ``int``; jagged ranges to a tensor of sizes, one per index of the parent.
    """
    def __init__(self, model, sizes:dict, device=None):
        self.model = model
        self._sizes = sizes
        self.device = device
        self._layouts = {}

    def size(self, r:Range):
        if r not in self._sizes:
            raise MissingObservedError(f"Size of range {r.name} has not been resolved")
        s = self._sizes[r]
        if not isinstance(s, int):
            raise ShapeMismatchError(f"Range {r.name} is jagged, so has no single size")
        return s

    def sizes(self, r:Range):
        if r not in self._sizes:
            raise MissingObservedError(f"Size of range {r.name} has not been resolved")
        return self._sizes[r]

    def layout(self, ranges):
        ranges = tuple(ranges)
        if ranges not in self._layouts:
            self._layouts[ranges] = Layout(ranges, self)
        return self._layouts[ranges]

    def signature(self):
        """
        Hashable summary of every resolved size and sequential flag: compiled schedules are cached on this.
        """
        result = []
        for (r, s) in self._sizes.items():
            s = s if isinstance(s, int) else tuple(s.tolist())
            result.append((r.name, s, r.sequential))
        return tuple(result)

    def __repr__(self):
        return f"ResolvedRanges({ {r.name: (s if isinstance(s, int) else s.tolist()) for (r, s) in self._sizes.items()} })"


def range_closure(ranges):
    result = []
    for r in ranges:
        if r.parent is not None:
            result.extend(range_closure([r.parent]))
        result.append(r)
    return ordered_unique(result)


def resolve_ranges(model, observed:dict, ranges=None, device=None):
    """
    Resolves the size of every range (or only ``ranges`` and their parents).

    Arguments:
        model (Model)
        observed (dict[str, ObservedValue]): the current bindings.

    Raises:
        MissingObservedError: a size depends on an observed value that hasn't been bound.
        ShapeMismatchError: a size is negative, or a jagged size array doesn't match its parent range.
    """
    needed = list(model.ranges.values()) if ranges is None else range_closure(ranges)
    sizes = {}
    for r in model.ranges.values():
        if r not in needed:
            continue
        if r.is_fixed_size:
            sizes[r] = r.size_source
            continue

        lookup = r.size_source
        p = lookup.placeholder
        if p.name not in observed:
            raise MissingObservedError(f"Range {r.name} is sized by {p.name}, which has not been bound")
        values = observed[p.name].flat

        if r.parent is None:
            size = int(values[0]) + lookup.offset
            if size < 0:
                raise ShapeMismatchError(f"Range {r.name} has negative size {size} (from {p.name})")
            sizes[r] = size
        else:
            parent_size = sizes[r.parent]
            if values.shape[0] != parent_size:
                raise ShapeMismatchError(f"{p.name} has length {values.shape[0]}, but it sizes {r.name} within {r.parent.name}, which has size {parent_size}")
            s = values.to(dtype=t.long, device=device) + lookup.offset
            if (s < 0).any():
                raise ShapeMismatchError(f"Range {r.name} has negative size(s) {s[s < 0].tolist()} (from {p.name})")
            sizes[r] = s

    resolved = ResolvedRanges(model, sizes, device=device)
    logger.debug("Resolved %s", resolved)
    return resolved


#### Observed values

class ObservedValue():
    """
    A bound observed value, flattened in row-major order.

    Attributes:
        flat: a 1D tensor (or a batched distribution) with one entry per element.
        lengths (list[list[int]]): the length of every sequence at every nesting level, used to check
            the value against the (possibly jagged) shape of its ranges.
    """
    def __init__(self, placeholder, flat, lengths):
        self.placeholder = placeholder
        self.flat = flat
        self.lengths = lengths

    @property
    def numel(self):
        return self.flat.numel() if isinstance(self.flat, ExpFamily) else self.flat.shape[0]


def flatten_observed(placeholder, value, device=None):
    """
    Validates the type and nesting depth of ``value`` and flattens it.  Always copies.

    Raises:
        TypeMismatchError: the values don't match the placeholder's dtype.
        ShapeMismatchError: the value has the wrong number of dimensions.
    """
    p = placeholder
    depth = len(p.ranges)

    if isinstance(value, ExpFamily) and len(value.batch_shape) == depth:
        if not isinstance(value, p.dtype if p.is_distribution else ()):
            raise TypeMismatchError(f"Observed {p.name} expects {family_name(p.dtype)}, got {type(value).__name__}")
        return ObservedValue(p, value.reshape(-1).clone().to(device), rectangular_lengths(value.batch_shape))

    if isinstance(value, t.Tensor) and value.ndim == depth:
        leaves = value.reshape(-1)
        lengths = rectangular_lengths(value.shape)
    else:
        try:
            leaves, lengths = nested_structure(value, depth)
        except ValueError as e:
            raise ShapeMismatchError(f"Observed {p.name} has {depth} dimension(s) ({[r.name for r in p.ranges]}): {e}")

    if p.is_distribution:
        for leaf in leaves:
            if not isinstance(leaf, p.dtype):
                raise TypeMismatchError(f"Observed {p.name} expects {p.dtype.__name__} values, got {type(leaf).__name__}")
            if len(leaf.batch_shape) != 0:
                raise ShapeMismatchError(f"Observed {p.name} has {depth} dimension(s), but got a {type(leaf).__name__} with batch shape {tuple(leaf.batch_shape)} as an element")
        flat = p.dtype.stack(leaves) if len(leaves) > 0 else p.dtype.uniform((0,))
        return ObservedValue(p, flat.to(device), lengths)

    if isinstance(leaves, t.Tensor):
        flat = leaves
    else:
        for leaf in leaves:
            if isinstance(leaf, ExpFamily) or (isinstance(leaf, t.Tensor) and leaf.ndim != 0) or isinstance(leaf, (list, tuple)):
                raise ShapeMismatchError(f"Observed {p.name} has {depth} dimension(s), but got {leaf!r} as an element")
        flat = t.tensor([x.item() if isinstance(x, t.Tensor) else x for x in leaves])
    return ObservedValue(p, cast_observed(p, flat).to(device), lengths)


def cast_observed(placeholder, flat):
    p = placeholder
    if p.dtype is float:
        if flat.dtype == t.bool:
            raise TypeMismatchError(f"Observed {p.name} expects floats, got bools")
        return flat.detach().to(DTYPE).clone()
    if p.dtype is bool:
        if flat.is_floating_point() and not ((flat == 0) | (flat == 1)).all():
            raise TypeMismatchError(f"Observed {p.name} expects bools")
        return flat.detach().to(t.bool).clone()
    #int
    if flat.is_floating_point():
        if not (flat == flat.round()).all():
            raise TypeMismatchError(f"Observed {p.name} expects integers, got non-integer values")
    return flat.detach().to(t.long).clone()


def check_observed_shape(value:ObservedValue, resolved:ResolvedRanges):
    """
    Checks a flattened observed value against the resolved shape of its ranges.

    Raises:
        ShapeMismatchError: some dimension has the wrong length.
        BindError: an integer value lies outside the placeholder's ``value_range``.
    """
    p = value.placeholder
    layout = resolved.layout(p.ranges)
    for (k, r) in enumerate(p.ranges):
        expected = layout.sizes[k].tolist()
        got = value.lengths[k]
        if got != expected:
            raise ShapeMismatchError(f"Observed {p.name} doesn't match range {r.name}: expected length(s) {summarise(expected)}, got {summarise(got)}")

    if p.value_range is not None and value.numel > 0:
        size = p.value_range if isinstance(p.value_range, int) else resolved.size(p.value_range)
        bad = (value.flat < 0) | (value.flat >= size)
        if bad.any():
            raise BindError(f"Observed {p.name} must take values in [0, {size}), got {value.flat[bad].tolist()}")


def summarise(xs:list, n:int=8):
    return str(xs) if len(xs) <= n else f"{xs[:n]}... ({len(xs)} entries)"


#### Wiring factor blocks to the current bindings

class IndexContext():
    """
    What index expressions are evaluated against: the value of every enclosing range for each of
    the ``n`` instances of a factor block, plus the resolved ranges and the observed values.
    """
    def __init__(self, n:int, cols:dict, resolved:ResolvedRanges, observed:dict):
        self.n = n
        self.cols = cols
        self.resolved = resolved
        self.observed = observed
        self.device = resolved.device

    def layout(self, ranges):
        return self.resolved.layout(ranges)

    def values(self, placeholder):
        if placeholder.name not in self.observed:
            raise MissingObservedError(f"Observed {placeholder.name} has not been bound")
        return self.observed[placeholder.name].flat


class SlotWiring():
    """
    For a variable slot, ``index`` holds the flat element index into ``array`` for each active instance.
    For a fixed slot, ``fixed`` holds the input distribution for each active instance.
    """
    def __init__(self, array=None, index=None, fixed=None):
        self.array = array
        self.index = index
        self.fixed = fixed

    @property
    def is_variable(self):
        return self.array is not None


class BlockWiring():
    """
    A factor block evaluated against the current bindings.  Only active instances are kept.

    Attributes:
        positions (tensor[long]): positions of the active instances in the block's layout.
        slots (list[SlotWiring])
        seq_index (tensor[long] or None): the index of the block's sequential range, per active instance.
    """
    def __init__(self, block, positions, slots, seq_index):
        self.block = block
        self.positions = positions
        self.slots = slots
        self.seq_index = seq_index
        self._groups = None

    @property
    def size(self):
        return self.positions.numel()

    def group(self, i:int):
        """Active instances whose sequential index is ``i``."""
        if self._groups is None:
            self._groups = {}
            for (pos, v) in enumerate(self.seq_index.tolist()):
                self._groups.setdefault(v, []).append(pos)
        return self._groups.get(i, [])


def wire_block(block, resolved:ResolvedRanges, observed:dict):
    """
    Evaluates the conditions, gates and slot index expressions of a factor block.

    An instance is active if its conditions and gates hold, and every slot index is in range.  Slot
    indices that depend on observed data (e.g. ``PlayerSkills[PlayerIndices[game, gamePlayer]]``)
    must be in range for every instance that is otherwise active.

    Raises:
        ShapeMismatchError: an observed index is out of range.
        MissingObservedError: an observed value the block needs hasn't been bound.
    """
    layout = resolved.layout(block.ranges)
    n = layout.numel
    ctx = IndexContext(n, layout.cols, resolved, observed)

    active = t.ones(n, dtype=t.bool, device=resolved.device)
    for cond in block.conditions:
        active = active & cond.mask(ctx)
    for gate in block.gates:
        active = active & gate.mask(ctx)

    results = []
    for slot in block.factor.slots:
        if slot.is_variable:
            index, valid = slot.arg.flat_index(ctx)
            results.append((slot, index, None, valid))
        else:
            fixed, valid = slot.fixed(ctx)
            results.append((slot, None, fixed, valid))
        if not slot.data_dependent:
            active = active & valid

    for (slot, _, _, valid) in results:
        if slot.data_dependent:
            bad = active & ~valid
            if bad.any():
                raise ShapeMismatchError(f"{block.name}: index {slot.arg} is out of range for {int(bad.sum())} instance(s)")

    positions = active.nonzero().flatten()
    slots = []
    for (slot, index, fixed, _) in results:
        if slot.is_variable:
            slots.append(SlotWiring(array=slot.array.name, index=index[positions]))
        else:
            slots.append(SlotWiring(fixed=fixed[positions]))

    seq_range = block.sequential_range
    seq_index = None if seq_range is None else layout.cols[seq_range][positions]
    return BlockWiring(block, positions, slots, seq_index)
