"""
Builds the update schedule: the ordered list of factor-block updates making up one sweep.

Factor declarations are expanded into ``FactorBlock``s (one per leaf factor: switch branches and
constraint decompositions become separate blocks), which are put in topological order of the arrays
they read and write.  Consecutive blocks sharing a sequential range form a sequential run; the rest
form parallel runs.

One sweep is:

* for each run, in order:

  * parallel run: every block, vectorised over all its instances (forward), then back through the
    blocks in reverse (backward), so constraint corrections reach the factors upstream of them.
  * sequential run over range ``r``: for each index ``i`` of ``r``, a ``SequentialCarry`` (for ``i > 0``),
    then the forward and backward passes over the instances with ``r == i``, one instance at a time.

* a distribute pass back through the parallel runs in reverse order.

Constraint blocks always come last within their run.
"""
import heapq
import logging

from .utils import *
from .exceptions import CyclicDependencyError

logger = logging.getLogger(__name__)


class FactorBlock():
    """
    A leaf factor together with the ranges it's replicated over, its conditions and gates.
    """
    def __init__(self, id:int, factor, ranges:tuple, conditions:tuple, gates:tuple, decl_index:int, name:str):
        self.id = id
        self.factor = factor
        self.ranges = ranges
        self.conditions = conditions
        self.gates = gates
        self.decl_index = decl_index
        self.name = name
        self.sequential_range = next((r for r in ranges if r.is_sequential), None)

    @property
    def is_constraint(self):
        return self.factor.is_constraint

    def reads(self):
        return [a.name for a in self.factor.reads()]

    def writes(self):
        return [a.name for a in self.factor.writes()]

    def __repr__(self):
        return f"FactorBlock({self.name})"


class Update():
    """
    Recompute the messages of one block.  ``index`` restricts a block in a sequential run to the
    instances with that value of the sequential range.
    """
    def __init__(self, block:FactorBlock, direction:str, index:int=None):
        self.block = block
        self.direction = direction
        self.index = index

    def __repr__(self):
        at = "" if self.index is None else f"[{self.block.sequential_range.name}={self.index}]"
        return f"Update({self.block.name}{at}, {self.direction})"


class SequentialCarry():
    """
    Marks the point where the beliefs of the arrays shared across a sequential range are carried
    from index ``index - 1`` into index ``index``.
    """
    def __init__(self, range, index:int, arrays:tuple):
        self.range = range
        self.index = index
        self.arrays = arrays

    def __repr__(self):
        return f"SequentialCarry({self.range.name}: {self.index-1} -> {self.index}, {list(self.arrays)})"


class Schedule():
    """
    The ops making up one sweep, for one shape signature.
    """
    def __init__(self, blocks, ops, signature):
        self.blocks = blocks
        self.ops = ops
        self.signature = signature

    def __iter__(self):
        return iter(self.ops)

    def __len__(self):
        return len(self.ops)

    def describe(self):
        return [repr(op) for op in self.ops]


class ScheduleBuilder():
    """
    Expands and orders the factor blocks of a model once, then builds a ``Schedule`` for each
    shape signature (the number of ops depends on the sizes of the sequential ranges).

    Raises:
        CyclicDependencyError: a block over unordered ranges reads the array it defines
            (e.g. ``x[i]`` defined from ``x[i - 1]`` where ``i`` isn't sequential).
    """
    def __init__(self, model):
        self.model = model
        self.blocks = self.expand()
        self.check_cycles()
        self.order = self.topological_order()
        self.runs = self.partition(self.order)

    def expand(self):
        blocks = []
        for decl in self.model.factors:
            leaves = decl.factor.expand()
            for (k, (leaf, gates)) in enumerate(leaves):
                name = decl.name if len(leaves) == 1 else f"{decl.name}.{k}"
                blocks.append(FactorBlock(len(blocks), leaf, decl.ranges, decl.conditions, gates, decl.index, name))
        return blocks

    def check_cycles(self):
        for block in self.blocks:
            if block.sequential_range is None:
                cycle = set(block.reads()).intersection(block.writes())
                if cycle:
                    raise CyclicDependencyError(f"{block.name} defines {sorted(cycle)} from other elements of the same array over unordered ranges {[r.name for r in block.ranges]}; mark the range sequential")

    def topological_order(self):
        """
        Kahn's algorithm on array read/write edges, with ties broken by declaration order.  Blocks
        left over because of cycles keep their declaration order if they're all in sequential runs,
        which update one index at a time.

        Raises:
            CyclicDependencyError: blocks over unordered ranges depend on each other in a cycle.
        """
        writers = {}
        for block in self.blocks:
            for a in block.writes():
                writers.setdefault(a, []).append(block.id)

        deps = {block.id: set() for block in self.blocks}
        dependents = {block.id: set() for block in self.blocks}
        for block in self.blocks:
            for a in block.reads():
                for w in writers.get(a, []):
                    if w != block.id:
                        deps[block.id].add(w)
                        dependents[w].add(block.id)

        remaining = {b: len(d) for (b, d) in deps.items()}
        ready = [b for (b, n) in remaining.items() if n == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            b = heapq.heappop(ready)
            order.append(b)
            for d in dependents[b]:
                remaining[d] -= 1
                if remaining[d] == 0:
                    heapq.heappush(ready, d)

        if len(order) < len(self.blocks):
            done = set(order)
            cyclic = [b for b in range(len(self.blocks)) if b not in done]
            unordered = [self.blocks[b].name for b in on_cycles(cyclic, dependents) if self.blocks[b].sequential_range is None]
            if unordered:
                raise CyclicDependencyError(f"{unordered} depend on each other in a cycle over unordered ranges; mark a range sequential")
            logger.debug("Blocks %s are in a dependency cycle; keeping declaration order", [self.blocks[b].name for b in cyclic])
            order.extend(cyclic)

        return [self.blocks[b] for b in order]

    def partition(self, order):
        """
        Splits the ordered blocks into runs of consecutive blocks with the same sequential range,
        with constraint blocks moved to the end of each run.
        """
        runs = []
        for block in order:
            if runs and runs[-1][0] is block.sequential_range:
                runs[-1][1].append(block)
            else:
                runs.append((block.sequential_range, [block]))
        return [(key, sorted(blocks, key=lambda b: b.is_constraint)) for (key, blocks) in runs]

    def shared_arrays(self, key, blocks):
        """Arrays touched by a sequential run that aren't indexed by its range, i.e. that carry over."""
        names = ordered_unique([a for b in blocks for a in (*b.reads(), *b.writes())])
        return tuple(n for n in names if key not in self.model.variables[n].ranges)

    def build(self, resolved):
        ops = []
        for (key, blocks) in self.runs:
            if key is None:
                ops.extend(Update(b, "forward") for b in blocks)
                ops.extend(Update(b, "backward") for b in reversed(blocks[:-1]))
            else:
                arrays = self.shared_arrays(key, blocks)
                for i in range(sequential_length(key, resolved)):
                    if i > 0:
                        ops.append(SequentialCarry(key, i, arrays))
                    ops.extend(Update(b, "forward", i) for b in blocks)
                    ops.extend(Update(b, "backward", i) for b in reversed(blocks[:-1]))

        for (key, blocks) in reversed(self.runs):
            if key is None:
                ops.extend(Update(b, "distribute") for b in reversed(blocks))

        schedule = Schedule(self.blocks, ops, resolved.signature())
        logger.debug("Built schedule with %d op(s) for %s", len(ops), resolved)
        return schedule


def sequential_length(r, resolved):
    sizes = resolved.sizes(r)
    if isinstance(sizes, int):
        return sizes
    return int(sizes.max()) if sizes.numel() > 0 else 0


def on_cycles(blocks:list, dependents:dict):
    """
    Drops the blocks that are only downstream of a cycle from the blocks Kahn's algorithm left over.
    """
    left = set(blocks)
    pruned = True
    while pruned:
        pruned = False
        for b in list(left):
            if not (dependents[b] & left):
                left.remove(b)
                pruned = True
    return [b for b in blocks if b in left]
