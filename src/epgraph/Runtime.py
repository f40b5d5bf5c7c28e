import logging
import torch as t

from .utils import *
from .defaults import DTYPE, MIN_PRECISION
from .dist import Discrete
from .Schedule import SequentialCarry
from .exceptions import ImproperMessageError

logger = logging.getLogger(__name__)


def uniform_batch(family, n:int, dimension:int=None, device=None):
    dist = family.uniform((n,), dimension) if family is Discrete else family.uniform((n,))
    return dist.to(device)


def is_prior(wiring, ready_arrays:set):
    """
    A block is a prior if it has a variable output and every other variable it reads has been given
    its prior already.  Constraints have no output, so are never priors.
    """
    factor = wiring.block.factor
    out = factor.output_slot
    if out is None or out >= len(wiring.slots) or not wiring.slots[out].is_variable:
        return False
    return all(slot.array in ready_arrays for (s, slot) in enumerate(wiring.slots) if slot.is_variable and s != out)


class BeliefStore():
    """
    The belief (product of all incoming messages) of every element of one variable array.

    Held as running sums of the messages' natural parameters.  Point-mass messages have no natural
    parameters, so they're counted separately, with the last point mass received kept in ``pval``.
    """
    def __init__(self, family, numel:int, dimension:int=None, device=None):
        self.family = family
        self.numel = numel
        self.nat = [x.clone() for x in uniform_batch(family, numel, dimension, device).natural()]
        self.npoint = t.zeros(numel, dtype=t.long, device=device)
        self.pval = t.zeros(numel, dtype=DTYPE, device=device)

    def _with_points(self, dist, npoint, pval):
        if not self.family.stores_point_masses:
            return dist
        return self.family.where(npoint > 0, self.family.from_point_param(pval), dist)

    def belief(self, idx=None):
        if idx is None:
            return self._with_points(self.family.from_natural(*[x.clone() for x in self.nat]), self.npoint, self.pval.clone())
        return self._with_points(self.family.from_natural(*[x[idx] for x in self.nat]), self.npoint[idx], self.pval[idx])

    def cavity(self, idx, message):
        """
        The belief at ``idx`` with ``message`` divided out.  Not checked for propriety.
        """
        nat = [x[idx] - m for (x, m) in zip(self.nat, message.natural())]
        npoint = self.npoint[idx] - message.is_point_mass().to(t.long)
        return self._with_points(self.family.from_natural(*nat), npoint, self.pval[idx])

    def commit(self, idx, old, new):
        """
        Replaces message ``old`` with ``new`` at ``idx`` (indices may repeat).
        """
        for (x, n, o) in zip(self.nat, new.natural(), old.natural()):
            x.index_add_(0, idx, n - o)
        if self.family.stores_point_masses:
            new_point = new.is_point_mass()
            self.npoint.index_add_(0, idx, new_point.to(t.long) - old.is_point_mass().to(t.long))
            if new_point.any():
                self.pval[idx[new_point]] = new.point_param()[new_point].to(DTYPE)


class MessageStore():
    """
    Flat table of messages, keyed by (block id, slot index).  Each entry is a batch with one message per
    active instance of the block.
    """
    def __init__(self):
        self.messages = {}

    def reset(self, key, family, n:int, dimension:int=None, device=None):
        self.messages[key] = uniform_batch(family, n, dimension, device)

    def get(self, key, sel=None):
        msg = self.messages[key]
        return msg if sel is None else msg[sel]

    def set(self, key, sel, msg):
        if sel is None:
            self.messages[key] = msg.clone()
        else:
            for (p, q) in zip(self.messages[key].params, msg.params):
                p.index_copy_(0, sel, q.to(p.dtype))

    def __len__(self):
        return len(self.messages)


class InferenceRuntime():
    """
    Holds the message and belief state for one set of bindings, and executes schedules.

    Arguments:
        arrays (dict[str, (VariableArray, int)]): every variable array with its number of elements.
        wirings (list[BlockWiring]): one per factor block, indexed by block id.

    Keyword Arguments:
        min_precision (float): floor used to clamp improper messages and cavities.
        record_carried (bool): snapshot the shared beliefs at each ``SequentialCarry``.
        observer: called with each op after it's applied.
    """
    def __init__(self, arrays:dict, wirings:list, min_precision:float=MIN_PRECISION, record_carried:bool=False, observer=None, device=None):
        self.arrays = arrays
        self.wirings = wirings
        self.min_precision = min_precision
        self.record_carried = record_carried
        self.observer = observer
        self.device = device
        self.reset()

    def reset(self):
        """
        Sets every message to uniform, then sends the messages of factors with fixed inputs (the priors).
        """
        self.beliefs = {
            name: BeliefStore(array.family, numel, array.dimension, self.device)
            for (name, (array, numel)) in self.arrays.items()
        }
        self.messages = MessageStore()
        for wiring in self.wirings:
            for (s, slot) in enumerate(wiring.slots):
                if slot.is_variable:
                    fslot = wiring.block.factor.slots[s]
                    self.messages.reset((wiring.block.id, s), fslot.family, wiring.size, fslot.dimension, self.device)

        self.clamp_count = 0
        self.carried = {}
        self.sweeps_done = 0
        self.initialize_priors()

    def initialize_priors(self):
        """
        Sends the messages of the priors: blocks whose inputs are all fixed, or read arrays that have
        only priors themselves (e.g. ``skills ~ N(25, precision)`` with ``precision ~ Gamma(...)``).
        Each prior only sends its message to its output, so the arrays it reads keep their own priors.
        """
        writers = {}
        for wiring in self.wirings:
            for a in wiring.block.writes():
                writers.setdefault(a, []).append(wiring.block.id)

        done = set()
        ready_arrays = set()
        progress = True
        while progress:
            progress = False
            for wiring in self.wirings:
                if wiring.block.id in done or not is_prior(wiring, ready_arrays):
                    continue
                if wiring.size > 0:
                    self.update(wiring, slots=(wiring.block.factor.output_slot,))
                done.add(wiring.block.id)
                progress = True
                for a in wiring.block.writes():
                    if all(b in done for b in writers[a]):
                        ready_arrays.add(a)

    def run(self, schedule, iterations:int):
        for _ in range(iterations):
            self.sweep(schedule)

    def sweep(self, schedule):
        for op in schedule:
            self.apply(op)
            if self.observer is not None:
                self.observer(op)
        self.sweeps_done += 1

    def apply(self, op):
        if isinstance(op, SequentialCarry):
            self.carry(op)
            return
        wiring = self.wirings[op.block.id]
        if op.index is None:
            if wiring.size > 0:
                self.update(wiring)
        else:
            for pos in wiring.group(op.index):
                self.update(wiring, t.tensor([pos], dtype=t.long, device=self.device))

    def carry(self, op):
        if self.record_carried:
            self.carried.setdefault(op.range.name, {})[op.index] = {name: self.marginal(name) for name in op.arrays}

    def proper(self, dist, what:str):
        try:
            return dist.check_proper()
        except ImproperMessageError as e:
            n = int(e.mask.sum())
            self.clamp_count += n
            logger.debug("Clamping %d improper element(s) of %s to precision %g", n, what, self.min_precision)
            return e.result.clamped(self.min_precision)

    def update(self, wiring, sel=None, slots=None):
        """
        Recomputes the messages of a block, for the instances at positions ``sel`` (default: all),
        to the slots ``slots`` (default: every variable slot).
        """
        block = wiring.block
        factor = block.factor

        inputs = {}
        targets = []
        for (s, slot) in enumerate(wiring.slots):
            if slot.is_variable:
                idx = slot.index if sel is None else slot.index[sel]
                store = self.beliefs[slot.array]
                if s in factor.variational_slots:
                    inputs[s] = store.belief(idx)
                else:
                    old = self.messages.get((block.id, s), sel)
                    inputs[s] = self.proper(store.cavity(idx, old), f"the cavity of {slot.array} in {block.name}")
                if slots is None or s in slots:
                    targets.append(s)
            else:
                inputs[s] = slot.fixed if sel is None else slot.fixed[sel]

        new = factor.messages(inputs, targets)

        for s in targets:
            slot = wiring.slots[s]
            idx = slot.index if sel is None else slot.index[sel]
            msg = self.proper(new[s], f"the message from {block.name} to {slot.array}")
            old = self.messages.get((block.id, s), sel)
            self.beliefs[slot.array].commit(idx, old, msg)
            self.messages.set((block.id, s), sel, msg)

    def marginal(self, name:str):
        """The normalised belief of every element of an array, as a flat batch."""
        belief = self.beliefs[name].belief()
        if isinstance(belief, Discrete):
            belief = Discrete(belief.normalized_log_probs())
        return belief
