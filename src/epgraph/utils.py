import torch as t

from .defaults import DTYPE

Number = (int, float)

reserved_names = [
    "model",
    "infer",
    "schedule",
    "observed",
    "marginals",
]
reserved_prefixes = [
    "_",
]

def list_duplicates(xs:list):
    dups = set()
    xs_so_far = set()
    for x in xs:
        if x in xs_so_far:
            dups.add(x)
        else:
            xs_so_far.add(x)
    return list(dups)

def check_name(name:str):
    if not isinstance(name, str) or not name.isidentifier():
        raise ValueError(f"{name!r} is not a valid name; names must be Python identifiers")
    if name in reserved_names:
        raise ValueError(f"{name} is reserved in epgraph")
    for prefix in reserved_prefixes:
        if (len(prefix) <= len(name)) and (prefix == name[:len(prefix)]):
            raise ValueError(f"You can't use the prefix {prefix} in {name} in epgraph")

def ordered_unique(ls):
    """
    Exploits the fact that in Python 3.7<, dict keys retain ordering

    Arguments:
        ls: list with duplicate elements
    Returns:
        list of unique elements, in the order they first appeared in ls
    """
    if not isinstance(ls, (list, tuple)):
        raise Exception('ls must be a list or tuple')
    d = {l:None for l in ls}
    return list(d.keys())

def as_tensor(x, dtype=DTYPE, device=None):
    """
    Converts numbers, (nested) lists and tensors to a float tensor of the working dtype.
    Always returns a copy, so callers can never alias our storage.
    """
    if isinstance(x, t.Tensor):
        return x.detach().to(dtype=dtype, device=device).clone()
    return t.tensor(x, dtype=dtype, device=device)

def uniform_like_natural(nat):
    return tuple(t.zeros_like(x) for x in nat)

def nested_structure(value, depth:int):
    """
    Walks ``depth`` levels of (possibly ragged) nesting, in row-major order.

    Anything supporting ``len`` and integer indexing counts as a level: lists, tuples, tensors,
    and batched distributions.

    Returns:
        leaves (list): the elements below ``depth`` levels.
        lengths (list[list[int]]): for each level, the length of every sequence at that level.
    """
    leaves = []
    lengths = [[] for _ in range(depth)]

    def visit(v, level):
        if level == depth:
            leaves.append(v)
            return
        try:
            n = len(v)
        except TypeError:
            raise ValueError(f"Expected {depth} level(s) of nesting, but found a scalar at level {level}")
        lengths[level].append(n)
        for i in range(n):
            visit(v[i], level+1)

    visit(value, 0)
    return leaves, lengths

def rectangular_lengths(shape):
    """Per-level lengths (as returned by ``nested_structure``) for a rectangular array."""
    lengths = []
    count = 1
    for size in shape:
        lengths.append(count * [size])
        count = count * size
    return lengths
