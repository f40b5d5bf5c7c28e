import torch

from .dist import ExpFamily
from .Resolver import ObservedValue


class ObservedStore(torch.nn.Module):
    """
    Holds the bound observed values as buffers, so they get moved to device along with the
    compiled algorithm.

    Values are kept flat (see ``Resolver.ObservedValue``); distribution-valued observed values are
    stored as one buffer per distribution parameter.
    """
    def __init__(self):
        super().__init__()
        self.placeholders = {}
        self.lengths = {}
        self.buffer_names = {}

    def set(self, value:ObservedValue):
        name = value.placeholder.name
        if isinstance(value.flat, ExpFamily):
            names = [f"{name}__{param}" for param in value.flat.param_names]
            tensors = value.flat.params
        else:
            names = [f"{name}__value"]
            tensors = (value.flat,)

        for (k, v) in zip(names, tensors):
            assert isinstance(v, torch.Tensor)
            self.register_buffer(k, v)

        self.placeholders[name] = value.placeholder
        self.lengths[name] = value.lengths
        self.buffer_names[name] = names

    def get(self, name:str):
        p = self.placeholders[name]
        tensors = [getattr(self, k) for k in self.buffer_names[name]]
        flat = p.dtype._new(*tensors) if p.is_distribution else tensors[0]
        return ObservedValue(p, flat, self.lengths[name])

    def __contains__(self, name:str):
        return name in self.placeholders

    def keys(self):
        return list(self.placeholders.keys())

    def to_dict(self):
        return {k: self.get(k) for k in self.placeholders}
