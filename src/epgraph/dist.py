import math

import torch as t
import torch.distributions as td

from .utils import *
from .defaults import DTYPE, LOG_ZERO
from .exceptions import ImproperMessageError, TypeMismatchError


def _tensor(x, device=None):
    if isinstance(x, t.Tensor):
        if x.dtype != DTYPE:
            x = x.to(DTYPE)
        return x if device is None else x.to(device)
    return t.tensor(x, dtype=DTYPE, device=device)


class ExpFamily:
    """
    Abstract base class for the batched exponential-family distributions used as messages and marginals.

    A single object holds a whole batch of distributions: the parameters are tensors whose leading
    dimensions are the batch shape (``()`` for a single distribution).  Messages are combined in
    natural parameters, so ``product`` and ``ratio`` are just addition and subtraction.

    Point masses can't be written in natural parameters, so families that support them
    (``stores_point_masses = True``) keep them in their raw parameters (e.g. a Gaussian with infinite
    precision) and ``natural()`` reports a point mass as uniform.  ``product`` and ``ratio`` patch
    the point masses back in afterwards.

    Subclasses define:

    * ``param_names``: names of the raw parameter tensors.
    * ``natural()`` / ``from_natural(*nat)``
    * ``is_point_mass()``, ``point_param()`` and ``from_point_param(p)``
    * ``mean()`` and ``variance()``
    """
    param_names = ()
    event_ndim = 0
    stores_point_masses = True

    @classmethod
    def _new(cls, *params):
        obj = cls.__new__(cls)
        for name, p in zip(cls.param_names, params):
            setattr(obj, name, p)
        return obj

    @property
    def params(self):
        return tuple(getattr(self, name) for name in self.param_names)

    @property
    def batch_shape(self):
        p = self.params[0]
        return p.shape[:p.ndim - self.event_ndim]

    @property
    def event_shape(self):
        p = self.params[0]
        return p.shape[p.ndim - self.event_ndim:]

    @property
    def device(self):
        return self.params[0].device

    #### Natural parameters

    def natural(self):
        raise NotImplementedError()

    @classmethod
    def from_natural(cls, *nat):
        raise NotImplementedError()

    def is_point_mass(self):
        return t.zeros(self.batch_shape, dtype=t.bool, device=self.device)

    def point_param(self):
        raise NotImplementedError()

    @classmethod
    def from_point_param(cls, p):
        raise NotImplementedError()

    def is_uniform(self):
        nat = self.natural()
        result = ~self.is_point_mass()
        for x in nat:
            x = x == 0
            for _ in range(self.event_ndim):
                x = x.all(-1)
            result = result & x
        return result

    def is_proper(self):
        """
        True where the distribution can be normalised (or is uniform), False where it is improper or NaN.
        """
        result = t.ones(self.batch_shape, dtype=t.bool, device=self.device)
        for x in self.natural():
            x = ~t.isnan(x)
            for _ in range(self.event_ndim):
                x = x.all(-1)
            result = result & x
        return result

    def check_proper(self):
        mask = ~self.is_proper()
        if mask.any():
            raise ImproperMessageError(
                f"{type(self).__name__} has {int(mask.sum())} improper element(s) out of {max(1, self.numel())}",
                result=self,
                mask=mask,
            )
        return self

    def clamped(self, min_precision:float):
        """
        Returns a copy where improper elements are replaced by something proper; NaN becomes uniform.
        """
        bad = ~self.is_proper()
        return type(self).where(bad, self.uniform_like(), self)

    def uniform_like(self):
        return type(self).from_natural(*uniform_like_natural(self.natural()))

    #### Message algebra

    def _check_same_family(self, other):
        if type(other) is not type(self):
            raise TypeMismatchError(f"Can't combine a {type(self).__name__} with a {type(other).__name__}")

    def product(self, other):
        """
        Pointwise product of the densities (the combination of two messages), normalised.
        """
        self._check_same_family(other)
        nat = [a + b for (a, b) in zip(self.natural(), other.natural())]
        result = type(self).from_natural(*nat)
        if self.stores_point_masses:
            result = type(self).where(other.is_point_mass(), other, result)
            result = type(self).where(self.is_point_mass(), self, result)
        return result

    def ratio(self, other, strict:bool=False):
        """
        Pointwise ratio of the densities.  Used to remove a stale message from a belief.

        Dividing a point mass by the same point mass gives a uniform distribution.  Dividing a
        non-point mass by a point mass is improper.

        Keyword Arguments:
            strict (bool):
                raise ``ImproperMessageError`` if any element of the result is improper, rather
                than returning it.
        """
        self._check_same_family(other)
        nat = [a - b for (a, b) in zip(self.natural(), other.natural())]
        result = type(self).from_natural(*nat)
        improper = ~result.is_proper()
        if self.stores_point_masses:
            a_point, b_point = self.is_point_mass(), other.is_point_mass()
            uniform = result.uniform_like()
            result = type(self).where(b_point, uniform, result)
            result = type(self).where(a_point, self, result)
            result = type(self).where(a_point & b_point, uniform, result)
            improper = (improper | (b_point & ~a_point)) & ~a_point
        if strict and improper.any():
            raise ImproperMessageError(
                f"Ratio of two {type(self).__name__} messages is improper in {int(improper.sum())} element(s)",
                result=result,
                mask=improper,
            )
        return result

    __mul__ = product

    def __truediv__(self, other):
        return self.ratio(other)

    #### Batch handling

    @classmethod
    def where(cls, mask, a, b):
        """
        Elementwise choice over the batch: a where mask is True, b otherwise.
        """
        mask = t.as_tensor(mask, dtype=t.bool)
        mask = mask.reshape(tuple(mask.shape) + cls.event_ndim * (1,))
        return cls._new(*[t.where(mask.to(pa.device), pa, pb) for (pa, pb) in zip(a.params, b.params)])

    def numel(self):
        return math.prod(self.batch_shape)

    def __len__(self):
        if len(self.batch_shape) == 0:
            raise TypeError(f"len() of a scalar {type(self).__name__}")
        return self.batch_shape[0]

    def __getitem__(self, idx):
        if len(self.batch_shape) == 0:
            raise IndexError(f"Can't index a scalar {type(self).__name__}")
        return type(self)._new(*[p[idx] for p in self.params])

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]

    def reshape(self, *shape):
        return type(self)._new(*[p.reshape(*shape, *self.event_shape) for p in self.params])

    def expand(self, batch_shape):
        batch_shape = tuple(batch_shape)
        return type(self)._new(*[p.expand(*batch_shape, *self.event_shape) for p in self.params])

    def clone(self):
        return type(self)._new(*[p.clone() for p in self.params])

    def to(self, device):
        return type(self)._new(*[p.to(device) for p in self.params])

    @classmethod
    def stack(cls, dists, dim:int=0):
        dists = list(dists)
        if 0 == len(dists):
            raise ValueError(f"Can't stack an empty list of {cls.__name__}")
        for d in dists:
            if not isinstance(d, cls):
                raise TypeMismatchError(f"Expected {cls.__name__}, got {type(d).__name__}")
        return cls._new(*[t.stack(ps, dim) for ps in zip(*[d.params for d in dists])])

    @classmethod
    def cat(cls, dists):
        dists = list(dists)
        for d in dists:
            if not isinstance(d, cls):
                raise TypeMismatchError(f"Expected {cls.__name__}, got {type(d).__name__}")
        return cls._new(*[t.cat([p.reshape(-1, *p.shape[p.ndim - cls.event_ndim:]) for p in ps], 0) for ps in zip(*[d.params for d in dists])])

    def allclose(self, other, rtol:float=1e-5, atol:float=1e-8):
        if type(other) is not type(self):
            return False
        for (a, b) in zip(self.params, other.params):
            a, b = t.broadcast_tensors(a, b)
            if not t.allclose(a, b, rtol=rtol, atol=atol, equal_nan=True):
                return False
        return True

    def to_torch(self):
        """
        Converts to the equivalent ``torch.distributions`` object (for sampling, log_prob etc.).
        Uniform and point-mass elements have no torch equivalent.
        """
        raise NotImplementedError()

    def __repr__(self):
        if len(self.batch_shape) == 0:
            return f"{type(self).__name__}({self._describe()})"
        return f"{type(self).__name__}(batch_shape={tuple(self.batch_shape)})"

    def _describe(self):
        return f"mean={self.mean().item():.6g}, variance={self.variance().item():.6g}"


class Gaussian(ExpFamily):
    """
    Univariate Gaussian, stored as (mean * precision, precision).

    A point mass has infinite precision, and keeps its location in ``mean_times_precision``.
    A uniform distribution has zero precision.

    .. code-block:: python

       Gaussian.from_mean_and_precision(25., 1.)
       Gaussian.from_mean_and_variance(t.zeros(3), t.ones(3))
       Gaussian.point_mass(2.)
    """
    param_names = ('mean_times_precision', 'precision')

    def __init__(self, mean_times_precision=0., precision=0.):
        mtp, prec = t.broadcast_tensors(_tensor(mean_times_precision), _tensor(precision))
        self.mean_times_precision = mtp
        self.precision = prec

    @classmethod
    def from_mean_and_precision(cls, mean, precision):
        mean, precision = t.broadcast_tensors(_tensor(mean), _tensor(precision))
        mtp = t.where(t.isinf(precision), mean, mean * precision)
        return cls._new(mtp, precision)

    @classmethod
    def from_mean_and_variance(cls, mean, variance):
        mean, variance = t.broadcast_tensors(_tensor(mean), _tensor(variance))
        return cls.from_mean_and_precision(mean, t.reciprocal(variance))

    @classmethod
    def point_mass(cls, value):
        value = _tensor(value)
        return cls._new(value, t.full_like(value, math.inf))

    @classmethod
    def uniform(cls, batch_shape=()):
        return cls._new(t.zeros(batch_shape, dtype=DTYPE), t.zeros(batch_shape, dtype=DTYPE))

    def natural(self):
        point = self.is_point_mass()
        return (
            t.where(point, 0., self.mean_times_precision),
            t.where(point, 0., self.precision),
        )

    @classmethod
    def from_natural(cls, mean_times_precision, precision):
        return cls._new(mean_times_precision, precision)

    def is_point_mass(self):
        return t.isinf(self.precision) & (self.precision > 0)

    def point_param(self):
        return self.mean_times_precision

    @classmethod
    def from_point_param(cls, p):
        return cls.point_mass(p)

    def mean(self):
        prec = self.precision
        return t.where(
            self.is_point_mass(),
            self.mean_times_precision,
            t.where(prec == 0, t.zeros_like(prec), self.mean_times_precision / prec),
        )

    def variance(self):
        return t.where(self.is_point_mass(), t.zeros_like(self.precision), t.reciprocal(self.precision))

    def mean_and_variance(self):
        return self.mean(), self.variance()

    def is_proper(self):
        return (self.precision >= 0) & ~t.isnan(self.mean_times_precision)

    def clamped(self, min_precision:float):
        bad = ~self.is_proper()
        mean = self.mean_times_precision / self.precision
        mean = t.where(t.isfinite(mean), mean, t.zeros_like(mean))
        return Gaussian._new(
            t.where(bad, mean * min_precision, self.mean_times_precision),
            t.where(bad, t.full_like(self.precision, min_precision), self.precision),
        )

    def to_torch(self):
        return td.Normal(self.mean(), self.variance().sqrt())


class Gamma(ExpFamily):
    """
    Gamma distribution over a positive quantity (e.g. a precision), stored as (shape, rate).

    A point mass has infinite rate and keeps its location in ``shape``.
    The uniform distribution is Gamma(shape=1, rate=0).
    """
    param_names = ('shape', 'rate')

    def __init__(self, shape=1., rate=0.):
        shape, rate = t.broadcast_tensors(_tensor(shape), _tensor(rate))
        self.shape = shape
        self.rate = rate

    @classmethod
    def from_shape_and_rate(cls, shape, rate):
        return cls(shape, rate)

    @classmethod
    def from_shape_and_scale(cls, shape, scale):
        return cls(shape, t.reciprocal(_tensor(scale)))

    @classmethod
    def from_mean_and_variance(cls, mean, variance):
        mean, variance = _tensor(mean), _tensor(variance)
        return cls(mean * mean / variance, mean / variance)

    @classmethod
    def point_mass(cls, value):
        value = _tensor(value)
        return cls._new(value, t.full_like(value, math.inf))

    @classmethod
    def uniform(cls, batch_shape=()):
        return cls._new(t.ones(batch_shape, dtype=DTYPE), t.zeros(batch_shape, dtype=DTYPE))

    def natural(self):
        point = self.is_point_mass()
        return (
            t.where(point, 0., self.shape - 1),
            t.where(point, 0., self.rate),
        )

    @classmethod
    def from_natural(cls, shape_minus_one, rate):
        return cls._new(shape_minus_one + 1, rate)

    def is_point_mass(self):
        return t.isinf(self.rate) & (self.rate > 0)

    def point_param(self):
        return self.shape

    @classmethod
    def from_point_param(cls, p):
        return cls.point_mass(p)

    def mean(self):
        return t.where(self.is_point_mass(), self.shape, self.shape / self.rate)

    def variance(self):
        return t.where(self.is_point_mass(), t.zeros_like(self.shape), self.shape / self.rate**2)

    def mean_log(self):
        return t.where(self.is_point_mass(), self.shape.log(), t.digamma(self.shape) - self.rate.log())

    def is_proper(self):
        point = self.is_point_mass()
        return point | ((self.shape > 0) & (self.rate >= 0))

    def clamped(self, min_precision:float):
        bad = ~self.is_proper()
        shape = t.nan_to_num(self.shape, nan=1.).clamp(min=1.)
        rate = t.nan_to_num(self.rate, nan=min_precision).clamp(min=min_precision)
        return Gamma._new(t.where(bad, shape, self.shape), t.where(bad, rate, self.rate))

    def to_torch(self):
        return td.Gamma(self.shape, self.rate)


class Bernoulli(ExpFamily):
    """
    Bernoulli distribution over a bool, stored as log-odds.  Point masses have infinite log-odds.
    """
    param_names = ('log_odds',)

    def __init__(self, log_odds=0.):
        self.log_odds = _tensor(log_odds)

    @classmethod
    def from_probability(cls, probability_true):
        return cls._new(t.logit(_tensor(probability_true)))

    @classmethod
    def from_log_odds(cls, log_odds):
        return cls(log_odds)

    @classmethod
    def point_mass(cls, value):
        value = t.as_tensor(value, dtype=t.bool)
        inf = t.full(value.shape, math.inf, dtype=DTYPE)
        return cls._new(t.where(value, inf, -inf))

    @classmethod
    def uniform(cls, batch_shape=()):
        return cls._new(t.zeros(batch_shape, dtype=DTYPE))

    def natural(self):
        return (t.where(self.is_point_mass(), 0., self.log_odds),)

    @classmethod
    def from_natural(cls, log_odds):
        return cls._new(log_odds)

    def is_point_mass(self):
        return t.isinf(self.log_odds)

    def point_param(self):
        return self.log_odds

    @classmethod
    def from_point_param(cls, p):
        return cls._new(p)

    def probability_true(self):
        return t.sigmoid(self.log_odds)

    def mean(self):
        return self.probability_true()

    def variance(self):
        p = self.probability_true()
        return p * (1 - p)

    def to_torch(self):
        return td.Bernoulli(logits=self.log_odds)

    def _describe(self):
        return f"p={self.probability_true().item():.6g}"


class Discrete(ExpFamily):
    """
    Distribution over {0, ..., dimension-1}, stored as unnormalised log-probabilities (last dim).

    Zero probabilities are held as ``LOG_ZERO`` rather than -inf, so products and ratios stay exact.
    There's no special point-mass representation; ``point_mass`` just puts all the mass on one state.
    """
    param_names = ('log_probs',)
    event_ndim = 1
    stores_point_masses = False

    def __init__(self, log_probs):
        log_probs = _tensor(log_probs)
        if log_probs.ndim == 0:
            raise ValueError("Discrete log_probs must have a final (event) dimension")
        self.log_probs = t.where(t.isneginf(log_probs), LOG_ZERO, log_probs)

    @classmethod
    def from_probabilities(cls, probs):
        return cls(_tensor(probs).log())

    @classmethod
    def point_mass(cls, value, dimension:int):
        value = t.as_tensor(value, dtype=t.long)
        onehot = t.nn.functional.one_hot(value, dimension).to(DTYPE)
        return cls._new(t.where(onehot > 0, t.zeros_like(onehot), t.full_like(onehot, LOG_ZERO)))

    @classmethod
    def uniform(cls, batch_shape=(), dimension:int=2):
        return cls._new(t.zeros((*batch_shape, dimension), dtype=DTYPE))

    @property
    def dimension(self):
        return self.log_probs.shape[-1]

    def natural(self):
        return (self.log_probs,)

    @classmethod
    def from_natural(cls, log_probs):
        return cls._new(log_probs)

    def is_point_mass(self):
        return (self.log_probs > LOG_ZERO / 2).sum(-1) == 1

    def normalized_log_probs(self):
        return self.log_probs - t.logsumexp(self.log_probs, -1, keepdim=True)

    def probabilities(self):
        return t.softmax(self.log_probs, -1)

    def mean(self):
        states = t.arange(self.dimension, dtype=DTYPE, device=self.device)
        return (self.probabilities() * states).sum(-1)

    def variance(self):
        states = t.arange(self.dimension, dtype=DTYPE, device=self.device)
        p = self.probabilities()
        return (p * states**2).sum(-1) - self.mean()**2

    def mode(self):
        return self.log_probs.argmax(-1)

    def to_torch(self):
        return td.Categorical(logits=self.log_probs)

    def _describe(self):
        return f"probs={[round(p, 6) for p in self.probabilities().tolist()]}"


families = {
    "Gaussian": Gaussian,
    "Gamma": Gamma,
    "Bernoulli": Bernoulli,
    "Discrete": Discrete,
}

def family_name(family):
    return family.__name__ if isinstance(family, type) else type(family).__name__
