"""Default configuration values for epgraph.

Values here are the package-wide defaults. The numeric ones can be overridden
per compiled algorithm through keyword arguments to ``Model.compile``.
"""

import torch as t

DTYPE: t.dtype = t.float64
"""Floating point dtype used for every message and belief.

:type: torch.dtype
"""

MIN_PRECISION: float = 1e-8
"""Floor applied to the precision (or Gamma rate) of an improper message.

When a division of natural parameters produces a negative precision, the
runtime clamps it to this value instead of propagating an improper
distribution (or NaN) through the rest of the sweep.

:type: float
"""

VARIANCE_FLOOR: float = 1e-12
"""Relative floor on a moment-matched posterior variance.

Truncation can make the matched variance underflow to zero or go slightly
negative in floating point when the cavity puts almost no mass on the allowed
side. The matched variance is floored at ``VARIANCE_FLOOR * cavity_variance``.

:type: float
"""

LOG_ZERO: float = -1e30
"""Stand-in for log(0) in ``Discrete`` log-probabilities.

A large finite value keeps products and ratios of discrete messages exact
(``LOG_ZERO - LOG_ZERO == 0``) where ``-inf`` would give NaN.

:type: float
"""

DEFAULT_ITERATIONS: int = 50
"""Default sweep count for ``CompiledInferenceAlgorithm.execute``.

:type: int
"""
