"""
Moment matching used by the expectation-propagation factors.

All functions take and return plain tensors (means, variances) rather than distributions,
and are elementwise over a batch.
"""
import math

import torch as t
from torch.special import log_ndtr

from .defaults import VARIANCE_FLOOR

LOG_SQRT_2PI = 0.5 * math.log(2 * math.pi)


def log_normal_pdf(z):
    return -0.5 * z * z - LOG_SQRT_2PI


def log_odds_positive(mean, variance):
    """
    log P(d > 0) - log P(d < 0) for d ~ N(mean, variance).

    Infinite for point masses; zero for a uniform (infinite variance) d.
    """
    z = mean / variance.sqrt()
    result = log_ndtr(z) - log_ndtr(-z)
    return t.where(t.isnan(result), t.zeros_like(result), result)


def truncated_moments(mean, variance, prob_true):
    """
    Mean and variance of the density proportional to

        N(d; mean, variance) * [p 1(d > 0) + (1 - p) 1(d < 0)]

    where p = prob_true.  With p = 1 this is a Gaussian truncated to d > 0, with p = 0 a Gaussian
    truncated to d < 0.

    Works in log space (``log_ndtr``), so it stays finite when the cavity puts essentially no
    mass on the allowed side.  The matched variance is floored at ``VARIANCE_FLOOR * variance``.
    Elements with zero or infinite variance are returned unchanged.
    """
    ok = t.isfinite(variance) & (variance > 0) & t.isfinite(mean)
    v = t.where(ok, variance, t.ones_like(variance))
    m = t.where(ok, mean, t.zeros_like(mean))
    std = v.sqrt()
    z = m / std

    p = prob_true.expand_as(z) if isinstance(prob_true, t.Tensor) else t.full_like(z, prob_true)
    log_Z = t.logaddexp(t.log(p) + log_ndtr(z), t.log1p(-p) + log_ndtr(-z))
    alpha = (2 * p - 1) * t.exp(log_normal_pdf(z) - log_Z) / std

    post_mean = m + v * alpha
    post_var = v * (1 - alpha * (v * alpha + m))
    post_var = t.maximum(post_var, VARIANCE_FLOOR * v)
    post_var = t.where(t.isnan(post_var), VARIANCE_FLOOR * v, post_var)

    return t.where(ok, post_mean, mean), t.where(ok, post_var, variance)


def linear_update(term_mean, term_var, coef, sum_mean, sum_var, post_mean, post_var):
    """
    Pushes a new posterior on d = sum_k coef_k x_k back onto one term x_k.

    Given independent Gaussian cavities on the terms (so d has mean ``sum_mean`` and variance
    ``sum_var``), and the moment-matched posterior N(post_mean, post_var) on d, returns the
    posterior mean and variance of the term.
    """
    ok = t.isfinite(sum_var) & (sum_var > 0) & t.isfinite(term_var)
    safe_sum_var = t.where(ok, sum_var, t.ones_like(sum_var))
    gain = coef * t.where(ok, term_var, t.zeros_like(term_var)) / safe_sum_var
    new_mean = term_mean + gain * (post_mean - sum_mean)
    new_var = term_var - gain * gain * (sum_var - post_var)
    new_var = t.maximum(new_var, VARIANCE_FLOOR * term_var)
    return t.where(ok, new_mean, term_mean), t.where(ok, new_var, term_var)


def local_square_difference(mean_diff, var_diff, precision):
    """
    E[(x - mu)^2] under the local posterior of d = x - mu, with prior N(mean_diff, var_diff)
    (from the cavities of x and mu) times the likelihood N(d; 0, 1/precision).

    Non-finite wherever the result isn't determined (e.g. uniform cavities and zero precision).
    """
    prior_prec = t.reciprocal(var_diff)
    post_var = t.reciprocal(prior_prec + precision)
    exact = t.isinf(prior_prec)
    post_mean = t.where(exact, mean_diff, mean_diff * prior_prec * post_var)
    post_var = t.where(exact, t.zeros_like(post_var), post_var)
    return post_mean**2 + post_var


def gamma_precision_message(expected_sq):
    """
    Variational message to the precision tau of N(x; mu, 1/tau):  Gamma(3/2, E[(x - mu)^2] / 2).

    Returns (shape, rate); the message is uniform wherever the expectation is not finite.
    """
    ok = t.isfinite(expected_sq)
    shape = t.where(ok, t.full_like(expected_sq, 1.5), t.ones_like(expected_sq))
    rate = t.where(ok, 0.5 * expected_sq, t.zeros_like(expected_sq))
    return shape, rate
