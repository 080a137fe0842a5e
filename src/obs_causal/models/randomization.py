"""
Inference for completely randomized experiments.

Used as the benchmark the observational estimators are compared against.
"""

import numpy as np
from typing import Optional, Union
import logging
from dataclasses import dataclass, field

from .causal_models import CausalEstimate


logger = logging.getLogger(__name__)


@dataclass
class RandomizationTestResult:
    """Fisher randomization test of the sharp null of no effect."""
    observed: float
    p_value: float
    n_permutations: int
    null_distribution: np.ndarray = field(repr=False)


def _check_assignment(z, y):
    z = np.asarray(z, dtype=float).ravel()
    y = np.asarray(y, dtype=float).ravel()
    if len(z) != len(y):
        raise ValueError(f"Treatment ({len(z)}) and outcome ({len(y)}) lengths differ")
    if not np.all(np.isin(z, (0.0, 1.0))):
        raise ValueError("Treatment must take values in {0, 1}")
    n_treated = int(z.sum())
    if n_treated < 2 or len(z) - n_treated < 2:
        raise ValueError("Each arm needs at least two units")
    return z, y


def difference_in_means(z: np.ndarray, y: np.ndarray) -> float:
    """Mean outcome of treated units minus mean outcome of control units."""
    treated = z == 1
    return float(y[treated].mean() - y[~treated].mean())


def fisher_randomization_test(
    z, y,
    n_permutations: int = 1000,
    rng: Optional[Union[int, np.random.Generator]] = None
) -> RandomizationTestResult:
    """
    Monte Carlo Fisher randomization test with the difference in means.

    Args:
        z: Binary treatment indicator
        y: Outcome
        n_permutations: Number of random reassignments
        rng: Seed or numpy Generator for the permutations

    Returns:
        RandomizationTestResult with the one-sided p-value P(T >= t_obs)
    """
    z, y = _check_assignment(z, y)
    if n_permutations < 1:
        raise ValueError(f"n_permutations must be positive, got {n_permutations}")
    rng = np.random.default_rng(rng)

    observed = difference_in_means(z, y)
    null = np.array([difference_in_means(rng.permutation(z), y) for _ in range(n_permutations)])
    p_value = float(np.mean(null >= observed))

    logger.info(f"Randomization test: observed difference {observed:.3f}, "
                f"p-value {p_value:.4f} ({n_permutations} permutations)")

    return RandomizationTestResult(
        observed=observed,
        p_value=p_value,
        n_permutations=n_permutations,
        null_distribution=null
    )


def neyman_inference(z, y, alpha: float = 0.05) -> CausalEstimate:
    """
    Neymanian inference for the average treatment effect.

    Uses the conservative variance estimate s1^2 / n1 + s0^2 / n0.

    Args:
        z: Binary treatment indicator
        y: Outcome
        alpha: Significance level for the confidence interval

    Returns:
        CausalEstimate with normal-approximation interval and two-sided p-value
    """
    z, y = _check_assignment(z, y)
    treated = z == 1
    tau_hat = difference_in_means(z, y)
    var_hat = (np.var(y[treated], ddof=1) / treated.sum()
               + np.var(y[~treated], ddof=1) / (~treated).sum())
    return CausalEstimate.from_normal(tau_hat, float(np.sqrt(var_hat)), method='neyman', alpha=alpha)
