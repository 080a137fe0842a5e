"""
Causal effect estimators for observational studies.

Implements regression imputation, two inverse propensity weighting estimators,
the doubly robust estimator and propensity score stratification (with and
without regression adjustment), plus a nonparametric bootstrap for their
variances.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Tuple, Optional, Union
import logging
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor

from scipy import stats
from sklearn.linear_model import LinearRegression

from .glm import (
    ModelSpec, ModelFitError, fit_glm, aliased_columns,
    GAUSSIAN, BINOMIAL, LINEAR, QUADRATIC
)


logger = logging.getLogger(__name__)

ESTIMATOR_NAMES = [
    'regression', 'ipw_ht', 'ipw_hajek', 'doubly_robust', 'strat_unadj', 'strat_adj'
]

ESTIMATOR_LABELS = {
    'regression': 'Regression imputation',
    'ipw_ht': 'IPW 1',
    'ipw_hajek': 'IPW 2',
    'doubly_robust': 'Doubly robust',
    'strat_unadj': 'Propensity score stratification',
    'strat_adj': 'Propensity score stratification with regression adj',
}


@dataclass
class CausalEstimate:
    """Container for causal effect estimates."""
    coefficient: float
    std_error: float
    ci_lower: float
    ci_upper: float
    p_value: float
    method: str

    @property
    def is_significant(self) -> bool:
        """Check if effect is statistically significant at the 5% level."""
        return self.p_value < 0.05

    @classmethod
    def from_normal(cls, coefficient: float, std_error: float, method: str,
                    alpha: float = 0.05) -> 'CausalEstimate':
        """
        Build an estimate with a normal-approximation interval and two-sided p-value.

        Args:
            coefficient: Point estimate
            std_error: Standard error of the point estimate
            method: Name of the estimator
            alpha: Significance level for the confidence interval

        Returns:
            CausalEstimate
        """
        z_crit = stats.norm.ppf(1 - alpha / 2)
        if std_error > 0:
            p_value = float(2 * stats.norm.sf(abs(coefficient) / std_error))
        else:
            p_value = float('nan')
        return cls(
            coefficient=float(coefficient),
            std_error=float(std_error),
            ci_lower=float(coefficient - z_crit * std_error),
            ci_upper=float(coefficient + z_crit * std_error),
            p_value=p_value,
            method=method
        )


@dataclass
class PointEstimates:
    """
    Output of one run of the point-estimate engine.

    Attributes:
        estimates: The six effect estimates, indexed by ESTIMATOR_NAMES
        balance: Covariate-by-stratum balance p-values, rounded to 3 decimals
        propensity: Clipped propensity scores, one per unit
        strata: Per-stratum weight, arm sizes and effects
    """
    estimates: pd.Series
    balance: pd.DataFrame
    propensity: np.ndarray = field(repr=False)
    strata: pd.DataFrame = field(repr=False)


def validate_inputs(
    z, y, x
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, List[str]]:
    """
    Check and convert a (treatment, outcome, covariates) triple.

    Args:
        z: Binary treatment indicator
        y: Outcome
        x: Covariates as a DataFrame, 2-d array or 1-d array (single covariate)

    Returns:
        Tuple of float arrays (z, y, x) and the covariate names

    Raises:
        ValueError: On mismatched lengths, non-binary treatment or missing values
    """
    if isinstance(x, pd.DataFrame):
        names = [str(col) for col in x.columns]
        x_arr = x.to_numpy(dtype=float)
    else:
        x_arr = np.asarray(x, dtype=float)
        if x_arr.ndim == 1:
            x_arr = x_arr.reshape(-1, 1)
        names = [f"x{j + 1}" for j in range(x_arr.shape[1])]

    z_arr = np.asarray(z, dtype=float).ravel()
    y_arr = np.asarray(y, dtype=float).ravel()

    if x_arr.ndim != 2:
        raise ValueError(f"Covariates must be 2-dimensional, got shape {x_arr.shape}")
    if not (len(z_arr) == len(y_arr) == x_arr.shape[0]):
        raise ValueError(
            f"Treatment ({len(z_arr)}), outcome ({len(y_arr)}) and covariates "
            f"({x_arr.shape[0]} rows) must have the same number of units"
        )
    if len(z_arr) == 0:
        raise ValueError("No units supplied")
    if not np.all(np.isin(z_arr, (0.0, 1.0))):
        raise ValueError("Treatment must take values in {0, 1}")
    if np.isnan(y_arr).any() or np.isnan(x_arr).any():
        raise ValueError("Outcome and covariates must not contain missing values")

    return z_arr, y_arr, x_arr, names


def balance_pvalue(treated: np.ndarray, control: np.ndarray) -> float:
    """
    Two-sample balance p-value for one covariate within one stratum.

    Returns 0 when the covariate is constant across the stratum, 1 when the
    arm means are identical or an arm has a single unit, 0 when both arms are
    constant at different levels, and the Welch t-test p-value otherwise.
    """
    treated = np.asarray(treated, dtype=float)
    control = np.asarray(control, dtype=float)

    if np.ptp(np.concatenate([treated, control])) == 0:
        return 0.0
    if np.mean(treated) == np.mean(control) or len(treated) == 1 or len(control) == 1:
        return 1.0
    if np.ptp(treated) == 0 and np.ptp(control) == 0:
        return 0.0
    return float(stats.ttest_ind(treated, control, equal_var=False).pvalue)


def assign_strata(pscore: np.ndarray, n_strata: int) -> np.ndarray:
    """
    Assign units to propensity score strata.

    Cut points are the 1/K, ..., (K-1)/K sample quantiles; strata are
    right-closed intervals labelled 1..K. Tied cut points leave some labels
    unused.

    Args:
        pscore: Propensity scores
        n_strata: Requested number of strata K

    Returns:
        Integer stratum label per unit
    """
    if n_strata < 1:
        raise ValueError(f"n_strata must be at least 1, got {n_strata}")
    probs = np.arange(1, n_strata) / n_strata
    cuts = np.quantile(pscore, probs) if n_strata > 1 else np.array([])
    return np.searchsorted(cuts, pscore, side='left') + 1


def stratum_adjusted_effect(z: np.ndarray, y: np.ndarray, x: np.ndarray,
                            stage: str = 'stratum') -> float:
    """
    Treatment coefficient from y ~ z + xc + z:xc with within-stratum centered xc.

    Covariate terms that are linearly dependent on earlier terms are dropped
    before fitting.

    Raises:
        ModelFitError: If the treatment coefficient is not identified
    """
    xc = x - x.mean(axis=0)
    design = np.column_stack([z, xc, z[:, None] * xc])
    aliased = aliased_columns(np.column_stack([np.ones(len(z)), design]))[1:]

    if aliased[0]:
        raise ModelFitError(stage, "treatment coefficient is not identified")
    if aliased.any():
        logger.debug(f"{stage}: dropping {int(aliased.sum())} aliased terms")

    model = LinearRegression()
    model.fit(design[:, ~aliased], y)
    return float(model.coef_[0])


class ObservationalCausalEstimator:
    """
    Point estimates and bootstrap variances for six average treatment effect estimators.
    """

    def __init__(
        self,
        out_family: str = GAUSSIAN,
        truncation: Tuple[float, float] = (0.0, 1.0),
        n_strata: int = 5,
        quad_out: bool = False,
        quad_prop: bool = False
    ):
        """
        Initialize the estimator.

        Args:
            out_family: GLM family of the outcome models ('gaussian' or 'binomial')
            truncation: Lower and upper bounds the propensity scores are clipped to
            n_strata: Number of propensity score strata
            quad_out: Add squared covariates to the outcome models
            quad_prop: Add squared covariates to the propensity model
        """
        lower, upper = truncation
        if not 0.0 <= lower <= upper <= 1.0:
            raise ValueError(f"Truncation bounds must satisfy 0 <= lower <= upper <= 1, got {truncation}")
        if n_strata < 1:
            raise ValueError(f"n_strata must be at least 1, got {n_strata}")
        # Validated here so a bad family fails before any fitting
        ModelSpec(family=out_family)

        self.out_family = out_family
        self.truncation = (float(lower), float(upper))
        self.n_strata = n_strata
        self.quad_out = quad_out
        self.quad_prop = quad_prop
        self.point_estimates = None

    def fit_propensity(self, z: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Fit the logistic propensity model and clip the fitted scores."""
        spec = ModelSpec(family=BINOMIAL, terms=QUADRATIC if self.quad_prop else LINEAR)
        pscore = fit_glm(spec, x, z, stage='propensity').fitted_values
        lower, upper = self.truncation
        return np.maximum(lower, np.minimum(upper, pscore))

    def fit_outcomes(self, z: np.ndarray, y: np.ndarray,
                     x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Fit the treated and control outcome models; return fitted values for all units."""
        terms = QUADRATIC if self.quad_out else LINEAR
        outcome1 = fit_glm(
            ModelSpec(family=self.out_family, terms=terms, weights=z),
            x, y, stage='outcome_treated'
        ).fitted_values
        outcome0 = fit_glm(
            ModelSpec(family=self.out_family, terms=terms, weights=1 - z),
            x, y, stage='outcome_control'
        ).fitted_values
        return outcome1, outcome0

    def _stratify(
        self, z: np.ndarray, y: np.ndarray, x: np.ndarray,
        pscore: np.ndarray, names: List[str]
    ) -> Tuple[float, float, pd.DataFrame, pd.DataFrame]:
        """
        Propensity score stratification with per-stratum balance checks.

        A stratum missing either arm keeps its weight but contributes zero effect.
        """
        labels = assign_strata(pscore, self.n_strata)
        realized = np.unique(labels)
        if len(realized) < self.n_strata:
            logger.info(f"Only {len(realized)} of {self.n_strata} strata realized "
                        f"(tied propensity quantiles)")

        n = len(z)
        rows = []
        balance = {}
        for k in realized:
            in_k = labels == k
            zk, yk, xk = z[in_k], y[in_k], x[in_k]
            n_treated = int(zk.sum())
            n_control = int(len(zk) - n_treated)
            weight = len(zk) / n

            if n_treated == 0 or n_control == 0:
                logger.debug(f"Stratum {k}: single arm ({n_treated} treated, "
                             f"{n_control} control), zero contribution")
                tau_unadj = 0.0
                tau_adj = 0.0
                balance[f"stratum_{k}"] = np.zeros(x.shape[1])
            else:
                treated = zk == 1
                tau_unadj = float(yk[treated].mean() - yk[~treated].mean())
                tau_adj = stratum_adjusted_effect(zk, yk, xk, stage=f"stratum_{k}")
                balance[f"stratum_{k}"] = np.array([
                    balance_pvalue(xk[treated, j], xk[~treated, j])
                    for j in range(x.shape[1])
                ])

            rows.append({
                'stratum': int(k),
                'weight': weight,
                'n_treated': n_treated,
                'n_control': n_control,
                'tau_unadj': tau_unadj,
                'tau_adj': tau_adj
            })

        strata = pd.DataFrame(rows).set_index('stratum')
        strat_unadj = float((strata['weight'] * strata['tau_unadj']).sum())
        strat_adj = float((strata['weight'] * strata['tau_adj']).sum())
        balance_df = pd.DataFrame(balance, index=names).round(3)

        return strat_unadj, strat_adj, balance_df, strata

    def _point_estimates(self, z: np.ndarray, y: np.ndarray, x: np.ndarray,
                         names: List[str]) -> PointEstimates:
        """Run the engine on validated arrays."""
        if len(z) < self.n_strata:
            raise ValueError(f"Need at least n_strata={self.n_strata} units, got {len(z)}")

        pscore = self.fit_propensity(z, x)
        outcome1, outcome0 = self.fit_outcomes(z, y, x)

        # regression imputation
        ace_reg = np.mean(outcome1 - outcome0)

        # propensity score weighting
        ace_ipw0 = np.mean(z * y / pscore - (1 - z) * y / (1 - pscore))
        ace_ipw = (np.mean(z * y / pscore) / np.mean(z / pscore)
                   - np.mean((1 - z) * y / (1 - pscore)) / np.mean((1 - z) / (1 - pscore)))

        # doubly robust
        res1 = y - outcome1
        res0 = y - outcome0
        ace_dr = ace_reg + np.mean(z * res1 / pscore - (1 - z) * res0 / (1 - pscore))

        strat_unadj, strat_adj, balance, strata = self._stratify(z, y, x, pscore, names)

        estimates = pd.Series(
            [ace_reg, ace_ipw0, ace_ipw, ace_dr, strat_unadj, strat_adj],
            index=ESTIMATOR_NAMES, dtype=float
        )
        return PointEstimates(
            estimates=estimates,
            balance=balance,
            propensity=pscore,
            strata=strata
        )

    def estimate(self, z, y, x) -> PointEstimates:
        """
        Compute the six point estimates and the stratum balance table.

        Args:
            z: Binary treatment indicator
            y: Outcome
            x: Covariates (DataFrame column names label the balance table)

        Returns:
            PointEstimates, also kept on ``self.point_estimates``

        Raises:
            ValueError: On malformed input
            ModelFitError: If a propensity, outcome or stratum fit fails
        """
        z, y, x, names = validate_inputs(z, y, x)
        logger.info(f"Estimating effects for {len(z)} units ({int(z.sum())} treated), "
                    f"{len(names)} covariates, {self.n_strata} strata")
        result = self._point_estimates(z, y, x, names)
        self.point_estimates = result
        logger.info("Point estimates: " + ", ".join(
            f"{name}={value:.3f}" for name, value in result.estimates.items()))
        return result

    def _bootstrap_replicate(self, b: int, idx: np.ndarray, z: np.ndarray,
                             y: np.ndarray, x: np.ndarray,
                             names: List[str]) -> np.ndarray:
        try:
            return self._point_estimates(z[idx], y[idx], x[idx], names).estimates.to_numpy()
        except ModelFitError as e:
            raise ModelFitError(f"bootstrap_{b}", str(e)) from e

    def estimate_with_variance(
        self,
        z, y, x,
        n_boot: int = 100,
        rng: Optional[Union[int, np.random.Generator]] = None,
        n_jobs: int = 1,
        on_replicate_error: str = 'raise',
        return_replicates: bool = False
    ) -> Union[pd.DataFrame, Tuple[pd.DataFrame, pd.DataFrame]]:
        """
        Point estimates with nonparametric bootstrap variances.

        Args:
            z: Binary treatment indicator
            y: Outcome
            x: Covariates
            n_boot: Number of bootstrap replicates (at least 2)
            rng: Seed or numpy Generator used to draw the resamples
            n_jobs: Number of worker threads for the replicates
            on_replicate_error: 'raise' aborts on the first failed replicate,
                'skip' logs and drops failed replicates
            return_replicates: Also return the replicate estimates

        Returns:
            DataFrame indexed by estimator with columns estimate, bootstrap_var
            and std_error; the replicate matrix as well if requested
        """
        if n_boot < 2:
            raise ValueError(f"n_boot must be at least 2, got {n_boot}")
        if on_replicate_error not in ('raise', 'skip'):
            raise ValueError(f"on_replicate_error must be 'raise' or 'skip', got {on_replicate_error}")

        point = self.estimate(z, y, x).estimates
        z, y, x, names = validate_inputs(z, y, x)

        rng = np.random.default_rng(rng)
        n = len(z)
        indices = [rng.integers(0, n, size=n) for _ in range(n_boot)]

        logger.info(f"Running {n_boot} bootstrap replicates on {n_jobs} worker(s)")
        log_every = max(1, n_boot // 10)

        def run(b: int) -> Optional[np.ndarray]:
            try:
                est = self._bootstrap_replicate(b, indices[b], z, y, x, names)
            except ModelFitError as e:
                if on_replicate_error == 'raise':
                    raise
                logger.warning(f"Skipping failed bootstrap replicate: {e}")
                return None
            if (b + 1) % log_every == 0:
                logger.info(f"Bootstrap replicate {b + 1}/{n_boot} done")
            return est

        if n_jobs > 1:
            with ThreadPoolExecutor(max_workers=n_jobs) as executor:
                results = list(executor.map(run, range(n_boot)))
        else:
            results = [run(b) for b in range(n_boot)]

        kept = [est for est in results if est is not None]
        n_failed = n_boot - len(kept)
        if len(kept) < 2:
            raise ModelFitError('bootstrap', f"only {len(kept)} of {n_boot} replicates succeeded")
        if n_failed:
            logger.warning(f"{n_failed} of {n_boot} bootstrap replicates failed and were dropped")

        replicates = pd.DataFrame(np.vstack(kept), columns=ESTIMATOR_NAMES)
        boot_var = replicates.var(axis=0, ddof=1)

        table = pd.DataFrame({
            'estimate': point,
            'bootstrap_var': boot_var,
            'std_error': np.sqrt(boot_var)
        })
        table.attrs['n_boot'] = len(kept)
        table.attrs['n_failed'] = n_failed

        if return_replicates:
            return table, replicates
        return table

    def to_estimates(self, table: pd.DataFrame, alpha: float = 0.05) -> Dict[str, CausalEstimate]:
        """Convert a bootstrap table into CausalEstimate objects keyed by estimator name."""
        return {
            name: CausalEstimate.from_normal(
                row['estimate'], row['std_error'], method=name, alpha=alpha
            )
            for name, row in table.iterrows()
        }


def estimate_effects(z, y, x, out_family: str = GAUSSIAN,
                     truncation: Tuple[float, float] = (0.0, 1.0), n_strata: int = 5,
                     quad_out: bool = False, quad_prop: bool = False) -> PointEstimates:
    """Functional form of ``ObservationalCausalEstimator.estimate``."""
    estimator = ObservationalCausalEstimator(
        out_family=out_family, truncation=truncation, n_strata=n_strata,
        quad_out=quad_out, quad_prop=quad_prop
    )
    return estimator.estimate(z, y, x)


def estimate_effects_with_variance(z, y, x, n_boot: int = 100, rng=None,
                                   out_family: str = GAUSSIAN,
                                   truncation: Tuple[float, float] = (0.0, 1.0),
                                   n_strata: int = 5, quad_out: bool = False,
                                   quad_prop: bool = False, n_jobs: int = 1,
                                   on_replicate_error: str = 'raise',
                                   return_replicates: bool = False
                                   ) -> Union[pd.DataFrame, Tuple[pd.DataFrame, pd.DataFrame]]:
    """Functional form of ``ObservationalCausalEstimator.estimate_with_variance``."""
    estimator = ObservationalCausalEstimator(
        out_family=out_family, truncation=truncation, n_strata=n_strata,
        quad_out=quad_out, quad_prop=quad_prop
    )
    return estimator.estimate_with_variance(
        z, y, x, n_boot=n_boot, rng=rng, n_jobs=n_jobs,
        on_replicate_error=on_replicate_error, return_replicates=return_replicates
    )
