"""
Generalized linear model fitting for propensity and outcome models.
"""

import numpy as np
from typing import Optional
import logging
from dataclasses import dataclass, field

from sklearn.linear_model import LinearRegression, LogisticRegression


logger = logging.getLogger(__name__)

GAUSSIAN = 'gaussian'
BINOMIAL = 'binomial'
FAMILIES = (GAUSSIAN, BINOMIAL)

LINEAR = 'linear'
QUADRATIC = 'quadratic'
TERMS = (LINEAR, QUADRATIC)


class ModelFitError(RuntimeError):
    """Raised when a model fit fails; ``stage`` names the step that failed."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")


@dataclass
class ModelSpec:
    """
    Tagged configuration for a single GLM fit.

    Attributes:
        family: 'gaussian' (identity link) or 'binomial' (logit link)
        terms: 'linear' uses the covariates as given, 'quadratic' adds squared covariates
        weights: Optional non-negative case weights, one per row
    """
    family: str = GAUSSIAN
    terms: str = LINEAR
    weights: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ValueError(f"Unknown family '{self.family}', expected one of {FAMILIES}")
        if self.terms not in TERMS:
            raise ValueError(f"Unknown terms '{self.terms}', expected one of {TERMS}")


@dataclass
class GLMFit:
    """Fitted values and coefficients on the original covariate scale."""
    fitted_values: np.ndarray
    intercept: float
    coefficients: np.ndarray
    family: str
    n_iter: int = 0


def build_design(x: np.ndarray, terms: str = LINEAR) -> np.ndarray:
    """
    Build the covariate part of the design matrix (no intercept column).

    Squared terms that coincide with their linear term (0/1 indicators) are
    left out, since they would only duplicate a column.

    Args:
        x: Covariate matrix of shape (n, p)
        terms: 'linear' or 'quadratic'

    Returns:
        Design matrix of shape (n, p) or (n, p + number of non-indicator covariates)
    """
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x.reshape(-1, 1)

    if terms == LINEAR:
        return x

    squares = [x[:, j] ** 2 for j in range(x.shape[1])
               if not np.array_equal(x[:, j] ** 2, x[:, j])]
    if not squares:
        return x
    return np.column_stack([x] + squares)


def aliased_columns(design: np.ndarray, tol: Optional[float] = None) -> np.ndarray:
    """
    Flag columns that are linear combinations of the columns before them.

    Mirrors what a pivoting least-squares fit reports as aliased.

    Args:
        design: Full design matrix, intercept column included
        tol: Rank tolerance passed to ``np.linalg.matrix_rank``

    Returns:
        Boolean mask, True where the column adds no rank
    """
    mask = np.zeros(design.shape[1], dtype=bool)
    rank = 0
    for j in range(design.shape[1]):
        new_rank = np.linalg.matrix_rank(design[:, :j + 1][:, ~mask[:j + 1]], tol=tol)
        if new_rank > rank:
            rank = new_rank
        else:
            mask[j] = True
    return mask


def fit_glm(spec: ModelSpec, x: np.ndarray, y: np.ndarray,
            stage: str = 'glm', max_iter: int = 1000) -> GLMFit:
    """
    Fit a GLM with an intercept and return fitted values for every row.

    Rows with zero weight do not influence the fit but still receive fitted
    values, so a model fit on the treated rows predicts for everyone.

    Args:
        spec: Family, terms and optional case weights
        x: Covariate matrix of shape (n, p)
        y: Response vector of length n
        stage: Label used in error messages
        max_iter: Iteration cap for the logistic solver

    Returns:
        GLMFit with fitted values for all n rows

    Raises:
        ModelFitError: If the weighted design is rank deficient, the binomial
            response is not a usable 0/1 vector, or the solver does not converge
    """
    design = build_design(x, spec.terms)
    y = np.asarray(y, dtype=float)
    n = design.shape[0]

    if len(y) != n:
        raise ValueError(f"{stage}: response has {len(y)} rows, covariates have {n}")

    weights = np.ones(n) if spec.weights is None else np.asarray(spec.weights, dtype=float)
    if len(weights) != n or np.any(weights < 0):
        raise ValueError(f"{stage}: weights must be {n} non-negative values")

    active = weights > 0
    if not np.any(active):
        raise ModelFitError(stage, "no rows with positive weight")

    full = np.column_stack([np.ones(n), design])
    if np.linalg.matrix_rank(full[active]) < full.shape[1]:
        raise ModelFitError(
            stage, f"design matrix is rank deficient ({int(active.sum())} rows, "
                   f"{full.shape[1]} parameters)"
        )

    # Unpenalized fits are invariant to column scaling; scaling only helps the solver
    center = np.average(design[active], axis=0, weights=weights[active])
    scale = np.sqrt(np.average((design[active] - center) ** 2, axis=0, weights=weights[active]))
    scale[scale == 0] = 1.0
    scaled = (design - center) / scale

    if spec.family == GAUSSIAN:
        model = LinearRegression()
        model.fit(scaled[active], y[active], sample_weight=weights[active])
        fitted = model.predict(scaled)
        coef_scaled = np.ravel(model.coef_)
        intercept_scaled = float(model.intercept_)
        n_iter = 0
    else:
        y_active = y[active]
        if not np.all(np.isin(y_active, (0.0, 1.0))):
            raise ModelFitError(stage, "binomial family requires a 0/1 response")
        if len(np.unique(y_active)) < 2:
            raise ModelFitError(stage, "binomial response has a single class")

        model = LogisticRegression(penalty=None, solver='newton-cg', max_iter=max_iter)
        try:
            model.fit(scaled[active], y_active.astype(int), sample_weight=weights[active])
        except ValueError as e:
            raise ModelFitError(stage, str(e)) from e

        n_iter = int(np.max(model.n_iter_))
        if n_iter >= max_iter:
            raise ModelFitError(stage, f"logistic fit did not converge in {max_iter} iterations")

        fitted = model.predict_proba(scaled)[:, 1]
        coef_scaled = np.ravel(model.coef_)
        intercept_scaled = float(np.ravel(model.intercept_)[0])

    coefficients = coef_scaled / scale
    intercept = intercept_scaled - float(np.sum(coefficients * center))

    logger.debug(f"{stage}: {spec.family} fit on {int(active.sum())} rows, "
                 f"{design.shape[1]} covariate terms")

    return GLMFit(
        fitted_values=fitted,
        intercept=intercept,
        coefficients=coefficients,
        family=spec.family,
        n_iter=n_iter
    )
