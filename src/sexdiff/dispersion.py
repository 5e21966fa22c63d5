"""
Negative binomial dispersion estimation with empirical-Bayes shrinkage.

Three phases, each vectorized over genes:

1. Raw estimates from the moments of normalized counts under
   ``variance = mean + dispersion * mean**2``.
2. A parametric trend ``dispersion(mean) = a0 + a1 / mean`` fit by a
   Gamma-family GLM with identity link, iterated with removal of genes
   whose residual ratio lies outside [1e-4, 15]. This is a barrier: the
   shrink phase needs the trend of every gene.
3. Shrinkage on the log scale. Each gene's log raw estimate is combined
   with the log trend value, weighted by the inverse of its sampling
   variance and of the prior variance across genes. The sampling variance
   of a moments estimate grows as ``(1 + 1 / (dispersion * mean))**2``, so
   low-count genes lean on the trend and well-measured genes keep their
   own estimate. Genes far above the trend keep the raw estimate.

If the trend does not converge, a constant trend equal to the median raw
estimate is used and a NonConvergenceWarning is issued.
"""

import logging
import warnings
from typing import Optional, Tuple

import numpy as np
import statsmodels.api as sm
from scipy.special import polygamma
from scipy.stats import median_abs_deviation
from statsmodels.tools.sm_exceptions import DomainWarning

from .config import DispersionConfig
from .errors import NonConvergenceWarning
from .model import CountMatrix, DispersionEstimate, SizeFactors
from .normalization import normalized_counts

logger = logging.getLogger(__name__)

# Residual ratio window for genes used in the trend fit
TREND_RESIDUAL_MIN = 1e-4
TREND_RESIDUAL_MAX = 15.0


def raw_dispersions(
    norm_counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    min_dispersion: float,
    max_dispersion: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Moments estimate of dispersion per gene.

    Residuals are taken around the least-squares fit of the normalized
    counts on ``design``, so a covariate effect does not inflate the
    estimate. With an intercept-only design this is close to
    ``(variance - mean(1/s) * mean) / mean**2``.

    Returns:
        Tuple of (mean normalized count, raw dispersion clipped to
        [min_dispersion, max_dispersion]); genes with zero mean get NaN.
    """
    n_samples = norm_counts.shape[1]
    df_residual = n_samples - np.linalg.matrix_rank(design)
    base_mean = norm_counts.mean(axis=1)

    hat = design @ np.linalg.pinv(design)
    fitted = np.clip(norm_counts @ hat.T, 0.0, None)
    poisson_part = fitted / size_factors[None, :]
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = ((norm_counts - fitted) ** 2 - poisson_part) / fitted**2
    terms = np.where(fitted > 0, terms, 0.0)

    raw = np.full(base_mean.shape, np.nan)
    positive = base_mean > 0
    raw[positive] = terms[positive].sum(axis=1) / df_residual
    raw[positive] = np.clip(raw[positive], min_dispersion, max_dispersion)
    return base_mean, raw


def trend_values(coefficients: Tuple[float, float], base_mean: np.ndarray) -> np.ndarray:
    asymptotic, extra_poisson = coefficients
    with np.errstate(divide="ignore"):
        return asymptotic + extra_poisson / base_mean


def fit_dispersion_trend(
    base_mean: np.ndarray,
    raw: np.ndarray,
    max_iter: int = 10,
    tol: float = 1e-6,
) -> Optional[Tuple[float, float]]:
    """
    Fit ``raw ~ a0 + a1 / base_mean`` with a Gamma GLM (identity link).

    Returns:
        The (a0, a1) coefficients, or None when the fit fails, yields a
        non-positive coefficient, or does not converge within ``max_iter``.
    """
    if len(raw) < 3:
        logger.debug("Too few genes (%d) to fit a dispersion trend", len(raw))
        return None

    design = np.column_stack([np.ones_like(base_mean), 1.0 / base_mean])
    family = sm.families.Gamma(link=sm.families.links.Identity())
    coefficients = np.array([0.1, 1.0])

    for iteration in range(max_iter):
        residuals = raw / (design @ coefficients)
        use = (residuals > TREND_RESIDUAL_MIN) & (residuals < TREND_RESIDUAL_MAX)
        if use.sum() < 3:
            return None
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", DomainWarning)
                warnings.simplefilter("ignore", RuntimeWarning)
                fit = sm.GLM(raw[use], design[use], family=family).fit(
                    start_params=coefficients
                )
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            logger.debug("Dispersion trend fit failed at iteration %d: %s", iteration, exc)
            return None

        new = np.asarray(fit.params, dtype=float)
        if not np.all(np.isfinite(new)) or np.any(new <= 0):
            logger.debug("Dispersion trend coefficients not positive: %s", new)
            return None

        change = float(np.sum(np.log(new / coefficients) ** 2))
        coefficients = new
        logger.debug(
            "Trend iteration %d: a0=%.4g a1=%.4g change=%.3g",
            iteration + 1,
            new[0],
            new[1],
            change,
        )
        if change < tol:
            return float(coefficients[0]), float(coefficients[1])

    return None


def estimate_dispersions(
    counts: CountMatrix,
    size_factors: SizeFactors,
    testable: Optional[np.ndarray] = None,
    design: Optional[np.ndarray] = None,
    config: Optional[DispersionConfig] = None,
) -> DispersionEstimate:
    """
    Estimate per-gene dispersions, shrunk toward a mean-dependent trend.

    Args:
        counts: Raw counts of the cohort
        size_factors: Size factors of the same samples
        testable: Boolean mask of genes to estimate; others get NaN.
            Defaults to genes with a positive mean.
        design: Design matrix (samples x coefficients) the residuals are
            taken against; intercept-only when None
        config: Dispersion settings

    Returns:
        DispersionEstimate aligned with ``counts.gene_ids``
    """
    config = config or DispersionConfig()
    n_samples = counts.n_samples
    if design is None:
        design = np.ones((n_samples, 1))
    n_coefficients = int(np.linalg.matrix_rank(design))
    df_residual = n_samples - n_coefficients
    if df_residual < 1:
        raise ValueError(
            f"{n_samples} samples leave no residual degrees of freedom "
            f"for {n_coefficients} coefficients"
        )

    max_disp = config.max_dispersion or max(10.0, float(n_samples))
    min_disp = config.min_dispersion

    norm = normalized_counts(counts, size_factors)
    base_mean, raw = raw_dispersions(norm, size_factors.values, design, min_disp, max_disp)

    if testable is None:
        testable = base_mean > 0
    testable = testable & (base_mean > 0)
    raw[~testable] = np.nan

    trend = np.full(base_mean.shape, np.nan)
    final = np.full(base_mean.shape, np.nan)
    outlier = np.zeros(base_mean.shape, dtype=bool)

    if not testable.any():
        logger.warning("No testable genes; dispersions not estimated")
        return DispersionEstimate(
            gene_ids=counts.gene_ids,
            base_mean=base_mean,
            raw=raw,
            trend=trend,
            final=final,
            outlier=outlier,
            trend_coefficients=None,
            trend_converged=False,
            prior_variance=config.min_prior_variance,
        )

    # --- Trend (barrier between the raw and shrink phases) ---
    for_fit = testable & (raw >= 100 * min_disp)
    coefficients = fit_dispersion_trend(
        base_mean[for_fit],
        raw[for_fit],
        max_iter=config.trend_max_iter,
        tol=config.trend_tol,
    )
    if coefficients is not None:
        trend[testable] = trend_values(coefficients, base_mean[testable])
        logger.info(
            "Dispersion trend: %.4g + %.4g / mean (%d genes)",
            coefficients[0],
            coefficients[1],
            int(for_fit.sum()),
        )
    else:
        constant = float(np.median(raw[testable]))
        trend[testable] = constant
        message = (
            "Dispersion trend fit did not converge; using the median raw "
            f"dispersion {constant:.4g} for every gene"
        )
        logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=2)

    # --- Shrinkage ---
    log_raw = np.log(raw[testable])
    log_trend = np.log(trend[testable])
    mu = base_mean[testable]

    trigamma = float(polygamma(1, df_residual / 2.0))
    fit_mask = for_fit[testable]
    residuals = log_raw[fit_mask] - log_trend[fit_mask]
    if residuals.size >= 2:
        var_log_disp = float(median_abs_deviation(residuals, scale="normal")) ** 2
    else:
        var_log_disp = 0.0
    prior_var = max(var_log_disp - trigamma, config.min_prior_variance)

    xim = float(np.mean(1.0 / size_factors.values))
    sampling_var = trigamma * (1.0 + xim / (trend[testable] * mu)) ** 2

    weight_raw = 1.0 / sampling_var
    weight_prior = 1.0 / prior_var
    log_map = (weight_raw * log_raw + weight_prior * log_trend) / (weight_raw + weight_prior)

    # floored so a degenerate spread (MAD of 0, too few genes) does not flag every gene
    outlier_scale = np.sqrt(max(var_log_disp, prior_var))
    gene_outlier = log_raw > log_trend + config.outlier_sd * outlier_scale
    shrunk = np.where(gene_outlier, log_raw, log_map)

    final[testable] = np.clip(np.exp(shrunk), min_disp, max_disp)
    outlier[testable] = gene_outlier

    logger.info(
        "Dispersions: %d genes, prior variance %.3f, %d outliers kept unshrunk",
        int(testable.sum()),
        prior_var,
        int(gene_outlier.sum()),
    )

    return DispersionEstimate(
        gene_ids=counts.gene_ids,
        base_mean=base_mean,
        raw=raw,
        trend=trend,
        final=final,
        outlier=outlier,
        trend_coefficients=coefficients,
        trend_converged=coefficients is not None,
        prior_variance=prior_var,
    )
