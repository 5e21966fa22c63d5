"""
Negative binomial GLM fitting and Wald testing.

Each gene is fit with a log link, the size factors as offsets and its
dispersion held fixed:

    log(mu_ij) = log(s_j) + x_j . beta_i,   Var(y_ij) = mu_ij + alpha_i * mu_ij**2

by iteratively reweighted least squares. Genes are fit in batches; inside a
batch every IRLS step is a stacked linear solve over all still-active
genes. Each gene moves through FITTING -> CONVERGED | NON_CONVERGED, or
starts as EXCLUDED. Non-converged genes get NA results; the run continues.
"""

import logging
import math
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy import stats

from .config import GLMConfig
from .errors import MalformedInputError, NonConvergenceWarning
from .model import FitStatus, SampleMetadata

logger = logging.getLogger(__name__)

LN2 = math.log(2.0)

# Bound on the linear predictor to keep exp() finite during IRLS
MAX_ETA = 100.0

# Pseudocount for the least-squares starting values
INIT_PSEUDOCOUNT = 0.1


def build_design(
    metadata: SampleMetadata,
    reference_level: str = "female",
    contrast_level: str = "male",
) -> np.ndarray:
    """
    Design matrix with an intercept and a contrast-level indicator.

    Raises:
        MalformedInputError: A sample's sex is neither level.
    """
    indicator = []
    for record in metadata:
        if record.sex == contrast_level:
            indicator.append(1.0)
        elif record.sex == reference_level:
            indicator.append(0.0)
        else:
            raise MalformedInputError(
                f"Sample {record.sample_id!r} has sex {record.sex!r}; "
                f"expected {reference_level!r} or {contrast_level!r}"
            )
    indicator = np.asarray(indicator)
    return np.column_stack([np.ones_like(indicator), indicator])


@dataclass
class GLMFit:
    """Coefficients (natural-log scale) and their standard errors per gene."""

    beta: np.ndarray  # genes x coefficients
    se: np.ndarray  # genes x coefficients
    status: np.ndarray  # FitStatus per gene
    iterations: np.ndarray  # IRLS iterations used per gene

    @property
    def n_converged(self) -> int:
        return int(np.sum(self.status == FitStatus.CONVERGED))

    @property
    def n_non_converged(self) -> int:
        return int(np.sum(self.status == FitStatus.NON_CONVERGED))


def _status_array(n: int, status: FitStatus) -> np.ndarray:
    """Object array holding the enum member itself in every slot."""
    out = np.empty(n, dtype=object)
    for i in range(n):
        out[i] = status
    return out


def _penalty(n_coef: int, config: GLMConfig) -> np.ndarray:
    """Ridge on every coefficient plus the fold-change prior off the intercept."""
    diag = np.full(n_coef, config.ridge)
    if config.lfc_prior_sd is not None:
        diag[1:] += 1.0 / (config.lfc_prior_sd * LN2) ** 2
    return np.diag(diag)


def _irls_batch(
    y: np.ndarray,
    design: np.ndarray,
    log_offset: np.ndarray,
    dispersion: np.ndarray,
    config: GLMConfig,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Fit a batch of genes; returns (beta, se, status, iterations)."""
    n_genes, _ = y.shape
    n_coef = design.shape[1]
    penalty = _penalty(n_coef, config)

    # Starting values: least squares on log normalized counts
    z0 = np.log(y / np.exp(log_offset)[None, :] + INIT_PSEUDOCOUNT)
    beta = np.linalg.solve(design.T @ design, design.T @ z0.T).T

    status = _status_array(n_genes, FitStatus.FITTING)
    iterations = np.zeros(n_genes, dtype=int)
    active = np.ones(n_genes, dtype=bool)

    for iteration in range(1, config.max_iter + 1):
        idx = np.flatnonzero(active)
        if idx.size == 0:
            break

        b = beta[idx]
        alpha = dispersion[idx][:, None]
        eta = np.clip(b @ design.T + log_offset[None, :], -MAX_ETA, MAX_ETA)
        mu = np.exp(eta)
        w = mu / (1.0 + alpha * mu)
        z = eta - log_offset[None, :] + (y[idx] - mu) / mu

        xtwx = np.einsum("gn,ni,nj->gij", w, design, design) + penalty
        xtwz = np.einsum("gn,ni,gn->gi", w, design, z)
        try:
            b_new = np.linalg.solve(xtwx, xtwz[..., None])[..., 0]
        except np.linalg.LinAlgError:
            # fall back to gene-by-gene so one singular system fails alone
            b_new = np.full_like(b, np.nan)
            for k in range(len(idx)):
                try:
                    b_new[k] = np.linalg.solve(xtwx[k], xtwz[k])
                except np.linalg.LinAlgError:
                    pass

        iterations[idx] = iteration
        finite = np.all(np.isfinite(b_new), axis=1)
        diverged = ~finite | np.any(np.abs(b_new) > config.max_abs_coefficient, axis=1)
        delta = np.max(np.abs(b_new - b), axis=1)
        converged = ~diverged & (delta < config.tol)

        beta[idx[finite]] = b_new[finite]
        status[idx[diverged]] = FitStatus.NON_CONVERGED
        status[idx[converged]] = FitStatus.CONVERGED
        active[idx[diverged | converged]] = False

    status[active] = FitStatus.NON_CONVERGED

    # Sandwich covariance of the penalized fit at the final estimate:
    # (X'WX + P)^-1 X'WX (X'WX + P)^-1
    se = np.full(beta.shape, np.nan)
    ok = np.flatnonzero(status == FitStatus.CONVERGED)
    if ok.size:
        eta = np.clip(beta[ok] @ design.T + log_offset[None, :], -MAX_ETA, MAX_ETA)
        mu = np.exp(eta)
        w = mu / (1.0 + dispersion[ok][:, None] * mu)
        xtwx = np.einsum("gn,ni,nj->gij", w, design, design)
        try:
            inv = np.linalg.inv(xtwx + penalty)
            cov = inv @ xtwx @ inv
            se[ok] = np.sqrt(np.clip(np.diagonal(cov, axis1=1, axis2=2), 0.0, None))
        except np.linalg.LinAlgError:
            for k, g in enumerate(ok):
                try:
                    inv = np.linalg.inv(xtwx[k] + penalty)
                    se[g] = np.sqrt(np.clip(np.diag(inv @ xtwx[k] @ inv), 0.0, None))
                except np.linalg.LinAlgError:
                    status[g] = FitStatus.NON_CONVERGED

    beta[status != FitStatus.CONVERGED] = np.nan
    return beta, se, status, iterations


def fit_nb_glm(
    counts: np.ndarray,
    design: np.ndarray,
    size_factors: np.ndarray,
    dispersion: np.ndarray,
    testable: Optional[np.ndarray] = None,
    config: Optional[GLMConfig] = None,
    n_threads: int = 1,
) -> GLMFit:
    """
    Fit the negative binomial GLM for every testable gene.

    Args:
        counts: Raw counts, genes x samples
        design: Design matrix, samples x coefficients
        size_factors: Per-sample size factors
        dispersion: Per-gene dispersion (NaN for excluded genes)
        testable: Mask of genes to fit; others are EXCLUDED
        config: IRLS settings
        n_threads: Worker threads for batches (1 fits in-line)

    Returns:
        GLMFit aligned with the rows of ``counts``
    """
    config = config or GLMConfig()
    counts = np.asarray(counts, dtype=float)
    n_genes = counts.shape[0]
    n_coef = design.shape[1]
    if np.linalg.matrix_rank(design) < n_coef:
        raise MalformedInputError("Design matrix is rank deficient")

    if testable is None:
        testable = np.ones(n_genes, dtype=bool)
    testable = testable & np.isfinite(dispersion)

    beta = np.full((n_genes, n_coef), np.nan)
    se = np.full((n_genes, n_coef), np.nan)
    status = _status_array(n_genes, FitStatus.EXCLUDED)
    iterations = np.zeros(n_genes, dtype=int)

    genes = np.flatnonzero(testable)
    batches: List[np.ndarray] = [
        genes[i : i + config.batch_size] for i in range(0, len(genes), config.batch_size)
    ]
    log_offset = np.log(size_factors)

    def fit_batch(batch: np.ndarray):
        return _irls_batch(counts[batch], design, log_offset, dispersion[batch], config)

    if n_threads > 1 and len(batches) > 1:
        with ThreadPoolExecutor(max_workers=n_threads) as executor:
            fitted = list(executor.map(fit_batch, batches))
    else:
        fitted = [fit_batch(batch) for batch in batches]

    for i, (batch, (b, s, st, it)) in enumerate(zip(batches, fitted)):
        beta[batch] = b
        se[batch] = s
        status[batch] = st
        iterations[batch] = it
        logger.debug("GLM batch %d/%d: %d genes", i + 1, len(batches), len(batch))

    result = GLMFit(beta=beta, se=se, status=status, iterations=iterations)
    if result.n_non_converged:
        message = (
            f"{result.n_non_converged} genes did not converge within "
            f"{config.max_iter} IRLS iterations; their results are NA"
        )
        logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=2)
    return result


@dataclass
class WaldResult:
    """Wald test of one coefficient, on the log2 scale."""

    log2_fold_change: np.ndarray
    lfc_se: np.ndarray
    stat: np.ndarray
    pvalue: np.ndarray
    status: np.ndarray


def wald_test(
    fit: GLMFit,
    coefficient: int = 1,
    distribution: str = "normal",
    df_residual: Optional[int] = None,
) -> WaldResult:
    """
    Wald statistic and two-sided p-value for one coefficient.

    ``distribution`` is "normal" or "t"; the t distribution needs
    ``df_residual``. Genes that did not converge get NaN.
    """
    lfc = fit.beta[:, coefficient] / LN2
    lfc_se = fit.se[:, coefficient] / LN2
    with np.errstate(divide="ignore", invalid="ignore"):
        stat = fit.beta[:, coefficient] / fit.se[:, coefficient]

    if distribution == "t":
        if not df_residual or df_residual < 1:
            raise ValueError("The t distribution needs positive residual degrees of freedom")
        pvalue = 2.0 * stats.t.sf(np.abs(stat), df_residual)
    else:
        pvalue = 2.0 * stats.norm.sf(np.abs(stat))

    valid = fit.status == FitStatus.CONVERGED
    valid &= np.isfinite(stat)
    for arr in (lfc, lfc_se, stat, pvalue):
        arr[~valid] = np.nan

    return WaldResult(
        log2_fold_change=lfc,
        lfc_se=lfc_se,
        stat=stat,
        pvalue=pvalue,
        status=fit.status,
    )
