"""
Library-size normalization by the median-of-ratios method.

Each sample's factor is the median, over genes with no zero count, of the
ratio between the sample's count and the gene's geometric mean across
samples. Ratios are taken in log space. Genes with a zero anywhere are
only left out of the ratio step; they are still normalized and tested.
"""

import logging

import numpy as np

from .errors import MalformedInputError
from .model import CountMatrix, SizeFactors

logger = logging.getLogger(__name__)


def estimate_size_factors(counts: CountMatrix) -> SizeFactors:
    """
    Estimate one positive normalization factor per sample.

    Raises:
        MalformedInputError: Every gene has at least one zero count, so no
            geometric mean is defined.
    """
    k = counts.counts.astype(float)
    reference = np.all(k > 0, axis=1)
    n_reference = int(reference.sum())
    if n_reference == 0:
        raise MalformedInputError(
            "Every gene contains at least one zero count; "
            "median-of-ratios size factors cannot be estimated"
        )

    log_k = np.log(k[reference])
    log_geo_means = log_k.mean(axis=1)
    factors = np.exp(np.median(log_k - log_geo_means[:, None], axis=0))

    logger.debug(
        "Size factors from %d reference genes: min=%.3f max=%.3f",
        n_reference,
        factors.min(),
        factors.max(),
    )
    return SizeFactors(
        sample_ids=counts.sample_ids,
        values=factors,
        n_reference_genes=n_reference,
    )


def normalized_counts(counts: CountMatrix, size_factors: SizeFactors) -> np.ndarray:
    """Counts divided by each sample's size factor (genes x samples)."""
    if tuple(size_factors.sample_ids) != tuple(counts.sample_ids):
        raise MalformedInputError("Size factors are not aligned with the count matrix columns")
    return counts.counts / size_factors.values[None, :]
