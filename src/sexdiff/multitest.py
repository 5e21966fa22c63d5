"""Benjamini-Hochberg false discovery rate correction with NA passthrough."""

from typing import Optional, Sequence, Union

import numpy as np
from statsmodels.stats.multitest import multipletests

PValues = Union[np.ndarray, Sequence[Optional[float]]]


def adjust_pvalues(pvalues: PValues) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NA entries (NaN or None) are left out of the correction set and come
    back as NaN in the same positions. Only the valid p-values count
    toward the number of tests m.

    Args:
        pvalues: Raw p-values

    Returns:
        Array of adjusted p-values aligned with the input
    """
    raw = np.array([np.nan if p is None else p for p in pvalues], dtype=float)
    adjusted = np.full_like(raw, np.nan)

    valid = ~np.isnan(raw)
    if not np.any(valid):
        return adjusted

    _, adjusted[valid], _, _ = multipletests(raw[valid], method="fdr_bh")
    return adjusted
