"""Fixed-threshold significance labels."""

import math
from typing import Optional

from .config import (
    LABEL_DOWN,
    LABEL_NONE,
    LABEL_UP,
    LOG2FC_THRESHOLD,
    PADJ_THRESHOLD,
    Label,
)


def _is_na(value: Optional[float]) -> bool:
    return value is None or math.isnan(value)


def classify(log2_fold_change: Optional[float], padj: Optional[float]) -> Label:
    """
    Label a gene from its effect size and adjusted p-value.

    "Male" when log2FC > 1 and padj < 0.05, "Female" when log2FC < -1 and
    padj < 0.05, otherwise "NO" (including NA inputs).
    """
    if _is_na(log2_fold_change) or _is_na(padj) or padj >= PADJ_THRESHOLD:
        return LABEL_NONE
    if log2_fold_change > LOG2FC_THRESHOLD:
        return LABEL_UP
    if log2_fold_change < -LOG2FC_THRESHOLD:
        return LABEL_DOWN
    return LABEL_NONE
