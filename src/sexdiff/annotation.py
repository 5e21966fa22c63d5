"""
Gene identifier normalization and gene-name annotation.

Ensembl ids arrive with a version suffix (``ENSG00000123.4``); the
annotation table is keyed by the stable id. The annotation is a static,
read-only mapping injected by the caller.
"""

import logging
import re
import warnings
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import AnnotationMissing
from .model import GeneResult

logger = logging.getLogger(__name__)

_VERSION_SUFFIX = re.compile(r"(\.\d+)+$")


def strip_version(gene_id: str) -> str:
    """Remove trailing ``.<digits>`` version suffixes; idempotent."""
    return _VERSION_SUFFIX.sub("", gene_id)


class GeneAnnotation:
    """Read-only mapping of stable gene id to gene name.

    Keys are version-stripped on construction. When a stable id appears
    more than once, the first name wins.

    Args:
        pairs: ``(gene_id, gene_name)`` pairs, in priority order
    """

    def __init__(self, pairs: Iterable[Tuple[str, Optional[str]]] = ()) -> None:
        self._names: Dict[str, str] = {}
        n_duplicates = 0
        for gene_id, gene_name in pairs:
            if gene_id is None or gene_name is None or gene_name == "":
                continue
            key = strip_version(str(gene_id))
            if key in self._names:
                n_duplicates += 1
                continue
            self._names[key] = str(gene_name)
        if n_duplicates:
            logger.debug("Annotation: %d duplicate gene ids ignored (first match wins)", n_duplicates)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "GeneAnnotation":
        return cls(mapping.items())

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, gene_id: str) -> bool:
        return strip_version(gene_id) in self._names

    def get(self, gene_id: str) -> Optional[str]:
        """Gene name for ``gene_id`` (versioned or not), or None."""
        return self._names.get(strip_version(gene_id))


def annotate_results(
    genes: List[GeneResult],
    annotation: Optional[GeneAnnotation],
) -> Tuple[List[GeneResult], int]:
    """
    Left-join gene names onto test results.

    The output has exactly one row per input row, in the same order;
    results are copied, not mutated. Unmapped ids keep ``gene_name=None``.

    Returns:
        Tuple of (annotated results, number of unmapped ids)
    """
    if annotation is None:
        logger.debug("No annotation supplied; gene names left empty")
        return [replace(gene, gene_name=None) for gene in genes], len(genes)

    annotated = []
    n_missing = 0
    for gene in genes:
        name = annotation.get(gene.gene_id)
        if name is None:
            n_missing += 1
        annotated.append(replace(gene, gene_name=name))

    if n_missing:
        message = f"{n_missing} of {len(genes)} gene ids have no gene name in the annotation"
        logger.warning(message)
        warnings.warn(message, AnnotationMissing, stacklevel=2)
    return annotated, n_missing
