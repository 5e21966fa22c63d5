"""
Gene ontology over-representation analysis.

For each term, the probability of seeing at least ``k`` list genes among
the term's ``n`` genes, given ``N`` background genes of which ``K`` are on
the list, is the hypergeometric upper tail P(X >= k). P-values are
Benjamini-Hochberg corrected across every term tested. Terms without a
list gene are not tested and not reported.

Example:
    ontology = GeneOntology([
        OntologyTerm("GO:0006955", "immune response", {"ENSG00000111537", ...}),
    ])
    analyzer = EnrichmentAnalyzer(ontology)
    up, down = analyzer.analyze(de_result)
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import hypergeom

from .annotation import strip_version
from .config import EnrichmentConfig
from .errors import EmptyEnrichmentInput
from .model import DEResult, DirectionEnrichment, EnrichedTerm
from .multitest import adjust_pvalues

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OntologyTerm:
    """A named gene set; gene ids are stored version-stripped."""

    term_id: str
    term_name: str
    genes: FrozenSet[str]
    namespace: Optional[str] = None  # e.g. "BP", "MF", "CC"

    def __post_init__(self):
        object.__setattr__(self, "genes", frozenset(strip_version(g) for g in self.genes))


class GeneOntology:
    """Read-only collection of ontology terms."""

    def __init__(self, terms: Iterable[OntologyTerm] = ()) -> None:
        self._terms: Dict[str, OntologyTerm] = {}
        for term in terms:
            if term.term_id in self._terms:
                raise ValueError(f"Duplicate ontology term id: {term.term_id}")
            self._terms[term.term_id] = term

    @classmethod
    def from_mapping(cls, gene_sets: Dict[Tuple[str, str], Iterable[str]]) -> "GeneOntology":
        """Build from ``{(term_id, term_name): gene_ids}``."""
        return cls(
            OntologyTerm(term_id=term_id, term_name=name, genes=frozenset(genes))
            for (term_id, name), genes in gene_sets.items()
        )

    def __len__(self) -> int:
        return len(self._terms)

    def __iter__(self):
        return iter(self._terms.values())

    def __getitem__(self, term_id: str) -> OntologyTerm:
        return self._terms[term_id]


def hypergeometric_pvalue(k, background_size, list_size, term_size):
    """Upper tail P(X >= k) for X ~ Hypergeometric(N, K, n); vectorized."""
    k = np.asarray(k)
    return hypergeom.sf(k - 1, background_size, list_size, term_size)


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


class EnrichmentAnalyzer:
    """
    Over-representation analyzer against an injected ontology.

    Args:
        ontology: Terms to test
        config: List-selection thresholds and term-size bounds
        gene_names: Maps a stable gene id to its display name; ids map to
            themselves when it returns None
    """

    def __init__(
        self,
        ontology: GeneOntology,
        config: Optional[EnrichmentConfig] = None,
        gene_names: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.ontology = ontology
        self.config = config or EnrichmentConfig()
        self.gene_names = gene_names or (lambda gene_id: None)

    def analyze(self, de_result: DEResult) -> Tuple[DirectionEnrichment, DirectionEnrichment]:
        """
        Test the up and down gene lists of a DE result separately.

        The background universe is every tested gene (non-NA p-value).
        """
        cfg = self.config
        background = [strip_version(g.gene_id) for g in de_result.genes if g.is_tested]

        up_genes = []
        down_genes = []
        for g in sorted(de_result.tested, key=lambda g: g.padj if g.padj is not None else 1.0):
            if g.padj is None or g.padj >= cfg.padj_threshold:
                continue
            if g.log2_fold_change > cfg.log2fc_threshold:
                up_genes.append(strip_version(g.gene_id))
            elif g.log2_fold_change < -cfg.log2fc_threshold:
                down_genes.append(strip_version(g.gene_id))

        up = self.analyze_gene_list(up_genes, background, direction="up")
        down = self.analyze_gene_list(down_genes, background, direction="down")
        return up, down

    def analyze_gene_list(
        self,
        genes: Sequence[str],
        background: Sequence[str],
        direction: str,
    ) -> DirectionEnrichment:
        """
        Test every ontology term against one gene list.

        Args:
            genes: Significant gene ids, most significant first
            background: Universe of gene ids the list was drawn from
            direction: "up" or "down"

        Returns:
            DirectionEnrichment with terms ranked by ascending p-value
        """
        cfg = self.config
        universe = frozenset(strip_version(g) for g in background)
        gene_list = [g for g in _unique(strip_version(g) for g in genes) if g in universe]

        if not gene_list:
            message = f"Empty {direction} gene list; no enrichment computed"
            logger.info(message)
            warnings.warn(message, EmptyEnrichmentInput, stacklevel=2)
            return DirectionEnrichment(direction=direction, input_genes=[], terms=[])

        big_n = len(universe)
        big_k = len(gene_list)

        candidates = []
        for term in self.ontology:
            term_genes = term.genes & universe
            n = len(term_genes)
            if n < cfg.min_term_size:
                continue
            if cfg.max_term_size is not None and n > cfg.max_term_size:
                continue
            overlap = [g for g in gene_list if g in term_genes]
            if not overlap:
                continue
            candidates.append((term, n, overlap))

        if not candidates:
            logger.info("No ontology term overlaps the %s gene list", direction)
            return DirectionEnrichment(direction=direction, input_genes=gene_list, terms=[])

        k = np.array([len(overlap) for _, _, overlap in candidates])
        n = np.array([size for _, size, _ in candidates])
        pvalues = np.clip(hypergeometric_pvalue(k, big_n, big_k, n), 0.0, 1.0)
        padj = adjust_pvalues(pvalues)

        terms = [
            EnrichedTerm(
                term_id=term.term_id,
                term_name=term.term_name,
                list_count=int(k[i]),
                background_count=int(n[i]),
                list_size=big_k,
                background_size=big_n,
                pvalue=float(pvalues[i]),
                padj=float(padj[i]),
                genes=[self.gene_names(g) or g for g in overlap],
            )
            for i, (term, _, overlap) in enumerate(candidates)
        ]
        terms.sort(key=lambda t: (t.pvalue, t.term_id))
        if cfg.padj_cutoff is not None:
            terms = [t for t in terms if t.padj < cfg.padj_cutoff]

        logger.info(
            "Enrichment (%s): %d genes, %d terms tested, %d with padj < 0.05",
            direction,
            big_k,
            len(candidates),
            sum(1 for t in terms if t.padj < 0.05),
        )
        return DirectionEnrichment(
            direction=direction,
            input_genes=gene_list,
            terms=terms,
            n_terms_tested=len(candidates),
        )
