"""
Data model for sex-stratified differential expression.

Fixed-schema records for the pipeline inputs (count matrix, sample
metadata), its intermediate tables (size factors, dispersions) and its
outputs (per-gene test results, per-term enrichment results), with full
provenance. Every table is created fresh per stratum and owned by that
stratum's run.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import LABEL_DOWN, LABEL_NONE, LABEL_UP, AgeStratum
from .errors import MalformedInputError

# Column names of the external sample metadata table
METADATA_COLUMNS = ("sample_id", "age_at_index", "gender", "sample_type", "vital_status")

RESULT_COLUMNS = [
    "gene_id",
    "gene_name",
    "baseMean",
    "log2FoldChange",
    "stderr",
    "stat",
    "pvalue",
    "padj",
    "diffexpressed",
]

ENRICHMENT_COLUMNS = [
    "term_id",
    "term_name",
    "list_count",
    "background_count",
    "gene_ratio",
    "bg_ratio",
    "pvalue",
    "padj",
    "genes",
]


def as_optional(value) -> Optional[float]:
    """Convert NaN/None to None, anything else to float."""
    if value is None:
        return None
    value = float(value)
    return None if math.isnan(value) else value


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class CountMatrix:
    """Genes (rows) x samples (columns) of non-negative integer read counts."""

    gene_ids: Tuple[str, ...]
    sample_ids: Tuple[str, ...]
    counts: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "gene_ids", tuple(str(g) for g in self.gene_ids))
        object.__setattr__(self, "sample_ids", tuple(str(s) for s in self.sample_ids))
        counts = np.asarray(self.counts)
        if counts.ndim != 2:
            raise MalformedInputError(f"Count matrix must be 2-D, got {counts.ndim}-D")
        if counts.shape != (len(self.gene_ids), len(self.sample_ids)):
            raise MalformedInputError(
                f"Count matrix shape {counts.shape} does not match "
                f"{len(self.gene_ids)} genes x {len(self.sample_ids)} samples"
            )
        if len(set(self.gene_ids)) != len(self.gene_ids):
            raise MalformedInputError("Gene ids in the count matrix are not unique")
        if len(set(self.sample_ids)) != len(self.sample_ids):
            raise MalformedInputError("Sample ids in the count matrix are not unique")
        if counts.size:
            if not np.all(np.isfinite(counts)):
                raise MalformedInputError("Count matrix contains missing or infinite values")
            if np.any(counts < 0):
                raise MalformedInputError("Count matrix contains negative counts")
            if not np.all(np.equal(np.mod(counts, 1), 0)):
                raise MalformedInputError("Count matrix contains non-integer counts")
        counts = counts.astype(np.int64)
        counts.setflags(write=False)
        object.__setattr__(self, "counts", counts)

    @property
    def n_genes(self) -> int:
        return len(self.gene_ids)

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def select_samples(self, indices: Sequence[int]) -> "CountMatrix":
        """Column subset, in the order given."""
        idx = list(indices)
        return CountMatrix(
            gene_ids=self.gene_ids,
            sample_ids=tuple(self.sample_ids[i] for i in idx),
            counts=self.counts[:, idx],
        )

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "CountMatrix":
        """Build from a genes x samples DataFrame indexed by gene id."""
        return cls(
            gene_ids=tuple(df.index.astype(str)),
            sample_ids=tuple(df.columns.astype(str)),
            counts=df.to_numpy(),
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.counts,
            index=pd.Index(self.gene_ids, name="gene_id"),
            columns=list(self.sample_ids),
        )


@dataclass(frozen=True)
class SampleRecord:
    """One sample's clinical metadata."""

    sample_id: str
    age: Optional[float]
    sex: Optional[str]
    sample_type: Optional[str]
    vital_status: Optional[str] = None


@dataclass(frozen=True)
class SampleMetadata:
    """Sample records aligned 1:1 and in order with count-matrix columns."""

    records: Tuple[SampleRecord, ...]

    def __post_init__(self):
        object.__setattr__(self, "records", tuple(self.records))
        ids = self.sample_ids
        if len(set(ids)) != len(ids):
            raise MalformedInputError("Sample ids in the metadata are not unique")

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    @property
    def sample_ids(self) -> Tuple[str, ...]:
        return tuple(r.sample_id for r in self.records)

    def select(self, indices: Sequence[int]) -> "SampleMetadata":
        return SampleMetadata(records=tuple(self.records[i] for i in indices))

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "SampleMetadata":
        """Build from a table with the external metadata columns.

        ``sample_id`` may be a column or the index. Sex values are
        lower-cased; empty strings become missing.
        """
        if "sample_id" not in df.columns:
            df = df.rename_axis("sample_id").reset_index()
        missing = [c for c in ("sample_id", "age_at_index", "gender", "sample_type") if c not in df.columns]
        if missing:
            raise MalformedInputError(f"Sample metadata is missing columns: {missing}")

        ages = pd.to_numeric(df["age_at_index"], errors="coerce")
        vital = df["vital_status"] if "vital_status" in df.columns else pd.Series([None] * len(df))

        records = []
        for sample_id, age, sex, sample_type, status in zip(
            df["sample_id"], ages, df["gender"], df["sample_type"], vital
        ):
            records.append(
                SampleRecord(
                    sample_id=str(sample_id),
                    age=None if pd.isna(age) else float(age),
                    sex=_clean_str(sex, lower=True),
                    sample_type=_clean_str(sample_type),
                    vital_status=_clean_str(status),
                )
            )
        return cls(records=tuple(records))

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "sample_id": [r.sample_id for r in self.records],
                "age_at_index": [r.age for r in self.records],
                "gender": [r.sex for r in self.records],
                "sample_type": [r.sample_type for r in self.records],
                "vital_status": [r.vital_status for r in self.records],
            },
            columns=list(METADATA_COLUMNS),
        )


def _clean_str(value, lower: bool = False) -> Optional[str]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    text = str(value).strip()
    if not text or text.lower() in ("nan", "na", "none", "not reported", "'--"):
        return None
    return text.lower() if lower else text


def check_alignment(counts: CountMatrix, metadata: SampleMetadata) -> None:
    """Raise MalformedInputError unless metadata rows match matrix columns in order."""
    if counts.n_samples != len(metadata):
        raise MalformedInputError(
            f"Count matrix has {counts.n_samples} samples but metadata has {len(metadata)} rows"
        )
    for position, (column, sample_id) in enumerate(zip(counts.sample_ids, metadata.sample_ids)):
        if column != sample_id:
            raise MalformedInputError(
                f"Metadata row {position} ({sample_id!r}) does not match "
                f"count matrix column {column!r}"
            )


# =============================================================================
# Intermediate tables
# =============================================================================


@dataclass(frozen=True)
class SizeFactors:
    """Per-sample normalization factors (median-of-ratios)."""

    sample_ids: Tuple[str, ...]
    values: np.ndarray
    n_reference_genes: int = 0  # genes with no zero count used for the ratios

    def as_dict(self) -> Dict[str, float]:
        return {s: float(v) for s, v in zip(self.sample_ids, self.values)}

    @property
    def geometric_mean(self) -> float:
        return float(np.exp(np.mean(np.log(self.values))))


@dataclass(frozen=True)
class DispersionEstimate:
    """
    Per-gene dispersions, derived in two passes.

    Arrays are aligned with ``gene_ids``; genes excluded from testing carry
    NaN. ``final`` is the value used by the GLM.
    """

    gene_ids: Tuple[str, ...]
    base_mean: np.ndarray
    raw: np.ndarray
    trend: np.ndarray
    final: np.ndarray
    outlier: np.ndarray  # bool; raw estimate kept unshrunk
    trend_coefficients: Optional[Tuple[float, float]]  # (asymptotic, extra_poisson)
    trend_converged: bool
    prior_variance: float

    @property
    def n_outliers(self) -> int:
        return int(np.sum(self.outlier))

    def as_dict(self) -> Dict[str, float]:
        return {g: float(d) for g, d in zip(self.gene_ids, self.final) if not np.isnan(d)}


class FitStatus(Enum):
    """Convergence-tracking states of a per-gene GLM fit."""

    FITTING = "fitting"
    CONVERGED = "converged"
    NON_CONVERGED = "non_converged"
    EXCLUDED = "excluded"


# =============================================================================
# Test results
# =============================================================================


@dataclass
class GeneResult:
    """
    Result for a single gene.

    NA values are ``None``. ``label`` is a pure function of
    (log2_fold_change, padj).
    """

    gene_id: str
    base_mean: float
    log2_fold_change: Optional[float]
    lfc_se: Optional[float]
    stat: Optional[float]
    pvalue: Optional[float]
    padj: Optional[float]
    label: str = LABEL_NONE
    gene_name: Optional[str] = None
    status: FitStatus = FitStatus.EXCLUDED

    @property
    def is_tested(self) -> bool:
        return self.pvalue is not None

    @property
    def direction(self) -> Optional[str]:
        if self.log2_fold_change is None:
            return None
        return "up" if self.log2_fold_change > 0 else "down"

    @property
    def display_name(self) -> str:
        return self.gene_name or self.gene_id

    def __repr__(self) -> str:
        lfc = f"{self.log2_fold_change:.2f}" if self.log2_fold_change is not None else "NA"
        adj_p = f"{self.padj:.2e}" if self.padj is not None else "NA"
        return f"GeneResult({self.gene_id}, log2FC={lfc}, padj={adj_p}, {self.label})"


def results_to_dataframe(genes: Iterable[GeneResult]) -> pd.DataFrame:
    """TestResult table with the external column names."""
    rows = [
        {
            "gene_id": g.gene_id,
            "gene_name": g.gene_name,
            "baseMean": g.base_mean,
            "log2FoldChange": g.log2_fold_change,
            "stderr": g.lfc_se,
            "stat": g.stat,
            "pvalue": g.pvalue,
            "padj": g.padj,
            "diffexpressed": g.label,
        }
        for g in genes
    ]
    df = pd.DataFrame(rows, columns=RESULT_COLUMNS)
    numeric = ["baseMean", "log2FoldChange", "stderr", "stat", "pvalue", "padj"]
    df[numeric] = df[numeric].astype(float)
    return df


@dataclass
class DEResult:
    """Per-gene results of one stratum, in count-matrix row order."""

    genes: List[GeneResult]

    @property
    def tested(self) -> List[GeneResult]:
        return [g for g in self.genes if g.is_tested]

    @property
    def upregulated(self) -> List[GeneResult]:
        """Genes labelled as higher in the contrast level, by effect size."""
        up = [g for g in self.genes if g.label == LABEL_UP]
        return sorted(up, key=lambda g: g.log2_fold_change, reverse=True)

    @property
    def downregulated(self) -> List[GeneResult]:
        down = [g for g in self.genes if g.label == LABEL_DOWN]
        return sorted(down, key=lambda g: g.log2_fold_change)

    @property
    def n_upregulated(self) -> int:
        return len(self.upregulated)

    @property
    def n_downregulated(self) -> int:
        return len(self.downregulated)

    def to_dataframe(self) -> pd.DataFrame:
        return results_to_dataframe(self.genes)


# =============================================================================
# Enrichment results
# =============================================================================


@dataclass
class EnrichedTerm:
    """
    One ontology term's over-representation result.

    Attributes:
        term_id: Ontology identifier (e.g. GO:0006955)
        term_name: Human-readable term name
        list_count: k, list genes annotated to the term
        background_count: n, background genes annotated to the term
        list_size: K, list genes within the background
        background_size: N, genes in the background universe
        pvalue: Hypergeometric upper-tail P(X >= k)
        padj: Benjamini-Hochberg adjusted p-value across tested terms
        genes: Contributing gene names, in list order
    """

    term_id: str
    term_name: str
    list_count: int
    background_count: int
    list_size: int
    background_size: int
    pvalue: float
    padj: float
    genes: List[str] = field(default_factory=list)

    @property
    def gene_ratio(self) -> str:
        return f"{self.list_count}/{self.list_size}"

    @property
    def bg_ratio(self) -> str:
        return f"{self.background_count}/{self.background_size}"

    @property
    def fold_enrichment(self) -> float:
        expected = self.list_size * self.background_count / self.background_size
        return self.list_count / expected if expected else float("nan")


@dataclass
class DirectionEnrichment:
    """Enrichment results for one gene list (up or down)."""

    direction: str
    input_genes: List[str]
    terms: List[EnrichedTerm]
    n_terms_tested: int = 0

    @property
    def n_significant(self) -> int:
        return sum(1 for t in self.terms if t.padj < 0.05)

    def to_dataframe(self) -> pd.DataFrame:
        rows = [
            {
                "term_id": t.term_id,
                "term_name": t.term_name,
                "list_count": t.list_count,
                "background_count": t.background_count,
                "gene_ratio": t.gene_ratio,
                "bg_ratio": t.bg_ratio,
                "pvalue": t.pvalue,
                "padj": t.padj,
                "genes": "/".join(t.genes),
            }
            for t in self.terms
        ]
        return pd.DataFrame(rows, columns=ENRICHMENT_COLUMNS)


# =============================================================================
# Reporting and provenance
# =============================================================================


@dataclass
class CohortSummary:
    """Composition of a filtered cohort."""

    n_samples: int
    sex_counts: Dict[str, int]
    vital_status_counts: Dict[str, int]
    age_min: Optional[float]
    age_max: Optional[float]

    def to_dict(self) -> dict:
        return {
            "n_samples": self.n_samples,
            "sex": dict(self.sex_counts),
            "vital_status": dict(self.vital_status_counts),
            "age_range": [self.age_min, self.age_max],
        }


@dataclass
class RunReport:
    """Counts of excluded and NA genes so silent data loss is observable."""

    n_genes: int = 0
    n_degenerate: int = 0
    n_prefiltered: int = 0
    n_tested: int = 0
    n_non_converged: int = 0
    n_na_pvalue: int = 0
    n_dispersion_outliers: int = 0
    trend_fallback: bool = False
    n_annotation_missing: int = 0

    def to_dict(self) -> dict:
        return {
            "n_genes": self.n_genes,
            "n_degenerate": self.n_degenerate,
            "n_prefiltered": self.n_prefiltered,
            "n_tested": self.n_tested,
            "n_non_converged": self.n_non_converged,
            "n_na_pvalue": self.n_na_pvalue,
            "n_dispersion_outliers": self.n_dispersion_outliers,
            "trend_fallback": self.trend_fallback,
            "n_annotation_missing": self.n_annotation_missing,
        }


@dataclass
class StratumProvenance:
    """
    Provenance record for one stratum's analysis.

    Captures the parameters and sample ids needed to reproduce the run.
    """

    timestamp: str
    stratum: str
    stratum_definition: str
    sample_type: Optional[str]
    sample_ids: List[str]
    reference_level: str
    contrast_level: str
    normalization_method: str
    test_method: str
    fdr_method: str
    enrichment_method: str
    thresholds: Dict[str, float]

    @classmethod
    def create(
        cls,
        stratum: AgeStratum,
        sample_type: Optional[str],
        sample_ids: List[str],
        reference_level: str,
        contrast_level: str,
        normalization_method: str,
        test_method: str,
        fdr_method: str,
        enrichment_method: str,
        log2fc_threshold: float,
        padj_threshold: float,
    ) -> "StratumProvenance":
        """Create a provenance record with current timestamp."""
        return cls(
            timestamp=datetime.now().isoformat(),
            stratum=stratum.name,
            stratum_definition=stratum.describe(),
            sample_type=sample_type,
            sample_ids=sample_ids,
            reference_level=reference_level,
            contrast_level=contrast_level,
            normalization_method=normalization_method,
            test_method=test_method,
            fdr_method=fdr_method,
            enrichment_method=enrichment_method,
            thresholds={"log2fc": log2fc_threshold, "padj": padj_threshold},
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "stratum": {"name": self.stratum, "definition": self.stratum_definition},
            "sample_type": self.sample_type,
            "samples": {"n": len(self.sample_ids), "ids": self.sample_ids},
            "design": {"reference": self.reference_level, "contrast": self.contrast_level},
            "methods": {
                "normalization": self.normalization_method,
                "test": self.test_method,
                "fdr": self.fdr_method,
                "enrichment": self.enrichment_method,
            },
            "thresholds": self.thresholds,
        }


@dataclass
class StratumResult:
    """Everything produced by one stratum's pipeline run."""

    stratum: AgeStratum
    provenance: StratumProvenance
    cohort: CohortSummary
    size_factors: SizeFactors
    dispersion: DispersionEstimate
    de_result: DEResult
    enrichment_up: DirectionEnrichment
    enrichment_down: DirectionEnrichment
    report: RunReport

    def to_dict(self) -> dict:
        return {
            "provenance": self.provenance.to_dict(),
            "cohort": self.cohort.to_dict(),
            "size_factors": self.size_factors.as_dict(),
            "report": self.report.to_dict(),
            "dispersion_trend": {
                "coefficients": list(self.dispersion.trend_coefficients)
                if self.dispersion.trend_coefficients
                else None,
                "converged": self.dispersion.trend_converged,
            },
            "genes": {
                "up": self.de_result.n_upregulated,
                "down": self.de_result.n_downregulated,
            },
            "enrichment": {
                "up_terms": len(self.enrichment_up.terms),
                "down_terms": len(self.enrichment_down.terms),
            },
        }


@dataclass
class PipelineResult:
    """Results for every stratum; strata that failed are listed in ``failures``."""

    strata: Dict[str, StratumResult] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "strata": {name: r.to_dict() for name, r in self.strata.items()},
            "failures": dict(self.failures),
        }
