"""Configuration for the sex-stratified differential expression pipeline.

Everything that was ambient session state in an interactive analysis
(thresholds, strata, fit tolerances) lives here and is passed explicitly
into :func:`sexdiff.pipeline.run_pipeline`.
"""

import math
from dataclasses import dataclass, field
from typing import Literal, Optional, Tuple

# =============================================================================
# Classifier constants
# =============================================================================

LOG2FC_THRESHOLD = 1.0
PADJ_THRESHOLD = 0.05

LABEL_UP = "Male"
LABEL_DOWN = "Female"
LABEL_NONE = "NO"

Label = Literal["Male", "Female", "NO"]

# Method names recorded in provenance
NORMALIZATION_METHOD = "median_of_ratios"
TEST_METHOD = "nb_glm_wald"
FDR_METHOD = "fdr_bh"
ENRICHMENT_METHOD = "hypergeometric_ora"


# =============================================================================
# Strata
# =============================================================================


@dataclass(frozen=True)
class AgeStratum:
    """An age band ``lower < age <= upper``; a missing bound is open."""

    name: str
    lower: Optional[float] = None
    upper: Optional[float] = None

    def contains(self, age: Optional[float]) -> bool:
        if age is None or math.isnan(age):
            return False
        if self.lower is not None and not age > self.lower:
            return False
        if self.upper is not None and not age <= self.upper:
            return False
        return True

    def describe(self) -> str:
        if self.lower is None and self.upper is None:
            return "any age"
        if self.lower is None:
            return f"age <= {self.upper:g}"
        if self.upper is None:
            return f"age > {self.lower:g}"
        return f"{self.lower:g} < age <= {self.upper:g}"


def default_strata(age_threshold: float = 50.0) -> Tuple[AgeStratum, AgeStratum]:
    """The two strata analysed by default: age <= T and age > T."""
    t = f"{age_threshold:g}"
    return (
        AgeStratum(name=f"age_le_{t}", upper=age_threshold),
        AgeStratum(name=f"age_gt_{t}", lower=age_threshold),
    )


# =============================================================================
# Component configuration
# =============================================================================


@dataclass
class DispersionConfig:
    """Settings for raw dispersion estimation, trend fitting and shrinkage.

    Attributes:
        min_dispersion: Floor for every dispersion value.
        max_dispersion: Ceiling for raw estimates. ``None`` means
            ``max(10, n_samples)``.
        trend_max_iter: Outlier-removal iterations of the parametric trend fit.
        trend_tol: Convergence tolerance on the squared log change of the
            trend coefficients.
        outlier_sd: Genes whose log raw estimate lies more than this many
            residual standard deviations above the trend keep their raw value.
        min_prior_variance: Floor for the prior variance of log dispersions.
    """

    min_dispersion: float = 1e-8
    max_dispersion: Optional[float] = None
    trend_max_iter: int = 10
    trend_tol: float = 1e-6
    outlier_sd: float = 2.0
    min_prior_variance: float = 0.25


@dataclass
class GLMConfig:
    """Settings for the per-gene negative binomial IRLS fit.

    ``lfc_prior_sd`` is the standard deviation (log2 scale) of a zero-centred
    normal prior on the non-intercept coefficients. It keeps genes with an
    all-zero group finite; ``None`` leaves only the ``ridge`` term.
    """

    max_iter: int = 100
    tol: float = 1e-6  # absolute change in coefficients (natural-log scale)
    ridge: float = 1e-6
    lfc_prior_sd: Optional[float] = 10.0
    max_abs_coefficient: float = 30 * math.log(2)
    distribution: Literal["normal", "t"] = "normal"
    batch_size: int = 2000


@dataclass
class EnrichmentConfig:
    """
    Configuration for over-representation analysis.

    Attributes:
        padj_threshold: Adjusted p-value cutoff for a gene to enter a list
        log2fc_threshold: Minimum |log2FC| for a gene to enter a list
        min_term_size: Smallest term (genes within the background) tested
        max_term_size: Largest term tested; ``None`` disables the bound
        padj_cutoff: Only report terms with padj below this; ``None`` reports
            every term with at least one list gene
    """

    padj_threshold: float = 0.05
    log2fc_threshold: float = 0.0
    min_term_size: int = 10
    max_term_size: Optional[int] = 500
    padj_cutoff: Optional[float] = None

    def __post_init__(self):
        if self.min_term_size < 1:
            raise ValueError("min_term_size must be at least 1")
        if self.max_term_size is not None and self.max_term_size < self.min_term_size:
            raise ValueError(
                f"max_term_size ({self.max_term_size}) is smaller than "
                f"min_term_size ({self.min_term_size})"
            )


@dataclass
class PipelineConfig:
    """Top-level configuration passed into the pipeline entry point."""

    age_threshold: float = 50.0
    sample_type: Optional[str] = "Metastatic"
    sexes: Optional[Tuple[str, ...]] = ("female", "male")
    reference_level: str = "female"
    contrast_level: str = "male"
    strata: Tuple[AgeStratum, ...] = ()

    # Genes whose total raw count is below this are not tested (0 disables)
    min_total_count: int = 0

    n_threads: int = 1

    dispersion: DispersionConfig = field(default_factory=DispersionConfig)
    glm: GLMConfig = field(default_factory=GLMConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    def __post_init__(self):
        """Validate configuration."""
        if not self.strata:
            self.strata = default_strata(self.age_threshold)
        if self.sexes is not None:
            self.sexes = tuple(s.lower() for s in self.sexes)
        self.reference_level = self.reference_level.lower()
        self.contrast_level = self.contrast_level.lower()
        if self.reference_level == self.contrast_level:
            raise ValueError("reference_level and contrast_level must differ")
        if self.min_total_count < 0:
            raise ValueError("min_total_count must be non-negative")
        if self.n_threads < 1:
            raise ValueError("n_threads must be at least 1")
        if self.glm.distribution not in ("normal", "t"):
            raise ValueError(f"Unknown Wald distribution: {self.glm.distribution!r}")
        if self.glm.batch_size < 1:
            raise ValueError("glm.batch_size must be at least 1")
        if self.glm.lfc_prior_sd is not None and self.glm.lfc_prior_sd <= 0:
            raise ValueError("glm.lfc_prior_sd must be positive")
        names = [s.name for s in self.strata]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stratum names: {names}")
