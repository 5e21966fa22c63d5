"""
Sex-stratified differential expression pipeline orchestrator.

Runs, for each age stratum independently:

    cohort filter -> size factors -> dispersions -> NB GLM / Wald test
    -> BH correction -> classification -> annotation join
    -> up/down over-representation analysis

Each stratum builds its own size factors, dispersions and results from its
own cohort; nothing is shared between strata. A stratum whose cohort is
empty or has a single sex fails alone and is listed in
``PipelineResult.failures``.
"""

import logging
import warnings
from typing import Optional

import numpy as np

from .annotation import GeneAnnotation, annotate_results
from .classifier import classify
from .cohort import filter_cohort, summarize_cohort
from .config import (
    ENRICHMENT_METHOD,
    FDR_METHOD,
    LOG2FC_THRESHOLD,
    NORMALIZATION_METHOD,
    PADJ_THRESHOLD,
    TEST_METHOD,
    AgeStratum,
    PipelineConfig,
)
from .dispersion import estimate_dispersions
from .enrichment import EnrichmentAnalyzer, GeneOntology
from .errors import DegenerateGeneSkip, EmptyCohortError
from .glm import build_design, fit_nb_glm, wald_test
from .model import (
    CountMatrix,
    DEResult,
    DirectionEnrichment,
    GeneResult,
    PipelineResult,
    RunReport,
    SampleMetadata,
    StratumProvenance,
    StratumResult,
    as_optional,
    check_alignment,
)
from .multitest import adjust_pvalues
from .normalization import estimate_size_factors

logger = logging.getLogger(__name__)

N_COEFFICIENTS = 2


def run_stratum(
    counts: CountMatrix,
    metadata: SampleMetadata,
    stratum: AgeStratum,
    config: Optional[PipelineConfig] = None,
    annotation: Optional[GeneAnnotation] = None,
    ontology: Optional[GeneOntology] = None,
) -> StratumResult:
    """
    Run the full analysis for one stratum.

    Args:
        counts: Full count matrix (read-only)
        metadata: Sample metadata aligned with ``counts`` columns
        stratum: Age band to analyse
        config: Pipeline configuration
        annotation: Gene id -> gene name mapping
        ontology: Gene sets for enrichment; no enrichment when None

    Returns:
        StratumResult owning every table produced for the stratum

    Raises:
        EmptyCohortError: The stratum's cohort is empty, has one sex, or
            leaves no residual degrees of freedom
        MalformedInputError: Inputs violate their structural invariants
    """
    config = config or PipelineConfig()
    report = RunReport(n_genes=counts.n_genes)

    # === Cohort ===
    cohort_counts, cohort_meta = filter_cohort(
        counts,
        metadata,
        stratum,
        sample_type=config.sample_type,
        sexes=config.sexes,
    )
    n_samples = cohort_counts.n_samples
    if n_samples <= N_COEFFICIENTS:
        raise EmptyCohortError(
            f"Stratum {stratum.name!r} has {n_samples} samples; "
            f"at least {N_COEFFICIENTS + 1} are needed",
            stratum=stratum.name,
            n_samples=n_samples,
        )

    # === Normalization ===
    size_factors = estimate_size_factors(cohort_counts)

    # === Gene masks ===
    raw = cohort_counts.counts
    degenerate = np.ptp(raw, axis=1) == 0  # all-zero or identical in every sample
    prefiltered = ~degenerate & (raw.sum(axis=1) < config.min_total_count)
    testable = ~degenerate & ~prefiltered
    report.n_degenerate = int(degenerate.sum())
    report.n_prefiltered = int(prefiltered.sum())
    if report.n_degenerate:
        message = (
            f"{report.n_degenerate} genes with all-zero or constant counts "
            f"excluded from testing in stratum {stratum.name}"
        )
        logger.info(message)
        warnings.warn(message, DegenerateGeneSkip, stacklevel=2)
    if report.n_prefiltered:
        logger.info(
            "Low-count filter: %d genes with total count < %d not tested",
            report.n_prefiltered,
            config.min_total_count,
        )

    design = build_design(cohort_meta, config.reference_level, config.contrast_level)

    # === Dispersions ===
    dispersion = estimate_dispersions(
        cohort_counts,
        size_factors,
        testable=testable,
        design=design,
        config=config.dispersion,
    )
    report.trend_fallback = not dispersion.trend_converged and bool(testable.any())
    report.n_dispersion_outliers = dispersion.n_outliers

    # === GLM and Wald test ===
    fit = fit_nb_glm(
        raw,
        design,
        size_factors.values,
        dispersion.final,
        testable=testable,
        config=config.glm,
        n_threads=config.n_threads,
    )
    wald = wald_test(
        fit,
        coefficient=1,
        distribution=config.glm.distribution,
        df_residual=n_samples - N_COEFFICIENTS,
    )
    report.n_non_converged = fit.n_non_converged

    # === Multiple testing and classification ===
    padj = adjust_pvalues(wald.pvalue)

    genes = []
    for i, gene_id in enumerate(cohort_counts.gene_ids):
        lfc = as_optional(wald.log2_fold_change[i])
        gene_padj = as_optional(padj[i])
        genes.append(
            GeneResult(
                gene_id=gene_id,
                base_mean=float(dispersion.base_mean[i]),
                log2_fold_change=lfc,
                lfc_se=as_optional(wald.lfc_se[i]),
                stat=as_optional(wald.stat[i]),
                pvalue=as_optional(wald.pvalue[i]),
                padj=gene_padj,
                label=classify(lfc, gene_padj),
                status=wald.status[i],
            )
        )

    report.n_tested = sum(1 for g in genes if g.is_tested)
    report.n_na_pvalue = counts.n_genes - report.n_tested

    # === Annotation ===
    genes, report.n_annotation_missing = annotate_results(genes, annotation)
    de_result = DEResult(genes=genes)

    # === Enrichment ===
    if ontology is not None:
        analyzer = EnrichmentAnalyzer(
            ontology,
            config=config.enrichment,
            gene_names=annotation.get if annotation is not None else None,
        )
        enrichment_up, enrichment_down = analyzer.analyze(de_result)
    else:
        enrichment_up = DirectionEnrichment(direction="up", input_genes=[], terms=[])
        enrichment_down = DirectionEnrichment(direction="down", input_genes=[], terms=[])

    logger.info(
        "Stratum %s: %d tested, %d NA, %d %s, %d %s",
        stratum.name,
        report.n_tested,
        report.n_na_pvalue,
        de_result.n_upregulated,
        config.contrast_level,
        de_result.n_downregulated,
        config.reference_level,
    )

    provenance = StratumProvenance.create(
        stratum=stratum,
        sample_type=config.sample_type,
        sample_ids=list(cohort_counts.sample_ids),
        reference_level=config.reference_level,
        contrast_level=config.contrast_level,
        normalization_method=NORMALIZATION_METHOD,
        test_method=TEST_METHOD,
        fdr_method=FDR_METHOD,
        enrichment_method=ENRICHMENT_METHOD,
        log2fc_threshold=LOG2FC_THRESHOLD,
        padj_threshold=PADJ_THRESHOLD,
    )

    return StratumResult(
        stratum=stratum,
        provenance=provenance,
        cohort=summarize_cohort(cohort_meta),
        size_factors=size_factors,
        dispersion=dispersion,
        de_result=de_result,
        enrichment_up=enrichment_up,
        enrichment_down=enrichment_down,
        report=report,
    )


def run_pipeline(
    counts: CountMatrix,
    metadata: SampleMetadata,
    config: Optional[PipelineConfig] = None,
    annotation: Optional[GeneAnnotation] = None,
    ontology: Optional[GeneOntology] = None,
) -> PipelineResult:
    """
    Run every configured stratum.

    Strata that raise EmptyCohortError are recorded in ``failures`` and the
    remaining strata still run. Structural input errors propagate.
    """
    config = config or PipelineConfig()
    check_alignment(counts, metadata)
    result = PipelineResult()

    for stratum in config.strata:
        logger.info("Running stratum %s (%s)", stratum.name, stratum.describe())
        try:
            result.strata[stratum.name] = run_stratum(
                counts,
                metadata,
                stratum,
                config=config,
                annotation=annotation,
                ontology=ontology,
            )
        except EmptyCohortError as exc:
            logger.warning("Skipping stratum %s: %s", stratum.name, exc)
            result.failures[stratum.name] = str(exc)

    return result
