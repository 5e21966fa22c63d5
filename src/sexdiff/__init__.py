"""Sex-stratified differential expression for tumor RNA-seq cohorts.

Filters a cohort into age strata, normalizes counts by median-of-ratios,
fits a negative binomial GLM per gene with shrunk dispersions, tests the
male-vs-female effect, labels significant genes and runs gene ontology
over-representation analysis on the up and down lists.

Usage::

    from sexdiff import PipelineConfig, run_pipeline

    result = run_pipeline(counts, metadata, config=PipelineConfig(),
                          annotation=annotation, ontology=ontology)
    for name, stratum in result.strata.items():
        stratum.de_result.to_dataframe().to_csv(f"{name}.tsv", sep="\\t")
"""

from sexdiff.annotation import GeneAnnotation, strip_version
from sexdiff.classifier import classify
from sexdiff.config import AgeStratum, EnrichmentConfig, PipelineConfig
from sexdiff.enrichment import EnrichmentAnalyzer, GeneOntology, OntologyTerm
from sexdiff.errors import (
    AnnotationMissing,
    DegenerateGeneSkip,
    EmptyCohortError,
    EmptyEnrichmentInput,
    MalformedInputError,
    NonConvergenceWarning,
    SexDiffError,
)
from sexdiff.model import CountMatrix, SampleMetadata, SampleRecord
from sexdiff.multitest import adjust_pvalues
from sexdiff.pipeline import run_pipeline, run_stratum

__all__ = [
    "AgeStratum",
    "AnnotationMissing",
    "CountMatrix",
    "DegenerateGeneSkip",
    "EmptyCohortError",
    "EmptyEnrichmentInput",
    "EnrichmentAnalyzer",
    "EnrichmentConfig",
    "GeneAnnotation",
    "GeneOntology",
    "MalformedInputError",
    "NonConvergenceWarning",
    "OntologyTerm",
    "PipelineConfig",
    "SampleMetadata",
    "SampleRecord",
    "SexDiffError",
    "adjust_pvalues",
    "classify",
    "run_pipeline",
    "run_stratum",
    "strip_version",
]
