"""Error and warning taxonomy for the sex-stratified DE pipeline.

Structural problems with a cohort raise exceptions. Per-gene and per-term
problems are recorded inline (NA fields, report counters) and surfaced as
``UserWarning`` subclasses so one bad gene never invalidates a batch.
"""


class SexDiffError(Exception):
    """Base class for all sexdiff errors."""


class EmptyCohortError(SexDiffError):
    """A filter yields zero samples or a single covariate level.

    Fatal for the stratum being filtered only.
    """

    def __init__(self, message: str, stratum: str = "", n_samples: int = 0):
        super().__init__(message)
        self.stratum = stratum
        self.n_samples = n_samples


class MalformedInputError(SexDiffError, ValueError):
    """Count matrix or sample metadata violate their structural invariants."""


class NonConvergenceWarning(UserWarning):
    """A per-gene GLM fit or the dispersion trend fit did not converge."""


class DegenerateGeneSkip(UserWarning):
    """Genes with all-zero counts or zero variance were excluded from testing."""


class AnnotationMissing(UserWarning):
    """Gene ids without a gene name in the annotation mapping."""


class EmptyEnrichmentInput(UserWarning):
    """An empty significant-gene list was passed to the enrichment engine."""
