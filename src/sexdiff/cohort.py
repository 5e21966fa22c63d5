"""Cohort selection: pick the samples one stratum's analysis runs on."""

import logging
from collections import Counter
from typing import Optional, Sequence, Tuple

from .config import AgeStratum
from .errors import EmptyCohortError
from .model import CohortSummary, CountMatrix, SampleMetadata, SampleRecord, check_alignment

logger = logging.getLogger(__name__)


def _keep(
    record: SampleRecord,
    stratum: AgeStratum,
    sample_type: Optional[str],
    sexes: Optional[Sequence[str]],
) -> bool:
    if record.age is None or record.sex is None:
        return False
    if sample_type is not None and record.sample_type != sample_type:
        return False
    if sexes is not None and record.sex not in sexes:
        return False
    return stratum.contains(record.age)


def filter_cohort(
    counts: CountMatrix,
    metadata: SampleMetadata,
    stratum: AgeStratum,
    sample_type: Optional[str] = "Metastatic",
    sexes: Optional[Sequence[str]] = ("female", "male"),
) -> Tuple[CountMatrix, SampleMetadata]:
    """
    Select the samples of one stratum.

    A sample is kept when its age and sex are known, its sample type
    matches ``sample_type`` (``None`` disables the check), its sex is one
    of ``sexes`` (``None`` disables the check) and its age falls within
    ``stratum``.

    Args:
        counts: Full count matrix
        metadata: Sample metadata aligned with ``counts`` columns
        stratum: Age band to select
        sample_type: Required sample type
        sexes: Allowed sex levels

    Returns:
        Column-subset count matrix and the row-aligned metadata subset

    Raises:
        EmptyCohortError: No sample passes, or only one sex level remains
        MalformedInputError: ``metadata`` is not aligned with ``counts``
    """
    check_alignment(counts, metadata)

    if sexes is not None:
        sexes = tuple(s.lower() for s in sexes)
    keep = [i for i, r in enumerate(metadata) if _keep(r, stratum, sample_type, sexes)]

    if not keep:
        raise EmptyCohortError(
            f"No samples in stratum {stratum.name!r} ({stratum.describe()}, "
            f"sample_type={sample_type!r}, sexes={sexes})",
            stratum=stratum.name,
        )

    cohort_meta = metadata.select(keep)
    levels = sorted({r.sex for r in cohort_meta})
    if len(levels) < 2:
        raise EmptyCohortError(
            f"Stratum {stratum.name!r} has a single sex level {levels}; "
            "the sex covariate cannot be estimated",
            stratum=stratum.name,
            n_samples=len(keep),
        )

    logger.info(
        "Stratum %s: %d of %d samples selected (%s)",
        stratum.name,
        len(keep),
        len(metadata),
        ", ".join(f"{lvl}={n}" for lvl, n in sorted(Counter(r.sex for r in cohort_meta).items())),
    )
    return counts.select_samples(keep), cohort_meta


def summarize_cohort(metadata: SampleMetadata) -> CohortSummary:
    """Sample counts per sex and vital status, and the age range."""
    ages = [r.age for r in metadata if r.age is not None]
    return CohortSummary(
        n_samples=len(metadata),
        sex_counts=dict(sorted(Counter(r.sex or "unknown" for r in metadata).items())),
        vital_status_counts=dict(
            sorted(Counter(r.vital_status or "unknown" for r in metadata).items())
        ),
        age_min=min(ages) if ages else None,
        age_max=max(ages) if ages else None,
    )
