"""
Readers and writers at the pipeline's external boundary.

Inputs are delimited text tables (TSV or CSV, picked by extension) and GMT
gene-set files; outputs are per-stratum TSV tables plus a JSON summary.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterator, Tuple, Union

import pandas as pd

from .annotation import GeneAnnotation
from .enrichment import GeneOntology, OntologyTerm
from .errors import MalformedInputError
from .model import CountMatrix, PipelineResult, SampleMetadata

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _separator(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    return "," if ".csv" in suffixes else "\t"


def read_count_matrix(path: PathLike) -> CountMatrix:
    """Read a genes x samples count table whose first column is the gene id."""
    path = Path(path)
    df = pd.read_csv(path, sep=_separator(path), index_col=0)
    df.index = df.index.astype(str)
    logger.info("Loaded count matrix: %d genes x %d samples", df.shape[0], df.shape[1])
    return CountMatrix.from_dataframe(df)


def read_sample_metadata(path: PathLike) -> SampleMetadata:
    """Read the sample metadata table (sample_id, age_at_index, gender, ...)."""
    path = Path(path)
    df = pd.read_csv(path, sep=_separator(path), dtype={"sample_id": str})
    logger.info("Loaded metadata for %d samples", len(df))
    return SampleMetadata.from_dataframe(df)


def align_inputs(
    counts: CountMatrix, metadata: SampleMetadata
) -> Tuple[CountMatrix, SampleMetadata]:
    """
    Restrict both inputs to their shared samples, in count-matrix order.

    Raises:
        MalformedInputError: No sample is present in both.
    """
    by_id = {r.sample_id: i for i, r in enumerate(metadata)}
    columns = [i for i, s in enumerate(counts.sample_ids) if s in by_id]
    if not columns:
        raise MalformedInputError("No samples found in both count matrix and metadata")

    n_missing_meta = counts.n_samples - len(columns)
    n_missing_counts = len(metadata) - len(columns)
    if n_missing_meta or n_missing_counts:
        logger.info(
            "Dropped %d samples without metadata and %d metadata rows without counts",
            n_missing_meta,
            n_missing_counts,
        )

    aligned_counts = counts.select_samples(columns)
    aligned_meta = metadata.select([by_id[s] for s in aligned_counts.sample_ids])
    return aligned_counts, aligned_meta


def read_annotation(path: PathLike) -> GeneAnnotation:
    """Read a gene_id -> gene_name table (first two columns, header required)."""
    path = Path(path)
    df = pd.read_csv(path, sep=_separator(path), dtype=str, usecols=[0, 1])
    df.columns = ["gene_id", "gene_name"]
    # rows without a name are equivalent to unmapped ids
    df = df.dropna(subset=["gene_id", "gene_name"])
    annotation = GeneAnnotation(zip(df["gene_id"], df["gene_name"]))
    logger.info("Loaded %d gene names", len(annotation))
    return annotation


def _iter_gmt(path: Path) -> Iterator[OntologyTerm]:
    with path.open("r", encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            line = line.rstrip("\n\r")
            if not line.strip():
                continue
            fields = line.split("\t")
            if len(fields) < 3:
                raise MalformedInputError(f"{path}:{line_no}: GMT line needs id, name and genes")
            term_id, term_name, *genes = fields
            yield OntologyTerm(
                term_id=term_id.strip(),
                term_name=term_name.strip(),
                genes=frozenset(g.strip() for g in genes if g.strip()),
            )


def read_gene_sets(path: PathLike) -> GeneOntology:
    """Read ontology gene sets from a GMT file (id, name, genes...)."""
    path = Path(path)
    ontology = GeneOntology(_iter_gmt(path))
    logger.info("Loaded %d ontology terms from %s", len(ontology), path)
    return ontology


def write_results(result: PipelineResult, output_dir: PathLike) -> Dict[str, Path]:
    """
    Write every stratum's tables and a JSON summary.

    Returns:
        Mapping of a short key (e.g. ``age_le_50/results``) to the written path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}

    for name, stratum in result.strata.items():
        tables = {
            "results": stratum.de_result.to_dataframe(),
            "enrichment_up": stratum.enrichment_up.to_dataframe(),
            "enrichment_down": stratum.enrichment_down.to_dataframe(),
        }
        for kind, df in tables.items():
            path = output_dir / f"{name}_{kind}.tsv"
            df.to_csv(path, sep="\t", index=False, na_rep="NA")
            written[f"{name}/{kind}"] = path

    summary_path = output_dir / "summary.json"
    with summary_path.open("w", encoding="utf-8") as fh:
        json.dump(result.to_dict(), fh, indent=2)
    written["summary"] = summary_path

    logger.info("Wrote %d files to %s", len(written), output_dir)
    return written
