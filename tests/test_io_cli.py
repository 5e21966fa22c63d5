"""Tests for file readers, writers and the command-line interface."""

import json
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from click.testing import CliRunner

_tests = str(Path(__file__).resolve().parent)
if _tests not in sys.path:
    sys.path.insert(0, _tests)

from _synthetic import make_dataset

from sexdiff.annotation import strip_version
from sexdiff.cli import cli
from sexdiff.errors import MalformedInputError
from sexdiff.io import (
    align_inputs,
    read_annotation,
    read_count_matrix,
    read_gene_sets,
    read_sample_metadata,
    write_results,
)
from sexdiff.pipeline import run_pipeline


def _write_inputs(tmp_path, n_genes=300):
    counts, metadata = make_dataset(n_genes=n_genes)

    counts_path = tmp_path / "counts.tsv"
    counts.to_dataframe().to_csv(counts_path, sep="\t")

    # metadata rows shuffled, plus a sample with no counts
    meta_df = metadata.to_dataframe().iloc[::-1]
    extra = pd.DataFrame(
        [{"sample_id": "NOCOUNTS", "age_at_index": 33, "gender": "Male", "sample_type": "Metastatic", "vital_status": "Alive"}]
    )
    meta_path = tmp_path / "metadata.csv"
    pd.concat([meta_df, extra]).to_csv(meta_path, index=False)

    annotation_path = tmp_path / "annotation.tsv"
    pd.DataFrame(
        {"gene_id": [strip_version(g) for g in counts.gene_ids], "gene_name": [f"GENE{i}" for i in range(n_genes)]}
    ).to_csv(annotation_path, sep="\t", index=False)

    ids = [strip_version(g) for g in counts.gene_ids]
    gmt_path = tmp_path / "go.gmt"
    gmt_path.write_text(
        "GO:0000001\tmale-biased process\t" + "\t".join(ids[:10] + ids[100:110]) + "\n"
        "GO:0000002\tbackground process\t" + "\t".join(ids[200:230]) + "\n"
    )
    return counts, counts_path, meta_path, annotation_path, gmt_path


class TestReaders:
    def test_count_matrix_roundtrip(self, tmp_path):
        counts, counts_path, *_ = _write_inputs(tmp_path)
        loaded = read_count_matrix(counts_path)
        assert loaded.gene_ids == counts.gene_ids
        assert loaded.sample_ids == counts.sample_ids
        np.testing.assert_array_equal(loaded.counts, counts.counts)

    def test_negative_counts_rejected(self, tmp_path):
        path = tmp_path / "bad.tsv"
        pd.DataFrame({"S1": [1, -2], "S2": [3, 4]}, index=["G1", "G2"]).to_csv(path, sep="\t")
        with pytest.raises(MalformedInputError):
            read_count_matrix(path)

    def test_metadata_and_alignment(self, tmp_path):
        """Metadata rows are reordered to the count-matrix columns."""
        counts, counts_path, meta_path, *_ = _write_inputs(tmp_path)
        metadata = read_sample_metadata(meta_path)
        assert len(metadata) == counts.n_samples + 1

        aligned_counts, aligned_meta = align_inputs(read_count_matrix(counts_path), metadata)
        assert aligned_meta.sample_ids == aligned_counts.sample_ids == counts.sample_ids
        assert aligned_meta.records[0].sex == "female"
        assert aligned_meta.records[-1].sex is None

    def test_metadata_requires_columns(self, tmp_path):
        path = tmp_path / "meta.tsv"
        pd.DataFrame({"sample_id": ["S1"], "gender": ["male"]}).to_csv(path, sep="\t", index=False)
        with pytest.raises(MalformedInputError):
            read_sample_metadata(path)

    def test_no_shared_samples(self, tmp_path):
        counts, counts_path, meta_path, *_ = _write_inputs(tmp_path)
        metadata = read_sample_metadata(meta_path).select([len(counts.sample_ids)])
        with pytest.raises(MalformedInputError):
            align_inputs(read_count_matrix(counts_path), metadata)

    def test_annotation_and_gene_sets(self, tmp_path):
        counts, _, _, annotation_path, gmt_path = _write_inputs(tmp_path)
        annotation = read_annotation(annotation_path)
        assert annotation.get(counts.gene_ids[3]) == "GENE3"

        ontology = read_gene_sets(gmt_path)
        assert len(ontology) == 2
        assert len(ontology["GO:0000001"].genes) == 20
        assert ontology["GO:0000002"].term_name == "background process"

    def test_gmt_needs_genes(self, tmp_path):
        path = tmp_path / "bad.gmt"
        path.write_text("GO:1\tname only\n")
        with pytest.raises(MalformedInputError):
            read_gene_sets(path)


class TestWriteResults:
    def test_tables_and_summary(self, tmp_path):
        """Every stratum gets its three tables plus one summary.json."""
        counts, counts_path, meta_path, annotation_path, gmt_path = _write_inputs(tmp_path)
        aligned = align_inputs(read_count_matrix(counts_path), read_sample_metadata(meta_path))
        result = run_pipeline(
            *aligned,
            annotation=read_annotation(annotation_path),
            ontology=read_gene_sets(gmt_path),
        )
        written = write_results(result, tmp_path / "out")

        assert set(written) == {
            "age_le_50/results",
            "age_le_50/enrichment_up",
            "age_le_50/enrichment_down",
            "age_gt_50/results",
            "age_gt_50/enrichment_up",
            "age_gt_50/enrichment_down",
            "summary",
        }
        table = pd.read_csv(written["age_le_50/results"], sep="\t")
        assert list(table.columns) == [
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
        assert len(table) == counts.n_genes
        assert set(table["diffexpressed"]) <= {"Male", "Female", "NO"}

        summary = json.loads(written["summary"].read_text())
        assert set(summary["strata"]) == {"age_le_50", "age_gt_50"}


class TestCli:
    def test_classify(self):
        runner = CliRunner()
        assert runner.invoke(cli, ["classify", "2.0", "0.01"]).output.strip() == "Male"
        assert runner.invoke(cli, ["classify", "--", "-1.5", "0.001"]).output.strip() == "Female"
        assert runner.invoke(cli, ["classify", "0.3", "0.2"]).output.strip() == "NO"

    def test_run(self, tmp_path):
        _, counts_path, meta_path, annotation_path, gmt_path = _write_inputs(tmp_path)
        outdir = tmp_path / "results"
        runner = CliRunner()
        result = runner.invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--metadata", str(meta_path),
                "--annotation", str(annotation_path),
                "--gene-sets", str(gmt_path),
                "--outdir", str(outdir),
                "--threads", "2",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "age_le_50:" in result.output
        assert (outdir / "age_gt_50_results.tsv").exists()
        assert (outdir / "summary.json").exists()

    def test_run_with_no_usable_stratum(self, tmp_path):
        """The command fails when no stratum can be analysed."""
        _, counts_path, meta_path, *_ = _write_inputs(tmp_path)
        runner = CliRunner()
        result = runner.invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--metadata", str(meta_path),
                "--sample-type", "Solid Tissue Normal",
                "--outdir", str(tmp_path / "out"),
            ],
        )
        assert result.exit_code != 0

    def test_run_rejects_inverted_term_sizes(self, tmp_path):
        _, counts_path, meta_path, *_ = _write_inputs(tmp_path)
        runner = CliRunner()
        result = runner.invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--metadata", str(meta_path),
                "--min-term-size", "50",
                "--max-term-size", "20",
                "--outdir", str(tmp_path / "out"),
            ],
        )
        assert result.exit_code == 2
        assert "max_term_size" in result.output
        assert not (tmp_path / "out").exists()
