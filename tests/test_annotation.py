"""Tests for gene id normalization and the annotation join."""

import pandas as pd
import pytest

from sexdiff.annotation import GeneAnnotation, annotate_results, strip_version
from sexdiff.errors import AnnotationMissing
from sexdiff.model import FitStatus, GeneResult, results_to_dataframe


def _make_gene(gene_id, lfc=1.5, padj=0.01, **overrides):
    defaults = dict(
        gene_id=gene_id,
        base_mean=120.0,
        log2_fold_change=lfc,
        lfc_se=0.3,
        stat=lfc / 0.3 if lfc is not None else None,
        pvalue=padj / 2 if padj is not None else None,
        padj=padj,
        label="Male" if lfc and lfc > 1 and padj is not None and padj < 0.05 else "NO",
        status=FitStatus.CONVERGED,
    )
    defaults.update(overrides)
    return GeneResult(**defaults)


class TestStripVersion:
    def test_strips_suffix(self):
        assert strip_version("ENSG00000123.4") == "ENSG00000123"

    def test_without_suffix(self):
        assert strip_version("ENSG00000123") == "ENSG00000123"

    def test_only_trailing_digits(self):
        assert strip_version("ENSG00000123.4_PAR_Y") == "ENSG00000123.4_PAR_Y"

    @pytest.mark.parametrize("gene_id", ["ENSG00000123.4", "ENSG00000123", "ENSG1.2.3", ""])
    def test_idempotent(self, gene_id):
        """Stripping an already-stripped id returns it unchanged."""
        once = strip_version(gene_id)
        assert strip_version(once) == once


class TestGeneAnnotation:
    def test_keys_are_version_stripped(self):
        annotation = GeneAnnotation([("ENSG00000001.7", "XIST")])
        assert annotation.get("ENSG00000001") == "XIST"
        assert annotation.get("ENSG00000001.2") == "XIST"
        assert "ENSG00000001.9" in annotation

    def test_first_match_wins(self):
        """Duplicate stable ids keep the first name seen."""
        annotation = GeneAnnotation(
            [("ENSG00000001.1", "FIRST"), ("ENSG00000001.2", "SECOND"), ("ENSG00000002", "OTHER")]
        )
        assert len(annotation) == 2
        assert annotation.get("ENSG00000001") == "FIRST"

    def test_empty_names_are_unmapped(self):
        annotation = GeneAnnotation([("ENSG00000001", ""), ("ENSG00000002", None)])
        assert len(annotation) == 0
        assert annotation.get("ENSG00000001") is None

    def test_from_mapping(self):
        annotation = GeneAnnotation.from_mapping({"ENSG00000003.1": "KDM5D"})
        assert annotation.get("ENSG00000003") == "KDM5D"


class TestAnnotateResults:
    def test_one_row_per_input_in_order(self):
        genes = [_make_gene("ENSG00000002.1"), _make_gene("ENSG00000001.3"), _make_gene("ENSG00000009.1")]
        annotation = GeneAnnotation(
            [("ENSG00000001", "XIST"), ("ENSG00000001", "XIST-dup"), ("ENSG00000002", "RPS4Y1")]
        )
        with pytest.warns(AnnotationMissing):
            annotated, n_missing = annotate_results(genes, annotation)

        assert [g.gene_id for g in annotated] == [g.gene_id for g in genes]
        assert [g.gene_name for g in annotated] == ["RPS4Y1", "XIST", None]
        assert n_missing == 1

    def test_inputs_not_mutated(self):
        genes = [_make_gene("ENSG00000001.1")]
        annotate_results(genes, GeneAnnotation([("ENSG00000001", "XIST")]))
        assert genes[0].gene_name is None

    def test_drop_name_recovers_original(self):
        """Joining names and dropping them again is lossless."""
        genes = [
            _make_gene("ENSG00000001.1"),
            _make_gene("ENSG00000002.1", lfc=None, padj=None, status=FitStatus.EXCLUDED),
            _make_gene("ENSG00000003.2", lfc=-2.0, padj=0.001),
        ]
        annotation = GeneAnnotation([("ENSG00000001", "XIST"), ("ENSG00000003", "UTY")])
        with pytest.warns(AnnotationMissing):
            annotated, _ = annotate_results(genes, annotation)

        before = results_to_dataframe(genes).drop(columns="gene_name")
        after = results_to_dataframe(annotated).drop(columns="gene_name")
        pd.testing.assert_frame_equal(before, after)

    def test_no_annotation(self):
        genes = [_make_gene("ENSG00000001.1")]
        annotated, n_missing = annotate_results(genes, None)
        assert annotated[0].gene_name is None
        assert n_missing == 1
