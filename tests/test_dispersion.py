"""Tests for dispersion estimation, trend fitting and shrinkage."""

import sys
from pathlib import Path

import numpy as np
import pytest

_tests = str(Path(__file__).resolve().parent)
if _tests not in sys.path:
    sys.path.insert(0, _tests)

from _synthetic import make_counts

from sexdiff import dispersion as dispersion_module
from sexdiff.config import DispersionConfig
from sexdiff.dispersion import estimate_dispersions, fit_dispersion_trend
from sexdiff.errors import NonConvergenceWarning
from sexdiff.model import CountMatrix
from sexdiff.normalization import estimate_size_factors

SEXES = ("female", "male") * 10


def _make_design(sexes=SEXES):
    indicator = np.array([1.0 if s == "male" else 0.0 for s in sexes])
    return np.column_stack([np.ones_like(indicator), indicator])


def _with_outlier_gene(counts):
    """Append a gene that alternates 0 / 2000 within each sex."""
    n = counts.n_samples
    row = np.array([0 if (j // 2) % 2 == 0 else 2000 for j in range(n)])
    return CountMatrix(
        gene_ids=counts.gene_ids + ("ENSGOUTLIER",),
        sample_ids=counts.sample_ids,
        counts=np.vstack([counts.counts, row]),
    )


class TestFitDispersionTrend:
    def test_recovers_coefficients(self):
        """Gamma noise around a known trend recovers its coefficients."""
        rng = np.random.RandomState(5)
        base_mean = rng.lognormal(mean=4.0, sigma=1.5, size=2000) + 1.0
        true = 0.05 + 3.0 / base_mean
        raw = true * rng.gamma(shape=10.0, scale=0.1, size=base_mean.size)

        coefficients = fit_dispersion_trend(base_mean, raw)

        assert coefficients is not None
        a0, a1 = coefficients
        assert a0 == pytest.approx(0.05, rel=0.3)
        assert a1 == pytest.approx(3.0, rel=0.3)

    def test_too_few_genes(self):
        assert fit_dispersion_trend(np.array([1.0, 2.0]), np.array([0.1, 0.2])) is None

    def test_no_iterations_is_not_converged(self):
        base_mean = np.linspace(1, 100, 50)
        assert fit_dispersion_trend(base_mean, 0.1 + 1.0 / base_mean, max_iter=0) is None


class TestEstimateDispersions:
    def test_positive_and_finite(self):
        counts = make_counts(sexes=SEXES, seed=1)
        sf = estimate_size_factors(counts)
        estimate = estimate_dispersions(counts, sf, design=_make_design())

        tested = estimate.base_mean > 0
        assert np.all(np.isfinite(estimate.final[tested]))
        assert np.all(estimate.final[tested] > 0)
        assert len(estimate.gene_ids) == counts.n_genes

    def test_shrinkage_moves_toward_trend(self):
        """Shrunk values lie between the raw estimate and the trend."""
        counts = make_counts(sexes=SEXES, seed=2)
        sf = estimate_size_factors(counts)
        estimate = estimate_dispersions(counts, sf, design=_make_design())

        keep = ~estimate.outlier & np.isfinite(estimate.final)
        log_raw = np.log(estimate.raw[keep])
        log_trend = np.log(estimate.trend[keep])
        log_final = np.log(estimate.final[keep])
        assert np.all(np.abs(log_final - log_trend) <= np.abs(log_raw - log_trend) + 1e-9)
        assert np.all(np.minimum(log_raw, log_trend) - 1e-9 <= log_final)
        assert np.all(log_final <= np.maximum(log_raw, log_trend) + 1e-9)

    def test_outlier_keeps_raw_estimate(self):
        """A gene far above the trend is not shrunk."""
        counts = _with_outlier_gene(make_counts(sexes=SEXES, seed=3))
        sf = estimate_size_factors(counts)
        estimate = estimate_dispersions(counts, sf, design=_make_design())

        assert estimate.outlier[-1]
        assert estimate.final[-1] == pytest.approx(estimate.raw[-1])
        assert estimate.n_outliers >= 1

    def test_excluded_genes_are_nan(self):
        counts = make_counts(n_genes=50, sexes=SEXES, seed=4)
        sf = estimate_size_factors(counts)
        testable = np.ones(counts.n_genes, dtype=bool)
        testable[:5] = False
        estimate = estimate_dispersions(counts, sf, testable=testable, design=_make_design())

        assert np.all(np.isnan(estimate.final[:5]))
        assert np.all(np.isfinite(estimate.final[5:]))
        assert len(estimate.as_dict()) == counts.n_genes - 5

    def test_outlier_threshold_has_a_floor(self, monkeypatch):
        """A zero spread around the trend does not flag every gene above it."""
        counts = make_counts(sexes=SEXES, seed=8)
        sf = estimate_size_factors(counts)
        monkeypatch.setattr(dispersion_module, "median_abs_deviation", lambda *a, **k: 0.0)

        estimate = estimate_dispersions(counts, sf, design=_make_design())

        above = np.sum(estimate.raw > estimate.trend)
        assert above > 50
        assert estimate.n_outliers < 0.1 * above
        assert estimate.prior_variance == pytest.approx(DispersionConfig().min_prior_variance)

    def test_trend_failure_falls_back_to_median(self, monkeypatch):
        """A failed trend fit degrades to the median raw dispersion."""
        counts = make_counts(n_genes=80, sexes=SEXES, seed=6)
        sf = estimate_size_factors(counts)
        monkeypatch.setattr(dispersion_module, "fit_dispersion_trend", lambda *a, **k: None)

        with pytest.warns(NonConvergenceWarning):
            estimate = estimate_dispersions(counts, sf, design=_make_design())

        assert not estimate.trend_converged
        assert estimate.trend_coefficients is None
        tested = np.isfinite(estimate.raw)
        np.testing.assert_allclose(estimate.trend[tested], np.median(estimate.raw[tested]))
        assert np.all(np.isfinite(estimate.final[tested]))

    def test_zero_iterations_config_falls_back(self):
        counts = make_counts(n_genes=80, sexes=SEXES, seed=6)
        sf = estimate_size_factors(counts)
        with pytest.warns(NonConvergenceWarning):
            estimate = estimate_dispersions(
                counts, sf, design=_make_design(), config=DispersionConfig(trend_max_iter=0)
            )
        assert not estimate.trend_converged

    def test_needs_residual_degrees_of_freedom(self):
        counts = make_counts(n_genes=20, sexes=("female", "male"), seed=7)
        sf = estimate_size_factors(counts)
        with pytest.raises(ValueError):
            estimate_dispersions(counts, sf, design=_make_design(("female", "male")))
