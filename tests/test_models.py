import numpy as np
import pandas as pd
import pytest

from microbiome_markers.analysis.contrasts import build_contrast, model_matrix
from microbiome_markers.analysis.models import (
    calculate_effective_samples,
    coefficient_table,
    design_with_scaling,
    fit_feature_model,
    fit_zig,
    scaling_factor,
)
from microbiome_markers.errors import FitConvergenceError
from microbiome_markers.options import DiffModel


@pytest.fixture
def lognormal_data():
    """log2 abundances 2 units higher in the treated group for the first 5 features."""
    rng = np.random.default_rng(3)
    n_feat, n_per_group = 15, 10
    samples = [f"S{i}" for i in range(2 * n_per_group)]
    labels = ["control"] * n_per_group + ["treated"] * n_per_group
    plan = build_contrast(labels, contrast=("treated", "control"))
    design = model_matrix(plan, samples)

    log_abund = 6 + rng.normal(0, 0.4, size=(n_feat, len(samples)))
    log_abund[:5, n_per_group:] += 2
    counts = np.round(2 ** log_abund)
    # Zeros in the low abundance features
    counts[10:, ::3] = 0
    counts = pd.DataFrame(counts, index=[f"OTU{i}" for i in range(n_feat)], columns=samples)
    norm_factors = pd.Series(rng.uniform(800, 1200, size=len(samples)), index=samples)
    return counts, design, norm_factors


def test_scaling_factor():
    assert np.allclose(scaling_factor([5.0, 5.0]), np.log(2))
    assert np.allclose(scaling_factor([1.0, 2.0, 3.0]), np.log([1.5, 2.0, 2.5]))


def test_design_with_scaling(lognormal_data):
    _, design, nf = lognormal_data
    full = design_with_scaling(design, nf)
    assert list(full.columns) == ["control", "treated", "scalingFactor"]
    with pytest.raises(ValueError, match="no normalization factor"):
        design_with_scaling(design, nf.iloc[:5])


def test_fit_feature_model_recovers_effect(lognormal_data):
    counts, design, nf = lognormal_data
    fit = fit_feature_model(counts, design, nf)
    assert fit.model is DiffModel.ZILN
    assert np.allclose(fit.coefficients["treated"].iloc[:5], 2, atol=0.5)
    assert (np.abs(fit.coefficients["treated"].iloc[5:10]) < 0.6).all()
    assert (fit.pvalues["treated"].iloc[:5] < 1e-4).all()
    assert fit.n_fitted == 15


def test_fit_feature_model_needs_positive_observations(lognormal_data):
    counts, design, nf = lognormal_data
    sparse = counts.copy()
    sparse.iloc[:, 2:] = 0
    with pytest.raises(FitConvergenceError, match="ZILN model failed"):
        fit_feature_model(sparse, design, nf)


def test_fit_rejects_negative_values(lognormal_data):
    counts, design, nf = lognormal_data
    with pytest.raises(FitConvergenceError, match="non-negative"):
        fit_zig(counts - 100, design, nf)


def test_fit_requires_aligned_samples(lognormal_data):
    counts, design, nf = lognormal_data
    with pytest.raises(ValueError, match="same order"):
        fit_feature_model(counts[counts.columns[::-1]], design, nf)


def test_fit_zig(lognormal_data):
    counts, design, nf = lognormal_data
    fit = fit_zig(counts, design, nf)
    assert fit.model is DiffModel.ZIG
    assert (fit.z.values[counts.values > 0] == 0).all()
    assert ((fit.z.values >= 0) & (fit.z.values <= 1)).all()
    assert np.allclose(fit.coefficients["treated"].iloc[:5], 2, atol=0.5)
    assert fit.converged.dtype == bool


def test_effective_samples(lognormal_data):
    counts, design, nf = lognormal_data
    ziln = fit_feature_model(counts, design, nf)
    assert calculate_effective_samples(ziln).tolist() == (counts > 0).sum(axis=1).astype(float).tolist()
    zig = fit_zig(counts, design, nf)
    effective = calculate_effective_samples(zig)
    assert (effective <= counts.shape[1]).all()
    assert (effective.iloc[:10] == counts.shape[1]).all()


def test_coefficient_table_ziln(lognormal_data):
    counts, design, nf = lognormal_data
    table = coefficient_table(fit_feature_model(counts, design, nf), "treated", "fdr")
    assert list(table.columns) == ["logFC", "pvalues", "adjPvalues"]
    assert list(table.index) == list(counts.index)
    assert (table["adjPvalues"] >= table["pvalues"]).all()


def test_coefficient_table_zig(lognormal_data):
    counts, design, nf = lognormal_data
    table = coefficient_table(fit_zig(counts, design, nf), "treated")
    assert list(table.columns) == ["treated", "pvalues", "adjPvalues"]
    assert (table["pvalues"].iloc[:5] < 1e-3).all()


def test_coefficient_table_effective_samples_filter(lognormal_data):
    counts, design, nf = lognormal_data
    fit = fit_zig(counts, design, nf)
    table = coefficient_table(fit, "treated", eff=0.5)
    # The zero-rich features have the fewest effective samples
    assert table.shape[0] < counts.shape[0]
    assert "OTU0" in table.index
