import warnings
from unittest.mock import Mock

import numpy as np
import pandas as pd
import pytest

from conftest import simulate_profile
from microbiome_markers import (
    EmptyResultWarning,
    FitConvergenceError,
    MetagenomeSeqServices,
    UsageError,
    run_metagenomeseq,
)
from microbiome_markers.analysis.models import fit_zig
from microbiome_markers.analysis.moderated import contrasts_fit, empirical_bayes, top_table

SERVICE_NAMES = [
    "normalize", "summarize", "fit_feature_model", "fit_zig",
    "contrasts_fit", "empirical_bayes", "top_table",
]
MARKERS = ["OTU1", "OTU2", "OTU3", "OTU4"]


def run_quietly(*args, **kwargs):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", EmptyResultWarning)
        return run_metagenomeseq(*args, **kwargs)


def test_ziln_two_groups_finds_markers(two_group_profile):
    mm = run_metagenomeseq(
        two_group_profile, "group", contrast=("treated", "control"),
        taxa_rank="none", p_adjust="fdr",
    )
    table = mm.marker_table
    assert not mm.fell_back
    assert mm.diff_method == "metagenomeSeq: ZILN"
    assert mm.norm_method == "CSS"
    assert list(table.columns) == ["feature", "enrich_group", "ef_logFC", "pvalue", "padj"]
    assert table.index[0] == "marker1"
    assert (table["padj"] < 0.05).all()

    found = table.set_index("feature")
    assert set(MARKERS) <= set(found.index)
    assert (found.loc[MARKERS, "enrich_group"] == "treated").all()
    assert (found.loc[MARKERS, "ef_logFC"] > 0).all()


def test_positive_effect_means_numerator(two_group_profile):
    table = run_quietly(
        two_group_profile, "group", contrast=("control", "treated"),
        taxa_rank="none", pvalue_cutoff=0,
    ).marker_table
    effect = table["ef_logFC"]
    assert (table.loc[effect > 0, "enrich_group"] == "control").all()
    assert (table.loc[effect <= 0, "enrich_group"] == "treated").all()


def test_flipped_contrast_negates_effects(two_group_profile):
    forward = run_quietly(
        two_group_profile, "group", contrast=("treated", "control"), pvalue_cutoff=0,
    ).marker_table
    backward = run_quietly(
        two_group_profile, "group", contrast=("control", "treated"), pvalue_cutoff=0,
    ).marker_table

    assert forward["feature"].tolist() == backward["feature"].tolist()
    fitted = forward["ef_logFC"].notna()
    assert np.allclose(forward.loc[fitted, "ef_logFC"], -backward.loc[fitted, "ef_logFC"], atol=1e-8)
    assert np.allclose(forward.loc[fitted, "pvalue"], backward.loc[fitted, "pvalue"])
    # The enriched group follows the data, not the contrast direction
    assert forward.loc[fitted, "enrich_group"].tolist() == backward.loc[fitted, "enrich_group"].tolist()


def test_fallback_returns_every_feature(two_group_profile):
    with pytest.warns(EmptyResultWarning):
        mm = run_metagenomeseq(two_group_profile, "group", contrast=("treated", "control"), pvalue_cutoff=0)
    # k__Bacteria, two phyla and twenty genera
    assert mm.marker_table.shape[0] == 23
    assert mm.n_candidates == 23
    assert mm.fell_back
    assert mm.n_markers == 0
    assert "k__Bacteria|p__Phylum0" in mm.marker_table["feature"].tolist()


def test_taxa_rank_none_keeps_original_features(ten_feature_profile):
    mm = run_quietly(ten_feature_profile, "group", contrast=("treated", "control"), taxa_rank="none", pvalue_cutoff=0)
    assert mm.marker_table.shape[0] == 10
    assert mm.marker_table["feature"].tolist() == ten_feature_profile.feature_names


def test_taxa_rank_genus(two_group_profile):
    mm = run_quietly(two_group_profile, "group", contrast=("treated", "control"), taxa_rank="Genus", pvalue_cutoff=0)
    assert set(mm.marker_table["feature"]) == {f"g__Genus{i}" for i in range(20)}
    assert mm.otu_table.shape == (20, 16)


def test_rarefy_with_seed_is_reproducible(two_group_profile):
    kwargs = dict(contrast=("treated", "control"), norm="rarefy", norm_para={"seed": 42}, pvalue_cutoff=0)
    first = run_quietly(two_group_profile, "group", **kwargs)
    second = run_quietly(two_group_profile, "group", **kwargs)
    pd.testing.assert_frame_equal(first.marker_table, second.marker_table)
    assert first.norm_method == "rarefy"


def test_otu_table_is_scaled_by_normalization_factors(two_group_profile):
    mm = run_quietly(
        two_group_profile, "group", contrast=("treated", "control"),
        taxa_rank="none", norm_para={"sl": 100}, pvalue_cutoff=0,
    )
    otu = mm.otu_table
    assert list(otu.index) == two_group_profile.feature_names
    ratio = otu / two_group_profile.counts
    # One scale per sample
    assert np.allclose(ratio.std(axis=0, skipna=True).fillna(0), 0)


@pytest.mark.parametrize("norm", ["TSS", "TMM", "RLE", "CPM", 1000, "none"])
def test_normalization_methods(two_group_profile, norm):
    mm = run_quietly(two_group_profile, "group", contrast=("treated", "control"), taxa_rank="none", norm=norm)
    assert mm.marker_table.shape[0] > 0
    assert mm.n_candidates == 20


def test_group_labels_are_sanitized():
    profile = simulate_profile([6, 6], ["Enterotype 2", "Enterotype 3"], seed=4)
    mm = run_quietly(profile, "group", contrast=("Enterotype 3", "Enterotype 2"), taxa_rank="none", pvalue_cutoff=0)
    assert set(mm.marker_table["enrich_group"].dropna()) <= {"Enterotype.2", "Enterotype.3"}


def test_zig_two_groups_reports_coefficient(two_group_profile):
    mm = run_quietly(
        two_group_profile, "group", contrast=("treated", "control"), method="ZIG", taxa_rank="none",
    )
    assert "ef_coef" in mm.marker_table.columns
    assert mm.diff_method == "metagenomeSeq: ZIG"


def test_zig_all_pairs(three_group_profile):
    services = MetagenomeSeqServices(
        fit_zig=Mock(wraps=fit_zig),
        contrasts_fit=Mock(wraps=contrasts_fit),
        empirical_bayes=Mock(wraps=empirical_bayes),
        top_table=Mock(wraps=top_table),
    )
    mm = run_quietly(three_group_profile, "group", method="ZIG", taxa_rank="none", pvalue_cutoff=0, services=services)

    services.fit_zig.assert_called_once()
    services.contrasts_fit.assert_called_once()
    services.empirical_bayes.assert_called_once()
    assert services.top_table.call_args.kwargs["coef"] is None

    table = mm.marker_table.set_index("feature")
    assert "ef_F" in table.columns
    for groups in table["enrich_group"].dropna():
        labels = groups.split("|")
        assert labels and set(labels) <= {"a", "b", "c"}
    assert (table.loc[MARKERS, "enrich_group"] == "c").all()


def test_zig_single_contrast_of_three_groups(three_group_profile):
    mm = run_quietly(
        three_group_profile, "group", contrast=("c", "a"), method="ZIG", taxa_rank="none", pvalue_cutoff=0,
    )
    table = mm.marker_table.set_index("feature")
    assert "ef_logFC" in table.columns
    assert (table.loc[MARKERS, "enrich_group"] == "c").all()


def test_ziln_rejects_three_groups_before_any_service(three_group_profile):
    services = MetagenomeSeqServices(**{name: Mock() for name in SERVICE_NAMES})
    with pytest.raises(UsageError, match="ZILN"):
        run_metagenomeseq(three_group_profile, "group", method="ZILN", services=services)
    for name in SERVICE_NAMES:
        getattr(services, name).assert_not_called()


@pytest.mark.parametrize("kwargs, match", [
    ({"group_var": "missing", "contrast": ("treated", "control")}, "not a sample variable"),
    ({"group_var": "group"}, "required"),
    ({"group_var": "group", "contrast": ("treated", "other")}, "not found"),
    ({"group_var": "group", "contrast": ("treated", "control"), "taxa_rank": "Species"}, "taxa_rank"),
    ({"group_var": "group", "contrast": ("treated", "control"), "norm": "quantile"}, "norm"),
])
def test_usage_errors_before_any_service(two_group_profile, kwargs, match):
    services = MetagenomeSeqServices(**{name: Mock() for name in SERVICE_NAMES})
    with pytest.raises(UsageError, match=match):
        run_metagenomeseq(two_group_profile, services=services, **kwargs)
    for name in SERVICE_NAMES:
        getattr(services, name).assert_not_called()


def test_fit_failure_raises_convergence_error(two_group_profile):
    failing = Mock(side_effect=np.linalg.LinAlgError("Singular matrix"))
    services = MetagenomeSeqServices(fit_feature_model=failing)
    with pytest.raises(FitConvergenceError, match="ZILN model failed to fit to your data: Singular matrix") as info:
        run_metagenomeseq(two_group_profile, "group", contrast=("treated", "control"), services=services)
    assert isinstance(info.value.__cause__, np.linalg.LinAlgError)
    failing.assert_called_once()


def test_clr_data_cannot_be_fitted(two_group_profile):
    with pytest.raises(FitConvergenceError, match="non-negative"):
        run_metagenomeseq(two_group_profile, "group", contrast=("treated", "control"), norm="CLR")


def test_model_kwargs_reach_the_fit(two_group_profile):
    services = MetagenomeSeqServices(fit_zig=Mock(wraps=fit_zig))
    run_quietly(
        two_group_profile, "group", contrast=("treated", "control"), method="ZIG",
        taxa_rank="none", max_iter=3, services=services,
    )
    assert services.fit_zig.call_args.kwargs == {"max_iter": 3}


def test_inputs_are_not_modified(two_group_profile):
    counts = two_group_profile.counts.copy()
    sample_data = two_group_profile.sample_data.copy()
    tax_table = two_group_profile.tax_table.copy()
    run_quietly(two_group_profile, "group", contrast=("treated", "control"), norm="TSS", transform="log10p")
    pd.testing.assert_frame_equal(two_group_profile.counts, counts)
    pd.testing.assert_frame_equal(two_group_profile.sample_data, sample_data)
    pd.testing.assert_frame_equal(two_group_profile.tax_table, tax_table)
