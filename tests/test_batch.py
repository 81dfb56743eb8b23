from unittest.mock import Mock

import pytest

from microbiome_markers import MetagenomeSeqServices, MicrobiomeMarker, UsageError, run_metagenomeseq_batch


def test_batch_collects_results_and_failures(three_group_profile):
    batch = run_metagenomeseq_batch(
        three_group_profile,
        ["group", "batch", "missing"],
        contrasts={"batch": ("x", "y")},
        method="ZIG",
        taxa_rank="none",
        pvalue_cutoff=0,
        max_parallel=2,
    )
    assert sorted(batch.succeeded) == ["batch", "group"]
    assert isinstance(batch.results["group"], MicrobiomeMarker)
    assert batch.results["group"].diff_method == "metagenomeSeq: ZIG"
    assert batch.results["batch"].marker_table.shape[0] == 20
    assert list(batch.failures) == ["missing"]
    assert "not a sample variable" in batch.failures["missing"]


def test_batch_without_group_vars(three_group_profile):
    batch = run_metagenomeseq_batch(three_group_profile, [])
    assert batch.results == {}
    assert batch.failures == {}


def test_batch_rejects_custom_services(three_group_profile):
    with pytest.raises(UsageError, match="services"):
        run_metagenomeseq_batch(three_group_profile, ["group"], services=MetagenomeSeqServices(fit_zig=Mock()))
