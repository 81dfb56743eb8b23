import numpy as np
import pandas as pd
import pytest

from microbiome_markers import AbundanceProfile


def simulate_profile(group_sizes, labels, n_features=20, n_markers=4, fold=8.0, seed=1, taxonomy=True):
    """
    Negative binomial counts with varying sequencing depth.

    The first n_markers features are fold times more abundant in the last
    group of labels.
    """
    rng = np.random.default_rng(seed)
    groups = np.repeat(labels, group_sizes)
    n_samples = len(groups)
    samples = [f"S{i + 1:02d}" for i in range(n_samples)]
    features = [f"OTU{i + 1}" for i in range(n_features)]

    base = rng.uniform(20, 200, size=n_features)
    depth = rng.uniform(0.5, 2.0, size=n_samples)
    mu = np.outer(base, depth)
    mu[:n_markers, groups == labels[-1]] *= fold
    size = 5.0
    counts = rng.negative_binomial(size, size / (size + mu))
    # Sampling zeros
    counts[rng.random(counts.shape) < 0.05] = 0

    sample_data = pd.DataFrame(
        {"group": groups, "batch": ["x", "y"] * (n_samples // 2) + ["x"] * (n_samples % 2)},
        index=samples,
    )
    tax_table = None
    if taxonomy:
        tax_table = pd.DataFrame(
            {
                "Kingdom": ["k__Bacteria"] * n_features,
                "Phylum": [f"p__Phylum{i % 2}" for i in range(n_features)],
                "Genus": [f"g__Genus{i}" for i in range(n_features)],
            },
            index=features,
        )
    return AbundanceProfile(
        counts=pd.DataFrame(counts, index=features, columns=samples),
        sample_data=sample_data,
        tax_table=tax_table,
    )


@pytest.fixture
def two_group_profile():
    return simulate_profile([8, 8], ["control", "treated"])


@pytest.fixture
def three_group_profile():
    return simulate_profile([8, 8, 8], ["a", "b", "c"], seed=2)


@pytest.fixture
def ten_feature_profile():
    return simulate_profile([6, 6], ["control", "treated"], n_features=10, n_markers=2, seed=3)


@pytest.fixture
def small_profile():
    counts = pd.DataFrame(
        {
            "s1": [10, 0, 5, 85],
            "s2": [20, 4, 0, 70],
            "s3": [1, 30, 9, 60],
        },
        index=["f1", "f2", "f3", "f4"],
    )
    sample_data = pd.DataFrame({"group": ["A", "A", "B"]}, index=["s1", "s2", "s3"])
    tax_table = pd.DataFrame(
        {
            "Kingdom": ["k__B", "k__B", "k__B", "k__B"],
            "Phylum": ["p__A", "p__A", "p__B", "p__B"],
            "Genus": ["g__1", "g__2", "g__3", "g__4"],
        },
        index=["f1", "f2", "f3", "f4"],
    )
    return AbundanceProfile(counts, sample_data, tax_table)
