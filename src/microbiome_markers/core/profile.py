# microbiome_markers/core/profile.py
"""
Abundance profile: feature-by-sample counts bundled with sample metadata and
optional per-feature taxonomy.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd

from microbiome_markers.errors import UsageError


@dataclass
class AbundanceProfile:
    """
    Args:
        counts: DataFrame with features as rows and samples as columns
        sample_data: DataFrame indexed by sample name
        tax_table: Optional DataFrame indexed by feature, one column per
            taxonomic rank ordered from highest (e.g. Kingdom) to lowest
    """
    counts: pd.DataFrame
    sample_data: pd.DataFrame
    tax_table: Optional[pd.DataFrame] = None

    def __post_init__(self):
        if not isinstance(self.counts, pd.DataFrame):
            raise UsageError("counts must be a pandas DataFrame (features x samples)")
        if self.counts.empty:
            raise UsageError("counts table is empty")
        if not self.counts.index.is_unique:
            raise UsageError("feature names must be unique")
        if not self.counts.columns.is_unique:
            raise UsageError("sample names must be unique")

        missing = [s for s in self.counts.columns if s not in self.sample_data.index]
        if missing:
            raise UsageError(f"{len(missing)} samples have no metadata, e.g. {missing[:5]}")
        # Align metadata to the count columns
        self.sample_data = self.sample_data.loc[list(self.counts.columns)]

        if self.tax_table is not None:
            missing = [f for f in self.counts.index if f not in self.tax_table.index]
            if missing:
                raise UsageError(f"{len(missing)} features have no taxonomy, e.g. {missing[:5]}")
            self.tax_table = self.tax_table.loc[list(self.counts.index)]

    @property
    def feature_names(self) -> List[str]:
        return list(self.counts.index)

    @property
    def sample_names(self) -> List[str]:
        return list(self.counts.columns)

    @property
    def rank_names(self) -> List[str]:
        if self.tax_table is None:
            return []
        return list(self.tax_table.columns)

    @property
    def n_features(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    def copy(self):
        return AbundanceProfile(
            counts=self.counts.copy(),
            sample_data=self.sample_data.copy(),
            tax_table=None if self.tax_table is None else self.tax_table.copy(),
        )

    def replace_counts(self, counts, tax_table=None, keep_taxonomy=True):
        """
        Return a new profile with other counts.

        Sample metadata is subset to the new columns. The taxonomy is taken
        from tax_table when given, otherwise subset from this profile when
        keep_taxonomy is set.
        """
        if tax_table is None and keep_taxonomy and self.tax_table is not None:
            tax_table = self.tax_table.loc[list(counts.index)]
        return AbundanceProfile(
            counts=counts,
            sample_data=self.sample_data.loc[list(counts.columns)].copy(),
            tax_table=tax_table,
        )


def preprocess_profile(profile, logger=None):
    """
    Drop features absent from every sample and fill missing taxonomy.

    Args:
        profile: AbundanceProfile
        logger: Optional logger

    Returns:
        A new AbundanceProfile
    """
    counts = profile.counts.astype(float)
    if counts.isna().any().any():
        raise UsageError("counts contain missing values")

    keep = counts.sum(axis=1) != 0
    if not keep.all() and logger:
        logger.debug(f"Removing {int((~keep).sum())} features with zero abundance in all samples")
    counts = counts.loc[keep]
    if counts.empty:
        raise UsageError("all features have zero abundance")

    tax_table = None
    if profile.tax_table is not None:
        tax_table = profile.tax_table.loc[counts.index].astype(object)
        tax_table = tax_table.where(tax_table.notna() & (tax_table != ""), "Unknown")

    return AbundanceProfile(
        counts=counts,
        sample_data=profile.sample_data.copy(),
        tax_table=tax_table,
    )


def library_sizes(counts):
    """Total abundance of each sample (column sums) as a float Series."""
    return pd.Series(np.asarray(counts.sum(axis=0), dtype=float), index=counts.columns)
