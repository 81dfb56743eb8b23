# microbiome_markers/analysis/markers.py
"""
Significance filtering and the marker table.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from microbiome_markers.errors import EmptyResultWarning


def filter_significant(table, pvalue_cutoff=0.05, logger=None):
    """
    Keep the features with an adjusted p-value below the cutoff.

    If no feature passes, an EmptyResultWarning is issued and every feature
    is returned.

    Args:
        table: Harmonized table with a padj column
        pvalue_cutoff: Adjusted p-value threshold (strict)
        logger: Optional logger

    Returns:
        (rows, fell_back) where fell_back tells whether the filter was dropped
    """
    if logger is None:
        logger = logging.getLogger('microbiome_markers')
    significant = table[table["padj"].notna() & (table["padj"] < pvalue_cutoff)]
    if significant.shape[0] == 0:
        message = "No significant features were found, return all the features"
        logger.warning(message)
        warnings.warn(message, EmptyResultWarning, stacklevel=2)
        return table.copy(), True
    logger.info(f"{significant.shape[0]} of {table.shape[0]} features with padj < {pvalue_cutoff}")
    return significant.copy(), False


def assemble_marker_table(rows, effect_column, effect_stat):
    """
    Project to feature, enrich_group, effect size, pvalue and padj.

    The effect column is renamed ef_<statistic> and the rows are named
    marker1, marker2, ... in their current order.
    """
    markers = pd.DataFrame({
        "feature": [str(f) for f in rows.index],
        "enrich_group": rows["enrich_group"].values,
        effect_stat.column: rows[effect_column].values,
        "pvalue": rows["pvalue"].values,
        "padj": rows["padj"].values,
    })
    markers.index = [f"marker{i}" for i in range(1, markers.shape[0] + 1)]
    return markers


@dataclass
class MicrobiomeMarker:
    """
    Result of a marker analysis.

    Attributes:
        marker_table: One row per marker (see assemble_marker_table)
        norm_method: Normalization used
        diff_method: Differential analysis method, e.g. "metagenomeSeq: ZILN"
        otu_table: Normalized abundances of the summarized features
        sample_data: Sample metadata
        tax_table: Taxonomy of the summarized features
        fell_back: True when nothing was significant and all features are reported
        n_candidates: Number of features tested
        n_ambiguous: Features without a single enriched group
    """
    marker_table: pd.DataFrame
    norm_method: str
    diff_method: str
    otu_table: pd.DataFrame
    sample_data: pd.DataFrame
    tax_table: Optional[pd.DataFrame] = None
    fell_back: bool = False
    n_candidates: int = 0
    n_ambiguous: int = 0

    @property
    def n_markers(self):
        """Number of significant markers (0 when the filter fell back)."""
        if self.fell_back:
            return 0
        return self.marker_table.shape[0]

    @property
    def effect_column(self):
        return self.marker_table.columns[2]

    def __repr__(self):
        return (
            f"MicrobiomeMarker(diff_method='{self.diff_method}', norm_method='{self.norm_method}', "
            f"markers={self.n_markers}, candidates={self.n_candidates}, fell_back={self.fell_back})"
        )
