# microbiome_markers/preprocessing/taxonomy.py
"""
Taxonomic summarization of abundance profiles.

taxa_rank "all" summarizes the features at every rank (one feature per
lineage prefix, ranks joined with "|"), "none" keeps the original features,
and a rank name aggregates the features to that rank.
"""

import logging

import pandas as pd

from microbiome_markers.errors import UsageError

logger = logging.getLogger('microbiome_markers')

LINEAGE_SEP = "|"


def check_taxa_rank(profile, taxa_rank):
    """
    Raises:
        UsageError: if taxa_rank is not "all", "none" or a rank of the profile
    """
    if taxa_rank == "none":
        return
    ranks = profile.rank_names
    if not ranks:
        raise UsageError(
            f"`taxa_rank` '{taxa_rank}' requires a taxonomy table; use 'none' for profiles without one"
        )
    if taxa_rank != "all" and taxa_rank not in ranks:
        raise UsageError(
            f"`taxa_rank` must be one of {['all', 'none'] + ranks}, got '{taxa_rank}'"
        )


def _lineage(tax_table, ranks, sep=LINEAGE_SEP):
    return tax_table[ranks].astype(str).agg(sep.join, axis=1)


def summarize_taxa(profile, level=None, sep=LINEAGE_SEP):
    """
    Summarize counts at every rank from level (the highest rank by default)
    down to the lowest.

    Each summarized feature is named by its lineage, e.g.
    "k__Bacteria|p__Firmicutes". The returned taxonomy has a single column,
    "lineage".
    """
    ranks = profile.rank_names
    if not ranks:
        raise UsageError("summarizing taxa requires a taxonomy table")
    if level is None:
        level = ranks[0]
    if level not in ranks:
        raise UsageError(f"`level` must be one of {ranks}, got '{level}'")

    start = ranks.index(level)
    tables = []
    for i in range(start, len(ranks)):
        lineage = _lineage(profile.tax_table, ranks[start:i + 1], sep)
        tables.append(profile.counts.groupby(lineage, sort=True).sum())

    counts = pd.concat(tables)
    counts = counts[~counts.index.duplicated(keep="first")]
    counts.index.name = None
    tax_table = pd.DataFrame({"lineage": counts.index}, index=counts.index)
    logger.debug(f"Summarized {profile.n_features} features into {counts.shape[0]} lineages")
    return profile.replace_counts(counts, tax_table=tax_table)


def aggregate_taxa(profile, rank):
    """
    Sum the features sharing a taxon at rank.

    The returned taxonomy keeps the ranks down to rank; features are named by
    their lineage down to rank.
    """
    ranks = profile.rank_names
    if rank not in ranks:
        raise UsageError(f"`rank` must be one of {ranks}, got '{rank}'")

    kept_ranks = ranks[:ranks.index(rank) + 1]
    lineage = _lineage(profile.tax_table, kept_ranks)
    counts = profile.counts.groupby(lineage, sort=True).sum()
    counts.index.name = None

    tax_table = profile.tax_table[kept_ranks].copy()
    tax_table.index = lineage.values
    tax_table = tax_table[~tax_table.index.duplicated(keep="first")].loc[counts.index]
    return profile.replace_counts(counts, tax_table=tax_table)


def extract_rank(profile, rank):
    """
    Name the features by their taxon at rank.

    "none" returns the profile unchanged. Taxa sharing a name under different
    lineages keep the lineage as their name.
    """
    if rank == "none":
        return profile.copy()
    if rank not in profile.rank_names:
        raise UsageError(f"`rank` must be one of {profile.rank_names}, got '{rank}'")

    names = profile.tax_table[rank].astype(str)
    duplicated = names.duplicated(keep=False)
    if duplicated.any():
        logger.debug(f"{int(duplicated.sum())} taxa at rank {rank} share a name; keeping their lineage")
        names = names.where(~duplicated, pd.Series(profile.tax_table.index, index=profile.tax_table.index))

    counts = profile.counts.copy()
    counts.index = names.values
    tax_table = profile.tax_table.copy()
    tax_table.index = names.values
    return profile.replace_counts(counts, tax_table=tax_table)


def summarize_profile(profile, taxa_rank="all"):
    """Dispatch taxonomic summarization on taxa_rank."""
    check_taxa_rank(profile, taxa_rank)
    if taxa_rank == "all":
        return summarize_taxa(profile)
    if taxa_rank == "none":
        return extract_rank(profile, "none")
    return extract_rank(aggregate_taxa(profile, taxa_rank), taxa_rank)
