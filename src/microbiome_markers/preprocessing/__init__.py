# microbiome_markers/preprocessing/__init__.py
"""Transformation, normalization and taxonomic summarization of abundance profiles."""

from microbiome_markers.preprocessing.transform import transform_abundances

from microbiome_markers.preprocessing.normalization import (
    NormalizedProfile,
    normalize,
    get_norm_method,
    cumulative_norm_quantile,
    cumulative_norm_factors
)

from microbiome_markers.preprocessing.taxonomy import (
    check_taxa_rank,
    summarize_taxa,
    aggregate_taxa,
    extract_rank,
    summarize_profile
)
