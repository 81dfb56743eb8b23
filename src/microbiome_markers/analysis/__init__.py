# microbiome_markers/analysis/__init__.py
"""Contrasts, model fitting and marker tables."""

from microbiome_markers.analysis.contrasts import (
    ContrastPair,
    ContrastMatrix,
    ContrastPlan,
    build_contrast,
    make_names,
    model_matrix
)

from microbiome_markers.analysis.models import (
    FeatureFit,
    fit_feature_model,
    fit_zig,
    coefficient_table
)

from microbiome_markers.analysis.moderated import (
    contrasts_fit,
    empirical_bayes,
    top_table
)

from microbiome_markers.analysis.padjust import adjust_pvalues

from microbiome_markers.analysis.harmonize import (
    HarmonizedResult,
    harmonize_two_group,
    harmonize_multi_group
)

from microbiome_markers.analysis.markers import (
    MicrobiomeMarker,
    filter_significant,
    assemble_marker_table
)
