# microbiome_markers/core/metagenomeseq.py
"""
metagenomeSeq differential analysis.

Markers are found with the zero-inflated log-normal model (ZILN, two groups
only) or the zero-inflated Gaussian mixture model (ZIG). ZILN is preferred
for two groups for its sensitivity and low false discovery rate; for more
than two groups the ZIG fit is followed by contrasts, empirical Bayes
moderation and a moderated F-test over all pairs of groups (or a moderated
t-test of one requested pair).

Stages, run strictly in order:
    1. groups and contrast (all usage errors are raised here)
    2. transform, normalization and taxonomic summarization
    3. model fit
    4. harmonization of the model output
    5. significance filter and marker table
"""

import time
from dataclasses import dataclass
from typing import Callable

from microbiome_markers.analysis.contrasts import build_contrast, model_matrix, sanitize_groups
from microbiome_markers.analysis.harmonize import harmonize_multi_group, harmonize_two_group
from microbiome_markers.analysis.markers import (
    MicrobiomeMarker,
    assemble_marker_table,
    filter_significant,
)
from microbiome_markers.analysis.models import coefficient_table, fit_feature_model, fit_zig
from microbiome_markers.analysis.moderated import contrasts_fit, empirical_bayes, top_table
from microbiome_markers.core.profile import preprocess_profile
from microbiome_markers.errors import FitConvergenceError, MarkerAnalysisError, UsageError
from microbiome_markers.logger import get_logger
from microbiome_markers.options import DiffModel, MetagenomeSeqOptions
from microbiome_markers.preprocessing.normalization import (
    cumulative_norm_factors,
    get_norm_method,
    normalize,
    select_quantile,
)
from microbiome_markers.preprocessing.taxonomy import check_taxa_rank, summarize_profile
from microbiome_markers.preprocessing.transform import transform_abundances

DEFAULT_SCALE = 1000


@dataclass
class MetagenomeSeqServices:
    """Collaborators of the pipeline; replace any of them to change or observe it."""
    normalize: Callable = normalize
    summarize: Callable = summarize_profile
    fit_feature_model: Callable = fit_feature_model
    fit_zig: Callable = fit_zig
    contrasts_fit: Callable = contrasts_fit
    empirical_bayes: Callable = empirical_bayes
    top_table: Callable = top_table


def run_metagenomeseq(
    profile,
    group_var,
    contrast=None,
    taxa_rank="all",
    transform="identity",
    norm="CSS",
    norm_para=None,
    method="ZILN",
    p_adjust="none",
    pvalue_cutoff=0.05,
    eff=None,
    services=None,
    logger=None,
    **model_kwargs
):
    """
    Find the features differentially abundant between sample groups.

    Args:
        profile: AbundanceProfile
        group_var: Sample metadata column defining the groups
        contrast: (numerator, denominator) groups; required for two groups.
            A positive effect means higher abundance in the numerator.
        taxa_rank: Taxonomic rank to test, "all" for every rank of the
            lineage, or "none" for the original features
        transform: "identity", "log10" or "log10p"
        norm: Normalization: "none", "rarefy", "TSS", "TMM", "RLE", "CSS",
            "CLR", "CPM", or a number to scale every sample to
        norm_para: Dict of normalization parameters; "sl" is also the scale
            of the returned normalized abundances (default 1000)
        method: "ZILN" or "ZIG"
        p_adjust: Multiple testing correction ("none", "fdr", "bonferroni",
            "holm", "hochberg", "hommel", "BH", "BY")
        pvalue_cutoff: Adjusted p-value threshold of the markers
        eff: Two groups only: drop features whose effective number of
            samples is below this quantile (None keeps all)
        services: MetagenomeSeqServices, defaults to the package implementations
        logger: Logger instance
        **model_kwargs: Passed to the model fit (e.g. max_iter, tol, min_positive)

    Returns:
        MicrobiomeMarker

    Raises:
        UsageError: invalid arguments, raised before anything is fitted
        FitConvergenceError: the model could not be fitted
    """
    logger = get_logger(logger)
    start_time = time.time()
    options = MetagenomeSeqOptions(
        group_var=group_var,
        contrast=contrast,
        taxa_rank=taxa_rank,
        transform=transform,
        norm=norm,
        norm_para=norm_para or {},
        method=method,
        p_adjust=p_adjust,
        pvalue_cutoff=pvalue_cutoff,
        eff=eff,
        model_kwargs=model_kwargs,
    )
    if services is None:
        services = MetagenomeSeqServices()

    # 1. groups and contrast
    if options.group_var not in profile.sample_data.columns:
        raise UsageError(
            f"`group_var` '{options.group_var}' is not a sample variable; "
            f"available: {list(profile.sample_data.columns)}"
        )
    groups = sanitize_groups(profile.sample_data[options.group_var].values)
    plan = build_contrast(groups, options.contrast, options.method)
    check_taxa_rank(profile, options.taxa_rank)
    logger.info(
        f"metagenomeSeq {options.method.value}: {plan.n_levels} groups {plan.levels} "
        f"from '{options.group_var}'"
    )
    if plan.contrast is not None:
        logger.info(f"Contrast: {plan.contrast.numerator} vs {plan.contrast.denominator}")

    # 2. transform, normalize, summarize
    ps = preprocess_profile(profile, logger)
    ps = transform_abundances(ps, options.transform)
    normed = services.normalize(ps, options.norm, **options.norm_para)
    logger.info(f"Normalization: {get_norm_method(options.norm)}")
    summarized = services.summarize(normed.profile, options.taxa_rank)
    logger.info(f"Testing {summarized.n_features} features at taxa_rank '{options.taxa_rank}'")

    norm_factors = normed.norm_factors
    if norm_factors is None:
        # Methods without factors: scale the models with cumulative sum scaling
        counts = summarized.counts
        norm_factors = cumulative_norm_factors(counts, select_quantile(counts))
        logger.debug("No normalization factors; using cumulative sum scaling factors for the model")
    norm_factors = norm_factors.loc[summarized.sample_names]

    sl = options.norm_para.get("sl", DEFAULT_SCALE)
    counts_normalized = summarized.counts.div(norm_factors / sl, axis=1)

    design = model_matrix(plan, profile.sample_names).loc[summarized.sample_names]

    # 3-4. fit and harmonize
    harmonized = _fit_and_harmonize(plan, options, summarized.counts, design, norm_factors, services, logger)

    # 5. filter and assemble
    rows, fell_back = filter_significant(harmonized.table, options.pvalue_cutoff, logger)
    marker_table = assemble_marker_table(rows, harmonized.effect_column, harmonized.effect_stat)

    elapsed = time.time() - start_time
    logger.info(f"metagenomeSeq finished in {elapsed:.1f}s: {marker_table.shape[0]} rows reported")

    return MicrobiomeMarker(
        marker_table=marker_table,
        norm_method=get_norm_method(options.norm),
        diff_method=options.diff_method,
        otu_table=counts_normalized,
        sample_data=summarized.sample_data,
        tax_table=summarized.tax_table,
        fell_back=fell_back,
        n_candidates=harmonized.table.shape[0],
        n_ambiguous=harmonized.n_ambiguous,
    )


def _fit_and_harmonize(plan, options, counts, design, norm_factors, services, logger):
    method = options.method
    try:
        if plan.two_group:
            if method is DiffModel.ZILN:
                fit = services.fit_feature_model(counts, design, norm_factors, **options.model_kwargs)
            else:
                fit = services.fit_zig(counts, design, norm_factors, **options.model_kwargs)
                fit = services.empirical_bayes(fit)
        else:
            fit = services.fit_zig(counts, design, norm_factors, **options.model_kwargs)
            fit = services.contrasts_fit(fit, plan.matrix)
            fit = services.empirical_bayes(fit)
            top = services.top_table(fit, coef=None, adjust_method=options.p_adjust)
    except MarkerAnalysisError:
        raise
    except Exception as e:
        logger.error(f"{method.value} model failed: {e}")
        raise FitConvergenceError(method.value, e) from e

    if plan.two_group:
        coef = plan.contrast.numerator
        raw = coefficient_table(fit, coef, options.p_adjust, options.eff)
        effect_column = "logFC" if method is DiffModel.ZILN else coef
        return harmonize_two_group(raw, effect_column, plan.contrast)
    return harmonize_multi_group(top, plan)
