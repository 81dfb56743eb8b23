# microbiome_markers/preprocessing/normalization.py
"""
Normalization of abundance profiles.

Every method returns a NormalizedProfile. Methods that rescale the counts
themselves (rarefy, TSS, CPM, CLR, per-sample value) return the rescaled
profile and no factors. TMM, RLE and CSS keep the original counts, since the
downstream models need them, and report per-sample normalization factors
instead.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import rankdata
from skbio.stats.composition import clr

from microbiome_markers.core.profile import library_sizes
from microbiome_markers.errors import UsageError
from microbiome_markers.options import NormMethod, coerce_norm

logger = logging.getLogger('microbiome_markers')


@dataclass
class NormalizedProfile:
    profile: object
    method: str
    norm_factors: Optional[pd.Series] = None


def get_norm_method(norm):
    """Human readable name of a normalization choice."""
    norm = coerce_norm(norm)
    if isinstance(norm, float):
        return f"per-sample normalized (sum of all taxa) to {norm:g}"
    return norm.value


def normalize(profile, method=NormMethod.TSS, **params):
    """
    Normalize an abundance profile.

    Args:
        profile: AbundanceProfile
        method: NormMethod (or its name), or a positive number for per-sample
            scaling to that total
        **params: method specific parameters (see the norm_* functions)

    Returns:
        NormalizedProfile
    """
    method = coerce_norm(method)
    if isinstance(method, float):
        return norm_value(profile, method)

    dispatch = {
        NormMethod.NONE: norm_none,
        NormMethod.RAREFY: norm_rarefy,
        NormMethod.TSS: norm_tss,
        NormMethod.TMM: norm_tmm,
        NormMethod.RLE: norm_rle,
        NormMethod.CSS: norm_css,
        NormMethod.CLR: norm_clr,
        NormMethod.CPM: norm_cpm,
    }
    func = dispatch[method]
    # sl is the output scale of the pipeline, not a normalization parameter
    params = {k: v for k, v in params.items() if k != "sl"}
    try:
        return func(profile, **params)
    except TypeError as e:
        raise UsageError(f"invalid parameters for {method.value} normalization: {e}") from e


def norm_none(profile):
    return NormalizedProfile(profile.copy(), NormMethod.NONE.value)


def norm_value(profile, value):
    """Scale every sample to sum to value."""
    libs = library_sizes(profile.counts)
    _check_positive_libraries(libs)
    scaled = profile.counts.div(libs, axis=1) * value
    return NormalizedProfile(profile.replace_counts(scaled), get_norm_method(value))


def norm_tss(profile):
    """Total sum scaling (relative abundance)."""
    normed = norm_value(profile, 1.0)
    normed.method = NormMethod.TSS.value
    return normed


def norm_cpm(profile):
    """Counts per million."""
    normed = norm_value(profile, 1e6)
    normed.method = NormMethod.CPM.value
    return normed


def norm_rarefy(profile, size=None, seed=None, replace=False):
    """
    Random subsampling of every sample to the same depth.

    Args:
        size: Target depth, the smallest library size by default. Samples with
            fewer counts are removed.
        seed: Seed of the random generator
        replace: Sample with replacement (multinomial) instead of without
    """
    counts = profile.counts
    if not np.allclose(counts.values, np.round(counts.values)):
        raise UsageError("rarefying requires integer counts")
    libs = library_sizes(counts)
    if size is None:
        size = int(libs.min())
    size = int(size)
    if size <= 0:
        raise UsageError("rarefaction depth must be positive")

    keep = libs >= size
    if not keep.all():
        dropped = list(libs.index[~keep])
        logger.warning(f"{len(dropped)} samples removed because they contained fewer reads than {size}: {dropped}")
    counts = counts.loc[:, keep]
    if counts.shape[1] == 0:
        raise UsageError(f"no sample has at least {size} reads")

    rng = np.random.default_rng(seed)
    rarefied = np.zeros(counts.shape, dtype=np.int64)
    for j, sample in enumerate(counts.columns):
        col = np.round(counts[sample].values).astype(np.int64)
        if replace:
            rarefied[:, j] = rng.multinomial(size, col / col.sum())
        else:
            rarefied[:, j] = rng.multivariate_hypergeometric(col, size)

    rarefied = pd.DataFrame(rarefied, index=counts.index, columns=counts.columns)
    # Features lost by subsampling
    rarefied = rarefied.loc[rarefied.sum(axis=1) > 0]
    return NormalizedProfile(profile.replace_counts(rarefied), NormMethod.RAREFY.value)


def norm_clr(profile, pseudocount=None):
    """
    Centered log-ratio transformation of every sample.

    Args:
        pseudocount: Added to all values before the log ratio; half of the
            smallest positive value when the data contain zeros.
    """
    values = profile.counts.values.astype(float)
    if pseudocount is None:
        pseudocount = values[values > 0].min() / 2.0 if (values == 0).any() else 0.0
    # clr works on compositions in rows: samples x features
    transformed = clr(values.T + pseudocount).T
    clr_counts = pd.DataFrame(transformed, index=profile.counts.index, columns=profile.counts.columns)
    return NormalizedProfile(profile.replace_counts(clr_counts), NormMethod.CLR.value)


def norm_tmm(profile, ref_sample=None, logratio_trim=0.3, sum_trim=0.05,
             do_weighting=True, a_cutoff=-1e10):
    """
    Trimmed mean of M-values.

    Counts are kept; the factors are the effective library sizes
    (library size x TMM factor).
    """
    counts = profile.counts
    libs = library_sizes(counts)
    _check_positive_libraries(libs)

    if ref_sample is None:
        f75 = counts.quantile(0.75, axis=0) / libs
        if (f75 == 0).all():
            ref_sample = libs.idxmax()
        else:
            ref_sample = (f75 - f75.mean()).abs().idxmin()
    elif ref_sample not in counts.columns:
        raise UsageError(f"TMM reference sample '{ref_sample}' not in the profile")

    ref = counts[ref_sample].values.astype(float)
    factors = np.array([
        _tmm_factor(counts[s].values.astype(float), ref, libs[s], libs[ref_sample],
                    logratio_trim, sum_trim, do_weighting, a_cutoff)
        for s in counts.columns
    ])
    # Factors multiply to one
    factors = factors / np.exp(np.mean(np.log(factors)))
    nf = pd.Series(libs.values * factors, index=counts.columns, name="norm_factor")
    return NormalizedProfile(profile.copy(), NormMethod.TMM.value, nf)


def _tmm_factor(obs, ref, lib_obs, lib_ref, logratio_trim, sum_trim, do_weighting, a_cutoff):
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s
    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def norm_rle(profile):
    """
    Relative log expression: median ratio of each sample to the geometric
    mean of the features observed in every sample. Counts are kept.
    """
    counts = profile.counts.values.astype(float)
    positive = (counts > 0).all(axis=1)
    if not positive.any():
        raise UsageError("RLE normalization needs at least one feature present in every sample")
    log_geo = np.log(counts[positive]).mean(axis=1)
    ratios = np.log(counts[positive]) - log_geo[:, None]
    factors = np.exp(np.median(ratios, axis=0))
    nf = pd.Series(factors, index=profile.counts.columns, name="norm_factor")
    return NormalizedProfile(profile.copy(), NormMethod.RLE.value, nf)


def norm_css(profile, rel=0.1):
    """
    Cumulative sum scaling.

    Counts are kept; the factors are the per-sample sums of counts up to the
    data-derived quantile.
    """
    counts = profile.counts
    p = select_quantile(counts, rel=rel)
    nf = cumulative_norm_factors(counts, p)
    logger.debug(f"CSS quantile: {p:.3f}")
    return NormalizedProfile(profile.copy(), NormMethod.CSS.value, nf)


def select_quantile(counts, rel=0.1):
    """
    Quantile used for cumulative sum scaling.

    The fast statistic needs at least two positive features per sample; when
    some sample has fewer, the default quantile 0.5 is used.
    """
    n_positive = (counts > 0).sum(axis=0)
    if (n_positive <= 1).any():
        logger.warning("Some samples have one or zero features; using the default CSS quantile 0.5")
        return 0.5
    return cumulative_norm_quantile(counts, rel=rel)


def cumulative_norm_quantile(counts, rel=0.1):
    """
    Data-derived quantile for cumulative sum scaling.

    Each sample's positive counts are compared with a reference distribution
    (mean of the sorted samples); the quantile is where the median deviation
    from the reference first jumps by more than rel. Never lower than 0.5.
    """
    mat = counts.values.astype(float)
    sorted_cols = [np.sort(col[col > 0]) for col in mat.T]
    lengths = [len(c) for c in sorted_cols]
    if min(lengths) <= 1:
        raise UsageError("Warning sample with one or zero features")

    leng = max(lengths)
    smat = np.full((leng, mat.shape[1]), np.nan)
    for i, col in enumerate(sorted_cols):
        smat[leng - len(col):, i] = col

    probs = np.linspace(0, 1, leng)
    rmat = np.column_stack([np.nanquantile(smat[:, i], probs) for i in range(smat.shape[1])])
    ref = np.nan_to_num(smat, nan=0.0).mean(axis=1)
    diffr = np.median(np.abs(ref[:, None] - rmat), axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        diffr = diffr / ref
        jumps = np.abs(np.diff(diffr)) / diffr[1:]

    hits = np.where(jumps > rel)[0]
    x = (hits[0] + 1) / len(diffr) if hits.size else np.nan
    if not np.isfinite(x) or x <= 0.5:
        x = 0.5
    return float(x)


def cumulative_norm_factors(counts, p):
    """Sum of each sample's positive counts up to its p-th quantile."""
    factors = {}
    for sample in counts.columns:
        xx = counts[sample].values.astype(float)
        xx = xx[xx > 0]
        if xx.size == 0:
            raise UsageError(f"sample '{sample}' has no positive counts")
        qs = np.quantile(xx, p)
        factors[sample] = xx[xx - np.finfo(float).eps <= qs].sum()
    return pd.Series(factors, name="norm_factor")[list(counts.columns)]


def _check_positive_libraries(libs):
    empty = list(libs.index[libs <= 0])
    if empty:
        raise UsageError(f"samples with zero total abundance cannot be normalized: {empty}")
