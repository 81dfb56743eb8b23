# microbiome_markers/analysis/models.py
"""
Zero-inflated models fitted feature by feature.

Both models take the counts before normalization, a design matrix with one
row per sample and the per-sample normalization factors, which enter the
design as the covariate "scalingFactor" = log(nf / median(nf) + 1).

* fit_feature_model: zero-inflated log-normal (ZILN). The abundance of a
  feature is modelled on its positive observations only; residual variances
  are shrunk across features and the coefficients tested with a normal
  approximation.
* fit_zig: zero-inflated Gaussian (ZIG). An EM algorithm alternates between
  posterior probabilities that a zero is a technical (sampling) zero and a
  weighted least squares fit of log2(count + 1).
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from microbiome_markers.analysis.contrasts import SCALING_FACTOR
from microbiome_markers.analysis.moderated import empirical_bayes, fit_f_dist, squeeze_var
from microbiome_markers.analysis.padjust import adjust_pvalues
from microbiome_markers.errors import FitConvergenceError
from microbiome_markers.options import DiffModel, PAdjust

logger = logging.getLogger('microbiome_markers')


@dataclass
class FeatureFit:
    """
    Per-feature linear model fit.

    coefficients and stdev_unscaled are features x coefficients; cov_unscaled
    is an array of shape (features, coefficients, coefficients). Features that
    could not be fitted have missing values throughout.
    """
    model: DiffModel
    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    cov_unscaled: np.ndarray
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    n_positive: pd.Series
    pvalues: Optional[pd.DataFrame] = None
    z: Optional[pd.DataFrame] = None
    converged: Optional[pd.Series] = None
    # Set by empirical_bayes
    df_prior: Optional[float] = None
    s2_prior: Optional[float] = None
    s2_post: Optional[pd.Series] = None
    df_total: Optional[pd.Series] = None
    t: Optional[pd.DataFrame] = None
    p_value: Optional[pd.DataFrame] = None

    @property
    def features(self):
        return list(self.coefficients.index)

    @property
    def n_fitted(self):
        return int(self.coefficients.notna().all(axis=1).sum())


def scaling_factor(norm_factors):
    nf = np.asarray(norm_factors, dtype=float)
    return np.log(nf / np.median(nf) + 1)


def design_with_scaling(design, norm_factors):
    """Append the scalingFactor covariate to a design matrix."""
    nf = pd.Series(norm_factors)
    missing = [s for s in design.index if s not in nf.index]
    if missing:
        raise ValueError(f"no normalization factor for samples {missing[:5]}")
    nf = nf.loc[design.index]
    if not np.all(np.isfinite(nf.values)) or (nf.values <= 0).any():
        raise ValueError("normalization factors must be positive and finite")
    full = design.astype(float).copy()
    full[SCALING_FACTOR] = scaling_factor(nf.values)
    return full


def _check_counts(counts, design, model):
    if list(counts.columns) != list(design.index):
        raise ValueError("count columns and design rows must list the same samples in the same order")
    values = counts.values.astype(float)
    if not np.all(np.isfinite(values)) or (values < 0).any():
        raise FitConvergenceError(model.value, "the model requires finite, non-negative abundances")
    return values


def _empty_arrays(n_feat, p):
    return (
        np.full((n_feat, p), np.nan),
        np.full((n_feat, p, p), np.nan),
        np.full(n_feat, np.nan),
        np.full(n_feat, np.nan),
    )


def fit_feature_model(counts, design, norm_factors, min_positive=3):
    """
    Zero-inflated log-normal model.

    Args:
        counts: Features x samples counts before normalization
        design: Samples x columns design matrix
        norm_factors: Per-sample normalization factors
        min_positive: Minimum number of positive observations of a feature

    Returns:
        FeatureFit with pvalues for every coefficient

    Raises:
        FitConvergenceError: if no feature can be fitted
    """
    model = DiffModel.ZILN
    values = _check_counts(counts, design, model)
    x_full = design_with_scaling(design, norm_factors)
    columns = list(x_full.columns)
    p = len(columns)
    x = x_full.values

    coefs, cov, s2, dfr = _empty_arrays(counts.shape[0], p)

    for i in range(counts.shape[0]):
        pos = values[i] > 0
        n_pos = int(pos.sum())
        if n_pos < max(min_positive, p + 1):
            continue
        xi = x[pos]
        if np.linalg.matrix_rank(xi) < p:
            continue
        res = sm.OLS(np.log2(values[i, pos] + 1), xi).fit()
        coefs[i] = res.params
        cov[i] = res.normalized_cov_params
        s2[i] = res.scale
        dfr[i] = res.df_resid

    fitted = np.isfinite(s2)
    if not fitted.any():
        raise FitConvergenceError(
            model.value,
            f"no feature has at least {max(min_positive, p + 1)} positive observations "
            f"spanning all groups"
        )
    logger.info(f"ZILN: fitted {int(fitted.sum())} of {counts.shape[0]} features")

    df_prior, s2_prior = fit_f_dist(s2[fitted], dfr[fitted])
    s2_post = squeeze_var(s2, dfr, df_prior, s2_prior)
    stdev_unscaled = np.sqrt(np.einsum("fii->fi", cov))
    with np.errstate(invalid="ignore", divide="ignore"):
        se = stdev_unscaled * np.sqrt(s2_post)[:, None]
        zscore = coefs / se
    pvalues = 2 * stats.norm.sf(np.abs(zscore))

    index = counts.index
    return FeatureFit(
        model=model,
        coefficients=pd.DataFrame(coefs, index=index, columns=columns),
        stdev_unscaled=pd.DataFrame(stdev_unscaled, index=index, columns=columns),
        cov_unscaled=cov,
        sigma=pd.Series(np.sqrt(s2), index=index),
        df_residual=pd.Series(dfr, index=index),
        amean=pd.Series(np.log2(values + 1).mean(axis=1), index=index),
        n_positive=pd.Series((values > 0).sum(axis=1), index=index),
        pvalues=pd.DataFrame(pvalues, index=index, columns=columns),
        df_prior=df_prior,
        s2_prior=s2_prior,
        s2_post=pd.Series(s2_post, index=index),
    )


def fit_zig(counts, design, norm_factors, max_iter=10, tol=1e-4):
    """
    Zero-inflated Gaussian mixture model.

    Args:
        counts: Features x samples counts before normalization
        design: Samples x columns design matrix
        norm_factors: Per-sample normalization factors
        max_iter: Maximum number of EM iterations per feature
        tol: Convergence threshold of the log-likelihood change

    Returns:
        FeatureFit with the posterior zero probabilities z

    Raises:
        FitConvergenceError: if no feature can be fitted
    """
    model = DiffModel.ZIG
    values = _check_counts(counts, design, model)
    x_full = design_with_scaling(design, norm_factors)
    columns = list(x_full.columns)
    p = len(columns)
    x = x_full.values
    y = np.log2(values + 1)

    coefs, cov, s2, dfr = _empty_arrays(counts.shape[0], p)
    z = np.where(values == 0, 0.5, 0.0)
    converged = np.zeros(counts.shape[0], dtype=bool)

    for i in range(counts.shape[0]):
        result = _zig_em(y[i], values[i] == 0, x, z[i], max_iter, tol)
        if result is None:
            continue
        coefs[i], cov[i], s2[i], dfr[i], z[i], converged[i] = result

    fitted = np.isfinite(s2)
    if not fitted.any():
        raise FitConvergenceError(model.value, "the weighted design is singular for every feature")
    n_unconverged = int((fitted & ~converged).sum())
    if n_unconverged:
        logger.warning(f"ZIG: {n_unconverged} features did not converge in {max_iter} iterations")
    logger.info(f"ZIG: fitted {int(fitted.sum())} of {counts.shape[0]} features")

    index = counts.index
    return FeatureFit(
        model=model,
        coefficients=pd.DataFrame(coefs, index=index, columns=columns),
        stdev_unscaled=pd.DataFrame(np.sqrt(np.einsum("fii->fi", cov)), index=index, columns=columns),
        cov_unscaled=cov,
        sigma=pd.Series(np.sqrt(s2), index=index),
        df_residual=pd.Series(dfr, index=index),
        amean=pd.Series(y.mean(axis=1), index=index),
        n_positive=pd.Series((values > 0).sum(axis=1), index=index),
        z=pd.DataFrame(z, index=index, columns=counts.columns),
        converged=pd.Series(converged, index=index),
    )


def _zig_em(y, zero, x, z, max_iter, tol):
    """EM for one feature; None when the weighted design is singular."""
    z = z.copy()
    prev_ll = -np.inf
    converged = False

    for _ in range(max_iter):
        fit = _weighted_fit(y, x, 1 - z)
        if fit is None:
            return None
        _, _, s2, _, fitted = fit

        # Mixture proportion of technical zeros
        pi = z[zero].sum() / len(z) if zero.any() else 0.0
        dens = stats.norm.pdf(y, fitted, np.sqrt(s2))
        mix = pi + (1 - pi) * dens
        with np.errstate(divide="ignore", invalid="ignore"):
            z = np.where(zero, pi / mix, 0.0)
            ll = np.sum(np.where(zero, np.log(mix), np.log((1 - pi) * dens)))
        z = np.nan_to_num(z, nan=0.0)

        if np.isfinite(ll) and abs(ll - prev_ll) < tol:
            converged = True
            break
        prev_ll = ll

    fit = _weighted_fit(y, x, 1 - z)
    if fit is None:
        return None
    params, cov, s2, df, _ = fit
    return params, cov, s2, df, z, converged


def _weighted_fit(y, x, w):
    p = x.shape[1]
    df = w.sum() - p
    if df <= 0 or np.linalg.matrix_rank(x * np.sqrt(w)[:, None]) < p:
        return None
    res = sm.WLS(y, x, weights=w).fit()
    fitted = x @ res.params
    s2 = np.sum(w * (y - fitted) ** 2) / df
    s2 = max(s2, np.finfo(float).tiny)
    return res.params, res.normalized_cov_params, s2, df, fitted


def calculate_effective_samples(fit):
    """
    Effective number of samples per feature: the summed probability that an
    observation comes from the abundance component (ZIG), or the number of
    positive observations (ZILN).
    """
    if fit.z is not None:
        return (1 - fit.z).sum(axis=1)
    return fit.n_positive.astype(float)


def coefficient_table(fit, coef, adjust_method=PAdjust.NONE, eff=None):
    """
    Raw per-feature result of a two-group fit.

    Args:
        fit: FeatureFit of fit_feature_model or fit_zig
        coef: Name of the coefficient of interest
        adjust_method: PAdjust for adjPvalues
        eff: Drop features whose effective number of samples is below this
            quantile of all features (None keeps everything)

    Returns:
        DataFrame indexed by feature with the effect column ("logFC" for
        ZILN, the coefficient name for ZIG), pvalues and adjPvalues
    """
    if fit.model is DiffModel.ZILN:
        effect_col = "logFC"
        pvalues = fit.pvalues[coef]
    else:
        effect_col = coef
        moderated = fit if fit.p_value is not None else empirical_bayes(fit)
        pvalues = moderated.p_value[coef]

    table = pd.DataFrame({effect_col: fit.coefficients[coef], "pvalues": pvalues})
    table["adjPvalues"] = adjust_pvalues(table["pvalues"], adjust_method)

    if eff:
        samples = calculate_effective_samples(fit)
        keep = samples >= samples.quantile(eff)
        logger.info(f"Keeping {int(keep.sum())} of {len(keep)} features with enough effective samples")
        table = table[keep]
    return table
