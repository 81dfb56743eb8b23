# microbiome_markers/analysis/moderated.py
"""
Linear model contrasts with empirical Bayes moderation, limma style.

The per-feature residual variances are shrunk towards a common prior
estimated from all features (Smyth 2004). Moderated t-statistics are then
computed per contrast and, for several contrasts, a moderated F-statistic
tests all of them jointly.
"""

import dataclasses
import logging

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma

from microbiome_markers.analysis.padjust import adjust_pvalues
from microbiome_markers.options import PAdjust

logger = logging.getLogger('microbiome_markers')


def trigamma_inverse(x):
    """Solve trigamma(y) = x for y by Newton iteration."""
    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.full_like(x, np.nan)

    large = x > 1e7
    small = (x < 1e-6) & (x > 0)
    normal = (x >= 1e-6) & ~large
    y[large] = 1 / np.sqrt(x[large])
    y[small] = 1 / x[small]

    if normal.any():
        xn = x[normal]
        yn = 0.5 + 1 / xn
        for _ in range(50):
            tri = polygamma(1, yn)
            dif = tri * (1 - tri / xn) / polygamma(2, yn)
            yn = yn + dif
            if np.max(-dif / yn) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse: iteration limit exceeded")
        y[normal] = yn
    return y


def fit_f_dist(variances, df1):
    """
    Moment estimation of the scaled F prior of the residual variances.

    Args:
        variances: Residual variances of the features
        df1: Residual degrees of freedom (scalar or one per feature)

    Returns:
        (df_prior, var_prior); df_prior is inf when the variances are no more
        dispersed than expected by chance, 0 when there is nothing to estimate
    """
    x = np.asarray(variances, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape)
    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15)
    x, df1 = x[ok], df1[ok]
    n = x.size
    if n == 0:
        return 0.0, np.nan
    if n == 1:
        return 0.0, float(x[0])

    x = np.maximum(x, 0)
    m = np.median(x)
    if m == 0:
        m = 1
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - digamma(df1 / 2) + np.log(df1 / 2)
    emean = e.mean()
    evar = np.sum((e - emean) ** 2) / (n - 1)
    evar = evar - np.mean(polygamma(1, df1 / 2))

    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)[0]
        s20 = np.exp(emean + digamma(df2 / 2) - np.log(df2 / 2))
    else:
        df2 = np.inf
        s20 = np.exp(emean)
    return float(df2), float(s20)


def squeeze_var(variances, df, df_prior, var_prior):
    """Posterior variances: weighted mean of each variance and the prior."""
    variances = np.asarray(variances, dtype=float)
    if np.isnan(var_prior) or df_prior == 0:
        return variances.copy()
    if np.isinf(df_prior):
        return np.where(np.isnan(variances), np.nan, var_prior)
    df = np.asarray(df, dtype=float)
    return (df * variances + df_prior * var_prior) / (df + df_prior)


def contrasts_fit(fit, contrasts):
    """
    Re-express the coefficients of a fit as contrasts.

    Args:
        fit: FeatureFit
        contrasts: ContrastMatrix whose rows name the fit's coefficients

    Returns:
        New FeatureFit with one coefficient per contrast
    """
    matrix = contrasts.matrix
    columns = list(fit.coefficients.columns)
    unknown = [r for r in matrix.index if r not in columns]
    if unknown:
        raise ValueError(f"contrast rows {unknown} are not coefficients of the fit ({columns})")
    c = matrix.reindex(columns).fillna(0.0).values

    coef = fit.coefficients.values @ c
    cov = np.einsum("ji,fjk,kl->fil", c, fit.cov_unscaled, c)
    stdev = np.sqrt(np.maximum(np.einsum("fii->fi", cov), 0))

    names = list(matrix.columns)
    index = fit.coefficients.index
    return dataclasses.replace(
        fit,
        coefficients=pd.DataFrame(coef, index=index, columns=names),
        stdev_unscaled=pd.DataFrame(stdev, index=index, columns=names),
        cov_unscaled=cov,
        pvalues=None,
        df_prior=None, s2_prior=None, s2_post=None, df_total=None,
        t=None, p_value=None,
    )


def empirical_bayes(fit):
    """
    Moderated t-statistics of every coefficient of the fit.

    Returns:
        New FeatureFit with s2_prior, df_prior, s2_post, df_total, t and
        p_value set
    """
    s2 = fit.sigma.values ** 2
    df = fit.df_residual.values.astype(float)
    ok = np.isfinite(s2) & np.isfinite(df) & (df > 0)
    df_prior, s2_prior = fit_f_dist(s2[ok], df[ok])
    logger.debug(f"Empirical Bayes prior: df={df_prior:.3g}, s2={s2_prior:.3g}")

    s2_post = squeeze_var(s2, df, df_prior, s2_prior)
    df_total = np.minimum(df + df_prior, np.nansum(df[ok]))

    with np.errstate(divide="ignore", invalid="ignore"):
        t = fit.coefficients.values / fit.stdev_unscaled.values / np.sqrt(s2_post)[:, None]
    p = _t_pvalue(t, df_total[:, None])

    index = fit.coefficients.index
    columns = fit.coefficients.columns
    return dataclasses.replace(
        fit,
        df_prior=df_prior,
        s2_prior=s2_prior,
        s2_post=pd.Series(s2_post, index=index),
        df_total=pd.Series(df_total, index=index),
        t=pd.DataFrame(t, index=index, columns=columns),
        p_value=pd.DataFrame(p, index=index, columns=columns),
    )


def _t_pvalue(t, df):
    t, df = np.broadcast_arrays(np.asarray(t, dtype=float), np.asarray(df, dtype=float))
    # Infinite df is the normal limit
    return np.where(
        np.isinf(df),
        2 * stats.norm.sf(np.abs(t)),
        2 * stats.t.sf(np.abs(t), np.where(np.isinf(df), 1, df)),
    )


def f_statistic(fit, coefs):
    """
    Moderated F-statistic testing the coefficients coefs jointly.

    Returns:
        (F, p-value) Series indexed by feature
    """
    t = fit.t[coefs].values
    idx = [list(fit.coefficients.columns).index(c) for c in coefs]
    cov = fit.cov_unscaled[:, idx][:, :, idx]
    n_feat = t.shape[0]
    f_values = np.full(n_feat, np.nan)
    ranks = np.full(n_feat, np.nan)

    for i in range(n_feat):
        ti = t[i]
        sd = np.sqrt(np.diag(cov[i]))
        if not np.all(np.isfinite(ti)) or np.any(sd == 0):
            continue
        cor = cov[i] / np.outer(sd, sd)
        evals, evecs = np.linalg.eigh(cor)
        keep = evals > evals.max() * 1e-8
        r = int(keep.sum())
        projected = evecs[:, keep].T @ ti
        f_values[i] = np.sum(projected ** 2 / evals[keep]) / r
        ranks[i] = r

    df_total = fit.df_total.values
    with np.errstate(invalid="ignore"):
        p = np.where(
            np.isinf(df_total),
            stats.chi2.sf(f_values * ranks, ranks),
            stats.f.sf(f_values, ranks, np.where(np.isinf(df_total), 1, df_total)),
        )
    index = fit.coefficients.index
    return pd.Series(f_values, index=index), pd.Series(p, index=index)


def top_table(fit, coef=None, adjust_method=PAdjust.NONE, p_value=None,
              sort_by="none", number=None):
    """
    Table of moderated test results, one row per feature.

    Args:
        fit: FeatureFit after empirical_bayes
        coef: Coefficient name, list of names, or None for all coefficients
        adjust_method: PAdjust for the adj.P.Val column
        p_value: Keep only rows with adj.P.Val <= p_value
        sort_by: "none" keeps the fit order, "p" sorts by P.Value
        number: Maximum number of rows

    Returns:
        For one coefficient: logFC, AveExpr, t, P.Value, adj.P.Val.
        For several: one column per coefficient, AveExpr, F, P.Value, adj.P.Val.
    """
    if fit.t is None:
        raise ValueError("top_table needs a fit processed by empirical_bayes")
    if coef is None:
        coefs = list(fit.coefficients.columns)
    elif isinstance(coef, str):
        coefs = [coef]
    else:
        coefs = list(coef)

    if len(coefs) == 1:
        c = coefs[0]
        table = pd.DataFrame({
            "logFC": fit.coefficients[c],
            "AveExpr": fit.amean,
            "t": fit.t[c],
            "P.Value": fit.p_value[c],
        })
    else:
        f_values, f_p = f_statistic(fit, coefs)
        table = fit.coefficients[coefs].copy()
        table["AveExpr"] = fit.amean
        table["F"] = f_values
        table["P.Value"] = f_p
    table["adj.P.Val"] = adjust_pvalues(table["P.Value"], adjust_method)

    if p_value is not None:
        table = table[table["adj.P.Val"] <= p_value]
    if sort_by == "p":
        table = table.sort_values("P.Value", kind="mergesort")
    elif sort_by != "none":
        raise ValueError(f"sort_by must be 'none' or 'p', got {sort_by!r}")
    if number is not None:
        table = table.head(number)
    return table
