# microbiome_markers/analysis/padjust.py
"""
Multiple testing correction of p-value columns.
"""

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from microbiome_markers.options import PAdjust, coerce_option


def adjust_pvalues(pvalues, method=PAdjust.NONE):
    """
    Multiple testing correction that leaves missing p-values missing.

    Args:
        pvalues: Series or array of raw p-values
        method: PAdjust or its name

    Returns:
        Adjusted p-values with the type and index of the input
    """
    method = coerce_option(PAdjust, method, "p_adjust")
    is_series = isinstance(pvalues, pd.Series)
    values = np.asarray(pvalues, dtype=float)
    adjusted = values.copy()

    ok = ~np.isnan(values)
    if method.statsmodels_method is not None and ok.any():
        adjusted[ok] = multipletests(values[ok], method=method.statsmodels_method)[1]

    if is_series:
        return pd.Series(adjusted, index=pvalues.index, name=pvalues.name)
    return adjusted
