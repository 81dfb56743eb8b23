# microbiome_markers/analysis/contrasts.py
"""
Group factor and contrast construction.

Group labels become model-matrix column names, so they are sanitized to
identifiers the same way for the group factor and for any contrast labels.
Two groups are compared by reordering the factor (denominator first); more
groups get an explicit contrast matrix with an extra all-zero
"scalingFactor" row for the normalization covariate of the design.
"""

import re
from dataclasses import dataclass
from itertools import combinations
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from microbiome_markers.errors import UsageError
from microbiome_markers.options import DiffModel, coerce_option

SCALING_FACTOR = "scalingFactor"

_RESERVED = {
    "if", "else", "repeat", "while", "function", "for", "next", "break",
    "TRUE", "FALSE", "NULL", "Inf", "NaN", "NA", "NA_integer_", "NA_real_",
    "NA_character_", "in",
}


def make_name(name):
    """
    Make a syntactically valid identifier from name.

    Invalid characters become ".", names starting with a digit, an underscore
    or a dot followed by a digit get an "X" prefix, and reserved words get a
    trailing ".".
    """
    name = str(name)
    valid = re.sub(r"[^0-9A-Za-z._]", ".", name)
    if valid == "" or re.match(r"^([0-9_]|\.[0-9])", valid):
        valid = "X" + valid
    if valid in _RESERVED:
        valid = valid + "."
    return valid


def make_names(names):
    return [make_name(n) for n in names]


def sanitize_groups(values):
    """
    Build the group factor from one metadata column.

    Levels are sorted and sanitized with make_name.

    Returns:
        pandas Categorical of sanitized labels

    Raises:
        UsageError: on missing labels, fewer than two levels, or two labels
            that sanitize to the same identifier, or a label that becomes
            "scalingFactor"
    """
    values = pd.Series(values)
    if values.isna().any():
        raise UsageError(f"group variable has {int(values.isna().sum())} missing values")

    raw_levels = sorted(pd.unique(values.astype(str)))
    sanitized = {}
    for level in raw_levels:
        name = make_name(level)
        if name == SCALING_FACTOR:
            raise UsageError(
                f"group label '{level}' clashes with the '{SCALING_FACTOR}' design covariate; rename it"
            )
        if name in sanitized:
            raise UsageError(
                f"group labels '{sanitized[name]}' and '{level}' both become '{name}' "
                "after sanitization; rename one of them"
            )
        sanitized[name] = level

    mapping = {raw: name for name, raw in sanitized.items()}
    levels = list(sanitized)
    if len(levels) < 2:
        raise UsageError(f"at least two groups are required, found {levels}")
    return pd.Categorical(values.astype(str).map(mapping), categories=levels)


@dataclass(frozen=True)
class ContrastPair:
    """Comparison of numerator against denominator (numerator - denominator)."""
    numerator: str
    denominator: str

    @property
    def name(self):
        return f"{self.numerator}-{self.denominator}"

    def enriched(self, effect):
        """Group with the higher abundance given the effect sign, None if unknown."""
        if effect is None or np.isnan(effect):
            return None
        return self.numerator if effect > 0 else self.denominator

    def lower(self, effect):
        """Group with the lower abundance given the effect sign, None if unknown."""
        if effect is None or np.isnan(effect):
            return None
        return self.denominator if effect > 0 else self.numerator


@dataclass
class ContrastMatrix:
    """Contrast weights (rows: design columns, columns: comparisons) and their pairs."""
    matrix: pd.DataFrame
    pairs: List[ContrastPair]

    @property
    def names(self):
        return [p.name for p in self.pairs]


@dataclass
class ContrastPlan:
    groups: pd.Categorical
    contrast: Optional[ContrastPair] = None
    matrix: Optional[ContrastMatrix] = None

    @property
    def levels(self):
        return list(self.groups.categories)

    @property
    def n_levels(self):
        return len(self.levels)

    @property
    def two_group(self):
        return self.n_levels == 2

    @property
    def all_pairs(self):
        """Multi-group comparison of every pair of levels."""
        return not self.two_group and self.contrast is None


def _add_scaling_factor(matrix):
    extra = pd.DataFrame(0.0, index=[SCALING_FACTOR], columns=matrix.columns)
    return pd.concat([matrix, extra])


def pairwise_contrast(levels, pair):
    """Single-column contrast numerator - denominator over levels."""
    weights = pd.DataFrame(0.0, index=list(levels), columns=[pair.name])
    weights.loc[pair.numerator, pair.name] = 1.0
    weights.loc[pair.denominator, pair.name] = -1.0
    return ContrastMatrix(_add_scaling_factor(weights), [pair])


def all_pairs_contrast(levels):
    """One column a - b for every pair of levels, in level order."""
    pairs = [ContrastPair(a, b) for a, b in combinations(levels, 2)]
    weights = pd.DataFrame(0.0, index=list(levels), columns=[p.name for p in pairs])
    for p in pairs:
        weights.loc[p.numerator, p.name] = 1.0
        weights.loc[p.denominator, p.name] = -1.0
    return ContrastMatrix(_add_scaling_factor(weights), pairs)


def build_contrast(groups, contrast=None, method=DiffModel.ZILN):
    """
    Validate the comparison and build the contrast.

    Args:
        groups: Group labels, one per sample (sanitized here)
        contrast: Optional (numerator, denominator) labels
        method: DiffModel; ZILN cannot compare more than two groups

    Returns:
        ContrastPlan

    Raises:
        UsageError
    """
    method = coerce_option(DiffModel, method, "method")
    factor = groups if isinstance(groups, pd.Categorical) else sanitize_groups(groups)
    levels = list(factor.categories)
    n_lvl = len(levels)

    if n_lvl > 2 and method is DiffModel.ZILN:
        raise UsageError("ZILN method does not allow multiple groups comparison")

    pair = None
    if contrast is not None:
        if isinstance(contrast, str) or len(contrast) != 2:
            raise UsageError("`contrast` must be a pair: (numerator, denominator)")
        numerator, denominator = make_names(contrast)
        if numerator == denominator:
            raise UsageError(f"`contrast` compares '{numerator}' with itself")
        missing = [c for c in (numerator, denominator) if c not in levels]
        if missing:
            raise UsageError(f"contrast groups {missing} not found in group levels {levels}")
        pair = ContrastPair(numerator, denominator)

    if n_lvl == 2:
        if pair is None:
            raise UsageError("`contrast` is required for two groups comparison")
        # Denominator first: it becomes the intercept, the numerator the effect
        factor = factor.reorder_categories([pair.denominator, pair.numerator])
        return ContrastPlan(factor, contrast=pair)

    if pair is not None:
        return ContrastPlan(factor, contrast=pair, matrix=pairwise_contrast(levels, pair))
    return ContrastPlan(factor, matrix=all_pairs_contrast(levels))


def model_matrix(plan, samples: Sequence[str]):
    """
    Design matrix of the plan, one row per sample.

    Two groups use treatment coding: the first column (named after the
    denominator) is the intercept, the second (named after the numerator)
    indicates numerator samples. More groups use one indicator per level, so
    level contrasts compare group means.
    """
    codes = np.asarray(plan.groups.codes)
    levels = plan.levels
    if plan.two_group:
        design = np.column_stack([np.ones(len(codes)), (codes == 1).astype(float)])
    else:
        design = np.column_stack([(codes == i).astype(float) for i in range(len(levels))])
    return pd.DataFrame(design, index=list(samples), columns=levels)
