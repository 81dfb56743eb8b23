# microbiome_markers/analysis/harmonize.py
"""
Harmonize the raw model tables into one schema.

The two-group tables (one effect column) and the multi-group tables (one
column per contrast, or a single logFC column for one requested contrast)
are all turned into a table indexed by feature with the columns
enrich_group, the effect column, pvalue and padj.
"""

import logging
from collections import Counter
from dataclasses import dataclass

import pandas as pd

from microbiome_markers.options import EffectStat

logger = logging.getLogger('microbiome_markers')

AMBIGUOUS_SEP = "|"


@dataclass
class HarmonizedResult:
    table: pd.DataFrame
    effect_stat: EffectStat
    effect_column: str
    n_ambiguous: int = 0


def enrich_group_by_sign(effect, pair):
    """Numerator for positive effects, denominator otherwise, None when missing."""
    return pd.Series([pair.enriched(e) for e in effect], index=effect.index, dtype=object)


def derive_enrich_group(effects, pairs):
    """
    Groups enriched in a feature given its effect for every pair of groups.

    A group is enriched when it is never the lower group of a comparison. If
    the comparisons are cyclic (every group loses once) the groups with the
    most wins minus losses are returned; several groups mean a tie.

    Args:
        effects: Effect per pair, positive when the numerator is higher
        pairs: ContrastPair per effect

    Returns:
        Tuple of group labels, empty when no comparison has a known sign
    """
    groups = []
    for pair in pairs:
        for g in (pair.numerator, pair.denominator):
            if g not in groups:
                groups.append(g)

    losers = set()
    net_wins = Counter()
    for effect, pair in zip(effects, pairs):
        low = pair.lower(effect)
        if low is None:
            continue
        losers.add(low)
        net_wins[pair.enriched(effect)] += 1
        net_wins[low] -= 1

    if not losers:
        return ()
    winners = [g for g in groups if g not in losers]
    if winners:
        return tuple(winners)
    best = max(net_wins[g] for g in groups)
    return tuple(g for g in groups if net_wins[g] == best)


def format_enrich_group(groups):
    return AMBIGUOUS_SEP.join(groups)


def _canonical(enrich_group, effect, pvalue, padj, effect_column):
    return pd.DataFrame({
        "enrich_group": enrich_group,
        effect_column: effect,
        "pvalue": pvalue,
        "padj": padj,
    })


def harmonize_two_group(coef_table, effect_column, pair):
    """
    Args:
        coef_table: coefficient_table output (effect column, pvalues, adjPvalues)
        effect_column: "logFC" (ZILN) or the numerator label (ZIG)
        pair: ContrastPair compared
    """
    effect_stat = EffectStat.LOGFC if effect_column == "logFC" else EffectStat.COEF
    table = _canonical(
        enrich_group_by_sign(coef_table[effect_column], pair),
        coef_table[effect_column],
        coef_table["pvalues"],
        coef_table["adjPvalues"],
        effect_column,
    )
    return HarmonizedResult(table, effect_stat, effect_column)


def harmonize_multi_group(top, plan):
    """
    Args:
        top: top_table output of the contrast fit
        plan: ContrastPlan with the contrast matrix
    """
    if not plan.all_pairs:
        table = _canonical(
            enrich_group_by_sign(top["logFC"], plan.contrast),
            top["logFC"], top["P.Value"], top["adj.P.Val"], "logFC",
        )
        return HarmonizedResult(table, EffectStat.LOGFC, "logFC")

    pairs = plan.matrix.pairs
    effects = top[[p.name for p in pairs]].to_numpy()
    winners = [derive_enrich_group(row, pairs) for row in effects]
    n_ambiguous = sum(len(w) > 1 for w in winners)
    if n_ambiguous:
        logger.warning(
            f"{n_ambiguous} features have no single enriched group "
            "(cyclic or missing pairwise differences); "
            f"tied groups are reported joined by '{AMBIGUOUS_SEP}'"
        )

    enrich_group = pd.Series(
        [format_enrich_group(w) if w else None for w in winners], index=top.index, dtype=object
    )
    table = _canonical(enrich_group, top["F"], top["P.Value"], top["adj.P.Val"], "F")
    return HarmonizedResult(table, EffectStat.F, "F", n_ambiguous)
