# microbiome_markers/options.py
"""
Closed option types for the marker analysis and the validated options object.

Every choice the pipeline branches on (abundance transform, normalization,
model, multiple-testing correction) is an Enum, so an unknown value is
rejected once, when the options are built, instead of deep inside a run.
"""

from dataclasses import dataclass, field
from enum import Enum
from numbers import Real
from typing import Any, Dict, Optional, Tuple, Union

from microbiome_markers.errors import UsageError


class Transform(str, Enum):
    IDENTITY = "identity"
    LOG10 = "log10"
    LOG10P = "log10p"


class NormMethod(str, Enum):
    NONE = "none"
    RAREFY = "rarefy"
    TSS = "TSS"
    TMM = "TMM"
    RLE = "RLE"
    CSS = "CSS"
    CLR = "CLR"
    CPM = "CPM"


class DiffModel(str, Enum):
    """ZILN: zero-inflated log-normal, ZIG: zero-inflated Gaussian."""
    ZILN = "ZILN"
    ZIG = "ZIG"


class PAdjust(str, Enum):
    NONE = "none"
    FDR = "fdr"
    BONFERRONI = "bonferroni"
    HOLM = "holm"
    HOCHBERG = "hochberg"
    HOMMEL = "hommel"
    BH = "BH"
    BY = "BY"

    @property
    def statsmodels_method(self):
        """Name of the matching ``statsmodels.stats.multitest`` method."""
        return _STATSMODELS_METHODS[self]


_STATSMODELS_METHODS = {
    PAdjust.NONE: None,
    PAdjust.FDR: "fdr_bh",
    PAdjust.BH: "fdr_bh",
    PAdjust.BY: "fdr_by",
    PAdjust.BONFERRONI: "bonferroni",
    PAdjust.HOLM: "holm",
    PAdjust.HOCHBERG: "simes-hochberg",
    PAdjust.HOMMEL: "hommel",
}


class EffectStat(str, Enum):
    """Statistic reported as the effect size of a marker."""
    LOGFC = "logFC"
    F = "F"
    COEF = "coef"

    @property
    def column(self):
        return f"ef_{self.value}"


def coerce_option(enum_cls, value, name):
    """
    Convert a user value to a member of enum_cls.

    Accepts a member, its exact value or a case-insensitive match of the value.

    Raises:
        UsageError: if value does not name a member
    """
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if member.value == value:
                return member
        for member in enum_cls:
            if member.value.lower() == value.lower():
                return member
    choices = ", ".join(f"'{m.value}'" for m in enum_cls)
    raise UsageError(f"`{name}` must be one of {choices}, got {value!r}")


def coerce_norm(value):
    """A NormMethod, or a positive number meaning per-sample scaling to that total."""
    if isinstance(value, Real) and not isinstance(value, bool):
        if value <= 0:
            raise UsageError(f"numeric `norm` must be positive, got {value}")
        return float(value)
    return coerce_option(NormMethod, value, "norm")


@dataclass(frozen=True)
class MetagenomeSeqOptions:
    """Validated options of one metagenomeSeq marker analysis."""
    group_var: str
    contrast: Optional[Tuple[str, str]] = None
    taxa_rank: str = "all"
    transform: Transform = Transform.IDENTITY
    norm: Union[NormMethod, float] = NormMethod.CSS
    norm_para: Dict[str, Any] = field(default_factory=dict)
    method: DiffModel = DiffModel.ZILN
    p_adjust: PAdjust = PAdjust.NONE
    pvalue_cutoff: float = 0.05
    eff: Optional[float] = None
    model_kwargs: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.group_var, str) or not self.group_var:
            raise UsageError("`group_var` must be a non-empty column name")
        set_ = object.__setattr__
        set_(self, "transform", coerce_option(Transform, self.transform, "transform"))
        set_(self, "norm", coerce_norm(self.norm))
        set_(self, "method", coerce_option(DiffModel, self.method, "method"))
        set_(self, "p_adjust", coerce_option(PAdjust, self.p_adjust, "p_adjust"))
        set_(self, "norm_para", dict(self.norm_para or {}))
        set_(self, "model_kwargs", dict(self.model_kwargs or {}))

        if self.contrast is not None:
            if isinstance(self.contrast, str) or len(self.contrast) != 2:
                raise UsageError("`contrast` must be a pair: (numerator, denominator)")
            set_(self, "contrast", (str(self.contrast[0]), str(self.contrast[1])))

        if not isinstance(self.taxa_rank, str):
            raise UsageError("`taxa_rank` must be a rank name, 'all' or 'none'")

        if not 0 <= self.pvalue_cutoff <= 1:
            raise UsageError(f"`pvalue_cutoff` must be within [0, 1], got {self.pvalue_cutoff}")
        if self.eff is not None and not 0 <= self.eff <= 1:
            raise UsageError(f"`eff` must be within [0, 1], got {self.eff}")

    @property
    def diff_method(self):
        return f"metagenomeSeq: {self.method.value}"
