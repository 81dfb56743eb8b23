# microbiome_markers/preprocessing/transform.py
"""
Abundance transformations applied before normalization.
"""

import numpy as np

from microbiome_markers.options import Transform, coerce_option


def transform_abundances(profile, transform=Transform.IDENTITY):
    """
    Transform the abundances of a profile.

    "identity" returns the data unchanged, "log10" is log10(x), or log10(1 + x)
    if the data contain zeros, and "log10p" is always log10(1 + x).
    """
    transform = coerce_option(Transform, transform, "transform")
    counts = profile.counts

    if transform is Transform.IDENTITY:
        return profile.copy()
    if transform is Transform.LOG10 and not (counts == 0).any().any():
        transformed = np.log10(counts)
    else:
        transformed = np.log10(1 + counts)

    return profile.replace_counts(transformed)
