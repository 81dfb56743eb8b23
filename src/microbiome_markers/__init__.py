# microbiome_markers/__init__.py
"""
microbiome_markers - Differential abundance markers for microbiome profiles.

This package finds the features (taxa) whose abundance differs between
sample groups with the metagenomeSeq zero-inflated models:
1. Group factor and contrast construction
2. Transformation, normalization and taxonomic summarization
3. ZILN or ZIG model fitting with empirical Bayes moderation
4. Harmonized marker tables with the enriched group of every marker
"""

__version__ = "0.1.0"

# Import key functions for easy access
from microbiome_markers.logger import setup_logger, log_print
from microbiome_markers.errors import (
    EmptyResultWarning,
    FitConvergenceError,
    MarkerAnalysisError,
    UsageError,
)
from microbiome_markers.options import DiffModel, NormMethod, PAdjust, Transform

# Import main functions
from microbiome_markers.core.profile import AbundanceProfile
from microbiome_markers.core.metagenomeseq import MetagenomeSeqServices, run_metagenomeseq
from microbiome_markers.core.batch import BatchResult, run_metagenomeseq_batch
from microbiome_markers.analysis.markers import MicrobiomeMarker
