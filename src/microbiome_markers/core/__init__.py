# microbiome_markers/core/__init__.py
"""
Core functionality for microbiome_markers.

- profile.py: Abundance profile data model
- metagenomeseq.py: metagenomeSeq marker analysis pipeline
- batch.py: Parallel analyses over several group variables
"""

from microbiome_markers.core.profile import (
    AbundanceProfile,
    preprocess_profile,
    library_sizes
)

from microbiome_markers.core.metagenomeseq import (
    MetagenomeSeqServices,
    run_metagenomeseq
)

from microbiome_markers.core.batch import (
    BatchResult,
    run_metagenomeseq_batch
)
