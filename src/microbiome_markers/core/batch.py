# microbiome_markers/core/batch.py
"""
Run independent marker analyses in parallel, one per group variable.
"""

import logging
import multiprocessing
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from microbiome_markers.analysis.markers import MicrobiomeMarker
from microbiome_markers.core.metagenomeseq import run_metagenomeseq
from microbiome_markers.errors import UsageError
from microbiome_markers.logger import log_print

logger = logging.getLogger('microbiome_markers')


@dataclass
class BatchResult:
    """Markers of the successful analyses and the error message of the failed ones."""
    results: Dict[str, MicrobiomeMarker] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return list(self.results)


def run_metagenomeseq_batch(
    profile,
    group_vars: List[str],
    contrasts: Optional[Dict[str, Tuple[str, str]]] = None,
    max_parallel: Optional[int] = None,
    **kwargs
) -> BatchResult:
    """
    Run metagenomeSeq for several group variables in parallel.

    Each analysis runs whole in its own worker process.

    Args:
        profile: AbundanceProfile shared by all analyses
        group_vars: Sample metadata columns to test
        contrasts: Optional dict mapping a group variable to its
            (numerator, denominator) contrast
        max_parallel: Maximum number of parallel analyses (CPU count by default)
        **kwargs: Options passed to every run_metagenomeseq call

    Returns:
        BatchResult
    """
    from concurrent.futures import ProcessPoolExecutor

    if not group_vars:
        return BatchResult()
    contrasts = contrasts or {}
    # Injected services are usually local callables that do not pickle
    if kwargs.get("services") is not None:
        raise UsageError("custom services cannot be sent to worker processes")

    if max_parallel is None:
        max_parallel = max(1, min(len(group_vars), multiprocessing.cpu_count()))

    log_print(f"Running metagenomeSeq for {len(group_vars)} group variables with {max_parallel} workers")

    batch = BatchResult()
    with ProcessPoolExecutor(max_workers=max_parallel) as executor:
        futures = {}
        for group_var in group_vars:
            future = executor.submit(
                run_metagenomeseq,
                profile,
                group_var,
                contrast=contrasts.get(group_var),
                **kwargs
            )
            futures[future] = group_var

        for future in futures:
            group_var = futures[future]
            try:
                batch.results[group_var] = future.result()
                logger.info(f"Successfully analyzed group variable {group_var}")
            except Exception as e:
                logger.error(f"Error analyzing group variable {group_var}: {str(e)}")
                batch.failures[group_var] = str(e)

    log_print(f"metagenomeSeq batch: {len(batch.results)} succeeded, {len(batch.failures)} failed")
    return batch
