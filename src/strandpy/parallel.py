from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Callable, Dict, Sequence, TypeVar
import logging
import os
import traceback

import psutil

from .bamio import sample_name
from .config import check_workers

T = TypeVar("T")


def _get_memory_usage() -> float:
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / 1024 / 1024  # Current memory usage in MB


def run_per_sample(
    task: Callable[..., T],
    sources: Sequence,
    *,
    workers: int = 1,
    logger: logging.Logger | None = None,
) -> Dict[str, T]:
    """
    Run `task(source)` once per sample and return {sample name: result} in
    input order. Samples go to a process pool when there is more than one
    sample and more than one worker; otherwise they run one after the other.
    `task` must be picklable for the pool (a module-level function or a
    functools.partial of one).
    """
    logger = logger or logging.getLogger("strandpy.parallel")
    check_workers(workers)
    sources = list(sources)
    names = [sample_name(s) for s in sources]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Duplicated sample names: {', '.join(dupes)}")

    results: Dict[str, T] = {}
    if len(sources) > 1 and workers > 1:
        n_workers = min(workers, len(sources))
        logger.info(f"Processing {len(sources)} samples (workers: {n_workers})")
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            future_to_sample = {
                executor.submit(task, src): name for src, name in zip(sources, names)
            }
            completed = 0
            for future in as_completed(future_to_sample):
                name = future_to_sample[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.error(f"Error processing {name}: {e}")
                    raise
                completed += 1
                logger.info(
                    f"Progress: {completed}/{len(sources)} ({100 * completed / len(sources):.1f}%)"
                )
    else:
        for i, (src, name) in enumerate(zip(sources, names), 1):
            logger.info(f"Processing sample {i}/{len(sources)}: {name}")
            try:
                results[name] = task(src)
            except Exception as e:
                logger.error(f"Error processing {name}: {e}")
                logger.debug("Traceback:\n" + traceback.format_exc())
                raise
            logger.debug(f"Current memory: {_get_memory_usage():.1f} MB")

    # Merge by sample key, in the order samples were given
    return {name: results[name] for name in names}
