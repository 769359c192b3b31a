import contextlib
import time
from typing import Generator

import termcolor
from loguru import logger


@contextlib.contextmanager
def stopwatch(
    label: str = "unlabeled block",
    timings: dict[str, float] | None = None,
    verbose: bool = True,
) -> Generator[None, None, None]:
    """Context manager for measuring runtime. Elapsed seconds are written to
    `timings[label]` if a dictionary is passed in."""
    start_time = time.time()
    if verbose:
        logger.info("Running ({})", label)
    yield
    elapsed = time.time() - start_time
    if timings is not None:
        timings[label] = elapsed
    if verbose:
        logger.info(
            "Finished ({}) in {} seconds",
            label,
            termcolor.colored(f"{elapsed:.4f}", attrs=["bold"]),
        )
