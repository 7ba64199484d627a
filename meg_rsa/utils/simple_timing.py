"""
Wall-clock timing of pipeline stages, reported through logging.
"""
import logging
import time
from contextlib import contextmanager

# start times of the running blocks, by label
_start_times = {}


def tic(label="default"):
    """Start timing a block."""
    _start_times[label] = time.perf_counter()


def toc(label="default", print_time=True):
    """Stop timing a block and return the elapsed seconds."""
    if label not in _start_times:
        raise ValueError(f"No timing started for '{label}'")

    elapsed = time.perf_counter() - _start_times.pop(label)
    if print_time:
        logging.info(f"TIME [{label}]: {elapsed:.4f} seconds")
    return elapsed


@contextmanager
def timed_stage(label):
    """Time the enclosed stage; the time is logged even if the stage fails."""
    tic(label)
    try:
        yield
    finally:
        toc(label)
