"""
Worker pool shared by the data preparation and GLM stages.
"""
import logging
import threading

from joblib import Parallel, cpu_count, delayed, effective_n_jobs


def optimize_n_jobs(debug=False):
    """
    Optimizes parallel job allocation based on available CPU cores.
    """
    available_cores = cpu_count()

    # Scale reserved percentage based on core count (less overhead with more cores)
    reserved_percentage = max(0.02, min(0.1, 0.1 * (32 / max(32, available_cores))))
    reserved_cores = max(1, int(available_cores * reserved_percentage))
    usable_cores = max(1, available_cores - reserved_cores)

    jobs_dict = {
        "worker_pool": usable_cores,
    }

    if debug:
        jobs_dict = {key: 1 for key in jobs_dict.keys()}

    return jobs_dict


class WorkerPool:
    """
    A joblib pool that lives for one batch.

    Use it as a context manager so that the workers are started once and
    reused by every ``map`` call inside the batch::

        with WorkerPool(n_jobs=-2) as pool:
            results = pool.map(fit_one, items)

    ``cancel()`` may be called from another thread; callers that dispatch in
    chunks check ``cancelled`` between chunks.
    """

    def __init__(self, n_jobs=-2, backend=None, verbose=0):
        self.n_jobs = n_jobs
        self.backend = backend
        self.verbose = verbose
        self._parallel = None
        self._cancel_event = threading.Event()

    def __enter__(self):
        self._parallel = Parallel(n_jobs=self.n_jobs, backend=self.backend, verbose=self.verbose)
        self._parallel.__enter__()
        logging.info(f"Started worker pool with {self.effective_n_jobs} jobs (backend={self.backend or 'default'})")
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        try:
            self._parallel.__exit__(exc_type, exc_value, traceback)
        finally:
            self._parallel = None
            logging.info("Worker pool closed")
        return False

    @property
    def is_open(self) -> bool:
        return self._parallel is not None

    @property
    def effective_n_jobs(self) -> int:
        return effective_n_jobs(self.n_jobs)

    @property
    def chunk_size(self) -> int:
        """Number of tasks dispatched between cancellation checks."""
        return max(1, 4 * self.effective_n_jobs)

    def map(self, func, iterable):
        """Apply ``func`` to every item; results come back in input order."""
        return self.starmap(func, ((item,) for item in iterable))

    def starmap(self, func, iterable):
        if self._parallel is None:
            raise RuntimeError("WorkerPool must be entered before use")
        return self._parallel(delayed(func)(*args) for args in iterable)

    def cancel(self):
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()
