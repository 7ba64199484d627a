"""
Lag alignment of model timelines against data timelines.

Model and data timelines are taken to correspond sample-for-sample at zero
lag. With a lag of ``steps`` samples, model timepoint ``i`` is paired with
data timepoint ``i + steps``.
"""
import logging
import math
from dataclasses import dataclass

import numpy as np

from meg_rsa.errors import EmptyOverlapError
from meg_rsa.utils.mesh_io import MeshTimingMetadata


@dataclass(frozen=True)
class LagSpec:
    requested_ms: float
    achieved_ms: float
    steps: int

    @property
    def adjusted(self) -> bool:
        return not math.isclose(self.requested_ms, self.achieved_ms)


def compute_lag(tstep: float, lag_ms: float) -> LagSpec:
    """
    Find the lag, in whole samples, closest to ``lag_ms`` without exceeding it.

    Parameters:
    -----------
    tstep : float
        Sampling interval of the data, in SECONDS.
    lag_ms : float
        Requested lag, in ms. Must be non-negative.

    Returns:
    --------
    LagSpec
        If the requested lag is not a multiple of the timestep it is rounded
        down to the previous achievable lag and a warning is logged.
    """
    if lag_ms < 0:
        raise ValueError(f"The lag must be non-negative, got {lag_ms}ms")
    if tstep <= 0:
        raise ValueError(f"The timestep must be positive, got {tstep}s")

    timestep_ms = tstep * 1000
    desired_steps = lag_ms / timestep_ms

    if math.isclose(desired_steps, round(desired_steps), rel_tol=0, abs_tol=1e-9):
        steps = int(round(desired_steps))
        achieved_ms = float(lag_ms)
    else:
        logging.warning(f"The requested lag of {lag_ms:g}ms cannot be achieved, as the timestep is {timestep_ms:g}ms.")
        steps = int(math.floor(desired_steps))
        achieved_ms = steps * timestep_ms
        logging.warning(f"Using a lag of {achieved_ms:g}ms instead.")

    return LagSpec(requested_ms=float(lag_ms), achieved_ms=achieved_ms, steps=steps)


def lag_metadata(metadata: MeshTimingMetadata, lag: LagSpec) -> MeshTimingMetadata:
    """Timing of the GLM results: ``tmin`` moves forward by the lag; tstep, tmax and vertices are kept."""
    return metadata.shifted(lag.steps)


def overlap_length(n_timepoints_data: int, n_timepoints_models: int, lag_steps: int) -> int:
    return max(0, min(n_timepoints_data, n_timepoints_models) - lag_steps)


def stack_and_offset_models(models, lag_steps: int, n_timepoints_data: int):
    """
    Build one design matrix per overlapping timepoint.

    Parameters:
    -----------
    models : np.ndarray
        (n_timepoints_models, n_models, n_pairs) model RDM timelines.
    lag_steps : int
        Lag in samples.
    n_timepoints_data : int
        Number of timepoints in the data.

    Returns:
    --------
    model_stack : np.ndarray
        (n_overlap, n_pairs, n_models). ``model_stack[i]`` has one column per
        model, rows aligned with the dissimilarities of data timepoint
        ``i + lag_steps``.
    n_overlap : int
        ``min(n_timepoints_data, n_timepoints_models) - lag_steps``.
    """
    models = np.asarray(models, dtype=np.float64)
    if models.ndim != 3:
        raise ValueError(f"models must be (n_timepoints, n_models, n_pairs), got shape {models.shape}")

    n_timepoints_models = models.shape[0]
    n_overlap = overlap_length(n_timepoints_data, n_timepoints_models, lag_steps)
    if n_overlap <= 0:
        raise EmptyOverlapError(
            f"No overlap between {n_timepoints_data} data timepoints and {n_timepoints_models} "
            f"model timepoints at a lag of {lag_steps} samples"
        )

    model_stack = np.transpose(models[:n_overlap], (0, 2, 1)).copy()
    return model_stack, n_overlap
