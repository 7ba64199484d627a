"""
Searchlight dynamic GLM over both hemispheres.

For each hemisphere: compute the achievable lag, load the average
searchlight RDM mesh, stack and offset the model timelines, fit the GLM at
every vertex and overlapping timepoint and summarise. Results of both
hemispheres are then saved together.
"""
import logging
from typing import Optional

import numpy as np

from meg_rsa.glm import glm_params
from meg_rsa.glm.glm_functions import fit_searchlight_glm, summarise_fit
from meg_rsa.glm.glm_outputs import save_glm_results
from meg_rsa.glm.lag_functions import compute_lag, lag_metadata, stack_and_offset_models
from meg_rsa.glm.rdm_dataloader import load_searchlight_rdms
from meg_rsa.utils.hemispheres import HEMISPHERES, PerHemisphere
from meg_rsa.utils.workers import WorkerPool


def searchlight_dynamic_glm(
    average_rdm_paths: PerHemisphere,
    models,
    mesh_dir,
    lag_ms=0,
    pool: Optional[WorkerPool] = None,
    sl_metadata: Optional[PerHemisphere] = None,
    n_jobs=glm_params.N_JOBS,
    backend=None,
):
    """
    Run the dynamic GLM for both hemispheres.

    Parameters:
    -----------
    average_rdm_paths : PerHemisphere of Path
        Average searchlight RDM mesh of each hemisphere.
    models : np.ndarray
        (n_timepoints, n_models, n_pairs) model RDM timelines.
    mesh_dir : str or Path
        Where results are written.
    lag_ms : float
        Lag of the model timelines, in ms; rounded down to a whole number of
        samples if needed.
    pool : WorkerPool, optional
        An open pool. One is created (``n_jobs``, ``backend``) if not given.
    sl_metadata : PerHemisphere of MeshTimingMetadata, optional
        Timing of the RDM meshes; defaults to the metadata stored with them.

    Returns:
    --------
    glm_paths : PerHemisphere of GLMResultPaths
    lag_metadatas : PerHemisphere of MeshTimingMetadata
    """
    if pool is None:
        with WorkerPool(n_jobs=n_jobs, backend=backend) as own_pool:
            return searchlight_dynamic_glm(
                average_rdm_paths, models, mesh_dir, lag_ms=lag_ms, pool=own_pool, sl_metadata=sl_metadata
            )

    models = np.asarray(models, dtype=np.float64)
    lag_metadatas = PerHemisphere(left=None, right=None)
    fits = PerHemisphere(left=None, right=None)
    summaries = PerHemisphere(left=None, right=None)

    for hemi in HEMISPHERES:
        average_rdms, stored_metadata = load_searchlight_rdms(average_rdm_paths[hemi])
        metadata = stored_metadata if sl_metadata is None else sl_metadata[hemi]

        logging.info("Computing appropriate lag for dynamic model GLM...")
        lag = compute_lag(metadata.tstep, lag_ms)
        lag_metadatas[hemi] = lag_metadata(metadata, lag)

        logging.info("Applying lag to dynamic model timelines...")
        n_vertices, n_timepoints_data = average_rdms.shape[:2]
        model_stack, n_overlap = stack_and_offset_models(models, lag.steps, n_timepoints_data)

        logging.info(
            f"Working at a lag of {lag.achieved_ms:g}ms, which corresponds to {lag.steps} timepoints "
            f"at this resolution."
        )
        logging.info(
            f"Performing dynamic GLM in {hemi.label} hemisphere "
            f"({n_vertices} vertices, {n_overlap} timepoints, {models.shape[1]} models)..."
        )

        fits[hemi] = fit_searchlight_glm(average_rdms, model_stack, lag.steps, pool)
        summaries[hemi] = summarise_fit(fits[hemi])

    glm_paths = save_glm_results(mesh_dir, fits, summaries, lag_metadatas)

    return glm_paths, lag_metadatas
