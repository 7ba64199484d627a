"""
Saving dynamic GLM results.

Every result is written twice: the full arrays to HDF5, one file per
hemisphere, and one pair of stc files per model/summary map for the cluster
statistics stage. Per-timepoint maps carry the lagged timing metadata; maps
collapsed over time carry all-zero timing.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

from meg_rsa.glm import glm_params
from meg_rsa.glm.glm_functions import FitResult, GLMSummary
from meg_rsa.utils.hemispheres import HEMISPHERES, Hemisphere, PerHemisphere
from meg_rsa.utils.mesh_io import MeshTimingMetadata, save_mesh_array, write_stc
from meg_rsa.utils.paths import ensure_dir


@dataclass
class GLMResultPaths:
    h5: Dict[str, Path] = field(default_factory=dict)
    stc: Dict[str, Path] = field(default_factory=dict)


def result_path(mesh_dir, stem: str, hemi: Hemisphere, ext: str) -> Path:
    return Path(mesh_dir) / f"{stem}-{hemi.label}.{ext}"


def _save_h5_results(mesh_dir, hemi, fit: FitResult, summary: GLMSummary, lag_metadata: MeshTimingMetadata, paths):
    median_metadata = lag_metadata.time_collapsed()
    h5_results = [
        (glm_params.BETAS, fit.coefficients, lag_metadata),
        (glm_params.DEVIANCES, fit.deviance, lag_metadata),
        (glm_params.ILL_CONDITIONED, fit.ill_conditioned, lag_metadata),
        (glm_params.MAX_BETAS, summary.max_betas, lag_metadata),
        (glm_params.MAX_BETA_IS, summary.max_beta_indices, lag_metadata),
        (glm_params.BETAS_MEDIAN, summary.betas_median, median_metadata),
        (glm_params.MAX_BETAS_MEDIAN, summary.max_betas_median, median_metadata),
        (glm_params.MAX_BETA_IS_MEDIAN, summary.max_beta_indices_median, median_metadata),
    ]
    for stem, array, metadata in h5_results:
        path = result_path(mesh_dir, stem, hemi, "h5")
        # the dataset is named after the stem without the common prefix, e.g. "betas"
        save_mesh_array(path, stem.replace("GLM_mesh_", ""), array, metadata)
        paths.h5[stem] = path


def save_glm_results(
    mesh_dir,
    fits: PerHemisphere,
    summaries: PerHemisphere,
    lag_metadatas: PerHemisphere,
) -> PerHemisphere:
    """
    Write the GLM results of both hemispheres.

    Parameters:
    -----------
    mesh_dir : str or Path
        Output directory (``<root>/Meshes``).
    fits : PerHemisphere of FitResult
    summaries : PerHemisphere of GLMSummary
    lag_metadatas : PerHemisphere of MeshTimingMetadata
        Timing of the fitted timepoints (see ``lag_metadata``). An stc file
        holds both hemispheres, so they must share tmin, tstep and the
        number of fitted timepoints.

    Returns:
    --------
    PerHemisphere of GLMResultPaths
    """
    mesh_dir = ensure_dir(mesh_dir)
    paths = PerHemisphere(left=GLMResultPaths(), right=GLMResultPaths())

    for hemi in HEMISPHERES:
        logging.info(f"Saving GLM results for {hemi.label} hemisphere to {mesh_dir}...")
        _save_h5_results(mesh_dir, hemi, fits[hemi], summaries[hemi], lag_metadatas[hemi], paths[hemi])

    median_metadatas = PerHemisphere(
        left=lag_metadatas.left.time_collapsed(), right=lag_metadatas.right.time_collapsed()
    )
    n_models = fits.left.n_models
    if fits.right.n_models != n_models:
        raise ValueError(f"Hemispheres were fitted with {n_models} and {fits.right.n_models} models")

    def per_hemi(get):
        return PerHemisphere(left=get(Hemisphere.LEFT), right=get(Hemisphere.RIGHT))

    stc_results = []
    for model_i in range(1, n_models + 1):
        stc_results.append((
            glm_params.BETAS_MODEL.format(model=model_i),
            lag_metadatas,
            per_hemi(lambda hemi, m=model_i: fits[hemi].coefficients[:, :, m]),
        ))
    stc_results.append((glm_params.MAX_BETAS, lag_metadatas, per_hemi(lambda hemi: summaries[hemi].max_betas)))
    stc_results.append(
        (glm_params.MAX_BETA_IS, lag_metadatas, per_hemi(lambda hemi: summaries[hemi].max_beta_indices))
    )
    for model_i in range(1, n_models + 1):
        stc_results.append((
            glm_params.BETAS_MODEL_MEDIAN.format(model=model_i),
            median_metadatas,
            per_hemi(lambda hemi, m=model_i: summaries[hemi].betas_median[:, m]),
        ))
    stc_results.append(
        (glm_params.MAX_BETAS_MEDIAN, median_metadatas, per_hemi(lambda hemi: summaries[hemi].max_betas_median))
    )
    stc_results.append((
        glm_params.MAX_BETA_IS_MEDIAN,
        median_metadatas,
        per_hemi(lambda hemi: summaries[hemi].max_beta_indices_median),
    ))

    logging.info(f"Saving {len(stc_results)} GLM maps to stc files...")
    for stem, metadata, data in stc_results:
        written = write_stc(Path(mesh_dir) / stem, metadata, data)
        for hemi in HEMISPHERES:
            paths[hemi].stc[stem] = written[hemi]

    return paths
