"""
Module for loading searchlight and model RDMs for the dynamic GLM.

Searchlight RDM meshes are stored as (n_vertices, n_timepoints, n_pairs)
and model timelines as (n_timepoints, n_models, n_pairs), where n_pairs is
the length of the vectorised upper triangle of an RDM. Square RDMs are
vectorised on loading.
"""
import logging
from pathlib import Path

import h5py
import numpy as np
from scipy.spatial.distance import squareform

from meg_rsa.glm.glm_params import AVERAGE_RDM_DATASET, MODEL_DATASET
from meg_rsa.utils.mesh_io import load_mesh_array, save_mesh_array


def rdm_vector(rdm) -> np.ndarray:
    """Vectorise a single square RDM; vectors are returned unchanged."""
    rdm = np.asarray(rdm, dtype=np.float64)
    if rdm.ndim == 1:
        return rdm
    if rdm.ndim != 2 or rdm.shape[0] != rdm.shape[1]:
        raise ValueError(f"Expected a square RDM or a vector, got shape {rdm.shape}")
    return squareform(rdm, checks=False)


def vectorise_rdms(rdms, n_leading_dims: int) -> np.ndarray:
    """
    Vectorise an array of RDMs.

    Parameters:
    -----------
    rdms : np.ndarray
        Either (*leading, n_pairs) or (*leading, n, n).
    n_leading_dims : int
        Number of leading (non-RDM) dimensions, e.g. 2 for (vertices, time).
    """
    rdms = np.asarray(rdms, dtype=np.float64)
    if rdms.ndim == n_leading_dims + 1:
        return rdms
    if rdms.ndim != n_leading_dims + 2 or rdms.shape[-1] != rdms.shape[-2]:
        raise ValueError(f"Cannot interpret array of shape {rdms.shape} as RDMs with {n_leading_dims} leading dims")
    # same ordering as scipy's squareform
    rows, cols = np.triu_indices(rdms.shape[-1], k=1)
    return rdms[..., rows, cols]


def save_searchlight_rdms(path, rdms, metadata) -> Path:
    """Save a (n_vertices, n_timepoints, n_pairs) searchlight RDM mesh."""
    rdms = vectorise_rdms(rdms, n_leading_dims=2)
    if rdms.shape[0] != len(metadata.vertices):
        raise ValueError(f"RDM mesh has {rdms.shape[0]} vertices, metadata lists {len(metadata.vertices)}")
    return save_mesh_array(path, AVERAGE_RDM_DATASET, rdms, metadata)


def load_searchlight_rdms(path):
    """Load (rdms, metadata) saved by ``save_searchlight_rdms``."""
    logging.info(f"Loading average RDM mesh from {path}")
    rdms, metadata = load_mesh_array(path, AVERAGE_RDM_DATASET)
    return vectorise_rdms(rdms, n_leading_dims=2), metadata


def average_searchlight_rdms(subject_paths, out_path) -> Path:
    """
    Average per-subject searchlight RDM meshes into one group mesh.

    Dissimilarities that are missing (NaN) for some subjects are averaged
    over the remaining subjects.
    """
    subject_paths = list(subject_paths)
    if not subject_paths:
        raise ValueError("No subject RDM meshes to average")

    total, count, metadata = None, None, None
    for path in subject_paths:
        rdms, this_metadata = load_searchlight_rdms(path)
        if total is None:
            total = np.zeros_like(rdms)
            count = np.zeros(rdms.shape, dtype=np.int64)
            metadata = this_metadata
        elif rdms.shape != total.shape or not metadata.matches(this_metadata):
            raise ValueError(f"RDM mesh {path} does not match the shape/timing of {subject_paths[0]}")
        valid = ~np.isnan(rdms)
        total[valid] += rdms[valid]
        count += valid

    with np.errstate(invalid="ignore", divide="ignore"):
        average = np.where(count > 0, total / np.maximum(count, 1), np.nan)

    logging.info(f"Averaged {len(subject_paths)} searchlight RDM meshes into {out_path}")
    return save_searchlight_rdms(out_path, average, metadata)


def save_model_timecourses(path, models, model_names=None) -> Path:
    """Save model RDM timelines, (n_timepoints, n_models, n_pairs) or square."""
    models = vectorise_rdms(models, n_leading_dims=2)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with h5py.File(path, "w") as h5_file:
        h5_file.create_dataset(MODEL_DATASET, data=models)
        if model_names is not None:
            if len(model_names) != models.shape[1]:
                raise ValueError(f"{len(model_names)} model names given for {models.shape[1]} models")
            h5_file.attrs["model_names"] = [str(name) for name in model_names]
    return path


def load_model_timecourses(path):
    """
    Load model RDM timelines.

    Returns:
    --------
    models : np.ndarray
        (n_timepoints, n_models, n_pairs)
    model_names : list of str
        Defaults to "model_1", "model_2", ... if the file has no names.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")
    with h5py.File(path, "r") as h5_file:
        if MODEL_DATASET not in h5_file:
            raise KeyError(f"Dataset '{MODEL_DATASET}' not found in {path}")
        models = h5_file[MODEL_DATASET][()]
        names = h5_file.attrs.get("model_names")

    if models.ndim == 4:
        # square RDMs, one at a time
        models = np.array([[rdm_vector(rdm) for rdm in row] for row in models])
    models = vectorise_rdms(models, n_leading_dims=2)

    if names is None:
        model_names = [f"model_{i + 1}" for i in range(models.shape[1])]
    else:
        model_names = [name.decode() if isinstance(name, bytes) else str(name) for name in names]
    return models, model_names
