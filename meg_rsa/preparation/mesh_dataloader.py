"""
Load raw per-trial source estimates into downsampled cortical mesh tensors.

For every subject and hemisphere the raw trials (one stc file per session
and condition) are masked or spatially downsampled, decimated in time and
stacked into a (vertices, time, condition, session) array, which is saved
to ``<root>/ImageData/<analysis>_<subject>_<lh|rh>_CorticalMeshes.h5``.
Trials that cannot be read are kept as all-NaN slices and listed in the
missing files log.
"""
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd
from tqdm import tqdm

from meg_rsa.errors import (
    EmptyMaskError,
    InconsistentTrialError,
    InsufficientResolutionError,
    MegRsaError,
    NoTrialsLoadedError,
)
from meg_rsa.preparation.preparation_params import DEFAULT_RESPONSE, SOURCE_MESH_DATASET
from meg_rsa.utils.hemispheres import HEMISPHERES, Hemisphere, PerHemisphere
from meg_rsa.utils.mesh_io import (
    MeshRecording,
    MeshTimingMetadata,
    load_mesh_array,
    read_mesh_metadata,
    read_stc,
    save_mesh_array,
)
from meg_rsa.utils.paths import cortical_mesh_path, ensure_dir, raw_trial_path, replace_wildcards
from meg_rsa.utils.workers import WorkerPool


@dataclass(eq=False)
class IndexMask:
    """Vertices of a mask on one hemisphere."""

    name: str
    hemisphere: Hemisphere
    vertices: np.ndarray


@dataclass
class UnitResult:
    """Outcome of preparing one subject/hemisphere."""

    subject_name: str
    hemisphere: Hemisphere
    path: Path
    metadata: Optional[MeshTimingMetadata] = None
    missing: List[str] = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class PreparationReport:
    mesh_paths: List[PerHemisphere]
    metadata: Optional[MeshTimingMetadata]
    skipped: List[UnitResult]
    failed: List[UnitResult]


class MissingFilesLog:
    """
    Append-only log of trials that could not be read.

    Writes go through a lock so that units finishing at the same time do not
    interleave their lines.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, identifiers, completed=True):
        """
        Append one line per identifier.

        A blank marker line follows the identifiers of a unit that was
        saved; units that failed are logged without it.
        """
        with self._lock:
            ensure_dir(self.path.parent)
            with open(self.path, "a") as f:
                for identifier in identifiers:
                    f.write(f"{identifier}\n")
                if completed:
                    f.write("\n")


def load_beta_correspondence(csv_path):
    """
    Read the table of trial identifiers.

    The CSV needs the columns ``session``, ``condition`` and ``identifier``;
    sessions and conditions are numbered from 1.

    Returns:
    --------
    betas : list of list of str
        ``betas[session_i][condition_i]`` is the identifier of that trial.
    """
    df = pd.read_csv(csv_path)
    missing_columns = {"session", "condition", "identifier"} - set(df.columns)
    if missing_columns:
        raise ValueError(f"Beta correspondence {csv_path} lacks columns {sorted(missing_columns)}")

    grid = df.pivot(index="session", columns="condition", values="identifier").sort_index().sort_index(axis=1)
    if grid.isna().any().any():
        raise ValueError(f"Beta correspondence {csv_path} does not cover every session/condition pair")
    return grid.astype(str).values.tolist()


def n_downsampled_timepoints(n_timepoints_raw: int, rate: int) -> int:
    """Number of samples kept when taking every ``rate``-th sample from index 0."""
    return len(range(0, n_timepoints_raw, rate))


def select_vertices(hemi: Hemisphere, target_resolution: int, masks=None) -> np.ndarray:
    """
    Vertices retained for one hemisphere.

    With masks, this is the sorted union of the vertices of every mask on
    ``hemi``. Without masks it is the first ``target_resolution`` vertex
    indices: raw meshes are laid out so that low indices form the canonical
    low-resolution subset.

    Raises EmptyMaskError if masks are given but none lies on ``hemi``.
    """
    if masks:
        hemi_vertices = [np.asarray(mask.vertices, dtype=np.int64) for mask in masks if mask.hemisphere is hemi]
        if not hemi_vertices:
            raise EmptyMaskError(
                f"None of the masks ({', '.join(mask.name for mask in masks)}) covers the {hemi.label} hemisphere"
            )
        vertices = np.unique(np.concatenate(hemi_vertices))
        if not len(vertices):
            raise EmptyMaskError(f"The masks on the {hemi.label} hemisphere contain no vertices")
        return vertices
    return np.arange(target_resolution, dtype=np.int64)


def downsample_recording(recording: MeshRecording, vertices, temporal_downsample_rate: int, target_resolution: int):
    """
    Mask/downsample a raw recording in space and decimate it in time.

    Parameters:
    -----------
    recording : MeshRecording
        Raw single-trial data.
    vertices : np.ndarray
        Row indices to keep (see ``select_vertices``).
    temporal_downsample_rate : int
        Keep every n-th sample, starting with the first.
    target_resolution : int
        Minimum number of vertices the raw data must have.

    Returns:
    --------
    data : np.ndarray
        (len(vertices), n_timepoints_downsampled)
    metadata : MeshTimingMetadata
        tmin unchanged, tstep multiplied by the rate.
    """
    if recording.n_vertices < target_resolution:
        raise InsufficientResolutionError(
            f"There aren't enough vertices in the raw data ({recording.n_vertices}) "
            f"to meet the target resolution ({target_resolution})."
        )
    vertices = np.asarray(vertices, dtype=np.int64)
    if len(vertices) and vertices.max() >= recording.n_vertices:
        raise InsufficientResolutionError(
            f"Vertex {vertices.max()} is outside the raw data, which has {recording.n_vertices} vertices."
        )

    data = recording.data[vertices, ::temporal_downsample_rate]
    metadata = MeshTimingMetadata.from_timing(
        tmin=recording.tmin,
        tstep=recording.tstep * temporal_downsample_rate,
        n_timepoints=data.shape[1],
        vertices=vertices,
    )
    return data, metadata


def save_source_meshes(path, source_meshes, metadata: MeshTimingMetadata) -> Path:
    return save_mesh_array(path, SOURCE_MESH_DATASET, source_meshes, metadata)


def load_source_meshes(path):
    """Load (source_meshes, metadata) saved by ``save_source_meshes``."""
    return load_mesh_array(path, SOURCE_MESH_DATASET)


def resolve_overwrite(policy: str, existing_paths, input_func=input):
    """
    Decide, once for the whole batch, which existing outputs to overwrite.

    Parameters:
    -----------
    policy : str
        "skip", "overwrite", "ask" (one question for the batch) or
        "per_file" (one question per existing file, all asked up front).
    existing_paths : list of Path
        Outputs that already exist.
    input_func : callable
        Used to ask the questions.

    Returns:
    --------
    set of Path
        The existing paths which should be recomputed.
    """
    existing_paths = [Path(p) for p in existing_paths]
    if not existing_paths or policy == "skip":
        return set()
    if policy == "overwrite":
        return set(existing_paths)

    if policy == "ask":
        logging.info(f"{len(existing_paths)} output files already exist:")
        for path in existing_paths:
            logging.info(f"  {path}")
        response = input_func(
            "[S]kip existing files, [O]verwrite all, or [A]sk for each file? "
            f"(default {DEFAULT_RESPONSE}) "
        ).strip().upper() or DEFAULT_RESPONSE
        if response.startswith("O"):
            return set(existing_paths)
        if not response.startswith("A"):
            return set()
    elif policy != "per_file":
        raise ValueError(f"Unknown overwrite policy: {policy!r}")

    to_overwrite = set()
    for path in existing_paths:
        response = input_func(f"Overwrite {path}? [y/N] ").strip().lower()
        if response.startswith("y"):
            to_overwrite.add(path)
    return to_overwrite


def prepare_subject_hemisphere(
    subject_name,
    hemi: Hemisphere,
    betas,
    config,
    masks=None,
    overwrite=False,
    missing_log: Optional[MissingFilesLog] = None,
) -> UnitResult:
    """
    Build and save the source mesh tensor of one subject and hemisphere.

    Parameters:
    -----------
    subject_name : str
        Substituted for ``[[subjectName]]`` in the beta path and identifiers.
    hemi : Hemisphere
    betas : list of list of str
        ``betas[session_i][condition_i]`` trial identifiers.
    config : dict
        Run configuration from ``configure_run``.
    masks : list of IndexMask, optional
    overwrite : bool
        Recompute even if the output file exists.
    missing_log : MissingFilesLog, optional
        If given, failed identifiers are appended here, also when the unit
        fails. Batch runs leave this to the coordinator.

    Returns:
    --------
    UnitResult

    Raises:
    -------
    MegRsaError
        If the unit cannot be prepared. ``missing_identifiers`` of the error
        lists the trials that were unreadable up to that point.
    """
    path = cortical_mesh_path(config["ROOT_PATH"], config["ANALYSIS_NAME"], subject_name, hemi)

    if path.exists() and not overwrite:
        logging.info(f"Subject {subject_name} {hemi.label} data already loaded. Skipping.")
        return UnitResult(subject_name, hemi, path, metadata=read_mesh_metadata(path), skipped=True)

    logging.info(f"Loading on subject {subject_name}, {hemi.label} side")

    vertices = select_vertices(hemi, config["TARGET_RESOLUTION"], masks)

    missing = []
    try:
        source_meshes, metadata = _read_trials(subject_name, hemi, betas, config, vertices, missing)
    except MegRsaError as e:
        e.missing_identifiers = tuple(missing)
        if missing_log is not None:
            missing_log.record(missing, completed=False)
        raise

    save_source_meshes(path, source_meshes, metadata)
    logging.info(f"Subject {subject_name}'s {hemi.label} data read successfully!")

    if missing_log is not None:
        missing_log.record(missing)

    return UnitResult(subject_name, hemi, path, metadata=metadata, missing=missing)


def _read_trials(subject_name, hemi, betas, config, vertices, missing):
    """Stack the trials of one unit; unreadable identifiers are appended to ``missing``."""
    n_sessions = len(betas)
    n_conditions = len(betas[0])
    rate = config["TEMPORAL_DOWNSAMPLE_RATE"]
    target_resolution = config["TARGET_RESOLUTION"]

    source_meshes = None
    metadata = None

    for session_i in range(n_sessions):
        for condition_i in range(n_conditions):
            identifier = betas[session_i][condition_i]
            read_path = raw_trial_path(config["BETA_PATH"], identifier, subject_name, hemi)

            try:
                recording = read_stc(read_path, hemi)
            except Exception as e:
                # rejected trials are kept as NaNs
                logging.warning(
                    f"Failed to read data for session {session_i + 1}, condition {condition_i + 1} "
                    f"({e}). Using NaNs instead."
                )
                missing.append(replace_wildcards(identifier, subjectName=subject_name))
                continue

            data, this_metadata = downsample_recording(recording, vertices, rate, target_resolution)

            if source_meshes is None:
                metadata = this_metadata
                source_meshes = np.full(
                    (len(vertices), data.shape[1], n_conditions, n_sessions), np.nan
                )  # (vertices, time, condition, session)
            elif data.shape[1] != source_meshes.shape[1] or not metadata.matches(this_metadata):
                raise InconsistentTrialError(
                    f"Trial {read_path} has {data.shape[1]} timepoints (tmin={this_metadata.tmin}, "
                    f"tstep={this_metadata.tstep}), expected {source_meshes.shape[1]} "
                    f"(tmin={metadata.tmin}, tstep={metadata.tstep})"
                )

            source_meshes[:, :, condition_i, session_i] = data

    if source_meshes is None:
        raise NoTrialsLoadedError(f"No trials could be read for subject {subject_name}, {hemi.label}")
    return source_meshes, metadata


def _prepare_unit(subject_name, hemi, betas, config, masks, overwrite):
    """Worker entry point: turns unit-level failures into a result."""
    try:
        return prepare_subject_hemisphere(subject_name, hemi, betas, config, masks=masks, overwrite=overwrite)
    except MegRsaError as e:
        path = cortical_mesh_path(config["ROOT_PATH"], config["ANALYSIS_NAME"], subject_name, hemi)
        return UnitResult(
            subject_name, hemi, path, missing=list(e.missing_identifiers), error=f"{type(e).__name__}: {e}"
        )


def prepare_source_meshes(betas, config, masks=None, pool: Optional[WorkerPool] = None, input_func=input):
    """
    Prepare source meshes for every subject and both hemispheres.

    Parameters:
    -----------
    betas : list of list of str
        ``betas[session_i][condition_i]`` trial identifiers, shared by all subjects.
    config : dict
        Run configuration from ``configure_run``.
    masks : list of IndexMask, optional
        If given, only vertices inside the masks are kept.
    pool : WorkerPool, optional
        An open pool; subjects/hemispheres are processed in parallel on it.
        A pool is created for this call if none is given.
    input_func : callable
        Used for interactive overwrite questions.

    Returns:
    --------
    PreparationReport
    """
    if not betas or not betas[0]:
        raise ValueError("betas must contain at least one session and one condition")

    ensure_dir(config["IMAGE_DATA_DIR"])
    missing_log = MissingFilesLog(config["MISSING_FILES_LOG"])

    units = [(subject_name, hemi) for subject_name in config["SUBJECT_NAMES"] for hemi in HEMISPHERES]
    paths = {
        unit: cortical_mesh_path(config["ROOT_PATH"], config["ANALYSIS_NAME"], *unit)
        for unit in units
    }

    # The overwrite decision is taken once, before any work is done
    existing = [paths[unit] for unit in units if paths[unit].exists()]
    to_overwrite = resolve_overwrite(config["OVERWRITE_POLICY"], existing, input_func=input_func)

    tasks = [
        (subject_name, hemi, betas, config, masks, paths[(subject_name, hemi)] in to_overwrite)
        for subject_name, hemi in units
    ]

    if pool is None:
        with WorkerPool(n_jobs=config["N_JOBS"], backend=config["BACKEND"]) as own_pool:
            results = own_pool.starmap(_prepare_unit, tqdm(tasks, desc="Preparing source meshes"))
    else:
        results = pool.starmap(_prepare_unit, tqdm(tasks, desc="Preparing source meshes"))

    skipped, failed = [], []
    for result in results:
        if result.error is not None:
            logging.error(f"Subject {result.subject_name} {result.hemisphere.label} failed: {result.error}")
            missing_log.record(result.missing, completed=False)
            failed.append(result)
        elif result.skipped:
            skipped.append(result)
        else:
            missing_log.record(result.missing)

    mesh_paths = [
        PerHemisphere(left=paths[(subject_name, Hemisphere.LEFT)], right=paths[(subject_name, Hemisphere.RIGHT)])
        for subject_name in config["SUBJECT_NAMES"]
    ]

    # These should all be the same, so we take the first one available
    metadata = next((result.metadata for result in results if result.metadata is not None), None)

    logging.info(
        f"Prepared {len(results) - len(skipped) - len(failed)} subject/hemisphere meshes, "
        f"skipped {len(skipped)}, failed {len(failed)}"
    )
    return PreparationReport(mesh_paths=mesh_paths, metadata=metadata, skipped=skipped, failed=failed)
