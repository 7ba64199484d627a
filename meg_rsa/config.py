"""
Run configuration for the searchlight RSA pipeline.

Options come from (in increasing priority) ``DEFAULT_OPTIONS``, a YAML file
and keyword overrides. The YAML file may also be named through the
``MEG_RSA_CONFIG`` environment variable.
"""
import os
from pathlib import Path

import yaml

from meg_rsa.glm import glm_params
from meg_rsa.preparation import preparation_params
from meg_rsa.utils.paths import image_data_dir, mesh_dir, missing_files_log_path
from meg_rsa.utils.workers import optimize_n_jobs

CONFIG_ENV_VAR = "MEG_RSA_CONFIG"

OVERWRITE_POLICIES = ("skip", "overwrite", "ask", "per_file")

DEFAULT_OPTIONS = {
    "analysis_name": "searchlight",
    "root_path": ".",
    "subject_names": [],
    # e.g. /data/[[subjectName]]/[[betaIdentifier]]-[[LR]]h.stc
    "beta_path": "[[subjectName]]/[[betaIdentifier]]-[[LR]]h.stc",
    "beta_correspondence": None,
    "target_resolution": preparation_params.TARGET_RESOLUTION,
    "temporal_downsample_rate": preparation_params.TEMPORAL_DOWNSAMPLE_RATE,
    "overwrite_policy": preparation_params.OVERWRITE_POLICY,
    "lag_ms": glm_params.LAG_MS,
    # None: chosen from the available cores
    "n_jobs": None,
    "debug": False,
    "backend": None,
    "average_rdm_paths": None,
    "model_path": None,
}


def load_user_options(config_file) -> dict:
    """Read user options from a YAML file."""
    config_file = Path(config_file)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_file, "r") as f:
        options = yaml.safe_load(f) or {}
    if not isinstance(options, dict):
        raise ValueError(f"Config file {config_file} must contain a mapping of options")

    unknown = sorted(set(options) - set(DEFAULT_OPTIONS))
    if unknown:
        raise ValueError(f"Unknown options in {config_file}: {unknown}")
    return options


def _validate(options):
    if not options["subject_names"]:
        raise ValueError("subject_names must list at least one subject")
    if int(options["target_resolution"]) < 1:
        raise ValueError("target_resolution must be >= 1")
    if int(options["temporal_downsample_rate"]) < 1:
        raise ValueError("temporal_downsample_rate must be >= 1")
    if float(options["lag_ms"]) < 0:
        raise ValueError("lag_ms must be non-negative")
    if options["overwrite_policy"] not in OVERWRITE_POLICIES:
        raise ValueError(
            f"overwrite_policy must be one of {OVERWRITE_POLICIES}, got {options['overwrite_policy']!r}"
        )
    rdm_paths = options["average_rdm_paths"]
    if rdm_paths is not None and set(rdm_paths) != {"lh", "rh"}:
        raise ValueError("average_rdm_paths needs exactly the keys 'lh' and 'rh'")


def configure_run(config_file=None, **overrides):
    """
    Build the run configuration.

    Parameters:
    -----------
    config_file : str or Path, optional
        YAML file with user options. Falls back to ``$MEG_RSA_CONFIG``.
    **overrides
        Options that take precedence over the file, e.g. ``lag_ms=20``.
        ``None`` values are ignored.

    Returns:
    --------
    dict
        Upper-case keys, as used throughout the pipeline.
    """
    if config_file is None:
        config_file = os.environ.get(CONFIG_ENV_VAR)

    options = dict(DEFAULT_OPTIONS)
    if config_file is not None:
        options.update(load_user_options(config_file))

    unknown = sorted(set(overrides) - set(DEFAULT_OPTIONS))
    if unknown:
        raise ValueError(f"Unknown options: {unknown}")
    options.update({key: value for key, value in overrides.items() if value is not None})

    _validate(options)

    debug = bool(options["debug"])
    if options["n_jobs"] is None:
        n_jobs = optimize_n_jobs(debug)["worker_pool"]
    else:
        n_jobs = 1 if debug else int(options["n_jobs"])

    root_path = Path(options["root_path"])
    return {
        "ANALYSIS_NAME": options["analysis_name"],
        "ROOT_PATH": root_path,
        "SUBJECT_NAMES": list(options["subject_names"]),
        "BETA_PATH": str(options["beta_path"]),
        "BETA_CORRESPONDENCE": options["beta_correspondence"],
        "TARGET_RESOLUTION": int(options["target_resolution"]),
        "TEMPORAL_DOWNSAMPLE_RATE": int(options["temporal_downsample_rate"]),
        "OVERWRITE_POLICY": options["overwrite_policy"],
        "LAG_MS": float(options["lag_ms"]),
        "N_JOBS": n_jobs,
        "DEBUG": debug,
        "BACKEND": options["backend"],
        "AVERAGE_RDM_PATHS": options["average_rdm_paths"],
        "MODEL_PATH": options["model_path"],
        "IMAGE_DATA_DIR": image_data_dir(root_path),
        "MESH_DIR": mesh_dir(root_path),
        "MISSING_FILES_LOG": missing_files_log_path(root_path),
    }
