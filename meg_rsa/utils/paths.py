"""
Path templates and the fixed output layout under the analysis root.
"""
import os
from pathlib import Path

from meg_rsa.utils.hemispheres import Hemisphere

IMAGE_DATA_DIRNAME = "ImageData"
MESH_DIRNAME = "Meshes"
MISSING_FILES_LOG_NAME = "missingFilesLog.txt"


def replace_wildcards(template: str, **wildcards) -> str:
    """
    Replace ``[[name]]`` placeholders in a path template.

    Parameters:
    -----------
    template : str
        e.g. "/data/[[subjectName]]/[[betaIdentifier]]-[[LR]]h.stc"
    **wildcards
        Placeholder names and their replacement values,
        e.g. ``subjectName="s01"``.

    Returns:
    --------
    str
        The template with every given placeholder substituted. Placeholders
        without a value are left untouched.
    """
    for name, value in wildcards.items():
        template = template.replace(f"[[{name}]]", str(value))
    return template


def image_data_dir(root_path) -> Path:
    return Path(root_path) / IMAGE_DATA_DIRNAME


def mesh_dir(root_path) -> Path:
    return Path(root_path) / MESH_DIRNAME


def missing_files_log_path(root_path) -> Path:
    return image_data_dir(root_path) / MISSING_FILES_LOG_NAME


def cortical_mesh_path(root_path, analysis_name: str, subject_name: str, hemi: Hemisphere) -> Path:
    """Where the prepared source meshes of one subject and hemisphere are stored."""
    return image_data_dir(root_path) / f"{analysis_name}_{subject_name}_{hemi.label}_CorticalMeshes.h5"


def raw_trial_path(beta_path: str, identifier: str, subject_name: str, hemi: Hemisphere) -> str:
    return replace_wildcards(
        beta_path,
        betaIdentifier=identifier,
        subjectName=subject_name,
        LR=hemi.short,
    )


def ensure_dir(path) -> Path:
    path = Path(path)
    os.makedirs(path, exist_ok=True)
    return path
