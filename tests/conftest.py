import numpy as np
import pytest

from meg_rsa.config import configure_run
from meg_rsa.utils.hemispheres import PerHemisphere
from meg_rsa.utils.mesh_io import MeshTimingMetadata, write_stc
from meg_rsa.utils.workers import WorkerPool

N_VERTICES_RAW = 8
N_TIMEPOINTS_RAW = 11
TMIN = -0.1
TSTEP = 0.001
SUBJECTS = ["s01", "s02"]
BETAS = [
    [f"[[subjectName]]_sess{s}_cond{c}" for c in range(1, 4)]
    for s in range(1, 3)
]


def write_trial(stem, lh_data, rh_data, tmin=TMIN, tstep=TSTEP):
    """Write ``<stem>-lh.stc`` and ``<stem>-rh.stc``."""
    metadata = PerHemisphere(
        left=MeshTimingMetadata.from_timing(tmin, tstep, lh_data.shape[1], np.arange(lh_data.shape[0])),
        right=MeshTimingMetadata.from_timing(tmin, tstep, rh_data.shape[1], np.arange(rh_data.shape[0])),
    )
    return write_stc(stem, metadata, PerHemisphere(left=lh_data, right=rh_data))


def trial_data(subject_i, hemi_i, session_i, condition_i):
    """Small integers, so that the float32 stc round trip is exact."""
    base = 1000 * subject_i + 100 * hemi_i + 10 * session_i + condition_i
    return base + np.arange(N_VERTICES_RAW * N_TIMEPOINTS_RAW, dtype=np.float64).reshape(
        N_VERTICES_RAW, N_TIMEPOINTS_RAW
    )


@pytest.fixture
def raw_dir(tmp_path):
    """Raw trials for every subject, hemisphere, session and condition."""
    raw = tmp_path / "raw"
    for subject_i, subject in enumerate(SUBJECTS):
        for session_i, row in enumerate(BETAS):
            for condition_i, identifier in enumerate(row):
                name = identifier.replace("[[subjectName]]", subject)
                write_trial(
                    raw / subject / name,
                    trial_data(subject_i, 0, session_i, condition_i),
                    trial_data(subject_i, 1, session_i, condition_i),
                )
    return raw


@pytest.fixture
def config(tmp_path, raw_dir):
    return configure_run(
        analysis_name="test",
        root_path=str(tmp_path / "analysis"),
        subject_names=SUBJECTS,
        beta_path=str(raw_dir / "[[subjectName]]" / "[[betaIdentifier]]-[[LR]]h.stc"),
        target_resolution=5,
        temporal_downsample_rate=2,
        overwrite_policy="skip",
        n_jobs=1,
    )


@pytest.fixture
def pool():
    with WorkerPool(n_jobs=1) as pool:
        yield pool
