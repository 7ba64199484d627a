"""
Reading and writing cortical mesh data.

Two formats are used:

* ``.stc`` source-estimate files, read and written with mne, for raw
  per-trial recordings and for the per-model GLM maps consumed by the
  cluster statistics stage. A map is always a pair of ``-lh.stc`` and
  ``-rh.stc`` files.
* HDF5 files (h5py) for the prepared source meshes and the full GLM tensors,
  which need to round-trip exactly.
"""
from dataclasses import dataclass, field, replace
from pathlib import Path

import h5py
import mne
import numpy as np

from meg_rsa.utils.hemispheres import HEMISPHERES, Hemisphere, PerHemisphere


@dataclass(eq=False)
class MeshRecording:
    """Raw single-hemisphere recording as read from an stc file."""

    data: np.ndarray  # (n_vertices, n_timepoints)
    tmin: float  # seconds
    tstep: float  # seconds
    vertices: np.ndarray = field(default=None)

    def __post_init__(self):
        self.data = np.asarray(self.data)
        if self.data.ndim == 1:
            self.data = self.data[:, np.newaxis]
        if self.vertices is None:
            self.vertices = np.arange(self.data.shape[0])

    @property
    def n_vertices(self) -> int:
        return self.data.shape[0]

    @property
    def n_timepoints(self) -> int:
        return self.data.shape[1]


@dataclass(frozen=True, eq=False)
class MeshTimingMetadata:
    """
    Timing and vertex layout of a (downsampled) mesh.

    Parameters:
    -----------
    tmin : float
        Time of the first sample, in seconds.
    tmax : float
        ``tmin + n_timepoints * tstep`` at creation time.
    tstep : float
        Interval between samples, in seconds.
    vertices : np.ndarray
        Ascending vertex indices included in the mesh.
    """

    tmin: float
    tmax: float
    tstep: float
    vertices: np.ndarray

    @classmethod
    def from_timing(cls, tmin, tstep, n_timepoints, vertices):
        return cls(
            tmin=float(tmin),
            tmax=float(tmin) + n_timepoints * float(tstep),
            tstep=float(tstep),
            vertices=np.asarray(vertices, dtype=np.int64),
        )

    def shifted(self, n_steps: int) -> "MeshTimingMetadata":
        """Copy with ``tmin`` moved forward by ``n_steps`` samples. ``tmax`` is kept as is."""
        return replace(self, tmin=self.tmin + self.tstep * n_steps)

    def time_collapsed(self) -> "MeshTimingMetadata":
        """All-zero timing for maps that have been collapsed over time."""
        return replace(self, tmin=0.0, tmax=0.0, tstep=0.0)

    def matches(self, other: "MeshTimingMetadata") -> bool:
        return (
            np.isclose(self.tmin, other.tmin)
            and np.isclose(self.tmax, other.tmax)
            and np.isclose(self.tstep, other.tstep)
            and np.array_equal(self.vertices, other.vertices)
        )


# stc files

def read_stc(fname, hemi: Hemisphere) -> MeshRecording:
    """
    Read one hemisphere of a surface source estimate.

    Parameters:
    -----------
    fname : str or Path
        ``<stem>-lh.stc`` or ``<stem>-rh.stc``. mne also reads the file of
        the other hemisphere if it exists, so both files must be readable.
    hemi : Hemisphere
        Hemisphere whose data and vertices are returned.
    """
    fname = Path(fname)
    if not fname.exists():
        raise FileNotFoundError(f"stc file not found: {fname}")

    stc = mne.read_source_estimate(str(fname))
    if hemi is Hemisphere.LEFT:
        data, vertices = stc.lh_data, stc.lh_vertno
    else:
        data, vertices = stc.rh_data, stc.rh_vertno
    return MeshRecording(
        data=np.asarray(data, dtype=np.float64),
        tmin=float(stc.tmin),
        tstep=float(stc.tstep),
        vertices=np.asarray(vertices, dtype=np.int64),
    )


def write_stc(stem, metadata: PerHemisphere, data: PerHemisphere) -> PerHemisphere:
    """
    Write both hemispheres of a map to ``<stem>-lh.stc`` and ``<stem>-rh.stc``.

    Parameters:
    -----------
    stem : str or Path
        File name without the hemisphere suffix.
    metadata : PerHemisphere of MeshTimingMetadata
        Vertices of each hemisphere; both must share tmin and tstep.
    data : PerHemisphere of np.ndarray
        (n_vertices, n_timepoints) or (n_vertices,) per hemisphere. Both
        hemispheres need at least one vertex and the same number of
        timepoints.

    Returns:
    --------
    PerHemisphere of Path
    """
    timing = metadata.left
    if not (np.isclose(metadata.right.tmin, timing.tmin) and np.isclose(metadata.right.tstep, timing.tstep)):
        raise ValueError("Both hemispheres of an stc file need the same tmin and tstep")

    vertices, blocks = [], []
    for hemi in HEMISPHERES:
        block = np.asarray(data[hemi], dtype=np.float64)
        if block.ndim == 1:
            block = block[:, np.newaxis]
        hemi_vertices = np.asarray(metadata[hemi].vertices, dtype=np.int64)
        if not len(hemi_vertices):
            raise ValueError(f"No {hemi.label} vertices to write")
        if block.shape[0] != len(hemi_vertices):
            raise ValueError(
                f"{hemi.label} data has {block.shape[0]} rows but metadata lists {len(hemi_vertices)} vertices"
            )
        vertices.append(hemi_vertices)
        blocks.append(block)
    if blocks[0].shape[1] != blocks[1].shape[1]:
        raise ValueError(
            f"Hemispheres have different numbers of timepoints ({blocks[0].shape[1]} and {blocks[1].shape[1]})"
        )

    stem = Path(stem)
    stem.parent.mkdir(parents=True, exist_ok=True)
    stc = mne.SourceEstimate(np.vstack(blocks), vertices=vertices, tmin=timing.tmin, tstep=timing.tstep)
    stc.save(str(stem), ftype="stc", overwrite=True, verbose=False)
    return PerHemisphere(left=Path(f"{stem}-lh.stc"), right=Path(f"{stem}-rh.stc"))


# hdf5 files

def _write_metadata(h5_file, metadata: MeshTimingMetadata):
    h5_file.attrs["tmin"] = metadata.tmin
    h5_file.attrs["tmax"] = metadata.tmax
    h5_file.attrs["tstep"] = metadata.tstep
    if "vertices" in h5_file:
        del h5_file["vertices"]
    h5_file.create_dataset("vertices", data=np.asarray(metadata.vertices, dtype=np.int64))


def _read_metadata(h5_file) -> MeshTimingMetadata:
    return MeshTimingMetadata(
        tmin=float(h5_file.attrs["tmin"]),
        tmax=float(h5_file.attrs["tmax"]),
        tstep=float(h5_file.attrs["tstep"]),
        vertices=h5_file["vertices"][:],
    )


def save_mesh_array(fname, name: str, array, metadata: MeshTimingMetadata) -> Path:
    """Save one named array and its timing metadata to an HDF5 file."""
    fname = Path(fname)
    fname.parent.mkdir(parents=True, exist_ok=True)
    with h5py.File(fname, "w") as h5_file:
        h5_file.create_dataset(name, data=np.asarray(array))
        _write_metadata(h5_file, metadata)
    return fname


def load_mesh_array(fname, name: str):
    """Load a named array and its timing metadata from an HDF5 file."""
    fname = Path(fname)
    if not fname.exists():
        raise FileNotFoundError(f"Mesh file not found: {fname}")
    with h5py.File(fname, "r") as h5_file:
        if name not in h5_file:
            raise KeyError(f"Dataset '{name}' not found in {fname}")
        array = h5_file[name][()]
        metadata = _read_metadata(h5_file)
    return array, metadata


def read_mesh_metadata(fname) -> MeshTimingMetadata:
    """Read only the timing metadata of a saved mesh file."""
    with h5py.File(fname, "r") as h5_file:
        return _read_metadata(h5_file)
