import logging

import numpy as np
import pytest

from meg_rsa.errors import EmptyOverlapError
from meg_rsa.glm.lag_functions import compute_lag, lag_metadata, overlap_length, stack_and_offset_models
from meg_rsa.utils.mesh_io import MeshTimingMetadata


def test_unachievable_lag_is_rounded_down(caplog):
    with caplog.at_level(logging.WARNING):
        lag = compute_lag(0.004, 10)

    assert lag.steps == 2
    assert lag.achieved_ms == pytest.approx(8)
    assert lag.requested_ms == 10
    assert lag.adjusted
    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "The requested lag of 10ms cannot be achieved, as the timestep is 4ms.",
        "Using a lag of 8ms instead.",
    ]


@pytest.mark.parametrize("tstep, lag_ms, steps", [(0.01, 20, 2), (0.001, 3, 3), (0.004, 0, 0), (0.002, 6, 3)])
def test_achievable_lag_is_used_as_is(caplog, tstep, lag_ms, steps):
    with caplog.at_level(logging.WARNING):
        lag = compute_lag(tstep, lag_ms)
    assert lag.steps == steps
    assert lag.achieved_ms == lag_ms
    assert not lag.adjusted
    assert caplog.records == []


def test_lag_shorter_than_one_step():
    lag = compute_lag(0.01, 4)
    assert (lag.steps, lag.achieved_ms) == (0, 0)


@pytest.mark.parametrize("tstep, lag_ms", [(0.01, -5), (0, 10), (-0.01, 10)])
def test_invalid_lag_arguments(tstep, lag_ms):
    with pytest.raises(ValueError):
        compute_lag(tstep, lag_ms)


def test_lag_metadata_moves_tmin_only():
    metadata = MeshTimingMetadata.from_timing(-0.1, 0.01, 30, [0, 4, 9])
    lagged = lag_metadata(metadata, compute_lag(0.01, 25))

    assert lagged.tmin == pytest.approx(-0.08)
    assert lagged.tstep == metadata.tstep
    assert lagged.tmax == metadata.tmax
    np.testing.assert_array_equal(lagged.vertices, metadata.vertices)


def test_overlap_length():
    assert overlap_length(120, 100, 5) == 95
    assert overlap_length(100, 120, 5) == 95
    assert overlap_length(10, 10, 0) == 10
    assert overlap_length(10, 10, 12) == 0


def test_stack_and_offset_models_layout():
    n_timepoints, n_models, n_pairs = 6, 3, 10
    models = np.arange(n_timepoints * n_models * n_pairs, dtype=float).reshape(n_timepoints, n_models, n_pairs)

    model_stack, n_overlap = stack_and_offset_models(models, lag_steps=2, n_timepoints_data=5)

    assert n_overlap == 3
    assert model_stack.shape == (3, n_pairs, n_models)
    for i in range(n_overlap):
        np.testing.assert_array_equal(model_stack[i], models[i].T)


def test_stack_and_offset_models_empty_overlap():
    models = np.zeros((4, 2, 6))
    with pytest.raises(EmptyOverlapError):
        stack_and_offset_models(models, lag_steps=4, n_timepoints_data=10)


def test_stack_and_offset_models_needs_3d_models():
    with pytest.raises(ValueError):
        stack_and_offset_models(np.zeros((4, 6)), lag_steps=0, n_timepoints_data=4)
