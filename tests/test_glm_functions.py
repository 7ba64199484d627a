import logging

import numpy as np
import pytest
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning

from meg_rsa.errors import FitCancelledError
from meg_rsa.glm.glm_functions import (
    FitResult,
    best_model,
    fit_glm,
    fit_searchlight_glm,
    fit_timepoint,
    summarise_fit,
)
from meg_rsa.glm.lag_functions import stack_and_offset_models


@pytest.fixture
def rng():
    return np.random.default_rng(42)


def test_fit_glm_recovers_coefficients(rng):
    design = rng.normal(size=(30, 2))
    response = 1.0 + 2.0 * design[:, 0] - 3.0 * design[:, 1]

    fit = fit_glm(design, response)

    np.testing.assert_allclose(fit.coefficients, [1.0, 2.0, -3.0], atol=1e-8)
    assert fit.deviance == pytest.approx(0, abs=1e-12)
    assert not fit.ill_conditioned
    assert not fit.degenerate


def test_fit_glm_deviance_is_residual_sum_of_squares(rng):
    design = rng.normal(size=(40, 3))
    response = design @ [0.5, -1.0, 2.0] + rng.normal(scale=0.3, size=40)

    fit = fit_glm(design, response)

    X = np.column_stack([np.ones(40), design])
    expected, residuals, _, _ = np.linalg.lstsq(X, response, rcond=None)
    np.testing.assert_allclose(fit.coefficients, expected, rtol=1e-8)
    assert fit.deviance == pytest.approx(residuals[0], rel=1e-8)


def test_fit_glm_leaves_out_missing_observations(rng):
    design = rng.normal(size=(20, 2))
    response = 0.5 + design[:, 0] + 4.0 * design[:, 1]
    response[[3, 7]] = np.nan
    design[11, 1] = np.nan

    fit = fit_glm(design, response)

    np.testing.assert_allclose(fit.coefficients, [0.5, 1.0, 4.0], atol=1e-8)


def test_fit_glm_with_too_few_observations():
    design = np.array([[1.0, 2.0], [3.0, 1.0], [np.nan, 0.0], [0.0, 0.0]])
    response = np.array([1.0, 2.0, 3.0, np.nan])

    fit = fit_glm(design, response)

    assert np.isnan(fit.coefficients).all()
    assert np.isnan(fit.deviance)
    assert fit.ill_conditioned


def test_fit_glm_exactly_determined_is_quiet_and_flagged(recwarn):
    design = np.array([[1.0, 0.0], [0.0, 1.0], [2.0, 1.0], [np.nan, 3.0]])
    response = np.array([3.0, -1.0, 4.0, 7.0])

    fit = fit_glm(design, response)

    noisy = [w for w in recwarn if issubclass(w.category, (RuntimeWarning, PerfectSeparationWarning))]
    assert noisy == []
    assert fit.ill_conditioned
    assert not fit.degenerate
    assert np.isfinite(fit.coefficients).all()
    np.testing.assert_allclose(np.column_stack([np.ones(3), design[:3]]) @ fit.coefficients, response[:3], atol=1e-8)


def test_fit_timepoint_exactly_determined_is_flagged():
    design = np.array([[1.0, 0.0], [0.0, 1.0], [2.0, 1.0]])
    responses = np.array([[3.0, -1.0, 4.0], [1.0, 1.0, 1.0]])

    coefficients, _, ill_conditioned, _ = fit_timepoint(design, responses)

    assert ill_conditioned.all()
    assert np.isfinite(coefficients).all()


def test_fit_glm_all_zero_design_is_degenerate():
    response = np.array([1.0, 2.0, 3.0, 6.0])

    fit = fit_glm(np.zeros((4, 2)), response)

    assert fit.degenerate
    assert fit.ill_conditioned
    np.testing.assert_allclose(fit.coefficients, [3.0, 0.0, 0.0], atol=1e-10)


def test_fit_timepoint_matches_single_fits(rng):
    design = rng.normal(size=(15, 2))
    responses = rng.normal(size=(5, 15))
    responses[2, 4] = np.nan

    coefficients, deviance, ill_conditioned, n_degenerate = fit_timepoint(design, responses)

    assert coefficients.shape == (5, 3)
    for v in range(5):
        fit = fit_glm(design, responses[v])
        np.testing.assert_allclose(coefficients[v], fit.coefficients, rtol=1e-7, atol=1e-10)
        assert deviance[v] == pytest.approx(fit.deviance, rel=1e-7)
    assert not ill_conditioned.any()
    assert n_degenerate == 0


def test_fit_timepoint_degenerate_design():
    responses = np.array([[1.0, 2.0, 3.0, 6.0], [0.0, 0.0, 1.0, 1.0]])

    coefficients, _, ill_conditioned, n_degenerate = fit_timepoint(np.zeros((4, 1)), responses)

    np.testing.assert_allclose(coefficients, [[3.0, 0.0], [0.5, 0.0]], atol=1e-10)
    assert ill_conditioned.all()
    assert n_degenerate == 2


def test_fit_timepoint_fewer_pairs_than_coefficients():
    coefficients, deviance, ill_conditioned, _ = fit_timepoint(np.ones((2, 3)), np.ones((4, 2)))
    assert np.isnan(coefficients).all()
    assert np.isnan(deviance).all()
    assert ill_conditioned.all()


def _simulate(rng, n_vertices, n_timepoints_data, n_timepoints_models, n_models, n_pairs, lag_steps):
    models = rng.normal(size=(n_timepoints_models, n_models, n_pairs))
    true_betas = rng.normal(size=(n_vertices, n_models + 1))
    rdms = rng.normal(size=(n_vertices, n_timepoints_data, n_pairs))
    n_overlap = min(n_timepoints_data, n_timepoints_models) - lag_steps
    for i in range(n_overlap):
        X = np.column_stack([np.ones(n_pairs), models[i].T])
        rdms[:, i + lag_steps, :] = true_betas @ X.T
    return models, rdms, true_betas


def test_fit_searchlight_glm_recovers_lagged_models(rng, pool):
    lag_steps = 2
    models, rdms, true_betas = _simulate(rng, 4, 12, 10, 3, 15, lag_steps)
    model_stack, n_overlap = stack_and_offset_models(models, lag_steps, rdms.shape[1])

    fit = fit_searchlight_glm(rdms, model_stack, lag_steps, pool)

    assert fit.coefficients.shape == (4, n_overlap, 4)
    assert fit.n_models == 3
    for i in range(n_overlap):
        np.testing.assert_allclose(fit.coefficients[:, i, :], true_betas, atol=1e-8)
    np.testing.assert_allclose(fit.deviance, 0, atol=1e-12)
    assert not fit.ill_conditioned.any()


def test_fit_searchlight_glm_is_chunk_independent(rng):
    from meg_rsa.utils.workers import WorkerPool

    models, rdms, _ = _simulate(rng, 3, 9, 9, 2, 10, 1)
    rdms += rng.normal(scale=0.1, size=rdms.shape)
    model_stack, _ = stack_and_offset_models(models, 1, rdms.shape[1])

    with WorkerPool(n_jobs=1) as pool:
        one = fit_searchlight_glm(rdms, model_stack, 1, pool)
    with WorkerPool(n_jobs=2, backend="threading") as pool:
        two = fit_searchlight_glm(rdms, model_stack, 1, pool)

    np.testing.assert_allclose(one.coefficients, two.coefficients)
    np.testing.assert_allclose(one.deviance, two.deviance)


def test_fit_searchlight_glm_warns_about_degenerate_fits(caplog, pool):
    rdms = np.ones((2, 3, 6))
    model_stack = np.zeros((3, 6, 2))
    with caplog.at_level(logging.WARNING):
        fit = fit_searchlight_glm(rdms, model_stack, 0, pool)
    assert fit.n_degenerate == 6
    assert fit.ill_conditioned.all()
    assert any("all-zero model predictors" in record.getMessage() for record in caplog.records)


def test_fit_searchlight_glm_checks_pairs(pool):
    with pytest.raises(ValueError):
        fit_searchlight_glm(np.zeros((2, 3, 6)), np.zeros((3, 5, 2)), 0, pool)


def test_fit_searchlight_glm_cancelled(rng, pool):
    models, rdms, _ = _simulate(rng, 2, 5, 5, 1, 6, 0)
    model_stack, _ = stack_and_offset_models(models, 0, 5)
    pool.cancel()
    with pytest.raises(FitCancelledError):
        fit_searchlight_glm(rdms, model_stack, 0, pool)


def test_best_model_skips_intercept():
    values, indices = best_model(np.array([0.1, 0.5, 0.9, 0.3]))
    assert indices == 2
    assert values == pytest.approx(0.9)

    # a large intercept never wins
    values, indices = best_model(np.array([10.0, 0.1, 0.5, 0.9, 0.3]))
    assert indices == 3


def test_best_model_ties_and_missing_values():
    betas = np.array([
        [0.0, 0.2, 0.7, 0.7],
        [0.0, np.nan, -1.0, -2.0],
        [1.0, np.nan, np.nan, np.nan],
    ])
    values, indices = best_model(betas)
    np.testing.assert_array_equal(indices, [2, 2, 0])
    np.testing.assert_array_equal(values[:2], [0.7, -1.0])
    assert np.isnan(values[2])


def test_summarise_fit_median_over_time():
    coefficients = np.array([
        # vertex 0: model 2 wins in the median
        [[0.0, 1.0, 0.0], [0.0, 0.0, 2.0], [0.0, 0.5, 3.0]],
        # vertex 1: model 1 wins everywhere
        [[5.0, 4.0, 1.0], [5.0, 4.0, 1.0], [5.0, 4.0, 1.0]],
    ])
    fit = FitResult(
        coefficients=coefficients,
        deviance=np.zeros((2, 3)),
        ill_conditioned=np.zeros((2, 3), dtype=bool),
        n_degenerate=0,
    )

    summary = summarise_fit(fit)

    np.testing.assert_array_equal(summary.max_beta_indices, [[1, 2, 2], [1, 1, 1]])
    np.testing.assert_array_equal(summary.max_betas, [[1.0, 2.0, 3.0], [4.0, 4.0, 4.0]])
    np.testing.assert_array_equal(summary.betas_median, [[0.0, 0.5, 2.0], [5.0, 4.0, 1.0]])
    np.testing.assert_array_equal(summary.max_beta_indices_median, [2, 1])
    np.testing.assert_array_equal(summary.max_betas_median, [2.0, 4.0])


def test_summarise_fit_median_propagates_nan():
    coefficients = np.ones((1, 3, 2))
    coefficients[0, 1, 1] = np.nan
    fit = FitResult(coefficients, np.zeros((1, 3)), np.zeros((1, 3), dtype=bool), 0)

    summary = summarise_fit(fit)

    assert np.isnan(summary.betas_median[0, 1])
    assert summary.max_beta_indices_median[0] == 0
