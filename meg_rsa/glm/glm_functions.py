"""
Module for fitting the searchlight dynamic GLM and summarising its coefficients.

At every vertex and every overlapping timepoint, the data RDM is regressed
on the model RDMs of that timepoint (identity link, normal errors), with an
intercept. Coefficient 0 is the intercept; coefficient m is model m.
"""
import logging
import warnings
from dataclasses import dataclass

import numpy as np
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning
from tqdm import tqdm

from meg_rsa.errors import FitCancelledError


@dataclass(eq=False)
class GLMFit:
    """Fit of a single vertex at a single timepoint."""

    coefficients: np.ndarray  # (n_models + 1,)
    deviance: float
    ill_conditioned: bool
    degenerate: bool


@dataclass(eq=False)
class FitResult:
    coefficients: np.ndarray  # (n_vertices, n_overlap, n_models + 1)
    deviance: np.ndarray  # (n_vertices, n_overlap)
    ill_conditioned: np.ndarray  # (n_vertices, n_overlap), bool
    n_degenerate: int

    @property
    def n_models(self) -> int:
        return self.coefficients.shape[-1] - 1


@dataclass(eq=False)
class GLMSummary:
    max_betas: np.ndarray  # (n_vertices, n_overlap)
    max_beta_indices: np.ndarray  # (n_vertices, n_overlap), 1-based, 0 = no fit
    betas_median: np.ndarray  # (n_vertices, n_models + 1)
    max_betas_median: np.ndarray  # (n_vertices,)
    max_beta_indices_median: np.ndarray  # (n_vertices,)


def _unfittable(n_coefficients):
    return GLMFit(np.full(n_coefficients, np.nan), np.nan, ill_conditioned=True, degenerate=False)


def fit_glm(design, response) -> GLMFit:
    """
    Fit one GLM with statsmodels.

    Parameters:
    -----------
    design : np.ndarray
        (n_pairs, n_models) predictors; an intercept column is added.
    response : np.ndarray
        (n_pairs,) observed dissimilarities.

    Returns:
    --------
    GLMFit
        Observations with a NaN in the response or any predictor are left
        out. With fewer usable observations than coefficients the
        coefficients and deviance are NaN. A fit with exactly as many
        usable observations as coefficients has no residual degrees of
        freedom and is flagged as ill-conditioned.
    """
    design = np.asarray(design, dtype=np.float64)
    response = np.asarray(response, dtype=np.float64)
    n_coefficients = design.shape[1] + 1

    usable = ~np.isnan(response) & ~np.isnan(design).any(axis=1)
    if usable.sum() < n_coefficients:
        return _unfittable(n_coefficients)

    X = sm.add_constant(design[usable], has_constant="add")
    y = response[usable]
    with warnings.catch_warnings():
        # an exact fit leaves no residual variance for the scale estimate
        warnings.simplefilter("ignore", RuntimeWarning)
        warnings.simplefilter("ignore", PerfectSeparationWarning)
        results = sm.GLM(y, X, family=sm.families.Gaussian()).fit()

    return GLMFit(
        coefficients=np.asarray(results.params),
        deviance=float(results.deviance),
        ill_conditioned=bool(np.linalg.matrix_rank(X) < n_coefficients or len(y) == n_coefficients),
        degenerate=not np.any(design[usable]),
    )


def fit_timepoint(design, responses):
    """
    Fit every vertex at one timepoint.

    All vertices share the same design, so vertices without missing
    dissimilarities are solved together by least squares. Vertices with
    missing dissimilarities are fitted one by one with ``fit_glm``.

    Parameters:
    -----------
    design : np.ndarray
        (n_pairs, n_models)
    responses : np.ndarray
        (n_vertices, n_pairs)

    Returns:
    --------
    coefficients : np.ndarray, (n_vertices, n_models + 1)
    deviance : np.ndarray, (n_vertices,)
    ill_conditioned : np.ndarray, (n_vertices,) bool
    n_degenerate : int
        Number of vertices whose predictors were all zero.
    """
    design = np.asarray(design, dtype=np.float64)
    responses = np.asarray(responses, dtype=np.float64)
    n_vertices, n_pairs = responses.shape
    n_coefficients = design.shape[1] + 1

    coefficients = np.full((n_vertices, n_coefficients), np.nan)
    deviance = np.full(n_vertices, np.nan)
    ill_conditioned = np.zeros(n_vertices, dtype=bool)
    n_degenerate = 0

    complete = ~np.isnan(responses).any(axis=1)
    if np.isnan(design).any():
        complete[:] = False

    if complete.any():
        if n_pairs < n_coefficients:
            ill_conditioned[complete] = True
        else:
            X = np.column_stack([np.ones(n_pairs), design])
            Y = responses[complete].T
            betas, _, rank, _ = np.linalg.lstsq(X, Y, rcond=None)
            residuals = Y - X @ betas
            coefficients[complete] = betas.T
            deviance[complete] = np.sum(residuals ** 2, axis=0)
            ill_conditioned[complete] = rank < n_coefficients or n_pairs == n_coefficients
            if not np.any(design):
                n_degenerate += int(complete.sum())

    for v in np.flatnonzero(~complete):
        fit = fit_glm(design, responses[v])
        coefficients[v] = fit.coefficients
        deviance[v] = fit.deviance
        ill_conditioned[v] = fit.ill_conditioned
        n_degenerate += int(fit.degenerate)

    return coefficients, deviance, ill_conditioned, n_degenerate


def fit_searchlight_glm(rdms, model_stack, lag_steps, pool) -> FitResult:
    """
    Fit the dynamic GLM at every vertex and overlapping timepoint.

    Parameters:
    -----------
    rdms : np.ndarray
        (n_vertices, n_timepoints_data, n_pairs) searchlight RDMs.
    model_stack : np.ndarray
        (n_overlap, n_pairs, n_models) from ``stack_and_offset_models``.
    lag_steps : int
        Data timepoint ``i + lag_steps`` is fitted against ``model_stack[i]``.
    pool : WorkerPool
        Open pool; timepoints are fitted in parallel on it, in chunks. If the
        pool is cancelled, the fit stops before the next chunk.

    Returns:
    --------
    FitResult
    """
    rdms = np.asarray(rdms, dtype=np.float64)
    n_vertices, n_timepoints_data, n_pairs = rdms.shape
    n_overlap, n_pairs_models, n_models = model_stack.shape
    if n_pairs != n_pairs_models:
        raise ValueError(f"Data RDMs have {n_pairs} dissimilarities but model RDMs have {n_pairs_models}")
    if n_overlap + lag_steps > n_timepoints_data:
        raise ValueError(
            f"{n_overlap} timepoints at a lag of {lag_steps} exceed the {n_timepoints_data} data timepoints"
        )

    coefficients = np.full((n_vertices, n_overlap, n_models + 1), np.nan)
    deviance = np.full((n_vertices, n_overlap), np.nan)
    ill_conditioned = np.zeros((n_vertices, n_overlap), dtype=bool)
    n_degenerate = 0

    chunk_starts = range(0, n_overlap, pool.chunk_size)
    for start in tqdm(chunk_starts, desc="Fitting GLM"):
        if pool.cancelled:
            raise FitCancelledError(f"GLM fit cancelled after {start}/{n_overlap} timepoints")

        chunk = range(start, min(start + pool.chunk_size, n_overlap))
        logging.info(f"Working on timepoints {chunk.start + 1}-{chunk.stop}/{n_overlap}...")
        results = pool.starmap(
            fit_timepoint,
            ((model_stack[i], rdms[:, i + lag_steps, :]) for i in chunk),
        )
        for i, (coefs, dev, ill, n_deg) in zip(chunk, results):
            coefficients[:, i, :] = coefs
            deviance[:, i] = dev
            ill_conditioned[:, i] = ill
            n_degenerate += n_deg

    n_ill = int(ill_conditioned.sum())
    if n_ill:
        logging.warning(f"{n_ill}/{ill_conditioned.size} vertex-timepoint fits were ill-conditioned")
    if n_degenerate:
        logging.warning(f"{n_degenerate} vertex-timepoint fits had all-zero model predictors")

    return FitResult(coefficients, deviance, ill_conditioned, n_degenerate)


def best_model(betas):
    """
    Largest model coefficient and its 1-based model index.

    Parameters:
    -----------
    betas : np.ndarray
        (..., n_models + 1), intercept first. The intercept never wins.

    Returns:
    --------
    values : np.ndarray
        (...) largest non-intercept coefficient (NaN entries are ignored).
    indices : np.ndarray
        (...) 1-based model index; ties go to the lowest index; 0 where all
        model coefficients are NaN.
    """
    model_betas = np.asarray(betas, dtype=np.float64)[..., 1:]
    all_nan = np.all(np.isnan(model_betas), axis=-1)
    idx = np.argmax(np.where(np.isnan(model_betas), -np.inf, model_betas), axis=-1)
    values = np.take_along_axis(model_betas, idx[..., np.newaxis], axis=-1)[..., 0]
    indices = np.where(all_nan, 0, idx + 1).astype(np.int64)
    values = np.where(all_nan, np.nan, values)
    return values, indices


def summarise_fit(fit: FitResult) -> GLMSummary:
    """Best models per vertex/timepoint, and the same over the median of the fitting window."""
    max_betas, max_beta_indices = best_model(fit.coefficients)

    # (vertices, models)
    betas_median = np.median(fit.coefficients, axis=1)
    max_betas_median, max_beta_indices_median = best_model(betas_median)

    return GLMSummary(
        max_betas=max_betas,
        max_beta_indices=max_beta_indices,
        betas_median=betas_median,
        max_betas_median=max_betas_median,
        max_beta_indices_median=max_beta_indices_median,
    )
