"""Transition matrices of the ecological and observation layers.

Discrete-time ecological chain (probabilities assembled directly):

    U:   φ₁(1−ψ₁₂)     φ₁ψ₁₂         1−φ₁
    I:   φ₂ψ₂₁         φ₂(1−ψ₂₁)     1−φ₂         1−φ₂ = expit(logit α + β m)
    D:   0             0             1
    NE:  γ_t(1−π)      γ_tπ          0      1−γ_t

Continuous-time matrices come from ctmc.transition_matrix_ct;
ecological_matrix() dispatches on the time model.

Observation layers (robust-design decomposition), rows = parent state,
columns = (uninfected, infected, none):

    observation  eco → ObsState        capture p (merged: × sample detection)
    sample       ObsState → SampleState  fp_sample / detect(m, r_sample)
    diagnostic   parent → DiagState      fp_diag / detect(s, r_diag)

On a first-capture occasion the capture probability is fixed to 1.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from infection_cmr.config import ModelSection, NumericsSection
from infection_cmr.ctmc import transition_matrix_ct
from infection_cmr.rates import (
    diagnostic_detection,
    infected_mortality_probability,
    sample_detection,
)
from infection_cmr.types import EcoState, n_eco_states


# ═══════════════════════════════════════════════════════════════════════
# ECOLOGICAL CHAIN
# ═══════════════════════════════════════════════════════════════════════

def transition_matrix_dt(
    params,
    load: Optional[float],
    occasion: int = 0,
    recruitment: bool = False,
) -> np.ndarray:
    """Discrete-time ecological transition matrix (no exponential)."""
    n = n_eco_states(recruitment)
    U, I, D = EcoState.UNINFECTED, EcoState.INFECTED, EcoState.DEAD
    phi1 = params.phi1
    phi2 = 1.0 - infected_mortality_probability(
        params.alpha, params.beta, load if load is not None else 0.0)

    P = np.zeros((n, n), dtype=np.float64)
    P[U, U] = phi1 * (1.0 - params.psi12)
    P[U, I] = phi1 * params.psi12
    P[U, D] = 1.0 - phi1
    P[I, U] = phi2 * params.psi21
    P[I, I] = phi2 * (1.0 - params.psi21)
    P[I, D] = 1.0 - phi2
    P[D, D] = 1.0
    if recruitment:
        NE = EcoState.NOT_ENTERED
        gamma = params.recruitment(occasion)
        P[NE, U] = gamma * (1.0 - params.pi)
        P[NE, I] = gamma * params.pi
        P[NE, NE] = 1.0 - gamma
    return P


def ecological_matrix(
    params,
    model: ModelSection,
    load: Optional[float],
    tau: float,
    occasion: int,
    numerics: Optional[NumericsSection] = None,
) -> np.ndarray:
    """Transition matrix into `occasion` for the configured time model.

    Args:
        params: ModelParameters.
        model: Variant switches.
        load: Individual log-load at the previous occasion (None if not alive).
        tau: Interval length (ignored in discrete time).
        occasion: Occasion the transition leads into.
        numerics: Matrix-exponential tolerances.
    """
    if model.continuous:
        numerics = numerics or NumericsSection()
        return transition_matrix_ct(
            params, load, tau, occasion, model.recruitment,
            tol=numerics.expm_tolerance,
            condition_limit=numerics.eig_condition_limit,
        )
    return transition_matrix_dt(params, load, occasion, model.recruitment)


def initial_distribution(params, recruitment: bool) -> np.ndarray:
    """State distribution at the start of an individual's span.

    Conditioned on first capture: alive, infected with probability π.
    Recruitment: every individual starts NOT_ENTERED before occasion 0.
    """
    if recruitment:
        dist = np.zeros(4, dtype=np.float64)
        dist[EcoState.NOT_ENTERED] = 1.0
        return dist
    return np.array([1.0 - params.pi, params.pi, 0.0], dtype=np.float64)


# ═══════════════════════════════════════════════════════════════════════
# OBSERVATION LAYERS
# ═══════════════════════════════════════════════════════════════════════

def observation_matrix(
    params,
    load: Optional[float],
    occasion: int,
    separate_sampling: bool,
    recruitment: bool = False,
    certain: bool = False,
) -> np.ndarray:
    """EcoState → ObsState matrix for one secondary survey.

    Separate sampling: the observed state records the true infection status
    of a captured animal. Merged: a captured animal is recorded infected with
    the sample-level detection probability (false-positive rate if uninfected).
    """
    p = 1.0 if certain else params.capture_probability(occasion)
    n = n_eco_states(recruitment)
    U, I = EcoState.UNINFECTED, EcoState.INFECTED

    B = np.zeros((n, 3), dtype=np.float64)
    B[:, 2] = 1.0
    if separate_sampling:
        B[U] = [p, 0.0, 1.0 - p]
        B[I] = [0.0, p, 1.0 - p]
    else:
        fp = params.fp_sample
        tp = sample_detection(load, params)
        B[U] = [p * (1.0 - fp), p * fp, 1.0 - p]
        B[I] = [p * (1.0 - tp), p * tp, 1.0 - p]
    return B


def _detection_rows(fp: float, tp: float) -> np.ndarray:
    return np.array([
        [1.0 - fp, fp, 0.0],
        [1.0 - tp, tp, 0.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


def sample_matrix(params, load: Optional[float]) -> np.ndarray:
    """ObsState → SampleState matrix (separate-sampling variants)."""
    return _detection_rows(params.fp_sample, sample_detection(load, params))


def diagnostic_matrix(params, sample_load: Optional[float]) -> np.ndarray:
    """Parent (sample or observed) state → DiagState matrix for one run."""
    return _detection_rows(params.fp_diag, diagnostic_detection(sample_load, params))


def check_stochastic(P: np.ndarray, atol: float = 1e-9) -> bool:
    """True if every row of P lies in [0, 1] and sums to one within atol."""
    return bool(
        np.all(P >= -atol) and np.all(P <= 1.0 + atol)
        and np.allclose(P.sum(axis=1), 1.0, atol=atol, rtol=0.0)
    )
