"""Continuous-time transition solver.

Builds the generator Q of the ecological chain from hazards and converts it
to a finite-interval transition matrix P = exp(Qτ).

Primary route — eigendecomposition:
    Q = V D V⁻¹   ⇒   exp(Qτ) = V · diag(exp(d_i τ)) · V⁻¹

The dead row of Q is identically zero and contributes the eigenvalue 0; it
goes through the same decomposition as every other row.

Fallback — scaling-and-squaring (scipy.linalg.expm) when the eigen route is
unreliable: eigenvector matrix singular or ill-conditioned (repeated
eigenvalues, e.g. ψ₁₂ + φ₁ = ψ₂₁ + h₂), non-negligible imaginary residue,
entries outside [−tol, 1+tol], or a row sum off 1 by more than tol. The same
tol bounds the accepted result either way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.linalg import expm

from infection_cmr.rates import hazards
from infection_cmr.types import EcoState

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-9
DEFAULT_CONDITION_LIMIT = 1e10


# ═══════════════════════════════════════════════════════════════════════
# GENERATOR
# ═══════════════════════════════════════════════════════════════════════

def generator_matrix(
    params,
    load: Optional[float],
    occasion: int = 0,
    recruitment: bool = False,
) -> np.ndarray:
    """Rate matrix Q of the ecological chain.

    Rows/columns follow EcoState: UNINFECTED, INFECTED, DEAD (+ NOT_ENTERED).

        U:  −(ψ₁₂+φ₁)   ψ₁₂          φ₁
        I:   ψ₂₁       −(ψ₂₁+h₂)     h₂          h₂ = exp(log α + β m)
        D:   0           0            0
        NE:  γ(1−π)      γπ           0     −γ

    Args:
        params: ModelParameters (hazard semantics).
        load: Individual log-load at the start of the interval.
        occasion: Occasion the interval leads into (selects γ_t).
        recruitment: Append the NOT_ENTERED row/column.

    Returns:
        (3, 3) or (4, 4) generator with zero row sums.
    """
    h = hazards(params, load, occasion, recruitment)
    n = 4 if recruitment else 3
    U, I, D = EcoState.UNINFECTED, EcoState.INFECTED, EcoState.DEAD

    Q = np.zeros((n, n), dtype=np.float64)
    Q[U, I] = h.infection_gain
    Q[U, D] = h.mortality_uninfected
    Q[I, U] = h.infection_loss
    Q[I, D] = h.mortality_infected
    if recruitment:
        NE = EcoState.NOT_ENTERED
        Q[NE, U] = h.recruitment * (1.0 - params.pi)
        Q[NE, I] = h.recruitment * params.pi
    Q[np.diag_indices(n)] = -Q.sum(axis=1)
    return Q


def check_generator(Q: np.ndarray, atol: float = 1e-12) -> None:
    """Validate a generator. Raises ValueError if Q is malformed.

    Checks: square, finite, off-diagonals ≥ 0, rows sum to zero.
    """
    if Q.ndim != 2 or Q.shape[0] != Q.shape[1]:
        raise ValueError(f"generator must be square, got shape {Q.shape}")
    if not np.all(np.isfinite(Q)):
        raise ValueError("generator contains non-finite entries")
    off = Q[~np.eye(Q.shape[0], dtype=bool)]
    if (off < 0).any():
        raise ValueError("generator off-diagonal entries must be >= 0")
    scale = max(1.0, float(np.abs(Q).max()))
    if np.abs(Q.sum(axis=1)).max() > atol * scale:
        raise ValueError("generator rows must sum to zero")


# ═══════════════════════════════════════════════════════════════════════
# MATRIX EXPONENTIAL
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ExpmResult:
    """Transition matrix plus the route that produced it."""
    P: np.ndarray
    method: str            # 'eigen' or 'pade'
    reason: str = ""       # why the eigen route was rejected


def _eigen_expm(Q: np.ndarray, tau: float, tol: float,
                condition_limit: float) -> tuple:
    """Eigen reconstruction. Returns (P or None, rejection reason)."""
    try:
        w, V = np.linalg.eig(Q)
    except np.linalg.LinAlgError as exc:
        return None, f"eig failed: {exc}"
    cond = np.linalg.cond(V)
    if not np.isfinite(cond) or cond > condition_limit:
        return None, f"eigenvector matrix ill-conditioned (cond={cond:.3g})"
    try:
        V_inv = np.linalg.inv(V)
    except np.linalg.LinAlgError as exc:
        return None, f"eigenvector matrix singular: {exc}"

    P_complex = (V * np.exp(w * tau)) @ V_inv
    if np.abs(P_complex.imag).max() > tol:
        return None, "complex residue in reconstruction"
    P = P_complex.real
    if P.min() < -tol or P.max() > 1.0 + tol:
        return None, "entries outside [0, 1]"
    if np.abs(P.sum(axis=1) - 1.0).max() > tol:
        return None, "rows do not sum to one"
    return P, ""


def expm_generator(
    Q: np.ndarray,
    tau: float,
    tol: float = DEFAULT_TOLERANCE,
    condition_limit: float = DEFAULT_CONDITION_LIMIT,
) -> ExpmResult:
    """Compute P = exp(Qτ) for a generator Q and interval τ ≥ 0.

    Args:
        Q: Generator (rows sum to zero, off-diagonals ≥ 0).
        tau: Interval length. 0 gives the identity.
        tol: Row-sum / range tolerance of the accepted result.
        condition_limit: Max condition number of the eigenvector matrix.

    Returns:
        ExpmResult with a row-stochastic P (entries clipped to [0, 1], rows
        renormalised to sum to one).

    Raises:
        ValueError: If Q is not a valid generator or tau is negative/non-finite.
    """
    check_generator(Q)
    if not np.isfinite(tau) or tau < 0.0:
        raise ValueError(f"interval must be finite and >= 0, got {tau}")

    P, reason = _eigen_expm(Q, tau, tol, condition_limit)
    method = 'eigen'
    if P is None:
        logger.debug("exp(Q·%.4g) eigen route rejected (%s); using "
                     "scaling-and-squaring", tau, reason)
        P = expm(Q * tau)
        method = 'pade'
        deviation = np.abs(P.sum(axis=1) - 1.0).max()
        if deviation > tol:
            logger.warning("scaling-and-squaring row sums deviate by %.3g "
                           "(tolerance %.3g)", deviation, tol)

    P = np.clip(P, 0.0, 1.0)
    P /= P.sum(axis=1, keepdims=True)
    return ExpmResult(P=P, method=method, reason=reason)


def transition_matrix_ct(
    params,
    load: Optional[float],
    tau: float,
    occasion: int = 0,
    recruitment: bool = False,
    tol: float = DEFAULT_TOLERANCE,
    condition_limit: float = DEFAULT_CONDITION_LIMIT,
) -> np.ndarray:
    """Finite-interval transition matrix exp(Q τ) for one individual."""
    Q = generator_matrix(params, load, occasion, recruitment)
    return expm_generator(Q, tau, tol, condition_limit).P
