"""Tests for infection_cmr.ctmc — generator construction and exp(Qτ)."""

import logging
import math

import numpy as np
import pytest
from scipy.linalg import expm

from infection_cmr.config import ModelParameters
from infection_cmr.ctmc import (
    check_generator,
    expm_generator,
    generator_matrix,
    transition_matrix_ct,
)
from infection_cmr.types import EcoState

U, I, D, NE = (EcoState.UNINFECTED, EcoState.INFECTED,
               EcoState.DEAD, EcoState.NOT_ENTERED)

# Generator with ψ₁₂ = 0.5, φ₁ = 0.4, ψ₂₁ = 0.3, h₂ = 0.4
Q_REF = np.array([
    [-0.9, 0.5, 0.4],
    [0.3, -0.7, 0.4],
    [0.0, 0.0, 0.0],
])


def _jordan(eps):
    """Defective generator: repeated eigenvalue −eps with a single eigenvector."""
    return np.array([
        [-eps, eps, 0.0],
        [0.0, -eps, eps],
        [0.0, 0.0, 0.0],
    ])


# ── Generator ─────────────────────────────────────────────────────────

class TestGeneratorMatrix:
    def test_reference_generator(self):
        params = ModelParameters(phi1=0.4, psi12=0.5, psi21=0.3, alpha=0.4, beta=0.0)
        Q = generator_matrix(params, load=3.0)
        np.testing.assert_allclose(Q, Q_REF, atol=1e-15)

    def test_rows_sum_to_zero(self):
        Q = generator_matrix(ModelParameters(), load=2.5, recruitment=True)
        assert Q.shape == (4, 4)
        np.testing.assert_allclose(Q.sum(axis=1), 0.0, atol=1e-14)
        check_generator(Q)

    def test_dead_row_is_zero(self):
        Q = generator_matrix(ModelParameters(), load=1.0)
        assert np.all(Q[D] == 0.0)

    def test_recruitment_row(self):
        params = ModelParameters(pi=0.3, gamma=0.4)
        Q = generator_matrix(params, load=None, recruitment=True)
        assert Q[NE, U] == pytest.approx(0.28)
        assert Q[NE, I] == pytest.approx(0.12)
        assert Q[NE, D] == 0.0
        assert Q[NE, NE] == pytest.approx(-0.4)
        # NOT_ENTERED is never re-entered
        assert np.all(Q[:NE, NE] == 0.0)

    def test_infected_mortality_grows_with_load(self):
        params = ModelParameters(alpha=0.2, beta=0.5)
        low = generator_matrix(params, load=1.0)
        high = generator_matrix(params, load=3.0)
        assert high[I, D] > low[I, D]
        assert high[U, D] == low[U, D]


class TestCheckGenerator:
    def test_negative_off_diagonal(self):
        Q = Q_REF.copy()
        Q[0, 1], Q[0, 0] = -0.1, -0.3
        with pytest.raises(ValueError, match="off-diagonal"):
            check_generator(Q)

    def test_row_sum(self):
        Q = Q_REF.copy()
        Q[0, 0] = -1.0
        with pytest.raises(ValueError, match="sum to zero"):
            check_generator(Q)

    def test_non_square(self):
        with pytest.raises(ValueError, match="square"):
            check_generator(np.zeros((2, 3)))


# ── Matrix exponential ────────────────────────────────────────────────

class TestExpmGenerator:
    @pytest.mark.parametrize("tau", [0.1, 0.5, 1.0, 2.5, 10.0])
    def test_row_stochastic(self, tau):
        P = expm_generator(Q_REF, tau).P
        assert np.all(P >= 0.0) and np.all(P <= 1.0)
        np.testing.assert_allclose(P.sum(axis=1), 1.0, atol=1e-9)

    def test_dead_absorbing(self):
        P = expm_generator(Q_REF, 3.0).P
        assert P[D, D] == pytest.approx(1.0, abs=1e-12)
        assert P[D, U] == pytest.approx(0.0, abs=1e-12)
        assert P[D, I] == pytest.approx(0.0, abs=1e-12)

    def test_zero_interval_is_identity(self):
        np.testing.assert_allclose(expm_generator(Q_REF, 0.0).P, np.eye(3),
                                   atol=1e-12)

    def test_eigen_route_matches_scaling_and_squaring(self):
        result = expm_generator(Q_REF, 1.7)
        assert result.method == 'eigen'
        np.testing.assert_allclose(result.P, expm(Q_REF * 1.7), atol=1e-10)

    def test_semigroup(self):
        s, t = 0.6, 1.3
        P_st = expm_generator(Q_REF, s + t).P
        P_s = expm_generator(Q_REF, s).P
        P_t = expm_generator(Q_REF, t).P
        np.testing.assert_allclose(P_st, P_s @ P_t, atol=1e-10)

    def test_forced_fallback_agrees(self):
        """A condition limit of 1 rejects every non-orthogonal eigenbasis."""
        result = expm_generator(Q_REF, 1.0, condition_limit=1.0)
        assert result.method == 'pade'
        assert 'ill-conditioned' in result.reason
        np.testing.assert_allclose(result.P, expm_generator(Q_REF, 1.0).P, atol=1e-10)

    def test_defective_generator_falls_back(self, caplog):
        eps, tau = 0.5, 2.0
        caplog.set_level(logging.DEBUG, logger="infection_cmr.ctmc")
        result = expm_generator(_jordan(eps), tau)
        assert result.method == 'pade'
        assert "eigen route rejected" in caplog.text

        x = eps * tau
        expected_row = [math.exp(-x), x * math.exp(-x),
                        1.0 - math.exp(-x) * (1.0 + x)]
        np.testing.assert_allclose(result.P[0], expected_row, atol=1e-9)
        np.testing.assert_allclose(result.P.sum(axis=1), 1.0, atol=1e-9)

    @pytest.mark.parametrize("condition_limit", [1e10, 1.0], ids=["eigen", "pade"])
    def test_rows_renormalised(self, condition_limit):
        P = expm_generator(Q_REF, 4.0, condition_limit=condition_limit).P
        np.testing.assert_allclose(P.sum(axis=1), 1.0, rtol=0.0, atol=1e-15)

    def test_negative_interval(self):
        with pytest.raises(ValueError, match="interval"):
            expm_generator(Q_REF, -1.0)


class TestTransitionMatrixCt:
    def test_recruitment_chain(self):
        params = ModelParameters(gamma=0.4)
        P = transition_matrix_ct(params, load=2.0, tau=1.5, recruitment=True)
        assert P.shape == (4, 4)
        np.testing.assert_allclose(P.sum(axis=1), 1.0, atol=1e-9)
        assert P[NE, NE] == pytest.approx(math.exp(-0.4 * 1.5), rel=1e-9)
        np.testing.assert_allclose(P[:NE, NE], 0.0, atol=1e-12)

    def test_longer_interval_more_deaths(self):
        params = ModelParameters()
        short = transition_matrix_ct(params, load=2.0, tau=0.5)
        long = transition_matrix_ct(params, load=2.0, tau=5.0)
        assert long[U, D] > short[U, D]
        assert long[I, D] > short[I, D]
