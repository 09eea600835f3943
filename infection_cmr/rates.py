"""Hazard and detection functions.

Pure functions mapping an individual's current infection load and the model
parameters to:
  - instantaneous hazards of the ecological chain (continuous time):
      uninfected mortality φ₁, infected mortality h₂(m) = exp(log α + β m),
      infection gain ψ₁₂, infection loss ψ₂₁, recruitment γ
  - infected mortality probability (discrete time):
      1 − φ₂(m) = expit(logit α + β m)
  - detection probabilities at the sampling and diagnostic layers:
      detect(m) = 1 − (1 − r)^m   (at least one of m independent units found)

Loads are on the log scale; a negative log-load carries no detectable units
and is treated as 0 by detect().
"""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from scipy.special import expit, logit
from scipy.stats import norm

from infection_cmr.errors import ParameterError

ArrayLike = Union[float, np.ndarray]

# Largest log-hazard for which the matrix powers formed by exp(Qτ) stay finite.
MAX_LOG_HAZARD = math.log(sys.float_info.max) / 10


# ═══════════════════════════════════════════════════════════════════════
# DETECTION
# ═══════════════════════════════════════════════════════════════════════

def detect(load: ArrayLike, r: float) -> ArrayLike:
    """Probability of detecting at least one of `load` independent units.

    detect(0) = 0, detect(1) = r, detect(m) → 1 as m → ∞.

    Args:
        load: Log-load (scalar or array). Negative values count as 0.
        r: Per-unit detection increment in (0, 1).

    Returns:
        Detection probability, same shape as load.
    """
    m = np.maximum(load, 0.0)
    p = -np.expm1(m * np.log1p(-r))
    if np.ndim(p) == 0:
        return float(p)
    return p


def sample_detection(load: Optional[float], params) -> float:
    """True-positive probability at the sampling layer."""
    return detect(load, params.r_sample) if load is not None else 0.0


def diagnostic_detection(sample_load: Optional[float], params) -> float:
    """True-positive probability of one diagnostic run."""
    return detect(sample_load, params.r_diag) if sample_load is not None else 0.0


# ═══════════════════════════════════════════════════════════════════════
# MORTALITY
# ═══════════════════════════════════════════════════════════════════════

def infected_mortality_hazard(alpha: float, beta: float, load: float) -> float:
    """Log-linear infected mortality hazard: exp(log(α) + β·m).

    Raises:
        ParameterError: If log(α) + β·m exceeds MAX_LOG_HAZARD.
    """
    if alpha <= 0.0:
        raise ValueError(f"alpha must be > 0 for a log-linear hazard, got {alpha}")
    log_hazard = math.log(alpha) + beta * load
    if not log_hazard <= MAX_LOG_HAZARD:
        raise ParameterError(
            f"infected mortality hazard overflows: log(alpha) + beta*load = "
            f"{log_hazard:.4g} (alpha={alpha}, beta={beta}, load={load:.4g})"
        )
    return math.exp(log_hazard)


def infected_mortality_probability(alpha: float, beta: float, load: float) -> float:
    """Logit-linear infected mortality probability: expit(logit(α) + β·m)."""
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must be in (0, 1) for a logit link, got {alpha}")
    return float(expit(logit(alpha) + beta * load))


# ═══════════════════════════════════════════════════════════════════════
# HAZARD SET
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Hazards:
    """Instantaneous rates of the ecological chain for one individual."""
    mortality_uninfected: float
    mortality_infected: float
    infection_gain: float
    infection_loss: float
    recruitment: float = 0.0


def hazards(params, load: Optional[float], occasion: int = 0,
            recruitment: bool = False) -> Hazards:
    """Hazards for an individual carrying `load` at `occasion`.

    The infected mortality hazard needs a load; uninfected and not-yet-entered
    rows do not, so a missing load yields the baseline hazard α.

    Raises:
        ValueError: If any hazard is negative or not finite.
    """
    h2 = infected_mortality_hazard(params.alpha, params.beta,
                                   load if load is not None else 0.0)
    out = Hazards(
        mortality_uninfected=float(params.phi1),
        mortality_infected=h2,
        infection_gain=float(params.psi12),
        infection_loss=float(params.psi21),
        recruitment=params.recruitment(occasion) if recruitment else 0.0,
    )
    for name, value in vars(out).items():
        if not math.isfinite(value) or value < 0.0:
            raise ValueError(f"hazard {name} must be finite and >= 0, got {value}")
    return out


# ═══════════════════════════════════════════════════════════════════════
# DENSITIES
# ═══════════════════════════════════════════════════════════════════════

def normal_logpdf(x: float, loc: float, scale: float) -> float:
    """Normal log-density; scale == 0 is a point mass at loc."""
    if scale == 0.0:
        return 0.0 if x == loc else -math.inf
    return float(norm.logpdf(x, loc=loc, scale=scale))


def log_prob(probs: np.ndarray, outcome: int) -> float:
    """Categorical log-probability of `outcome`; -inf for impossible outcomes."""
    p = float(probs[outcome])
    return math.log(p) if p > 0.0 else -math.inf
