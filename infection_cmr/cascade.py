"""Hierarchical state cascade — per-individual simulation and evaluation.

Per primary occasion, in strict dependency order:
  1. ecological state from the previous occasion's state
     (initial distribution on the first occasion of a conditioned model)
  2. individual log-load m ~ N(μ, σ_ind)                     alive only
  3. per secondary survey:
       observed state from the ecological state
       (capture certain on the first secondary of the first-capture occasion)
       sample state from the observed state        separate sampling only
       sample log-load s ~ N(m, σ_sample)           sample collected only
  4. per diagnostic run:
       diagnostic state from the sample (or observed) state
       run log-load d ~ N(s, σ_diag)                infected runs only

The ecological state is fixed across the secondaries of a primary occasion
(closure). DEAD and NOT_ENTERED individuals are deterministically not seen.
Unsurveyed occasions carry no observation records but the ecological chain
runs through them.

Simulation draws each quantity; evaluation walks a finished trajectory and
yields one term per quantity (categorical probabilities or normal density)
without ever mutating it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Union

import numpy as np

from infection_cmr.config import ModelSection, NumericsSection
from infection_cmr.errors import DataStructureError, DesignError
from infection_cmr.rates import log_prob, normal_logpdf
from infection_cmr.transitions import (
    diagnostic_matrix,
    ecological_matrix,
    initial_distribution,
    observation_matrix,
    sample_matrix,
)
from infection_cmr.types import (
    NONE_CODE,
    DiagState,
    DiagnosticRun,
    Design,
    EcoState,
    IndividualTrajectory,
    ObsState,
    OccasionRecord,
    SampleState,
    SecondaryRecord,
    is_alive,
)


CATEGORICAL_LAYERS = ('eco', 'observed', 'sample', 'diagnostic')
NORMAL_LAYERS = ('load', 'sample_load', 'diag_load')


# ═══════════════════════════════════════════════════════════════════════
# TERMS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CategoricalTerm:
    """One categorical outcome with the distribution it was drawn from."""
    layer: str
    individual: int
    primary: int
    secondary: int
    run: int
    probs: np.ndarray
    outcome: int

    @property
    def log_prob(self) -> float:
        return log_prob(self.probs, self.outcome)


@dataclass(frozen=True)
class NormalTerm:
    """One continuous load with its normal density parameters."""
    layer: str
    individual: int
    primary: int
    secondary: int
    run: int
    value: float
    loc: float
    scale: float

    @property
    def log_prob(self) -> float:
        return normal_logpdf(self.value, self.loc, self.scale)


Term = Union[CategoricalTerm, NormalTerm]


@dataclass
class IndividualLogLik:
    """Log-likelihood of one trajectory, split by layer."""
    individual: int
    eco: float = 0.0
    observed: float = 0.0
    sample: float = 0.0
    diagnostic: float = 0.0
    load: float = 0.0
    sample_load: float = 0.0
    diag_load: float = 0.0

    @property
    def categorical(self) -> float:
        return self.eco + self.observed + self.sample + self.diagnostic

    @property
    def continuous(self) -> float:
        return self.load + self.sample_load + self.diag_load

    @property
    def total(self) -> float:
        return self.categorical + self.continuous


# ═══════════════════════════════════════════════════════════════════════
# SHARED STEPS
# ═══════════════════════════════════════════════════════════════════════

def draw_categorical(rng: np.random.Generator, probs: np.ndarray) -> int:
    """Inverse-CDF draw; zero-probability outcomes are never returned."""
    cdf = np.cumsum(probs)
    idx = int(np.searchsorted(cdf, rng.random() * cdf[-1], side='right'))
    return min(idx, len(probs) - 1)


def _eco_probs(
    t: int,
    start: int,
    previous: Optional[OccasionRecord],
    i: int,
    params,
    design: Design,
    model: ModelSection,
    numerics: NumericsSection,
) -> np.ndarray:
    """Distribution of the ecological state at occasion t."""
    if t == start and model.conditioned:
        return initial_distribution(params, recruitment=False)
    if previous is None:
        prev_state, prev_load = EcoState.NOT_ENTERED, None
    else:
        prev_state, prev_load = previous.eco, previous.load
    tau = design.interval_before(i, t, model.recruitment) if model.continuous else 1.0
    P = ecological_matrix(params, model, prev_load, tau, t, numerics)
    return P[prev_state]


def _capture_certain(t: int, k: int, start: int, model: ModelSection) -> bool:
    return model.conditioned and t == start and k == 0


# ═══════════════════════════════════════════════════════════════════════
# SIMULATION
# ═══════════════════════════════════════════════════════════════════════

def _simulate_secondary(
    rng: np.random.Generator,
    eco: EcoState,
    load: Optional[float],
    n_runs: int,
    certain: bool,
    t: int,
    params,
    model: ModelSection,
) -> SecondaryRecord:
    B = observation_matrix(params, load, t, model.separate_sampling,
                           model.recruitment, certain)
    observed = ObsState(draw_categorical(rng, B[eco]))

    sample: Optional[SampleState] = None
    parent = int(observed)
    if model.separate_sampling:
        sample = SampleState(draw_categorical(rng, sample_matrix(params, load)[observed]))
        parent = int(sample)

    sample_load = None
    if parent != NONE_CODE:
        sample_load = float(rng.normal(load, params.sigma_sample))

    D = diagnostic_matrix(params, sample_load)
    runs = []
    for _ in range(n_runs):
        state = DiagState(draw_categorical(rng, D[parent]))
        run_load = None
        if state == DiagState.INFECTED:
            run_load = float(rng.normal(sample_load, params.sigma_diag))
        runs.append(DiagnosticRun(state=state, load=run_load))

    return SecondaryRecord(observed=observed, sample=sample,
                           sample_load=sample_load, runs=tuple(runs))


def _simulate_occasion(
    acc: List[OccasionRecord],
    t: int,
    start: int,
    i: int,
    rng: np.random.Generator,
    params,
    design: Design,
    model: ModelSection,
    numerics: NumericsSection,
) -> OccasionRecord:
    previous = acc[-1] if acc else None
    probs = _eco_probs(t, start, previous, i, params, design, model, numerics)
    eco = EcoState(draw_categorical(rng, probs))

    load = float(rng.normal(params.mu, params.sigma_ind)) if is_alive(eco) else None

    n_sec = int(design.n_secondary[i, t])
    if n_sec == 0:
        return OccasionRecord(primary=t, eco=eco, load=load, secondaries=None)

    secondaries = tuple(
        _simulate_secondary(
            rng, eco, load, int(design.n_runs[i, t, k]),
            _capture_certain(t, k, start, model), t, params, model,
        )
        for k in range(n_sec)
    )
    return OccasionRecord(primary=t, eco=eco, load=load, secondaries=secondaries)


def simulate_individual(
    i: int,
    params,
    design: Design,
    model: ModelSection,
    rng: np.random.Generator,
    numerics: Optional[NumericsSection] = None,
) -> IndividualTrajectory:
    """Draw the full trajectory of individual i, occasion by occasion.

    Args:
        i: Individual index into the design.
        params: ModelParameters (validated by the caller).
        design: Sampling design.
        model: Variant switches.
        rng: The individual's own random stream.
        numerics: Matrix-exponential tolerances.

    Returns:
        Immutable IndividualTrajectory.
    """
    numerics = numerics or NumericsSection()
    start = design.start_occasion(i)
    acc: List[OccasionRecord] = []
    for t in range(start, design.n_primary):
        acc.append(_simulate_occasion(acc, t, start, i, rng, params,
                                      design, model, numerics))
    first_capture = start if model.conditioned else None
    return IndividualTrajectory(individual=i, first_capture=first_capture,
                                occasions=tuple(acc))


# ═══════════════════════════════════════════════════════════════════════
# EVALUATION
# ═══════════════════════════════════════════════════════════════════════

def _check_load(name: str, value: Optional[float], required: bool,
                where: str) -> None:
    if required and value is None:
        raise DataStructureError(f"{where}: {name} missing")
    if not required and value is not None:
        raise DataStructureError(f"{where}: {name} present but undefined")
    if value is not None and not math.isfinite(value):
        raise DataStructureError(f"{where}: {name} is not finite ({value})")


def _secondary_terms(
    sec: SecondaryRecord,
    eco: EcoState,
    load: Optional[float],
    i: int,
    t: int,
    k: int,
    n_runs: int,
    certain: bool,
    params,
    model: ModelSection,
) -> Iterator[Term]:
    where = f"individual {i}, occasion {t}, secondary {k}"
    B = observation_matrix(params, load, t, model.separate_sampling,
                           model.recruitment, certain)
    yield CategoricalTerm('observed', i, t, k, -1, B[eco], int(sec.observed))

    parent = int(sec.observed)
    if model.separate_sampling:
        if sec.sample is None:
            raise DataStructureError(f"{where}: sample state missing")
        yield CategoricalTerm('sample', i, t, k, -1,
                              sample_matrix(params, load)[sec.observed],
                              int(sec.sample))
        parent = int(sec.sample)
    elif sec.sample is not None:
        raise DataStructureError(
            f"{where}: sample state present but sampling is merged with capture"
        )

    collected = parent != NONE_CODE
    _check_load('sample load', sec.sample_load, collected, where)
    if collected:
        yield NormalTerm('sample_load', i, t, k, -1, sec.sample_load,
                         load if load is not None else params.mu,
                         params.sigma_sample)

    if len(sec.runs) != n_runs:
        raise DesignError(
            f"{where}: {len(sec.runs)} diagnostic runs recorded, "
            f"design has {n_runs}"
        )
    D = diagnostic_matrix(params, sec.sample_load)
    for r, run in enumerate(sec.runs):
        yield CategoricalTerm('diagnostic', i, t, k, r, D[parent], int(run.state))
        positive = run.state == DiagState.INFECTED
        _check_load('run load', run.load, positive, f"{where}, run {r}")
        if positive:
            if sec.sample_load is None:
                raise DataStructureError(
                    f"{where}, run {r}: infected run without a collected sample"
                )
            yield NormalTerm('diag_load', i, t, k, r, run.load,
                             sec.sample_load, params.sigma_diag)


def iter_terms(
    trajectory: IndividualTrajectory,
    params,
    design: Design,
    model: ModelSection,
    numerics: Optional[NumericsSection] = None,
) -> Iterator[Term]:
    """Yield every likelihood term of one trajectory, in cascade order.

    Raises:
        DataStructureError: If a state/load pairing is impossible.
        DesignError: If the trajectory does not match the design.
    """
    numerics = numerics or NumericsSection()
    i = trajectory.individual
    start = design.start_occasion(i)
    expected = design.n_primary - start
    if len(trajectory.occasions) != expected or trajectory.start != start:
        raise DesignError(
            f"individual {i}: trajectory covers {len(trajectory.occasions)} "
            f"occasions from {trajectory.start}, design expects {expected} "
            f"from {start}"
        )

    previous: Optional[OccasionRecord] = None
    for t, occ in zip(range(start, design.n_primary), trajectory.occasions):
        where = f"individual {i}, occasion {t}"
        if occ.primary != t:
            raise DataStructureError(f"{where}: record labelled occasion {occ.primary}")

        probs = _eco_probs(t, start, previous, i, params, design, model, numerics)
        yield CategoricalTerm('eco', i, t, -1, -1, probs, int(occ.eco))

        alive = is_alive(occ.eco)
        _check_load('individual load', occ.load, alive, where)
        if alive:
            yield NormalTerm('load', i, t, -1, -1, occ.load,
                             params.mu, params.sigma_ind)

        n_sec = int(design.n_secondary[i, t])
        n_recorded = 0 if occ.secondaries is None else len(occ.secondaries)
        if n_recorded != n_sec:
            raise DesignError(
                f"{where}: {n_recorded} secondary surveys recorded, "
                f"design has {n_sec}"
            )
        for k, sec in enumerate(occ.secondaries or ()):
            yield from _secondary_terms(
                sec, occ.eco, occ.load, i, t, k, int(design.n_runs[i, t, k]),
                _capture_certain(t, k, start, model), params, model,
            )
        previous = occ


def evaluate_individual(
    trajectory: IndividualTrajectory,
    params,
    design: Design,
    model: ModelSection,
    numerics: Optional[NumericsSection] = None,
) -> IndividualLogLik:
    """Complete-data log-likelihood of one trajectory, split by layer."""
    result = IndividualLogLik(individual=trajectory.individual)
    sums: Dict[str, float] = {layer: 0.0
                              for layer in CATEGORICAL_LAYERS + NORMAL_LAYERS}
    for term in iter_terms(trajectory, params, design, model, numerics):
        sums[term.layer] += term.log_prob
    for layer, value in sums.items():
        setattr(result, layer, value)
    return result
