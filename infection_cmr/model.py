"""Model adapter — simulation and likelihood entry points.

CaptureRecaptureModel binds a configuration (variant switches, numerics,
default parameters) and a sampling design, and exposes what an inference
engine needs:

  simulate(params, seed)            → Dataset
  log_likelihood(params, dataset)   → complete-data log-likelihood
  log_density(params, dataset)      → same, −inf outside the parameter domain
  likelihood_breakdown / individual_log_likelihoods / likelihood_terms

Individuals are mutually independent given the parameters, so both
simulation and evaluation map over individuals (serially or on a thread
pool, simulation.parallel_workers) and reduce the per-individual results in
individual order. Each individual draws from its own RNG stream, so a
simulated dataset does not depend on the worker count.

run_simulation() wraps simulate() with the nested/long conversions and
summary counts used by scripts and tests.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar, Union

import numpy as np

from infection_cmr.cascade import (
    CATEGORICAL_LAYERS,
    NORMAL_LAYERS,
    IndividualLogLik,
    Term,
    evaluate_individual,
    iter_terms,
    simulate_individual,
)
from infection_cmr.config import (
    ModelParameters,
    SimulationConfig,
    build_design,
    default_config,
    validate_design,
    validate_parameters,
)
from infection_cmr.errors import DesignError, EvaluationCancelled, ParameterError
from infection_cmr.history import (
    NestedHistory,
    initial_dataset,
    long_records,
    to_nested,
)
from infection_cmr.rng import create_rng_hierarchy, get_individual_rng
from infection_cmr.types import (
    Dataset,
    Design,
    DiagState,
    EcoState,
    IndividualTrajectory,
    is_alive,
)

logger = logging.getLogger(__name__)

ParamsLike = Union[ModelParameters, Mapping[str, Any], None]
StopCheck = Optional[Callable[[], bool]]
T = TypeVar('T')


class CaptureRecaptureModel:
    """Multistate capture-recapture model with latent infection state.

    Stateless across calls: every method takes the parameter vector
    explicitly and never mutates the dataset it is given.

    Args:
        config: Full configuration (defaults to default_config()).
        design: Sampling design (defaults to build_design(config.design)).

    Raises:
        DesignError: If the design is internally inconsistent.
    """

    def __init__(self, config: Optional[SimulationConfig] = None,
                 design: Optional[Design] = None):
        self.config = config if config is not None else default_config()
        self.model = self.config.model
        self.numerics = self.config.numerics
        self.design = design if design is not None else build_design(
            self.config.design, self.model)
        validate_design(self.design, self.model)

    # ── parameters ───────────────────────────────────────────────────

    def resolve_params(self, params: ParamsLike = None) -> ModelParameters:
        """Turn a parameter mapping into validated ModelParameters.

        Missing keys fall back to the configured defaults.

        Raises:
            ParameterError: On unknown names or out-of-domain values.
        """
        if params is None:
            resolved = self.config.parameters
        elif isinstance(params, ModelParameters):
            resolved = params
        elif isinstance(params, Mapping):
            resolved = ModelParameters.from_mapping(params, base=self.config.parameters)
        else:
            raise ParameterError(
                f"parameters must be a mapping or ModelParameters, "
                f"got {type(params).__name__}"
            )
        validate_parameters(resolved, self.model, self.design.n_primary)
        return resolved

    # ── execution ────────────────────────────────────────────────────

    def _map(self, fn: Callable[[int], T], n: int,
             should_stop: StopCheck) -> List[T]:
        """Apply fn to 0..n-1 in individual order, optionally on a thread pool."""
        def task(i: int) -> T:
            if should_stop is not None and should_stop():
                raise EvaluationCancelled(f"stopped before individual {i}")
            return fn(i)

        workers = self.config.simulation.parallel_workers
        if workers <= 1 or n <= 1:
            return [task(i) for i in range(n)]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(task, range(n)))

    def _check_dataset(self, dataset: Dataset) -> List[IndividualTrajectory]:
        N = self.design.n_individuals
        if dataset.n_individuals != N:
            raise DesignError(
                f"dataset has {dataset.n_individuals} individuals, design has {N}"
            )
        ordered: List[Optional[IndividualTrajectory]] = [None] * N
        for traj in dataset.individuals:
            if not 0 <= traj.individual < N or ordered[traj.individual] is not None:
                raise DesignError(
                    f"individual index {traj.individual} out of range or repeated"
                )
            ordered[traj.individual] = traj
        return ordered

    # ── simulation ───────────────────────────────────────────────────

    def simulate(self, params: ParamsLike = None, seed: Optional[int] = None,
                 should_stop: StopCheck = None) -> Dataset:
        """Draw a complete dataset (all latent and observed layers).

        Args:
            params: Parameter values (defaults to the configured ones).
            seed: Master seed (defaults to simulation.seed).
            should_stop: Polled before each individual; True cancels.

        Raises:
            ParameterError: If params are outside their domain.
            EvaluationCancelled: If should_stop returned True.
        """
        resolved = self.resolve_params(params)
        seed = self.config.simulation.seed if seed is None else seed
        rngs = create_rng_hierarchy(seed, self.design.n_individuals)

        individuals = self._map(
            lambda i: simulate_individual(
                i, resolved, self.design, self.model,
                get_individual_rng(rngs, i), self.numerics,
            ),
            self.design.n_individuals,
            should_stop,
        )
        logger.info("simulated %d individuals over %d occasions (seed=%d)",
                    len(individuals), self.design.n_primary, seed)
        return Dataset(design=self.design, individuals=individuals)

    def initial_dataset(self, nested: NestedHistory,
                        seed: Optional[int] = None) -> Dataset:
        """Complete an observed history with initial-value guesses.

        Only the diagnostic layer of `nested` is read; the guess uses the
        'global' RNG stream of the seed hierarchy.
        """
        seed = self.config.simulation.seed if seed is None else seed
        rng = create_rng_hierarchy(seed, self.design.n_individuals)['global']
        return initial_dataset(nested, self.design, self.model, rng)

    # ── likelihood ───────────────────────────────────────────────────

    def likelihood_terms(self, params: ParamsLike,
                         trajectory: IndividualTrajectory) -> List[Term]:
        """Every categorical and normal term of one trajectory, in cascade order."""
        resolved = self.resolve_params(params)
        return list(iter_terms(trajectory, resolved, self.design,
                               self.model, self.numerics))

    def individual_log_likelihoods(self, params: ParamsLike, dataset: Dataset,
                                   should_stop: StopCheck = None
                                   ) -> List[IndividualLogLik]:
        """Per-individual log-likelihoods, ordered by individual index.

        Raises:
            ParameterError: If params are outside their domain.
            DataStructureError: If a trajectory is structurally impossible.
            DesignError: If the dataset does not match the design.
            EvaluationCancelled: If should_stop returned True.
        """
        resolved = self.resolve_params(params)
        ordered = self._check_dataset(dataset)
        return self._map(
            lambda i: evaluate_individual(ordered[i], resolved, self.design,
                                          self.model, self.numerics),
            len(ordered),
            should_stop,
        )

    def log_likelihood(self, params: ParamsLike, dataset: Dataset,
                       should_stop: StopCheck = None) -> float:
        """Complete-data log-likelihood of the dataset."""
        parts = self.individual_log_likelihoods(params, dataset, should_stop)
        total = 0.0
        for part in parts:
            total += part.total
        logger.info("log-likelihood %.6g over %d individuals", total, len(parts))
        return total

    def log_density(self, params: ParamsLike, dataset: Dataset,
                    should_stop: StopCheck = None) -> float:
        """Log-likelihood, or −inf when params fall outside their domain."""
        try:
            value = self.log_likelihood(params, dataset, should_stop)
        except ParameterError as exc:
            logger.debug("parameters outside domain: %s", exc)
            return -math.inf
        return value if not math.isnan(value) else -math.inf

    def likelihood_breakdown(self, params: ParamsLike, dataset: Dataset,
                             should_stop: StopCheck = None) -> Dict[str, float]:
        """Log-likelihood summed per layer, plus 'total'."""
        parts = self.individual_log_likelihoods(params, dataset, should_stop)
        out = {layer: 0.0 for layer in CATEGORICAL_LAYERS + NORMAL_LAYERS}
        for part in parts:
            for layer in out:
                out[layer] += getattr(part, layer)
        out['total'] = sum(out.values())
        return out


# ═══════════════════════════════════════════════════════════════════════
# SIMULATION RUNNER
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResult:
    """Simulated dataset with its array views and summary counts."""
    dataset: Dataset
    nested: NestedHistory
    records: np.ndarray                       # LOAD_RECORD_DTYPE, positive runs
    params: ModelParameters
    seed: int = 0
    summary: Dict[str, int] = field(default_factory=dict)


def summarize(dataset: Dataset) -> Dict[str, int]:
    """Counts of individuals, detections, infections and deaths."""
    counts = {
        'n_individuals': dataset.n_individuals,
        'n_detected': 0,        # individuals with at least one diagnostic run
        'n_ever_alive': 0,
        'n_ever_infected': 0,
        'n_dead_at_end': 0,
        'n_runs': 0,
        'n_positive_runs': 0,
    }
    for traj in dataset.individuals:
        states = traj.eco_states()
        runs = [run for _, _, _, run in traj.iter_runs()
                if run.state != DiagState.NO_RUN]
        counts['n_detected'] += bool(runs)
        counts['n_ever_alive'] += any(is_alive(s) for s in states)
        counts['n_ever_infected'] += EcoState.INFECTED in states
        counts['n_dead_at_end'] += bool(states) and states[-1] == EcoState.DEAD
        counts['n_runs'] += len(runs)
        counts['n_positive_runs'] += sum(r.state == DiagState.INFECTED for r in runs)
    return counts


def run_simulation(
    config: Optional[SimulationConfig] = None,
    params: ParamsLike = None,
    seed: Optional[int] = None,
) -> SimulationResult:
    """Simulate one dataset from a configuration.

    Args:
        config: Configuration (defaults to default_config()).
        params: Parameter overrides (mapping or ModelParameters).
        seed: Master seed (defaults to config.simulation.seed).
    """
    model = CaptureRecaptureModel(config)
    resolved = model.resolve_params(params)
    seed = model.config.simulation.seed if seed is None else seed
    dataset = model.simulate(resolved, seed)
    nested = to_nested(dataset)
    result = SimulationResult(
        dataset=dataset,
        nested=nested,
        records=long_records(nested),
        params=resolved,
        seed=seed,
        summary=summarize(dataset),
    )
    logger.info("simulation summary: %s", result.summary)
    return result
