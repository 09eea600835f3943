"""Capture-history assembler.

Converts between the per-individual trajectory records and dense nested
arrays indexed (individual, primary, secondary, run), extracts the "long"
record list of positive diagnostic runs, and derives initial-value guesses
for the latent layers from partially observed histories.

Missing-value convention of NestedHistory:
  - discrete code MISSING (-1): occasion/survey/run not conducted, outside
    the individual's span, or layer not modeled (true missingness)
  - NaN load next to a non-missing discrete code: the state carries no load
    (structural absence — e.g. a run that did not detect the pathogen)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

import numpy as np

from infection_cmr.config import ModelSection
from infection_cmr.errors import DataStructureError, DesignError
from infection_cmr.types import (
    MISSING,
    NONE_CODE,
    Dataset,
    Design,
    DiagState,
    DiagnosticRun,
    EcoState,
    IndividualTrajectory,
    ObsState,
    OccasionRecord,
    SampleState,
    SecondaryRecord,
    allocate_load_records,
    is_alive,
)


# ═══════════════════════════════════════════════════════════════════════
# NESTED ARRAYS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class NestedHistory:
    """Dense nested arrays of one dataset.

    Shapes: eco/load (N, T); observed/sample/sample_load (N, T, K);
    diag/diag_load (N, T, K, R). Discrete arrays are int8.
    """
    eco: np.ndarray
    load: np.ndarray
    observed: np.ndarray
    sample: np.ndarray
    sample_load: np.ndarray
    diag: np.ndarray
    diag_load: np.ndarray

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        return tuple(self.diag.shape)


def allocate_nested(N: int, T: int, K: int, R: int) -> NestedHistory:
    """Allocate a NestedHistory filled with MISSING codes and NaN loads."""
    return NestedHistory(
        eco=np.full((N, T), MISSING, dtype=np.int8),
        load=np.full((N, T), np.nan),
        observed=np.full((N, T, K), MISSING, dtype=np.int8),
        sample=np.full((N, T, K), MISSING, dtype=np.int8),
        sample_load=np.full((N, T, K), np.nan),
        diag=np.full((N, T, K, R), MISSING, dtype=np.int8),
        diag_load=np.full((N, T, K, R), np.nan),
    )


def _opt(value: Optional[float]) -> float:
    return np.nan if value is None else value


def to_nested(dataset: Dataset) -> NestedHistory:
    """Flatten trajectory records into dense nested arrays."""
    design = dataset.design
    nested = allocate_nested(design.n_individuals, design.n_primary,
                             design.max_secondary, design.max_runs)
    for traj in dataset.individuals:
        i = traj.individual
        for occ in traj.occasions:
            t = occ.primary
            nested.eco[i, t] = occ.eco
            nested.load[i, t] = _opt(occ.load)
            for k, sec in enumerate(occ.secondaries or ()):
                nested.observed[i, t, k] = sec.observed
                if sec.sample is not None:
                    nested.sample[i, t, k] = sec.sample
                nested.sample_load[i, t, k] = _opt(sec.sample_load)
                for r, run in enumerate(sec.runs):
                    nested.diag[i, t, k, r] = run.state
                    nested.diag_load[i, t, k, r] = _opt(run.load)
    return nested


def _load_at(value: float, required: bool, where: str) -> Optional[float]:
    present = bool(np.isfinite(value))
    if required and not present:
        raise DataStructureError(f"{where}: load missing")
    if present and not required:
        raise DataStructureError(f"{where}: load present but undefined")
    return float(value) if present else None


def _code(value: int, enum_cls, where: str):
    try:
        return enum_cls(int(value))
    except ValueError:
        raise DataStructureError(
            f"{where}: invalid {enum_cls.__name__} code {value}"
        ) from None


def _check_shapes(nested: NestedHistory, design: Design) -> None:
    N, T = design.n_individuals, design.n_primary
    K = design.max_secondary
    R = design.max_runs
    if nested.eco.shape != (N, T) or nested.load.shape != (N, T):
        raise DesignError(
            f"eco/load arrays have shape {nested.eco.shape}, design is ({N}, {T})"
        )
    for name in ('observed', 'sample', 'sample_load'):
        arr = getattr(nested, name)
        if arr.ndim != 3 or arr.shape[:2] != (N, T) or arr.shape[2] < K:
            raise DesignError(f"{name} array shape {arr.shape} incompatible "
                              f"with design ({N}, {T}, {K})")
    for name in ('diag', 'diag_load'):
        arr = getattr(nested, name)
        if arr.ndim != 4 or arr.shape[:2] != (N, T) or arr.shape[2] < K \
                or arr.shape[3] < R:
            raise DesignError(f"{name} array shape {arr.shape} incompatible "
                              f"with design ({N}, {T}, {K}, {R})")


def _secondary_from_nested(nested: NestedHistory, i: int, t: int, k: int,
                           n_runs: int, model: ModelSection) -> SecondaryRecord:
    where = f"individual {i}, occasion {t}, secondary {k}"
    observed = _code(nested.observed[i, t, k], ObsState, where)
    sample = None
    parent = int(observed)
    if model.separate_sampling:
        sample = _code(nested.sample[i, t, k], SampleState, where)
        parent = int(sample)
    elif nested.sample[i, t, k] != MISSING:
        raise DataStructureError(f"{where}: sample state present but sampling "
                                 f"is merged with capture")
    sample_load = _load_at(nested.sample_load[i, t, k], parent != NONE_CODE,
                           f"{where} sample")

    runs = []
    for r in range(n_runs):
        state = _code(nested.diag[i, t, k, r], DiagState, f"{where}, run {r}")
        run_load = _load_at(nested.diag_load[i, t, k, r],
                            state == DiagState.INFECTED, f"{where}, run {r}")
        runs.append(DiagnosticRun(state=state, load=run_load))
    if (nested.diag[i, t, k, n_runs:] != MISSING).any():
        raise DesignError(f"{where}: more diagnostic runs recorded than designed")
    return SecondaryRecord(observed=observed, sample=sample,
                           sample_load=sample_load, runs=tuple(runs))


def from_nested(nested: NestedHistory, design: Design,
                model: ModelSection) -> Dataset:
    """Rebuild trajectory records from nested arrays.

    Raises:
        DesignError: Array shapes or recorded counts disagree with the design.
        DataStructureError: A state/load pairing is impossible or a code is
            invalid.
    """
    _check_shapes(nested, design)
    individuals: List[IndividualTrajectory] = []
    for i in range(design.n_individuals):
        start = design.start_occasion(i)
        if (nested.eco[i, :start] != MISSING).any():
            raise DesignError(
                f"individual {i}: states recorded before first capture {start}"
            )
        occasions = []
        for t in range(start, design.n_primary):
            where = f"individual {i}, occasion {t}"
            eco = _code(nested.eco[i, t], EcoState, where)
            load = _load_at(nested.load[i, t], is_alive(eco), where)
            n_sec = int(design.n_secondary[i, t])
            if (nested.observed[i, t, n_sec:] != MISSING).any():
                raise DesignError(f"{where}: more secondary surveys recorded "
                                  f"than designed")
            secondaries = None
            if n_sec > 0:
                secondaries = tuple(
                    _secondary_from_nested(nested, i, t, k,
                                           int(design.n_runs[i, t, k]), model)
                    for k in range(n_sec)
                )
            occasions.append(OccasionRecord(primary=t, eco=eco, load=load,
                                            secondaries=secondaries))
        individuals.append(IndividualTrajectory(
            individual=i,
            first_capture=start if model.conditioned else None,
            occasions=tuple(occasions),
        ))
    return Dataset(design=design, individuals=individuals)


# ═══════════════════════════════════════════════════════════════════════
# LONG FORMAT
# ═══════════════════════════════════════════════════════════════════════

def long_records(nested: NestedHistory) -> np.ndarray:
    """Positive diagnostic runs as (individual, primary, secondary, run, load).

    Records are ordered by individual, primary, secondary, run.

    Raises:
        DataStructureError: If an infected run has no load or a non-infected
            run carries one.
    """
    positive = nested.diag == DiagState.INFECTED
    has_load = np.isfinite(nested.diag_load)
    if (positive & ~has_load).any():
        i, t, k, r = np.argwhere(positive & ~has_load)[0]
        raise DataStructureError(
            f"individual {i}, occasion {t}, secondary {k}, run {r}: "
            f"infected run without a load"
        )
    if (~positive & has_load).any():
        i, t, k, r = np.argwhere(~positive & has_load)[0]
        raise DataStructureError(
            f"individual {i}, occasion {t}, secondary {k}, run {r}: "
            f"load recorded for a run that did not detect infection"
        )

    idx = np.argwhere(positive)
    records = allocate_load_records(len(idx))
    for col, name in enumerate(('individual', 'primary', 'secondary', 'run')):
        records[name] = idx[:, col]
    records['load'] = nested.diag_load[positive]
    return records


def loads_from_long(records: np.ndarray,
                    shape: Tuple[int, int, int, int]) -> np.ndarray:
    """Rebuild the (N, T, K, R) run-load array from long records (NaN elsewhere)."""
    out = np.full(shape, np.nan)
    out[records['individual'], records['primary'],
        records['secondary'], records['run']] = records['load']
    return out


# ═══════════════════════════════════════════════════════════════════════
# INITIAL VALUES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class InitialValues:
    """Deterministic starting guesses for the latent layers (nested layout)."""
    eco: np.ndarray
    load: np.ndarray
    observed: np.ndarray
    sample: np.ndarray
    sample_load: np.ndarray


# Smallest load guessed for an infected individual or sample; at or below 0
# no unit is detectable and an infected outcome would be impossible.
MIN_INFECTED_LOAD = 1.0


def _mean_or(values: np.ndarray, default: float) -> float:
    finite = values[np.isfinite(values)]
    return float(finite.mean()) if finite.size else default


def initial_values(
    nested: NestedHistory,
    design: Design,
    model: ModelSection,
    rng: np.random.Generator,
) -> InitialValues:
    """Guess latent states and loads from the observed diagnostic layer.

    Only `nested.diag` and `nested.diag_load` are read. Per individual:
      - detected occasion: the highest diagnosed state (infected over
        uninfected) across its runs
      - undetected occasion between first and last detection: an alive state
        drawn uniformly
      - after the last detection: DEAD
      - before the first detection: NOT_ENTERED (recruitment models); the
        first-capture occasion counts as detected in conditioned models
    Loads: mean positive run load of the occasion (or sample), falling back
    to the dataset-wide mean positive run load. Loads behind an infected
    state or an infected sample are floored at MIN_INFECTED_LOAD.
    """
    N, T = design.n_individuals, design.n_primary
    K, R = nested.diag.shape[2], nested.diag.shape[3]
    diag = nested.diag
    overall = _mean_or(nested.diag_load[diag == DiagState.INFECTED], 0.0)

    guess = allocate_nested(N, T, K, R)
    any_pos = (diag == DiagState.INFECTED).any(axis=(2, 3))
    any_neg = (diag == DiagState.UNINFECTED).any(axis=(2, 3))
    detected = any_pos | any_neg

    for i in range(N):
        start = design.start_occasion(i)
        det_t = np.flatnonzero(detected[i, start:]) + start
        if model.conditioned:
            first = start
            last = int(det_t.max()) if det_t.size else start
        elif det_t.size:
            first, last = int(det_t.min()), int(det_t.max())
        else:
            first, last = T, T

        for t in range(start, T):
            if t < first:
                state = EcoState.NOT_ENTERED
            elif t > last:
                state = EcoState.DEAD
            elif any_pos[i, t]:
                state = EcoState.INFECTED
            elif any_neg[i, t]:
                state = EcoState.UNINFECTED
            else:
                state = EcoState(int(rng.integers(0, 2)))
            guess.eco[i, t] = state
            if is_alive(state):
                occasion_loads = nested.diag_load[i, t][diag[i, t] == DiagState.INFECTED]
                load = _mean_or(occasion_loads, overall)
                if state == EcoState.INFECTED:
                    load = max(load, MIN_INFECTED_LOAD)
                guess.load[i, t] = load
            _guess_secondaries(guess, nested, design, model, i, t, start)

    return InitialValues(eco=guess.eco, load=guess.load, observed=guess.observed,
                         sample=guess.sample, sample_load=guess.sample_load)


def _guess_secondaries(guess: NestedHistory, nested: NestedHistory,
                       design: Design, model: ModelSection,
                       i: int, t: int, start: int) -> None:
    eco = int(guess.eco[i, t])
    for k in range(int(design.n_secondary[i, t])):
        runs = nested.diag[i, t, k]
        if (runs == DiagState.INFECTED).any():
            highest = 1
        elif (runs == DiagState.UNINFECTED).any():
            highest = 0
        elif model.conditioned and t == start and k == 0:
            highest = eco
        else:
            highest = NONE_CODE
        if not is_alive(eco):
            highest = NONE_CODE

        if model.separate_sampling:
            guess.observed[i, t, k] = eco if highest != NONE_CODE else ObsState.NOT_SEEN
            guess.sample[i, t, k] = highest
        else:
            guess.observed[i, t, k] = highest
        if highest != NONE_CODE:
            sample_loads = nested.diag_load[i, t, k][runs == DiagState.INFECTED]
            sample_load = _mean_or(sample_loads, guess.load[i, t])
            if highest == SampleState.SAMPLE_INFECTED:
                sample_load = max(sample_load, MIN_INFECTED_LOAD)
            guess.sample_load[i, t, k] = sample_load


def initial_dataset(
    nested: NestedHistory,
    design: Design,
    model: ModelSection,
    rng: np.random.Generator,
) -> Dataset:
    """Complete dataset: observed diagnostic layer plus initial-value guesses."""
    init = initial_values(nested, design, model, rng)
    completed = replace(
        nested,
        eco=init.eco, load=init.load, observed=init.observed,
        sample=init.sample, sample_load=init.sample_load,
    )
    return from_nested(completed, design, model)
