"""Core data types for infection_cmr.

This module is the SINGLE SOURCE OF TRUTH for:
  - EcoState, ObsState, SampleState, DiagState enumerations
  - Per-individual trajectory records (occasion → secondary → run)
  - Design and Dataset containers
  - LOAD_RECORD_DTYPE: structured dtype of the "long" load record list
  - MISSING: discrete code for occasions/surveys/runs that were not conducted

State codes double as matrix indices. The 3-state ecological chain uses the
leading block (UNINFECTED, INFECTED, DEAD); recruitment variants append
NOT_ENTERED as row/column 3.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, List, Optional, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class EcoState(IntEnum):
    """Latent ecological state, per individual × primary occasion.

    NOT_ENTERED → UNINFECTED ⇄ INFECTED → DEAD
    DEAD is absorbing; NOT_ENTERED is never re-entered once left.
    """
    UNINFECTED  = 0
    INFECTED    = 1
    DEAD        = 2
    NOT_ENTERED = 3   # recruitment (Jolly-Seber) variants only


class ObsState(IntEnum):
    """Capture outcome, per individual × primary × secondary."""
    SEEN_UNINFECTED = 0
    SEEN_INFECTED   = 1
    NOT_SEEN        = 2


class SampleState(IntEnum):
    """Pathogen status of the collected sample (separate-sampling variants)."""
    SAMPLE_UNINFECTED = 0
    SAMPLE_INFECTED   = 1
    NO_SAMPLE         = 2


class DiagState(IntEnum):
    """Outcome of one diagnostic run on a sample."""
    UNINFECTED = 0
    INFECTED   = 1
    NO_RUN     = 2


ALIVE_STATES = frozenset({EcoState.UNINFECTED, EcoState.INFECTED})

# Discrete code for "not conducted / outside the individual's span"
MISSING = -1

# Observed, sample and diagnostic codes share the same layout:
# 0 = uninfected, 1 = infected, 2 = nothing to carry forward.
NONE_CODE = 2


def is_alive(state: int) -> bool:
    """True for UNINFECTED and INFECTED."""
    return state in ALIVE_STATES


def n_eco_states(recruitment: bool) -> int:
    """Size of the ecological chain (3, or 4 with NOT_ENTERED)."""
    return 4 if recruitment else 3


# ═══════════════════════════════════════════════════════════════════════
# TRAJECTORY RECORDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DiagnosticRun:
    """One diagnostic run. `load` is present iff state == INFECTED."""
    state: DiagState
    load: Optional[float] = None


@dataclass(frozen=True)
class SecondaryRecord:
    """One secondary survey of one individual.

    `sample` is None when capture and sampling are merged; `sample_load` is
    present iff a sample was collected.
    """
    observed: ObsState
    sample: Optional[SampleState] = None
    sample_load: Optional[float] = None
    runs: Tuple[DiagnosticRun, ...] = ()

    @property
    def detected(self) -> bool:
        return any(run.state != DiagState.NO_RUN for run in self.runs)


@dataclass(frozen=True)
class OccasionRecord:
    """One primary occasion of one individual.

    `load` is the individual log-load, present iff `eco` is alive.
    `secondaries` is None when the occasion was not surveyed.
    """
    primary: int
    eco: EcoState
    load: Optional[float] = None
    secondaries: Optional[Tuple[SecondaryRecord, ...]] = None

    @property
    def surveyed(self) -> bool:
        return self.secondaries is not None


@dataclass(frozen=True)
class IndividualTrajectory:
    """Full history of one individual, in strictly increasing primary order.

    Occasions start at the individual's start occasion (first capture, or 0
    when recruitment is modeled) and run to the last primary occasion.
    """
    individual: int
    first_capture: Optional[int]
    occasions: Tuple[OccasionRecord, ...]

    @property
    def start(self) -> int:
        return self.occasions[0].primary if self.occasions else 0

    def occasion(self, primary: int) -> Optional[OccasionRecord]:
        idx = primary - self.start
        if 0 <= idx < len(self.occasions):
            return self.occasions[idx]
        return None

    def eco_states(self) -> List[EcoState]:
        return [occ.eco for occ in self.occasions]

    def iter_runs(self) -> Iterator[Tuple[int, int, int, DiagnosticRun]]:
        """Yield (primary, secondary, run, record) for every listed run."""
        for occ in self.occasions:
            if occ.secondaries is None:
                continue
            for k, sec in enumerate(occ.secondaries):
                for r, run in enumerate(sec.runs):
                    yield occ.primary, k, r, run


# ═══════════════════════════════════════════════════════════════════════
# DESIGN & DATASET
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Design:
    """Sampling design.

    Attributes:
        n_primary: Number of primary occasions T.
        n_secondary: (N, T) int — secondary surveys per individual × primary.
            0 marks an unsurveyed occasion.
        n_runs: (N, T, K) int — diagnostic runs per secondary survey.
        intervals: (N, n_intervals) float — time between consecutive primary
            occasions (T-1 columns), or T columns when recruitment is modeled
            (column 0 is study start → first primary).
        first_capture: (N,) int — first-capture primary per individual, or -1
            when the model does not condition on first capture.
    """
    n_primary: int
    n_secondary: np.ndarray
    n_runs: np.ndarray
    intervals: np.ndarray
    first_capture: np.ndarray

    @property
    def n_individuals(self) -> int:
        return int(self.n_secondary.shape[0])

    @property
    def max_secondary(self) -> int:
        return int(self.n_runs.shape[2]) if self.n_runs.ndim == 3 else 0

    @property
    def max_runs(self) -> int:
        return int(self.n_runs.max()) if self.n_runs.size else 0

    def start_occasion(self, i: int) -> int:
        """First primary occasion of individual i's span."""
        fc = int(self.first_capture[i])
        return fc if fc >= 0 else 0

    def interval_before(self, i: int, t: int, recruitment: bool) -> float:
        """Time elapsed between the occasion preceding t and occasion t."""
        col = t if recruitment else t - 1
        return float(self.intervals[i, col])


@dataclass
class Dataset:
    """A complete set of individual trajectories under one design."""
    design: Design
    individuals: List[IndividualTrajectory] = field(default_factory=list)

    @property
    def n_individuals(self) -> int:
        return len(self.individuals)


# ═══════════════════════════════════════════════════════════════════════
# LONG RECORD DTYPE
# ═══════════════════════════════════════════════════════════════════════

LOAD_RECORD_DTYPE = np.dtype([
    ('individual', np.int32),   # individual index
    ('primary',    np.int16),   # primary occasion
    ('secondary',  np.int16),   # secondary survey within the primary
    ('run',        np.int16),   # diagnostic run within the sample
    ('load',       np.float64), # observed run log-load
])


def allocate_load_records(n: int) -> np.ndarray:
    """Allocate a zeroed array of n long-format load records."""
    return np.zeros(n, dtype=LOAD_RECORD_DTYPE)
