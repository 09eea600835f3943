"""Configuration system for infection_cmr.

Hierarchical YAML configuration with deep-merge support:
  default.yaml → scenario override → sweep/engine overrides

Sections map 1:1 to YAML top-level keys:
  simulation  — seed, worker count
  model       — variant switches (time model, recruitment, sampling layer)
  design      — occasion/survey/run counts, intervals, first captures
  parameters  — default parameter values (ModelParameters)
  numerics    — matrix-exponential tolerances

Parameter semantics depend on the time model:
  - continuous: phi1, psi12, psi21, alpha, gamma are hazards (per unit time)
  - discrete:   phi1 is a survival probability; psi12, psi21, gamma and
                alpha (baseline infected mortality) are probabilities
"""

from __future__ import annotations

import dataclasses
import math
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import yaml

from infection_cmr.errors import DesignError, ParameterError
from infection_cmr.types import Design


FloatOrList = Union[float, List[float]]


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Seeding and execution control."""
    seed: int = 42
    parallel_workers: int = 1     # 1 = serial map over individuals


@dataclass
class ModelSection:
    """Model variant switches.

    time_model: "continuous" — hazards exponentiated over (unequal) intervals
                "discrete"   — transition probabilities assembled directly
    recruitment: True  — Jolly-Seber style NOT_ENTERED state with entry
                 False — condition on first capture (Arnason-Schwarz)
    separate_sampling: True  — SampleState layer between capture and diagnosis
                       False — capture and sample-level detection merged
    """
    time_model: str = "continuous"
    recruitment: bool = False
    separate_sampling: bool = True

    @property
    def conditioned(self) -> bool:
        """True when the model conditions on first capture."""
        return not self.recruitment

    @property
    def continuous(self) -> bool:
        return self.time_model == "continuous"


@dataclass
class DesignSection:
    """Sampling design.

    n_secondary / n_runs / intervals accept a scalar (same everywhere) or a
    per-primary (per-interval) list. `unsurveyed` lists primary occasions
    with no surveys at all. `first_capture` is only read when the model
    conditions on first capture; None means every individual is first
    captured at occasion 0.
    """
    n_individuals: int = 50
    n_primary: int = 6
    n_secondary: Union[int, List[int]] = 3
    n_runs: Union[int, List[int]] = 2
    intervals: FloatOrList = 1.0
    first_capture: Optional[List[int]] = None
    unsurveyed: Optional[List[int]] = None


@dataclass
class ModelParameters:
    """Flat parameter vector consumed by simulation and likelihood.

    `p` (capture) and `gamma` (recruitment) may be scalars or per-primary
    sequences. Loads are on the log scale.
    """
    pi: float = 0.3              # entry-infection probability
    phi1: float = 0.1            # uninfected mortality hazard / survival prob
    alpha: float = 0.2           # baseline infected mortality (hazard or prob)
    beta: float = 0.3            # load slope of infected mortality
    psi12: float = 0.5           # infection gain
    psi21: float = 0.3           # infection loss
    gamma: FloatOrList = 0.2     # recruitment (hazard or per-occasion prob)
    p: FloatOrList = 0.6         # capture probability
    r_sample: float = 0.4        # per-unit-load detection, sampling layer
    fp_sample: float = 0.02      # false-positive rate, sampling layer
    r_diag: float = 0.5          # per-unit-load detection, diagnostic layer
    fp_diag: float = 0.01        # false-positive rate, diagnostic layer
    mu: float = 2.0              # population mean individual log-load
    sigma_ind: float = 1.0       # individual load dispersion
    sigma_sample: float = 0.5    # sample load dispersion
    sigma_diag: float = 0.3      # diagnostic-run load dispersion

    @classmethod
    def from_mapping(
        cls,
        values: Mapping[str, Any],
        base: Optional['ModelParameters'] = None,
    ) -> 'ModelParameters':
        """Build parameters from a flat mapping, starting from `base`.

        Raises:
            ParameterError: If the mapping names an unknown parameter.
        """
        valid = {f.name for f in dataclasses.fields(cls)}
        unknown = set(values) - valid
        if unknown:
            raise ParameterError(f"Unknown parameters: {sorted(unknown)}")
        start = dataclasses.asdict(base) if base is not None else {}
        start.update(values)
        return cls(**start)

    def capture_probability(self, t: int) -> float:
        return _per_occasion(self.p, t)

    def recruitment(self, t: int) -> float:
        return _per_occasion(self.gamma, t)


@dataclass
class NumericsSection:
    """Matrix-exponential controls.

    expm_tolerance: allowed row-sum / range deviation of the eigen
        reconstruction before falling back to scaling-and-squaring.
    eig_condition_limit: eigenvector-matrix condition number above which
        the eigen route is skipped.
    """
    expm_tolerance: float = 1e-9
    eig_condition_limit: float = 1e10


@dataclass
class SimulationConfig:
    """Complete configuration. Load from YAML via `load_config()`."""
    simulation: SimulationSection = field(default_factory=SimulationSection)
    model: ModelSection = field(default_factory=ModelSection)
    design: DesignSection = field(default_factory=DesignSection)
    parameters: ModelParameters = field(default_factory=ModelParameters)
    numerics: NumericsSection = field(default_factory=NumericsSection)


def _per_occasion(value: FloatOrList, t: int) -> float:
    if np.ndim(value) == 0:
        return float(value)
    return float(value[t])


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    section_map = {
        'simulation': SimulationSection,
        'model': ModelSection,
        'design': DesignSection,
        'parameters': ModelParameters,
        'numerics': NumericsSection,
    }
    sections = {}
    for key, cls in section_map.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _check_range(name: str, value: float, lo: float, hi: float,
                 lo_open: bool = False, hi_open: bool = False) -> None:
    if not math.isfinite(value):
        raise ParameterError(f"{name} must be finite, got {value}")
    below = value <= lo if lo_open else value < lo
    above = value >= hi if hi_open else value > hi
    if below or above:
        left = '(' if lo_open else '['
        right = ')' if hi_open else ']'
        raise ParameterError(
            f"{name} must be in {left}{lo}, {hi}{right}, got {value}"
        )


def _check_per_occasion(name: str, value: FloatOrList, n_primary: Optional[int],
                        lo: float, hi: float) -> None:
    values = np.atleast_1d(np.asarray(value, dtype=float))
    if values.ndim != 1:
        raise ParameterError(f"{name} must be a scalar or a 1-D sequence")
    if np.ndim(value) > 0 and n_primary is not None and len(values) != n_primary:
        raise ParameterError(
            f"{name} must have one value per primary occasion "
            f"({n_primary}), got {len(values)}"
        )
    for j, v in enumerate(values):
        _check_range(f"{name}[{j}]" if values.size > 1 else name, float(v), lo, hi)


def validate_parameters(
    params: ModelParameters,
    model: ModelSection,
    n_primary: Optional[int] = None,
) -> None:
    """Check every parameter against its domain.

    Checks:
      - probabilities in [0, 1], hazards non-negative (alpha strictly inside
        its domain because it enters through a log or logit)
      - per-occasion vectors sized to the design
      - detection increments r in (0, 1) and false-positive rate below r
        (the detection probability at one load unit)
      - load dispersions non-negative

    Raises:
        ParameterError: On the first violation found.
    """
    _check_range('pi', params.pi, 0.0, 1.0)
    _check_range('beta', params.beta, -math.inf, math.inf)
    _check_range('mu', params.mu, -math.inf, math.inf)

    if model.continuous:
        for name in ('phi1', 'psi12', 'psi21'):
            _check_range(name, getattr(params, name), 0.0, math.inf)
        _check_range('alpha', params.alpha, 0.0, math.inf, lo_open=True)
        if model.recruitment:
            _check_per_occasion('gamma', params.gamma, n_primary, 0.0, math.inf)
    else:
        for name in ('phi1', 'psi12', 'psi21'):
            _check_range(name, getattr(params, name), 0.0, 1.0)
        _check_range('alpha', params.alpha, 0.0, 1.0, lo_open=True, hi_open=True)
        if model.recruitment:
            _check_per_occasion('gamma', params.gamma, n_primary, 0.0, 1.0)

    _check_per_occasion('p', params.p, n_primary, 0.0, 1.0)

    for layer in ('sample', 'diag'):
        r = getattr(params, f'r_{layer}')
        fp = getattr(params, f'fp_{layer}')
        _check_range(f'r_{layer}', r, 0.0, 1.0, lo_open=True, hi_open=True)
        _check_range(f'fp_{layer}', fp, 0.0, 1.0, hi_open=True)
        if fp >= r:
            raise ParameterError(
                f"fp_{layer} ({fp}) must be < r_{layer} ({r}): false-positive "
                f"rate must stay below the true-positive rate"
            )

    for name in ('sigma_ind', 'sigma_sample', 'sigma_diag'):
        _check_range(name, getattr(params, name), 0.0, math.inf)


def validate_design(design: Design, model: ModelSection) -> None:
    """Check a design for internal consistency. Raises DesignError.

    Checks:
      - array shapes agree on (N, T, K)
      - counts non-negative, no runs on surveys that do not exist
      - intervals strictly positive, one column per transition
      - first captures in range and surveyed (conditioned models),
        or absent (recruitment models)
    """
    N, T = design.n_individuals, design.n_primary
    if T < 1:
        raise DesignError(f"n_primary must be >= 1, got {T}")
    if design.n_secondary.shape != (N, T):
        raise DesignError(
            f"n_secondary shape {design.n_secondary.shape} != ({N}, {T})"
        )
    if design.n_runs.ndim != 3 or design.n_runs.shape[:2] != (N, T):
        raise DesignError(
            f"n_runs shape {design.n_runs.shape} must be ({N}, {T}, K)"
        )
    if (design.n_secondary < 0).any() or (design.n_runs < 0).any():
        raise DesignError("survey and run counts must be non-negative")
    K = design.n_runs.shape[2]
    if N and design.n_secondary.max(initial=0) > K:
        raise DesignError(
            f"n_runs has {K} secondary columns but up to "
            f"{design.n_secondary.max()} secondaries are planned"
        )
    k_idx = np.arange(K)[None, None, :]
    beyond = k_idx >= design.n_secondary[:, :, None]
    if (design.n_runs[beyond] != 0).any():
        raise DesignError("diagnostic runs planned on secondaries that do not exist")

    n_intervals = T if model.recruitment else T - 1
    if design.intervals.shape != (N, n_intervals):
        raise DesignError(
            f"intervals shape {design.intervals.shape} != ({N}, {n_intervals})"
        )
    if design.intervals.size and (
        not np.all(np.isfinite(design.intervals)) or (design.intervals <= 0).any()
    ):
        raise DesignError("intervals must be finite and strictly positive")

    if design.first_capture.shape != (N,):
        raise DesignError(
            f"first_capture shape {design.first_capture.shape} != ({N},)"
        )
    if model.recruitment:
        if (design.first_capture != -1).any():
            raise DesignError(
                "first_capture must be -1 when recruitment is modeled"
            )
        return
    for i, fc in enumerate(design.first_capture):
        if not 0 <= fc < T:
            raise DesignError(
                f"first_capture[{i}] = {fc} outside [0, {T})"
            )
        if design.n_secondary[i, fc] < 1:
            raise DesignError(
                f"individual {i} has no survey on its first-capture "
                f"occasion {fc}"
            )


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure."""
    valid_time_models = {"continuous", "discrete"}
    if config.model.time_model not in valid_time_models:
        raise ValueError(
            f"model.time_model must be one of {valid_time_models}, "
            f"got '{config.model.time_model}'"
        )

    if config.simulation.seed < 0:
        raise ValueError("simulation.seed must be non-negative")
    if config.simulation.parallel_workers < 1:
        raise ValueError(
            f"simulation.parallel_workers must be >= 1, "
            f"got {config.simulation.parallel_workers}"
        )

    d = config.design
    if d.n_individuals < 1:
        raise ValueError("design.n_individuals must be >= 1")
    if d.n_primary < 1:
        raise ValueError("design.n_primary must be >= 1")
    if not config.model.continuous and np.ndim(d.intervals) > 0 \
            and len(set(d.intervals)) > 1:
        warnings.warn(
            "design.intervals are unequal but model.time_model is "
            "'discrete'; intervals are ignored by discrete-time models.",
            UserWarning,
            stacklevel=2,
        )
    if config.model.recruitment and d.first_capture is not None:
        warnings.warn(
            "design.first_capture is ignored when model.recruitment is True.",
            UserWarning,
            stacklevel=2,
        )

    if config.numerics.expm_tolerance <= 0:
        raise ValueError("numerics.expm_tolerance must be positive")
    if config.numerics.eig_condition_limit <= 1:
        raise ValueError("numerics.eig_condition_limit must be > 1")

    validate_parameters(config.parameters, config.model, d.n_primary)
    validate_design(build_design(d, config.model), config.model)


# ═══════════════════════════════════════════════════════════════════════
# DESIGN CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

def _per_primary(name: str, value: Union[int, float, Sequence], n: int,
                 dtype) -> np.ndarray:
    arr = np.asarray(value, dtype=dtype)
    if arr.ndim == 0:
        return np.full(n, arr, dtype=dtype)
    if arr.shape != (n,):
        raise DesignError(f"design.{name} must be a scalar or have {n} entries, "
                          f"got {arr.shape}")
    return arr


def build_design(section: DesignSection, model: ModelSection) -> Design:
    """Expand a DesignSection into per-individual design arrays."""
    N, T = section.n_individuals, section.n_primary

    n_sec = np.tile(_per_primary('n_secondary', section.n_secondary, T, np.int64), (N, 1))
    if section.unsurveyed:
        for t in section.unsurveyed:
            if not 0 <= t < T:
                raise DesignError(f"design.unsurveyed occasion {t} outside [0, {T})")
            n_sec[:, t] = 0
    K = int(n_sec.max(initial=0))

    runs_per_primary = _per_primary('n_runs', section.n_runs, T, np.int64)
    n_runs = np.zeros((N, T, K), dtype=np.int64)
    k_idx = np.arange(K)[None, None, :]
    n_runs[:] = runs_per_primary[None, :, None]
    n_runs[k_idx >= n_sec[:, :, None]] = 0

    n_intervals = T if model.recruitment else T - 1
    intervals = np.tile(
        _per_primary('intervals', section.intervals, n_intervals, np.float64),
        (N, 1),
    )

    if model.recruitment:
        first_capture = np.full(N, -1, dtype=np.int64)
    elif section.first_capture is None:
        first_capture = np.zeros(N, dtype=np.int64)
    else:
        first_capture = np.asarray(section.first_capture, dtype=np.int64)
        if first_capture.shape != (N,):
            raise DesignError(
                f"design.first_capture must have {N} entries, "
                f"got {first_capture.shape}"
            )

    return Design(
        n_primary=T,
        n_secondary=n_sec,
        n_runs=n_runs,
        intervals=intervals,
        first_capture=first_capture,
    )


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, sweep_overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
