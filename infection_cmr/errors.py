"""Exception types for infection_cmr.

A small closed set of failure kinds propagated to callers:
  - ParameterError:     parameter-domain violation (zero posterior density)
  - DataStructureError: corrupt dataset (state/load mismatch)
  - DesignError:        inconsistent design or array shapes
  - EvaluationCancelled: early termination between individuals
"""


class ParameterError(ValueError):
    """A parameter value lies outside its domain.

    Raised at the validation boundary before any simulation or likelihood
    work, or when a rate derived from the parameters is not representable.
    Inference engines should treat it as zero posterior density.
    """


class DataStructureError(ValueError):
    """A dataset violates the structure of the observation hierarchy."""


class DesignError(ValueError):
    """Design counts or array shapes are inconsistent."""


class EvaluationCancelled(RuntimeError):
    """Simulation or likelihood evaluation was stopped between individuals."""
