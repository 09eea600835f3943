"""Seeded RNG factory for reproducible simulations.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - Statistical independence between per-individual streams
  - Bit-exact replay with the same master seed, whatever the worker count
  - Adding individuals doesn't affect existing individuals' streams
"""

from __future__ import annotations

from typing import Dict

import numpy as np


def create_rng_hierarchy(
    master_seed: int,
    n_individuals: int,
) -> Dict[str, np.random.Generator]:
    """Create independent RNG streams for each individual + global operations.

    Streams created:
      - 'global':  Dataset-level operations (initial-value guesses, etc.)
      - 'ind_0' .. 'ind_{n-1}': Per-individual trajectory streams

    Args:
        master_seed: Master RNG seed (non-negative integer).
        n_individuals: Number of individuals.

    Returns:
        Dictionary mapping stream names to numpy Generator instances.

    Example:
        >>> rngs = create_rng_hierarchy(42, n_individuals=10)
        >>> rngs['ind_3'].random()  # reproducible
    """
    ss = np.random.SeedSequence(master_seed)
    child_seeds = ss.spawn(n_individuals + 1)

    rngs: Dict[str, np.random.Generator] = {
        'global': np.random.Generator(np.random.PCG64(child_seeds[0])),
    }
    for i in range(n_individuals):
        rngs[f'ind_{i}'] = np.random.Generator(
            np.random.PCG64(child_seeds[1 + i])
        )
    return rngs


def get_individual_rng(
    rngs: Dict[str, np.random.Generator],
    individual: int,
) -> np.random.Generator:
    """Get the RNG stream for a specific individual.

    Raises:
        KeyError: If the individual doesn't have a stream.
    """
    key = f'ind_{individual}'
    if key not in rngs:
        n = sum(1 for k in rngs if k.startswith('ind_'))
        raise KeyError(
            f"No RNG stream for individual {individual}. "
            f"Available individuals: 0–{n - 1}"
        )
    return rngs[key]
