"""infection_cmr: multistate capture-recapture with latent infection state.

Joint model of survival, infection dynamics and imperfect pathogen detection
for marked individuals under a robust sampling design:
  - Latent ecological chain (uninfected ⇄ infected → dead, optional entry)
    in discrete or continuous time with load-dependent infected mortality
  - Capture, sampling and repeated diagnostic runs with load-dependent
    detection and false positives
  - Individual, sample and run log-loads
  - Forward simulation and complete-data likelihood for MCMC engines
"""

__version__ = "0.1.0"
