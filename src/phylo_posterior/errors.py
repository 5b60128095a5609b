# src/phylo_posterior/errors.py
"""
Exceptions raised while combining chains and summarising trajectories.

- ChainLoadError: one chain's source could not be read. Callers drop the chain
  and carry on with the rest of the batch.
- ValidationError: the inputs as a whole are unusable (no chains left, unpaired
  log/trajectory lists, wrong date types, mismatched time axes). Fatal.
- StatisticalDegeneracyError: a hypothesis test cannot be evaluated (zero
  variance, zero effective sample size). Fatal.
"""


class ChainLoadError(OSError):
    """A chain's log or trajectory file is missing, unreadable or lacks a required column."""

    def __init__(self, source, reason):
        self.source = source
        self.reason = reason
        super().__init__(f"Could not load chain from {source!r}: {reason}")


class ValidationError(ValueError):
    pass


class StatisticalDegeneracyError(ArithmeticError):
    pass
