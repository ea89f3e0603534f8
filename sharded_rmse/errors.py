"""Exceptions raised for contract violations during an evaluation run.

Unmapped or out-of-range identifiers are *not* errors: they are skipped where
they occur. The classes below cover structural problems with the inputs the
caller assembled (partition tables, factor blocks) and always propagate.
"""

from __future__ import annotations


class EvaluationError(ValueError):
    """Base class for fatal evaluator configuration errors."""


class PartitionError(EvaluationError):
    """Partition boundaries are malformed or do not cover a column."""


class ShapeError(EvaluationError):
    """A factor block does not match the latent dimension, or an index is outside it."""
