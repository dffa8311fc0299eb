"""
Error taxonomy for cluster formation

- ValidationError: bad input (identical users, missing users, already
  clustered). Immediate, never retried.
- InsufficientPoolError / InsufficientResonanceError: formation preconditions
  not met. Carry diagnostic counts; nothing was persisted.
- TransientDataError: the store could not be reached for an operation that
  cannot degrade (pool retrieval, persistence). Wraps the cause.
"""
from typing import Optional


class ConstellationError(Exception):
    """Base class for all engine errors"""


class ValidationError(ConstellationError):
    """Invalid or missing input"""


class ClusterNotFoundError(ValidationError):
    """Referenced cluster does not exist"""

    def __init__(self, cluster_id: str):
        self.cluster_id = cluster_id
        super().__init__(f"Cluster {cluster_id} not found")


class InsufficientPoolError(ConstellationError):
    """Not enough eligible candidates to fill a cluster"""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            f"Candidate pool too small: {available} available, {required} required"
        )


class InsufficientResonanceError(ConstellationError):
    """Core pair resonance below the formation threshold"""

    def __init__(self, score: float, threshold: float):
        self.score = score
        self.threshold = threshold
        super().__init__(
            f"Core resonance {score:.2f} below threshold {threshold:.2f}"
        )


class TransientDataError(ConstellationError):
    """Data layer unavailable for an operation that cannot fall back"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class AdmissionConflictError(TransientDataError):
    """A member could not be marked (lost compare-and-swap) and no replacement was left"""

    def __init__(self, user_id: str, cluster_id: str):
        self.user_id = user_id
        self.cluster_id = cluster_id
        super().__init__(f"User {user_id} could not be admitted to cluster {cluster_id}")
