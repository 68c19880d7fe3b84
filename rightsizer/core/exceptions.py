"""
Exception types raised by the right-sizer
"""
from typing import List, Optional


class RightSizerError(Exception):
    """Base error for the right-sizer"""


class NotFoundError(RightSizerError):
    """The policy no longer exists"""


class SelectorError(RightSizerError):
    """A label selector could not be converted or evaluated"""


class PolicyValidationError(RightSizerError):
    """A policy violates one or more admission rules"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class MetricsUnavailableError(RightSizerError):
    """The metrics backend could not be reached or returned an error"""


class InsufficientDataError(RightSizerError):
    """Too few samples to compute a recommendation"""

    def __init__(self, resource: str, count: int, required: int):
        self.resource = resource
        self.count = count
        self.required = required
        super().__init__(
            f"insufficient {resource} data points: {count} (minimum {required})"
        )


class StatusConflictError(RightSizerError):
    """The policy changed between read and status write"""


class WorkloadUpdateError(RightSizerError):
    """One or more workloads could not be updated"""


class ReconcileError(RightSizerError):
    """A reconcile pass failed and should be retried"""

    def __init__(self, message: str, requeue_after: Optional[float] = None):
        self.requeue_after = requeue_after
        super().__init__(message)
