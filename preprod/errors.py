"""Exception taxonomy for the readiness pipeline."""
from __future__ import annotations


class PreprodError(Exception):
    """Base class for pipeline errors."""


class NotFoundError(PreprodError):
    """A stage record, staged item or task does not exist."""


class DepartmentNotFoundError(NotFoundError):
    def __init__(self, number: int):
        super().__init__(f"Department with number {number} not found")
        self.number = number


class DepartmentConfigError(PreprodError):
    """Department ordinals are not contiguous from 1 (gaps or duplicates)."""


class PreconditionError(PreprodError):
    """Sequential gating refused an evaluation.

    Carries enough detail for a human to decide what to do next without logs.
    """

    def __init__(
        self,
        message: str,
        *,
        department: str,
        previous_department: str,
        rating: float | None = None,
        threshold: float | None = None,
    ):
        super().__init__(message)
        self.department = department
        self.previous_department = previous_department
        self.rating = rating
        self.threshold = threshold


class EvaluationInProgressError(PreprodError):
    """Another submit for the same (project, department) is already running."""


class TaskServiceError(PreprodError):
    """Task service call failed (submit, status, cancel)."""

    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class LLMCallError(PreprodError):
    """LLM call failed or returned unparseable output."""

    def __init__(self, message: str, retryable: bool = False, raw_text: str | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.raw_text = raw_text


class SearchError(PreprodError):
    """Semantic search request failed."""
