"""
app/domain/errors.py

Error taxonomy for statement ingestion.

Every pipeline failure carries a stable ``code`` and a ``retryable`` flag.
The step engine consults ``retryable`` to decide between backing off and
failing the instance outright.
"""

from __future__ import annotations


class PipelineError(Exception):
    """
    Base class for classified ingestion failures.
    """

    code: str = "pipeline_error"
    retryable: bool = False


class MalformedInputError(PipelineError):
    """
    Raised when an uploaded statement does not carry the expected header.
    """

    code = "malformed_input"
    retryable = False


class TransientStoreError(PipelineError):
    """
    Raised for network failures and unexpected remote store responses.
    """

    code = "transient_store_error"
    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreConflictError(PipelineError):
    """
    Raised when a conditional write targets a stale version token.
    """

    code = "store_conflict"
    retryable = False

    def __init__(self, message: str, *, path: str, expected_version_token: str | None) -> None:
        super().__init__(message)
        self.path = path
        self.expected_version_token = expected_version_token


class MergeLogicError(PipelineError):
    """
    Raised when merge input violates an invariant the parser guarantees.
    """

    code = "merge_logic_error"
    retryable = False


class StepRetryExhaustedError(PipelineError):
    """Raised when a step fails on every attempt of its retry budget.

    Attributes:
        step_name: Name of the step that gave up.
        attempts: Total number of attempts made.
        last_error: The exception raised by the final attempt.
    """

    code = "retry_exhausted"
    retryable = False

    def __init__(self, *, step_name: str, attempts: int, last_error: BaseException) -> None:
        self.step_name = step_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step '{step_name}' failed after {attempts} attempt(s). "
            f"Last error: {type(last_error).__name__}: {last_error}"
        )


class EmptyUploadError(ValueError):
    """
    Raised at trigger time when an upload has no data rows.
    """


class WorkflowInstanceNotFoundError(LookupError):
    """
    Raised when a workflow instance id does not exist.
    """
