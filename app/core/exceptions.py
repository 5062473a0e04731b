"""Typed exceptions for statement generation and delivery.

Every exception carries a machine-readable ``code`` so the batch report and
the API can classify failures without parsing messages.

    RoyaltyError (base)
    +-- ValidationError
    |   +-- DeliveryValidationError
    +-- UnauthorizedError
    +-- ScheduleError
    +-- CalculationError
    |   +-- ConcurrentRecoupmentError
    +-- DuplicateStatementError
    +-- DeliveryError
    +-- ArtifactError
    +-- StageTimeoutError
    +-- RepositoryUnavailableError

Per-author faults are captured in the batch report.  Only
``RepositoryUnavailableError`` aborts a running batch.
"""

from __future__ import annotations

from typing import Any, Optional


class RoyaltyError(Exception):
    """Base class for every error raised by the royalty engine."""

    code: str = "ROYALTY_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(RoyaltyError):
    """Input has the wrong shape; rejected before any work starts."""

    code = "VALIDATION_ERROR"


class DeliveryValidationError(ValidationError):
    """A statement is not eligible for delivery (no attempt was made)."""

    code = "DELIVERY_NOT_ALLOWED"


class UnauthorizedError(RoyaltyError):
    """The permission gate denied the requested operation."""

    code = "UNAUTHORIZED"


class ScheduleError(RoyaltyError):
    """A contract's rate schedule is missing or malformed."""

    code = "SCHEDULE_ERROR"

    def __init__(self, message: str, contract_id: Any = None, format: Optional[str] = None) -> None:
        self.contract_id = contract_id
        self.format = format
        super().__init__(message, contract_id=contract_id, format=format)


class CalculationError(RoyaltyError):
    """The inputs for one author cannot produce a trustworthy calculation."""

    code = "CALCULATION_ERROR"


class ConcurrentRecoupmentError(CalculationError):
    """The contract's recouped advance changed between read and write."""

    code = "CONCURRENT_RECOUPMENT"


class DuplicateStatementError(RoyaltyError):
    """A statement already exists for this contract and period."""

    code = "DUPLICATE_STATEMENT"

    def __init__(self, message: str, statement_id: Any = None) -> None:
        self.statement_id = statement_id
        super().__init__(message, statement_id=statement_id)


class DeliveryError(RoyaltyError):
    """Sending a statement failed.  Transient until the retry budget is spent."""

    code = "DELIVERY_ERROR"

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message, attempts=attempts)


class ArtifactError(RoyaltyError):
    """Rendering or storing the statement document failed."""

    code = "ARTIFACT_ERROR"


class StageTimeoutError(RoyaltyError):
    """A pipeline stage ran past its wall-clock budget."""

    code = "STAGE_TIMEOUT"

    def __init__(self, stage: str, elapsed: float, budget: float) -> None:
        self.stage = stage
        self.elapsed = elapsed
        self.budget = budget
        super().__init__(
            f"Stage '{stage}' took {elapsed:.2f}s (budget {budget:.2f}s)",
            stage=stage,
        )


class RepositoryUnavailableError(RoyaltyError):
    """The data store cannot be reached; no author-level result is trustworthy."""

    code = "REPOSITORY_UNAVAILABLE"
