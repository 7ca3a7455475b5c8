class DomainError(Exception):
    """Base class for domain-specific errors."""

    pass


class BatchJobNotFoundError(DomainError):
    """Exception raised when a batch job id is unknown."""

    pass


class NoPendingDecisionError(DomainError):
    """Exception raised when a decision is submitted for a job that is not paused."""

    pass


class BatchJobConflictError(DomainError):
    """Exception raised when an operation does not fit the job's current state."""

    pass
