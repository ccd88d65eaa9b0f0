"""
Exception hierarchy for the contribution consensus engine.

Hard rejections are raised. The price-conflict advisory is not an error:
it comes from a separate pre-check (see ConsensusEngine.check_conflict).
"""


class ContributionError(Exception):
    """Base class for all contribution errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ContributionError):
    """Malformed or out-of-range input. Never retried."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors) if errors else "Invalid contribution")
        self.errors = list(errors)


class DuplicateSubmissionError(ContributionError):
    """Same user, same (product, store) pair, same duplicate scope."""

    def __init__(self, message: str, existing_id: str | None = None):
        super().__init__(message)
        self.existing_id = existing_id


class RateLimitExceeded(ContributionError):
    """The submitting user exceeded one of the rate-limit thresholds."""

    def __init__(self, message: str, retry_after_seconds: int | None = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ContributionNotFound(ContributionError):
    """No contribution exists with the requested id."""


class DatastoreError(ContributionError):
    """Any failure from the entity/contribution persistence layer."""
