"""
rally.errors — Error Taxonomy
==============================

Every failure the engine reports to a caller is one of these.  The
``retryable`` flag is what the job worker looks at: retryable errors go
back on the queue with backoff, everything else is discarded and logged.

The HTTP layer maps each ``code`` to a status (see ``rally.api.main``).
"""

from __future__ import annotations


class RallyError(Exception):
    """Base class for all engine errors."""

    code = "rally_error"
    retryable = False

    def __init__(self, message: str = "", **context) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.context}


# ---------------------------------------------------------------------------
# Permanent — surfaced to the caller, never retried
# ---------------------------------------------------------------------------
class ValidationError(RallyError):
    """Malformed input (bad window, negative quantity, unknown group…)."""

    code = "validation_error"


class NotFoundError(RallyError):
    """Referenced challenge or participant does not exist."""

    code = "not_found"


class StateViolation(RallyError):
    """An illegal lifecycle transition was attempted."""

    code = "state_violation"

    def __init__(self, current: str, target: str, message: str = "") -> None:
        super().__init__(
            message or f"Cannot transition challenge from '{current}' to '{target}'",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class BusinessRuleError(RallyError):
    """A well-formed request the current challenge state does not allow."""

    code = "business_rule"


class AlreadyEnrolled(BusinessRuleError):
    code = "already_enrolled"


class ChallengeNotJoinable(BusinessRuleError):
    code = "challenge_not_joinable"


class ChallengeNotActive(BusinessRuleError):
    code = "challenge_not_active"


class NotEnrolled(BusinessRuleError):
    code = "not_enrolled"


# ---------------------------------------------------------------------------
# Transient — retried by the scheduler, "try again" for synchronous callers
# ---------------------------------------------------------------------------
class ConcurrentModification(RallyError):
    """The stored version changed between read and write."""

    code = "concurrent_modification"
    retryable = True


class TransientInfrastructureError(RallyError):
    """Store or queue temporarily unavailable."""

    code = "infrastructure_unavailable"
    retryable = True


class JobTimeout(TransientInfrastructureError):
    """A job ran past its execution timeout."""

    code = "job_timeout"
