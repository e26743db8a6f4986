"""
Error taxonomy for the combat engine.

Every failure that crosses the Action Gateway is one of these classes, so
the UI can tell a correctable input problem from a rule rejection, a
transient outage, or a quota signal. Each error renders to a structured
dict; the server sends that dict as the JSON error body and the HTTP
transport turns it back into the same class.
"""

from typing import Any


class CombatKeeperError(Exception):
    """Base exception for combat engine errors."""

    code = "combat_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ActionValidationError(CombatKeeperError):
    """Raised when action input is malformed or out of range."""

    code = "validation_error"
    status_code = 400


# ---------------------------------------------------------------------------
# Business-rule rejections
# ---------------------------------------------------------------------------

class RuleViolationError(CombatKeeperError):
    """Raised when a well-formed action breaks a combat rule."""

    code = "rule_violation"
    status_code = 422


class NotFoundError(RuleViolationError):
    """Raised when a referenced record does not exist."""

    code = "not_found"
    status_code = 404


class ResourceExhaustedError(RuleViolationError):
    """Raised when spending more of a pool than remains."""

    code = "resource_exhausted"
    status_code = 409


class EncounterStateError(RuleViolationError):
    """Raised when an encounter is not in a state that allows the action."""

    code = "encounter_state"
    status_code = 409


class DuplicateSubmissionError(RuleViolationError):
    """Raised when a save result was already recorded for a combatant."""

    code = "duplicate_submission"
    status_code = 409


class IdempotencyConflictError(RuleViolationError):
    """Raised when an idempotency key is reused with a different payload."""

    code = "idempotency_conflict"
    status_code = 409


# ---------------------------------------------------------------------------
# Transport-level failures
# ---------------------------------------------------------------------------

class TransientError(CombatKeeperError):
    """Raised on network, timeout, or server-busy failures."""

    code = "transient_failure"
    status_code = 503
    retryable = True


class RateLimitError(CombatKeeperError):
    """Raised when the transport reports a rate or quota limit."""

    code = "rate_limited"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, details=details)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


# ---------------------------------------------------------------------------
# Client-side failures
# ---------------------------------------------------------------------------

class ActionInFlightError(CombatKeeperError):
    """Raised when an action of the same kind is already pending."""

    code = "action_in_flight"
    status_code = 409


class ActionFailedError(CombatKeeperError):
    """Raised when an action still fails after the retry budget is spent."""

    code = "action_failed"
    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: Exception | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, details=details)
        self.attempts = attempts
        self.last_error = last_error


ERROR_CLASSES: dict[str, type[CombatKeeperError]] = {
    cls.code: cls
    for cls in (
        CombatKeeperError,
        ActionValidationError,
        RuleViolationError,
        NotFoundError,
        ResourceExhaustedError,
        EncounterStateError,
        DuplicateSubmissionError,
        IdempotencyConflictError,
        TransientError,
        RateLimitError,
        ActionInFlightError,
        ActionFailedError,
    )
}


def error_from_body(status_code: int, body: dict[str, Any] | None) -> CombatKeeperError:
    """Rebuild a typed error from a JSON error body.

    Args:
        status_code: HTTP status of the response.
        body: Decoded JSON body, or None if it was not JSON.

    Returns:
        An instance of the matching CombatKeeperError subclass.
    """
    body = body or {}
    code = body.get("error")
    message = body.get("message") or f"Request failed with status {status_code}"
    details = body.get("details")

    if status_code == 429 or code == RateLimitError.code:
        retry_after = body.get("retryAfter")
        return RateLimitError(message, retry_after=retry_after, details=details)

    cls = ERROR_CLASSES.get(code or "")
    if cls is None or cls in (ActionFailedError, CombatKeeperError):
        if status_code >= 500:
            cls = TransientError
        elif status_code == 404:
            cls = NotFoundError
        elif status_code == 400:
            cls = ActionValidationError
        else:
            cls = RuleViolationError
    return cls(message, details=details)
