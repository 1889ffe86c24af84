"""
Custom exception hierarchy for orgguard.

Structured error handling with clear categories:
- Authorization failures (always surfaced as "not found")
- Deployment mode rejections (the command does not exist in this mode)
- Input validation errors (raised before any side effect)
- Sensitive-operation credential failures
- Billing / gateway failures (business vs. processor errors)
- License failures
- Storage failures (fatal to the request, never retried)
- Invariant violations (e.g. removing the last owner)

Usage:
    from orgguard.exceptions import GatewayError, InvalidInputError

    try:
        secret = await gateway.adjust_seats(org, plan, additional_seats)
    except stripe.StripeError as e:
        raise GatewayError(str(e), code=e.code, service="stripe") from e
"""

from __future__ import annotations

from typing import Optional

NOT_FOUND_MESSAGE = "Resource not found."


class OrgGuardError(Exception):
    """
    Base exception for all orgguard errors.

    All custom exceptions inherit from this, so you can catch
    `OrgGuardError` to handle any domain-specific failure.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ── Lookup / Authorization ─────────────────────────────────────────


class NotFoundError(OrgGuardError):
    """Raised when an organization or record does not exist."""

    def __init__(
        self,
        message: str = NOT_FOUND_MESSAGE,
        *,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)


class AuthorizationDenied(NotFoundError):
    """
    Raised when the caller lacks the role a command requires.

    Deliberately indistinguishable from NotFoundError: same message,
    same base class, no details. Callers must not be able to tell
    "exists but forbidden" apart from "does not exist".
    """

    def __init__(self) -> None:
        super().__init__(NOT_FOUND_MESSAGE)


class AuthenticationRequired(OrgGuardError):
    """Raised when the caller identity cannot be resolved to a user."""


# ── Deployment Mode ────────────────────────────────────────────────


class ModeNotSupported(OrgGuardError):
    """
    Raised when a command is unavailable in the current deployment mode.

    The command simply does not exist in this mode; this is not a
    business error.
    """

    def __init__(
        self,
        message: str = "NotSupported",
        *,
        command: Optional[str] = None,
        mode: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.command = command
        self.mode = mode


# ── Validation ─────────────────────────────────────────────────────


class InvalidInputError(OrgGuardError):
    """
    Raised for malformed or out-of-range input (bad ids, oversized
    import batches, zero adjustments).

    Always raised before any side effect is applied.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.field = field


class SensitiveCheckFailed(InvalidInputError):
    """
    Raised when the re-verified credential for a sensitive command is wrong.

    By the time this is raised the guard has already consumed its fixed
    failure delay.
    """

    def __init__(self) -> None:
        super().__init__("Invalid password.", field="master_password_hash")


# ── Billing ────────────────────────────────────────────────────────


class BillingError(OrgGuardError):
    """
    Business-level billing failure (plan does not allow seats, seats
    below occupancy, subscription missing, ...).

    Distinct from GatewayError, which represents the payment processor
    itself rejecting or failing a call.
    """


class SubscriptionEnded(BillingError):
    """Raised when reinstating a subscription whose billing period has ended."""


class GatewayError(OrgGuardError):
    """
    Raised when the external payment processor rejects or fails a call.

    Never retried by the core.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        service: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.code = code
        self.service = service


# ── Licensing ──────────────────────────────────────────────────────


class InvalidLicense(OrgGuardError):
    """Raised when a license fails signature, expiry or binding checks."""


# ── Storage / Consistency ──────────────────────────────────────────


class StorageUnavailable(OrgGuardError):
    """
    Raised when the persistence collaborator cannot serve a request.

    Fatal to the request; the core neither suppresses nor retries it.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.operation = operation


class ConflictError(OrgGuardError):
    """Raised when an optimistic-concurrency check loses a race."""


class InvariantViolation(OrgGuardError):
    """
    Raised when an operation would break a domain invariant, such as
    leaving an organization without a confirmed owner.

    Always raised before any mutation is applied.
    """
