"""
Ceiling error taxonomy.

Every trust-boundary rejection is an exception carrying the wire code and
HTTP status the services answer with. Services translate them in a single
exception handler; library callers can catch the family they care about.

    CeilingError
    ├── ValidationError                  400 validation_error
    ├── AuthorizationDenied              401 (exchange time)
    │   ├── ReplayError                  invalid_request
    │   ├── PresentationVerificationError invalid_grant
    │   ├── UntrustedIssuerError         invalid_grant
    │   └── ExpiredCredentialError       invalid_grant
    ├── AuthenticationError              401 unauthorized (resource time)
    │   ├── TokenSignatureError
    │   ├── TokenExpiredError
    │   └── TokenAudienceError
    ├── ForbiddenError                   403 forbidden
    │   ├── InsufficientGrantError
    │   └── CeilingExceededError
    ├── NotFoundError                    404 not_found
    ├── InvalidStateError                400 invalid_state
    └── UpstreamError                    502 issuer_unavailable
"""

from typing import Any, Dict, Optional


class CeilingError(Exception):
    """Base exception for Ceiling errors."""

    error = "error"
    status_code = 500

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Body returned to the caller. Never includes key material."""
        return {"error": self.error, "message": self.message}


class ValidationError(CeilingError):
    """The request is malformed."""

    error = "validation_error"
    status_code = 400


# =============================================================================
# Exchange-time denials (authorization server)
# =============================================================================


class AuthorizationDenied(CeilingError):
    """The authority refused to mint a token."""

    error = "invalid_grant"
    status_code = 401

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "error_description": self.message}


class ReplayError(AuthorizationDenied):
    """
    The challenge cannot be consumed.

    ``reason`` is one of ``unknown``, ``expired``, ``used`` or
    ``domain_mismatch``. It is recorded in the audit trail but never sent to
    the caller, so responses do not reveal which nonces are live.
    """

    error = "invalid_request"
    REASONS = ("unknown", "expired", "used", "domain_mismatch")

    def __init__(self, reason: str):
        if reason not in self.REASONS:
            raise ValueError(f"Unknown replay reason: {reason}")
        self.reason = reason
        super().__init__("Invalid, expired, or already used challenge")


class PresentationVerificationError(AuthorizationDenied):
    """Verifiable Presentation verification failed."""

    def __init__(self, message: str = "", reason: str = "presentation_invalid"):
        self.reason = reason
        super().__init__(message)


class UntrustedIssuerError(AuthorizationDenied):
    """Credential issuer not trusted."""

    def __init__(self, issuer: str):
        self.issuer = issuer
        self.reason = "untrusted_issuer"
        super().__init__(f"Credential issuer not trusted: {issuer}")


class ExpiredCredentialError(AuthorizationDenied):
    """Credential is outside its validity window."""

    def __init__(self, message: str = "", reason: str = "credential_expired"):
        self.reason = reason
        super().__init__(message)


# =============================================================================
# Resource-time failures (resource server)
# =============================================================================


class AuthenticationError(CeilingError):
    """Token missing or invalid."""

    error = "unauthorized"
    status_code = 401
    reason = "unauthenticated"


class TokenSignatureError(AuthenticationError):
    """Invalid token signature."""

    reason = "invalid_signature"


class TokenExpiredError(AuthenticationError):
    """Token expired."""

    reason = "token_expired"


class TokenAudienceError(AuthenticationError):
    """Invalid audience."""

    reason = "invalid_audience"


class ForbiddenError(CeilingError):
    """The token does not authorize this action."""

    error = "forbidden"
    status_code = 403
    reason = "forbidden"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "reason": self.reason, "message": self.message}


class InsufficientGrantError(ForbiddenError):
    """Missing required scope."""

    reason = "no_grant"

    def __init__(self, capability: str, available: Optional[str] = None):
        self.capability = capability
        self.available = available
        super().__init__(f"Missing required scope: {capability}")

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.available is not None:
            body["available"] = self.available
        return body


class CeilingExceededError(ForbiddenError):
    """
    The requested amount is above the signed approval ceiling.

    Both numbers are surfaced to the caller on purpose; nothing else is.
    """

    reason = "ceiling_exceeded"

    def __init__(self, ceiling, requested):
        self.ceiling = ceiling
        self.requested = requested
        super().__init__(f"Amount ${requested} exceeds your approval limit of ${ceiling}")

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["ceiling"] = self.ceiling
        body["requested"] = self.requested
        return body


class NotFoundError(CeilingError):
    """Not found."""

    error = "not_found"
    status_code = 404


class InvalidStateError(CeilingError):
    """The resource is not in a state that allows this action."""

    error = "invalid_state"
    status_code = 400


class UpstreamError(CeilingError):
    """The credential issuer is unreachable or answered with an unusable body."""

    error = "issuer_unavailable"
    status_code = 502
