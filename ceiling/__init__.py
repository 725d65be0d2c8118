"""
Ceiling - credential-bound approval limits for AI agent actions.

An agent can ask for an approval, but the limit it is held to comes only
from a signed credential, verified at the authorization server and carried
in a short-lived token the resource server checks. No conversation with the
agent can raise it.
"""

__version__ = "1.0.0"

# Errors
from .errors import (
    AuthenticationError,
    AuthorizationDenied,
    CeilingError,
    CeilingExceededError,
    ExpiredCredentialError,
    InsufficientGrantError,
    InvalidStateError,
    NotFoundError,
    PresentationVerificationError,
    ReplayError,
    TokenAudienceError,
    TokenExpiredError,
    TokenSignatureError,
    UntrustedIssuerError,
    UpstreamError,
    ValidationError,
)

# Identity & data model
from .keys import KeyPair, generate_identity
from .models import Credential, CredentialKind, Grant, Presentation


# Protocol components (lazy imports keep the web/HTTP stack optional at import time)
def __getattr__(name):
    """Lazy loading of protocol components."""
    if name in ("ChallengeLedger", "MemoryChallengeStore", "RedisChallengeStore", "ChallengeReaper"):
        from . import nonce

        return getattr(nonce, name)
    elif name in ("PresentationVerifier", "TrustedIssuers", "VerifiedPresentation"):
        from . import verifier

        return getattr(verifier, name)
    elif name in ("derive_grants", "narrow_to_intent", "format_scope", "parse_scope"):
        from . import scopes

        return getattr(scopes, name)
    elif name in ("TokenIssuer", "TokenValidator", "StaticKeySet", "RemoteKeySet"):
        from . import tokens

        return getattr(tokens, name)
    elif name == "SigningKeyRing":
        from .kms import SigningKeyRing

        return SigningKeyRing
    elif name in ("MemoryCache", "RedisCache", "CacheInterface"):
        from . import cache

        return getattr(cache, name)
    elif name == "AuthorizationServer":
        from .authorization import AuthorizationServer

        return AuthorizationServer
    elif name in ("ResourceServer", "enforce_ceiling"):
        from . import enforcement

        return getattr(enforcement, name)
    elif name == "Wallet":
        from .wallet import Wallet

        return Wallet
    elif name == "CredentialIssuer":
        from .issuer import CredentialIssuer

        return CredentialIssuer
    elif name == "AuditTrail":
        from .audit import AuditTrail

        return AuditTrail
    raise AttributeError(f"module 'ceiling' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Errors
    "CeilingError",
    "ValidationError",
    "AuthorizationDenied",
    "ReplayError",
    "PresentationVerificationError",
    "UntrustedIssuerError",
    "ExpiredCredentialError",
    "AuthenticationError",
    "TokenSignatureError",
    "TokenExpiredError",
    "TokenAudienceError",
    "InsufficientGrantError",
    "CeilingExceededError",
    "NotFoundError",
    "InvalidStateError",
    "UpstreamError",
    # Identity & model
    "KeyPair",
    "generate_identity",
    "Credential",
    "CredentialKind",
    "Presentation",
    "Grant",
    # Protocol (lazy loaded)
    "ChallengeLedger",
    "MemoryChallengeStore",
    "RedisChallengeStore",
    "ChallengeReaper",
    "PresentationVerifier",
    "TrustedIssuers",
    "VerifiedPresentation",
    "derive_grants",
    "narrow_to_intent",
    "format_scope",
    "parse_scope",
    "TokenIssuer",
    "TokenValidator",
    "StaticKeySet",
    "RemoteKeySet",
    "SigningKeyRing",
    "MemoryCache",
    "RedisCache",
    "CacheInterface",
    "AuthorizationServer",
    "ResourceServer",
    "enforce_ceiling",
    "Wallet",
    "CredentialIssuer",
    "AuditTrail",
]
