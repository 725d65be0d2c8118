# ceiling/config.py
"""
Centralized configuration for Ceiling.

All configurable values are read from environment variables with sensible defaults.
Services take a ``Settings`` snapshot so tests can build their own without
touching the environment.

Usage:
    from ceiling.config import load_settings

    settings = load_settings()
    ledger = ChallengeLedger(store, ttl_seconds=settings.nonce_ttl_seconds)

Environment Variables:
    CEILING_NONCE_TTL_SECONDS: Challenge lifetime (default: 300)
    CEILING_TOKEN_TTL_SECONDS: Access token lifetime (default: 60, max: 300)
    CEILING_TRUSTED_ISSUERS: Comma-separated issuer DIDs trusted at startup
    CEILING_AUDIENCE: Resource server identity / token audience (default: expense-api)
    CEILING_ISSUER_URL: Credential issuer service, used for issuer discovery
    CEILING_AUTH_SERVER_URL: Authorization server, used for JWKS retrieval
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Final, FrozenSet, Mapping, Optional

# Default for every variable, spelled as the environment would spell it.
# Both the module constants and load_settings() read through this table.
DEFAULTS: Final[Mapping[str, str]] = {
    "CEILING_NONCE_TTL_SECONDS": "300",
    "CEILING_TOKEN_TTL_SECONDS": "60",
    "CEILING_REAP_INTERVAL": "60",
    "CEILING_AUDIENCE": "expense-api",
    "CEILING_TRUSTED_ISSUERS": "",
    "CEILING_TRUST_DISCOVERED_ISSUERS": "true",
    "CEILING_ISSUER_URL": "",
    "CEILING_AUTH_SERVER_URL": "http://127.0.0.1:3003",
    "CEILING_HTTP_TIMEOUT": "5.0",
    "CEILING_JWKS_CACHE_TTL": "60",
    "CEILING_KEY_DIR": "./keys",
    "CEILING_REDIS_URL": "",
    "CEILING_ISSUER_PORT": "3001",
    "CEILING_WALLET_PORT": "3002",
    "CEILING_AUTH_PORT": "3003",
    "CEILING_RESOURCE_PORT": "3005",
}


def _env(name: str, environ: Mapping[str, str] = os.environ) -> str:
    return environ.get(name, DEFAULTS[name])


def _flag(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


# =============================================================================
# Protocol Limits
# =============================================================================

# Challenge (nonce) lifetime: how long a presentation may be created after
# the challenge was issued.
NONCE_TTL_SECONDS: Final[int] = int(_env("CEILING_NONCE_TTL_SECONDS"))

# Access token lifetime. Deploy-time only, never taken from a request.
TOKEN_TTL_SECONDS: Final[int] = int(_env("CEILING_TOKEN_TTL_SECONDS"))

# Hard upper bound for TOKEN_TTL_SECONDS.
MAX_TOKEN_TTL_SECONDS: Final[int] = 300

# Seconds between nonce reaper runs
REAP_INTERVAL_SECONDS: Final[float] = float(_env("CEILING_REAP_INTERVAL"))

# =============================================================================
# Identities & Trust
# =============================================================================

# The resource server's own identity; tokens must carry it as `aud`
AUDIENCE: Final[str] = _env("CEILING_AUDIENCE")

# Issuer DIDs trusted from startup
TRUSTED_ISSUERS: Final[str] = _env("CEILING_TRUSTED_ISSUERS")

# Whether DIDs reported by the configured issuer endpoint become trusted
TRUST_DISCOVERED_ISSUERS: Final[bool] = _flag(_env("CEILING_TRUST_DISCOVERED_ISSUERS"))

# =============================================================================
# Service Endpoints
# =============================================================================

ISSUER_URL: Final[str] = _env("CEILING_ISSUER_URL")
AUTH_SERVER_URL: Final[str] = _env("CEILING_AUTH_SERVER_URL")

# Timeout for every outbound call (issuer discovery, JWKS fetch)
HTTP_TIMEOUT_SECONDS: Final[float] = float(_env("CEILING_HTTP_TIMEOUT"))

# How long a fetched JWKS is reused before refreshing
JWKS_CACHE_TTL_SECONDS: Final[int] = int(_env("CEILING_JWKS_CACHE_TTL"))

# Directory holding the persisted service keys
KEY_DIR: Final[str] = _env("CEILING_KEY_DIR")

# Optional Redis for the shared challenge store and key-set cache
REDIS_URL: Final[str] = _env("CEILING_REDIS_URL")

# Service ports (same layout as the reference deployment)
ISSUER_PORT: Final[int] = int(_env("CEILING_ISSUER_PORT"))
WALLET_PORT: Final[int] = int(_env("CEILING_WALLET_PORT"))
AUTH_PORT: Final[int] = int(_env("CEILING_AUTH_PORT"))
RESOURCE_PORT: Final[int] = int(_env("CEILING_RESOURCE_PORT"))


# =============================================================================
# Settings
# =============================================================================


def parse_issuer_list(value: str) -> FrozenSet[str]:
    """Split a comma-separated DID list, ignoring blanks."""
    return frozenset(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """
    Immutable snapshot of the deploy-time configuration.

    Raises:
        ValueError: If a TTL is out of range.
    """

    nonce_ttl_seconds: int = NONCE_TTL_SECONDS
    token_ttl_seconds: int = TOKEN_TTL_SECONDS
    audience: str = AUDIENCE
    trusted_issuers: FrozenSet[str] = field(
        default_factory=lambda: parse_issuer_list(TRUSTED_ISSUERS)
    )
    trust_discovered_issuers: bool = TRUST_DISCOVERED_ISSUERS
    issuer_url: Optional[str] = ISSUER_URL or None
    auth_server_url: str = AUTH_SERVER_URL
    http_timeout: float = HTTP_TIMEOUT_SECONDS
    jwks_cache_ttl: int = JWKS_CACHE_TTL_SECONDS
    reap_interval: float = REAP_INTERVAL_SECONDS
    key_dir: str = KEY_DIR
    redis_url: Optional[str] = REDIS_URL or None

    def __post_init__(self):
        if self.nonce_ttl_seconds <= 0:
            raise ValueError("nonce_ttl_seconds must be positive")
        if not 0 < self.token_ttl_seconds <= MAX_TOKEN_TTL_SECONDS:
            raise ValueError(
                f"token_ttl_seconds must be between 1 and {MAX_TOKEN_TTL_SECONDS}"
            )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ).

    Returns:
        A validated Settings instance.
    """
    env = os.environ if environ is None else environ
    return Settings(
        nonce_ttl_seconds=int(_env("CEILING_NONCE_TTL_SECONDS", env)),
        token_ttl_seconds=int(_env("CEILING_TOKEN_TTL_SECONDS", env)),
        audience=_env("CEILING_AUDIENCE", env),
        trusted_issuers=parse_issuer_list(_env("CEILING_TRUSTED_ISSUERS", env)),
        trust_discovered_issuers=_flag(_env("CEILING_TRUST_DISCOVERED_ISSUERS", env)),
        issuer_url=_env("CEILING_ISSUER_URL", env) or None,
        auth_server_url=_env("CEILING_AUTH_SERVER_URL", env),
        http_timeout=float(_env("CEILING_HTTP_TIMEOUT", env)),
        jwks_cache_ttl=int(_env("CEILING_JWKS_CACHE_TTL", env)),
        reap_interval=float(_env("CEILING_REAP_INTERVAL", env)),
        key_dir=_env("CEILING_KEY_DIR", env),
        redis_url=_env("CEILING_REDIS_URL", env) or None,
    )


# =============================================================================
# Configuration Summary (for debugging)
# =============================================================================


def print_config() -> None:
    """Print current configuration (useful for debugging)."""
    settings = load_settings()
    print("Ceiling Configuration:")
    print(f"  NONCE_TTL_SECONDS: {settings.nonce_ttl_seconds}")
    print(f"  TOKEN_TTL_SECONDS: {settings.token_ttl_seconds}")
    print(f"  AUDIENCE:          {settings.audience}")
    print(f"  TRUSTED_ISSUERS:   {', '.join(sorted(settings.trusted_issuers)) or '-'}")
    print(f"  ISSUER_URL:        {settings.issuer_url or '-'}")
    print(f"  AUTH_SERVER_URL:   {settings.auth_server_url}")
    print(f"  REDIS_URL:         {settings.redis_url or '-'}")


if __name__ == "__main__":
    print_config()
