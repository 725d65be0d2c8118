"""
Ceiling access tokens.

Short-lived JWTs (compact JWS, EdDSA) asserting a holder's grant set to one
resource audience:

    header:  {"alg": "EdDSA", "typ": "JWT", "kid": "<thumbprint>"}
    payload: {"iss", "sub", "aud", "exp", "iat", "jti", "scope", "claims"}

The lifetime is fixed at deploy time; nothing in a request can raise it.
"""

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import httpx
from jwcrypto import jwk, jws
from jwcrypto.common import JWException, base64url_decode, json_encode

from ceiling.cache import CacheInterface, MemoryCache
from ceiling.config import (
    HTTP_TIMEOUT_SECONDS,
    JWKS_CACHE_TTL_SECONDS,
    MAX_TOKEN_TTL_SECONDS,
    TOKEN_TTL_SECONDS,
)
from ceiling.errors import (
    AuthenticationError,
    TokenAudienceError,
    TokenExpiredError,
    TokenSignatureError,
)
from ceiling.kms import TOKEN_ALGORITHM, SigningKeyRing
from ceiling.models import Grant
from ceiling.scopes import format_scope, parse_scope

logger = logging.getLogger(__name__)

TOKEN_TYPE = "JWT"


# =============================================================================
# Minting
# =============================================================================


@dataclass(frozen=True)
class MintedToken:
    """A freshly signed access token and what it asserts."""

    token: str
    jti: str
    issued_at: int
    expires_at: int
    scope: str
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def expires_in(self) -> int:
        return self.expires_at - self.issued_at


class TokenIssuer:
    """
    Mints access tokens with the active key of a SigningKeyRing.

    Example:
        >>> issuer = TokenIssuer(ring, issuer_did=auth_keypair.did, ttl_seconds=60)
        >>> minted = issuer.mint("did:jwk:...", "expense-api", grants, claims)
        >>> minted.token
        'eyJ...'
    """

    def __init__(
        self,
        key_ring: SigningKeyRing,
        issuer_did: str,
        ttl_seconds: int = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the token issuer.

        Args:
            key_ring: Signing keys; the active one signs.
            issuer_did: Value of the ``iss`` claim.
            ttl_seconds: Token lifetime.
            clock: Time source, in epoch seconds.

        Raises:
            ValueError: If the TTL is out of range or outlives the key grace period.
        """
        if not issuer_did:
            raise ValueError("TokenIssuer requires 'issuer_did'")
        if not 0 < ttl_seconds <= MAX_TOKEN_TTL_SECONDS:
            raise ValueError(f"ttl_seconds must be between 1 and {MAX_TOKEN_TTL_SECONDS}")
        if key_ring.grace_seconds < ttl_seconds:
            raise ValueError("Key ring grace period must cover the token lifetime")

        self.key_ring = key_ring
        self.issuer_did = issuer_did
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def mint(
        self,
        subject: str,
        audience: str,
        grants: Iterable[Grant],
        claims: Optional[Dict[str, Any]] = None,
    ) -> MintedToken:
        """
        Sign a token for ``subject`` valid at ``audience``.

        Args:
            subject: Holder DID.
            audience: Resource server identity.
            grants: Already-narrowed grants.
            claims: Claims snapshot copied from verified credentials.

        Returns:
            MintedToken with the compact JWS.
        """
        now = int(self._clock())
        scope = format_scope(grants)
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.issuer_did,
            "sub": subject,
            "aud": audience,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "jti": token_id,
            "scope": scope,
            "claims": dict(claims or {}),
        }

        signing_key = self.key_ring.active
        token = jws.JWS(json.dumps(payload, sort_keys=True, separators=(",", ":")))
        protected_header = {"alg": TOKEN_ALGORITHM, "typ": TOKEN_TYPE, "kid": signing_key.key_id}
        token.add_signature(signing_key.key, None, json_encode(protected_header), None)

        logger.debug(f"Minted token {token_id} for {subject[:40]}... scope='{scope}'")
        return MintedToken(
            token=token.serialize(compact=True),
            jti=token_id,
            issued_at=now,
            expires_at=payload["exp"],
            scope=scope,
            claims=payload["claims"],
        )


# =============================================================================
# Key sets
# =============================================================================


def _key_from_jwks(jwks: Dict[str, Any], kid: str) -> Optional[jwk.JWK]:
    for entry in jwks.get("keys", []):
        if not isinstance(entry, dict) or entry.get("kid") != kid:
            continue
        try:
            key = jwk.JWK(**entry)
        except Exception as e:
            logger.warning(f"Unusable key {kid} in key set: {e}")
            return None
        if key.has_private:
            logger.warning(f"Key set entry {kid} carries private material, ignoring")
            return None
        return key
    return None


class KeySetProvider(ABC):
    """Source of the authorization server's public verification keys."""

    @abstractmethod
    async def get_key(self, kid: str) -> Optional[jwk.JWK]:
        """Return the published key with this kid, or None."""
        pass


class StaticKeySet(KeySetProvider):
    """
    In-process key set.

    Reads a SigningKeyRing live, so rotation is visible immediately; a plain
    JWKS dict is used as-is.
    """

    def __init__(self, source):
        self._source = source

    async def get_key(self, kid: str) -> Optional[jwk.JWK]:
        jwks = self._source.jwks() if isinstance(self._source, SigningKeyRing) else self._source
        return _key_from_jwks(jwks, kid)


class RemoteKeySet(KeySetProvider):
    """
    Key set fetched from the authorization server's ``/auth/jwks``.

    The fetched set is cached. A kid missing from the cached set triggers a
    refresh, which is how a rotated-in key gets picked up. Refreshes are rate
    limited per missing kid, so a kid seen for the first time is always
    looked up while a repeated unknown kid cannot force a fetch per request.
    A failed fetch yields no key, so validation fails closed.

    Example:
        >>> keys = RemoteKeySet("http://127.0.0.1:3003", cache=MemoryCache())
        >>> validator = TokenValidator(keys, audience="expense-api")
    """

    def __init__(
        self,
        auth_server_url: str,
        cache: Optional[CacheInterface] = None,
        cache_ttl: int = JWKS_CACHE_TTL_SECONDS,
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        min_refresh_interval: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self._url = f"{auth_server_url.rstrip('/')}/auth/jwks"
        self._cache = cache or MemoryCache(default_ttl=cache_ttl)
        self._cache_ttl = cache_ttl
        self._http_timeout = http_timeout
        self._http_client = http_client
        self._min_refresh_interval = min_refresh_interval
        self._clock = clock
        self._missed: Dict[str, float] = {}
        self._stats = {"fetches": 0, "fetch_failures": 0}

    async def _fetch(self) -> Optional[Dict[str, Any]]:
        self._stats["fetches"] += 1
        client = self._http_client or httpx.AsyncClient(timeout=self._http_timeout)
        try:
            response = await client.get(self._url)
            response.raise_for_status()
            jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._stats["fetch_failures"] += 1
            logger.warning(f"Key set fetch failed from {self._url}: {e}")
            return None
        finally:
            if not self._http_client:
                await client.aclose()

        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            self._stats["fetch_failures"] += 1
            logger.warning(f"Malformed key set from {self._url}")
            return None

        await self._cache.set(self._url, json.dumps(jwks), self._cache_ttl)
        return jwks

    def _may_refresh(self, kid: str) -> bool:
        now = self._clock()
        self._missed = {
            k: at for k, at in self._missed.items() if now - at < self._min_refresh_interval
        }
        if kid in self._missed:
            return False
        self._missed[kid] = now
        return True

    async def get_key(self, kid: str) -> Optional[jwk.JWK]:
        cached = await self._cache.get(self._url)
        if cached is not None:
            key = _key_from_jwks(json.loads(cached), kid)
            if key is not None:
                return key
            # kid miss on a cached set: maybe a rotation happened
            if not self._may_refresh(kid):
                return None

        jwks = await self._fetch()
        if jwks is None:
            return None
        return _key_from_jwks(jwks, kid)

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()


# =============================================================================
# Validation
# =============================================================================


@dataclass(frozen=True)
class ValidatedToken:
    """A token that passed signature, expiry and audience checks."""

    subject: str
    issuer: str
    audience: Any
    jti: str
    issued_at: int
    expires_at: int
    scope: str
    grants: Tuple[Grant, ...]
    claims: Dict[str, Any] = field(default_factory=dict)


def _decode_segment(segment: str) -> Dict[str, Any]:
    value = json.loads(base64url_decode(segment))
    if not isinstance(value, dict):
        raise ValueError("segment is not a JSON object")
    return value


class TokenValidator:
    """
    Validates bearer tokens at the resource boundary.

    Checks, in order: signature against the published key set, expiry
    (``now >= exp`` is expired, no grace), audience.
    """

    def __init__(
        self,
        key_provider: KeySetProvider,
        audience: str,
        issuer: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the validator.

        Args:
            key_provider: Where verification keys come from.
            audience: This resource server's identity.
            issuer: Expected ``iss`` (not checked when None).
            clock: Time source, in epoch seconds.
        """
        self._keys = key_provider
        self.audience = audience
        self.issuer = issuer
        self._clock = clock

    async def validate(self, token: Optional[str]) -> ValidatedToken:
        """
        Validate a compact JWS token.

        Raises:
            AuthenticationError: Token missing or malformed.
            TokenSignatureError: Unknown key or bad signature.
            TokenExpiredError: Token past its ``exp``.
            TokenAudienceError: Token issued for another audience.
        """
        if not token:
            raise AuthenticationError("Missing access token")

        parts = token.split(".")
        if len(parts) != 3:
            raise AuthenticationError("Malformed access token")
        try:
            header = _decode_segment(parts[0])
        except (ValueError, TypeError) as e:
            logger.debug(f"Unreadable token header: {e}")
            raise AuthenticationError("Malformed access token")

        if header.get("alg") != TOKEN_ALGORITHM:
            logger.warning(f"Rejected token with alg={header.get('alg')!r}")
            raise TokenSignatureError("Unsupported token algorithm")

        kid = header.get("kid")
        key = await self._keys.get_key(kid) if isinstance(kid, str) else None
        if key is None:
            logger.warning(f"No published key for kid={kid!r}")
            raise TokenSignatureError("Unknown signing key")

        try:
            jws_token = jws.JWS()
            jws_token.deserialize(token)
            jws_token.verify(key, alg=TOKEN_ALGORITHM)
            claims = json.loads(jws_token.payload)
        except JWException as e:
            logger.warning(f"Token signature verification failed: {e}")
            raise TokenSignatureError("Invalid token signature")
        except (ValueError, TypeError) as e:
            logger.debug(f"Unreadable token payload: {e}")
            raise AuthenticationError("Malformed access token")

        if not isinstance(claims, dict):
            raise AuthenticationError("Malformed access token")

        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise AuthenticationError("Token has no expiry")
        if self._clock() >= exp:
            logger.info(f"Expired token {claims.get('jti')}")
            raise TokenExpiredError("Token expired")

        aud = claims.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if self.audience not in audiences:
            logger.warning(f"Token audience {aud!r} does not match {self.audience!r}")
            raise TokenAudienceError("Invalid audience")

        if self.issuer is not None and claims.get("iss") != self.issuer:
            logger.warning(f"Token issuer {claims.get('iss')!r} is not {self.issuer!r}")
            raise AuthenticationError("Invalid token issuer")

        scope = claims.get("scope") or ""
        snapshot = claims.get("claims")
        return ValidatedToken(
            subject=claims.get("sub", ""),
            issuer=claims.get("iss", ""),
            audience=aud,
            jti=claims.get("jti", ""),
            issued_at=claims.get("iat", 0),
            expires_at=exp,
            scope=scope if isinstance(scope, str) else "",
            grants=parse_scope(scope if isinstance(scope, str) else ""),
            claims=snapshot if isinstance(snapshot, dict) else {},
        )
