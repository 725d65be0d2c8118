"""
Ceiling Signing Key Ring.

Holds the authorization server's token-signing keys. One key is active and
signs new tokens; keys retired by rotation stay published in the JWKS for a
grace period at least as long as a token lives, so a token signed just
before a rotation still validates.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from jwcrypto import jwk

from ceiling.config import MAX_TOKEN_TTL_SECONDS
from ceiling.keys import KeyPair

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "EdDSA"


@dataclass
class SigningKey:
    """
    A token-signing key.

    Attributes:
        key_id: JWK thumbprint, published as ``kid``.
        private_key_jwk: JWK JSON string of the private key.
        created_at: Unix timestamp when the key joined the ring.
        retired_at: Unix timestamp when the key stopped signing (None while active).
    """

    key_id: str
    private_key_jwk: str
    created_at: float
    retired_at: Optional[float] = None

    @property
    def key(self) -> jwk.JWK:
        return jwk.JWK.from_json(self.private_key_jwk)

    def public_jwk(self) -> Dict[str, Any]:
        public = self.key.export_public(as_dict=True)
        public.update({"kid": self.key_id, "alg": TOKEN_ALGORITHM, "use": "sig"})
        return public


def _load_signing_key(private_key_jwk: str, created_at: float) -> SigningKey:
    try:
        key = jwk.JWK.from_json(private_key_jwk)
    except Exception as e:
        raise ValueError(f"Invalid key: {e}")
    if key.get("kty") != "OKP" or key.get("crv") != "Ed25519":
        raise ValueError("Key must be Ed25519 (OKP)")
    if not key.has_private:
        raise ValueError("Signing key has no private part")
    return SigningKey(key_id=key.thumbprint(), private_key_jwk=private_key_jwk, created_at=created_at)


class SigningKeyRing:
    """
    Active signing key plus recently retired keys.

    Example:
        >>> ring = SigningKeyRing.from_keypair(keypair)
        >>> ring.active.key_id
        >>> ring.rotate()
        >>> ring.jwks()   # publishes both keys until the grace period ends
    """

    def __init__(
        self,
        private_key_jwk: Optional[str] = None,
        grace_seconds: int = MAX_TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        on_rotation: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the key ring.

        Args:
            private_key_jwk: Initial signing key (generated if omitted).
            grace_seconds: How long a retired key stays published.
            clock: Time source, in epoch seconds.
            on_rotation: Optional callback receiving the new active kid.

        Raises:
            ValueError: If the key is not an Ed25519 private key.
        """
        if grace_seconds < 0:
            raise ValueError("grace_seconds must not be negative")

        self._clock = clock
        self._grace = grace_seconds
        self._on_rotation = on_rotation
        self._retired: List[SigningKey] = []

        if private_key_jwk is None:
            private_key_jwk = jwk.JWK.generate(kty="OKP", crv="Ed25519").export_private()
        self._active = _load_signing_key(private_key_jwk, clock())

    @classmethod
    def from_keypair(cls, keypair: KeyPair, **kwargs) -> "SigningKeyRing":
        """Start a ring from a persisted service identity."""
        return cls(private_key_jwk=keypair.private_key_jwk, **kwargs)

    @property
    def active(self) -> SigningKey:
        return self._active

    @property
    def grace_seconds(self) -> int:
        return self._grace

    def rotate(self, private_key_jwk: Optional[str] = None) -> SigningKey:
        """
        Make a new key active and retire the current one.

        Args:
            private_key_jwk: The next signing key (generated if omitted).

        Returns:
            The new active key.
        """
        now = self._clock()
        if private_key_jwk is None:
            private_key_jwk = jwk.JWK.generate(kty="OKP", crv="Ed25519").export_private()
        new_key = _load_signing_key(private_key_jwk, now)

        self._active.retired_at = now
        self._retired.append(self._active)
        self._active = new_key
        self._prune(now)

        logger.info(f"Rotated token signing key, active kid={new_key.key_id}")
        if self._on_rotation:
            try:
                self._on_rotation(new_key.key_id)
            except Exception as e:
                logger.error(f"Rotation callback failed: {e}")
        return new_key

    def _prune(self, now: float) -> None:
        self._retired = [k for k in self._retired if now < k.retired_at + self._grace]

    def published_keys(self) -> List[SigningKey]:
        """Active key first, then retired keys still inside their grace period."""
        self._prune(self._clock())
        return [self._active] + list(reversed(self._retired))

    def get(self, key_id: str) -> Optional[SigningKey]:
        """Look up a published key by kid."""
        for key in self.published_keys():
            if key.key_id == key_id:
                return key
        return None

    def jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        """The public key set (``{"keys": [...]}``). Never contains private members."""
        return {"keys": [k.public_jwk() for k in self.published_keys()]}

    def jwks_json(self) -> str:
        return json.dumps(self.jwks(), sort_keys=True)

    @property
    def key_count(self) -> int:
        """Number of published keys."""
        return len(self.published_keys())
