"""
Ceiling key management.

Ed25519 keys as JWKs, and ``did:jwk`` identifiers derived from them.
A ``did:jwk`` embeds the public key in the identifier itself, so resolving
an issuer or holder never needs the network.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

from jwcrypto import jwk
from jwcrypto.common import base64url_decode, base64url_encode

logger = logging.getLogger(__name__)

DID_JWK_PREFIX = "did:jwk:"
PUBLIC_MEMBERS = ("crv", "kty", "x")


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 identity: private JWK, public JWK and its DID."""

    private_key_jwk: str
    public_key_jwk: str
    did: str

    @property
    def verification_method(self) -> str:
        """The key reference used in proofs (``did:jwk:...#0``)."""
        return f"{self.did}#0"

    @property
    def key(self) -> jwk.JWK:
        return jwk.JWK.from_json(self.private_key_jwk)

    @classmethod
    def from_private_jwk(cls, private_key_jwk: str) -> "KeyPair":
        """
        Rebuild a KeyPair from a stored private JWK.

        Raises:
            ValueError: If the key is not an Ed25519 private key.
        """
        try:
            key = jwk.JWK.from_json(private_key_jwk)
        except Exception as e:
            raise ValueError(f"Invalid JWK private key: {e}")
        if key.get("kty") != "OKP" or key.get("crv") != "Ed25519":
            raise ValueError("Key must be an Ed25519 key (OKP with crv=Ed25519)")
        if not key.has_private:
            raise ValueError("Key has no private part")

        public = _public_members(key)
        return cls(
            private_key_jwk=key.export_private(),
            public_key_jwk=json.dumps(public, sort_keys=True),
            did=did_from_public_jwk(public),
        )


def _public_members(key: jwk.JWK) -> dict:
    exported = key.export_public(as_dict=True)
    return {name: exported[name] for name in PUBLIC_MEMBERS}


def generate_identity() -> KeyPair:
    """Generate a fresh Ed25519 identity."""
    key = jwk.JWK.generate(kty="OKP", crv="Ed25519")
    return KeyPair.from_private_jwk(key.export_private())


# =============================================================================
# did:jwk
# =============================================================================


def did_from_public_jwk(public_jwk: Union[dict, str]) -> str:
    """Encode a public JWK as a ``did:jwk`` identifier."""
    if isinstance(public_jwk, str):
        public_jwk = json.loads(public_jwk)
    members = {name: public_jwk[name] for name in PUBLIC_MEMBERS}
    encoded = json.dumps(members, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return DID_JWK_PREFIX + base64url_encode(encoded)


def split_verification_method(verification_method: str) -> Tuple[str, str]:
    """Split ``did#fragment`` into its DID and fragment."""
    did, _, fragment = verification_method.partition("#")
    return did, fragment


def public_key_from_did(did: str) -> jwk.JWK:
    """
    Resolve a ``did:jwk`` (or one of its verification methods) to its key.

    Raises:
        ValueError: If the identifier is not a decodable Ed25519 did:jwk.
    """
    did, _ = split_verification_method(did)
    if not did.startswith(DID_JWK_PREFIX):
        raise ValueError(f"Unsupported DID method: {did}")

    try:
        members = json.loads(base64url_decode(did[len(DID_JWK_PREFIX):]))
        key = jwk.JWK(**members)
    except Exception as e:
        raise ValueError(f"Malformed did:jwk: {e}")

    if key.get("kty") != "OKP" or key.get("crv") != "Ed25519":
        raise ValueError("did:jwk does not carry an Ed25519 key")
    if key.has_private:
        raise ValueError("did:jwk must not carry private key material")
    return key


def did_document(keypair: KeyPair) -> dict:
    """A minimal DID document for publishing at ``/.well-known/did.json``."""
    method = keypair.verification_method
    return {
        "@context": ["https://www.w3.org/ns/did/v1", "https://w3id.org/security/jwk/v1"],
        "id": keypair.did,
        "verificationMethod": [
            {
                "id": method,
                "type": "JsonWebKey",
                "controller": keypair.did,
                "publicKeyJwk": json.loads(keypair.public_key_jwk),
            }
        ],
        "assertionMethod": [method],
        "authentication": [method],
    }


# =============================================================================
# Persistence
# =============================================================================


def load_or_create_keypair(path: Union[str, Path]) -> KeyPair:
    """
    Load a key pair from file or generate a new one if it doesn't exist.

    Persisting the key keeps the service DID stable across restarts.
    """
    path = Path(path)
    if path.exists():
        data = json.loads(path.read_text())
        keypair = KeyPair.from_private_jwk(json.dumps(data["privateKeyJwk"]))
        logger.debug(f"Loaded key pair {keypair.did[:32]}... from {path}")
        return keypair

    keypair = generate_identity()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"did": keypair.did, "privateKeyJwk": json.loads(keypair.private_key_jwk)}, indent=2)
    )
    path.chmod(0o600)
    logger.info(f"Generated new key pair at {path}")
    return keypair
