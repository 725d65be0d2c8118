"""
Ceiling document proofs - the Sign/Verify primitive.

Signs JSON documents (credentials, presentations) with Ed25519 and attaches
a Data Integrity style proof object:

    {
        "type": "DataIntegrityProof",
        "cryptosuite": "eddsa-jcs-2022",
        "created": "2026-01-01T00:00:00Z",
        "verificationMethod": "did:jwk:...#0",
        "proofPurpose": "authentication",
        "challenge": "...",          # presentations only
        "domain": "expense-api",     # presentations only
        "proofValue": "u..."
    }

The signing input is ``sha256(canonical(proof options)) || sha256(canonical(document))``
where the proof options are every proof member except ``proofValue``. The
challenge and domain are therefore covered by the signature.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from jwcrypto import jwk
from jwcrypto.common import base64url_decode, base64url_encode

logger = logging.getLogger(__name__)

PROOF_TYPE = "DataIntegrityProof"
CRYPTOSUITE = "eddsa-jcs-2022"

ASSERTION = "assertionMethod"
AUTHENTICATION = "authentication"

# Multibase prefix for base64url without padding
MULTIBASE_BASE64URL = "u"


def canonicalize(document: Any) -> bytes:
    """Canonical JSON: sorted keys, no insignificant whitespace, UTF-8."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def utc_timestamp(when: Optional[datetime] = None) -> str:
    """ISO 8601 UTC timestamp with a ``Z`` suffix, second precision."""
    when = when or datetime.now(timezone.utc)
    return when.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _signing_input(document: Dict[str, Any], options: Dict[str, Any]) -> bytes:
    unsigned = {k: v for k, v in document.items() if k != "proof"}
    return hashlib.sha256(canonicalize(options)).digest() + hashlib.sha256(
        canonicalize(unsigned)
    ).digest()


def sign_document(
    document: Dict[str, Any],
    key: jwk.JWK,
    verification_method: str,
    purpose: str,
    challenge: Optional[str] = None,
    domain: Optional[str] = None,
    created: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Sign a document and return its proof object (the document is not modified).

    Args:
        document: The JSON document to sign. An existing ``proof`` member is ignored.
        key: Ed25519 private JWK.
        verification_method: DID URL of the signing key.
        purpose: ``assertionMethod`` for credentials, ``authentication`` for presentations.
        challenge: Nonce to bind into the proof.
        domain: Intended audience to bind into the proof.
        created: Override for the proof timestamp.

    Returns:
        The proof dict, ready to be stored under ``document["proof"]``.
    """
    options: Dict[str, Any] = {
        "type": PROOF_TYPE,
        "cryptosuite": CRYPTOSUITE,
        "created": created or utc_timestamp(),
        "verificationMethod": verification_method,
        "proofPurpose": purpose,
    }
    if challenge is not None:
        options["challenge"] = challenge
    if domain is not None:
        options["domain"] = domain

    signature = key.get_op_key("sign").sign(_signing_input(document, options))
    return {**options, "proofValue": MULTIBASE_BASE64URL + base64url_encode(signature)}


def verify_document(document: Dict[str, Any], proof: Dict[str, Any], public_key: jwk.JWK) -> bool:
    """
    Verify a document's proof with the given public key.

    Returns:
        True if the signature is valid. Malformed proofs return False.
    """
    try:
        if proof.get("type") != PROOF_TYPE or proof.get("cryptosuite") != CRYPTOSUITE:
            return False

        proof_value = proof.get("proofValue", "")
        if not proof_value.startswith(MULTIBASE_BASE64URL):
            return False

        signature = base64url_decode(proof_value[len(MULTIBASE_BASE64URL):])
        options = {k: v for k, v in proof.items() if k != "proofValue"}
        public_key.get_op_key("verify").verify(signature, _signing_input(document, options))
        return True

    except InvalidSignature:
        return False
    except Exception as e:
        logger.debug(f"Proof verification error: {e}")
        return False
