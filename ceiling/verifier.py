"""
Ceiling Presentation Verifier.

Checks a holder-signed presentation and every credential inside it before
any grant is derived. The pipeline short-circuits on the first failure:

    1. challenge/domain binding      -> PresentationVerificationError
    2. holder signature + binding    -> PresentationVerificationError
    3. every credential signature    -> PresentationVerificationError
    4. every issuer trusted          -> UntrustedIssuerError
    5. every credential in validity  -> ExpiredCredentialError

Credentials are all-or-nothing: one bad credential rejects the whole
presentation.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import httpx

from ceiling.config import HTTP_TIMEOUT_SECONDS
from ceiling.errors import (
    ExpiredCredentialError,
    PresentationVerificationError,
    UntrustedIssuerError,
    ValidationError,
)
from ceiling.keys import public_key_from_did, split_verification_method
from ceiling.models import Credential, Presentation
from ceiling.proofs import ASSERTION, AUTHENTICATION, verify_document

logger = logging.getLogger(__name__)


# =============================================================================
# Trusted issuers
# =============================================================================


class TrustedIssuers:
    """
    The set of issuer DIDs whose credentials are accepted.

    Optionally backed by discovery: when a DID is not yet trusted, the
    configured issuer service is asked for its DID (``GET /issuer/info``).
    Any discovery failure leaves the set unchanged, so trust is never
    assumed when it cannot be proven.

    Example:
        >>> trusted = TrustedIssuers({"did:jwk:..."})
        >>> await trusted.is_trusted("did:jwk:...")
        True
    """

    def __init__(
        self,
        issuers: Iterable[str] = (),
        issuer_url: Optional[str] = None,
        trust_discovered: bool = True,
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        rediscover_after: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the registry.

        Args:
            issuers: DIDs trusted from the start.
            issuer_url: Base URL of the issuer service used for discovery.
            trust_discovered: Whether a discovered DID becomes trusted.
            http_timeout: Timeout for the discovery request.
            http_client: Optional shared client (mainly for tests).
            rediscover_after: Minimum seconds between discovery attempts.
            clock: Time source, in epoch seconds.
        """
        self._issuers = set(issuers)
        self._issuer_url = issuer_url.rstrip("/") if issuer_url else None
        self._trust_discovered = trust_discovered
        self._http_timeout = http_timeout
        self._http_client = http_client
        self._rediscover_after = rediscover_after
        self._clock = clock
        self._last_discovery: Optional[float] = None

    def add(self, did: str) -> None:
        self._issuers.add(did)
        logger.info(f"Trusted issuer: {did}")

    def remove(self, did: str) -> bool:
        if did in self._issuers:
            self._issuers.discard(did)
            return True
        return False

    def snapshot(self) -> FrozenSet[str]:
        return frozenset(self._issuers)

    def __contains__(self, did: str) -> bool:
        return did in self._issuers

    def __len__(self) -> int:
        return len(self._issuers)

    async def discover(self) -> Optional[str]:
        """
        Ask the configured issuer service for its DID.

        Returns:
            The reported DID, or None if discovery is unavailable or failed.
        """
        if not self._issuer_url:
            return None

        self._last_discovery = self._clock()
        client = self._http_client or httpx.AsyncClient(timeout=self._http_timeout)
        try:
            response = await client.get(f"{self._issuer_url}/issuer/info")
            response.raise_for_status()
            did = response.json().get("did")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"Issuer discovery failed for {self._issuer_url}: {e}")
            return None
        finally:
            if not self._http_client:
                await client.aclose()

        if not isinstance(did, str) or not did.startswith("did:"):
            logger.warning(f"Issuer discovery returned no usable DID from {self._issuer_url}")
            return None

        if self._trust_discovered and did not in self._issuers:
            self.add(did)
        return did

    async def is_trusted(self, did: str) -> bool:
        """Membership check, attempting discovery once per interval on a miss."""
        if did in self._issuers:
            return True
        if not (self._issuer_url and self._trust_discovered):
            return False

        now = self._clock()
        if self._last_discovery is not None and now - self._last_discovery < self._rediscover_after:
            return False
        await self.discover()
        return did in self._issuers


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class CredentialCheck:
    """Per-credential outcome, recorded in the audit trail."""

    types: Tuple[str, ...]
    issuer: str
    signature_valid: bool
    issuer_trusted: bool
    within_validity: bool
    approval_limit: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": ", ".join(self.types),
            "issuer": self.issuer,
            "issuerTrusted": self.issuer_trusted,
            "signatureValid": self.signature_valid,
            "notExpired": self.within_validity,
        }
        if self.approval_limit is not None:
            data["claims"] = {"approvalLimit": self.approval_limit}
        return data


@dataclass(frozen=True)
class VerifiedPresentation:
    """A presentation that passed every check."""

    holder: str
    credentials: Tuple[Credential, ...]
    checks: Tuple[CredentialCheck, ...]


# =============================================================================
# Verifier
# =============================================================================


def _controller_of(verification_method: Any) -> Optional[str]:
    if not isinstance(verification_method, str) or "#" not in verification_method:
        return None
    did, _ = split_verification_method(verification_method)
    return did


def proof_verifies(document: Dict[str, Any], proof: Any, purpose: str, signer: str) -> bool:
    """True when ``proof`` is a ``purpose`` proof by a key controlled by ``signer``."""
    if not isinstance(proof, dict) or proof.get("proofPurpose") != purpose:
        return False
    method = proof.get("verificationMethod")
    if _controller_of(method) != signer:
        return False
    try:
        public_key = public_key_from_did(method)
    except ValueError as e:
        logger.debug(f"Cannot resolve {method}: {e}")
        return False
    return verify_document(document, proof, public_key)


class PresentationVerifier:
    """
    Verifies presentations against a challenge, a domain and the trusted
    issuer set. Stateless apart from the registry it reads.
    """

    def __init__(
        self,
        trusted_issuers: TrustedIssuers,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.trusted_issuers = trusted_issuers
        self._clock = clock

    async def verify(
        self,
        presentation: Union[Presentation, Dict[str, Any]],
        challenge: str,
        domain: str,
    ) -> VerifiedPresentation:
        """
        Run the full verification pipeline.

        Args:
            presentation: Wire presentation or parsed Presentation.
            challenge: The nonce the presentation must be bound to.
            domain: The audience the presentation must be bound to.

        Returns:
            VerifiedPresentation with the holder, credentials and per-credential checks.

        Raises:
            PresentationVerificationError: Binding, holder or credential signature failure.
            UntrustedIssuerError: A credential issuer is not trusted.
            ExpiredCredentialError: A credential is outside its validity window.
        """
        if not isinstance(presentation, Presentation):
            try:
                presentation = Presentation.from_dict(presentation)
            except ValidationError as e:
                logger.warning(f"Malformed presentation: {e.message}")
                raise PresentationVerificationError(
                    f"Malformed presentation: {e.message}", reason="malformed_presentation"
                )

        self._check_binding(presentation, challenge, domain)
        self._check_holder(presentation)
        self._check_credential_signatures(presentation.credentials)

        for credential in presentation.credentials:
            if not await self.trusted_issuers.is_trusted(credential.issuer):
                logger.warning(f"Untrusted credential issuer: {credential.issuer}")
                raise UntrustedIssuerError(credential.issuer)

        now = self._clock()
        checks: List[CredentialCheck] = []
        for credential in presentation.credentials:
            if not credential.is_within_validity(now):
                not_yet = now < credential.valid_from
                logger.warning(
                    f"Credential {'not yet valid' if not_yet else 'expired'}: "
                    f"{', '.join(credential.display_types)}"
                )
                raise ExpiredCredentialError(
                    "Credential is not yet valid" if not_yet else "Credential has expired",
                    reason="credential_not_yet_valid" if not_yet else "credential_expired",
                )
            checks.append(
                CredentialCheck(
                    types=tuple(credential.display_types),
                    issuer=credential.issuer,
                    signature_valid=True,
                    issuer_trusted=True,
                    within_validity=True,
                    approval_limit=getattr(credential.subject, "approval_limit", None),
                )
            )

        logger.info(
            f"Presentation verified for {presentation.holder[:40]}... "
            f"({len(presentation.credentials)} credential(s))"
        )
        return VerifiedPresentation(
            holder=presentation.holder,
            credentials=presentation.credentials,
            checks=tuple(checks),
        )

    def _check_binding(self, presentation: Presentation, challenge: str, domain: str) -> None:
        if presentation.proof is None:
            logger.warning("Presentation has no proof")
            raise PresentationVerificationError("Presentation is not signed", reason="missing_proof")
        if not challenge or presentation.challenge != challenge:
            logger.warning("Presentation challenge does not match the asserted challenge")
            raise PresentationVerificationError(
                "Presentation challenge mismatch", reason="challenge_mismatch"
            )
        if not domain or presentation.domain != domain:
            logger.warning("Presentation domain does not match the asserted domain")
            raise PresentationVerificationError(
                "Presentation domain mismatch", reason="domain_mismatch"
            )

    def _check_holder(self, presentation: Presentation) -> None:
        if not proof_verifies(
            presentation.document, presentation.proof, AUTHENTICATION, presentation.holder
        ):
            logger.warning(f"Holder signature invalid for {presentation.holder[:40]}...")
            raise PresentationVerificationError(
                "Verifiable Presentation verification failed", reason="holder_signature_invalid"
            )

        if not presentation.credentials:
            logger.warning("Presentation carries no credentials")
            raise PresentationVerificationError(
                "Presentation carries no credentials", reason="no_credentials"
            )

        for credential in presentation.credentials:
            subject_id = credential.subject.id
            if subject_id is not None and subject_id != presentation.holder:
                logger.warning("Credential subject is not the presentation holder")
                raise PresentationVerificationError(
                    "Credential subject does not match holder", reason="holder_mismatch"
                )

    def _check_credential_signatures(self, credentials: Iterable[Credential]) -> None:
        for credential in credentials:
            if not proof_verifies(credential.document, credential.proof, ASSERTION, credential.issuer):
                logger.warning(
                    f"Credential signature invalid: {', '.join(credential.display_types)} "
                    f"from {credential.issuer[:40]}..."
                )
                raise PresentationVerificationError(
                    "Credential signature verification failed",
                    reason="credential_signature_invalid",
                )
