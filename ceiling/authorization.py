"""
Ceiling Authorization Server.

Exchanges a holder-signed presentation for a short-lived, scoped token:

    consume challenge -> verify presentation -> derive grants -> narrow to intent -> mint

The challenge is consumed before anything else, so a presentation can be
tried exactly once whether or not it verifies. Every denial is written to
the audit trail before the error leaves this module, and no token is minted
on any failure path.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from ceiling import audit
from ceiling.audit import AuditTrail
from ceiling.config import Settings
from ceiling.errors import AuthorizationDenied, ReplayError
from ceiling.kms import SigningKeyRing
from ceiling.models import CredentialKind, Presentation
from ceiling.nonce import ChallengeLedger
from ceiling.scopes import derive_grants, format_grant, narrow_to_intent
from ceiling.tokens import TokenIssuer
from ceiling.verifier import PresentationVerifier, TrustedIssuers

logger = logging.getLogger(__name__)

DEFAULT_ISSUER_NAME = "Acme Corporation HR"


@dataclass(frozen=True)
class PresentationRequest:
    """What the agent forwards to the wallet."""

    challenge: str
    domain: str
    credentials_required: List[Dict[str, str]]
    expires_in: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "presentationRequest": {
                "challenge": self.challenge,
                "domain": self.domain,
                "credentialsRequired": self.credentials_required,
            },
            "expiresIn": self.expires_in,
        }


@dataclass(frozen=True)
class TokenResponse:
    """Successful exchange result (OAuth-style body)."""

    access_token: str
    expires_in: int
    scope: str
    claims: Dict[str, Any] = field(default_factory=dict)
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
            "claims": self.claims,
        }


def _iso(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


class AuthorizationServer:
    """
    Orchestrates the presentation-for-token exchange.

    Example:
        >>> server = AuthorizationServer(ledger, verifier, token_issuer, audience="expense-api")
        >>> request = await server.request_presentation(action="expense:approve")
        >>> # ... wallet signs a presentation over request.challenge ...
        >>> response = await server.exchange(vp, request.challenge, request.domain)
    """

    def __init__(
        self,
        ledger: ChallengeLedger,
        verifier: PresentationVerifier,
        token_issuer: TokenIssuer,
        audience: str,
        audit_trail: Optional[AuditTrail] = None,
        issuer_name: str = DEFAULT_ISSUER_NAME,
    ):
        self.ledger = ledger
        self.verifier = verifier
        self.token_issuer = token_issuer
        self.audience = audience
        self.audit = audit_trail or AuditTrail()
        self.issuer_name = issuer_name

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        key_ring: SigningKeyRing,
        issuer_did: str,
        ledger: Optional[ChallengeLedger] = None,
        trusted_issuers: Optional[TrustedIssuers] = None,
    ) -> "AuthorizationServer":
        """Wire an authorization server from a Settings snapshot."""
        trusted = trusted_issuers or TrustedIssuers(
            settings.trusted_issuers,
            issuer_url=settings.issuer_url,
            trust_discovered=settings.trust_discovered_issuers,
            http_timeout=settings.http_timeout,
        )
        return cls(
            ledger=ledger or ChallengeLedger(ttl_seconds=settings.nonce_ttl_seconds),
            verifier=PresentationVerifier(trusted),
            token_issuer=TokenIssuer(key_ring, issuer_did, ttl_seconds=settings.token_ttl_seconds),
            audience=settings.audience,
        )

    @property
    def trusted(self) -> TrustedIssuers:
        return self.verifier.trusted_issuers

    async def request_presentation(
        self, action: Optional[str] = None, resource: Optional[str] = None
    ) -> PresentationRequest:
        """
        Issue a challenge for one authorization attempt.

        Args:
            action: Declared intent, e.g. ``expense:approve`` (empty means all).
            resource: Audience the token will be for (defaults to the configured one).
        """
        domain = resource or self.audience
        challenge = await self.ledger.issue_challenge(domain, action or "")
        return PresentationRequest(
            challenge=challenge.nonce,
            domain=domain,
            credentials_required=challenge.credentials_required,
            expires_in=challenge.ttl,
        )

    async def exchange(
        self,
        presentation: Union[Presentation, Dict[str, Any]],
        challenge: str,
        domain: str,
    ) -> TokenResponse:
        """
        Exchange a presentation for an access token.

        Raises:
            ReplayError: The challenge is unknown, expired, used, or for another domain.
            PresentationVerificationError: Binding or signature failure.
            UntrustedIssuerError: A credential issuer is not trusted.
            ExpiredCredentialError: A credential is outside its validity window.
        """
        holder = presentation.holder if isinstance(presentation, Presentation) else None
        if holder is None and isinstance(presentation, dict):
            holder = presentation.get("holder")

        try:
            entry = await self.ledger.consume_challenge(challenge, domain)
        except ReplayError as e:
            self.audit.record(
                audit.AUTHORIZATION_DECISION,
                decision="denied",
                reason=e.reason,
                challenge=challenge,
                holderDid=holder,
            )
            raise

        try:
            verified = await self.verifier.verify(presentation, challenge, domain)
        except AuthorizationDenied as e:
            details: Dict[str, Any] = {"challenge": challenge, "holderDid": holder}
            if hasattr(e, "issuer"):
                details["issuer"] = e.issuer
            self.audit.record(
                audit.AUTHORIZATION_DECISION,
                decision="denied",
                reason=getattr(e, "reason", e.error),
                error=e.message,
                **details,
            )
            raise

        derived = derive_grants(verified.credentials)
        grants = narrow_to_intent(derived.grants, entry.requested_scope)
        minted = self.token_issuer.mint(verified.holder, domain, grants, derived.claims)
        scopes = [format_grant(g) for g in grants]

        self.audit.record(
            audit.AUTHORIZATION_DECISION,
            decision="granted",
            request_id=minted.jti,
            challenge=challenge,
            holderDid=verified.holder,
            presentationVerified=True,
            credentials=[check.to_dict() for check in verified.checks],
            requestedScope=entry.requested_scope,
            scopesGranted=scopes,
            tokenId=minted.jti,
            tokenExpiresAt=_iso(minted.expires_at),
        )
        self.audit.record(
            audit.TOKEN_ISSUED,
            request_id=minted.jti,
            tokenId=minted.jti,
            challenge=challenge,
            holderDid=verified.holder,
            scopes=scopes,
            claims=derived.claims,
            expiresAt=_iso(minted.expires_at),
        )
        logger.info(f"Issued token with scopes: {minted.scope or '(none)'}")

        claims = derived.claims
        return TokenResponse(
            access_token=minted.token,
            expires_in=minted.expires_in,
            scope=minted.scope,
            claims={
                "employee": any(
                    c.kind is CredentialKind.EMPLOYMENT for c in verified.credentials
                ),
                "employeeId": claims.get("employeeId", ""),
                "name": claims.get("name", ""),
                "approvalLimit": claims.get("approvalLimit", 0),
                "department": claims.get("department", ""),
            },
        )

    def jwks(self) -> Dict[str, Any]:
        return self.token_issuer.key_ring.jwks()

    def trusted_issuers(self) -> List[Dict[str, Any]]:
        return [
            {
                "did": did,
                "name": self.issuer_name,
                "credentialTypes": [kind.value for kind in CredentialKind],
            }
            for did in sorted(self.trusted.snapshot())
        ]

    def audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.audit.recent(limit)]

    async def reset(self) -> None:
        """Demo reset: drop outstanding challenges and the audit trail."""
        await self.ledger.clear()
        self.audit.clear()
