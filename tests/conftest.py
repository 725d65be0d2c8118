"""
Shared pytest fixtures for Ceiling tests.
"""

import pytest

from ceiling.audit import AuditTrail
from ceiling.authorization import AuthorizationServer
from ceiling.enforcement import ResourceServer
from ceiling.issuer import CredentialIssuer
from ceiling.keys import KeyPair, generate_identity
from ceiling.kms import SigningKeyRing
from ceiling.nonce import ChallengeLedger, MemoryChallengeStore
from ceiling.tokens import StaticKeySet, TokenIssuer, TokenValidator
from ceiling.verifier import PresentationVerifier, TrustedIssuers
from ceiling.wallet import Wallet

AUDIENCE = "expense-api"


@pytest.fixture
def holder_keypair() -> KeyPair:
    """The demo holder (Alice)."""
    return generate_identity()


@pytest.fixture
def issuer_keypair() -> KeyPair:
    return generate_identity()


@pytest.fixture
def auth_keypair() -> KeyPair:
    """Authorization server identity (token signer)."""
    return generate_identity()


@pytest.fixture
def credential_issuer(issuer_keypair: KeyPair) -> CredentialIssuer:
    return CredentialIssuer(issuer_keypair)


@pytest.fixture
def wallet(holder_keypair: KeyPair, credential_issuer: CredentialIssuer) -> Wallet:
    """A wallet already holding Alice's two demo credentials."""
    wallet = Wallet(holder_keypair)
    for credential in credential_issuer.issue_demo_credentials(holder_keypair.did):
        wallet.store(credential)
    return wallet


@pytest.fixture
def trusted_issuers(credential_issuer: CredentialIssuer) -> TrustedIssuers:
    return TrustedIssuers({credential_issuer.did})


@pytest.fixture
def verifier(trusted_issuers: TrustedIssuers) -> PresentationVerifier:
    return PresentationVerifier(trusted_issuers)


@pytest.fixture
def key_ring(auth_keypair: KeyPair) -> SigningKeyRing:
    return SigningKeyRing.from_keypair(auth_keypair)


@pytest.fixture
def ledger() -> ChallengeLedger:
    return ChallengeLedger(MemoryChallengeStore(max_size=1000), ttl_seconds=300)


@pytest.fixture
def token_issuer(key_ring: SigningKeyRing, auth_keypair: KeyPair) -> TokenIssuer:
    return TokenIssuer(key_ring, auth_keypair.did, ttl_seconds=60)


@pytest.fixture
def auth_server(ledger, verifier, token_issuer) -> AuthorizationServer:
    return AuthorizationServer(ledger, verifier, token_issuer, audience=AUDIENCE, audit_trail=AuditTrail())


@pytest.fixture
def validator(key_ring: SigningKeyRing) -> TokenValidator:
    return TokenValidator(StaticKeySet(key_ring), audience=AUDIENCE)


@pytest.fixture
def resource_server(validator: TokenValidator) -> ResourceServer:
    return ResourceServer(validator, audit_trail=AuditTrail())


@pytest.fixture
def obtain_token(auth_server: AuthorizationServer, wallet: Wallet):
    """Run the full challenge -> presentation -> token exchange."""

    async def _obtain(action=None, credential_types=None):
        request = await auth_server.request_presentation(action=action)
        if credential_types is None:
            credential_types = [c["type"] for c in request.credentials_required]
        presentation = wallet.present(credential_types, request.challenge, request.domain)
        response = await auth_server.exchange(presentation.to_dict(), request.challenge, request.domain)
        return response.access_token

    return _obtain
