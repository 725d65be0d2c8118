"""
Unit tests for presentation verification and the trusted issuer registry.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from ceiling.errors import (
    ExpiredCredentialError,
    PresentationVerificationError,
    UntrustedIssuerError,
)
from ceiling.issuer import CredentialIssuer
from ceiling.keys import generate_identity
from ceiling.models import Credential, build_presentation_document
from ceiling.proofs import AUTHENTICATION, sign_document
from ceiling.verifier import PresentationVerifier, TrustedIssuers, proof_verifies
from ceiling.wallet import Wallet

DOMAIN = "expense-api"


def _signed_presentation(holder_keypair, credentials, challenge="nonce-1", domain=DOMAIN):
    """Holder-signed presentation built without the wallet's checks."""
    document = build_presentation_document(holder_keypair.did, credentials)
    document["proof"] = sign_document(
        document,
        holder_keypair.key,
        holder_keypair.verification_method,
        AUTHENTICATION,
        challenge=challenge,
        domain=domain,
    )
    return document


class TestPresentationVerifier:
    """The verification pipeline."""

    @pytest.mark.asyncio
    async def test_valid_presentation(self, wallet, verifier):
        presentation = wallet.present(None, "nonce-1", DOMAIN)
        verified = await verifier.verify(presentation.to_dict(), "nonce-1", DOMAIN)

        assert verified.holder == wallet.holder
        assert len(verified.credentials) == 2
        assert all(c.signature_valid and c.issuer_trusted for c in verified.checks)
        assert verified.checks[1].to_dict()["claims"] == {"approvalLimit": 10000}

    @pytest.mark.asyncio
    async def test_verification_is_stateless(self, wallet, verifier):
        """Verifying the same presentation twice gives the same result."""
        presentation = wallet.present(None, "nonce-1", DOMAIN)
        first = await verifier.verify(presentation, "nonce-1", DOMAIN)
        second = await verifier.verify(presentation, "nonce-1", DOMAIN)
        assert first == second

    @pytest.mark.asyncio
    async def test_challenge_mismatch(self, wallet, verifier):
        presentation = wallet.present(None, "nonce-1", DOMAIN)
        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(presentation, "nonce-2", DOMAIN)
        assert exc.value.reason == "challenge_mismatch"

    @pytest.mark.asyncio
    async def test_domain_mismatch(self, wallet, verifier):
        presentation = wallet.present(None, "nonce-1", "other-api")
        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(presentation, "nonce-1", DOMAIN)
        assert exc.value.reason == "domain_mismatch"

    @pytest.mark.asyncio
    async def test_missing_proof(self, wallet, verifier):
        document = wallet.present(None, "nonce-1", DOMAIN).to_dict()
        del document["proof"]
        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(document, "nonce-1", DOMAIN)
        assert exc.value.reason == "missing_proof"

    @pytest.mark.asyncio
    async def test_malformed(self, verifier):
        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify({"holder": "did:jwk:x"}, "nonce-1", DOMAIN)
        assert exc.value.reason == "malformed_presentation"

    @pytest.mark.asyncio
    async def test_tampered_presentation(self, wallet, verifier):
        """Editing a credential inside a signed presentation breaks the holder proof."""
        document = wallet.present(None, "nonce-1", DOMAIN).to_dict()
        document["verifiableCredential"][1]["credentialSubject"]["approvalLimit"] = 1000000
        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(document, "nonce-1", DOMAIN)
        assert exc.value.reason == "holder_signature_invalid"

    @pytest.mark.asyncio
    async def test_holder_signed_by_other_key(self, wallet, verifier):
        """A proof by a key the holder does not control is rejected."""
        document = wallet.present(None, "nonce-1", DOMAIN).to_dict()
        impostor = generate_identity()
        unsigned = {k: v for k, v in document.items() if k != "proof"}
        document["proof"] = sign_document(
            unsigned, impostor.key, impostor.verification_method, AUTHENTICATION,
            challenge="nonce-1", domain=DOMAIN,
        )
        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(document, "nonce-1", DOMAIN)
        assert exc.value.reason == "holder_signature_invalid"

    @pytest.mark.asyncio
    async def test_forged_credential(self, wallet, holder_keypair, verifier):
        """A raised limit re-wrapped by the holder fails the issuer signature."""
        forged = [c.to_dict() for c in wallet.credentials()]
        forged[1]["credentialSubject"]["approvalLimit"] = 1000000
        document = _signed_presentation(holder_keypair, [Credential.from_dict(c) for c in forged])

        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(document, "nonce-1", DOMAIN)
        assert exc.value.reason == "credential_signature_invalid"

    @pytest.mark.asyncio
    async def test_no_credentials(self, holder_keypair, verifier):
        document = _signed_presentation(holder_keypair, [])
        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(document, "nonce-1", DOMAIN)
        assert exc.value.reason == "no_credentials"

    @pytest.mark.asyncio
    async def test_holder_mismatch(self, credential_issuer, holder_keypair, verifier):
        """Credentials issued to someone else cannot be presented."""
        other = generate_identity()
        credentials = credential_issuer.issue_demo_credentials(other.did)
        document = _signed_presentation(holder_keypair, credentials)

        with pytest.raises(PresentationVerificationError) as exc:
            await verifier.verify(document, "nonce-1", DOMAIN)
        assert exc.value.reason == "holder_mismatch"

    @pytest.mark.asyncio
    async def test_untrusted_issuer(self, holder_keypair, verifier):
        rogue = CredentialIssuer(generate_identity(), name="Rogue HR")
        wallet = Wallet(holder_keypair)
        for credential in rogue.issue_demo_credentials(holder_keypair.did):
            wallet.store(credential)

        with pytest.raises(UntrustedIssuerError) as exc:
            await verifier.verify(wallet.present(None, "nonce-1", DOMAIN), "nonce-1", DOMAIN)
        assert exc.value.issuer == rogue.did
        assert exc.value.reason == "untrusted_issuer"

    @pytest.mark.asyncio
    async def test_one_bad_credential_rejects_all(self, credential_issuer, holder_keypair, verifier):
        """Credentials are all-or-nothing."""
        rogue = CredentialIssuer(generate_identity())
        wallet = Wallet(holder_keypair)
        wallet.store(credential_issuer.issue_demo_credentials(holder_keypair.did)[0])
        wallet.store(rogue.issue_approver_credential(holder_keypair.did, 10000, "Finance"))

        with pytest.raises(UntrustedIssuerError):
            await verifier.verify(wallet.present(None, "nonce-1", DOMAIN), "nonce-1", DOMAIN)

    @pytest.mark.asyncio
    async def test_expired_credential(self, credential_issuer, holder_keypair, verifier):
        now = datetime.now(timezone.utc)
        wallet = Wallet(holder_keypair)
        wallet.store(
            credential_issuer.issue_approver_credential(
                holder_keypair.did, 10000, "Finance",
                valid_from=now - timedelta(days=30), valid_until=now - timedelta(days=1),
            )
        )
        with pytest.raises(ExpiredCredentialError) as exc:
            await verifier.verify(wallet.present(None, "nonce-1", DOMAIN), "nonce-1", DOMAIN)
        assert exc.value.reason == "credential_expired"

    @pytest.mark.asyncio
    async def test_not_yet_valid(self, credential_issuer, holder_keypair, verifier):
        wallet = Wallet(holder_keypair)
        wallet.store(
            credential_issuer.issue_approver_credential(
                holder_keypair.did, 10000, "Finance",
                valid_from=datetime.now(timezone.utc) + timedelta(days=1),
            )
        )
        with pytest.raises(ExpiredCredentialError) as exc:
            await verifier.verify(wallet.present(None, "nonce-1", DOMAIN), "nonce-1", DOMAIN)
        assert exc.value.reason == "credential_not_yet_valid"


class TestProofVerifies:
    """Signer binding of proofs."""

    def test_wrong_purpose(self, wallet):
        credential = wallet.credentials()[0]
        assert not proof_verifies(credential.document, credential.proof, AUTHENTICATION, credential.issuer)

    def test_wrong_signer(self, wallet):
        credential = wallet.credentials()[0]
        assert not proof_verifies(credential.document, credential.proof, "assertionMethod", wallet.holder)

    def test_missing_proof(self, wallet):
        credential = wallet.credentials()[0]
        assert not proof_verifies(credential.document, None, "assertionMethod", credential.issuer)


def _issuer_client(did=None, status=200, requests=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(str(request.url))
        if status != 200:
            return httpx.Response(status)
        return httpx.Response(200, json={"did": did, "name": "Acme Corporation HR"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestTrustedIssuers:
    """Static and discovered trust."""

    @pytest.mark.asyncio
    async def test_static_membership(self):
        trusted = TrustedIssuers({"did:jwk:a"})
        assert await trusted.is_trusted("did:jwk:a")
        assert not await trusted.is_trusted("did:jwk:b")
        assert "did:jwk:a" in trusted

    def test_add_remove(self):
        trusted = TrustedIssuers()
        trusted.add("did:jwk:a")
        assert len(trusted) == 1
        assert trusted.remove("did:jwk:a")
        assert not trusted.remove("did:jwk:a")
        assert trusted.snapshot() == frozenset()

    @pytest.mark.asyncio
    async def test_discovery_adds_issuer(self):
        requests = []
        trusted = TrustedIssuers(
            issuer_url="http://issuer.test/",
            http_client=_issuer_client("did:jwk:issuer", requests=requests),
        )
        assert await trusted.is_trusted("did:jwk:issuer")
        assert requests == ["http://issuer.test/issuer/info"]

    @pytest.mark.asyncio
    async def test_discovery_disabled(self):
        """With discovery trust off, the reported DID is not added."""
        trusted = TrustedIssuers(
            issuer_url="http://issuer.test",
            trust_discovered=False,
            http_client=_issuer_client("did:jwk:issuer"),
        )
        assert await trusted.discover() == "did:jwk:issuer"
        assert not await trusted.is_trusted("did:jwk:issuer")

    @pytest.mark.asyncio
    async def test_discovery_failure_fails_closed(self):
        trusted = TrustedIssuers(issuer_url="http://issuer.test", http_client=_issuer_client(status=500))
        assert await trusted.discover() is None
        assert not await trusted.is_trusted("did:jwk:issuer")

    @pytest.mark.asyncio
    async def test_discovery_rejects_non_did(self):
        trusted = TrustedIssuers(issuer_url="http://issuer.test", http_client=_issuer_client("not-a-did"))
        assert await trusted.discover() is None
        assert len(trusted) == 0

    @pytest.mark.asyncio
    async def test_rediscovery_rate_limited(self):
        """A miss only triggers discovery once per interval."""
        now = [1000.0]
        requests = []
        trusted = TrustedIssuers(
            issuer_url="http://issuer.test",
            http_client=_issuer_client("did:jwk:issuer", requests=requests),
            rediscover_after=30,
            clock=lambda: now[0],
        )

        assert not await trusted.is_trusted("did:jwk:other")
        assert not await trusted.is_trusted("did:jwk:other")
        assert len(requests) == 1

        now[0] += 30
        assert not await trusted.is_trusted("did:jwk:other")
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_no_issuer_url(self):
        trusted = TrustedIssuers()
        assert await trusted.discover() is None
