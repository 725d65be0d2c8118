"""
Unit tests for the credential issuer and its HTTP client.
"""

import httpx
import pytest

from ceiling.errors import UpstreamError, ValidationError
from ceiling.issuer import DEMO_APPROVAL_LIMIT, IssuerClient
from ceiling.models import CredentialKind
from ceiling.verifier import proof_verifies


class TestCredentialIssuer:
    """Issuing and signing."""

    def test_approver_credential_signed(self, credential_issuer, holder_keypair):
        credential = credential_issuer.issue_approver_credential(holder_keypair.did, 10000, "Finance")

        assert credential.issuer == credential_issuer.did
        assert credential.id.startswith("urn:uuid:")
        assert proof_verifies(credential.document, credential.proof, "assertionMethod", credential_issuer.did)

    @pytest.mark.parametrize("limit", [0, -1, "10000", True, float("inf"), float("nan"), None])
    def test_rejects_unusable_limit(self, credential_issuer, holder_keypair, limit):
        with pytest.raises(ValidationError):
            credential_issuer.issue_approver_credential(holder_keypair.did, limit, "Finance")

    def test_fractional_limit_kept(self, credential_issuer, holder_keypair):
        credential = credential_issuer.issue_approver_credential(holder_keypair.did, 2500.5, "Finance")
        assert credential.document["credentialSubject"]["approvalLimit"] == 2500.5

    def test_requires_subject_did(self, credential_issuer):
        with pytest.raises(ValidationError):
            credential_issuer.issue_employee_credential("alice", "Alice", "EMP-1", "Analyst", "Finance")

    def test_requires_fields(self, credential_issuer, holder_keypair):
        with pytest.raises(ValidationError):
            credential_issuer.issue_employee_credential(holder_keypair.did, "", "EMP-1", "Analyst", "Finance")

    def test_demo_credentials(self, credential_issuer, holder_keypair):
        credentials = credential_issuer.issue_demo_credentials(holder_keypair.did)

        assert [c.kind for c in credentials] == [
            CredentialKind.EMPLOYMENT,
            CredentialKind.APPROVAL_AUTHORITY,
        ]
        assert credentials[0].subject.name == "Alice Johnson"
        assert credentials[1].subject.approval_limit == DEMO_APPROVAL_LIMIT

    def test_info(self, credential_issuer):
        info = credential_issuer.info()
        assert info["did"] == credential_issuer.did
        assert info["credentialTypes"] == ["EmployeeCredential", "FinanceApproverCredential"]


class TestIssuerClient:
    """HTTP client for the issuer service."""

    @pytest.mark.asyncio
    async def test_issue_demo_credentials(self, credential_issuer, holder_keypair):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/demo/issue-alice-credentials"
            credentials = credential_issuer.issue_demo_credentials(holder_keypair.did)
            return httpx.Response(200, json={"credentials": [c.to_dict() for c in credentials]})

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with IssuerClient("http://issuer.test", http_client=http_client) as client:
            credentials = await client.issue_demo_credentials(holder_keypair.did)

        assert len(credentials) == 2
        assert credentials[1]["credentialSubject"]["approvalLimit"] == 10000

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        def handler(request):
            return httpx.Response(500)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with IssuerClient("http://issuer.test", http_client=http_client) as client:
            with pytest.raises(UpstreamError):
                await client.info()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"text": "<html>maintenance</html>"},
            {"json": ["not", "an", "object"]},
            {"json": {"credentials": "none"}},
            {"json": {}},
        ],
    )
    async def test_unusable_body_raises(self, holder_keypair, body):
        def handler(request):
            return httpx.Response(200, **body)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with IssuerClient("http://issuer.test", http_client=http_client) as client:
            with pytest.raises(UpstreamError) as exc:
                await client.issue_demo_credentials(holder_keypair.did)
        assert exc.value.status_code == 502

    @pytest.mark.asyncio
    async def test_usable_without_context_manager(self, credential_issuer, monkeypatch):
        """Outside ``async with`` each call opens and closes its own client."""
        opened = []
        real_client = httpx.AsyncClient

        def handler(request):
            return httpx.Response(200, json=credential_issuer.info())

        def make_client(**kwargs):
            client = real_client(transport=httpx.MockTransport(handler), **kwargs)
            opened.append(client)
            return client

        monkeypatch.setattr(httpx, "AsyncClient", make_client)

        info = await IssuerClient("http://issuer.test").info()

        assert info["did"] == credential_issuer.did
        assert len(opened) == 1
        assert opened[0].is_closed
