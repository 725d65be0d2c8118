"""
Ceiling Credential Issuer.

Issues and signs the two credential kinds the authorization server maps to
grants. The issuer is a collaborator, not the trust anchor: whether its
credentials count is decided by the authorization server's trusted-issuer
set.

Example:
    >>> issuer = CredentialIssuer(generate_identity())
    >>> vc = issuer.issue_approver_credential(holder_did, approval_limit=10000, department="Finance")
    >>> vc.subject.approval_limit
    10000
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ceiling.config import HTTP_TIMEOUT_SECONDS
from ceiling.errors import UpstreamError, ValidationError
from ceiling.keys import KeyPair, did_document
from ceiling.models import (
    ApproverSubject,
    Credential,
    CredentialKind,
    EmployeeSubject,
    build_credential_document,
)
from ceiling.proofs import ASSERTION, sign_document, utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_ISSUER_NAME = "Acme Corporation HR"

# Demo holder profile
DEMO_EMPLOYEE = {
    "name": "Alice Johnson",
    "employee_id": "EMP-001",
    "job_title": "Senior Financial Analyst",
    "department": "Finance",
}
DEMO_APPROVAL_LIMIT = 10000


def _require_did(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.startswith("did:"):
        raise ValidationError(f"{field_name} is required and must be a valid DID")
    return value


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string")
    return value


class CredentialIssuer:
    """Signs credentials with the issuer's Ed25519 key (assertion purpose)."""

    def __init__(self, keypair: KeyPair, name: str = DEFAULT_ISSUER_NAME):
        self.keypair = keypair
        self.name = name

    @property
    def did(self) -> str:
        return self.keypair.did

    @property
    def organization(self) -> str:
        return self.name[: -len(" HR")] if self.name.endswith(" HR") else self.name

    def _issue(
        self,
        kind: CredentialKind,
        subject,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
    ) -> Credential:
        document = build_credential_document(
            kind,
            issuer=self.did,
            subject=subject,
            valid_from=utc_timestamp(valid_from),
            valid_until=utc_timestamp(valid_until) if valid_until else None,
            credential_id=f"urn:uuid:{uuid.uuid4()}",
        )
        document["proof"] = sign_document(
            document, self.keypair.key, self.keypair.verification_method, ASSERTION
        )
        logger.info(f"Issued {kind.value} for {subject.id[:40]}...")
        return Credential.from_dict(document)

    def issue_employee_credential(
        self,
        subject_did: str,
        name: str,
        employee_id: str,
        job_title: str,
        department: str,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
    ) -> Credential:
        """
        Issue an EmployeeCredential.

        Raises:
            ValidationError: If any field is missing or malformed.
        """
        subject = EmployeeSubject(
            id=_require_did(subject_did, "subjectDid"),
            name=_require_text(name, "name"),
            employee_id=_require_text(employee_id, "employeeId"),
            job_title=_require_text(job_title, "jobTitle"),
            department=_require_text(department, "department"),
            organization=self.organization,
        )
        return self._issue(CredentialKind.EMPLOYMENT, subject, valid_from, valid_until)

    def issue_approver_credential(
        self,
        subject_did: str,
        approval_limit,
        department: str,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
    ) -> Credential:
        """
        Issue a FinanceApproverCredential carrying the approval ceiling.

        Args:
            subject_did: Holder DID.
            approval_limit: Positive, finite number; signed as given.
            department: Department of the approver.
            valid_from: Start of validity (defaults to now).
            valid_until: Optional end of validity.

        Raises:
            ValidationError: If the limit is not a positive number or a field is missing.
        """
        if (
            isinstance(approval_limit, bool)
            or not isinstance(approval_limit, (int, float))
            or not math.isfinite(approval_limit)
            or approval_limit <= 0
        ):
            raise ValidationError("approvalLimit must be a positive number")

        subject = ApproverSubject(
            id=_require_did(subject_did, "subjectDid"),
            approval_limit=approval_limit,
            department=_require_text(department, "department"),
        )
        return self._issue(CredentialKind.APPROVAL_AUTHORITY, subject, valid_from, valid_until)

    def issue_demo_credentials(self, holder_did: str) -> List[Credential]:
        """Employee and approver credentials for the demo holder."""
        holder_did = _require_did(holder_did, "holderDid")
        return [
            self.issue_employee_credential(holder_did, **DEMO_EMPLOYEE),
            self.issue_approver_credential(
                holder_did, DEMO_APPROVAL_LIMIT, DEMO_EMPLOYEE["department"]
            ),
        ]

    def info(self) -> Dict[str, Any]:
        """Issuer metadata, used for trust discovery."""
        return {
            "did": self.did,
            "name": self.name,
            "credentialTypes": [kind.value for kind in CredentialKind],
        }

    def did_document(self) -> Dict[str, Any]:
        return did_document(self.keypair)


class IssuerClient:
    """
    Async HTTP client for the issuer service.

    Example:
        >>> async with IssuerClient("http://127.0.0.1:3001") as client:
        ...     credentials = await client.issue_demo_credentials(holder_did)
    """

    def __init__(
        self,
        base_url: str,
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._http_timeout = http_timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self):
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._http_timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_client and self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        client = self._http_client or httpx.AsyncClient(timeout=self._http_timeout)
        url = f"{self._base_url}{path}"
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Issuer request {method} {url} failed: {e}")
            raise UpstreamError("Credential issuer unreachable")
        finally:
            if client is not self._http_client:
                await client.aclose()

        if not isinstance(body, dict):
            logger.warning(f"Issuer returned a non-object body from {url}")
            raise UpstreamError("Credential issuer returned an unexpected response")
        return body

    async def info(self) -> Dict[str, Any]:
        return await self._request("GET", "/issuer/info")

    async def issue_demo_credentials(self, holder_did: str) -> List[Dict[str, Any]]:
        """
        Request the demo credentials for ``holder_did``.

        Raises:
            UpstreamError: The issuer is unreachable, refuses, or answers
                without a ``credentials`` list.
        """
        body = await self._request(
            "POST", "/demo/issue-alice-credentials", json={"holderDid": holder_did}
        )
        credentials = body.get("credentials")
        if not isinstance(credentials, list) or not all(isinstance(c, dict) for c in credentials):
            logger.warning("Issuer response carries no credentials list")
            raise UpstreamError("Credential issuer returned an unexpected response")
        return credentials
