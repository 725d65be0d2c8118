# ceiling/models.py
"""
Credential and presentation data model (W3C VC Data Model 2.0 wire shape).

Credentials are a tagged variant over their declared type. Each variant
exposes a typed subject, while the received wire document is kept verbatim
so that signatures are always checked over exactly what the issuer signed.

    EmployeeCredential        -> EmployeeSubject   (kind: Employment)
    FinanceApproverCredential -> ApproverSubject   (kind: ApprovalAuthority)
    anything else             -> UnknownSubject
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from ceiling.errors import ValidationError

VC_CONTEXT = "https://www.w3.org/ns/credentials/v2"
DEMO_CONTEXT = "https://demo.example.com/credentials/v1"

BASE_CREDENTIAL_TYPE = "VerifiableCredential"
PRESENTATION_TYPE = "VerifiablePresentation"


# =============================================================================
# Types
# =============================================================================


class CredentialKind(str, Enum):
    """Credential kinds the authorization server knows how to map to grants."""

    EMPLOYMENT = "EmployeeCredential"
    APPROVAL_AUTHORITY = "FinanceApproverCredential"


@dataclass(frozen=True)
class EmployeeSubject:
    """Claims of an EmployeeCredential."""

    id: Optional[str]
    name: str = ""
    employee_id: str = ""
    job_title: str = ""
    department: str = ""
    organization: Optional[str] = None

    kind = CredentialKind.EMPLOYMENT

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": "Person",
            "name": self.name,
            "employeeId": self.employee_id,
            "jobTitle": self.job_title,
            "department": self.department,
        }
        if self.organization:
            data["worksFor"] = {"type": "Organization", "name": self.organization}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmployeeSubject":
        works_for = data.get("worksFor")
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            employee_id=data.get("employeeId", ""),
            job_title=data.get("jobTitle", ""),
            department=data.get("department", ""),
            organization=works_for.get("name") if isinstance(works_for, dict) else None,
        )


@dataclass(frozen=True)
class ApproverSubject:
    """
    Claims of a FinanceApproverCredential.

    ``approval_limit`` is whatever value the issuer signed; it is validated
    only when grants are derived, never coerced.
    """

    id: Optional[str]
    approval_limit: Any = None
    department: str = ""
    currency: str = "USD"
    role: str = "finance-approver"

    kind = CredentialKind.APPROVAL_AUTHORITY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "approvalLimit": self.approval_limit,
            "currency": self.currency,
            "department": self.department,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApproverSubject":
        return cls(
            id=data.get("id"),
            approval_limit=data.get("approvalLimit"),
            department=data.get("department", ""),
            currency=data.get("currency", "USD"),
            role=data.get("role", "finance-approver"),
        )


@dataclass(frozen=True)
class UnknownSubject:
    """Subject of a credential type the server does not map to any grant."""

    id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)

    kind = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data)


Subject = Union[EmployeeSubject, ApproverSubject, UnknownSubject]


# =============================================================================
# Time helpers
# =============================================================================


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp; naive values are taken as UTC.

    Raises:
        ValidationError: If the value is not a timestamp.
    """
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Credentials
# =============================================================================


def _subject_from_dict(types: Tuple[str, ...], data: Dict[str, Any]) -> Subject:
    if CredentialKind.APPROVAL_AUTHORITY.value in types:
        return ApproverSubject.from_dict(data)
    if CredentialKind.EMPLOYMENT.value in types:
        return EmployeeSubject.from_dict(data)
    return UnknownSubject(id=data.get("id"), data=dict(data))


@dataclass(frozen=True)
class Credential:
    """
    A signed credential.

    Attributes:
        document: The wire document exactly as issued, including its proof.
        types: Declared types (``VerifiableCredential`` plus the kind).
        issuer: Issuer DID.
        subject: Typed claims payload.
        valid_from: Start of the validity window.
        valid_until: Optional end of the validity window.
    """

    document: Dict[str, Any] = field(repr=False, compare=True)
    types: Tuple[str, ...]
    issuer: str
    subject: Subject
    valid_from: datetime
    valid_until: Optional[datetime] = None

    @property
    def kind(self) -> Optional[CredentialKind]:
        return self.subject.kind

    @property
    def id(self) -> Optional[str]:
        return self.document.get("id")

    @property
    def proof(self) -> Optional[Dict[str, Any]]:
        return self.document.get("proof")

    @property
    def display_types(self) -> List[str]:
        """Types without the generic ``VerifiableCredential``."""
        return [t for t in self.types if t != BASE_CREDENTIAL_TYPE]

    def is_within_validity(self, now: datetime) -> bool:
        """True when ``valid_from <= now < valid_until``."""
        if now < self.valid_from:
            return False
        if self.valid_until is not None and now >= self.valid_until:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy of the wire document."""
        return copy.deepcopy(self.document)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        """
        Parse a wire credential.

        Raises:
            ValidationError: If required members are missing or malformed.
        """
        if not isinstance(data, dict):
            raise ValidationError("Credential must be a JSON object")

        types = data.get("type")
        if isinstance(types, str):
            types = [types]
        if not isinstance(types, list) or BASE_CREDENTIAL_TYPE not in types:
            raise ValidationError("Credential type must include VerifiableCredential")

        issuer = data.get("issuer")
        if isinstance(issuer, dict):
            issuer = issuer.get("id")
        if not isinstance(issuer, str) or not issuer:
            raise ValidationError("Credential issuer is required")

        subject = data.get("credentialSubject")
        if not isinstance(subject, dict):
            raise ValidationError("credentialSubject must be an object")

        if "validFrom" not in data:
            raise ValidationError("Credential validFrom is required")
        valid_from = parse_timestamp(data["validFrom"])
        valid_until = parse_timestamp(data["validUntil"]) if data.get("validUntil") else None

        types = tuple(types)
        return cls(
            document=copy.deepcopy(data),
            types=types,
            issuer=issuer,
            subject=_subject_from_dict(types, subject),
            valid_from=valid_from,
            valid_until=valid_until,
        )


def build_credential_document(
    kind: CredentialKind,
    issuer: str,
    subject: Subject,
    valid_from: str,
    valid_until: Optional[str] = None,
    credential_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble an unsigned credential document."""
    document: Dict[str, Any] = {
        "@context": [VC_CONTEXT, DEMO_CONTEXT],
        "type": [BASE_CREDENTIAL_TYPE, kind.value],
        "issuer": issuer,
        "validFrom": valid_from,
        "credentialSubject": subject.to_dict(),
    }
    if credential_id:
        document["id"] = credential_id
    if valid_until:
        document["validUntil"] = valid_until
    return document


# =============================================================================
# Presentations
# =============================================================================


@dataclass(frozen=True)
class Presentation:
    """A holder-signed bundle of credentials bound to one challenge and domain."""

    document: Dict[str, Any] = field(repr=False)
    holder: str
    credentials: Tuple[Credential, ...]

    @property
    def proof(self) -> Optional[Dict[str, Any]]:
        proof = self.document.get("proof")
        return proof if isinstance(proof, dict) else None

    @property
    def challenge(self) -> Optional[str]:
        return self.proof.get("challenge") if self.proof else None

    @property
    def domain(self) -> Optional[str]:
        return self.proof.get("domain") if self.proof else None

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.document)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Presentation":
        """
        Parse a wire presentation.

        Raises:
            ValidationError: If required members are missing or malformed.
        """
        if not isinstance(data, dict):
            raise ValidationError("Presentation must be a JSON object")

        types = data.get("type")
        if isinstance(types, str):
            types = [types]
        if not isinstance(types, list) or PRESENTATION_TYPE not in types:
            raise ValidationError("Presentation type must include VerifiablePresentation")

        holder = data.get("holder")
        if not isinstance(holder, str) or not holder:
            raise ValidationError("Presentation holder is required")

        credentials = data.get("verifiableCredential", [])
        if isinstance(credentials, dict):
            credentials = [credentials]
        if not isinstance(credentials, list):
            raise ValidationError("verifiableCredential must be a list")

        return cls(
            document=copy.deepcopy(data),
            holder=holder,
            credentials=tuple(Credential.from_dict(c) for c in credentials),
        )


def build_presentation_document(holder: str, credentials: List[Credential]) -> Dict[str, Any]:
    """Assemble an unsigned presentation wrapping the given credentials."""
    return {
        "@context": [VC_CONTEXT],
        "type": [PRESENTATION_TYPE],
        "holder": holder,
        "verifiableCredential": [c.to_dict() for c in credentials],
    }


# =============================================================================
# Grants
# =============================================================================


@dataclass(frozen=True)
class Grant:
    """
    A capability derived server-side from verified credentials.

    ``ceiling`` is only set for bounded capabilities and is copied verbatim
    from the signed credential claim at mint time.
    """

    capability: str
    ceiling: Optional[Union[int, float]] = None
