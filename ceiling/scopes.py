"""
Ceiling scope derivation - THE CEILING.

Maps verified credentials to capability grants on the server side. The
client never proposes a scope; it can only narrow one by declaring its
intended action when asking for a challenge.

Scope wire format (space-separated in the token ``scope`` claim):

    expense:view
    expense:submit
    expense:approve:max:10000
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ceiling.models import ApproverSubject, Credential, CredentialKind, EmployeeSubject, Grant, UnknownSubject

logger = logging.getLogger(__name__)

RESOURCE_CLASS = "expense"

VIEW = f"{RESOURCE_CLASS}:view"
SUBMIT = f"{RESOURCE_CLASS}:submit"
APPROVE = f"{RESOURCE_CLASS}:approve"

_BOUNDED_SCOPE = re.compile(r"^(?P<capability>.+):max:(?P<ceiling>[^:]+)$")

CREDENTIAL_PURPOSES = {
    CredentialKind.EMPLOYMENT.value: "Verify employment status",
    CredentialKind.APPROVAL_AUTHORITY.value: "Verify approval authority",
}


@dataclass(frozen=True)
class DerivedGrants:
    """Grants plus the claims snapshot carried into the token."""

    grants: Tuple[Grant, ...]
    claims: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Challenge requirements
# =============================================================================


def required_credential_types(requested_scope: str) -> Tuple[str, ...]:
    """
    Credential types needed for a declared intent (least privilege).

    Every intent needs proof of employment; only approval intents also need
    approval authority.
    """
    required = [CredentialKind.EMPLOYMENT.value]
    if any(intent.startswith(APPROVE) for intent in (requested_scope or "").split()):
        required.append(CredentialKind.APPROVAL_AUTHORITY.value)
    return tuple(required)


# =============================================================================
# Derivation
# =============================================================================


def is_valid_ceiling(value: Any) -> bool:
    """A ceiling must be a finite, positive number (booleans excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def derive_grants(credentials: Iterable[Credential]) -> DerivedGrants:
    """
    Derive grants from already-verified credentials.

    Total over its input: a credential that carries no usable authority
    simply contributes nothing. When several approval credentials are
    presented, the single approve grant carries the lowest ceiling.

    Args:
        credentials: Credentials that passed every verification step.

    Returns:
        DerivedGrants with de-duplicated grants in a stable order.
    """
    grants: List[Grant] = []
    claims: Dict[str, Any] = {}
    ceilings = []

    for credential in credentials:
        subject = credential.subject

        if isinstance(subject, EmployeeSubject):
            for capability in (VIEW, SUBMIT):
                grant = Grant(capability)
                if grant not in grants:
                    grants.append(grant)
            claims["employeeId"] = subject.employee_id
            claims["name"] = subject.name
            claims["department"] = subject.department

        elif isinstance(subject, ApproverSubject):
            if is_valid_ceiling(subject.approval_limit):
                ceilings.append(subject.approval_limit)
            else:
                logger.info(f"Ignoring approval credential with unusable limit: {subject.approval_limit!r}")

        elif isinstance(subject, UnknownSubject):
            logger.debug(f"No grants for credential types {credential.display_types}")

    if ceilings:
        ceiling = min(ceilings)
        grants.append(Grant(APPROVE, ceiling))
        claims["approvalLimit"] = ceiling

    return DerivedGrants(grants=tuple(grants), claims=claims)


def _matches_intent(capability: str, intent: str) -> bool:
    return intent == capability or intent.startswith(capability + ":")


def narrow_to_intent(grants: Iterable[Grant], requested_scope: Optional[str]) -> Tuple[Grant, ...]:
    """
    Restrict grants to the action declared when the challenge was issued.

    Credentials prove capability, the challenge records intent; the token
    carries only the intersection. An empty intent leaves grants unchanged.
    """
    grants = tuple(grants)
    intents = (requested_scope or "").split()
    if not intents:
        return grants
    return tuple(
        g for g in grants if any(_matches_intent(g.capability, intent) for intent in intents)
    )


# =============================================================================
# Wire format
# =============================================================================


def format_ceiling(value) -> str:
    return str(value) if isinstance(value, int) else repr(value)


def format_grant(grant: Grant) -> str:
    if grant.ceiling is None:
        return grant.capability
    return f"{grant.capability}:max:{format_ceiling(grant.ceiling)}"


def format_scope(grants: Iterable[Grant]) -> str:
    """Serialize grants into a space-separated scope string."""
    return " ".join(format_grant(g) for g in grants)


def _parse_number(text: str):
    try:
        return int(text)
    except ValueError:
        return float(text)


def parse_scope(scope: str) -> Tuple[Grant, ...]:
    """
    Parse a scope string back into grants.

    Bounded entries with an unusable ceiling are dropped, so they can never
    authorize anything.
    """
    grants = []
    for item in (scope or "").split():
        match = _BOUNDED_SCOPE.match(item)
        if not match:
            grants.append(Grant(item))
            continue
        try:
            ceiling = _parse_number(match.group("ceiling"))
        except ValueError:
            logger.warning(f"Dropping scope with malformed ceiling: {item}")
            continue
        if not is_valid_ceiling(ceiling):
            logger.warning(f"Dropping scope with unusable ceiling: {item}")
            continue
        grants.append(Grant(match.group("capability"), ceiling))
    return tuple(grants)


def find_grant(grants: Iterable[Grant], capability: str) -> Optional[Grant]:
    """Return the first grant for a capability, if any."""
    for grant in grants:
        if grant.capability == capability:
            return grant
    return None
