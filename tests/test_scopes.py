"""
Unit tests for grant derivation, intent narrowing and the scope wire format.
"""

import pytest

from ceiling.models import ApproverSubject, Credential, CredentialKind, Grant, build_credential_document
from ceiling.scopes import (
    APPROVE,
    SUBMIT,
    VIEW,
    derive_grants,
    find_grant,
    format_scope,
    is_valid_ceiling,
    narrow_to_intent,
    parse_scope,
    required_credential_types,
)


def _approver(limit) -> Credential:
    """Unsigned approver credential; derivation only sees verified input."""
    document = build_credential_document(
        CredentialKind.APPROVAL_AUTHORITY,
        issuer="did:jwk:issuer",
        subject=ApproverSubject(id="did:jwk:holder", approval_limit=limit),
        valid_from="2026-01-01T00:00:00Z",
    )
    return Credential.from_dict(document)


class TestDeriveGrants:
    """derive_grants tests."""

    def test_employee_only(self, wallet):
        """Employment alone grants view and submit."""
        employee = [c for c in wallet.credentials() if c.kind is CredentialKind.EMPLOYMENT]
        derived = derive_grants(employee)

        assert derived.grants == (Grant(VIEW), Grant(SUBMIT))
        assert derived.claims["employeeId"] == "EMP-001"
        assert "approvalLimit" not in derived.claims

    def test_employee_and_approver(self, wallet):
        """Approval authority adds a bounded approve grant."""
        derived = derive_grants(wallet.credentials())

        assert Grant(APPROVE, 10000) in derived.grants
        assert derived.claims["approvalLimit"] == 10000
        assert derived.claims["name"] == "Alice Johnson"

    def test_approver_only(self):
        """Approval authority without employment grants only approve."""
        derived = derive_grants([_approver(500)])
        assert derived.grants == (Grant(APPROVE, 500),)

    def test_lowest_ceiling_wins(self):
        """Several approver credentials collapse to the lowest ceiling."""
        derived = derive_grants([_approver(20000), _approver(5000), _approver(7500)])
        approve = [g for g in derived.grants if g.capability == APPROVE]
        assert approve == [Grant(APPROVE, 5000)]

    @pytest.mark.parametrize("limit", ["10000", 0, -1, float("inf"), float("nan"), True, None])
    def test_unusable_ceiling_grants_nothing(self, limit):
        """An unusable signed limit contributes no approve grant."""
        derived = derive_grants([_approver(limit)])
        assert find_grant(derived.grants, APPROVE) is None

    def test_empty_input(self):
        """No credentials, no grants."""
        assert derive_grants([]).grants == ()

    def test_float_ceiling_kept_verbatim(self):
        assert derive_grants([_approver(2500.5)]).grants == (Grant(APPROVE, 2500.5),)


class TestNarrowToIntent:
    """narrow_to_intent tests."""

    GRANTS = (Grant(VIEW), Grant(SUBMIT), Grant(APPROVE, 10000))

    def test_no_intent_keeps_all(self):
        assert narrow_to_intent(self.GRANTS, "") == self.GRANTS
        assert narrow_to_intent(self.GRANTS, None) == self.GRANTS

    def test_approve_intent(self):
        """Declaring approve yields only the approve grant."""
        assert narrow_to_intent(self.GRANTS, "expense:approve") == (Grant(APPROVE, 10000),)

    def test_multiple_intents(self):
        assert narrow_to_intent(self.GRANTS, "expense:view expense:submit") == (
            Grant(VIEW),
            Grant(SUBMIT),
        )

    def test_bounded_intent_matches_capability(self):
        """An intent naming a ceiling still matches the approve capability."""
        narrowed = narrow_to_intent(self.GRANTS, "expense:approve:max:500")
        assert narrowed == (Grant(APPROVE, 10000),)

    def test_prefix_without_boundary_does_not_match(self):
        """'expense:approveall' is not 'expense:approve'."""
        assert narrow_to_intent(self.GRANTS, "expense:approveall") == ()

    def test_intent_never_widens(self):
        """Intent cannot add a capability that was not derived."""
        assert narrow_to_intent((Grant(VIEW),), "expense:approve") == ()


class TestRequiredCredentialTypes:
    """Least-privilege challenge requirements."""

    def test_view_needs_employment_only(self):
        assert required_credential_types("expense:view") == ("EmployeeCredential",)

    def test_approve_needs_both(self):
        assert required_credential_types("expense:approve") == (
            "EmployeeCredential",
            "FinanceApproverCredential",
        )

    def test_empty_intent(self):
        assert required_credential_types("") == ("EmployeeCredential",)


class TestScopeWireFormat:
    """format_scope / parse_scope tests."""

    def test_format(self):
        grants = (Grant(VIEW), Grant(SUBMIT), Grant(APPROVE, 10000))
        assert format_scope(grants) == "expense:view expense:submit expense:approve:max:10000"

    def test_format_float_ceiling(self):
        assert format_scope([Grant(APPROVE, 2500.5)]) == "expense:approve:max:2500.5"

    def test_parse(self):
        grants = parse_scope("expense:view expense:approve:max:10000")
        assert grants == (Grant(VIEW), Grant(APPROVE, 10000))
        assert isinstance(grants[1].ceiling, int)

    def test_parse_float(self):
        assert parse_scope("expense:approve:max:2500.5") == (Grant(APPROVE, 2500.5),)

    @pytest.mark.parametrize(
        "scope",
        ["expense:approve:max:abc", "expense:approve:max:-5", "expense:approve:max:0", "expense:approve:max:inf"],
    )
    def test_parse_drops_unusable_ceilings(self, scope):
        """A bounded scope with an unusable ceiling never becomes a grant."""
        assert parse_scope(scope) == ()

    def test_parse_empty(self):
        assert parse_scope("") == ()

    def test_is_valid_ceiling(self):
        assert is_valid_ceiling(1)
        assert is_valid_ceiling(0.01)
        assert not is_valid_ceiling(False)
        assert not is_valid_ceiling("1")
