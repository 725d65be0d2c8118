"""
Ceiling Enforcement - the resource server.

Validates bearer tokens and enforces the approval ceiling on the concrete
request. The ceiling comes only from the validated token's approve grant;
the amount compared against it is the stored expense amount, never a value
from the request.

    if amount > ceiling: deny

An expense is only mutated after every check has passed.
"""

import asyncio
import copy
import logging
import math
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ceiling import audit
from ceiling.audit import AuditTrail
from ceiling.errors import (
    CeilingError,
    CeilingExceededError,
    InsufficientGrantError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ceiling.models import Grant
from ceiling.proofs import utc_timestamp
from ceiling.scopes import APPROVE, SUBMIT, VIEW, find_grant
from ceiling.tokens import TokenValidator, ValidatedToken

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"


@dataclass
class Expense:
    """An expense report awaiting (or past) approval."""

    id: str
    description: str
    amount: Any
    currency: str = "USD"
    category: str = ""
    status: str = PENDING
    submitted_by: str = ""
    submitted_at: str = ""
    notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        keys = {
            "submitted_by": "submittedBy",
            "submitted_at": "submittedAt",
            "approved_by": "approvedBy",
            "approved_at": "approvedAt",
            "rejected_by": "rejectedBy",
            "rejected_at": "rejectedAt",
        }
        return {keys.get(k, k): v for k, v in asdict(self).items() if v is not None}

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "submittedAt": self.submitted_at,
        }


def seed_expenses() -> List[Expense]:
    """The demo's initial expenses: one inside a 10000 ceiling, two above it."""
    now = utc_timestamp()
    return [
        Expense(
            id="exp-001",
            description="Marketing campaign materials",
            amount=5000,
            category="Marketing",
            submitted_by="marketing@acme.corp",
            submitted_at=now,
            notes="Q1 campaign materials for product launch",
        ),
        Expense(
            id="exp-002",
            description="Executive retreat venue booking",
            amount=15000,
            category="Events",
            submitted_by="events@acme.corp",
            submitted_at=now,
            notes="Annual leadership retreat booking",
        ),
        Expense(
            id="exp-003",
            description="Urgent equipment purchase",
            amount=25000,
            category="Equipment",
            submitted_by="operations@acme.corp",
            submitted_at=now,
            notes="Critical server replacement - urgent!",
        ),
    ]


class ExpenseStore:
    """In-memory expense storage."""

    def __init__(self, expenses: Optional[List[Expense]] = None):
        self._expenses: Dict[str, Expense] = {}
        self.reset(expenses)

    def reset(self, expenses: Optional[List[Expense]] = None) -> None:
        expenses = seed_expenses() if expenses is None else expenses
        self._expenses = {e.id: copy.deepcopy(e) for e in expenses}

    def get(self, expense_id: str) -> Expense:
        try:
            return self._expenses[expense_id]
        except KeyError:
            raise NotFoundError("Expense not found")

    def add(self, expense: Expense) -> None:
        self._expenses[expense.id] = expense

    def all(self) -> List[Expense]:
        return list(self._expenses.values())


# =============================================================================
# The ceiling check
# =============================================================================


def require_grant(token: ValidatedToken, capability: str) -> Grant:
    """
    Return the token's grant for ``capability``.

    Raises:
        InsufficientGrantError: The token carries no such grant.
    """
    grant = find_grant(token.grants, capability)
    if grant is None:
        raise InsufficientGrantError(capability, available=token.scope)
    return grant


def enforce_ceiling(token: ValidatedToken, requested_amount) -> Grant:
    """
    Check a requested amount against the token's approval ceiling.

    Args:
        token: A validated token.
        requested_amount: The amount the action would approve.

    Returns:
        The approve grant that authorizes the amount.

    Raises:
        InsufficientGrantError: No bounded approve grant in the token.
        CeilingExceededError: ``requested_amount > ceiling``.
    """
    grant = require_grant(token, APPROVE)
    if grant.ceiling is None:
        raise InsufficientGrantError(APPROVE, available=token.scope)
    if requested_amount > grant.ceiling:
        raise CeilingExceededError(grant.ceiling, requested_amount)
    return grant


def _validate_amount(amount: Any) -> None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("amount must be a positive number")


class ResourceServer:
    """
    The expense API behind the trust boundary.

    Example:
        >>> server = ResourceServer(TokenValidator(StaticKeySet(ring), audience="expense-api"))
        >>> result = await server.approve_action("exp-001", bearer_token)
        >>> result["approved"]
        True
    """

    def __init__(
        self,
        validator: TokenValidator,
        store: Optional[ExpenseStore] = None,
        audit_trail: Optional[AuditTrail] = None,
    ):
        self.validator = validator
        self.store = store or ExpenseStore()
        self.audit = audit_trail or AuditTrail()
        self._lock = asyncio.Lock()

    def _deny(self, operation: str, error: CeilingError, **details: Any) -> None:
        event = audit.APPROVAL_DENIED if operation == "approve" else audit.ACCESS_DENIED
        self.audit.record(
            event,
            decision="denied",
            reason=getattr(error, "reason", error.error),
            operation=operation,
            **details,
        )

    async def authenticate(
        self,
        token: Optional[str],
        capability: str,
        operation: str,
        expense_id: Optional[str] = None,
    ) -> ValidatedToken:
        """
        Validate the bearer token and require a grant for ``capability``.

        A rejection is written to the audit trail before it propagates.
        """
        try:
            validated = await self.validator.validate(token)
            require_grant(validated, capability)
        except CeilingError as e:
            details = {"expenseId": expense_id} if expense_id else {}
            self._deny(operation, e, **details)
            raise
        return validated

    def _pending(self, operation: str, expense_id: str, validated: ValidatedToken) -> Expense:
        try:
            expense = self.store.get(expense_id)
            if expense.status != PENDING:
                raise InvalidStateError(f"Expense is already {expense.status}")
        except CeilingError as e:
            self._deny(
                operation,
                e,
                request_id=validated.jti,
                tokenId=validated.jti,
                tokenSubject=validated.subject,
                expenseId=expense_id,
            )
            raise
        return expense

    async def list_expenses(self, token: Optional[str]) -> List[Dict[str, Any]]:
        await self.authenticate(token, VIEW, "list")
        return [e.summary() for e in self.store.all()]

    async def get_expense(self, expense_id: str, token: Optional[str]) -> Dict[str, Any]:
        await self.authenticate(token, VIEW, "view", expense_id)
        return self.store.get(expense_id).to_dict()

    async def submit_expense(
        self,
        token: Optional[str],
        description: str,
        amount,
        category: str = "",
        currency: str = "USD",
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Submit a new pending expense as the token's subject.

        Raises:
            ValidationError: Missing description or a non-positive amount.
        """
        validated = await self.authenticate(token, SUBMIT, "submit")
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("description is required")
        _validate_amount(amount)

        expense = Expense(
            id=f"exp-{uuid.uuid4().hex[:12]}",
            description=description,
            amount=amount,
            currency=currency or "USD",
            category=category or "",
            submitted_by=validated.subject,
            submitted_at=utc_timestamp(),
            notes=notes,
        )
        async with self._lock:
            self.store.add(expense)
        logger.info(f"Expense {expense.id} submitted for {amount}")
        return expense.to_dict()

    async def approve_action(self, expense_id: str, token: Optional[str]) -> Dict[str, Any]:
        """
        Approve an expense if, and only if, its amount is within the ceiling.

        Raises:
            AuthenticationError: Missing or invalid token.
            InsufficientGrantError: No approve grant.
            NotFoundError: Unknown expense.
            InvalidStateError: Expense is not pending.
            CeilingExceededError: Amount above the ceiling (expense unchanged).
        """
        validated = await self.authenticate(token, APPROVE, "approve", expense_id)

        async with self._lock:
            expense = self._pending("approve", expense_id, validated)

            try:
                grant = enforce_ceiling(validated, expense.amount)
            except (CeilingExceededError, InsufficientGrantError) as e:
                self.audit.record(
                    audit.APPROVAL_DENIED,
                    decision="denied",
                    reason=e.reason,
                    request_id=validated.jti,
                    tokenId=validated.jti,
                    tokenSubject=validated.subject,
                    expenseId=expense.id,
                    expenseAmount=expense.amount,
                    approvalCeiling=getattr(e, "ceiling", None),
                    withinCeiling=False,
                )
                logger.info(f"Ceiling blocked: {expense.amount} > {getattr(e, 'ceiling', None)}")
                raise

            expense.status = APPROVED
            expense.approved_by = validated.subject
            expense.approved_at = utc_timestamp()

        self.audit.record(
            audit.APPROVAL,
            decision="approved",
            request_id=validated.jti,
            tokenId=validated.jti,
            tokenSubject=validated.subject,
            expenseId=expense.id,
            expenseAmount=expense.amount,
            approvalCeiling=grant.ceiling,
            withinCeiling=True,
        )
        logger.info(f"Approved: {expense.amount} within {grant.ceiling} ceiling")
        return {
            "approved": True,
            "expenseId": expense.id,
            "amount": expense.amount,
            "ceiling": grant.ceiling,
            "approvedBy": validated.subject,
            "approvedAt": expense.approved_at,
        }

    async def reject_expense(
        self, expense_id: str, token: Optional[str], reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Reject a pending expense (needs an approve grant, any ceiling)."""
        validated = await self.authenticate(token, APPROVE, "reject", expense_id)
        async with self._lock:
            expense = self._pending("reject", expense_id, validated)
            expense.status = REJECTED
            expense.rejected_by = validated.subject
            expense.rejected_at = utc_timestamp()
            expense.notes = reason or expense.notes

        self.audit.record(
            audit.REJECTION,
            decision="rejected",
            request_id=validated.jti,
            tokenId=validated.jti,
            expenseId=expense.id,
            rejectionReason=reason,
        )
        return {"rejected": True, "expenseId": expense.id, "rejectedAt": expense.rejected_at}

    def demo_expenses(self) -> List[Dict[str, Any]]:
        """Every expense with its full state (demo UI, unauthenticated)."""
        return [e.to_dict() for e in self.store.all()]

    def audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.audit.recent(limit)]

    def reset(self) -> List[Dict[str, Any]]:
        """Restore the seed expenses and clear the audit trail."""
        self.store.reset()
        self.audit.clear()
        logger.info("Demo reset - expenses restored to initial state")
        return [
            {"id": e.id, "description": e.description, "amount": e.amount, "status": e.status}
            for e in self.store.all()
        ]
