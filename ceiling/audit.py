"""
Ceiling Audit Trail.

Bounded in-memory record of every authorization decision. Entries are
appended before a response leaves the process and mirrored to the
``ceiling.audit`` logger.
"""

import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger("ceiling.audit")

# Event names
AUTHORIZATION_DECISION = "authorization_decision"
TOKEN_ISSUED = "token_issued"
APPROVAL = "expense_approval"
APPROVAL_DENIED = "expense_approval_denied"
ACCESS_DENIED = "expense_access_denied"
REJECTION = "expense_rejection"


@dataclass
class AuditEntry:
    """A single audit record."""

    timestamp: str
    event: str
    decision: Optional[str] = None
    reason: Optional[str] = None
    request_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class AuditTrail:
    """
    Thread-safe bounded audit log.

    Example:
        >>> trail = AuditTrail(max_entries=1000)
        >>> trail.record("authorization_decision", decision="denied", reason="used")
        >>> trail.recent(10)
    """

    def __init__(self, max_entries: int = 1000):
        """
        Initialize the audit trail.

        Args:
            max_entries: Oldest entries are dropped beyond this count.
        """
        self._entries: Deque[AuditEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(
        self,
        event: str,
        decision: Optional[str] = None,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
        **details: Any,
    ) -> AuditEntry:
        """Append an entry stamped with the current UTC time."""
        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            decision=decision,
            reason=reason,
            request_id=request_id,
            details=details,
        )
        with self._lock:
            self._entries.append(entry)

        logger.info(f"[AUDIT] {event} {json.dumps(entry.to_dict(), default=str)}")
        return entry

    def entries(
        self,
        event: Optional[str] = None,
        decision: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Return entries, oldest first, optionally filtered."""
        with self._lock:
            result = list(self._entries)

        if event:
            result = [e for e in result if e.event == event]
        if decision:
            result = [e for e in result if e.decision == decision]
        if limit:
            result = result[-limit:]
        return result

    def recent(self, count: int = 10) -> List[AuditEntry]:
        """Return the most recent entries."""
        return self.entries(limit=count)

    def clear(self) -> None:
        """Drop all entries (demo reset)."""
        with self._lock:
            self._entries.clear()
        logger.info("[AUDIT] Log cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
