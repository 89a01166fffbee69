"""
Audit Trail
===========
Append-only record of status changes made from this client.

Validator-approved moves are recorded as ``transition``; full-record
edits by staff are recorded as ``admin_edit``, or ``admin_override`` when
they change the status without passing the validator.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


MAX_AUDIT_ENTRIES = 1000


class AuditKind(Enum):
    TRANSITION = "transition"
    ADMIN_EDIT = "admin_edit"
    ADMIN_OVERRIDE = "admin_override"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record."""
    kind: AuditKind
    order_id: str
    actor: str
    from_status: Optional[str]
    to_status: Optional[str]
    fields: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "order_id": self.order_id,
            "actor": self.actor,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "fields": list(self.fields),
            "timestamp": self.timestamp.isoformat(),
        }


class AuditTrail:
    """Bounded in-memory audit log."""

    def __init__(self, max_entries: int = MAX_AUDIT_ENTRIES):
        self._entries: Deque[AuditEntry] = deque(maxlen=max_entries)

    def record(self, entry: AuditEntry) -> AuditEntry:
        self._entries.append(entry)

        log = logger.warning if entry.kind == AuditKind.ADMIN_OVERRIDE else logger.info
        log(
            f"Audit {entry.kind.value}: {entry.from_status} -> {entry.to_status}",
            extra=entry.to_dict()
        )
        return entry

    def entries(self, order_id: Optional[str] = None) -> List[AuditEntry]:
        if order_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.order_id == order_id]

    def __len__(self) -> int:
        return len(self._entries)
