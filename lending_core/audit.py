"""
Audit Trail Module

Append-only record of every account, loan, disbursement, payment and
rollback outcome. Each event stores the SHA-256 digest of its own content
plus the digest of the event before it, so editing or removing any stored
event breaks the chain from that point on.

Audit writes never decide the outcome of a financial operation: ``log_event``
is fire-and-forget, and a failing write is reported to the local logger only.
Events are written after the unit they describe has committed or aborted.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, _jsonable
from .logging_config import get_logger, log_action


class AuditEventType(Enum):
    ACCOUNT_OPENED = "account_opened"
    PLATFORM_ACCOUNT_CREATED = "platform_account_created"
    PLATFORM_FUNDED = "platform_funded"
    ACCOUNT_DEPOSIT = "account_deposit"

    LOAN_CREATED = "loan_created"
    LOAN_STATUS_CHANGED = "loan_status_changed"

    DISBURSEMENT_COMPLETED = "disbursement_completed"
    DISBURSEMENT_FAILED = "disbursement_failed"
    DISBURSEMENT_ROLLED_BACK = "disbursement_rolled_back"

    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_ROLLED_BACK = "payment_rolled_back"

    # Unit of work outcomes
    UNIT_ABORTED = "unit_aborted"
    COMPENSATION_FAILED = "compensation_failed"

    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


class AuditLevel(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str  # account, loan, disbursement, payment, system
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    level: AuditLevel = AuditLevel.INFO
    actor: Optional[str] = None

    def __post_init__(self):
        # Metadata is hashed, so it has to be plain JSON from the start
        self.metadata = _jsonable(self.metadata or {})

    def digest(self) -> str:
        """SHA-256 over every field except ``current_hash`` itself"""
        content = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'level': self.level.value,
            'actor': self.actor,
            'metadata': self.metadata
        }
        canonical = json.dumps(content, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.digest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            level=AuditLevel(data.get('level', AuditLevel.INFO.value)),
            actor=data.get('actor')
        )


class AuditTrail:
    """
    Writes and checks the audit chain
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self.logger = get_logger("lending.audit")
        self._append_lock = threading.Lock()

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        level: AuditLevel = AuditLevel.INFO
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain.

        Args:
            event_type: What happened
            entity_type: Kind of record it happened to
            entity_id: ID of that record
            metadata: Event details; Decimal, date and enum values are stringified
            actor: Who caused it (user, SYSTEM or SYSTEM_AUTO)
            level: INFO, WARNING or ERROR

        Returns:
            The stored event, or None when auditing is off or the write failed
        """
        if not self.enabled:
            return None

        try:
            return self._append(event_type, entity_type, entity_id, metadata, actor, level)
        except Exception as e:
            log_action(
                self.logger, "error", f"Audit write failed: {e}",
                actor=actor, action=event_type.value,
                resource=f"{entity_type}:{entity_id}",
                extra={"error_type": type(e).__name__}
            )
            return None

    def _append(self, event_type, entity_type, entity_id, metadata, actor, level) -> AuditEvent:
        with self._append_lock:
            # Read the tail every time; another trail over the same storage may have written
            stored = self.storage.load_all(self.table_name)
            tail = stored[-1]['current_hash'] if stored else ""

            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=tail,
                current_hash="",
                metadata=metadata or {},
                level=level,
                actor=actor
            )
            event.current_hash = event.digest()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events about one record, oldest first; ``limit`` keeps the newest"""
        rows = self.storage.find(self.table_name, {'entity_type': entity_type, 'entity_id': entity_id})
        events = [AuditEvent.from_dict(row) for row in rows]
        return events[-limit:] if limit else events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events of one type, optionally bounded by creation time (inclusive)"""
        rows = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = [
            e for e in (AuditEvent.from_dict(row) for row in rows)
            if (start_time is None or e.created_at >= start_time)
            and (end_time is None or e.created_at <= end_time)
        ]
        return events[-limit:] if limit else events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain in storage order.

        Returns:
            ``valid`` plus the events whose own digest no longer matches
            (``hash_errors``) and those whose back-link is wrong (``chain_breaks``)
        """
        hash_errors = []
        chain_breaks = []

        events = [AuditEvent.from_dict(row) for row in self.storage.load_all(self.table_name)]
        expected_previous = ""
        for position, event in enumerate(events):
            actual = event.digest()
            if actual != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': actual,
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
