"""
Audit Trail Module

Hash-chained, append-only audit log with SHA-256 for tamper detection.
Every mutating operation on a loan appends exactly one entry carrying the
actor, their role, the written justification and before/after snapshots
of the fields that changed. Entries are never updated or removed; a
reversal is a new compensating entry.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .storage import StorageInterface, StorageRecord


class AuditAction(Enum):
    """Types of audit entries"""
    # Loan events
    LOAN_CREATED = "LOAN_CREATED"
    LOAN_EDITED = "LOAN_EDITED"
    STATUS_CHANGED = "STATUS_CHANGED"
    LOAN_EVALUATED = "LOAN_EVALUATED"
    PENALTY_ACCRUED = "PENALTY_ACCRUED"

    # Payment events
    PAYMENT_POSTED = "PAYMENT_POSTED"
    PAYMENT_REVERSED = "PAYMENT_REVERSED"
    PAYMENT_EDITED = "PAYMENT_EDITED"

    # Client events
    CLIENT_REGISTERED = "CLIENT_REGISTERED"
    CLIENT_KYC_UPDATED = "CLIENT_KYC_UPDATED"

    # Governance events
    GOVERNANCE_DENIED = "GOVERNANCE_DENIED"


def _json_safe(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def changed_fields(before: Dict[str, Any], after: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Reduce two snapshots to the keys whose values differ"""
    keys = [k for k in after if before.get(k) != after.get(k)]
    keys += [k for k in before if k not in after]
    return ({k: before.get(k) for k in keys}, {k: after.get(k) for k in keys})


@dataclass
class AuditEntry(StorageRecord):
    """
    Immutable audit entry with hash chaining for tamper detection
    """
    sequence: int
    action: AuditAction
    entity_type: str
    entity_id: str
    actor_id: str
    actor_role: str
    justification: str
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    current_hash: str = ""

    def __post_init__(self):
        self.before = _json_safe(self.before or {})
        self.after = _json_safe(self.after or {})
        self.metadata = _json_safe(self.metadata or {})

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def calculate_hash(self) -> str:
        """
        SHA-256 over every field except current_hash
        """
        hash_data = {
            'id': self.id,
            'timestamp': self.created_at.isoformat(),
            'sequence': self.sequence,
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'actor_id': self.actor_id,
            'actor_role': self.actor_role,
            'justification': self.justification,
            'before': self.before,
            'after': self.after,
            'metadata': self.metadata,
            'previous_hash': self.previous_hash,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['action'] = AuditAction(data['action'])
        return cls(**data)


class AuditTrail:
    """
    Append-only, hash-chained audit trail

    The chain head (last sequence and hash) lives in its own row so that it
    rolls back together with the entry when the surrounding transaction
    aborts. The storage transaction lock serialises concurrent appends.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_entries"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"

    def _load_head(self) -> Tuple[int, str]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        if head:
            return head['sequence'], head['hash']
        return 0, ""

    def append(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        actor_id: str,
        actor_role: str,
        justification: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """
        Append one entry to the chain

        Args:
            action: What happened
            entity_type: Kind of entity ("loan", "client")
            entity_id: ID of the entity
            actor_id: Caller identity as verified by the transport
            actor_role: Caller role
            justification: Human-written reason
            before: Snapshot of changed fields before the operation
            after: Snapshot of changed fields after the operation
            metadata: Additional entry-specific data

        Returns:
            The stored AuditEntry
        """
        with self.storage.atomic():
            last_sequence, last_hash = self._load_head()
            now = datetime.now(timezone.utc)

            entry = AuditEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=last_sequence + 1,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                actor_role=actor_role,
                justification=justification,
                before=before or {},
                after=after or {},
                metadata=metadata or {},
                previous_hash=last_hash,
            )
            entry.current_hash = entry.calculate_hash()

            self.storage.insert(self.table_name, entry.id, entry.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                'id': self.HEAD_ID,
                'sequence': entry.sequence,
                'hash': entry.current_hash,
            })
            return entry

    def _sorted(self, rows: List[Dict[str, Any]]) -> List[AuditEntry]:
        entries = [AuditEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: (e.created_at, e.sequence))
        return entries

    def entries_for(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        """All entries for one entity, ordered by (timestamp, sequence)"""
        return self._sorted(self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id,
        }))

    def all_entries(self) -> List[AuditEntry]:
        return self._sorted(self.storage.load_all(self.table_name))

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return AuditEntry.from_dict(data)
        return None

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def latest_hash(self) -> str:
        return self._load_head()[1]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify hashes and chain continuity of the whole log

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = sorted(
            (AuditEntry.from_dict(row) for row in self.storage.load_all(self.table_name)),
            key=lambda e: e.sequence
        )
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        if entries and self.latest_hash() != entries[-1].current_hash:
            result['valid'] = False
            result['chain_breaks'].append({'entry_id': None, 'position': len(entries), 'reason': 'head mismatch'})

        return result
