"""Data models for the transmission ledger."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TransmissionStatus(Enum):
    """Transmission lifecycle status."""
    PENDING = "pending"            # Queued, waiting for a worker
    SENT = "sent"                  # Claimed and handed to the transport
    ACKNOWLEDGED = "acknowledged"  # Receiver accepted the message
    REJECTED = "rejected"          # Receiver rejected the message
    ERROR = "error"                # Delivery failed; retry scheduled
    FAILED = "failed"              # Retries exhausted; needs an operator

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransmissionStatus.ACKNOWLEDGED,
            TransmissionStatus.REJECTED,
            TransmissionStatus.FAILED,
        )


class AuditAction(Enum):
    """Actions tracked in the transmission audit log."""
    SUBMITTED = "submitted"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    ERROR = "error"
    REQUEUED = "requeued"
    FAILED = "failed"


S = TransmissionStatus

LEGAL_TRANSITIONS: dict[TransmissionStatus, frozenset[TransmissionStatus]] = {
    S.PENDING: frozenset({S.SENT}),
    S.SENT: frozenset({S.ACKNOWLEDGED, S.REJECTED, S.ERROR}),
    S.ERROR: frozenset({S.PENDING, S.FAILED}),
    S.ACKNOWLEDGED: frozenset(),
    S.REJECTED: frozenset(),
    S.FAILED: frozenset(),
}

del S


def is_legal_transition(current: TransmissionStatus, new: TransmissionStatus) -> bool:
    return new in LEGAL_TRANSITIONS[current]


def parse_datetime(val: Any) -> datetime | None:
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    return datetime.fromisoformat(val)


@dataclass
class TransmissionRecord:
    """One message queued for (or past) delivery to a destination."""
    id: str
    tenant_id: str
    message_control_id: str
    message_type: str
    format_kind: str
    destination: str
    status: TransmissionStatus
    payload: str = ""
    content_hash: str = ""
    endpoint: str | None = None

    # Retry bookkeeping
    retry_count: int = 0
    next_retry_at: datetime | None = None

    # Delivery outcome
    ack_code: str | None = None
    error_details: list[dict] = field(default_factory=list)
    claimed_by: str | None = None

    # Timestamps
    created_at: datetime | None = None
    sent_at: datetime | None = None
    acknowledged_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def last_error(self) -> str | None:
        if not self.error_details:
            return None
        return self.error_details[-1].get("detail")

    def to_dict(self, include_payload: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "message_control_id": self.message_control_id,
            "message_type": self.message_type,
            "format_kind": self.format_kind,
            "destination": self.destination,
            "endpoint": self.endpoint,
            "status": self.status.value,
            "content_hash": self.content_hash,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "ack_code": self.ack_code,
            "error_details": self.error_details,
            "claimed_by": self.claimed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_payload:
            data["payload"] = self.payload
        return data

    @classmethod
    def from_row(cls, row) -> "TransmissionRecord":
        """Create from a sqlite3.Row of the transmissions table."""
        error_json = row["error_details"]
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            message_control_id=row["message_control_id"],
            message_type=row["message_type"],
            format_kind=row["format_kind"],
            destination=row["destination"],
            endpoint=row["endpoint"],
            status=TransmissionStatus(row["status"]),
            payload=row["payload"],
            content_hash=row["content_hash"],
            retry_count=row["retry_count"],
            next_retry_at=parse_datetime(row["next_retry_at"]),
            ack_code=row["ack_code"],
            error_details=json.loads(error_json) if error_json else [],
            claimed_by=row["claimed_by"],
            created_at=parse_datetime(row["created_at"]),
            sent_at=parse_datetime(row["sent_at"]),
            acknowledged_at=parse_datetime(row["acknowledged_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )


@dataclass
class TransmissionAuditEntry:
    """Audit log entry for a transmission state change."""
    id: int
    transmission_id: str
    action: AuditAction
    from_status: TransmissionStatus | None
    to_status: TransmissionStatus
    actor: str | None
    performed_at: datetime
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transmission_id": self.transmission_id,
            "action": self.action.value,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "actor": self.actor,
            "performed_at": self.performed_at.isoformat(),
            "details": self.details,
        }

    @classmethod
    def from_row(cls, row) -> "TransmissionAuditEntry":
        """Create from a sqlite3.Row of the transmission_audit table."""
        details_json = row["details"]
        return cls(
            id=row["id"],
            transmission_id=row["transmission_id"],
            action=AuditAction(row["action"]),
            from_status=TransmissionStatus(row["from_status"]) if row["from_status"] else None,
            to_status=TransmissionStatus(row["to_status"]),
            actor=row["actor"],
            performed_at=parse_datetime(row["performed_at"]),
            details=json.loads(details_json) if details_json else {},
        )
