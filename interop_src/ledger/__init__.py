"""Transmission ledger for outbound public health messages.

Provides SQLite-backed storage for the delivery lifecycle:
- Idempotent submission keyed by (tenant, message control id)
- Guarded status transitions (pending, sent, acknowledged, rejected, error, failed)
- Scheduled retries with a capped attempt count
- Append-only audit trail for compliance
"""

from .models import (
    LEGAL_TRANSITIONS,
    AuditAction,
    TransmissionAuditEntry,
    TransmissionRecord,
    TransmissionStatus,
)
from .retry import RetryPolicy
from .store import TransmissionLedger

__all__ = [
    "LEGAL_TRANSITIONS",
    "AuditAction",
    "RetryPolicy",
    "TransmissionAuditEntry",
    "TransmissionLedger",
    "TransmissionRecord",
    "TransmissionStatus",
]
