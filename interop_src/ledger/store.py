"""SQLite-backed transmission ledger.

The ledger is the only shared mutable state in the system. Two invariants
are enforced in the database itself: one row per (tenant, message control
id), via a unique constraint and ``ON CONFLICT DO NOTHING``; and one owner
per delivery attempt, via a conditional ``UPDATE ... WHERE status = ?``
that only one caller can win.
"""

import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from ..errors import (
    DuplicateSubmissionError,
    InvalidStateTransitionError,
    TransmissionNotFoundError,
)
from ..models import Destination
from .models import (
    AuditAction,
    TransmissionAuditEntry,
    TransmissionRecord,
    TransmissionStatus,
    is_legal_transition,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = """
    id, tenant_id, message_control_id, message_type, format_kind,
    destination, endpoint, payload, content_hash, status,
    retry_count, next_retry_at, ack_code, error_details, claimed_by,
    created_at, sent_at, acknowledged_at, updated_at
"""


class TransmissionLedger:
    """Persistent, audited record of every message sent to public health."""

    def __init__(
        self,
        db_path: str | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database. Defaults to INTEROP_DB_PATH env var
                     or ~/.aegis/interop.db
            retry_policy: Backoff and retry cap applied by mark_error
            clock: Returns the current time; defaults to datetime.now
        """
        if db_path:
            self.db_path = os.path.expanduser(db_path)
        else:
            self.db_path = os.path.expanduser(
                os.environ.get("INTEROP_DB_PATH", "~/.aegis/interop.db")
            )

        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or datetime.now
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path) as f:
            schema = f.read()

        with self._connect() as conn:
            conn.executescript(schema)

    def _connect(self) -> sqlite3.Connection:
        """Get database connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _generate_id(self) -> str:
        return str(uuid.uuid4())

    def _now(self) -> datetime:
        return self._clock()

    def _audit(
        self,
        conn: sqlite3.Connection,
        record_id: str,
        action: AuditAction,
        from_status: TransmissionStatus | None,
        to_status: TransmissionStatus,
        actor: str | None,
        at: datetime,
        details: dict | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO transmission_audit (
                transmission_id, action, from_status, to_status, actor, performed_at, details
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                action.value,
                from_status.value if from_status else None,
                to_status.value,
                actor,
                at.isoformat(),
                json.dumps(details) if details else None,
            )
        )

    # Submission

    def submit(
        self,
        tenant_id: str,
        composed: Any,
        destination: Destination,
        actor: str | None = None,
        strict: bool = False,
    ) -> TransmissionRecord:
        """Queue a composed message for delivery.

        Submitting the same (tenant, message control id) again returns the
        existing record unchanged.

        Args:
            tenant_id: Owning tenant (facility / organization)
            composed: ComposedMessage from the composer
            destination: Where the message is going
            actor: Who submitted it, for the audit trail
            strict: Raise DuplicateSubmissionError instead of returning the
                    existing record

        Returns:
            The new pending record, or the existing one for a duplicate
        """
        record_id = self._generate_id()
        now = self._now()

        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO transmissions ({_RECORD_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, NULL, NULL, NULL, ?, NULL, NULL, ?)
                ON CONFLICT(tenant_id, message_control_id) DO NOTHING
                """,
                (
                    record_id, tenant_id, composed.message_control_id,
                    composed.message_type.value, composed.format_kind.value,
                    destination.name, destination.endpoint,
                    composed.payload, composed.content_hash,
                    TransmissionStatus.PENDING.value,
                    now.isoformat(), now.isoformat(),
                )
            )

            if cursor.rowcount > 0:
                self._audit(
                    conn, record_id, AuditAction.SUBMITTED, None, TransmissionStatus.PENDING,
                    actor, now, {"destination": destination.name, "content_hash": composed.content_hash},
                )
                conn.commit()
                logger.info(
                    f"Queued {composed.message_type.value} {composed.message_control_id} "
                    f"for {destination.name} as transmission {record_id}"
                )
                return self.get(record_id)

        existing = self.get_by_control_id(tenant_id, composed.message_control_id)
        if existing.content_hash != composed.content_hash:
            logger.warning(
                f"Duplicate submission of {composed.message_control_id} for tenant {tenant_id} "
                f"has different content; keeping transmission {existing.id}"
            )
        else:
            logger.info(
                f"Duplicate submission of {composed.message_control_id}; "
                f"returning transmission {existing.id}"
            )
        if strict:
            raise DuplicateSubmissionError(existing)
        return existing

    # Status transitions

    def _transition(
        self,
        conn: sqlite3.Connection,
        record_id: str,
        from_status: TransmissionStatus,
        to_status: TransmissionStatus,
        action: AuditAction,
        actor: str | None,
        now: datetime,
        details: dict | None = None,
        **fields: Any,
    ) -> None:
        """Guarded status change plus audit row, on the caller's connection.

        Raises:
            TransmissionNotFoundError: If the record does not exist
            InvalidStateTransitionError: If the record is not in from_status
        """
        if not is_legal_transition(from_status, to_status):
            raise InvalidStateTransitionError(record_id, from_status, to_status)

        set_parts = ["status = ?", "updated_at = ?"]
        params: list[Any] = [to_status.value, now.isoformat()]
        for key, value in fields.items():
            set_parts.append(f"{key} = ?")
            if isinstance(value, datetime):
                params.append(value.isoformat())
            else:
                params.append(value)
        params.extend([record_id, from_status.value])

        cursor = conn.execute(
            f"UPDATE transmissions SET {', '.join(set_parts)} WHERE id = ? AND status = ?",
            params
        )
        if cursor.rowcount == 0:
            row = conn.execute(
                "SELECT status FROM transmissions WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                raise TransmissionNotFoundError(record_id)
            raise InvalidStateTransitionError(record_id, TransmissionStatus(row["status"]), to_status)

        self._audit(conn, record_id, action, from_status, to_status, actor, now, details)

    def _current(self, conn: sqlite3.Connection, record_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT status, retry_count, error_details FROM transmissions WHERE id = ?",
            (record_id,)
        ).fetchone()
        if row is None:
            raise TransmissionNotFoundError(record_id)
        return row

    def mark_sent(
        self,
        record_id: str,
        actor: str | None = None,
        worker_id: str | None = None,
    ) -> TransmissionRecord:
        """Claim a pending record for delivery (pending -> sent)."""
        now = self._now()
        with self._connect() as conn:
            self._transition(
                conn, record_id, TransmissionStatus.PENDING, TransmissionStatus.SENT,
                AuditAction.SENT, actor or worker_id, now,
                {"worker_id": worker_id} if worker_id else None,
                sent_at=now, claimed_by=worker_id,
            )
            conn.commit()
        logger.info(f"Transmission {record_id} sent" + (f" by {worker_id}" if worker_id else ""))
        return self.get(record_id)

    def mark_acknowledged(
        self,
        record_id: str,
        ack_code: str = "AA",
        actor: str | None = None,
    ) -> TransmissionRecord:
        """Record a positive acknowledgement (sent -> acknowledged)."""
        now = self._now()
        with self._connect() as conn:
            self._transition(
                conn, record_id, TransmissionStatus.SENT, TransmissionStatus.ACKNOWLEDGED,
                AuditAction.ACKNOWLEDGED, actor, now, {"ack_code": ack_code},
                ack_code=ack_code, acknowledged_at=now, next_retry_at=None,
            )
            conn.commit()
        logger.info(f"Transmission {record_id} acknowledged ({ack_code})")
        return self.get(record_id)

    def mark_rejected(
        self,
        record_id: str,
        ack_code: str = "AR",
        error_detail: str = "",
        actor: str | None = None,
    ) -> TransmissionRecord:
        """Record a rejection by the receiver (sent -> rejected)."""
        now = self._now()
        with self._connect() as conn:
            current = self._current(conn, record_id)
            errors = json.loads(current["error_details"]) if current["error_details"] else []
            errors.append({"at": now.isoformat(), "ack_code": ack_code, "detail": error_detail})
            self._transition(
                conn, record_id, TransmissionStatus.SENT, TransmissionStatus.REJECTED,
                AuditAction.REJECTED, actor, now, {"ack_code": ack_code, "detail": error_detail},
                ack_code=ack_code, error_details=json.dumps(errors),
            )
            conn.commit()
        logger.warning(f"Transmission {record_id} rejected ({ack_code}): {error_detail}")
        return self.get(record_id)

    def mark_error(
        self,
        record_id: str,
        error_detail: str,
        actor: str | None = None,
        final: bool = False,
    ) -> TransmissionRecord:
        """Record a failed delivery attempt (sent -> error).

        Increments retry_count and schedules the next attempt. When the
        retry policy is exhausted, or ``final`` marks the failure as one a
        retry cannot fix, the record moves on to ``failed``.
        """
        now = self._now()
        with self._connect() as conn:
            current = self._current(conn, record_id)
            attempt = current["retry_count"] + 1
            errors = json.loads(current["error_details"]) if current["error_details"] else []
            errors.append({"at": now.isoformat(), "attempt": attempt, "detail": error_detail})
            next_retry_at = None if final else self.retry_policy.next_retry_at(now, attempt)

            self._transition(
                conn, record_id, TransmissionStatus.SENT, TransmissionStatus.ERROR,
                AuditAction.ERROR, actor, now, {"attempt": attempt, "detail": error_detail},
                retry_count=attempt, next_retry_at=next_retry_at,
                error_details=json.dumps(errors), claimed_by=None,
            )
            if next_retry_at is None:
                reason = "not retryable" if final else f"retries exhausted after {attempt} attempts"
                self._transition(
                    conn, record_id, TransmissionStatus.ERROR, TransmissionStatus.FAILED,
                    AuditAction.FAILED, actor, now, {"reason": reason},
                )
            conn.commit()

        if next_retry_at is None:
            logger.error(
                f"Transmission {record_id} failed after {attempt} attempts: {error_detail}"
            )
        else:
            logger.info(
                f"Transmission {record_id} error (attempt {attempt}), "
                f"retry at {next_retry_at.isoformat()}: {error_detail}"
            )
        return self.get(record_id)

    def requeue_due(self, actor: str | None = "scheduler") -> list[TransmissionRecord]:
        """Move errored records whose retry time has passed back to pending."""
        now = self._now()
        requeued = []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id FROM transmissions
                WHERE status = ? AND next_retry_at IS NOT NULL AND next_retry_at <= ?
                ORDER BY next_retry_at ASC
                """,
                (TransmissionStatus.ERROR.value, now.isoformat())
            ).fetchall()

            for row in rows:
                try:
                    self._transition(
                        conn, row["id"], TransmissionStatus.ERROR, TransmissionStatus.PENDING,
                        AuditAction.REQUEUED, actor, now, next_retry_at=None,
                    )
                except InvalidStateTransitionError:
                    # Another scheduler got there first
                    continue
                requeued.append(row["id"])
            conn.commit()

        if requeued:
            logger.info(f"Requeued {len(requeued)} transmissions for retry")
        return [self.get(record_id) for record_id in requeued]

    def claim_batch(self, limit: int, worker_id: str) -> list[TransmissionRecord]:
        """Claim up to ``limit`` pending records, oldest first.

        Each record is claimed with its own pending -> sent update, so a
        record another worker claimed in the meantime is skipped.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id FROM transmissions
                WHERE status = ?
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (TransmissionStatus.PENDING.value, limit)
            ).fetchall()

        claimed = []
        for row in rows:
            try:
                claimed.append(self.mark_sent(row["id"], worker_id=worker_id))
            except InvalidStateTransitionError:
                logger.debug(f"Transmission {row['id']} already claimed by another worker")
        return claimed

    # Query methods

    def get(self, record_id: str) -> TransmissionRecord | None:
        """Get a transmission by ID."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM transmissions WHERE id = ?",
                (record_id,)
            ).fetchone()
            return TransmissionRecord.from_row(row) if row else None

    def get_by_control_id(self, tenant_id: str, message_control_id: str) -> TransmissionRecord | None:
        """Get a transmission by its idempotency key."""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_RECORD_COLUMNS} FROM transmissions
                WHERE tenant_id = ? AND message_control_id = ?
                """,
                (tenant_id, message_control_id)
            ).fetchone()
            return TransmissionRecord.from_row(row) if row else None

    def list_by_status(
        self,
        status: TransmissionStatus | list[TransmissionStatus] | None = None,
        tenant_id: str | None = None,
        destination: str | None = None,
        limit: int = 100,
    ) -> list[TransmissionRecord]:
        """List transmissions with optional filters, newest first.

        Args:
            status: Filter by status (single or list)
            tenant_id: Filter by tenant
            destination: Filter by destination name
            limit: Maximum results
        """
        conditions = []
        params: list[Any] = []

        if status:
            if isinstance(status, list):
                placeholders = ",".join("?" * len(status))
                conditions.append(f"status IN ({placeholders})")
                params.extend(s.value for s in status)
            else:
                conditions.append("status = ?")
                params.append(status.value)

        if tenant_id:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)

        if destination:
            conditions.append("destination = ?")
            params.append(destination)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                SELECT {_RECORD_COLUMNS} FROM transmissions
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT ?
                """,
                params
            )
            return [TransmissionRecord.from_row(row) for row in cursor.fetchall()]

    def get_stale_in_flight(self, older_than_minutes: int = 60) -> list[TransmissionRecord]:
        """Records stuck in ``sent`` with no acknowledgement.

        These are left visible for an operator rather than re-sent, since the
        receiver may already have the message.
        """
        cutoff = self._now() - timedelta(minutes=older_than_minutes)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                SELECT {_RECORD_COLUMNS} FROM transmissions
                WHERE status = ? AND sent_at < ?
                ORDER BY sent_at ASC
                """,
                (TransmissionStatus.SENT.value, cutoff.isoformat())
            )
            return [TransmissionRecord.from_row(row) for row in cursor.fetchall()]

    def get_audit_trail(self, record_id: str) -> list[TransmissionAuditEntry]:
        """Get audit history for a transmission, oldest first."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT id, transmission_id, action, from_status, to_status,
                       actor, performed_at, details
                FROM transmission_audit
                WHERE transmission_id = ?
                ORDER BY id ASC
                """,
                (record_id,)
            )
            return [TransmissionAuditEntry.from_row(row) for row in cursor.fetchall()]

    # Statistics

    def get_stats(self, tenant_id: str | None = None) -> dict[str, int]:
        """Get transmission statistics.

        Args:
            tenant_id: Restrict to one tenant (None for all)
        """
        tenant_filter = ""
        params: list[Any] = []
        if tenant_id:
            tenant_filter = " AND tenant_id = ?"
            params = [tenant_id]

        now = self._now()
        stats: dict[str, int] = {status.value: 0 for status in TransmissionStatus}

        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT status, COUNT(*) FROM transmissions WHERE 1=1{tenant_filter} GROUP BY status",
                params
            )
            for row in cursor:
                stats[row[0]] = row[1]

            stats["total"] = sum(stats[status.value] for status in TransmissionStatus)

            cursor = conn.execute(
                f"SELECT COUNT(*) FROM transmissions WHERE date(created_at) = ?{tenant_filter}",
                [now.date().isoformat()] + params
            )
            stats["today"] = cursor.fetchone()[0]

            cursor = conn.execute(
                f"""
                SELECT COUNT(*) FROM transmissions
                WHERE status = ? AND next_retry_at <= ?{tenant_filter}
                """,
                [TransmissionStatus.ERROR.value, now.isoformat()] + params
            )
            stats["due_for_retry"] = cursor.fetchone()[0]

        return stats
