"""Tests for the transmission ledger."""

import sqlite3
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from interop_src.composer import MessageComposer
from interop_src.errors import (
    DuplicateSubmissionError,
    InvalidStateTransitionError,
    TransmissionNotFoundError,
)
from interop_src.ledger import (
    AuditAction,
    RetryPolicy,
    TransmissionLedger,
    TransmissionStatus,
)
from interop_src.ledger.models import LEGAL_TRANSITIONS, is_legal_transition
from interop_src.models import MessageType

from conftest import NOW


class Clock:
    """Settable clock for the ledger."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def ledger(tmp_path, clock):
    """Create a ledger on a temporary database."""
    return TransmissionLedger(str(tmp_path / "interop.db"), clock=clock)


@pytest.fixture
def compose(mapper, encounter_event, destination):
    composer = MessageComposer(mapper, sending_application="AEGIS")

    def _compose(control_id="CTRL0001", event=None):
        return composer.compose(
            MessageType.ADT_A01, event or encounter_event, destination,
            message_control_id=control_id, now=NOW,
        )
    return _compose


def _fail(ledger, record_id, clock, attempts):
    """Claim and fail a record ``attempts`` times, waiting out each backoff."""
    record = None
    for _ in range(attempts):
        ledger.requeue_due()
        ledger.mark_sent(record_id, worker_id="w1")
        record = ledger.mark_error(record_id, "connection refused")
        clock.advance(minutes=15)
    return record


class TestSubmit:
    """Tests for idempotent submission."""

    def test_submit_creates_pending_record(self, ledger, compose, destination):
        composed = compose()
        record = ledger.submit("tenant-a", composed, destination, actor="composer")

        assert record.status == TransmissionStatus.PENDING
        assert record.tenant_id == "tenant-a"
        assert record.message_control_id == "CTRL0001"
        assert record.message_type == "ADT^A01"
        assert record.format_kind == "HL7v2"
        assert record.destination == "state-registry"
        assert record.endpoint == "https://registry.example.org/hl7"
        assert record.payload == composed.payload
        assert record.content_hash == composed.content_hash
        assert record.retry_count == 0
        assert record.created_at == NOW

    def test_duplicate_returns_existing(self, ledger, compose, destination):
        """Submitting the same control id twice leaves one record and one audit row."""
        first = ledger.submit("tenant-a", compose(), destination)
        second = ledger.submit("tenant-a", compose(), destination)

        assert second.id == first.id
        assert ledger.get_stats()["total"] == 1
        assert [e.action for e in ledger.get_audit_trail(first.id)] == [AuditAction.SUBMITTED]

    def test_duplicate_with_different_content_keeps_original(
        self, ledger, compose, destination, encounter_event
    ):
        first = ledger.submit("tenant-a", compose(), destination)
        changed = replace(encounter_event, diagnoses=encounter_event.diagnoses[:1])
        second = ledger.submit("tenant-a", compose(event=changed), destination)

        assert second.id == first.id
        assert second.content_hash == first.content_hash

    def test_strict_duplicate_raises(self, ledger, compose, destination):
        first = ledger.submit("tenant-a", compose(), destination)
        with pytest.raises(DuplicateSubmissionError) as exc_info:
            ledger.submit("tenant-a", compose(), destination, strict=True)
        assert exc_info.value.existing.id == first.id

    def test_same_control_id_other_tenant(self, ledger, compose, destination):
        first = ledger.submit("tenant-a", compose(), destination)
        second = ledger.submit("tenant-b", compose(), destination)
        assert second.id != first.id

    def test_submission_is_audited(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination, actor="composer")
        trail = ledger.get_audit_trail(record.id)
        assert len(trail) == 1
        assert trail[0].from_status is None
        assert trail[0].to_status == TransmissionStatus.PENDING
        assert trail[0].actor == "composer"
        assert trail[0].details["destination"] == "state-registry"


class TestTransitions:
    """Tests for guarded status changes."""

    def test_acknowledge(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id, worker_id="w1")
        acked = ledger.mark_acknowledged(record.id, ack_code="AA", actor="w1")

        assert acked.status == TransmissionStatus.ACKNOWLEDGED
        assert acked.ack_code == "AA"
        assert acked.acknowledged_at == NOW
        assert acked.status.is_terminal

    def test_reject_records_detail(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id)
        rejected = ledger.mark_rejected(record.id, ack_code="AE", error_detail="PID-7 invalid")

        assert rejected.status == TransmissionStatus.REJECTED
        assert rejected.ack_code == "AE"
        assert rejected.last_error == "PID-7 invalid"

    def test_cannot_acknowledge_pending(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            ledger.mark_acknowledged(record.id)
        assert exc_info.value.current == TransmissionStatus.PENDING
        assert ledger.get(record.id).status == TransmissionStatus.PENDING

    def test_terminal_states_are_final(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id)
        ledger.mark_acknowledged(record.id)
        with pytest.raises(InvalidStateTransitionError):
            ledger.mark_rejected(record.id)
        with pytest.raises(InvalidStateTransitionError):
            ledger.mark_error(record.id, "late failure")

    def test_sent_twice_rejected(self, ledger, compose, destination):
        """Only one claimant can move a record from pending to sent."""
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id, worker_id="w1")
        with pytest.raises(InvalidStateTransitionError):
            ledger.mark_sent(record.id, worker_id="w2")
        assert ledger.get(record.id).claimed_by == "w1"

    def test_missing_record(self, ledger):
        with pytest.raises(TransmissionNotFoundError):
            ledger.mark_sent("no-such-id")
        with pytest.raises(TransmissionNotFoundError):
            ledger.mark_error("no-such-id", "boom")

    def test_legal_transition_table(self):
        assert is_legal_transition(TransmissionStatus.PENDING, TransmissionStatus.SENT)
        assert is_legal_transition(TransmissionStatus.ERROR, TransmissionStatus.FAILED)
        assert not is_legal_transition(TransmissionStatus.PENDING, TransmissionStatus.ACKNOWLEDGED)
        assert not is_legal_transition(TransmissionStatus.REJECTED, TransmissionStatus.PENDING)
        for status in TransmissionStatus:
            if status.is_terminal:
                assert LEGAL_TRANSITIONS[status] == frozenset()


class TestRetry:
    """Tests for error handling and retry scheduling."""

    def test_error_schedules_retry(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id, worker_id="w1")
        errored = ledger.mark_error(record.id, "HTTP 503")

        assert errored.status == TransmissionStatus.ERROR
        assert errored.retry_count == 1
        assert errored.next_retry_at == NOW + timedelta(minutes=15)
        assert errored.claimed_by is None
        assert errored.error_details[-1]["attempt"] == 1
        assert errored.last_error == "HTTP 503"

    def test_requeue_waits_for_backoff(self, ledger, compose, destination, clock):
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id)
        ledger.mark_error(record.id, "timeout")

        clock.advance(minutes=14)
        assert ledger.requeue_due() == []

        clock.advance(minutes=1)
        requeued = ledger.requeue_due()
        assert [r.id for r in requeued] == [record.id]
        assert requeued[0].status == TransmissionStatus.PENDING
        assert requeued[0].next_retry_at is None
        assert requeued[0].retry_count == 1

    def test_failed_after_max_attempts(self, ledger, compose, destination, clock):
        record = ledger.submit("tenant-a", compose(), destination)
        after_four = _fail(ledger, record.id, clock, 4)
        assert after_four.status == TransmissionStatus.ERROR

        final = _fail(ledger, record.id, clock, 1)
        assert final.status == TransmissionStatus.FAILED
        assert final.retry_count == 5
        assert final.next_retry_at is None
        assert len(final.error_details) == 5

        clock.advance(hours=1)
        assert ledger.requeue_due() == []
        actions = [e.action for e in ledger.get_audit_trail(record.id)]
        assert actions[-2:] == [AuditAction.ERROR, AuditAction.FAILED]

    def test_final_error_skips_retries(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id)

        failed = ledger.mark_error(record.id, "DIRECT not configured", final=True)

        assert failed.status == TransmissionStatus.FAILED
        assert failed.retry_count == 1
        assert failed.next_retry_at is None
        trail = ledger.get_audit_trail(record.id)
        assert [e.action for e in trail[-2:]] == [AuditAction.ERROR, AuditAction.FAILED]
        assert trail[-1].details == {"reason": "not retryable"}

    def test_custom_policy(self, tmp_path, clock, compose, destination):
        ledger = TransmissionLedger(
            str(tmp_path / "custom.db"),
            retry_policy=RetryPolicy(delay=timedelta(minutes=1), max_attempts=1),
            clock=clock,
        )
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id)
        assert ledger.mark_error(record.id, "boom").status == TransmissionStatus.FAILED


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_flat_delay(self):
        policy = RetryPolicy()
        assert policy.backoff(1) == timedelta(minutes=15)
        assert policy.backoff(4) == timedelta(minutes=15)

    def test_exponential_delay_capped(self):
        policy = RetryPolicy(exponential=True, max_delay=timedelta(minutes=60))
        assert policy.backoff(1) == timedelta(minutes=15)
        assert policy.backoff(2) == timedelta(minutes=30)
        assert policy.backoff(3) == timedelta(minutes=60)
        assert policy.backoff(4) == timedelta(minutes=60)

    def test_exhausted(self):
        policy = RetryPolicy(max_attempts=5)
        assert policy.next_retry_at(NOW, 4) == NOW + timedelta(minutes=15)
        assert policy.next_retry_at(NOW, 5) is None

    def test_from_config_class(self):
        class Settings:
            RETRY_DELAY_MINUTES = 5
            RETRY_MAX_ATTEMPTS = 3
            RETRY_EXPONENTIAL = True
            RETRY_MAX_DELAY_MINUTES = 20

        policy = RetryPolicy.from_config(Settings)
        assert policy == RetryPolicy(
            delay=timedelta(minutes=5), max_attempts=3,
            exponential=True, max_delay=timedelta(minutes=20),
        )

    def test_from_config_mapping_keeps_defaults(self):
        policy = RetryPolicy.from_config({"RETRY_MAX_ATTEMPTS": 2})
        assert policy.max_attempts == 2
        assert policy.delay == timedelta(minutes=15)
        assert policy.max_delay == timedelta(hours=4)

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy().backoff(0)


class TestClaim:
    """Tests for claiming pending work."""

    def test_claim_oldest_first(self, ledger, compose, destination, clock):
        ids = []
        for n in range(3):
            ids.append(ledger.submit("tenant-a", compose(f"CTRL{n}"), destination).id)
            clock.advance(seconds=1)

        claimed = ledger.claim_batch(2, "w1")
        assert [r.id for r in claimed] == ids[:2]
        assert all(r.status == TransmissionStatus.SENT for r in claimed)
        assert all(r.claimed_by == "w1" for r in claimed)

        remaining = ledger.claim_batch(10, "w2")
        assert [r.id for r in remaining] == ids[2:]
        assert ledger.claim_batch(10, "w3") == []


class TestQueries:
    """Tests for listing, stale detection and statistics."""

    def test_get_by_control_id(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        assert ledger.get_by_control_id("tenant-a", "CTRL0001").id == record.id
        assert ledger.get_by_control_id("tenant-b", "CTRL0001") is None
        assert ledger.get("no-such-id") is None

    def test_list_by_status(self, ledger, compose, destination, clock):
        first = ledger.submit("tenant-a", compose("CTRL1"), destination)
        clock.advance(seconds=1)
        second = ledger.submit("tenant-b", compose("CTRL2"), destination)
        ledger.mark_sent(first.id)

        assert [r.id for r in ledger.list_by_status(TransmissionStatus.PENDING)] == [second.id]
        both = ledger.list_by_status([TransmissionStatus.PENDING, TransmissionStatus.SENT])
        assert [r.id for r in both] == [second.id, first.id]
        assert [r.id for r in ledger.list_by_status(tenant_id="tenant-a")] == [first.id]
        assert ledger.list_by_status(destination="elsewhere") == []

    def test_stale_in_flight(self, ledger, compose, destination, clock):
        record = ledger.submit("tenant-a", compose(), destination)
        ledger.mark_sent(record.id)

        clock.advance(minutes=30)
        assert ledger.get_stale_in_flight(older_than_minutes=60) == []

        clock.advance(minutes=31)
        assert [r.id for r in ledger.get_stale_in_flight(older_than_minutes=60)] == [record.id]

    def test_stats(self, ledger, compose, destination):
        acked = ledger.submit("tenant-a", compose("CTRL1"), destination)
        errored = ledger.submit("tenant-a", compose("CTRL2"), destination)
        ledger.submit("tenant-b", compose("CTRL3"), destination)
        ledger.mark_sent(acked.id)
        ledger.mark_acknowledged(acked.id)
        ledger.mark_sent(errored.id)
        ledger.mark_error(errored.id, "timeout")

        stats = ledger.get_stats()
        assert stats["total"] == 3
        assert stats["today"] == 3
        assert stats["pending"] == 1
        assert stats["acknowledged"] == 1
        assert stats["error"] == 1
        assert stats["due_for_retry"] == 0
        assert stats["failed"] == 0

        assert ledger.get_stats(tenant_id="tenant-b")["total"] == 1

    def test_to_dict_hides_payload(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        assert "payload" not in record.to_dict()
        assert record.to_dict(include_payload=True)["payload"].startswith("MSH|")


class TestConcurrency:
    """Tests for several ledgers sharing one database file."""

    def _run_together(self, count, target):
        """Start ``count`` threads that call ``target(n)`` at the same moment."""
        barrier = threading.Barrier(count)
        results = [None] * count
        errors = []

        def run(n):
            barrier.wait()
            try:
                results[n] = target(n)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(n,)) for n in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return results, errors

    def test_concurrent_submissions_create_one_record(self, tmp_path, clock, compose, destination):
        db_path = str(tmp_path / "shared.db")
        ledgers = [TransmissionLedger(db_path, clock=clock) for _ in range(8)]
        composed = compose("CTRL-RACE")

        results, errors = self._run_together(
            8, lambda n: ledgers[n].submit("tenant-a", composed, destination)
        )

        assert errors == []
        assert len({record.id for record in results}) == 1
        assert ledgers[0].get_stats()["total"] == 1
        submitted = [
            e for e in ledgers[0].get_audit_trail(results[0].id)
            if e.action == AuditAction.SUBMITTED
        ]
        assert len(submitted) == 1

    def test_concurrent_claims_take_each_record_once(self, tmp_path, clock, compose, destination):
        db_path = str(tmp_path / "shared.db")
        ledgers = [TransmissionLedger(db_path, clock=clock) for _ in range(4)]
        ids = {
            ledgers[0].submit("tenant-a", compose(f"CTRL{n}"), destination).id
            for n in range(10)
        }

        results, errors = self._run_together(
            4, lambda n: ledgers[n].claim_batch(10, f"worker-{n}")
        )

        assert errors == []
        claimed = [record.id for batch in results for record in batch]
        assert sorted(claimed) == sorted(ids)
        assert ledgers[0].get_stats()["sent"] == 10
        for record_id in ids:
            sent = [
                e for e in ledgers[0].get_audit_trail(record_id)
                if e.action == AuditAction.SENT
            ]
            assert len(sent) == 1


class TestDatabaseGuards:
    """Tests for the rules the schema enforces on its own."""

    def test_rows_cannot_be_deleted(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        with sqlite3.connect(ledger.db_path) as conn:
            with pytest.raises(sqlite3.DatabaseError, match="never deleted"):
                conn.execute("DELETE FROM transmissions WHERE id = ?", (record.id,))
        assert ledger.get(record.id) is not None

    def test_illegal_status_update_blocked(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        with sqlite3.connect(ledger.db_path) as conn:
            with pytest.raises(sqlite3.DatabaseError, match="illegal"):
                conn.execute(
                    "UPDATE transmissions SET status = 'acknowledged' WHERE id = ?", (record.id,)
                )

    def test_audit_is_append_only(self, ledger, compose, destination):
        record = ledger.submit("tenant-a", compose(), destination)
        with sqlite3.connect(ledger.db_path) as conn:
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("UPDATE transmission_audit SET actor = 'x'")
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("DELETE FROM transmission_audit")
        assert len(ledger.get_audit_trail(record.id)) == 1
