"""Delivery worker: moves pending transmissions through the transports.

Each cycle requeues errored records whose retry time has passed, claims a
bounded batch of pending records (pending -> sent), sends each one, and
records the outcome. Transport failures go to the ledger's retry path and
are never retried in place.
"""

import logging
import os
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable

from .errors import TransportError
from .ledger import TransmissionLedger, TransmissionRecord, TransmissionStatus
from .models import Destination
from .transport import Transport, get_transport

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Counts from one worker cycle."""
    requeued: int = 0
    claimed: int = 0
    acknowledged: int = 0
    rejected: int = 0
    errored: int = 0
    failed: int = 0
    record_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "requeued": self.requeued,
            "claimed": self.claimed,
            "acknowledged": self.acknowledged,
            "rejected": self.rejected,
            "errored": self.errored,
            "failed": self.failed,
        }


class TransmissionWorker:
    """Sends pending transmissions and records the result in the ledger."""

    def __init__(
        self,
        ledger: TransmissionLedger,
        destinations: dict[str, Destination],
        transport_factory: Callable[[Destination], Transport] = get_transport,
        batch_size: int = 50,
        max_threads: int = 1,
        worker_id: str | None = None,
    ):
        """Initialize the worker.

        Args:
            ledger: Transmission ledger to work from
            destinations: Configured destinations, keyed by name
            transport_factory: Builds the transport for a destination
            batch_size: Maximum records claimed per cycle
            max_threads: Records sent in parallel per cycle
            worker_id: Recorded as the claimant; defaults to hostname-pid
        """
        self.ledger = ledger
        self.destinations = destinations
        self.transport_factory = transport_factory
        self.batch_size = batch_size
        self.max_threads = max(1, max_threads)
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self._transports: dict[str, Transport] = {}
        self._transports_lock = threading.Lock()

    def _transport_for(self, destination: Destination) -> Transport:
        with self._transports_lock:
            transport = self._transports.get(destination.name)
            if transport is None:
                transport = self.transport_factory(destination)
                self._transports[destination.name] = transport
            return transport

    def deliver(self, record: TransmissionRecord) -> TransmissionRecord:
        """Send one claimed (sent) record and record the outcome."""
        destination = self.destinations.get(record.destination)
        if destination is None:
            return self.ledger.mark_error(
                record.id, f"Unknown destination: {record.destination}", actor=self.worker_id
            )

        endpoint = record.endpoint or destination.endpoint
        try:
            transport = self._transport_for(destination)
        except ValueError as e:
            logger.error(f"Transmission {record.id}: {e}")
            return self.ledger.mark_error(record.id, str(e), actor=self.worker_id, final=True)

        try:
            response = transport.send(record.payload, endpoint, destination.credentials)
        except TransportError as e:
            logger.error(f"Transmission {record.id} to {destination.name} failed: {e.detail}")
            return self.ledger.mark_error(
                record.id, e.detail, actor=self.worker_id, final=not e.retryable
            )

        if response.accepted:
            return self.ledger.mark_acknowledged(
                record.id, ack_code=response.ack_code, actor=self.worker_id
            )
        return self.ledger.mark_rejected(
            record.id,
            ack_code=response.ack_code,
            error_detail=response.error_detail,
            actor=self.worker_id,
        )

    def run_once(self, dry_run: bool = False) -> CycleResult:
        """Run a single delivery cycle.

        Args:
            dry_run: If True, don't claim or send, just log what would be sent.

        Returns:
            Counts of what happened this cycle.
        """
        result = CycleResult()

        if dry_run:
            pending = self.ledger.list_by_status(TransmissionStatus.PENDING, limit=self.batch_size)
            for record in pending:
                logger.info(
                    f"[DRY RUN] Would send: {record.message_type} {record.message_control_id} "
                    f"to {record.destination} [ID: {record.id}]"
                )
            result.record_ids = [record.id for record in pending]
            return result

        result.requeued = len(self.ledger.requeue_due(actor=self.worker_id))

        claimed = self.ledger.claim_batch(self.batch_size, self.worker_id)
        result.claimed = len(claimed)
        if not claimed:
            logger.info("No pending transmissions to send")
            return result

        logger.info(f"Claimed {len(claimed)} transmission(s) to send")

        if self.max_threads == 1:
            outcomes = [self._deliver_safely(record) for record in claimed]
        else:
            # Build transports up front so sender threads only read the cache
            for record in claimed:
                destination = self.destinations.get(record.destination)
                if destination is None:
                    continue
                try:
                    self._transport_for(destination)
                except ValueError:
                    # deliver() records the unsupported transport per row
                    continue
            outcomes = []
            with ThreadPoolExecutor(
                max_workers=self.max_threads, thread_name_prefix="transmission-sender"
            ) as executor:
                futures = [executor.submit(self._deliver_safely, record) for record in claimed]
                for future in as_completed(futures):
                    outcomes.append(future.result())

        for record in outcomes:
            if record is None:
                continue
            result.record_ids.append(record.id)
            if record.status == TransmissionStatus.ACKNOWLEDGED:
                result.acknowledged += 1
            elif record.status == TransmissionStatus.REJECTED:
                result.rejected += 1
            elif record.status == TransmissionStatus.FAILED:
                result.failed += 1
            else:
                result.errored += 1

        logger.info(
            f"Cycle complete: {result.acknowledged} acknowledged, {result.rejected} rejected, "
            f"{result.errored} errored, {result.failed} failed"
        )
        return result

    def _deliver_safely(self, record: TransmissionRecord) -> TransmissionRecord | None:
        """Deliver one record; an unexpected error leaves it in ``sent`` for an operator."""
        try:
            return self.deliver(record)
        except Exception as e:
            logger.exception(f"Unexpected error delivering transmission {record.id}: {e}")
            return None

    def run_continuous(self, interval: int = 60, max_cycles: int | None = None) -> None:
        """Run continuously, sending at the given interval.

        Args:
            interval: Seconds between cycles
            max_cycles: Stop after this many cycles (None runs until interrupted)
        """
        logger.info(f"Starting transmission worker {self.worker_id} (poll interval: {interval}s)")

        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Error during delivery cycle: {e}")

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            logger.debug(f"Sleeping for {interval} seconds...")
            time.sleep(interval)
