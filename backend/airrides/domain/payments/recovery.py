from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from airrides.domain.bookings import ids as booking_ids
from airrides.domain.bookings import service as booking_service
from airrides.domain.errors import NOT_FOUND, TRANSIENT_STORAGE_FAILURE, ReconciliationError
from airrides.domain.flights import inventory
from airrides.domain.payments.db_models import PaymentAttempt
from airrides.domain.payments.ledger import PaymentLedger
from airrides.infra.db import transaction
from airrides.infra.metrics import metrics

logger = logging.getLogger(__name__)

RESULT_RECOVERED = "recovered"
RESULT_REPAIRED = "repaired"
RESULT_FAILED = "failed"


@dataclass
class RecoveryReport:
    scanned: int = 0
    recovered: int = 0
    repaired: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "recovered": self.recovered,
            "repaired": self.repaired,
            "failed": self.failed,
        }


class RecoverySweeper:
    """Completes payments that were verified but never reached PROCESSED.

    Candidates are stale PENDING ledger entries plus FAILED entries whose
    failure was transient. For each one the sweeper either finds the booking
    that already exists and repairs the ledger, or performs the seat
    decrement and booking write itself in one transaction. A failure on one
    candidate is recorded against it and the sweep moves on.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: PaymentLedger,
        *,
        older_than_minutes: int = 5,
        max_attempts: int = 3,
        batch_size: int = 100,
        monitor=None,  # noqa: ANN001
        booking_id_factory: Callable[[], str] = booking_ids.generate_booking_id,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.older_than_minutes = older_than_minutes
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.monitor = monitor
        self.booking_id_factory = booking_id_factory
        self._lock = asyncio.Lock()

    async def run_once(self) -> RecoveryReport:
        async with self._lock:
            return await self._sweep()

    async def _candidates(self) -> list[PaymentAttempt]:
        orphans = await self.ledger.find_orphans(
            self.older_than_minutes, self.max_attempts, limit=self.batch_size
        )
        remaining = self.batch_size - len(orphans) if self.batch_size else None
        if remaining is not None and remaining <= 0:
            return orphans
        retryable = await self.ledger.find_retryable_failures(
            self.older_than_minutes, self.max_attempts, limit=remaining
        )
        return orphans + retryable

    async def _sweep(self) -> RecoveryReport:
        report = RecoveryReport()
        candidates = await self._candidates()
        report.scanned = len(candidates)
        if not candidates:
            return report

        logger.info("payment_recovery_started", extra={"extra": {"candidates": len(candidates)}})
        for entry in candidates:
            try:
                result = await self._recover(entry)
            except Exception as exc:  # noqa: BLE001
                result = await self._fail_transient(entry, exc)
            if result == RESULT_RECOVERED:
                report.recovered += 1
            elif result == RESULT_REPAIRED:
                report.repaired += 1
            else:
                report.failed += 1
            metrics.record_recovery(result)
            if self.monitor is not None and result != RESULT_FAILED:
                self.monitor.record_outcome(result.upper())

        logger.info("payment_recovery_finished", extra={"extra": report.as_dict()})
        return report

    async def _recover(self, entry: PaymentAttempt) -> str:
        payment_id = entry.payment_id
        if not entry.user_id or not entry.flight_id:
            await self.ledger.mark_failed(payment_id, "User or flight missing from payment log", code=NOT_FOUND)
            return RESULT_FAILED

        try:
            existing = await self._existing_booking(entry)
            if existing is not None:
                await self.ledger.mark_processed(payment_id, existing)
                logger.info(
                    "payment_recovery_repaired",
                    extra={"extra": {"payment_id": payment_id, "booking_id": existing}},
                )
                return RESULT_REPAIRED
            booking_id = await self._write_booking(entry)
        except IntegrityError:
            # Another worker wrote the booking between our check and our insert.
            try:
                existing = await self._existing_booking(entry)
            except Exception as exc:  # noqa: BLE001
                return await self._fail_transient(entry, exc)
            if existing is None:
                await self.ledger.mark_failed(
                    payment_id, "Recovery could not store booking", code=TRANSIENT_STORAGE_FAILURE
                )
                return RESULT_FAILED
            await self.ledger.mark_processed(payment_id, existing)
            return RESULT_REPAIRED
        except ReconciliationError as exc:
            await self.ledger.mark_failed(payment_id, f"Recovery failed: {exc.detail}", code=exc.kind)
            logger.warning(
                "payment_recovery_rejected",
                extra={"extra": {"payment_id": payment_id, "code": exc.code, "reason": exc.detail}},
            )
            return RESULT_FAILED
        except Exception as exc:  # noqa: BLE001
            return await self._fail_transient(entry, exc)

        await self.ledger.mark_processed(payment_id, booking_id, recovered=True)
        logger.info(
            "payment_recovered",
            extra={"extra": {"payment_id": payment_id, "booking_id": booking_id}},
        )
        return RESULT_RECOVERED

    async def _fail_transient(self, entry: PaymentAttempt, exc: Exception) -> str:
        await self.ledger.mark_failed(
            entry.payment_id, f"Recovery failed: {type(exc).__name__}", code=TRANSIENT_STORAGE_FAILURE
        )
        logger.warning(
            "payment_recovery_error",
            extra={"extra": {"payment_id": entry.payment_id, "error": type(exc).__name__}},
            exc_info=exc,
        )
        return RESULT_FAILED

    async def _existing_booking(self, entry: PaymentAttempt) -> str | None:
        async with self.session_factory() as session:
            booking = await booking_service.find_booking_for_payment(session, entry.user_id, entry.payment_id)
            return booking.booking_id if booking else None

    async def _write_booking(self, entry: PaymentAttempt) -> str:
        passengers = entry.passengers or 1
        async with transaction(self.session_factory) as session:
            flight = await inventory.reserve_seats(session, entry.flight_id, passengers)
            if flight is None:
                await inventory.describe_unavailable(session, entry.flight_id, passengers)
            record = booking_service.build_booking_record_from_snapshot(
                entry.booking_details or {},
                flight,
                booking_id=self.booking_id_factory(),
                passengers=passengers,
                order_id=entry.order_id,
                payment_id=entry.payment_id,
                payment_signature=entry.signature,
                recovered_from_failure=True,
            )
            record.booking_date = entry.created_at
            booking = await booking_service.append_booking(session, entry.user_id, record)
            return booking.booking_id
