from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from airrides.domain.errors import TRANSIENT_STORAGE_FAILURE
from airrides.domain.payments.db_models import (
    SOURCE_CLIENT,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSED,
    PaymentAttempt,
)
from airrides.infra.db import transaction
from airrides.infra.metrics import metrics

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 500


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class LedgerStats:
    total: int = 0
    processed: int = 0
    failed: int = 0
    pending: int = 0
    recovered: int = 0
    avg_processing_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 100.0
        return self.processed / self.total * 100

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "pending": self.pending,
            "recovered": self.recovered,
            "avg_processing_ms": round(self.avg_processing_ms, 2),
            "success_rate": round(self.success_rate, 2),
        }


class PaymentLedger:
    """Durable log of payment verification attempts.

    The ledger observes reconciliation; it never gates it. Every write runs in
    its own short transaction, separate from the caller's, and write failures
    are logged and swallowed so the payment path is never aborted by them.
    Reads raise normally.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    def _write_failed(self, operation: str, payment_id: str, exc: Exception) -> None:
        metrics.record_ledger_write_failure(operation)
        logger.warning(
            "payment_ledger_write_failed",
            extra={"extra": {"operation": operation, "payment_id": payment_id, "error": type(exc).__name__}},
        )

    async def record_attempt(
        self,
        payment_id: str,
        order_id: str,
        signature: str | None,
        user_id: str | None,
        flight_id: str | None,
        booking_details: dict | None,
        *,
        passengers: int = 1,
        source: str = SOURCE_CLIENT,
    ) -> bool:
        try:
            async with transaction(self.session_factory) as session:
                session.add(
                    PaymentAttempt(
                        payment_id=payment_id,
                        order_id=order_id,
                        signature=signature,
                        user_id=user_id,
                        flight_id=flight_id,
                        passengers=passengers,
                        booking_details=booking_details or {},
                        status=STATUS_PENDING,
                        attempts=1,
                        source=source,
                        created_at=_now(),
                    )
                )
        except IntegrityError:
            logger.info("payment_attempt_exists", extra={"extra": {"payment_id": payment_id}})
            return False
        except Exception as exc:  # noqa: BLE001
            self._write_failed("record_attempt", payment_id, exc)
            return False
        logger.info(
            "payment_attempt_recorded",
            extra={"extra": {"payment_id": payment_id, "order_id": order_id, "source": source}},
        )
        return True

    async def mark_processed(self, payment_id: str, booking_id: str, *, recovered: bool = False) -> bool:
        try:
            async with transaction(self.session_factory) as session:
                entry = await session.get(PaymentAttempt, payment_id, with_for_update=True)
                if entry is None:
                    logger.warning("payment_attempt_missing", extra={"extra": {"payment_id": payment_id}})
                    return False
                if entry.status == STATUS_PROCESSED and entry.booking_id == booking_id:
                    return True
                entry.status = STATUS_PROCESSED
                entry.booking_id = booking_id
                entry.processed_at = entry.processed_at or _now()
                entry.failed_at = None
                entry.recovered_from_failure = bool(entry.recovered_from_failure or recovered)
        except Exception as exc:  # noqa: BLE001
            self._write_failed("mark_processed", payment_id, exc)
            return False
        logger.info(
            "payment_attempt_processed",
            extra={"extra": {"payment_id": payment_id, "booking_id": booking_id, "recovered": recovered}},
        )
        return True

    async def mark_failed(self, payment_id: str, reason: str, *, code: str | None = None) -> bool:
        try:
            async with transaction(self.session_factory) as session:
                entry = await session.get(PaymentAttempt, payment_id, with_for_update=True)
                if entry is None:
                    logger.warning("payment_attempt_missing", extra={"extra": {"payment_id": payment_id}})
                    return False
                if entry.status == STATUS_PROCESSED:
                    logger.info(
                        "payment_attempt_fail_skipped",
                        extra={"extra": {"payment_id": payment_id, "reason": "already_processed"}},
                    )
                    return False
                entry.status = STATUS_FAILED
                entry.failed_at = _now()
                entry.processed_at = None
                entry.attempts = (entry.attempts or 0) + 1
                entry.error_message = (reason or "")[:ERROR_MESSAGE_MAX_LENGTH]
                entry.failure_code = code
        except Exception as exc:  # noqa: BLE001
            self._write_failed("mark_failed", payment_id, exc)
            return False
        logger.info(
            "payment_attempt_failed",
            extra={"extra": {"payment_id": payment_id, "code": code, "reason": reason}},
        )
        return True

    async def get(self, payment_id: str) -> PaymentAttempt | None:
        async with self.session_factory() as session:
            return await session.get(PaymentAttempt, payment_id)

    async def find_orphans(
        self, older_than_minutes: int = 5, max_attempts: int = 3, *, limit: int | None = None
    ) -> list[PaymentAttempt]:
        cutoff = _now() - timedelta(minutes=older_than_minutes)
        stmt = (
            select(PaymentAttempt)
            .where(
                PaymentAttempt.status == STATUS_PENDING,
                PaymentAttempt.created_at < cutoff,
                PaymentAttempt.attempts < max_attempts,
            )
            .order_by(PaymentAttempt.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def find_retryable_failures(
        self, older_than_minutes: int = 5, max_attempts: int = 3, *, limit: int | None = None
    ) -> list[PaymentAttempt]:
        """FAILED entries whose failure was transient and may still be retried."""
        cutoff = _now() - timedelta(minutes=older_than_minutes)
        stmt = (
            select(PaymentAttempt)
            .where(
                PaymentAttempt.status == STATUS_FAILED,
                PaymentAttempt.failure_code == TRANSIENT_STORAGE_FAILURE,
                PaymentAttempt.failed_at < cutoff,
                PaymentAttempt.attempts < max_attempts,
            )
            .order_by(PaymentAttempt.failed_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def count_stale_pending(self, older_than_minutes: int = 5) -> int:
        cutoff = _now() - timedelta(minutes=older_than_minutes)
        async with self.session_factory() as session:
            count = await session.scalar(
                select(func.count()).where(
                    PaymentAttempt.status == STATUS_PENDING,
                    PaymentAttempt.created_at < cutoff,
                )
            )
        return int(count or 0)

    async def aggregate_stats(self) -> LedgerStats:
        async with self.session_factory() as session:
            counts = await session.execute(
                select(PaymentAttempt.status, func.count()).group_by(PaymentAttempt.status)
            )
            by_status = {status: int(count) for status, count in counts.all()}
            recovered = await session.scalar(
                select(func.count()).where(
                    PaymentAttempt.status == STATUS_PROCESSED,
                    PaymentAttempt.recovered_from_failure.is_(True),
                )
            )
            avg_ms = await session.scalar(
                select(func.avg(_processing_ms_expression(session))).where(
                    PaymentAttempt.status == STATUS_PROCESSED,
                    PaymentAttempt.processed_at.is_not(None),
                )
            )
        return LedgerStats(
            total=sum(by_status.values()),
            processed=by_status.get(STATUS_PROCESSED, 0),
            failed=by_status.get(STATUS_FAILED, 0),
            pending=by_status.get(STATUS_PENDING, 0),
            recovered=int(recovered or 0),
            avg_processing_ms=float(avg_ms or 0.0),
        )


def _processing_ms_expression(session: AsyncSession):
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    if dialect == "postgresql":
        return func.extract("epoch", PaymentAttempt.processed_at - PaymentAttempt.created_at) * 1000
    return (func.julianday(PaymentAttempt.processed_at) - func.julianday(PaymentAttempt.created_at)) * 86400000
