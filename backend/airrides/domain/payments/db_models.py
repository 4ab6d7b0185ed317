from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from airrides.infra.db import Base

STATUS_PENDING = "PENDING"
STATUS_PROCESSED = "PROCESSED"
STATUS_FAILED = "FAILED"

SOURCE_CLIENT = "client"
SOURCE_WEBHOOK = "webhook"


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    payment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str | None] = mapped_column(String(128))
    user_id: Mapped[str | None] = mapped_column(String(36))
    flight_id: Mapped[str | None] = mapped_column(String(36))
    passengers: Mapped[int] = mapped_column(nullable=False, default=1)
    booking_details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)
    booking_id: Mapped[str | None] = mapped_column(String(32))
    attempts: Mapped[int] = mapped_column(nullable=False, default=1)
    error_message: Mapped[str | None] = mapped_column(String(500))
    failure_code: Mapped[str | None] = mapped_column(String(32))
    source: Mapped[str] = mapped_column(String(16), nullable=False, default=SOURCE_CLIENT)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(tz=timezone.utc),
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    recovered_from_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_payment_attempts_status_created_attempts", "status", "created_at", "attempts"),
    )
