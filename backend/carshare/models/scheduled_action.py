"""Durable "run this action at time T" rows polled by the Celery scheduler."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .types import Base, TimestampMixin, UTCDateTime, new_ulid


class ScheduledActionType(str, Enum):
    AUTO_CHARGE = "auto_charge"
    CAPTURE_PAYMENT = "capture_payment"
    RELEASE_PAYOUT = "release_payout"
    DEPOSIT_AUTO_REFUND = "deposit_auto_refund"
    REFUND_CONFLICTED_PAYMENT = "refund_conflicted_payment"


class ScheduledActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScheduledAction(TimestampMixin, Base):
    __tablename__ = "scheduled_actions"

    __table_args__ = (
        sa.Index("ix_scheduled_actions_status_run_at", "status", "run_at"),
        sa.Index("ix_scheduled_actions_dedupe_key", "dedupe_key"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=new_ulid)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ScheduledActionStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<ScheduledAction {self.action} run_at={self.run_at} status={self.status}>"
