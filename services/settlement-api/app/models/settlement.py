"""Settlement record model — one ledger row per job payment attempt.

A row is created provisionally (``processing``) when the charge is initiated
and moved to a terminal status exactly once by webhook reconciliation.  Once
``succeeded`` nothing but the timestamps may change.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, Numeric, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementStatus(str, enum.Enum):
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not SettlementStatus.PROCESSING


class SettlementRecord(Base):
    __tablename__ = "settlement_records"
    __table_args__ = (
        # At most one in-flight attempt per job + payer.
        Index(
            "uq_settlement_active_attempt",
            "job_id",
            "payer_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
        Index("ix_settlement_job_payer", "job_id", "payer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Minor currency units (cents for USD)
    total_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_minor: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processor_fee_estimated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    net_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)

    platform_fee_percent: Mapped[float] = mapped_column(
        Numeric(6, 3, asdecimal=False), nullable=False
    )
    # Actual fee / total, four decimals; null until the processor reports it
    processor_fee_rate: Mapped[float | None] = mapped_column(
        Numeric(8, 4, asdecimal=False), nullable=True
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    external_charge_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    status: Mapped[SettlementStatus] = mapped_column(
        Enum(
            SettlementStatus,
            name="settlement_status",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=SettlementStatus.PROCESSING,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Settlement {self.id} | job={self.job_id} ref={self.external_charge_ref} "
            f"status={self.status.value} total={self.total_amount_minor}{self.currency}>"
        )
