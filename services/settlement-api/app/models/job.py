"""Job model, owned by the marketplace.  The settlement core only reads it."""

import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class JobStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# The only job state in which a payment may be initiated.
PAYABLE_JOB_STATUS = JobStatus.IN_PROGRESS


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=JobStatus.OPEN.value)
    posted_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assigned_to: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    price_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<Job {self.id} status={self.status} price={self.price_minor}>"
