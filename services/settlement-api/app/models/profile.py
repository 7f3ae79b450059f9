"""User profile and block-list models read by the settlement core.

The reconciler writes exactly one field here: ``payouts_enabled``, mirrored
from the processor's connected-account updates.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class UserProfile(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Connected payout account at the processor (e.g. "acct_...")
    external_account_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<User {self.id} payouts={self.payouts_enabled} banned={self.is_banned}>"


class BlockedUser(Base):
    """``blocker_id`` blocked ``blocked_id``.  Treated as symmetric for payments."""

    __tablename__ = "blocked_users"
    __table_args__ = (UniqueConstraint("blocker_id", "blocked_id", name="uq_block_pair"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    blocker_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    blocked_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
