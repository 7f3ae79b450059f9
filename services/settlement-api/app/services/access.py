"""Access policy guard.

Two checkpoints:

- before a charge is created, neither party may be banned and the pair may
  not have blocked each other (in either direction);
- before a settlement record is read, the viewer must be its payer or payee.
"""

from __future__ import annotations

import enum

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ForbiddenError
from app.models.profile import BlockedUser, UserProfile
from app.models.settlement import SettlementRecord


class Role(str, enum.Enum):
    PAYER = "payer"
    PAYEE = "payee"


async def is_blocked_pair(session: AsyncSession, user_a: str, user_b: str) -> bool:
    stmt = (
        select(BlockedUser.id)
        .where(
            or_(
                and_(BlockedUser.blocker_id == user_a, BlockedUser.blocked_id == user_b),
                and_(BlockedUser.blocker_id == user_b, BlockedUser.blocked_id == user_a),
            )
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def ensure_charge_allowed(
    session: AsyncSession,
    payer_id: str,
    payer: UserProfile | None,
    payee: UserProfile,
) -> None:
    """Raise ``ForbiddenError`` when policy forbids ``payer_id`` paying ``payee``.

    ``payer`` is the payer's profile row when one exists.  Blocks are keyed by
    user id, so the pair check runs whether or not it does.
    """
    if payer is not None and payer.is_banned:
        raise ForbiddenError("Your account is blocked from making payments")
    if payee.is_banned:
        raise ForbiddenError("Worker is blocked from receiving payments")

    if await is_blocked_pair(session, payer_id, payee.id):
        raise ForbiddenError("Payments between these users are not allowed")


def role_of(record: SettlementRecord, viewer_id: str) -> Role:
    """The viewer's role on ``record``; ``ForbiddenError`` if they have none."""
    if viewer_id and viewer_id == record.payer_id:
        return Role.PAYER
    if viewer_id and viewer_id == record.payee_id:
        return Role.PAYEE
    raise ForbiddenError("You do not have permission to view this payment")
