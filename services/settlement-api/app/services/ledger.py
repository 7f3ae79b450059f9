"""Ledger store: the single source of truth for settlement records.

All writes that race with webhook deliveries go through a conditional UPDATE
whose WHERE clause carries the status guard, so two concurrent deliveries
for the same charge cannot both apply: exactly one sees the row as
not-yet-succeeded, the other matches nothing and reports
``ALREADY_SUCCEEDED``.

Uniqueness is enforced by the database, not by read-then-insert:

- ``external_charge_ref`` is unique across all rows;
- at most one ``processing`` row exists per ``(job_id, payer_id)``.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.settlement import SettlementRecord, SettlementStatus

logger = logging.getLogger(__name__)

# Fields a patch may touch.  Parties, total, platform fee and currency are
# fixed at creation.
PATCHABLE_FIELDS = frozenset(
    {
        "status",
        "processor_fee_minor",
        "processor_fee_estimated",
        "processor_fee_rate",
        "net_amount_minor",
        "external_charge_ref",
    }
)


class LedgerConflictError(Exception):
    """A uniqueness conflict kept recurring while persisting a record."""


class UpdateOutcome(str, enum.Enum):
    UPDATED = "updated"
    ALREADY_SUCCEEDED = "already_succeeded"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class LedgerUpdate:
    outcome: UpdateOutcome
    record: SettlementRecord | None = None

    @property
    def updated(self) -> bool:
        return self.outcome is UpdateOutcome.UPDATED


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_patch(patch: dict[str, Any]) -> None:
    illegal = set(patch) - PATCHABLE_FIELDS
    if illegal:
        raise ValueError(f"Immutable or unknown ledger fields in patch: {sorted(illegal)}")


# ── Reads ─────────────────────────────────────────────────────────────────────


async def get_by_id(session: AsyncSession, record_id: uuid.UUID) -> SettlementRecord | None:
    result = await session.execute(select(SettlementRecord).where(SettlementRecord.id == record_id))
    return result.scalar_one_or_none()


async def get_by_reference(session: AsyncSession, ref: str) -> SettlementRecord | None:
    result = await session.execute(
        select(SettlementRecord).where(SettlementRecord.external_charge_ref == ref)
    )
    return result.scalar_one_or_none()


async def find_candidate_for_job_and_payer(
    session: AsyncSession, job_id: str, payer_id: str
) -> SettlementRecord | None:
    """Most relevant non-succeeded row for a job + payer: the in-flight attempt
    if there is one, else the most recent failed attempt."""
    stmt = (
        select(SettlementRecord)
        .where(
            SettlementRecord.job_id == job_id,
            SettlementRecord.payer_id == payer_id,
            SettlementRecord.status != SettlementStatus.SUCCEEDED,
        )
        .order_by(
            case((SettlementRecord.status == SettlementStatus.PROCESSING, 0), else_=1),
            SettlementRecord.created_at.desc(),
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def has_succeeded_for_job_and_payer(session: AsyncSession, job_id: str, payer_id: str) -> bool:
    stmt = (
        select(SettlementRecord.id)
        .where(
            SettlementRecord.job_id == job_id,
            SettlementRecord.payer_id == payer_id,
            SettlementRecord.status == SettlementStatus.SUCCEEDED,
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def list_for_party(session: AsyncSession, user_id: str) -> list[SettlementRecord]:
    """Every record where ``user_id`` is payer or payee, newest first."""
    stmt = (
        select(SettlementRecord)
        .where(or_(SettlementRecord.payer_id == user_id, SettlementRecord.payee_id == user_id))
        .order_by(SettlementRecord.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ── Conditional updates ───────────────────────────────────────────────────────


async def _guarded_update(
    session: AsyncSession,
    criteria: list[Any],
    patch: dict[str, Any],
    only_if_not_succeeded: bool,
) -> SettlementRecord | None:
    stmt = update(SettlementRecord).where(*criteria)
    if only_if_not_succeeded:
        stmt = stmt.where(SettlementRecord.status != SettlementStatus.SUCCEEDED)
    stmt = (
        stmt.values(**patch, updated_at=_now())
        .returning(SettlementRecord)
        .execution_options(synchronize_session="fetch")
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def update_by_reference(
    session: AsyncSession,
    ref: str,
    patch: dict[str, Any],
    only_if_not_succeeded: bool = True,
) -> LedgerUpdate:
    """Apply ``patch`` to the row whose ``external_charge_ref`` is ``ref``."""
    _check_patch(patch)
    record = await _guarded_update(
        session, [SettlementRecord.external_charge_ref == ref], patch, only_if_not_succeeded
    )
    if record is not None:
        return LedgerUpdate(UpdateOutcome.UPDATED, record)

    existing = await get_by_reference(session, ref)
    if existing is None:
        return LedgerUpdate(UpdateOutcome.NOT_FOUND)
    return LedgerUpdate(UpdateOutcome.ALREADY_SUCCEEDED, existing)


async def update_by_job_and_payer(
    session: AsyncSession,
    job_id: str,
    payer_id: str,
    patch: dict[str, Any],
    only_if_not_succeeded: bool = True,
) -> LedgerUpdate:
    """Apply ``patch`` to the candidate row for a job + payer.

    The candidate is picked first, then updated by id under the status guard;
    if it succeeded in between, the update matches nothing and the call
    reports ``ALREADY_SUCCEEDED``.
    """
    _check_patch(patch)
    candidate = await find_candidate_for_job_and_payer(session, job_id, payer_id)
    if candidate is None:
        if await has_succeeded_for_job_and_payer(session, job_id, payer_id):
            return LedgerUpdate(UpdateOutcome.ALREADY_SUCCEEDED)
        return LedgerUpdate(UpdateOutcome.NOT_FOUND)

    record = await _guarded_update(
        session, [SettlementRecord.id == candidate.id], patch, only_if_not_succeeded
    )
    if record is None:
        return LedgerUpdate(UpdateOutcome.ALREADY_SUCCEEDED, candidate)
    return LedgerUpdate(UpdateOutcome.UPDATED, record)


# ── Inserts ───────────────────────────────────────────────────────────────────


async def _insert(session: AsyncSession, record: SettlementRecord) -> bool:
    """Insert inside a savepoint.  False when a uniqueness constraint fired."""
    job_id, payer_id, ref = record.job_id, record.payer_id, record.external_charge_ref
    try:
        async with session.begin_nested():
            session.add(record)
            await session.flush()
    except IntegrityError:
        logger.info(
            "Insert for job=%s payer=%s ref=%s lost a uniqueness race", job_id, payer_id, ref
        )
        return False
    return True


async def upsert_provisional(session: AsyncSession, record: SettlementRecord) -> SettlementRecord:
    """Persist the provisional row for a freshly created charge.

    - A row already holding this charge reference wins untouched (reconciliation
      may have created it first and already settled it).
    - An in-flight ``processing`` row for the same job + payer is an abandoned
      earlier attempt; it is taken over in place by this attempt.
    - Otherwise the record is inserted.  Failed attempts stay as history.
    """
    if not record.external_charge_ref:
        raise ValueError("A provisional record needs its external_charge_ref")

    for _ in range(2):
        existing = await get_by_reference(session, record.external_charge_ref)
        if existing is not None:
            return existing

        in_flight = await find_candidate_for_job_and_payer(session, record.job_id, record.payer_id)
        if in_flight is not None and in_flight.status is SettlementStatus.PROCESSING:
            taken_over = await _guarded_update(
                session,
                [
                    SettlementRecord.id == in_flight.id,
                    SettlementRecord.status == SettlementStatus.PROCESSING,
                ],
                {
                    "external_charge_ref": record.external_charge_ref,
                    "payee_id": record.payee_id,
                    "total_amount_minor": record.total_amount_minor,
                    "platform_fee_minor": record.platform_fee_minor,
                    "platform_fee_percent": record.platform_fee_percent,
                    "processor_fee_minor": record.processor_fee_minor,
                    "processor_fee_estimated": record.processor_fee_estimated,
                    "processor_fee_rate": record.processor_fee_rate,
                    "net_amount_minor": record.net_amount_minor,
                    "currency": record.currency,
                },
                only_if_not_succeeded=True,
            )
            if taken_over is not None:
                logger.info(
                    "Attempt %s superseded by %s for job=%s payer=%s",
                    in_flight.external_charge_ref, record.external_charge_ref,
                    record.job_id, record.payer_id,
                )
                return taken_over
            continue

        if await _insert(session, record):
            return record

    raise LedgerConflictError(
        f"Could not persist provisional record for {record.external_charge_ref}"
    )


async def insert_if_absent(session: AsyncSession, record: SettlementRecord) -> SettlementRecord | None:
    """Insert ``record`` unless its job + payer already has an in-flight row or
    its reference is taken.  Returns the inserted record, or None."""
    return record if await _insert(session, record) else None
