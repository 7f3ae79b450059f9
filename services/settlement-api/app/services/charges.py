"""Charge initiator — turns an in-progress job into a destination charge.

This module:
1. Loads the job and checks it is payable by this caller.
2. Loads the assigned payee and checks their payout account is ready.
3. Applies the access policy (bans and blocked pairs).
4. Refuses a second payment when the job is already paid by this payer.
5. Computes the fee split and creates the charge at the processor, routing
   the total to the payee's connected account minus the platform fee.
6. Persists the provisional ledger row.

Edge cases handled:
- Persistence fails after the processor accepted the charge → logged with
  the charge reference and a ``PersistenceWarning``; the caller still gets
  the client secret.  Reconciliation recreates the row from the charge
  metadata when the webhook arrives.
- An earlier attempt for the same job + payer is still ``processing`` → that
  row is taken over by this attempt rather than duplicated.
"""

from __future__ import annotations

import logging
import uuid
import warnings
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PayeeNotReadyError,
    PersistenceWarning,
)
from app.core.retry import RetryPolicy
from app.models.job import PAYABLE_JOB_STATUS, Job
from app.models.profile import UserProfile
from app.models.settlement import SettlementRecord, SettlementStatus
from app.services import ledger
from app.services.access import ensure_charge_allowed
from app.services.fees import FeeBreakdown, compute_fees
from app.services.processor_client import CreatedCharge

logger = logging.getLogger(__name__)


class ChargeProcessor(Protocol):
    async def create_destination_charge(
        self,
        *,
        amount_minor: int,
        currency: str,
        destination_account: str,
        application_fee_minor: int,
        metadata: dict[str, str],
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreatedCharge: ...


@dataclass(frozen=True)
class ChargeResult:
    client_secret: str
    processor_reference: str
    total_amount_minor: int
    platform_fee_minor: int
    estimated_processor_fee_minor: int
    estimated_net_amount_minor: int
    currency: str
    # False when the provisional ledger row could not be written
    recorded: bool = True


async def _get_profile(session: AsyncSession, user_id: str) -> UserProfile | None:
    result = await session.execute(select(UserProfile).where(UserProfile.id == user_id))
    return result.scalar_one_or_none()


async def initiate_charge(
    session: AsyncSession,
    processor: ChargeProcessor,
    job_id: str,
    payer_id: str,
) -> ChargeResult:
    """Create the processor charge for ``job_id`` on behalf of ``payer_id``.

    Args:
        session: Async database session.  Committed once the provisional row
                 is written, since the charge already exists externally.
        processor: Adapter that creates the destination charge.
        job_id: Job being paid for.
        payer_id: Authenticated caller; must be the job's poster.

    Raises:
        NotFoundError: job or payee profile missing.
        ForbiddenError: caller is not the poster, or the access policy refuses.
        InvalidStateError: job not in progress, unassigned, or already paid.
        PayeeNotReadyError: payee cannot receive payouts yet.
        ProcessorError: the processor refused or could not be reached.
    """
    # 1. Load the job
    job = await session.get(Job, job_id)
    if job is None:
        raise NotFoundError("Job not found")

    # 2. Payable state and ownership
    if job.status != PAYABLE_JOB_STATUS.value:
        raise InvalidStateError(f"Job must be in progress to pay (current status: {job.status})")
    if job.posted_by != payer_id:
        raise ForbiddenError("Only the job poster can pay for this job")

    # 3. Assigned payee
    if not job.assigned_to:
        raise InvalidStateError("Job has no assigned worker")
    payee_id = job.assigned_to

    # 4. Payee payout readiness
    payee = await _get_profile(session, payee_id)
    if payee is None:
        raise NotFoundError("Worker profile not found")
    if not payee.payouts_enabled or not payee.external_account_ref:
        raise PayeeNotReadyError("Worker has not completed payment setup")
    destination = payee.external_account_ref

    # 5. Access policy
    payer = await _get_profile(session, payer_id)
    await ensure_charge_allowed(session, payer_id, payer, payee)

    if await ledger.has_succeeded_for_job_and_payer(session, job_id, payer_id):
        raise InvalidStateError("This job has already been paid", status_code=409)

    # 6. Fees
    currency = (job.currency or settings.default_currency).upper()
    fees = compute_fees(job.price_minor)

    # 7. External charge
    charge = await processor.create_destination_charge(
        amount_minor=fees.total_amount_minor,
        currency=currency,
        destination_account=destination,
        application_fee_minor=fees.platform_fee_minor,
        metadata={"job_id": job_id, "payer_id": payer_id, "payee_id": payee_id},
        description=f"Payment for job: {job.title}",
        idempotency_key=f"charge-{job_id}-{uuid.uuid4().hex}",
    )
    logger.info(
        "Charge %s created for job=%s payer=%s payee=%s total=%d platform_fee=%d",
        charge.id, job_id, payer_id, payee_id, fees.total_amount_minor, fees.platform_fee_minor,
    )

    # 8. Provisional ledger row
    recorded = await _persist_provisional(
        session,
        job_id=job_id,
        payer_id=payer_id,
        payee_id=payee_id,
        currency=currency,
        reference=charge.id,
        fees=fees,
    )

    # 9. Client secret and breakdown
    return ChargeResult(
        client_secret=charge.client_secret,
        processor_reference=charge.id,
        total_amount_minor=fees.total_amount_minor,
        platform_fee_minor=fees.platform_fee_minor,
        estimated_processor_fee_minor=fees.estimated_processor_fee_minor,
        estimated_net_amount_minor=fees.estimated_net_amount_minor,
        currency=currency,
        recorded=recorded,
    )


async def _persist_provisional(
    session: AsyncSession,
    *,
    job_id: str,
    payer_id: str,
    payee_id: str,
    currency: str,
    reference: str,
    fees: FeeBreakdown,
) -> bool:
    """Write the ``processing`` row, retried per ``persist_max_attempts``.

    Never raises for database failures: the charge already succeeded at the
    processor, so the caller must not be told otherwise.
    """
    policy = RetryPolicy(
        max_attempts=settings.persist_max_attempts,
        backoff=settings.persist_backoff_seconds,
    )

    def build() -> SettlementRecord:
        return SettlementRecord(
            job_id=job_id,
            payer_id=payer_id,
            payee_id=payee_id,
            total_amount_minor=fees.total_amount_minor,
            platform_fee_minor=fees.platform_fee_minor,
            platform_fee_percent=fees.platform_fee_percent,
            processor_fee_minor=fees.estimated_processor_fee_minor,
            processor_fee_estimated=True,
            processor_fee_rate=None,
            net_amount_minor=fees.estimated_net_amount_minor,
            currency=currency,
            external_charge_ref=reference,
            status=SettlementStatus.PROCESSING,
        )

    async def attempt() -> SettlementRecord:
        try:
            async with session.begin_nested():
                record = await ledger.upsert_provisional(session, build())
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        return record

    try:
        record = await policy.run(
            attempt,
            retry_on=(SQLAlchemyError, ledger.LedgerConflictError),
            label=f"persist settlement {reference}",
        )
    except (SQLAlchemyError, ledger.LedgerConflictError) as exc:
        logger.error(
            "Charge %s succeeded but its settlement record was not saved "
            "(job=%s payer=%s): %s",
            reference, job_id, payer_id, exc,
        )
        warnings.warn(
            f"Settlement record for charge {reference} not persisted; "
            "reconciliation will recreate it from the charge metadata",
            PersistenceWarning,
            stacklevel=2,
        )
        return False

    logger.info("Settlement %s recorded for charge %s", record.id, reference)
    return True
