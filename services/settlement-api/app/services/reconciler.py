"""Webhook reconciler — applies processor events to the ledger.

This module:
1. Verifies the delivery's signature against the raw body.
2. Parses the body into a typed event (``events.parse_event``).
3. For payment events, looks up the fee the processor actually kept and
   moves the matching settlement record to its terminal status.
4. For account events, mirrors the payout-eligibility flag onto the user.

Matching order for payment events:
- by ``external_charge_ref`` (the intent or charge id);
- by ``(job_id, payer_id)`` from the charge metadata, when the reference is
  unknown (the provisional row was never written, or belongs to an older
  attempt); a failure never takes over a row tracking another attempt;
- by recreating the row from the event metadata and then patching it, when
  no candidate exists at all.

Every write is guarded against a ``succeeded`` row, so duplicates and
out-of-order redeliveries are no-ops.  Once the signature checks out, the
delivery is acknowledged even when nothing matched.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ConfigurationError, MalformedEventError, ProcessorError
from app.core.signing import verify_signature
from app.models.profile import UserProfile
from app.models.settlement import SettlementRecord, SettlementStatus
from app.services import ledger
from app.services.events import AccountEvent, PaymentEvent, UnhandledEvent, parse_event
from app.services.fees import estimate_processor_fee, net_amount, platform_fee, processor_fee_rate
from app.services.ledger import UpdateOutcome

logger = logging.getLogger(__name__)


class FeeSource(Protocol):
    async def retrieve_balance_transaction_fee(self, balance_transaction_id: str) -> int | None: ...

    async def retrieve_charge_fee(self, charge_id: str) -> int | None: ...


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_SUCCEEDED = "already_succeeded"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    record: SettlementRecord | None = None
    matched_by: str | None = None


# ── Fees ──────────────────────────────────────────────────────────────────────


async def resolve_processor_fee(processor: FeeSource, event: PaymentEvent) -> int | None:
    """The fee the processor kept for this charge, or None when unknown.

    An expanded balance transaction in the payload is used as-is; otherwise
    the balance transaction (or the charge, if that is all the event names)
    is fetched.  Lookup failures leave the fee unknown.
    """
    if event.balance_transaction_fee is not None:
        return event.balance_transaction_fee
    try:
        if event.balance_transaction_id:
            return await processor.retrieve_balance_transaction_fee(event.balance_transaction_id)
        if event.charge_id:
            return await processor.retrieve_charge_fee(event.charge_id)
    except ProcessorError as exc:
        logger.warning(
            "Fee lookup failed for %s (event %s): %s", event.reference, event.event_id, exc.message
        )
        return None

    logger.info("Event %s for %s carries no balance transaction", event.event_id, event.reference)
    return None


def build_patch(
    event: PaymentEvent,
    total_amount_minor: int,
    platform_fee_minor: int,
    processor_fee_minor: int | None,
) -> dict[str, Any]:
    """Ledger patch for a payment event against a row with the given amounts.

    A succeeded event always replaces the creation-time estimate.  An unknown
    fee is stored as null and the net excludes it.
    """
    if not event.succeeded:
        return {"status": SettlementStatus.FAILED}

    return {
        "status": SettlementStatus.SUCCEEDED,
        "processor_fee_minor": processor_fee_minor,
        "processor_fee_estimated": False,
        "processor_fee_rate": processor_fee_rate(processor_fee_minor, total_amount_minor),
        "net_amount_minor": net_amount(total_amount_minor, platform_fee_minor, processor_fee_minor),
    }


def _record_from_event(event: PaymentEvent) -> SettlementRecord | None:
    """Rebuild the provisional row a charge should have left behind."""
    meta = event.metadata
    if not (meta.has_fallback_key and meta.payee_id) or not event.amount_minor:
        return None

    total = event.amount_minor
    if event.application_fee_minor is not None:
        platform = event.application_fee_minor
    else:
        platform = platform_fee(total, settings.platform_fee_percent)
    estimate = estimate_processor_fee(total)

    return SettlementRecord(
        job_id=meta.job_id,
        payer_id=meta.payer_id,
        payee_id=meta.payee_id,
        total_amount_minor=total,
        platform_fee_minor=platform,
        platform_fee_percent=settings.platform_fee_percent,
        processor_fee_minor=estimate,
        processor_fee_estimated=True,
        net_amount_minor=net_amount(total, platform, estimate),
        currency=(event.currency or settings.default_currency).upper(),
        external_charge_ref=event.reference,
        status=SettlementStatus.PROCESSING,
    )


# ── Payment events ────────────────────────────────────────────────────────────


def _result(update_result: ledger.LedgerUpdate, matched_by: str) -> ReconcileResult:
    if update_result.outcome is UpdateOutcome.UPDATED:
        return ReconcileResult(ReconcileOutcome.APPLIED, update_result.record, matched_by)
    if update_result.outcome is UpdateOutcome.ALREADY_SUCCEEDED:
        return ReconcileResult(ReconcileOutcome.ALREADY_SUCCEEDED, update_result.record, matched_by)
    return ReconcileResult(ReconcileOutcome.UNMATCHED)


async def apply_payment_event(
    session: AsyncSession, processor: FeeSource, event: PaymentEvent
) -> ReconcileResult:
    """Move the settlement record for ``event`` to its terminal status."""
    ref = event.reference

    # Primary match
    row = await ledger.get_by_reference(session, ref)
    if row is not None:
        if row.status is SettlementStatus.SUCCEEDED:
            logger.info("Settlement for %s already succeeded; event %s ignored", ref, event.event_id)
            return ReconcileResult(ReconcileOutcome.ALREADY_SUCCEEDED, row, "reference")
        fee = await resolve_processor_fee(processor, event) if event.succeeded else None
        patch = build_patch(event, row.total_amount_minor, row.platform_fee_minor, fee)
        return _result(await ledger.update_by_reference(session, ref, patch), "reference")

    meta = event.metadata
    if not meta.has_fallback_key:
        logger.warning(
            "No settlement record for %s and event %s has no job/payer metadata",
            ref, event.event_id,
        )
        return ReconcileResult(ReconcileOutcome.UNMATCHED)

    fee = await resolve_processor_fee(processor, event) if event.succeeded else None

    # Fallback match on (job_id, payer_id)
    candidate = await ledger.find_candidate_for_job_and_payer(session, meta.job_id, meta.payer_id)
    if candidate is not None and _is_superseded_failure(event, candidate):
        return ReconcileResult(ReconcileOutcome.UNMATCHED)
    if candidate is not None:
        result = await _apply_to_job_and_payer(session, event, candidate, fee)
        if result.outcome is not ReconcileOutcome.UNMATCHED:
            return result

    if await ledger.has_succeeded_for_job_and_payer(session, meta.job_id, meta.payer_id):
        logger.info(
            "Job %s already paid by %s; event %s for %s ignored",
            meta.job_id, meta.payer_id, event.event_id, ref,
        )
        return ReconcileResult(ReconcileOutcome.ALREADY_SUCCEEDED, matched_by="job_and_payer")

    # Nothing to patch: recreate the provisional row, then patch it
    record = _record_from_event(event)
    if record is None:
        logger.warning(
            "No settlement record for %s (job=%s payer=%s) and the event lacks the "
            "amount or payee to recreate it",
            ref, meta.job_id, meta.payer_id,
        )
        return ReconcileResult(ReconcileOutcome.UNMATCHED)

    total, platform = record.total_amount_minor, record.platform_fee_minor
    inserted = await ledger.insert_if_absent(session, record)
    if inserted is not None:
        logger.warning(
            "Recreated missing settlement record for %s (job=%s payer=%s) from event metadata",
            ref, meta.job_id, meta.payer_id,
        )
        patch = build_patch(event, total, platform, fee)
        return _result(await ledger.update_by_reference(session, ref, patch), "recreated")

    # A concurrent writer got there first; patch whatever it wrote.
    existing = await ledger.get_by_reference(session, ref)
    if existing is not None:
        patch = build_patch(event, existing.total_amount_minor, existing.platform_fee_minor, fee)
        return _result(await ledger.update_by_reference(session, ref, patch), "reference")

    candidate = await ledger.find_candidate_for_job_and_payer(session, meta.job_id, meta.payer_id)
    if candidate is not None and _is_superseded_failure(event, candidate):
        return ReconcileResult(ReconcileOutcome.UNMATCHED)
    if candidate is not None:
        return await _apply_to_job_and_payer(session, event, candidate, fee)

    logger.warning("Could not reconcile %s for job=%s payer=%s", ref, meta.job_id, meta.payer_id)
    return ReconcileResult(ReconcileOutcome.UNMATCHED)


def _is_superseded_failure(event: PaymentEvent, candidate: SettlementRecord) -> bool:
    """A failure for an attempt other than the one ``candidate`` tracks.

    Only successes may adopt a row that already carries another reference.
    """
    if event.succeeded or candidate.external_charge_ref in (None, event.reference):
        return False
    logger.info(
        "Failure %s (event %s) is for a superseded attempt; settlement %s keeps %s",
        event.reference, event.event_id, candidate.id, candidate.external_charge_ref,
    )
    return True


async def _apply_to_job_and_payer(
    session: AsyncSession,
    event: PaymentEvent,
    candidate: SettlementRecord,
    fee: int | None,
) -> ReconcileResult:
    meta = event.metadata
    patch = build_patch(event, candidate.total_amount_minor, candidate.platform_fee_minor, fee)
    # Adopt the event's reference so redeliveries match on the primary key.
    patch["external_charge_ref"] = event.reference
    logger.info(
        "Reference %s unknown; matched job=%s payer=%s (settlement %s)",
        event.reference, meta.job_id, meta.payer_id, candidate.id,
    )
    return _result(
        await ledger.update_by_job_and_payer(session, meta.job_id, meta.payer_id, patch),
        "job_and_payer",
    )


# ── Account events ────────────────────────────────────────────────────────────


async def apply_account_event(session: AsyncSession, event: AccountEvent) -> int:
    """Mirror ``payouts_enabled`` onto the account's owner.  Returns rows updated."""
    stmt = (
        update(UserProfile)
        .where(UserProfile.external_account_ref == event.account_id)
        .values(payouts_enabled=event.payouts_enabled, updated_at=datetime.now(timezone.utc))
        .returning(UserProfile.id)
        .execution_options(synchronize_session="fetch")
    )
    updated = (await session.execute(stmt)).scalars().all()
    if not updated:
        logger.warning("account.updated for unknown account %s", event.account_id)
    else:
        logger.info(
            "Payouts %s for account %s (user %s)",
            "enabled" if event.payouts_enabled else "disabled",
            event.account_id,
            ", ".join(updated),
        )
    return len(updated)


# ── Entry point ───────────────────────────────────────────────────────────────


def acknowledgement(result: ReconcileResult | None) -> dict[str, Any]:
    body: dict[str, Any] = {"received": True}
    if result is None or result.record is None:
        return body
    record = result.record
    body["receipt"] = {
        "settlement_id": str(record.id),
        "status": record.status.value,
        "total_amount_minor": record.total_amount_minor,
        "platform_fee_minor": record.platform_fee_minor,
        "processor_fee_minor": record.processor_fee_minor,
        "processor_fee_estimated": record.processor_fee_estimated,
        "net_amount_minor": record.net_amount_minor,
        "currency": record.currency,
    }
    return body


async def handle_webhook(
    session: AsyncSession,
    processor: FeeSource,
    raw_body: bytes,
    signature_header: str | None,
    *,
    webhook_secret: str | None = None,
) -> dict[str, Any]:
    """Verify, parse and apply one webhook delivery.

    Raises:
        ConfigurationError: no webhook secret configured.
        SignatureError: signature missing, wrong or stale.

    Everything past signature verification is acknowledged, including
    malformed bodies, unknown event types and unmatched references.
    Database faults propagate so the delivery is retried.
    """
    secret = webhook_secret or settings.processor_webhook_secret
    if not secret:
        raise ConfigurationError("Webhook secret not configured")

    verify_signature(raw_body, signature_header, secret, settings.webhook_tolerance_seconds)

    try:
        event = parse_event(raw_body)
    except MalformedEventError as exc:
        logger.warning("Signed webhook body could not be parsed: %s", exc.message)
        return acknowledgement(None)

    if isinstance(event, UnhandledEvent):
        logger.info("Unhandled event type %s (%s)", event.event_type, event.event_id)
        return acknowledgement(None)

    if isinstance(event, AccountEvent):
        await apply_account_event(session, event)
        return acknowledgement(None)

    result = await apply_payment_event(session, processor, event)
    logger.info(
        "Event %s (%s) for %s: %s via %s",
        event.event_id, event.kind.value, event.reference, result.outcome.value,
        result.matched_by or "-",
    )
    return acknowledgement(result)
