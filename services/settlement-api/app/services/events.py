"""Processor webhook event parsing.

Inbound payloads are loosely typed JSON.  They are validated once, here, into
a closed set of event shapes keyed by ``EventKind``; the reconciler never
pokes at raw dicts.  Event types outside ``EventKind`` parse to
``UnhandledEvent`` so they can be acknowledged without being processed.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from app.core.errors import MalformedEventError


class EventKind(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge.succeeded"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    ACCOUNT_UPDATED = "account.updated"


PAYMENT_SUCCESS_KINDS = frozenset({EventKind.CHARGE_SUCCEEDED, EventKind.PAYMENT_INTENT_SUCCEEDED})


# ── Parsed shapes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChargeMetadata:
    job_id: str | None = None
    payer_id: str | None = None
    payee_id: str | None = None

    @property
    def has_fallback_key(self) -> bool:
        return bool(self.job_id and self.payer_id)


@dataclass(frozen=True)
class PaymentEvent:
    event_id: str
    kind: EventKind
    # Payment intent id when known, else the charge id.  Matches external_charge_ref.
    reference: str
    amount_minor: int | None = None
    currency: str | None = None
    application_fee_minor: int | None = None
    charge_id: str | None = None
    balance_transaction_id: str | None = None
    # Fee from an expanded balance transaction embedded in the payload.
    balance_transaction_fee: int | None = None
    metadata: ChargeMetadata = field(default_factory=ChargeMetadata)

    @property
    def succeeded(self) -> bool:
        return self.kind in PAYMENT_SUCCESS_KINDS


@dataclass(frozen=True)
class AccountEvent:
    event_id: str
    kind: EventKind
    account_id: str
    payouts_enabled: bool


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


ProcessorEvent = Union[PaymentEvent, AccountEvent, UnhandledEvent]


# ── Wire models ───────────────────────────────────────────────────────────────


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _BalanceTransaction(_Wire):
    id: str | None = None
    fee: int | None = None


class _Charge(_Wire):
    id: str
    amount: int | None = None
    currency: str | None = None
    payment_intent: str | dict[str, Any] | None = None
    balance_transaction: str | _BalanceTransaction | None = None
    application_fee_amount: int | None = None
    metadata: dict[str, str] = {}


class _ChargeList(_Wire):
    data: list[_Charge] = []


class _PaymentIntent(_Wire):
    id: str
    amount: int | None = None
    currency: str | None = None
    application_fee_amount: int | None = None
    latest_charge: str | _Charge | None = None
    charges: _ChargeList | None = None
    metadata: dict[str, str] = {}


class _Account(_Wire):
    id: str
    payouts_enabled: bool | None = None


class _EventData(_Wire):
    object: dict[str, Any]


class _Envelope(_Wire):
    id: str
    type: str
    data: _EventData


# ── Parser ────────────────────────────────────────────────────────────────────


def _metadata(raw: dict[str, str]) -> ChargeMetadata:
    # payer_user_id / payee_user_id are the keys written by the first
    # generation of charge creation; intents created then may still settle.
    return ChargeMetadata(
        job_id=raw.get("job_id") or None,
        payer_id=raw.get("payer_id") or raw.get("payer_user_id") or None,
        payee_id=raw.get("payee_id") or raw.get("payee_user_id") or None,
    )


def _balance_fields(
    balance_transaction: str | _BalanceTransaction | None,
) -> tuple[str | None, int | None]:
    if balance_transaction is None:
        return None, None
    if isinstance(balance_transaction, str):
        return balance_transaction, None
    return balance_transaction.id, balance_transaction.fee


def _from_charge(event_id: str, obj: dict[str, Any]) -> PaymentEvent:
    charge = _Charge.model_validate(obj)
    intent = charge.payment_intent
    intent_id = intent.get("id") if isinstance(intent, dict) else intent
    bt_id, bt_fee = _balance_fields(charge.balance_transaction)
    return PaymentEvent(
        event_id=event_id,
        kind=EventKind.CHARGE_SUCCEEDED,
        reference=intent_id or charge.id,
        amount_minor=charge.amount,
        currency=charge.currency.upper() if charge.currency else None,
        application_fee_minor=charge.application_fee_amount,
        charge_id=charge.id,
        balance_transaction_id=bt_id,
        balance_transaction_fee=bt_fee,
        metadata=_metadata(charge.metadata),
    )


def _from_payment_intent(event_id: str, kind: EventKind, obj: dict[str, Any]) -> PaymentEvent:
    intent = _PaymentIntent.model_validate(obj)

    charge: _Charge | None = None
    charge_id: str | None = None
    if intent.charges is not None and intent.charges.data:
        charge = intent.charges.data[0]
    elif isinstance(intent.latest_charge, _Charge):
        charge = intent.latest_charge
    elif isinstance(intent.latest_charge, str):
        charge_id = intent.latest_charge

    bt_id, bt_fee = _balance_fields(charge.balance_transaction if charge else None)
    return PaymentEvent(
        event_id=event_id,
        kind=kind,
        reference=intent.id,
        amount_minor=intent.amount,
        currency=intent.currency.upper() if intent.currency else None,
        application_fee_minor=intent.application_fee_amount,
        charge_id=charge.id if charge else charge_id,
        balance_transaction_id=bt_id,
        balance_transaction_fee=bt_fee,
        metadata=_metadata(intent.metadata),
    )


def parse_event(payload: bytes | str | dict[str, Any]) -> ProcessorEvent:
    """Validate a webhook payload into one of the known event shapes.

    Raises:
        MalformedEventError: invalid JSON, a missing envelope field, or a
            known event type whose object lacks required fields.
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedEventError(f"Event body is not valid JSON: {exc}") from exc

    try:
        envelope = _Envelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedEventError(f"Invalid event envelope: {exc.error_count()} error(s)") from exc

    try:
        kind = EventKind(envelope.type)
    except ValueError:
        return UnhandledEvent(event_id=envelope.id, event_type=envelope.type)

    obj = envelope.data.object
    try:
        if kind is EventKind.CHARGE_SUCCEEDED:
            return _from_charge(envelope.id, obj)
        if kind is EventKind.ACCOUNT_UPDATED:
            account = _Account.model_validate(obj)
            return AccountEvent(
                event_id=envelope.id,
                kind=kind,
                account_id=account.id,
                payouts_enabled=bool(account.payouts_enabled),
            )
        return _from_payment_intent(envelope.id, kind, obj)
    except ValidationError as exc:
        raise MalformedEventError(
            f"Invalid {kind.value} object: {exc.error_count()} error(s)"
        ) from exc
