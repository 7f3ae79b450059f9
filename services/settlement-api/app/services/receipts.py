"""Renders ledger rows into payer and payee receipts.

Read-only.  The viewer's role decides the headline amount: the payer sees
what they paid (the total), the payee sees what they receive (the net).
Both see the full fee breakdown and the settlement status.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError
from app.models.settlement import SettlementRecord
from app.services import ledger
from app.services.access import Role, role_of

CURRENCY_SYMBOLS = {
    "USD": "$",
    "CAD": "CA$",
    "AUD": "A$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
}

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "UGX"})


@dataclass(frozen=True)
class Receipt:
    settlement_id: uuid.UUID
    role: Role
    job_id: str
    counterparty_id: str
    headline_label: str
    headline_amount_minor: int
    headline_display: str
    total_amount_minor: int
    platform_fee_minor: int
    processor_fee_minor: int | None
    processor_fee_estimated: bool
    net_amount_minor: int
    currency: str
    status: str
    created_at: datetime | None
    updated_at: datetime | None


def format_amount(amount_minor: int, currency: str) -> str:
    """``2500, "USD"`` → ``"$25.00"``; unknown symbols fall back to ``"25.00 CHF"``."""
    code = currency.upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        number = f"{amount_minor:,}"
    else:
        number = f"{Decimal(amount_minor) / 100:,.2f}"

    sign = ""
    if number.startswith("-"):
        sign, number = "-", number[1:]

    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{sign}{number} {code}"
    return f"{sign}{symbol}{number}"


def project_receipt(record: SettlementRecord, viewer_id: str) -> Receipt:
    """Project ``record`` for ``viewer_id``.  ``ForbiddenError`` if not a party."""
    role = role_of(record, viewer_id)
    if role is Role.PAYER:
        label, amount, counterparty = "Amount paid", record.total_amount_minor, record.payee_id
    else:
        label, amount, counterparty = "Amount received", record.net_amount_minor, record.payer_id

    return Receipt(
        settlement_id=record.id,
        role=role,
        job_id=record.job_id,
        counterparty_id=counterparty,
        headline_label=label,
        headline_amount_minor=amount,
        headline_display=format_amount(amount, record.currency),
        total_amount_minor=record.total_amount_minor,
        platform_fee_minor=record.platform_fee_minor,
        processor_fee_minor=record.processor_fee_minor,
        processor_fee_estimated=record.processor_fee_estimated,
        net_amount_minor=record.net_amount_minor,
        currency=record.currency,
        status=record.status.value,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


async def get_receipt(session: AsyncSession, settlement_id: uuid.UUID, viewer_id: str) -> Receipt:
    record = await ledger.get_by_id(session, settlement_id)
    if record is None:
        raise NotFoundError("Payment not found")
    return project_receipt(record, viewer_id)


async def list_receipts(session: AsyncSession, viewer_id: str) -> dict[str, list[Receipt]]:
    """The viewer's receipts split into ``sent`` and ``received``, newest first."""
    sent: list[Receipt] = []
    received: list[Receipt] = []
    for record in await ledger.list_for_party(session, viewer_id):
        receipt = project_receipt(record, viewer_id)
        (sent if receipt.role is Role.PAYER else received).append(receipt)
    return {"sent": sent, "received": received}
