"""Fee calculator — platform fee, processor-fee forecast and net payout.

All money is integer minor units (cents for USD).  Percentages are applied
through ``Decimal`` and rounded half-up to the nearest minor unit, so the
same inputs always produce the same split regardless of float quirks.

The processor fee computed here is a *forecast* for the provisional ledger
row only.  The authoritative fee arrives later from the processor's balance
transaction and replaces it during reconciliation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.core.config import settings

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeBreakdown:
    total_amount_minor: int
    platform_fee_minor: int
    estimated_processor_fee_minor: int
    estimated_net_amount_minor: int
    platform_fee_percent: float


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def platform_fee(total_amount_minor: int, platform_fee_percent: float) -> int:
    """``round(total * percent / 100)``, half-up."""
    _check_total(total_amount_minor)
    if platform_fee_percent < 0 or platform_fee_percent > 100:
        raise ValueError(f"platform_fee_percent out of range: {platform_fee_percent}")
    return round_half_up(Decimal(total_amount_minor) * Decimal(str(platform_fee_percent)) / _HUNDRED)


def estimate_processor_fee(
    total_amount_minor: int,
    processor_fee_percent: float | None = None,
    processor_fixed_fee_minor: int | None = None,
) -> int:
    """Forecast the processor fee as ``percent of total + fixed fee``, half-up.

    2500 at 2.9% + 30 → 72.5 + 30 = 102.5 → 103.
    """
    _check_total(total_amount_minor)
    percent = settings.processor_fee_percent if processor_fee_percent is None else processor_fee_percent
    fixed = (
        settings.processor_fixed_fee_minor
        if processor_fixed_fee_minor is None
        else processor_fixed_fee_minor
    )
    raw = Decimal(total_amount_minor) * Decimal(str(percent)) / _HUNDRED + Decimal(fixed)
    return round_half_up(raw)


def net_amount(total_amount_minor: int, platform_fee_minor: int, processor_fee_minor: int | None) -> int:
    """What reaches the payee.  An unknown processor fee counts as zero."""
    return total_amount_minor - platform_fee_minor - (processor_fee_minor or 0)


def processor_fee_rate(processor_fee_minor: int | None, total_amount_minor: int | None) -> float | None:
    """Actual fee as a ratio of the total, four decimals (0.0412 for 103/2500)."""
    if processor_fee_minor is None or not total_amount_minor:
        return None
    return float(
        (Decimal(processor_fee_minor) / Decimal(total_amount_minor)).quantize(
            Decimal("0.0001"), rounding=ROUND_HALF_UP
        )
    )


def compute_fees(
    total_amount_minor: int,
    platform_fee_percent: float | None = None,
    processor_fee_percent: float | None = None,
    processor_fixed_fee_minor: int | None = None,
) -> FeeBreakdown:
    """Split a job price into platform fee, processor-fee forecast and net payout.

    The three parts always sum to ``total_amount_minor`` exactly: the net is
    derived by subtraction, so each rounding step lands on the net.  For totals
    below the fixed processor fee the net estimate is negative.
    """
    percent = settings.platform_fee_percent if platform_fee_percent is None else platform_fee_percent
    platform = platform_fee(total_amount_minor, percent)
    processor = estimate_processor_fee(
        total_amount_minor, processor_fee_percent, processor_fixed_fee_minor
    )
    return FeeBreakdown(
        total_amount_minor=total_amount_minor,
        platform_fee_minor=platform,
        estimated_processor_fee_minor=processor,
        estimated_net_amount_minor=net_amount(total_amount_minor, platform, processor),
        platform_fee_percent=float(percent),
    )


def _check_total(total_amount_minor: int) -> None:
    if isinstance(total_amount_minor, bool) or not isinstance(total_amount_minor, int):
        raise TypeError("total_amount_minor must be an integer number of minor units")
    if total_amount_minor < 1:
        raise ValueError(f"total_amount_minor must be >= 1, got {total_amount_minor}")
