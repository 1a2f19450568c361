"""
Completion reconciliation: amount validation, commission and under-report detection.

Pure functions; ``JobService.report_completion`` applies the results to the
job inside a single versioned write.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from app.config import settings
from app.core.dispatch.domain import (
    PAYMENT_METHODS,
    Commission,
    CommissionStatus,
    Job,
    JobFlags,
)
from app.core.dispatch.errors import CompletionAmountInvalid, InvalidPaymentMethod

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class CommissionPolicy:
    enabled: bool = True
    rate: float = 0.3
    tolerance_pct: float = 0.15
    tolerance_amount: float = 25.0
    auto_charge: bool = True
    max_amount: float = 1_000_000.0

    @classmethod
    def from_settings(cls) -> "CommissionPolicy":
        return cls(
            enabled=settings.commission_enabled,
            rate=min(max(settings.commission_default_rate, 0.0), 1.0),
            tolerance_pct=settings.commission_tolerance_pct,
            tolerance_amount=settings.commission_tolerance_amount,
            auto_charge=settings.commission_auto_charge,
            max_amount=settings.completion_max_amount,
        )


def round_cents(value: float) -> float:
    """Round half-up to cents (0.005 -> 0.01), unlike float round()."""
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def validate_amount(amount: Any, max_amount: float) -> float:
    """Return the amount rounded to cents or raise CompletionAmountInvalid."""
    if isinstance(amount, bool):
        raise CompletionAmountInvalid("Amount must be a number")
    try:
        value = float(Decimal(str(amount)))
    except (InvalidOperation, ValueError, TypeError):
        raise CompletionAmountInvalid("Amount must be a number")

    if not math.isfinite(value):
        raise CompletionAmountInvalid("Amount must be a finite number")
    if value <= 0:
        raise CompletionAmountInvalid("Amount must be greater than zero")
    if value > max_amount:
        raise CompletionAmountInvalid(f"Amount exceeds the maximum of {max_amount:,.2f}")

    rounded = round_cents(value)
    if rounded <= 0:
        raise CompletionAmountInvalid("Amount must be at least 0.01")
    return rounded


def validate_payment_method(method: Optional[str]) -> str:
    normalized = (method or "").strip().lower()
    if normalized not in PAYMENT_METHODS:
        allowed = ", ".join(sorted(PAYMENT_METHODS))
        raise InvalidPaymentMethod(f"Payment method must be one of: {allowed}")
    return normalized


def compute_commission(amount: float, policy: CommissionPolicy) -> Optional[Commission]:
    if not policy.enabled:
        return None
    commission_amount = round_cents(amount * policy.rate)
    if policy.auto_charge and commission_amount > 0:
        status = CommissionStatus.PENDING.value
    else:
        status = CommissionStatus.SKIPPED.value
    return Commission(rate=policy.rate, amount=commission_amount, status=status)


def expected_revenue_for(job: Job) -> float:
    """Largest of the agreed price, the quote and any previously expected revenue."""
    return round_cents(max(job.final_price or 0.0, job.quoted_price or 0.0, job.expected_revenue or 0.0))


def detect_under_report(reported: float, expected: float, policy: CommissionPolicy) -> JobFlags:
    """
    Flag a completion whose reported amount falls short of what was agreed.

    The shortfall must reach either the absolute tolerance or the
    percentage tolerance of the expected amount.
    """
    if expected <= 0:
        return JobFlags()
    shortfall = round_cents(expected - reported)
    if shortfall <= 0:
        return JobFlags()
    if shortfall >= policy.tolerance_amount or shortfall >= expected * policy.tolerance_pct:
        return JobFlags(
            under_report=True,
            reason=f"Reported {reported:.2f} vs expected {expected:.2f} (shortfall {shortfall:.2f})",
        )
    return JobFlags()
