"""
Recurring transaction detection service.

Groups transactions by normalized merchant name (optionally together with the
amount rounded to whole currency units), then infers a cadence from the mean
day-gap between consecutive occurrences (weekly, bi-weekly, monthly, or
irregular). Pure: no database or network access, same input → same output.
"""
import re
from calendar import monthrange
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable

from cash_snapshot.services.streams import (
    Cadence,
    Direction,
    Provenance,
    RecurringStream,
    stream_sign,
    to_cents,
)


# ─── Configuration ────────────────────────────────────────────────────────────

class GroupingKey(str, Enum):
    MERCHANT_AND_AMOUNT = "merchant_and_amount"
    MERCHANT_ONLY = "merchant_only"


class NextDatePolicy(str, Enum):
    CADENCE = "cadence"          # +1 calendar month / +7 days, nothing otherwise
    AVERAGE_GAP = "average_gap"  # last date + rounded mean gap (fallback when zero)


@dataclass(frozen=True)
class DetectorConfig:
    grouping_key: GroupingKey = GroupingKey.MERCHANT_AND_AMOUNT
    min_occurrences: int = 3
    fallback_gap_days: int = 30
    next_date_policy: NextDatePolicy = NextDatePolicy.CADENCE

    def __post_init__(self):
        if self.min_occurrences < 2:
            raise ValueError("min_occurrences must be at least 2 (one day-gap)")
        if self.fallback_gap_days < 1:
            raise ValueError("fallback_gap_days must be positive")


# ─── Frequency definitions ────────────────────────────────────────────────────

# Inclusive mean-gap bands, in days
CADENCE_BANDS: list[tuple[Cadence, float, float]] = [
    (Cadence.MONTHLY,  27, 32),
    (Cadence.BIWEEKLY, 13, 15),
    (Cadence.WEEKLY,    6,  8),
]

CLASSIFIED_CONFIDENCE = 0.9
IRREGULAR_CONFIDENCE = 0.5


# ─── Helpers ─────────────────────────────────────────────────────────────────

_DIGITS = re.compile(r"\d+")
_NON_ALPHA = re.compile(r"[^a-z\s]")


def normalize_merchant(label: str | None) -> str:
    """Lowercase, drop digits (store numbers, phone numbers) and symbols."""
    label = (label or "").lower()
    label = _DIGITS.sub("", label)
    label = _NON_ALPHA.sub("", label)
    return label.strip()


def merchant_label(txn: Any) -> str:
    """Normalized merchant, falling back to the display name when missing."""
    merchant = getattr(txn, "merchant_name", None)
    name = getattr(txn, "name", None)
    if merchant and merchant.strip():
        norm = normalize_merchant(merchant)
        if norm:
            return norm
    return normalize_merchant(name)


def classify_cadence(mean_gap_days: float) -> Cadence:
    for cadence, lo, hi in CADENCE_BANDS:
        if lo <= mean_gap_days <= hi:
            return cadence
    return Cadence.IRREGULAR


def add_one_month(d: date) -> date:
    """Same day next month, clamped to the month's last day (Jan 31 → Feb 28)."""
    year, month = (d.year + 1, 1) if d.month == 12 else (d.year, d.month + 1)
    return date(year, month, min(d.day, monthrange(year, month)[1]))


def _to_date(dt: Any) -> date:
    if hasattr(dt, "date"):
        return dt.date()
    return dt


def _amount(txn: Any) -> Decimal:
    value = txn.amount
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _whole_units(amount: Decimal) -> int:
    return int(abs(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ─── Main detector ────────────────────────────────────────────────────────────

class RecurringDetector:
    def __init__(self, config: DetectorConfig | None = None):
        self.config = config or DetectorConfig()

    def next_date(self, cadence: Cadence, last: date, mean_gap: float) -> date | None:
        if self.config.next_date_policy is NextDatePolicy.AVERAGE_GAP:
            gap = int(Decimal(str(mean_gap)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
            return last + timedelta(days=gap if gap > 0 else self.config.fallback_gap_days)
        if cadence is Cadence.MONTHLY:
            return add_one_month(last)
        if cadence is Cadence.WEEKLY:
            return last + timedelta(days=7)
        return None

    def _group_key(self, merchant: str, amount: Decimal) -> tuple[str, int | None]:
        if self.config.grouping_key is GroupingKey.MERCHANT_ONLY:
            return merchant, None
        return merchant, _whole_units(amount)

    def detect(self, transactions: Iterable[Any]) -> list[RecurringStream]:
        """
        Return one RecurringStream per qualifying group.

        Transactions need ``amount``, ``date``, ``name`` and ``merchant_name``;
        ``transaction_id`` and ``iso_currency_code`` are used when present.
        """
        groups: dict[tuple[str, int | None], list] = defaultdict(list)
        for txn in transactions:
            merchant = merchant_label(txn)
            if not merchant:
                continue
            groups[self._group_key(merchant, _amount(txn))].append(txn)

        streams: list[RecurringStream] = []
        for (merchant, bucket), txns in groups.items():
            if len(txns) < self.config.min_occurrences:
                continue
            streams.append(self._build_stream(merchant, bucket, txns))

        streams.sort(key=lambda s: (-s.confidence, -(s.occurrences or 0), s.description, s.key))
        return streams

    def _build_stream(self, merchant: str, bucket: int | None, txns: list) -> RecurringStream:
        # Stable sort: same-day transactions keep input order
        ordered = sorted(txns, key=lambda t: _to_date(t.date))
        dates = [_to_date(t.date) for t in ordered]
        gaps = [(dates[i + 1] - dates[i]).days for i in range(len(dates) - 1)]
        mean_gap = sum(gaps) / len(gaps)
        cadence = classify_cadence(mean_gap)

        amounts = [_amount(t) for t in ordered]
        magnitude = to_cents(sum(abs(a) for a in amounts) / len(amounts))
        # Net feed amount > 0 means the group mostly moves money out
        direction = Direction.OUTFLOW if sum(amounts) >= 0 else Direction.INFLOW

        first = ordered[0]
        key = f"local:{merchant}" if bucket is None else f"local:{merchant}|{bucket}"
        return RecurringStream(
            key=key,
            description=merchant_label(first),
            merchant_name=merchant_label(first),
            avg_amount=stream_sign(magnitude, direction),
            direction=direction,
            frequency=cadence.value,
            confidence=IRREGULAR_CONFIDENCE if cadence is Cadence.IRREGULAR else CLASSIFIED_CONFIDENCE,
            source=Provenance.LOCAL,
            currency=getattr(first, "iso_currency_code", None),
            first_date=dates[0],
            last_date=dates[-1],
            next_estimated_date=self.next_date(cadence, dates[-1], mean_gap),
            occurrences=len(ordered),
            frequency_days=int(Decimal(str(mean_gap)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
            transaction_ids=[str(t.transaction_id) for t in ordered if getattr(t, "transaction_id", None)],
        )


def detect_recurring(transactions: Iterable[Any], config: DetectorConfig | None = None) -> list[RecurringStream]:
    """Detect recurring streams with the given (or default) configuration."""
    return RecurringDetector(config).detect(transactions)
