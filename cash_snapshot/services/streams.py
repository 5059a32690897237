"""
Recurring stream types shared by the detector, the merger and the API.

Sign convention for streams: ``avg_amount`` is positive for money coming in
(inflow) and negative for money going out (outflow). Transactions are stored
the way the feed reports them (positive = money out), so anything turning
transactions into streams goes through ``stream_sign``.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

CENT = Decimal("0.01")


class Direction(str, Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class Cadence(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    IRREGULAR = "irregular"


class Provenance(str, Enum):
    EXTERNAL = "external"
    LOCAL = "local"


@dataclass
class RecurringStream:
    key: str                          # external stream id, or synthesized for local streams
    description: str
    avg_amount: Decimal               # signed: + inflow, - outflow
    direction: Direction
    frequency: str                    # Cadence value, or the feed's own label (e.g. ANNUALLY)
    confidence: float                 # 0–1
    source: Provenance
    stream_id: str | None = None      # only set for external streams
    merchant_name: str | None = None
    currency: str | None = None
    category: list[str] | None = None
    first_date: date | None = None
    last_date: date | None = None
    next_estimated_date: date | None = None
    occurrences: int | None = None
    frequency_days: int | None = None  # rounded mean gap, local streams only
    status: str | None = None          # feed-reported status (MATURE, EARLY_DETECTION, ...)
    transaction_ids: list[str] = field(default_factory=list)


def to_cents(value: Decimal | float | int) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def stream_sign(magnitude: Decimal, direction: Direction) -> Decimal:
    """Apply the stream sign convention to an unsigned magnitude."""
    magnitude = abs(magnitude)
    return magnitude if direction is Direction.INFLOW else -magnitude


def direction_of_feed_amount(amount: Decimal) -> Direction:
    """Feed amounts are positive when money leaves the account."""
    return Direction.OUTFLOW if amount >= 0 else Direction.INFLOW
