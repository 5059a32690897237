import uuid
from datetime import date
from decimal import Decimal

from pydantic import BaseModel


class RecurringStreamResponse(BaseModel):
    """One recurring stream, from Plaid or the local detector."""
    key: str
    stream_id: str | None
    description: str
    merchant_name: str | None
    avg_amount: Decimal             # + inflow, - outflow
    currency: str | None
    direction: str                  # inflow | outflow
    frequency: str
    confidence: float               # 0–1
    source: str                     # external | local
    category: list[str] | None
    first_date: date | None
    last_date: date | None
    next_estimated_date: date | None
    occurrences: int | None
    frequency_days: int | None
    status: str | None

    model_config = {"from_attributes": True}


class DetectionMethods(BaseModel):
    external: int
    custom: int


class RecurringResponse(BaseModel):
    user_id: uuid.UUID
    type: str                       # inflow | outflow | all
    streams: list[RecurringStreamResponse]
    total_streams: int
    detection_methods: DetectionMethods


class RecurringDetectRequest(BaseModel):
    user_id: uuid.UUID
    force_refresh: bool = False
    persist: bool = False


class RecurringDetectResponse(BaseModel):
    user_id: uuid.UUID
    detected_streams: int
    persisted: bool
    streams: list[RecurringStreamResponse]
