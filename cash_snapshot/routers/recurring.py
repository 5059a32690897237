import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import get_db
from cash_snapshot.core.deps import get_recurring_service
from cash_snapshot.schemas.recurring import (
    DetectionMethods,
    RecurringDetectRequest,
    RecurringDetectResponse,
    RecurringResponse,
    RecurringStreamResponse,
)
from cash_snapshot.services.recurring import RecurringService
from cash_snapshot.services.stream_merger import MergeResult
from cash_snapshot.services.streams import Direction, Provenance, RecurringStream

router = APIRouter(prefix="/recurring", tags=["recurring"])


def _stream_response(s: RecurringStream) -> RecurringStreamResponse:
    return RecurringStreamResponse(
        key=s.key,
        stream_id=s.stream_id,
        description=s.description,
        merchant_name=s.merchant_name,
        avg_amount=s.avg_amount,
        currency=s.currency,
        direction=s.direction.value,
        frequency=s.frequency,
        confidence=s.confidence,
        source=s.source.value,
        category=s.category,
        first_date=s.first_date,
        last_date=s.last_date,
        next_estimated_date=s.next_estimated_date,
        occurrences=s.occurrences,
        frequency_days=s.frequency_days,
        status=s.status,
    )


def _detection_methods(merged: MergeResult) -> DetectionMethods:
    return DetectionMethods(
        external=merged.source_counts.get(Provenance.EXTERNAL.value, 0),
        custom=merged.source_counts.get(Provenance.LOCAL.value, 0),
    )


@router.get("", response_model=RecurringResponse)
async def get_recurring(
    user_id: uuid.UUID = Query(...),
    type: str | None = Query(None, description="inflow | outflow"),
    db: AsyncSession = Depends(get_db),
    service: RecurringService = Depends(get_recurring_service),
):
    """Plaid-reported and locally detected streams, largest amount first."""
    if type is not None and type not in (Direction.INFLOW.value, Direction.OUTFLOW.value):
        raise HTTPException(status_code=400, detail='type must be either "inflow" or "outflow"')

    direction = Direction(type) if type else None
    merged = await service.get_recurring(db, user_id, direction)
    return RecurringResponse(
        user_id=user_id,
        type=type or "all",
        streams=[_stream_response(s) for s in merged.streams],
        total_streams=merged.total_streams,
        detection_methods=_detection_methods(merged),
    )


@router.post("/detect", response_model=RecurringDetectResponse)
async def detect_recurring(
    payload: RecurringDetectRequest,
    db: AsyncSession = Depends(get_db),
    service: RecurringService = Depends(get_recurring_service),
):
    """Run detection now; optionally clear and store the result."""
    merged = await service.detect(
        db, payload.user_id, force_refresh=payload.force_refresh, persist=payload.persist
    )
    return RecurringDetectResponse(
        user_id=payload.user_id,
        detected_streams=merged.total_streams,
        persisted=payload.persist,
        streams=[_stream_response(s) for s in merged.streams],
    )
