"""
Recurring report: Plaid-reported streams merged with locally detected ones.

Plaid streams come from /transactions/recurring/get for every linked item;
local streams come from running the detector over the user's mirrored
transactions inside the lookback window. Both are merged with external
streams first, so Plaid wins when the two describe the same payment.
"""
import logging
import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import dialect_insert
from cash_snapshot.core.security import Cipher, DecryptionError
from cash_snapshot.models.account import LinkedItem, Transaction
from cash_snapshot.models.recurring import RecurringStreamRecord
from cash_snapshot.services.plaid_client import ExternalStreamRecord, FeedClient, FeedError
from cash_snapshot.services.recurring_detector import RecurringDetector
from cash_snapshot.services.stream_merger import MergeResult, merge_streams
from cash_snapshot.services.streams import (
    Direction,
    Provenance,
    RecurringStream,
    stream_sign,
    to_cents,
)

logger = logging.getLogger(__name__)

# Plaid marks streams it has seen long enough as MATURE
MATURE_CONFIDENCE = 1.0
EARLY_CONFIDENCE = 0.75


def external_to_stream(rec: ExternalStreamRecord) -> RecurringStream:
    direction = Direction.INFLOW if rec.stream_type == "inflow" else Direction.OUTFLOW
    return RecurringStream(
        key=rec.stream_id,
        stream_id=rec.stream_id,
        description=rec.description,
        merchant_name=rec.merchant_name,
        avg_amount=stream_sign(to_cents(rec.average_amount), direction),
        direction=direction,
        frequency=(rec.frequency or "unknown").lower(),
        confidence=MATURE_CONFIDENCE if rec.status == "MATURE" else EARLY_CONFIDENCE,
        source=Provenance.EXTERNAL,
        currency=rec.currency,
        category=rec.category,
        first_date=rec.first_date,
        last_date=rec.last_date,
        status=rec.status,
        transaction_ids=list(rec.transaction_ids),
    )


class RecurringService:
    def __init__(
        self,
        feed: FeedClient,
        cipher: Cipher,
        detector: RecurringDetector,
        lookback_days: int = 395,
    ):
        self.feed = feed
        self.cipher = cipher
        self.detector = detector
        self.lookback_days = lookback_days

    async def external_streams(self, db: AsyncSession, user_id: uuid.UUID) -> list[RecurringStream]:
        items = (
            await db.execute(
                select(LinkedItem)
                .where(LinkedItem.user_id == user_id)
                .order_by(LinkedItem.created_at, LinkedItem.id)
            )
        ).scalars().all()

        streams: list[RecurringStream] = []
        for item in items:
            try:
                result = await self.feed.get_recurring_streams(
                    self.cipher.decrypt(item.encrypted_access_token)
                )
            except (FeedError, DecryptionError) as exc:
                logger.warning("Plaid recurring fetch failed for item %s: %s", item.item_id, exc)
                continue
            streams.extend(external_to_stream(s) for s in result.inflow_streams)
            streams.extend(external_to_stream(s) for s in result.outflow_streams)
        return streams

    async def local_streams(
        self, db: AsyncSession, user_id: uuid.UUID, today: date | None = None
    ) -> list[RecurringStream]:
        since = (today or date.today()) - timedelta(days=self.lookback_days)
        txns = (
            await db.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id, Transaction.date >= since)
                .order_by(Transaction.date, Transaction.transaction_id)
            )
        ).scalars().all()
        # Detection is pure CPU work over an in-memory snapshot
        return self.detector.detect(txns)

    async def get_recurring(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        direction: Direction | None = None,
        today: date | None = None,
    ) -> MergeResult:
        external = await self.external_streams(db, user_id)
        local = await self.local_streams(db, user_id, today=today)
        merged = merge_streams(external, local, direction)
        logger.info(
            "Recurring streams for user %s: %d total (external=%d, local=%d)",
            user_id, merged.total_streams,
            merged.source_counts[Provenance.EXTERNAL.value],
            merged.source_counts[Provenance.LOCAL.value],
        )
        return merged

    async def clear_streams(self, db: AsyncSession, user_id: uuid.UUID) -> int:
        result = await db.execute(
            delete(RecurringStreamRecord).where(RecurringStreamRecord.user_id == user_id)
        )
        return result.rowcount or 0

    async def persist_streams(
        self, db: AsyncSession, user_id: uuid.UUID, streams: list[RecurringStream]
    ) -> int:
        """Upsert streams keyed by (user_id, stream key). Caller commits."""
        now = datetime.now(timezone.utc)
        for s in streams:
            values = {
                "id": uuid.uuid4(),
                "user_id": user_id,
                "stream_key": s.key[:255],
                "source": s.source.value,
                "description": s.description[:255],
                "merchant_name": s.merchant_name,
                "direction": s.direction.value,
                "frequency": s.frequency,
                "avg_amount": s.avg_amount,
                "currency": s.currency,
                "occurrences": s.occurrences,
                "first_date": s.first_date,
                "last_date": s.last_date,
                "next_estimated_date": s.next_estimated_date,
                "confidence": s.confidence,
                "category": s.category,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }
            stmt = dialect_insert(db, RecurringStreamRecord).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[RecurringStreamRecord.user_id, RecurringStreamRecord.stream_key],
                set_={
                    col: stmt.excluded[col]
                    for col in values
                    if col not in ("id", "user_id", "stream_key", "created_at")
                },
            )
            await db.execute(stmt)
        return len(streams)

    async def detect(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        force_refresh: bool = False,
        persist: bool = False,
    ) -> MergeResult:
        if force_refresh:
            cleared = await self.clear_streams(db, user_id)
            logger.info("Cleared %d stored recurring streams for user %s", cleared, user_id)

        merged = await self.get_recurring(db, user_id)
        if persist:
            await self.persist_streams(db, user_id, merged.streams)
        if force_refresh or persist:
            await db.commit()
        return merged
