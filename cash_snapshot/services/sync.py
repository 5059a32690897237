"""Plaid transaction sync service — idempotent, incremental, one commit per page.

For each linked item the orchestrator walks /transactions/sync from the item's
stored cursor (or from the start of history on a full sync). Every page is
applied in its own database transaction: upserts for added/modified records,
deletes for removed ids, and the cursor advance. A failure anywhere in that
group rolls the whole page back, so the next run re-reads the same page from
the last committed cursor.

Items are independent: one item's failure becomes an error entry in the run
result and never stops its siblings.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cash_snapshot.core.config import Settings
from cash_snapshot.core.locks import ItemLocks, ItemLockTimeout
from cash_snapshot.core.security import Cipher, DecryptionError
from cash_snapshot.models.account import LinkedItem
from cash_snapshot.services.plaid_client import (
    CredentialError,
    FeedClient,
    FeedError,
    SyncPage,
    TransientFeedError,
)
from cash_snapshot.services.reconciliation import ReconciliationStore
from cash_snapshot.worker import celery_app

logger = logging.getLogger(__name__)


# ─── Configuration & results ──────────────────────────────────────────────────

@dataclass(frozen=True)
class SyncConfig:
    page_size: int = 500
    max_pages: int = 1000
    page_timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    @classmethod
    def from_settings(cls, s: Settings) -> "SyncConfig":
        return cls(
            page_size=s.sync_page_size,
            max_pages=s.sync_max_pages,
            page_timeout_seconds=s.sync_page_timeout_seconds,
            max_attempts=s.sync_max_attempts,
            backoff_base_seconds=s.sync_backoff_base_seconds,
            backoff_max_seconds=s.sync_backoff_max_seconds,
        )

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_max_seconds, self.backoff_base_seconds * 2 ** (attempt - 1))


class SyncState(str, Enum):
    PAGING = "paging"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class NoLinkedItemsError(Exception):
    """The user has nothing to sync; raised before any item is touched."""


class ItemNotFoundError(Exception):
    pass


class PageLimitExceeded(Exception):
    """The feed kept reporting has_more past the configured page ceiling."""


@dataclass
class ItemSyncOutcome:
    item_id: uuid.UUID
    external_item_id: str
    state: SyncState = SyncState.PAGING
    pages: int = 0
    added: int = 0
    modified: int = 0
    removed: int = 0
    cursor: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is SyncState.DONE

    @property
    def transactions_synced(self) -> int:
        return self.added + self.modified


@dataclass
class SyncRunResult:
    user_id: uuid.UUID
    full_sync: bool
    items: list[ItemSyncOutcome] = field(default_factory=list)

    @property
    def total_transactions_synced(self) -> int:
        return sum(o.transactions_synced for o in self.items)

    @property
    def failed_items(self) -> list[ItemSyncOutcome]:
        return [o for o in self.items if not o.ok]

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "full_sync": self.full_sync,
            "total_transactions_synced": self.total_transactions_synced,
            "items_synced": len(self.items),
            "sync_results": [
                {**asdict(o), "item_id": str(o.item_id), "state": o.state.value}
                for o in self.items
            ],
        }


# ─── Orchestrator ─────────────────────────────────────────────────────────────

class SyncOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: FeedClient,
        cipher: Cipher,
        locks: ItemLocks,
        config: SyncConfig | None = None,
        store_factory: Callable[[AsyncSession], ReconciliationStore] = ReconciliationStore,
        sleep: Callable[[float], object] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.cipher = cipher
        self.locks = locks
        self.config = config or SyncConfig()
        self.store_factory = store_factory
        self._sleep = sleep

    async def sync_user(self, user_id: uuid.UUID, full_sync: bool = False) -> SyncRunResult:
        """Sync every linked item of a user, one item after another."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(LinkedItem)
                .where(LinkedItem.user_id == user_id)
                .order_by(LinkedItem.created_at, LinkedItem.id)
            )
            items = result.scalars().all()

        if not items:
            raise NoLinkedItemsError(f"No linked accounts found for user {user_id}")

        run = SyncRunResult(user_id=user_id, full_sync=full_sync)
        for item in items:
            run.items.append(await self.sync_item(item, full_sync=full_sync))

        logger.info(
            "Transaction sync completed for user %s: %d items, %d transactions, %d failed",
            user_id, len(run.items), run.total_transactions_synced, len(run.failed_items),
        )
        return run

    async def sync_item_by_id(
        self, item_id: uuid.UUID, user_id: uuid.UUID, full_sync: bool = False
    ) -> ItemSyncOutcome:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LinkedItem).where(LinkedItem.id == item_id, LinkedItem.user_id == user_id)
            )
            item = result.scalar_one_or_none()
        if item is None:
            raise ItemNotFoundError(f"Linked item {item_id} not found")
        return await self.sync_item(item, full_sync=full_sync)

    async def sync_item(self, item: LinkedItem, full_sync: bool = False) -> ItemSyncOutcome:
        """Run the page loop for one item. Never raises for item-level failures."""
        outcome = ItemSyncOutcome(item_id=item.id, external_item_id=item.item_id)
        try:
            async with self.locks.hold(item.id):
                await self._run(item, full_sync, outcome)
        except (FeedError, PageLimitExceeded, ItemLockTimeout) as exc:
            logger.error("Failed to sync item %s: %s", item.item_id, exc)
            self._fail(outcome, exc)
        except Exception as exc:  # storage failures and anything unexpected stay per-item
            logger.exception("Failed to sync item %s", item.item_id)
            self._fail(outcome, exc)

        if outcome.error_code:
            await self._record_error(item, outcome.error_code)
        return outcome

    def _fail(self, outcome: ItemSyncOutcome, exc: Exception) -> None:
        outcome.state = SyncState.FAILED
        outcome.error = str(exc) or exc.__class__.__name__
        if isinstance(exc, FeedError):
            outcome.error_code = exc.error_code

    async def _run(self, item: LinkedItem, full_sync: bool, outcome: ItemSyncOutcome) -> None:
        try:
            access_token = self.cipher.decrypt(item.encrypted_access_token)
        except DecryptionError as exc:
            raise CredentialError(str(exc), "DECRYPTION_FAILED") from exc

        # Read the cursor only once the lock is held; a sync that just finished
        # may have moved it past what the caller loaded.
        cursor = None if full_sync else await self._stored_cursor(item.id)
        outcome.cursor = cursor
        has_more = True

        while has_more:
            if outcome.pages >= self.config.max_pages:
                raise PageLimitExceeded(
                    f"stopped after {outcome.pages} pages; feed still reports has_more"
                )

            outcome.state = SyncState.PAGING
            page = await self._fetch_page(access_token, cursor)

            outcome.state = SyncState.COMMITTING
            await self._commit_page(item, page, cursor, outcome)

            cursor = page.next_cursor
            has_more = page.has_more
            outcome.cursor = cursor
            outcome.pages += 1

        outcome.state = SyncState.DONE

    async def _stored_cursor(self, item_id: uuid.UUID) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(select(LinkedItem.cursor).where(LinkedItem.id == item_id))
            return result.scalar_one_or_none()

    async def _fetch_page(self, access_token: str, cursor: str | None) -> SyncPage:
        attempts = self.config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.feed.sync_transactions(access_token, cursor, self.config.page_size),
                    timeout=self.config.page_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = TransientFeedError(
                    f"sync page request timed out after {self.config.page_timeout_seconds}s",
                    "TIMEOUT",
                )
            except TransientFeedError as exc:
                error = exc

            if attempt == attempts:
                raise error

            delay = self.config.backoff(attempt)
            logger.warning(
                "Transient feed error (%s); retrying page in %.1fs (attempt %d/%d)",
                error.error_code or error, delay, attempt + 1, attempts,
            )
            await self._sleep(delay)

        raise AssertionError("unreachable")

    async def _commit_page(
        self, item: LinkedItem, page: SyncPage, cursor: str | None, outcome: ItemSyncOutcome
    ) -> None:
        if not (page.added or page.modified or page.removed) and page.next_cursor == cursor:
            logger.debug("Empty page at unchanged cursor for item %s; nothing to write", item.item_id)
            return

        async with self.session_factory() as session:
            async with session.begin():
                store = self.store_factory(session)
                added = await store.upsert_batch(item.user_id, item.id, page.added)
                modified = await store.upsert_batch(item.user_id, item.id, page.modified)
                removed = await store.remove_batch(page.removed)
                await store.advance_cursor(item.id, page.next_cursor)

        # Counted only after the commit succeeded
        outcome.added += added
        outcome.modified += modified
        outcome.removed += removed
        logger.info(
            "Committed page %d for item %s: %d added, %d modified, %d removed",
            outcome.pages + 1, item.item_id, added, modified, removed,
        )

    async def _record_error(self, item: LinkedItem, error_code: str) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self.store_factory(session).record_item_error(item.id, error_code)
        except Exception:
            logger.exception("Could not record error code %s on item %s", error_code, item.item_id)


# ─── Celery task ──────────────────────────────────────────────────────────────

@celery_app.task(name="cash_snapshot.services.sync.sync_user_task")
def sync_user_task(user_id: str, full_sync: bool = False) -> dict:
    """Run a user's sync outside the request cycle (enqueued by the API)."""
    from cash_snapshot.core.config import settings
    from cash_snapshot.core.database import make_engine, make_session_factory
    from cash_snapshot.core.deps import build_sync_orchestrator, make_item_locks
    from cash_snapshot.core.redis import new_redis

    async def _run() -> dict:
        # Fresh engine, Redis client and locks per task: each asyncio.run is a new
        # event loop and pooled connections are bound to the loop that opened them
        engine = make_engine()
        redis_client = new_redis() if settings.sync_lock_backend == "redis" else None
        try:
            orchestrator = build_sync_orchestrator(
                make_session_factory(engine), locks=make_item_locks(redis_client),
            )
            result = await orchestrator.sync_user(uuid.UUID(user_id), full_sync=full_sync)
            return result.to_dict()
        finally:
            if redis_client is not None:
                await redis_client.aclose()
            await engine.dispose()

    logger.info("Syncing linked items for user %s (full_sync=%s)", user_id, full_sync)
    return asyncio.run(_run())
