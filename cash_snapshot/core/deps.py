"""
Component wiring.

Config objects and long-lived services are built here once per process and
handed to routers through FastAPI dependencies. Nothing below this layer
reads ``settings``.
"""
from functools import lru_cache

import redis.asyncio as aioredis
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cash_snapshot.core.config import Settings, settings
from cash_snapshot.core.database import SessionLocal
from cash_snapshot.core.locks import InProcessItemLocks, ItemLocks
from cash_snapshot.core.redis import RedisItemLocks, get_redis
from cash_snapshot.core.security import Cipher
from cash_snapshot.services.balances import BalanceService
from cash_snapshot.services.plaid_client import PlaidConfig, PlaidFeedClient
from cash_snapshot.services.recurring import RecurringService
from cash_snapshot.services.recurring_detector import (
    DetectorConfig,
    GroupingKey,
    NextDatePolicy,
    RecurringDetector,
)
from cash_snapshot.services.sync import SyncConfig, SyncOrchestrator


def get_settings() -> Settings:
    return settings


def detector_config(s: Settings) -> DetectorConfig:
    return DetectorConfig(
        grouping_key=GroupingKey(s.recurring_grouping_key),
        min_occurrences=s.recurring_min_occurrences,
        fallback_gap_days=s.recurring_fallback_gap_days,
        next_date_policy=NextDatePolicy(s.recurring_next_date_policy),
    )


@lru_cache
def get_cipher() -> Cipher:
    return Cipher(settings.encryption_key)


@lru_cache
def get_feed_client() -> PlaidFeedClient:
    return PlaidFeedClient(PlaidConfig.from_settings(settings))


def require_feed_client() -> PlaidFeedClient:
    client = get_feed_client()
    if not client.config.configured:
        raise HTTPException(status_code=503, detail="Plaid not configured")
    return client


def make_item_locks(client: aioredis.Redis | None = None) -> ItemLocks:
    if settings.sync_lock_backend == "redis":
        return RedisItemLocks(
            client or get_redis(),
            timeout_seconds=settings.sync_lock_timeout_seconds,
            wait_seconds=settings.sync_lock_wait_seconds,
        )
    return InProcessItemLocks(wait_seconds=settings.sync_lock_wait_seconds)


@lru_cache
def get_item_locks() -> ItemLocks:
    return make_item_locks()


def build_sync_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    locks: ItemLocks | None = None,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory=session_factory,
        feed=get_feed_client(),
        cipher=get_cipher(),
        locks=locks if locks is not None else get_item_locks(),
        config=SyncConfig.from_settings(settings),
    )


@lru_cache
def get_sync_orchestrator() -> SyncOrchestrator:
    require_feed_client()
    return build_sync_orchestrator()


@lru_cache
def get_recurring_service() -> RecurringService:
    return RecurringService(
        feed=get_feed_client(),
        cipher=get_cipher(),
        detector=RecurringDetector(detector_config(settings)),
        lookback_days=settings.recurring_lookback_days,
    )


@lru_cache
def get_balance_service() -> BalanceService:
    return BalanceService(feed=get_feed_client(), cipher=get_cipher())
