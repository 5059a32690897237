"""
Router functions called directly with mocked services: response shaping and
domain-error → HTTP status mapping.
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from redis.exceptions import ConnectionError as RedisConnectionError

from cash_snapshot.routers import balances as balances_router
from cash_snapshot.routers import health as health_router
from cash_snapshot.routers import plaid as plaid_router
from cash_snapshot.routers import recurring as recurring_router
from cash_snapshot.schemas.recurring import RecurringDetectRequest
from cash_snapshot.schemas.sync import SyncRequest
from cash_snapshot.services.balances import AccountBalance, CashSummary
from cash_snapshot.services.stream_merger import MergeResult
from cash_snapshot.services.streams import Direction, Provenance, RecurringStream
from cash_snapshot.services.sync import (
    ItemNotFoundError,
    ItemSyncOutcome,
    NoLinkedItemsError,
    SyncRunResult,
    SyncState,
)

USER_ID = uuid.uuid4()


def _stream(description, amount, source):
    amount = Decimal(amount)
    return RecurringStream(
        key=description,
        description=description,
        avg_amount=amount,
        direction=Direction.INFLOW if amount > 0 else Direction.OUTFLOW,
        frequency="monthly",
        confidence=0.9,
        source=source,
        next_estimated_date=date(2026, 5, 1),
    )


class TestRecurringRouter:
    async def test_invalid_type_rejected(self):
        service = MagicMock()
        with pytest.raises(HTTPException) as exc:
            await recurring_router.get_recurring(user_id=USER_ID, type="sideways", db=MagicMock(), service=service)
        assert exc.value.status_code == 400
        service.get_recurring.assert_not_called()

    async def test_response_shape(self):
        merged = MergeResult(
            streams=[_stream("Payroll", "2100", Provenance.LOCAL)],
            source_counts={"external": 3, "local": 1},
        )
        service = MagicMock()
        service.get_recurring = AsyncMock(return_value=merged)
        db = MagicMock()

        resp = await recurring_router.get_recurring(user_id=USER_ID, type="inflow", db=db, service=service)

        service.get_recurring.assert_awaited_once_with(db, USER_ID, Direction.INFLOW)
        assert resp.type == "inflow"
        assert resp.total_streams == 1
        assert resp.detection_methods.external == 3
        assert resp.detection_methods.custom == 1
        assert resp.streams[0].direction == "inflow"
        assert resp.streams[0].source == "local"

    async def test_all_directions(self):
        service = MagicMock()
        service.get_recurring = AsyncMock(return_value=MergeResult(streams=[], source_counts={}))
        resp = await recurring_router.get_recurring(user_id=USER_ID, type=None, db=MagicMock(), service=service)
        assert resp.type == "all"
        assert resp.detection_methods.external == 0

    async def test_detect(self):
        service = MagicMock()
        service.detect = AsyncMock(return_value=MergeResult(
            streams=[_stream("Rent", "-1800", Provenance.EXTERNAL)], source_counts={"external": 1, "local": 0},
        ))
        db = MagicMock()
        payload = RecurringDetectRequest(user_id=USER_ID, force_refresh=True, persist=True)

        resp = await recurring_router.detect_recurring(payload=payload, db=db, service=service)

        service.detect.assert_awaited_once_with(db, USER_ID, force_refresh=True, persist=True)
        assert resp.detected_streams == 1
        assert resp.persisted is True


class TestPlaidRouter:
    async def test_sync_reports_item_errors(self):
        ok = ItemSyncOutcome(item_id=uuid.uuid4(), external_item_id="item-1", state=SyncState.DONE, pages=2, added=5)
        bad = ItemSyncOutcome(
            item_id=uuid.uuid4(), external_item_id="item-2", state=SyncState.FAILED,
            error="login required", error_code="ITEM_LOGIN_REQUIRED",
        )
        orchestrator = MagicMock()
        orchestrator.sync_user = AsyncMock(return_value=SyncRunResult(USER_ID, False, [ok, bad]))

        resp = await plaid_router.sync_transactions(
            payload=SyncRequest(user_id=USER_ID), background=False, orchestrator=orchestrator,
        )

        assert resp.total_transactions_synced == 5
        assert resp.items_synced == 2
        assert [r.state for r in resp.sync_results] == ["done", "failed"]
        assert resp.sync_results[1].error_code == "ITEM_LOGIN_REQUIRED"

    async def test_sync_without_items_is_404(self):
        orchestrator = MagicMock()
        orchestrator.sync_user = AsyncMock(side_effect=NoLinkedItemsError("none"))
        with pytest.raises(HTTPException) as exc:
            await plaid_router.sync_transactions(
                payload=SyncRequest(user_id=USER_ID), background=False, orchestrator=orchestrator,
            )
        assert exc.value.status_code == 404

    async def test_background_sync_enqueues_task(self):
        orchestrator = MagicMock()
        with patch.object(plaid_router.sync_user_task, "delay", return_value=MagicMock(id="task-1")) as delay:
            resp = await plaid_router.sync_transactions(
                payload=SyncRequest(user_id=USER_ID, full_sync=True), background=True, orchestrator=orchestrator,
            )
        delay.assert_called_once_with(str(USER_ID), True)
        assert resp.task_id == "task-1"
        orchestrator.sync_user.assert_not_called()

    async def test_unknown_item_is_404(self):
        orchestrator = MagicMock()
        orchestrator.sync_item_by_id = AsyncMock(side_effect=ItemNotFoundError("nope"))
        with pytest.raises(HTTPException) as exc:
            await plaid_router.sync_item(
                item_id=uuid.uuid4(), user_id=USER_ID, full_sync=False, orchestrator=orchestrator,
            )
        assert exc.value.status_code == 404


class TestBalancesRouter:
    async def test_summary(self):
        breakdown = [
            AccountBalance("acc-checking", "Checking", "depository", "checking", Decimal("2500.00"), None),
            AccountBalance("acc-credit", "Card", "credit", "credit card", Decimal("850.25"), None),
        ]
        summary = CashSummary(
            chequing_total=Decimal("2500.00"),
            savings_total=Decimal("10000.00"),
            credit_cards_total_owed=Decimal("850.25"),
            net_cash=Decimal("11649.75"),
            as_of=datetime(2026, 5, 1, tzinfo=timezone.utc),
            breakdown=breakdown,
        )
        service = MagicMock()
        service.summary = AsyncMock(return_value=summary)

        resp = await balances_router.balance_summary(user_id=USER_ID, refresh=True, db=MagicMock(), service=service)

        assert resp.net_cash == Decimal("11649.75")
        assert [a.account_id for a in resp.account_breakdown] == ["acc-checking", "acc-credit"]

    async def test_accounts_from_store_by_default(self):
        service = MagicMock()
        service.stored_balances = AsyncMock(return_value=[])
        service.refresh_balances = AsyncMock()

        await balances_router.account_balances(user_id=USER_ID, refresh=False, db=MagicMock(), service=service)

        service.stored_balances.assert_awaited_once()
        service.refresh_balances.assert_not_called()


class TestHealthRouter:
    def _feed(self, configured=True):
        feed = MagicMock()
        feed.config.configured = configured
        return feed

    def _settings(self, backend="memory"):
        return MagicMock(sync_lock_backend=backend)

    async def test_ready(self):
        db = MagicMock()
        db.execute = AsyncMock()
        response = MagicMock(status_code=200)

        body = await health_router.health_ready(
            response=response, db=db, feed=self._feed(), s=self._settings(),
        )

        assert body == {"status": "ok", "database": "ok", "plaid": "configured", "sync_locks": "memory"}
        assert response.status_code == 200

    async def test_unconfigured_plaid_is_degraded(self):
        db = MagicMock()
        db.execute = AsyncMock()
        response = MagicMock(status_code=200)

        body = await health_router.health_ready(
            response=response, db=db, feed=self._feed(configured=False), s=self._settings(),
        )

        assert body["status"] == "degraded"
        assert body["plaid"] == "not_configured"
        assert response.status_code == 503

    async def test_redis_down(self):
        db = MagicMock()
        db.execute = AsyncMock()
        response = MagicMock(status_code=200)
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

        with patch.object(health_router, "get_redis", return_value=client):
            body = await health_router.health_ready(
                response=response, db=db, feed=self._feed(), s=self._settings("redis"),
            )

        assert body["sync_locks"] == "unavailable"
        assert response.status_code == 503
