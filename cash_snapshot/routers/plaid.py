import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import get_db
from cash_snapshot.core.deps import get_sync_orchestrator
from cash_snapshot.models.account import Account, LinkedItem
from cash_snapshot.schemas.account import LinkedItemResponse
from cash_snapshot.schemas.sync import (
    ItemSyncResult,
    SyncQueuedResponse,
    SyncRequest,
    SyncResponse,
)
from cash_snapshot.services.sync import (
    ItemNotFoundError,
    ItemSyncOutcome,
    NoLinkedItemsError,
    SyncOrchestrator,
    SyncRunResult,
    sync_user_task,
)

router = APIRouter(prefix="/plaid", tags=["plaid"])


# ─── Helpers ───────────────────────────────────────────────────────────────

def _item_result(o: ItemSyncOutcome) -> ItemSyncResult:
    return ItemSyncResult(
        item_id=o.item_id,
        external_item_id=o.external_item_id,
        state=o.state.value,
        pages=o.pages,
        added=o.added,
        modified=o.modified,
        removed=o.removed,
        transactions_synced=o.transactions_synced,
        cursor=o.cursor,
        error=o.error,
        error_code=o.error_code,
    )


def _run_response(run: SyncRunResult) -> SyncResponse:
    return SyncResponse(
        user_id=run.user_id,
        full_sync=run.full_sync,
        total_transactions_synced=run.total_transactions_synced,
        items_synced=len(run.items),
        sync_results=[_item_result(o) for o in run.items],
    )


# ─── Endpoints ─────────────────────────────────────────────────────────────

@router.get("/items", response_model=list[LinkedItemResponse])
async def list_items(
    user_id: uuid.UUID = Query(...),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(LinkedItem, func.count(Account.id))
        .outerjoin(Account, Account.item_id == LinkedItem.id)
        .where(LinkedItem.user_id == user_id)
        .group_by(LinkedItem.id)
        .order_by(LinkedItem.created_at)
    )
    return [
        LinkedItemResponse(
            id=item.id,
            item_id=item.item_id,
            institution_name=item.institution_name,
            last_synced_at=item.last_synced_at,
            error_code=item.error_code,
            account_count=count,
        )
        for item, count in result.all()
    ]


@router.post("/sync", response_model=SyncResponse | SyncQueuedResponse)
async def sync_transactions(
    payload: SyncRequest,
    background: bool = Query(False),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """
    Sync every linked item of a user. Item-level failures are reported in
    ``sync_results``; the request itself only fails when there is nothing to sync.
    """
    if background:
        task = sync_user_task.delay(str(payload.user_id), payload.full_sync)
        return SyncQueuedResponse(task_id=task.id, user_id=payload.user_id)

    try:
        run = await orchestrator.sync_user(payload.user_id, full_sync=payload.full_sync)
    except NoLinkedItemsError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _run_response(run)


@router.post("/items/{item_id}/sync", response_model=ItemSyncResult)
async def sync_item(
    item_id: uuid.UUID,
    user_id: uuid.UUID = Query(...),
    full_sync: bool = Query(False),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    try:
        outcome = await orchestrator.sync_item_by_id(item_id, user_id, full_sync=full_sync)
    except ItemNotFoundError:
        raise HTTPException(status_code=404, detail="Institution not found")
    return _item_result(outcome)
