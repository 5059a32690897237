import uuid

from pydantic import BaseModel


class SyncRequest(BaseModel):
    user_id: uuid.UUID
    full_sync: bool = False


class ItemSyncResult(BaseModel):
    item_id: uuid.UUID
    external_item_id: str
    state: str                      # done | failed
    pages: int
    added: int
    modified: int
    removed: int
    transactions_synced: int
    cursor: str | None
    error: str | None
    error_code: str | None

    model_config = {"from_attributes": True}


class SyncResponse(BaseModel):
    user_id: uuid.UUID
    full_sync: bool
    total_transactions_synced: int
    items_synced: int
    sync_results: list[ItemSyncResult]


class SyncQueuedResponse(BaseModel):
    status: str = "queued"
    task_id: str
    user_id: uuid.UUID
