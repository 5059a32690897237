"""
Reconciliation store — applies one sync page's effects to the local mirror.

Every method runs inside the caller's transaction; the store never commits.
The orchestrator opens one transaction per page so upserts, removals and the
cursor advance land together or not at all.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import dialect_insert
from cash_snapshot.models.account import Account, LinkedItem, Transaction
from cash_snapshot.services.plaid_client import TransactionRecord

logger = logging.getLogger(__name__)

# Overwritten on conflict; id, transaction_id, user_id and created_at never change
MUTABLE_COLUMNS = (
    "account_id",
    "amount",
    "iso_currency_code",
    "unofficial_currency_code",
    "date",
    "authorized_date",
    "name",
    "merchant_name",
    "category",
    "account_owner",
    "pending",
    "transaction_type",
    "updated_at",
)


class ReconciliationStore:
    def __init__(self, session: AsyncSession):
        self.session = session
        # external account id → local account id, per user
        self._accounts: dict[tuple[str, uuid.UUID], uuid.UUID | None] = {}

    async def resolve_account(self, external_account_id: str, user_id: uuid.UUID) -> uuid.UUID | None:
        key = (external_account_id, user_id)
        if key not in self._accounts:
            result = await self.session.execute(
                select(Account.id).where(
                    Account.account_id == external_account_id,
                    Account.user_id == user_id,
                )
            )
            self._accounts[key] = result.scalar_one_or_none()
        return self._accounts[key]

    async def upsert_batch(
        self,
        user_id: uuid.UUID,
        item_id: uuid.UUID,
        records: Iterable[TransactionRecord],
    ) -> int:
        """Insert-or-update by external transaction id. Returns rows written."""
        now = datetime.now(timezone.utc)
        upserted = 0

        for rec in records:
            account_uuid = await self.resolve_account(rec.account_id, user_id)
            if account_uuid is None:
                logger.warning(
                    "Account not found for transaction; skipping "
                    "(transaction_id=%s account_id=%s user_id=%s item=%s)",
                    rec.transaction_id, rec.account_id, user_id, item_id,
                )
                continue

            values = {
                "id": uuid.uuid4(),
                "user_id": user_id,
                "transaction_id": rec.transaction_id,
                "account_id": account_uuid,
                "amount": rec.amount,
                "iso_currency_code": rec.iso_currency_code,
                "unofficial_currency_code": rec.unofficial_currency_code,
                "date": rec.date,
                "authorized_date": rec.authorized_date,
                "name": rec.name,
                "merchant_name": rec.merchant_name,
                "category": rec.category,
                "account_owner": rec.account_owner,
                "pending": rec.pending,
                "transaction_type": rec.transaction_type,
                "created_at": now,
                "updated_at": now,
            }
            stmt = dialect_insert(self.session, Transaction).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Transaction.transaction_id],
                set_={col: stmt.excluded[col] for col in MUTABLE_COLUMNS},
            )
            await self.session.execute(stmt)
            upserted += 1

        return upserted

    async def remove_batch(self, transaction_ids: Iterable[str]) -> int:
        """Delete by external id. Ids that are already gone are ignored."""
        ids = [t for t in transaction_ids if t]
        if not ids:
            return 0
        result = await self.session.execute(
            delete(Transaction).where(Transaction.transaction_id.in_(ids))
        )
        return result.rowcount or 0

    async def advance_cursor(self, item_id: uuid.UUID, cursor: str | None) -> None:
        # Unconditional: only the lock holder for this item writes its cursor
        await self.session.execute(
            update(LinkedItem)
            .where(LinkedItem.id == item_id)
            .values(cursor=cursor, error_code=None, last_synced_at=datetime.now(timezone.utc))
        )

    async def record_item_error(self, item_id: uuid.UUID, error_code: str) -> None:
        await self.session.execute(
            update(LinkedItem).where(LinkedItem.id == item_id).values(error_code=error_code[:100])
        )
