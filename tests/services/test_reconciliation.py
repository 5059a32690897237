"""
Reconciliation store against a real (SQLite) database: upserts keyed by the
external transaction id, idempotent removals, cursor writes.
"""
from decimal import Decimal

from sqlalchemy import func, select

from cash_snapshot.models.account import LinkedItem, Transaction
from cash_snapshot.services.reconciliation import ReconciliationStore


async def _rows(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(Transaction).order_by(Transaction.transaction_id))).scalars().all()


class TestUpsertBatch:
    async def test_insert_then_update_keeps_one_row(self, session_factory, seeded, make_record):
        async with session_factory() as db, db.begin():
            store = ReconciliationStore(db)
            assert await store.upsert_batch(seeded.user_id, seeded.item.id, [make_record("t1")]) == 1

        rows = await _rows(session_factory)
        first_id, first_created = rows[0].id, rows[0].created_at

        updated = make_record("t1", amount="17.49", name="Netflix Premium", pending=True)
        async with session_factory() as db, db.begin():
            await ReconciliationStore(db).upsert_batch(seeded.user_id, seeded.item.id, [updated])

        rows = await _rows(session_factory)
        assert len(rows) == 1
        assert rows[0].amount == Decimal("17.49")
        assert rows[0].name == "Netflix Premium"
        assert rows[0].pending is True
        assert rows[0].updated_at is not None
        # Identity and creation time never change
        assert rows[0].id == first_id
        assert rows[0].created_at == first_created

    async def test_same_record_twice_in_one_batch(self, session_factory, seeded, make_record):
        async with session_factory() as db, db.begin():
            count = await ReconciliationStore(db).upsert_batch(
                seeded.user_id, seeded.item.id,
                [make_record("t1", amount="10.00"), make_record("t1", amount="11.00")],
            )
        assert count == 2
        rows = await _rows(session_factory)
        assert len(rows) == 1
        assert rows[0].amount == Decimal("11.00")

    async def test_unknown_account_is_skipped(self, session_factory, seeded, make_record, caplog):
        records = [make_record("t1"), make_record("t2", account_id="acc-not-linked-yet")]
        async with session_factory() as db, db.begin():
            count = await ReconciliationStore(db).upsert_batch(seeded.user_id, seeded.item.id, records)

        assert count == 1
        assert [r.transaction_id for r in await _rows(session_factory)] == ["t1"]
        assert "acc-not-linked-yet" in caplog.text

    async def test_account_of_other_user_not_resolved(self, session_factory, seeded, make_record, new_user_id):
        async with session_factory() as db, db.begin():
            count = await ReconciliationStore(db).upsert_batch(new_user_id, seeded.item.id, [make_record("t1")])
        assert count == 0


class TestRemoveBatch:
    async def test_remove_existing_and_absent(self, session_factory, seeded, make_record):
        async with session_factory() as db, db.begin():
            await ReconciliationStore(db).upsert_batch(
                seeded.user_id, seeded.item.id, [make_record("t1"), make_record("t2")]
            )

        async with session_factory() as db, db.begin():
            removed = await ReconciliationStore(db).remove_batch(["t1", "never-existed"])
        assert removed == 1
        assert [r.transaction_id for r in await _rows(session_factory)] == ["t2"]

    async def test_removing_absent_id_is_noop(self, session_factory, seeded):
        async with session_factory() as db, db.begin():
            assert await ReconciliationStore(db).remove_batch(["ghost"]) == 0
            assert await ReconciliationStore(db).remove_batch([]) == 0
        async with session_factory() as db:
            assert (await db.execute(select(func.count(Transaction.id)))).scalar_one() == 0


class TestCursor:
    async def test_advance_cursor_clears_error(self, session_factory, seeded):
        async with session_factory() as db, db.begin():
            store = ReconciliationStore(db)
            await store.record_item_error(seeded.item.id, "ITEM_LOGIN_REQUIRED")
            await store.advance_cursor(seeded.item.id, "cursor-2")

        async with session_factory() as db:
            item = (await db.execute(select(LinkedItem).where(LinkedItem.id == seeded.item.id))).scalar_one()
        assert item.cursor == "cursor-2"
        assert item.error_code is None
        assert item.last_synced_at is not None

    async def test_rollback_discards_cursor_and_rows(self, session_factory, seeded, make_record):
        async with session_factory() as db:
            store = ReconciliationStore(db)
            await store.upsert_batch(seeded.user_id, seeded.item.id, [make_record("t1")])
            await store.advance_cursor(seeded.item.id, "cursor-9")
            await db.rollback()

        async with session_factory() as db:
            item = (await db.execute(select(LinkedItem).where(LinkedItem.id == seeded.item.id))).scalar_one()
        assert item.cursor is None
        assert await _rows(session_factory) == []
