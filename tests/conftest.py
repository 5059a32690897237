"""
Shared fixtures: a throwaway SQLite database per test, seeded with one user,
one linked item and three accounts (checking, savings, credit card).

Run with:
    pip install -e ".[test]" && python -m pytest -v
"""
import os

from cryptography.fernet import Fernet

# Settings are read at import time; point them at test-safe values first.
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")

import uuid
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from cash_snapshot.core.database import Base, make_session_factory
from cash_snapshot.core.security import Cipher
from cash_snapshot.models.account import Account, LinkedItem
from cash_snapshot.models import recurring as _recurring_models  # noqa: F401  (registers table)
from cash_snapshot.models.user import User
from cash_snapshot.services.plaid_client import TransactionRecord

ACCESS_TOKEN = "access-sandbox-0001"


@pytest.fixture
def cipher() -> Cipher:
    return Cipher(Fernet.generate_key())


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


async def add_item(session_factory, cipher, user_id, item_id, token, accounts=()):
    async with session_factory() as db:
        item = LinkedItem(
            user_id=user_id,
            item_id=item_id,
            encrypted_access_token=cipher.encrypt(token),
            institution_name="Sandbox Bank",
        )
        db.add(item)
        await db.flush()
        for account_id, type_, subtype, balance in accounts:
            db.add(Account(
                item_id=item.id,
                user_id=user_id,
                account_id=account_id,
                name=account_id.replace("-", " ").title(),
                type=type_,
                subtype=subtype,
                current_balance=balance,
                currency_code="USD",
            ))
        await db.commit()
        item_pk = item.id

    # Reload so every column (server defaults included) is populated
    async with session_factory() as db:
        return (await db.execute(select(LinkedItem).where(LinkedItem.id == item_pk))).scalar_one()


@pytest.fixture
async def seeded(session_factory, cipher):
    async with session_factory() as db:
        user = User(email="owner@example.com")
        db.add(user)
        await db.commit()
        user_id = user.id

    item = await add_item(
        session_factory, cipher, user_id, "item-1", ACCESS_TOKEN,
        accounts=[
            ("acc-checking", "depository", "checking", Decimal("2500.00")),
            ("acc-savings", "depository", "savings", Decimal("10000.00")),
            ("acc-credit", "credit", "credit card", Decimal("850.25")),
        ],
    )
    return SimpleNamespace(user_id=user_id, item=item)


@pytest.fixture
def make_record():
    def _make(
        transaction_id: str,
        amount: str = "15.99",
        on: date = date(2026, 1, 15),
        name: str = "Netflix",
        account_id: str = "acc-checking",
        merchant_name: str | None = None,
        pending: bool = False,
    ) -> TransactionRecord:
        return TransactionRecord(
            transaction_id=transaction_id,
            account_id=account_id,
            amount=Decimal(amount),
            date=on,
            name=name,
            iso_currency_code="USD",
            merchant_name=merchant_name,
            category=["Service", "Subscription"],
            pending=pending,
            transaction_type="digital",
        )
    return _make


@pytest.fixture
def new_user_id():
    return uuid.uuid4()
