"""Account balance refresh and the cash snapshot summary.

    chequing_total           – depository / checking current balances
    savings_total            – depository / savings current balances
    credit_cards_total_owed  – credit current balances, as positive amounts owed
    net_cash                 – chequing + savings − owed
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.security import Cipher, DecryptionError
from cash_snapshot.models.account import Account, LinkedItem
from cash_snapshot.services.plaid_client import FeedClient, FeedError

logger = logging.getLogger(__name__)


@dataclass
class AccountBalance:
    account_id: str
    name: str
    type: str
    subtype: str | None
    current: Decimal | None
    available: Decimal | None
    limit: Decimal | None = None
    currency: str | None = None
    mask: str | None = None


@dataclass
class CashSummary:
    chequing_total: Decimal
    savings_total: Decimal
    credit_cards_total_owed: Decimal
    net_cash: Decimal
    as_of: datetime
    breakdown: list[AccountBalance] = field(default_factory=list)


def account_balance(acc: Account) -> AccountBalance:
    return AccountBalance(
        account_id=acc.account_id,
        name=acc.name,
        type=acc.type,
        subtype=acc.subtype,
        current=acc.current_balance,
        available=acc.available_balance,
        limit=acc.limit_amount,
        currency=acc.currency_code,
        mask=acc.mask,
    )


def summarize_balances(accounts: list[AccountBalance], as_of: datetime | None = None) -> CashSummary:
    chequing = Decimal(0)
    savings = Decimal(0)
    owed = Decimal(0)

    for acc in accounts:
        bal = acc.current or Decimal(0)
        if acc.type == "depository":
            if acc.subtype == "checking":
                chequing += bal
            elif acc.subtype == "savings":
                savings += bal
        elif acc.type == "credit":
            owed += abs(bal)

    return CashSummary(
        chequing_total=chequing,
        savings_total=savings,
        credit_cards_total_owed=owed,
        net_cash=chequing + savings - owed,
        as_of=as_of or datetime.now(timezone.utc),
        breakdown=list(accounts),
    )


class BalanceService:
    def __init__(self, feed: FeedClient, cipher: Cipher):
        self.feed = feed
        self.cipher = cipher

    async def stored_balances(self, db: AsyncSession, user_id: uuid.UUID) -> list[AccountBalance]:
        result = await db.execute(
            select(Account).where(Account.user_id == user_id).order_by(Account.name, Account.account_id)
        )
        return [account_balance(a) for a in result.scalars().all()]

    async def refresh_balances(self, db: AsyncSession, user_id: uuid.UUID) -> list[AccountBalance]:
        """Pull live balances for every linked item and update known accounts.

        Accounts the feed reports but that are not stored locally are skipped;
        linking new accounts happens elsewhere. Commits once at the end.
        """
        items = (
            await db.execute(select(LinkedItem).where(LinkedItem.user_id == user_id))
        ).scalars().all()

        now = datetime.now(timezone.utc)
        for item in items:
            try:
                access_token = self.cipher.decrypt(item.encrypted_access_token)
                records = await self.feed.get_account_balances(access_token)
            except (FeedError, DecryptionError) as exc:
                logger.error("Balance refresh failed for item %s: %s", item.item_id, exc)
                continue

            for rec in records:
                acct = (
                    await db.execute(
                        select(Account).where(
                            Account.account_id == rec.account_id,
                            Account.user_id == user_id,
                        )
                    )
                ).scalar_one_or_none()
                if acct is None:
                    logger.warning(
                        "Balance reported for unknown account %s (item %s); skipping",
                        rec.account_id, item.item_id,
                    )
                    continue

                acct.name = rec.name or acct.name
                acct.official_name = rec.official_name
                acct.type = rec.type
                acct.subtype = rec.subtype
                acct.mask = rec.mask
                acct.current_balance = rec.current
                acct.available_balance = rec.available
                acct.limit_amount = rec.limit
                acct.currency_code = rec.currency or acct.currency_code
                acct.balances_updated_at = now

        await db.commit()
        return await self.stored_balances(db, user_id)

    async def summary(self, db: AsyncSession, user_id: uuid.UUID, refresh: bool = True) -> CashSummary:
        if refresh:
            balances = await self.refresh_balances(db, user_id)
        else:
            balances = await self.stored_balances(db, user_id)
        summary = summarize_balances(balances)
        logger.info(
            "Balance summary for user %s: %d accounts, net cash %s",
            user_id, len(balances), summary.net_cash,
        )
        return summary
