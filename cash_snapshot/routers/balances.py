import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import get_db
from cash_snapshot.core.deps import get_balance_service
from cash_snapshot.schemas.account import AccountBalanceResponse, BalanceSummaryResponse
from cash_snapshot.services.balances import AccountBalance, BalanceService

router = APIRouter(prefix="/balances", tags=["balances"])


def _balance_response(b: AccountBalance) -> AccountBalanceResponse:
    return AccountBalanceResponse(
        account_id=b.account_id,
        name=b.name,
        type=b.type,
        subtype=b.subtype,
        mask=b.mask,
        current=b.current,
        available=b.available,
        limit=b.limit,
        currency=b.currency,
    )


@router.get("/summary", response_model=BalanceSummaryResponse)
async def balance_summary(
    user_id: uuid.UUID = Query(...),
    refresh: bool = Query(True, description="Pull live balances from Plaid first"),
    db: AsyncSession = Depends(get_db),
    service: BalanceService = Depends(get_balance_service),
):
    summary = await service.summary(db, user_id, refresh=refresh)
    return BalanceSummaryResponse(
        user_id=user_id,
        chequing_total=summary.chequing_total,
        savings_total=summary.savings_total,
        credit_cards_total_owed=summary.credit_cards_total_owed,
        net_cash=summary.net_cash,
        as_of=summary.as_of,
        account_breakdown=[_balance_response(b) for b in summary.breakdown],
    )


@router.get("/accounts", response_model=list[AccountBalanceResponse])
async def account_balances(
    user_id: uuid.UUID = Query(...),
    refresh: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    service: BalanceService = Depends(get_balance_service),
):
    if refresh:
        balances = await service.refresh_balances(db, user_id)
    else:
        balances = await service.stored_balances(db, user_id)
    return [_balance_response(b) for b in balances]
