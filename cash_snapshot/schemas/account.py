import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class AccountBalanceResponse(BaseModel):
    account_id: str
    name: str
    type: str
    subtype: str | None
    mask: str | None
    current: Decimal | None
    available: Decimal | None
    limit: Decimal | None
    currency: str | None

    model_config = {"from_attributes": True}


class BalanceSummaryResponse(BaseModel):
    user_id: uuid.UUID
    chequing_total: Decimal
    savings_total: Decimal
    credit_cards_total_owed: Decimal
    net_cash: Decimal
    as_of: datetime
    account_breakdown: list[AccountBalanceResponse]


class LinkedItemResponse(BaseModel):
    id: uuid.UUID
    item_id: str
    institution_name: str | None
    last_synced_at: datetime | None
    error_code: str | None
    account_count: int = 0
