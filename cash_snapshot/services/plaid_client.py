"""
Plaid feed client — balances, /transactions/sync pages and recurring streams.

The plaid-python SDK is synchronous, so every call runs in a worker thread.
Plaid API failures are translated into the FeedError hierarchy here so the
sync orchestrator can decide between retrying and giving up without knowing
anything about Plaid error codes.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

import plaid
from plaid.api import plaid_api
from plaid.exceptions import ApiException
from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest
from plaid.model.transactions_recurring_get_request import TransactionsRecurringGetRequest
from plaid.model.transactions_sync_request import TransactionsSyncRequest

from cash_snapshot.core.config import Settings

logger = logging.getLogger(__name__)


# ─── Errors ───────────────────────────────────────────────────────────────────

class FeedError(Exception):
    """A feed call failed and retrying it will not help."""

    def __init__(self, message: str, error_code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.status = status


class TransientFeedError(FeedError):
    """Timeout, rate limit or upstream outage — worth retrying."""


class CredentialError(FeedError):
    """The item's access credential is revoked, expired or unreadable."""


class PlaidNotConfigured(FeedError):
    """Client id or secret missing; no request can be made."""


TRANSIENT_ERROR_CODES = frozenset({
    "RATE_LIMIT_EXCEEDED",
    "INTERNAL_SERVER_ERROR",
    "PLANNED_MAINTENANCE",
    "INSTITUTION_DOWN",
    "INSTITUTION_NOT_RESPONDING",
    "INSTITUTION_NOT_AVAILABLE",
    "PRODUCT_NOT_READY",
    "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION",
})

CREDENTIAL_ERROR_CODES = frozenset({
    "ITEM_LOGIN_REQUIRED",
    "INVALID_ACCESS_TOKEN",
    "ACCESS_NOT_GRANTED",
    "ITEM_NOT_FOUND",
    "PENDING_EXPIRATION",
    "USER_PERMISSION_REVOKED",
})

# Recurring streams are not offered for every institution
RECURRING_UNAVAILABLE_CODES = frozenset({
    "PRODUCTS_NOT_SUPPORTED",
    "PRODUCT_NOT_ENABLED",
    "INVALID_PRODUCT",
    "ADDITIONAL_CONSENT_REQUIRED",
    "NO_ACCOUNTS",
})


def _error_body(exc: ApiException) -> dict:
    try:
        return json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        return {}


def classify_plaid_error(exc: ApiException) -> FeedError:
    body = _error_body(exc)
    code = body.get("error_code")
    message = body.get("error_message") or str(exc.reason or exc)
    status = exc.status

    if code in CREDENTIAL_ERROR_CODES:
        return CredentialError(message, code, status)
    if code in TRANSIENT_ERROR_CODES or status == 429 or (status is not None and status >= 500):
        return TransientFeedError(message, code, status)
    return FeedError(message, code, status)


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass
class TransactionRecord:
    transaction_id: str
    account_id: str                 # external (Plaid) account id
    amount: Decimal                 # positive = money out of the account
    date: date
    name: str
    iso_currency_code: str | None = None
    unofficial_currency_code: str | None = None
    authorized_date: date | None = None
    merchant_name: str | None = None
    category: list[str] | None = None
    pending: bool = False
    transaction_type: str | None = None
    account_owner: str | None = None


@dataclass
class SyncPage:
    added: list[TransactionRecord]
    modified: list[TransactionRecord]
    removed: list[str]              # external transaction ids
    next_cursor: str
    has_more: bool


@dataclass
class AccountBalanceRecord:
    account_id: str
    name: str
    type: str
    subtype: str | None = None
    official_name: str | None = None
    mask: str | None = None
    available: Decimal | None = None
    current: Decimal | None = None
    limit: Decimal | None = None
    currency: str | None = None


@dataclass
class ExternalStreamRecord:
    stream_id: str
    description: str
    average_amount: Decimal         # magnitude as reported
    stream_type: str                # inflow | outflow
    merchant_name: str | None = None
    category: list[str] | None = None
    currency: str | None = None
    first_date: date | None = None
    last_date: date | None = None
    frequency: str | None = None
    status: str | None = None
    transaction_ids: list[str] = field(default_factory=list)


@dataclass
class RecurringStreamsResult:
    inflow_streams: list[ExternalStreamRecord] = field(default_factory=list)
    outflow_streams: list[ExternalStreamRecord] = field(default_factory=list)


class FeedClient(Protocol):
    async def get_account_balances(self, access_token: str) -> list[AccountBalanceRecord]: ...

    async def sync_transactions(
        self, access_token: str, cursor: str | None, count: int
    ) -> SyncPage: ...

    async def get_recurring_streams(self, access_token: str) -> RecurringStreamsResult: ...


# ─── Plaid model → record mapping ─────────────────────────────────────────────

def _attr(obj: Any, name: str) -> Any:
    """Read an optional attribute from a Plaid model (or a plain dict)."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _enum_str(value: Any) -> str | None:
    if value is None:
        return None
    return value.value if hasattr(value, "value") else str(value)


def _as_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _as_decimal(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def to_transaction_record(pt: Any) -> TransactionRecord:
    category = _attr(pt, "category")
    return TransactionRecord(
        transaction_id=_attr(pt, "transaction_id"),
        account_id=_attr(pt, "account_id"),
        amount=Decimal(str(_attr(pt, "amount"))),
        date=_as_date(_attr(pt, "date")),
        name=_attr(pt, "name") or "",
        iso_currency_code=_attr(pt, "iso_currency_code"),
        unofficial_currency_code=_attr(pt, "unofficial_currency_code"),
        authorized_date=_as_date(_attr(pt, "authorized_date")),
        merchant_name=_attr(pt, "merchant_name"),
        category=list(category) if category else None,
        pending=bool(_attr(pt, "pending")),
        transaction_type=_enum_str(_attr(pt, "transaction_type")),
        account_owner=_attr(pt, "account_owner"),
    )


def to_sync_page(resp: Any) -> SyncPage:
    return SyncPage(
        added=[to_transaction_record(t) for t in (_attr(resp, "added") or [])],
        modified=[to_transaction_record(t) for t in (_attr(resp, "modified") or [])],
        removed=[_attr(r, "transaction_id") for r in (_attr(resp, "removed") or [])],
        next_cursor=_attr(resp, "next_cursor"),
        has_more=bool(_attr(resp, "has_more")),
    )


def to_balance_record(pa: Any) -> AccountBalanceRecord:
    balances = _attr(pa, "balances") or {}
    return AccountBalanceRecord(
        account_id=_attr(pa, "account_id"),
        name=_attr(pa, "name") or "",
        type=_enum_str(_attr(pa, "type")) or "other",
        subtype=_enum_str(_attr(pa, "subtype")),
        official_name=_attr(pa, "official_name"),
        mask=_attr(pa, "mask"),
        available=_as_decimal(_attr(balances, "available")),
        current=_as_decimal(_attr(balances, "current")),
        limit=_as_decimal(_attr(balances, "limit")),
        currency=_attr(balances, "iso_currency_code") or _attr(balances, "unofficial_currency_code"),
    )


def to_stream_record(stream: Any, stream_type: str) -> ExternalStreamRecord:
    avg = _attr(stream, "average_amount") or {}
    category = _attr(stream, "category")
    return ExternalStreamRecord(
        stream_id=_attr(stream, "stream_id"),
        description=_attr(stream, "description") or _attr(stream, "merchant_name") or "",
        average_amount=abs(Decimal(str(_attr(avg, "amount") or 0))),
        stream_type=stream_type,
        merchant_name=_attr(stream, "merchant_name"),
        category=list(category) if category else None,
        currency=_attr(avg, "iso_currency_code") or _attr(avg, "unofficial_currency_code"),
        first_date=_as_date(_attr(stream, "first_date")),
        last_date=_as_date(_attr(stream, "last_date")),
        frequency=_enum_str(_attr(stream, "frequency")),
        status=_enum_str(_attr(stream, "status")),
        transaction_ids=list(_attr(stream, "transaction_ids") or []),
    )


# ─── Plaid implementation ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlaidConfig:
    client_id: str
    secret: str
    env: str = "sandbox"

    @classmethod
    def from_settings(cls, s: Settings) -> "PlaidConfig":
        return cls(client_id=s.plaid_client_id, secret=s.plaid_secret, env=s.plaid_env)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.secret)


class PlaidFeedClient:
    def __init__(self, config: PlaidConfig, api: plaid_api.PlaidApi | None = None):
        self.config = config
        self._api = api

    @property
    def api(self) -> plaid_api.PlaidApi:
        if self._api is None:
            if not self.config.configured:
                raise PlaidNotConfigured("Plaid client id / secret are not set", "NOT_CONFIGURED")
            configuration = plaid.Configuration(
                host=getattr(plaid.Environment, self.config.env.capitalize()),
                api_key={
                    "clientId": self.config.client_id,
                    "secret": self.config.secret,
                },
            )
            self._api = plaid_api.PlaidApi(plaid.ApiClient(configuration))
        return self._api

    async def _call(self, method, request):
        try:
            return await asyncio.to_thread(method, request)
        except ApiException as exc:
            raise classify_plaid_error(exc) from exc

    async def get_account_balances(self, access_token: str) -> list[AccountBalanceRecord]:
        resp = await self._call(
            self.api.accounts_balance_get, AccountsBalanceGetRequest(access_token=access_token)
        )
        return [to_balance_record(a) for a in resp.accounts]

    async def sync_transactions(self, access_token: str, cursor: str | None, count: int) -> SyncPage:
        if cursor:
            req = TransactionsSyncRequest(access_token=access_token, cursor=cursor, count=count)
        else:
            req = TransactionsSyncRequest(access_token=access_token, count=count)

        page = to_sync_page(await self._call(self.api.transactions_sync, req))
        logger.info(
            "Fetched sync page: added=%d modified=%d removed=%d has_more=%s",
            len(page.added), len(page.modified), len(page.removed), page.has_more,
        )
        return page

    async def get_recurring_streams(self, access_token: str) -> RecurringStreamsResult:
        try:
            resp = await self._call(
                self.api.transactions_recurring_get,
                TransactionsRecurringGetRequest(access_token=access_token),
            )
        except FeedError as exc:
            if exc.error_code in RECURRING_UNAVAILABLE_CODES:
                logger.warning("Recurring streams not available for item: %s", exc.error_code)
                return RecurringStreamsResult()
            raise

        return RecurringStreamsResult(
            inflow_streams=[to_stream_record(s, "inflow") for s in (resp.inflow_streams or [])],
            outflow_streams=[to_stream_record(s, "outflow") for s in (resp.outflow_streams or [])],
        )
