"""
Plaid response schemas.

Only the fields the sync engine reads are declared; everything else the
aggregator sends is ignored.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PlaidSchema(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PersonalFinanceCategory(PlaidSchema):
    primary: Optional[str] = None
    detailed: Optional[str] = None


class PlaidTransaction(PlaidSchema):
    """
    A transaction delta as delivered by /transactions/sync.

    ``amount`` follows the aggregator convention: positive is money leaving
    the account.
    """
    transaction_id: str
    account_id: str
    amount: Decimal
    transaction_date: date = Field(..., alias="date")
    authorized_date: Optional[date] = None
    name: Optional[str] = None
    merchant_name: Optional[str] = None
    category: Optional[List[str]] = None
    personal_finance_category: Optional[PersonalFinanceCategory] = None
    payment_channel: Optional[str] = None
    pending: bool = False
    iso_currency_code: Optional[str] = None

    @property
    def description(self) -> str:
        return self.name or self.merchant_name or "Unknown Transaction"

    @property
    def category_label(self) -> Optional[str]:
        """Aggregator category: enriched primary category, else the legacy hierarchy head"""
        if self.personal_finance_category and self.personal_finance_category.primary:
            return self.personal_finance_category.primary
        if self.category:
            return self.category[0]
        return None

    @property
    def post_date(self) -> date:
        return self.authorized_date or self.transaction_date


class RemovedTransaction(PlaidSchema):
    transaction_id: str
    account_id: Optional[str] = None


class TransactionsSyncPage(PlaidSchema):
    """One page of /transactions/sync"""
    added: List[PlaidTransaction] = Field(default_factory=list)
    modified: List[PlaidTransaction] = Field(default_factory=list)
    removed: List[RemovedTransaction] = Field(default_factory=list)
    next_cursor: str
    has_more: bool = False
    request_id: Optional[str] = None


class PlaidBalance(PlaidSchema):
    available: Optional[Decimal] = None
    current: Optional[Decimal] = None
    limit: Optional[Decimal] = None
    iso_currency_code: Optional[str] = None


class PlaidAccount(PlaidSchema):
    account_id: str
    name: str
    official_name: Optional[str] = None
    type: str
    subtype: Optional[str] = None
    mask: Optional[str] = None
    balances: PlaidBalance = Field(default_factory=PlaidBalance)


class AccountsResponse(PlaidSchema):
    accounts: List[PlaidAccount] = Field(default_factory=list)
    item: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None


class PlaidItemError(PlaidSchema):
    error_type: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    display_message: Optional[str] = None


class PlaidItem(PlaidSchema):
    item_id: str
    institution_id: Optional[str] = None
    error: Optional[PlaidItemError] = None


class ItemResponse(PlaidSchema):
    item: PlaidItem
    request_id: Optional[str] = None


class PlaidErrorBody(PlaidItemError):
    """Body of a non-2xx Plaid response"""
    request_id: Optional[str] = None
