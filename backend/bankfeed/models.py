"""
Bank Feed Engine - Domain Models

Plain dataclasses passed between the sync coordinator, the reconciler and
the ledger store. Rows are mapped in with ``from_row`` (any mapping of
column name to value).
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from database.bankfeed_models import (
    SyncStatus,
    TransactionStatus,
    TransactionSource,
    SourceType,
    LedgerAccountType,
    CATEGORIZABLE_ACCOUNT_TYPES,
)


@dataclass
class Connection:
    """Linked aggregator item (access_token is the stored ciphertext)"""
    id: str
    item_id: str
    institution_name: str
    access_token: str
    institution_id: Optional[str] = None
    last_sync_cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    sync_status: str = SyncStatus.PENDING.value
    sync_error_message: Optional[str] = None
    needs_reauth: bool = False
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Connection":
        return cls(
            id=str(row["id"]),
            item_id=row["item_id"],
            institution_name=row["institution_name"],
            access_token=row["access_token"],
            institution_id=row.get("institution_id"),
            last_sync_cursor=row.get("last_sync_cursor"),
            last_sync_at=row.get("last_sync_at"),
            sync_status=row.get("sync_status") or SyncStatus.PENDING.value,
            sync_error_message=row.get("sync_error_message"),
            needs_reauth=bool(row.get("needs_reauth")),
            is_active=bool(row.get("is_active", True)),
            updated_at=row.get("updated_at"),
        )


@dataclass
class ExternalAccount:
    """Account under a connection, as the aggregator reports it"""
    id: str
    connection_id: str
    plaid_account_id: str
    account_name: str
    account_type: str
    official_name: Optional[str] = None
    account_subtype: Optional[str] = None
    mask: Optional[str] = None
    linked_account_id: Optional[str] = None
    current_balance: Optional[Decimal] = None
    available_balance: Optional[Decimal] = None
    currency_code: Optional[str] = None
    is_active: bool = True

    @property
    def source_type(self) -> SourceType:
        if (self.account_type or "").lower() == "credit":
            return SourceType.CREDIT_CARD
        return SourceType.BANK

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ExternalAccount":
        return cls(
            id=str(row["id"]),
            connection_id=str(row["connection_id"]),
            plaid_account_id=row["plaid_account_id"],
            account_name=row["account_name"],
            account_type=row["account_type"],
            official_name=row.get("official_name"),
            account_subtype=row.get("account_subtype"),
            mask=row.get("mask"),
            linked_account_id=row.get("linked_account_id"),
            current_balance=row.get("current_balance"),
            available_balance=row.get("available_balance"),
            currency_code=row.get("currency_code"),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class LedgerAccount:
    """Chart of accounts entry"""
    id: str
    code: str
    name: str
    type: str
    description: Optional[str] = None
    is_active: bool = True

    @property
    def is_categorizable(self) -> bool:
        return self.type in CATEGORIZABLE_ACCOUNT_TYPES

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LedgerAccount":
        return cls(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            type=row["type"],
            description=row.get("description"),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class LedgerTransaction:
    """
    Staged ledger transaction.

    ``amount`` is in ledger convention: negative is money leaving the account.
    """
    external_transaction_id: Optional[str]
    amount: Decimal
    transaction_date: date
    description: str
    id: Optional[str] = None
    source: str = TransactionSource.BANK_FEED.value
    source_type: str = SourceType.BANK.value
    source_name: Optional[str] = None
    source_account_id: Optional[str] = None
    external_account_id: Optional[str] = None
    post_date: Optional[date] = None
    merchant: Optional[str] = None
    original_category: Optional[str] = None
    transaction_type: Optional[str] = None
    suggested_account_id: Optional[str] = None
    suggested_category: Optional[str] = None
    suggested_memo: Optional[str] = None
    confidence_score: int = 0
    is_potential_duplicate: bool = False
    duplicate_of_id: Optional[str] = None
    status: str = TransactionStatus.PENDING.value

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LedgerTransaction":
        values = {name: row.get(name) for name in cls.__dataclass_fields__}
        values["id"] = str(row["id"]) if row.get("id") is not None else None
        values["confidence_score"] = values.get("confidence_score") or 0
        values["is_potential_duplicate"] = bool(values.get("is_potential_duplicate"))
        values["source"] = values.get("source") or TransactionSource.BANK_FEED.value
        values["source_type"] = values.get("source_type") or SourceType.BANK.value
        values["status"] = values.get("status") or TransactionStatus.PENDING.value
        return cls(**values)


@dataclass
class CategorizationRule:
    """User-taught rule; lower priority value is evaluated first"""
    id: str
    match_value: str
    match_field: str = "description"
    match_type: str = "contains"
    account_id: Optional[str] = None
    category: Optional[str] = None
    memo: Optional[str] = None
    priority: int = 100
    is_active: bool = True
    hit_count: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CategorizationRule":
        return cls(
            id=str(row["id"]),
            match_value=row.get("match_value") or "",
            match_field=row.get("match_field") or "description",
            match_type=row.get("match_type") or "contains",
            account_id=row.get("account_id"),
            category=row.get("category"),
            memo=row.get("memo"),
            priority=row.get("priority") if row.get("priority") is not None else 100,
            is_active=bool(row.get("is_active", True)),
            hit_count=row.get("hit_count") or 0,
        )


@dataclass
class TransactionSummary:
    """What the categorization strategies see of a transaction"""
    description: str
    amount: Decimal
    merchant: Optional[str] = None
    original_category: Optional[str] = None


@dataclass
class CategorizationResult:
    account_id: Optional[str]
    category: Optional[str]
    memo: Optional[str]
    confidence: int
    strategy: str = "default"
    rule_id: Optional[str] = None


@dataclass
class PageCounts:
    """Records actually changed while reconciling one page"""
    added: int = 0
    modified: int = 0
    removed: int = 0

    def __iadd__(self, other: "PageCounts") -> "PageCounts":
        self.added += other.added
        self.modified += other.modified
        self.removed += other.removed
        return self


@dataclass
class SyncResult:
    item_id: str
    success: bool
    added: int = 0
    modified: int = 0
    removed: int = 0
    next_cursor: Optional[str] = None
    error: Optional[str] = None
    needs_reauth: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BalanceUpdateResult:
    item_id: str
    account_count: int
    account_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"item_id": self.item_id, "account_count": self.account_count}


__all__ = [
    'SyncStatus',
    'TransactionStatus',
    'TransactionSource',
    'SourceType',
    'LedgerAccountType',
    'Connection',
    'ExternalAccount',
    'LedgerAccount',
    'LedgerTransaction',
    'CategorizationRule',
    'TransactionSummary',
    'CategorizationResult',
    'PageCounts',
    'SyncResult',
    'BalanceUpdateResult',
]
