"""
Shared fixtures for the bank feed engine tests.

In-memory stand-ins for the ledger store, the Plaid client and the
classifier so the sync flow can be exercised without a database or
network.
"""

import os
import sys
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bankfeed.errors import PersistenceFailure
from bankfeed.models import (
    Connection,
    ExternalAccount,
    LedgerAccount,
    LedgerTransaction,
    CategorizationRule,
    SyncStatus,
    TransactionStatus,
)
from bankfeed.aggregator.schemas import (
    PlaidTransaction,
    TransactionsSyncPage,
    AccountsResponse,
    ItemResponse,
)
from bankfeed.categorization.classifier import ClassifierReply


# ==================== BUILDERS ====================

def make_plaid_txn(
    transaction_id: str,
    amount: str = "25.00",
    account_id: str = "plaid-acc-1",
    date: str = "2024-01-15",
    name: Optional[str] = "Coffee Shop",
    merchant_name: Optional[str] = None,
    **extra,
) -> PlaidTransaction:
    data = {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "date": date,
        "name": name,
        "merchant_name": merchant_name,
    }
    data.update(extra)
    return PlaidTransaction.model_validate(data)


def make_page(
    added: Optional[List[PlaidTransaction]] = None,
    modified: Optional[List[PlaidTransaction]] = None,
    removed: Optional[List[str]] = None,
    next_cursor: str = "cursor-1",
    has_more: bool = False,
) -> TransactionsSyncPage:
    return TransactionsSyncPage(
        added=added or [],
        modified=modified or [],
        removed=[{"transaction_id": t} for t in (removed or [])],
        next_cursor=next_cursor,
        has_more=has_more,
    )


# ==================== FAKE LEDGER STORE ====================

class FakeLedgerStore:
    """In-memory ledger with the same coroutine surface as LedgerStore."""

    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self.external_accounts: List[ExternalAccount] = []
        self.ledger_accounts: List[LedgerAccount] = []
        self.rules: List[CategorizationRule] = []
        self.transactions: Dict[str, LedgerTransaction] = {}
        self.rule_hits: Counter = Counter()
        self.checkpoints: List[str] = []
        self.balances: Dict[str, Dict[str, Any]] = {}

        self.fail_insert_for: set = set()
        self.fail_rule_load = False
        self.fail_duplicate_lookup = False
        self.fail_rule_hit = False

    # Connections

    def add_connection(self, **kwargs) -> Connection:
        defaults = {
            "id": str(uuid.uuid4()),
            "item_id": "item-1",
            "institution_name": "First Bank",
            "access_token": "encrypted-token",
        }
        defaults.update(kwargs)
        connection = Connection(**defaults)
        self.connections[connection.item_id] = connection
        return connection

    def _by_id(self, connection_id: str) -> Connection:
        for connection in self.connections.values():
            if connection.id == connection_id:
                return connection
        raise KeyError(connection_id)

    async def get_connection(self, item_id):
        return self.connections.get(item_id)

    async def list_active_connections(self):
        return [c for c in self.connections.values() if c.is_active]

    async def claim_sync(self, connection_id, stale_before):
        connection = self._by_id(connection_id)
        if (
            connection.sync_status == SyncStatus.SYNCING.value
            and connection.updated_at is not None
            and connection.updated_at >= stale_before
        ):
            return False
        connection.sync_status = SyncStatus.SYNCING.value
        connection.sync_error_message = None
        connection.updated_at = datetime.now(timezone.utc)
        return True

    async def checkpoint_cursor(self, connection_id, cursor):
        connection = self._by_id(connection_id)
        connection.last_sync_cursor = cursor
        connection.updated_at = datetime.now(timezone.utc)
        self.checkpoints.append(cursor)

    async def mark_sync_success(self, connection_id, cursor):
        connection = self._by_id(connection_id)
        connection.last_sync_cursor = cursor
        connection.sync_status = SyncStatus.SUCCESS.value
        connection.sync_error_message = None
        connection.needs_reauth = False
        connection.last_sync_at = datetime.now(timezone.utc)

    async def mark_sync_error(self, connection_id, message, needs_reauth=False):
        connection = self._by_id(connection_id)
        connection.sync_status = SyncStatus.ERROR.value
        connection.sync_error_message = message
        connection.needs_reauth = connection.needs_reauth or needs_reauth

    async def set_needs_reauth(self, connection_id, needs_reauth):
        self._by_id(connection_id).needs_reauth = needs_reauth

    # Accounts

    async def list_external_accounts(self, connection_id):
        return [a for a in self.external_accounts if a.connection_id == connection_id and a.is_active]

    async def update_account_balances(self, connection_id, plaid_account_id, current_balance, available_balance):
        for account in self.external_accounts:
            if account.connection_id == connection_id and account.plaid_account_id == plaid_account_id:
                account.current_balance = current_balance
                account.available_balance = available_balance
                return True
        return False

    async def list_ledger_accounts(self):
        return list(self.ledger_accounts)

    async def create_ledger_account(self, account):
        self.ledger_accounts.append(account)
        return account

    # Rules

    async def list_active_rules(self):
        if self.fail_rule_load:
            raise RuntimeError("rules table unavailable")
        return sorted((r for r in self.rules if r.is_active), key=lambda r: r.priority)

    async def increment_rule_hit(self, rule_id):
        if self.fail_rule_hit:
            raise RuntimeError("rule hit update failed")
        self.rule_hits[rule_id] += 1

    # Transactions

    def add_transaction(self, **kwargs) -> LedgerTransaction:
        defaults = {
            "id": str(uuid.uuid4()),
            "external_transaction_id": None,
            "amount": Decimal("-25.00"),
            "transaction_date": datetime(2024, 1, 15).date(),
            "description": "Coffee Shop",
        }
        defaults.update(kwargs)
        txn = LedgerTransaction(**defaults)
        self.transactions[txn.id] = txn
        return txn

    def by_external_id(self, external_transaction_id) -> Optional[LedgerTransaction]:
        for txn in self.transactions.values():
            if txn.external_transaction_id == external_transaction_id:
                return txn
        return None

    async def get_transaction_by_external_id(self, external_transaction_id):
        return self.by_external_id(external_transaction_id)

    async def find_duplicate_candidates(self, transaction_date, amount, external_account_id):
        if self.fail_duplicate_lookup:
            raise RuntimeError("duplicate lookup failed")
        return [
            t for t in self.transactions.values()
            if t.transaction_date == transaction_date
            and t.amount == amount
            and t.status != TransactionStatus.REMOVED.value
            and (t.external_account_id is None or t.external_account_id != external_account_id)
        ]

    async def insert_transaction(self, txn):
        if txn.external_transaction_id in self.fail_insert_for:
            raise PersistenceFailure(f"insert failed for {txn.external_transaction_id}")
        if self.by_external_id(txn.external_transaction_id):
            return None
        txn.id = txn.id or str(uuid.uuid4())
        self.transactions[txn.id] = txn
        return txn

    async def patch_transaction(self, transaction_id, fields):
        txn = self.transactions[transaction_id]
        for key, value in fields.items():
            setattr(txn, key, value)


class FakeStoreFactory:
    """Hands out the shared fake store and counts how often one was opened."""

    def __init__(self, store: FakeLedgerStore):
        self.store = store
        self.opened = 0

    @asynccontextmanager
    async def __call__(self):
        self.opened += 1
        yield self.store


# ==================== FAKE AGGREGATOR ====================

class FakeAggregator:
    """
    Scripted Plaid client.

    ``script(cursor, *responses)`` queues responses for a cursor; each call
    consumes one, the last one repeats. A response that is an exception is
    raised.
    """

    def __init__(self):
        self.responses: Dict[Optional[str], List[Any]] = {}
        self.calls: List[Optional[str]] = []
        self.accounts_response: Any = AccountsResponse(accounts=[])
        self.item_response: Any = None

    def script(self, cursor: Optional[str], *responses):
        self.responses[cursor] = list(responses)

    async def transactions_sync(self, access_token, cursor=None, count=None):
        self.calls.append(cursor)
        queue = self.responses.get(cursor)
        if not queue:
            raise AssertionError(f"Unexpected cursor requested: {cursor!r}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response

    async def accounts_get(self, access_token):
        if isinstance(self.accounts_response, BaseException):
            raise self.accounts_response
        return self.accounts_response

    async def item_get(self, access_token):
        if isinstance(self.item_response, BaseException):
            raise self.item_response
        return self.item_response or ItemResponse.model_validate({"item": {"item_id": "item-1"}})


# ==================== FAKE CLASSIFIER ====================

class FakeClassifier:
    def __init__(self, reply: Any = None):
        self.reply = reply or ClassifierReply(
            account_name="Meals", category="Food", memo="Team coffee", confidence=80
        )
        self.calls: List[Dict[str, Any]] = []

    async def classify(self, txn, account_names):
        self.calls.append({"txn": txn, "account_names": list(account_names)})
        if isinstance(self.reply, BaseException):
            raise self.reply
        return self.reply


# ==================== FIXTURES ====================

@pytest.fixture
def store():
    """Fake store with one connection, one checking account and a small chart."""
    store = FakeLedgerStore()
    connection = store.add_connection()
    store.external_accounts.append(ExternalAccount(
        id="ext-1",
        connection_id=connection.id,
        plaid_account_id="plaid-acc-1",
        account_name="Checking",
        account_type="depository",
    ))
    store.ledger_accounts.extend([
        LedgerAccount(id="acct-meals", code="6100", name="Meals", type="Expense"),
        LedgerAccount(id="acct-office", code="6200", name="Office Supplies", type="Expense"),
        LedgerAccount(id="acct-sales", code="4000", name="Sales", type="Income"),
        LedgerAccount(id="acct-equity", code="3000", name="Owner Equity", type="Equity"),
    ])
    return store


@pytest.fixture
def connection(store):
    return store.connections["item-1"]


@pytest.fixture
def aggregator():
    return FakeAggregator()
