"""
Ledger Store

All reads and writes the sync engine makes against the ledger database.
Parameterised ``text()`` SQL over one AsyncSession; one store per unit of
work (a connection sync or a detached rule-hit update), never shared
between tasks.

Writes are committed one at a time so a failure only loses the record
being written.
"""

import uuid
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.connection import get_session
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

logger = logging.getLogger(__name__)


# Columns a bank transaction PATCH may touch
PATCHABLE_TRANSACTION_COLUMNS = frozenset({
    "amount",
    "description",
    "merchant",
    "transaction_date",
    "post_date",
    "original_category",
    "transaction_type",
    "status",
    "suggested_account_id",
    "suggested_category",
    "suggested_memo",
    "confidence_score",
    "is_potential_duplicate",
    "duplicate_of_id",
})

TRANSACTION_INSERT_COLUMNS = (
    "id", "external_transaction_id", "source", "source_type", "source_name",
    "source_account_id", "external_account_id", "amount", "transaction_date",
    "post_date", "description", "merchant", "original_category", "transaction_type",
    "suggested_account_id", "suggested_category", "suggested_memo", "confidence_score",
    "is_potential_duplicate", "duplicate_of_id", "status",
)


class LedgerStore:
    """Ledger persistence for one unit of work"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _rollback(self):
        """Return the session to a usable state after a failed statement."""
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Ledger session rollback failed: {e}")

    async def _execute(self, query, params: Optional[Dict[str, Any]] = None, action: str = "query the ledger"):
        """
        Run one statement. On failure the session is rolled back before
        PersistenceFailure is raised, so later statements on the same
        session are not rejected by an aborted transaction.
        """
        try:
            return await self.db.execute(query, params or {})
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(f"Failed to {action}: {e}", cause=e)

    async def _commit(self, action: str):
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(f"Failed to {action}: {e}", cause=e)

    # ==================== CONNECTIONS ====================

    async def get_connection(self, item_id: str) -> Optional[Connection]:
        query = text("""
            SELECT id, item_id, institution_id, institution_name, access_token,
                   last_sync_cursor, last_sync_at, sync_status, sync_error_message,
                   needs_reauth, is_active, updated_at
            FROM public.plaid_connections
            WHERE item_id = :item_id
        """)
        result = await self._execute(query, {"item_id": item_id}, "load connection")
        row = result.mappings().first()
        return Connection.from_row(row) if row else None

    async def list_active_connections(self) -> List[Connection]:
        query = text("""
            SELECT id, item_id, institution_id, institution_name, access_token,
                   last_sync_cursor, last_sync_at, sync_status, sync_error_message,
                   needs_reauth, is_active, updated_at
            FROM public.plaid_connections
            WHERE is_active = true
            ORDER BY created_at
        """)
        result = await self._execute(query)
        return [Connection.from_row(row) for row in result.mappings().all()]

    async def claim_sync(self, connection_id: str, stale_before: datetime) -> bool:
        """
        Atomically move a connection into Syncing.

        Returns False when another sync holds the connection and its claim
        is newer than ``stale_before``.
        """
        query = text("""
            UPDATE public.plaid_connections
            SET sync_status = :syncing, sync_error_message = NULL, updated_at = :now
            WHERE id = :id
              AND (sync_status <> :syncing OR updated_at IS NULL OR updated_at < :stale_before)
        """)
        result = await self._execute(query, {
            "id": connection_id,
            "syncing": SyncStatus.SYNCING.value,
            "now": datetime.now(timezone.utc),
            "stale_before": stale_before,
        }, "claim connection for sync")
        await self._commit("claim connection for sync")
        return result.rowcount == 1

    async def checkpoint_cursor(self, connection_id: str, cursor: Optional[str]):
        """Persist a page's cursor; status stays Syncing and the claim is refreshed."""
        query = text("""
            UPDATE public.plaid_connections
            SET last_sync_cursor = :cursor, updated_at = :now
            WHERE id = :id
        """)
        await self._execute(query, {
            "id": connection_id,
            "cursor": cursor,
            "now": datetime.now(timezone.utc),
        }, "checkpoint sync cursor")
        await self._commit("checkpoint sync cursor")

    async def mark_sync_success(self, connection_id: str, cursor: Optional[str]):
        now = datetime.now(timezone.utc)
        query = text("""
            UPDATE public.plaid_connections
            SET last_sync_cursor = :cursor,
                sync_status = :status,
                sync_error_message = NULL,
                needs_reauth = false,
                last_sync_at = :now,
                updated_at = :now
            WHERE id = :id
        """)
        await self._execute(query, {
            "id": connection_id,
            "cursor": cursor,
            "status": SyncStatus.SUCCESS.value,
            "now": now,
        }, "mark sync success")
        await self._commit("mark sync success")

    async def mark_sync_error(self, connection_id: str, message: str, needs_reauth: bool = False):
        """Record a failed sync; the cursor is left at its last checkpoint."""
        # Discard any statement the failure interrupted; earlier work is already committed
        await self._rollback()
        query = text("""
            UPDATE public.plaid_connections
            SET sync_status = :status,
                sync_error_message = :message,
                needs_reauth = (needs_reauth OR :needs_reauth),
                updated_at = :now
            WHERE id = :id
        """)
        await self._execute(query, {
            "id": connection_id,
            "status": SyncStatus.ERROR.value,
            "message": message[:1000],
            "needs_reauth": needs_reauth,
            "now": datetime.now(timezone.utc),
        }, "mark sync error")
        await self._commit("mark sync error")

    async def set_needs_reauth(self, connection_id: str, needs_reauth: bool):
        query = text("""
            UPDATE public.plaid_connections
            SET needs_reauth = :needs_reauth, updated_at = :now
            WHERE id = :id
        """)
        await self._execute(query, {
            "id": connection_id,
            "needs_reauth": needs_reauth,
            "now": datetime.now(timezone.utc),
        }, "update re-auth flag")
        await self._commit("update re-auth flag")

    # ==================== EXTERNAL ACCOUNTS ====================

    async def list_external_accounts(self, connection_id: str) -> List[ExternalAccount]:
        query = text("""
            SELECT id, connection_id, plaid_account_id, account_name, official_name,
                   account_type, account_subtype, mask, linked_account_id,
                   current_balance, available_balance, currency_code, is_active
            FROM public.plaid_accounts
            WHERE connection_id = :connection_id AND is_active = true
        """)
        result = await self._execute(query, {"connection_id": connection_id}, "list external accounts")
        return [ExternalAccount.from_row(row) for row in result.mappings().all()]

    async def update_account_balances(
        self,
        connection_id: str,
        plaid_account_id: str,
        current_balance: Optional[Decimal],
        available_balance: Optional[Decimal],
    ) -> bool:
        """Refresh balances of one external account. Returns False if it is unknown."""
        query = text("""
            UPDATE public.plaid_accounts
            SET current_balance = :current_balance,
                available_balance = :available_balance,
                updated_at = :now
            WHERE connection_id = :connection_id AND plaid_account_id = :plaid_account_id
        """)
        result = await self._execute(query, {
            "connection_id": connection_id,
            "plaid_account_id": plaid_account_id,
            "current_balance": current_balance,
            "available_balance": available_balance,
            "now": datetime.now(timezone.utc),
        }, "update account balances")
        await self._commit("update account balances")
        return result.rowcount > 0

    # ==================== CHART OF ACCOUNTS ====================

    async def list_ledger_accounts(self) -> List[LedgerAccount]:
        query = text("""
            SELECT id, code, name, type, description, is_active
            FROM public.accounts
            WHERE is_active = true
            ORDER BY code
        """)
        result = await self._execute(query)
        return [LedgerAccount.from_row(row) for row in result.mappings().all()]

    async def create_ledger_account(self, account: LedgerAccount) -> LedgerAccount:
        query = text("""
            INSERT INTO public.accounts (id, code, name, type, description, is_active, created_at)
            VALUES (:id, :code, :name, :type, :description, :is_active, :now)
        """)
        await self._execute(query, {
            "id": account.id,
            "code": account.code,
            "name": account.name,
            "type": account.type,
            "description": account.description,
            "is_active": account.is_active,
            "now": datetime.now(timezone.utc),
        }, f"create ledger account {account.name}")
        await self._commit(f"create ledger account {account.name}")
        return account

    # ==================== CATEGORIZATION RULES ====================

    async def list_active_rules(self) -> List[CategorizationRule]:
        query = text("""
            SELECT id, match_field, match_type, match_value, account_id, category, memo,
                   priority, is_active, hit_count
            FROM public.categorization_rules
            WHERE is_active = true
            ORDER BY priority ASC, created_at ASC
        """)
        result = await self._execute(query)
        return [CategorizationRule.from_row(row) for row in result.mappings().all()]

    async def increment_rule_hit(self, rule_id: str):
        query = text("""
            UPDATE public.categorization_rules
            SET hit_count = hit_count + 1, last_hit_at = :now
            WHERE id = :id
        """)
        await self._execute(query, {"id": rule_id, "now": datetime.now(timezone.utc)}, "record rule hit")
        await self._commit("record rule hit")

    # ==================== BANK TRANSACTIONS ====================

    async def get_transaction_by_external_id(self, external_transaction_id: str) -> Optional[LedgerTransaction]:
        query = text("""
            SELECT * FROM public.bank_transactions
            WHERE external_transaction_id = :external_transaction_id
        """)
        result = await self._execute(query, {"external_transaction_id": external_transaction_id}, "look up transaction")
        row = result.mappings().first()
        return LedgerTransaction.from_row(row) if row else None

    async def find_duplicate_candidates(
        self,
        transaction_date: date,
        amount: Decimal,
        external_account_id: Optional[str],
    ) -> List[LedgerTransaction]:
        """
        Live transactions on the same date for the same signed amount that
        came in under a different source identity.
        """
        query = text("""
            SELECT * FROM public.bank_transactions
            WHERE transaction_date = :transaction_date
              AND amount = :amount
              AND status <> :removed
              AND (external_account_id IS NULL OR external_account_id <> :external_account_id)
            ORDER BY created_at ASC
        """)
        result = await self._execute(query, {
            "transaction_date": transaction_date,
            "amount": amount,
            "removed": TransactionStatus.REMOVED.value,
            "external_account_id": external_account_id or "",
        }, "find duplicate candidates")
        return [LedgerTransaction.from_row(row) for row in result.mappings().all()]

    async def insert_transaction(self, txn: LedgerTransaction) -> Optional[LedgerTransaction]:
        """
        Insert a staged transaction and commit it.

        Returns None when the unique external id is already taken (the
        record was delivered twice). Raises PersistenceFailure otherwise.
        """
        txn.id = txn.id or str(uuid.uuid4())
        row = txn.to_row()
        params: Dict[str, Any] = {column: row[column] for column in TRANSACTION_INSERT_COLUMNS}
        params["now"] = datetime.now(timezone.utc)

        columns = ", ".join(TRANSACTION_INSERT_COLUMNS)
        values = ", ".join(f":{column}" for column in TRANSACTION_INSERT_COLUMNS)
        query = text(f"""
            INSERT INTO public.bank_transactions ({columns}, created_at, updated_at)
            VALUES ({values}, :now, :now)
        """)

        try:
            await self.db.execute(query, params)
            await self.db.commit()
        except IntegrityError as e:
            await self._rollback()
            if txn.external_transaction_id and await self.get_transaction_by_external_id(txn.external_transaction_id):
                logger.info(f"Transaction {txn.external_transaction_id} already stored, skipping")
                return None
            raise PersistenceFailure(f"Failed to insert transaction {txn.external_transaction_id}: {e}", cause=e)
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(f"Failed to insert transaction {txn.external_transaction_id}: {e}", cause=e)

        return txn

    async def patch_transaction(self, transaction_id: str, fields: Dict[str, Any]):
        """Update only the given columns of a staged transaction."""
        unknown = set(fields) - PATCHABLE_TRANSACTION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot patch bank transaction columns: {sorted(unknown)}")
        if not fields:
            return

        assignments = ", ".join(f"{column} = :{column}" for column in fields)
        query = text(f"""
            UPDATE public.bank_transactions
            SET {assignments}, updated_at = :now
            WHERE id = :id
        """)
        params = dict(fields)
        params["id"] = transaction_id
        params["now"] = datetime.now(timezone.utc)

        try:
            await self.db.execute(query, params)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(f"Failed to update transaction {transaction_id}: {e}", cause=e)


@asynccontextmanager
async def open_ledger_store(session_factory: Optional[async_sessionmaker] = None) -> AsyncIterator[LedgerStore]:
    """Ledger store over a fresh session, closed on exit."""
    async with get_session(session_factory) as session:
        yield LedgerStore(session)
