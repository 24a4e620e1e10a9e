"""
Delta Reconciler

Applies one page of /transactions/sync deltas to the ledger staging table:

- added:    stored as Pending with duplicate flag and categorization
- modified: core fields patched in place (suggestions are left alone)
- removed:  soft-deleted (status Removed)

Every record is idempotent against re-delivery, and a failing record is
logged and skipped without affecting the rest of the page.
"""

import logging
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from bankfeed.errors import PersistenceFailure
from bankfeed.models import (
    Connection,
    ExternalAccount,
    LedgerAccount,
    LedgerTransaction,
    PageCounts,
    TransactionSummary,
    TransactionSource,
    TransactionStatus,
)
from bankfeed.aggregator.schemas import PlaidTransaction, RemovedTransaction, TransactionsSyncPage
from bankfeed.categorization.engine import CategorizationEngine, CategorizationContext
from bankfeed.matching_rules.duplicate_detector import DuplicateDetector, duplicate_detector
from bankfeed.services.account_resolver import AccountResolver, source_account_name

logger = logging.getLogger(__name__)


def normalize_amount(amount) -> Decimal:
    """
    Convert an aggregator amount (positive = outflow) to the ledger
    convention (negative = expense).
    """
    amount = Decimal(str(amount))
    return -amount if amount else abs(amount)


class PageState:
    """Reference data loaded once per page"""

    def __init__(
        self,
        chart: List[LedgerAccount],
        external_accounts: List[ExternalAccount],
        context: CategorizationContext,
    ):
        self.chart = chart
        self.accounts_by_plaid_id: Dict[str, ExternalAccount] = {
            a.plaid_account_id: a for a in external_accounts
        }
        self.context = context


class DeltaReconciler:
    """Reconciles aggregator deltas for a single connection."""

    def __init__(
        self,
        store,
        connection: Connection,
        categorizer: CategorizationEngine,
        detector: Optional[DuplicateDetector] = None,
        resolver: Optional[AccountResolver] = None,
    ):
        self.store = store
        self.connection = connection
        self.categorizer = categorizer
        self.detector = detector or duplicate_detector
        self.resolver = resolver or AccountResolver(store)

    async def load_page_state(self) -> PageState:
        chart = await self.store.list_ledger_accounts()
        external_accounts = await self.store.list_external_accounts(self.connection.id)

        try:
            rules = await self.store.list_active_rules()
        except Exception as e:
            logger.warning(f"Could not load categorization rules, continuing without them: {e}")
            rules = []

        return PageState(chart, external_accounts, CategorizationContext(rules=rules, accounts=chart))

    async def reconcile_page(
        self,
        page: TransactionsSyncPage,
        check_cancelled: Optional[Callable[[], None]] = None,
    ) -> PageCounts:
        """
        Apply every delta in ``page``.

        ``check_cancelled`` is called before each record and raises to stop
        the page part-way.
        """
        check = check_cancelled or (lambda: None)
        state = await self.load_page_state()
        counts = PageCounts()

        for plaid_txn in page.added:
            check()
            if await self._guard(plaid_txn.transaction_id, "add", self._apply_added(plaid_txn, state)):
                counts.added += 1

        for plaid_txn in page.modified:
            check()
            if await self._guard(plaid_txn.transaction_id, "modify", self._apply_modified(plaid_txn)):
                counts.modified += 1

        for removed in page.removed:
            check()
            if await self._guard(removed.transaction_id, "remove", self._apply_removed(removed)):
                counts.removed += 1

        return counts

    async def _guard(self, transaction_id: str, action: str, operation) -> bool:
        """Run one record's operation; a failure is logged and counts as not applied."""
        try:
            return await operation
        except Exception as e:
            logger.error(
                f"Failed to {action} transaction {transaction_id}: {e}",
                exc_info=not isinstance(e, PersistenceFailure),
            )
        return False

    # ==================== ADDED ====================

    async def _apply_added(self, plaid_txn: PlaidTransaction, state: PageState) -> bool:
        existing = await self.store.get_transaction_by_external_id(plaid_txn.transaction_id)
        if existing:
            logger.info(f"Transaction {plaid_txn.transaction_id} already exists, skipping")
            return False

        external_account = state.accounts_by_plaid_id.get(plaid_txn.account_id)
        if not external_account:
            logger.warning(
                f"Plaid account {plaid_txn.account_id} not found for transaction {plaid_txn.transaction_id}"
            )
            return False

        source_account_id = await self.resolver.resolve(self.connection, external_account, state.chart)

        txn = LedgerTransaction(
            external_transaction_id=plaid_txn.transaction_id,
            amount=normalize_amount(plaid_txn.amount),
            transaction_date=plaid_txn.transaction_date,
            post_date=plaid_txn.post_date,
            description=plaid_txn.description,
            merchant=plaid_txn.merchant_name,
            original_category=plaid_txn.category_label,
            transaction_type=plaid_txn.payment_channel,
            source=TransactionSource.BANK_FEED.value,
            source_type=external_account.source_type.value,
            source_name=source_account_name(self.connection, external_account),
            source_account_id=source_account_id,
            external_account_id=external_account.id,
            status=TransactionStatus.PENDING.value,
        )

        duplicate = await self.detector.find_duplicate(self.store, txn)
        if duplicate:
            txn.is_potential_duplicate = True
            txn.duplicate_of_id = duplicate.duplicate_of_id

        result = await self.categorizer.categorize(
            TransactionSummary(
                description=txn.description,
                amount=txn.amount,
                merchant=txn.merchant,
                original_category=txn.original_category,
            ),
            state.context,
        )
        txn.suggested_account_id = result.account_id
        txn.suggested_category = result.category
        txn.suggested_memo = result.memo
        txn.confidence_score = result.confidence

        stored = await self.store.insert_transaction(txn)
        return stored is not None

    # ==================== MODIFIED ====================

    async def _apply_modified(self, plaid_txn: PlaidTransaction) -> bool:
        existing = await self.store.get_transaction_by_external_id(plaid_txn.transaction_id)
        if not existing:
            logger.info(f"Modified transaction {plaid_txn.transaction_id} not found, skipping")
            return False

        await self.store.patch_transaction(existing.id, {
            "amount": normalize_amount(plaid_txn.amount),
            "description": plaid_txn.description,
            "merchant": plaid_txn.merchant_name,
            "transaction_date": plaid_txn.transaction_date,
            "post_date": plaid_txn.post_date,
            "original_category": plaid_txn.category_label,
        })
        return True

    # ==================== REMOVED ====================

    async def _apply_removed(self, removed: RemovedTransaction) -> bool:
        existing = await self.store.get_transaction_by_external_id(removed.transaction_id)
        if not existing or existing.status == TransactionStatus.REMOVED.value:
            return False

        await self.store.patch_transaction(existing.id, {"status": TransactionStatus.REMOVED.value})
        return True
