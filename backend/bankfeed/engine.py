"""
Bank Feed Engine

The surface other parts of the system call:

- sync_connection(item_id)      one connection, raises on failure
- sync_all_connections()        every active connection, never raises per connection
- update_balances(item_id)      refresh external account balances
- validate_connection(item_id)  check the stored credential still works

Every connection sync and every detached rule-hit update gets its own
ledger store (and so its own database session).
"""

import asyncio
import logging
from datetime import timedelta
from functools import partial
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from config import Settings, get_settings
from database.connection import build_engine, build_session_factory
from bankfeed.background import BackgroundTasks
from bankfeed.errors import (
    AggregatorError,
    AggregatorRejected,
    BankFeedError,
    ConnectionNotFound,
    CredentialError,
)
from bankfeed.models import BalanceUpdateResult, Connection, SyncResult
from bankfeed.aggregator.plaid_client import PlaidClient, REAUTH_ERROR_CODES
from bankfeed.categorization.classifier import OpenAIClassifier, TransactionClassifier
from bankfeed.categorization.engine import CategorizationEngine
from bankfeed.matching_rules.duplicate_detector import DuplicateDetector
from bankfeed.services.sync_coordinator import SyncCoordinator
from bankfeed.store.ledger_store import open_ledger_store
from utils.encryption import EncryptionError, decrypt_access_token

logger = logging.getLogger(__name__)

StoreFactory = Callable[[], AsyncContextManager]


class BankFeedEngine:
    """
    Bank feed sync engine.

    Args:
        store_factory: Zero-argument callable returning an async context
            manager that yields a ledger store
        aggregator: Plaid client (or anything with the same methods)
        classifier: Optional AI classifier; without one, transactions no
            rule matches stay Uncategorized
    """

    def __init__(
        self,
        store_factory: StoreFactory,
        aggregator,
        classifier: Optional[TransactionClassifier] = None,
        max_concurrency: int = 4,
        stale_after_minutes: int = 30,
        max_pagination_restarts: int = 2,
        default_timeout: Optional[float] = None,
        classifier_max_accounts: int = 30,
        token_decryptor: Callable[[str], str] = decrypt_access_token,
        detector: Optional[DuplicateDetector] = None,
    ):
        self.store_factory = store_factory
        self.aggregator = aggregator
        self.classifier = classifier
        self.max_concurrency = max_concurrency
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.max_pagination_restarts = max_pagination_restarts
        self.default_timeout = default_timeout
        self.token_decryptor = token_decryptor
        self.detector = detector
        self.background = BackgroundTasks()
        self.categorizer = CategorizationEngine(
            classifier=classifier,
            max_accounts=classifier_max_accounts,
            on_rule_hit=self._schedule_rule_hit,
        )

    # ==================== SYNC ====================

    async def sync_connection(
        self,
        item_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """Sync one connection. Failures are recorded on the connection and raised."""
        async with self.store_factory() as store:
            coordinator = SyncCoordinator(
                store,
                self.aggregator,
                self.categorizer,
                detector=self.detector,
                token_decryptor=self.token_decryptor,
                stale_after=self.stale_after,
                max_pagination_restarts=self.max_pagination_restarts,
            )
            return await coordinator.sync(
                item_id,
                timeout=timeout if timeout is not None else self.default_timeout,
                cancel_event=cancel_event,
            )

    async def sync_all_connections(
        self,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[SyncResult]:
        """
        Sync every active connection, at most ``max_concurrency`` at a time.

        Returns one result per connection; a failing connection yields
        ``success=False`` with its error and never stops the others.
        """
        async with self.store_factory() as store:
            connections = await store.list_active_connections()

        logger.info(f"Syncing {len(connections)} active connections")
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def sync_one(connection: Connection) -> SyncResult:
            async with semaphore:
                try:
                    return await self.sync_connection(connection.item_id, cancel_event=cancel_event)
                except BankFeedError as e:
                    return SyncResult(
                        item_id=connection.item_id,
                        success=False,
                        error=str(e),
                        needs_reauth=isinstance(e, AggregatorRejected),
                    )
                except Exception as e:
                    logger.error(f"Unexpected error syncing {connection.item_id}: {e}", exc_info=True)
                    return SyncResult(item_id=connection.item_id, success=False, error=str(e))

        results = await asyncio.gather(*(sync_one(c) for c in connections))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Sync complete: {succeeded}/{len(results)} connections succeeded")
        return list(results)

    # ==================== BALANCES & HEALTH ====================

    async def update_balances(self, item_id: str) -> Dict[str, Any]:
        """
        Refresh current and available balances of the connection's
        accounts. Transactions are not touched.
        """
        async with self.store_factory() as store:
            connection = await self._get_connection(store, item_id)
            access_token = self._decrypt(connection)

            try:
                response = await self.aggregator.accounts_get(access_token)
            except AggregatorRejected:
                await store.set_needs_reauth(connection.id, True)
                raise

            result = BalanceUpdateResult(item_id=item_id, account_count=0)
            for account in response.accounts:
                updated = await store.update_account_balances(
                    connection.id,
                    account.account_id,
                    account.balances.current,
                    account.balances.available,
                )
                if updated:
                    result.account_count += 1
                    result.account_ids.append(account.account_id)
                else:
                    logger.info(f"Plaid account {account.account_id} is not linked locally, skipping balance")

        logger.info(f"Updated balances for {result.account_count} accounts on {item_id}")
        return result.to_dict()

    async def validate_connection(self, item_id: str) -> Dict[str, Any]:
        """
        Check that the stored credential is still accepted.

        Returns ``{valid, error, needs_reauth}``; the connection's re-auth
        flag is updated to match.
        """
        async with self.store_factory() as store:
            connection = await self._get_connection(store, item_id)

            try:
                access_token = self._decrypt(connection)
            except CredentialError as e:
                return {"valid": False, "error": str(e), "needs_reauth": False}

            try:
                response = await self.aggregator.item_get(access_token)
            except AggregatorRejected as e:
                await store.set_needs_reauth(connection.id, True)
                return {"valid": False, "error": str(e), "needs_reauth": True}
            except AggregatorError as e:
                return {"valid": False, "error": str(e), "needs_reauth": False}

            item_error = response.item.error
            if item_error and item_error.error_code:
                needs_reauth = item_error.error_code in REAUTH_ERROR_CODES
                if needs_reauth:
                    await store.set_needs_reauth(connection.id, True)
                return {
                    "valid": False,
                    "error": item_error.error_message or item_error.error_code,
                    "needs_reauth": needs_reauth,
                }

            if connection.needs_reauth:
                await store.set_needs_reauth(connection.id, False)

        return {"valid": True, "error": None, "needs_reauth": False}

    # ==================== HELPERS ====================

    async def _get_connection(self, store, item_id: str) -> Connection:
        connection = await store.get_connection(item_id)
        if not connection:
            raise ConnectionNotFound(item_id)
        return connection

    def _decrypt(self, connection: Connection) -> str:
        try:
            return self.token_decryptor(connection.access_token)
        except EncryptionError as e:
            raise CredentialError(f"Could not decrypt access token for item {connection.item_id}: {e}")

    def _schedule_rule_hit(self, rule_id: str):
        self.background.spawn(self._record_rule_hit(rule_id), name=f"rule-hit-{rule_id}")

    async def _record_rule_hit(self, rule_id: str):
        async with self.store_factory() as store:
            await store.increment_rule_hit(rule_id)

    async def aclose(self):
        """Wait for pending rule-hit updates, then close external clients."""
        await self.background.drain()
        if hasattr(self.aggregator, "aclose"):
            await self.aggregator.aclose()
        if self.classifier is not None and hasattr(self.classifier, "aclose"):
            await self.classifier.aclose()


def build_engine_from_settings(settings: Optional[Settings] = None) -> BankFeedEngine:
    """Wire the engine from environment configuration."""
    settings = settings or get_settings()

    errors = settings.validate_production_config() if settings.is_production else []
    if errors:
        raise ValueError(f"Invalid production configuration: {'; '.join(errors)}")
    if not settings.plaid_configured:
        logger.warning("PLAID_CLIENT_ID / PLAID_SECRET not set - aggregator calls will be rejected")

    return BankFeedEngine(
        store_factory=partial(open_ledger_store, build_session_factory(build_engine(settings))),
        aggregator=PlaidClient.from_settings(settings),
        classifier=OpenAIClassifier.from_settings(settings),
        max_concurrency=settings.SYNC_MAX_CONCURRENCY,
        stale_after_minutes=settings.SYNC_STALE_AFTER_MINUTES,
        max_pagination_restarts=settings.SYNC_MAX_PAGINATION_RESTARTS,
        default_timeout=settings.SYNC_TIMEOUT_SECONDS,
        classifier_max_accounts=settings.CLASSIFIER_MAX_ACCOUNTS,
        token_decryptor=partial(decrypt_access_token, key=settings.ENCRYPTION_KEY or None),
    )
