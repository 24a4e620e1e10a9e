"""
Sync Coordinator

Runs one connection's sync from claim to final status:

    Pending/Success/Error -> Syncing -> Success | Error

1. Claim the connection (atomic; refused while another sync holds it)
2. Decrypt the access token
3. Page through /transactions/sync from the stored cursor
4. Reconcile each page, then checkpoint its cursor
5. Record Success with the final cursor, or Error with the message

A failure leaves the cursor at the last checkpoint, so the next run
re-fetches at most one page; re-delivered records are skipped by the
reconciler.
"""

import uuid
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from bankfeed.errors import (
    AggregatorError,
    AggregatorRejected,
    ConnectionInactive,
    ConnectionNotFound,
    CredentialError,
    PaginationMutated,
    SyncAlreadyInProgress,
    SyncCancelled,
)
from bankfeed.models import Connection, PageCounts, SyncResult
from bankfeed.aggregator.schemas import TransactionsSyncPage
from bankfeed.categorization.engine import CategorizationEngine
from bankfeed.matching_rules.duplicate_detector import DuplicateDetector
from bankfeed.services.delta_reconciler import DeltaReconciler
from logging_config import set_sync_context, clear_sync_context
from sentry_integration import capture_exception
from utils.encryption import EncryptionError, decrypt_access_token, mask_token

logger = logging.getLogger(__name__)


class SyncEvent:
    """Sync lifecycle event types"""
    STARTED = "bankfeed.sync_started"
    PAGE_APPLIED = "bankfeed.page_applied"
    PAGINATION_RESTARTED = "bankfeed.pagination_restarted"
    COMPLETED = "bankfeed.sync_completed"
    FAILED = "bankfeed.sync_failed"


def log_sync_event(
    event_type: str,
    item_id: str,
    details: Dict[str, Any],
    level: int = logging.INFO,
):
    """Log a sync lifecycle event with structured details."""
    log_entry = {
        "event": event_type,
        "item_id": item_id,
        "details": details,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.log(level, f"Sync event: {event_type}", extra=log_entry)


class SyncCoordinator:
    """
    Drives the sync of a single connection against one ledger store.

    The store must not be shared with other concurrent syncs.
    """

    def __init__(
        self,
        store,
        aggregator,
        categorizer: CategorizationEngine,
        detector: Optional[DuplicateDetector] = None,
        token_decryptor: Callable[[str], str] = decrypt_access_token,
        stale_after: timedelta = timedelta(minutes=30),
        max_pagination_restarts: int = 2,
    ):
        self.store = store
        self.aggregator = aggregator
        self.categorizer = categorizer
        self.detector = detector
        self.token_decryptor = token_decryptor
        self.stale_after = stale_after
        self.max_pagination_restarts = max_pagination_restarts

    async def sync(
        self,
        item_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Sync one connection.

        Raises:
            ConnectionNotFound, ConnectionInactive, SyncAlreadyInProgress:
                before anything is changed
            CredentialError, AggregatorError, SyncCancelled:
                after the connection has been marked Error
        """
        connection = await self.store.get_connection(item_id)
        if not connection:
            raise ConnectionNotFound(item_id)
        if not connection.is_active:
            raise ConnectionInactive(item_id)

        stale_before = datetime.now(timezone.utc) - self.stale_after
        if not await self.store.claim_sync(connection.id, stale_before):
            raise SyncAlreadyInProgress(item_id)

        run_id = str(uuid.uuid4())
        set_sync_context(item_id=item_id, run_id=run_id)
        log_sync_event(SyncEvent.STARTED, item_id, {
            "run_id": run_id,
            "institution": connection.institution_name,
            "has_cursor": connection.last_sync_cursor is not None,
        })

        totals = PageCounts()
        try:
            access_token = self._decrypt(connection)
            cursor = await self._run_pages(connection, access_token, totals, timeout, cancel_event)
            await self.store.mark_sync_success(connection.id, cursor)
        except BaseException as e:
            await self._record_failure(connection, e, totals)
            raise
        finally:
            clear_sync_context()

        log_sync_event(SyncEvent.COMPLETED, item_id, {
            "run_id": run_id,
            "added": totals.added,
            "modified": totals.modified,
            "removed": totals.removed,
        })
        return SyncResult(
            item_id=item_id,
            success=True,
            added=totals.added,
            modified=totals.modified,
            removed=totals.removed,
            next_cursor=cursor,
        )

    def _decrypt(self, connection: Connection) -> str:
        try:
            return self.token_decryptor(connection.access_token)
        except EncryptionError as e:
            logger.error(f"Stored access token {mask_token(connection.access_token)} could not be decrypted")
            raise CredentialError(f"Could not decrypt access token for item {connection.item_id}: {e}")

    async def _run_pages(
        self,
        connection: Connection,
        access_token: str,
        totals: PageCounts,
        timeout: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        def check_cancelled():
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelled()
            if deadline is not None and loop.time() >= deadline:
                raise SyncCancelled(f"Sync cancelled: timed out after {timeout}s")

        reconciler = DeltaReconciler(self.store, connection, self.categorizer, detector=self.detector)

        start_cursor = connection.last_sync_cursor
        cursor = start_cursor
        restarts = 0

        while True:
            check_cancelled()
            try:
                page = await self._fetch_page(access_token, cursor, deadline)
            except PaginationMutated as e:
                if restarts >= self.max_pagination_restarts:
                    raise PaginationMutated(
                        f"Transactions changed during pagination {restarts + 1} times, giving up",
                        cause=e,
                        error_code=e.error_code,
                    )
                restarts += 1
                if cursor != start_cursor:
                    # Cursors from the mutated pagination must not be resumed from
                    await self.store.checkpoint_cursor(connection.id, start_cursor)
                cursor = start_cursor
                log_sync_event(SyncEvent.PAGINATION_RESTARTED, connection.item_id, {"restart": restarts})
                continue

            counts = await reconciler.reconcile_page(page, check_cancelled)
            totals += counts

            await self.store.checkpoint_cursor(connection.id, page.next_cursor)
            cursor = page.next_cursor
            log_sync_event(SyncEvent.PAGE_APPLIED, connection.item_id, {
                "added": counts.added,
                "modified": counts.modified,
                "removed": counts.removed,
                "has_more": page.has_more,
            }, level=logging.DEBUG)

            if not page.has_more:
                return cursor

    async def _fetch_page(
        self,
        access_token: str,
        cursor: Optional[str],
        deadline: Optional[float],
    ) -> TransactionsSyncPage:
        request = self.aggregator.transactions_sync(access_token, cursor)
        if deadline is None:
            return await request

        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(request, remaining)
        except asyncio.TimeoutError:
            raise SyncCancelled("Sync cancelled: timed out waiting for the aggregator")

    async def _record_failure(self, connection: Connection, error: BaseException, totals: PageCounts):
        if isinstance(error, asyncio.CancelledError):
            message = "Sync cancelled"
        else:
            message = str(error) or error.__class__.__name__
        needs_reauth = isinstance(error, AggregatorRejected)

        log_sync_event(SyncEvent.FAILED, connection.item_id, {
            "error": message,
            "error_type": error.__class__.__name__,
            "needs_reauth": needs_reauth,
            "added": totals.added,
            "modified": totals.modified,
            "removed": totals.removed,
        }, level=logging.ERROR)

        try:
            await self.store.mark_sync_error(connection.id, message, needs_reauth=needs_reauth)
        except Exception as e:
            logger.error(f"Could not record sync failure for {connection.item_id}: {e}")

        # Cancellation and re-auth are not reported to Sentry
        if isinstance(error, Exception) and not isinstance(error, (SyncCancelled, AggregatorRejected)):
            capture_exception(error, item_id=connection.item_id, error_code=getattr(error, "error_code", None))
