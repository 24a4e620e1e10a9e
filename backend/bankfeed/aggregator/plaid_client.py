"""
Plaid Client

Async wrapper around the Plaid Python SDK for the three endpoints the
sync engine needs:
- /transactions/sync  (incremental transaction deltas)
- /accounts/get       (balances)
- /item/get           (credential health)

The SDK is synchronous; each call runs in a worker thread so the event
loop keeps serving other connections. SDK responses are validated into
the engine's own pydantic schemas.

Failures are raised as AggregatorError subclasses so the sync coordinator
can tell transient outages from rejected credentials.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Type

from pydantic import BaseModel, ValidationError
from plaid.api import plaid_api
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.exceptions import ApiException, OpenApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from urllib3.exceptions import HTTPError as TransportError

from config import Settings, get_settings
from bankfeed.errors import (
    AggregatorError,
    AggregatorUnavailable,
    AggregatorRejected,
    PaginationMutated,
)
from bankfeed.aggregator.schemas import (
    TransactionsSyncPage,
    AccountsResponse,
    ItemResponse,
    PlaidErrorBody,
)

logger = logging.getLogger(__name__)


# ==================== ERROR CLASSIFICATION ====================

# Credential no longer accepted; the user has to go through Link again
REAUTH_ERROR_CODES = {
    "ITEM_LOGIN_REQUIRED",
    "INVALID_ACCESS_TOKEN",
    "ITEM_LOCKED",
    "ITEM_NOT_FOUND",
    "ACCESS_NOT_GRANTED",
    "USER_SETUP_REQUIRED",
    "PENDING_EXPIRATION",
}

# Worth retrying on the next scheduled sync
TRANSIENT_ERROR_TYPES = {
    "RATE_LIMIT_EXCEEDED",
    "API_ERROR",
    "INSTITUTION_ERROR",
}

PAGINATION_MUTATION_CODE = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"


def classify_plaid_error(status_code: int, body: PlaidErrorBody) -> AggregatorError:
    """Map a Plaid error response onto the engine's aggregator error types."""
    code = body.error_code or ""
    message = body.error_message or f"Plaid returned HTTP {status_code}"
    detail = f"{code}: {message}" if code else message

    if code == PAGINATION_MUTATION_CODE:
        return PaginationMutated(detail, error_code=code)
    if code in REAUTH_ERROR_CODES:
        return AggregatorRejected(detail, error_code=code)
    if body.error_type in TRANSIENT_ERROR_TYPES or status_code == 429 or status_code >= 500:
        return AggregatorUnavailable(detail, error_code=code or None)
    return AggregatorError(detail, error_code=code or None)


def error_body_from_exception(exc: ApiException) -> PlaidErrorBody:
    """Parse the JSON error body the SDK attaches to an ApiException."""
    body = getattr(exc, "body", None)
    if body:
        try:
            return PlaidErrorBody.model_validate_json(body)
        except ValidationError:
            pass
    return PlaidErrorBody(error_message=f"HTTP {exc.status}: {str(body or exc.reason)[:200]}")


def build_plaid_api(client_id: str, secret: str, base_url: str) -> plaid_api.PlaidApi:
    configuration = Configuration(
        host=base_url,
        api_key={
            "clientId": client_id,
            "secret": secret,
        },
    )
    return plaid_api.PlaidApi(ApiClient(configuration))


class PlaidClient:
    """
    Async facade over ``plaid_api.PlaidApi``.

    One instance may be shared by concurrent syncs; every request runs in
    its own worker thread.
    """

    def __init__(
        self,
        api: plaid_api.PlaidApi,
        timeout: float = 30.0,
        page_size: int = 100,
    ):
        self.api = api
        self.timeout = timeout
        self.page_size = page_size

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PlaidClient":
        settings = settings or get_settings()
        logger.info(f"Plaid client using {settings.plaid_base_url}")
        return cls(
            build_plaid_api(settings.PLAID_CLIENT_ID, settings.PLAID_SECRET, settings.plaid_base_url),
            timeout=settings.PLAID_TIMEOUT_SECONDS,
            page_size=settings.PLAID_PAGE_SIZE,
        )

    async def __aenter__(self) -> "PlaidClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        api_client = getattr(self.api, "api_client", None)
        if api_client is not None and hasattr(api_client, "close"):
            await asyncio.to_thread(api_client.close)

    # ==================== ENDPOINTS ====================

    async def transactions_sync(
        self,
        access_token: str,
        cursor: Optional[str] = None,
        count: Optional[int] = None,
    ) -> TransactionsSyncPage:
        """
        Fetch one page of transaction deltas.

        A missing cursor requests the full available history.
        """
        request_args = {
            "access_token": access_token,
            "count": count or self.page_size,
        }
        if cursor:
            request_args["cursor"] = cursor

        page = await self._call(
            "/transactions/sync",
            self.api.transactions_sync,
            TransactionsSyncRequest(**request_args),
            TransactionsSyncPage,
        )
        logger.debug(
            f"transactions/sync returned {len(page.added)} added, "
            f"{len(page.modified)} modified, {len(page.removed)} removed, has_more={page.has_more}"
        )
        return page

    async def accounts_get(self, access_token: str) -> AccountsResponse:
        return await self._call(
            "/accounts/get",
            self.api.accounts_get,
            AccountsGetRequest(access_token=access_token),
            AccountsResponse,
        )

    async def item_get(self, access_token: str) -> ItemResponse:
        return await self._call(
            "/item/get",
            self.api.item_get,
            ItemGetRequest(access_token=access_token),
            ItemResponse,
        )

    # ==================== TRANSPORT ====================

    async def _call(self, path: str, method: Callable[..., Any], request: Any, model: Type[BaseModel]):
        try:
            response = await asyncio.to_thread(method, request, _request_timeout=self.timeout)
        except ApiException as e:
            error_body = error_body_from_exception(e)
            logger.warning(
                f"Plaid {path} failed with HTTP {e.status} "
                f"({error_body.error_type}/{error_body.error_code}, request {error_body.request_id})"
            )
            error = classify_plaid_error(e.status or 0, error_body)
            error.cause = e
            raise error from e
        except TransportError as e:
            logger.warning(f"Plaid {path} connection failed: {e}")
            raise AggregatorUnavailable(f"Plaid connection failed: {str(e)[:100]}", cause=e)
        except OpenApiException as e:
            logger.error(f"Unexpected Plaid {path} response: {e}")
            raise AggregatorError(f"Malformed Plaid {path} response", cause=e)

        try:
            payload = response.to_dict() if hasattr(response, "to_dict") else response
            return model.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Unexpected Plaid {path} response: {e}")
            raise AggregatorError(f"Malformed Plaid {path} response", cause=e)
