"""
Bank Feed Engine - Errors

Connection-level failures abort one connection's sync and are recorded on
the connection. Record-level failures abort one record only.
"""

from typing import Optional


class BankFeedError(Exception):
    """Base exception for the bank feed engine"""
    pass


# ==================== CONNECTION LEVEL ====================

class ConnectionNotFound(BankFeedError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Plaid connection not found for item: {item_id}")


class ConnectionInactive(BankFeedError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Plaid connection is inactive: {item_id}")


class SyncAlreadyInProgress(BankFeedError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Sync already in progress for item: {item_id}")


class SyncCancelled(BankFeedError):
    def __init__(self, message: str = "Sync cancelled"):
        super().__init__(message)


class CredentialError(BankFeedError):
    """Stored access token could not be decrypted"""
    pass


class AggregatorError(BankFeedError):
    """
    Failure talking to the aggregator.

    Attributes:
        cause: Underlying exception, if any
        error_code: Aggregator error code (e.g. ITEM_LOGIN_REQUIRED)
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.cause = cause
        self.error_code = error_code


class AggregatorUnavailable(AggregatorError):
    """Transient failure: network, timeout, rate limit, institution down"""
    pass


class AggregatorRejected(AggregatorError):
    """Credential rejected by the aggregator; the user must re-link"""
    pass


class PaginationMutated(AggregatorUnavailable):
    """Data changed under the paging cursor; pagination must restart"""
    pass


# ==================== RECORD LEVEL ====================

class PersistenceFailure(BankFeedError):
    """A single ledger write failed"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ClassifierFailure(BankFeedError):
    """The classifier call failed or returned an unusable reply"""
    pass


__all__ = [
    'BankFeedError',
    'ConnectionNotFound',
    'ConnectionInactive',
    'SyncAlreadyInProgress',
    'SyncCancelled',
    'CredentialError',
    'AggregatorError',
    'AggregatorUnavailable',
    'AggregatorRejected',
    'PaginationMutated',
    'PersistenceFailure',
    'ClassifierFailure',
]
