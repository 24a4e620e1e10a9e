"""
Account Resolver

Maps an external (aggregator) account to the ledger account that money
moves through, creating a Bank or Credit Card account in the chart of
accounts the first time an unmapped feed account is seen.
"""

import uuid
import time
import random
import string
import logging
from typing import List

from bankfeed.models import Connection, ExternalAccount, LedgerAccount, LedgerAccountType, SourceType

logger = logging.getLogger(__name__)

AUTO_CREATED_DESCRIPTION = "Auto-created from Plaid bank feed"
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def source_account_name(connection: Connection, external_account: ExternalAccount) -> str:
    return f"{connection.institution_name} - {external_account.account_name}"


def generate_account_code() -> str:
    suffix = "".join(random.choices(_CODE_ALPHABET, k=5))
    return f"PLAID-{int(time.time() * 1000)}-{suffix}"


class AccountResolver:
    """Resolves feed accounts against the chart of accounts loaded for a page."""

    def __init__(self, store):
        self.store = store

    async def resolve(
        self,
        connection: Connection,
        external_account: ExternalAccount,
        chart: List[LedgerAccount],
    ) -> str:
        """
        Ledger account id for ``external_account``.

        An explicit user mapping always wins. Otherwise an account named
        "<Institution> - <Account>" is reused or created; a created account
        is appended to ``chart`` so the rest of the page reuses it.
        """
        if external_account.linked_account_id:
            return external_account.linked_account_id

        name = source_account_name(connection, external_account)
        for account in chart:
            if account.name == name:
                return account.id

        account_type = (
            LedgerAccountType.CREDIT_CARD if external_account.source_type == SourceType.CREDIT_CARD
            else LedgerAccountType.BANK
        )
        account = LedgerAccount(
            id=str(uuid.uuid4()),
            code=generate_account_code(),
            name=name,
            type=account_type.value,
            description=AUTO_CREATED_DESCRIPTION,
            is_active=True,
        )
        created = await self.store.create_ledger_account(account)
        chart.append(created)

        logger.info(f"Created source account: {name} ({account_type.value})")
        return created.id
