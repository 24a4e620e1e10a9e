"""
AI Transaction Classifier

Suggests a ledger account for a bank transaction using an OpenAI chat
model (Azure OpenAI when configured, api.openai.com otherwise). The
model is asked for a JSON object:

    {"accountName": ..., "category": ..., "memo": ..., "confidence": 0-100}

Every failure (network, timeout, refusal, malformed JSON) is raised as
ClassifierFailure; callers fall back to the uncategorized default.
"""

import json
import logging
from decimal import Decimal
from typing import Any, List, Optional, Protocol

from openai import AsyncOpenAI, AsyncAzureOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import Settings, get_settings
from bankfeed.errors import ClassifierFailure
from bankfeed.models import TransactionSummary

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a bookkeeping assistant. Respond only with valid JSON."
MAX_COMPLETION_TOKENS = 200


class ClassifierReply(BaseModel):
    """Parsed classifier answer"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    account_name: Optional[str] = Field(default=None, alias="accountName")
    category: Optional[str] = None
    memo: Optional[str] = None
    confidence: int = 0

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> int:
        try:
            return int(round(float(v)))
        except (TypeError, ValueError):
            return 0

    @field_validator("account_name", "category", "memo", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class TransactionClassifier(Protocol):
    async def classify(self, txn: TransactionSummary, account_names: List[str]) -> ClassifierReply:
        ...


def build_prompt(txn: TransactionSummary, account_names: List[str]) -> str:
    amount = Decimal(txn.amount)
    direction = "(expense)" if amount < 0 else "(income)"
    return f"""Categorize this bank transaction for a small business.

Transaction:
- Description: {txn.description}
- Amount: ${abs(amount):.2f} {direction}
- Merchant: {txn.merchant or 'Unknown'}
- Bank Category: {txn.original_category or 'Unknown'}

Available accounts: {', '.join(account_names)}

Respond in JSON format:
{{
  "accountName": "exact account name from list or null",
  "category": "short category name",
  "memo": "brief description for bookkeeping",
  "confidence": 0-100
}}"""


def parse_reply(content: Optional[str]) -> ClassifierReply:
    if not content or not content.strip():
        raise ClassifierFailure("Classifier returned an empty reply")
    try:
        data = json.loads(content.strip())
    except json.JSONDecodeError as e:
        raise ClassifierFailure(f"Classifier reply was not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ClassifierFailure("Classifier reply was not a JSON object")
    try:
        return ClassifierReply.model_validate(data)
    except ValidationError as e:
        raise ClassifierFailure(f"Classifier reply had unexpected fields: {e}")


class OpenAIClassifier:
    """
    Chat-completions classifier.

    The AsyncOpenAI client is safe to share between concurrent syncs.
    """

    def __init__(self, client: AsyncOpenAI, model: str, timeout: float = 20.0):
        self.client = client
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> Optional["OpenAIClassifier"]:
        """Build a classifier, or None when no OpenAI credentials are configured."""
        settings = settings or get_settings()

        if settings.azure_classifier_configured:
            client = AsyncAzureOpenAI(
                azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
                api_key=settings.AZURE_OPENAI_API_KEY,
                api_version=settings.AZURE_OPENAI_API_VERSION,
            )
            logger.info(f"Classifier using Azure OpenAI deployment {settings.AZURE_OPENAI_DEPLOYMENT}")
            return cls(client, settings.AZURE_OPENAI_DEPLOYMENT, settings.CLASSIFIER_TIMEOUT_SECONDS)

        if settings.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
            logger.info(f"Classifier using OpenAI model {settings.CLASSIFIER_MODEL}")
            return cls(client, settings.CLASSIFIER_MODEL, settings.CLASSIFIER_TIMEOUT_SECONDS)

        logger.info("No classifier configured - transactions without a rule stay uncategorized")
        return None

    async def classify(self, txn: TransactionSummary, account_names: List[str]) -> ClassifierReply:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(txn, account_names)},
                ],
                max_tokens=MAX_COMPLETION_TOKENS,
                response_format={"type": "json_object"},
                timeout=self.timeout,
            )
        except OpenAIError as e:
            raise ClassifierFailure(f"Classifier request failed: {e}")

        if not response.choices:
            raise ClassifierFailure("Classifier returned no choices")
        return parse_reply(response.choices[0].message.content)

    async def aclose(self):
        await self.client.close()
