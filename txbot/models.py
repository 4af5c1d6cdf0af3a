"""Data models for txbot."""

import threading
import time
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TransactionType(str, Enum):
    """Direction of a money movement."""

    INCOME = "income"
    EXPENSE = "expense"


class TransactionSource(str, Enum):
    """Where a transaction was reported from."""

    MANUAL = "manual"
    OCR = "ocr"


CONFIRMED = "confirmed"

_clock_lock = threading.Lock()
_last_timestamp = 0


def next_timestamp() -> int:
    """Epoch milliseconds, strictly increasing within this process."""
    global _last_timestamp
    with _clock_lock:
        now = time.time_ns() // 1_000_000
        _last_timestamp = max(now, _last_timestamp + 1)
        return _last_timestamp


def utc_now_iso() -> str:
    """Current instant as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def new_transaction_id() -> str:
    return f"tx-{uuid.uuid4()}"


class ApiModel(BaseModel):
    """Base model serialized with camelCase keys for API clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TransactionDraft(BaseModel):
    """Candidate transaction as extracted from text, before validation."""

    model_config = ConfigDict(extra="ignore")

    amount: Any = None
    date: Any = None
    merchant: Any = None
    category: Any = None
    type: Any = None
    currency: Any = None
    description: Any = None
    source: TransactionSource = TransactionSource.MANUAL
    raw_text: str = ""


class ValidatedTransaction(BaseModel):
    """Transaction fields that passed every field check.

    Only ``validate_transaction`` builds these.
    """

    model_config = ConfigDict(frozen=True)

    amount: float
    date: date
    type: TransactionType
    merchant: str
    category: str
    currency: str = "USD"
    description: str = ""
    source: TransactionSource = TransactionSource.MANUAL
    raw_text: str = ""


class Transaction(ApiModel):
    """A confirmed transaction as stored."""

    user_id: str
    transaction_id: str
    timestamp: int
    amount: float
    currency: str
    date: date
    merchant: str
    category: str
    type: TransactionType
    description: str = ""
    source: TransactionSource
    raw_text: str = ""
    status: str = CONFIRMED
    created_at: str
    updated_at: str

    @classmethod
    def create(cls, user_id: str, validated: ValidatedTransaction) -> "Transaction":
        """Build a new record with freshly generated identity and stamps."""
        now = utc_now_iso()
        return cls(
            user_id=user_id,
            transaction_id=new_transaction_id(),
            timestamp=next_timestamp(),
            created_at=now,
            updated_at=now,
            status=CONFIRMED,
            **validated.model_dump(),
        )


class PipelineResult(ApiModel):
    """Outcome of one chat or receipt submission."""

    transaction: Transaction | None = None
    message: str
    is_duplicate: bool = False
    duplicate_transaction: Transaction | None = None


class ChatRequest(ApiModel):
    """Free-text transaction report."""

    user_id: str
    message: str


class TransactionUpdate(ApiModel):
    """Partial update of a stored transaction."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    amount: Any = None
    date: Any = None
    merchant: Any = None
    category: Any = None
    type: Any = None
    description: Any = None
    status: Any = None


class TransactionListResponse(ApiModel):
    """A user's transaction history."""

    transactions: list[Transaction] = Field(default_factory=list)
    count: int = 0
