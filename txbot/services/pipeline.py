"""Transaction pipeline: text or receipt in, stored transaction out.

Each request walks a fixed sequence of stages:

    received -> extracting (images only) -> structuring -> validating
    -> checking_duplicates -> duplicate_found | persisting -> done

A failure at any stage propagates unchanged. Receipt files are removed
exactly once on every exit path.

The duplicate check and the write are not atomic: two concurrent
submissions of the same transaction can both pass the check and both be
stored.
"""

import asyncio
import logging
import uuid
from enum import Enum
from pathlib import Path
from typing import Any

from txbot.db.sqlite import TransactionStore
from txbot.errors import ExtractionFailure, ExtractionReason
from txbot.models import PipelineResult, Transaction, TransactionSource, TransactionType, ValidatedTransaction
from txbot.parsers.llm_client import StructuredExtractor
from txbot.parsers.ocr import TextExtractor, cleanup_image_file
from txbot.parsers.validation import normalize_message, validate_transaction, validate_updates, validate_user_id
from txbot.services.dedup import DuplicateResolver

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """Stages a single submission moves through."""

    RECEIVED = "received"
    EXTRACTING = "extracting"
    STRUCTURING = "structuring"
    VALIDATING = "validating"
    CHECKING_DUPLICATES = "checking_duplicates"
    DUPLICATE_FOUND = "duplicate_found"
    PERSISTING = "persisting"
    DONE = "done"


class _Run:
    """Tracks the current stage of one request for logging."""

    def __init__(self, kind: str):
        self.request_id = uuid.uuid4().hex[:8]
        self.kind = kind
        self.stage = PipelineStage.RECEIVED
        logger.info(f"[{self.request_id}] {kind} submission received")

    def advance(self, stage: PipelineStage) -> None:
        self.stage = stage
        logger.debug(f"[{self.request_id}] -> {stage.value}")

    def fail(self, error: BaseException) -> None:
        logger.warning(f"[{self.request_id}] failed during {self.stage.value}: {type(error).__name__}: {error}")


def format_money(amount: float, currency: str) -> str:
    if currency == "USD":
        return f"${amount:.2f}"
    return f"{amount:.2f} {currency}"


def confirmation_message(transaction: Transaction) -> str:
    source_text = " from receipt" if transaction.source == TransactionSource.OCR else ""
    type_text = "income" if transaction.type == TransactionType.INCOME else "expense"
    return (
        f"✅ Transaction recorded{source_text}: {format_money(transaction.amount, transaction.currency)} "
        f"{type_text} at {transaction.merchant} ({transaction.category}). "
        f"Transaction ID: {transaction.transaction_id}"
    )


def duplicate_message(existing: Transaction, source: TransactionSource) -> str:
    source_text = " from receipt" if source == TransactionSource.OCR else ""
    return (
        f"⚠️ Potential duplicate transaction detected{source_text}. Similar transaction found: "
        f"{format_money(existing.amount, existing.currency)} at {existing.merchant} on "
        f"{existing.date.isoformat()}. Transaction ID: {existing.transaction_id}"
    )


class TransactionPipeline:
    """Composes extraction, validation, duplicate detection and storage."""

    def __init__(
        self,
        store: TransactionStore,
        structured_extractor: StructuredExtractor,
        text_extractor: TextExtractor | None = None,
        duplicate_resolver: DuplicateResolver | None = None,
    ):
        self.store = store
        self.structured_extractor = structured_extractor
        self.text_extractor = text_extractor
        self.duplicate_resolver = duplicate_resolver or DuplicateResolver(store)

    async def process_text(self, user_id: str, message: str) -> PipelineResult:
        """Process a free-text transaction report."""
        run = _Run("text")
        try:
            valid_user_id = validate_user_id(user_id)
            text = normalize_message(message) if isinstance(message, str) else ""
            return await self._structure_and_commit(run, valid_user_id, text, TransactionSource.MANUAL)
        except Exception as e:
            run.fail(e)
            raise

    async def process_image_file(self, user_id: str, image_path: str | Path) -> PipelineResult:
        """Process a receipt stored in a temporary file; the file is always removed."""
        run = _Run("receipt file")
        try:
            valid_user_id = validate_user_id(user_id)
            run.advance(PipelineStage.EXTRACTING)
            text = await self._require_text_extractor().extract_from_file(image_path)
            return await self._structure_and_commit(run, valid_user_id, text, TransactionSource.OCR)
        except Exception as e:
            run.fail(e)
            raise
        finally:
            cleanup_image_file(image_path)

    async def process_image_bytes(self, user_id: str, image_bytes: bytes) -> PipelineResult:
        """Process a receipt already held in memory."""
        run = _Run("receipt bytes")
        try:
            valid_user_id = validate_user_id(user_id)
            run.advance(PipelineStage.EXTRACTING)
            text = await self._require_text_extractor().extract(image_bytes)
            return await self._structure_and_commit(run, valid_user_id, text, TransactionSource.OCR)
        except Exception as e:
            run.fail(e)
            raise

    async def _structure_and_commit(
        self, run: _Run, user_id: str, text: str, source: TransactionSource
    ) -> PipelineResult:
        run.advance(PipelineStage.STRUCTURING)
        draft = await self.structured_extractor.extract(text)
        draft = draft.model_copy(update={"source": source, "raw_text": text})

        run.advance(PipelineStage.VALIDATING)
        validated = validate_transaction(draft)

        run.advance(PipelineStage.CHECKING_DUPLICATES)
        duplicates = await asyncio.to_thread(self.duplicate_resolver.find_duplicates, user_id, validated)
        if duplicates:
            run.advance(PipelineStage.DUPLICATE_FOUND)
            existing = duplicates[0]
            logger.info(f"[{run.request_id}] duplicate of {existing.transaction_id}, nothing written")
            return PipelineResult(
                transaction=None,
                message=duplicate_message(existing, source),
                is_duplicate=True,
                duplicate_transaction=existing,
            )

        run.advance(PipelineStage.PERSISTING)
        created = await asyncio.to_thread(self._persist, user_id, validated)

        run.advance(PipelineStage.DONE)
        logger.info(f"[{run.request_id}] stored {created.transaction_id}")
        return PipelineResult(transaction=created, message=confirmation_message(created), is_duplicate=False)

    def _persist(self, user_id: str, validated: ValidatedTransaction) -> Transaction:
        return self.store.put(Transaction.create(user_id, validated))

    def _require_text_extractor(self) -> TextExtractor:
        if self.text_extractor is None:
            raise ExtractionFailure(ExtractionReason.NOT_CONFIGURED, "OCR is not configured", stage="ocr")
        return self.text_extractor

    # Administrative operations, outside the extraction path

    def get_history(self, user_id: str, limit: int = 100) -> list[Transaction]:
        return self.store.list_by_user(validate_user_id(user_id), limit)

    def get_transaction(self, user_id: str, transaction_id: str) -> Transaction | None:
        return self.store.get(validate_user_id(user_id), transaction_id)

    def update_transaction(self, user_id: str, transaction_id: str, updates: dict[str, Any]) -> Transaction | None:
        """Validate allow-listed fields, then write them."""
        return self.store.update(validate_user_id(user_id), transaction_id, validate_updates(updates))

    def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        return self.store.delete(validate_user_id(user_id), transaction_id)
