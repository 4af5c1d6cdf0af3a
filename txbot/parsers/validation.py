"""Field validation for transaction records.

Every validator returns the normalized value or raises ``InvalidField``
naming the offending field.

Time-zone policy for dates: a bare ``YYYY-MM-DD`` string is a calendar date
and is never shifted. Datetimes with an offset are converted to UTC before
the date is taken, naive datetimes are read as UTC, and "today" for the
future bound is the current UTC date.
"""

import logging
import math
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

from dateutil import parser as date_parser

from txbot.errors import InvalidField
from txbot.models import TransactionDraft, TransactionType, ValidatedTransaction

logger = logging.getLogger("txbot.validation")

MAX_AMOUNT = 1_000_000_000
MAX_FUTURE_DAYS = 365
MAX_USER_ID_LENGTH = 100
MAX_MERCHANT_LENGTH = 200
MAX_CATEGORY_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_STATUS_LENGTH = 50
DEFAULT_CURRENCY = "USD"

# Fields an update may touch; everything else is identity or provenance
UPDATABLE_FIELDS = ("amount", "date", "merchant", "category", "type", "description", "status")

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def clean_amount_string(amount_str: str) -> str:
    """
    Clean an amount string for parsing.

    Args:
        amount_str: Raw amount string

    Returns:
        Cleaned amount string ready for float conversion
    """
    if not amount_str:
        return ""

    # Remove currency symbols and whitespace
    cleaned = amount_str.replace("$", "").replace("€", "").replace("£", "").replace(" ", "").strip()

    # Remove thousand separators
    return cleaned.replace(",", "")


def normalize_message(text: str) -> str:
    """Trim a user message and collapse internal whitespace."""
    if not text:
        return ""
    return " ".join(text.split())


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_date_value(value: Any) -> date | None:
    """
    Parse a date-like value under the module's time-zone policy.

    Returns:
        The calendar date, or None if the value is not parseable
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if ISO_DATE_RE.match(text):
        try:
            return date.fromisoformat(text)
        except ValueError:
            return None

    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    return parse_date_value(parsed)


def validate_amount(amount: Any) -> float:
    """Coerce an amount to a positive float no larger than ``MAX_AMOUNT``."""
    if amount is None:
        raise InvalidField("amount", "Amount is required")
    if isinstance(amount, bool):
        raise InvalidField("amount", "Amount must be a valid number")

    if isinstance(amount, str):
        try:
            value = float(clean_amount_string(amount))
        except ValueError:
            raise InvalidField("amount", "Amount must be a valid number")
    elif isinstance(amount, (int, float)):
        try:
            value = float(amount)
        except OverflowError:
            raise InvalidField("amount", "Amount must be a valid number")
    else:
        raise InvalidField("amount", "Amount must be a valid number")

    if not math.isfinite(value):
        raise InvalidField("amount", "Amount must be a valid number")
    if value <= 0:
        raise InvalidField("amount", "Amount must be greater than 0")
    if value > MAX_AMOUNT:
        raise InvalidField("amount", "Amount is too large (max: 1,000,000,000)")
    return value


def validate_date(value: Any, today: date | None = None) -> date:
    """Parse a transaction date and reject dates more than a year ahead."""
    if value is None or value == "":
        raise InvalidField("date", "Date is required")

    parsed = parse_date_value(value)
    if parsed is None:
        raise InvalidField("date", "Invalid date format. Use ISO 8601 format (YYYY-MM-DD)")

    latest = (today or utc_today()) + timedelta(days=MAX_FUTURE_DAYS)
    if parsed > latest:
        raise InvalidField("date", "Date cannot be more than 1 year in the future")
    return parsed


def validate_transaction_type(value: Any) -> TransactionType:
    if not value:
        raise InvalidField("type", "Transaction type is required")
    if isinstance(value, TransactionType):
        return value

    normalized = str(value).strip().lower()
    try:
        return TransactionType(normalized)
    except ValueError:
        raise InvalidField("type", f"Transaction type must be either 'income' or 'expense'. Received: {value}")


def _validate_required_text(value: Any, field: str, label: str, max_length: int) -> str:
    if not value or not isinstance(value, str):
        raise InvalidField(field, f"{label} is required and must be a string")

    trimmed = value.strip()
    if not trimmed:
        raise InvalidField(field, f"{label} cannot be empty")
    if len(trimmed) > max_length:
        raise InvalidField(field, f"{label} is too long (max {max_length} characters)")
    return trimmed


def validate_merchant(value: Any) -> str:
    return _validate_required_text(value, "merchant", "Merchant name", MAX_MERCHANT_LENGTH)


def validate_category(value: Any) -> str:
    return _validate_required_text(value, "category", "Category", MAX_CATEGORY_LENGTH)


def validate_user_id(value: Any) -> str:
    return _validate_required_text(value, "userId", "User ID", MAX_USER_ID_LENGTH)


def validate_status(value: Any) -> str:
    return _validate_required_text(value, "status", "Status", MAX_STATUS_LENGTH).lower()


def validate_currency(value: Any) -> str:
    """Uppercase a 3-letter currency code, defaulting to USD when absent."""
    if value is None or value == "":
        return DEFAULT_CURRENCY
    if not isinstance(value, str):
        raise InvalidField("currency", "Currency must be a 3-letter code (e.g., USD, EUR)")

    code = value.strip().upper()
    if len(code) != 3:
        raise InvalidField("currency", "Currency must be a 3-letter code (e.g., USD, EUR)")
    if not CURRENCY_RE.match(code):
        raise InvalidField("currency", "Currency code must contain only letters")
    return code


def validate_description(value: Any) -> str:
    if value is None:
        return ""

    description = str(value).strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidField("description", f"Description is too long (max {MAX_DESCRIPTION_LENGTH} characters)")
    return description


def validate_transaction(draft: TransactionDraft | dict[str, Any], today: date | None = None) -> ValidatedTransaction:
    """
    Validate a candidate transaction field by field.

    Fields are checked in a fixed order (amount, date, type, merchant,
    category, currency, description) and the first failure is raised.

    Args:
        draft: Candidate record from extraction
        today: Reference day for the future-date bound (defaults to UTC today)

    Returns:
        The validated, normalized transaction

    Raises:
        InvalidField: On the first field that fails
    """
    if isinstance(draft, dict):
        draft = TransactionDraft.model_validate(draft)

    return ValidatedTransaction(
        amount=validate_amount(draft.amount),
        date=validate_date(draft.date, today=today),
        type=validate_transaction_type(draft.type),
        merchant=validate_merchant(draft.merchant),
        category=validate_category(draft.category),
        currency=validate_currency(draft.currency),
        description=validate_description(draft.description),
        source=draft.source,
        raw_text=draft.raw_text or "",
    )


_FIELD_VALIDATORS = {
    "amount": validate_amount,
    "date": validate_date,
    "merchant": validate_merchant,
    "category": validate_category,
    "type": validate_transaction_type,
    "description": validate_description,
    "status": validate_status,
}


def validate_updates(updates: dict[str, Any]) -> dict[str, Any]:
    """
    Validate a partial update against the mutable-field allow-list.

    Unknown keys are dropped. Raises InvalidField("updates") when no
    allowed field is present.
    """
    allowed = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS}
    if not allowed:
        raise InvalidField("updates", f"No valid fields to update. Allowed fields: {', '.join(UPDATABLE_FIELDS)}")

    dropped = sorted(set(updates) - set(allowed))
    if dropped:
        logger.debug(f"Ignoring non-updatable fields: {dropped}")

    return {key: _FIELD_VALIDATORS[key](value) for key, value in allowed.items()}
