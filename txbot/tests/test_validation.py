"""Tests for the transaction field validators."""

from datetime import date, datetime, timedelta, timezone

import pytest

from txbot.errors import InvalidField
from txbot.models import TransactionDraft, TransactionSource, TransactionType
from txbot.parsers.validation import (
    clean_amount_string,
    normalize_message,
    parse_date_value,
    validate_amount,
    validate_category,
    validate_currency,
    validate_date,
    validate_description,
    validate_merchant,
    validate_transaction,
    validate_transaction_type,
    validate_updates,
    validate_user_id,
)

TODAY = date(2026, 10, 17)


def make_draft(**overrides) -> TransactionDraft:
    """Helper to create a valid candidate record."""
    fields = {
        "amount": 12.5,
        "date": "2026-10-16",
        "merchant": "Starbucks",
        "category": "Food",
        "type": "expense",
        "currency": "usd",
        "description": "Latte",
    }
    fields.update(overrides)
    return TransactionDraft(**fields)


class TestValidateAmount:
    """Test amount validation."""

    @pytest.mark.parametrize("amount", [0, -0.01, -50, 1_000_000_000.01, 5e9])
    def test_rejects_out_of_range_amounts(self, amount):
        """Should reject amounts <= 0 or above one billion."""
        with pytest.raises(InvalidField) as exc_info:
            validate_amount(amount)
        assert exc_info.value.field == "amount"

    def test_accepts_boundaries(self):
        """Should accept the smallest positive and the maximum amount."""
        assert validate_amount(0.01) == 0.01
        assert validate_amount(1_000_000_000) == 1_000_000_000.0

    def test_coerces_numeric_strings(self):
        """Should coerce numeric strings to float."""
        assert validate_amount("12.50") == 12.5
        assert validate_amount(" $1,200.00 ") == 1200.0

    @pytest.mark.parametrize("amount", ["abc", "", None, True, float("nan"), float("inf"), [1]])
    def test_rejects_non_numeric(self, amount):
        """Should reject values that are not numbers."""
        with pytest.raises(InvalidField) as exc_info:
            validate_amount(amount)
        assert exc_info.value.field == "amount"

    def test_rejects_int_too_large_for_float(self):
        """Integers beyond float range are invalid, not an overflow."""
        with pytest.raises(InvalidField) as exc_info:
            validate_amount(10**400)
        assert exc_info.value.field == "amount"

    def test_clean_amount_string_strips_symbols(self):
        assert clean_amount_string("$ 1,234.56") == "1234.56"
        assert clean_amount_string("") == ""


class TestValidateDate:
    """Test date validation and the time-zone policy."""

    def test_accepts_iso_dates_unchanged(self):
        """Bare ISO dates are calendar dates and never shift."""
        assert validate_date("2026-01-01", today=TODAY) == date(2026, 1, 1)

    def test_accepts_other_formats(self):
        """Should accept any string dateutil can parse."""
        assert validate_date("March 5, 2025", today=TODAY) == date(2025, 3, 5)
        assert validate_date("01/15/2024", today=TODAY) == date(2024, 1, 15)

    def test_offset_datetimes_use_utc_date(self):
        """A late-evening time west of UTC falls on the next UTC day."""
        assert validate_date("2026-03-01T23:30:00-05:00", today=TODAY) == date(2026, 3, 2)

    def test_accepts_date_objects(self):
        assert validate_date(date(2026, 5, 1), today=TODAY) == date(2026, 5, 1)
        aware = datetime(2026, 5, 1, 1, 0, tzinfo=timezone(timedelta(hours=3)))
        assert validate_date(aware, today=TODAY) == date(2026, 4, 30)

    def test_accepts_exactly_one_year_ahead(self):
        latest = TODAY + timedelta(days=365)
        assert validate_date(latest.isoformat(), today=TODAY) == latest

    @pytest.mark.parametrize("days", [366, 400, 5000])
    def test_rejects_more_than_a_year_ahead(self, days):
        """Should reject dates more than 365 days after today."""
        with pytest.raises(InvalidField) as exc_info:
            validate_date((TODAY + timedelta(days=days)).isoformat(), today=TODAY)
        assert exc_info.value.field == "date"

    def test_no_lower_bound(self):
        assert validate_date("1970-01-01", today=TODAY) == date(1970, 1, 1)

    @pytest.mark.parametrize("value", ["not a date", "", None, "2026-13-45", 12345])
    def test_rejects_unparseable(self, value):
        with pytest.raises(InvalidField) as exc_info:
            validate_date(value, today=TODAY)
        assert exc_info.value.field == "date"

    def test_parse_date_value_returns_none_for_garbage(self):
        assert parse_date_value("yesterday-ish nonsense") is None


class TestValidateType:
    """Test transaction type validation."""

    @pytest.mark.parametrize("value", ["income", "INCOME", " Income "])
    def test_normalizes_income(self, value):
        assert validate_transaction_type(value) == TransactionType.INCOME

    def test_normalizes_expense(self):
        assert validate_transaction_type("Expense") == TransactionType.EXPENSE

    @pytest.mark.parametrize("value", ["refund", "transfer", "incomes"])
    def test_rejection_names_received_value(self, value):
        """The failure message should include what was received."""
        with pytest.raises(InvalidField) as exc_info:
            validate_transaction_type(value)
        assert exc_info.value.field == "type"
        assert value in exc_info.value.message

    def test_rejects_missing(self):
        with pytest.raises(InvalidField, match="required"):
            validate_transaction_type(None)


class TestValidateText:
    """Test merchant, category, description and user id validation."""

    def test_trims_merchant(self):
        assert validate_merchant("  Starbucks  ") == "Starbucks"

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_rejects_empty_merchant(self, value):
        with pytest.raises(InvalidField) as exc_info:
            validate_merchant(value)
        assert exc_info.value.field == "merchant"

    def test_merchant_length_limit(self):
        assert validate_merchant("m" * 200) == "m" * 200
        with pytest.raises(InvalidField, match="too long"):
            validate_merchant("m" * 201)

    def test_category_length_limit(self):
        assert validate_category("c" * 100) == "c" * 100
        with pytest.raises(InvalidField) as exc_info:
            validate_category("c" * 101)
        assert exc_info.value.field == "category"

    def test_category_is_free_form(self):
        assert validate_category("Pet Supplies") == "Pet Supplies"

    def test_description_defaults_and_limit(self):
        assert validate_description(None) == ""
        assert validate_description("  note ") == "note"
        with pytest.raises(InvalidField) as exc_info:
            validate_description("d" * 501)
        assert exc_info.value.field == "description"

    def test_user_id_bounds(self):
        assert validate_user_id(" user-1 ") == "user-1"
        with pytest.raises(InvalidField) as exc_info:
            validate_user_id("u" * 101)
        assert exc_info.value.field == "userId"
        with pytest.raises(InvalidField):
            validate_user_id("   ")


class TestValidateCurrency:
    """Test currency validation."""

    @pytest.mark.parametrize("value", [None, ""])
    def test_defaults_to_usd(self, value):
        assert validate_currency(value) == "USD"

    def test_normalizes_case_and_whitespace(self):
        assert validate_currency(" eur ") == "EUR"

    @pytest.mark.parametrize("value", ["US", "USDT", "U5D", "12$", 840])
    def test_rejects_invalid_codes(self, value):
        with pytest.raises(InvalidField) as exc_info:
            validate_currency(value)
        assert exc_info.value.field == "currency"


class TestValidateTransaction:
    """Test whole-record validation."""

    def test_returns_normalized_record(self):
        validated = validate_transaction(make_draft(type="EXPENSE", merchant=" Starbucks "), today=TODAY)

        assert validated.amount == 12.5
        assert validated.date == date(2026, 10, 16)
        assert validated.type == TransactionType.EXPENSE
        assert validated.merchant == "Starbucks"
        assert validated.currency == "USD"
        assert validated.description == "Latte"
        assert validated.source == TransactionSource.MANUAL

    def test_accepts_plain_dicts(self):
        validated = validate_transaction(
            {"amount": "5", "date": "2026-10-01", "merchant": "Uber", "category": "Transport", "type": "expense"},
            today=TODAY,
        )
        assert validated.amount == 5.0
        assert validated.currency == "USD"
        assert validated.description == ""

    def test_carries_provenance(self):
        draft = make_draft().model_copy(update={"source": TransactionSource.OCR, "raw_text": "TOTAL 12.50"})
        validated = validate_transaction(draft, today=TODAY)
        assert validated.source == TransactionSource.OCR
        assert validated.raw_text == "TOTAL 12.50"

    def test_reports_first_failure_in_field_order(self):
        """Amount is checked before date, date before type, and so on."""
        with pytest.raises(InvalidField) as exc_info:
            validate_transaction(make_draft(amount=-1, date="garbage", type="gift"), today=TODAY)
        assert exc_info.value.field == "amount"

        with pytest.raises(InvalidField) as exc_info:
            validate_transaction(make_draft(date="garbage", type="gift"), today=TODAY)
        assert exc_info.value.field == "date"

        with pytest.raises(InvalidField) as exc_info:
            validate_transaction(make_draft(type="gift", merchant=""), today=TODAY)
        assert exc_info.value.field == "type"

        with pytest.raises(InvalidField) as exc_info:
            validate_transaction(make_draft(category="", currency="US"), today=TODAY)
        assert exc_info.value.field == "category"

        with pytest.raises(InvalidField) as exc_info:
            validate_transaction(make_draft(currency="US", description="d" * 600), today=TODAY)
        assert exc_info.value.field == "currency"


class TestValidateUpdates:
    """Test partial update validation."""

    def test_keeps_only_allowed_fields(self):
        validated = validate_updates({"amount": "20", "merchant": " Cafe ", "userId": "x", "currency": "EUR"})
        assert validated == {"amount": 20.0, "merchant": "Cafe"}

    def test_validates_each_field(self):
        with pytest.raises(InvalidField) as exc_info:
            validate_updates({"type": "gift"})
        assert exc_info.value.field == "type"

    def test_rejects_when_nothing_allowed(self):
        with pytest.raises(InvalidField) as exc_info:
            validate_updates({"transactionId": "tx-1", "source": "ocr"})
        assert exc_info.value.field == "updates"

    def test_huge_integer_amount_is_invalid_field(self):
        with pytest.raises(InvalidField) as exc_info:
            validate_updates({"amount": 10**400})
        assert exc_info.value.field == "amount"

    def test_status_is_lowercased(self):
        assert validate_updates({"status": " Confirmed "}) == {"status": "confirmed"}


class TestNormalizeMessage:
    def test_collapses_whitespace(self):
        assert normalize_message("  Spent  $12.50\n at   Starbucks ") == "Spent $12.50 at Starbucks"

    def test_empty(self):
        assert normalize_message("") == ""
