"""LLM adapter that turns free text into a candidate transaction."""

import asyncio
import json
import logging
from datetime import date
from typing import Any, Awaitable, Callable

import litellm
from litellm import acompletion

from txbot.config import Settings, settings
from txbot.errors import ExtractionFailure, ExtractionReason, SchemaMismatch
from txbot.models import TransactionDraft
from txbot.parsers.validation import ISO_DATE_RE, clean_amount_string, parse_date_value

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("amount", "date", "merchant", "category", "type")
CONTRACT_FIELDS = REQUIRED_FIELDS + ("currency", "description")

SUGGESTED_CATEGORIES = (
    "Food",
    "Transport",
    "Shopping",
    "Entertainment",
    "Bills",
    "Healthcare",
    "Education",
    "Income",
    "Other",
)

SYSTEM_PROMPT = f"""You are a transaction data extraction assistant. Your job is to extract structured transaction information from user messages or OCR text and return ONLY valid JSON.

IMPORTANT RULES:
1. You MUST return ONLY valid JSON, no explanations, no markdown, no code blocks
2. The JSON must match this exact structure:
{{
  "amount": <number>,
  "date": "<YYYY-MM-DD>",
  "merchant": "<string>",
  "category": "<string>",
  "type": "income" or "expense",
  "currency": "USD" (or other 3-letter code),
  "description": "<string>"
}}

3. Transaction types: "income" for money received, "expense" for money spent
4. If date is not mentioned, use today's date in YYYY-MM-DD format
5. If category is unclear, choose the best matching category from common ones: {", ".join(SUGGESTED_CATEGORIES)}
6. Amount should always be a positive number
7. If information is missing or unclear, make reasonable inferences based on context
8. For receipts, extract merchant name, total amount, and date from the text

Example valid responses:
{{"amount": 50.00, "date": "2024-01-15", "merchant": "Target", "category": "Shopping", "type": "expense", "currency": "USD", "description": "Groceries"}}

{{"amount": 1200.00, "date": "2024-01-01", "merchant": "Employer", "category": "Income", "type": "income", "currency": "USD", "description": "Monthly salary"}}"""

CompletionFn = Callable[..., Awaitable[Any]]

# First match wins
_LITELLM_ERROR_REASONS: tuple[tuple[type[BaseException], ExtractionReason, str], ...] = (
    (litellm.AuthenticationError, ExtractionReason.UNAUTHORIZED, "LLM API key is invalid"),
    (litellm.RateLimitError, ExtractionReason.RATE_LIMITED, "LLM API rate limit exceeded. Please try again later."),
    (
        litellm.ServiceUnavailableError,
        ExtractionReason.SERVICE_UNAVAILABLE,
        "LLM API service is temporarily unavailable. Please try again later.",
    ),
    (litellm.InternalServerError, ExtractionReason.SERVER_ERROR, "LLM API server error. Please try again later."),
    (litellm.Timeout, ExtractionReason.TIMEOUT, "LLM request timed out"),
)

_STATUS_REASONS = {
    401: (ExtractionReason.UNAUTHORIZED, "LLM API key is invalid"),
    429: (ExtractionReason.RATE_LIMITED, "LLM API rate limit exceeded. Please try again later."),
    500: (ExtractionReason.SERVER_ERROR, "LLM API server error. Please try again later."),
    503: (ExtractionReason.SERVICE_UNAVAILABLE, "LLM API service is temporarily unavailable. Please try again later."),
}


def strip_code_fences(content: str) -> str:
    """Remove markdown code fences and leading prose around a JSON object."""
    content = content.strip()

    # Handle both "```json" and "```" styles, and text before the block
    if "```" in content:
        parts = content.split("```")
        if len(parts) >= 3:
            json_content = parts[1]
            # Remove language identifier (e.g., "json\n")
            if json_content.lstrip().lower().startswith("json"):
                json_content = json_content.lstrip()[4:]
            content = json_content.strip()
        elif len(parts) == 2:
            # Only one ``` marker (incomplete response)
            content = parts[1].strip()
            if content.lower().startswith("json"):
                content = content[4:].strip()

    json_start = content.find("{")
    if json_start > 0:
        content = content[json_start:]
    return content


def parse_llm_json(content: str) -> dict[str, Any]:
    """Parse the model's reply into a JSON object."""
    cleaned = strip_code_fences(content)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON from LLM: {e}")
        logger.error(f"Content preview: {cleaned[:200]}...")
        raise ExtractionFailure(
            ExtractionReason.INVALID_JSON, f"Failed to parse JSON response from LLM: {e}", stage="llm", cause=e
        )

    if not isinstance(data, dict):
        raise ExtractionFailure(
            ExtractionReason.INVALID_JSON,
            f"LLM response must be a JSON object, got {type(data).__name__}",
            stage="llm",
        )
    return data


def find_missing_fields(data: dict[str, Any]) -> list[str]:
    """Every required key that is absent or null, in contract order."""
    return [field for field in REQUIRED_FIELDS if data.get(field) is None]


def normalize_extracted(data: dict[str, Any], today: date | None = None) -> TransactionDraft:
    """Post-process extracted fields into a candidate record."""
    fields = {key: data.get(key) for key in CONTRACT_FIELDS}

    amount = fields["amount"]
    if isinstance(amount, str):
        try:
            fields["amount"] = float(clean_amount_string(amount))
        except ValueError:
            pass  # Left as-is; the field validator reports it

    raw_date = fields["date"]
    if not (isinstance(raw_date, str) and ISO_DATE_RE.match(raw_date.strip())):
        parsed = parse_date_value(raw_date)
        if parsed is None:
            # Local date, not UTC
            parsed = today or date.today()
            logger.warning(f"Unparseable date from LLM ({raw_date!r}), using {parsed.isoformat()}")
        fields["date"] = parsed.isoformat()
    else:
        fields["date"] = raw_date.strip()

    fields["currency"] = fields["currency"] or "USD"
    fields["description"] = fields["description"] or ""
    return TransactionDraft(**fields)


def map_llm_error(error: BaseException) -> ExtractionFailure:
    """Translate a completion-service error into a typed extraction failure."""
    for error_type, reason, message in _LITELLM_ERROR_REASONS:
        if isinstance(error, error_type):
            return ExtractionFailure(reason, message, stage="llm", cause=error)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ExtractionFailure(ExtractionReason.TIMEOUT, "LLM request timed out", stage="llm", cause=error)

    status_code = getattr(error, "status_code", None)
    if status_code in _STATUS_REASONS:
        reason, message = _STATUS_REASONS[status_code]
        return ExtractionFailure(reason, message, stage="llm", cause=error)

    return ExtractionFailure(
        ExtractionReason.UNKNOWN, f"Failed to extract transaction data: {error}", stage="llm", cause=error
    )


class StructuredExtractor:
    """Extracts a candidate transaction from text with one completion call."""

    def __init__(self, config: Settings | None = None, completion: CompletionFn | None = None):
        self.config = config or settings
        self._completion = completion or acompletion

    def _get_model_name(self) -> str:
        """Get the appropriate model name based on provider."""
        if self.config.llm_provider == "openai":
            return self.config.openai_model
        return f"ollama/{self.config.ollama_model}"

    def _get_api_base(self) -> str | None:
        """Get the API base URL for Ollama."""
        if self.config.llm_provider == "ollama":
            return self.config.ollama_host
        return None

    def _get_api_key(self) -> str | None:
        if self.config.llm_provider == "openai":
            return self.config.openai_api_key
        return None

    def is_configured(self) -> bool:
        """Whether the configured provider has the credential it needs."""
        if self.config.llm_provider == "openai":
            return bool(self.config.openai_api_key)
        return True

    async def extract(self, text: str) -> TransactionDraft:
        """
        Extract structured transaction data from a user message or OCR text.

        Args:
            text: Free text describing one transaction

        Returns:
            Candidate record with contract defaults filled in

        Raises:
            ExtractionFailure: Empty input, missing credential, service error
                or unparseable response
            SchemaMismatch: Response lacks one or more required keys
        """
        if not text or not isinstance(text, str) or not text.strip():
            raise ExtractionFailure(
                ExtractionReason.EMPTY_INPUT, "Text input is required and cannot be empty", stage="llm"
            )
        if not self.is_configured():
            raise ExtractionFailure(
                ExtractionReason.NOT_CONFIGURED,
                "OpenAI API key is not configured. Please set OPENAI_API_KEY in your .env file.",
                stage="llm",
            )

        preview = text[:200] + ("..." if len(text) > 200 else "")
        logger.info(f"Extracting transaction with {self._get_model_name()}: {preview!r}")

        try:
            response = await self._completion(
                model=self._get_model_name(),
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"Extract transaction information from this text: {text}"},
                ],
                api_base=self._get_api_base(),
                api_key=self._get_api_key(),
                temperature=self.config.llm_temperature,
                max_tokens=self.config.llm_max_tokens,
                timeout=self.config.llm_timeout_seconds,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            failure = map_llm_error(e)
            logger.error(f"LLM call failed ({failure.reason.value}): {e}")
            raise failure from e

        content = _response_content(response)
        if not content or not content.strip():
            raise ExtractionFailure(ExtractionReason.EMPTY_RESPONSE, "Empty response from LLM", stage="llm")
        logger.debug(f"LLM raw response: {content}")

        data = parse_llm_json(content)

        missing = find_missing_fields(data)
        if missing:
            logger.error(f"LLM response missing fields {missing}: {json.dumps(data)[:500]}")
            raise SchemaMismatch(missing)

        draft = normalize_extracted(data)
        logger.info(f"Extracted candidate: {draft.merchant} {draft.amount} on {draft.date}")
        return draft


def _response_content(response: Any) -> str | None:
    try:
        return response.choices[0].message.content
    except (AttributeError, IndexError, TypeError):
        return None
