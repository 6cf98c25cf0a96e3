"""Shape and range checks for user input, extracted expenses and webhooks.

Every function here is pure: checks return booleans or lists of
human-readable errors and never raise on bad input.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from .domain.entities import Category, ParsedExpenseGuess

VALID_CATEGORIES: tuple[str, ...] = tuple(category.value for category in Category)
DEFAULT_CATEGORY = Category.OTHER.value

MAX_AMOUNT = Decimal("10000000")
MAX_DESCRIPTION_LENGTH = 200
MAX_MERCHANT_LENGTH = 100
MAX_SANITIZED_LENGTH = 500
FUTURE_TOLERANCE = timedelta(days=1)
MAX_AGE_YEARS = 2

SIGNATURE_PREFIX = "sha256"

INVALID_AMOUNT_ERROR = "Invalid amount: must be a positive number"
INVALID_DATE_ERROR = "Invalid date: cannot be in the future or older than 2 years"

_PHONE_REGEX = re.compile(r"^\+?[1-9]\d{10,14}$")
_SENDER_ID_REGEX = re.compile(r"^\+?\d{1,20}$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_ANGLE_BRACKETS = re.compile(r"[<>]")


def invalid_category_error() -> str:
    return f"Invalid category. Valid: {', '.join(VALID_CATEGORIES)}"


def parse_amount(value: object) -> Decimal | None:
    """Parse ``value`` into a finite ``Decimal`` or return ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            return None
    else:
        return None
    if not amount.is_finite():
        return None
    return amount


def validate_amount(value: object, ceiling: Decimal = MAX_AMOUNT) -> bool:
    amount = parse_amount(value)
    return amount is not None and Decimal(0) < amount < ceiling


def validate_category(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    return value.strip().lower() in VALID_CATEGORIES


def normalize_category(value: object) -> str:
    """Map any value onto the fixed category set, defaulting to ``other``."""
    if validate_category(value):
        return str(value).strip().lower()
    return DEFAULT_CATEGORY


def parse_date(value: object) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def validate_date(value: object, today: date | None = None) -> bool:
    if value is None or value == "":
        return True
    parsed = parse_date(value)
    if parsed is None:
        return False
    today = today or date.today()
    return _years_before(today, MAX_AGE_YEARS) <= parsed <= today + FUTURE_TOLERANCE


def validate_text(value: str | None, max_length: int) -> bool:
    return value is None or len(value) <= max_length


def validate_phone(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    cleaned = re.sub(r"[^\d+]", "", value)
    return bool(_PHONE_REGEX.match(cleaned))


def validate_sender_id(value: object) -> bool:
    """Accept any WhatsApp id: digits only, whatever the country code length."""
    return isinstance(value, str) and bool(_SENDER_ID_REGEX.match(value.strip()))


def validate_expense_guess(
    guess: ParsedExpenseGuess | None,
    ceiling: Decimal = MAX_AMOUNT,
    today: date | None = None,
) -> list[str]:
    """Return the problems with ``guess`` in the order they are shown to users."""
    if guess is None:
        return ["Expense data is required"]

    errors: list[str] = []
    if not validate_amount(guess.amount, ceiling):
        errors.append(INVALID_AMOUNT_ERROR)
    if guess.category and not validate_category(guess.category):
        errors.append(invalid_category_error())
    if guess.date and not validate_date(guess.date, today):
        errors.append(INVALID_DATE_ERROR)
    if not validate_text(guess.description, MAX_DESCRIPTION_LENGTH):
        errors.append(f"Description too long (max {MAX_DESCRIPTION_LENGTH} chars)")
    if not validate_text(guess.merchant, MAX_MERCHANT_LENGTH):
        errors.append(f"Merchant name too long (max {MAX_MERCHANT_LENGTH} chars)")
    return errors


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(raw_payload: bytes | str, signature_header: str | None, secret: str | None) -> bool:
    """Check an ``x-hub-signature-256`` header against the raw request body."""
    if not signature_header or not secret:
        return False
    if isinstance(raw_payload, str):
        raw_payload = raw_payload.encode("utf-8")
    if not isinstance(raw_payload, (bytes, bytearray)):
        return False

    prefix, separator, provided = signature_header.strip().partition("=")
    if not separator or prefix.lower() != SIGNATURE_PREFIX or not provided:
        return False

    expected = compute_signature(bytes(raw_payload), secret)
    try:
        return hmac.compare_digest(provided.lower().encode("ascii"), expected.encode("ascii"))
    except UnicodeEncodeError:
        return False


def sanitize_text(value: object, max_length: int = MAX_SANITIZED_LENGTH) -> str:
    if not isinstance(value, str) or not value:
        return ""
    cleaned = _ANGLE_BRACKETS.sub("", value)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return cleaned.strip()[:max_length]
