"""AI-backed extraction of expenses from chat text and receipt photos.

The adapter never lets a provider problem escape: every failure is turned into
:class:`ExtractionFailed` (or a fixed text for insights) and logged here.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from decimal import Decimal
from io import BytesIO
from typing import Any

from openai import OpenAI, OpenAIError
from PIL import Image, ImageOps, UnidentifiedImageError

from .config import Settings
from .domain.entities import Extracted, ExtractionFailed, ExtractionResult, ExpenseRecord, ParsedExpenseGuess
from .validator import VALID_CATEGORIES, normalize_category, parse_amount, parse_date

logger = logging.getLogger(__name__)

NO_EXPENSES_INSIGHT = "No expenses found to analyze."
INSIGHTS_UNAVAILABLE = "Unable to generate insights at the moment. Please try again later."

MAX_IMAGE_SIDE = 2048
MAX_RECEIPT_ITEMS = 50
RECENT_EXPENSES_IN_PROMPT = 10
_NULL_STRINGS = {"", "null", "none", "unknown", "n/a"}

TEXT_PROMPT = (
    "Parse this expense message and extract the spending information.\n"
    'Message: "{message}"\n\n'
    "Return ONLY a valid JSON object:\n"
    "{{\n"
    '    "amount": <number>,\n'
    '    "description": "<what was purchased>",\n'
    '    "category": "<one of: {categories}>",\n'
    '    "merchant": "<store name if mentioned, otherwise null>",\n'
    '    "date": "<YYYY-MM-DD if an explicit date is mentioned, otherwise null>"\n'
    "}}\n\n"
    "Examples:\n"
    '- "Spent 500 on lunch" -> amount: 500\n'
    '- "Paid ₹250 for groceries" -> amount: 250\n'
    '- "Bus fare 30 rupees" -> amount: 30'
)

RECEIPT_PROMPT = (
    "Analyze this receipt image and extract the expense information.\n"
    "Return ONLY valid JSON with these fields:\n"
    "{{\n"
    '    "total": <final payable amount as number or null>,\n'
    '    "subtotal": <amount before taxes as number or null>,\n'
    '    "tax": <sum of taxes and service charges as number or null>,\n'
    '    "merchant": "<store/restaurant name>",\n'
    '    "category": "<one of: {categories}>",\n'
    '    "date": "<date in YYYY-MM-DD format or null>",\n'
    '    "items": ["item1", "item2"] or []\n'
    "}}\n\n"
    "Important:\n"
    "- The total is the final amount labelled total / grand total / balance due, not a subtotal or tax line.\n"
    "- If the receipt shows ₹250 or Rs.250, return 250.\n"
    "- Return ONLY the JSON, no explanations or markdown."
)

INSIGHTS_PROMPT = (
    "Analyze these recent expenses and provide 3-4 brief, actionable insights:\n\n"
    "Total expenses: {total}\n"
    "Number of transactions: {count}\n\n"
    "Category breakdown:\n{breakdown}\n\n"
    "Recent expenses:\n{recent}\n\n"
    "Provide insights on:\n"
    "1. Spending patterns by category\n"
    "2. Frequent merchants or types of purchases\n"
    "3. Practical money-saving suggestions\n"
    "4. Budget recommendations\n\n"
    "Keep response under 250 words, be helpful and encouraging, not judgmental.\n"
    "Focus on actionable advice."
)

_PROVIDER_ERRORS = (OpenAIError, ValueError, KeyError, IndexError, TypeError, AttributeError, ArithmeticError)


class ExpenseExtractor(ABC):
    """Turns unstructured input into an expense guess or an explicit failure."""

    text_configured: bool = False
    vision_configured: bool = False

    @abstractmethod
    async def parse_text_expense(self, message: str) -> ExtractionResult:
        ...

    @abstractmethod
    async def parse_receipt_image(self, image_bytes: bytes) -> ExtractionResult:
        ...

    @abstractmethod
    async def summarize_spending(self, records: Sequence[ExpenseRecord]) -> str:
        ...


def _extract_json_object(content: str | None) -> dict[str, Any]:
    content = content or ""
    start, end = content.find("{"), content.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("No JSON object in provider response")
    data = json.loads(content[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Provider response is not a JSON object")
    return data


def _coerce_amount(value: object) -> Decimal | None:
    if isinstance(value, str):
        value = value.replace(",", "").replace("₹", "").replace("Rs.", "").strip()
    return parse_amount(value)


def _clean_optional(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _NULL_STRINGS:
        return None
    return text


def _clean_items(raw: object) -> list[str]:
    if not isinstance(raw, list):
        return []
    items: list[str] = []
    for entry in raw:
        if isinstance(entry, dict):
            entry = entry.get("name") or entry.get("item")
        name = _clean_optional(entry)
        if name:
            items.append(name)
        if len(items) >= MAX_RECEIPT_ITEMS:
            break
    return items


def _clean_date(value: object):
    raw = _clean_optional(value)
    if raw is None:
        return None
    # Unparseable dates stay raw so validation can report them.
    return parse_date(raw) or raw


def select_receipt_total(data: dict[str, Any]) -> Decimal | None:
    """Pick the final payable amount from the totals a receipt reports."""
    total = _coerce_amount(data.get("total"))
    subtotal = _coerce_amount(data.get("subtotal"))
    tax = _coerce_amount(data.get("tax"))

    if total is not None and total > 0:
        return total
    if subtotal is not None and subtotal > 0:
        return subtotal + (tax if tax is not None and tax > 0 else Decimal(0))
    return _coerce_amount(data.get("amount"))


def build_guess(data: dict[str, Any], amount: Decimal | None) -> ExtractionResult:
    if amount is None:
        return ExtractionFailed("amount missing or not numeric")
    if amount <= 0:
        return ExtractionFailed("amount is not positive")

    category = _clean_optional(data.get("category"))
    return Extracted(
        ParsedExpenseGuess(
            amount=amount,
            description=_clean_optional(data.get("description")),
            category=normalize_category(category) if category else None,
            merchant=_clean_optional(data.get("merchant")),
            date=_clean_date(data.get("date")),
            items=_clean_items(data.get("items")),
        )
    )


def encode_image(image_bytes: bytes) -> str:
    """Re-encode an uploaded photo as an upright, bounded JPEG in base64."""
    with Image.open(BytesIO(image_bytes)) as original:
        image = ImageOps.exif_transpose(original) or original
        image = image.convert("RGB")
        if max(image.size) > MAX_IMAGE_SIDE:
            image.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE), Image.Resampling.LANCZOS)
        buffer = BytesIO()
        image.save(buffer, format="JPEG", quality=90)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class OpenAIExpenseExtractor(ExpenseExtractor):
    """Extractor speaking the OpenAI chat-completions protocol.

    The text and vision clients may point at different OpenAI-compatible
    providers; either may be ``None`` when its key is not configured.
    """

    def __init__(
        self,
        text_client: OpenAI | None,
        vision_client: OpenAI | None,
        *,
        text_model: str,
        vision_model: str,
        currency: str = "₹",
    ) -> None:
        self._text_client = text_client
        self._vision_client = vision_client
        self._text_model = text_model
        self._vision_model = vision_model
        self._currency = currency
        self.text_configured = text_client is not None
        self.vision_configured = vision_client is not None

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIExpenseExtractor":
        text_client = None
        vision_client = None
        if settings.text_ai_api_key:
            text_client = OpenAI(
                api_key=settings.text_ai_api_key,
                base_url=settings.text_ai_base_url,
                timeout=settings.ai_timeout_seconds,
            )
        else:
            logger.warning("GROQ_API_KEY is missing; text expense parsing and insights are disabled.")
        if settings.vision_ai_api_key:
            vision_client = OpenAI(
                api_key=settings.vision_ai_api_key,
                base_url=settings.vision_ai_base_url,
                timeout=settings.ai_timeout_seconds,
            )
        else:
            logger.warning("OPENAI_API_KEY is missing; receipt parsing is disabled.")
        return cls(
            text_client,
            vision_client,
            text_model=settings.text_ai_model,
            vision_model=settings.vision_ai_model,
            currency=settings.currency_symbol,
        )

    @staticmethod
    def _complete(
        client: OpenAI,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return (response.choices[0].message.content or "").strip()

    async def parse_text_expense(self, message: str) -> ExtractionResult:
        if self._text_client is None:
            logger.warning("Text extraction requested but no text provider is configured.")
            return ExtractionFailed("text provider not configured")

        prompt = TEXT_PROMPT.format(message=message, categories=", ".join(VALID_CATEGORIES))
        try:
            content = await asyncio.to_thread(
                self._complete,
                self._text_client,
                self._text_model,
                [{"role": "user", "content": prompt}],
                0.1,
                200,
            )
            data = _extract_json_object(content)
            result = build_guess(data, _coerce_amount(data.get("amount")))
        except OpenAIError as exc:
            logger.error("Text provider call failed: %s", exc)
            return ExtractionFailed("text provider error")
        except _PROVIDER_ERRORS as exc:
            logger.warning("Could not parse text provider response: %s", exc)
            return ExtractionFailed("malformed provider response")

        if isinstance(result, ExtractionFailed):
            logger.warning("Text extraction failed: %s", result.reason)
        return result

    async def parse_receipt_image(self, image_bytes: bytes) -> ExtractionResult:
        if self._vision_client is None:
            logger.warning("Receipt extraction requested but no vision provider is configured.")
            return ExtractionFailed("vision provider not configured")

        try:
            encoded = await asyncio.to_thread(encode_image, image_bytes)
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.warning("Unreadable receipt image: %s", exc)
            return ExtractionFailed("unreadable image")

        prompt = RECEIPT_PROMPT.format(categories=", ".join(VALID_CATEGORIES))
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}},
                ],
            }
        ]
        try:
            content = await asyncio.to_thread(
                self._complete, self._vision_client, self._vision_model, messages, 0, 500
            )
            data = _extract_json_object(content)
            result = build_guess(data, select_receipt_total(data))
        except OpenAIError as exc:
            logger.error("Vision provider call failed: %s", exc)
            return ExtractionFailed("vision provider error")
        except _PROVIDER_ERRORS as exc:
            logger.warning("Could not parse vision provider response: %s", exc)
            return ExtractionFailed("malformed provider response")

        if isinstance(result, ExtractionFailed):
            logger.warning("Receipt extraction failed: %s", result.reason)
        else:
            logger.info("Receipt data extracted (%d items)", len(result.guess.items))
        return result

    def _insights_prompt(self, records: Sequence[ExpenseRecord]) -> str:
        total = sum((record.amount for record in records), Decimal(0))
        breakdown: dict[str, Decimal] = {}
        for record in records:
            breakdown[record.category] = breakdown.get(record.category, Decimal(0)) + record.amount

        currency = self._currency
        return INSIGHTS_PROMPT.format(
            total=f"{currency}{total:.2f}",
            count=len(records),
            breakdown="\n".join(f"{category}: {currency}{amount:.2f}" for category, amount in breakdown.items()),
            recent="\n".join(
                f"{currency}{record.amount:.2f} - "
                f"{record.description or record.merchant or 'expense'} ({record.category})"
                for record in records[:RECENT_EXPENSES_IN_PROMPT]
            ),
        )

    async def summarize_spending(self, records: Sequence[ExpenseRecord]) -> str:
        if not records:
            return NO_EXPENSES_INSIGHT
        if self._text_client is None:
            logger.warning("Insights requested but no text provider is configured.")
            return INSIGHTS_UNAVAILABLE

        logger.info("Generating insights for %d expenses", len(records))
        try:
            content = await asyncio.to_thread(
                self._complete,
                self._text_client,
                self._text_model,
                [{"role": "user", "content": self._insights_prompt(records)}],
                0.3,
                300,
            )
        except _PROVIDER_ERRORS as exc:
            logger.error("Insights generation failed: %s", exc)
            return INSIGHTS_UNAVAILABLE
        return content or INSIGHTS_UNAVAILABLE
