import asyncio
import json
from datetime import date
from decimal import Decimal
from io import BytesIO
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from openai import OpenAIError
from PIL import Image

from expense_bot.domain.entities import Extracted, ExtractionFailed, ExpenseRecord
from expense_bot.extraction import (
    INSIGHTS_UNAVAILABLE,
    NO_EXPENSES_INSIGHT,
    OpenAIExpenseExtractor,
    encode_image,
    select_receipt_total,
)


def _completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _client(content: str | None = None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    if error is not None:
        client.chat.completions.create.side_effect = error
    else:
        client.chat.completions.create.return_value = _completion(content or "")
    return client


def _extractor(text_client=None, vision_client=None) -> OpenAIExpenseExtractor:
    return OpenAIExpenseExtractor(text_client, vision_client, text_model="text-model", vision_model="vision-model")


def _png_bytes(size=(40, 30)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color=(255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_text_expense_parsed_from_fenced_json():
    client = _client('```json\n{"amount": 250, "description": "lunch", "category": "Food", "merchant": null}\n```')

    result = asyncio.run(_extractor(text_client=client).parse_text_expense("Spent 250 on lunch"))

    assert isinstance(result, Extracted)
    assert result.guess.amount == Decimal("250")
    assert result.guess.category == "food"
    assert result.guess.description == "lunch"
    assert result.guess.merchant is None
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "text-model"
    assert "Spent 250 on lunch" in kwargs["messages"][0]["content"]


def test_unknown_category_is_normalized_to_other():
    client = _client('{"amount": "1,200", "category": "groceries", "merchant": "unknown", "date": "2026-10-18"}')

    result = asyncio.run(_extractor(text_client=client).parse_text_expense("Paid 1200 at the market"))

    assert isinstance(result, Extracted)
    assert result.guess.amount == Decimal("1200")
    assert result.guess.category == "other"
    assert result.guess.merchant is None
    assert result.guess.date == date(2026, 10, 18)


@pytest.mark.parametrize(
    "content",
    [
        "I could not find an amount",
        '{"amount": 0, "description": "nothing"}',
        '{"amount": -40}',
        '{"amount": "lots"}',
        '{"description": "no amount"}',
        '{"amount": 10',
        "[1, 2, 3]",
        "",
    ],
)
def test_text_extraction_fails_closed(content):
    result = asyncio.run(_extractor(text_client=_client(content)).parse_text_expense("Spent something"))

    assert isinstance(result, ExtractionFailed)


def test_provider_error_becomes_failure():
    client = _client(error=OpenAIError("timeout"))

    result = asyncio.run(_extractor(text_client=client).parse_text_expense("Spent 250 on lunch"))

    assert isinstance(result, ExtractionFailed)


def test_missing_text_client_fails_without_call():
    result = asyncio.run(_extractor().parse_text_expense("Spent 250 on lunch"))

    assert isinstance(result, ExtractionFailed)


def test_unparseable_date_is_kept_for_validation():
    client = _client('{"amount": 90, "date": "last tuesday"}')

    result = asyncio.run(_extractor(text_client=client).parse_text_expense("Paid 90 last tuesday"))

    assert isinstance(result, Extracted)
    assert result.guess.date == "last tuesday"


@pytest.mark.parametrize(
    "data,expected",
    [
        ({"total": 1180, "subtotal": 1000, "tax": 180}, Decimal("1180")),
        ({"total": 800, "subtotal": 1000, "tax": 0}, Decimal("800")),
        ({"total": 0, "subtotal": 1000, "tax": 180}, Decimal("1180")),
        ({"total": None, "subtotal": 1000, "tax": 180}, Decimal("1180")),
        ({"subtotal": 500}, Decimal("500")),
        ({"amount": 75}, Decimal("75")),
        ({"total": "₹2,450.50"}, Decimal("2450.50")),
        ({}, None),
    ],
)
def test_select_receipt_total_prefers_final_total(data, expected):
    assert select_receipt_total(data) == expected


def test_receipt_extracts_final_total_items_and_merchant():
    response = {
        "total": 1180,
        "subtotal": 1000,
        "tax": 180,
        "merchant": "Spice Route",
        "category": "food",
        "date": "2026-10-19",
        "items": ["Paneer Tikka", {"name": "Naan"}, None, ""],
    }
    client = _client(json.dumps(response))

    result = asyncio.run(_extractor(vision_client=client).parse_receipt_image(_png_bytes()))

    assert isinstance(result, Extracted)
    assert result.guess.amount == Decimal("1180")
    assert result.guess.merchant == "Spice Route"
    assert result.guess.items == ["Paneer Tikka", "Naan"]
    content = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_receipt_with_zero_total_fails_closed():
    client = _client('{"total": 0, "merchant": "Shop"}')

    result = asyncio.run(_extractor(vision_client=client).parse_receipt_image(_png_bytes()))

    assert isinstance(result, ExtractionFailed)


def test_unreadable_image_fails_without_provider_call():
    client = _client('{"total": 10}')

    result = asyncio.run(_extractor(vision_client=client).parse_receipt_image(b"not an image"))

    assert isinstance(result, ExtractionFailed)
    client.chat.completions.create.assert_not_called()


def test_encode_image_downscales_large_photos():
    encoded = encode_image(_png_bytes((4000, 1000)))

    import base64

    with Image.open(BytesIO(base64.b64decode(encoded))) as image:
        assert image.format == "JPEG"
        assert max(image.size) == 2048


def _record(amount: str, category: str) -> ExpenseRecord:
    return ExpenseRecord(
        id=1,
        user_phone="919876543210",
        amount=Decimal(amount),
        category=category,
        date=date(2026, 10, 19),
        description="lunch",
    )


def test_summarize_spending_with_no_records_skips_provider():
    client = _client("insight")

    assert asyncio.run(_extractor(text_client=client).summarize_spending([])) == NO_EXPENSES_INSIGHT
    client.chat.completions.create.assert_not_called()


def test_summarize_spending_builds_prompt_with_breakdown():
    client = _client("  Eat out less.  ")
    records = [_record("250", "food"), _record("100", "food"), _record("50", "transport")]

    insight = asyncio.run(_extractor(text_client=client).summarize_spending(records))

    assert insight == "Eat out less."
    prompt = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert "Total expenses: ₹400.00" in prompt
    assert "Number of transactions: 3" in prompt
    assert "food: ₹350.00" in prompt


def test_summarize_spending_degrades_on_provider_error():
    client = _client(error=OpenAIError("auth failed"))

    insight = asyncio.run(_extractor(text_client=client).summarize_spending([_record("10", "food")]))

    assert insight == INSIGHTS_UNAVAILABLE
