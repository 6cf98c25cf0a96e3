import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import FIXED_NOW, PHONE, FakeExtractor, FakeTransport, make_message
from expense_bot.dispatcher import (
    FALLBACK_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    HELP_MESSAGE,
    INTENT_RULES,
    NOTHING_TO_DELETE_MESSAGE,
    NOTHING_TO_EDIT_MESSAGE,
    RECEIPT_DOWNLOAD_MESSAGE,
    RECEIPT_UNREADABLE_MESSAGE,
    REPHRASE_MESSAGE,
    SEARCH_TOO_SHORT_MESSAGE,
    SET_BUDGET_USAGE,
    UNSUPPORTED_MESSAGE,
    Dispatcher,
    classify,
)
from expense_bot.domain.entities import (
    ExpenseDraft,
    Extracted,
    ExtractionFailed,
    Intent,
    MessageType,
    ParsedExpenseGuess,
    User,
)
from expense_bot.extraction import NO_EXPENSES_INSIGHT
from expense_bot.validator import INVALID_AMOUNT_ERROR

TODAY = date(2026, 10, 19)


def _send(dispatcher, text, **kwargs) -> str:
    return asyncio.run(dispatcher.handle(make_message(text, **kwargs)))


def _save(repository, amount="100", category="food", day=TODAY, **fields):
    repository.touch_user(PHONE)
    return repository.save_expense(
        PHONE, ExpenseDraft(amount=Decimal(amount), category=category, date=day, **fields)
    )


@pytest.mark.parametrize(
    "text,intent",
    [
        ("set budget food 5000", Intent.SET_BUDGET),
        ("Set Budget for spent items", Intent.SET_BUDGET),
        ("budget", Intent.BUDGET_STATUS),
        ("Budgets", Intent.BUDGET_STATUS),
        ("show my budget status", Intent.BUDGET_STATUS),
        ("undo", Intent.DELETE_LAST),
        ("  Delete Last ", Intent.DELETE_LAST),
        ("edit last amount 300", Intent.EDIT_LAST_AMOUNT),
        ("edit last category food", Intent.EDIT_LAST_CATEGORY),
        ("search coffee", Intent.SEARCH),
        ("search spent today", Intent.SEARCH),
        ("Spent 250 on lunch", Intent.LOG_EXPENSE),
        ("paid 500 for groceries this month", Intent.LOG_EXPENSE),
        ("bought shoes", Intent.LOG_EXPENSE),
        ("cab 180 to office", Intent.LOG_EXPENSE),
        ("Uber 220", Intent.LOG_EXPENSE),
        ("today", Intent.TIME_RANGE),
        ("this week", Intent.TIME_RANGE),
        ("month", Intent.TIME_RANGE),
        ("month breakdown", Intent.TIME_RANGE),
        ("categories", Intent.CATEGORY_BREAKDOWN),
        ("category breakdown", Intent.CATEGORY_BREAKDOWN),
        ("insights", Intent.INSIGHTS),
        ("help", Intent.HELP),
        ("Hi", Intent.HELP),
        ("what is the weather", Intent.FALLBACK),
        ("", Intent.FALLBACK),
        ("budget for spent items", Intent.LOG_EXPENSE),
    ],
)
def test_classification_order(text, intent):
    assert classify(text) is intent


def test_rule_list_is_ordered_and_ends_with_fallback():
    intents = [rule.intent for rule in INTENT_RULES]

    assert intents[:3] == [Intent.SET_BUDGET, Intent.BUDGET_STATUS, Intent.DELETE_LAST]
    assert intents.index(Intent.SEARCH) < intents.index(Intent.LOG_EXPENSE) < intents.index(Intent.TIME_RANGE)
    assert intents[-1] is Intent.FALLBACK
    assert INTENT_RULES[-1].matches("anything at all")


def test_logged_expense_is_saved_with_running_total(dispatcher, repository, extractor, transport):
    _save(repository, "100", "transport")
    extractor.text_result = Extracted(
        ParsedExpenseGuess(amount=Decimal("250"), description="lunch", category="food")
    )

    reply = _send(dispatcher, "Spent 250 on lunch")

    assert "250" in reply
    assert "food" in reply
    assert "Today's total: ₹350.00" in reply
    assert transport.sent == [(PHONE, reply)]
    assert transport.read == ["wamid.test"]
    assert extractor.text_calls == ["Spent 250 on lunch"]
    saved = repository.get_last_expense(PHONE)
    assert saved.amount == Decimal("250")
    assert saved.category == "food"
    assert saved.date == TODAY


def test_logged_expense_defaults_category_and_sanitizes_text(dispatcher, repository, extractor):
    extractor.text_result = Extracted(
        ParsedExpenseGuess(amount=Decimal("99.999"), description="<script>snack</script>", merchant=" Kiosk\x00 ")
    )

    _send(dispatcher, "paid for a snack")

    saved = repository.get_last_expense(PHONE)
    assert saved.category == "other"
    assert saved.amount == Decimal("100.00")
    assert saved.description == "scriptsnack/script"
    assert saved.merchant == "Kiosk"


def test_validation_errors_are_listed_and_nothing_saved(dispatcher, repository, extractor, transport):
    extractor.text_result = Extracted(
        ParsedExpenseGuess(amount=Decimal("20000000"), category="snacks", date="2019-01-01")
    )

    reply = _send(dispatcher, "spent a fortune")

    lines = reply.splitlines()
    assert lines[1] == INVALID_AMOUNT_ERROR
    assert lines[2].startswith("Invalid category")
    assert lines[3].startswith("Invalid date")
    assert repository.get_last_expense(PHONE) is None
    assert len(transport.sent) == 1


def test_failed_extraction_asks_to_rephrase(dispatcher, repository, extractor):
    extractor.text_result = ExtractionFailed("no amount")

    assert _send(dispatcher, "spent some money") == REPHRASE_MESSAGE
    assert repository.get_last_expense(PHONE) is None


def test_set_budget_upserts_monthly_budget(dispatcher, repository):
    reply = _send(dispatcher, "set budget food 5000")
    again = _send(dispatcher, "set budget Food 6000")

    assert "food" in reply and "5000" in reply
    assert "6000" in again
    budgets = repository.get_budgets(PHONE)
    assert [(b.category, b.amount, b.period) for b in budgets] == [("food", Decimal("6000"), "monthly")]


@pytest.mark.parametrize(
    "text,expected",
    [
        ("set budget food", SET_BUDGET_USAGE),
        ("set budget snacks 100", "Invalid category"),
        ("set budget food -5", INVALID_AMOUNT_ERROR),
        ("set budget food lots", INVALID_AMOUNT_ERROR),
    ],
)
def test_set_budget_reports_usage_errors(dispatcher, repository, text, expected):
    assert expected in _send(dispatcher, text)
    assert repository.get_budgets(PHONE) == []


def test_budget_status_uses_calendar_month(dispatcher, repository):
    repository.touch_user(PHONE)
    repository.set_budget(PHONE, "food", Decimal("1000"))
    _save(repository, "250", "food")
    _save(repository, "500", "food", day=date(2026, 9, 30))

    reply = _send(dispatcher, "budget")

    assert "*food*: 25%" in reply
    assert "▓▓░░░░░░░░" in reply
    assert "₹250.00 / ₹1000.00" in reply


def test_budget_status_without_budgets(dispatcher):
    assert "No budgets set" in _send(dispatcher, "budgets")


def test_undo_deletes_most_recent_expense(dispatcher, repository):
    first = _save(repository, "100", "food")
    _save(repository, "40", "transport")

    reply = _send(dispatcher, "undo")

    assert "₹40.00" in reply and "transport" in reply
    assert repository.get_last_expense(PHONE).id == first.id


def test_undo_with_nothing_to_delete(dispatcher):
    assert _send(dispatcher, "delete last") == NOTHING_TO_DELETE_MESSAGE


def test_edit_last_amount_and_category(dispatcher, repository):
    _save(repository, "100", "food", merchant="Cafe")

    amount_reply = _send(dispatcher, "edit last amount 120.5")
    category_reply = _send(dispatcher, "edit last category Shopping")

    assert amount_reply == "✅ Updated amount to ₹120.50"
    assert category_reply == "✅ Updated category to shopping"
    last = repository.get_last_expense(PHONE)
    assert (last.amount, last.category, last.merchant) == (Decimal("120.50"), "shopping", "Cafe")


def test_edit_with_invalid_values_does_not_touch_repository(extractor, transport):
    repository = MagicMock()
    repository.touch_user.return_value = User(phone=PHONE, name=None)
    dispatcher = Dispatcher(repository, extractor, transport, clock=lambda: FIXED_NOW)

    assert INVALID_AMOUNT_ERROR in _send(dispatcher, "edit last amount 0")
    assert "Invalid category" in _send(dispatcher, "edit last category snacks")
    repository.get_last_expense.assert_not_called()
    repository.update_expense.assert_not_called()


def test_edit_without_expenses(dispatcher):
    assert _send(dispatcher, "edit last amount 50") == NOTHING_TO_EDIT_MESSAGE


def test_short_search_is_rejected_without_repository_call(extractor, transport):
    repository = MagicMock()
    repository.touch_user.return_value = User(phone=PHONE, name=None)
    dispatcher = Dispatcher(repository, extractor, transport, clock=lambda: FIXED_NOW)

    assert _send(dispatcher, "search a") == SEARCH_TOO_SHORT_MESSAGE
    assert _send(dispatcher, "search") == SEARCH_TOO_SHORT_MESSAGE
    repository.search_expenses.assert_not_called()


def test_search_lists_matches(dispatcher, repository):
    _save(repository, "180", "food", merchant="Starbucks")
    _save(repository, "60", "transport", description="metro card")

    reply = _send(dispatcher, "search StarBucks")

    assert 'Search Results for "StarBucks"' in reply
    assert "Starbucks" in reply
    assert "metro" not in reply


def test_time_range_queries(dispatcher, repository):
    _save(repository, "100", "food", merchant="Cafe")
    _save(repository, "70", "food", day=date(2026, 10, 14))

    today = _send(dispatcher, "today")
    week = _send(dispatcher, "week")

    assert today.startswith("📅 *Today's Expenses*")
    assert "*1 expenses*" in today
    assert week.startswith("📅 *This Week's Expenses*")
    assert "Total: *₹170.00*" in week


def test_time_range_without_expenses(dispatcher):
    assert _send(dispatcher, "month").endswith("No expenses found.")


def test_category_breakdown_covers_last_thirty_days(dispatcher, repository):
    _save(repository, "100", "food")
    _save(repository, "300", "shopping", day=date(2026, 9, 25))
    _save(repository, "900", "rent", day=date(2026, 9, 1))

    reply = _send(dispatcher, "categories")

    assert reply.index("shopping") < reply.index("food")
    assert "rent" not in reply


def test_insights_without_expenses_skip_summarizer(dispatcher, extractor):
    reply = _send(dispatcher, "insights")

    assert NO_EXPENSES_INSIGHT in reply
    assert extractor.summary_calls == []


def test_insights_with_expenses(dispatcher, repository, extractor):
    _save(repository, "100", "food")

    reply = _send(dispatcher, "show insights")

    assert reply == "💡 *Your Spending Insights*\n\nSpend less on snacks."
    assert len(extractor.summary_calls[0]) == 1


def test_help_and_fallback(dispatcher):
    assert _send(dispatcher, "hello") == HELP_MESSAGE
    assert _send(dispatcher, "blah") == FALLBACK_MESSAGE


def test_receipt_with_zero_amount_is_rejected(dispatcher, repository, extractor, transport):
    transport.media["media-1"] = b"jpeg-bytes"
    extractor.receipt_result = Extracted(ParsedExpenseGuess(amount=Decimal(0), merchant="Shop"))

    reply = _send(dispatcher, None, kind=MessageType.IMAGE, media_id="media-1")

    assert INVALID_AMOUNT_ERROR in reply
    assert reply.startswith("⚠️ Receipt processed but data was invalid")
    assert extractor.receipt_calls == [b"jpeg-bytes"]
    assert repository.get_last_expense(PHONE) is None


def test_receipt_is_saved(dispatcher, repository, extractor, transport):
    transport.media["media-2"] = b"jpeg-bytes"
    extractor.receipt_result = Extracted(
        ParsedExpenseGuess(
            amount=Decimal("1180"),
            merchant="Spice Route",
            category="food",
            date=date(2026, 10, 18),
            items=["Paneer Tikka", "Naan"],
        )
    )

    reply = _send(dispatcher, None, kind=MessageType.IMAGE, media_id="media-2")

    assert reply.startswith("✅ *Receipt Processed!*")
    assert "Spice Route" in reply
    saved = repository.get_last_expense(PHONE)
    assert saved.items == ["Paneer Tikka", "Naan"]
    assert saved.date == date(2026, 10, 18)


def test_receipt_download_and_extraction_failures(dispatcher, extractor, transport):
    assert _send(dispatcher, None, kind=MessageType.IMAGE, media_id="missing") == RECEIPT_DOWNLOAD_MESSAGE

    transport.media["media-3"] = b"blurry"
    extractor.receipt_result = ExtractionFailed("unreadable")
    assert _send(dispatcher, None, kind=MessageType.IMAGE, media_id="media-3") == RECEIPT_UNREADABLE_MESSAGE


def test_unsupported_message_type(dispatcher):
    assert _send(dispatcher, None, kind=MessageType.UNSUPPORTED) == UNSUPPORTED_MESSAGE


def test_handler_exception_becomes_generic_reply(extractor):
    repository = MagicMock()
    repository.touch_user.return_value = User(phone=PHONE, name=None)
    repository.get_last_expense.side_effect = RuntimeError("database is down")
    transport = FakeTransport()
    dispatcher = Dispatcher(repository, extractor, transport, clock=lambda: FIXED_NOW)

    reply = _send(dispatcher, "undo")

    assert reply == GENERIC_ERROR_MESSAGE
    assert transport.sent == [(PHONE, GENERIC_ERROR_MESSAGE)]


def test_extractor_exception_becomes_generic_reply(dispatcher, transport):
    class ExplodingExtractor(FakeExtractor):
        async def parse_text_expense(self, message):
            raise TimeoutError("provider timed out")

    dispatcher._extractor = ExplodingExtractor()

    assert _send(dispatcher, "spent 10 on tea") == GENERIC_ERROR_MESSAGE
    assert len(transport.sent) == 1


def test_failed_delivery_is_swallowed(dispatcher, transport):
    transport.fail_sends = True

    assert _send(dispatcher, "help") == HELP_MESSAGE
    assert transport.sent == []


def test_today_follows_user_timezone(repository, extractor, transport):
    late_evening = FIXED_NOW.replace(hour=22)
    dispatcher = Dispatcher(repository, extractor, transport, clock=lambda: late_evening)

    assert dispatcher.today_for(User(phone=PHONE, name=None, timezone="UTC")) == date(2026, 10, 19)
    assert dispatcher.today_for(User(phone=PHONE, name=None, timezone="Not/AZone")) == date(2026, 10, 19)
