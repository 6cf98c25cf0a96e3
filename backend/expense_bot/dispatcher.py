"""Per-message intent classification and command handling.

Each inbound message is classified once against an ordered rule list (first
match wins) and answered with exactly one reply. Nothing is remembered between
messages; handlers read the sender's data fresh from the repository.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .domain.entities import (
    ExpenseDraft,
    Extracted,
    InboundMessage,
    Intent,
    MessageType,
    ParsedExpenseGuess,
    User,
)
from .extraction import NO_EXPENSES_INSIGHT, ExpenseExtractor
from .formatting import (
    DEFAULT_CURRENCY,
    format_amount,
    format_budget_status,
    format_category_summary,
    format_expense_saved,
    format_expense_summary,
)
from .repository import Repository, month_start
from .validator import (
    DEFAULT_CATEGORY,
    INVALID_AMOUNT_ERROR,
    MAX_AMOUNT,
    MAX_DESCRIPTION_LENGTH,
    MAX_MERCHANT_LENGTH,
    invalid_category_error,
    parse_amount,
    parse_date,
    sanitize_text,
    validate_amount,
    validate_category,
    validate_expense_guess,
)
from .whatsapp import MessageTransport, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

REPORT_WINDOW = timedelta(days=30)
MIN_SEARCH_LENGTH = 2
SEARCH_LIMIT = 20
CENTS = Decimal("0.01")

EXPENSE_KEYWORDS = ("spent", "paid", "bought")
TRANSIT_PREFIX = re.compile(r"^(cab|uber|taxi|auto|bus|metro)\s")
GREETINGS = {"hi", "hello", "hey", "start"}

HELP_MESSAGE = """👋 *Welcome to AI Expense Tracker!*

📸 *Send receipt photos* - I'll extract details automatically

✍️ *Type expenses* like:
• "Spent 250 on lunch"
• "Paid 500 for groceries"
• "Cab 180 to office"

📊 *Check your spending:*
• *today* - Today's expenses
• *week* - This week's expenses
• *month* - This month's expenses
• *categories* - Spending by category (last 30 days)
• *insights* - AI spending analysis
• *search coffee* - Find past expenses

💰 *Budgets:*
• *set budget food 5000* - Set a monthly budget
• *budget* - Budget status

✏️ *Corrections:*
• *undo* or *delete last* - Remove the last expense
• *edit last amount 300* - Fix the last amount
• *edit last category food* - Fix the last category

Just send a message or photo to get started! 🚀"""

FALLBACK_MESSAGE = (
    "🤔 I didn't understand that. Send \"help\" to see commands or try:\n\n"
    "• Send receipt photo\n"
    "• Type \"Spent 250 on lunch\"\n"
    "• Ask \"today\""
)

REPHRASE_MESSAGE = (
    "🤔 I couldn't work out the expense from that message. Try rephrasing, for example:\n\n"
    "• \"Spent 250 on lunch\"\n"
    "• \"Paid 500 for groceries at DMart\"\n"
    "• \"Bought a book for 399\""
)

RECEIPT_UNREADABLE_MESSAGE = (
    "⚠️ I couldn't read that receipt. Please send a clearer photo or type the expense, "
    "e.g. \"Spent 250 on lunch\"."
)
RECEIPT_DOWNLOAD_MESSAGE = "⚠️ Error processing your receipt. Please try again or type your expense manually."
UNSUPPORTED_MESSAGE = "I can help you track expenses! Send a receipt photo or type 'help' for commands."
GENERIC_ERROR_MESSAGE = "Sorry, something went wrong. Please try again."

SET_BUDGET_USAGE = '⚠️ Usage: "set budget [category] [amount]"\nExample: "set budget food 5000"'
EDIT_AMOUNT_USAGE = '⚠️ Usage: "edit last amount [amount]"\nExample: "edit last amount 300"'
EDIT_CATEGORY_USAGE = '⚠️ Usage: "edit last category [category]"\nExample: "edit last category food"'
SEARCH_TOO_SHORT_MESSAGE = f"⚠️ Search term too short. Use at least {MIN_SEARCH_LENGTH} characters."
NOTHING_TO_DELETE_MESSAGE = "⚠️ No expenses found to delete."
NOTHING_TO_EDIT_MESSAGE = "⚠️ No expenses found to edit."


def normalize_command(text: str | None) -> str:
    return (text or "").strip().lower()


def _parse_command_amount(token: str | None) -> Decimal | None:
    if token is None:
        return None
    return parse_amount(token.replace("₹", "").replace(",", ""))


def _to_cents(amount: Decimal | None, ceiling: Decimal) -> Decimal | None:
    """Round a valid amount to cents; ``None`` when it is invalid or rounds to zero."""
    if amount is None or not validate_amount(amount, ceiling):
        return None
    cents = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    return cents if cents > 0 else None


def _contains_any(*words: str) -> Callable[[str], bool]:
    return lambda text: any(word in text for word in words)


def _is_set_budget(text: str) -> bool:
    return text.startswith("set budget")


def _is_budget_status(text: str) -> bool:
    return text in ("budget", "budgets") or "budget status" in text


def _is_delete_last(text: str) -> bool:
    return text in ("delete last", "undo")


def _is_edit_last_amount(text: str) -> bool:
    return text == "edit last amount" or text.startswith("edit last amount ")


def _is_edit_last_category(text: str) -> bool:
    return text == "edit last category" or text.startswith("edit last category ")


def _is_search(text: str) -> bool:
    return text == "search" or text.startswith("search ")


def _is_expense(text: str) -> bool:
    return any(word in text for word in EXPENSE_KEYWORDS) or bool(TRANSIT_PREFIX.match(text))


def _is_help(text: str) -> bool:
    return "help" in text or text in GREETINGS


@dataclass(slots=True)
class Turn:
    """Everything a handler needs about the message being answered."""

    message: InboundMessage
    phone: str
    text: str
    command: str
    today: date


Handler = Callable[["Dispatcher", Turn], Awaitable[str]]


@dataclass(frozen=True, slots=True)
class IntentRule:
    intent: Intent
    matches: Callable[[str], bool]
    handler: Handler


class Dispatcher:
    def __init__(
        self,
        repository: Repository,
        extractor: ExpenseExtractor,
        transport: MessageTransport,
        *,
        currency: str = DEFAULT_CURRENCY,
        max_amount: Decimal = MAX_AMOUNT,
        default_timezone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._extractor = extractor
        self._transport = transport
        self._currency = currency
        self._max_amount = max_amount
        self._default_timezone = default_timezone
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _zone_for(self, user: User) -> timezone | ZoneInfo:
        name = user.timezone or self._default_timezone
        if name.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r for %s, using UTC", name, user.phone)
            return timezone.utc

    def today_for(self, user: User) -> date:
        return self._clock().astimezone(self._zone_for(user)).date()

    async def _db(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def handle(self, message: InboundMessage) -> str:
        """Answer one inbound message with exactly one reply and return it."""
        phone = message.sender
        log_extra = {"message_id": message.id, "sender": phone}
        try:
            user = await self._db(self._repository.touch_user, phone, message.sender_name)
            await self._transport.mark_as_read(message.id)
            reply = await self._reply_for(message, user)
        except Exception:
            logger.exception("Failed to handle message %s from %s", message.id, phone, extra=log_extra)
            reply = GENERIC_ERROR_MESSAGE

        try:
            await self._transport.send_text(phone, reply)
        except Exception:
            logger.error(
                "Could not deliver reply for message %s to %s", message.id, phone, exc_info=True, extra=log_extra
            )
        return reply

    async def _reply_for(self, message: InboundMessage, user: User) -> str:
        today = self.today_for(user)
        if message.type is MessageType.IMAGE:
            return await self.handle_receipt(message, today)
        if message.type is not MessageType.TEXT:
            return UNSUPPORTED_MESSAGE

        text = (message.text or "").strip()
        command = normalize_command(text)
        rule = match_rule(command)
        logger.info(
            "Message %s from %s classified as %s",
            message.id,
            message.sender,
            rule.intent.value,
            extra={"message_id": message.id, "sender": message.sender, "intent": rule.intent.value},
        )
        turn = Turn(message=message, phone=message.sender, text=text, command=command, today=today)
        return await rule.handler(self, turn)

    async def handle_set_budget(self, turn: Turn) -> str:
        parts = turn.command.split()
        if len(parts) < 4:
            return SET_BUDGET_USAGE

        category = parts[2]
        amount = _to_cents(_parse_command_amount(parts[3]), self._max_amount)
        errors = []
        if not validate_category(category):
            errors.append(invalid_category_error())
        if amount is None:
            errors.append(INVALID_AMOUNT_ERROR)
        if errors:
            return "❌ " + "\n".join(errors) + '\n\nTry: "set budget food 5000"'

        budget = await self._db(self._repository.set_budget, turn.phone, category, amount)
        return f"✅ Budget set for *{budget.category}*: {format_amount(budget.amount, self._currency)} per month"

    async def handle_budget_status(self, turn: Turn) -> str:
        statuses = await self._db(
            self._repository.get_budget_status, turn.phone, month_start(turn.today), turn.today
        )
        return format_budget_status(statuses, self._currency)

    async def handle_delete_last(self, turn: Turn) -> str:
        last = await self._db(self._repository.get_last_expense, turn.phone)
        if last is None:
            return NOTHING_TO_DELETE_MESSAGE
        deleted = await self._db(self._repository.delete_expense, last.id, turn.phone)
        if not deleted:
            return NOTHING_TO_DELETE_MESSAGE
        logger.info("Deleted expense %s for %s: %s", last.id, turn.phone, last.get_details())
        return f"🗑️ Deleted last expense: {format_amount(last.amount, self._currency)} ({last.category})"

    async def handle_edit_last_amount(self, turn: Turn) -> str:
        parts = turn.command.split()
        if len(parts) < 4:
            return EDIT_AMOUNT_USAGE
        amount = _to_cents(_parse_command_amount(parts[3]), self._max_amount)
        if amount is None:
            return f"❌ {INVALID_AMOUNT_ERROR}"

        last = await self._db(self._repository.get_last_expense, turn.phone)
        if last is None:
            return NOTHING_TO_EDIT_MESSAGE
        updated = await self._db(self._repository.update_expense, last.id, turn.phone, amount=amount)
        if updated is None:
            return NOTHING_TO_EDIT_MESSAGE
        return f"✅ Updated amount to {format_amount(updated.amount, self._currency)}"

    async def handle_edit_last_category(self, turn: Turn) -> str:
        parts = turn.command.split()
        if len(parts) < 4:
            return EDIT_CATEGORY_USAGE
        category = parts[3]
        if not validate_category(category):
            return f"❌ {invalid_category_error()}"

        last = await self._db(self._repository.get_last_expense, turn.phone)
        if last is None:
            return NOTHING_TO_EDIT_MESSAGE
        updated = await self._db(self._repository.update_expense, last.id, turn.phone, category=category)
        if updated is None:
            return NOTHING_TO_EDIT_MESSAGE
        return f"✅ Updated category to {updated.category}"

    async def handle_search(self, turn: Turn) -> str:
        query = turn.text[len("search"):].strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return SEARCH_TOO_SHORT_MESSAGE

        results = await self._db(self._repository.search_expenses, turn.phone, query, SEARCH_LIMIT)
        shown = sanitize_text(query, 50)
        return f'🔎 *Search Results for "{shown}"*\n\n{format_expense_summary(results, self._currency)}'

    async def handle_log_expense(self, turn: Turn) -> str:
        result = await self._extractor.parse_text_expense(turn.text)
        if not isinstance(result, Extracted):
            logger.warning("Could not extract an expense from message %s: %s", turn.message.id, result.reason)
            return REPHRASE_MESSAGE
        return await self.persist_guess(turn.phone, result.guess, turn.today, receipt=False)

    async def handle_time_range(self, turn: Turn) -> str:
        if "today" in turn.command:
            title = "📅 *Today's Expenses*"
            expenses = await self._db(self._repository.get_day_expenses, turn.phone, turn.today)
        elif "week" in turn.command:
            title = "📅 *This Week's Expenses*"
            expenses = await self._db(self._repository.get_week_expenses, turn.phone, turn.today)
        else:
            title = "📅 *This Month's Expenses*"
            expenses = await self._db(self._repository.get_month_expenses, turn.phone, turn.today)
        return f"{title}\n\n{format_expense_summary(expenses, self._currency)}"

    async def handle_category_breakdown(self, turn: Turn) -> str:
        totals = await self._db(
            self._repository.get_totals_by_category, turn.phone, turn.today - REPORT_WINDOW, turn.today
        )
        return format_category_summary(totals, self._currency)

    async def handle_insights(self, turn: Turn) -> str:
        records = await self._db(self._repository.get_expenses, turn.phone, turn.today - REPORT_WINDOW, turn.today)
        if not records:
            insight = NO_EXPENSES_INSIGHT
        else:
            insight = await self._extractor.summarize_spending(records)
        return f"💡 *Your Spending Insights*\n\n{insight}"

    async def handle_help(self, turn: Turn) -> str:
        return HELP_MESSAGE

    async def handle_fallback(self, turn: Turn) -> str:
        return FALLBACK_MESSAGE

    async def handle_receipt(self, message: InboundMessage, today: date) -> str:
        if not message.media_id:
            logger.warning("Image message %s carries no media id", message.id)
            return RECEIPT_DOWNLOAD_MESSAGE
        try:
            image_bytes = await self._transport.download_media(message.media_id)
        except TransportError:
            logger.error("Receipt download failed for message %s", message.id, exc_info=True)
            return RECEIPT_DOWNLOAD_MESSAGE

        result = await self._extractor.parse_receipt_image(image_bytes)
        if not isinstance(result, Extracted):
            logger.warning("Could not extract a receipt from message %s: %s", message.id, result.reason)
            return RECEIPT_UNREADABLE_MESSAGE
        return await self.persist_guess(message.sender, result.guess, today, receipt=True)

    async def persist_guess(self, phone: str, guess: ParsedExpenseGuess, today: date, *, receipt: bool) -> str:
        """Validate an extracted guess and store it, or explain what is wrong."""
        errors = validate_expense_guess(guess, self._max_amount, today)
        amount = _to_cents(parse_amount(guess.amount), self._max_amount)
        if not errors and amount is None:
            errors = [INVALID_AMOUNT_ERROR]
        if errors:
            logger.info("Rejected expense for %s: %s", phone, "; ".join(errors))
            if receipt:
                return (
                    "⚠️ Receipt processed but data was invalid:\n"
                    + "\n".join(errors)
                    + "\n\nPlease try taking a clearer photo."
                )
            return (
                "⚠️ I understood the amount, but there were issues:\n"
                + "\n".join(errors)
                + "\n\nPlease try again with a clearer message."
            )

        category = (guess.category or DEFAULT_CATEGORY).strip().lower()
        if not validate_category(category):
            logger.error("Validated expense carried unknown category %r; storing as %s", category, DEFAULT_CATEGORY)
            category = DEFAULT_CATEGORY

        items = [sanitize_text(item, MAX_MERCHANT_LENGTH) for item in guess.items]
        draft = ExpenseDraft(
            amount=amount,
            category=category,
            date=parse_date(guess.date) or today,
            merchant=sanitize_text(guess.merchant, MAX_MERCHANT_LENGTH) or None,
            description=sanitize_text(guess.description, MAX_DESCRIPTION_LENGTH) or None,
            items=[item for item in items if item],
        )
        record = await self._db(self._repository.save_expense, phone, draft)
        day_total = await self._db(self._repository.get_day_total, phone, today)
        logger.info("Saved expense %s for %s", record.id, phone)
        return format_expense_saved(record, day_total, self._currency, receipt=receipt)


INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(Intent.SET_BUDGET, _is_set_budget, Dispatcher.handle_set_budget),
    IntentRule(Intent.BUDGET_STATUS, _is_budget_status, Dispatcher.handle_budget_status),
    IntentRule(Intent.DELETE_LAST, _is_delete_last, Dispatcher.handle_delete_last),
    IntentRule(Intent.EDIT_LAST_AMOUNT, _is_edit_last_amount, Dispatcher.handle_edit_last_amount),
    IntentRule(Intent.EDIT_LAST_CATEGORY, _is_edit_last_category, Dispatcher.handle_edit_last_category),
    IntentRule(Intent.SEARCH, _is_search, Dispatcher.handle_search),
    IntentRule(Intent.LOG_EXPENSE, _is_expense, Dispatcher.handle_log_expense),
    IntentRule(Intent.TIME_RANGE, _contains_any("today", "week", "month"), Dispatcher.handle_time_range),
    IntentRule(
        Intent.CATEGORY_BREAKDOWN,
        _contains_any("category", "categories", "breakdown"),
        Dispatcher.handle_category_breakdown,
    ),
    IntentRule(Intent.INSIGHTS, _contains_any("insight"), Dispatcher.handle_insights),
    IntentRule(Intent.HELP, _is_help, Dispatcher.handle_help),
    IntentRule(Intent.FALLBACK, lambda text: True, Dispatcher.handle_fallback),
)


def match_rule(command: str) -> IntentRule:
    for rule in INTENT_RULES:
        if rule.matches(command):
            return rule
    return INTENT_RULES[-1]


def classify(text: str | None) -> Intent:
    """Return the intent the dispatcher would route ``text`` to."""
    return match_rule(normalize_command(text)).intent
