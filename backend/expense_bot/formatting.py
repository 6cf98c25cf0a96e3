"""Rendering of expenses, category totals and budgets into WhatsApp text."""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from .domain.entities import CATEGORY_EMOJIS, BudgetStatus, CategoryTotal, ExpenseRecord
from .validator import sanitize_text

DEFAULT_CURRENCY = "₹"
MAX_LISTED_EXPENSES = 10
PROGRESS_SEGMENTS = 10
FILLED_SEGMENT = "▓"
EMPTY_SEGMENT = "░"

NO_EXPENSES_MESSAGE = "No expenses found."
NO_CATEGORY_TOTALS_MESSAGE = "No spending by category found."
NO_BUDGETS_MESSAGE = '📊 No budgets set. Start by sending: "set budget food 5000"'


def format_amount(amount: Decimal | float | int, currency: str = DEFAULT_CURRENCY) -> str:
    return f"{currency}{Decimal(str(amount)):.2f}"


def category_emoji(category: str) -> str:
    return CATEGORY_EMOJIS.get(category, CATEGORY_EMOJIS["other"])


def format_expense_summary(expenses: Sequence[ExpenseRecord], currency: str = DEFAULT_CURRENCY) -> str:
    if not expenses:
        return NO_EXPENSES_MESSAGE

    total = sum((expense.amount for expense in expenses), Decimal(0))
    lines = [f"💰 *{len(expenses)} expenses* - Total: *{format_amount(total, currency)}*", ""]
    for expense in expenses[:MAX_LISTED_EXPENSES]:
        merchant = sanitize_text(expense.merchant, 100)
        merchant_part = f" at {merchant}" if merchant else ""
        lines.append(
            f"• {format_amount(expense.amount, currency)}{merchant_part} "
            f"({expense.category}) - {expense.date:%d/%m/%Y}"
        )
    if len(expenses) > MAX_LISTED_EXPENSES:
        lines.append("")
        lines.append(f"... and {len(expenses) - MAX_LISTED_EXPENSES} more")
    return "\n".join(lines)


def format_category_summary(totals: Sequence[CategoryTotal], currency: str = DEFAULT_CURRENCY) -> str:
    if not totals:
        return NO_CATEGORY_TOTALS_MESSAGE

    lines = ["📊 *Spending by Category:*", ""]
    for item in sorted(totals, key=lambda total: total.total, reverse=True):
        lines.append(
            f"{category_emoji(item.category)} {item.category}: "
            f"{format_amount(item.total, currency)} ({item.count} items)"
        )
    return "\n".join(lines)


def progress_bar(percent: int) -> str:
    filled = max(0, min(PROGRESS_SEGMENTS, percent // 10))
    return FILLED_SEGMENT * filled + EMPTY_SEGMENT * (PROGRESS_SEGMENTS - filled)


def format_budget_status(statuses: Sequence[BudgetStatus], currency: str = DEFAULT_CURRENCY) -> str:
    if not statuses:
        return NO_BUDGETS_MESSAGE

    blocks = ["📊 *Monthly Budget Status*"]
    for status in statuses:
        percent = status.percent_used
        blocks.append(
            f"*{status.category}*: {percent}%\n"
            f"{progress_bar(percent)}\n"
            f"{format_amount(status.spent, currency)} / {format_amount(status.limit, currency)}"
        )
    return "\n\n".join(blocks)


def format_expense_saved(
    expense: ExpenseRecord,
    day_total: Decimal,
    currency: str = DEFAULT_CURRENCY,
    *,
    receipt: bool = False,
) -> str:
    """Confirmation sent after a text or receipt expense has been stored."""
    merchant = sanitize_text(expense.merchant, 100)
    lines = ["✅ *Receipt Processed!*" if receipt else "✅ *Expense Saved!*"]
    lines.append(f"💰 Amount: {format_amount(expense.amount, currency)}")
    if receipt:
        lines.append(f"🏪 Merchant: {merchant or 'Unknown'}")
    else:
        description = sanitize_text(expense.description, 200)
        lines.append(f"📝 Description: {description or 'No description'}")
    lines.append(f"📂 Category: {expense.category}")
    if merchant and not receipt:
        lines.append(f"🏪 Merchant: {merchant}")
    if receipt and expense.items:
        items = ", ".join(sanitize_text(item, 100) for item in expense.items)
        lines.append(f"🛍️ Items: {items}")
    lines.append("")
    lines.append(f"📊 Today's total: {format_amount(day_total, currency)}")
    return "\n".join(lines)
