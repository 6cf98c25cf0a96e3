from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum as PyEnum


class Category(str, PyEnum):
    FOOD = "food"
    TRANSPORT = "transport"
    SHOPPING = "shopping"
    ENTERTAINMENT = "entertainment"
    HEALTHCARE = "healthcare"
    UTILITIES = "utilities"
    OTHER = "other"
    RENT = "rent"
    SALARY = "salary"
    INCOME = "income"


CATEGORY_EMOJIS: dict[str, str] = {
    Category.FOOD.value: "🍔",
    Category.TRANSPORT.value: "🚗",
    Category.SHOPPING.value: "🛒",
    Category.ENTERTAINMENT.value: "🎬",
    Category.HEALTHCARE.value: "🏥",
    Category.UTILITIES.value: "⚡",
    Category.OTHER.value: "📦",
    Category.RENT.value: "🏠",
    Category.SALARY.value: "💼",
    Category.INCOME.value: "💵",
}

MONTHLY = "monthly"


class MessageType(str, PyEnum):
    TEXT = "text"
    IMAGE = "image"
    UNSUPPORTED = "unsupported"


class Intent(str, PyEnum):
    SET_BUDGET = "set_budget"
    BUDGET_STATUS = "budget_status"
    DELETE_LAST = "delete_last"
    EDIT_LAST_AMOUNT = "edit_last_amount"
    EDIT_LAST_CATEGORY = "edit_last_category"
    SEARCH = "search"
    LOG_EXPENSE = "log_expense"
    TIME_RANGE = "time_range"
    CATEGORY_BREAKDOWN = "category_breakdown"
    INSIGHTS = "insights"
    HELP = "help"
    FALLBACK = "fallback"


@dataclass(slots=True)
class User:
    """A chat contact, keyed by phone number."""

    phone: str
    name: str | None
    timezone: str = "UTC"
    created_at: datetime | None = None
    last_active_at: datetime | None = None


@dataclass(slots=True)
class ExpenseDraft:
    """Validated expense fields ready to be persisted."""

    amount: Decimal
    category: str
    date: date
    merchant: str | None = None
    description: str | None = None
    items: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ExpenseRecord:
    """A stored expense owned by one user."""

    id: int
    user_phone: str
    amount: Decimal
    category: str
    date: date
    merchant: str | None = None
    description: str | None = None
    items: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def get_details(self) -> str:
        """Return a short human-readable label for the expense."""
        merchant_part = f" at {self.merchant}" if self.merchant else ""
        return f"{self.amount:.2f}{merchant_part} ({self.category}) on {self.date.isoformat()}"


@dataclass(slots=True)
class Budget:
    user_phone: str
    category: str
    amount: Decimal
    period: str = MONTHLY


@dataclass(slots=True)
class BudgetStatus:
    category: str
    limit: Decimal
    spent: Decimal
    period: str = MONTHLY

    @property
    def percent_used(self) -> int:
        if self.limit <= 0:
            return 0
        ratio = self.spent / self.limit * 100
        return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(slots=True)
class CategoryTotal:
    category: str
    total: Decimal
    count: int = 0


@dataclass(slots=True)
class InboundMessage:
    """A single message unpacked from a webhook delivery."""

    id: str
    sender: str
    type: MessageType
    timestamp: datetime | None = None
    text: str | None = None
    media_id: str | None = None
    sender_name: str | None = None


@dataclass(slots=True)
class ParsedExpenseGuess:
    """Structured output of an extraction; any field may be absent."""

    amount: Decimal | None = None
    description: str | None = None
    category: str | None = None
    merchant: str | None = None
    date: date | str | None = None
    items: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Extracted:
    guess: ParsedExpenseGuess


@dataclass(frozen=True, slots=True)
class ExtractionFailed:
    reason: str


ExtractionResult = Extracted | ExtractionFailed


def user_from_model(model: object) -> User:
    from ..models import UserModel

    if not isinstance(model, UserModel):
        raise TypeError("Expected UserModel instance.")

    return User(
        phone=model.phone,
        name=model.name,
        timezone=model.timezone,
        created_at=model.created_at,
        last_active_at=model.last_active_at,
    )


def expense_from_model(model: object) -> ExpenseRecord:
    from ..models import ExpenseModel

    if not isinstance(model, ExpenseModel):
        raise TypeError("Expected ExpenseModel instance.")

    return ExpenseRecord(
        id=model.id,
        user_phone=model.user_phone,
        amount=Decimal(str(model.amount)),
        category=model.category,
        date=model.date,
        merchant=model.merchant,
        description=model.description,
        items=list(model.items or []),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def budget_from_model(model: object) -> Budget:
    from ..models import BudgetModel

    if not isinstance(model, BudgetModel):
        raise TypeError("Expected BudgetModel instance.")

    return Budget(
        user_phone=model.user_phone,
        category=model.category,
        amount=Decimal(str(model.amount)),
        period=model.period,
    )
