from __future__ import annotations

import calendar
from abc import ABC, abstractmethod
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session, sessionmaker

from . import crud
from .domain.entities import (
    MONTHLY,
    Budget,
    BudgetStatus,
    CategoryTotal,
    ExpenseDraft,
    ExpenseRecord,
    User,
    budget_from_model,
    expense_from_model,
    user_from_model,
)

WEEK_WINDOW = timedelta(days=7)


def subtract_months(base: date, months: int) -> date:
    new_month_index = base.year * 12 + base.month - 1 - months
    year = new_month_index // 12
    month = new_month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def month_start(day: date) -> date:
    return day.replace(day=1)


class Repository(ABC):
    """Durable storage of users, expenses and budgets.

    Every mutation is atomic for the rows it touches. Query helpers for the
    usual reporting windows are derived from :meth:`get_expenses`.
    """

    @abstractmethod
    def touch_user(self, phone: str, name: str | None = None) -> User:
        """Create the user on first contact or refresh its last-active time."""

    @abstractmethod
    def save_expense(self, phone: str, draft: ExpenseDraft) -> ExpenseRecord:
        """Persist a validated expense."""

    @abstractmethod
    def get_expenses(self, phone: str, start: date | None = None, end: date | None = None) -> list[ExpenseRecord]:
        """Expenses dated within [start, end], newest first."""

    @abstractmethod
    def get_day_total(self, phone: str, day: date) -> Decimal:
        """Sum of the expenses dated ``day``."""

    @abstractmethod
    def get_totals_by_category(self, phone: str, start: date, end: date) -> list[CategoryTotal]:
        """Per-category totals, largest first."""

    @abstractmethod
    def search_expenses(self, phone: str, query: str, limit: int = 20) -> list[ExpenseRecord]:
        """Case-insensitive match on description, merchant or category."""

    @abstractmethod
    def get_last_expense(self, phone: str) -> ExpenseRecord | None:
        """Most recently created expense."""

    @abstractmethod
    def update_expense(
        self,
        expense_id: int,
        phone: str,
        *,
        amount: Decimal | None = None,
        category: str | None = None,
    ) -> ExpenseRecord | None:
        """Change the given fields only and bump the update timestamp."""

    @abstractmethod
    def delete_expense(self, expense_id: int, phone: str) -> bool:
        """Remove one expense; ``False`` when it does not exist."""

    @abstractmethod
    def set_budget(self, phone: str, category: str, amount: Decimal, period: str = MONTHLY) -> Budget:
        """Upsert the budget keyed by (user, category, period)."""

    @abstractmethod
    def get_budgets(self, phone: str) -> list[Budget]:
        """All budgets of the user."""

    @abstractmethod
    def get_budget_status(self, phone: str, start: date, end: date) -> list[BudgetStatus]:
        """Monthly budgets with the amount spent per category in [start, end]."""

    def get_day_expenses(self, phone: str, day: date) -> list[ExpenseRecord]:
        return self.get_expenses(phone, day, day)

    def get_week_expenses(self, phone: str, today: date) -> list[ExpenseRecord]:
        return self.get_expenses(phone, today - WEEK_WINDOW, today)

    def get_month_expenses(self, phone: str, today: date) -> list[ExpenseRecord]:
        return self.get_expenses(phone, subtract_months(today, 1), today)


class SqlRepository(Repository):
    """Repository backed by SQLAlchemy; one session per operation."""

    def __init__(self, session_factory: sessionmaker[Session], default_timezone: str = "UTC") -> None:
        self._session_factory = session_factory
        self._default_timezone = default_timezone

    def touch_user(self, phone: str, name: str | None = None) -> User:
        with self._session_factory() as db:
            return user_from_model(crud.touch_user(db, phone, name, self._default_timezone))

    def save_expense(self, phone: str, draft: ExpenseDraft) -> ExpenseRecord:
        with self._session_factory() as db:
            return expense_from_model(crud.create_expense(db, phone, draft))

    def get_expenses(self, phone: str, start: date | None = None, end: date | None = None) -> list[ExpenseRecord]:
        with self._session_factory() as db:
            return [expense_from_model(row) for row in crud.list_expenses(db, phone, start, end)]

    def get_day_total(self, phone: str, day: date) -> Decimal:
        with self._session_factory() as db:
            return crud.total_for_day(db, phone, day)

    def get_totals_by_category(self, phone: str, start: date, end: date) -> list[CategoryTotal]:
        with self._session_factory() as db:
            rows = crud.totals_by_category(db, phone, start, end)
        return [CategoryTotal(category=category, total=total, count=count) for category, total, count in rows]

    def search_expenses(self, phone: str, query: str, limit: int = 20) -> list[ExpenseRecord]:
        with self._session_factory() as db:
            return [expense_from_model(row) for row in crud.search_expenses(db, phone, query, limit)]

    def get_last_expense(self, phone: str) -> ExpenseRecord | None:
        with self._session_factory() as db:
            expense = crud.get_last_expense(db, phone)
            return expense_from_model(expense) if expense else None

    def update_expense(
        self,
        expense_id: int,
        phone: str,
        *,
        amount: Decimal | None = None,
        category: str | None = None,
    ) -> ExpenseRecord | None:
        with self._session_factory() as db:
            expense = crud.get_expense(db, expense_id, phone)
            if expense is None:
                return None
            return expense_from_model(crud.update_expense(db, expense, amount=amount, category=category))

    def delete_expense(self, expense_id: int, phone: str) -> bool:
        with self._session_factory() as db:
            return crud.delete_expense(db, expense_id, phone)

    def set_budget(self, phone: str, category: str, amount: Decimal, period: str = MONTHLY) -> Budget:
        with self._session_factory() as db:
            return budget_from_model(crud.upsert_budget(db, phone, category, amount, period))

    def get_budgets(self, phone: str) -> list[Budget]:
        with self._session_factory() as db:
            return [budget_from_model(row) for row in crud.list_budgets(db, phone)]

    def get_budget_status(self, phone: str, start: date, end: date) -> list[BudgetStatus]:
        with self._session_factory() as db:
            rows = crud.budget_status(db, phone, start, end)
            return [
                BudgetStatus(
                    category=budget.category,
                    limit=Decimal(str(budget.amount)),
                    spent=spent,
                    period=budget.period,
                )
                for budget, spent in rows
            ]
