from datetime import date
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .domain.entities import MONTHLY, ExpenseDraft
from .models import BudgetModel, ExpenseModel, UserModel, utcnow

_UPSERT_DIALECTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}


def _to_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal(0)
    return Decimal(str(value))


def get_user(db: Session, phone: str) -> UserModel | None:
    return db.get(UserModel, phone)


def touch_user(db: Session, phone: str, name: str | None, timezone_name: str) -> UserModel:
    """Create the user on first contact, otherwise refresh name and activity."""
    user = get_user(db, phone)
    now = utcnow()
    if user is None:
        user = UserModel(phone=phone, name=name, timezone=timezone_name, created_at=now, last_active_at=now)
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            # Another request created the same user first.
            db.rollback()
            user = get_user(db, phone)
            if user is None:
                raise
        else:
            db.refresh(user)
            return user

    user.last_active_at = now
    if name:
        user.name = name
    db.commit()
    db.refresh(user)
    return user


def create_expense(db: Session, phone: str, draft: ExpenseDraft) -> ExpenseModel:
    now = utcnow()
    expense = ExpenseModel(
        user_phone=phone,
        amount=draft.amount,
        merchant=draft.merchant,
        description=draft.description,
        category=draft.category,
        items=list(draft.items),
        date=draft.date,
        created_at=now,
        updated_at=now,
    )
    db.add(expense)
    db.commit()
    db.refresh(expense)
    return expense


def list_expenses(
    db: Session,
    phone: str,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[ExpenseModel]:
    stmt = select(ExpenseModel).where(ExpenseModel.user_phone == phone)

    if start_date:
        stmt = stmt.where(ExpenseModel.date >= start_date)
    if end_date:
        stmt = stmt.where(ExpenseModel.date <= end_date)

    stmt = stmt.order_by(ExpenseModel.date.desc(), ExpenseModel.created_at.desc(), ExpenseModel.id.desc())
    return list(db.scalars(stmt))


def total_for_day(db: Session, phone: str, day: date) -> Decimal:
    stmt = select(func.sum(ExpenseModel.amount)).where(
        ExpenseModel.user_phone == phone, ExpenseModel.date == day
    )
    return _to_decimal(db.scalar(stmt))


def totals_by_category(
    db: Session, phone: str, start_date: date, end_date: date
) -> list[tuple[str, Decimal, int]]:
    total = func.sum(ExpenseModel.amount).label("total")
    stmt = (
        select(ExpenseModel.category, total, func.count(ExpenseModel.id))
        .where(
            ExpenseModel.user_phone == phone,
            ExpenseModel.date >= start_date,
            ExpenseModel.date <= end_date,
        )
        .group_by(ExpenseModel.category)
        .order_by(total.desc())
    )
    return [(category, _to_decimal(amount), int(count)) for category, amount, count in db.execute(stmt)]


def search_expenses(db: Session, phone: str, query: str, limit: int = 20) -> list[ExpenseModel]:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    stmt = (
        select(ExpenseModel)
        .where(
            ExpenseModel.user_phone == phone,
            or_(
                ExpenseModel.description.ilike(pattern, escape="\\"),
                ExpenseModel.merchant.ilike(pattern, escape="\\"),
                ExpenseModel.category.ilike(pattern, escape="\\"),
            ),
        )
        .order_by(ExpenseModel.created_at.desc(), ExpenseModel.id.desc())
        .limit(limit)
    )
    return list(db.scalars(stmt))


def get_last_expense(db: Session, phone: str) -> ExpenseModel | None:
    stmt = (
        select(ExpenseModel)
        .where(ExpenseModel.user_phone == phone)
        .order_by(ExpenseModel.created_at.desc(), ExpenseModel.id.desc())
        .limit(1)
    )
    return db.scalar(stmt)


def get_expense(db: Session, expense_id: int, phone: str) -> ExpenseModel | None:
    stmt = select(ExpenseModel).where(ExpenseModel.id == expense_id, ExpenseModel.user_phone == phone)
    return db.scalar(stmt)


def update_expense(db: Session, expense: ExpenseModel, **changes: object) -> ExpenseModel:
    applied = False
    for key, value in changes.items():
        if value is not None and hasattr(expense, key):
            setattr(expense, key, value)
            applied = True
    if applied:
        expense.updated_at = utcnow()
        db.commit()
        db.refresh(expense)
    return expense


def delete_expense(db: Session, expense_id: int, phone: str) -> bool:
    expense = get_expense(db, expense_id, phone)
    if not expense:
        return False
    db.delete(expense)
    db.commit()
    return True


def get_budget(db: Session, phone: str, category: str, period: str = MONTHLY) -> BudgetModel | None:
    stmt = select(BudgetModel).where(
        BudgetModel.user_phone == phone,
        BudgetModel.category == category,
        BudgetModel.period == period,
    )
    return db.scalar(stmt)


def upsert_budget(
    db: Session, phone: str, category: str, amount: Decimal, period: str = MONTHLY
) -> BudgetModel:
    """Insert or replace the budget for (user, category, period) in one statement."""
    now = utcnow()
    insert_fn = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)

    if insert_fn is not None:
        stmt = insert_fn(BudgetModel).values(
            user_phone=phone,
            category=category,
            amount=amount,
            period=period,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_phone", "category", "period"],
            set_={"amount": stmt.excluded.amount, "updated_at": stmt.excluded.updated_at},
        )
        db.execute(stmt)
    else:
        existing = db.scalar(
            select(BudgetModel)
            .where(
                BudgetModel.user_phone == phone,
                BudgetModel.category == category,
                BudgetModel.period == period,
            )
            .with_for_update()
        )
        if existing:
            existing.amount = amount
            existing.updated_at = now
        else:
            db.add(BudgetModel(user_phone=phone, category=category, amount=amount, period=period))
    db.commit()

    return get_budget(db, phone, category, period)


def list_budgets(db: Session, phone: str) -> list[BudgetModel]:
    stmt = select(BudgetModel).where(BudgetModel.user_phone == phone).order_by(BudgetModel.category)
    return list(db.scalars(stmt))


def budget_status(
    db: Session, phone: str, start_date: date, end_date: date, period: str = MONTHLY
) -> list[tuple[BudgetModel, Decimal]]:
    spent = (
        select(ExpenseModel.category, func.sum(ExpenseModel.amount).label("spent"))
        .where(
            ExpenseModel.user_phone == phone,
            ExpenseModel.date >= start_date,
            ExpenseModel.date <= end_date,
        )
        .group_by(ExpenseModel.category)
        .subquery()
    )
    stmt = (
        select(BudgetModel, spent.c.spent)
        .outerjoin(spent, spent.c.category == BudgetModel.category)
        .where(BudgetModel.user_phone == phone, BudgetModel.period == period)
        .order_by(BudgetModel.category)
    )
    return [(budget, _to_decimal(amount)) for budget, amount in db.execute(stmt)]
