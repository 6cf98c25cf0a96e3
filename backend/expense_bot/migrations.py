from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

BUDGET_UNIQUE_INDEX = "uq_budgets_user_category_period"


def _ensure_items_column(engine: Engine) -> None:
    inspector = inspect(engine)
    try:
        columns = {column["name"] for column in inspector.get_columns("expenses")}
    except SQLAlchemyError as exc:  # pragma: no cover - defensive
        logger.error("Failed to inspect expenses table: %s", exc)
        return

    if "items" in columns:
        return

    logger.info("Adding items column to expenses table.")

    dialect = engine.dialect.name.lower()
    try:
        with engine.begin() as connection:
            if dialect == "postgresql":
                connection.execute(
                    text("ALTER TABLE expenses ADD COLUMN items JSON NOT NULL DEFAULT '[]'::json")
                )
            else:
                connection.execute(
                    text("ALTER TABLE expenses ADD COLUMN items JSON NOT NULL DEFAULT '[]'")
                )
    except SQLAlchemyError as exc:  # pragma: no cover - defensive
        logger.error("Failed to add items column: %s", exc)


def _ensure_budget_unique_index(engine: Engine) -> None:
    inspector = inspect(engine)
    try:
        existing = {index["name"] for index in inspector.get_indexes("budgets")}
        existing |= {
            constraint["name"] for constraint in inspector.get_unique_constraints("budgets")
        }
    except SQLAlchemyError as exc:  # pragma: no cover - defensive
        logger.error("Failed to inspect budgets table: %s", exc)
        return

    if BUDGET_UNIQUE_INDEX in existing:
        return

    logger.info("Creating unique index on budgets (user_phone, category, period).")

    try:
        with engine.begin() as connection:
            # Keep the newest row per key so the index can be created.
            connection.execute(
                text(
                    "DELETE FROM budgets WHERE id NOT IN ("
                    "SELECT MAX(id) FROM budgets GROUP BY user_phone, category, period)"
                )
            )
            connection.execute(
                text(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {BUDGET_UNIQUE_INDEX} "
                    "ON budgets (user_phone, category, period)"
                )
            )
    except SQLAlchemyError as exc:  # pragma: no cover - defensive
        logger.error("Failed to create budgets unique index: %s", exc)


def run_migrations(engine: Engine) -> None:
    """Execute lightweight, idempotent migrations on application start."""
    _ensure_items_column(engine)
    _ensure_budget_unique_index(engine)
