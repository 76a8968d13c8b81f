from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationFailed
from models import AccountKind, TransactionType
from schemas import AccountIn, BudgetIn, CategoryIn, TransactionIn, UserIn
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    MetricsService,
    TransactionService,
    UserService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    user = UserService(session).create(UserIn(name="Ana", email="ana@example.com"))
    account = AccountService(session, user.id).create(
        AccountIn(name="Checking", kind=AccountKind.checking)
    )
    categories = CategoryService(session, user.id)
    salary = categories.create(CategoryIn(name="Salary", type=TransactionType.income))
    food = categories.create(
        CategoryIn(name="Food", type=TransactionType.expense, color="#ff0000")
    )
    rent = categories.create(CategoryIn(name="Rent", type=TransactionType.expense))

    txns = TransactionService(session, user.id)
    for category, amount, kind, on in [
        (salary, "5000", TransactionType.income, date(2025, 3, 1)),
        (rent, "1800", TransactionType.expense, date(2025, 3, 5)),
        (food, "120.35", TransactionType.expense, date(2025, 3, 12)),
        (food, "79.65", TransactionType.expense, date(2025, 3, 20)),
        (food, "50", TransactionType.expense, date(2025, 4, 2)),
    ]:
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=category.id,
                description=category.name,
                amount=Decimal(amount),
                type=kind,
                date=on,
            )
        )
    return user, food, rent


def test_summary_for_a_month() -> None:
    session = make_session()
    user, _, _ = seed(session)

    summary = MetricsService(session, user.id).summary(
        date(2025, 3, 1), date(2025, 3, 31)
    )

    assert summary.income_cents == 500_000
    assert summary.expense_cents == 200_000
    assert summary.net_cents == 300_000


def test_summary_without_range_covers_everything() -> None:
    session = make_session()
    user, _, _ = seed(session)
    summary = MetricsService(session, user.id).summary()
    assert summary.expense_cents == 205_000


def test_summary_of_empty_range_is_zero() -> None:
    session = make_session()
    user, _, _ = seed(session)
    summary = MetricsService(session, user.id).summary(
        date(2024, 1, 1), date(2024, 1, 31)
    )
    assert (summary.income_cents, summary.expense_cents, summary.net_cents) == (0, 0, 0)


def test_summary_rejects_inverted_range() -> None:
    session = make_session()
    user, _, _ = seed(session)
    with pytest.raises(ValidationFailed):
        MetricsService(session, user.id).summary(date(2025, 3, 31), date(2025, 3, 1))


def test_category_breakdown_orders_by_total() -> None:
    session = make_session()
    user, _, _ = seed(session)

    rows = MetricsService(session, user.id).category_breakdown(
        TransactionType.expense, date(2025, 3, 1), date(2025, 3, 31)
    )

    assert [(r["name"], r["total_cents"], r["count"]) for r in rows] == [
        ("Rent", 180_000, 1),
        ("Food", 20_000, 2),
    ]
    assert rows[1]["color"] == "#ff0000"


def test_budget_progress() -> None:
    session = make_session()
    user, food, rent = seed(session)
    budgets = BudgetService(session, user.id)
    budgets.create(BudgetIn(category_id=food.id, amount="150", month=3, year=2025))
    budgets.create(BudgetIn(category_id=rent.id, amount="1800", month=3, year=2025))

    progress = MetricsService(session, user.id).budget_progress(3, 2025)

    assert progress[food.id]["planned_cents"] == 15_000
    assert progress[food.id]["spent_cents"] == 20_000
    assert progress[food.id]["remaining_cents"] == -5_000
    assert progress[rent.id]["remaining_cents"] == 0
    assert progress[rent.id]["percent"] == 100.0
    assert MetricsService(session, user.id).budget_progress(5, 2025) == {}
