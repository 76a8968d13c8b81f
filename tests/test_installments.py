from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from balances import BalanceEngine
from database import Base
from errors import NotFound, ValidationFailed
from installments import InstallmentGenerator, plan_installments
from models import Card, CardTransaction, Category, TransactionType, User
from schemas import CardPurchaseIn


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    user = User(name="Ana", email="ana@example.com")
    session.add(user)
    session.flush()
    card = Card(user_id=user.id, name="Visa", due_day=15)
    category = Category(user_id=user.id, name="Shopping", type=TransactionType.expense)
    session.add_all([card, category])
    session.commit()
    return user, card, category


def purchase(card_id, category_id, amount="1200", count=6, on=date(2025, 1, 31)):
    return CardPurchaseIn(
        card_id=card_id,
        category_id=category_id,
        description="Laptop",
        amount=Decimal(amount),
        date=on,
        installment_count=count,
    )


def test_plan_advances_months_and_clamps_days() -> None:
    plans = plan_installments(120_000, date(2025, 1, 31), 6, "g1")
    assert [p.date for p in plans] == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
        date(2025, 5, 31),
        date(2025, 6, 30),
    ]
    assert [p.amount_cents for p in plans] == [20_000] * 6
    assert [p.installment_number for p in plans] == [1, 2, 3, 4, 5, 6]
    assert {p.group_id for p in plans} == {"g1"}


def test_plan_rejects_too_many_installments() -> None:
    with pytest.raises(ValidationFailed):
        plan_installments(10_000, date(2025, 1, 1), 61)


def test_single_purchase_has_no_group() -> None:
    session = make_session()
    user, card, category = seed(session)

    rows = InstallmentGenerator(session, user.id).create_purchase(
        purchase(card.id, category.id, amount="59.90", count=1)
    )

    assert len(rows) == 1
    assert rows[0].group_id is None
    assert rows[0].installment_count == 1
    assert rows[0].label == "Laptop"
    session.refresh(card)
    assert card.amount_cents == 5_990


def test_six_installments_share_a_group_and_sum_to_total() -> None:
    session = make_session()
    user, card, category = seed(session)

    rows = InstallmentGenerator(session, user.id).create_purchase(
        purchase(card.id, category.id)
    )

    assert len(rows) == 6
    assert len({row.group_id for row in rows}) == 1
    assert rows[0].group_id is not None
    assert sum(row.amount_cents for row in rows) == 120_000
    assert rows[2].label == "Laptop (3/6)"
    session.refresh(card)
    assert card.amount_cents == 120_000


def test_uneven_split_gives_extra_cents_to_first_rows() -> None:
    session = make_session()
    user, card, category = seed(session)

    rows = InstallmentGenerator(session, user.id).create_purchase(
        purchase(card.id, category.id, amount="100.00", count=7)
    )

    assert [row.amount_cents for row in rows] == [1429] * 4 + [1428] * 3


def test_failure_midway_leaves_no_rows(monkeypatch) -> None:
    session = make_session()
    user, card, category = seed(session)

    calls = {"n": 0}
    original = BalanceEngine.charge_card

    def flaky_charge(self, txn):
        calls["n"] += 1
        if calls["n"] == 4:
            raise RuntimeError("storage failure")
        return original(self, txn)

    monkeypatch.setattr(BalanceEngine, "charge_card", flaky_charge)

    with pytest.raises(RuntimeError):
        InstallmentGenerator(session, user.id).create_purchase(
            purchase(card.id, category.id)
        )

    count = session.scalar(select(func.count(CardTransaction.id)))
    assert count == 0
    session.refresh(card)
    assert card.amount_cents == 0


def test_delete_group_removes_every_installment() -> None:
    session = make_session()
    user, card, category = seed(session)
    generator = InstallmentGenerator(session, user.id)
    rows = generator.create_purchase(purchase(card.id, category.id))
    generator.create_purchase(purchase(card.id, category.id, amount="10", count=1))

    removed = generator.delete_group(rows[0].group_id)

    assert removed == 6
    remaining = session.scalars(select(CardTransaction)).all()
    assert len(remaining) == 1
    session.refresh(card)
    assert card.amount_cents == 1_000


def test_delete_unknown_group() -> None:
    session = make_session()
    user, _, _ = seed(session)
    with pytest.raises(NotFound):
        InstallmentGenerator(session, user.id).delete_group("missing")


def test_purchase_requires_expense_category() -> None:
    session = make_session()
    user, card, _ = seed(session)
    income = Category(user_id=user.id, name="Salary", type=TransactionType.income)
    session.add(income)
    session.commit()

    with pytest.raises(ValidationFailed):
        InstallmentGenerator(session, user.id).create_purchase(
            purchase(card.id, income.id)
        )


def test_purchase_on_unknown_card() -> None:
    session = make_session()
    user, _, category = seed(session)
    with pytest.raises(NotFound):
        InstallmentGenerator(session, user.id).create_purchase(
            purchase(999, category.id)
        )


def test_amount_too_small_for_installments() -> None:
    session = make_session()
    user, card, category = seed(session)
    with pytest.raises(ValidationFailed):
        InstallmentGenerator(session, user.id).create_purchase(
            purchase(card.id, category.id, amount="0.05", count=6)
        )
