from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from cache import QueryCache
from database import Base
from errors import GENERIC_ERROR_MESSAGE, classify
from models import CardTransaction
from operations import FinanceOperations
from schemas import UserIn
from services import UserService


def make_ops():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    user = UserService(session).create(UserIn(name="Ana", email="ana@example.com"))
    return FinanceOperations(session, user.id, QueryCache()), session


def test_create_account_returns_result() -> None:
    ops, _ = make_ops()

    result = ops.create_account("Checking", "checking", "150.00")

    assert result.success is True
    assert result.data.name == "Checking"
    assert result.data.balance == Decimal("150.00")


def test_invalid_input_becomes_failure_result() -> None:
    ops, _ = make_ops()

    result = ops.create_account("", "checking", 0)

    assert result.success is False
    assert result.code == "validation"
    assert "name" in result.error


def test_missing_reference_is_not_found() -> None:
    ops, _ = make_ops()
    result = ops.delete_transaction(123)
    assert result.success is False
    assert result.code == "not_found"
    assert result.error == "Transaction not found"


def test_transaction_flow_and_summary() -> None:
    ops, _ = make_ops()
    account = ops.create_account("Checking", "checking").data
    salary = ops.create_category("Salary", "income").data
    food = ops.create_category("Food", "expense").data

    created = ops.create_transaction(
        account.id, salary.id, "2500", "income", date(2025, 3, 5), "March salary"
    )
    lunch = ops.create_transaction(
        account.id, food.id, "32.40", "expense", date(2025, 3, 6), "Lunch"
    )
    assert created.success and lunch.success

    summary = ops.get_summary(date(2025, 3, 1), date(2025, 3, 31)).data
    assert summary.income == Decimal("2500.00")
    assert summary.expense == Decimal("32.40")
    assert summary.net == Decimal("2467.60")

    assert ops.update_transaction(lunch.data.id, {"amount": "40"}).data is True
    rejected = ops.update_transaction(lunch.data.id, {"owner": 2})
    assert rejected.success is False
    assert rejected.code == "validation"
    assert ops.get_account(account.id).data.balance == Decimal("2460.00")

    assert ops.delete_transaction(lunch.data.id).success
    assert ops.get_account(account.id).data.balance == Decimal("2500.00")


def test_list_is_cached_until_a_mutation() -> None:
    ops, session = make_ops()
    ops.create_account("Checking", "checking")
    first = ops.list_accounts().data
    assert [a.name for a in first] == ["Checking"]

    # A write that bypasses the boundary is not seen until the TTL or a mutation.
    session.execute(
        Base.metadata.tables["accounts"].update().values(name="Renamed")
    )
    session.commit()
    session.expire_all()
    assert [a.name for a in ops.list_accounts().data] == ["Checking"]

    ops.create_account("Savings", "savings")
    names = sorted(a.name for a in ops.list_accounts().data)
    assert names == ["Renamed", "Savings"]


def test_installment_purchase_and_group_delete() -> None:
    ops, session = make_ops()
    card = ops.create_card("Visa", 15).data

    result = ops.create_card_purchase(
        card.id, None, "Phone", "1200", date(2025, 3, 8), installment_count=6
    )
    assert result.success
    assert len(result.data) == 6
    assert ops.get_card(card.id).data.amount == Decimal("1200.00")

    deleted = ops.delete_card_purchase_group(result.data[0].group_id)
    assert deleted.data == 6
    assert session.scalar(select(func.count(CardTransaction.id))) == 0
    assert ops.get_card(card.id).data.amount == Decimal("0.00")


def test_statement_uses_billing_cycle() -> None:
    ops, _ = make_ops()
    card = ops.create_card("Visa", 15).data
    ops.create_card_purchase(card.id, None, "Before close", "10", date(2025, 3, 8))
    ops.create_card_purchase(card.id, None, "On close", "20", date(2025, 3, 9))
    ops.create_card_purchase(card.id, None, "Late Feb", "5", date(2025, 2, 20))

    march = ops.get_card_statement(card.id, 3, 2025).data
    april = ops.get_card_statement(card.id, 4, 2025).data

    assert sorted(t.description for t in march.transactions) == [
        "Before close",
        "Late Feb",
    ]
    assert march.total == Decimal("15.00")
    assert march.due_date == date(2025, 3, 15)
    assert [t.description for t in april.transactions] == ["On close"]


def test_storage_errors_get_friendly_text() -> None:
    locked = OperationalError("UPDATE accounts", {}, Exception("database is locked"))
    code, message = classify(locked)
    assert code == "unexpected"
    assert "temporarily unavailable" in message

    assert classify(RuntimeError("boom")) == ("unexpected", GENERIC_ERROR_MESSAGE)


def test_update_without_valid_fields_fails_and_keeps_cache() -> None:
    ops, session = make_ops()
    account = ops.create_account("Checking", "checking").data
    assert [a.name for a in ops.list_accounts().data] == ["Checking"]

    for fields in ({}, {"balance": "999"}):
        result = ops.update_account(account.id, fields)
        assert result.success is False
        assert result.code == "validation"
        assert result.error == "No valid fields to update"

    session.execute(
        Base.metadata.tables["accounts"].update().values(name="Renamed")
    )
    session.commit()
    assert [a.name for a in ops.list_accounts().data] == ["Checking"]

    assert ops.update_account(account.id, {"name": "Main"}).success
    assert [a.name for a in ops.list_accounts().data] == ["Main"]


def test_grouped_installment_amount_edit_is_rejected() -> None:
    ops, _ = make_ops()
    card = ops.create_card("Visa", 15).data
    rows = ops.create_card_purchase(
        card.id, None, "Laptop", "900", date(2025, 3, 8), installment_count=3
    ).data

    result = ops.update_card_transaction(rows[0].id, {"amount": "100"})

    assert result.success is False
    assert result.code == "validation"
    assert ops.get_card(card.id).data.amount == Decimal("900.00")
    assert ops.update_card_transaction(rows[0].id, {"notes": "work"}).success


def test_transactions_page_with_limit_and_offset() -> None:
    ops, _ = make_ops()
    account = ops.create_account("Checking", "checking").data
    food = ops.create_category("Food", "expense").data
    for day in range(1, 6):
        ops.create_transaction(
            account.id, food.id, "10", "expense", date(2025, 3, day), f"Day {day}"
        )

    first = ops.list_transactions(limit=2).data
    second = ops.list_transactions(limit=2, offset=2).data
    last = ops.list_transactions(limit=2, offset=4).data

    assert [t.description for t in first] == ["Day 5", "Day 4"]
    assert [t.description for t in second] == ["Day 3", "Day 2"]
    assert [t.description for t in last] == ["Day 1"]
