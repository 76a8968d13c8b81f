from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import NotFound, UniquenessConflict, ValidationFailed
from models import (
    Account,
    AccountKind,
    Budget,
    CardTransaction,
    Category,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    BalanceCorrectionIn,
    BudgetIn,
    CardIn,
    CardPurchaseIn,
    CategoryIn,
    TransactionIn,
    UserIn,
)
from services import (
    AccountService,
    BudgetService,
    CardService,
    CardTransactionService,
    CategoryService,
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


def make_user(session):
    return UserService(session).create(UserIn(name="Ana", email="ana@example.com"))


def test_account_with_initial_balance_keeps_ledger_consistent() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)

    account = accounts.create(
        AccountIn(name="Checking", kind=AccountKind.checking, initial_balance="250.75")
    )

    assert account.balance_cents == 25_075
    assert accounts.verify_balance(account.id) == 25_075
    opening = session.scalars(select(Transaction)).one()
    assert opening.type == TransactionType.income
    assert opening.category.name == "Balance adjustment"


def test_negative_initial_balance_posts_expense() -> None:
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(
        AccountIn(name="Overdrawn", kind=AccountKind.checking, initial_balance="-10")
    )
    assert account.balance_cents == -1_000
    assert session.scalars(select(Transaction)).one().type == TransactionType.expense


def test_balance_correction_posts_compensating_transaction() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    account = accounts.create(
        AccountIn(name="Wallet", kind=AccountKind.wallet, initial_balance="100")
    )

    txn = accounts.correct_balance(
        account.id, BalanceCorrectionIn(target_balance="60", date=date(2025, 3, 1))
    )

    assert txn is not None
    assert txn.amount_cents == 4_000
    assert txn.type == TransactionType.expense
    session.refresh(account)
    assert account.balance_cents == 6_000
    assert accounts.correct_balance(
        account.id, BalanceCorrectionIn(target_balance="60", date=date(2025, 3, 1))
    ) is None


def test_update_rejects_unknown_fields() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    account = accounts.create(AccountIn(name="Checking", kind=AccountKind.checking))

    assert accounts.update(account.id, {"balance_cents": 1_000_000}) is False
    assert accounts.update(account.id, {}) is False
    assert accounts.update(account.id, {"name": "Main"}) is True

    session.refresh(account)
    assert account.name == "Main"
    assert account.balance_cents == 0


def test_update_rejects_null_for_required_field() -> None:
    session = make_session()
    user = make_user(session)
    categories = CategoryService(session, user.id)
    category = categories.create(CategoryIn(name="Food", type=TransactionType.expense))

    assert categories.update(category.id, {"name": None}) is False
    assert categories.update(category.id, {"color": None}) is True


def test_update_missing_record_raises_not_found() -> None:
    session = make_session()
    user = make_user(session)
    with pytest.raises(NotFound):
        AccountService(session, user.id).update(404, {"name": "Ghost"})


def test_duplicate_category_name_conflicts() -> None:
    session = make_session()
    user = make_user(session)
    categories = CategoryService(session, user.id)
    categories.create(CategoryIn(name="Food", type=TransactionType.expense))

    with pytest.raises(UniquenessConflict):
        categories.create(CategoryIn(name="food", type=TransactionType.expense))

    # same name for the other kind is allowed
    categories.create(CategoryIn(name="Food", type=TransactionType.income))


def test_duplicate_email_conflicts() -> None:
    session = make_session()
    make_user(session)
    with pytest.raises(UniquenessConflict):
        UserService(session).create(UserIn(name="Other", email="ANA@example.com"))


def test_category_type_is_locked_while_in_use() -> None:
    session = make_session()
    user = make_user(session)
    category = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    BudgetService(session, user.id).create(
        BudgetIn(category_id=category.id, amount="300", month=3, year=2025)
    )

    with pytest.raises(ValidationFailed):
        CategoryService(session, user.id).update(
            category.id, {"type": TransactionType.income}
        )


def test_budget_is_unique_per_category_and_month() -> None:
    session = make_session()
    user = make_user(session)
    category = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    budgets = BudgetService(session, user.id)
    budgets.create(BudgetIn(category_id=category.id, amount="300", month=3, year=2025))

    with pytest.raises(UniquenessConflict):
        budgets.create(
            BudgetIn(category_id=category.id, amount="100", month=3, year=2025)
        )
    budgets.create(BudgetIn(category_id=category.id, amount="100", month=4, year=2025))


def test_budget_needs_expense_category() -> None:
    session = make_session()
    user = make_user(session)
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", type=TransactionType.income)
    )
    with pytest.raises(ValidationFailed):
        BudgetService(session, user.id).create(
            BudgetIn(category_id=salary.id, amount="100", month=1, year=2025)
        )


def test_transaction_category_kind_must_match() -> None:
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(
        AccountIn(name="Checking", kind=AccountKind.checking)
    )
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    with pytest.raises(ValidationFailed):
        TransactionService(session, user.id).create(
            TransactionIn(
                account_id=account.id,
                category_id=food.id,
                description="Refund",
                amount=Decimal("10"),
                type=TransactionType.income,
                date=date(2025, 3, 1),
            )
        )


def test_deleting_category_cascades() -> None:
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(
        AccountIn(name="Checking", kind=AccountKind.checking)
    )
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    BudgetService(session, user.id).create(
        BudgetIn(category_id=food.id, amount="300", month=3, year=2025)
    )
    TransactionService(session, user.id).create(
        TransactionIn(
            account_id=account.id,
            category_id=food.id,
            description="Lunch",
            amount=Decimal("25"),
            type=TransactionType.expense,
            date=date(2025, 3, 2),
        )
    )
    card = CardService(session, user.id).create(CardIn(name="Visa", due_day=10))
    CardTransactionService(session, user.id).create_purchase(
        CardPurchaseIn(
            card_id=card.id,
            category_id=food.id,
            description="Dinner",
            amount=Decimal("60"),
            date=date(2025, 3, 3),
        )
    )

    CategoryService(session, user.id).delete(food.id)

    assert session.scalar(select(func.count(Budget.id))) == 0
    assert session.scalar(select(func.count(Transaction.id))) == 0
    card_txn = session.scalars(select(CardTransaction)).one()
    assert card_txn.category_id is None
    session.refresh(account)
    assert account.balance_cents == 0


def test_deleting_account_removes_its_transactions() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    account = accounts.create(
        AccountIn(name="Checking", kind=AccountKind.checking, initial_balance="10")
    )

    accounts.delete(account.id)

    assert session.scalar(select(func.count(Account.id))) == 0
    assert session.scalar(select(func.count(Transaction.id))) == 0
    with pytest.raises(NotFound):
        accounts.get(account.id)


def test_deleting_user_removes_everything() -> None:
    session = make_session()
    user = make_user(session)
    AccountService(session, user.id).create(
        AccountIn(name="Checking", kind=AccountKind.checking, initial_balance="10")
    )
    CardService(session, user.id).create(CardIn(name="Visa", due_day=10))

    UserService(session).delete(user.id)

    assert session.scalar(select(func.count(Account.id))) == 0
    assert session.scalar(select(func.count(Category.id))) == 0
    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert UserService(session).list_all() == []


def test_other_users_records_are_not_visible() -> None:
    session = make_session()
    ana = make_user(session)
    bob = UserService(session).create(UserIn(name="Bob", email="bob@example.com"))
    account = AccountService(session, ana.id).create(
        AccountIn(name="Checking", kind=AccountKind.checking)
    )

    with pytest.raises(NotFound):
        AccountService(session, bob.id).get(account.id)
    assert AccountService(session, bob.id).list_all() == []


def test_grouped_card_transaction_update_rules() -> None:
    session = make_session()
    user = make_user(session)
    card = CardService(session, user.id).create(CardIn(name="Visa", due_day=10))
    service = CardTransactionService(session, user.id)
    rows = service.create_purchase(
        CardPurchaseIn(
            card_id=card.id,
            description="TV",
            amount=Decimal("300"),
            date=date(2025, 3, 3),
            installment_count=3,
        )
    )

    assert service.update(rows[0].id, {"amount": "50"}) is False
    assert service.update(rows[0].id, {"date": "2025-04-01"}) is False
    assert service.update(rows[0].id, {"notes": "living room"}) is True
    with pytest.raises(ValidationFailed):
        service.delete(rows[1].id)


def test_single_card_transaction_amount_update_adjusts_card_total() -> None:
    session = make_session()
    user = make_user(session)
    card = CardService(session, user.id).create(CardIn(name="Visa", due_day=10))
    service = CardTransactionService(session, user.id)
    [txn] = service.create_purchase(
        CardPurchaseIn(
            card_id=card.id,
            description="Book",
            amount=Decimal("40"),
            date=date(2025, 3, 3),
        )
    )

    assert service.update(txn.id, {"amount": "55.50"}) is True
    session.refresh(card)
    assert card.amount_cents == 5_550

    service.delete(txn.id)
    session.refresh(card)
    assert card.amount_cents == 0


def test_card_paid_until_reopened() -> None:
    session = make_session()
    user = make_user(session)
    cards = CardService(session, user.id)
    card = cards.create(CardIn(name="Visa", due_day=15))

    assert cards.to_out(card, date(2025, 3, 8)).status == "open"
    cards.mark_paid(card.id)
    assert cards.to_out(card, date(2025, 3, 8)).status == "paid"
    assert cards.to_out(card, date(2025, 3, 15)).status == "paid"
    cards.reopen(card.id)
    assert cards.to_out(card, date(2025, 3, 15)).status == "due"
