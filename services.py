from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session, joinedload

from balances import BalanceEngine, LedgerEffect
from billing import (
    default_closing_offset,
    derive_card_status,
    due_date,
    local_today,
    shift_month,
    statement_month,
)
from csv_utils import export_transactions, parse_csv
from database import atomic
from errors import FinanceError, NotFound, UniquenessConflict, ValidationFailed
from installments import InstallmentGenerator
from models import (
    Account,
    Budget,
    Card,
    CardStatus,
    CardTransaction,
    Category,
    Transaction,
    TransactionType,
    User,
)
from money import from_cents, to_cents
from schemas import (
    AccountIn,
    AccountUpdate,
    BalanceCorrectionIn,
    BudgetIn,
    BudgetUpdate,
    CardIn,
    CardOut,
    CardPurchaseIn,
    CardTransactionUpdate,
    CardUpdate,
    CategoryIn,
    CategoryUpdate,
    ImportReport,
    PartialUpdate,
    TransactionIn,
    TransactionUpdate,
    UserIn,
    UserUpdate,
)

logger = logging.getLogger(__name__)

ADJUSTMENT_CATEGORY_NAME = "Balance adjustment"
DEFAULT_USER_NAME = "User"
DEFAULT_USER_EMAIL = "user@finance.local"


def _month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def get_current_user_id() -> int:
    return 1


def coerce_changes(
    model: type[PartialUpdate], changes: Union[PartialUpdate, Mapping[str, object]]
) -> Optional[dict[str, object]]:
    """
    Turn an update request into the set of fields to apply.

    Returns ``None`` when the request names a field outside the entity's
    update model, carries an invalid value, or names no field at all.
    """
    if isinstance(changes, model):
        parsed = changes
    elif isinstance(changes, Mapping):
        try:
            parsed = model.model_validate(dict(changes))
        except ValidationError:
            return None
    else:
        return None
    applied = parsed.changes()
    return applied or None


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    query: Optional[str] = None


@dataclass(frozen=True)
class Summary:
    income_cents: int
    expense_cents: int

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents


@dataclass(frozen=True)
class Statement:
    card_id: int
    month: int
    year: int
    due_date: date
    total_cents: int
    transactions: list[CardTransaction]


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.id)).all()

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def _email_taken(self, email: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(User.id).where(func.lower(User.email) == email.lower())
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: UserIn) -> User:
        email = data.email.strip()
        if self._email_taken(email):
            raise UniquenessConflict("A user with this email already exists")
        user = User(name=data.name.strip(), email=email)
        with atomic(self.session):
            self.session.add(user)
        self.session.refresh(user)
        return user

    def ensure_default(self) -> User:
        user = self.session.scalar(select(User).order_by(User.id).limit(1))
        if user:
            return user
        return self.create(UserIn(name=DEFAULT_USER_NAME, email=DEFAULT_USER_EMAIL))

    def update(
        self, user_id: int, changes: Union[UserUpdate, Mapping[str, object]]
    ) -> bool:
        data = coerce_changes(UserUpdate, changes)
        if data is None:
            return False
        user = self.get(user_id)
        if "email" in data and self._email_taken(str(data["email"]), user.id):
            raise UniquenessConflict("A user with this email already exists")
        with atomic(self.session):
            for field, value in data.items():
                setattr(user, field, value.strip() if isinstance(value, str) else value)
        return True

    def delete(self, user_id: int) -> None:
        user = self.get(user_id)
        with atomic(self.session):
            for model in (CardTransaction, Card, Transaction, Budget, Category, Account):
                self.session.execute(delete(model).where(model.user_id == user.id))
            self.session.delete(user)
        logger.info(f"user_deleted: id={user_id}")


def _adjustment_category(
    session: Session, user_id: int, txn_type: TransactionType
) -> Category:
    existing = session.scalar(
        select(Category).where(
            Category.user_id == user_id,
            Category.type == txn_type,
            func.lower(Category.name) == ADJUSTMENT_CATEGORY_NAME.lower(),
        )
    )
    if existing:
        return existing
    category = Category(user_id=user_id, name=ADJUSTMENT_CATEGORY_NAME, type=txn_type)
    session.add(category)
    session.flush()
    return category


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.balances = BalanceEngine(session)

    def list_all(self, include_inactive: bool = True) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def _post_adjustment(
        self, account: Account, delta_cents: int, on: date, description: str
    ) -> Transaction:
        txn_type = TransactionType.income if delta_cents > 0 else TransactionType.expense
        category = _adjustment_category(self.session, self.user_id, txn_type)
        txn = Transaction(
            user_id=self.user_id,
            description=description,
            amount_cents=abs(delta_cents),
            type=txn_type,
            date=on,
            account_id=account.id,
            category_id=category.id,
        )
        self.session.add(txn)
        self.session.flush()
        self.balances.on_insert(txn)
        return txn

    def create(self, data: AccountIn) -> Account:
        initial_cents = to_cents(data.initial_balance)
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            kind=data.kind,
            balance_cents=0,
            is_active=data.is_active,
        )
        with atomic(self.session):
            self.session.add(account)
            self.session.flush()
            if initial_cents:
                self._post_adjustment(
                    account,
                    initial_cents,
                    data.opened_on or local_today(),
                    "Opening balance",
                )
        self.session.refresh(account)
        logger.info(
            f"account_created: id={account.id} balance_cents={account.balance_cents}"
        )
        return account

    def update(
        self, account_id: int, changes: Union[AccountUpdate, Mapping[str, object]]
    ) -> bool:
        data = coerce_changes(AccountUpdate, changes)
        if data is None:
            return False
        account = self.get(account_id)
        with atomic(self.session):
            for field, value in data.items():
                setattr(account, field, value.strip() if isinstance(value, str) else value)
        return True

    def correct_balance(self, account_id: int, data: BalanceCorrectionIn) -> Optional[Transaction]:
        """Bring the balance to ``target_balance`` through a compensating transaction."""
        account = self.get(account_id)
        delta = to_cents(data.target_balance) - account.balance_cents
        if delta == 0:
            return None
        with atomic(self.session):
            txn = self._post_adjustment(account, delta, data.date, data.description.strip())
        self.session.refresh(txn)
        logger.info(
            f"balance_corrected: account_id={account_id} delta_cents={delta} txn_id={txn.id}"
        )
        return txn

    def verify_balance(self, account_id: int) -> int:
        self.get(account_id)
        return self.balances.verify(account_id)

    def rebuild_balance(self, account_id: int) -> int:
        self.get(account_id)
        with atomic(self.session):
            total = self.balances.rebuild(account_id)
        return total

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        txns = self.session.scalars(
            select(Transaction).where(Transaction.account_id == account.id)
        ).all()
        with atomic(self.session):
            for txn in txns:
                self.balances.on_delete(txn)
                self.session.delete(txn)
            self.session.flush()
            self.session.delete(account)
        logger.info(f"account_deleted: id={account_id} transactions={len(txns)}")


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if txn_type:
            stmt = stmt.where(Category.type == txn_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def _name_taken(
        self, name: str, txn_type: TransactionType, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == txn_type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name, data.type):
            raise UniquenessConflict("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
        )
        with atomic(self.session):
            self.session.add(category)
        self.session.refresh(category)
        return category

    def _in_use(self, category_id: int) -> bool:
        txns = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category_id
            )
        )
        budgets = self.session.scalar(
            select(func.count(Budget.id)).where(Budget.category_id == category_id)
        )
        return bool(txns) or bool(budgets)

    def update(
        self, category_id: int, changes: Union[CategoryUpdate, Mapping[str, object]]
    ) -> bool:
        data = coerce_changes(CategoryUpdate, changes)
        if data is None:
            return False
        category = self.get(category_id)
        name = str(data.get("name", category.name)).strip()
        txn_type = data.get("type", category.type)
        if self._name_taken(name, txn_type, category.id):
            raise UniquenessConflict("Category with this name already exists")
        if txn_type != category.type and self._in_use(category.id):
            raise ValidationFailed(
                "Category type cannot change while transactions or budgets use it"
            )
        with atomic(self.session):
            for field, value in data.items():
                setattr(category, field, value.strip() if isinstance(value, str) else value)
        return True

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        balances = BalanceEngine(self.session)
        txns = self.session.scalars(
            select(Transaction).where(Transaction.category_id == category.id)
        ).all()
        with atomic(self.session):
            self.session.execute(delete(Budget).where(Budget.category_id == category.id))
            for txn in txns:
                balances.on_delete(txn)
                self.session.delete(txn)
            self.session.execute(
                update(CardTransaction)
                .where(CardTransaction.category_id == category.id)
                .values(category_id=None)
            )
            self.session.flush()
            self.session.delete(category)
        logger.info(f"category_deleted: id={category_id} transactions={len(txns)}")


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year.desc(), Budget.month.desc(), Budget.id)
        )
        if month is not None:
            stmt = stmt.where(Budget.month == month)
        if year is not None:
            stmt = stmt.where(Budget.year == year)
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFound("Budget not found")
        return budget

    def _check_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        if category.type != TransactionType.expense:
            raise ValidationFailed("Budgets can only be set for expense categories")
        return category

    def _exists(
        self, category_id: int, month: int, year: int, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id,
            Budget.category_id == category_id,
            Budget.month == month,
            Budget.year == year,
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        amount_cents = to_cents(data.amount)
        if amount_cents <= 0:
            raise ValidationFailed("Amount must be positive")
        if self._exists(data.category_id, data.month, data.year):
            raise UniquenessConflict("A budget for this category and month already exists")
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=amount_cents,
            month=data.month,
            year=data.year,
        )
        with atomic(self.session):
            self.session.add(budget)
        self.session.refresh(budget)
        return budget

    def update(
        self, budget_id: int, changes: Union[BudgetUpdate, Mapping[str, object]]
    ) -> bool:
        data = coerce_changes(BudgetUpdate, changes)
        if data is None:
            return False
        budget = self.get(budget_id)
        category_id = int(data.get("category_id", budget.category_id))
        month = int(data.get("month", budget.month))
        year = int(data.get("year", budget.year))
        if "category_id" in data:
            self._check_category(category_id)
        if self._exists(category_id, month, year, budget.id):
            raise UniquenessConflict("A budget for this category and month already exists")
        amount_cents = budget.amount_cents
        if "amount" in data:
            amount_cents = to_cents(data["amount"])
            if amount_cents <= 0:
                raise ValidationFailed("Amount must be positive")
        with atomic(self.session):
            budget.category_id = category_id
            budget.month = month
            budget.year = year
            budget.amount_cents = amount_cents
        return True

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with atomic(self.session):
            self.session.delete(budget)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.balances = BalanceEngine(session)

    def has_any(self) -> bool:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def _account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def _category(self, category_id: int, txn_type: TransactionType) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        if category.type != txn_type:
            raise ValidationFailed("Category type mismatch")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        amount_cents = to_cents(data.amount)
        if amount_cents <= 0:
            raise ValidationFailed("Amount must be positive")
        self._account(data.account_id)
        self._category(data.category_id, data.type)
        txn = Transaction(
            user_id=self.user_id,
            description=data.description.strip(),
            amount_cents=amount_cents,
            type=data.type,
            date=data.date,
            account_id=data.account_id,
            category_id=data.category_id,
            notes=data.notes,
        )
        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            self.balances.on_insert(txn)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} account_id={txn.account_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def update(
        self,
        transaction_id: int,
        changes: Union[TransactionUpdate, Mapping[str, object]],
    ) -> bool:
        data = coerce_changes(TransactionUpdate, changes)
        if data is None:
            return False
        txn = self.get(transaction_id)
        old = LedgerEffect.of(txn)

        txn_type = data.get("type", txn.type)
        account_id = int(data.get("account_id", txn.account_id))
        category_id = int(data.get("category_id", txn.category_id))
        amount_cents = txn.amount_cents
        if "amount" in data:
            amount_cents = to_cents(data["amount"])
            if amount_cents <= 0:
                raise ValidationFailed("Amount must be positive")
        self._account(account_id)
        self._category(category_id, txn_type)

        with atomic(self.session):
            txn.type = txn_type
            txn.account_id = account_id
            txn.category_id = category_id
            txn.amount_cents = amount_cents
            if "description" in data:
                txn.description = str(data["description"]).strip()
            if "date" in data:
                txn.date = data["date"]
            if "notes" in data:
                txn.notes = data["notes"]
            self.session.flush()
            self.balances.on_update(old, txn)
        logger.info(
            f"transaction_updated: id={txn.id} old_account_id={old.account_id} "
            f"account_id={txn.account_id} amount_cents={txn.amount_cents}"
        )
        return True

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        account_id = txn.account_id
        with atomic(self.session):
            self.balances.on_delete(txn)
            self.session.delete(txn)
        logger.info(f"transaction_deleted: id={transaction_id} account_id={account_id}")

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
        )
        if limit:
            stmt = stmt.limit(limit)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.date_from:
            stmt = stmt.where(Transaction.date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Transaction.date <= filters.date_to)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return self.session.scalars(stmt).all()


class CardService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        closing_offset: Optional[int] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.closing_offset = (
            default_closing_offset() if closing_offset is None else closing_offset
        )

    def list_all(self) -> list[Card]:
        stmt = (
            select(Card)
            .where(Card.user_id == self.user_id)
            .order_by(Card.name, Card.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, card_id: int) -> Card:
        card = self.session.get(Card, card_id)
        if not card or card.user_id != self.user_id:
            raise NotFound("Card not found")
        return card

    def status(self, card: Card, today: Optional[date] = None) -> CardStatus:
        return derive_card_status(
            card.due_day, today or local_today(), card.paid_at, self.closing_offset
        )

    def to_out(self, card: Card, today: Optional[date] = None) -> CardOut:
        return CardOut(
            id=card.id,
            name=card.name,
            due_day=card.due_day,
            amount=from_cents(card.amount_cents),
            status=self.status(card, today),
            paid_at=card.paid_at,
        )

    def create(self, data: CardIn) -> Card:
        card = Card(
            user_id=self.user_id,
            name=data.name.strip(),
            due_day=data.due_day,
            amount_cents=0,
        )
        with atomic(self.session):
            self.session.add(card)
        self.session.refresh(card)
        return card

    def update(
        self, card_id: int, changes: Union[CardUpdate, Mapping[str, object]]
    ) -> bool:
        data = coerce_changes(CardUpdate, changes)
        if data is None:
            return False
        card = self.get(card_id)
        with atomic(self.session):
            for field, value in data.items():
                setattr(card, field, value.strip() if isinstance(value, str) else value)
        return True

    def mark_paid(self, card_id: int) -> Card:
        card = self.get(card_id)
        if card.paid_at is None:
            with atomic(self.session):
                card.paid_at = datetime.utcnow()
        return card

    def reopen(self, card_id: int) -> Card:
        card = self.get(card_id)
        if card.paid_at is not None:
            with atomic(self.session):
                card.paid_at = None
        return card

    def delete(self, card_id: int) -> None:
        card = self.get(card_id)
        with atomic(self.session):
            self.session.execute(
                delete(CardTransaction).where(CardTransaction.card_id == card.id)
            )
            self.session.delete(card)
        logger.info(f"card_deleted: id={card_id}")

    def statement(self, card_id: int, month: int, year: int) -> Statement:
        card = self.get(card_id)
        rows = CardTransactionService(
            self.session, self.user_id, self.closing_offset
        ).list(card_id=card.id, month=month, year=year)
        return Statement(
            card_id=card.id,
            month=month,
            year=year,
            due_date=due_date(card.due_day, year, month),
            total_cents=sum(row.amount_cents for row in rows),
            transactions=list(rows),
        )


class CardTransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        closing_offset: Optional[int] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.closing_offset = (
            default_closing_offset() if closing_offset is None else closing_offset
        )
        self.balances = BalanceEngine(session)
        self.generator = InstallmentGenerator(session, self.user_id)

    def create_purchase(self, data: CardPurchaseIn) -> list[CardTransaction]:
        return self.generator.create_purchase(data)

    def get(self, txn_id: int) -> CardTransaction:
        txn = self.session.get(CardTransaction, txn_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFound("Card transaction not found")
        return txn

    def list(
        self,
        card_id: Optional[int] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
    ) -> list[CardTransaction]:
        stmt = (
            select(CardTransaction)
            .options(joinedload(CardTransaction.card))
            .where(CardTransaction.user_id == self.user_id)
            .order_by(CardTransaction.date.desc(), CardTransaction.id.desc())
        )
        if card_id:
            stmt = stmt.where(CardTransaction.card_id == card_id)
        if month and year:
            # A statement holds charges from the previous month (on/after closing)
            # and from its own month (before closing).
            prev_year, prev_month = shift_month(year, month, -1)
            stmt = stmt.where(
                CardTransaction.date.between(
                    _month_start(prev_year, prev_month), _month_end(year, month)
                )
            )
        rows = self.session.scalars(stmt).all()
        if month and year:
            rows = [
                row
                for row in rows
                if statement_month(row.card.due_day, row.date, self.closing_offset)
                == (month, year)
            ]
        return rows

    def update(
        self,
        txn_id: int,
        changes: Union[CardTransactionUpdate, Mapping[str, object]],
    ) -> bool:
        data = coerce_changes(CardTransactionUpdate, changes)
        if data is None:
            return False
        txn = self.get(txn_id)
        if txn.group_id and ({"amount", "date"} & data.keys()):
            return False
        if data.get("category_id") is not None:
            self.generator._check_category(int(data["category_id"]))
        new_amount = txn.amount_cents
        if "amount" in data:
            new_amount = to_cents(data["amount"])
            if new_amount <= 0:
                raise ValidationFailed("Amount must be positive")

        with atomic(self.session):
            if new_amount != txn.amount_cents:
                self.balances.refund_card(txn.card_id, txn.amount_cents)
                txn.amount_cents = new_amount
                self.balances.charge_card(txn)
            if "description" in data:
                txn.description = str(data["description"]).strip()
            for field in ("date", "category_id", "notes"):
                if field in data:
                    setattr(txn, field, data[field])
        return True

    def delete(self, txn_id: int) -> None:
        txn = self.get(txn_id)
        if txn.group_id and txn.installment_count > 1:
            raise ValidationFailed(
                f"This is installment {txn.installment_number} of "
                f"{txn.installment_count}; delete the whole purchase instead"
            )
        with atomic(self.session):
            self.balances.refund_card(txn.card_id, txn.amount_cents)
            self.session.delete(txn)

    def delete_group(self, group_id: str) -> int:
        return self.generator.delete_group(group_id)


class MetricsService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _range(self, stmt, date_from: Optional[date], date_to: Optional[date]):
        if date_from:
            stmt = stmt.where(Transaction.date >= date_from)
        if date_to:
            stmt = stmt.where(Transaction.date <= date_to)
        return stmt

    def summary(
        self, date_from: Optional[date] = None, date_to: Optional[date] = None
    ) -> Summary:
        if date_from and date_to and date_from > date_to:
            raise ValidationFailed("Start date must be before end date")
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
        ).where(Transaction.user_id == self.user_id)
        row = self.session.execute(self._range(stmt, date_from, date_to)).one()
        return Summary(income_cents=int(row.income), expense_cents=int(row.expenses))

    def category_breakdown(
        self,
        txn_type: TransactionType = TransactionType.expense,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[dict[str, object]]:
        stmt = (
            select(
                Category.id,
                Category.name,
                Category.color,
                func.sum(Transaction.amount_cents).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .join(Transaction, Transaction.category_id == Category.id)
            .where(Transaction.user_id == self.user_id, Transaction.type == txn_type)
            .group_by(Category.id, Category.name, Category.color)
            .order_by(func.sum(Transaction.amount_cents).desc(), Category.name)
        )
        rows = self.session.execute(self._range(stmt, date_from, date_to)).all()
        return [
            {
                "category_id": row.id,
                "name": row.name,
                "color": row.color,
                "total_cents": int(row.total or 0),
                "count": int(row.count or 0),
            }
            for row in rows
        ]

    def budget_progress(self, month: int, year: int) -> dict[int, dict[str, object]]:
        budgets = BudgetService(self.session, self.user_id).list_all(month, year)
        if not budgets:
            return {}
        start = _month_start(year, month)
        end = _month_end(year, month)
        spent_rows = self.session.execute(
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
                Transaction.category_id.in_([b.category_id for b in budgets]),
            )
            .group_by(Transaction.category_id)
        ).all()
        spent_by_category = {row.category_id: int(row.spent) for row in spent_rows}

        progress: dict[int, dict[str, object]] = {}
        for budget in budgets:
            spent = spent_by_category.get(budget.category_id, 0)
            progress[budget.category_id] = {
                "budget_id": budget.id,
                "category": budget.category.name,
                "planned_cents": budget.amount_cents,
                "spent_cents": spent,
                "remaining_cents": budget.amount_cents - spent,
                "percent": round(spent * 100 / budget.amount_cents, 1),
            }
        return progress


class ImportService:
    """
    Sequential CSV import: every row is its own atomic unit.

    A failure on one row is reported and the import moves on, so a partial
    import leaves the earlier rows committed.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _account_id(self, name: str) -> int:
        account = self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id,
                func.lower(Account.name) == name.strip().lower(),
            )
        )
        if not account:
            raise NotFound(f"Account '{name}' not found")
        return account.id

    def _category_id(self, name: str, txn_type: TransactionType) -> int:
        input_lower = name.strip().lower()
        categories = self.session.scalars(
            select(Category).where(
                Category.user_id == self.user_id, Category.type == txn_type
            )
        ).all()
        for category in categories:
            if category.name.lower() == input_lower:
                return category.id

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(input_lower, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise ValidationFailed(
                    f"Category '{name}' is ambiguous; matches: {options}"
                )
            return best[0].id

        created = CategoryService(self.session, self.user_id).create(
            CategoryIn(name=name.strip(), type=txn_type)
        )
        return created.id

    def import_csv(self, content: str) -> ImportReport:
        rows, errors = parse_csv(content)
        report = ImportReport(errors=errors)
        transactions = TransactionService(self.session, self.user_id)
        for line, row in rows:
            try:
                txn_in = TransactionIn(
                    account_id=self._account_id(row.account),
                    category_id=self._category_id(row.category, row.type),
                    description=row.description,
                    amount=from_cents(row.amount_cents),
                    type=row.type,
                    date=row.date,
                    notes=row.notes,
                )
                transactions.create(txn_in)
                report.created += 1
            except (FinanceError, ValidationError) as exc:
                self.session.rollback()
                report.errors.append(f"Row {line}: {exc}")
        logger.info(
            f"csv_import: created={report.created} failed={len(report.errors)}"
        )
        return report

    def export_csv(self, filters: Optional[TransactionFilters] = None) -> str:
        txns = TransactionService(self.session, self.user_id).list(filters)
        return export_transactions(list(reversed(txns)))
