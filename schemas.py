import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountKind, CardStatus, TransactionType
from money import from_cents

MAX_AMOUNT = Decimal("999999999")
MAX_INSTALLMENTS = 60


class PartialUpdate(BaseModel):
    """
    Base for per-entity update requests.

    Only the declared fields are accepted (anything else is a validation
    error), and only fields the caller actually sent are applied.
    """

    model_config = ConfigDict(extra="forbid")

    nullable_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_missing_values(self) -> "PartialUpdate":
        for name in self.model_fields_set:
            if getattr(self, name) is None and name not in self.nullable_fields:
                raise ValueError(f"{name} cannot be empty")
        return self

    def changes(self) -> dict[str, object]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class UserUpdate(PartialUpdate):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(
        default=None, min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$"
    )


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    kind: AccountKind
    initial_balance: Decimal = Field(default=Decimal("0"), le=MAX_AMOUNT, ge=-MAX_AMOUNT)
    is_active: bool = True
    opened_on: Optional[dt.date] = None


class AccountUpdate(PartialUpdate):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    kind: Optional[AccountKind] = None
    is_active: Optional[bool] = None


class BalanceCorrectionIn(BaseModel):
    target_balance: Decimal = Field(..., le=MAX_AMOUNT, ge=-MAX_AMOUNT)
    date: dt.date
    description: str = Field(default="Balance adjustment", min_length=1, max_length=255)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=50)
    icon: Optional[str] = Field(default=None, max_length=50)


class CategoryUpdate(PartialUpdate):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"color", "icon"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(default=None, max_length=50)
    icon: Optional[str] = Field(default=None, max_length=50)


class BudgetIn(BaseModel):
    category_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)


class BudgetUpdate(PartialUpdate):
    category_id: Optional[int] = Field(default=None, gt=0)
    amount: Optional[Decimal] = Field(default=None, gt=0, le=MAX_AMOUNT)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=2000, le=2100)


class TransactionIn(BaseModel):
    account_id: int = Field(..., gt=0)
    category_id: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    type: TransactionType
    date: dt.date
    notes: Optional[str] = Field(default=None, max_length=1000)


class TransactionUpdate(PartialUpdate):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"notes"})

    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[Decimal] = Field(default=None, gt=0, le=MAX_AMOUNT)
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    account_id: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = Field(default=None, max_length=1000)


class CardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    due_day: int = Field(..., ge=1, le=31)


class CardUpdate(PartialUpdate):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)


class CardPurchaseIn(BaseModel):
    card_id: int = Field(..., gt=0)
    category_id: Optional[int] = Field(default=None, gt=0)
    description: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    date: dt.date
    installment_count: int = Field(default=1, ge=1, le=MAX_INSTALLMENTS)
    notes: Optional[str] = Field(default=None, max_length=1000)


class CardTransactionUpdate(PartialUpdate):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"category_id", "notes"})

    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[Decimal] = Field(default=None, gt=0, le=MAX_AMOUNT)
    date: Optional[dt.date] = None
    category_id: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = Field(default=None, max_length=1000)


class CSVRow(BaseModel):
    date: dt.date
    type: TransactionType
    amount_cents: int = Field(..., gt=0, le=int(MAX_AMOUNT * 100))
    account: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=1000)


class UserOut(BaseModel):
    id: int
    name: str
    email: str

    @classmethod
    def from_row(cls, user) -> "UserOut":
        return cls(id=user.id, name=user.name, email=user.email)


class AccountOut(BaseModel):
    id: int
    name: str
    kind: AccountKind
    balance: Decimal
    is_active: bool

    @classmethod
    def from_row(cls, account) -> "AccountOut":
        return cls(
            id=account.id,
            name=account.name,
            kind=account.kind,
            balance=from_cents(account.balance_cents),
            is_active=account.is_active,
        )


class CategoryOut(BaseModel):
    id: int
    name: str
    type: TransactionType
    color: Optional[str]
    icon: Optional[str]

    @classmethod
    def from_row(cls, category) -> "CategoryOut":
        return cls(
            id=category.id,
            name=category.name,
            type=category.type,
            color=category.color,
            icon=category.icon,
        )


class BudgetOut(BaseModel):
    id: int
    category_id: int
    amount: Decimal
    month: int
    year: int

    @classmethod
    def from_row(cls, budget) -> "BudgetOut":
        return cls(
            id=budget.id,
            category_id=budget.category_id,
            amount=from_cents(budget.amount_cents),
            month=budget.month,
            year=budget.year,
        )


class TransactionOut(BaseModel):
    id: int
    description: str
    amount: Decimal
    type: TransactionType
    date: dt.date
    account_id: int
    category_id: int
    notes: Optional[str]

    @classmethod
    def from_row(cls, txn) -> "TransactionOut":
        return cls(
            id=txn.id,
            description=txn.description,
            amount=from_cents(txn.amount_cents),
            type=txn.type,
            date=txn.date,
            account_id=txn.account_id,
            category_id=txn.category_id,
            notes=txn.notes,
        )


class CardOut(BaseModel):
    id: int
    name: str
    due_day: int
    amount: Decimal
    status: CardStatus
    paid_at: Optional[datetime]


class CardTransactionOut(BaseModel):
    id: int
    description: str
    label: str
    amount: Decimal
    date: dt.date
    card_id: int
    category_id: Optional[int]
    notes: Optional[str]
    installment_count: int
    installment_number: int
    group_id: Optional[str]

    @classmethod
    def from_row(cls, txn) -> "CardTransactionOut":
        return cls(
            id=txn.id,
            description=txn.description,
            label=txn.label,
            amount=from_cents(txn.amount_cents),
            date=txn.date,
            card_id=txn.card_id,
            category_id=txn.category_id,
            notes=txn.notes,
            installment_count=txn.installment_count,
            installment_number=txn.installment_number,
            group_id=txn.group_id,
        )


class SummaryOut(BaseModel):
    income: Decimal
    expense: Decimal
    net: Decimal


class StatementOut(BaseModel):
    card_id: int
    month: int
    year: int
    due_date: dt.date
    total: Decimal
    transactions: list[CardTransactionOut]


class ImportReport(BaseModel):
    created: int = 0
    errors: list[str] = Field(default_factory=list)
