from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from balances import BalanceEngine
from billing import add_months
from database import atomic
from errors import NotFound, ValidationFailed
from models import Card, CardTransaction, Category, TransactionType
from money import allocate_cents, to_cents
from schemas import MAX_INSTALLMENTS, CardPurchaseIn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallmentPlan:
    installment_number: int
    installment_count: int
    amount_cents: int
    date: date
    group_id: Optional[str]


def new_group_id() -> str:
    return uuid.uuid4().hex


def plan_installments(
    total_cents: int,
    purchase_date: date,
    count: int,
    group_id: Optional[str] = None,
) -> list[InstallmentPlan]:
    """
    Lay out ``count`` installments of a purchase.

    Amounts come from the cent allocator (extra cents first); installment i
    is dated i-1 months after the purchase on the same day, snapped to the
    end of shorter months.
    """
    if count < 1 or count > MAX_INSTALLMENTS:
        raise ValidationFailed(
            f"Installment count must be between 1 and {MAX_INSTALLMENTS}"
        )
    amounts = allocate_cents(total_cents, count)
    return [
        InstallmentPlan(
            installment_number=index,
            installment_count=count,
            amount_cents=amount,
            date=add_months(purchase_date, index - 1),
            group_id=group_id,
        )
        for index, amount in enumerate(amounts, start=1)
    ]


class InstallmentGenerator:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.balances = BalanceEngine(session)

    def _card(self, card_id: int) -> Card:
        card = self.session.get(Card, card_id)
        if not card or card.user_id != self.user_id:
            raise NotFound("Card not found")
        return card

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        if category.type != TransactionType.expense:
            raise ValidationFailed("Card purchases need an expense category")

    def create_purchase(self, data: CardPurchaseIn) -> list[CardTransaction]:
        if data.installment_count == 1:
            return [self.create_single(data)]
        return self.create_installments(data)

    def create_single(self, data: CardPurchaseIn) -> CardTransaction:
        if data.installment_count != 1:
            raise ValidationFailed("A single purchase has exactly one installment")
        amount_cents = to_cents(data.amount)
        if amount_cents <= 0:
            raise ValidationFailed("Amount must be positive")
        self._card(data.card_id)
        self._check_category(data.category_id)

        with atomic(self.session):
            txn = CardTransaction(
                user_id=self.user_id,
                description=data.description.strip(),
                amount_cents=amount_cents,
                date=data.date,
                card_id=data.card_id,
                category_id=data.category_id,
                notes=data.notes,
                installment_count=1,
                installment_number=1,
                group_id=None,
            )
            self.session.add(txn)
            self.session.flush()
            self.balances.charge_card(txn)
        self.session.refresh(txn)
        logger.info(
            f"card_purchase_created: id={txn.id} card_id={txn.card_id} "
            f"amount_cents={txn.amount_cents}"
        )
        return txn

    def create_installments(self, data: CardPurchaseIn) -> list[CardTransaction]:
        if data.installment_count < 2:
            raise ValidationFailed(
                "Installment purchases need at least 2 installments"
            )
        self._card(data.card_id)
        self._check_category(data.category_id)
        group_id = new_group_id()
        plans = plan_installments(
            to_cents(data.amount), data.date, data.installment_count, group_id
        )

        created: list[CardTransaction] = []
        with atomic(self.session):
            for plan in plans:
                txn = CardTransaction(
                    user_id=self.user_id,
                    description=data.description.strip(),
                    amount_cents=plan.amount_cents,
                    date=plan.date,
                    card_id=data.card_id,
                    category_id=data.category_id,
                    notes=data.notes,
                    installment_count=plan.installment_count,
                    installment_number=plan.installment_number,
                    group_id=plan.group_id,
                )
                self.session.add(txn)
                self.session.flush()
                self.balances.charge_card(txn)
                created.append(txn)
        for txn in created:
            self.session.refresh(txn)
        logger.info(
            f"installment_purchase_created: group_id={group_id} "
            f"card_id={data.card_id} installments={len(created)}"
        )
        return created

    def group_rows(self, group_id: str) -> list[CardTransaction]:
        stmt = (
            select(CardTransaction)
            .where(
                CardTransaction.user_id == self.user_id,
                CardTransaction.group_id == group_id,
            )
            .order_by(CardTransaction.installment_number.asc())
        )
        return self.session.scalars(stmt).all()

    def delete_group(self, group_id: str) -> int:
        rows = self.group_rows(group_id)
        if not rows:
            raise NotFound("Installment group not found")
        with atomic(self.session):
            for txn in rows:
                self.balances.refund_card(txn.card_id, txn.amount_cents)
                self.session.delete(txn)
        logger.info(f"installment_group_deleted: group_id={group_id} rows={len(rows)}")
        return len(rows)
