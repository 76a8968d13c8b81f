from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from errors import ConsistencyViolation
from models import Account, Card, CardTransaction, Transaction, TransactionType

logger = logging.getLogger(__name__)


def signed_cents(kind: TransactionType, amount_cents: int) -> int:
    return amount_cents if kind == TransactionType.income else -amount_cents


@dataclass(frozen=True)
class LedgerEffect:
    """Contribution of one transaction row to one account balance."""

    account_id: int
    signed_cents: int

    @classmethod
    def of(cls, txn: Transaction) -> "LedgerEffect":
        return cls(txn.account_id, signed_cents(txn.type, txn.amount_cents))


class BalanceEngine:
    """
    Sole writer of ``Account.balance_cents`` and ``Card.amount_cents`` after creation.

    Every method mutates rows inside the caller's session and never commits:
    the caller wraps the row change and the balance change in one
    ``database.atomic`` block so either both land or neither does.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if account is None:
            raise ConsistencyViolation(
                f"Account {account_id} does not exist; balance cannot be updated"
            )
        return account

    def _card(self, card_id: int) -> Card:
        card = self.session.get(Card, card_id)
        if card is None:
            raise ConsistencyViolation(
                f"Card {card_id} does not exist; card total cannot be updated"
            )
        return card

    def apply(self, effect: LedgerEffect) -> None:
        account = self._account(effect.account_id)
        account.balance_cents += effect.signed_cents

    def reverse(self, effect: LedgerEffect) -> None:
        account = self._account(effect.account_id)
        account.balance_cents -= effect.signed_cents

    def on_insert(self, txn: Transaction) -> None:
        self.apply(LedgerEffect.of(txn))

    def on_delete(self, txn: Transaction) -> None:
        self.reverse(LedgerEffect.of(txn))

    def on_update(self, old: LedgerEffect, txn: Transaction) -> None:
        # Reverse against the previous account, then apply to the current one.
        self.reverse(old)
        self.apply(LedgerEffect.of(txn))

    def charge_card(self, txn: CardTransaction) -> None:
        card = self._card(txn.card_id)
        card.amount_cents += txn.amount_cents

    def refund_card(self, card_id: int, amount_cents: int) -> None:
        card = self._card(card_id)
        card.amount_cents -= amount_cents

    def ledger_cents(self, account_id: int) -> int:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=-Transaction.amount_cents,
                    )
                ),
                0,
            )
        ).where(Transaction.account_id == account_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def verify(self, account_id: int) -> int:
        self.session.flush()
        account = self._account(account_id)
        expected = self.ledger_cents(account_id)
        if account.balance_cents != expected:
            raise ConsistencyViolation(
                f"Account {account_id} balance {account.balance_cents} "
                f"does not match ledger total {expected}"
            )
        return expected

    def rebuild(self, account_id: int) -> int:
        self.session.flush()
        account = self._account(account_id)
        expected = self.ledger_cents(account_id)
        if account.balance_cents != expected:
            logger.warning(
                f"balance_rebuilt: account_id={account_id} "
                f"cached={account.balance_cents} ledger={expected}"
            )
            account.balance_cents = expected
        return expected

    def card_total_cents(self, card_id: int) -> int:
        stmt = select(func.coalesce(func.sum(CardTransaction.amount_cents), 0)).where(
            CardTransaction.card_id == card_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)
