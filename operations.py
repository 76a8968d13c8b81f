"""
Call interface used by the presentation layer.

Every operation returns an ``errors.Result`` and never raises: domain errors
become their own message, storage errors a friendly text, and anything else
the generic message. List reads go through a short-lived ``QueryCache`` that
each mutation invalidates by owner prefix.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from cache import QueryCache, cache_key, owner_prefix
from config import get_settings
from errors import FinanceError, Result, ValidationFailed, classify
from models import AccountKind, TransactionType
from money import from_cents
from schemas import (
    AccountIn,
    AccountOut,
    BalanceCorrectionIn,
    BudgetIn,
    BudgetOut,
    CardIn,
    CardPurchaseIn,
    CardTransactionOut,
    CategoryIn,
    CategoryOut,
    StatementOut,
    SummaryOut,
    TransactionIn,
    TransactionOut,
    UserIn,
    UserOut,
)
from services import (
    AccountService,
    BudgetService,
    CardService,
    CardTransactionService,
    CategoryService,
    ImportService,
    MetricsService,
    TransactionFilters,
    TransactionService,
    UserService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

_shared_cache: Optional[QueryCache] = None


def shared_cache() -> QueryCache:
    global _shared_cache
    if _shared_cache is None:
        _shared_cache = QueryCache(ttl_seconds=get_settings().cache_ttl_secs)
    return _shared_cache


class FinanceOperations:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        cache: Optional[QueryCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.cache = cache if cache is not None else shared_cache()

    def _run(
        self, action: str, fn: Callable[[], Any], invalidates: tuple[str, ...] = ()
    ) -> Result:
        try:
            data = fn()
        except FinanceError as exc:
            self.session.rollback()
            logger.warning(f"{action}_failed: code={exc.code} error={exc.message}")
            return Result.fail(exc.message, exc.code)
        except Exception as exc:
            self.session.rollback()
            code, message = classify(exc)
            if code == "unexpected":
                logger.exception(f"{action}_failed: unexpected error")
            else:
                logger.warning(f"{action}_failed: code={code} error={exc}")
            return Result.fail(message, code)
        for entity in invalidates:
            self.cache.invalidate(owner_prefix(entity, self.user_id))
        return Result.ok(data)

    def _update(
        self, action: str, fn: Callable[[], bool], invalidates: tuple[str, ...] = ()
    ) -> Result:
        def _apply() -> bool:
            if not fn():
                raise ValidationFailed("No valid fields to update")
            return True

        return self._run(action, _apply, invalidates)

    def _cached(self, key: str, loader: Callable[[], Any]) -> Any:
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        value = loader()
        self.cache.set(key, value)
        return value

    # Users

    def create_user(self, name: str, email: str) -> Result:
        return self._run(
            "create_user",
            lambda: UserOut.from_row(
                UserService(self.session).create(UserIn(name=name, email=email))
            ),
        )

    def get_user(self, user_id: int) -> Result:
        return self._run(
            "get_user", lambda: UserOut.from_row(UserService(self.session).get(user_id))
        )

    def update_user(self, user_id: int, fields: Mapping[str, object]) -> Result:
        return self._update(
            "update_user", lambda: UserService(self.session).update(user_id, fields)
        )

    def delete_user(self, user_id: int) -> Result:
        def _delete() -> None:
            UserService(self.session).delete(user_id)
            for entity in (
                "accounts",
                "categories",
                "budgets",
                "transactions",
                "cards",
                "card_transactions",
            ):
                self.cache.invalidate(owner_prefix(entity, user_id))

        return self._run("delete_user", _delete)

    # Accounts

    def create_account(
        self,
        name: str,
        kind: AccountKind | str,
        initial_balance: Decimal | str | int = 0,
        opened_on: Optional[date] = None,
    ) -> Result:
        def _create() -> AccountOut:
            data = AccountIn(
                name=name, kind=kind, initial_balance=initial_balance, opened_on=opened_on
            )
            return AccountOut.from_row(
                AccountService(self.session, self.user_id).create(data)
            )

        return self._run(
            "create_account", _create, ("accounts", "transactions", "categories")
        )

    def list_accounts(self) -> Result:
        key = cache_key("accounts", self.user_id)
        return self._run(
            "list_accounts",
            lambda: self._cached(
                key,
                lambda: [
                    AccountOut.from_row(row)
                    for row in AccountService(self.session, self.user_id).list_all()
                ],
            ),
        )

    def get_account(self, account_id: int) -> Result:
        return self._run(
            "get_account",
            lambda: AccountOut.from_row(
                AccountService(self.session, self.user_id).get(account_id)
            ),
        )

    def update_account(self, account_id: int, fields: Mapping[str, object]) -> Result:
        return self._update(
            "update_account",
            lambda: AccountService(self.session, self.user_id).update(account_id, fields),
            ("accounts",),
        )

    def delete_account(self, account_id: int) -> Result:
        return self._run(
            "delete_account",
            lambda: AccountService(self.session, self.user_id).delete(account_id),
            ("accounts", "transactions"),
        )

    def correct_account_balance(
        self,
        account_id: int,
        target_balance: Decimal | str | int,
        on: date,
        description: Optional[str] = None,
    ) -> Result:
        def _correct() -> Optional[TransactionOut]:
            payload: dict[str, object] = {"target_balance": target_balance, "date": on}
            if description:
                payload["description"] = description
            txn = AccountService(self.session, self.user_id).correct_balance(
                account_id, BalanceCorrectionIn(**payload)
            )
            return TransactionOut.from_row(txn) if txn else None

        return self._run(
            "correct_account_balance",
            _correct,
            ("accounts", "transactions", "categories"),
        )

    # Categories

    def create_category(
        self,
        name: str,
        kind: TransactionType | str,
        color: Optional[str] = None,
        icon: Optional[str] = None,
    ) -> Result:
        def _create() -> CategoryOut:
            data = CategoryIn(name=name, type=kind, color=color, icon=icon)
            return CategoryOut.from_row(
                CategoryService(self.session, self.user_id).create(data)
            )

        return self._run("create_category", _create, ("categories",))

    def list_categories(self, kind: Optional[TransactionType] = None) -> Result:
        key = cache_key("categories", self.user_id, kind.value if kind else None)
        return self._run(
            "list_categories",
            lambda: self._cached(
                key,
                lambda: [
                    CategoryOut.from_row(row)
                    for row in CategoryService(self.session, self.user_id).list_all(kind)
                ],
            ),
        )

    def update_category(self, category_id: int, fields: Mapping[str, object]) -> Result:
        return self._update(
            "update_category",
            lambda: CategoryService(self.session, self.user_id).update(
                category_id, fields
            ),
            ("categories",),
        )

    def delete_category(self, category_id: int) -> Result:
        return self._run(
            "delete_category",
            lambda: CategoryService(self.session, self.user_id).delete(category_id),
            ("categories", "budgets", "transactions", "accounts", "card_transactions"),
        )

    # Budgets

    def create_budget(
        self, category_id: int, amount: Decimal | str | int, month: int, year: int
    ) -> Result:
        def _create() -> BudgetOut:
            data = BudgetIn(category_id=category_id, amount=amount, month=month, year=year)
            return BudgetOut.from_row(
                BudgetService(self.session, self.user_id).create(data)
            )

        return self._run("create_budget", _create, ("budgets",))

    def list_budgets(self, month: Optional[int] = None, year: Optional[int] = None) -> Result:
        key = cache_key("budgets", self.user_id, year, month)
        return self._run(
            "list_budgets",
            lambda: self._cached(
                key,
                lambda: [
                    BudgetOut.from_row(row)
                    for row in BudgetService(self.session, self.user_id).list_all(
                        month, year
                    )
                ],
            ),
        )

    def update_budget(self, budget_id: int, fields: Mapping[str, object]) -> Result:
        return self._update(
            "update_budget",
            lambda: BudgetService(self.session, self.user_id).update(budget_id, fields),
            ("budgets",),
        )

    def delete_budget(self, budget_id: int) -> Result:
        return self._run(
            "delete_budget",
            lambda: BudgetService(self.session, self.user_id).delete(budget_id),
            ("budgets",),
        )

    def get_budget_progress(self, month: int, year: int) -> Result:
        return self._run(
            "get_budget_progress",
            lambda: MetricsService(self.session, self.user_id).budget_progress(
                month, year
            ),
        )

    # Transactions

    def create_transaction(
        self,
        account_id: int,
        category_id: int,
        amount: Decimal | str | int,
        kind: TransactionType | str,
        date: date,
        description: str,
        notes: Optional[str] = None,
    ) -> Result:
        def _create() -> TransactionOut:
            data = TransactionIn(
                account_id=account_id,
                category_id=category_id,
                amount=amount,
                type=kind,
                date=date,
                description=description,
                notes=notes,
            )
            return TransactionOut.from_row(
                TransactionService(self.session, self.user_id).create(data)
            )

        return self._run("create_transaction", _create, ("transactions", "accounts"))

    def list_transactions(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Result:
        filters = filters or TransactionFilters()
        key = cache_key(
            "transactions",
            self.user_id,
            filters.type.value if filters.type else None,
            filters.account_id,
            filters.category_id,
            filters.date_from,
            filters.date_to,
            filters.query,
            limit,
            offset,
        )
        return self._run(
            "list_transactions",
            lambda: self._cached(
                key,
                lambda: [
                    TransactionOut.from_row(row)
                    for row in TransactionService(self.session, self.user_id).list(
                        filters, limit=limit, offset=offset
                    )
                ],
            ),
        )

    def get_transaction(self, transaction_id: int) -> Result:
        return self._run(
            "get_transaction",
            lambda: TransactionOut.from_row(
                TransactionService(self.session, self.user_id).get(transaction_id)
            ),
        )

    def update_transaction(
        self, transaction_id: int, fields: Mapping[str, object]
    ) -> Result:
        return self._update(
            "update_transaction",
            lambda: TransactionService(self.session, self.user_id).update(
                transaction_id, fields
            ),
            ("transactions", "accounts"),
        )

    def delete_transaction(self, transaction_id: int) -> Result:
        return self._run(
            "delete_transaction",
            lambda: TransactionService(self.session, self.user_id).delete(
                transaction_id
            ),
            ("transactions", "accounts"),
        )

    def get_summary(
        self, date_from: Optional[date] = None, date_to: Optional[date] = None
    ) -> Result:
        def _summary() -> SummaryOut:
            summary = MetricsService(self.session, self.user_id).summary(
                date_from, date_to
            )
            return SummaryOut(
                income=from_cents(summary.income_cents),
                expense=from_cents(summary.expense_cents),
                net=from_cents(summary.net_cents),
            )

        return self._run("get_summary", _summary)

    def get_category_breakdown(
        self,
        kind: TransactionType = TransactionType.expense,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> Result:
        return self._run(
            "get_category_breakdown",
            lambda: MetricsService(self.session, self.user_id).category_breakdown(
                kind, date_from, date_to
            ),
        )

    def import_transactions_csv(self, content: str) -> Result:
        return self._run(
            "import_transactions_csv",
            lambda: ImportService(self.session, self.user_id).import_csv(content),
            ("transactions", "accounts", "categories"),
        )

    def export_transactions_csv(
        self, filters: Optional[TransactionFilters] = None
    ) -> Result:
        return self._run(
            "export_transactions_csv",
            lambda: ImportService(self.session, self.user_id).export_csv(filters),
        )

    # Cards

    def create_card(self, name: str, due_day: int) -> Result:
        def _create():
            service = CardService(self.session, self.user_id)
            return service.to_out(service.create(CardIn(name=name, due_day=due_day)))

        return self._run("create_card", _create, ("cards",))

    def list_cards(self, today: Optional[date] = None) -> Result:
        # Status depends on today's date, so card lists are not cached.
        def _list():
            service = CardService(self.session, self.user_id)
            return [service.to_out(card, today) for card in service.list_all()]

        return self._run("list_cards", _list)

    def get_card(self, card_id: int, today: Optional[date] = None) -> Result:
        def _get():
            service = CardService(self.session, self.user_id)
            return service.to_out(service.get(card_id), today)

        return self._run("get_card", _get)

    def update_card(self, card_id: int, fields: Mapping[str, object]) -> Result:
        return self._update(
            "update_card",
            lambda: CardService(self.session, self.user_id).update(card_id, fields),
            ("cards", "card_transactions"),
        )

    def delete_card(self, card_id: int) -> Result:
        return self._run(
            "delete_card",
            lambda: CardService(self.session, self.user_id).delete(card_id),
            ("cards", "card_transactions"),
        )

    def mark_card_paid(self, card_id: int) -> Result:
        def _mark():
            service = CardService(self.session, self.user_id)
            return service.to_out(service.mark_paid(card_id))

        return self._run("mark_card_paid", _mark, ("cards",))

    def reopen_card(self, card_id: int) -> Result:
        def _reopen():
            service = CardService(self.session, self.user_id)
            return service.to_out(service.reopen(card_id))

        return self._run("reopen_card", _reopen, ("cards",))

    def get_card_statement(self, card_id: int, month: int, year: int) -> Result:
        def _statement() -> StatementOut:
            statement = CardService(self.session, self.user_id).statement(
                card_id, month, year
            )
            return StatementOut(
                card_id=statement.card_id,
                month=statement.month,
                year=statement.year,
                due_date=statement.due_date,
                total=from_cents(statement.total_cents),
                transactions=[
                    CardTransactionOut.from_row(row) for row in statement.transactions
                ],
            )

        return self._run("get_card_statement", _statement)

    # Card transactions

    def create_card_purchase(
        self,
        card_id: int,
        category_id: Optional[int],
        description: str,
        amount: Decimal | str | int,
        date: date,
        installment_count: int = 1,
        notes: Optional[str] = None,
    ) -> Result:
        def _create() -> list[CardTransactionOut]:
            data = CardPurchaseIn(
                card_id=card_id,
                category_id=category_id,
                description=description,
                amount=amount,
                date=date,
                installment_count=installment_count,
                notes=notes,
            )
            rows = CardTransactionService(self.session, self.user_id).create_purchase(
                data
            )
            return [CardTransactionOut.from_row(row) for row in rows]

        return self._run(
            "create_card_purchase", _create, ("card_transactions", "cards")
        )

    def list_card_transactions(
        self,
        card_id: Optional[int] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
    ) -> Result:
        key = cache_key("card_transactions", self.user_id, card_id, year, month)
        return self._run(
            "list_card_transactions",
            lambda: self._cached(
                key,
                lambda: [
                    CardTransactionOut.from_row(row)
                    for row in CardTransactionService(self.session, self.user_id).list(
                        card_id, month, year
                    )
                ],
            ),
        )

    def update_card_transaction(self, txn_id: int, fields: Mapping[str, object]) -> Result:
        return self._update(
            "update_card_transaction",
            lambda: CardTransactionService(self.session, self.user_id).update(
                txn_id, fields
            ),
            ("card_transactions", "cards"),
        )

    def delete_card_transaction(self, txn_id: int) -> Result:
        return self._run(
            "delete_card_transaction",
            lambda: CardTransactionService(self.session, self.user_id).delete(txn_id),
            ("card_transactions", "cards"),
        )

    def delete_card_purchase_group(self, group_id: str) -> Result:
        return self._run(
            "delete_card_purchase_group",
            lambda: CardTransactionService(self.session, self.user_id).delete_group(
                group_id
            ),
            ("card_transactions", "cards"),
        )
