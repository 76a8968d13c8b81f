import logging
import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import SessionLocal
from errors import Result
from models import AccountKind, TransactionType
from operations import FinanceOperations
from periods import resolve_period
from services import TransactionFilters, UserService

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Finance")

STATUS_BY_CODE = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "consistency": 409,
    "unexpected": 500,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_ops(db: Session = Depends(get_db)) -> FinanceOperations:
    return FinanceOperations(db)


def require_csrf(x_csrf_token: str = Header(default="")) -> None:
    if not validate_csrf_token(x_csrf_token):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")


def respond(result: Result, created: bool = False) -> JSONResponse:
    if result.success:
        return JSONResponse(
            status_code=201 if created else 200,
            content={"success": True, "data": jsonable_encoder(result.data)},
        )
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(result.code or "unexpected", 500),
        content={"success": False, "error": result.error, "code": result.code},
    )


@app.on_event("startup")
def startup_event():
    db = SessionLocal()
    try:
        UserService(db).ensure_default()
    finally:
        db.close()


class AccountBody(BaseModel):
    name: str
    kind: AccountKind
    initial_balance: Decimal = Decimal("0")
    opened_on: Optional[date] = None


class BalanceCorrectionBody(BaseModel):
    target_balance: Decimal
    date: dt.date
    description: Optional[str] = None


class CategoryBody(BaseModel):
    name: str
    type: TransactionType
    color: Optional[str] = None
    icon: Optional[str] = None


class BudgetBody(BaseModel):
    category_id: int
    amount: Decimal
    month: int
    year: int


class TransactionBody(BaseModel):
    account_id: int
    category_id: int
    amount: Decimal
    type: TransactionType
    date: dt.date
    description: str
    notes: Optional[str] = None


class CardBody(BaseModel):
    name: str
    due_day: int


class CardPurchaseBody(BaseModel):
    category_id: Optional[int] = None
    description: str
    amount: Decimal
    date: dt.date
    installment_count: int = Field(default=1)
    notes: Optional[str] = None


@app.get("/api/csrf-token")
def csrf_token():
    return {"success": True, "data": {"token": generate_csrf_token()}}


# Accounts


@app.get("/api/accounts")
def list_accounts(ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.list_accounts())


@app.post("/api/accounts", dependencies=[Depends(require_csrf)])
def create_account(body: AccountBody, ops: FinanceOperations = Depends(get_ops)):
    result = ops.create_account(
        body.name, body.kind, body.initial_balance, opened_on=body.opened_on
    )
    return respond(result, created=True)


@app.get("/api/accounts/{account_id}")
def get_account(account_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.get_account(account_id))


@app.patch("/api/accounts/{account_id}", dependencies=[Depends(require_csrf)])
def update_account(
    account_id: int, fields: dict[str, Any], ops: FinanceOperations = Depends(get_ops)
):
    return respond(ops.update_account(account_id, fields))


@app.delete("/api/accounts/{account_id}", dependencies=[Depends(require_csrf)])
def delete_account(account_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.delete_account(account_id))


@app.post(
    "/api/accounts/{account_id}/correction", dependencies=[Depends(require_csrf)]
)
def correct_account(
    account_id: int,
    body: BalanceCorrectionBody,
    ops: FinanceOperations = Depends(get_ops),
):
    return respond(
        ops.correct_account_balance(
            account_id, body.target_balance, body.date, body.description
        )
    )


# Categories


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None, ops: FinanceOperations = Depends(get_ops)
):
    return respond(ops.list_categories(type))


@app.post("/api/categories", dependencies=[Depends(require_csrf)])
def create_category(body: CategoryBody, ops: FinanceOperations = Depends(get_ops)):
    result = ops.create_category(body.name, body.type, body.color, body.icon)
    return respond(result, created=True)


@app.patch("/api/categories/{category_id}", dependencies=[Depends(require_csrf)])
def update_category(
    category_id: int, fields: dict[str, Any], ops: FinanceOperations = Depends(get_ops)
):
    return respond(ops.update_category(category_id, fields))


@app.delete("/api/categories/{category_id}", dependencies=[Depends(require_csrf)])
def delete_category(category_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.delete_category(category_id))


# Budgets


@app.get("/api/budgets")
def list_budgets(
    month: Optional[int] = None,
    year: Optional[int] = None,
    ops: FinanceOperations = Depends(get_ops),
):
    return respond(ops.list_budgets(month, year))


@app.get("/api/budgets/progress")
def budget_progress(month: int, year: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.get_budget_progress(month, year))


@app.post("/api/budgets", dependencies=[Depends(require_csrf)])
def create_budget(body: BudgetBody, ops: FinanceOperations = Depends(get_ops)):
    result = ops.create_budget(body.category_id, body.amount, body.month, body.year)
    return respond(result, created=True)


@app.patch("/api/budgets/{budget_id}", dependencies=[Depends(require_csrf)])
def update_budget(
    budget_id: int, fields: dict[str, Any], ops: FinanceOperations = Depends(get_ops)
):
    return respond(ops.update_budget(budget_id, fields))


@app.delete("/api/budgets/{budget_id}", dependencies=[Depends(require_csrf)])
def delete_budget(budget_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.delete_budget(budget_id))


# Transactions


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    period = resolve_period(params.get("period"), params.get("start"), params.get("end"))
    type_raw = params.get("type")
    account_raw = params.get("account_id")
    category_raw = params.get("category_id")
    return TransactionFilters(
        type=TransactionType(type_raw) if type_raw else None,
        account_id=int(account_raw) if account_raw else None,
        category_id=int(category_raw) if category_raw else None,
        date_from=period.start,
        date_to=period.end,
        query=params.get("q") or None,
    )


@app.get("/api/transactions")
def list_transactions(request: Request, ops: FinanceOperations = Depends(get_ops)):
    try:
        filters = filters_from_request(request)
        limit_raw = request.query_params.get("limit")
        limit = min(max(int(limit_raw), 1), 500) if limit_raw else None
        offset = max(int(request.query_params.get("offset") or 0), 0)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return respond(ops.list_transactions(filters, limit=limit, offset=offset))


@app.post("/api/transactions", dependencies=[Depends(require_csrf)])
def create_transaction(body: TransactionBody, ops: FinanceOperations = Depends(get_ops)):
    result = ops.create_transaction(
        body.account_id,
        body.category_id,
        body.amount,
        body.type,
        body.date,
        body.description,
        body.notes,
    )
    return respond(result, created=True)


@app.get("/api/transactions/export.csv")
def export_transactions(request: Request, ops: FinanceOperations = Depends(get_ops)):
    try:
        filters = filters_from_request(request)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    result = ops.export_transactions_csv(filters)
    if not result.success:
        return respond(result)
    return StreamingResponse(
        iter([result.data]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="transactions.csv"'},
    )


@app.post("/api/transactions/import", dependencies=[Depends(require_csrf)])
async def import_transactions(
    file: UploadFile = File(...), ops: FinanceOperations = Depends(get_ops)
):
    try:
        content = (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 text") from exc
    return respond(ops.import_transactions_csv(content))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.get_transaction(transaction_id))


@app.patch("/api/transactions/{transaction_id}", dependencies=[Depends(require_csrf)])
def update_transaction(
    transaction_id: int,
    fields: dict[str, Any],
    ops: FinanceOperations = Depends(get_ops),
):
    return respond(ops.update_transaction(transaction_id, fields))


@app.delete("/api/transactions/{transaction_id}", dependencies=[Depends(require_csrf)])
def delete_transaction(transaction_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.delete_transaction(transaction_id))


# Reports


@app.get("/api/summary")
def summary(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    ops: FinanceOperations = Depends(get_ops),
):
    try:
        resolved = resolve_period(period, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return respond(ops.get_summary(resolved.start, resolved.end))


@app.get("/api/category-breakdown")
def category_breakdown(
    type: TransactionType = TransactionType.expense,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    ops: FinanceOperations = Depends(get_ops),
):
    try:
        resolved = resolve_period(period, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return respond(ops.get_category_breakdown(type, resolved.start, resolved.end))


# Cards


@app.get("/api/cards")
def list_cards(ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.list_cards())


@app.post("/api/cards", dependencies=[Depends(require_csrf)])
def create_card(body: CardBody, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.create_card(body.name, body.due_day), created=True)


@app.get("/api/cards/{card_id}")
def get_card(card_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.get_card(card_id))


@app.patch("/api/cards/{card_id}", dependencies=[Depends(require_csrf)])
def update_card(
    card_id: int, fields: dict[str, Any], ops: FinanceOperations = Depends(get_ops)
):
    return respond(ops.update_card(card_id, fields))


@app.delete("/api/cards/{card_id}", dependencies=[Depends(require_csrf)])
def delete_card(card_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.delete_card(card_id))


@app.post("/api/cards/{card_id}/pay", dependencies=[Depends(require_csrf)])
def pay_card(card_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.mark_card_paid(card_id))


@app.post("/api/cards/{card_id}/reopen", dependencies=[Depends(require_csrf)])
def reopen_card(card_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.reopen_card(card_id))


@app.get("/api/cards/{card_id}/statement")
def card_statement(
    card_id: int, month: int, year: int, ops: FinanceOperations = Depends(get_ops)
):
    return respond(ops.get_card_statement(card_id, month, year))


@app.get("/api/cards/{card_id}/transactions")
def list_card_transactions(
    card_id: int,
    month: Optional[int] = None,
    year: Optional[int] = None,
    ops: FinanceOperations = Depends(get_ops),
):
    return respond(ops.list_card_transactions(card_id, month, year))


@app.post("/api/cards/{card_id}/transactions", dependencies=[Depends(require_csrf)])
def create_card_purchase(
    card_id: int, body: CardPurchaseBody, ops: FinanceOperations = Depends(get_ops)
):
    result = ops.create_card_purchase(
        card_id,
        body.category_id,
        body.description,
        body.amount,
        body.date,
        body.installment_count,
        body.notes,
    )
    return respond(result, created=True)


@app.patch("/api/card-transactions/{txn_id}", dependencies=[Depends(require_csrf)])
def update_card_transaction(
    txn_id: int, fields: dict[str, Any], ops: FinanceOperations = Depends(get_ops)
):
    return respond(ops.update_card_transaction(txn_id, fields))


@app.delete("/api/card-transactions/{txn_id}", dependencies=[Depends(require_csrf)])
def delete_card_transaction(txn_id: int, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.delete_card_transaction(txn_id))


@app.delete(
    "/api/card-purchases/{group_id}", dependencies=[Depends(require_csrf)]
)
def delete_card_purchase_group(group_id: str, ops: FinanceOperations = Depends(get_ops)):
    return respond(ops.delete_card_purchase_group(group_id))


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
