import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import SessionLocal, init_db
from errors import Forbidden, LedgerError, NotFound
from investing import InvestingService
from models import ObligationKind, TransactionType, Workspace
from obligations import ObligationService, SubscriptionService
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BalanceAdjustIn,
    BalanceOut,
    CashMoveIn,
    CategoryIn,
    CurrencyBalanceIn,
    DebtIn,
    DebtOut,
    DebtPaymentIn,
    DebtPaymentOut,
    DebtPaymentUpdateIn,
    DebtUpdateIn,
    HoldingOut,
    MonthsIn,
    ObligationIn,
    ObligationOut,
    ParticipantIn,
    ParticipantOut,
    SecurityIn,
    SettleSplitIn,
    SplitOut,
    SplitPaymentIn,
    SplitsIn,
    SplitUpdateIn,
    SubscriptionIn,
    SubscriptionPaymentIn,
    TradeIn,
    TradeOut,
    TradeUpdateIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdateIn,
)
from services import (
    AccountService,
    CategoryService,
    DebtService,
    SplitBillService,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_workspace(x_workspace: str = Header(default="production")) -> Workspace:
    try:
        return Workspace(x_workspace.lower())
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Unknown workspace: {x_workspace}"
        ) from exc


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception(f"api_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, Forbidden):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/api/version")
def version():
    return {"version": APP_VERSION}


# Categories and accounts


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {
            "id": category.id,
            "name": category.name,
            "type": category.type,
            "system": category.system_key is not None,
        }
        for category in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": category.id, "name": category.name, "type": category.type}


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(
    db: Session = Depends(get_db), workspace: Workspace = Depends(get_workspace)
):
    return AccountService(db, workspace=workspace).list_all()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    data: AccountIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    service = AccountService(db, workspace=workspace)
    account = service.create(data)
    return service.get(account.id)


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return AccountService(db, workspace=workspace).get(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/accounts/{account_id}/balances", response_model=BalanceOut, status_code=201
)
def add_currency(
    account_id: int,
    data: CurrencyBalanceIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return AccountService(db, workspace=workspace).add_currency(account_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/balances/{balance_id}/adjust", response_model=BalanceOut)
def adjust_balance(
    balance_id: int,
    data: BalanceAdjustIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return AccountService(db, workspace=workspace).adjust_balance(balance_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/balances/{balance_id}/verify")
def verify_balance(
    balance_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        stored, recomputed = AccountService(db, workspace=workspace).verify(balance_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "balance_id": balance_id,
        "stored_cents": stored,
        "recomputed_cents": recomputed,
        "consistent": stored == recomputed,
    }


@app.get("/api/totals")
def totals(
    db: Session = Depends(get_db), workspace: Workspace = Depends(get_workspace)
):
    return AccountService(db, workspace=workspace).totals_by_currency()


# Transactions


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    balance_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    return TransactionService(db, workspace=workspace).list(
        balance_id=balance_id, txn_type=type, start=start, end=end, limit=limit
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return TransactionService(db, workspace=workspace).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return TransactionService(db, workspace=workspace).get(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionUpdateIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return TransactionService(db, workspace=workspace).update(transaction_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        TransactionService(db, workspace=workspace).delete(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get(
    "/api/transactions/{transaction_id}/children",
    response_model=list[TransactionOut],
)
def transaction_children(
    transaction_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return TransactionService(db, workspace=workspace).children(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}/splits", response_model=list[SplitOut])
def transaction_splits(
    transaction_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return SplitBillService(db, workspace=workspace).transaction_splits(
            transaction_id
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


# Debts


@app.get("/api/debts", response_model=list[DebtOut])
def list_debts(
    db: Session = Depends(get_db), workspace: Workspace = Depends(get_workspace)
):
    return DebtService(db, workspace=workspace).list()


@app.post("/api/debts", response_model=DebtOut, status_code=201)
def create_debt(
    data: DebtIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/debts/{debt_id}", response_model=DebtOut)
def get_debt(
    debt_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).get(debt_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/debts/{debt_id}", response_model=DebtOut)
def update_debt(
    debt_id: int,
    data: DebtUpdateIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).update(debt_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/debts/{debt_id}/payments", response_model=DebtPaymentOut, status_code=201
)
def add_debt_payment(
    debt_id: int,
    data: DebtPaymentIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).add_payment(debt_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/debt-payments/{payment_id}", response_model=DebtPaymentOut)
def update_debt_payment(
    payment_id: int,
    data: DebtPaymentUpdateIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).update_payment(payment_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/debt-payments/{payment_id}", response_model=DebtOut)
def delete_debt_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).delete_payment(payment_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/debts/{debt_id}/soft-delete", response_model=DebtOut)
def soft_delete_debt(
    debt_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).soft_delete(debt_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/debts/{debt_id}/undo-delete", response_model=DebtOut)
def undo_delete_debt(
    debt_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return DebtService(db, workspace=workspace).undo_delete(debt_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/debts/{debt_id}", status_code=204)
def delete_debt(
    debt_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        DebtService(db, workspace=workspace).delete(debt_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


# Split bills


@app.get("/api/participants", response_model=list[ParticipantOut])
def list_participants(
    db: Session = Depends(get_db), workspace: Workspace = Depends(get_workspace)
):
    return SplitBillService(db, workspace=workspace).list_participants()


@app.post("/api/participants", response_model=ParticipantOut, status_code=201)
def create_participant(
    data: ParticipantIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    return SplitBillService(db, workspace=workspace).create_participant(data)


@app.put("/api/participants/{participant_id}", response_model=ParticipantOut)
def update_participant(
    participant_id: int,
    data: ParticipantIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return SplitBillService(db, workspace=workspace).update_participant(
            participant_id, data
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/participants/{participant_id}", status_code=204)
def deactivate_participant(
    participant_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        SplitBillService(db, workspace=workspace).deactivate_participant(participant_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/splits", response_model=list[SplitOut], status_code=201)
def create_splits(
    data: SplitsIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return SplitBillService(db, workspace=workspace).create_splits(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/splits/pending", response_model=list[SplitOut])
def pending_splits(
    db: Session = Depends(get_db), workspace: Workspace = Depends(get_workspace)
):
    return SplitBillService(db, workspace=workspace).pending_splits()


@app.get("/api/splits/summary")
def owed_summary(
    db: Session = Depends(get_db), workspace: Workspace = Depends(get_workspace)
):
    return SplitBillService(db, workspace=workspace).owed_summary()


@app.post("/api/splits/{split_id}/payments", response_model=SplitOut)
def record_split_payment(
    split_id: int,
    data: SplitPaymentIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return SplitBillService(db, workspace=workspace).record_payment(split_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/splits/{split_id}/settle", response_model=SplitOut)
def settle_split(
    split_id: int,
    data: SettleSplitIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return SplitBillService(db, workspace=workspace).settle_split(split_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/splits/{split_id}", response_model=SplitOut)
def update_split(
    split_id: int,
    data: SplitUpdateIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return SplitBillService(db, workspace=workspace).update_split(split_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/splits/{split_id}", status_code=204)
def delete_split(
    split_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        SplitBillService(db, workspace=workspace).delete_split(split_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


# Obligations and subscriptions


@app.get("/api/obligations", response_model=list[ObligationOut])
def list_obligations(
    kind: Optional[ObligationKind] = None,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    return ObligationService(db, workspace=workspace).list_all(kind)


@app.post("/api/obligations", response_model=ObligationOut, status_code=201)
def create_obligation(
    data: ObligationIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return ObligationService(db, workspace=workspace).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/obligations/{obligation_id}/paid-months")
def obligation_paid_months(
    obligation_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return ObligationService(db, workspace=workspace).paid_months(obligation_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/obligations/{obligation_id}/mark-paid", response_model=ObligationOut)
def mark_obligation_paid(
    obligation_id: int,
    data: MonthsIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return ObligationService(db, workspace=workspace).mark_as_paid(
            obligation_id, data
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/obligations/{obligation_id}/pay",
    response_model=TransactionOut,
    status_code=201,
)
def pay_obligation(
    obligation_id: int,
    data: MonthsIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return ObligationService(db, workspace=workspace).make_monthly_payment(
            obligation_id, data
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/obligations/{obligation_id}/amortization")
def obligation_amortization(
    obligation_id: int,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return ObligationService(db, workspace=workspace).amortization(obligation_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/subscriptions")
def list_subscriptions(
    db: Session = Depends(get_db), workspace: Workspace = Depends(get_workspace)
):
    service = SubscriptionService(db, workspace=workspace)
    return [
        {
            "id": subscription.id,
            "name": subscription.name,
            "amount_cents": subscription.amount_cents,
            "currency_code": subscription.currency_code,
            "billing_cycle": subscription.billing_cycle,
            "next_due": service.next_due(subscription.id),
        }
        for subscription in service.list_all()
    ]


@app.post("/api/subscriptions", status_code=201)
def create_subscription(
    data: SubscriptionIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    subscription = SubscriptionService(db, workspace=workspace).create(data)
    return {"id": subscription.id, "name": subscription.name}


@app.post("/api/subscriptions/{subscription_id}/pay", status_code=201)
def pay_subscription(
    subscription_id: int,
    data: SubscriptionPaymentIn,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
):
    service = SubscriptionService(db, workspace=workspace)
    try:
        payment = service.make_payment(subscription_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "payment_id": payment.id,
        "transaction_id": payment.transaction_id,
        "due_date": payment.due_date,
        "next_due": service.next_due(subscription_id),
    }


# Investing


@app.get("/api/invest/securities")
def list_securities(db: Session = Depends(get_db)):
    return [
        {
            "id": security.id,
            "ticker": security.ticker,
            "name": security.name,
            "currency_code": security.currency_code,
        }
        for security in InvestingService(db).list_securities()
    ]


@app.post("/api/invest/securities", status_code=201)
def add_security(data: SecurityIn, db: Session = Depends(get_db)):
    try:
        security = InvestingService(db).add_security(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": security.id, "ticker": security.ticker}


@app.delete("/api/invest/securities/{security_id}", status_code=204)
def delete_security(security_id: int, db: Session = Depends(get_db)):
    try:
        InvestingService(db).delete_security(security_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/invest/cash/deposit")
def deposit_cash(data: CashMoveIn, db: Session = Depends(get_db)):
    cash = InvestingService(db).deposit(data)
    return {"currency_code": cash.currency_code, "available": cash.available_balance}


@app.post("/api/invest/cash/withdraw")
def withdraw_cash(data: CashMoveIn, db: Session = Depends(get_db)):
    try:
        cash = InvestingService(db).withdraw(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"currency_code": cash.currency_code, "available": cash.available_balance}


@app.post("/api/invest/buy", response_model=TradeOut, status_code=201)
def buy(data: TradeIn, db: Session = Depends(get_db)):
    try:
        return InvestingService(db).buy(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/invest/sell", response_model=TradeOut, status_code=201)
def sell(data: TradeIn, db: Session = Depends(get_db)):
    try:
        return InvestingService(db).sell(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/invest/trades", response_model=list[TradeOut])
def list_trades(security_id: Optional[int] = None, db: Session = Depends(get_db)):
    return InvestingService(db).list_trades(security_id)


@app.put("/api/invest/trades/{trade_id}", response_model=TradeOut)
def update_trade(trade_id: int, data: TradeUpdateIn, db: Session = Depends(get_db)):
    try:
        return InvestingService(db).update_trade(trade_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/invest/trades/{trade_id}", status_code=204)
def delete_trade(trade_id: int, db: Session = Depends(get_db)):
    try:
        InvestingService(db).delete_trade(trade_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/invest/securities/{security_id}/recalculate",
    response_model=Optional[HoldingOut],
)
def recalculate_holding(security_id: int, db: Session = Depends(get_db)):
    try:
        return InvestingService(db).recalculate_holding(security_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/invest/holdings", response_model=list[HoldingOut])
def list_holdings(db: Session = Depends(get_db)):
    return InvestingService(db).list_holdings()


@app.get("/api/invest/summary")
def portfolio_summary(db: Session = Depends(get_db)):
    return InvestingService(db).portfolio_summary()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
