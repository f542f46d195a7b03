import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from config import get_settings
from context import AppContext, build_context
from models import Account, Category, RecurringTransaction, SavingsGoal, Transaction, TransactionType
from periods import local_today, period_key, resolve_period
from recurrence import Occurrence
from scheduler import JobRecord
from schemas import (
    AccountIn,
    AmountIn,
    BudgetAlertOut,
    BudgetIn,
    BudgetProgressOut,
    CategoryIn,
    CategoryRenameIn,
    OccurrenceEditIn,
    OccurrenceOut,
    RecurringTransactionIn,
    SavingsGoalIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetAlertService,
    BudgetService,
    CSVService,
    CategoryService,
    LedgerEntry,
    RecurringTransactionService,
    SavingsGoalService,
    TransactionService,
)


logger = logging.getLogger(__name__)


def _http_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    status = 404 if "not found" in message.lower() else 400
    return HTTPException(status_code=status, detail=message)


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_db(context: AppContext = Depends(get_context)):
    db = context.session_factory()
    try:
        yield db
    finally:
        db.close()


def _today(context: AppContext) -> date:
    return local_today(context.settings.timezone)


def _period(context: AppContext, period: Optional[str]) -> str:
    try:
        return resolve_period(period, today=_today(context)).key
    except ValueError as exc:
        raise _http_error(exc) from exc


def account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "currency_code": account.currency_code,
        "is_default": account.is_default,
    }


def category_out(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "icon": category.icon,
        "color": category.color,
        "is_default": category.is_default,
    }


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "name": txn.name,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "account_id": txn.account_id,
        "transfer_account_id": txn.transfer_account_id,
        "category_id": txn.category_id,
        "date": txn.date.isoformat(),
        "note": txn.note,
        "is_validated": txn.is_validated,
        "recurring_id": txn.recurring_id,
        "occurrence_date": txn.occurrence_date.isoformat() if txn.occurrence_date else None,
        "is_modified": txn.is_modified,
        "deleted": txn.deleted_at is not None,
    }


def ledger_out(entry: LedgerEntry) -> dict:
    return {
        "transaction_id": entry.transaction_id,
        "recurring_id": entry.recurring_id,
        "occurrence_date": entry.occurrence_date.isoformat() if entry.occurrence_date else None,
        "date": entry.date.isoformat(),
        "type": entry.type.value,
        "name": entry.name,
        "amount_cents": entry.amount_cents,
        "account_id": entry.account_id,
        "transfer_account_id": entry.transfer_account_id,
        "category_id": entry.category_id,
        "note": entry.note,
    }


def recurring_out(rule: RecurringTransaction) -> dict:
    return {
        "id": rule.id,
        "name": rule.name,
        "amount_cents": rule.amount_cents,
        "type": rule.type.value,
        "account_id": rule.account_id,
        "category_id": rule.category_id,
        "note": rule.note,
        "start_date": rule.start_date.isoformat(),
        "frequency": rule.frequency.value,
        "interval": rule.interval,
        "end_date": rule.end_date.isoformat() if rule.end_date else None,
        "is_active": rule.is_active,
    }


def occurrence_out(occ: Occurrence) -> dict:
    return OccurrenceOut(
        template_id=occ.template_id,
        occurrence_date=occ.occurrence_date,
        date=occ.date,
        amount_cents=occ.amount_cents,
        type=occ.type,
        account_id=occ.account_id,
        category_id=occ.category_id,
        name=occ.name,
        note=occ.note,
        transaction_id=occ.transaction_id,
        is_modified=occ.is_modified,
    ).model_dump(mode="json")


def goal_out(goal: SavingsGoal, today: date) -> dict:
    data = {
        "id": goal.id,
        "name": goal.name,
        "target_cents": goal.target_cents,
        "current_cents": goal.current_cents,
        "icon": goal.icon,
        "color": goal.color,
        "created_date": goal.created_date.isoformat(),
        "target_date": goal.target_date.isoformat() if goal.target_date else None,
    }
    data["progress"] = SavingsGoalService.progress(goal, today)
    return data


def job_out(record: JobRecord) -> dict:
    return {
        "job_id": record.job_id,
        "name": record.name,
        "status": record.status.value,
        "error": record.error,
        "submitted_at": record.submitted_at.isoformat(),
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
    }


def create_app(
    context: Optional[AppContext] = None, *, start_scheduler: bool = True
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx: AppContext = app.state.context
        ctx.init_schema()
        manager = ctx.scheduler_manager()
        if start_scheduler:
            manager.start()
            ctx.jobs.submit("seed_defaults", ctx.seed_defaults)
            ctx.jobs.submit("convert_legacy_recurrence", ctx.convert_legacy_recurrence)
        else:
            logger.info("startup_jobs_skipped: scheduler disabled")
        try:
            yield
        finally:
            manager.stop()

    app = FastAPI(title="SmartBudget", lifespan=lifespan)
    app.state.context = context or build_context()
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/accounts")
    def list_accounts(db: Session = Depends(get_db)):
        return [account_out(a) for a in AccountService(db).list_all()]

    @app.post("/api/accounts", status_code=201)
    def create_account(data: AccountIn, db: Session = Depends(get_db)):
        try:
            return account_out(AccountService(db).create(data))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.delete("/api/accounts/{account_id}", status_code=204)
    def delete_account(account_id: int, db: Session = Depends(get_db)):
        try:
            AccountService(db).delete(account_id)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.get("/api/accounts/{account_id}/balance")
    def account_balance(
        account_id: int,
        as_of: Optional[date] = None,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        as_of = as_of or _today(context)
        try:
            balance = AccountService(db).balance(account_id, as_of)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return {"account_id": account_id, "as_of": as_of.isoformat(), "balance_cents": balance}

    @app.get("/api/categories")
    def list_categories(
        type: Optional[TransactionType] = None, db: Session = Depends(get_db)
    ):
        return [category_out(c) for c in CategoryService(db).list_all(type)]

    @app.post("/api/categories", status_code=201)
    def create_category(data: CategoryIn, db: Session = Depends(get_db)):
        try:
            return category_out(CategoryService(db).create(data))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.put("/api/categories/{category_id}")
    def rename_category(
        category_id: int, data: CategoryRenameIn, db: Session = Depends(get_db)
    ):
        try:
            return category_out(CategoryService(db).rename(category_id, data.name))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.delete("/api/categories/{category_id}", status_code=204)
    def delete_category(category_id: int, db: Session = Depends(get_db)):
        try:
            CategoryService(db).delete(category_id)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.get("/api/transactions")
    def list_transactions(
        period: Optional[str] = None,
        account_id: Optional[int] = None,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        key = _period(context, period)
        entries = TransactionService(db).ledger_for_period(key, account_id)
        return {"period": key, "entries": [ledger_out(e) for e in entries]}

    @app.get("/api/transactions/deleted")
    def deleted_transactions(limit: int = 200, db: Session = Depends(get_db)):
        return [transaction_out(t) for t in TransactionService(db).deleted(limit)]

    @app.post("/api/transactions", status_code=201)
    def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
        try:
            return transaction_out(TransactionService(db).create(data))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.put("/api/transactions/{transaction_id}")
    def update_transaction(
        transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
    ):
        try:
            return transaction_out(TransactionService(db).update(transaction_id, data))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.delete("/api/transactions/{transaction_id}", status_code=204)
    def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
        try:
            TransactionService(db).soft_delete(transaction_id)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.post("/api/transactions/{transaction_id}/restore")
    def restore_transaction(transaction_id: int, db: Session = Depends(get_db)):
        try:
            TransactionService(db).restore(transaction_id)
            return transaction_out(TransactionService(db).get(transaction_id))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/summary")
    def month_summary(
        period: Optional[str] = None,
        account_id: Optional[int] = None,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        key = _period(context, period)
        service = TransactionService(db, context.fx, context.settings.base_currency)
        try:
            summary = service.month_summary(key, account_id)
        except RuntimeError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"period": key, **summary}

    @app.get("/transactions/export.csv")
    def export_csv(
        period: Optional[str] = None,
        account_id: Optional[int] = None,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        key = _period(context, period)
        content = CSVService(db).export_period(key, account_id)
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="transactions-{key}.csv"'},
        )

    @app.get("/api/recurring")
    def list_recurring(db: Session = Depends(get_db)):
        return [recurring_out(r) for r in RecurringTransactionService(db).list()]

    @app.get("/api/recurring/upcoming")
    def upcoming_recurring(
        limit: int = 10,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        items = RecurringTransactionService(db).upcoming(_today(context), limit)
        return [
            {"recurring": recurring_out(rule), "next_date": next_date.isoformat()}
            for rule, next_date in items
        ]

    @app.post("/api/recurring", status_code=201)
    def create_recurring(data: RecurringTransactionIn, db: Session = Depends(get_db)):
        try:
            return recurring_out(RecurringTransactionService(db).create(data))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.put("/api/recurring/{recurring_id}")
    def update_recurring(
        recurring_id: int, data: RecurringTransactionIn, db: Session = Depends(get_db)
    ):
        try:
            return recurring_out(RecurringTransactionService(db).update(recurring_id, data))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.delete("/api/recurring/{recurring_id}")
    def delete_recurring(recurring_id: int, db: Session = Depends(get_db)):
        try:
            removed = RecurringTransactionService(db).delete(recurring_id)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return {"id": recurring_id, "deleted": removed, "deactivated": not removed}

    @app.post("/api/recurring/{recurring_id}/deactivate")
    def deactivate_recurring(recurring_id: int, db: Session = Depends(get_db)):
        try:
            return recurring_out(RecurringTransactionService(db).deactivate(recurring_id))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/recurring/{recurring_id}/end")
    def end_recurring(recurring_id: int, from_date: date, db: Session = Depends(get_db)):
        try:
            rule = RecurringTransactionService(db).end_series(recurring_id, from_date)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return recurring_out(rule)

    @app.get("/api/recurring/{recurring_id}/occurrences")
    def recurring_occurrences(
        recurring_id: int, start: date, end: date, db: Session = Depends(get_db)
    ):
        try:
            occurrences = RecurringTransactionService(db).occurrences(
                recurring_id, start, end
            )
        except ValueError as exc:
            raise _http_error(exc) from exc
        return [occurrence_out(o) for o in occurrences]

    @app.put("/api/recurring/{recurring_id}/occurrences/{slot}")
    def modify_occurrence(
        recurring_id: int,
        slot: date,
        data: OccurrenceEditIn,
        db: Session = Depends(get_db),
    ):
        try:
            txn = RecurringTransactionService(db).modify_occurrence(recurring_id, slot, data)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return transaction_out(txn)

    @app.delete("/api/recurring/{recurring_id}/occurrences/{slot}", status_code=204)
    def delete_occurrence(recurring_id: int, slot: date, db: Session = Depends(get_db)):
        try:
            RecurringTransactionService(db).delete_occurrence(recurring_id, slot)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.post("/api/recurring/{recurring_id}/occurrences/{slot}/restore", status_code=204)
    def restore_occurrence(recurring_id: int, slot: date, db: Session = Depends(get_db)):
        RecurringTransactionService(db).restore_occurrence(recurring_id, slot)
        return Response(status_code=204)

    @app.get("/api/budgets")
    def list_budgets(
        period: Optional[str] = None,
        account_id: Optional[int] = None,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        key = _period(context, period)
        service = BudgetService(db, context.fx, context.settings.base_currency)
        try:
            rows = service.progress_for_period(key, account_id)
        except RuntimeError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {
            "period": key,
            "budgets": [BudgetProgressOut(**row).model_dump() for row in rows],
        }

    @app.post("/api/budgets", status_code=201)
    def set_budget(data: BudgetIn, db: Session = Depends(get_db)):
        try:
            budget = BudgetService(db).set_budget(data)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return {
            "id": budget.id,
            "year_month": budget.year_month,
            "amount_cents": budget.amount_cents,
            "category_id": budget.category_id,
            "is_global": budget.is_global,
        }

    @app.delete("/api/budgets/{budget_id}", status_code=204)
    def delete_budget(budget_id: int, db: Session = Depends(get_db)):
        try:
            BudgetService(db).delete(budget_id)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.post("/api/budgets/check")
    def check_budget_alerts(
        period: Optional[str] = None,
        account_id: Optional[int] = None,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        key = _period(context, period)
        service = BudgetAlertService(
            db, context.notifier, context.fx, context.settings.base_currency
        )
        try:
            alerts = service.check_alerts(key, account_id)
        except RuntimeError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {
            "period": key,
            "alerts": [
                BudgetAlertOut(
                    budget_id=a.budget_id,
                    period_key=a.period_key,
                    spent_cents=a.spent_cents,
                    budget_cents=a.budget_cents,
                    percent=a.percent,
                ).model_dump()
                for a in alerts
            ],
        }

    @app.get("/api/goals")
    def list_goals(
        db: Session = Depends(get_db), context: AppContext = Depends(get_context)
    ):
        today = _today(context)
        return [goal_out(g, today) for g in SavingsGoalService(db).list_all()]

    @app.post("/api/goals", status_code=201)
    def create_goal(
        data: SavingsGoalIn,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        today = _today(context)
        return goal_out(SavingsGoalService(db).create(data, today), today)

    @app.put("/api/goals/{goal_id}")
    def update_goal(
        goal_id: int,
        data: SavingsGoalIn,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        try:
            goal = SavingsGoalService(db).update(goal_id, data)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return goal_out(goal, _today(context))

    @app.post("/api/goals/{goal_id}/contribute")
    def contribute_goal(
        goal_id: int,
        data: AmountIn,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        try:
            goal = SavingsGoalService(db).contribute(goal_id, data.amount_cents)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return goal_out(goal, _today(context))

    @app.post("/api/goals/{goal_id}/withdraw")
    def withdraw_goal(
        goal_id: int,
        data: AmountIn,
        db: Session = Depends(get_db),
        context: AppContext = Depends(get_context),
    ):
        try:
            goal = SavingsGoalService(db).withdraw(goal_id, data.amount_cents)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return goal_out(goal, _today(context))

    @app.delete("/api/goals/{goal_id}", status_code=204)
    def delete_goal(goal_id: int, db: Session = Depends(get_db)):
        try:
            SavingsGoalService(db).delete(goal_id)
        except ValueError as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.get("/api/jobs")
    def list_jobs(context: AppContext = Depends(get_context)):
        return [job_out(r) for r in context.jobs.list_all()]

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: str, context: AppContext = Depends(get_context)):
        try:
            return job_out(context.jobs.get(job_id))
        except ValueError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/period")
    def current_period(context: AppContext = Depends(get_context)):
        return {"period": period_key(_today(context))}


def _configure_logging() -> None:
    logging.basicConfig(level=get_settings().log_level)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    _configure_logging()
    uvicorn.run(create_app(), host="127.0.0.1", port=8000)
