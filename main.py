from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from sqlalchemy.orm import Session

from database import SessionLocal
from models import Expense
from monitoring import BudgetEvaluator
from periods import current_instant, month_key, parse_month_key, reporting_today
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetLimitIn,
    BudgetProgressOut,
    CategoryIn,
    ChartPeriod,
    ChartPointOut,
    ExpenseIn,
    NotificationIn,
    NotificationOut,
    PasswordResetRequestIn,
    PasswordResetTokenIn,
    SavingsGoalIn,
    SavingsGoalOut,
    SavingsGoalProgressIn,
    UserSettingsIn,
)
from services import (
    BudgetCheckDispatcher,
    BudgetService,
    CategoryService,
    ExpenseService,
    NotificationService,
    PasswordResetService,
    ResetTokenError,
    SavingsGoalService,
    UserService,
    UserSettingsService,
)

app = FastAPI(title="Domus Budget")


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


scheduler_manager = SchedulerManager()


def get_budget_check_dispatcher() -> BudgetCheckDispatcher:
    return scheduler_manager.enqueue_budget_check


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def month_from_request(request: Request) -> str:
    month = request.query_params.get("month") or month_key(current_instant())
    try:
        parse_month_key(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return month


def _not_found(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def expense_to_dict(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "date": expense.date.isoformat(),
        "amount_cents": expense.amount_cents,
        "category_id": expense.category_id,
        "category": expense.category.name if expense.category else None,
        "description": expense.description,
        "notes": expense.notes,
    }


@app.get("/healthz")
def healthz():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/users/initialize")
def initialize_user(db: Session = Depends(get_db)):
    return {"initialized": UserService(db).initialize()}


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {
            "id": c.id,
            "name": c.name,
            "icon": c.icon,
            "color": c.color,
            "is_default": c.is_default,
        }
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"id": category.id, "name": category.name}


@app.put("/api/categories/{category_id}")
def update_category(category_id: int, data: CategoryIn, db: Session = Depends(get_db)):
    service = CategoryService(db)
    try:
        service.get(category_id)
    except ValueError as exc:
        raise _not_found(exc) from exc
    try:
        category = service.update(category_id, data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"id": category.id, "name": category.name}


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    service = CategoryService(db)
    try:
        service.get(category_id)
    except ValueError as exc:
        raise _not_found(exc) from exc
    try:
        service.delete(category_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc


@app.get("/api/expenses")
def list_expenses(
    request: Request,
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    month = None
    if request.query_params.get("month"):
        month = month_from_request(request)
    items = ExpenseService(db).list(month=month, category_id=category_id)
    return {"items": [expense_to_dict(e) for e in items]}


@app.get("/api/expenses/recent")
def recent_expenses(limit: int = 10, db: Session = Depends(get_db)):
    limit = min(max(limit, 1), 100)
    return {"items": [expense_to_dict(e) for e in ExpenseService(db).recent(limit)]}


@app.get("/api/expenses/summary")
def expenses_summary(request: Request, db: Session = Depends(get_db)):
    return ExpenseService(db).monthly_summary(month_from_request(request))


@app.get("/api/expenses/chart", response_model=list[ChartPointOut])
def expenses_chart(
    period: ChartPeriod = "days",
    time_range: int = Query(30, ge=0, le=400),
    db: Session = Depends(get_db),
):
    return ExpenseService(db).chart_data(period, time_range)


@app.post("/api/expenses", status_code=201)
def create_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    dispatch: BudgetCheckDispatcher = Depends(get_budget_check_dispatcher),
):
    try:
        expense = ExpenseService(db, on_change=dispatch).create(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return expense_to_dict(expense)


@app.put("/api/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    data: ExpenseIn,
    db: Session = Depends(get_db),
    dispatch: BudgetCheckDispatcher = Depends(get_budget_check_dispatcher),
):
    service = ExpenseService(db, on_change=dispatch)
    try:
        service.get(expense_id)
    except ValueError as exc:
        raise _not_found(exc) from exc
    try:
        expense = service.update(expense_id, data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return expense_to_dict(expense)


@app.delete("/api/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    dispatch: BudgetCheckDispatcher = Depends(get_budget_check_dispatcher),
):
    try:
        ExpenseService(db, on_change=dispatch).delete(expense_id)
    except ValueError as exc:
        raise _not_found(exc) from exc


@app.get("/api/budgets", response_model=list[BudgetProgressOut])
def list_budgets(request: Request, db: Session = Depends(get_db)):
    return BudgetService(db).progress_for_month(month_from_request(request))


@app.post("/api/budgets", status_code=201)
def upsert_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).upsert(data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "month": budget.month,
        "limit_cents": budget.limit_cents,
    }


@app.put("/api/budgets/{budget_id}")
def update_budget(budget_id: int, data: BudgetLimitIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).update_limit(budget_id, data.limit_cents)
    except ValueError as exc:
        raise _not_found(exc) from exc
    return {"id": budget.id, "limit_cents": budget.limit_cents}


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise _not_found(exc) from exc


@app.get("/api/savings-goals", response_model=list[SavingsGoalOut])
def list_savings_goals(db: Session = Depends(get_db)):
    return SavingsGoalService(db).list_with_progress()


@app.post("/api/savings-goals", response_model=SavingsGoalOut, status_code=201)
def create_savings_goal(data: SavingsGoalIn, db: Session = Depends(get_db)):
    goal = SavingsGoalService(db).create(data)
    return SavingsGoalService.progress(goal, reporting_today())


@app.post("/api/savings-goals/{goal_id}/progress", response_model=SavingsGoalOut)
def add_savings_goal_progress(
    goal_id: int, data: SavingsGoalProgressIn, db: Session = Depends(get_db)
):
    try:
        goal = SavingsGoalService(db).add_progress(goal_id, data.amount_cents)
    except ValueError as exc:
        raise _not_found(exc) from exc
    return SavingsGoalService.progress(goal, reporting_today())


@app.delete("/api/savings-goals/{goal_id}", status_code=204)
def delete_savings_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        SavingsGoalService(db).delete(goal_id)
    except ValueError as exc:
        raise _not_found(exc) from exc


@app.post("/api/admin/budget-check")
def run_budget_check(db: Session = Depends(get_db)):
    service = BudgetService(db)
    results = BudgetEvaluator(db).evaluate_user(service.user_id)
    return {
        "items": [
            {
                "budget_id": r.budget_id,
                "spent_cents": r.spent_cents,
                "percentage": r.percentage,
                "status": r.status.value,
                "notified": r.notified,
            }
            for r in results
        ]
    }


@app.get("/api/notifications", response_model=list[NotificationOut])
def list_notifications(limit: int = 50, db: Session = Depends(get_db)):
    return NotificationService(db).list(limit=min(max(limit, 1), 200))


@app.get("/api/notifications/unread-count")
def unread_notifications(db: Session = Depends(get_db)):
    return {"count": NotificationService(db).unread_count()}


@app.post("/api/notifications", response_model=NotificationOut, status_code=201)
def create_notification(data: NotificationIn, db: Session = Depends(get_db)):
    return NotificationService(db).create_custom(data)


@app.post("/api/notifications/read-all")
def read_all_notifications(db: Session = Depends(get_db)):
    return {"updated": NotificationService(db).mark_all_read()}


@app.post("/api/notifications/{notification_id}/read", response_model=NotificationOut)
def read_notification(notification_id: int, db: Session = Depends(get_db)):
    try:
        return NotificationService(db).mark_read(notification_id)
    except ValueError as exc:
        raise _not_found(exc) from exc


@app.delete("/api/notifications/{notification_id}", status_code=204)
def delete_notification(notification_id: int, db: Session = Depends(get_db)):
    try:
        NotificationService(db).delete(notification_id)
    except ValueError as exc:
        raise _not_found(exc) from exc


def settings_to_dict(settings) -> dict[str, object]:
    return {
        "currency": settings.currency,
        "language": settings.language,
        "theme": settings.theme,
        "budget_alerts": settings.budget_alerts,
        "monthly_reports": settings.monthly_reports,
        "expense_reminders": settings.expense_reminders,
    }


@app.get("/api/settings")
def get_user_settings(db: Session = Depends(get_db)):
    return settings_to_dict(UserSettingsService(db).get())


@app.put("/api/settings")
def update_user_settings(data: UserSettingsIn, db: Session = Depends(get_db)):
    return settings_to_dict(UserSettingsService(db).update(data))


@app.post("/api/password-reset/request")
def request_password_reset(data: PasswordResetRequestIn, db: Session = Depends(get_db)):
    PasswordResetService(db).request(data.email)
    return {"success": True}


@app.post("/api/password-reset/validate")
def validate_password_reset(data: PasswordResetTokenIn, db: Session = Depends(get_db)):
    try:
        email = PasswordResetService(db).validate(data.token)
    except ResetTokenError as exc:
        raise _bad_request(exc) from exc
    return {"valid": True, "email": email}


@app.post("/api/password-reset/confirm")
def confirm_password_reset(data: PasswordResetTokenIn, db: Session = Depends(get_db)):
    try:
        PasswordResetService(db).consume(data.token)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"success": True}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
