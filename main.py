import json
import logging
import tomllib
from datetime import date
from pathlib import Path
from typing import Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from analytics import Granularity
from csv_utils import export_transactions
from database import SessionLocal
from jobs import NotificationJobs
from models import Category, Transaction, TransactionType, User
from periods import Period, local_now, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AskIn,
    CategoryIn,
    CategoryUpdate,
    LoginIn,
    PasswordChange,
    Preferences,
    ProfileUpdate,
    TransactionIn,
    TransactionUpdate,
    UserIn,
)
from security import create_token, decode_token
from services import (
    AnalyticsService,
    CategoryService,
    InsightsService,
    TransactionFilters,
    TransactionService,
    UserService,
    cents_to_amount,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="MonetaSis")


def _load_app_version() -> str:
    try:
        with open(Path(__file__).with_name("pyproject.toml"), "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


def get_notification_jobs() -> NotificationJobs:
    return scheduler_manager.jobs


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=401,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = authorization[7:].strip()
    try:
        user_id = decode_token(token)
        return UserService(db).get(user_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}
        ) from exc


def _not_found_or_bad_request(exc: ValueError) -> HTTPException:
    message = str(exc)
    status = 404 if message.endswith("not found") else 400
    return HTTPException(status_code=status, detail=message)


def period_from_query(start: Optional[date], end: Optional[date]) -> Period:
    if start is None and end is None:
        return resolve_period("month")
    try:
        return resolve_period(
            "custom",
            start.isoformat() if start else None,
            end.isoformat() if end else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def user_out(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "monthly_income": cents_to_amount(user.monthly_income_cents),
        "notifications": user.notifications,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def category_out(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
        "icon": category.icon,
        "tag": category.tag,
    }


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount": cents_to_amount(txn.amount_cents),
        "amount_cents": txn.amount_cents,
        "cashback": cents_to_amount(txn.cashback_cents or 0),
        "description": txn.description,
        "notes": txn.notes,
        "category": category_out(txn.category) if txn.category else None,
    }


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# -- auth --------------------------------------------------------------------


@app.post("/auth/register", status_code=201)
def register(
    payload: UserIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    jobs: NotificationJobs = Depends(get_notification_jobs),
):
    try:
        user = UserService(db).register(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    background_tasks.add_task(jobs.send_welcome, user.id)
    return {"user": user_out(user), "token": create_token(user.id)}


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(payload.email, payload.password)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return {"user": user_out(user), "token": create_token(user.id)}


@app.get("/auth/me")
def me(user: User = Depends(get_current_user)):
    return user_out(user)


@app.post("/auth/refresh")
def refresh_token(user: User = Depends(get_current_user)):
    return {"token": create_token(user.id)}


@app.post("/auth/logout", status_code=204)
def logout(user: User = Depends(get_current_user)):
    # tokens are stateless; the client drops its copy
    logger.info(f"user_logout: user_id={user.id}")
    return Response(status_code=204)


# -- users -------------------------------------------------------------------


@app.get("/users/profile")
def get_profile(user: User = Depends(get_current_user)):
    return user_out(user)


@app.put("/users/profile")
def update_profile(
    payload: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        updated = UserService(db).update_profile(user.id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return user_out(updated)


@app.put("/users/password")
def change_password(
    payload: PasswordChange,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        UserService(db).change_password(user.id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.put("/users/preferences")
def update_preferences(
    payload: Preferences,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = UserService(db).set_preferences(user.id, payload)
    return {"notifications": updated.notifications}


@app.get("/users/dashboard-summary")
def dashboard_summary(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user.id).dashboard_summary()


@app.get("/users/export")
def export_user_data(
    format: Literal["json", "csv"] = "json",
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    transactions = TransactionService(db, user.id).all()
    if format == "csv":
        return StreamingResponse(
            iter([export_transactions(transactions)]),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="monetasis_export.csv"'},
        )
    categories = CategoryService(db, user.id).list_all()
    data = {
        "user": user_out(user),
        "transactions": [transaction_out(t) for t in transactions],
        "categories": [category_out(c) for c in categories],
        "exported_at": local_now().isoformat(),
        "total_transactions": len(transactions),
        "total_categories": len(categories),
    }
    return Response(
        content=json.dumps(data, ensure_ascii=False),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="monetasis_export.json"'},
    )


@app.delete("/users/account", status_code=204)
def delete_account(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    UserService(db).delete(user.id)
    return Response(status_code=204)


# -- categories --------------------------------------------------------------


@app.get("/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [category_out(c) for c in CategoryService(db, user.id).list_all(type)]


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category_out(category)


@app.post("/categories/default", status_code=201)
def create_default_categories(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        created = CategoryService(db, user.id).create_defaults()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [category_out(c) for c in created]


@app.get("/categories/{category_id}")
def get_category(
    category_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).get(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return category_out(category)


@app.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).update(category_id, payload)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    return category_out(category)


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user.id).delete(category_id)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    return Response(status_code=204)


# -- transactions ------------------------------------------------------------


@app.get("/transactions/summary")
def transactions_summary(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return TransactionService(db, user.id).summary()


@app.get("/transactions/summary/monthly")
def transactions_monthly_summary(
    year: Optional[int] = Query(default=None, ge=1970, le=3000),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    year = year or local_now().year
    return {
        "year": year,
        "months": TransactionService(db, user.id).monthly_summary(year),
    }


@app.get("/transactions/summary/category")
def transactions_category_summary(
    start: Optional[date] = None,
    end: Optional[date] = None,
    type: Optional[TransactionType] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    period = period_from_query(start, end)
    return {
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
        "type": type.value if type else "all",
        "categories": TransactionService(db, user.id).category_summary(period, type),
    }


@app.get("/transactions")
def list_transactions(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        type=type, category_id=category_id, query=search, start=start, end=end
    )
    try:
        items, total = TransactionService(db, user.id).list(
            filters, limit=limit, offset=(page - 1) * limit
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "items": [transaction_out(t) for t in items],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_out(txn)


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return transaction_out(txn)


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).update(transaction_id, payload)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    return transaction_out(txn)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


# -- ai ----------------------------------------------------------------------


@app.get("/ai/insights")
def ai_insights(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return InsightsService(db, user.id).insights()


@app.get("/ai/trends")
def ai_trends(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return AnalyticsService(db, user.id).trends()


@app.get("/ai/recommendations")
def ai_recommendations(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return InsightsService(db, user.id).recommendations()


@app.get("/ai/predictions")
def ai_predictions(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return InsightsService(db, user.id).predictions()


@app.post("/ai/ask")
def ai_ask(payload: AskIn, user: User = Depends(get_current_user)):
    return InsightsService.ask(payload.question)


# -- analytics ---------------------------------------------------------------


@app.get("/analytics/dashboard")
def analytics_dashboard(
    period: Literal["week", "month", "year"] = "month",
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AnalyticsService(db, user.id).dashboard(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/analytics/trends")
def analytics_trends(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user.id).trends()


@app.get("/analytics/cash-flow")
def analytics_cash_flow(
    start: Optional[date] = None,
    end: Optional[date] = None,
    group_by: Granularity = Granularity.day,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AnalyticsService(db, user.id).cash_flow(start, end, group_by)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
