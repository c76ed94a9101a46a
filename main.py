import asyncio
import logging
import uuid
from datetime import datetime, timezone
from functools import partial
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.orm import Session

from auth import bearer_token, user_id_from_token
from config import get_settings
from database import SessionLocal, get_db
from errors import (
    AuthError,
    Conflict,
    InvalidRequest,
    NotFound,
    UpstreamUnavailable,
)
from models import Category, Reminder, Transaction, TransactionType, User
from periods import SummaryPeriod, utc_now
from reports import Deadline, ReportService
from schemas import (
    CategoryIn,
    LoginIn,
    Pagination,
    ReminderIn,
    ReminderPatch,
    SignupIn,
    TransactionIn,
    TransactionPatch,
)
from services import (
    CategoryService,
    ReminderFilters,
    ReminderService,
    SqlCategoryStore,
    SqlTransactionStore,
    TransactionFilters,
    TransactionService,
    UserService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


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
REQUEST_ID_HEADER = "X-Request-ID"

app = FastAPI(title="Finance Tracker", version=APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_url],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Origin", "Content-Type", "Accept", "Authorization"],
)

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request: id=%s method=%s path=%s status=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
    )
    return response


ERROR_CODES = {
    400: "invalid_request",
    401: "unauthorized",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    503: "unavailable",
}


def _error_body(message: str, code: str) -> dict[str, object]:
    return {"error": {"message": message, "code": code}}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            str(exc.detail), ERROR_CODES.get(exc.status_code, "error")
        ),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "invalid payload"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()))
        message = f"{location}: {errors[0].get('msg', message)}"
    return JSONResponse(status_code=400, content=_error_body(message, "invalid_request"))


def current_user_id(authorization: Optional[str] = Header(None)) -> int:
    try:
        return user_id_from_token(bearer_token(authorization))
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def get_report_service() -> ReportService:
    return ReportService(
        SqlTransactionStore(SessionLocal),
        SqlCategoryStore(SessionLocal),
        clock=utc_now,
    )


def _parse_instant(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid {name}") from exc


def _user_out(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "createdAt": _iso(user.created_at),
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def _category_out(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "parentId": category.parent_id,
        "createdAt": _iso(category.created_at),
        "updatedAt": _iso(category.updated_at),
    }


def _transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "userId": txn.user_id,
        "type": txn.type.value,
        "amount": txn.amount,
        "currency": txn.currency,
        "categoryId": txn.category_id,
        "subcategoryId": txn.subcategory_id,
        "description": txn.description,
        "date": _iso(txn.occurred_at),
        "createdAt": _iso(txn.created_at),
        "updatedAt": _iso(txn.updated_at),
    }


def _reminder_out(reminder: Reminder) -> dict[str, object]:
    return {
        "id": reminder.id,
        "userId": reminder.user_id,
        "title": reminder.title,
        "description": reminder.description,
        "dueAt": _iso(reminder.due_at),
        "repeatInterval": reminder.repeat_interval.value,
        "isActive": reminder.is_active,
        "createdAt": _iso(reminder.created_at),
        "updatedAt": _iso(reminder.updated_at),
    }


@app.get("/api/v1/health")
def health():
    return {
        "status": "ok",
        "version": APP_VERSION,
        "timestamp": utc_now().replace(microsecond=0).isoformat(),
    }


@app.post("/api/v1/auth/signup", status_code=201)
def signup(data: SignupIn, db: Session = Depends(get_db)):
    try:
        user, token = UserService(db).signup(data)
    except Conflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"data": {"user": _user_out(user), "token": token}}


@app.post("/api/v1/auth/login")
def login(data: LoginIn, db: Session = Depends(get_db)):
    try:
        user, token = UserService(db).login(data.email, data.password)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return {"data": {"user": _user_out(user), "token": token}}


@app.get("/api/v1/auth/me")
def me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        user = UserService(db).get(user_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"data": _user_out(user)}


@app.post("/api/v1/categories", status_code=201)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).create(data)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"data": _category_out(category)}


@app.get("/api/v1/categories")
def list_categories(
    parent_id: Optional[int] = Query(None, alias="parentId"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    categories = CategoryService(db, user_id).list_all(parent_id=parent_id)
    return {"data": [_category_out(c) for c in categories]}


@app.get("/api/v1/categories/{category_id}")
def get_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).get(category_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"data": _category_out(category)}


@app.put("/api/v1/categories/{category_id}")
def update_category(
    category_id: int,
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).update(category_id, data)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"data": _category_out(category)}


@app.delete("/api/v1/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/v1/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).create(data)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"data": _transaction_out(txn)}


@app.get("/api/v1/transactions")
def list_transactions(
    type: Optional[TransactionType] = None,
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    subcategory_id: Optional[int] = Query(None, alias="subcategoryId"),
    sort: str = "date_desc",
    limit: int = 20,
    offset: int = 0,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    limit = limit if limit > 0 else 20
    offset = max(offset, 0)
    filters = TransactionFilters(
        type=type,
        start=_parse_instant(start, "from"),
        end=_parse_instant(end, "to"),
        category_id=category_id,
        subcategory_id=subcategory_id,
        sort_date_asc=sort == "date_asc",
    )
    items, total = TransactionService(db, user_id).list(
        filters, limit=limit, offset=offset
    )
    return {
        "data": [_transaction_out(txn) for txn in items],
        "pagination": Pagination(limit=limit, offset=offset, total=total).model_dump(),
    }


@app.get("/api/v1/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"data": _transaction_out(txn)}


@app.put("/api/v1/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, data)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"data": _transaction_out(txn)}


@app.delete("/api/v1/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/v1/reports/summary")
async def report_summary(
    period: str = "monthly",
    group_by: str = Query("none", alias="groupBy"),
    start: Optional[str] = None,
    end: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    service: ReportService = Depends(get_report_service),
):
    start_at = end_at = None
    if period == SummaryPeriod.custom:
        start_at = _parse_instant(start, "start date")
        end_at = _parse_instant(end, "end date")
    timeout = get_settings().report_timeout_secs
    deadline = Deadline(timeout)
    job = partial(
        service.compute_summary,
        user_id,
        period,
        start_at,
        end_at,
        group_by,
        deadline=deadline,
    )
    loop = asyncio.get_running_loop()
    try:
        report = await asyncio.wait_for(loop.run_in_executor(None, job), timeout)
    except asyncio.TimeoutError as exc:
        deadline.cancel()
        logger.warning("report_summary_timeout: user_id=%s period=%s", user_id, period)
        raise HTTPException(
            status_code=503,
            detail="report timed out, retry later",
            headers={"Retry-After": "1"},
        ) from exc
    except asyncio.CancelledError:
        deadline.cancel()
        raise
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamUnavailable as exc:
        raise HTTPException(
            status_code=503, detail=str(exc), headers={"Retry-After": "1"}
        ) from exc
    return {"data": report.as_dict()}


@app.post("/api/v1/reminders", status_code=201)
def create_reminder(
    data: ReminderIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        reminder = ReminderService(db, user_id).create(data)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"data": _reminder_out(reminder)}


@app.get("/api/v1/reminders")
def list_reminders(
    is_active: Optional[bool] = Query(None, alias="isActive"),
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    filters = ReminderFilters(
        is_active=is_active,
        start=_parse_instant(start, "from"),
        end=_parse_instant(end, "to"),
    )
    reminders = ReminderService(db, user_id).list(filters)
    return {"data": [_reminder_out(r) for r in reminders]}


@app.get("/api/v1/reminders/{reminder_id}")
def get_reminder(
    reminder_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        reminder = ReminderService(db, user_id).get(reminder_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"data": _reminder_out(reminder)}


@app.put("/api/v1/reminders/{reminder_id}")
def update_reminder(
    reminder_id: int,
    data: ReminderPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        reminder = ReminderService(db, user_id).update(reminder_id, data)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"data": _reminder_out(reminder)}


@app.delete("/api/v1/reminders/{reminder_id}", status_code=204)
def delete_reminder(
    reminder_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        ReminderService(db, user_id).delete(reminder_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)
