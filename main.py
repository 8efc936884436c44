import logging
from datetime import date
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from database import Base, create_db_engine, make_session_factory
from models import TransactionType, User
from periods import Period, local_today, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    LoginIn,
    PasswordChangeIn,
    ProfileIn,
    RegisterIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    UserOut,
)
from security import issue_access_token, read_access_token
from services import (
    AccountService,
    AuthenticationError,
    BudgetService,
    ConflictError,
    MetricsService,
    NotFoundError,
    TransactionFilters,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)

router = APIRouter()


def envelope(
    data: object = None, message: Optional[str] = None, status_code: int = 200
) -> JSONResponse:
    body: dict[str, object] = {"success": status_code < 400}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=body)


def get_db(request: Request) -> Iterator[Session]:
    db: Session = request.app.state.session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_today(request: Request) -> date:
    return local_today(request.app.state.settings.timezone)


def current_user_id(request: Request, db: Session = Depends(get_db)) -> int:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Not authorized")
    user_id = read_access_token(token.strip(), request.app.state.settings)
    if user_id is None or db.get(User, user_id) is None:
        raise AuthenticationError("Not authorized")
    return user_id


def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an ISO date (YYYY-MM-DD)") from exc


def _parse_type(value: Optional[str]) -> Optional[TransactionType]:
    if not value:
        return None
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise ValueError(f"Unknown transaction type: {value}") from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    account_id = None
    if params.get("account_id"):
        try:
            account_id = int(params["account_id"])
        except ValueError as exc:
            raise ValueError("account_id must be an integer") from exc
    return TransactionFilters(
        account_id=account_id,
        category=params.get("category") or None,
        type=_parse_type(params.get("type")),
        start=_parse_date(params.get("start_date"), "start_date"),
        end=_parse_date(params.get("end_date"), "end_date"),
    )


def period_from_request(request: Request, today: Optional[date] = None) -> Period:
    return resolve_period(
        request.query_params.get("period"),
        request.query_params.get("start"),
        request.query_params.get("end"),
        today=today,
    )


def _page_from_request(request: Request) -> tuple[int, int]:
    try:
        limit = int(request.query_params.get("limit", "100"))
        offset = int(request.query_params.get("offset", "0"))
    except ValueError as exc:
        raise ValueError("limit and offset must be integers") from exc
    return min(max(limit, 1), 500), max(offset, 0)


def _user(user: User) -> dict:
    return UserOut.model_validate(user).model_dump(mode="json")


@router.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return envelope({"database": "ok"}, message="OK")


# auth


@router.post("/auth/register")
def register(data: RegisterIn, request: Request, db: Session = Depends(get_db)):
    user = UserService(db).register(data)
    token = issue_access_token(user.id, request.app.state.settings)
    return envelope({"user": _user(user), "token": token}, status_code=201)


@router.post("/auth/login")
def login(data: LoginIn, request: Request, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(data)
    token = issue_access_token(user.id, request.app.state.settings)
    return envelope({"user": _user(user), "token": token})


@router.get("/auth/me")
def me(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    return envelope({"user": _user(UserService(db).get(user_id))})


# user


@router.put("/user/profile")
def update_profile(
    data: ProfileIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return envelope(_user(UserService(db).update_profile(user_id, data)))


@router.put("/user/password")
def change_password(
    data: PasswordChangeIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    UserService(db).change_password(user_id, data)
    return envelope(message="Password changed successfully")


@router.delete("/user")
def delete_user(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    UserService(db).delete(user_id)
    return envelope(message="Account deleted successfully")


# accounts


def _account(account) -> dict:
    return AccountOut.model_validate(account).model_dump(mode="json")


@router.get("/accounts")
def list_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return envelope([_account(a) for a in AccountService(db, user_id).list_all()])


@router.get("/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return envelope(_account(AccountService(db, user_id).get(account_id)))


@router.post("/accounts")
def create_account(
    data: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    account = AccountService(db, user_id).create(data)
    return envelope(_account(account), status_code=201)


@router.put("/accounts/{account_id}")
def update_account(
    account_id: int,
    data: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return envelope(_account(AccountService(db, user_id).update(account_id, data)))


@router.delete("/accounts/{account_id}")
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    AccountService(db, user_id).delete(account_id)
    return envelope(message="Account deleted")


@router.put("/accounts/{account_id}/balance")
def recompute_account_balance(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    account = AccountService(db, user_id).recompute_balance(account_id)
    return envelope(_account(account))


# transactions


def _transaction(txn) -> dict:
    return TransactionOut.model_validate(txn).model_dump(mode="json")


@router.get("/transactions")
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    filters = filters_from_request(request)
    limit, offset = _page_from_request(request)
    items = TransactionService(db, user_id).list(filters, limit=limit, offset=offset)
    return envelope([_transaction(t) for t in items])


@router.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return envelope(_transaction(TransactionService(db, user_id).get(transaction_id)))


@router.post("/transactions")
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    txn = TransactionService(db, user_id, today=today).create(data)
    return envelope(_transaction(txn), status_code=201)


@router.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    txn = TransactionService(db, user_id, today=today).update(transaction_id, data)
    return envelope(_transaction(txn))


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    TransactionService(db, user_id, today=today).delete(transaction_id)
    return envelope(message="Transaction deleted")


# budgets


def _budget(budget) -> dict:
    return BudgetOut.model_validate(budget).model_dump(mode="json")


@router.get("/budgets")
def list_budgets(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return envelope([_budget(b) for b in BudgetService(db, user_id).list_all()])


@router.get("/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return envelope(_budget(BudgetService(db, user_id).get(budget_id)))


@router.post("/budgets")
def create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    budget = BudgetService(db, user_id, today=today).create(data)
    return envelope(_budget(budget), status_code=201)


@router.put("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    data: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    budget = BudgetService(db, user_id, today=today).update(budget_id, data)
    return envelope(_budget(budget))


@router.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    BudgetService(db, user_id).delete(budget_id)
    return envelope(message="Budget deleted")


@router.put("/budgets/{budget_id}/spent")
def recompute_budget_spent(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    budget = BudgetService(db, user_id, today=today).recompute_spent(budget_id)
    return envelope(_budget(budget))


# stats


@router.get("/stats/overview")
def stats_overview(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    return envelope(MetricsService(db, user_id, today=today).overview())


@router.get("/stats/categories")
def stats_categories(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    period = period_from_request(request, today)
    txn_type = _parse_type(request.query_params.get("type"))
    metrics = MetricsService(db, user_id, today=today)
    breakdown = metrics.category_breakdown(period, txn_type)
    return envelope(
        {
            "period": {
                "slug": period.slug,
                "start": period.start.isoformat(),
                "end": period.end.isoformat(),
            },
            "categories": breakdown,
        }
    )


@router.get("/stats/calendar")
def stats_calendar(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    today: date = Depends(get_today),
):
    ym = request.query_params.get("month")  # YYYY-MM
    if ym:
        try:
            year_str, month_str = ym.split("-", 1)
            year, month = int(year_str), int(month_str)
            date(year, month, 1)
        except ValueError as exc:
            raise ValueError("month must look like YYYY-MM") from exc
    else:
        year, month = today.year, today.month
    return envelope(MetricsService(db, user_id, today=today).calendar(year, month))



def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthenticationError)
    async def authentication_failed(request: Request, exc: AuthenticationError):
        return envelope(message=str(exc) or "Not authorized", status_code=401)

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return envelope(message=str(exc), status_code=404)

    @app.exception_handler(ConflictError)
    async def conflict(request: Request, exc: ConflictError):
        return envelope(message=str(exc), status_code=409)

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError):
        return envelope(message=str(exc), status_code=400)

    @app.exception_handler(RequestValidationError)
    async def validation_failed(request: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        message = "; ".join(
            f"{e['field']}: {e['message']}" if e["field"] else e["message"]
            for e in errors
        )
        return envelope(
            {"errors": errors}, message=message or "Validation failed", status_code=400
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return envelope(message=str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return envelope(message="Internal server error", status_code=500)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Money Tracker")
    app.state.settings = settings
    app.state.scheduler = None

    @app.on_event("startup")
    def startup_event():
        engine = create_db_engine(settings.database_url)
        if settings.auto_create_schema:
            Base.metadata.create_all(engine)
        app.state.engine = engine
        app.state.session_factory = make_session_factory(engine)
        if settings.budget_refresh_enabled:
            app.state.scheduler = SchedulerManager(settings, app.state.session_factory)
            app.state.scheduler.start()
        logger.info(f"startup: database={engine.url.render_as_string(hide_password=True)}")

    @app.on_event("shutdown")
    def shutdown_event():
        if app.state.scheduler is not None:
            app.state.scheduler.stop()
            app.state.scheduler = None
        app.state.engine.dispose()
        logger.info("shutdown: engine disposed")

    _register_error_handlers(app)
    app.include_router(router, prefix="/api")
    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
