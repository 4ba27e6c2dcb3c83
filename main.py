import logging
import tomllib
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from models import AccountType, CategoryType, CurrencyCode, TransactionType, User
from money import from_cents
from schemas import (
    AccountCountOut,
    AccountDetailOut,
    AccountIn,
    AccountOut,
    AccountUpdateIn,
    AuthOut,
    BalanceIn,
    CategoryIn,
    CategoryOut,
    CategoryUpdateIn,
    LoginIn,
    MonthlyTotalsOut,
    RegisterIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdateIn,
    UserOut,
)
from security import read_access_token
from services import (
    AccessDeniedError,
    AccountService,
    AuthenticationError,
    AuthService,
    CategoryService,
    DuplicateNameError,
    InvalidBalanceOperation,
    MetricsService,
    NotFoundError,
    TransactionFilters,
    TransactionService,
    ValidationError,
    local_now,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Personal Finance API", version=APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS: dict[type[ValueError], int] = {
    NotFoundError: 404,
    AccessDeniedError: 403,
    ValidationError: 400,
    InvalidBalanceOperation: 400,
    DuplicateNameError: 409,
    AuthenticationError: 401,
}


def http_error(exc: ValueError) -> HTTPException:
    status_code = ERROR_STATUS.get(type(exc), 400)
    return HTTPException(status_code=status_code, detail=str(exc))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    unauthorized = HTTPException(
        status_code=401,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise unauthorized
    user_id = read_access_token(credentials.credentials)
    if user_id is None:
        raise unauthorized
    user = AuthService(db).get_active_user(user_id)
    if user is None:
        raise unauthorized
    return user


@app.post("/auth/register", response_model=AuthOut, status_code=201)
def register(data: RegisterIn, db: Session = Depends(get_db)):
    try:
        user, token = AuthService(db).register(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return AuthOut(user=UserOut.model_validate(user), access_token=token)


@app.post("/auth/login", response_model=AuthOut)
def login(data: LoginIn, db: Session = Depends(get_db)):
    try:
        user, token = AuthService(db).authenticate(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return AuthOut(user=UserOut.model_validate(user), access_token=token)


@app.get("/auth/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return user


@app.post("/accounts", response_model=AccountDetailOut, status_code=201)
def create_account(
    data: AccountIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/accounts", response_model=list[AccountOut])
def list_accounts(
    active: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return AccountService(db, user.id).list_all(active_only=active)


@app.get("/accounts/count", response_model=AccountCountOut)
def count_accounts(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return AccountCountOut(count=AccountService(db, user.id).count())


@app.get("/accounts/by-type/{account_type}", response_model=list[AccountOut])
def accounts_by_type(
    account_type: AccountType,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return AccountService(db, user.id).by_type(account_type)


@app.get("/accounts/by-currency/{currency}", response_model=list[AccountOut])
def accounts_by_currency(
    currency: CurrencyCode,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return AccountService(db, user.id).by_currency(currency)


@app.get("/accounts/{account_id}", response_model=AccountDetailOut)
def get_account(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/accounts/{account_id}", response_model=AccountDetailOut)
def update_account(
    account_id: int,
    data: AccountUpdateIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).update(account_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/accounts/{account_id}/balance", response_model=AccountDetailOut)
def update_account_balance(
    account_id: int,
    data: BalanceIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).set_balance(account_id, data.balance)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/accounts/{account_id}/deactivate", response_model=AccountDetailOut)
def deactivate_account(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).deactivate(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/accounts/{account_id}/activate", response_model=AccountDetailOut)
def activate_account(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).activate(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        AccountService(db, user.id).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/accounts/{account_id}/transactions", response_model=list[TransactionOut])
def account_transactions(
    account_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).for_account(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user.id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return CategoryService(db, user.id).list_all()


@app.get("/categories/by-type", response_model=list[CategoryOut])
def categories_by_type(
    type: CategoryType,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user.id).by_type(type)


@app.post("/categories/initialize", response_model=list[CategoryOut], status_code=201)
def initialize_categories(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return CategoryService(db, user.id).initialize_defaults()


@app.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user.id).get(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    data: CategoryUpdateIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user.id).update(category_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user.id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        type=type,
        date_from=date_from,
        date_to=date_to,
    )
    return TransactionService(db, user.id).list(filters)


@app.get("/transactions/stats/monthly", response_model=MonthlyTotalsOut)
def monthly_stats(
    year: Optional[int] = Query(default=None, ge=1, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    now = local_now()
    year = now.year if year is None else year
    month = now.month if month is None else month
    try:
        totals = MetricsService(db, user.id).monthly_totals(year, month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MonthlyTotalsOut(
        year=year,
        month=month,
        income=from_cents(totals["income"]),
        expense=from_cents(totals["expense"]),
        net=from_cents(totals["net"]),
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionUpdateIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).update(transaction_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)
