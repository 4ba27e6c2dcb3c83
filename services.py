from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic
from models import (
    Account,
    AccountType,
    Category,
    CategoryType,
    CurrencyCode,
    Transaction,
    TransactionType,
    User,
)
from money import to_cents
from periods import month_period, to_local_naive
from schemas import (
    AccountIn,
    AccountUpdateIn,
    CategoryIn,
    CategoryUpdateIn,
    LoginIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdateIn,
)
from security import (
    burn_password_check,
    create_access_token,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

OwnedT = TypeVar("OwnedT", Account, Category, Transaction)


class NotFoundError(ValueError):
    pass


class AccessDeniedError(ValueError):
    pass


class ValidationError(ValueError):
    pass


class InvalidBalanceOperation(ValueError):
    pass


class DuplicateNameError(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


def local_now() -> datetime:
    timezone = get_settings().timezone
    return to_local_naive(datetime.now(ZoneInfo(timezone)), timezone)


def _clean_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def is_owned_by(entity: Account | Category | Transaction, user_id: int) -> bool:
    return entity.user_id == user_id


def get_owned(
    session: Session, model: type[OwnedT], entity_id: int, user_id: int
) -> OwnedT:
    """Fetch an entity by id for ``user_id``.

    Existence is checked before ownership: a missing id raises
    ``NotFoundError``, another user's entity raises ``AccessDeniedError``.
    """
    label = model.__name__
    entity = session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(f"{label} not found")
    if not is_owned_by(entity, user_id):
        raise AccessDeniedError(f"Access denied to this {label.lower()}")
    return entity


class AccountLedger:
    """Sole writer of ``Account.balance_cents``.

    The ledger only flushes; committing belongs to the caller's unit of work.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def apply_delta(self, account_id: int, delta_cents: int) -> Account:
        new_balance = Account.balance_cents + delta_cents
        result = self.session.execute(
            update(Account)
            .where(
                Account.id == account_id,
                or_(Account.account_type == AccountType.credit, new_balance >= 0),
            )
            .values(balance_cents=new_balance, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._reject(account_id, delta_cents)
        return self._reload(account_id)

    def set_balance(self, account_id: int, balance_cents: int) -> Account:
        account = self.session.get(Account, account_id, populate_existing=True)
        if account is None:
            raise NotFoundError("Account not found")
        if not account.allows_balance(balance_cents):
            logger.warning(
                f"balance_rejected: account_id={account_id} balance_cents={balance_cents}"
            )
            raise InvalidBalanceOperation(
                "Non-credit accounts cannot have negative balance"
            )
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=balance_cents, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Account not found")
        return self._reload(account_id)

    def _reject(self, account_id: int, delta_cents: int) -> None:
        account = self.session.get(Account, account_id, populate_existing=True)
        if account is None:
            raise NotFoundError("Account not found")
        logger.warning(
            f"balance_rejected: account_id={account_id} "
            f"balance_cents={account.balance_cents} delta_cents={delta_cents}"
        )
        raise InvalidBalanceOperation(
            "Non-credit accounts cannot have negative balance"
        )

    def _reload(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id, populate_existing=True)
        if account is None:
            raise NotFoundError("Account not found")
        return account


def balance_legs(
    txn_type: TransactionType,
    amount_cents: int,
    account_id: int,
    to_account_id: Optional[int],
) -> list[tuple[int, int]]:
    """Signed balance deltas a transaction applies, source leg first."""
    if txn_type == TransactionType.expense:
        return [(account_id, -amount_cents)]
    if txn_type == TransactionType.income:
        return [(account_id, amount_cents)]
    if to_account_id is None:
        raise ValidationError("Destination account required for transfers")
    return [(account_id, -amount_cents), (to_account_id, amount_cents)]


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def register(self, data: RegisterIn) -> tuple[User, str]:
        email = self._normalize_email(data.email)
        with atomic(self.session):
            exists = self.session.scalar(select(User.id).where(User.email == email))
            if exists:
                raise DuplicateNameError("User already exists with this email")
            user = User(
                email=email,
                first_name=data.first_name.strip(),
                last_name=data.last_name.strip(),
                password_hash=hash_password(data.password),
            )
            self.session.add(user)
            self.session.flush()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user, create_access_token(user.id, user.email)

    def authenticate(self, data: LoginIn) -> tuple[User, str]:
        email = self._normalize_email(data.email)
        user = self.session.scalar(select(User).where(User.email == email))
        if user is None:
            burn_password_check(data.password)
            valid = False
        else:
            valid = verify_password(data.password, user.password_hash)
        if user is None or not valid or not user.is_active:
            logger.warning("login_failed: reason=invalid_credentials")
            raise AuthenticationError("Invalid credentials")

        with atomic(self.session):
            user.last_login = datetime.utcnow()
            self.session.flush()
        self.session.refresh(user)
        logger.info(f"user_logged_in: user_id={user.id}")
        return user, create_access_token(user.id, user.email)

    def get_active_user(self, user_id: int) -> Optional[User]:
        user = self.session.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return user


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Account.id).where(
            Account.user_id == self.user_id,
            Account.is_active.is_(True),
            func.lower(Account.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise ValidationError("Account name cannot be empty")
        with atomic(self.session):
            if self._name_taken(name):
                raise DuplicateNameError("Account with this name already exists")
            account = Account(
                user_id=self.user_id,
                name=name,
                account_type=data.account_type,
                currency=data.currency,
                balance_cents=to_cents(data.balance),
                bank_name=_clean_optional(data.bank_name),
                account_number=_clean_optional(data.account_number),
            )
            self.session.add(account)
            self.session.flush()
        self.session.refresh(account)
        logger.info(
            f"account_created: id={account.id} user_id={self.user_id} "
            f"type={account.account_type.value} balance_cents={account.balance_cents}"
        )
        return account

    def list_all(self, active_only: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.is_active.desc(), Account.created_at, Account.id)
        )
        if active_only:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def by_type(self, account_type: AccountType) -> list[Account]:
        stmt = (
            select(Account)
            .where(
                Account.user_id == self.user_id,
                Account.is_active.is_(True),
                Account.account_type == account_type,
            )
            .order_by(Account.created_at, Account.id)
        )
        return self.session.scalars(stmt).all()

    def by_currency(self, currency: CurrencyCode) -> list[Account]:
        stmt = (
            select(Account)
            .where(
                Account.user_id == self.user_id,
                Account.is_active.is_(True),
                Account.currency == currency,
            )
            .order_by(Account.created_at, Account.id)
        )
        return self.session.scalars(stmt).all()

    def count(self) -> int:
        stmt = select(func.count(Account.id)).where(Account.user_id == self.user_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def get(self, account_id: int) -> Account:
        return get_owned(self.session, Account, account_id, self.user_id)

    def update(self, account_id: int, data: AccountUpdateIn) -> Account:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            account = self.get(account_id)
            if "name" in changes:
                name = (changes["name"] or "").strip()
                if not name:
                    raise ValidationError("Account name cannot be empty")
                if self._name_taken(name, exclude_id=account.id):
                    raise DuplicateNameError("Account with this name already exists")
                account.name = name
            if "bank_name" in changes:
                account.bank_name = _clean_optional(changes["bank_name"])
            if "account_number" in changes:
                account.account_number = _clean_optional(changes["account_number"])
            self.session.flush()
        self.session.refresh(account)
        return account

    def set_balance(self, account_id: int, balance: Decimal) -> Account:
        with atomic(self.session):
            self.get(account_id)
            account = AccountLedger(self.session).set_balance(
                account_id, to_cents(balance)
            )
        self.session.refresh(account)
        logger.info(
            f"account_balance_set: id={account.id} balance_cents={account.balance_cents}"
        )
        return account

    def deactivate(self, account_id: int) -> Account:
        with atomic(self.session):
            account = self.get(account_id)
            account.is_active = False
            self.session.flush()
        self.session.refresh(account)
        logger.info(f"account_deactivated: id={account.id}")
        return account

    def activate(self, account_id: int) -> Account:
        with atomic(self.session):
            account = self.get(account_id)
            if not account.is_active and self._name_taken(
                account.name, exclude_id=account.id
            ):
                raise DuplicateNameError("Account with this name already exists")
            account.is_active = True
            self.session.flush()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        # Accounts keep their ledger history; deleting only deactivates.
        self.deactivate(account_id)


DEFAULT_CATEGORIES: tuple[tuple[str, CategoryType, str, str], ...] = (
    ("Food & Dining", CategoryType.expense, "🍔", "#FF6B6B"),
    ("Transportation", CategoryType.expense, "🚗", "#4ECDC4"),
    ("Shopping", CategoryType.expense, "🛍️", "#45B7D1"),
    ("Entertainment", CategoryType.expense, "🎬", "#96CEB4"),
    ("Bills & Utilities", CategoryType.expense, "💡", "#FFEAA7"),
    ("Healthcare", CategoryType.expense, "🏥", "#DDA0DD"),
    ("Education", CategoryType.expense, "📚", "#98D8C8"),
    ("Other Expense", CategoryType.expense, "📌", "#95A5A6"),
    ("Salary", CategoryType.income, "💰", "#27AE60"),
    ("Freelance", CategoryType.income, "💻", "#3498DB"),
    ("Investment", CategoryType.income, "📈", "#9B59B6"),
    ("Other Income", CategoryType.income, "💵", "#1ABC9C"),
)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _active_stmt(self):
        return (
            select(Category)
            .where(Category.user_id == self.user_id, Category.is_active.is_(True))
            .order_by(Category.type, Category.name)
        )

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.is_active.is_(True),
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def list_all(self) -> list[Category]:
        categories = self.session.scalars(self._active_stmt()).all()
        if categories:
            return categories
        self.initialize_defaults()
        return self.session.scalars(self._active_stmt()).all()

    def by_type(self, category_type: CategoryType) -> list[Category]:
        stmt = self._active_stmt().where(Category.type == category_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        return get_owned(self.session, Category, category_id, self.user_id)

    def initialize_defaults(self) -> list[Category]:
        created: list[Category] = []
        with atomic(self.session):
            for name, category_type, icon, color in DEFAULT_CATEGORIES:
                if self._name_taken(name):
                    continue
                category = Category(
                    user_id=self.user_id,
                    name=name,
                    type=category_type,
                    icon=icon,
                    color=color,
                )
                self.session.add(category)
                created.append(category)
            self.session.flush()
        for category in created:
            self.session.refresh(category)
        if created:
            logger.info(
                f"categories_initialized: user_id={self.user_id} count={len(created)}"
            )
        return created

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        with atomic(self.session):
            if self._name_taken(name):
                raise DuplicateNameError("Category with this name already exists")
            category = Category(
                user_id=self.user_id,
                name=name,
                type=data.type,
                icon=_clean_optional(data.icon),
                color=_clean_optional(data.color),
            )
            self.session.add(category)
            self.session.flush()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdateIn) -> Category:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            category = self.get(category_id)
            if "name" in changes:
                name = (changes["name"] or "").strip()
                if not name:
                    raise ValidationError("Category name cannot be empty")
                if self._name_taken(name, exclude_id=category.id):
                    raise DuplicateNameError("Category with this name already exists")
                category.name = name
            if "icon" in changes:
                category.icon = _clean_optional(changes["icon"])
            if "color" in changes:
                category.color = _clean_optional(changes["color"])
            self.session.flush()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        with atomic(self.session):
            category = self.get(category_id)
            category.is_active = False
            self.session.flush()
        logger.info(f"category_deactivated: id={category_id}")


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class TransactionService:
    """Couples every transaction row to the balance deltas it implies.

    Creating or deleting a transaction and moving the balances of its
    account(s) happen in one unit of work: either the row and all of its
    deltas are committed, or none of them are.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ledger = AccountLedger(session)

    def _check_category(self, category_id: int, txn_type: TransactionType) -> None:
        category = get_owned(self.session, Category, category_id, self.user_id)
        if (
            txn_type != TransactionType.transfer
            and category.type.value != txn_type.value
        ):
            raise ValidationError("Category type mismatch")

    def create(self, data: TransactionIn) -> Transaction:
        amount_cents = to_cents(data.amount)
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive")

        with atomic(self.session):
            source = get_owned(self.session, Account, data.account_id, self.user_id)
            if data.category_id is not None:
                self._check_category(data.category_id, data.type)

            to_account_id: Optional[int] = None
            from_account_id: Optional[int] = None
            if data.type == TransactionType.transfer:
                if data.to_account_id is None:
                    raise ValidationError("Destination account required for transfers")
                if data.to_account_id == source.id:
                    raise ValidationError(
                        "Source and destination accounts must differ"
                    )
                destination = get_owned(
                    self.session, Account, data.to_account_id, self.user_id
                )
                to_account_id = destination.id
                from_account_id = source.id

            for account_id, delta_cents in balance_legs(
                data.type, amount_cents, source.id, to_account_id
            ):
                self.ledger.apply_delta(account_id, delta_cents)

            txn = Transaction(
                user_id=self.user_id,
                account_id=source.id,
                category_id=data.category_id,
                type=data.type,
                amount_cents=amount_cents,
                description=data.description,
                transaction_date=data.transaction_date or local_now(),
                to_account_id=to_account_id,
                from_account_id=from_account_id,
            )
            self.session.add(txn)
            self.session.flush()

        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} user_id={self.user_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        return get_owned(self.session, Transaction, transaction_id, self.user_id)

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            txn = self.get(transaction_id)
            if "category_id" in changes:
                if changes["category_id"] is not None:
                    self._check_category(changes["category_id"], txn.type)
                txn.category_id = changes["category_id"]
            if "description" in changes:
                if changes["description"] is None:
                    raise ValidationError("Description cannot be null")
                txn.description = changes["description"]
            if "transaction_date" in changes:
                if changes["transaction_date"] is None:
                    raise ValidationError("Transaction date cannot be null")
                txn.transaction_date = changes["transaction_date"]
            self.session.flush()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            skip_reason: Optional[str] = None
            if self.session.get(Account, txn.account_id) is None:
                skip_reason = "account_missing"
            elif txn.is_transfer and (
                txn.to_account_id is None
                or self.session.get(Account, txn.to_account_id) is None
            ):
                skip_reason = "destination_missing"

            if skip_reason:
                logger.warning(
                    f"transaction_reversal_skipped: id={txn.id} reason={skip_reason}"
                )
            else:
                for account_id, delta_cents in balance_legs(
                    txn.type, txn.amount_cents, txn.account_id, txn.to_account_id
                ):
                    self.ledger.apply_delta(account_id, -delta_cents)

            self.session.delete(txn)
            self.session.flush()
        logger.info(
            f"transaction_deleted: id={transaction_id} user_id={self.user_id}"
        )

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        )
        if filters.account_id is not None:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.date_from:
            stmt = stmt.where(Transaction.transaction_date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Transaction.transaction_date <= filters.date_to)
        return self.session.scalars(stmt).all()

    def for_account(self, account_id: int) -> list[Transaction]:
        get_owned(self.session, Account, account_id, self.user_id)
        return self.list(TransactionFilters(account_id=account_id))


class MetricsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def sum_by_type(
        self,
        txn_type: TransactionType,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == txn_type,
        )
        if date_from:
            stmt = stmt.where(Transaction.transaction_date >= date_from)
        if date_to:
            stmt = stmt.where(Transaction.transaction_date <= date_to)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def monthly_totals(self, year: int, month: int) -> dict[str, int]:
        try:
            period = month_period(year, month)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        income = self.sum_by_type(TransactionType.income, period.start, period.end)
        expense = self.sum_by_type(TransactionType.expense, period.start, period.end)
        return {"income": income, "expense": expense, "net": income - expense}
