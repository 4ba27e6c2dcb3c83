from decimal import Decimal

import pydantic
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AccountType, CurrencyCode, User
from schemas import AccountIn, AccountUpdateIn
from services import (
    AccessDeniedError,
    AccountService,
    DuplicateNameError,
    InvalidBalanceOperation,
    NotFoundError,
    ValidationError,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, email: str = "ana@example.com") -> User:
    user = User(email=email, first_name="Ana", last_name="J", password_hash="x")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def test_create_account_defaults_and_formatting() -> None:
    session = make_session()
    user = make_user(session)

    account = AccountService(session, user.id).create(
        AccountIn(
            name="  Main  ",
            account_type=AccountType.checking,
            balance=Decimal("1234567.50"),
            bank_name=" ",
            account_number="160-123-45",
        )
    )

    assert account.name == "Main"
    assert account.currency == CurrencyCode.rsd
    assert account.balance_cents == 123_456_750
    assert account.balance == Decimal("1234567.50")
    assert account.formatted_balance == "1 234 567.50 RSD"
    assert account.bank_name is None
    assert account.has_account_number is True
    assert account.is_active is True


def test_opening_balance_cannot_be_negative() -> None:
    with pytest.raises(pydantic.ValidationError):
        AccountIn(name="Main", account_type=AccountType.cash, balance=Decimal("-1"))
    with pytest.raises(pydantic.ValidationError):
        AccountIn(name="Main", account_type=AccountType.cash, balance=Decimal("1.001"))


def test_active_account_names_are_unique_per_user() -> None:
    session = make_session()
    ana = make_user(session)
    marko = make_user(session, "marko@example.com")
    accounts = AccountService(session, ana.id)
    accounts.create(AccountIn(name="Main", account_type=AccountType.checking))

    with pytest.raises(DuplicateNameError):
        accounts.create(AccountIn(name="main", account_type=AccountType.cash))

    other = AccountService(session, marko.id).create(
        AccountIn(name="Main", account_type=AccountType.checking)
    )
    assert other.user_id == marko.id


def test_list_filters_and_count() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    main = accounts.create(AccountIn(name="Main", account_type=AccountType.checking))
    savings = accounts.create(
        AccountIn(
            name="Savings", account_type=AccountType.savings, currency=CurrencyCode.eur
        )
    )
    wallet = accounts.create(AccountIn(name="Wallet", account_type=AccountType.cash))
    accounts.deactivate(wallet.id)

    assert [a.id for a in accounts.list_all()] == [main.id, savings.id, wallet.id]
    assert [a.id for a in accounts.list_all(active_only=True)] == [main.id, savings.id]
    assert [a.id for a in accounts.by_type(AccountType.savings)] == [savings.id]
    assert accounts.by_type(AccountType.cash) == []
    assert [a.id for a in accounts.by_currency(CurrencyCode.eur)] == [savings.id]
    assert accounts.count() == 3


def test_update_changes_descriptive_fields_only() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    main = accounts.create(
        AccountIn(name="Main", account_type=AccountType.checking, balance=Decimal("10"))
    )
    accounts.create(AccountIn(name="Other", account_type=AccountType.checking))

    updated = accounts.update(
        main.id, AccountUpdateIn(name="Everyday", bank_name="Banca Intesa")
    )
    assert updated.name == "Everyday"
    assert updated.bank_name == "Banca Intesa"
    assert updated.balance_cents == 1_000

    with pytest.raises(DuplicateNameError):
        accounts.update(main.id, AccountUpdateIn(name="OTHER"))
    with pytest.raises(ValidationError):
        accounts.update(main.id, AccountUpdateIn(name="   "))
    with pytest.raises(pydantic.ValidationError):
        AccountUpdateIn(balance=Decimal("5"))


def test_set_balance_respects_account_type() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    main = accounts.create(AccountIn(name="Main", account_type=AccountType.checking))
    card = accounts.create(AccountIn(name="Card", account_type=AccountType.credit))

    assert accounts.set_balance(main.id, Decimal("99.99")).balance_cents == 9_999
    with pytest.raises(InvalidBalanceOperation):
        accounts.set_balance(main.id, Decimal("-0.01"))
    assert accounts.get(main.id).balance_cents == 9_999
    assert accounts.set_balance(card.id, Decimal("-250.00")).balance_cents == -25_000


def test_delete_deactivates_and_activate_checks_name_conflicts() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    old = accounts.create(AccountIn(name="Main", account_type=AccountType.checking))

    accounts.delete(old.id)
    assert accounts.get(old.id).is_active is False

    accounts.create(AccountIn(name="Main", account_type=AccountType.cash))
    with pytest.raises(DuplicateNameError):
        accounts.activate(old.id)

    renamed = accounts.update(old.id, AccountUpdateIn(name="Old main"))
    assert accounts.activate(renamed.id).is_active is True


def test_foreign_and_missing_accounts() -> None:
    session = make_session()
    ana = make_user(session)
    marko = make_user(session, "marko@example.com")
    account = AccountService(session, ana.id).create(
        AccountIn(name="Main", account_type=AccountType.checking)
    )
    theirs = AccountService(session, marko.id)

    with pytest.raises(AccessDeniedError):
        theirs.get(account.id)
    with pytest.raises(AccessDeniedError):
        theirs.set_balance(account.id, Decimal("1"))
    with pytest.raises(AccessDeniedError):
        theirs.deactivate(account.id)
    with pytest.raises(NotFoundError):
        theirs.get(account.id + 1)
    assert theirs.list_all() == []
    assert theirs.count() == 0
