import pydantic
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import Base
from schemas import LoginIn, RegisterIn
from security import (
    _serializer,
    create_access_token,
    hash_password,
    read_access_token,
    verify_password,
)
from services import AuthenticationError, AuthService, DuplicateNameError


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def register_in(**overrides) -> RegisterIn:
    data = {
        "email": "Ana@Example.com",
        "password": "Secret123!",
        "first_name": "Ana",
        "last_name": "Jovanović",
    }
    data.update(overrides)
    return RegisterIn(**data)


def test_register_hashes_password_and_issues_token() -> None:
    session = make_session()

    user, token = AuthService(session).register(register_in())

    assert user.email == "ana@example.com"
    assert user.full_name == "Ana Jovanović"
    assert user.password_hash != "Secret123!"
    assert verify_password("Secret123!", user.password_hash)
    assert read_access_token(token) == user.id


def test_register_rejects_duplicate_email() -> None:
    session = make_session()
    service = AuthService(session)
    service.register(register_in())

    with pytest.raises(DuplicateNameError):
        service.register(register_in(email="ANA@example.com"))


@pytest.mark.parametrize(
    "password",
    [
        "short1!",
        "alllowercase1!",
        "ALLUPPERCASE1!",
        "NoDigitsHere!",
        "NoSpecial123",
        "Aa1!" + "ж" * 40,
    ],
)
def test_password_policy(password: str) -> None:
    with pytest.raises(pydantic.ValidationError):
        register_in(password=password)


def test_login_updates_last_login() -> None:
    session = make_session()
    service = AuthService(session)
    registered, _ = service.register(register_in())
    assert registered.last_login is None

    user, token = service.authenticate(
        LoginIn(email="ana@example.com", password="Secret123!")
    )

    assert user.id == registered.id
    assert user.last_login is not None
    assert read_access_token(token) == user.id


@pytest.mark.parametrize(
    "email,password",
    [
        ("ana@example.com", "Wrong123!"),
        ("nobody@example.com", "Secret123!"),
    ],
)
def test_login_failures_share_one_message(email: str, password: str) -> None:
    session = make_session()
    service = AuthService(session)
    service.register(register_in())

    with pytest.raises(AuthenticationError, match="Invalid credentials"):
        service.authenticate(LoginIn(email=email, password=password))


def test_inactive_user_cannot_log_in_or_resolve() -> None:
    session = make_session()
    service = AuthService(session)
    user, _ = service.register(register_in())
    user.is_active = False
    session.commit()

    with pytest.raises(AuthenticationError):
        service.authenticate(LoginIn(email="ana@example.com", password="Secret123!"))
    assert service.get_active_user(user.id) is None
    assert service.get_active_user(9999) is None


def test_tokens_reject_tampering_and_expiry(monkeypatch) -> None:
    token = create_access_token(7, "ana@example.com")

    assert read_access_token(token) == 7
    assert read_access_token(token + "x") is None
    assert read_access_token("not-a-token") is None
    assert read_access_token(_serializer().dumps({"sub": "7"})) is None

    monkeypatch.setattr(get_settings(), "token_max_age_secs", -1)
    assert read_access_token(token) is None


def test_verify_password_handles_garbage_hash() -> None:
    assert verify_password("Secret123!", "not-a-bcrypt-hash") is False
    assert verify_password("Secret123!", hash_password("Other123!")) is False


def test_unset_token_secret_is_random_not_a_fixed_default(monkeypatch) -> None:
    monkeypatch.delenv("FINANCE_TOKEN_SECRET", raising=False)

    first = get_settings.__wrapped__()
    second = get_settings.__wrapped__()

    assert len(first.token_secret) >= 32
    assert first.token_secret != second.token_secret
