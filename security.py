from functools import lru_cache
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def create_access_token(user_id: int, email: str) -> str:
    serializer = _serializer()
    return serializer.dumps({"sub": user_id, "email": email})


def read_access_token(token: str) -> Optional[int]:
    """Return the user id carried by a valid, unexpired token, else None."""
    settings = get_settings()
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=settings.token_max_age_secs)
    except BadSignature:
        return None

    user_id = data.get("sub") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id


def hash_password(password: str) -> str:
    settings = get_settings()
    salt = bcrypt.gensalt(rounds=settings.password_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("dummy-password-for-timing")


def burn_password_check(password: str) -> None:
    """Spend the same bcrypt work as a real check when no user matched."""
    verify_password(password, _dummy_hash())
