from typing import Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import AuthError


def _serializer(secret_key: Optional[str] = None) -> URLSafeTimedSerializer:
    secret = secret_key or get_settings().secret_key
    return URLSafeTimedSerializer(secret, salt="auth-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def generate_token(user_id: int, *, secret_key: Optional[str] = None) -> str:
    return _serializer(secret_key).dumps({"u": user_id})


def user_id_from_token(
    token: str,
    *,
    secret_key: Optional[str] = None,
    max_age_hours: Optional[int] = None,
) -> int:
    if max_age_hours is None:
        max_age_hours = get_settings().token_max_age_hours
    try:
        data = _serializer(secret_key).loads(token, max_age=max_age_hours * 3600)
    except SignatureExpired as exc:
        raise AuthError("token expired") from exc
    except BadSignature as exc:
        raise AuthError("invalid or expired token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise AuthError("invalid or expired token")
    return user_id


def bearer_token(header: Optional[str]) -> str:
    if not header:
        raise AuthError("missing Authorization header")
    parts = header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError("invalid Authorization header format")
    return parts[1].strip()
