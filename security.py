from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import Settings, get_settings


def _serializer(settings: Optional[Settings] = None) -> URLSafeTimedSerializer:
    settings = settings or get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def issue_access_token(user_id: int, settings: Optional[Settings] = None) -> str:
    return _serializer(settings).dumps({"u": user_id})


def read_access_token(token: str, settings: Optional[Settings] = None) -> Optional[int]:
    """Return the user id carried by ``token``, or None when it is invalid or expired."""
    settings = settings or get_settings()
    try:
        data = _serializer(settings).loads(
            token, max_age=settings.token_max_age_hours * 3600
        )
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
