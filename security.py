import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="auth-token")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def decode_token(token: str, max_age_hours: int | None = None) -> int:
    """Return the user id carried by ``token``.

    Raises ValueError when the token is malformed, tampered with or expired.
    """
    settings = get_settings()
    hours = max_age_hours if max_age_hours is not None else settings.token_max_age_hours
    try:
        data = _serializer().loads(token, max_age=hours * 3600)
    except SignatureExpired as exc:
        raise ValueError("Token expired") from exc
    except BadSignature as exc:
        raise ValueError("Invalid token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise ValueError("Invalid token")
    return user_id
