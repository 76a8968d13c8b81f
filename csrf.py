from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings

TOKEN_MAX_AGE_SECS = 2 * 3600


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().csrf_secret, salt="finance-csrf")


def generate_csrf_token(user_id: int = 1) -> str:
    return _serializer().dumps({"u": user_id})


def validate_csrf_token(
    token: str, user_id: int = 1, max_age: int = TOKEN_MAX_AGE_SECS
) -> bool:
    """Accept a token signed for ``user_id`` within the last ``max_age`` seconds."""
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        return False
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("u") == user_id
