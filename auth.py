from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="api-token")


def issue_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def user_id_from_token(token: str, max_age_secs: Optional[int] = None) -> Optional[int]:
    """Owner id carried by a signed token, or ``None`` when it does not verify."""
    if max_age_secs is None:
        max_age_secs = get_settings().token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id <= 0:
        return None
    return user_id
