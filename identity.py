from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import AuthenticationError


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.identity_secret, salt="ledger-identity")


def issue_identity_token(user_id: str) -> str:
    return _serializer().dumps({"u": user_id})


def resolve_identity(token: str, max_age_hours: int = 24) -> str:
    """Turn a signed identity token into the user id every core call expects."""
    if not token:
        raise AuthenticationError("Missing identity token")
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except SignatureExpired as exc:
        raise AuthenticationError("Identity token expired") from exc
    except BadSignature as exc:
        raise AuthenticationError("Invalid identity token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, str) or not user_id:
        raise AuthenticationError("Invalid identity token")
    return user_id
