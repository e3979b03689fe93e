from typing import Optional

from fastapi import Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import AuthenticationError


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="identity-token")


def issue_identity_token(user_id: str) -> str:
    return _serializer().dumps({"u": user_id})


def resolve_user_id(token: str, max_age_secs: Optional[int] = None) -> Optional[str]:
    if max_age_secs is None:
        max_age_secs = get_settings().auth_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except SignatureExpired:
        return None
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id


def current_user_id(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("missing bearer token")
    user_id = resolve_user_id(token.strip())
    if user_id is None:
        raise AuthenticationError("invalid identity token")
    return user_id
