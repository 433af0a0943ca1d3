from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def _anonymous() -> AuthUser:
    return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else ""


def _decode(token: str) -> dict[str, Any] | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return _anonymous()

    payload = _decode(token)
    if payload is None:
        return _anonymous()

    subject = str(payload.get("sub", ANONYMOUS_SUBJECT))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
