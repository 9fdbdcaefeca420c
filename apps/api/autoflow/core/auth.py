from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from autoflow.core.config import get_settings
from autoflow.core.errors import UnauthorizedError


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)
    email: str | None = None


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip()
    return ""


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        raise UnauthorizedError("Authentication required")

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthorizedError("Invalid token") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise UnauthorizedError("Invalid token")
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    email = payload.get("email") if isinstance(payload.get("email"), str) else None
    request.state.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles], email=email)


def issue_token(sub: str, roles: list[str] | None = None, email: str | None = None) -> str:
    settings = get_settings()
    claims: dict[str, object] = {"sub": sub, "roles": roles or ["user"]}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
