from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from clubcrm.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    """Identity carried by the bearer token.

    Role and branch are not trusted from the token; they are resolved from the
    user directory on every request.
    """

    sub: str
    email: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def decode_token(token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS_SUBJECT)
    subject = str(payload.get("sub") or ANONYMOUS_SUBJECT)
    email = payload.get("email")
    return AuthUser(sub=subject, email=str(email) if email else None)


def issue_token(sub: str, email: str | None = None) -> str:
    settings = get_settings()
    claims: dict[str, str] = {"sub": sub}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return AuthUser(sub=ANONYMOUS_SUBJECT)
    return decode_token(token)
