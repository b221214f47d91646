from datetime import timedelta
from functools import wraps

import jwt
from flask import current_app, g, request

from kudimarket.errors import AuthenticationError, AuthorizationError
from kudimarket.models import utcnow

ROLES = ("buyer", "seller", "delivery", "admin")
EXT_KEY = "kudimarket.tokens"


class TokenService:
    """Signs and reads the bearer tokens handed out at login."""

    def __init__(self, secret: str, algorithm: str = "HS256", expiry_hours: int = 168):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry = timedelta(hours=expiry_hours)

    @classmethod
    def from_config(cls, config) -> "TokenService":
        return cls(config["JWT_SECRET"], config.get("JWT_ALGO", "HS256"), config.get("JWT_EXPIRY_HOURS", 168))

    def issue(self, user_id: int, role: str, email: str | None = None) -> str:
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        now = utcnow()
        payload = {
            "sub": str(user_id),
            "role": role,
            "email": email,
            "iat": now,
            "exp": now + self.expiry,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> dict:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("token expired")
        except jwt.InvalidTokenError:
            raise AuthenticationError("invalid token")
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise AuthenticationError("invalid token")
        if payload.get("role") not in ROLES:
            raise AuthenticationError("invalid token")
        return {"id": uid, "role": payload["role"], "email": payload.get("email")}


def tokens() -> TokenService:
    return current_app.extensions[EXT_KEY]


def _bearer() -> str | None:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def current_principal() -> dict | None:
    return getattr(g, "principal", None)


def require_role(*roles):
    """Reject the request unless it carries a valid token for one of ``roles``."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            token = _bearer()
            if not token:
                raise AuthenticationError("missing token")
            principal = tokens().decode(token)
            if roles and principal["role"] not in roles:
                raise AuthorizationError("not allowed for role " + principal["role"])
            g.principal = principal
            return func(*args, **kwargs)
        return wrapper
    return decorator


def optional_auth(func):
    """Attach a principal when a token is sent; anonymous callers pass through."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        token = _bearer()
        g.principal = tokens().decode(token) if token else None
        return func(*args, **kwargs)
    return wrapper
