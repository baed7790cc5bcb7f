from __future__ import annotations

import hmac
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from horarios.errors import ApiError
from horarios.settings import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_PERMISSION_KEYS: tuple[str, ...] = (
    "shifts",
    "schedule",
    "attendance",
    "absence_notes",
    "audit",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoginThrottle:
    """Sliding-window counter of failed logins per client address."""

    def __init__(self, *, max_attempts: int = 10, window: timedelta = timedelta(minutes=10)) -> None:
        self.max_attempts = max_attempts
        self.window = window
        self._lock = threading.Lock()
        self._failures: dict[str, deque[datetime]] = {}

    def _prune(self, ip: str, now: datetime) -> deque[datetime]:
        failures = self._failures.setdefault(ip, deque())
        while failures and failures[0] < now - self.window:
            failures.popleft()
        if not failures:
            self._failures.pop(ip, None)
        return failures

    def ensure_allowed(self, ip: str) -> None:
        with self._lock:
            if len(self._prune(ip, _utcnow())) >= self.max_attempts:
                raise ApiError(
                    status_code=429,
                    code="TOO_MANY_ATTEMPTS",
                    message="Too many failed login attempts. Please try again later.",
                )

    def register_failure(self, ip: str) -> None:
        now = _utcnow()
        with self._lock:
            self._prune(ip, now)
            self._failures.setdefault(ip, deque()).append(now)

    def register_success(self, ip: str) -> None:
        with self._lock:
            self._failures.pop(ip, None)


login_throttle = LoginThrottle()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        return False


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def verify_admin_credentials(username: str, password: str) -> bool:
    settings = get_settings()
    env_username = _strip_quotes((settings.admin_user or "").strip())
    env_pass_hash = _strip_quotes((settings.admin_pass_hash or "").strip())
    if not env_pass_hash or not hmac.compare_digest(username, env_username):
        return False
    return verify_password(password, env_pass_hash)


def full_permissions() -> dict[str, dict[str, bool]]:
    return {key: {"read": True, "write": True} for key in ADMIN_PERMISSION_KEYS}


def normalize_permissions(raw: Mapping[str, Any] | None) -> dict[str, dict[str, bool]]:
    """Coerce a claims permission map to ``{key: {"read", "write"}}``; write implies read."""
    normalized = {key: {"read": False, "write": False} for key in ADMIN_PERMISSION_KEYS}
    if not isinstance(raw, Mapping):
        return normalized

    for key, value in raw.items():
        if key not in normalized:
            continue
        if isinstance(value, Mapping):
            write = bool(value.get("write"))
            read = write or bool(value.get("read"))
        else:
            read = write = bool(value)
        normalized[key] = {"read": read, "write": write}
    return normalized


def has_permission(claims: Mapping[str, Any], permission: str, *, write: bool = False) -> bool:
    if permission not in ADMIN_PERMISSION_KEYS:
        return False
    if bool(claims.get("is_super_admin")):
        return True
    username = str(claims.get("username") or claims.get("sub") or "")
    if username and username == get_settings().admin_user:
        return True

    granted = normalize_permissions(claims.get("permissions"))[permission]
    return granted["write"] if write else granted["read"]


def create_access_token(
    *,
    sub: str,
    username: str,
    is_super_admin: bool = False,
    permissions: Mapping[str, Any] | None = None,
) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    expires_in = settings.access_token_minutes * 60
    claims = {
        "sub": sub,
        "username": username,
        "role": "admin",
        "is_super_admin": is_super_admin,
        "permissions": normalize_permissions(permissions),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, expires_in, claims


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access" or not payload.get("sub"):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.")
    if payload.get("role") != "admin":
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return payload


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    request.state.actor = "admin"
    request.state.actor_id = str(payload.get("username") or payload.get("sub"))
    return payload


def require_admin_permission(permission: str, *, write: bool = False) -> Callable[..., dict[str, Any]]:
    if permission not in ADMIN_PERMISSION_KEYS:
        raise ValueError(f"Unknown admin permission: {permission}")

    def _dependency(claims: dict[str, Any] = Depends(require_admin)) -> dict[str, Any]:
        if not has_permission(claims, permission, write=write):
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
        return claims

    return _dependency


def actor_id_from_claims(claims: Mapping[str, Any]) -> str:
    return str(claims.get("username") or claims.get("sub") or "admin")
