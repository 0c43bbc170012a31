import base64
import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)

DEFAULT_AUTH_SECRET = "dev-insecure-secret-change-me"
DEFAULT_LOGIN_SECRET = "slotbook-dev"


def _parse_positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


TOKEN_TTL_HOURS = _parse_positive_int_env("AUTH_TOKEN_TTL_HOURS", 24)
_AUTH_SECRET = os.getenv("AUTH_SECRET", DEFAULT_AUTH_SECRET)
LOGIN_SECRET = os.getenv("SLOTBOOK_LOGIN_SECRET", DEFAULT_LOGIN_SECRET)


def insecure_defaults_in_use() -> list[str]:
    """Name the auth settings still on their development defaults and warn about them."""
    names = []
    if _AUTH_SECRET == DEFAULT_AUTH_SECRET:
        names.append("AUTH_SECRET")
    if LOGIN_SECRET == DEFAULT_LOGIN_SECRET:
        names.append("SLOTBOOK_LOGIN_SECRET")
    if names:
        logger.warning(
            "Development auth defaults in use (%s): tokens are forgeable and any user id can log in",
            ", ".join(names),
        )
    return names


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def create_access_token(user_id: str) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{int(expiry.timestamp())}".encode("utf-8")
    payload_part = _b64url(payload)
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[str]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        user_id, expiry_ts = payload.decode("utf-8").rsplit("|", 1)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        return user_id or None
    except (ValueError, UnicodeDecodeError):
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_caller(authorization: Optional[str]) -> Optional[str]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> str:
    user_id = resolve_caller(authorization)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return user_id
