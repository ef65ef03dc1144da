import base64
import hashlib
import hmac
import logging
import re
from typing import Any, Optional
from urllib.parse import urlparse

from fastapi import Header, HTTPException, Query, Request, Response
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter

from . import config
from .errors import DraftServerError
from .idempotency import validate_key

logger = logging.getLogger(__name__)


class AuthError(DraftServerError):
    status_code = 401
    default_message = "API key required"


class ForbiddenError(DraftServerError):
    status_code = 403
    default_message = "Forbidden"


# ── API key ───────────────────────────────────────────────────────
def _presented_key(header_key: Optional[str], query_key: Optional[str]) -> Optional[str]:
    return header_key or query_key or None


def is_valid_api_key(presented: Optional[str]) -> bool:
    expected = config.API_SECRET
    return bool(presented and expected and hmac.compare_digest(presented.encode(), expected.encode()))


async def require_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-KEY"),
    key: Optional[str] = Query(None),
) -> None:
    presented = _presented_key(x_api_key, key)
    if not presented:
        raise AuthError(detail="Missing X-API-KEY header or key query parameter")
    if not config.API_SECRET:
        logger.error("API_SECRET environment variable not configured")
        raise DraftServerError(
            "Server configuration error", detail="API authentication not properly configured", status_code=500
        )
    if not is_valid_api_key(presented):
        raise ForbiddenError("Invalid API key", detail="The provided API key is not valid")


async def optional_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-KEY"),
    key: Optional[str] = Query(None),
) -> bool:
    return is_valid_api_key(_presented_key(x_api_key, key))


# ── Shopify webhook HMAC ──────────────────────────────────────────
def compute_webhook_hmac(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


async def verify_shopify_webhook(request: Request) -> None:
    secret = config.SHOPIFY_WEBHOOK_SECRET
    if not secret:
        logger.warning("SHOPIFY_WEBHOOK_SECRET not configured - skipping HMAC verification")
        return
    presented = request.headers.get("X-Shopify-Hmac-Sha256")
    if not presented:
        raise AuthError("Missing webhook signature", detail="X-Shopify-Hmac-Sha256 header required")
    expected = compute_webhook_hmac(await request.body(), secret)
    if not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning("Invalid webhook signature from %s", request.headers.get("X-Shopify-Shop-Domain"))
        raise ForbiddenError("Invalid webhook signature", detail="HMAC verification failed")


# ── Idempotency-Key header ────────────────────────────────────────
async def idempotency_key(
    key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Optional[str]:
    return validate_key(key)


# ── Origin allow-list ─────────────────────────────────────────────
def is_allowed_origin(origin: Optional[str]) -> bool:
    if not origin:
        return True
    if origin in config.ALLOWED_ORIGINS:
        return True
    host = urlparse(origin).hostname or ""
    return any(re.search(p, host) for p in config.ALLOWED_ORIGIN_PATTERNS)


async def validate_origin(origin: Optional[str] = Header(None)) -> None:
    if not is_allowed_origin(origin):
        logger.warning("Blocked request from origin %s", origin)
        raise ForbiddenError("Origin not allowed", detail=origin)


# ── Honeypot / sanitising ─────────────────────────────────────────
def honeypot_triggered(body: Any, field: str = "hp") -> bool:
    if not isinstance(body, dict):
        return False
    value = body.get(field)
    return value is not None and str(value).strip() != ""


_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SCRIPT_SCHEMES = re.compile(r"(javascript|data|vbscript):", re.IGNORECASE)


def sanitize(value: Any) -> Any:
    """Trim strings, drop control characters and script URL schemes, recursively."""
    if isinstance(value, str):
        return _SCRIPT_SCHEMES.sub("", _CONTROL_CHARS.sub("", value)).strip()
    if isinstance(value, dict):
        return {k: sanitize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize(v) for v in value]
    return value


_SUSPICIOUS = [
    re.compile(r"\.\./"),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"union.*select", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"onload=", re.IGNORECASE),
    re.compile(r"onerror=", re.IGNORECASE),
]


def is_suspicious(*parts: str) -> bool:
    return any(p.search(s or "") for p in _SUSPICIOUS for s in parts)


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


# ── Rate limits ───────────────────────────────────────────────────
def optional_rate_limit(name: str):
    """Rate-limit dependency for one class; no-op without Redis or with a valid API key."""
    times, seconds = config.RATE_LIMITS[name]

    async def _limit(request: Request, response: Response):
        if not FastAPILimiter.redis:
            return
        if is_valid_api_key(_presented_key(request.headers.get("X-API-KEY"), request.query_params.get("key"))):
            return
        try:
            limiter = RateLimiter(times=times, seconds=seconds)
            return await limiter(request, response)
        except HTTPException:
            raise
        except Exception as exc:
            logger.warning("rate limiter %s unavailable: %s", name, exc)
            return

    _limit.__name__ = f"_optional_rate_limit_{name}"
    return _limit


_optional_rate_limit_global = optional_rate_limit("global")
_optional_rate_limit_api = optional_rate_limit("api")
_optional_rate_limit_order = optional_rate_limit("order")
_optional_rate_limit_customer = optional_rate_limit("customer")
_optional_rate_limit_form = optional_rate_limit("form")
