import logging
import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging early
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

logger = logging.getLogger(__name__)

APP_NAME = "Shopify Draft Server API"
APP_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
PORT = int(os.getenv("PORT", "8080"))

# ── Shopify ───────────────────────────────────────────────────────
SHOPIFY_API_VERSION = "2025-07"
SHOPIFY_TIMEOUT_SEC = float(os.getenv("SHOPIFY_TIMEOUT_SEC", "10"))
USER_AGENT = f"Shopify-Draft-Server/{APP_VERSION}"


def _load_store_config() -> tuple[str, str]:
    """Return ``(shop_domain, access_token)`` from the environment.

    The prefixes ``SHOPIFY`` and ``SHOPIFY_ADMIN`` are checked in order. For
    each prefix we look for ``<prefix>_API_URL`` or ``<prefix>_STORE_DOMAIN``
    together with ``<prefix>_ACCESS_TOKEN`` or ``<prefix>_API_KEY``.
    """
    prefixes = [
        "SHOPIFY",
        "SHOPIFY_ADMIN",
    ]

    for prefix in prefixes:
        domain = os.getenv(f"{prefix}_API_URL") or os.getenv(f"{prefix}_STORE_DOMAIN")
        token = os.getenv(f"{prefix}_ACCESS_TOKEN") or os.getenv(f"{prefix}_API_KEY")
        if domain and token:
            domain = domain.replace("https://", "").replace("http://", "").rstrip("/")
            logger.info("Using Shopify prefix %s", prefix)
            return domain, token

    raise RuntimeError("Missing Shopify environment variables")


# ── API surface ───────────────────────────────────────────────────
API_SECRET = os.getenv("API_SECRET", "")
SHOPIFY_WEBHOOK_SECRET = os.getenv("SHOPIFY_WEBHOOK_SECRET", "")
PUBLIC_WEBHOOK_URL = os.getenv("PUBLIC_WEBHOOK_URL", "https://shopify-draft-server.onrender.com")
COPY_TO_ADDRESS = os.getenv("COPY_TO_ADDRESS", "")
REDIS_URL = os.getenv("REDIS_URL", "")

_DEFAULT_ORIGINS = ",".join([
    "https://ikyum.com",
    "https://www.ikyum.com",
    "https://www.zyö.com",
    "https://www.xn--zy-gka.com",
    "https://admin.shopify.com",
    "https://ikyum.myshopify.com",
    "http://localhost:3000",
])
_allowed_origins = os.getenv("ALLOWED_ORIGINS", _DEFAULT_ORIGINS)
ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins.split(",") if o.strip()]
ALLOWED_ORIGIN_PATTERNS = [
    r"\.myshopify\.com$",
    r"\.cdn\.shopify\.com$",
    r"\.shopifycloud\.com$",
]

# ── Idempotency ───────────────────────────────────────────────────
IDEMPOTENCY_TTL_SEC = int(os.getenv("IDEMPOTENCY_TTL_SEC", str(10 * 60)))
IDEMPOTENCY_SWEEP_SEC = int(os.getenv("IDEMPOTENCY_SWEEP_SEC", str(5 * 60)))

# ── Rate limiting: (times, seconds) per class ─────────────────────
RATE_LIMITS = {
    "global": (int(os.getenv("RATE_LIMIT_GLOBAL", "100")), 15 * 60),
    "api": (int(os.getenv("RATE_LIMIT_API", "50")), 10 * 60),
    "order": (int(os.getenv("RATE_LIMIT_ORDER", "10")), 10 * 60),
    "customer": (int(os.getenv("RATE_LIMIT_CUSTOMER", "20")), 10 * 60),
    "form": (int(os.getenv("RATE_LIMIT_FORM", "20")), 60),
}

# ── SMTP ──────────────────────────────────────────────────────────
SMTP_HOST = os.getenv("IKYUM_SMTP_HOST", "mail.infomaniak.com")
SMTP_PORT = int(os.getenv("IKYUM_SMTP_PORT", "587"))
SMTP_USER = os.getenv("IKYUM_SMTP_USER", "")
SMTP_PASS = os.getenv("IKYUM_SMTP_PASS", "")
SMTP_FROM = os.getenv("IKYUM_SMTP_FROM", "") or SMTP_USER
BRAND = os.getenv("IKYUM_BRAND", "IKYUM")
ADMIN_RECIPIENTS = os.getenv("IKYUM_ADMIN_RECIPIENTS", "") or COPY_TO_ADDRESS
