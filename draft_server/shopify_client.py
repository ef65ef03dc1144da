import logging
import re
from typing import Any, Optional

import httpx

from . import config
from .errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

_SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$")


def is_valid_shop_domain(shop_domain: str) -> bool:
    return bool(_SHOP_DOMAIN_RE.match(shop_domain or ""))


class ShopifyClient:
    """Thin async wrapper around the Shopify Admin REST API.

    Every call carries the ``X-Shopify-Access-Token`` header and a finite
    timeout. Any non-2xx answer is raised as :class:`UpstreamError` with the
    upstream status code preserved; transport failures become a 502.

    Credentials are resolved lazily from the environment so the app can boot
    (and answer ``/health``) before Shopify is configured.
    """

    def __init__(
        self,
        shop_domain: Optional[str] = None,
        access_token: Optional[str] = None,
        api_version: str = config.SHOPIFY_API_VERSION,
        timeout: float = config.SHOPIFY_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ── configuration ─────────────────────────────────────────────
    @property
    def configured(self) -> bool:
        if self.shop_domain and self.access_token:
            return True
        try:
            self.shop_domain, self.access_token = config._load_store_config()
        except RuntimeError:
            return False
        return True

    def admin_api_base(self) -> str:
        """Return the Admin API base URL or raise 503 if not configured."""
        if not self.configured:
            raise ConfigurationError("Shopify not configured")
        return f"https://{self.shop_domain}/admin/api/{self.api_version}"

    def _headers(self) -> dict:
        return {
            "X-Shopify-Access-Token": self.access_token or "",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": config.USER_AGENT,
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # ── HTTP verbs ────────────────────────────────────────────────
    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> dict:
        base = self.admin_api_base()
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        url = f"{base}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            resp = await self._get_client().request(
                method, url, params=params or None, json=json, headers=self._headers()
            )
        except httpx.RequestError as exc:
            logger.warning("Shopify %s %s request failed: %s", method, path, exc)
            raise UpstreamError("Shopify unreachable", detail=str(exc), status_code=502)

        if resp.status_code >= 400:
            try:
                text = (resp.text or "").strip()[:300]
            except Exception:
                text = ""
            if resp.status_code == 403:
                logger.error("Shopify API 403 on %s %s. Token lacks scope or app not installed.", method, path)
            raise UpstreamError(
                f"Shopify API error ({resp.status_code})",
                detail=text or "Shopify error",
                status_code=resp.status_code,
            )

        if not resp.content:
            return {"success": True} if method == "DELETE" else {}
        content_type = resp.headers.get("content-type", "")
        if "application/json" not in content_type:
            return {"success": True}
        return resp.json() or {}

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, data: Any = None, params: Optional[dict] = None) -> dict:
        return await self.request("POST", endpoint, params=params, json=data)

    async def put(self, endpoint: str, data: Any = None, params: Optional[dict] = None) -> dict:
        return await self.request("PUT", endpoint, params=params, json=data)

    async def delete(self, endpoint: str) -> dict:
        return await self.request("DELETE", endpoint)

    async def get_shop_info(self) -> dict:
        return (await self.get("/shop.json")).get("shop") or {}
