import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

import httpx

from . import config
from .errors import UpstreamError, ValidationError
from .models import METAFIELD_NAMESPACE, ShopifyWebhook
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

DEFAULT_TOPICS = ("customers/create", "customers/update")
SYNC_PATH = "/sync-customer-data"


def default_webhooks(base_url: Optional[str] = None) -> List[ShopifyWebhook]:
    base = (base_url or config.PUBLIC_WEBHOOK_URL).rstrip("/")
    return [
        ShopifyWebhook(
            topic=topic,
            address=f"{base}{SYNC_PATH}",
            format="json",
            api_version=config.SHOPIFY_API_VERSION,
            metafield_namespaces=[METAFIELD_NAMESPACE],
        )
        for topic in DEFAULT_TOPICS
    ]


class WebhookRegistrar:
    """Ensures webhook subscriptions exist on the shop without creating duplicates."""

    def __init__(self, client: ShopifyClient, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = client
        self._transport = transport

    async def list(self) -> List[ShopifyWebhook]:
        data = await self.client.get("/webhooks.json")
        return [ShopifyWebhook.model_validate(w) for w in data.get("webhooks") or []]

    async def find(self, topic: str, address: str) -> Optional[ShopifyWebhook]:
        for hook in await self.list():
            if hook.topic == topic and hook.address == address:
                return hook
        return None

    async def create(self, hook: ShopifyWebhook) -> Dict[str, Any]:
        if not hook.topic:
            raise ValidationError("Webhook topic is required")
        if not hook.address:
            raise ValidationError("Webhook address is required")
        payload: Dict[str, Any] = {
            "topic": hook.topic,
            "address": hook.address,
            "format": hook.format,
            "api_version": hook.api_version or config.SHOPIFY_API_VERSION,
        }
        for key in ("fields", "metafield_namespaces", "private_metafield_namespaces"):
            if getattr(hook, key):
                payload[key] = getattr(hook, key)
        data = await self.client.post("/webhooks.json", {"webhook": payload})
        created = data.get("webhook") or {}
        if not created.get("id"):
            raise UpstreamError("Failed to create webhook - no ID returned")
        logger.info("Created webhook: %s -> %s", hook.topic, hook.address)
        return created

    async def update(self, webhook_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.client.put(f"/webhooks/{webhook_id}.json", {"webhook": {"id": webhook_id, **changes}})
        logger.info("Updated webhook %s", webhook_id)
        return data.get("webhook") or {}

    async def delete(self, webhook_id: int) -> dict:
        await self.client.delete(f"/webhooks/{webhook_id}.json")
        logger.info("Deleted webhook %s", webhook_id)
        return {"success": True, "webhook_id": webhook_id}

    @staticmethod
    def _needs_update(existing: ShopifyWebhook, wanted: ShopifyWebhook) -> bool:
        return (
            existing.format != wanted.format
            or (wanted.api_version and existing.api_version != wanted.api_version)
            or (wanted.fields and existing.fields != wanted.fields)
            or (wanted.metafield_namespaces and existing.metafield_namespaces != wanted.metafield_namespaces)
        )

    async def register(self, hook: ShopifyWebhook) -> dict:
        """Create, update or leave alone; ``action`` is ``created``, ``updated`` or ``exists``."""
        existing = await self.find(hook.topic, hook.address)
        if existing is None:
            return {
                "action": "created",
                "webhook": await self.create(hook),
                "message": f"Created new webhook for {hook.topic}",
            }
        if self._needs_update(existing, hook):
            changes = hook.model_dump(
                include={"format", "api_version", "fields", "metafield_namespaces", "private_metafield_namespaces"}
            )
            return {
                "action": "updated",
                "webhook": await self.update(existing.id, changes),
                "message": f"Updated existing webhook for {hook.topic}",
            }
        return {
            "action": "exists",
            "webhook": existing.model_dump(),
            "message": f"Webhook already exists for {hook.topic}",
        }

    async def register_many(self, hooks: Iterable[ShopifyWebhook]) -> List[dict]:
        results = []
        for hook in hooks:
            try:
                result = await self.register(hook)
                results.append({**result, "success": True})
            except Exception as exc:
                logger.error("Failed to register webhook %s: %s", hook.topic, exc)
                results.append({
                    "action": "failed",
                    "topic": hook.topic,
                    "address": hook.address,
                    "success": False,
                    "error": str(exc),
                })
        return results

    async def register_defaults(self, base_url: Optional[str] = None) -> List[dict]:
        hooks = default_webhooks(base_url)
        logger.info("Registering default webhooks at %s", hooks[0].address)
        return await self.register_many(hooks)

    async def verify_endpoint(self, url: str) -> dict:
        """GET ``url`` to check that Shopify will be able to reach it. Never raises."""
        try:
            async with httpx.AsyncClient(timeout=self.client.timeout, transport=self._transport) as http:
                resp = await http.get(url, headers={"User-Agent": "Shopify-Webhook-Verifier/1.0"})
        except httpx.HTTPError as exc:
            logger.warning("Webhook endpoint %s not reachable: %s", url, exc)
            return {
                "accessible": False,
                "url": url,
                "error": str(exc),
                "message": f"Endpoint is not accessible: {exc}",
            }
        return {
            "accessible": True,
            "status": resp.status_code,
            "url": url,
            "message": f"Endpoint is accessible (HTTP {resp.status_code})",
        }

    async def stats(self) -> dict:
        hooks = await self.list()
        return {
            "total_webhooks": len(hooks),
            "by_topic": dict(Counter(h.topic for h in hooks)),
            "by_api_version": dict(Counter(h.api_version for h in hooks)),
            "unique_endpoints": len({h.address for h in hooks}),
        }
