import asyncio
import logging
import sys
from typing import Optional

from .shopify_client import ShopifyClient
from .webhooks import WebhookRegistrar, default_webhooks

logger = logging.getLogger(__name__)


async def register_webhooks(
    base_url: Optional[str] = None, client: Optional[ShopifyClient] = None, verify: bool = False
) -> bool:
    """Ensure the customer create/update webhooks point at this server.

    Returns ``True`` when every subscription ended up created, updated or
    already present.
    """
    client = client or ShopifyClient()
    registrar = WebhookRegistrar(client)
    try:
        results = await registrar.register_defaults(base_url)
        if verify:
            check = await registrar.verify_endpoint(default_webhooks(base_url)[0].address)
            if check["accessible"]:
                logger.info(check["message"])
            else:
                logger.warning(check["message"])
        for result in results:
            if result["success"]:
                logger.info("%s: %s", result["action"], result["message"])
            else:
                logger.error("failed %s -> %s: %s", result["topic"], result["address"], result["error"])
        stats = await registrar.stats()
        logger.info(
            "Shop has %d webhook(s) across %d endpoint(s)", stats["total_webhooks"], stats["unique_endpoints"]
        )
        return all(r["success"] for r in results)
    finally:
        await client.aclose()


def main() -> None:
    ok = asyncio.run(register_webhooks(sys.argv[1] if len(sys.argv) > 1 else None, verify=True))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
