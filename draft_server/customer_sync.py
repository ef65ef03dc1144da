import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .models import (
    METAFIELD_NAMESPACE,
    METAFIELD_TYPE,
    Customer,
    CustomerAddress,
    Metafield,
    clean_string,
    first_non_empty,
    parse_note,
)
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

MAX_RECENT_HITS = 20
VAT_TAG_PREFIX = "TVA:"
SYNC_TRIGGER_FIELDS = ("company", "company_name", "address1", "vat_number")


class WebhookHitLog:
    """Bounded, newest-first record of recent webhook deliveries."""

    def __init__(self, maxlen: int = MAX_RECENT_HITS):
        self._hits: deque = deque(maxlen=maxlen)

    def record(self, payload: Optional[Mapping[str, Any]], headers: Mapping[str, str]) -> dict:
        hit = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "topic": headers.get("x-shopify-topic") or "(none)",
            "shop": headers.get("x-shopify-shop-domain") or "(none)",
            "hmac": "present" if headers.get("x-shopify-hmac-sha256") else "missing",
            "customer_id": (payload or {}).get("id"),
            "processed": False,
        }
        self._hits.appendleft(hit)
        return hit

    def recent(self) -> List[dict]:
        return list(self._hits)

    def __len__(self) -> int:
        return len(self._hits)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class CustomerSyncEngine:
    """Reconciles company and VAT data from a customer's note into structured fields.

    Every write step is isolated: one failing step is logged and the rest
    still run. :meth:`handle_webhook` never raises.
    """

    def __init__(self, client: ShopifyClient, hit_log: Optional[WebhookHitLog] = None):
        self.client = client
        self.hit_log = hit_log if hit_log is not None else WebhookHitLog()

    # ── metafields ───────────────────────────────────────────────
    async def get_metafields(self, customer_id: int, namespace: str = METAFIELD_NAMESPACE) -> List[Metafield]:
        try:
            data = await self.client.get(
                f"/customers/{customer_id}/metafields.json", params={"namespace": namespace}
            )
        except Exception as exc:
            logger.warning("Failed to fetch metafields for customer %s: %s", customer_id, exc)
            return []
        return [Metafield.model_validate(mf) for mf in data.get("metafields") or []]

    async def upsert_metafield(
        self,
        customer_id: int,
        key: str,
        value: str,
        namespace: str = METAFIELD_NAMESPACE,
        type: str = METAFIELD_TYPE,
    ) -> Optional[dict]:
        """Create the metafield, update it when the value differs, or leave it alone.

        Returns ``{"action": "created"|"updated"|"unchanged", "metafield": ...}``
        or ``None`` when the write failed.
        """
        try:
            existing = next(
                (mf for mf in await self.get_metafields(customer_id, namespace) if mf.key == key),
                None,
            )
            if existing is not None:
                if existing.text() == clean_string(value):
                    return {"action": "unchanged", "metafield": existing.model_dump()}
                data = await self.client.put(
                    f"/metafields/{existing.id}.json",
                    {"metafield": {"id": existing.id, "type": type, "value": value}},
                )
                return {"action": "updated", "metafield": data.get("metafield")}
            data = await self.client.post(
                f"/customers/{customer_id}/metafields.json",
                {"metafield": {"namespace": namespace, "key": key, "type": type, "value": value}},
            )
            return {"action": "created", "metafield": data.get("metafield")}
        except Exception as exc:
            logger.warning("Failed to upsert metafield %s for customer %s: %s", key, customer_id, exc)
            return None

    # ── address / tags ───────────────────────────────────────────
    async def update_address_company(self, customer: Customer, company: str) -> bool:
        """Set ``company`` on the default address, else the first one, else a new placeholder."""
        if not company:
            return False
        try:
            target = customer.default_address if customer.default_address and customer.default_address.id else None
            if target is None and customer.addresses:
                target = customer.addresses[0]
            if target is not None and target.id:
                address = target.model_dump(exclude_none=True)
                address["company"] = company
                await self.client.put(
                    f"/customers/{customer.id}/addresses/{target.id}.json", {"address": address}
                )
                target.company = company
                return True
            created = await self.client.post(
                f"/customers/{customer.id}/addresses.json",
                {
                    "address": {
                        "company": company,
                        "first_name": customer.first_name or "",
                        "last_name": customer.last_name or "",
                        "address1": "To complete",
                        "city": "To complete",
                        "zip": "0000",
                        "country": "Switzerland",
                        "default": True,
                    }
                },
            )
            customer.default_address = CustomerAddress.model_validate(created.get("address") or {"company": company})
            return True
        except Exception as exc:
            logger.warning("Failed to update address company for customer %s: %s", customer.id, exc)
            return False

    async def add_vat_tag(self, customer: Customer, vat_number: str) -> bool:
        # An existing TVA: tag is kept even when it names a different number.
        tags = customer.tag_list()
        if any(t.startswith(VAT_TAG_PREFIX) for t in tags):
            return True
        tags.append(f"{VAT_TAG_PREFIX}{vat_number}")
        try:
            await self.client.put(
                f"/customers/{customer.id}.json",
                {"customer": {"id": customer.id, "tags": ", ".join(tags)}},
            )
        except Exception as exc:
            logger.warning("Failed to add VAT tag to customer %s: %s", customer.id, exc)
            return False
        customer.tags = ", ".join(tags)
        return True

    # ── reconciliation ───────────────────────────────────────────
    async def sync_company(self, customer: Customer, note_data: Mapping[str, Any]) -> dict:
        try:
            from_note = first_non_empty(note_data.get("company"), note_data.get("company_name"))
            from_address = customer.address_company()

            metafields = {mf.key: mf for mf in await self.get_metafields(customer.id)}
            from_metafield = first_non_empty(
                *(metafields[k].value for k in ("company_name", "customer_name", "custome_name") if k in metafields)
            )

            company = first_non_empty(from_note, from_address, from_metafield)
            if not company:
                return {"updated": False, "reason": "no-company-data"}

            logger.info("Syncing company %r for customer %s", company, customer.id)

            address_updated = False
            if from_address != company:
                address_updated = await self.update_address_company(customer, company)

            writes = {}
            for key in ("company_name", "customer_name"):
                result = await self.upsert_metafield(customer.id, key, company)
                writes[key] = result["action"] if result else "failed"

            return {
                "updated": True,
                "company": company,
                "address_updated": address_updated,
                "metafields": writes,
                "sources": {
                    "note": bool(from_note),
                    "address": bool(from_address),
                    "metafield": bool(from_metafield),
                },
            }
        except Exception as exc:
            logger.error("Failed to sync company for customer %s: %s", customer.id, exc)
            return {"updated": False, "reason": "sync-error", "error": str(exc)}

    async def process_vat(self, customer: Customer, note_data: Mapping[str, Any]) -> dict:
        vat_number = clean_string(note_data.get("vat_number"))
        if not vat_number:
            return {"processed": False, "reason": "no-vat-number"}
        try:
            logger.info("Processing VAT number %r for customer %s", vat_number, customer.id)
            metafield = await self.upsert_metafield(customer.id, "vat_number", vat_number)
            tagged = await self.add_vat_tag(customer, vat_number)
            return {
                "processed": True,
                "vat_number": vat_number,
                "metafield": metafield["action"] if metafield else "failed",
                "tagged": tagged,
            }
        except Exception as exc:
            logger.error("Failed to process VAT for customer %s: %s", customer.id, exc)
            return {"processed": False, "reason": "processing-error", "error": str(exc)}

    async def handle_webhook(
        self, payload: Optional[Dict[str, Any]], headers: Optional[Mapping[str, str]] = None
    ) -> dict:
        start = time.perf_counter()
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        hit = self.hit_log.record(payload, headers)
        try:
            if not payload:
                return {
                    "success": True,
                    "message": "Webhook ping received",
                    "processing_time_ms": _elapsed_ms(start),
                }

            customer_id = payload.get("id")
            if not customer_id:
                raise ValueError("Missing customer ID in webhook payload")

            data = await self.client.get(f"/customers/{customer_id}.json")
            if not data.get("customer"):
                raise ValueError(f"Customer {customer_id} not found")
            customer = Customer.model_validate(data["customer"])
            note_data = parse_note(customer.note)

            if not any(note_data.get(k) for k in SYNC_TRIGGER_FIELDS):
                logger.info("No relevant data found in customer %s note", customer_id)
                hit["processed"] = True
                return {
                    "success": True,
                    "message": "No relevant data to process",
                    "processing_time_ms": _elapsed_ms(start),
                }

            results: Dict[str, Any] = {
                "customer_id": customer_id,
                "company_sync": None,
                "vat_processing": None,
            }
            if note_data.get("company") or note_data.get("company_name"):
                results["company_sync"] = await self.sync_company(customer, note_data)
            if note_data.get("vat_number"):
                results["vat_processing"] = await self.process_vat(customer, note_data)

            hit["processed"] = True
            elapsed = _elapsed_ms(start)
            logger.info("Customer data sync completed for customer %s in %dms", customer_id, elapsed)
            return {
                "success": True,
                "message": "Customer data synchronized",
                "results": results,
                "processing_time_ms": elapsed,
            }
        except Exception as exc:
            elapsed = _elapsed_ms(start)
            logger.error("Customer data sync failed after %dms: %s", elapsed, exc)
            return {
                "success": False,
                "message": "Customer data sync failed",
                "error": str(exc),
                "processing_time_ms": elapsed,
            }

    def health(self) -> dict:
        recent = self.hit_log.recent()
        return {
            "status": "healthy",
            "recent_hits": len(recent),
            "last_hit": recent[0]["timestamp"] if recent else None,
            "processing_enabled": True,
        }
