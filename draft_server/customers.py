import asyncio
import logging
from typing import Any, Dict, List, Optional

from .customer_sync import CustomerSyncEngine
from .errors import NotFoundError, UpstreamError
from .models import METAFIELD_NAMESPACE, METAFIELD_TYPE, Customer
from .schemas import CreateCustomerRequest
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

LIST_FILTERS = (
    "limit",
    "since_id",
    "created_at_min",
    "created_at_max",
    "updated_at_min",
    "updated_at_max",
    "order",
    "fields",
)


class CustomerService:
    def __init__(self, client: ShopifyClient, sync: CustomerSyncEngine):
        self.client = client
        self.sync = sync

    async def get_customer(self, customer_id: int) -> Dict[str, Any]:
        try:
            data = await self.client.get(f"/customers/{customer_id}.json")
        except UpstreamError as exc:
            if exc.status_code == 404:
                raise NotFoundError(f"Customer {customer_id} not found")
            raise
        if not data.get("customer"):
            raise NotFoundError(f"Customer {customer_id} not found")
        return data["customer"]

    async def _label(self, customer_id: int) -> dict:
        try:
            customer = Customer.model_validate(await self.get_customer(customer_id))
        except Exception as exc:
            logger.warning("Failed to enrich customer %s: %s", customer_id, exc)
            return {"id": customer_id, "label": f"Client {customer_id}"}
        return {
            "id": customer.id,
            "label": customer.display_label(),
            "email": customer.email,
            "name": customer.full_name(),
            "company": customer.company_name(),
            "created_at": customer.created_at,
            "updated_at": customer.updated_at,
            "orders_count": customer.orders_count,
            "total_spent": customer.total_spent,
        }

    async def list_customers(self, **options) -> List[dict]:
        """List customers, each enriched with a display label from its full record."""
        params = {k: options.get(k) for k in LIST_FILTERS}
        params["limit"] = params["limit"] or 100
        params["order"] = params["order"] or "created_at"
        data = await self.client.get("/customers.json", params=params)
        if "customers" not in data:
            raise UpstreamError("No customers found in response")
        return list(await asyncio.gather(*(self._label(c["id"]) for c in data["customers"])))

    async def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self.client.get("/customers/search.json", params={"query": f"email:{email}"})
        except Exception as exc:
            logger.warning("Error searching for customer by email: %s", exc)
            return None
        customers = data.get("customers") or []
        return customers[0] if customers else None

    async def _create_metafields(self, customer_id: int, metafields: List[dict]) -> None:
        for mf in metafields:
            try:
                await self.client.post(
                    f"/customers/{customer_id}/metafields.json",
                    {
                        "metafield": {
                            "namespace": mf.get("namespace") or METAFIELD_NAMESPACE,
                            "key": mf["key"],
                            "type": mf.get("type") or METAFIELD_TYPE,
                            "value": mf["value"],
                        }
                    },
                )
            except Exception as exc:
                logger.warning("Failed to create metafield %s: %s", mf.get("key"), exc)

    async def set_default_address(self, customer_id: int, address_id: int) -> bool:
        try:
            await self.client.put(f"/customers/{customer_id}/addresses/{address_id}/default.json")
            return True
        except Exception as exc:
            logger.warning("Failed to set default address: %s", exc)
            return False

    async def create_customer(self, req: CreateCustomerRequest) -> dict:
        existing = await self.find_customer_by_email(req.email)
        if existing:
            return {
                "exists": True,
                "message": "Customer already exists",
                "id": existing.get("id"),
                "customer": existing,
            }

        address = req.default_address.model_dump(exclude_none=True)
        payload = {
            "customer": {
                "email": req.email,
                "first_name": req.first_name,
                "last_name": req.last_name,
                "phone": req.phone,
                "note": req.note,
                "tags": ",".join(req.tags),
                "addresses": [address],
                "verified_email": req.verified_email,
            }
        }
        data = await self.client.post("/customers.json", payload)
        customer = data.get("customer") or {}
        if not customer.get("id"):
            raise UpstreamError("Failed to create customer - no ID returned")

        metafields = [mf.model_dump(exclude_none=True) for mf in req.metafields]
        if address.get("company"):
            metafields.append({"key": "company_name", "value": address["company"]})
        if req.vat_number:
            metafields.append({"key": "vat_number", "value": req.vat_number})
        await self._create_metafields(customer["id"], metafields)

        addresses = customer.get("addresses") or []
        if addresses and addresses[0].get("id") and not addresses[0].get("default"):
            await self.set_default_address(customer["id"], addresses[0]["id"])

        logger.info("Created customer %s", customer["id"])
        return {"id": customer["id"], "customer": customer, "created": True}

    async def update_customer_company(self, customer_id: Any, company_name: str) -> dict:
        """Write ``company_name`` to the customer's address and metafield. Never raises."""
        if not company_name or not customer_id:
            return {"ok": False, "reason": "missing-data"}
        try:
            customer = Customer.model_validate(await self.get_customer(customer_id))
        except NotFoundError:
            return {"ok": False, "reason": "customer-not-found"}
        except Exception as exc:
            logger.warning("Error updating customer company: %s", exc)
            return {"ok": False, "reason": "update-failed"}
        address_updated = await self.sync.update_address_company(customer, company_name)
        metafield = await self.sync.upsert_metafield(customer.id, "company_name", company_name)
        return {"ok": True, "address_updated": address_updated, "metafield": bool(metafield)}
