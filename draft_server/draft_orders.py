import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidStateError, NotFoundError, UpstreamError, ValidationError
from .models import DraftOrder
from .schemas import CreateDraftOrderRequest
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

LIST_FILTERS = (
    "limit",
    "since_id",
    "status",
    "created_at_min",
    "created_at_max",
    "updated_at_min",
    "updated_at_max",
)


def extract_order_id(payload: Optional[Dict[str, Any]]) -> Optional[int]:
    """Pull the linked order id out of a completion response.

    Shopify has answered with ``draft_order.order_id``, ``draft_order.order.id``
    and, on some versions, a top-level ``order``/``order_id``. All are accepted.
    """
    if not payload:
        return None
    draft = payload.get("draft_order")
    if isinstance(draft, dict):
        if draft.get("order_id"):
            return draft["order_id"]
        nested = draft.get("order")
        if isinstance(nested, dict) and nested.get("id"):
            return nested["id"]
    order = payload.get("order")
    if isinstance(order, dict) and order.get("id"):
        return order["id"]
    return payload.get("order_id") or None


def _build_line_item(item: Dict[str, Any]) -> Dict[str, Any]:
    line = {"title": item["title"], "quantity": item["quantity"]}
    if item.get("price") is not None:
        line["price"] = item["price"]
    for key in (
        "variant_id",
        "product_id",
        "sku",
        "variant_title",
        "vendor",
        "requires_shipping",
        "taxable",
        "gift_card",
        "fulfillment_service",
        "grams",
        "properties",
    ):
        if item.get(key) is not None:
            line[key] = item[key]
    return line


class DraftOrderCoordinator:
    """Drives a draft order from creation to a confirmed order.

    Create is not idempotent on its own; retry safety for it lives at the HTTP
    boundary. Complete is: re-completing a finished draft returns the order it
    is already linked to and never calls the completion endpoint again.
    """

    def __init__(self, client: ShopifyClient):
        self.client = client

    # ── create ───────────────────────────────────────────────────
    async def create(self, customer_id: Any, items: List[Dict[str, Any]], **options) -> dict:
        try:
            req = CreateDraftOrderRequest.model_validate(
                {"customer_id": customer_id, "items": items, **options}
            )
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(exc)

        draft: Dict[str, Any] = {
            "line_items": [_build_line_item(i.model_dump(exclude_none=True)) for i in req.items],
            "customer": {"id": req.customer_id},
            "use_customer_default_address": req.use_customer_default_address,
            "currency": req.currency,
            "taxes_included": req.taxes_included,
        }
        if req.note:
            draft["note"] = req.note
        if req.email:
            draft["email"] = req.email
        if req.shipping_address:
            draft["shipping_address"] = req.shipping_address.model_dump(exclude_none=True)
        if req.billing_address:
            draft["billing_address"] = req.billing_address.model_dump(exclude_none=True)
        if req.tags:
            draft["tags"] = req.tags
        if req.applied_discount:
            draft["applied_discount"] = req.applied_discount.model_dump(exclude_none=True)

        data = await self.client.post("/draft_orders.json", {"draft_order": draft})
        created = data.get("draft_order") or {}
        if not created.get("id"):
            raise UpstreamError("Failed to create draft order - no ID returned")

        record = DraftOrder.model_validate(created)
        logger.info("Created draft order %s for customer %s", record.id, req.customer_id)
        return {
            "draft_id": record.id,
            "invoice_url": record.invoice_url,
            "name": record.name,
            "status": record.status,
            "total_price": record.total_price,
            "subtotal_price": record.subtotal_price,
            "total_tax": record.total_tax,
            "currency": record.currency,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "line_items_count": len(record.line_items),
            "draft_order": created,
        }

    # ── read ─────────────────────────────────────────────────────
    async def _fetch_raw(self, draft_id: int) -> Dict[str, Any]:
        try:
            data = await self.client.get(f"/draft_orders/{draft_id}.json")
        except UpstreamError as exc:
            if exc.status_code == 404:
                raise NotFoundError(f"Draft order {draft_id} not found")
            raise
        draft = data.get("draft_order")
        if not draft:
            raise NotFoundError(f"Draft order {draft_id} not found")
        return draft

    async def get(self, draft_id: int) -> Dict[str, Any]:
        return await self._fetch_raw(draft_id)

    async def list(self, **options) -> List[Dict[str, Any]]:
        params = {k: options.get(k) for k in LIST_FILTERS}
        params["limit"] = params["limit"] or 50
        data = await self.client.get("/draft_orders.json", params=params)
        return data.get("draft_orders") or []

    async def _fetch_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        try:
            data = await self.client.get(f"/orders/{order_id}.json")
            return data.get("order")
        except Exception as exc:
            logger.warning("Failed to fetch order %s details: %s", order_id, exc)
            return None

    # ── complete ─────────────────────────────────────────────────
    async def complete(
        self,
        draft_id: int,
        invoice_url: Optional[str] = None,
        payment_pending: bool = False,
    ) -> dict:
        if not draft_id:
            raise ValidationError("Draft order ID is required")

        raw = await self._fetch_raw(draft_id)
        draft = DraftOrder.model_validate(raw)

        if draft.is_completed():
            order_id = draft.linked_order_id()
            if not order_id:
                raise UpstreamError("Draft order is marked as completed but has no order_id")
            logger.info("Draft order %s already completed as order %s", draft_id, order_id)
            return {
                "success": True,
                "already_completed": True,
                "order_id": order_id,
                "draft_id": draft_id,
                "completed_at": draft.completed_at,
                "invoice_url": draft.invoice_url,
                "order": await self._fetch_order(order_id),
            }

        if not draft.is_completable():
            raise InvalidStateError(f"Cannot complete draft order with status: {draft.status}")

        if invoice_url and draft.invoice_url != invoice_url:
            logger.warning("Invoice URL mismatch for draft order %s", draft_id)

        data = await self.client.put(
            f"/draft_orders/{draft_id}/complete.json", {"payment_pending": payment_pending}
        )
        completed = data.get("draft_order") or {}
        order_id = extract_order_id(data)
        if not order_id:
            raise UpstreamError("No order ID returned after completing draft order")

        logger.info("Completed draft order %s as order %s", draft_id, order_id)
        return {
            "success": True,
            "order_id": order_id,
            "draft_id": draft_id,
            "completed_at": completed.get("completed_at") or datetime.now(timezone.utc).isoformat(),
            "invoice_url": completed.get("invoice_url") or draft.invoice_url,
            "name": completed.get("name"),
            "total_price": completed.get("total_price"),
            "currency": completed.get("currency"),
            "order": await self._fetch_order(order_id),
            "draft_order": completed,
        }

    async def can_complete(self, draft_id: int) -> dict:
        """Read-only check of the Complete preconditions; only transport errors raise."""
        try:
            raw = await self._fetch_raw(draft_id)
        except NotFoundError:
            return {"can_complete": False, "reason": "Draft order not found"}
        draft = DraftOrder.model_validate(raw)
        if draft.is_completed():
            return {
                "can_complete": False,
                "reason": "Draft order already completed",
                "order_id": draft.linked_order_id(),
            }
        if not draft.is_completable():
            return {"can_complete": False, "reason": f"Invalid status: {draft.status}"}
        if not draft.line_items:
            return {"can_complete": False, "reason": "No line items in draft order"}
        return {"can_complete": True, "reason": "Draft order can be completed"}

    async def completion_status(self, draft_id: int) -> dict:
        draft = DraftOrder.model_validate(await self._fetch_raw(draft_id))
        status = {
            "draft_id": draft_id,
            "status": draft.status,
            "completed": draft.is_completed(),
            "completed_at": draft.completed_at,
            "order_id": draft.linked_order_id(),
            "invoice_url": draft.invoice_url,
            "total_price": draft.total_price,
            "currency": draft.currency,
        }
        if status["completed"] and status["order_id"]:
            status["order"] = await self._fetch_order(status["order_id"])
        return status

    # ── update / delete ──────────────────────────────────────────
    async def update(self, draft_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not changes:
            raise ValidationError("No fields to update")
        data = await self.client.put(f"/draft_orders/{draft_id}.json", {"draft_order": changes})
        return data.get("draft_order") or {}

    async def delete(self, draft_id: int) -> dict:
        # Deleting a completed draft is left to Shopify to refuse.
        await self.client.delete(f"/draft_orders/{draft_id}.json")
        return {"success": True, "draft_id": draft_id}
