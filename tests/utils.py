import itertools
import json
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from draft_server.shopify_client import ShopifyClient

SHOP = "test-shop.myshopify.com"


class FakeShop:
    """In-memory stand-in for the Shopify Admin REST API.

    Every request is recorded in ``calls`` as ``(method, path, json_body)``
    with the ``/admin/api/<version>`` prefix stripped.
    """

    def __init__(self):
        self._ids = itertools.count(1000)
        self.customers: Dict[int, dict] = {}
        self.metafields: Dict[int, dict] = {}
        self.drafts: Dict[int, dict] = {}
        self.orders: Dict[int, dict] = {}
        self.webhooks: Dict[int, dict] = {}
        self.receipts: List[Tuple[int, dict]] = []
        self.calls: List[Tuple[str, str, Any]] = []
        self.failures: List[Tuple[str, str, int]] = []
        # "order_id" | "nested" | "none"
        self.completion_shape = "order_id"

    # ── helpers for tests ────────────────────────────────────────
    def next_id(self) -> int:
        return next(self._ids)

    def add_customer(self, customer_id: Optional[int] = None, **fields) -> dict:
        cid = customer_id or self.next_id()
        customer = {
            "id": cid,
            "email": fields.pop("email", f"c{cid}@example.com"),
            "first_name": fields.pop("first_name", "Ada"),
            "last_name": fields.pop("last_name", "Lovelace"),
            "note": fields.pop("note", ""),
            "tags": fields.pop("tags", ""),
            "addresses": [],
            "default_address": None,
        }
        for addr in fields.pop("addresses", []):
            addr = {"id": self.next_id(), "customer_id": cid, "default": False, **addr}
            customer["addresses"].append(addr)
        if customer["addresses"]:
            customer["addresses"][0]["default"] = True
            customer["default_address"] = customer["addresses"][0]
        customer.update(fields)
        self.customers[cid] = customer
        return customer

    def add_metafield(self, customer_id: int, key: str, value: str, namespace: str = "custom") -> dict:
        mf = {
            "id": self.next_id(),
            "owner_id": customer_id,
            "namespace": namespace,
            "key": key,
            "value": value,
            "type": "single_line_text_field",
        }
        self.metafields[mf["id"]] = mf
        return mf

    def add_draft(self, draft_id: Optional[int] = None, **fields) -> dict:
        did = draft_id or self.next_id()
        draft = {
            "id": did,
            "name": f"#D{did}",
            "status": "open",
            "invoice_url": f"https://{SHOP}/invoices/{did}",
            "line_items": [{"title": "Lens", "quantity": 1, "price": "19.99"}],
            "currency": "USD",
            "total_price": "19.99",
            "order_id": None,
        }
        draft.update(fields)
        self.drafts[did] = draft
        return draft

    def add_order(self, order_id: Optional[int] = None, **fields) -> dict:
        oid = order_id or self.next_id()
        order = {"id": oid, "name": f"#{oid}", "email": "buyer@example.com", "line_items": []}
        order.update(fields)
        self.orders[oid] = order
        return order

    def fail(self, method: str, pattern: str, status: int = 500) -> None:
        self.failures.append((method, pattern, status))

    def customer_metafields(self, customer_id: int, key: Optional[str] = None) -> List[dict]:
        return [
            mf for mf in self.metafields.values()
            if mf["owner_id"] == customer_id and (key is None or mf["key"] == key)
        ]

    def writes(self) -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] != "GET"]

    # ── transport ────────────────────────────────────────────────
    def client(self, **kwargs) -> ShopifyClient:
        return ShopifyClient(SHOP, "shpat_test", transport=httpx.MockTransport(self.handle), **kwargs)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = re.sub(r"^/admin/api/[^/]+", "", request.url.path)
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))

        for method, pattern, status in self.failures:
            if method == request.method and re.fullmatch(pattern, path):
                return httpx.Response(status, json={"errors": "injected failure"})

        for method, pattern, handler in self._routes():
            if method != request.method:
                continue
            match = re.fullmatch(pattern, path)
            if match:
                return handler(request, body, *[int(g) for g in match.groups()])
        return httpx.Response(404, json={"errors": "Not Found"})

    def _routes(self):
        return [
            ("POST", r"/draft_orders\.json", self._create_draft),
            ("GET", r"/draft_orders\.json", self._list_drafts),
            ("GET", r"/draft_orders/(\d+)\.json", self._get_draft),
            ("PUT", r"/draft_orders/(\d+)\.json", self._update_draft),
            ("DELETE", r"/draft_orders/(\d+)\.json", self._delete_draft),
            ("PUT", r"/draft_orders/(\d+)/complete\.json", self._complete_draft),
            ("GET", r"/orders/(\d+)\.json", self._get_order),
            ("POST", r"/orders/(\d+)/send_receipt\.json", self._send_receipt),
            ("GET", r"/customers\.json", self._list_customers),
            ("GET", r"/customers/search\.json", self._search_customers),
            ("POST", r"/customers\.json", self._create_customer),
            ("GET", r"/customers/(\d+)\.json", self._get_customer),
            ("PUT", r"/customers/(\d+)\.json", self._update_customer),
            ("GET", r"/customers/(\d+)/metafields\.json", self._list_metafields),
            ("POST", r"/customers/(\d+)/metafields\.json", self._create_metafield),
            ("PUT", r"/metafields/(\d+)\.json", self._update_metafield),
            ("POST", r"/customers/(\d+)/addresses\.json", self._create_address),
            ("PUT", r"/customers/(\d+)/addresses/(\d+)\.json", self._update_address),
            ("PUT", r"/customers/(\d+)/addresses/(\d+)/default\.json", self._default_address),
            ("GET", r"/webhooks\.json", self._list_webhooks),
            ("POST", r"/webhooks\.json", self._create_webhook),
            ("PUT", r"/webhooks/(\d+)\.json", self._update_webhook),
            ("DELETE", r"/webhooks/(\d+)\.json", self._delete_webhook),
        ]

    @staticmethod
    def _not_found() -> httpx.Response:
        return httpx.Response(404, json={"errors": "Not Found"})

    # draft orders
    def _create_draft(self, request, body):
        data = body["draft_order"]
        draft = self.add_draft(
            line_items=data["line_items"],
            customer={"id": data["customer"]["id"]},
            currency=data.get("currency", "USD"),
            note=data.get("note"),
            tags=data.get("tags"),
        )
        return httpx.Response(201, json={"draft_order": draft})

    def _list_drafts(self, request, body):
        status = request.url.params.get("status")
        drafts = [d for d in self.drafts.values() if not status or d["status"] == status]
        return httpx.Response(200, json={"draft_orders": drafts})

    def _get_draft(self, request, body, did):
        if did not in self.drafts:
            return self._not_found()
        return httpx.Response(200, json={"draft_order": self.drafts[did]})

    def _update_draft(self, request, body, did):
        if did not in self.drafts:
            return self._not_found()
        self.drafts[did].update(body["draft_order"])
        return httpx.Response(200, json={"draft_order": self.drafts[did]})

    def _delete_draft(self, request, body, did):
        if self.drafts.pop(did, None) is None:
            return self._not_found()
        return httpx.Response(200, content=b"")

    def _complete_draft(self, request, body, did):
        draft = self.drafts.get(did)
        if draft is None:
            return self._not_found()
        order = self.add_order(email="buyer@example.com", line_items=draft["line_items"])
        draft.update(status="completed", completed_at="2025-01-01T00:00:00Z", order_id=order["id"])
        answer = dict(draft)
        if self.completion_shape == "nested":
            answer["order_id"] = None
            answer["order"] = {"id": order["id"]}
        elif self.completion_shape == "none":
            answer["order_id"] = None
        return httpx.Response(200, json={"draft_order": answer})

    def _get_order(self, request, body, oid):
        if oid not in self.orders:
            return self._not_found()
        return httpx.Response(200, json={"order": self.orders[oid]})

    def _send_receipt(self, request, body, oid):
        self.receipts.append((oid, body["email"]))
        return httpx.Response(201, json={"email": body["email"]})

    # customers
    def _list_customers(self, request, body):
        return httpx.Response(200, json={"customers": [{"id": c["id"]} for c in self.customers.values()]})

    def _search_customers(self, request, body):
        query = request.url.params.get("query", "")
        email = query.split("email:", 1)[-1]
        found = [c for c in self.customers.values() if c["email"] == email]
        return httpx.Response(200, json={"customers": found})

    def _create_customer(self, request, body):
        data = dict(body["customer"])
        addresses = data.pop("addresses", [])
        customer = self.add_customer(addresses=addresses, **data)
        for addr in customer["addresses"]:
            addr["default"] = False
        return httpx.Response(201, json={"customer": customer})

    def _get_customer(self, request, body, cid):
        if cid not in self.customers:
            return self._not_found()
        return httpx.Response(200, json={"customer": self.customers[cid]})

    def _update_customer(self, request, body, cid):
        if cid not in self.customers:
            return self._not_found()
        self.customers[cid].update(body["customer"])
        return httpx.Response(200, json={"customer": self.customers[cid]})

    def _list_metafields(self, request, body, cid):
        ns = request.url.params.get("namespace")
        found = [mf for mf in self.customer_metafields(cid) if not ns or mf["namespace"] == ns]
        return httpx.Response(200, json={"metafields": found})

    def _create_metafield(self, request, body, cid):
        data = body["metafield"]
        mf = self.add_metafield(cid, data["key"], data["value"], data.get("namespace", "custom"))
        return httpx.Response(201, json={"metafield": mf})

    def _update_metafield(self, request, body, mid):
        if mid not in self.metafields:
            return self._not_found()
        self.metafields[mid]["value"] = body["metafield"]["value"]
        return httpx.Response(200, json={"metafield": self.metafields[mid]})

    def _create_address(self, request, body, cid):
        customer = self.customers.get(cid)
        if customer is None:
            return self._not_found()
        addr = {"id": self.next_id(), "customer_id": cid, **body["address"]}
        customer["addresses"].append(addr)
        if addr.get("default"):
            customer["default_address"] = addr
        return httpx.Response(201, json={"customer_address": addr, "address": addr})

    def _update_address(self, request, body, cid, aid):
        customer = self.customers.get(cid)
        if customer is None:
            return self._not_found()
        for addr in customer["addresses"]:
            if addr["id"] == aid:
                addr.update(body["address"])
                return httpx.Response(200, json={"customer_address": addr})
        return self._not_found()

    def _default_address(self, request, body, cid, aid):
        customer = self.customers.get(cid)
        if customer is None:
            return self._not_found()
        for addr in customer["addresses"]:
            addr["default"] = addr["id"] == aid
            if addr["default"]:
                customer["default_address"] = addr
        return httpx.Response(200, json={"customer_address": customer["default_address"]})

    # webhooks
    def _list_webhooks(self, request, body):
        return httpx.Response(200, json={"webhooks": list(self.webhooks.values())})

    def _create_webhook(self, request, body):
        hook = {"id": self.next_id(), **body["webhook"]}
        self.webhooks[hook["id"]] = hook
        return httpx.Response(201, json={"webhook": hook})

    def _update_webhook(self, request, body, wid):
        if wid not in self.webhooks:
            return self._not_found()
        self.webhooks[wid].update({k: v for k, v in body["webhook"].items() if v is not None})
        return httpx.Response(200, json={"webhook": self.webhooks[wid]})

    def _delete_webhook(self, request, body, wid):
        if self.webhooks.pop(wid, None) is None:
            return self._not_found()
        return httpx.Response(200, content=b"")
