import json

from draft_server import config
from draft_server.security import compute_webhook_hmac

DRAFT_BODY = {"customer_id": 42, "items": [{"title": "Lens", "quantity": 2, "price": "19.99"}]}


def test_health_is_public(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["version"] == config.APP_VERSION
    assert "processing_time_ms" in body
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_missing_api_key_is_401(client):
    resp = client.post("/create-draft-order", json=DRAFT_BODY)
    assert resp.status_code == 401
    assert resp.json()["message"] == "API key required"
    assert "processing_time_ms" in resp.json()


def test_wrong_api_key_is_403(client):
    resp = client.post("/create-draft-order", json=DRAFT_BODY, headers={"X-API-KEY": "nope"})
    assert resp.status_code == 403


def test_api_key_accepted_from_query(client, shop):
    resp = client.post("/create-draft-order?key=test-secret", json=DRAFT_BODY)
    assert resp.status_code == 200


def test_unconfigured_api_secret_is_500(client, monkeypatch):
    monkeypatch.setattr(config, "API_SECRET", "")
    resp = client.get("/draft-orders", headers={"X-API-KEY": "anything"})
    assert resp.status_code == 500
    assert resp.json()["message"] == "Server configuration error"


def test_create_draft_order(client, auth, shop):
    resp = client.post("/create-draft-order", json=DRAFT_BODY, headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["line_items_count"] == 1
    assert body["invoice_url"]
    assert "processing_time_ms" in body
    assert len(shop.drafts) == 1


def test_idempotent_replay_is_byte_identical(client, auth, shop):
    headers = {**auth, "Idempotency-Key": "retry-key-0001"}
    first = client.post("/create-draft-order", json=DRAFT_BODY, headers=headers)
    second = client.post("/create-draft-order", json=DRAFT_BODY, headers=headers)

    assert first.status_code == second.status_code == 200
    assert first.content == second.content
    assert len(shop.drafts) == 1
    assert len([c for c in shop.calls if c[:2] == ("POST", "/draft_orders.json")]) == 1


def test_different_keys_create_two_drafts(client, auth, shop):
    client.post("/create-draft-order", json=DRAFT_BODY, headers={**auth, "Idempotency-Key": "key-aaaa-1"})
    client.post("/create-draft-order", json=DRAFT_BODY, headers={**auth, "Idempotency-Key": "key-bbbb-2"})
    assert len(shop.drafts) == 2


def test_bad_idempotency_key_is_400(client, auth, shop):
    resp = client.post("/create-draft-order", json=DRAFT_BODY, headers={**auth, "Idempotency-Key": "bad key!"})
    assert resp.status_code == 400
    assert shop.calls == []


def test_validation_error_shape(client, auth, shop):
    resp = client.post("/create-draft-order", json={"customer_id": 42, "items": []}, headers=auth)
    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Validation failed"
    assert body["errors"][0]["field"] == "items"
    assert shop.calls == []


def test_complete_draft_order_already_completed(client, auth, shop):
    shop.add_order(99)
    shop.add_draft(42, status="completed", order_id=99)
    resp = client.post("/complete-draft-order", json={"draft_id": 42}, headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["already_completed"] is True
    assert body["order_id"] == 99


def test_complete_invalid_state_is_409(client, auth, shop):
    shop.add_draft(5, status="cancelled")
    resp = client.post("/complete-draft-order", json={"draft_id": 5}, headers=auth)
    assert resp.status_code == 409


def test_complete_missing_draft_is_404(client, auth):
    resp = client.post("/complete-draft-order", json={"draft_id": 5}, headers=auth)
    assert resp.status_code == 404


def test_upstream_status_is_preserved(client, auth, shop):
    shop.fail("POST", r"/draft_orders\.json", 422)
    resp = client.post("/create-draft-order", json=DRAFT_BODY, headers=auth)
    assert resp.status_code == 422
    assert resp.json()["message"] == "Shopify API error (422)"


def test_disallowed_origin_is_403(client, auth):
    resp = client.post("/create-draft-order", json=DRAFT_BODY, headers={**auth, "Origin": "https://evil.example"})
    assert resp.status_code == 403


def test_shopify_origin_pattern_allowed(client, auth):
    resp = client.post(
        "/create-draft-order", json=DRAFT_BODY, headers={**auth, "Origin": "https://my-store.myshopify.com"}
    )
    assert resp.status_code == 200


def test_draft_order_read_routes(client, auth, shop):
    shop.add_draft(11)
    assert client.get("/draft-orders", headers=auth).json()["count"] == 1
    assert client.get("/draft-orders/11", headers=auth).json()["draft_order"]["id"] == 11
    assert client.get("/draft-orders/11/can-complete", headers=auth).json()["can_complete"] is True
    assert client.get("/draft-orders/11/status", headers=auth).json()["completed"] is False
    assert client.put("/draft-orders/11", json={"note": "x"}, headers=auth).json()["draft_order"]["note"] == "x"
    assert client.delete("/draft-orders/11", headers=auth).json()["success"] is True


def test_send_order_email_completes_and_sends_receipt(client, auth, shop):
    customer = shop.add_customer(email="buyer@example.com")
    draft = shop.add_draft()
    resp = client.post(
        "/send-order-email",
        json={
            "customer_id": customer["id"],
            "draft_id": draft["id"],
            "invoice_url": draft["invoice_url"],
            "cc": ["staff@example.com"],
        },
        headers=auth,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["order_completed"] is True
    assert body["email_recipients"] == ["buyer@example.com", "copy@ikyum.test", "staff@example.com"]
    order_id, email = shop.receipts[0]
    assert order_id == body["order_id"]
    assert email["subject"] == "Your order confirmation"
    assert email["custom_message"] == "Thank you for your order!"


def test_send_order_confirmation_rejects_bad_cc(client, auth):
    resp = client.post(
        "/send-order-confirmation", json={"order_id": 1, "customer_id": 2, "cc": ["not-an-email"]}, headers=auth
    )
    assert resp.status_code == 400


def test_registration_honeypot_skips_everything(client, sender, shop):
    resp = client.post("/ikyum/regpro/submit", json={"hp": "i am a bot", "data": {}})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["skipped"] == "honeypot"
    assert sender.sent == []
    assert shop.calls == []


REGISTRATION = {
    "company_name": "Acme SA",
    "contact_person": "Jane Roe",
    "email": "jane@acme.test",
    "address1": "Rue 1",
    "city": "Geneva",
    "zip": "1200",
    "country": "Switzerland",
    "country_code": "CH",
    "terms_accepted": True,
}


def test_registration_sends_emails_and_syncs_company(client, sender, shop):
    customer = shop.add_customer(addresses=[{"address1": "Rue 1"}])
    resp = client.post("/ikyum/regpro/submit", json={"data": {**REGISTRATION, "customer_id": customer["id"]}})

    assert resp.status_code == 200
    body = resp.json()
    assert body == {
        "ok": True,
        "emails_sent": True,
        "admin_notification": True,
        "user_confirmation": True,
        "processing_time_ms": body["processing_time_ms"],
    }
    assert [m.to for m in sender.sent] == [["admin@ikyum.test"], ["jane@acme.test"]]
    assert shop.customers[customer["id"]]["default_address"]["company"] == "Acme SA"


def test_registration_validation_failure(client, sender):
    resp = client.post("/ikyum/regpro/submit", json={"data": {**REGISTRATION, "terms_accepted": False}})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation failed"
    assert sender.sent == []


def _signed(body: dict, secret: str):
    raw = json.dumps(body).encode()
    return raw, {"X-Shopify-Hmac-Sha256": compute_webhook_hmac(raw, secret), "Content-Type": "application/json"}


def test_webhook_hmac_missing_is_401(client, monkeypatch):
    monkeypatch.setattr(config, "SHOPIFY_WEBHOOK_SECRET", "whsec")
    resp = client.post("/sync-customer-data", json={})
    assert resp.status_code == 401


def test_webhook_hmac_mismatch_is_403(client, monkeypatch):
    monkeypatch.setattr(config, "SHOPIFY_WEBHOOK_SECRET", "whsec")
    raw, headers = _signed({"id": 1}, "other-secret")
    resp = client.post("/sync-customer-data", content=raw, headers=headers)
    assert resp.status_code == 403


def test_webhook_signed_ping(client, monkeypatch, shop):
    monkeypatch.setattr(config, "SHOPIFY_WEBHOOK_SECRET", "whsec")
    raw, headers = _signed({}, "whsec")
    resp = client.post("/sync-customer-data", content=raw, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["message"] == "Webhook ping received"
    assert shop.calls == []


def test_webhook_business_failure_is_still_200(client, shop):
    resp = client.post("/sync-customer-data", json={"id": 31337})
    assert resp.status_code == 200
    assert resp.json()["success"] is False


def test_webhook_hit_log_routes(client, auth):
    client.post("/sync-customer-data", json={}, headers={"X-Shopify-Shop-Domain": "s.myshopify.com"})
    public = client.get("/sync-customer-data/_last").json()
    assert public["count"] == 1
    assert "shop" not in public["hits"][0]
    private = client.get("/sync-customer-data/_last", headers=auth).json()
    assert private["hits"][0]["shop"] == "s.myshopify.com"
    assert client.get("/sync-customer-data/_ping").json()["recent_hits"] == 1


def test_register_webhooks_route(client, auth, shop):
    resp = client.post("/register-webhooks", json={"base_url": "https://hooks.example/"}, headers=auth)
    assert resp.status_code == 200
    assert [r["action"] for r in resp.json()["results"]] == ["created", "created"]
    assert {h["address"] for h in shop.webhooks.values()} == {"https://hooks.example/sync-customer-data"}


def test_idempotency_stats_route(client, auth):
    client.post("/create-draft-order", json=DRAFT_BODY, headers={**auth, "Idempotency-Key": "stats-key-1"})
    stats = client.get("/idempotency/stats", headers=auth).json()
    assert stats["entries"] == 1


def test_list_and_get_customers(client, auth, shop):
    c = shop.add_customer(addresses=[{"company": "Acme", "address1": "x"}])
    listed = client.get("/list-customers", headers=auth).json()
    assert listed["customers"][0]["label"] == "Acme"
    assert client.get(f"/customers/{c['id']}", headers=auth).json()["customer"]["id"] == c["id"]
    assert client.get("/customers/1", headers=auth).status_code == 404


def test_create_customer_idempotent(client, auth, shop):
    payload = {
        "email": "new@acme.test",
        "first_name": "New",
        "last_name": "Person",
        "default_address": {
            "first_name": "New",
            "last_name": "Person",
            "company": "Acme",
            "address1": "Rue 2",
            "city": "Bern",
            "country": "Switzerland",
            "country_code": "CH",
            "zip": "3000",
        },
        "vat_number": "CHE-9",
    }
    headers = {**auth, "Idempotency-Key": "customer-key-1"}
    first = client.post("/create-customer", json=payload, headers=headers)
    second = client.post("/create-customer", json=payload, headers=headers)
    assert first.status_code == 200
    assert first.content == second.content
    assert first.json()["created"] is True
    assert len(shop.customers) == 1
    cid = first.json()["id"]
    assert {m["key"] for m in shop.customer_metafields(cid)} == {"company_name", "vat_number"}

    again = client.post("/create-customer", json=payload, headers=auth)
    assert again.json()["exists"] is True


def test_api_info_and_metrics(client):
    info = client.get("/api/info").json()
    assert info["shopify_api_version"] == config.SHOPIFY_API_VERSION
    assert info["routes"]["total"] > 10
    assert client.get("/metrics").status_code == 200


def test_non_ascii_api_key_is_403(client):
    resp = client.get("/list-customers", headers={"X-API-KEY": "tést".encode("latin-1")})
    assert resp.status_code == 403


def test_non_ascii_webhook_signature_is_403(client, monkeypatch):
    monkeypatch.setattr(config, "SHOPIFY_WEBHOOK_SECRET", "whsec")
    resp = client.post(
        "/sync-customer-data",
        content=b"{}",
        headers={"X-Shopify-Hmac-Sha256": "sïg".encode("latin-1"), "Content-Type": "application/json"},
    )
    assert resp.status_code == 403
