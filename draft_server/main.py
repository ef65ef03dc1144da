import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis
from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_limiter import FastAPILimiter
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from . import config
from .customer_sync import CustomerSyncEngine, WebhookHitLog
from .customers import CustomerService
from .draft_orders import DraftOrderCoordinator
from .emailer import Emailer, SmtpSender
from .errors import DraftServerError, ValidationError, format_validation_errors
from .idempotency import IdempotencyStore, RedisIdempotencyStore
from .schemas import (
    CompleteDraftOrderRequest,
    CreateCustomerRequest,
    CreateDraftOrderRequest,
    RegistrationSubmitRequest,
    SendOrderConfirmationRequest,
    SendOrderEmailRequest,
)
from .security import (
    SECURITY_HEADERS,
    _optional_rate_limit_api,
    _optional_rate_limit_customer,
    _optional_rate_limit_form,
    _optional_rate_limit_global,
    _optional_rate_limit_order,
    honeypot_triggered,
    idempotency_key,
    is_suspicious,
    optional_api_key,
    require_api_key,
    sanitize,
    validate_origin,
    verify_shopify_webhook,
)
from .shopify_client import ShopifyClient
from .webhooks import WebhookRegistrar

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per app."""

    client: ShopifyClient
    idempotency: Any
    hit_log: WebhookHitLog
    coordinator: DraftOrderCoordinator
    sync: CustomerSyncEngine
    customers: CustomerService
    registrar: WebhookRegistrar
    emailer: Emailer
    redis_client: Optional[Any] = field(default=None)


def build_services(
    client: Optional[ShopifyClient] = None,
    idempotency: Optional[Any] = None,
    sender: Optional[SmtpSender] = None,
    **emailer_options,
) -> Services:
    client = client or ShopifyClient()
    hit_log = WebhookHitLog()
    coordinator = DraftOrderCoordinator(client)
    sync = CustomerSyncEngine(client, hit_log)
    return Services(
        client=client,
        idempotency=idempotency or IdempotencyStore(),
        hit_log=hit_log,
        coordinator=coordinator,
        sync=sync,
        customers=CustomerService(client, sync),
        registrar=WebhookRegistrar(client),
        emailer=Emailer(client, coordinator, sender=sender, **emailer_options),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def _elapsed_ms(request: Request) -> int:
    start = getattr(request.state, "start", None) or time.perf_counter()
    return int((time.perf_counter() - start) * 1000)


def _respond(request: Request, result: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    body = {**result, "processing_time_ms": _elapsed_ms(request)}
    return JSONResponse(body, status_code=status_code)


async def _run_idempotent(request: Request, services: Services, key: Optional[str], action) -> JSONResponse:
    """Replay a cached response for ``key`` or run ``action`` and cache what it returns.

    The cached body includes ``processing_time_ms`` so a replay is byte-identical.
    Concurrent requests with the same unseen key both run ``action``.
    """
    if key:
        entry = await services.idempotency.get(key)
        if entry is not None:
            logger.info("Idempotent replay for key %s on %s", key, request.url.path)
            return JSONResponse(entry.response, status_code=entry.status_code)
    result = await action()
    body = {**result, "processing_time_ms": _elapsed_ms(request)}
    if key:
        await services.idempotency.set(key, body)
    return JSONResponse(body)


def _register_routes(app: FastAPI) -> None:
    # ── health / info ────────────────────────────────────────────
    @app.get("/health", dependencies=[Depends(_optional_rate_limit_global)])
    async def health(request: Request):
        return _respond(request, {
            "ok": True,
            "time": datetime.now(timezone.utc).isoformat(),
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
        })

    @app.get("/api/info", dependencies=[Depends(_optional_rate_limit_global)])
    async def api_info(request: Request):
        routes = [r for r in request.app.routes if getattr(r, "methods", None)]
        by_method: Dict[str, int] = {}
        for r in routes:
            for m in r.methods - {"HEAD", "OPTIONS"}:
                by_method[m] = by_method.get(m, 0) + 1
        return _respond(request, {
            "name": config.APP_NAME,
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
            "shopify_api_version": config.SHOPIFY_API_VERSION,
            "routes": {"total": len(routes), "by_method": by_method},
        })

    # ── customers ────────────────────────────────────────────────
    @app.get(
        "/list-customers",
        dependencies=[Depends(require_api_key), Depends(validate_origin), Depends(_optional_rate_limit_api)],
    )
    async def list_customers(
        request: Request,
        limit: int = Query(100, ge=1, le=250),
        since_id: Optional[int] = Query(None, gt=0),
        created_at_min: Optional[str] = None,
        created_at_max: Optional[str] = None,
        order: str = "created_at",
        fields: Optional[str] = None,
        services: Services = Depends(get_services),
    ):
        customers = await services.customers.list_customers(
            limit=limit,
            since_id=since_id,
            created_at_min=created_at_min,
            created_at_max=created_at_max,
            order=order,
            fields=fields,
        )
        return _respond(request, {"customers": customers, "count": len(customers)})

    @app.post(
        "/create-customer",
        dependencies=[Depends(require_api_key), Depends(validate_origin), Depends(_optional_rate_limit_customer)],
    )
    async def create_customer(
        request: Request,
        payload: CreateCustomerRequest,
        key: Optional[str] = Depends(idempotency_key),
        services: Services = Depends(get_services),
    ):
        return await _run_idempotent(request, services, key, lambda: services.customers.create_customer(payload))

    @app.get("/customers/{customer_id}", dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_api)])
    async def get_customer(request: Request, customer_id: int, services: Services = Depends(get_services)):
        return _respond(request, {"customer": await services.customers.get_customer(customer_id)})

    # ── draft orders ─────────────────────────────────────────────
    @app.post(
        "/create-draft-order",
        dependencies=[Depends(require_api_key), Depends(validate_origin), Depends(_optional_rate_limit_order)],
    )
    async def create_draft_order(
        request: Request,
        payload: CreateDraftOrderRequest,
        key: Optional[str] = Depends(idempotency_key),
        services: Services = Depends(get_services),
    ):
        data = payload.model_dump(exclude_none=True)
        return await _run_idempotent(
            request,
            services,
            key,
            lambda: services.coordinator.create(data.pop("customer_id"), data.pop("items"), **data),
        )

    @app.post(
        "/complete-draft-order",
        dependencies=[Depends(require_api_key), Depends(validate_origin), Depends(_optional_rate_limit_order)],
    )
    async def complete_draft_order(
        request: Request, payload: CompleteDraftOrderRequest, services: Services = Depends(get_services)
    ):
        result = await services.coordinator.complete(
            payload.draft_id, invoice_url=payload.invoice_url, payment_pending=payload.payment_pending
        )
        return _respond(request, result)

    @app.get("/draft-orders", dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_api)])
    async def list_draft_orders(
        request: Request,
        limit: int = Query(50, ge=1, le=250),
        since_id: Optional[int] = Query(None, gt=0),
        status: Optional[str] = Query(None, pattern="^(open|invoice_sent|completed)$"),
        created_at_min: Optional[str] = None,
        created_at_max: Optional[str] = None,
        updated_at_min: Optional[str] = None,
        updated_at_max: Optional[str] = None,
        services: Services = Depends(get_services),
    ):
        drafts = await services.coordinator.list(
            limit=limit,
            since_id=since_id,
            status=status,
            created_at_min=created_at_min,
            created_at_max=created_at_max,
            updated_at_min=updated_at_min,
            updated_at_max=updated_at_max,
        )
        return _respond(request, {"draft_orders": drafts, "count": len(drafts)})

    @app.get("/draft-orders/{draft_id}", dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_api)])
    async def get_draft_order(request: Request, draft_id: int, services: Services = Depends(get_services)):
        return _respond(request, {"draft_order": await services.coordinator.get(draft_id)})

    @app.put("/draft-orders/{draft_id}", dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_order)])
    async def update_draft_order(
        request: Request,
        draft_id: int,
        changes: Dict[str, Any] = Body(...),
        services: Services = Depends(get_services),
    ):
        return _respond(request, {"draft_order": await services.coordinator.update(draft_id, changes)})

    @app.delete("/draft-orders/{draft_id}", dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_order)])
    async def delete_draft_order(request: Request, draft_id: int, services: Services = Depends(get_services)):
        return _respond(request, await services.coordinator.delete(draft_id))

    @app.get(
        "/draft-orders/{draft_id}/can-complete",
        dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_api)],
    )
    async def can_complete_draft_order(request: Request, draft_id: int, services: Services = Depends(get_services)):
        return _respond(request, await services.coordinator.can_complete(draft_id))

    @app.get(
        "/draft-orders/{draft_id}/status",
        dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_api)],
    )
    async def draft_order_status(request: Request, draft_id: int, services: Services = Depends(get_services)):
        return _respond(request, await services.coordinator.completion_status(draft_id))

    # ── order emails ─────────────────────────────────────────────
    @app.post(
        "/send-order-confirmation",
        dependencies=[Depends(require_api_key), Depends(validate_origin), Depends(_optional_rate_limit_api)],
    )
    async def send_order_confirmation(
        request: Request, payload: SendOrderConfirmationRequest, services: Services = Depends(get_services)
    ):
        result = await services.emailer.send_order_confirmation(
            payload.order_id,
            payload.customer_id,
            cc=payload.cc,
            subject=payload.subject,
            custom_message=payload.custom_message,
        )
        return _respond(request, result)

    @app.post(
        "/send-order-email",
        dependencies=[Depends(require_api_key), Depends(validate_origin), Depends(_optional_rate_limit_order)],
    )
    async def send_order_email(
        request: Request, payload: SendOrderEmailRequest, services: Services = Depends(get_services)
    ):
        result = await services.emailer.send_order_email_after_completion(
            payload.customer_id,
            payload.draft_id,
            invoice_url=payload.invoice_url,
            cc=payload.cc,
            subject=payload.subject,
            custom_message=payload.custom_message,
        )
        # The order was completed even when the receipt failed.
        return _respond(request, result, status_code=200 if result["success"] else 502)

    # ── registration form ────────────────────────────────────────
    @app.post(
        "/ikyum/regpro/submit",
        dependencies=[Depends(validate_origin), Depends(_optional_rate_limit_form)],
    )
    async def registration_submit(
        request: Request,
        body: Any = Body(None),
        services: Services = Depends(get_services),
    ):
        if honeypot_triggered(body):
            logger.warning(
                "Honeypot triggered from %s (%s)",
                request.client.host if request.client else "unknown",
                request.headers.get("User-Agent", ""),
            )
            return _respond(request, {"ok": True, "skipped": "honeypot"})

        try:
            submission = RegistrationSubmitRequest.model_validate(sanitize(body))
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(exc)

        raw = submission.data.model_dump(exclude_none=True)
        emails = await services.emailer.send_registration_emails(raw)

        if submission.data.customer_id and services.client.configured:
            sync = await services.customers.update_customer_company(
                submission.data.customer_id, submission.data.company_name
            )
            if not sync.get("ok"):
                logger.warning("Customer company sync failed: %s", sync.get("reason"))

        return _respond(request, {
            "ok": True,
            "emails_sent": emails["success"],
            "admin_notification": bool(emails["admin_notification"]),
            "user_confirmation": bool(emails["user_confirmation"]),
        })

    # ── Shopify webhooks ─────────────────────────────────────────
    @app.post(
        "/sync-customer-data",
        dependencies=[Depends(verify_shopify_webhook), Depends(_optional_rate_limit_api)],
    )
    async def sync_customer_data(request: Request, services: Services = Depends(get_services)):
        try:
            payload = await request.json() if await request.body() else {}
        except ValueError:
            payload = None
        if payload is not None and not isinstance(payload, dict):
            payload = None
        if payload is None:
            return JSONResponse(
                {"success": False, "message": "Customer data sync failed", "error": "Invalid JSON payload",
                 "processing_time_ms": _elapsed_ms(request)}
            )
        # handle_webhook never raises and carries its own processing_time_ms.
        return JSONResponse(await services.sync.handle_webhook(payload, request.headers))

    @app.get("/sync-customer-data/_ping", dependencies=[Depends(_optional_rate_limit_global)])
    async def sync_customer_data_ping(request: Request, services: Services = Depends(get_services)):
        return _respond(request, {"ok": True, **services.sync.health()})

    @app.get("/sync-customer-data/_last", dependencies=[Depends(_optional_rate_limit_api)])
    async def sync_customer_data_last(
        request: Request,
        authenticated: bool = Depends(optional_api_key),
        services: Services = Depends(get_services),
    ):
        hits = services.hit_log.recent()
        if not authenticated:
            hits = [{k: v for k, v in h.items() if k != "shop"} for h in hits]
        return _respond(request, {"hits": hits, "count": len(hits)})

    @app.post("/register-webhooks", dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_api)])
    async def register_webhooks(
        request: Request,
        base_url: Optional[str] = Body(None, embed=True),
        services: Services = Depends(get_services),
    ):
        results = await services.registrar.register_defaults(base_url)
        return _respond(request, {"success": all(r["success"] for r in results), "results": results})

    @app.get("/idempotency/stats", dependencies=[Depends(require_api_key), Depends(_optional_rate_limit_api)])
    async def idempotency_stats(request: Request, services: Services = Depends(get_services)):
        return _respond(request, await services.idempotency.stats())


def _register_handlers(app: FastAPI) -> None:
    @app.exception_handler(DraftServerError)
    async def draft_server_error_handler(request: Request, exc: DraftServerError):
        elapsed = _elapsed_ms(request)
        if exc.status_code >= 500:
            logger.error("%s %s failed after %dms: %s", request.method, request.url.path, elapsed, exc.message)
        else:
            logger.info("%s %s -> %d after %dms: %s", request.method, request.url.path, exc.status_code, elapsed, exc.message)
        return JSONResponse({**exc.to_dict(), "processing_time_ms": elapsed}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {
                "message": "Validation failed",
                "errors": format_validation_errors(exc.errors()),
                "processing_time_ms": _elapsed_ms(request),
            },
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        elapsed = _elapsed_ms(request)
        logger.exception("%s %s crashed after %dms", request.method, request.url.path, elapsed)
        return JSONResponse(
            {"message": "Internal server error", "error": str(exc), "processing_time_ms": elapsed},
            status_code=500,
        )


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)
    app.state.services = services or build_services()

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_origin_regex=r"https://.*\.(myshopify\.com|cdn\.shopify\.com|shopifycloud\.com)",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-KEY", "Idempotency-Key", "X-Shopify-Hmac-Sha256"],
    )

    @app.middleware("http")
    async def timing_and_security_headers(request: StarletteRequest, call_next):
        request.state.start = time.perf_counter()
        if is_suspicious(
            str(request.url), request.headers.get("User-Agent", ""), request.headers.get("Referer", "")
        ):
            logger.warning(
                "Suspicious request: %s %s from %s",
                request.method,
                request.url.path,
                request.client.host if request.client else "unknown",
            )
        response: StarletteResponse = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.on_event("startup")
    async def startup():
        logging.getLogger("httpx").setLevel(logging.WARNING)
        svc: Services = app.state.services
        # Connect to Redis only if configured
        if config.REDIS_URL and svc.redis_client is None:
            try:
                svc.redis_client = redis.from_url(config.REDIS_URL)
                await svc.redis_client.ping()
                logger.info("Redis connected")
            except Exception as exc:
                logger.error("Redis connection failed: %s", exc)
                svc.redis_client = None
        if svc.redis_client is not None:
            if isinstance(svc.idempotency, IdempotencyStore):
                svc.idempotency = RedisIdempotencyStore(svc.redis_client)
            try:
                await FastAPILimiter.init(svc.redis_client)
            except Exception as exc:
                logger.error("Rate limiter init failed: %s", exc)
        svc.idempotency.start()
        if not svc.client.configured:
            logger.warning("Shopify credentials missing; upstream routes will answer 503")

    @app.on_event("shutdown")
    async def shutdown():
        svc: Services = app.state.services
        await svc.idempotency.stop()
        await svc.client.aclose()
        if svc.redis_client is not None:
            await svc.redis_client.aclose()

    _register_routes(app)
    _register_handlers(app)
    return app


app = create_app()
