import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from .auth import admin_auth, merchant_context
from .config import Settings, get_settings
from .errors import add_error_handlers
from .idempotency import IdempotencyGuard
from .logging_config import configure_logging, request_id_middleware
from .models import (
    AUTO,
    CreateIntentRequest,
    DemoAuthorizeRequest,
    IntentCreated,
    IntentWithCheckout,
    MerchantProviderConfigRequest,
    MerchantRoutingRequest,
    PaymentEventRecord,
    PaymentIntent,
    PaymentStatus,
    Provider,
    ProviderConfig,
    ProviderEvent,
    ProviderStatus,
    RefundRequest,
    RerouteRequest,
    RoutingDecision,
)
from .providers import HttpSessionGateway, SessionGateway, build_adapters
from .registry import Registry
from .routing import RoutingEngine
from .service import PaymentIntentService, RequestContext
from .storage import IntentStore, PaymentEventLog, RoutingDecisionLog

logger = logging.getLogger(__name__)


def build_service(settings: Settings, gateway: Optional[SessionGateway] = None) -> PaymentIntentService:
    if gateway is None and settings.provider_endpoints:
        gateway = HttpSessionGateway(settings.provider_endpoints)
    adapters = build_adapters(settings.frontend_base_url, gateway, settings.provider_timeout_seconds)
    registry = Registry(
        path=settings.providers_path,
        priority=settings.routing_priority,
        implemented=adapters.keys(),
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout=settings.circuit_reset_seconds,
    )
    decisions = RoutingDecisionLog()
    return PaymentIntentService(
        registry=registry,
        router=RoutingEngine(registry, decisions, settings.demo_fallback_enabled),
        adapters=adapters,
        intents=IntentStore(),
        decisions=decisions,
        guard=IdempotencyGuard(settings.idempotency_ttl_seconds, settings.idempotency_wait_seconds),
        max_attempts_per_chain=settings.max_attempts_per_chain,
        events=PaymentEventLog(),
    )


def get_service(request: Request) -> PaymentIntentService:
    return request.app.state.service


def parse_provider(provider: str) -> Provider:
    try:
        return Provider(provider.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider {provider}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("%s starting", app.title)
    yield
    gateway = app.state.session_gateway
    if gateway is not None:
        gateway.close()
        logger.info("Provider session client closed")


def create_app(settings: Optional[Settings] = None, gateway: Optional[SessionGateway] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    # Only a gateway built here is closed on shutdown; a caller's gateway stays the caller's.
    app.state.session_gateway = None
    if gateway is None and settings.provider_endpoints:
        gateway = app.state.session_gateway = HttpSessionGateway(settings.provider_endpoints)
    app.state.service = build_service(settings, gateway)
    app.middleware("http")(request_id_middleware)
    add_error_handlers(app)

    @app.get("/health")
    def health(svc: PaymentIntentService = Depends(get_service)):
        return {"ok": True, "providers": svc.registry.count()}

    @app.post("/payment-intents", response_model=IntentCreated, status_code=201)
    def create_intent(
        body: CreateIntentRequest,
        idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.create(ctx, body, idempotency_key)

    @app.get("/payment-intents", response_model=List[PaymentIntent])
    def list_intents(
        status: Optional[PaymentStatus] = None,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.list(ctx, status)

    @app.get("/payment-intents/{intent_id}", response_model=IntentWithCheckout)
    def get_intent(
        intent_id: str,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.get(ctx, intent_id)

    @app.get("/payment-intents/{intent_id}/routing-decision", response_model=RoutingDecision)
    def get_routing_decision(
        intent_id: str,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.routing_decision(ctx, intent_id)

    @app.post("/payment-intents/{intent_id}/reroute", response_model=IntentCreated, status_code=201)
    def reroute_intent(
        intent_id: str,
        body: RerouteRequest,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.reroute(ctx, intent_id, body)

    @app.post("/payment-intents/{intent_id}/demo/authorize", response_model=PaymentIntent)
    def demo_authorize(
        intent_id: str,
        body: Optional[DemoAuthorizeRequest] = None,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.demo_authorize(ctx, intent_id, body or DemoAuthorizeRequest())

    @app.post("/payment-intents/{intent_id}/demo/cancel", response_model=PaymentIntent)
    def demo_cancel(
        intent_id: str,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.demo_cancel(ctx, intent_id)

    @app.post("/payment-intents/{intent_id}/refund", response_model=PaymentIntent)
    def refund_intent(
        intent_id: str,
        body: RefundRequest,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.refund(ctx, intent_id, body.reason)

    @app.post("/payment-intents/{intent_id}/events", response_model=PaymentIntent)
    def provider_event(
        intent_id: str,
        body: ProviderEvent,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.provider_event(ctx, intent_id, body)

    @app.get("/payment-intents/{intent_id}/events", response_model=List[PaymentEventRecord])
    def list_payment_events(
        intent_id: str,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.event_history(ctx, intent_id)

    @app.get("/providers", response_model=List[ProviderStatus])
    def provider_statuses(
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.registry.list_statuses(ctx.merchant_id)

    @app.get("/merchant/providers", response_model=List[ProviderConfig])
    def merchant_provider_configs(
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        return svc.registry.list_configs(ctx.merchant_id)

    @app.put("/merchant/providers/{provider}", response_model=ProviderConfig)
    def upsert_merchant_provider(
        provider: str,
        body: MerchantProviderConfigRequest,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ):
        p = parse_provider(provider)
        return svc.registry.upsert_merchant_config(ctx.merchant_id, p, body.enabled, body.config)

    @app.get("/merchant/routing")
    def merchant_routing(
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ) -> Dict[str, str]:
        forced = svc.registry.forced_provider(ctx.merchant_id)
        return {"merchantId": ctx.merchant_id, "forceProvider": forced.value if forced else AUTO}

    @app.put("/merchant/routing")
    def set_merchant_routing(
        body: MerchantRoutingRequest,
        ctx: RequestContext = Depends(merchant_context),
        svc: PaymentIntentService = Depends(get_service),
    ) -> Dict[str, str]:
        forced = None if body.forceProvider == AUTO else Provider(body.forceProvider)
        svc.registry.set_forced_provider(ctx.merchant_id, forced)
        return {"merchantId": ctx.merchant_id, "forceProvider": body.forceProvider}

    @app.get("/admin/providers", response_model=List[ProviderConfig], dependencies=[Depends(admin_auth)])
    def list_provider_configs(svc: PaymentIntentService = Depends(get_service)):
        return svc.registry.list_configs()

    @app.post("/admin/providers/{provider}/enabled/{state}", response_model=ProviderStatus,
              dependencies=[Depends(admin_auth)])
    def set_enabled(provider: str, state: bool, svc: PaymentIntentService = Depends(get_service)):
        p = parse_provider(provider)
        if not svc.registry.set_enabled(p, state):
            raise HTTPException(status_code=400, detail="Invalid provider")
        return svc.registry.status(p)

    @app.post("/admin/providers/{provider}/health/{state}", response_model=ProviderStatus,
              dependencies=[Depends(admin_auth)])
    def set_health(provider: str, state: str, svc: PaymentIntentService = Depends(get_service)):
        p = parse_provider(provider)
        if not svc.registry.set_health(p, state):
            raise HTTPException(status_code=400, detail="Invalid provider or state")
        return svc.registry.status(p)

    @app.post("/admin/reload", response_model=List[ProviderStatus], dependencies=[Depends(admin_auth)])
    def reload_registry(svc: PaymentIntentService = Depends(get_service)):
        svc.registry.reload()
        return svc.registry.list_statuses()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
