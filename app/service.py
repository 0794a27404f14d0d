"""
Orchestration service: creation behind the idempotency guard, reroute
chains, demo actions, refunds and provider events, all funnelled through
``lifecycle.transition`` and a versioned write to the intent store.
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import (
    DownstreamProviderError,
    IllegalTransitionError,
    NotFoundError,
    RequestCancelledError,
    RerouteLimitError,
    ValidationError,
)
from .idempotency import Commit, IdempotencyGuard, fingerprint
from .lifecycle import Event, transition
from .models import (
    AUTO,
    CreateIntentRequest,
    DemoAuthorizeRequest,
    IntentCreated,
    IntentWithCheckout,
    PaymentEventRecord,
    PaymentEventType,
    PaymentIntent,
    PaymentStatus,
    Provider,
    ProviderEvent,
    ReasonCode,
    RerouteRequest,
    RoutingDecision,
    utcnow,
)
from .providers import ProviderAdapter, ProviderErrorType, SessionCommand
from .registry import Registry
from .routing import RoutingEngine
from .storage import IntentStore, PaymentEventLog, RoutingDecisionLog, VersionConflict

logger = logging.getLogger(__name__)

PROVIDER_EVENTS = {
    "requires_payment_method": Event.PROVIDER_REQUIRES_METHOD,
    "processing": Event.PROVIDER_PROCESSING,
    "succeeded": Event.PROVIDER_SUCCEEDED,
    "failed": Event.PROVIDER_FAILED,
    "refunded": Event.REFUND,
}

STATUS_EVENTS = {
    PaymentStatus.REQUIRES_PAYMENT_METHOD: PaymentEventType.PAYMENT_REQUIRES_PAYMENT_METHOD,
    PaymentStatus.PROCESSING: PaymentEventType.PAYMENT_PROCESSING,
    PaymentStatus.SUCCEEDED: PaymentEventType.PAYMENT_SUCCEEDED,
    PaymentStatus.FAILED: PaymentEventType.PAYMENT_FAILED,
    PaymentStatus.REFUNDED: PaymentEventType.REFUND_SUCCEEDED,
}


@dataclass
class RequestContext:
    """Per-request values threaded explicitly through the service."""

    merchant_id: str
    request_id: str = "-"
    cancelled: threading.Event = field(default_factory=threading.Event)

    def check_cancelled(self) -> None:
        if self.cancelled.is_set():
            raise RequestCancelledError("Request cancelled by caller")


@dataclass
class _ChainLock:
    lock: threading.Lock
    waiters: int = 0


def validate_create(req: CreateIntentRequest) -> None:
    if req.amountMinor <= 0:
        raise ValidationError("amountMinor must be a positive integer", field="amountMinor")
    currency = req.currency
    if len(currency) != 3 or not (currency.isascii() and currency.isalpha()):
        raise ValidationError("currency must be a 3-letter ISO code", field="currency")


def _attach_provider_ref(provider_ref: str) -> Callable[[PaymentIntent], PaymentIntent]:
    def change(current: PaymentIntent) -> PaymentIntent:
        if current.providerRef:
            return current
        return current.model_copy(update={"providerRef": provider_ref, "updatedAt": utcnow()})
    return change


def _fail_session(reason: str) -> Callable[[PaymentIntent], PaymentIntent]:
    def change(current: PaymentIntent) -> PaymentIntent:
        # A provider outcome that landed while the session call was in flight wins.
        if current.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            return current
        return transition(current, Event.PROVIDER_FAILED, failure_reason=reason)
    return change


class PaymentIntentService:
    def __init__(
        self,
        registry: Registry,
        router: RoutingEngine,
        adapters: Dict[Provider, ProviderAdapter],
        intents: IntentStore,
        decisions: RoutingDecisionLog,
        guard: IdempotencyGuard,
        max_attempts_per_chain: int = 3,
        events: Optional[PaymentEventLog] = None,
    ) -> None:
        self.registry = registry
        self.router = router
        self.adapters = adapters
        self.intents = intents
        self.decisions = decisions
        self.guard = guard
        self.max_attempts_per_chain = max_attempts_per_chain
        self.events = events if events is not None else PaymentEventLog()
        self._reroute_mutex = threading.Lock()
        self._reroute_locks: Dict[str, _ChainLock] = {}

    # creation

    def create(self, ctx: RequestContext, req: CreateIntentRequest,
               idempotency_key: Optional[str] = None) -> IntentCreated:
        validate_create(req)
        payload = req.model_dump(mode="json")
        intent_id, _ = self.guard.execute(
            ctx.merchant_id,
            idempotency_key,
            payload,
            lambda commit: self._open_intent(ctx, req, idempotency_key, on_insert=commit).id,
        )
        return self._created_view(self._require(ctx, intent_id))

    def reroute(self, ctx: RequestContext, intent_id: str, req: RerouteRequest) -> IntentCreated:
        existing = self._require(ctx, intent_id)
        root_id = existing.rootPaymentIntentId or existing.id
        with self._chain_lock(root_id):
            self._ensure_latest(existing)
            if existing.attemptNumber >= self.max_attempts_per_chain:
                raise RerouteLimitError(
                    f"Max attempts per chain ({self.max_attempts_per_chain}) reached",
                    context={"rootPaymentIntentId": root_id},
                )

            if req.provider is not None:
                preference = req.provider.value
                excluded = frozenset()
                reason_code = (
                    ReasonCode.USER_RETRY.value if req.provider == existing.provider
                    else ReasonCode.USER_RETRY_OTHER_PROVIDER.value
                )
            else:
                preference = AUTO
                excluded = frozenset({existing.provider})
                reason_code = ReasonCode.USER_RETRY.value
            if req.reason in (ReasonCode.USER_RETRY.value, ReasonCode.USER_RETRY_OTHER_PROVIDER.value):
                reason_code = req.reason

            cmd = CreateIntentRequest(
                amountMinor=existing.amountMinor,
                currency=existing.currency,
                description=existing.description,
                providerPreference=preference,
            )
            logger.info(
                "Rerouting intent %s (attempt %d, reason=%s, provider=%s)",
                existing.id, existing.attemptNumber, req.reason, preference,
            )
            created = self._open_intent(
                ctx, cmd, None,
                root_id=root_id,
                attempt=existing.attemptNumber + 1,
                excluded=excluded,
                reason_code=reason_code,
            )
        return self._created_view(created)

    def _open_intent(self, ctx: RequestContext, req: CreateIntentRequest, idempotency_key: Optional[str],
                     root_id: Optional[str] = None, attempt: int = 1,
                     excluded=frozenset(), reason_code: Optional[str] = None,
                     on_insert: Optional[Commit] = None) -> PaymentIntent:
        ctx.check_cancelled()
        intent_id = str(uuid.uuid4())
        decision = self.router.route(
            ctx.merchant_id, req.providerPreference, excluded, intent_id=intent_id, reason_code=reason_code
        )

        intent = self.intents.insert(PaymentIntent(
            id=intent_id,
            merchantId=ctx.merchant_id,
            amountMinor=req.amountMinor,
            currency=req.currency,
            description=req.description,
            provider=decision.chosenProvider,
            idempotencyKey=idempotency_key,
            routingDecisionId=decision.id,
            routingReasonCode=decision.reasonCode,
            rootPaymentIntentId=root_id or intent_id,
            attemptNumber=attempt,
        ))
        if on_insert is not None:
            on_insert(intent.id)
        return self._open_session(intent, idempotency_key)

    def _open_session(self, intent: PaymentIntent, idempotency_key: Optional[str]) -> PaymentIntent:
        adapter = self.adapters[intent.provider]
        command = SessionCommand(
            merchant_id=intent.merchantId,
            intent_id=intent.id,
            amount_minor=intent.amountMinor,
            currency=intent.currency,
            description=intent.description,
            idempotency_key=idempotency_key,
            provider_config=self.registry.get_config(intent.provider, intent.merchantId).config,
        )
        try:
            session = adapter.create_session(command)
        except DownstreamProviderError as e:
            error_type = e.error_type
        except Exception:
            logger.exception("Unexpected error opening %s session for %s", intent.provider.value, intent.id)
            error_type = ProviderErrorType.UNKNOWN.value
        else:
            self.registry.record_outcome(intent.provider, True)
            self.intents.put_checkout(intent.id, session.checkout_config)
            self._record(intent, PaymentEventType.PROVIDER_CREATE_SESSION_SUCCEEDED,
                         {"providerRef": session.provider_ref})
            return self._settle(intent.id, _attach_provider_ref(session.provider_ref))

        # The intent row already exists, so the failure is recorded on it.
        self.registry.record_outcome(intent.provider, False)
        logger.error("Provider %s failed opening session for %s: %s", intent.provider.value, intent.id, error_type)
        self._record(intent, PaymentEventType.PROVIDER_CREATE_SESSION_FAILED, {"errorType": error_type})
        return self._settle(intent.id, _fail_session(f"DOWNSTREAM_ERROR:{error_type}"))

    def _settle(self, intent_id: str, change: Callable[[PaymentIntent], PaymentIntent]) -> PaymentIntent:
        """Apply ``change`` to the freshest row until the versioned write lands."""
        while True:
            current = self.intents.get(intent_id)
            updated = change(current)
            if updated is current:
                return current
            try:
                stored = self.intents.compare_and_set(updated, current.version)
            except VersionConflict as e:
                logger.info("Intent %s moved during session setup, retrying: %s", intent_id, e)
                continue
            self._record_transition(current, stored, Event.PROVIDER_FAILED.value)
            return stored

    # reads

    def get(self, ctx: RequestContext, intent_id: str) -> IntentWithCheckout:
        intent = self._require(ctx, intent_id)
        return IntentWithCheckout(paymentIntent=intent, checkoutConfig=self.intents.get_checkout(intent.id))

    def list(self, ctx: RequestContext, status: Optional[PaymentStatus] = None):
        return self.intents.list_for_merchant(ctx.merchant_id, status)

    def routing_decision(self, ctx: RequestContext, intent_id: str) -> RoutingDecision:
        intent = self._require(ctx, intent_id)
        decision = self.decisions.get(intent.routingDecisionId)
        if decision is None:
            raise NotFoundError(f"Routing decision for {intent_id} not found")
        return decision

    def event_history(self, ctx: RequestContext, intent_id: str) -> List[PaymentEventRecord]:
        intent = self._require(ctx, intent_id)
        return self.events.for_intent(intent.id)

    # transitions

    def demo_authorize(self, ctx: RequestContext, intent_id: str, card: DemoAuthorizeRequest) -> PaymentIntent:
        def decide(intent: PaymentIntent) -> Event:
            self._require_demo(intent)
            approved = self.adapters[Provider.DEMO].authorize(intent, card)
            return Event.DEMO_AUTHORIZE_APPROVE if approved else Event.DEMO_AUTHORIZE_DECLINE

        return self._apply(ctx, intent_id, decide)

    def demo_cancel(self, ctx: RequestContext, intent_id: str) -> PaymentIntent:
        def decide(intent: PaymentIntent) -> Event:
            self._require_demo(intent)
            self.adapters[Provider.DEMO].cancel(intent)
            return Event.DEMO_CANCEL

        return self._apply(ctx, intent_id, decide)

    def refund(self, ctx: RequestContext, intent_id: str, reason: str) -> PaymentIntent:
        logger.info("Refund requested for %s: %s", intent_id, reason)
        return self._apply(ctx, intent_id, lambda intent: Event.REFUND)

    def provider_event(self, ctx: RequestContext, intent_id: str, event: ProviderEvent) -> PaymentIntent:
        def decide(intent: PaymentIntent) -> Event:
            if event.providerRef and intent.providerRef and event.providerRef != intent.providerRef:
                raise IllegalTransitionError(
                    "Provider reference does not match the intent",
                    field="providerRef",
                    context={"intentId": intent.id},
                )
            return PROVIDER_EVENTS[event.type]

        failure = f"PROVIDER:{event.reason}" if event.reason else None
        return self._apply(ctx, intent_id, decide, failure_reason=failure, provider_ref=event.providerRef)

    def _apply(self, ctx: RequestContext, intent_id: str, decide, **kwargs) -> PaymentIntent:
        # One retry against fresh state; a writer that still loses is stale.
        for attempt in range(2):
            intent = self._require(ctx, intent_id)
            self._ensure_latest(intent)
            event = decide(intent)
            updated = transition(intent, event, **kwargs)
            if updated is intent:
                return intent
            try:
                stored = self.intents.compare_and_set(updated, intent.version)
            except VersionConflict as e:
                logger.warning("Concurrent update on %s (attempt %d): %s", intent_id, attempt + 1, e)
                continue
            self._record_transition(intent, stored, event.value)
            return stored
        raise IllegalTransitionError(
            f"Intent {intent_id} changed concurrently, re-read before retrying",
            context={"intentId": intent_id},
        )

    # helpers

    def _require(self, ctx: RequestContext, intent_id: str) -> PaymentIntent:
        intent = self.intents.get(intent_id)
        if intent is None or intent.merchantId != ctx.merchant_id:
            raise NotFoundError(f"PaymentIntent {intent_id} not found", field="id")
        return intent

    def _ensure_latest(self, intent: PaymentIntent) -> None:
        if self.intents.latest_attempt(intent.rootPaymentIntentId) > intent.attemptNumber:
            raise IllegalTransitionError(
                f"Intent {intent.id} was superseded by a reroute",
                context={"intentId": intent.id, "rootPaymentIntentId": intent.rootPaymentIntentId},
            )

    def _require_demo(self, intent: PaymentIntent) -> None:
        if intent.provider != Provider.DEMO:
            raise IllegalTransitionError(
                f"Demo actions are only available for DEMO intents, not {intent.provider.value}",
                context={"provider": intent.provider.value},
            )

    @contextmanager
    def _chain_lock(self, root_id: str) -> Iterator[None]:
        with self._reroute_mutex:
            entry = self._reroute_locks.get(root_id)
            if entry is None:
                entry = self._reroute_locks[root_id] = _ChainLock(threading.Lock())
            entry.waiters += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._reroute_mutex:
                entry.waiters -= 1
                if entry.waiters == 0:
                    self._reroute_locks.pop(root_id, None)

    def _record(self, intent: PaymentIntent, event_type: PaymentEventType, payload: Dict[str, Any]) -> None:
        self.events.append(PaymentEventRecord(
            id=str(uuid.uuid4()),
            intentId=intent.id,
            merchantId=intent.merchantId,
            provider=intent.provider,
            type=event_type,
            payloadHash=fingerprint(payload),
            payload=payload,
        ))

    def _record_transition(self, before: PaymentIntent, after: PaymentIntent, cause: str) -> None:
        if after.status == before.status:
            return
        self._record(after, STATUS_EVENTS[after.status], {
            "event": cause,
            "from": before.status.value,
            "to": after.status.value,
            "failureReason": after.failureReason,
        })

    def _created_view(self, intent: PaymentIntent) -> IntentCreated:
        return IntentCreated(
            intentId=intent.id,
            status=intent.status,
            provider=intent.provider,
            routingDecisionId=intent.routingDecisionId,
            routingReasonCode=intent.routingReasonCode,
            checkoutConfig=self.intents.get_checkout(intent.id),
        )
