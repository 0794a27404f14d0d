"""
Provider adapters.

Each provider is a capability object exposing ``create_session``,
``authorize`` and ``cancel``; the orchestrator picks one by looking up the
intent's ``provider`` in the adapter map built by ``build_adapters``.
Hosted-checkout providers delegate the network call to a ``SessionGateway``.
"""
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from .errors import DownstreamProviderError, IllegalTransitionError
from .models import DemoAuthorizeRequest, PaymentIntent, Provider

logger = logging.getLogger(__name__)

DECLINE_CVV = "000"


class ProviderErrorType(str, Enum):
    TIMEOUT = "TIMEOUT"
    HTTP_5XX = "HTTP_5XX"
    VALIDATION = "VALIDATION"
    PROVIDER_DECLINE = "PROVIDER_DECLINE"
    UNKNOWN = "UNKNOWN"


@dataclass
class SessionCommand:
    merchant_id: str
    intent_id: str
    amount_minor: int
    currency: str
    description: Optional[str]
    idempotency_key: Optional[str]
    provider_config: Dict[str, str] = field(default_factory=dict)


@dataclass
class SessionResult:
    provider_ref: str
    checkout_config: Dict[str, Any]


class ProviderAdapter(Protocol):
    provider: Provider

    def create_session(self, command: SessionCommand) -> SessionResult: ...

    def authorize(self, intent: PaymentIntent, card: DemoAuthorizeRequest) -> bool: ...

    def cancel(self, intent: PaymentIntent) -> None: ...


class SessionGateway(Protocol):
    def open_session(self, provider: Provider, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]: ...


class HttpSessionGateway:
    """Posts session requests to per-provider endpoints with httpx."""

    def __init__(self, endpoints: Dict[str, str], client: Optional[httpx.Client] = None):
        self._endpoints = {Provider(k): v for k, v in endpoints.items()}
        self._owns_client = client is None
        self._client = client or httpx.Client()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def handles(self, provider: Provider) -> bool:
        return provider in self._endpoints

    def open_session(self, provider: Provider, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        url = self._endpoints[provider]
        headers = {}
        if payload.get("idempotencyKey"):
            headers["Idempotency-Key"] = f"po:{payload['merchantId']}:{payload['idempotencyKey']}"
        try:
            resp = self._client.post(url, json=payload, headers=headers, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except httpx.TimeoutException as e:
            raise DownstreamProviderError(provider.value, ProviderErrorType.TIMEOUT.value, f"{provider.value} timed out") from e
        except httpx.HTTPStatusError as e:
            kind = ProviderErrorType.HTTP_5XX if e.response.status_code >= 500 else ProviderErrorType.VALIDATION
            raise DownstreamProviderError(
                provider.value, kind.value, f"{provider.value} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DownstreamProviderError(provider.value, ProviderErrorType.UNKNOWN.value, str(e)) from e


class DemoAdapter:
    provider = Provider.DEMO

    def __init__(self, frontend_base_url: str = "http://localhost:3000"):
        self._base_url = (frontend_base_url or "http://localhost:3000").rstrip("/")

    def create_session(self, command: SessionCommand) -> SessionResult:
        return SessionResult(
            provider_ref=f"demo_{command.intent_id}",
            checkout_config={
                "type": "DEMO",
                "paymentIntentId": command.intent_id,
                "amountMinor": command.amount_minor,
                "currency": command.currency,
                "message": "Demo mode active. No external provider configured.",
                "checkoutUrl": f"{self._base_url}/demo-checkout/{command.intent_id}",
            },
        )

    def authorize(self, intent: PaymentIntent, card: DemoAuthorizeRequest) -> bool:
        # No card validation at all: the CVV alone decides.
        return card.cvv != DECLINE_CVV

    def cancel(self, intent: PaymentIntent) -> None:
        return None


class HostedCheckoutAdapter:
    """Provider whose customer-facing checkout is hosted by the provider.

    ``public_fields`` are the config values safe to hand to a browser; the
    session itself is opened through the gateway when one is wired for this
    provider, otherwise a sandbox session is issued locally.
    """

    def __init__(self, provider: Provider, ref_prefix: str, public_fields: Dict[str, str],
                 gateway: Optional[SessionGateway] = None, timeout: float = 10.0):
        self.provider = provider
        self._ref_prefix = ref_prefix
        self._public_fields = public_fields
        self._gateway = gateway
        self._timeout = timeout

    def _gateway_handles(self) -> bool:
        if self._gateway is None:
            return False
        handles = getattr(self._gateway, "handles", None)
        return handles(self.provider) if handles else True

    def create_session(self, command: SessionCommand) -> SessionResult:
        checkout: Dict[str, Any] = {
            "type": self.provider.value,
            "paymentIntentId": command.intent_id,
        }
        for out_key, cfg_key in self._public_fields.items():
            checkout[out_key] = command.provider_config.get(cfg_key)

        if self._gateway_handles():
            payload = {
                "merchantId": command.merchant_id,
                "reference": command.intent_id,
                "amount": {"value": command.amount_minor, "currency": command.currency},
                "description": command.description,
                "idempotencyKey": command.idempotency_key,
            }
            data = self._gateway.open_session(self.provider, payload, self._timeout)
            ref = data.get("id") or data.get("sessionId")
            if not ref:
                raise DownstreamProviderError(
                    self.provider.value, ProviderErrorType.UNKNOWN.value, "Session response missing id"
                )
            checkout["sessionId"] = ref
            if data.get("clientSecret"):
                checkout["clientSecret"] = data["clientSecret"]
            if data.get("sessionData"):
                checkout["sessionData"] = data["sessionData"]
            return SessionResult(provider_ref=ref, checkout_config=checkout)

        ref = f"{self._ref_prefix}{uuid.uuid4().hex[:24]}"
        checkout["sessionId"] = ref
        checkout["clientSecret"] = f"{ref}_secret_{uuid.uuid4().hex[:16]}"
        checkout["sandbox"] = True
        return SessionResult(provider_ref=ref, checkout_config=checkout)

    def authorize(self, intent: PaymentIntent, card: DemoAuthorizeRequest) -> bool:
        raise IllegalTransitionError(
            f"{self.provider.value} authorizes through its hosted checkout",
            context={"provider": self.provider.value},
        )

    def cancel(self, intent: PaymentIntent) -> None:
        raise IllegalTransitionError(
            f"{self.provider.value} cancels through its hosted checkout",
            context={"provider": self.provider.value},
        )


def build_adapters(frontend_base_url: str, gateway: Optional[SessionGateway] = None,
                   timeout: float = 10.0) -> Dict[Provider, ProviderAdapter]:
    # PAYPAL has no integration and is reported NOT_IMPLEMENTED by the registry.
    return {
        Provider.DEMO: DemoAdapter(frontend_base_url),
        Provider.STRIPE: HostedCheckoutAdapter(
            Provider.STRIPE, "pi_", {"publishableKey": "publishableKey"}, gateway, timeout
        ),
        Provider.ADYEN: HostedCheckoutAdapter(
            Provider.ADYEN, "CS", {"clientKey": "clientKey", "environment": "environment"}, gateway, timeout
        ),
        Provider.MASTERCARD: HostedCheckoutAdapter(
            Provider.MASTERCARD, "SESSION", {"merchantId": "merchantId", "gatewayHost": "gatewayHost"},
            gateway, timeout,
        ),
    }
