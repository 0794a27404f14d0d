import httpx
import pytest

from app.errors import DownstreamProviderError, IllegalTransitionError
from app.models import DemoAuthorizeRequest, Provider
from app.providers import (
    DemoAdapter,
    HostedCheckoutAdapter,
    HttpSessionGateway,
    SessionCommand,
    build_adapters,
)

ENDPOINTS = {"STRIPE": "https://stripe.test/sessions"}


def command(**kw):
    values = dict(
        merchant_id="m_1",
        intent_id="pi_1",
        amount_minor=1500,
        currency="EUR",
        description=None,
        idempotency_key="order-9",
        provider_config={"secretKey": "sk", "publishableKey": "pk_live"},
    )
    values.update(kw)
    return SessionCommand(**values)


def gateway_with(handler):
    return HttpSessionGateway(ENDPOINTS, client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_gateway_posts_with_scoped_idempotency_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "cs_123", "clientSecret": "cs_123_secret"})

    adapter = HostedCheckoutAdapter(Provider.STRIPE, "pi_", {"publishableKey": "publishableKey"},
                                    gateway_with(handler))
    result = adapter.create_session(command())
    assert result.provider_ref == "cs_123"
    assert result.checkout_config["publishableKey"] == "pk_live"
    assert result.checkout_config["clientSecret"] == "cs_123_secret"
    assert seen[0].headers["Idempotency-Key"] == "po:m_1:order-9"


@pytest.mark.parametrize("response,error_type", [
    (httpx.Response(503), "HTTP_5XX"),
    (httpx.Response(400), "VALIDATION"),
])
def test_gateway_maps_http_errors(response, error_type):
    gateway = gateway_with(lambda request: response)
    with pytest.raises(DownstreamProviderError) as exc:
        gateway.open_session(Provider.STRIPE, {"merchantId": "m_1"}, 1.0)
    assert exc.value.error_type == error_type


def test_gateway_maps_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(DownstreamProviderError) as exc:
        gateway_with(handler).open_session(Provider.STRIPE, {"merchantId": "m_1"}, 1.0)
    assert exc.value.error_type == "TIMEOUT"


def test_session_without_id_is_an_error():
    adapter = HostedCheckoutAdapter(Provider.STRIPE, "pi_", {}, gateway_with(lambda r: httpx.Response(200, json={})))
    with pytest.raises(DownstreamProviderError) as exc:
        adapter.create_session(command())
    assert exc.value.error_type == "UNKNOWN"


def test_providers_without_endpoint_use_sandbox_sessions():
    adapters = build_adapters("http://shop.test", gateway_with(lambda r: httpx.Response(500)))
    result = adapters[Provider.ADYEN].create_session(
        command(provider_config={"clientKey": "test_CK", "environment": "test"})
    )
    assert result.provider_ref.startswith("CS")
    assert result.checkout_config["sandbox"] is True
    assert result.checkout_config["clientKey"] == "test_CK"
    assert Provider.PAYPAL not in adapters


def test_demo_adapter():
    demo = DemoAdapter("http://shop.test/")
    result = demo.create_session(command())
    assert result.provider_ref == "demo_pi_1"
    assert result.checkout_config["checkoutUrl"] == "http://shop.test/demo-checkout/pi_1"
    assert demo.authorize(None, DemoAuthorizeRequest(cvv="123"))
    assert not demo.authorize(None, DemoAuthorizeRequest(cvv="000"))


def test_hosted_adapter_has_no_demo_actions():
    adapter = build_adapters("http://shop.test")[Provider.STRIPE]
    with pytest.raises(IllegalTransitionError):
        adapter.authorize(None, DemoAuthorizeRequest())
    with pytest.raises(IllegalTransitionError):
        adapter.cancel(None)
