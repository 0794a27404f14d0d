import json

import pytest

from app.errors import ValidationError
from app.models import Provider, ProviderConfig
from app.registry import CircuitBreaker, CircuitState, Registry

from helpers import STRIPE_OK

IMPLEMENTED = (Provider.STRIPE, Provider.ADYEN, Provider.MASTERCARD, Provider.DEMO)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_missing_fields_reason(providers_file):
    reg = Registry(path=providers_file({"provider": "STRIPE", "enabled": True, "config": {"secretKey": "sk"}}),
                   implemented=IMPLEMENTED)
    st = reg.status(Provider.STRIPE)
    assert not st.configured
    assert not st.selectable
    assert st.reason == "MISSING_FIELDS:publishableKey"


def test_blank_values_count_as_missing(providers_file):
    reg = Registry(path=providers_file({"provider": "STRIPE", "enabled": True,
                                        "config": {"secretKey": "  ", "publishableKey": "pk"}}),
                   implemented=IMPLEMENTED)
    assert reg.status(Provider.STRIPE).reason == "MISSING_FIELDS:secretKey"


def test_disabled_reason(providers_file):
    reg = Registry(path=providers_file(dict(STRIPE_OK, enabled=False)), implemented=IMPLEMENTED)
    st = reg.status(Provider.STRIPE)
    assert st.configured and not st.enabled
    assert st.reason == "DISABLED"


def test_not_implemented_reason(providers_file):
    paypal = {"provider": "PAYPAL", "enabled": True, "config": {"clientId": "id", "clientSecret": "s"}}
    reg = Registry(path=providers_file(paypal), implemented=IMPLEMENTED)
    st = reg.status(Provider.PAYPAL)
    assert st.configured and st.enabled and not st.healthy
    assert st.reason == "NOT_IMPLEMENTED"


def test_operator_down_is_unhealthy(providers_file):
    reg = Registry(path=providers_file(STRIPE_OK), implemented=IMPLEMENTED)
    assert reg.is_selectable(Provider.STRIPE)
    assert reg.set_health(Provider.STRIPE, "down")
    assert reg.status(Provider.STRIPE).reason == "UNHEALTHY"
    reg.set_health(Provider.STRIPE, "healthy")
    assert reg.status(Provider.STRIPE).reason == "OK"


def test_demo_always_selectable(providers_file):
    reg = Registry(path=providers_file(), implemented=IMPLEMENTED)
    st = reg.status(Provider.DEMO)
    assert st.selectable and st.reason == "DEMO"
    assert not reg.set_enabled(Provider.DEMO, False)
    assert not reg.set_health(Provider.DEMO, "down")
    assert reg.is_selectable(Provider.DEMO)


def test_missing_config_file_means_nothing_configured(tmp_path):
    reg = Registry(path=str(tmp_path / "nope.json"), implemented=IMPLEMENTED)
    assert [s.provider for s in reg.list_statuses() if s.selectable] == [Provider.DEMO]


def test_set_enabled_and_reload(providers_file):
    path = providers_file(dict(STRIPE_OK, enabled=False))
    reg = Registry(path=path, implemented=IMPLEMENTED)
    reg.set_enabled(Provider.STRIPE, True)
    assert reg.is_selectable(Provider.STRIPE)
    reg.reload()
    assert not reg.is_selectable(Provider.STRIPE)


def test_list_configs_masks_secrets(providers_file):
    reg = Registry(path=providers_file(STRIPE_OK), implemented=IMPLEMENTED)
    stripe = reg.list_configs()[0]
    assert stripe.config["secretKey"] == "****_123"
    assert stripe.config["publishableKey"] == "pk_test_123"
    assert reg.get_config(Provider.STRIPE).config["secretKey"] == "sk_test_123"


def test_replace_recomputes_missing_fields(providers_file):
    reg = Registry(path=providers_file(), implemented=IMPLEMENTED)
    reg.replace([ProviderConfig(provider=Provider.ADYEN, enabled=True, config={"apiKey": "k"})])
    assert reg.get_config(Provider.ADYEN).missingFields == ["merchantAccount", "clientKey"]


def test_circuit_opens_after_threshold(providers_file):
    clock = FakeClock()
    reg = Registry(path=providers_file(STRIPE_OK), implemented=IMPLEMENTED,
                   failure_threshold=2, reset_timeout=30, clock=clock)
    reg.record_outcome(Provider.STRIPE, False)
    assert reg.is_selectable(Provider.STRIPE)
    reg.record_outcome(Provider.STRIPE, False)
    st = reg.status(Provider.STRIPE)
    assert st.reason == "UNHEALTHY"
    assert st.circuitState == "OPEN"

    clock.now += 31
    st = reg.status(Provider.STRIPE)
    assert st.circuitState == "HALF_OPEN"
    assert st.selectable

    reg.record_outcome(Provider.STRIPE, True)
    assert reg.status(Provider.STRIPE).circuitState == "CLOSED"


def test_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker("STRIPE", failure_threshold=3, reset_timeout=10, clock=clock)
    for _ in range(3):
        breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    clock.now += 10
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN


def test_success_resets_failure_count():
    breaker = CircuitBreaker("ADYEN", failure_threshold=2, reset_timeout=10, clock=FakeClock())
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED


def test_merchant_section_overrides_global_config(tmp_path):
    path = tmp_path / "providers.json"
    path.write_text(json.dumps({
        "providers": [STRIPE_OK],
        "merchants": [{
            "merchantId": "m_alpha",
            "forceProvider": "STRIPE",
            "providers": [{"provider": "STRIPE", "enabled": False, "config": STRIPE_OK["config"]}],
        }],
    }))
    reg = Registry(path=str(path), implemented=IMPLEMENTED)
    assert reg.status(Provider.STRIPE).selectable
    assert reg.status(Provider.STRIPE, "m_alpha").reason == "DISABLED"
    assert reg.status(Provider.STRIPE, "m_beta").selectable
    assert reg.get_config(Provider.STRIPE, "m_alpha").scope == "merchant"
    assert reg.forced_provider("m_alpha") == Provider.STRIPE
    assert reg.forced_provider("m_beta") is None


def test_upsert_merchant_config_merges_and_validates(providers_file):
    reg = Registry(path=providers_file(), implemented=IMPLEMENTED)
    with pytest.raises(ValidationError) as exc:
        reg.upsert_merchant_config("m_alpha", Provider.STRIPE, True, {"secretKey": "sk_test_123"})
    assert exc.value.context["missingFields"] == ["publishableKey"]

    saved = reg.upsert_merchant_config("m_alpha", Provider.STRIPE, False, {"secretKey": "sk_test_123"})
    assert saved.config["secretKey"] == "****_123"
    assert saved.missingFields == ["publishableKey"]

    saved = reg.upsert_merchant_config("m_alpha", Provider.STRIPE, True, {"secretKey": " ", "publishableKey": "pk_1"})
    assert saved.enabled
    assert reg.get_config(Provider.STRIPE, "m_alpha").config == {"secretKey": "sk_test_123", "publishableKey": "pk_1"}
    assert reg.status(Provider.STRIPE, "m_alpha").selectable
    assert not reg.status(Provider.STRIPE).selectable


def test_demo_has_no_merchant_config(providers_file):
    reg = Registry(path=providers_file(), implemented=IMPLEMENTED)
    with pytest.raises(ValidationError) as exc:
        reg.upsert_merchant_config("m_alpha", Provider.DEMO, True, {})
    assert exc.value.field == "provider"


def test_reload_drops_runtime_merchant_overrides(providers_file):
    reg = Registry(path=providers_file(STRIPE_OK), implemented=IMPLEMENTED)
    reg.set_forced_provider("m_alpha", Provider.STRIPE)
    reg.upsert_merchant_config("m_alpha", Provider.STRIPE, False, dict(STRIPE_OK["config"]))
    assert reg.status(Provider.STRIPE, "m_alpha").reason == "DISABLED"
    reg.reload()
    assert reg.forced_provider("m_alpha") is None
    assert reg.status(Provider.STRIPE, "m_alpha").selectable
