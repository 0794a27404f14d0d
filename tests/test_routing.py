import pytest

from app.errors import ProviderNotSelectableError
from app.models import Provider
from app.registry import Registry
from app.routing import RoutingEngine, choose_provider
from app.storage import RoutingDecisionLog

from helpers import ADYEN_OK, STRIPE_OK

IMPLEMENTED = (Provider.STRIPE, Provider.ADYEN, Provider.MASTERCARD, Provider.DEMO)


def make_registry(providers_file, *providers):
    return Registry(path=providers_file(*providers), implemented=IMPLEMENTED)


def test_basic_routing(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    provider, reason, candidates = choose_provider("AUTO", frozenset(), reg.priority, reg.status)
    assert provider == Provider.STRIPE
    assert reason == "AUTO_SELECTED"
    assert [c.outcome for c in candidates] == ["selected", "skipped", "skipped", "skipped"]


def test_auto_skips_excluded_provider(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    provider, reason, candidates = choose_provider(
        "AUTO", frozenset({Provider.STRIPE}), reg.priority, reg.status
    )
    assert provider == Provider.ADYEN
    assert candidates[0].outcome == "excluded"


def test_auto_never_picks_unselectable(providers_file):
    disabled_stripe = dict(STRIPE_OK, enabled=False)
    adyen_missing = {"provider": "ADYEN", "enabled": True, "config": {"apiKey": "x"}}
    reg = make_registry(providers_file, disabled_stripe, adyen_missing)
    reg.set_health(Provider.MASTERCARD, "down")

    provider, reason, candidates = choose_provider("AUTO", frozenset(), reg.priority, reg.status)
    assert provider == Provider.DEMO
    assert reason == "DEMO_MODE"
    reasons = {c.provider: c.reason for c in candidates}
    assert reasons[Provider.STRIPE] == "DISABLED"
    assert reasons[Provider.ADYEN] == "MISSING_FIELDS:merchantAccount,clientKey"


def test_unhealthy_provider_skipped(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    reg.set_health(Provider.STRIPE, "down")
    provider, _, _ = choose_provider("AUTO", frozenset(), reg.priority, reg.status)
    assert provider == Provider.ADYEN


def test_explicit_provider_selected(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    provider, reason, _ = choose_provider("ADYEN", frozenset(), reg.priority, reg.status)
    assert provider == Provider.ADYEN
    assert reason == "EXPLICIT_SELECTED"


def test_explicit_unselectable_provider_raises(providers_file):
    reg = make_registry(providers_file)
    with pytest.raises(ProviderNotSelectableError) as exc:
        choose_provider("STRIPE", frozenset(), reg.priority, reg.status)
    assert exc.value.reason == "MISSING_FIELDS:secretKey,publishableKey"


def test_explicit_excluded_provider_raises(providers_file):
    reg = make_registry(providers_file, STRIPE_OK)
    with pytest.raises(ProviderNotSelectableError) as exc:
        choose_provider("STRIPE", frozenset({Provider.STRIPE}), reg.priority, reg.status)
    assert exc.value.reason == "EXCLUDED"


def test_explicit_demo_always_allowed(providers_file):
    reg = make_registry(providers_file)
    provider, reason, _ = choose_provider("DEMO", frozenset(), reg.priority, reg.status)
    assert provider == Provider.DEMO
    assert reason == "EXPLICIT_SELECTED"


def test_no_demo_fallback_when_disabled(providers_file):
    reg = make_registry(providers_file)
    with pytest.raises(ProviderNotSelectableError) as exc:
        choose_provider("AUTO", frozenset(), reg.priority, reg.status, demo_fallback=False)
    assert exc.value.reason == "NO_PROVIDER_AVAILABLE"


def test_engine_records_decision(providers_file):
    reg = make_registry(providers_file, STRIPE_OK)
    log = RoutingDecisionLog()
    engine = RoutingEngine(reg, log)

    decision = engine.route("m_1", "AUTO", intent_id="pi_1")
    assert decision.chosenProvider == Provider.STRIPE
    assert log.get(decision.id) == decision
    assert log.for_intent("pi_1") == decision


def test_engine_reason_override_keeps_demo_mode(providers_file):
    reg = make_registry(providers_file)
    engine = RoutingEngine(reg, RoutingDecisionLog())
    decision = engine.route("m_1", "AUTO", intent_id="pi_2", reason_code="USER_RETRY")
    assert decision.reasonCode == "DEMO_MODE"


def test_routing_is_deterministic(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    picks = {choose_provider("AUTO", frozenset(), reg.priority, reg.status)[0] for _ in range(20)}
    assert picks == {Provider.STRIPE}


def test_forced_provider_replaces_auto_selection(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    provider, reason, candidates = choose_provider(
        "AUTO", frozenset(), reg.priority, reg.status, forced=Provider.ADYEN
    )
    assert provider == Provider.ADYEN
    assert reason == "MERCHANT_FORCE_PROVIDER"
    assert [c.reason for c in candidates] == ["FORCED"]


def test_forced_provider_ignored_for_explicit_preference(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    provider, reason, _ = choose_provider("STRIPE", frozenset(), reg.priority, reg.status, forced=Provider.ADYEN)
    assert provider == Provider.STRIPE
    assert reason == "EXPLICIT_SELECTED"


def test_excluded_forced_provider_falls_through_to_priority(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    provider, reason, _ = choose_provider(
        "AUTO", frozenset({Provider.ADYEN}), reg.priority, reg.status, forced=Provider.ADYEN
    )
    assert provider == Provider.STRIPE
    assert reason == "AUTO_SELECTED"


def test_unselectable_forced_provider_raises(providers_file):
    reg = make_registry(providers_file, STRIPE_OK)
    with pytest.raises(ProviderNotSelectableError) as exc:
        choose_provider("AUTO", frozenset(), reg.priority, reg.status, forced=Provider.ADYEN)
    assert exc.value.reason.startswith("MISSING_FIELDS:")


def test_engine_uses_merchant_forced_provider(providers_file):
    reg = make_registry(providers_file, STRIPE_OK, ADYEN_OK)
    reg.set_forced_provider("m_1", Provider.ADYEN)
    engine = RoutingEngine(reg, RoutingDecisionLog())
    assert engine.route("m_1", "AUTO", intent_id="pi_1").chosenProvider == Provider.ADYEN
    assert engine.route("m_2", "AUTO", intent_id="pi_2").chosenProvider == Provider.STRIPE
