import json
import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .errors import ValidationError
from .models import AUTO, Provider, ProviderConfig, ProviderConfigFile, ProviderStatus

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: Dict[Provider, List[str]] = {
    Provider.STRIPE: ["secretKey", "publishableKey"],
    Provider.ADYEN: ["apiKey", "merchantAccount", "clientKey"],
    Provider.MASTERCARD: ["gatewayHost", "apiVersion", "merchantId", "apiPassword"],
    Provider.PAYPAL: ["clientId", "clientSecret"],
    Provider.DEMO: [],
}

# Public values that may be shown to operators unmasked.
PUBLIC_FIELDS = {"publishableKey", "clientKey", "merchantAccount", "environment", "gatewayHost", "apiVersion"}


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Consecutive-failure breaker fed by provider session outcomes.

    OPEN turns into HALF_OPEN once ``reset_timeout`` has elapsed since the
    last failure; the first success then closes it, a failure re-opens it.
    """

    def __init__(self, name: str, failure_threshold: int, reset_timeout: float,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self.last_failure_time >= self.reset_timeout:
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit breaker %s entering half-open state", self.name)
        return self._state

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker %s closed after successful recovery", self.name)
        self._state = CircuitState.CLOSED
        self.failure_count = 0

    def record_failure(self) -> None:
        state = self.state
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if state == CircuitState.HALF_OPEN or (
            state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            logger.warning("Circuit breaker %s opened after %d failures", self.name, self.failure_count)


def missing_fields(provider: Provider, config: Dict[str, str]) -> List[str]:
    return [f for f in REQUIRED_FIELDS.get(provider, []) if not (config.get(f) or "").strip()]


def mask(value: str) -> str:
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


class Registry:
    """Provider configuration plus liveness, answering "may we route here?".

    Credentials and the enabled flag can be overridden per merchant; health
    and circuit state are shared, since they describe the provider itself.
    """

    def __init__(
        self,
        path: str,
        priority: Iterable[str] = ("STRIPE", "ADYEN", "MASTERCARD", "PAYPAL"),
        implemented: Iterable[Provider] = (),
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()
        self._priority = [Provider(p) for p in priority if Provider(p) != Provider.DEMO]
        self._implemented = set(implemented)
        self._configs: Dict[Provider, ProviderConfig] = {}
        self._merchant_configs: Dict[str, Dict[Provider, ProviderConfig]] = {}
        self._forced: Dict[str, Provider] = {}
        self._down: set = set()
        self._breakers = {
            p: CircuitBreaker(p.value, failure_threshold, reset_timeout, clock)
            for p in Provider if p != Provider.DEMO
        }
        self.reload()

    @property
    def priority(self) -> List[Provider]:
        return list(self._priority)

    def reload(self) -> None:
        if self._path.exists():
            data = json.loads(self._path.read_text())
            reg = ProviderConfigFile(**data)
        else:
            logger.warning("Provider config %s not found, no providers configured", self._path)
            reg = ProviderConfigFile(providers=[])

        configs = {c.provider: c for c in reg.providers}
        for c in configs.values():
            c.missingFields = missing_fields(c.provider, c.config)
        merchant_configs: Dict[str, Dict[Provider, ProviderConfig]] = {}
        forced: Dict[str, Provider] = {}
        for m in reg.merchants:
            for c in m.providers:
                c.missingFields = missing_fields(c.provider, c.config)
                c.scope = "merchant"
            merchant_configs[m.merchantId] = {c.provider: c for c in m.providers if c.provider != Provider.DEMO}
            if m.forceProvider != AUTO:
                forced[m.merchantId] = Provider(m.forceProvider)

        with self._lock:
            self._configs = configs
            self._merchant_configs = merchant_configs
            self._forced = forced
        logger.info("Loaded provider configs: %s (merchant overrides: %d)",
                    sorted(p.value for p in configs), len(merchant_configs))

    def replace(self, configs: List[ProviderConfig]) -> None:
        for c in configs:
            c.missingFields = missing_fields(c.provider, c.config)
        with self._lock:
            self._configs = {c.provider: c for c in configs}

    def get_config(self, provider: Provider, merchant_id: Optional[str] = None) -> ProviderConfig:
        """Effective config: the merchant's own entry when it has one, else the global one."""
        with self._lock:
            cfg = None
            if merchant_id is not None:
                cfg = self._merchant_configs.get(merchant_id, {}).get(provider)
            if cfg is None:
                cfg = self._configs.get(provider)
            if cfg is None:
                cfg = ProviderConfig(provider=provider, missingFields=list(REQUIRED_FIELDS.get(provider, [])))
            return cfg.model_copy(deep=True)

    def list_configs(self, merchant_id: Optional[str] = None) -> List[ProviderConfig]:
        out = []
        for p in self._priority:
            cfg = self.get_config(p, merchant_id)
            cfg.config = {k: (v if k in PUBLIC_FIELDS else mask(v)) for k, v in cfg.config.items()}
            out.append(cfg)
        return out

    def upsert_merchant_config(self, merchant_id: str, provider: Provider, enabled: bool,
                               config: Dict[str, str]) -> ProviderConfig:
        if provider == Provider.DEMO:
            raise ValidationError("DEMO does not require configuration", field="provider")
        with self._lock:
            current = self._merchant_configs.get(merchant_id, {}).get(provider)
            merged = dict(current.config) if current else {}
            # Blank values keep what is already stored.
            merged.update({k: v for k, v in config.items() if v and v.strip()})
            missing = missing_fields(provider, merged)
            if enabled and missing:
                raise ValidationError(
                    f"Missing required fields for {provider.value}: {', '.join(missing)}",
                    field=missing[0],
                    context={"missingFields": missing},
                )
            cfg = ProviderConfig(provider=provider, enabled=enabled, config=merged,
                                 missingFields=missing, scope="merchant")
            self._merchant_configs.setdefault(merchant_id, {})[provider] = cfg
        logger.info("Merchant %s %s config updated enabled=%s", merchant_id, provider.value, enabled)
        masked = cfg.model_copy(deep=True)
        masked.config = {k: (v if k in PUBLIC_FIELDS else mask(v)) for k, v in merged.items()}
        return masked

    def forced_provider(self, merchant_id: Optional[str]) -> Optional[Provider]:
        with self._lock:
            return self._forced.get(merchant_id) if merchant_id else None

    def set_forced_provider(self, merchant_id: str, provider: Optional[Provider]) -> None:
        with self._lock:
            if provider is None:
                self._forced.pop(merchant_id, None)
            else:
                self._forced[merchant_id] = provider
        logger.info("Merchant %s force provider set to %s", merchant_id, provider.value if provider else AUTO)

    def set_enabled(self, provider: Provider, enabled: bool) -> bool:
        if provider == Provider.DEMO:
            return False
        with self._lock:
            cfg = self._configs.get(provider)
            if cfg is None:
                cfg = ProviderConfig(provider=provider, missingFields=missing_fields(provider, {}))
                self._configs[provider] = cfg
            cfg.enabled = enabled
        logger.info("Provider %s enabled=%s", provider.value, enabled)
        return True

    def set_health(self, provider: Provider, state: str) -> bool:
        if provider == Provider.DEMO or state not in ("healthy", "down"):
            return False
        with self._lock:
            if state == "down":
                self._down.add(provider)
            else:
                self._down.discard(provider)
                self._breakers[provider].record_success()
        logger.info("Provider %s marked %s", provider.value, state)
        return True

    def record_outcome(self, provider: Provider, ok: bool) -> None:
        if provider == Provider.DEMO:
            return
        with self._lock:
            breaker = self._breakers[provider]
            if ok:
                breaker.record_success()
            else:
                breaker.record_failure()

    def status(self, provider: Provider, merchant_id: Optional[str] = None) -> ProviderStatus:
        if provider == Provider.DEMO:
            return ProviderStatus(
                provider=provider, configured=True, enabled=True, healthy=True, selectable=True, reason="DEMO"
            )
        with self._lock:
            cfg = self.get_config(provider, merchant_id)
            circuit = self._breakers[provider].state
            down = provider in self._down

        configured = not cfg.missingFields
        healthy = provider in self._implemented and not down and circuit != CircuitState.OPEN
        if not configured:
            reason = "MISSING_FIELDS:" + ",".join(cfg.missingFields)
        elif not cfg.enabled:
            reason = "DISABLED"
        elif provider not in self._implemented:
            reason = "NOT_IMPLEMENTED"
        elif not healthy:
            reason = "UNHEALTHY"
        else:
            reason = "OK"
        return ProviderStatus(
            provider=provider,
            configured=configured,
            enabled=cfg.enabled,
            healthy=healthy,
            selectable=configured and cfg.enabled and healthy,
            reason=reason,
            circuitState=circuit.value,
        )

    def is_selectable(self, provider: Provider, merchant_id: Optional[str] = None) -> bool:
        return self.status(provider, merchant_id).selectable

    def list_statuses(self, merchant_id: Optional[str] = None) -> List[ProviderStatus]:
        return [self.status(p, merchant_id) for p in self._priority] + [self.status(Provider.DEMO)]

    def count(self) -> int:
        with self._lock:
            return len(self._configs)
