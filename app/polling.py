"""
Client-side helpers for consumers that wait on an intent's outcome.

Every checkout surface polls the same way: re-read the intent on a fixed
interval until a final status shows up or the wait budget runs out.
``IntentPoller`` is that loop, independent of transport;
``OrchestratorClient`` is an httpx client bound to an explicit
``ClientSession`` rather than ambient credentials.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from .models import FINAL_STATUSES, PaymentStatus

logger = logging.getLogger(__name__)


def is_final(status: str) -> bool:
    return PaymentStatus(status) in FINAL_STATUSES


@dataclass
class PollResult:
    intent: Dict[str, Any]
    polls: int
    timed_out: bool

    @property
    def status(self) -> str:
        return self.intent["status"]


class IntentPoller:
    def __init__(
        self,
        fetch: Callable[[str], Dict[str, Any]],
        interval: float = 2.0,
        max_wait: float = 120.0,
        is_done: Callable[[str], bool] = is_final,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._interval = interval
        self._max_wait = max_wait
        self._is_done = is_done
        self._sleep = sleep
        self._clock = clock

    def wait(self, intent_id: str, on_update: Optional[Callable[[Dict[str, Any]], None]] = None) -> PollResult:
        deadline = self._clock() + self._max_wait
        polls = 0
        last_status = None
        while True:
            intent = self._fetch(intent_id)
            polls += 1
            if intent["status"] != last_status:
                last_status = intent["status"]
                logger.debug("Intent %s is %s", intent_id, last_status)
                if on_update:
                    on_update(intent)
            if self._is_done(intent["status"]):
                return PollResult(intent, polls, False)
            if self._clock() + self._interval > deadline:
                return PollResult(intent, polls, True)
            self._sleep(self._interval)


@dataclass(frozen=True)
class ClientSession:
    base_url: str
    api_key: str
    timeout: float = 10.0


class OrchestratorClient:
    def __init__(self, session: ClientSession, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.session = session
        self._http = httpx.Client(
            base_url=session.base_url,
            headers={"X-Api-Key": session.api_key},
            timeout=session.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "OrchestratorClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _json(self, resp: httpx.Response) -> Any:
        resp.raise_for_status()
        return resp.json()

    def create_intent(self, amount_minor: int, currency: str, description: Optional[str] = None,
                      provider_preference: str = "AUTO", idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        body = {
            "amountMinor": amount_minor,
            "currency": currency,
            "description": description,
            "providerPreference": provider_preference,
        }
        return self._json(self._http.post("/payment-intents", json=body, headers=headers))

    def get_intent(self, intent_id: str) -> Dict[str, Any]:
        return self._json(self._http.get(f"/payment-intents/{intent_id}"))["paymentIntent"]

    def list_intents(self) -> List[Dict[str, Any]]:
        return self._json(self._http.get("/payment-intents"))

    def reroute(self, intent_id: str, reason: str, provider: Optional[str] = None) -> Dict[str, Any]:
        body = {"reason": reason, "provider": provider}
        return self._json(self._http.post(f"/payment-intents/{intent_id}/reroute", json=body))

    def poller(self, interval: float = 2.0, max_wait: float = 120.0) -> IntentPoller:
        return IntentPoller(self.get_intent, interval=interval, max_wait=max_wait)
