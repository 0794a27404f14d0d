import threading
from typing import Any, Dict, List, Optional

from .models import PaymentEventRecord, PaymentIntent, PaymentStatus, RoutingDecision


class VersionConflict(Exception):
    def __init__(self, intent_id: str, expected: int, actual: int):
        self.intent_id = intent_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Intent {intent_id} is at version {actual}, expected {expected}")


class IntentStore:
    """Append-only intent table with per-row compare-and-set."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._intents: Dict[str, PaymentIntent] = {}
        self._checkout: Dict[str, Dict[str, Any]] = {}
        self._chains: Dict[str, List[str]] = {}

    def insert(self, intent: PaymentIntent) -> PaymentIntent:
        with self._lock:
            if intent.id in self._intents:
                raise KeyError(f"Intent {intent.id} already exists")
            self._intents[intent.id] = intent
            self._chains.setdefault(intent.rootPaymentIntentId, []).append(intent.id)
            return intent

    def get(self, intent_id: str) -> Optional[PaymentIntent]:
        return self._intents.get(intent_id)

    def compare_and_set(self, intent: PaymentIntent, expected_version: int) -> PaymentIntent:
        with self._lock:
            current = self._intents.get(intent.id)
            if current is None:
                raise KeyError(f"Intent {intent.id} not found")
            if current.version != expected_version:
                raise VersionConflict(intent.id, expected_version, current.version)
            stored = intent.model_copy(update={"version": expected_version + 1})
            self._intents[intent.id] = stored
            return stored

    def list_for_merchant(self, merchant_id: str, status: Optional[PaymentStatus] = None) -> List[PaymentIntent]:
        with self._lock:
            items = [i for i in self._intents.values() if i.merchantId == merchant_id]
        if status is not None:
            items = [i for i in items if i.status == status]
        return sorted(items, key=lambda i: i.createdAt)

    def chain(self, root_id: str) -> List[PaymentIntent]:
        with self._lock:
            return [self._intents[i] for i in self._chains.get(root_id, [])]

    def latest_attempt(self, root_id: str) -> int:
        return max((i.attemptNumber for i in self.chain(root_id)), default=0)

    def put_checkout(self, intent_id: str, checkout: Dict[str, Any]) -> None:
        with self._lock:
            self._checkout[intent_id] = dict(checkout)

    def get_checkout(self, intent_id: str) -> Dict[str, Any]:
        return dict(self._checkout.get(intent_id, {}))

    def clear(self) -> None:
        with self._lock:
            self._intents.clear()
            self._checkout.clear()
            self._chains.clear()


class RoutingDecisionLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._decisions: Dict[str, RoutingDecision] = {}
        self._by_intent: Dict[str, str] = {}

    def put(self, decision: RoutingDecision) -> None:
        with self._lock:
            if decision.intentId in self._by_intent:
                raise KeyError(f"Intent {decision.intentId} already has a routing decision")
            self._decisions[decision.id] = decision
            self._by_intent[decision.intentId] = decision.id

    def get(self, decision_id: str) -> Optional[RoutingDecision]:
        return self._decisions.get(decision_id)

    def for_intent(self, intent_id: str) -> Optional[RoutingDecision]:
        decision_id = self._by_intent.get(intent_id)
        return self._decisions.get(decision_id) if decision_id else None

    def __len__(self) -> int:
        return len(self._decisions)

    def clear(self) -> None:
        with self._lock:
            self._decisions.clear()
            self._by_intent.clear()


class PaymentEventLog:
    """Append-only audit trail of what happened to each intent."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_intent: Dict[str, List[PaymentEventRecord]] = {}

    def append(self, record: PaymentEventRecord) -> None:
        with self._lock:
            self._by_intent.setdefault(record.intentId, []).append(record)

    def for_intent(self, intent_id: str) -> List[PaymentEventRecord]:
        with self._lock:
            return list(self._by_intent.get(intent_id, []))

    def clear(self) -> None:
        with self._lock:
            self._by_intent.clear()
