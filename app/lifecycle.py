"""
Payment intent state machine.

``transition`` is pure: it returns a new intent value and never touches a
store. Persisting the result (with a version check) is the caller's job.
"""
import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from .errors import IllegalTransitionError
from .models import FINAL_STATUSES, TERMINAL_STATUSES, PaymentIntent, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

S = PaymentStatus


class Event(str, Enum):
    CREATE = "create"
    PROVIDER_REQUIRES_METHOD = "providerRequiresMethod"
    PROVIDER_PROCESSING = "providerProcessing"
    PROVIDER_SUCCEEDED = "providerSucceeded"
    PROVIDER_FAILED = "providerFailed"
    DEMO_AUTHORIZE_APPROVE = "demoAuthorizeApprove"
    DEMO_AUTHORIZE_DECLINE = "demoAuthorizeDecline"
    DEMO_CANCEL = "demoCancel"
    REFUND = "refund"


_OPEN = frozenset({S.CREATED, S.REQUIRES_PAYMENT_METHOD, S.PROCESSING})

TRANSITIONS: Dict[Event, Tuple[FrozenSet[PaymentStatus], PaymentStatus]] = {
    Event.PROVIDER_REQUIRES_METHOD: (frozenset({S.CREATED}), S.REQUIRES_PAYMENT_METHOD),
    Event.PROVIDER_PROCESSING: (frozenset({S.CREATED, S.REQUIRES_PAYMENT_METHOD}), S.PROCESSING),
    Event.PROVIDER_SUCCEEDED: (_OPEN, S.SUCCEEDED),
    Event.PROVIDER_FAILED: (_OPEN, S.FAILED),
    Event.DEMO_AUTHORIZE_APPROVE: (_OPEN, S.SUCCEEDED),
    Event.DEMO_AUTHORIZE_DECLINE: (_OPEN, S.FAILED),
    Event.REFUND: (frozenset({S.SUCCEEDED}), S.REFUNDED),
}

# Demo outcomes must never flip silently, so reapplying them is an error.
_STRICT = frozenset({Event.DEMO_AUTHORIZE_APPROVE, Event.DEMO_AUTHORIZE_DECLINE, Event.DEMO_CANCEL})


def target_status(current: PaymentStatus, event: Event) -> PaymentStatus:
    if event == Event.DEMO_CANCEL:
        if current in TERMINAL_STATUSES:
            raise _illegal(current, event)
        return S.REFUNDED if current == S.SUCCEEDED else S.FAILED
    if event == Event.CREATE:
        raise _illegal(current, event)

    allowed, target = TRANSITIONS[event]
    if event in _STRICT and current in FINAL_STATUSES:
        raise _illegal(current, event)
    if current == target:
        return target
    if current not in allowed:
        raise _illegal(current, event)
    return target


def transition(intent: PaymentIntent, event: Event, failure_reason: Optional[str] = None,
               provider_ref: Optional[str] = None) -> PaymentIntent:
    target = target_status(intent.status, event)
    if target == intent.status:
        logger.debug("Intent %s already %s, %s is a no-op", intent.id, target.value, event.value)
        return intent

    update = {"status": target, "updatedAt": utcnow()}
    if failure_reason and target == S.FAILED:
        update["failureReason"] = failure_reason
    if provider_ref and not intent.providerRef:
        update["providerRef"] = provider_ref
    logger.info("Intent %s %s -> %s (%s)", intent.id, intent.status.value, target.value, event.value)
    return intent.model_copy(update=update)


def _illegal(current: PaymentStatus, event: Event) -> IllegalTransitionError:
    return IllegalTransitionError(
        f"Event {event.value} not allowed in status {current.value}",
        field="status",
        context={"status": current.value, "event": event.value},
    )
