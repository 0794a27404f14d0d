import logging
import uuid
from typing import AbstractSet, Callable, List, Optional, Tuple

from .errors import ProviderNotSelectableError
from .models import AUTO, Candidate, Provider, ProviderStatus, ReasonCode, RoutingDecision
from .registry import Registry
from .storage import RoutingDecisionLog

logger = logging.getLogger(__name__)


def choose_provider(
    preference: str,
    excluded: AbstractSet[Provider],
    priority: List[Provider],
    status_of: Callable[[Provider], ProviderStatus],
    demo_fallback: bool = True,
    forced: Optional[Provider] = None,
) -> Tuple[Provider, str, List[Candidate]]:
    """Pick a provider for ``preference``; returns (provider, reason code, candidates).

    ``forced`` is the merchant's pinned provider. It replaces AUTO selection
    unless the caller excluded it, and must itself be selectable.
    """
    if preference != AUTO:
        chosen = Provider(preference)
        if chosen != Provider.DEMO:
            if chosen in excluded:
                raise ProviderNotSelectableError(chosen.value, "EXCLUDED")
            status = status_of(chosen)
            if not status.selectable:
                raise ProviderNotSelectableError(chosen.value, status.reason)
        return chosen, ReasonCode.EXPLICIT_SELECTED.value, [
            Candidate(provider=chosen, outcome="selected", reason="EXPLICIT")
        ]

    if forced is not None and forced not in excluded:
        if forced != Provider.DEMO:
            status = status_of(forced)
            if not status.selectable:
                raise ProviderNotSelectableError(forced.value, status.reason)
        return forced, ReasonCode.MERCHANT_FORCE_PROVIDER.value, [
            Candidate(provider=forced, outcome="selected", reason="FORCED")
        ]

    candidates: List[Candidate] = []
    selected: Optional[Provider] = None
    for p in priority:
        if selected is not None:
            candidates.append(Candidate(provider=p, outcome="skipped"))
            continue
        if p in excluded:
            candidates.append(Candidate(provider=p, outcome="excluded", reason="EXCLUDED"))
            continue
        status = status_of(p)
        if not status.selectable:
            candidates.append(Candidate(provider=p, outcome="unselectable", reason=status.reason))
            continue
        selected = p
        candidates.append(Candidate(provider=p, outcome="selected", reason="PRIORITY"))

    if selected is not None:
        return selected, ReasonCode.AUTO_SELECTED.value, candidates

    if not demo_fallback:
        raise ProviderNotSelectableError(None, "NO_PROVIDER_AVAILABLE")
    candidates.append(Candidate(provider=Provider.DEMO, outcome="selected", reason=ReasonCode.DEMO_MODE.value))
    return Provider.DEMO, ReasonCode.DEMO_MODE.value, candidates


class RoutingEngine:
    def __init__(self, registry: Registry, decisions: RoutingDecisionLog, demo_fallback: bool = True) -> None:
        self._registry = registry
        self._decisions = decisions
        self._demo_fallback = demo_fallback

    def route(
        self,
        merchant_id: str,
        preference: str = AUTO,
        excluded: AbstractSet[Provider] = frozenset(),
        intent_id: Optional[str] = None,
        reason_code: Optional[str] = None,
    ) -> RoutingDecision:
        """Choose a provider and record the decision before returning it.

        ``reason_code`` replaces the computed code for successful choices
        (reroutes report USER_RETRY / USER_RETRY_OTHER_PROVIDER), except that
        a fallback to DEMO is always reported as DEMO_MODE.
        """
        provider, reason, candidates = choose_provider(
            preference,
            excluded,
            self._registry.priority,
            lambda p: self._registry.status(p, merchant_id),
            self._demo_fallback,
            forced=self._registry.forced_provider(merchant_id),
        )
        if reason_code and reason != ReasonCode.DEMO_MODE.value:
            reason = reason_code

        decision = RoutingDecision(
            id=str(uuid.uuid4()),
            intentId=intent_id or str(uuid.uuid4()),
            merchantId=merchant_id,
            chosenProvider=provider,
            reasonCode=reason,
            candidates=candidates,
        )
        self._decisions.put(decision)
        logger.info(
            "Routed intent %s for merchant %s to %s (%s)",
            decision.intentId, merchant_id, provider.value, reason,
        )
        return decision
