"""
Idempotency guard for intent creation.

Requests are scoped by ``(merchant_id, idempotency_key)``. The first request
for a scope runs the creation while holding that scope's lock; duplicates
wait on the lock and then replay the cached intent id. A cached entry
remembers the request payload so a reused key with a different payload can
be rejected field by field.

Scopes are spread over independent shards, each with its own mutex and an
expiry heap, so merchants do not contend on one table.
"""
import hashlib
import heapq
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import CreationInProgressError, IdempotencyConflictError

logger = logging.getLogger(__name__)

Scope = Tuple[str, str]
Commit = Callable[[str], None]

SHARD_COUNT = 16


def fingerprint(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class _Entry:
    fingerprint: str
    payload: Dict[str, Any]
    intent_id: str
    expires_at: float


@dataclass
class _ScopeLock:
    lock: threading.Lock
    waiters: int = 0


@dataclass
class _Shard:
    mutex: threading.Lock = field(default_factory=threading.Lock)
    entries: Dict[Scope, _Entry] = field(default_factory=dict)
    locks: Dict[Scope, _ScopeLock] = field(default_factory=dict)
    expiries: List[Tuple[float, Scope]] = field(default_factory=list)


class IdempotencyGuard:
    def __init__(self, ttl_seconds: float = 86400, wait_seconds: float = 10.0,
                 clock: Callable[[], float] = time.monotonic, shards: int = SHARD_COUNT) -> None:
        self._ttl = ttl_seconds
        self._wait = wait_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(max(1, shards))]

    def execute(self, merchant_id: str, idempotency_key: Optional[str], payload: Dict[str, Any],
                create: Callable[[Commit], str]) -> Tuple[str, bool]:
        """Run ``create`` at most once per scope; returns ``(intent_id, replayed)``.

        ``create`` receives a ``commit`` callback and should call it as soon as
        the intent is durable, so a failure after that point still replays the
        same intent instead of creating a second one.
        """
        if not idempotency_key:
            return create(lambda intent_id: None), False

        scope = (merchant_id, idempotency_key)
        shard = self._shard(scope)
        fp = fingerprint(payload)

        cached = self._lookup(shard, scope, fp, payload)
        if cached:
            return cached, True

        scope_lock = self._enter(shard, scope)
        try:
            if not scope_lock.lock.acquire(timeout=self._wait):
                logger.warning("Idempotent creation still in flight for merchant=%s key=%s", *scope)
                raise CreationInProgressError(
                    "A request with this Idempotency-Key is still being processed",
                    field="Idempotency-Key",
                )
            try:
                cached = self._lookup(shard, scope, fp, payload)
                if cached:
                    return cached, True

                def commit(intent_id: str) -> None:
                    self._store(shard, scope, fp, payload, intent_id)

                intent_id = create(commit)
                commit(intent_id)
                return intent_id, False
            finally:
                scope_lock.lock.release()
        finally:
            self._leave(shard, scope, scope_lock)

    def _shard(self, scope: Scope) -> _Shard:
        return self._shards[hash(scope) % len(self._shards)]

    def _lookup(self, shard: _Shard, scope: Scope, fp: str, payload: Dict[str, Any]) -> Optional[str]:
        with shard.mutex:
            self._purge_expired(shard)
            entry = shard.entries.get(scope)
        if entry is None:
            return None
        if entry.fingerprint != fp:
            fields = conflicting_fields(entry.payload, payload)
            logger.warning("Idempotency conflict merchant=%s key=%s fields=%s", scope[0], scope[1], fields)
            raise IdempotencyConflictError(
                "Idempotency-Key reused with a different request payload",
                field=fields[0] if fields else None,
                context={"conflictingFields": fields, "intentId": entry.intent_id},
            )
        logger.info("Idempotency replay merchant=%s key=%s intent=%s", scope[0], scope[1], entry.intent_id)
        return entry.intent_id

    def _store(self, shard: _Shard, scope: Scope, fp: str, payload: Dict[str, Any], intent_id: str) -> None:
        with shard.mutex:
            current = shard.entries.get(scope)
            if current is not None and current.intent_id == intent_id:
                return
            expires_at = self._clock() + self._ttl
            shard.entries[scope] = _Entry(fp, dict(payload), intent_id, expires_at)
            heapq.heappush(shard.expiries, (expires_at, scope))

    def _enter(self, shard: _Shard, scope: Scope) -> _ScopeLock:
        with shard.mutex:
            scope_lock = shard.locks.get(scope)
            if scope_lock is None:
                scope_lock = shard.locks[scope] = _ScopeLock(threading.Lock())
            scope_lock.waiters += 1
            return scope_lock

    def _leave(self, shard: _Shard, scope: Scope, scope_lock: _ScopeLock) -> None:
        with shard.mutex:
            scope_lock.waiters -= 1
            if scope_lock.waiters == 0:
                shard.locks.pop(scope, None)

    def _purge_expired(self, shard: _Shard) -> None:
        # Caller holds shard.mutex. Stale heap items (scope re-stored later) are skipped.
        now = self._clock()
        while shard.expiries and shard.expiries[0][0] <= now:
            expires_at, scope = heapq.heappop(shard.expiries)
            entry = shard.entries.get(scope)
            if entry is not None and entry.expires_at == expires_at:
                del shard.entries[scope]

    def __len__(self) -> int:
        return sum(len(s.entries) for s in self._shards)

    def clear(self) -> None:
        for shard in self._shards:
            with shard.mutex:
                shard.entries.clear()
                shard.expiries.clear()


def conflicting_fields(old: Dict[str, Any], new: Dict[str, Any]) -> List[str]:
    return sorted(k for k in set(old) | set(new) if old.get(k) != new.get(k))
