"""lock.py — Advisory TTL lock with heartbeat renewal.

Two stores implement the same three operations:

    DynamoLockStore   (lock_mode=distributed) one conditional write per call
                      against LOCKS_TABLE; safe across containers.
    InMemoryLockStore (lock_mode=in_process)  a mutex-guarded dict owned by the
                      process; excludes only runs inside one container.

The in-process store is only used when LOCK_FALLBACK_MODE=in_process and the
lock table is unusable, and every log line carries ``lock_mode`` so the two
paths are never confused.

No fencing tokens: a holder that stalls past its TTL can overlap with the next
holder. The heartbeat keeps a live holder's TTL ahead of the clock.
"""
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from .aws_clients import _get_ddb, _is_conditional_check_failed, _table_available
from .config import LOCK_DEFAULT_TTL_MS, LOCK_FALLBACK_MODE, LOCK_MIN_HEARTBEAT_MS, LOCKS_TABLE, logger
from .serialization import _emit_structured_observability, _serialize

__all__ = [
    "AcquireResult",
    "DynamoLockStore",
    "InMemoryLockStore",
    "LockClient",
    "LockRunResult",
    "default_heartbeat_ms",
    "process_lock_store",
    "run_with_lock",
    "select_lock_client",
]

MODE_DISTRIBUTED = "distributed"
MODE_IN_PROCESS = "in_process"

REASON_BUSY = "busy"
REASON_UNAVAILABLE = "unavailable"

# Lock rows linger this long past expiry before DynamoDB TTL may reap them.
_ROW_TTL_GRACE_SECONDS = 3600


def _clock_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class DynamoLockStore:
    mode = MODE_DISTRIBUTED

    def __init__(self, table: str = LOCKS_TABLE, *, ddb: Any = None, clock: Callable[[], float] = time.time):
        self.table = table
        self._ddb = ddb
        self._clock = clock

    @property
    def ddb(self) -> Any:
        return self._ddb if self._ddb is not None else _get_ddb()

    def acquire_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        now_ms = _clock_ms(self._clock)
        expires_at_ms = now_ms + int(ttl_ms)
        try:
            self.ddb.put_item(
                TableName=self.table,
                Item={
                    "name": _serialize(name),
                    "owner": _serialize(owner),
                    "expires_at_ms": _serialize(expires_at_ms),
                    "acquired_at_ms": _serialize(now_ms),
                    "ttl_epoch": _serialize(expires_at_ms // 1000 + _ROW_TTL_GRACE_SECONDS),
                },
                ConditionExpression="attribute_not_exists(#n) OR expires_at_ms <= :now",
                ExpressionAttributeNames={"#n": "name"},
                ExpressionAttributeValues={":now": _serialize(now_ms)},
            )
            return True
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                return False
            raise

    def extend_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        now_ms = _clock_ms(self._clock)
        expires_at_ms = now_ms + int(ttl_ms)
        try:
            self.ddb.update_item(
                TableName=self.table,
                Key={"name": _serialize(name)},
                UpdateExpression="SET expires_at_ms = :exp, ttl_epoch = :ttl",
                ConditionExpression="#o = :owner AND expires_at_ms > :now",
                ExpressionAttributeNames={"#o": "owner"},
                ExpressionAttributeValues={
                    ":exp": _serialize(expires_at_ms),
                    ":ttl": _serialize(expires_at_ms // 1000 + _ROW_TTL_GRACE_SECONDS),
                    ":owner": _serialize(owner),
                    ":now": _serialize(now_ms),
                },
            )
            return True
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                return False
            raise

    def release_lock(self, name: str, owner: str) -> None:
        try:
            self.ddb.delete_item(
                TableName=self.table,
                Key={"name": _serialize(name)},
                ConditionExpression="#o = :owner",
                ExpressionAttributeNames={"#o": "owner"},
                ExpressionAttributeValues={":owner": _serialize(owner)},
            )
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                return
            raise


class InMemoryLockStore:
    """Process-scoped lock map. Guarantees exclusion between threads of one process only."""

    mode = MODE_IN_PROCESS

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._mutex = threading.Lock()
        self._locks: Dict[str, Tuple[str, int]] = {}

    def acquire_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        now_ms = _clock_ms(self._clock)
        with self._mutex:
            held = self._locks.get(name)
            if held is not None and held[1] > now_ms:
                return False
            self._locks[name] = (owner, now_ms + int(ttl_ms))
            return True

    def extend_lock(self, name: str, owner: str, ttl_ms: int) -> bool:
        now_ms = _clock_ms(self._clock)
        with self._mutex:
            held = self._locks.get(name)
            if held is None or held[0] != owner or held[1] <= now_ms:
                return False
            self._locks[name] = (owner, now_ms + int(ttl_ms))
            return True

    def release_lock(self, name: str, owner: str) -> None:
        with self._mutex:
            held = self._locks.get(name)
            if held is not None and held[0] == owner:
                del self._locks[name]


_process_store: Optional[InMemoryLockStore] = None
_process_store_guard = threading.Lock()


def process_lock_store() -> InMemoryLockStore:
    global _process_store
    with _process_store_guard:
        if _process_store is None:
            _process_store = InMemoryLockStore()
        return _process_store


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AcquireResult:
    granted: bool
    token: Optional[str] = None
    reason: Optional[str] = None


class LockClient:
    def __init__(self, store: Any):
        self.store = store

    @property
    def mode(self) -> str:
        return str(getattr(self.store, "mode", MODE_DISTRIBUTED))

    def _observe(self, event: str, name: str, *, latency_ms: int = 0, error_code: str = "", **extra: Any) -> None:
        _emit_structured_observability(
            component="lock",
            event=event,
            latency_ms=latency_ms,
            error_code=error_code,
            extra={"lock_name": name, "lock_mode": self.mode, **extra},
        )

    def acquire(self, name: str, ttl_ms: int = LOCK_DEFAULT_TTL_MS) -> AcquireResult:
        token = uuid.uuid4().hex
        started = time.perf_counter()
        try:
            granted = bool(self.store.acquire_lock(name, token, ttl_ms))
        except Exception as exc:
            logger.warning(
                "[WARNING] Lock store unavailable acquiring '%s' (lock_mode=%s): %s",
                name,
                self.mode,
                exc,
            )
            self._observe(
                "lock_unavailable",
                name,
                latency_ms=int((time.perf_counter() - started) * 1000),
                error_code=type(exc).__name__,
            )
            return AcquireResult(granted=False, reason=REASON_UNAVAILABLE)

        latency_ms = int((time.perf_counter() - started) * 1000)
        if not granted:
            logger.info("[INFO] Lock '%s' is busy (lock_mode=%s)", name, self.mode)
            self._observe("lock_busy", name, latency_ms=latency_ms)
            return AcquireResult(granted=False, reason=REASON_BUSY)

        self._observe("lock_acquired", name, latency_ms=latency_ms, ttl_ms=int(ttl_ms))
        return AcquireResult(granted=True, token=token)

    def extend(self, name: str, token: str, ttl_ms: int = LOCK_DEFAULT_TTL_MS) -> bool:
        try:
            extended = bool(self.store.extend_lock(name, token, ttl_ms))
        except Exception as exc:
            logger.warning("[WARNING] Lock extend failed for '%s' (lock_mode=%s): %s", name, self.mode, exc)
            return False
        self._observe("lock_extended" if extended else "lock_extend_refused", name, ttl_ms=int(ttl_ms))
        return extended

    def release(self, name: str, token: str) -> None:
        # TTL expiry is the backstop when release fails.
        try:
            self.store.release_lock(name, token)
        except Exception as exc:
            logger.warning("[WARNING] Lock release failed for '%s' (lock_mode=%s): %s", name, self.mode, exc)
            self._observe("lock_release_failed", name, error_code=type(exc).__name__)
            return
        self._observe("lock_released", name)


def select_lock_client(table: str = LOCKS_TABLE, fallback_mode: str = LOCK_FALLBACK_MODE) -> LockClient:
    """Pick the lock store once per container.

    The distributed store is used whenever the table probes healthy. Without an
    explicit ``in_process`` fallback an unusable table still yields the
    distributed client, whose acquires then report ``unavailable``.
    """
    if table and _table_available(table):
        logger.info("[INFO] Lock store selected (lock_mode=%s, table=%s)", MODE_DISTRIBUTED, table)
        return LockClient(DynamoLockStore(table))
    if fallback_mode == MODE_IN_PROCESS:
        logger.warning(
            "[WARNING] Lock table '%s' unusable; falling back to lock_mode=%s. "
            "Exclusion now holds only inside this container.",
            table,
            MODE_IN_PROCESS,
        )
        return LockClient(process_lock_store())
    logger.warning("[WARNING] Lock table '%s' unusable and no fallback configured (lock_mode=%s)", table, MODE_DISTRIBUTED)
    return LockClient(DynamoLockStore(table))


# ---------------------------------------------------------------------------
# Lock-guarded run
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LockRunResult:
    ok: bool
    value: Any = None
    reason: Optional[str] = None
    lock_lost: bool = False


def default_heartbeat_ms(ttl_ms: int) -> int:
    return max(LOCK_MIN_HEARTBEAT_MS, int(ttl_ms) // 2)


class _Heartbeat(threading.Thread):
    """Extends one held lock on a fixed interval until stopped or refused.

    Runs on its own thread so it keeps ticking while the event loop is blocked
    in synchronous I/O. Extends are strictly sequential.
    """

    def __init__(self, client: LockClient, name: str, token: str, ttl_ms: int, interval_ms: int):
        super().__init__(name=f"lock-heartbeat:{name}", daemon=True)
        self.client = client
        self.lock_name = name
        self.token = token
        self.ttl_ms = int(ttl_ms)
        self.interval_s = max(0.001, int(interval_ms) / 1000.0)
        self.ticks = 0
        self.lost = False
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            extended = self.client.extend(self.lock_name, self.token, self.ttl_ms)
            self.ticks += 1
            if not extended:
                self.lost = True
                logger.warning(
                    "[WARNING] lock_lost: '%s' could not be extended (lock_mode=%s)",
                    self.lock_name,
                    self.client.mode,
                )
                return

    def shutdown(self) -> None:
        self._stop_event.set()
        self.join()


async def run_with_lock(
    client: LockClient,
    name: str,
    work: Callable[[], Awaitable[Any]],
    *,
    ttl_ms: int = LOCK_DEFAULT_TTL_MS,
    heartbeat_ms: Optional[int] = None,
) -> LockRunResult:
    """Run ``work`` while holding ``name``.

    A denied acquire returns at once with the denial reason and ``work`` is
    never called. Once granted, the heartbeat is stopped and joined and the
    lock released on every exit path, including exceptions from ``work``,
    which propagate after cleanup.
    """
    acquired = client.acquire(name, ttl_ms)
    if not acquired.granted:
        return LockRunResult(ok=False, reason=acquired.reason)

    interval_ms = heartbeat_ms if heartbeat_ms else default_heartbeat_ms(ttl_ms)
    heartbeat = _Heartbeat(client, name, acquired.token or "", ttl_ms, interval_ms)
    heartbeat.start()
    try:
        value = await work()
    finally:
        heartbeat.shutdown()
        client.release(name, acquired.token or "")
    return LockRunResult(ok=True, value=value, lock_lost=heartbeat.lost)
