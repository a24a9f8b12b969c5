"""At-most-one background monitor per (kind, user).

Each monitor holds a lease in the credential store (or Redis when configured)
for as long as it runs, so a second process cannot start a duplicate loop and
a crashed process's lease simply expires.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import socket
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Dict, Optional, Set, Tuple

from sundaykit.logging import get_logger
from sundaykit.storage.models import MonitorKind

if TYPE_CHECKING:
    from sundaykit.storage.memory import MemoryStore
    from sundaykit.storage.postgres import PostgresStore
    from sundaykit.storage.redis_cache import RedisCache

logger = get_logger(__name__)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class MonitorRegistry:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        lease: Optional["RedisCache"] = None,
        owner: Optional[str] = None,
    ) -> None:
        self.store = store
        self.lease = lease
        self.owner = owner or default_owner()
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}
        self._claimed: Set[Tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    @property
    def _backend(self):
        return self.lease if self.lease is not None else self.store

    @staticmethod
    def _key(kind: MonitorKind | str, user_id: str) -> Tuple[str, str]:
        return (MonitorKind(kind).value, user_id)

    async def claim(self, kind: MonitorKind | str, user_id: str, ttl_seconds: float) -> bool:
        """Reserve the monitor slot; False when a loop is already running anywhere."""
        key = self._key(kind, user_id)
        async with self._lock:
            if key in self._claimed:
                return False
            claimed = await _maybe_await(
                self._backend.claim_monitor(key[0], user_id, self.owner, ttl_seconds)
            )
            if claimed:
                self._claimed.add(key)
            return bool(claimed)

    async def extend(self, kind: MonitorKind | str, user_id: str, ttl_seconds: float) -> bool:
        """Push out the lease this process holds; False when another owner has taken it."""
        key = self._key(kind, user_id)
        if key not in self._claimed:
            return True
        try:
            extended = await _maybe_await(
                self._backend.claim_monitor(key[0], user_id, self.owner, ttl_seconds)
            )
        except Exception as exc:
            logger.warning(
                "monitor_lease_extend_failed", kind=key[0], user_id=user_id, error=str(exc)
            )
            return True
        if not extended:
            logger.warning("monitor_lease_lost", kind=key[0], user_id=user_id, owner=self.owner)
        return bool(extended)

    async def release(self, kind: MonitorKind | str, user_id: str) -> None:
        key = self._key(kind, user_id)
        async with self._lock:
            self._claimed.discard(key)
        try:
            await _maybe_await(self._backend.release_monitor(key[0], user_id, self.owner))
        except Exception as exc:
            # The lease expires on its own
            logger.warning(
                "monitor_release_failed",
                kind=key[0],
                user_id=user_id,
                error=str(exc),
            )

    def launch(
        self, kind: MonitorKind | str, user_id: str, coro: Awaitable[Any]
    ) -> asyncio.Task:
        """Run a claimed monitor as a detached task; the claim is released when it ends."""
        key = self._key(kind, user_id)
        task = asyncio.create_task(self._run(key, coro), name=f"monitor:{key[0]}:{user_id}")
        self._tasks[key] = task
        logger.info("monitor_launched", kind=key[0], user_id=user_id, owner=self.owner)
        return task

    async def _run(self, key: Tuple[str, str], coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            logger.info("monitor_cancelled", kind=key[0], user_id=key[1])
            raise
        except Exception as exc:
            logger.error(
                "monitor_crashed",
                kind=key[0],
                user_id=key[1],
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        finally:
            self._tasks.pop(key, None)
            await self.release(key[0], key[1])

    def is_running_locally(self, kind: MonitorKind | str, user_id: str) -> bool:
        task = self._tasks.get(self._key(kind, user_id))
        return task is not None and not task.done()

    async def is_active(self, kind: MonitorKind | str, user_id: str) -> bool:
        """True when a loop runs here or an unexpired lease is held elsewhere."""
        key = self._key(kind, user_id)
        if self.is_running_locally(*key) or key in self._claimed:
            return True
        try:
            claim = await _maybe_await(self._backend.get_monitor_claim(key[0], user_id))
        except Exception as exc:
            logger.warning("monitor_claim_lookup_failed", kind=key[0], user_id=user_id, error=str(exc))
            return False
        return claim is not None and not claim.is_expired()

    async def wait(self, kind: MonitorKind | str, user_id: str) -> Any:
        """Await a local monitor's completion; returns its result or None."""
        task = self._tasks.get(self._key(kind, user_id))
        if task is None:
            return None
        return await asyncio.shield(task)

    async def wait_all(self) -> None:
        """Block until every local monitor has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("monitors_shutdown", cancelled=len(tasks))
