"""Keyed async store with a coalescing, throttled fetch queue.

Consumers ask for one key, many keys, or everything; the store answers
immediately with ``AsyncContainer`` entries and fetches what is missing in the
background:

- requested keys go into a FIFO queue, each key at most once
- a drain cycle runs after a throttle delay, restarted by every new enqueue,
  so bursts of requests collapse into one call
- one cycle fetches either everything (the ``FETCH_ALL`` sentinel wins) or up
  to ``batch_size`` keys
- only one cycle runs at a time; the queue is re-checked when it finishes

Notes:
- Everything runs on the event loop thread. Queue and map mutations happen
  between awaits, so no lock is needed.
- Fetch failures end up on the entries (failstate) and in the logs. They are
  never raised to callers of get_one/get_many/get_all.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Mapping
from types import MappingProxyType
from typing import (
    Awaitable,
    Callable,
    Dict,
    Final,
    Generic,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    TypeVar,
)

from .config import Settings
from .container import AsyncContainer
from .models import StoreStatus

V = TypeVar("V")

NowFn = Callable[[], float]
FetchOneFn = Callable[[str], Awaitable[Optional[V]]]
FetchManyFn = Callable[[List[str]], Awaitable[Sequence[V]]]
FetchAllFn = Callable[[], Awaitable[Sequence[V]]]
KeyFn = Callable[[V], str]

# Queue entry meaning "fetch the whole collection"
FETCH_ALL: Final = "*"

_logger = logging.getLogger(__name__)


class ConfigurationError(NotImplementedError):
    """A fetch was requested that no configured strategy can serve."""

    def __init__(self, message: str = "Not implemented") -> None:
        super().__init__(message)


def default_key(item: object) -> str:
    """Identity of a fetched item: its ``id`` key or attribute, as a string."""
    if isinstance(item, Mapping):
        key = item.get("id")
    else:
        key = getattr(item, "id", None)
    if key is None:
        raise ValueError(f"cannot determine id of fetched item {item!r}; pass key_fn")
    return str(key)


def _check_id(id: str) -> str:
    if not isinstance(id, str) or not id:
        raise ValueError("id must be a non-empty string")
    if id == FETCH_ALL:
        raise ValueError(f"{FETCH_ALL!r} is reserved and cannot be used as an id")
    return id


class AsyncStore(Generic[V]):
    """Owner of all entries of one collection and of their fetch queue.

    Parameters default to ``Settings`` when omitted; at least one of
    ``fetch_one``, ``fetch_many`` or ``fetch_all`` is required.
    """

    def __init__(
        self,
        *,
        fetch_one: FetchOneFn[V] | None = None,
        fetch_many: FetchManyFn[V] | None = None,
        fetch_all: FetchAllFn[V] | None = None,
        name: str | None = None,
        ttl: Optional[float] = None,
        failstate_ttl: Optional[float] = None,
        batch_size: Optional[int] = None,
        throttle: Optional[float] = None,
        key_fn: KeyFn[V] | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        if fetch_one is None and fetch_many is None and fetch_all is None:
            raise ConfigurationError(
                "At least one of fetch_one, fetch_many or fetch_all is required"
            )

        s = Settings()
        self.name = name or "AsyncStore"
        self._fetch_one_fn = fetch_one
        self._fetch_many_fn = fetch_many
        self._fetch_all_fn = fetch_all

        self._ttl = ttl if ttl is not None else s.STORE_TTL_SECONDS
        self._failstate_ttl = float(
            failstate_ttl if failstate_ttl is not None else s.STORE_FAILSTATE_TTL_SECONDS
        )
        self._batch_size = int(batch_size if batch_size is not None else s.STORE_BATCH_SIZE)
        self._throttle = float(throttle if throttle is not None else s.STORE_THROTTLE_SECONDS)
        if self._ttl is not None and self._ttl < 0:
            raise ValueError("ttl must be >= 0 when provided")
        if self._batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self._throttle < 0 or math.isinf(self._throttle):
            raise ValueError("throttle must be a finite number >= 0")

        self._key_fn: KeyFn[V] = key_fn or default_key
        self._now: NowFn = now_fn or time.monotonic

        self._containers: Dict[str, AsyncContainer[V]] = {}
        self._queue: List[str] = []

        self._is_ready = False
        self._is_pending = False
        self._has_all = False
        self._fetching_all = False
        self._error: Optional[BaseException] = None

        self._timer: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._drained_once = False
        # Replaced on every notification; waiters hold the one they saw
        self._changed = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f"AsyncStore(name={self.name!r}, size={len(self._containers)}, "
            f"queue={len(self._queue)}, pending={self._is_pending})"
        )

    # --- store state ---
    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @property
    def is_pending(self) -> bool:
        return self._is_pending

    @property
    def has_all(self) -> bool:
        return self._has_all

    @property
    def error(self) -> Optional[BaseException]:
        """Last failure of a fetch_all call, cleared by the next success."""
        return self._error

    @property
    def containers(self) -> Mapping[str, AsyncContainer[V]]:
        return MappingProxyType(self._containers)

    @property
    def values(self) -> List[AsyncContainer[V]]:
        return list(self._containers.values())

    @property
    def errors(self) -> Dict[str, BaseException]:
        return {
            ct.id: ct.error for ct in self._containers.values() if ct.error is not None
        }

    @property
    def in_failstate(self) -> bool:
        return any(ct.error is not None for ct in self._containers.values())

    @property
    def fetch_queue(self) -> tuple[str, ...]:
        return tuple(self._queue)

    @property
    def is_idle(self) -> bool:
        """No cycle running or scheduled and nothing queued."""
        return (
            self._drain_task is None
            and self._timer is None
            and not self._is_pending
            and not self._queue
        )

    def status(self) -> StoreStatus:
        return StoreStatus(
            name=self.name,
            is_ready=self._is_ready,
            is_pending=self._is_pending,
            has_all=self._has_all,
            in_failstate=self.in_failstate,
            error=self._error,
            queue=tuple(self._queue),
            size=len(self._containers),
        )

    # --- public read API ---
    def get_one(self, id: str) -> AsyncContainer[V]:
        ct = self._get_or_create(id)
        _logger.debug("get_one", extra={"op": "get_one", "store": self.name, "id": id})
        if ct.should_fetch and id not in self._queue:
            self.add_to_fetch_queue(id)
        return ct

    def get_many(self, ids: Iterable[str]) -> List[AsyncContainer[V]]:
        cts = [self._get_or_create(id) for id in ids]
        _logger.debug(
            "get_many",
            extra={"op": "get_many", "store": self.name, "ids": [ct.id for ct in cts]},
        )
        to_fetch = [ct.id for ct in cts if ct.should_fetch and ct.id not in self._queue]
        if to_fetch:
            self.add_to_fetch_queue(to_fetch)
        return cts

    def get_all(self, force: bool = False) -> List[AsyncContainer[V]]:
        """Return every known entry and request the full collection if needed.

        The returned list is only complete once ``has_all`` is true.
        """

        _logger.debug("get_all", extra={"op": "get_all", "store": self.name, "force": force})
        if force or (
            not self._has_all and not self._fetching_all and FETCH_ALL not in self._queue
        ):
            self.add_to_fetch_queue(FETCH_ALL)
        return self.values

    def create_async_container(self, id: str, add: bool = False) -> AsyncContainer[V]:
        """Existing entry for ``id``, or a new one registered only when ``add``."""
        ct = self._containers.get(_check_id(id))
        if ct is not None:
            return ct
        ct = self._new_container(id, attached=add)
        if add:
            self._containers[id] = ct
            self._notify()
        return ct

    def add_to_fetch_queue(self, ids: str | List[str]) -> None:
        """Queue keys for the next drain cycle, skipping those already queued."""
        if isinstance(ids, str):
            ids = [ids]
        added: List[str] = []
        for id in ids:
            if id in self._queue:
                continue
            self._queue.append(id)
            added.append(id)
        if not added:
            return
        _logger.debug(
            "queued for fetch",
            extra={"op": "add_to_fetch_queue", "store": self.name, "ids": added},
        )
        self._notify()
        self._arm(restart=True)

    # --- waiting ---
    async def when(self, predicate: Callable[[], bool], timeout: Optional[float] = None) -> None:
        """Wait until ``predicate()`` holds.

        The predicate is re-evaluated after every store or entry transition.
        Raises ``asyncio.TimeoutError`` when ``timeout`` elapses first.
        """

        async def _wait() -> None:
            while not predicate():
                # Picks up enqueues made while no loop was running
                self._arm()
                changed = self._changed
                await changed.wait()

        await asyncio.wait_for(_wait(), timeout)

    async def settled(self, timeout: Optional[float] = None) -> None:
        """Wait until the queue is drained and no cycle is running."""
        await self.when(lambda: self.is_idle, timeout)

    # --- fetch strategies ---
    async def fetch_one(self, id: str) -> None:
        if self._fetch_one_fn is None and self._fetch_many_fn is None:
            raise ConfigurationError()
        if self._fetch_one_fn is None:
            await self.fetch_many([id])
            return

        ct = self._container_for_fetch(id, "fetch_one")
        self._set_pending()
        ct.set_pending()
        try:
            item = await self._fetch_one_fn(id)
        except Exception as e:
            _logger.error(
                "fetch_one failed",
                exc_info=True,
                extra={"op": "fetch_one", "store": self.name, "id": id},
            )
            ct.set_failstate(e)
        else:
            ct.set_value(item)
        finally:
            self._set_ready()

    async def fetch_many(self, ids: Sequence[str]) -> None:
        """Fetch a batch; a rejected call puts every entry of the batch in failstate.

        Results are matched to entries by ``key_fn``. Requested ids without a
        matching result are marked ready with their previous value untouched.
        """

        if self._fetch_many_fn is None:
            raise ConfigurationError()

        ids = list(dict.fromkeys(ids))
        cts = [self._container_for_fetch(id, "fetch_many") for id in ids]
        self._set_pending()
        for ct in cts:
            ct.set_pending()
        try:
            items = await self._fetch_many_fn(ids)
        except Exception as e:
            _logger.error(
                "fetch_many failed",
                exc_info=True,
                extra={"op": "fetch_many", "store": self.name, "ids": ids},
            )
            for ct in cts:
                ct.set_failstate(e)
        else:
            written = self._write_back(items or [], "fetch_many")
            for ct in cts:
                if ct.id not in written:
                    _logger.debug(
                        "no result for requested id",
                        extra={"op": "fetch_many", "store": self.name, "id": ct.id},
                    )
                    ct.set_ready()
        finally:
            self._set_ready()

    async def fetch_all(self) -> None:
        if self._fetch_all_fn is None:
            raise ConfigurationError()

        self._set_pending()
        self._fetching_all = True
        try:
            items = await self._fetch_all_fn()
        except Exception as e:
            _logger.error(
                "fetch_all failed",
                exc_info=True,
                extra={"op": "fetch_all", "store": self.name},
            )
            self._error = e
        else:
            self._error = None
            self._write_back(items or [], "fetch_all", from_all=True)
            self._has_all = True
        finally:
            self._fetching_all = False
            self._set_ready()

    # --- internals ---
    def _new_container(self, id: str, attached: bool = True) -> AsyncContainer[V]:
        # Unregistered entries must not enqueue themselves or notify the store
        return AsyncContainer(
            id,
            ttl=self._ttl,
            failstate_ttl=self._failstate_ttl,
            now_fn=self._now,
            owner=self if attached else None,
        )

    def _get_or_create(self, id: str) -> AsyncContainer[V]:
        ct = self._containers.get(_check_id(id))
        if ct is None:
            ct = self._new_container(id)
            self._containers[id] = ct
            self._notify()
        return ct

    def _container_for_fetch(self, id: str, op: str) -> AsyncContainer[V]:
        ct = self._containers.get(id)
        if ct is None:
            # Only reachable when keys are queued without going through get_*
            _logger.warning(
                "container missing for queued id; creating it",
                extra={"op": op, "store": self.name, "id": id},
            )
            ct = self._get_or_create(id)
        return ct

    def _write_back(self, items: Iterable[V], op: str, from_all: bool = False) -> Set[str]:
        written: Set[str] = set()
        for item in items:
            try:
                key = _check_id(self._key_fn(item))
            except Exception:
                _logger.warning(
                    "skipping fetched item without usable id",
                    exc_info=True,
                    extra={"op": op, "store": self.name},
                )
                continue

            ct = self._containers.get(key)
            if ct is None:
                if not from_all:
                    _logger.debug(
                        "ignoring unrequested item",
                        extra={"op": op, "store": self.name, "id": key},
                    )
                    continue
                ct = self._get_or_create(key)
            if from_all and key in self._queue:
                # The full fetch covers this key already
                self._queue.remove(key)
            ct.set_value(item)
            written.add(key)
        return written

    def _set_pending(self) -> None:
        self._is_pending = True
        self._notify()

    def _set_ready(self) -> None:
        self._is_pending = False
        self._is_ready = True
        self._notify()
        self._arm()

    def on_container_changed(self, container: AsyncContainer[V]) -> None:
        self._notify()

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _arm(self, restart: bool = False) -> None:
        """Schedule a drain cycle if one is due.

        With ``restart`` an already armed timer is cancelled and armed again,
        so the throttle delay counts from the latest enqueue.
        """

        if self._drain_task is not None or self._is_pending or not self._queue:
            return
        if self._timer is not None:
            if not restart:
                return
            self._timer.cancel()
            self._timer = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug(
                "no running event loop; drain deferred",
                extra={"op": "arm", "store": self.name},
            )
            return
        # A cold store drains right away
        delay = self._throttle if self._drained_once else 0.0
        self._timer = loop.call_later(delay, self._start_drain)

    def _start_drain(self) -> None:
        self._timer = None
        if self._drain_task is not None or self._is_pending or not self._queue:
            self._notify()
            return
        self._drained_once = True
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        ids: List[str] = []
        try:
            if FETCH_ALL in self._queue:
                self._queue.remove(FETCH_ALL)
                _logger.debug("drain cycle: all", extra={"op": "drain", "store": self.name})
                await self.fetch_all()
            else:
                size = self._batch_size if self._fetch_many_fn is not None else 1
                ids = self._queue[:size]
                del self._queue[:size]
                _logger.debug(
                    "drain cycle: batch",
                    extra={"op": "drain", "store": self.name, "ids": ids},
                )
                if len(ids) == 1 and self._fetch_one_fn is not None:
                    await self.fetch_one(ids[0])
                else:
                    await self.fetch_many(ids)
        except ConfigurationError as e:
            _logger.error(
                "no fetch strategy for queued request",
                extra={"op": "drain", "store": self.name, "ids": ids or [FETCH_ALL]},
            )
            if ids:
                for id in ids:
                    self._container_for_fetch(id, "drain").set_failstate(e)
            else:
                self._error = e
        except Exception:
            _logger.exception("drain cycle failed", extra={"op": "drain", "store": self.name})
        finally:
            self._drain_task = None
            self._notify()
            self._arm()


__all__ = ["AsyncStore", "ConfigurationError", "FETCH_ALL", "default_key"]
