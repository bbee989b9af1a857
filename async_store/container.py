"""Per-key cache entry with freshness and failstate tracking.

An ``AsyncContainer`` holds the last known value for one key together with
the bookkeeping the store needs to decide whether that key must be fetched:

- ready / pending flags
- the last fetch error (failstate)
- last modification and expiry readings of the store clock

Notes:
- Reads are split in two: ``peek()``/``status()`` never have side effects,
  ``ensure_fetch()`` asks the owning store to enqueue the key.
- Each setter applies all of its field writes before notifying anyone, so
  subscribers only ever observe complete transitions.
- The owning store is held through a weak reference; entries do not keep
  their store alive.
"""

from __future__ import annotations

import logging
import math
import time
import weakref
from typing import Callable, Generic, List, Optional, Protocol, TypeVar

from .models import ContainerStatus

V = TypeVar("V")

NowFn = Callable[[], float]
Listener = Callable[["AsyncContainer[V]"], None]

_logger = logging.getLogger(__name__)


class ContainerOwner(Protocol):
    """What an entry needs from the store that owns it."""

    def add_to_fetch_queue(self, ids: str | list[str]) -> None: ...

    def on_container_changed(self, container: "AsyncContainer") -> None: ...


class AsyncContainer(Generic[V]):
    """Cache entry state machine for a single key."""

    def __init__(
        self,
        id: str,
        *,
        ttl: Optional[float] = None,
        failstate_ttl: float = 5.0,
        now_fn: NowFn | None = None,
        owner: ContainerOwner | None = None,
    ) -> None:
        if not isinstance(id, str) or not id:
            raise ValueError("id must be a non-empty string")
        if ttl is not None and ttl < 0:
            raise ValueError("ttl must be >= 0 when provided")

        self._id = id
        # 0/None/inf all mean "never expires"
        self._ttl: Optional[float] = ttl if ttl and not math.isinf(ttl) else None
        self._failstate_ttl = float(failstate_ttl)
        self._now: NowFn = now_fn or time.monotonic
        self._owner_ref: Optional[weakref.ReferenceType[ContainerOwner]] = (
            weakref.ref(owner) if owner is not None else None
        )

        self._value: Optional[V] = None
        self._is_ready = False
        self._is_pending = False
        self._error: Optional[BaseException] = None
        self._last_modified = math.inf
        self._expires_at = math.inf
        self._version = 0
        self._listeners: List[Listener] = []

    def __repr__(self) -> str:
        return (
            f"AsyncContainer(id={self._id!r}, ready={self._is_ready}, "
            f"pending={self._is_pending}, error={self._error!r})"
        )

    # --- plain state ---
    @property
    def id(self) -> str:
        return self._id

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @property
    def is_pending(self) -> bool:
        return self._is_pending

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def last_modified(self) -> float:
        return self._last_modified

    @property
    def expires_at(self) -> float:
        return self._expires_at

    @property
    def version(self) -> int:
        """Incremented once per transition."""
        return self._version

    # --- derived state ---
    @property
    def has_expired(self) -> bool:
        if self._expires_at == math.inf:
            return False
        return self._now() > self._expires_at

    @property
    def in_failstate(self) -> bool:
        if self._error is None:
            return False
        if self._failstate_ttl > 0:
            return not self.has_expired
        # Non-positive failstate TTL: remembered until clear_failstate()
        return True

    @property
    def should_fetch(self) -> bool:
        return (
            not self._is_pending
            and (not self._is_ready or self.has_expired)
            and not self.in_failstate
        )

    # --- reads ---
    def peek(self) -> Optional[V]:
        """Return the current value without requesting a fetch."""
        return self._value

    def status(self) -> ContainerStatus:
        return ContainerStatus(
            id=self._id,
            value=self._value,
            is_ready=self._is_ready,
            is_pending=self._is_pending,
            error=self._error,
            last_modified=self._last_modified,
            expires_at=self._expires_at,
            has_expired=self.has_expired,
            in_failstate=self.in_failstate,
            should_fetch=self.should_fetch,
            version=self._version,
        )

    def ensure_fetch(self) -> bool:
        """Ask the owning store to fetch this key if it needs fetching.

        Returns True when a request was passed to the store. Calling this
        repeatedly before the next drain is harmless; the store ignores keys
        that are already queued.
        """

        if not self.should_fetch:
            return False
        owner = self._owner_ref() if self._owner_ref is not None else None
        if owner is None:
            return False
        owner.add_to_fetch_queue(self._id)
        return True

    @property
    def value(self) -> Optional[V]:
        """Current value; requests a fetch first when one is due."""
        self.ensure_fetch()
        return self._value

    # --- observation ---
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(container)`` after every transition.

        Returns a function that removes the listener.
        """

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _commit(self, op: str) -> None:
        self._version += 1
        _logger.debug(
            "container transition",
            extra={"op": op, "id": self._id, "version": self._version},
        )
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                _logger.exception("container listener failed", extra={"id": self._id})
        owner = self._owner_ref() if self._owner_ref is not None else None
        if owner is not None:
            owner.on_container_changed(self)

    # --- transitions ---
    def set_pending(self, is_pending: bool = True) -> None:
        self._is_pending = is_pending
        if is_pending:
            # A new attempt supersedes the previous failure
            self._error = None
        self._commit("set_pending")

    def set_value(self, value: Optional[V]) -> None:
        now = self._now()
        self._error = None
        self._is_pending = False
        self._is_ready = True
        self._value = value
        self._last_modified = now
        self._expires_at = now + self._ttl if self._ttl is not None else math.inf
        self._commit("set_value")

    def set_failstate(self, error: BaseException) -> None:
        now = self._now()
        self._is_pending = False
        self._is_ready = True
        self._error = error
        self._last_modified = now
        self._expires_at = now + self._failstate_ttl if self._failstate_ttl > 0 else math.inf
        self._commit("set_failstate")

    def set_ready(self) -> None:
        self._is_pending = False
        self._is_ready = True
        self._commit("set_ready")

    def clear_failstate(self) -> None:
        """Forget the last error and make the entry immediately re-fetchable."""
        self._error = None
        self._expires_at = -math.inf
        self._commit("clear_failstate")


__all__ = ["AsyncContainer", "ContainerOwner"]
