from __future__ import annotations

from typing import Any, Callable

import pytest
from pydantic import BaseModel

from async_store import AsyncStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self._t = start

    def now(self) -> float:  # acts as NowFn
        return self._t

    def advance(self, dt: float) -> None:
        self._t += dt


class Todo(BaseModel):
    id: str
    task: str
    done: bool = False


class TodoBackend:
    """In-memory fetch strategies that record every call."""

    def __init__(self, todos: list[Todo]) -> None:
        self.todos = todos
        self.calls: list[tuple[str, Any]] = []

    async def fetch_one(self, id: str) -> Todo:
        self.calls.append(("one", id))
        for todo in self.todos:
            if todo.id == id:
                return todo
        raise LookupError(f"Todo {id} not found")

    async def fetch_many(self, ids: list[str]) -> list[Todo]:
        self.calls.append(("many", list(ids)))
        return [t for t in self.todos if t.id in ids]

    async def fetch_all(self) -> list[Todo]:
        self.calls.append(("all", None))
        return list(self.todos)

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def todos() -> list[Todo]:
    return [Todo(id=str(i), task=f"Do it {i}") for i in range(3)]


@pytest.fixture
def backend(todos: list[Todo]) -> TodoBackend:
    return TodoBackend(todos)


@pytest.fixture
def make_store(backend: TodoBackend, clock: FakeClock) -> Callable[..., AsyncStore[Todo]]:
    """Build a todo store; keyword arguments override the defaults below.

    Pass e.g. ``fetch_one=None`` to leave a strategy out.
    """

    def _make(**overrides: Any) -> AsyncStore[Todo]:
        opts: dict[str, Any] = {
            "name": "todos",
            "fetch_one": backend.fetch_one,
            "fetch_many": backend.fetch_many,
            "fetch_all": backend.fetch_all,
            "throttle": 0.0,
            "now_fn": clock.now,
        }
        opts.update(overrides)
        return AsyncStore(**opts)

    return _make
