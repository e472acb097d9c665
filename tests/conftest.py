"""測試共用的 fixture 與 action 定義."""

import asyncio
from typing import Any, List

import pytest

from asyncstorex import Action, Store, UserException, global_error_handler, global_lock_registry


@pytest.fixture(autouse=True)
def isolate_globals() -> Any:
    """每個測試前後清除行程層級的鎖與錯誤回呼."""
    global_lock_registry.reset()
    global_error_handler.clear_handlers()
    yield
    global_lock_registry.reset()
    global_error_handler.clear_handlers()


class FakeClock:
    """可手動推進的時鐘，供 LockRegistry 使用."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Store[int]:
    return Store(0)


class Increment(Action[int]):
    def reduce(self, state: int) -> int:
        return state + 1


class SlowIncrement(Action[int]):
    async def reduce(self, state: int) -> int:
        await asyncio.sleep(0.02)
        return self.state + 1


class Fail(Action[int]):
    def reduce(self, state: int) -> int:
        raise ValueError("boom")


class FailUser(Action[int]):
    def reduce(self, state: int) -> int:
        raise UserException("Can't do that")


class Recorder:
    """收集 reactivex 串流發出的值."""

    def __init__(self) -> None:
        self.values: List[Any] = []

    def __call__(self, value: Any) -> None:
        self.values.append(value)
