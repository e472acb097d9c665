"""中介軟體鉤子的測試."""

import logging
from typing import Any, List

import pytest

from asyncstorex import Action, BaseMiddleware, LoggerMiddleware, PerformanceMonitorMiddleware, Store

from conftest import Fail, Increment, SlowIncrement


class RecordingMiddleware(BaseMiddleware):
    def __init__(self) -> None:
        self.events: List[Any] = []
        self.closed = False

    def on_next(self, action: Action[Any], prev_state: Any) -> None:
        self.events.append(("next", action.type, prev_state))

    def on_complete(self, next_state: Any, action: Action[Any]) -> None:
        self.events.append(("complete", action.type, next_state))

    def on_error(self, error: BaseException, action: Action[Any]) -> None:
        self.events.append(("error", action.type, type(error).__name__))

    def teardown(self) -> None:
        self.closed = True


class TestMiddlewareHooks:
    """BaseMiddleware 鉤子呼叫順序的測試."""

    def test_success_and_failure(self) -> None:
        mw = RecordingMiddleware()
        store = Store(0, middlewares=[mw])
        store.dispatch(Increment())
        store.dispatch(Fail())
        assert mw.events == [
            ("next", "Increment", 0),
            ("complete", "Increment", 1),
            ("next", "Fail", 1),
            ("error", "Fail", "ValueError"),
        ]

    def test_aborted_dispatch_is_invisible(self) -> None:
        mw = RecordingMiddleware()
        store = Store(0, middlewares=[mw]).add_mock(Increment, None)
        store.dispatch(Increment())
        assert mw.events == []

    def test_middleware_class_is_instantiated(self) -> None:
        store = Store(0).apply_middleware(RecordingMiddleware)
        assert isinstance(store.middlewares[0], RecordingMiddleware)

    def test_teardown(self) -> None:
        mw = RecordingMiddleware()
        Store(0, middlewares=[mw]).teardown()
        assert mw.closed

    @pytest.mark.asyncio
    async def test_async_action(self) -> None:
        mw = RecordingMiddleware()
        store = Store(0, middlewares=[mw])
        await store.dispatch_and_wait(SlowIncrement())
        assert mw.events == [("next", "SlowIncrement", 0), ("complete", "SlowIncrement", 1)]


class TestLoggerMiddleware:
    """LoggerMiddleware 的測試."""

    def test_logs_states(self, caplog: pytest.LogCaptureFixture) -> None:
        store = Store({"count": 0}, middlewares=[LoggerMiddleware()])

        class Bump(Action[dict]):
            def reduce(self, state: dict) -> dict:
                return {"count": state["count"] + 1}

        with caplog.at_level(logging.INFO, logger="asyncstorex.middleware"):
            store.dispatch_sync(Bump())
        assert "dispatching Bump" in caplog.text
        assert "{'count': 1}" in caplog.text


class TestPerformanceMonitorMiddleware:
    """PerformanceMonitorMiddleware 的測試."""

    def test_collects_metrics(self) -> None:
        monitor = PerformanceMonitorMiddleware(threshold_ms=1000)
        store = Store(0, middlewares=[monitor])
        store.dispatch_sync(Increment())
        store.dispatch_sync(Increment())
        metrics = monitor.get_metrics()
        assert metrics["Increment"]["count"] == 2
        assert metrics["Increment"]["min"] <= metrics["Increment"]["max"]
