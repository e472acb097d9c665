"""Store 的分發、錯誤策略、等待與串流測試."""

import asyncio
from typing import Any, List

import pytest

from asyncstorex import (
    Action, ConfigurationError, DevelopmentErrorObserver, Store, StoreError, StoreTimeoutError,
    SwallowErrorObserver, UserException, ViewModel, create_store, global_error_handler
)

from conftest import Fail, FailUser, Increment, Recorder, SlowIncrement


class TestDispatch:
    """dispatch / dispatch_sync / dispatch_and_wait 的測試."""

    def test_dispatch_sync_action_completes_before_returning(self, store: Store[int]) -> None:
        handle = store.dispatch(Increment())
        assert store.state == 1
        assert handle.done()
        assert handle.status.is_completed_ok
        assert handle.status.attempts == 1

    def test_dispatch_sync_returns_status(self, store: Store[int]) -> None:
        action = Increment()
        status = store.dispatch_sync(action)
        assert status.is_completed_ok
        assert action.status is status
        assert store.dispatch_count == 1
        assert store.reduce_count == 1

    def test_reduce_returning_none_keeps_state(self, store: Store[int]) -> None:
        class Noop(Action[int]):
            def reduce(self, state: int) -> None:
                return None

        rec = Recorder()
        store.on_change.subscribe(rec)
        assert store.dispatch_sync(Noop()).is_completed_ok
        assert store.state == 0
        assert rec.values == []

    def test_dispatch_sync_rejects_async_action(self, store: Store[int]) -> None:
        with pytest.raises(ConfigurationError, match="SlowIncrement"):
            store.dispatch_sync(SlowIncrement())
        assert store.state == 0

    def test_dispatch_sync_rejects_async_before(self, store: Store[int]) -> None:
        class AsyncBefore(Increment):
            async def before(self) -> None:
                await asyncio.sleep(0)

        with pytest.raises(ConfigurationError):
            store.dispatch_sync(AsyncBefore())

    def test_async_action_without_loop_raises_store_error(self, store: Store[int]) -> None:
        with pytest.raises(StoreError):
            store.dispatch(SlowIncrement())
        assert store.dispatch_count == 0

    @pytest.mark.asyncio
    async def test_dispatch_async_action(self, store: Store[int]) -> None:
        action = SlowIncrement()
        handle = store.dispatch(action)
        assert not handle.done()
        assert store.state == 0
        status = await handle
        assert status.is_completed_ok
        assert status.has_suspended
        assert store.state == 1

    @pytest.mark.asyncio
    async def test_dispatch_and_wait_returns_final_status(self, store: Store[int]) -> None:
        status = await store.dispatch_and_wait(SlowIncrement())
        assert status.is_completed_ok
        assert store.state == 1

    @pytest.mark.asyncio
    async def test_dispatch_all_and_wait_all(self, store: Store[int]) -> None:
        statuses = await store.dispatch_and_wait_all([SlowIncrement(), Increment(), SlowIncrement()])
        assert all(status.is_completed_ok for status in statuses)
        assert store.state == 3

    def test_action_can_dispatch_from_reduce(self, store: Store[int]) -> None:
        class Outer(Action[int]):
            def reduce(self, state: int) -> int:
                self.dispatch(Increment())
                return self.state + 10

        store.dispatch_sync(Outer())
        assert store.state == 11

    def test_abort_dispatch(self, store: Store[int]) -> None:
        class Aborting(Increment):
            def abort_dispatch(self) -> bool:
                return True

        status = store.dispatch_sync(Aborting())
        assert status.was_aborted
        assert status.is_completed_ok
        assert store.state == 0
        assert store.dispatch_count == 0

    def test_before_and_after_run_once(self, store: Store[int]) -> None:
        calls: List[str] = []

        class Traced(Action[int]):
            def before(self) -> None:
                calls.append("before")

            def reduce(self, state: int) -> int:
                calls.append("reduce")
                return state + 1

            def after(self) -> None:
                calls.append("after")

        store.dispatch_sync(Traced())
        assert calls == ["before", "reduce", "after"]

    def test_error_in_before_skips_reduce(self, store: Store[int]) -> None:
        calls: List[str] = []

        class BadBefore(Action[int]):
            def before(self) -> None:
                raise UserException("not allowed")

            def reduce(self, state: int) -> int:
                calls.append("reduce")
                return state + 1

            def after(self) -> None:
                calls.append("after")

        status = store.dispatch_sync(BadBefore())
        assert status.is_completed_failed
        assert not status.has_finished_before
        assert calls == ["after"]
        assert store.state == 0

    def test_error_in_after_is_not_raised(self, store: Store[int]) -> None:
        seen: List[BaseException] = []
        global_error_handler.register_handler(lambda err, action: seen.append(err))

        class BadAfter(Increment):
            def after(self) -> None:
                raise RuntimeError("after failed")

        status = store.dispatch_sync(BadAfter())
        assert status.is_completed_ok
        assert store.state == 1
        assert isinstance(seen[0], RuntimeError)


class TestErrorPolicy:
    """錯誤傳遞策略的測試."""

    def test_dispatch_never_raises_action_errors(self, store: Store[int]) -> None:
        handle = store.dispatch(Fail())
        assert handle.status.is_completed_failed
        assert isinstance(handle.status.exception_if_any, ValueError)
        assert store.state == 0

    def test_dispatch_sync_raises_unexpected_errors(self, store: Store[int]) -> None:
        with pytest.raises(ValueError, match="boom"):
            store.dispatch_sync(Fail())

    def test_user_exception_is_not_raised_and_queued(self, store: Store[int]) -> None:
        status = store.dispatch_sync(FailUser())
        assert status.is_completed_failed
        assert store.errors == (UserException("Can't do that"),)
        assert store.get_and_remove_first_error() == UserException("Can't do that")
        assert store.get_and_remove_first_error() is None

    @pytest.mark.asyncio
    async def test_dispatch_and_wait_raises_unexpected_errors(self, store: Store[int]) -> None:
        with pytest.raises(ValueError):
            await store.dispatch_and_wait(Fail())

    @pytest.mark.asyncio
    async def test_swallow_error_observer(self) -> None:
        store = Store(0, error_observer=SwallowErrorObserver())
        status = await store.dispatch_and_wait(Fail())
        assert status.is_completed_failed

    @pytest.mark.asyncio
    async def test_development_error_observer(self) -> None:
        store = Store(0, error_observer=DevelopmentErrorObserver())
        with pytest.raises(ValueError):
            await store.dispatch_and_wait(Fail())
        assert len(store.errors) == 1
        assert isinstance(store.errors[0].cause, ValueError)

    def test_wrap_error_converts_to_user_exception(self, store: Store[int]) -> None:
        class Wrapped(Fail):
            def wrap_error(self, error: BaseException) -> BaseException:
                return UserException("Friendly message", cause=error)

        status = store.dispatch_sync(Wrapped())
        assert isinstance(status.original_error, ValueError)
        assert isinstance(status.wrapped_error, UserException)
        assert store.errors[0].msg == "Friendly message"

    def test_global_wrap_error_can_swallow(self) -> None:
        store = Store(0, global_wrap_error=lambda error, action: None)
        status = store.dispatch_sync(Fail())
        assert status.is_completed_failed
        assert status.wrapped_error is None
        assert store.errors == ()

    def test_error_handler_receives_processed_error(self, store: Store[int]) -> None:
        seen: List[Any] = []
        global_error_handler.register_handler(lambda err, action: seen.append((err, action)))
        action = Fail()
        store.dispatch(action)
        assert len(seen) == 1
        assert isinstance(seen[0][0], ValueError)
        assert seen[0][1] is action


class TestWaiting:
    """is_waiting / wait_* 的測試."""

    @pytest.mark.asyncio
    async def test_is_waiting_by_type_and_instance(self, store: Store[int]) -> None:
        action = SlowIncrement()
        store.dispatch(action)
        assert store.is_waiting(SlowIncrement)
        assert store.is_waiting(action)
        assert store.is_waiting([Increment, SlowIncrement])
        assert not store.is_waiting(Increment)

        await store.wait_all_actions()
        assert not store.is_waiting(SlowIncrement)
        assert store.state == 1

    def test_is_waiting_rejects_other_values(self, store: Store[int]) -> None:
        with pytest.raises(StoreError):
            store.is_waiting(42)

    @pytest.mark.asyncio
    async def test_wait_all_actions_for_given_actions(self, store: Store[int]) -> None:
        first = SlowIncrement()
        store.dispatch(first)
        await store.wait_all_actions([first], timeout=1)
        assert first.status.is_completed_ok

    @pytest.mark.asyncio
    async def test_wait_all_actions_timeout(self, store: Store[int]) -> None:
        class VerySlow(Action[int]):
            async def reduce(self, state: int) -> int:
                await asyncio.sleep(0.5)
                return state + 1

        store.dispatch(VerySlow())
        with pytest.raises(StoreTimeoutError):
            await store.wait_all_actions(timeout=0.01)
        await store.wait_all_actions()

    @pytest.mark.asyncio
    async def test_on_waiting_emits_for_awaited_types(self, store: Store[int]) -> None:
        class Spinner(Action[int]):
            async def reduce(self, state: int) -> None:
                await asyncio.sleep(0.01)
                return None

        changes = Recorder()
        waiting = Recorder()
        store.on_change.subscribe(changes)
        store.on_waiting.subscribe(waiting)
        store.is_waiting(Spinner)
        spinner = Spinner()
        await store.dispatch(spinner)
        await store.dispatch(Increment())
        assert changes.values == [1]
        assert waiting.values == [spinner, spinner]

    @pytest.mark.asyncio
    async def test_view_model_follows_waiting_without_state_change(self, store: Store[int]) -> None:
        class Spinner(Action[int]):
            async def reduce(self, state: int) -> None:
                await asyncio.sleep(0.01)
                return None

        class LoadingVm(ViewModel):
            def __init__(self, loading: bool) -> None:
                self.loading = loading
                super().__init__(equals=[loading])

        rec = Recorder()
        store.select_view_model(lambda s: LoadingVm(store.is_waiting(Spinner))).subscribe(rec)
        await store.dispatch(Spinner())
        assert [vm.loading for vm in rec.values] == [False, True, False]

    @pytest.mark.asyncio
    async def test_wait_condition(self, store: Store[int]) -> None:
        store.dispatch(SlowIncrement())
        state = await store.wait_condition(lambda s: s == 1, timeout=1)
        assert state == 1

    @pytest.mark.asyncio
    async def test_wait_condition_already_true(self, store: Store[int]) -> None:
        assert await store.wait_condition(lambda s: s == 0) == 0

    @pytest.mark.asyncio
    async def test_wait_condition_timeout(self, store: Store[int]) -> None:
        with pytest.raises(StoreTimeoutError):
            await store.wait_condition(lambda s: s > 5, timeout=0.02)

    @pytest.mark.asyncio
    async def test_wait_action_type(self, store: Store[int]) -> None:
        action = SlowIncrement()
        waiter = asyncio.ensure_future(store.wait_action_type(SlowIncrement, timeout=1))
        await asyncio.sleep(0)
        store.dispatch(action)
        assert await waiter is action


class TestStreams:
    """on_change / select / select_view_model 的測試."""

    def test_on_change_once_per_commit(self, store: Store[int]) -> None:
        rec = Recorder()
        store.on_change.subscribe(rec)
        store.dispatch_sync(Increment())
        store.dispatch_sync(Increment())
        assert rec.values == [1, 2]

    def test_select_only_emits_on_change(self) -> None:
        class SetName(Action[dict]):
            def reduce(self, state: dict) -> dict:
                return {**state, "name": self.payload}

        class Tick(Action[dict]):
            def reduce(self, state: dict) -> dict:
                return {**state, "ticks": state["ticks"] + 1}

        store: Store[dict] = Store({"name": "a", "ticks": 0})
        rec = Recorder()
        store.select(lambda s: s["name"]).subscribe(rec)
        store.dispatch_sync(SetName("b"))
        store.dispatch_sync(Tick())
        store.dispatch_sync(SetName("c"))
        assert rec.values == [("a", "b"), ("b", "c")]

    def test_select_view_model_skips_equal_view_models(self, store: Store[int]) -> None:
        class HalfVm(ViewModel):
            def __init__(self, half: int) -> None:
                self.half = half
                super().__init__(equals=[half])

        rec = Recorder()
        store.select_view_model(lambda s: HalfVm(s // 2)).subscribe(rec)
        store.dispatch_sync(Increment())
        store.dispatch_sync(Increment())
        assert [vm.half for vm in rec.values] == [0, 1]


class TestMocksApi:
    """Store 上 mock 登錄 API 的測試."""

    def test_add_and_clear_mocks_chain(self, store: Store[int]) -> None:
        assert store.add_mock(Increment, None) is store
        store.dispatch_sync(Increment())
        assert store.state == 0
        store.clear_mocks().dispatch_sync(Increment())
        assert store.state == 1


class TestLifecycle:
    """teardown 與 context manager 的測試."""

    def test_teardown_ignores_later_dispatches(self) -> None:
        rec = Recorder()
        with create_store(0) as store:
            store.on_change.subscribe(rec)
            store.dispatch_sync(Increment())
        assert store.is_shutdown
        status = store.dispatch_sync(Increment())
        assert not status.is_dispatched
        assert store.state == 1
        assert rec.values == [1]
