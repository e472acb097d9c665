"""
狀態容器模組。

Store 持有唯一的應用狀態，所有狀態變更都透過 dispatch(action) 進行。
狀態變更以 reactivex 串流通知訂閱者。
"""
import asyncio
import inspect
import logging
from collections import deque
from typing import (Any, Callable, Deque, Dict, Generic, Iterable, List, Mapping, Optional,
                    Set, Tuple, Union)

from reactivex import Observable, Subject
from reactivex import operators as ops
import reactivex

from .action_status import ActionStatus
from .actions import Action
from .errors import ErrorHandler, StoreError, StoreTimeoutError, UserException, global_error_handler
from .hooks import ErrorObserver, WrapReduceFunction
from .locks import LockRegistry, global_lock_registry
from .middleware import BaseMiddleware
from .pipeline import DispatchHandle, DispatchPipeline
from .types import S, ErrorObserverFunction, GlobalWrapError, StateSelector, ViewModelConverter
from .view_model import ViewModelMemoizer

logger = logging.getLogger(__name__)

ActionTypes = Union[type, Action[Any], Iterable[Union[type, Action[Any]]]]


class Store(Generic[S]):
    """
    狀態容器，管理應用狀態並通知訂閱者狀態變更。

    Args:
        initial_state: 初始狀態（建議使用不可變物件）
        lock_registry: 鎖登錄表，預設為行程層級的 global_lock_registry
        wrap_reduce: 每次成功的 dispatch 在提交狀態前呼叫一次
        global_wrap_error: 所有 action 的錯誤都會經過此函數
        error_observer: 決定錯誤是否要拋給 dispatch_and_wait / dispatch_sync 的呼叫者
        error_handler: 錯誤記錄器，預設為 global_error_handler
        middlewares: 中介軟體類別或實例
        mocks: action 類型到 mock 的映射

    範例:
        >>> class Increment(Action[int]):
        ...     def reduce(self, state):
        ...         return state + 1
        >>> store = Store(0)
        >>> store.dispatch_sync(Increment()).is_completed_ok
        True
        >>> store.state
        1
    """

    def __init__(
        self,
        initial_state: S,
        *,
        lock_registry: Optional[LockRegistry] = None,
        wrap_reduce: Optional[WrapReduceFunction] = None,
        global_wrap_error: Optional[GlobalWrapError] = None,
        error_observer: Optional[Union[ErrorObserver[S], ErrorObserverFunction]] = None,
        error_handler: Optional[ErrorHandler] = None,
        middlewares: Iterable[Any] = (),
        mocks: Optional[Mapping[type, Any]] = None,
    ) -> None:
        self._state: S = initial_state
        # 狀態流，發出 (old_state, new_state)
        self._state_subject: Subject = Subject()
        # 已完成的 dispatch 流
        self._finished_subject: Subject = Subject()
        self._errors_subject: Subject = Subject()
        # is_waiting 查詢過的 action 開始或結束時發出該 action
        self._waiting_subject: Subject = Subject()

        self.mocks: Dict[type, Any] = dict(mocks or {})
        self.middlewares: List[BaseMiddleware] = []
        self.error_observer = error_observer
        self.lock_registry = lock_registry if lock_registry is not None else global_lock_registry
        self._pipeline: DispatchPipeline[S] = DispatchPipeline(
            self,
            self.lock_registry,
            error_handler if error_handler is not None else global_error_handler,
            wrap_reduce=wrap_reduce,
            global_wrap_error=global_wrap_error,
        )

        self._in_flight: Dict[int, DispatchHandle[S]] = {}
        self._awaited_types: Set[type] = set()
        self._errors: Deque[UserException] = deque()
        self._dispatch_count = 0
        self._reduce_count = 0
        self._shutdown = False

        self.apply_middleware(*middlewares)

    # ———— 狀態與串流 ————

    @property
    def state(self) -> S:
        """
        獲取當前狀態的快照。
        """
        return self._state

    @property
    def on_change(self) -> Observable:
        """每次狀態變更時發出新的狀態。"""
        return self._state_subject.pipe(ops.map(lambda state_tuple: state_tuple[1]))

    @property
    def actions_finished(self) -> Observable:
        """每次 dispatch 結束時發出該次的 DispatchHandle（不含被中止的 dispatch）。"""
        return self._finished_subject

    @property
    def on_error(self) -> Observable:
        """每次有 UserException 加入錯誤佇列時發出。"""
        return self._errors_subject

    @property
    def on_waiting(self) -> Observable:
        """
        is_waiting 查詢過的 action 類型開始非同步執行或結束時，發出該 action。

        與 on_change 分開，on_change 只在狀態真的被替換時發出。
        """
        return self._waiting_subject

    def select(self, selector: StateSelector) -> Observable:
        """
        選擇狀態的一部分進行觀察。

        Args:
            selector: 一個函數，接收整個狀態並返回希望觀察的部分。

        Returns:
            一個可觀察對象，發送 (舊的選定值, 新的選定值)，只在新值變化時發出。
        """
        return self._state_subject.pipe(
            ops.map(lambda state_tuple: (selector(state_tuple[0]), selector(state_tuple[1]))),
            ops.distinct_until_changed(lambda x: x[1]),
        )

    def select_view_model(self, converter: ViewModelConverter) -> Observable:
        """
        觀察由狀態推導出的 ViewModel。

        訂閱時立即發出目前的 ViewModel；之後只有在新的 ViewModel
        與上一次不相等時才發出。每個訂閱者有自己的比較基準。

        Args:
            converter: 把狀態轉成 ViewModel 的函數
        """
        def factory(_scheduler: Any) -> Observable:
            memoizer: ViewModelMemoizer[Any] = ViewModelMemoizer()
            waiting = self._waiting_subject.pipe(ops.map(lambda _: self._state))
            return reactivex.merge(self.on_change, waiting).pipe(
                ops.start_with(self._state),
                ops.map(converter),
                ops.filter(memoizer.should_rebuild),
            )

        return reactivex.defer(factory)

    # ———— 中介軟體與 mock ————

    def apply_middleware(self, *middlewares: Any) -> "Store[S]":
        """
        一次註冊多個中介軟體。

        Args:
            *middlewares: 要註冊的中介軟體，可以是類或實例。
        """
        for m in middlewares:
            inst = m() if inspect.isclass(m) else m
            self.middlewares.append(inst)
        return self

    def add_mock(self, action_type: type, mock: Any) -> "Store[S]":
        """
        為某個 action 類型登錄 mock。可登錄的值見 asyncstorex.mocks。
        無效的 mock 在 dispatch 該類型時才會拋出 ConfigurationError。
        """
        self.mocks[action_type] = mock
        return self

    def add_mocks(self, mocks: Mapping[type, Any]) -> "Store[S]":
        self.mocks.update(mocks)
        return self

    def clear_mocks(self) -> "Store[S]":
        self.mocks.clear()
        return self

    # ———— 分發 ————

    def dispatch(self, action: Action[S]) -> DispatchHandle[S]:
        """
        分發一個 action，不等待非同步的部分完成。

        同步 action 在返回前已經完成；非同步 action 在事件迴圈中繼續執行。
        action 的失敗只會記錄在 ActionStatus 中，不會在這裡拋出。

        Args:
            action: 要分發的 Action 物件。

        Returns:
            可 await 的 DispatchHandle。
        """
        return self._pipeline.run(action)

    def dispatch_sync(self, action: Action[S]) -> ActionStatus:
        """
        同步分發一個 action，並返回最終的 ActionStatus。

        Raises:
            ConfigurationError: action 是非同步的，或在執行中變成非同步
            Exception: action 失敗且錯誤策略要求拋出時
        """
        handle = self._pipeline.run(action, require_sync=True)
        self._raise_if_needed(handle)
        return handle.status

    async def dispatch_and_wait(self, action: Action[S]) -> ActionStatus:
        """
        分發一個 action 並等待它完全結束（包含 after()）。

        Raises:
            Exception: action 失敗且錯誤策略要求拋出時
        """
        handle = self.dispatch(action)
        status = await handle
        self._raise_if_needed(handle)
        return status

    def dispatch_all(self, actions: Iterable[Action[S]]) -> List[DispatchHandle[S]]:
        """依序分發多個 action，返回各自的 DispatchHandle。"""
        return [self.dispatch(action) for action in actions]

    async def dispatch_and_wait_all(self, actions: Iterable[Action[S]]) -> List[ActionStatus]:
        """
        同時分發多個 action 並等待全部結束。

        所有 action 都結束後，才會拋出第一個需要拋出的錯誤。
        """
        handles = self.dispatch_all(actions)
        statuses = list(await asyncio.gather(*(handle.wait() for handle in handles)))
        for handle in handles:
            self._raise_if_needed(handle)
        return statuses

    @staticmethod
    def _raise_if_needed(handle: DispatchHandle[S]) -> None:
        if handle.should_raise and handle.error is not None:
            raise handle.error

    # ———— 等待 ————

    def is_waiting(self, actions: ActionTypes) -> bool:
        """
        檢查是否有指定的 action 正在執行。

        Args:
            actions: action 類型、action 實例，或它們組成的可迭代物件

        Returns:
            只要其中一個仍在執行就返回 True
        """
        if isinstance(actions, type):
            self._awaited_types.add(actions)
            return any(type(h.action) is actions or type(h.executed) is actions
                       for h in self._in_flight.values())
        if isinstance(actions, Action):
            self._awaited_types.add(type(actions))
            return any(h.action is actions or h.executed is actions
                       for h in self._in_flight.values())
        if isinstance(actions, Iterable) and not isinstance(actions, str):
            # 逐一登錄，不短路
            results = [self.is_waiting(item) for item in actions]
            return any(results)
        raise StoreError(
            f"is_waiting accepts an action type, an action or an iterable of them, "
            f"got `{type(actions).__name__}`.",
            operation="is_waiting",
        )

    async def wait_all_actions(
        self,
        actions: Optional[Iterable[Action[S]]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        等待所有進行中的 dispatch 結束；給定 actions 時只等待這些 action。

        Raises:
            StoreTimeoutError: 超過 timeout 秒仍未結束
        """
        targets = None if actions is None else list(actions)

        def pending() -> List[DispatchHandle[S]]:
            return [h for h in self._in_flight.values()
                    if targets is None or any(h.action is a or h.executed is a for a in targets)]

        async def wait_pending() -> None:
            handles = pending()
            while handles:
                await asyncio.gather(*(h.wait() for h in handles))
                handles = pending()

        try:
            await asyncio.wait_for(wait_pending(), timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError("wait_all_actions", timeout) from None

    async def wait_condition(self, condition: Callable[[S], bool], timeout: Optional[float] = None) -> S:
        """
        等待直到 condition(state) 成立，並返回當時的狀態。

        Raises:
            StoreTimeoutError: 超過 timeout 秒條件仍未成立
        """
        if condition(self._state):
            return self._state
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[S]" = loop.create_future()

        def check(state: S) -> None:
            if future.done():
                return
            try:
                if condition(state):
                    future.set_result(state)
            except Exception as err:
                future.set_exception(err)

        subscription = self.on_change.subscribe(on_next=check)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError("wait_condition", timeout) from None
        finally:
            subscription.dispose()

    async def wait_action_type(self, action_type: type, timeout: Optional[float] = None) -> Action[S]:
        """
        等待下一個指定類型的 dispatch 結束，並返回該 action。

        Raises:
            StoreTimeoutError: 超過 timeout 秒仍未有該類型的 dispatch 結束
        """
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Action[S]]" = loop.create_future()

        def finished(handle: DispatchHandle[S]) -> None:
            if future.done():
                return
            if type(handle.action) is action_type or type(handle.executed) is action_type:
                future.set_result(handle.action)

        subscription = self._finished_subject.subscribe(on_next=finished)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError("wait_action_type", timeout) from None
        finally:
            subscription.dispose()

    # ———— 錯誤佇列 ————

    @property
    def errors(self) -> Tuple[UserException, ...]:
        return tuple(self._errors)

    def add_error(self, error: UserException) -> None:
        """把 UserException 加入錯誤佇列，供 UI 顯示。"""
        self._errors.append(error)
        self._errors_subject.on_next(error)

    def get_and_remove_first_error(self) -> Optional[UserException]:
        return self._errors.popleft() if self._errors else None

    # ———— 計數器 ————

    @property
    def dispatch_count(self) -> int:
        """實際開始執行的 dispatch 次數（不含被中止的）。"""
        return self._dispatch_count

    @property
    def reduce_count(self) -> int:
        """reduce 被呼叫的次數（包含每一次重試）。"""
        return self._reduce_count

    # ———— 供 DispatchPipeline 使用 ————

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def _update_state(self, new_state: S) -> None:
        """
        更新內部狀態並通知訂閱者。

        Args:
            new_state: 新的狀態。
        """
        old_state = self._state
        self._state = new_state
        self._state_subject.on_next((old_state, new_state))

    def _register_state(self, new_state: S) -> bool:
        """提交 reduce 的結果；狀態沒有被替換時返回 False。"""
        if self._shutdown or new_state is self._state:
            return False
        self._update_state(new_state)
        return True

    def _notify_waiters(self, handle: DispatchHandle[S]) -> None:
        if type(handle.action) in self._awaited_types or type(handle.executed) in self._awaited_types:
            self._waiting_subject.on_next(handle.action)

    def _track(self, handle: DispatchHandle[S]) -> None:
        self._in_flight[id(handle)] = handle

    def _on_async_start(self, handle: DispatchHandle[S]) -> None:
        if not self._shutdown:
            self._notify_waiters(handle)

    def _untrack(self, handle: DispatchHandle[S]) -> None:
        self._in_flight.pop(id(handle), None)
        if self._shutdown:
            return
        if handle.task is not None:
            self._notify_waiters(handle)
        self._finished_subject.on_next(handle)

    # ———— 生命週期 ————

    def teardown(self) -> None:
        """
        關閉 Store：完成所有串流並清理中介軟體。之後的 dispatch 會被忽略。
        """
        if self._shutdown:
            return
        self._shutdown = True
        for mw in self.middlewares:
            mw.teardown()
        self._state_subject.on_completed()
        self._finished_subject.on_completed()
        self._errors_subject.on_completed()
        self._waiting_subject.on_completed()
        logger.debug("Store shut down with %d dispatch(es) in flight", len(self._in_flight))

    def __enter__(self) -> "Store[S]":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.teardown()

    def __repr__(self) -> str:
        return f"Store(state={self._state!r}, in_flight={len(self._in_flight)})"


def create_store(initial_state: S, **kwargs: Any) -> Store[S]:
    """
    創建一個新的 Store 實例。

    Args:
        initial_state: 初始狀態
        **kwargs: 傳給 Store 的其他參數

    Returns:
        Store: 新創建的 Store 實例。
    """
    return Store(initial_state, **kwargs)
