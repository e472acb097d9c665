"""
Dispatch 管線：把一個 action 從分發帶到完成。

每次 dispatch 依固定順序進行：

1. mock 解析
2. action.abort_dispatch()
3. NonReentrant 鎖
4. Throttle 或 Fresh 鎖
5. before()，然後 reduce（Debounce 等待、Retry 重試）
6. WrapReduce
7. 提交狀態、通知訂閱者
8. after()、釋放鎖、記錄最終的 ActionStatus

同步的 action 會在 dispatch 呼叫中直接完成。一旦需要暫停（async before/reduce、
重試延遲、防抖等待），剩下的工作會交給事件迴圈中的一個 task 繼續執行，
而且該 action 會被永久標記為非同步。
"""
import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Generator, Generic, Hashable, Optional

from .action_status import ActionStatus
from .actions import Action
from .errors import AsyncStoreXError, ConfigurationError, ErrorHandler, StoreError, UserException
from .hooks import WrapReduceFunction, default_should_raise
from .locks import FreshClaim, LockRegistry
from .mocks import resolve_mocks
from .modifiers import Debounce, Fresh, NonReentrant, Retry, Throttle
from .types import S, GlobalWrapError

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger(__name__)


class DispatchHandle(Generic[S]):
    """
    一次 dispatch 的控制代碼。

    可以直接 await，得到最終的 ActionStatus。失敗不會在 await 時拋出，
    要檢查 status（或改用 Store.dispatch_and_wait）。

    屬性:
        action: 被分發的原始 action
        executed: 實際執行的 action（被 mock 取代時與 action 不同）
        status: 這次 dispatch 自己的 ActionStatus
    """

    def __init__(self, action: Action[S]) -> None:
        self.action = action
        self.executed: Action[S] = action
        self.task: Optional["asyncio.Task[ActionStatus]"] = None
        self.error: Optional[BaseException] = None
        self.should_raise = False
        self._status = ActionStatus()
        self._non_reentrant_key: Optional[Hashable] = None
        self._throttle_key: Optional[Hashable] = None
        self._fresh_claim: Optional[FreshClaim] = None

    @property
    def status(self) -> ActionStatus:
        return self._status

    def done(self) -> bool:
        return self.status.is_completed or (self.task is not None and self.task.done())

    async def wait(self) -> ActionStatus:
        if self.task is not None:
            await asyncio.shield(self.task)
        return self.status

    def __await__(self) -> Generator[Any, None, ActionStatus]:
        return self.wait().__await__()

    def _set(self, status: ActionStatus) -> None:
        self._status = status
        self.executed._status = status
        self.action._status = status

    def _update(self, **changes: Any) -> None:
        self._set(self._status.copy(**changes))

    def __repr__(self) -> str:
        return f"DispatchHandle({self.action!r}, {self.status!r})"


class DispatchPipeline(Generic[S]):
    """
    協調 mock、鎖、執行、重試、WrapReduce 與狀態提交的管線。

    Args:
        store: 擁有狀態的 Store
        locks: 鎖登錄表（預設為行程層級的 global_lock_registry）
        error_handler: 行程層級的錯誤觀察器
        wrap_reduce: 狀態提交前的轉換鉤子
        global_wrap_error: 所有 action 共用的錯誤包裝函數
    """

    def __init__(
        self,
        store: "Store[S]",
        locks: LockRegistry,
        error_handler: ErrorHandler,
        wrap_reduce: Optional[WrapReduceFunction] = None,
        global_wrap_error: Optional[GlobalWrapError] = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.error_handler = error_handler
        self.wrap_reduce = wrap_reduce
        self.global_wrap_error = global_wrap_error

    # ———— 入口 ————

    def run(self, action: Action[S], require_sync: bool = False) -> DispatchHandle[S]:
        """
        分發一個 action。

        Args:
            action: 要分發的 action
            require_sync: 為 True 時，action 必須能同步完成，否則拋出 ConfigurationError

        Returns:
            這次 dispatch 的 DispatchHandle
        """
        handle = DispatchHandle(action)
        store = self.store
        action._store = store
        if store.is_shutdown:
            return handle

        executed = resolve_mocks(store.mocks, action)
        if executed is None:
            logger.debug("Dispatch of %s disabled by mock", action.type)
            return self._abort(handle)
        executed._store = store
        handle.executed = executed
        executed.check_modifiers()

        if require_sync and (executed.is_async() or action.status.has_suspended):
            raise ConfigurationError(
                f"Can't dispatch_sync({action.__class__.__name__}) "
                f"because {executed.__class__.__name__} is async.",
                component="dispatch_sync",
                config_key=action.__class__.__name__,
            )
        if executed.is_async():
            self._require_loop(executed)

        if executed.abort_dispatch():
            logger.debug("Dispatch of %s aborted by abort_dispatch()", executed.type)
            return self._abort(handle)
        if not self._acquire_locks(handle):
            return self._abort(handle)

        store._dispatch_count += 1
        handle._set(ActionStatus(is_dispatched=True, has_suspended=executed.status.has_suspended))
        for mw in store.middlewares:
            mw.on_next(executed, store.state)
        store._track(handle)

        if executed.is_async():
            self._schedule(handle)
        else:
            self._process_sync(handle, require_sync)
        return handle

    def _abort(self, handle: DispatchHandle[S]) -> DispatchHandle[S]:
        handle._set(ActionStatus(is_dispatched=True, was_aborted=True, has_finished_after=True,
                                 has_suspended=handle.executed.status.has_suspended))
        return handle

    def _require_loop(self, action: Action[S]) -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            raise StoreError(
                f"{action.__class__.__name__} needs to suspend, but there is no running event loop.",
                operation="dispatch",
            ) from None

    # ———— 鎖 ————

    def _acquire_locks(self, handle: DispatchHandle[S]) -> bool:
        action = handle.executed
        if action.has_modifier(NonReentrant):
            key = action.non_reentrant_key()
            if not self.locks.try_acquire(key):
                logger.debug("Dispatch of %s aborted: %r is already running", action.type, key)
                return False
            handle._non_reentrant_key = key

        throttle = action.modifier(Throttle)
        if throttle is not None:
            key = action.throttle_lock_key()
            if not self.locks.try_throttle(key, throttle.window, throttle.ignore_throttle):
                logger.debug("Dispatch of %s aborted: throttled by %r", action.type, key)
                self._release_non_reentrant(handle)
                return False
            handle._throttle_key = key

        fresh = action.modifier(Fresh)
        if fresh is not None:
            key = action.fresh_key()
            claim = self.locks.try_fresh(key, fresh.fresh_for, fresh.ignore_fresh)
            if claim is None:
                logger.debug("Dispatch of %s aborted: %r is still fresh", action.type, key)
                self._release_non_reentrant(handle)
                return False
            handle._fresh_claim = claim
            action._fresh_keys_removed = False
        return True

    def _release_non_reentrant(self, handle: DispatchHandle[S]) -> None:
        if handle._non_reentrant_key is not None:
            self.locks.release(handle._non_reentrant_key)
            handle._non_reentrant_key = None

    # ———— 執行 ————

    def _schedule(self, handle: DispatchHandle[S], **resume: Any) -> None:
        """在事件迴圈中建立 task，從 resume 指定的位置繼續執行。"""
        try:
            loop = self._require_loop(handle.executed)
        except StoreError:
            self._close(resume.get("pending"))
            self._close(resume.get("before_pending"))
            raise
        self.store._on_async_start(handle)
        handle.task = loop.create_task(self._process_async(handle, **resume))

    def _mark_suspended(self, handle: DispatchHandle[S], require_sync: bool = False) -> None:
        handle._update(has_suspended=True)
        if require_sync:
            name = handle.action.__class__.__name__
            raise ConfigurationError(
                f"Can't dispatch_sync({name}) because {name} became async.",
                component="dispatch_sync",
                config_key=name,
            )

    def _attempt(self, handle: DispatchHandle[S]) -> Any:
        handle._update(attempts=handle.status.attempts + 1)
        self.store._reduce_count += 1
        return handle.executed.reduce(self.store.state)

    def _retry_delay(self, handle: DispatchHandle[S], error: Exception) -> Optional[float]:
        """回傳重試前要等待的秒數，不該重試時回傳 None。"""
        retry = handle.executed.modifier(Retry)
        if retry is None:
            return None
        attempts = handle.status.attempts
        if not retry.should_retry(error, attempts):
            if isinstance(error, retry.retry_on):
                logger.warning("%s gave up after %d attempts: %s", handle.executed.type, attempts, error)
            return None
        delay = retry.delay_for(attempts)
        logger.debug("%s failed on attempt %d, retrying in %.3fs", handle.executed.type, attempts, delay)
        return delay

    def _process_sync(self, handle: DispatchHandle[S], require_sync: bool) -> None:
        action = handle.executed
        try:
            result = action.before()
            if inspect.isawaitable(result):
                if require_sync:
                    self._close(result)
                self._mark_suspended(handle, require_sync)
                self._schedule(handle, before_pending=result)
                return
            handle._update(has_finished_before=True)

            while True:
                old_state = self.store.state
                try:
                    result = self._attempt(handle)
                except Exception as err:
                    delay = self._retry_delay(handle, err)
                    if delay is None:
                        raise
                    self._mark_suspended(handle, require_sync)
                    self._schedule(handle, before_done=True, delay=delay)
                    return
                if inspect.isawaitable(result):
                    if require_sync:
                        self._close(result)
                    self._mark_suspended(handle, require_sync)
                    self._schedule(handle, before_done=True, pending=result, old_state=old_state)
                    return
                break

            self._commit(handle, old_state, result)
        except Exception as err:
            self._fail(handle, err)
        self._finish(handle)
        if isinstance(handle.error, AsyncStoreXError):
            raise handle.error

    async def _process_async(
        self,
        handle: DispatchHandle[S],
        before_done: bool = False,
        before_pending: Optional[Awaitable[Any]] = None,
        pending: Any = None,
        old_state: Any = None,
        delay: Optional[float] = None,
    ) -> ActionStatus:
        action = handle.executed
        try:
            if not before_done:
                result = before_pending if before_pending is not None else action.before()
                if inspect.isawaitable(result):
                    self._mark_suspended(handle)
                    await result
                handle._update(has_finished_before=True)

            debounce = action.modifier(Debounce)
            if debounce is not None and not await self._debounce(handle, debounce):
                handle._update(has_finished_reduce=True)
                self._finish(handle)
                return handle.status

            new_state = None
            while True:
                if delay is not None:
                    self._mark_suspended(handle)
                    await asyncio.sleep(delay)
                    delay = None
                try:
                    if pending is None:
                        old_state = self.store.state
                        pending = self._attempt(handle)
                    new_state = pending
                    if inspect.isawaitable(pending):
                        self._mark_suspended(handle)
                        new_state = await pending
                    break
                except Exception as err:
                    delay = self._retry_delay(handle, err)
                    if delay is None:
                        raise
                finally:
                    pending = None

            self._commit(handle, old_state, new_state)
        except asyncio.CancelledError as err:
            self._fail(handle, err)
            self._finish(handle)
            raise
        except Exception as err:
            self._fail(handle, err)
        self._finish(handle)
        return handle.status

    async def _debounce(self, handle: DispatchHandle[S], debounce: Debounce) -> bool:
        key = handle.executed.debounce_lock_key()
        run = self.locks.next_debounce_run(key)
        self._mark_suspended(handle)
        await asyncio.sleep(debounce.wait)
        if not self.locks.is_latest_debounce_run(key, run):
            logger.debug("Dispatch of %s superseded by a later one (debounce)", handle.executed.type)
            return False
        return True

    @staticmethod
    def _close(awaitable: Any) -> None:
        if inspect.iscoroutine(awaitable):
            awaitable.close()

    # ———— 提交與收尾 ————

    def _commit(self, handle: DispatchHandle[S], old_state: Any, new_state: Any) -> None:
        handle._update(has_finished_reduce=True)
        if new_state is None:
            return
        store = self.store
        if new_state is not store.state and self.wrap_reduce is not None:
            new_state = self.wrap_reduce(old_state, new_state)
            if new_state is None:
                return
        store._register_state(new_state)

    def _fail(self, handle: DispatchHandle[S], error: BaseException) -> None:
        action = handle.executed
        store = self.store
        handle._update(original_error=error)
        for mw in store.middlewares:
            mw.on_error(error, action)

        processed: Optional[BaseException] = error
        if not isinstance(error, AsyncStoreXError):
            try:
                processed = action.wrap_error(error)
            except Exception as wrap_err:
                processed = wrap_err
            if processed is not None and self.global_wrap_error is not None:
                try:
                    processed = self.global_wrap_error(processed, action)
                except Exception as wrap_err:
                    processed = wrap_err
        handle._update(wrapped_error=processed)
        handle.error = processed

        throttle = action.modifier(Throttle)
        if throttle is not None and throttle.remove_lock_on_error and handle._throttle_key is not None:
            self.locks.remove_throttle_lock(handle._throttle_key)

        if processed is None:
            return
        if isinstance(processed, UserException):
            store.add_error(processed)
        self.error_handler.handle(processed, action)

        if isinstance(processed, AsyncStoreXError):
            handle.should_raise = True
        elif store.error_observer is not None:
            handle.should_raise = bool(store.error_observer(processed, action, store))
        else:
            handle.should_raise = default_should_raise(processed)

    def _finish(self, handle: DispatchHandle[S]) -> None:
        action = handle.executed
        store = self.store
        try:
            action.after()
        except Exception as err:
            logger.error("%s.after() has thrown an error", action.__class__.__name__, exc_info=True)
            self.error_handler.handle(err, action)
        finally:
            self._release_non_reentrant(handle)
            if handle._throttle_key is not None:
                self.locks.prune_throttle_locks()
            if handle._fresh_claim is not None:
                self._settle_fresh(handle, handle._fresh_claim)
            handle._update(has_finished_after=True)
            store._untrack(handle)

        if handle.status.is_completed_ok:
            for mw in store.middlewares:
                mw.on_complete(store.state, action)

    def _settle_fresh(self, handle: DispatchHandle[S], claim: FreshClaim) -> None:
        """失敗時還原新鮮度（除非 action 自己移除過鍵），然後清掉過期的鍵。"""
        handle._fresh_claim = None
        if handle.status.original_error is not None and not handle.executed._fresh_keys_removed:
            self.locks.rollback_fresh(claim)
        self.locks.prune_fresh_keys()
