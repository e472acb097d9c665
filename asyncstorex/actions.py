"""
基於 AsyncStoreX 的 Action 定義模組。

此模組提供 Action 基礎類別以及建立 Action 類別的 create_action 工廠。
Action 描述一次狀態轉換：它攜帶不可變的 payload，並以 reduce 方法
從目前狀態計算出新狀態（同步或非同步）。
"""
import inspect
from typing import (
    TYPE_CHECKING, Any, Callable, ClassVar, Dict, Generic, Hashable, Optional, Tuple, Type, TypeVar, Union
)

from .action_status import ActionStatus
from .errors import ConfigurationError, StoreError
from .immutable_utils import to_immutable
from .modifiers import Debounce, Fresh, Modifier, NonReentrant, Retry, Throttle
from .types import S, ReduceResult

if TYPE_CHECKING:
    from .pipeline import DispatchHandle
    from .store import Store

M = TypeVar("M", bound=Modifier)


class Action(Generic[S]):
    """
    描述一次狀態轉換的 action。

    子類別實作 reduce(state)，回傳新的狀態、None（不變更狀態），
    或是一個最終產生新狀態的 awaitable（async def reduce）。
    行為修飾透過類別屬性 modifiers 設定。

    屬性:
        payload: action 的資料（不可變）
        modifiers: 附加的 modifier 物件
        status: 最近一次 dispatch 的 ActionStatus

    範例:
        >>> class Increment(Action[int]):
        ...     def reduce(self, state):
        ...         return state + 1
        >>> store.dispatch(Increment())
    """
    modifiers: ClassVar[Tuple[Modifier, ...]] = ()

    # 預設值放在類別層級，子類別的 __init__ 不必呼叫 super().__init__
    payload: Any = None
    _status: ActionStatus = ActionStatus()
    _store: Optional["Store[S]"] = None
    _fresh_keys_removed: bool = False

    def __init__(self, payload: Any = None) -> None:
        self.payload = to_immutable(payload)

    # ———— 子類別可覆寫的方法 ————

    def reduce(self, state: S) -> ReduceResult[S]:
        raise NotImplementedError(f"{self.__class__.__name__} must implement reduce().")

    def before(self) -> Any:
        """在第一次 reduce 之前執行一次，可以是 async。拋錯時 reduce 不會執行。"""
        return None

    def after(self) -> None:
        """dispatch 結束時（不論成功或失敗）執行一次，不應拋錯。"""
        return None

    def abort_dispatch(self) -> bool:
        """回傳 True 時，dispatch 會在執行前被靜默中止。"""
        return False

    def wrap_error(self, error: BaseException) -> Optional[BaseException]:
        """
        處理 action 拋出的錯誤。

        Args:
            error: before 或 reduce 拋出的錯誤

        Returns:
            要回報的錯誤（可以是另一個錯誤），或 None 表示吞掉錯誤
        """
        return error

    def non_reentrant_key(self) -> Hashable:
        return self.__class__

    def throttle_lock_key(self) -> Hashable:
        throttle = self.modifier(Throttle)
        if throttle is not None and throttle.lock is not None:
            return throttle.lock
        return self.__class__

    def debounce_lock_key(self) -> Hashable:
        debounce = self.modifier(Debounce)
        if debounce is not None and debounce.lock is not None:
            return debounce.lock
        return self.__class__

    def fresh_key_params(self) -> Hashable:
        """
        區分新鮮度鍵的參數。

        預設為 None，表示同類型的 action 共用同一個新鮮期；
        例如回傳使用者 id，讓每個使用者的資料各自保持新鮮。
        """
        return None

    def fresh_key(self) -> Hashable:
        fresh = self.modifier(Fresh)
        if fresh is not None and fresh.lock is not None:
            return fresh.lock
        return (self.__class__, self.fresh_key_params())

    def remove_fresh_key(self) -> None:
        """讓這個 action 的新鮮度鍵立即過期，失敗時也不會再還原。"""
        self.store.lock_registry.remove_fresh_key(self.fresh_key())
        self._fresh_keys_removed = True

    def remove_all_fresh_keys(self) -> None:
        self.store.lock_registry.clear_fresh_keys()
        self._fresh_keys_removed = True

    # ———— modifier 查詢 ————

    def modifier(self, kind: Type[M]) -> Optional[M]:
        """回傳第一個屬於 kind 的 modifier，沒有則回傳 None。"""
        for mod in self.modifiers:
            if isinstance(mod, kind):
                return mod
        return None

    def has_modifier(self, kind: Type[Modifier]) -> bool:
        return self.modifier(kind) is not None

    def check_modifiers(self) -> None:
        """檢查 modifier 組合是否相容。"""
        if self.has_modifier(Retry) and self.has_modifier(Debounce):
            raise ConfigurationError(
                f"Action {self.__class__.__name__} can't combine Retry and Debounce.",
                component="modifiers",
            )
        if self.has_modifier(Fresh):
            for other in (Throttle, NonReentrant):
                if self.has_modifier(other):
                    raise ConfigurationError(
                        f"Action {self.__class__.__name__} can't combine Fresh and {other.__name__}.",
                        component="modifiers",
                    )

    def is_async(self) -> bool:
        """
        判斷 action 是否必須以非同步方式執行。

        Returns:
            before 或 reduce 是 coroutine 函數、帶有 Debounce、
            或先前的 dispatch 已經暫停過時回傳 True
        """
        return (inspect.iscoroutinefunction(self.before)
                or inspect.iscoroutinefunction(self.reduce)
                or self.has_modifier(Debounce)
                or self._status.has_suspended)

    # ———— 與 store 的綁定 ————

    @property
    def type(self) -> str:
        return getattr(self.__class__, "action_type", self.__class__.__name__)

    @property
    def status(self) -> ActionStatus:
        return self._status

    @property
    def store(self) -> "Store[S]":
        if self._store is None:
            raise StoreError(f"{self.__class__.__name__} was not dispatched yet.", operation="store")
        return self._store

    @property
    def state(self) -> S:
        """store 的目前狀態（每次讀取都是最新的快照）。"""
        return self.store.state

    def dispatch(self, action: "Action[S]") -> "DispatchHandle":
        return self.store.dispatch(action)

    def dispatch_sync(self, action: "Action[S]") -> ActionStatus:
        return self.store.dispatch_sync(action)

    async def dispatch_and_wait(self, action: "Action[S]") -> ActionStatus:
        return await self.store.dispatch_and_wait(action)

    def __repr__(self) -> str:
        if self.payload is None:
            return f"{self.__class__.__name__}()"
        return f"{self.__class__.__name__}(payload={self.payload!r})"


def _build_payload(prepare_fn: Optional[Callable[..., Any]], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
    if prepare_fn:
        return prepare_fn(*args, **kwargs)
    elif len(args) == 1 and not kwargs:
        return args[0]
    elif args or kwargs:
        payload: Dict[Union[int, str], Any] = dict(zip(range(len(args)), args))
        payload.update(kwargs)
        return payload
    return None


def create_action(
    action_type: str,
    reducer: Callable[[S, "Action[S]"], ReduceResult[S]],
    *modifiers: Modifier,
    prepare_fn: Optional[Callable[..., Any]] = None,
) -> Type[Action[S]]:
    """
    以一個 (state, action) -> state 函數建立新的 Action 類別。

    每次呼叫 create_action 都會產生一個新的類別，因此可以用來註冊 mock、
    作為 NonReentrant / Throttle 的預設鎖鍵，或在 is_waiting 中查詢。

    Args:
        action_type: Action 的類型標識符
        reducer: 狀態轉換函數，可以是 async 函數
        *modifiers: 附加的 modifier
        prepare_fn: 可選的預處理函數，用於在建立 Action 前處理輸入參數

    Returns:
        新的 Action 子類別

    範例:
        >>> Add = create_action("[Counter] Add", lambda state, action: state + action.payload)
        >>> store.dispatch(Add(5))
    """
    if inspect.iscoroutinefunction(reducer):
        async def reduce(self: Action[S], state: S) -> Optional[S]:
            return await reducer(state, self)
    else:
        def reduce(self: Action[S], state: S) -> ReduceResult[S]:  # type: ignore[misc]
            return reducer(state, self)

    def __init__(self: Action[S], *args: Any, **kwargs: Any) -> None:
        self.payload = to_immutable(_build_payload(prepare_fn, args, kwargs))

    namespace = {
        "action_type": action_type,
        "modifiers": tuple(modifiers),
        "reduce": reduce,
        "__init__": __init__,
        "__module__": __name__,
    }
    return type(action_type, (Action,), namespace)
