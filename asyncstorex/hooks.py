"""
Store 層級的擴充點：WrapReduce 與 ErrorObserver。
"""
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, Union

from .errors import UserException
from .types import S

if TYPE_CHECKING:
    from .actions import Action
    from .store import Store


class WrapReduce(Generic[S]):
    """
    在 reduce 之後、狀態提交之前處理新狀態。

    每次成功的 dispatch 只會呼叫一次（不論重試了幾次），
    而且只在 reduce 回傳了不同於目前狀態的新物件時才會呼叫。

    範例:
        >>> class ClampCounter(WrapReduce[int]):
        ...     def process(self, old_state, new_state):
        ...         return max(0, new_state)
        >>> store = Store(0, wrap_reduce=ClampCounter())
    """

    def should_process(self) -> bool:
        """回傳 False 時暫時停用此 wrapper。"""
        return True

    def process(self, old_state: S, new_state: S) -> S:
        """
        Args:
            old_state: 成功的那次 reduce 開始時的狀態
            new_state: reduce 回傳的新狀態

        Returns:
            實際要提交到 store 的狀態
        """
        raise NotImplementedError

    def __call__(self, old_state: S, new_state: S) -> S:
        if not self.should_process():
            return new_state
        return self.process(old_state, new_state)


WrapReduceFunction = Union[WrapReduce[Any], Callable[[Any, Any], Any]]


class ErrorObserver(Generic[S]):
    """
    觀察 action 的最終錯誤，並決定是否要拋給 dispatch_and_wait / dispatch_sync 的呼叫者。

    沒有設定 ErrorObserver 時，除了 UserException 以外的錯誤都會被拋出。
    """

    def observe(self, error: BaseException, action: "Action[S]", store: "Store[S]") -> bool:
        raise NotImplementedError

    def __call__(self, error: BaseException, action: "Action[S]", store: "Store[S]") -> bool:
        return self.observe(error, action, store)


class SwallowErrorObserver(ErrorObserver[S]):
    """吞掉所有錯誤；錯誤仍然記錄在 ActionStatus 中。"""

    def observe(self, error: BaseException, action: "Action[S]", store: "Store[S]") -> bool:
        return False


class DevelopmentErrorObserver(ErrorObserver[S]):
    """
    開發用：把非 UserException 的錯誤轉成 UserException 放進 store 的錯誤佇列，
    讓 UI 能顯示它，同時仍然拋出原始錯誤。
    """

    def observe(self, error: BaseException, action: "Action[S]", store: "Store[S]") -> bool:
        if isinstance(error, UserException):
            return False
        store.add_error(UserException(str(error), cause=error))
        return True


def default_should_raise(error: Optional[BaseException]) -> bool:
    return error is not None and not isinstance(error, UserException)
