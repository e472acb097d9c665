"""
AsyncStoreX 共用的型別定義。
"""
from typing import TYPE_CHECKING, Awaitable, Callable, Hashable, Optional, TypeVar, Union

from typing_extensions import Protocol

if TYPE_CHECKING:
    from .actions import Action
    from .store import Store

S = TypeVar("S")  # 狀態類型
T = TypeVar("T")
VM = TypeVar("VM")  # ViewModel 類型

LockKey = Hashable

# reduce 可以同步回傳新狀態，也可以回傳一個 awaitable
ReduceResult = Union[Optional[S], Awaitable[Optional[S]]]

StateSelector = Callable[[S], T]
ViewModelConverter = Callable[[S], VM]

# 全域的錯誤包裝函數：回傳要回報的錯誤，或 None 表示吞掉
GlobalWrapError = Callable[[BaseException, "Action"], Optional[BaseException]]


class ErrorObserverFunction(Protocol):
    def __call__(self, error: BaseException, action: "Action", store: "Store") -> bool: ...
