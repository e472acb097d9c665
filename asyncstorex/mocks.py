"""
Action 的 mock（測試替身）解析模組。

Store 以 action 類型為鍵保存 mock。dispatch 時，登錄的值會先被分類成
下列五種之一，再決定實際要執行的 action：

1) None：停用該類型的 action（dispatch 直接中止）。
2) MockAction 實例：改為執行該 mock，並透過 mock.action 取得原始 action。
3) Action 實例：改為執行該 action。
4) Callable[[Action], Action]：由原始 action 產生要執行的 action。
5) Callable[[Action, State], State]：直接以函數計算新狀態（可為 async）。

其他任何值都會在 dispatch 時拋出 ConfigurationError。
"""
import copy
import inspect
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Set

from .actions import Action
from .errors import ConfigurationError
from .types import S

logger = logging.getLogger(__name__)

VALID_MOCK_TYPES = (
    "`None`\n"
    "`MockAction`\n"
    "`Action`\n"
    "`Callable[[Action], Action]`\n"
    "`Callable[[Action, State], State]`\n"
)


class MockAction(Action[S]):
    """
    用來取代其他 action 的 mock。

    被執行前，pipeline 會把原始 action 設定到 self.action，
    讓 mock 可以讀取原始 action 的資料。
    """
    action: Optional[Action[S]] = None


class _StateFunctionAction(MockAction[S]):
    def __init__(self, fn: Callable[[Action[S], S], S]) -> None:
        super().__init__()
        self._fn = fn

    def reduce(self, state: S) -> S:
        return self._fn(self.action, state)


class _AsyncStateFunctionAction(MockAction[S]):
    def __init__(self, fn: Callable[..., Any]) -> None:
        super().__init__()
        self._fn = fn

    async def reduce(self, state: S) -> S:
        return await self._fn(self.action, state)


# ———— Mock 項目（封閉的 sum type） ————

class MockEntry:
    """已分類的 mock 項目。apply 回傳要執行的 action，None 表示中止。"""

    def apply(self, action: Action[Any]) -> Optional[Action[Any]]:
        raise NotImplementedError

    @property
    def is_terminal(self) -> bool:
        """為 True 時，產生的 action 不再進行 mock 解析。"""
        return True


class DisabledMock(MockEntry):
    def apply(self, action: Action[Any]) -> Optional[Action[Any]]:
        return None


class SubstituteMock(MockEntry):
    """每次 dispatch 使用登錄實例的淺複本，互相交錯的 dispatch 不會共用 mock.action。"""

    def __init__(self, mock: MockAction[Any]) -> None:
        self.mock = mock

    def apply(self, action: Action[Any]) -> Optional[Action[Any]]:
        mock = copy.copy(self.mock)
        mock.action = action
        return mock


class ReplacementMock(MockEntry):
    def __init__(self, replacement: Action[Any]) -> None:
        self.replacement = replacement

    def apply(self, action: Action[Any]) -> Optional[Action[Any]]:
        return copy.copy(self.replacement)

    @property
    def is_terminal(self) -> bool:
        return False


class ActionFactoryMock(MockEntry):
    def __init__(self, factory: Callable[[Action[Any]], Action[Any]]) -> None:
        self.factory = factory

    def apply(self, action: Action[Any]) -> Optional[Action[Any]]:
        produced = self.factory(action)
        if not isinstance(produced, Action):
            raise ConfigurationError(
                f"Mock for `{action.__class__.__name__}` should return an Action, "
                f"but returned `{type(produced).__name__}`.",
                component="mock",
                config_key=action.__class__.__name__,
            )
        return produced

    @property
    def is_terminal(self) -> bool:
        return False


class StateFunctionMock(MockEntry):
    def __init__(self, fn: Callable[..., Any]) -> None:
        self.fn = fn

    def apply(self, action: Action[Any]) -> Optional[Action[Any]]:
        if inspect.iscoroutinefunction(self.fn):
            mock: MockAction[Any] = _AsyncStateFunctionAction(self.fn)
        else:
            mock = _StateFunctionAction(self.fn)
        mock.action = action
        return mock


class InvalidMock(MockEntry):
    def __init__(self, value: Any) -> None:
        self.value = value

    def apply(self, action: Action[Any]) -> Optional[Action[Any]]:
        raise ConfigurationError(
            f"Action of type `{action.__class__.__name__}` "
            f"can't be mocked by a mock of type `{type(self.value).__name__}`.\n"
            f"Valid mock types are:\n" + VALID_MOCK_TYPES,
            component="mock",
            config_key=action.__class__.__name__,
            mock_type=type(self.value).__name__,
        )


def _required_positional_params(fn: Callable[..., Any]) -> Optional[int]:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return None
    positional = (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    return sum(1 for p in signature.parameters.values()
               if p.kind in positional and p.default is inspect.Parameter.empty)


def classify_mock(value: Any) -> MockEntry:
    """
    將登錄的 mock 值分類為 MockEntry。

    Args:
        value: add_mock 登錄的值

    Returns:
        對應的 MockEntry；無法辨識時回傳 InvalidMock
    """
    if value is None:
        return DisabledMock()
    if isinstance(value, MockAction):
        return SubstituteMock(value)
    if isinstance(value, Action):
        return ReplacementMock(value)
    if callable(value) and not inspect.isclass(value):
        required = _required_positional_params(value)
        if required == 1:
            return ActionFactoryMock(value)
        if required == 2:
            return StateFunctionMock(value)
    return InvalidMock(value)


def resolve_mocks(mocks: Mapping[type, Any], action: Action[Any]) -> Optional[Action[Any]]:
    """
    依照登錄的 mock 解析出實際要執行的 action。

    替代 action（情況 3 與 4）會再次進行 mock 解析；
    同一條解析鏈中已經出現過的類型不會再被解析，避免無窮迴圈。

    Args:
        mocks: 類型到 mock 值的映射
        action: 原始 action

    Returns:
        要執行的 action，或 None 表示 dispatch 應被中止
    """
    current: Optional[Action[Any]] = action
    seen: Set[type] = set()
    while current is not None and type(current) in mocks and type(current) not in seen:
        seen.add(type(current))
        entry = classify_mock(mocks[type(current)])
        logger.debug("Mocking %s with %s", type(current).__name__, type(entry).__name__)
        current = entry.apply(current)
        if entry.is_terminal:
            break
    return current


MockMap = Dict[type, Any]
