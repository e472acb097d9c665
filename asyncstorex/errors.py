"""
AsyncStoreX 錯誤處理模組。

此模組定義函式庫的錯誤類型階層、使用者層級的 UserException，
以及全域（行程層級）的錯誤觀察器 ErrorHandler。
"""

import logging
import traceback
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class AsyncStoreXError(Exception):
    """所有 AsyncStoreX 異常的基礎類。"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.traceback = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        """
        將錯誤轉換為可序列化的字典。

        Returns:
            包含錯誤類型、訊息與細節的字典
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": dict(self.details),
        }

    def __str__(self) -> str:
        return self.message


class ConfigurationError(AsyncStoreXError):
    """
    配置相關的錯誤。

    屬於程式設計錯誤：無效的 mock、對非同步 action 呼叫 dispatch_sync、
    不相容的 modifier 組合等。這類錯誤一律立即拋出，不會被吞掉。
    """

    def __init__(self, message: str, component: str, config_key: Optional[str] = None, **kwargs: Any) -> None:
        details = {"component": component, "config_key": config_key}
        details.update(kwargs)
        super().__init__(message, details)
        self.component = component
        self.config_key = config_key


class StoreError(AsyncStoreXError):
    """與 Store 操作相關的錯誤。"""

    def __init__(self, message: str, operation: str, **kwargs: Any) -> None:
        details = {"operation": operation}
        details.update(kwargs)
        super().__init__(message, details)
        self.operation = operation


class StoreTimeoutError(StoreError):
    """等待條件或 action 時逾時。"""

    def __init__(self, operation: str, timeout: Optional[float]) -> None:
        super().__init__(f"Timeout after {timeout}s while waiting in {operation}.", operation, timeout=timeout)
        self.timeout = timeout


class UserException(Exception):
    """
    使用者層級的錯誤，代表可預期、可恢復的業務失敗。

    這是唯一會被 Retry modifier 自動重試的錯誤類型。
    重試耗盡後會記錄在 ActionStatus 中，並放入 Store 的錯誤佇列，
    預設不會拋給呼叫 dispatch 的程式碼。

    Args:
        msg: 顯示給使用者的訊息
        cause: 造成此錯誤的原因，可以是另一個 UserException、字串或任何異常
        code: 可選的錯誤代碼
    """

    def __init__(self, msg: Optional[str] = None, *, cause: Any = None, code: Any = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.cause = cause
        self.code = code

    def hard_cause(self) -> Any:
        """沿著 UserException 的 cause 鏈，回傳最底層的非 UserException 原因。"""
        if isinstance(self.cause, UserException):
            return self.cause.hard_cause()
        return self.cause

    def without_hard_cause(self) -> "UserException":
        cause = self.cause.without_hard_cause() if isinstance(self.cause, UserException) else None
        return UserException(self.msg, cause=cause, code=self.code)

    def with_cause(self, cause: Any) -> "UserException":
        """
        回傳一個新的 UserException，並把 cause 加到原因鏈的最尾端。

        Args:
            cause: 要附加的原因

        Returns:
            新的 UserException
        """
        if cause is None:
            return self
        if self.cause is None:
            return UserException(self.msg, cause=cause, code=self.code)
        if isinstance(self.cause, UserException):
            return UserException(self.msg, cause=self.cause.with_cause(cause), code=self.code)
        return UserException(self.msg, cause=UserException(str(self.cause)).with_cause(cause), code=self.code)

    def _text(self) -> str:
        if self.msg:
            return self.msg
        return "" if self.code is None else str(self.code)

    def __str__(self) -> str:
        if isinstance(self.cause, UserException):
            return f"{self._text()}\n\nReason: {self.cause._text()}"
        if isinstance(self.cause, str):
            return f"{self._text()}\n\nReason: {self.cause}"
        return self._text()

    def __repr__(self) -> str:
        return f"UserException(msg={self.msg!r}, cause={self.cause!r}, code={self.code!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UserException):
            return NotImplemented
        return (type(self) is type(other)
                and self.msg == other.msg
                and self.cause == other.cause
                and self.code == other.code)

    def __hash__(self) -> int:
        return hash((type(self), self.msg, self.code))


ErrorCallback = Callable[[BaseException, Any], None]


class ErrorHandler:
    """
    集中式錯誤處理器，用於捕獲、日誌記錄和錯誤報告。

    Store 會把每一個 action 的最終錯誤交給它。處理器本身絕不拋出異常：
    已註冊的回呼若失敗，只會被記錄下來。

    Args:
        log_errors: 是否以 logging 記錄收到的錯誤
        log_user_exceptions: UserException 是否也要記錄（預設只記錄在 DEBUG 等級）
    """

    def __init__(self, log_errors: bool = True, log_user_exceptions: bool = False) -> None:
        self.log_errors = log_errors
        self.log_user_exceptions = log_user_exceptions
        self.handlers: List[ErrorCallback] = []

    def register_handler(self, handler: ErrorCallback) -> None:
        if handler not in self.handlers:
            self.handlers.append(handler)

    def unregister_handler(self, handler: ErrorCallback) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    def clear_handlers(self) -> None:
        self.handlers.clear()

    def handle(self, error: Union[AsyncStoreXError, BaseException], action: Any = None) -> None:
        """
        處理一個錯誤：記錄日誌並通知所有已註冊的回呼。

        Args:
            error: 發生的錯誤
            action: 造成錯誤的 action（可選）
        """
        action_name = type(action).__name__ if action is not None else None
        if self.log_errors:
            if isinstance(error, UserException):
                level = logging.WARNING if self.log_user_exceptions else logging.DEBUG
                logger.log(level, "UserException in %s: %s", action_name, error)
            else:
                logger.error("Error in %s: %r", action_name, error,
                             exc_info=(type(error), error, error.__traceback__))

        for handler in list(self.handlers):
            try:
                handler(error, action)
            except Exception:
                logger.exception("Error handler %r failed", handler)


# 單例錯誤處理器
global_error_handler = ErrorHandler()
