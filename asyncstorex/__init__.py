"""
AsyncStoreX：以 action 為中心、支援非同步的狀態管理庫。
"""

from .errors import (
    AsyncStoreXError, ConfigurationError, StoreError, StoreTimeoutError,
    UserException, ErrorHandler, global_error_handler
)
from .action_status import ActionStatus
from .actions import Action, create_action
from .modifiers import Modifier, NonReentrant, Retry, UnlimitedRetries, Throttle, Fresh, Debounce
from .locks import LockRegistry, global_lock_registry
from .mocks import MockAction, classify_mock, resolve_mocks
from .hooks import (
    WrapReduce, ErrorObserver, SwallowErrorObserver, DevelopmentErrorObserver
)
from .middleware import BaseMiddleware, LoggerMiddleware, PerformanceMonitorMiddleware
from .pipeline import DispatchHandle
from .store import Store, create_store
from .view_model import ViewModel, VmEquals, ViewModelMemoizer
from .immutable_utils import to_immutable, to_dict

__version__ = "0.1.0"

# 匯出所有公開 API
__all__ = [
    # Errors
    "AsyncStoreXError", "ConfigurationError", "StoreError", "StoreTimeoutError",
    "UserException", "ErrorHandler", "global_error_handler",

    # Actions
    "Action", "ActionStatus", "create_action",

    # Modifiers
    "Modifier", "NonReentrant", "Retry", "UnlimitedRetries", "Throttle", "Fresh", "Debounce",
    "LockRegistry", "global_lock_registry",

    # Mocks
    "MockAction", "classify_mock", "resolve_mocks",

    # Hooks
    "WrapReduce", "ErrorObserver", "SwallowErrorObserver", "DevelopmentErrorObserver",

    # Middleware
    "BaseMiddleware", "LoggerMiddleware", "PerformanceMonitorMiddleware",

    # Store
    "Store", "DispatchHandle", "create_store",

    # View models
    "ViewModel", "VmEquals", "ViewModelMemoizer",

    # Immutable Utils
    "to_immutable", "to_dict",
]
