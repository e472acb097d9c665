"""
基於 AsyncStoreX 的中介軟體定義模組。

中介軟體觀察每一次 dispatch 的生命週期：開始執行前、狀態提交後、
以及失敗時。它們不能改變 dispatch 的結果；要轉換狀態請使用 WrapReduce。
"""

import logging
import time
from typing import Any, Dict, List, Optional

from .actions import Action
from .immutable_utils import to_dict

logger = logging.getLogger(__name__)


# ———— Base Middleware ————
class BaseMiddleware:
    """
    基礎中介類，定義所有中介可能實現的鉤子。

    被中止的 dispatch（mock 停用、鎖、abort_dispatch）不會觸發任何鉤子。
    """

    def on_next(self, action: Action[Any], prev_state: Any) -> None:
        """
        在 action 的 before/reduce 執行之前調用。

        Args:
            action: 正在 dispatch 的 Action
            prev_state: dispatch 之前的 store.state
        """
        pass

    def on_complete(self, next_state: Any, action: Action[Any]) -> None:
        """
        在 action 成功完成之後調用（不論狀態是否改變）。

        Args:
            next_state: dispatch 之後的最新 store.state
            action: 剛剛 dispatch 的 Action
        """
        pass

    def on_error(self, error: BaseException, action: Action[Any]) -> None:
        """
        如果 action 最終失敗，則調用此鉤子。

        Args:
            error: 拋出的異常（未經 wrap_error 處理的原始錯誤）
            action: 導致異常的 Action
        """
        pass

    def teardown(self) -> None:
        """
        當 Store 清理資源時調用，用於清理中間件持有的資源。
        """
        pass


# ———— LoggerMiddleware ————
class LoggerMiddleware(BaseMiddleware):
    """
    日誌中介，記錄每個 action 執行前和完成後的 state。

    使用場景:
    - 偵錯時需要觀察每次 state 的變化。
    - 確保 action 的執行順序正確。
    """

    def __init__(self, level: int = logging.INFO, log: Optional[logging.Logger] = None) -> None:
        self.level = level
        self.log = log or logger

    def on_next(self, action: Action[Any], prev_state: Any) -> None:
        self.log.log(self.level, "dispatching %s", action.type)
        self.log.log(self.level, "state before %s: %s", action.type, to_dict(prev_state))

    def on_complete(self, next_state: Any, action: Action[Any]) -> None:
        self.log.log(self.level, "state after %s: %s", action.type, to_dict(next_state))

    def on_error(self, error: BaseException, action: Action[Any]) -> None:
        self.log.log(max(self.level, logging.WARNING), "error in %s: %r", action.type, error)


# ———— PerformanceMonitorMiddleware ————
class PerformanceMonitorMiddleware(BaseMiddleware):
    """
    性能監控中間件，記錄 action 從開始到完成（包含重試與等待）的時間。

    Args:
        threshold_ms: 性能警告閾值，單位為毫秒，預設為 100 毫秒
        log_all: 是否記錄所有 action 的性能指標，預設為 False (只記錄超過閾值的)
    """

    def __init__(self, threshold_ms: float = 100, log_all: bool = False) -> None:
        self.threshold_ms = threshold_ms
        self.log_all = log_all
        self.metrics: Dict[str, List[float]] = {}
        self._started: Dict[int, float] = {}

    def on_next(self, action: Action[Any], prev_state: Any) -> None:
        self._started[id(action)] = time.perf_counter()

    def on_complete(self, next_state: Any, action: Action[Any]) -> None:
        self._record(action, failed=False)

    def on_error(self, error: BaseException, action: Action[Any]) -> None:
        self._record(action, failed=True)

    def _record(self, action: Action[Any], failed: bool) -> None:
        started = self._started.pop(id(action), None)
        if started is None:
            return
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.metrics.setdefault(action.type, []).append(elapsed_ms)
        if failed:
            logger.warning("Action %s failed after %.2fms", action.type, elapsed_ms)
        elif elapsed_ms > self.threshold_ms:
            logger.warning("Action %s exceeded threshold (%sms): %.2fms",
                           action.type, self.threshold_ms, elapsed_ms)
        elif self.log_all:
            logger.info("Action %s took %.2fms", action.type, elapsed_ms)

    def get_metrics(self) -> Dict[str, Dict[str, float]]:
        """
        獲取性能指標統計信息。
        """
        result = {}
        for action_type, times in self.metrics.items():
            if not times:
                continue
            result[action_type] = {
                'avg': sum(times) / len(times),
                'max': max(times),
                'min': min(times),
                'count': len(times),
            }
        return result

    def teardown(self) -> None:
        self._started.clear()
