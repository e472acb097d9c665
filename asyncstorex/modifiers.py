"""
Action 行為修飾器（modifier）模組。

modifier 是附加在 Action 類別上的不可變設定物件，
DispatchPipeline 會依固定順序檢查並套用它們：

    mock → abort_dispatch → NonReentrant → Throttle/Fresh → before → Debounce/Retry → WrapReduce → commit

範例:
    >>> class LoadUser(Action):
    ...     modifiers = (NonReentrant(), Retry(max_retries=5, initial_delay=0.1))
"""
from typing import Hashable, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import UserException


class Modifier(BaseModel):
    """所有 modifier 的基礎類。"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class NonReentrant(Modifier):
    """
    防止同一個鎖鍵的 action 同時執行。

    當已有同鍵的 action 在執行中時，新的 dispatch 會被靜默中止
    （狀態不變、ActionStatus 為 completed_ok，不拋錯）。
    鎖鍵預設為 action 的類型，可覆寫 Action.non_reentrant_key()。
    """


class Retry(Modifier):
    """
    當 reduce 拋出可重試的錯誤時，延遲後重新執行。

    延遲為 initial_delay * multiplier ** (attempts - 1)，
    並以 max_delay（預設 5 秒）為上限。

    Args:
        max_retries: 最大重試次數，總嘗試次數為 max_retries + 1
        initial_delay: 第一次重試前的延遲（秒）
        multiplier: 每次重試延遲的倍數，小於等於 1 時會改為 2
        max_delay: 延遲上限（秒），預設 5 秒，None 表示不設上限
        unlimited: 為 True 時無限次重試，直到成功或遇到不可重試的錯誤
        retry_on: 可重試的錯誤類型，預設只有 UserException
    """
    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=0.35, ge=0)
    multiplier: float = 2.0
    max_delay: Optional[float] = Field(default=5.0, ge=0)
    unlimited: bool = False
    retry_on: Tuple[Type[BaseException], ...] = (UserException,)

    @field_validator("multiplier")
    @classmethod
    def _default_multiplier(cls, value: float) -> float:
        return value if value > 1 else 2.0

    def should_retry(self, error: BaseException, attempts: int) -> bool:
        """
        判斷第 attempts 次嘗試失敗後是否還要重試。

        Args:
            error: 這次嘗試拋出的錯誤
            attempts: 目前為止的嘗試次數

        Returns:
            True 表示應該重試
        """
        if not isinstance(error, self.retry_on):
            return False
        return self.unlimited or attempts <= self.max_retries

    def delay_for(self, attempts: int) -> float:
        """回傳第 attempts 次失敗後的等待秒數。"""
        delay = self.initial_delay * self.multiplier ** max(attempts - 1, 0)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class UnlimitedRetries(Retry):
    """無限重試的 Retry，等同於 Retry(unlimited=True)。"""
    unlimited: bool = True


class Throttle(Modifier):
    """
    節流：同一個鎖鍵在 window 秒內只接受第一次 dispatch。

    Args:
        window: 節流時間窗（秒）
        lock: 自訂鎖鍵；None 時使用 Action.throttle_lock_key()（預設為 action 類型）
        ignore_throttle: 為 True 時永遠執行，但仍會刷新鎖的到期時間
        remove_lock_on_error: action 失敗時是否立即移除鎖，讓下一次 dispatch 可以重試
    """
    window: float = Field(default=1.0, ge=0)
    lock: Optional[Hashable] = None
    ignore_throttle: bool = False
    remove_lock_on_error: bool = False


class Fresh(Modifier):
    """
    新鮮度：同一個鍵在 fresh_for 秒內只執行一次，期間的 dispatch 會被靜默中止。

    dispatch 開始時就把鍵標記為新鮮；若 action 失敗，會還原成之前的狀態，
    因此錯誤不會延長新鮮期。鍵預設為 (action 類型, fresh_key_params())，
    可覆寫 Action.fresh_key() 或設定 lock。

    Args:
        fresh_for: 新鮮期（秒）
        lock: 自訂鍵，讓不同類型的 action 共用新鮮期
        ignore_fresh: 為 True 時永遠執行，並重新開始新鮮期
    """
    fresh_for: float = Field(default=1.0, ge=0)
    lock: Optional[Hashable] = None
    ignore_fresh: bool = False


class Debounce(Modifier):
    """
    防抖：同一個鎖鍵在 wait 秒的安靜期後只執行最後一次 dispatch。

    被取代的 dispatch 不會執行 reduce，狀態不變但仍視為成功完成。
    使用 Debounce 的 action 一律是非同步的。
    """
    wait: float = Field(default=0.333, ge=0)
    lock: Optional[Hashable] = None
