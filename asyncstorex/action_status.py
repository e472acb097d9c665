"""
ActionStatus：記錄單次 dispatch 生命週期的不可變紀錄。
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ActionStatus(BaseModel):
    """
    一次 dispatch 的狀態快照。

    只有 DispatchPipeline 會建立新的 ActionStatus（透過 copy），
    其他程式碼只能讀取。

    屬性:
        attempts: reduce 被呼叫的次數（每次呼叫前加一）
        is_dispatched: action 是否已被分發
        has_finished_before: before() 是否正常結束
        has_finished_reduce: reduce 是否正常結束並回傳結果
        has_finished_after: after() 是否已執行（代表 dispatch 完成）
        has_suspended: 執行期間是否曾經暫停（非同步）
        was_aborted: dispatch 是否在執行前就被中止（mock、鎖、abort_dispatch）
        original_error: before/reduce 拋出的原始錯誤
        wrapped_error: 經過 wrap_error 處理後的最終錯誤
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    attempts: int = 0
    is_dispatched: bool = False
    has_finished_before: bool = False
    has_finished_reduce: bool = False
    has_finished_after: bool = False
    has_suspended: bool = False
    was_aborted: bool = False
    original_error: Optional[Any] = None
    wrapped_error: Optional[Any] = None

    @property
    def is_completed(self) -> bool:
        return self.has_finished_after

    @property
    def is_completed_ok(self) -> bool:
        """dispatch 已完成，且 before 與 reduce 都沒有拋出錯誤。"""
        return self.is_completed and self.original_error is None

    @property
    def is_completed_failed(self) -> bool:
        """dispatch 已完成，但 before 或 reduce 拋出了錯誤，狀態沒有被改變。"""
        return self.is_completed and self.original_error is not None

    @property
    def exception_if_any(self) -> Optional[BaseException]:
        return self.original_error

    def copy(self, **changes: Any) -> "ActionStatus":  # type: ignore[override]
        """回傳套用了變更的新 ActionStatus。"""
        return self.model_copy(update=changes)

    def __repr__(self) -> str:
        if not self.is_dispatched:
            state = "new"
        elif self.is_completed_failed:
            state = "completed_failed"
        elif self.is_completed_ok:
            state = "completed_ok"
        else:
            state = "running"
        return f"ActionStatus({state}, attempts={self.attempts}, error={self.original_error!r})"
