"""
行程層級的鎖登錄表，供 NonReentrant、Throttle 與 Debounce 使用。

所有 Store 預設共用 global_lock_registry；測試之間可以呼叫 reset() 清除。
由於 dispatch 都在單一事件迴圈中協作執行，檢查與修改鎖之間沒有競爭，
但在 await 之間其他 dispatch 仍可能讀寫同一個鎖。
"""
import logging
import time
from typing import Callable, Dict, NamedTuple, Optional, Set, Tuple

from .types import LockKey

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class FreshClaim(NamedTuple):
    """一次 dispatch 對新鮮度鍵的佔用，previous 為佔用前的 (到期時間, token)。"""
    key: LockKey
    previous: Optional[Tuple[float, object]]
    token: object


class LockRegistry:
    """
    以鍵（action 類型或自訂物件）索引的鎖表。

    Args:
        clock: 取得目前時間（秒）的函數，預設為 time.monotonic
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self.clock = clock
        self._running: Set[LockKey] = set()
        self._throttle_expiry: Dict[LockKey, float] = {}
        self._debounce_runs: Dict[LockKey, int] = {}
        # key -> (到期時間, 擁有者 token)
        self._fresh: Dict[LockKey, Tuple[float, object]] = {}

    # ———— NonReentrant ————

    def try_acquire(self, key: LockKey) -> bool:
        """
        嘗試取得不可重入鎖。

        Returns:
            成功取得時回傳 True；已被佔用時回傳 False
        """
        if key in self._running:
            return False
        self._running.add(key)
        return True

    def release(self, key: LockKey) -> None:
        self._running.discard(key)

    def is_held(self, key: LockKey) -> bool:
        return key in self._running

    # ———— Throttle ————

    def try_throttle(self, key: LockKey, window: float, ignore: bool = False) -> bool:
        """
        檢查並刷新節流鎖。

        Args:
            key: 節流鎖鍵
            window: 節流時間窗（秒）
            ignore: 為 True 時不檢查，直接刷新到期時間

        Returns:
            允許執行時回傳 True（並設定新的到期時間）；仍在時間窗內時回傳 False
        """
        now = self.clock()
        expires_at = self._throttle_expiry.get(key)
        if ignore or expires_at is None or expires_at <= now:
            self._throttle_expiry[key] = now + window
            return True
        logger.debug("Throttled %r for another %.3fs", key, expires_at - now)
        return False

    def remove_throttle_lock(self, key: LockKey) -> None:
        self._throttle_expiry.pop(key, None)

    def prune_throttle_locks(self) -> None:
        """移除已經過期的節流鎖，避免記憶體洩漏。"""
        now = self.clock()
        expired = [key for key, expires_at in self._throttle_expiry.items() if expires_at <= now]
        for key in expired:
            del self._throttle_expiry[key]

    def throttle_locks(self) -> Dict[LockKey, float]:
        return dict(self._throttle_expiry)

    # ———— Fresh ————

    def try_fresh(self, key: LockKey, fresh_for: float, ignore: bool = False) -> Optional[FreshClaim]:
        """
        檢查鍵是否仍然新鮮；不新鮮時立即把它標記為新鮮。

        Args:
            key: 新鮮度鍵
            fresh_for: 新鮮期（秒）
            ignore: 為 True 時不檢查，直接開始新的新鮮期

        Returns:
            允許執行時回傳 FreshClaim（供失敗時 rollback_fresh 使用）；仍新鮮時回傳 None
        """
        now = self.clock()
        previous = self._fresh.get(key)
        if not ignore and previous is not None and previous[0] > now:
            logger.debug("%r is still fresh for another %.3fs", key, previous[0] - now)
            return None
        token = object()
        self._fresh[key] = (now + fresh_for, token)
        return FreshClaim(key, None if ignore else previous, token)

    def rollback_fresh(self, claim: FreshClaim) -> None:
        """還原 claim 之前的新鮮度；鍵已被其他 dispatch 改寫時不做任何事。"""
        current = self._fresh.get(claim.key)
        if current is None or current[1] is not claim.token:
            return
        if claim.previous is None:
            del self._fresh[claim.key]
        else:
            self._fresh[claim.key] = claim.previous

    def remove_fresh_key(self, key: LockKey) -> None:
        self._fresh.pop(key, None)

    def clear_fresh_keys(self) -> None:
        self._fresh.clear()

    def prune_fresh_keys(self) -> None:
        now = self.clock()
        expired = [key for key, (expires_at, _) in self._fresh.items() if expires_at <= now]
        for key in expired:
            del self._fresh[key]

    def fresh_keys(self) -> Dict[LockKey, float]:
        return {key: expires_at for key, (expires_at, _) in self._fresh.items()}

    # ———— Debounce ————

    def next_debounce_run(self, key: LockKey) -> int:
        """為 key 登記一次新的執行，回傳其編號。"""
        run = self._debounce_runs.get(key, 0) + 1
        self._debounce_runs[key] = run
        return run

    def is_latest_debounce_run(self, key: LockKey, run: int) -> bool:
        """
        判斷 run 是否仍是 key 最新的一次執行；是的話同時清除該鍵。
        """
        if self._debounce_runs.get(key) != run:
            return False
        del self._debounce_runs[key]
        return True

    def reset(self) -> None:
        """清除所有不可重入、節流、新鮮度與防抖的鎖（測試隔離用）。"""
        self._running.clear()
        self._throttle_expiry.clear()
        self._debounce_runs.clear()
        self._fresh.clear()


global_lock_registry = LockRegistry()
