"""
ViewModel 與其記憶化比較。

渲染層在每次狀態變更後，從狀態推導出新的 ViewModel，
再以 ViewModelMemoizer 判斷是否真的需要重新建構畫面。
"""
import functools
import inspect
from typing import Any, Generic, Iterable, Optional, Tuple, cast

from .errors import ConfigurationError
from .types import VM


class VmEquals:
    """
    標記欄位類型以身分（identity）而非內容來比較。

    ViewModel 比較兩個都實作 VmEquals 的欄位時，會使用 vm_equals
    而不是 ==。預設只有同一個物件才算相等；子類別可以覆寫。
    比較是淺層的：裝著 VmEquals 物件的 list/tuple 仍以 == 比較。
    """

    def vm_equals(self, other: Any) -> bool:
        return self is other


def _fields_equal(a: Any, b: Any) -> bool:
    if a is b:
        return True
    if isinstance(a, VmEquals) and isinstance(b, VmEquals):
        return a.vm_equals(b)
    return a == b


def _field_hash(field: Any) -> int:
    # VmEquals 欄位與不可雜湊的欄位只以類型雜湊
    if isinstance(field, VmEquals):
        return hash(type(field))
    try:
        return hash(field)
    except TypeError:
        return hash(type(field))


def _is_function(field: Any) -> bool:
    return (inspect.isfunction(field)
            or inspect.ismethod(field)
            or inspect.isbuiltin(field)
            or isinstance(field, functools.partial))


class ViewModel:
    """
    由比較欄位組成的不可變 ViewModel。

    兩個 ViewModel 相等，當且僅當它們是同一個具體類別，
    且 equals 中的欄位兩兩相等。函數不能作為比較欄位。

    範例:
        >>> class CounterVm(ViewModel):
        ...     def __init__(self, counter, on_increment):
        ...         self.counter = counter
        ...         self.on_increment = on_increment
        ...         super().__init__(equals=[counter])
    """

    def __init__(self, equals: Iterable[Any] = ()) -> None:
        fields = tuple(equals)
        for field in fields:
            if _is_function(field):
                raise ConfigurationError(
                    f"ViewModel equals can't contain field of type Function: {type(field).__name__}.",
                    component="view_model",
                )
        self._equals: Tuple[Any, ...] = fields

    @property
    def equals(self) -> Tuple[Any, ...]:
        return self._equals

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if type(self) is not type(other):
            return False
        other_vm = cast(ViewModel, other)
        if len(self._equals) != len(other_vm._equals):
            return False
        return all(_fields_equal(a, b) for a, b in zip(self._equals, other_vm._equals))

    def __ne__(self, other: object) -> bool:
        return not self == other

    def __hash__(self) -> int:
        return hash((type(self),) + tuple(_field_hash(field) for field in self._equals))

    def __repr__(self) -> str:
        return f"{type(self).__name__}{{{', '.join(repr(f) for f in self._equals)}}}"


_UNSET = object()


class ViewModelMemoizer(Generic[VM]):
    """
    記住上一次發出的 ViewModel，判斷新的 ViewModel 是否需要重建。

    每個訂閱者應該使用自己的 memoizer。
    """

    def __init__(self) -> None:
        self._baseline: Any = _UNSET

    @property
    def baseline(self) -> Optional[VM]:
        return None if self._baseline is _UNSET else self._baseline

    def should_rebuild(self, view_model: VM) -> bool:
        """
        Args:
            view_model: 新推導出的 ViewModel

        Returns:
            與上一次相等時回傳 False（略過重建）；
            否則記住它作為下一次的比較基準並回傳 True
        """
        if self._baseline is not _UNSET and self._baseline == view_model:
            return False
        self._baseline = view_model
        return True

    def reset(self) -> None:
        self._baseline = _UNSET
