"""
范围计算模块 - 将 [from, to) 窗口转换为原生 offset/limit
"""

from dataclasses import dataclass
from typing import Optional

from ..core.exceptions import QueryValidationError


@dataclass(frozen=True)
class RangeWindow:
    """原生取数窗口，两者均可缺省"""
    offset: Optional[int] = None
    limit: Optional[int] = None

    @property
    def is_trivial(self) -> bool:
        return self.offset is None and self.limit is None


def range_value_is_set(value: Optional[int]) -> bool:
    return value is not None


def is_empty_range(from_incl: Optional[int], to_excl: Optional[int]) -> bool:
    """窗口不可能包含结果时返回 True，此时无需访问存储"""
    if to_excl == 0:
        return True
    return (range_value_is_set(from_incl) and range_value_is_set(to_excl)
            and to_excl - from_incl <= 0)


def build_range_window(from_incl: Optional[int], to_excl: Optional[int],
                       max_value: int = 2 ** 31 - 1,
                       query_text: Optional[str] = None) -> RangeWindow:
    """
    计算原生窗口

    Args:
        from_incl: 第一条结果的下标（含）
        to_excl: 最后一条结果的下标（不含）
        max_value: 存储可接受的最大 offset/limit
        query_text: 原始查询文本，用于错误信息

    Returns:
        RangeWindow，未设置的值为 None
    """
    if (from_incl is not None and from_incl < 0) or (to_excl is not None and to_excl < 0):
        raise QueryValidationError(
            f"Range values must not be negative: from={from_incl}, to={to_excl}.", query_text)

    offset = None
    limit = None
    if from_incl and range_value_is_set(from_incl):
        offset = min(max_value, from_incl)
    if range_value_is_set(to_excl):
        to_value = min(max_value, to_excl)
        # 同时给出 from 与 to 时，limit 是两者之差而不是 to 本身
        limit = to_value if offset is None else to_value - offset
    return RangeWindow(offset, limit)
