"""
原生查询模块 - 编译结果：扫描查询或批量主键读取
"""

from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Optional, Tuple, Union

from .operators import FilterOperator, SortDirection
from ..core.exceptions import UnsupportedDatastoreFeatureError
from ..storage.keys import Key


@dataclass(frozen=True)
class FilterPredicate:
    property_name: str
    operator: FilterOperator
    value: Any

    def __str__(self) -> str:
        return f"{self.property_name} {self.operator} {self.value!r}"


@dataclass(frozen=True)
class SortPredicate:
    property_name: str
    direction: SortDirection = SortDirection.ASCENDING


@dataclass(frozen=True)
class ScanQuery:
    """按种类扫描，带过滤、排序与可选的祖先约束"""
    kind: str
    filters: Tuple[FilterPredicate, ...] = ()
    sorts: Tuple[SortPredicate, ...] = ()
    ancestor: Optional[Key] = None
    keys_only: bool = False

    def with_keys_only(self) -> "ScanQuery":
        return replace(self, keys_only=True)

    def __str__(self) -> str:
        parts = [f"SELECT * FROM {self.kind}"]
        clauses = [str(f) for f in self.filters]
        if self.ancestor is not None:
            clauses.append(f"ANCESTOR IS {self.ancestor}")
        if clauses:
            parts.append("WHERE " + " AND ".join(clauses))
        if self.sorts:
            parts.append("ORDER BY " + ", ".join(
                f"{s.property_name} {s.direction.name}" for s in self.sorts))
        return " ".join(parts)


@dataclass(frozen=True)
class BatchGetQuery:
    """按主键集合直接读取，不经过过滤与排序"""
    kind: str
    keys: Tuple[Key, ...] = ()


class CompiledQueryBuilder:
    """
    单次执行独占的编译累加器

    过滤与排序编译完成后通过 freeze() 冻结为 ScanQuery 或 BatchGetQuery，
    两种结果互斥：批量读取模式下不存在过滤与排序。
    """

    def __init__(self, kind: str, query_text: Optional[str] = None):
        self.kind = kind
        self.query_text = query_text
        self.filters: List[FilterPredicate] = []
        self.sorts: List[SortPredicate] = []
        self.ancestor: Optional[Key] = None
        self.batch_keys: Optional[List[Key]] = None

    @property
    def is_batch_lookup(self) -> bool:
        return self.batch_keys is not None

    def invalid_batch_lookup(self) -> UnsupportedDatastoreFeatureError:
        return UnsupportedDatastoreFeatureError(
            "Batch lookup by primary key is only supported if no other filters are defined.",
            self.query_text)

    def add_filter(self, property_name: str, operator: FilterOperator, value: Any):
        if self.is_batch_lookup:
            raise self.invalid_batch_lookup()
        self.filters.append(FilterPredicate(property_name, operator, value))

    def add_sort(self, property_name: str, direction: SortDirection):
        if self.is_batch_lookup:
            raise self.invalid_batch_lookup()
        self.sorts.append(SortPredicate(property_name, direction))

    def set_ancestor(self, key: Key):
        if self.is_batch_lookup:
            raise self.invalid_batch_lookup()
        if self.ancestor is not None and self.ancestor != key:
            raise UnsupportedDatastoreFeatureError(
                f"Query already has ancestor {self.ancestor}; cannot also filter on ancestor {key}.",
                self.query_text)
        self.ancestor = key

    def start_batch_lookup(self, keys: Iterable[Key]):
        if self.filters or self.sorts or self.ancestor is not None or self.is_batch_lookup:
            raise self.invalid_batch_lookup()
        # 去重并保持调用方给出的顺序
        self.batch_keys = list(dict.fromkeys(keys))

    def freeze(self, keys_only: bool = False) -> Union[ScanQuery, BatchGetQuery]:
        if self.is_batch_lookup:
            return BatchGetQuery(self.kind, tuple(self.batch_keys))
        return ScanQuery(self.kind, tuple(self.filters), tuple(self.sorts),
                         self.ancestor, keys_only)
