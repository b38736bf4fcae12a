"""
内存存储模块 - 以字典保存记录的层级键值存储
"""

import datetime
import itertools
from collections import Counter, defaultdict
from typing import Dict, Iterable, Iterator, List, Any, Optional

from loguru import logger

from .datastore import Datastore, Entity, Transaction
from .keys import KEY_RESERVED_PROPERTY, Key, ShortBlob
from ..core.config import StorageConfig
from ..core.exceptions import DatastoreError
from ..query.native import FilterPredicate, ScanQuery, SortPredicate
from ..query.operators import FilterOperator, SortDirection


def order_value(value: Any):
    """
    跨类型排序值

    顺序: null < bool < 数字 < 字符串 < 二进制 < 键 < 时间
    """
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, ShortBlob):
        return (4, value.value)
    if isinstance(value, (bytes, bytearray)):
        return (4, bytes(value))
    if isinstance(value, Key):
        return (5, value._sort_key())
    if isinstance(value, datetime.datetime):
        return (6, _comparable_datetime(value))
    if isinstance(value, datetime.date):
        return (6, _comparable_datetime(datetime.datetime.combine(value, datetime.time())))
    return (7, repr(value))


def _comparable_datetime(value: datetime.datetime) -> datetime.datetime:
    # 无时区的时间按 UTC 处理
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


_COMPARATORS = {
    FilterOperator.EQUAL: lambda a, b: a == b,
    FilterOperator.GREATER_THAN: lambda a, b: a > b,
    FilterOperator.GREATER_THAN_OR_EQUAL: lambda a, b: a >= b,
    FilterOperator.LESS_THAN: lambda a, b: a < b,
    FilterOperator.LESS_THAN_OR_EQUAL: lambda a, b: a <= b,
}


class MemoryDatastore(Datastore):
    """
    内存存储 - 模拟目标存储的过滤与排序语义

    缺少属性的记录不匹配该属性上的过滤或排序；列表属性只要有一个元素
    满足条件即匹配。
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """
        初始化内存存储

        Args:
            config: 存储配置
        """
        super().__init__()
        self.config = config or StorageConfig()

        # 按种类索引的记录
        self.entities: Dict[str, Dict[Key, Entity]] = defaultdict(dict)
        self._id_counters: Dict[str, Iterator[int]] = defaultdict(lambda: itertools.count(1))

        # 操作计数与已读取的记录数
        self.operation_counts: Counter = Counter()
        self.records_read = 0

        logger.info(f"内存存储初始化完成，后端: {self.config.backend}")

    def allocate_id(self, kind: str) -> int:
        return next(self._id_counters[kind])

    def _apply(self, puts: Iterable[Entity], deletes: Iterable[Key]):
        for entity in puts:
            self.operation_counts["put"] += 1
            self.entities[entity.kind][entity.key] = Entity(entity.key, dict(entity.properties))
        for key in deletes:
            self.operation_counts["delete"] += 1
            self.entities[key.kind].pop(key, None)

    def put(self, entity: Entity, txn: Optional[Transaction] = None) -> Key:
        if entity.key.id_or_name is None:
            # 未指定 ID 时自动分配
            entity.key = Key(entity.key.kind, self.allocate_id(entity.key.kind), entity.key.parent)
        return super().put(entity, txn)

    def get(self, keys: Iterable[Key], txn: Optional[Transaction] = None) -> Dict[Key, Entity]:
        self.operation_counts["get"] += 1
        found = {}
        for key in keys:
            entity = self.entities[key.kind].get(key)
            if entity is not None:
                self.records_read += 1
                found[key] = Entity(entity.key, dict(entity.properties))
        return found

    def scan(self, query: ScanQuery, txn: Optional[Transaction] = None, window=None,
             keys_only: bool = False) -> Iterator[Entity]:
        """
        执行扫描查询

        参数校验立即进行，记录在迭代时才逐条读取。

        Raises:
            DatastoreError: 事务内的非祖先查询
        """
        self.operation_counts["scan"] += 1
        self._check_transaction(query, txn)
        offset = (window.offset if window is not None else None) or 0
        limit = window.limit if window is not None else None
        keys_only = keys_only or query.keys_only
        matched = self._matching(query)
        logger.debug(f"扫描 {query}: offset={offset}, limit={limit}, keys_only={keys_only}")
        return self._stream(matched, offset, limit, keys_only)

    def _stream(self, matched: List[Entity], offset: int, limit: Optional[int],
                keys_only: bool) -> Iterator[Entity]:
        stop = None if limit is None else offset + limit
        for entity in itertools.islice(matched, offset, stop):
            self.records_read += 1
            if keys_only:
                yield Entity(entity.key)
            else:
                yield Entity(entity.key, dict(entity.properties))

    def count(self, query: ScanQuery, txn: Optional[Transaction] = None, window=None) -> int:
        self.operation_counts["count"] += 1
        if window is not None and not window.is_trivial:
            raise DatastoreError("count 不支持 offset/limit")
        self._check_transaction(query, txn)
        return len(self._matching(query))

    def _check_transaction(self, query: ScanQuery, txn: Optional[Transaction]):
        if txn is not None and not txn.active:
            raise DatastoreError(f"事务 {txn.txn_id} 已结束")
        if txn is not None and query.ancestor is None and self.config.require_ancestor_in_txn:
            raise DatastoreError("事务内只能执行祖先查询")

    def _matching(self, query: ScanQuery) -> List[Entity]:
        candidates = [
            entity for entity in self.entities[query.kind].values()
            if (query.ancestor is None or query.ancestor.is_ancestor_of(entity.key))
            and all(self._matches(entity, f) for f in query.filters)
            and all(self._has_property(entity, s.property_name) for s in query.sorts)
        ]
        # 默认按键排序，多个排序子句从后往前做稳定排序
        candidates.sort(key=lambda e: e.key)
        for sort in reversed(query.sorts):
            candidates.sort(key=lambda e, s=sort: self._sort_value(e, s),
                            reverse=sort.direction is SortDirection.DESCENDING)
        return candidates

    @staticmethod
    def _has_property(entity: Entity, name: str) -> bool:
        if name == KEY_RESERVED_PROPERTY:
            return True
        if name not in entity.properties:
            return False
        value = entity.properties[name]
        return not (isinstance(value, (list, tuple)) and not value)

    @staticmethod
    def _matches(entity: Entity, predicate: FilterPredicate) -> bool:
        if predicate.property_name == KEY_RESERVED_PROPERTY:
            values = [entity.key]
        elif predicate.property_name not in entity.properties:
            return False
        else:
            value = entity.properties[predicate.property_name]
            values = value if isinstance(value, (list, tuple)) else [value]
        compare = _COMPARATORS[predicate.operator]
        target = order_value(predicate.value)
        return any(compare(order_value(v), target) for v in values)

    @staticmethod
    def _sort_value(entity: Entity, sort: SortPredicate):
        if sort.property_name == KEY_RESERVED_PROPERTY:
            return order_value(entity.key)
        value = entity.properties[sort.property_name]
        if isinstance(value, (list, tuple)):
            values = [order_value(v) for v in value]
            # 列表升序取最小值，降序取最大值
            return min(values) if sort.direction is SortDirection.ASCENDING else max(values)
        return order_value(value)

    def clear(self):
        self.entities.clear()
        self.operation_counts.clear()
        self.records_read = 0
        logger.info("内存存储已清空")
