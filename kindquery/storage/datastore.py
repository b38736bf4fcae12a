"""
存储客户端接口 - 层级键值存储的扫描、读取、删除与事务
"""

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Any, Optional

from loguru import logger

from .keys import Key
from ..core.exceptions import DatastoreError

_txn_ids = itertools.count(1)


@dataclass
class Entity:
    """存储记录：键与属性字典"""
    key: Key
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.key.kind

    def __getitem__(self, name: str) -> Any:
        return self.properties[name]

    def get(self, name: str, default: Any = None) -> Any:
        return self.properties.get(name, default)


class Transaction:
    """
    存储事务 - 写操作缓冲到提交时统一生效，回滚则丢弃
    """

    def __init__(self, datastore: "Datastore"):
        self.datastore = datastore
        self.txn_id = next(_txn_ids)
        self.puts: Dict[Key, Entity] = {}
        self.deletes: List[Key] = []
        self.active = True

    def _check_active(self):
        if not self.active:
            raise DatastoreError(f"事务 {self.txn_id} 已结束")

    def put(self, entity: Entity):
        self._check_active()
        self.puts[entity.key] = entity

    def delete(self, keys: Iterable[Key]):
        self._check_active()
        for key in keys:
            self.puts.pop(key, None)
            self.deletes.append(key)

    def commit(self):
        """提交缓冲的写操作"""
        self._check_active()
        self.active = False
        self.datastore._end_transaction(self)
        self.datastore._apply(self.puts.values(), self.deletes)
        logger.debug(f"事务 {self.txn_id} 已提交: 写入 {len(self.puts)}, 删除 {len(self.deletes)}")

    def rollback(self):
        """丢弃缓冲的写操作"""
        if not self.active:
            return
        self.active = False
        self.datastore._end_transaction(self)
        logger.debug(f"事务 {self.txn_id} 已回滚")

    def __repr__(self) -> str:
        return f"<Transaction {self.txn_id} active={self.active}>"


class Datastore(ABC):
    """
    层级键值存储客户端的抽象接口

    scan 返回惰性迭代器；count 不接受 offset/limit 窗口。
    """

    def __init__(self):
        self._current_txn: Optional[Transaction] = None

    @abstractmethod
    def scan(self, query, txn: Optional[Transaction] = None, window=None,
             keys_only: bool = False) -> Iterator[Entity]:
        """按种类扫描，返回惰性记录迭代器"""

    @abstractmethod
    def count(self, query, txn: Optional[Transaction] = None, window=None) -> int:
        """统计匹配的记录数"""

    @abstractmethod
    def get(self, keys: Iterable[Key], txn: Optional[Transaction] = None) -> Dict[Key, Entity]:
        """按主键批量读取，只返回存在的记录"""

    @abstractmethod
    def _apply(self, puts: Iterable[Entity], deletes: Iterable[Key]):
        """直接写入存储"""

    @abstractmethod
    def allocate_id(self, kind: str) -> int:
        """分配数字 ID"""

    def put(self, entity: Entity, txn: Optional[Transaction] = None) -> Key:
        if txn is not None:
            txn.put(entity)
        else:
            self._apply([entity], [])
        return entity.key

    def delete(self, keys: Iterable[Key], txn: Optional[Transaction] = None):
        keys = list(keys)
        if txn is not None:
            txn.delete(keys)
        else:
            self._apply([], keys)

    def begin_transaction(self) -> Transaction:
        if self._current_txn is not None:
            raise DatastoreError("不支持嵌套事务")
        self._current_txn = Transaction(self)
        logger.debug(f"开始事务 {self._current_txn.txn_id}")
        return self._current_txn

    def get_current_transaction(self) -> Optional[Transaction]:
        """返回当前活动的事务，没有时返回 None"""
        return self._current_txn

    def _end_transaction(self, txn: Transaction):
        if self._current_txn is txn:
            self._current_txn = None
