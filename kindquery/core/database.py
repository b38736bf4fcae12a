"""
KindQueryDB 主数据库类
"""

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from loguru import logger

from .config import Config
from .exceptions import QueryValidationError
from .metadata import ClassMetadata, MemberMetadata, MetadataRegistry
from ..query.executor import QueryExecutor
from ..query.expressions import QueryCompilation
from ..query.streaming import ConnectionScope, StreamingQueryResult
from ..storage.datastore import Datastore, Transaction
from ..storage.keys import Key
from ..storage.materializer import EntityMaterializer, IdentityCache
from ..storage.memory_store import MemoryDatastore


class KindQueryDB:
    """
    面向层级键值存储的对象查询数据库主类
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 metadata: Optional[MetadataRegistry] = None,
                 datastore: Optional[Datastore] = None):
        """
        初始化数据库

        Args:
            config: 配置对象，如果为 None 则使用默认配置
            metadata: 元数据注册表，默认新建
            datastore: 存储客户端，默认按配置创建
        """
        self.config = config or Config()
        self.db_id = str(uuid.uuid4())

        # 初始化核心组件
        self._init_components(metadata, datastore)

        logger.info(f"KindQueryDB 初始化完成，数据库 ID: {self.db_id}")

    def _init_components(self, metadata: Optional[MetadataRegistry], datastore: Optional[Datastore]):
        """初始化核心组件"""
        self.metadata = metadata or MetadataRegistry()
        self.datastore = datastore or self._create_datastore()
        self.identity_cache = IdentityCache()
        self.materializer = EntityMaterializer(self.metadata, self.identity_cache)
        self.scope = ConnectionScope()
        self.query_executor = QueryExecutor(
            self.datastore,
            self.metadata,
            self.materializer,
            self.config.query,
            lambda: self.scope,
        )

        logger.info("核心组件初始化完成")

    def _create_datastore(self) -> Datastore:
        """按配置创建存储客户端"""
        backend = self.config.storage.backend
        if backend == "memory":
            return MemoryDatastore(self.config.storage)
        raise ValueError(f"不支持的存储后端: {backend}")

    def register(self, cls: type, members: Optional[Sequence[MemberMetadata]] = None,
                 kind: Optional[str] = None) -> ClassMetadata:
        """
        注册领域类

        未给出成员元数据时从数据类字段读取。
        """
        if members is None:
            return self.metadata.register_dataclass(cls, kind)
        return self.metadata.register(cls, members, kind)

    def put(self, obj: Any) -> Key:
        """
        保存领域对象

        在当前事务中写入；主键为空时分配 ID 并回写到对象上。

        Returns:
            记录的键
        """
        acmd = self._class_metadata(type(obj))
        entity = self.materializer.to_entity(obj, acmd, self.datastore)
        key = self.datastore.put(entity, self.datastore.get_current_transaction())

        pk_member = acmd.primary_key_member
        object.__setattr__(obj, pk_member.name, self.materializer.key_value(pk_member, key))
        self.identity_cache.put(key, obj)
        logger.debug(f"对象已保存: {key}")
        return key

    def get(self, cls: type, key: Union[Key, str, int]) -> Optional[Any]:
        """按主键读取单个对象，不存在时返回 None"""
        acmd = self._class_metadata(cls)
        if not isinstance(key, Key):
            key = Key(acmd.kind, key)
        found = self.datastore.get([key], self.datastore.get_current_transaction())
        if key not in found:
            return None
        return self.materializer.build_whole(found[key], acmd, self.config.query.ignore_cache)

    def _class_metadata(self, cls: type) -> ClassMetadata:
        acmd = self.metadata.get(cls)
        if acmd is None:
            raise QueryValidationError(f"No meta data for {cls!r}")
        return acmd

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        事务上下文：正常结束时提交，出现异常时回滚
        """
        txn = self.datastore.begin_transaction()
        try:
            yield txn
        except Exception:
            txn.rollback()
            raise
        else:
            if txn.active:
                txn.commit()

    def connection(self) -> ConnectionScope:
        """开启新的资源作用域，之后的流式结果归属于它"""
        self.scope.flush()
        self.scope = ConnectionScope()
        return self.scope

    def execute(self,
                compilation: QueryCompilation,
                from_incl: Optional[int] = None,
                to_excl: Optional[int] = None,
                parameters: Optional[Dict[Any, Any]] = None) -> Union[StreamingQueryResult, List, int]:
        """
        执行查询

        Args:
            compilation: 外部编译器产出的查询
            from_incl: 第一条结果的下标（含）
            to_excl: 最后一条结果的下标（不含）
            parameters: 参数值

        Returns:
            流式结果、计数或删除的记录数
        """
        return self.query_executor.execute(compilation, from_incl, to_excl, parameters)

    def flush(self):
        """断开当前资源作用域中的所有流式结果"""
        self.scope.flush()

    @property
    def latest_datastore_query(self):
        return self.query_executor.latest_datastore_query

    def close(self):
        """关闭数据库"""
        self.scope.close()
        self.identity_cache.clear()
        logger.info("数据库连接已关闭")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
