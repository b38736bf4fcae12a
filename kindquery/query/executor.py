"""
查询执行器模块 - 校验、编译并在存储上执行查询
"""

import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger

from .expressions import QueryCompilation, QueryType
from .native import BatchGetQuery, CompiledQueryBuilder, ScanQuery
from .predicates import PredicateCompiler
from .ranges import RangeWindow, build_range_window, is_empty_range
from .result_shape import ResultPlan, ResultShape, ResultShapeValidator
from .sorts import SortCompiler
from .streaming import ConnectionScope, StreamingQueryResult
from ..core.config import QueryConfig
from ..core.exceptions import (
    DatastoreFailureError, KindQueryError, QueryValidationError, UnsupportedDatastoreFeatureError,
)
from ..core.metadata import ClassMetadata, MetadataRegistry
from ..storage.datastore import Datastore, Entity
from ..storage.materializer import EntityMaterializer


class QueryExecutor:
    """
    查询执行器 - 执行外部编译器产出的查询
    """

    def __init__(self,
                 datastore: Datastore,
                 metadata: MetadataRegistry,
                 materializer: EntityMaterializer,
                 query_config: Optional[QueryConfig] = None,
                 scope_provider: Optional[Callable[[], Optional[ConnectionScope]]] = None):
        """
        初始化查询执行器

        Args:
            datastore: 存储客户端
            metadata: 元数据注册表
            materializer: 记录物化器
            query_config: 查询配置
            scope_provider: 返回当前资源作用域的函数
        """
        self.datastore = datastore
        self.metadata = metadata
        self.materializer = materializer
        self.config = query_config or QueryConfig()
        self.scope_provider = scope_provider

        # 最近一次编译出的原生查询，用于诊断
        self.latest_datastore_query: Optional[Union[ScanQuery, BatchGetQuery]] = None

        logger.info("查询执行器初始化完成")

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
            parameters: 参数值，按名称或位置索引

        Returns:
            行查询返回流式结果，计数查询返回数量，批量删除返回删除的记录数
        """
        start_time = time.time()
        query_text = compilation.query_text
        if compilation.query_type is QueryType.BULK_UPDATE:
            raise QueryValidationError("Only select and delete statements are supported.", query_text)
        if compilation.candidate_class is None:
            raise QueryValidationError("Candidate class could not be found.", query_text)
        acmd = self.metadata.get(compilation.candidate_class)
        if acmd is None:
            raise QueryValidationError(
                f"No meta data for {compilation.candidate_class!r}.", query_text)
        if not compilation.candidate_alias:
            compilation = replace(compilation, candidate_alias=self.config.candidate_alias)

        plan = ResultShapeValidator(compilation, acmd, self.metadata).validate()
        native_query = self.compile(compilation, acmd, parameters, plan)
        self.latest_datastore_query = native_query
        logger.debug(f"编译完成: {query_text} -> {native_query}")

        wants_number = plan.shape is ResultShape.COUNT or compilation.is_bulk_delete
        if is_empty_range(from_incl, to_excl):
            # 窗口为空时不访问存储
            return 0 if wants_number else []
        window = build_range_window(from_incl, to_excl, self.config.max_range_value, query_text)
        if plan.shape is ResultShape.COUNT and not window.is_trivial:
            # 扫描与批量读取的计数都不接受窗口
            raise UnsupportedDatastoreFeatureError(
                "The datastore does not support a range on a count query.", query_text)

        if isinstance(native_query, BatchGetQuery):
            result = self._execute_batch(native_query, compilation, acmd, plan, window)
        else:
            result = self._execute_scan(native_query, compilation, acmd, plan, window)

        logger.debug(f"查询执行耗时 {time.time() - start_time:.4f}s: {query_text}")
        return result

    def compile(self, compilation: QueryCompilation, acmd: ClassMetadata,
                parameters: Optional[Dict[Any, Any]], plan: ResultPlan) -> Union[ScanQuery, BatchGetQuery]:
        """编译过滤与排序，冻结为原生查询"""
        builder = CompiledQueryBuilder(acmd.kind, compilation.query_text)
        PredicateCompiler(compilation, acmd, self.metadata, parameters, builder).compile()
        SortCompiler(compilation, acmd, self.metadata, builder).compile()
        keys_only = plan.shape is ResultShape.KEYS_ONLY or compilation.is_bulk_delete
        return builder.freeze(keys_only=keys_only)

    def _execute_batch(self, query: BatchGetQuery, compilation: QueryCompilation,
                       acmd: ClassMetadata, plan: ResultPlan, window: RangeWindow):
        txn = self.datastore.get_current_transaction()
        if compilation.is_bulk_delete:
            keys = list(query.keys)
            if self._flag(compilation, "slow_but_more_accurate_delete"):
                # 先读取，只删除仍然存在的记录
                found = self._call_store(self.datastore.get, keys, txn, query_text=compilation.query_text)
                keys = [key for key in keys if key in found]
            self._delete(keys, txn, compilation.query_text)
            return len(keys)

        found = self._call_store(self.datastore.get, query.keys, txn, query_text=compilation.query_text)
        entities = [found[key] for key in query.keys if key in found]
        if not window.is_trivial:
            # 批量读取没有原生窗口，在本地截取
            start = window.offset or 0
            stop = None if window.limit is None else start + window.limit
            entities = entities[start:stop]
        if plan.shape is ResultShape.COUNT:
            return len(entities)
        return self._stream(entities, compilation, acmd, plan)

    def _execute_scan(self, query: ScanQuery, compilation: QueryCompilation,
                      acmd: ClassMetadata, plan: ResultPlan, window: RangeWindow):
        query_text = compilation.query_text
        txn = None
        if query.ancestor is not None and not self._flag(compilation, "exclude_query_from_txn"):
            # 只有祖先查询可以在事务中执行
            txn = self.datastore.get_current_transaction()

        if plan.shape is ResultShape.COUNT:
            return self._call_store(self.datastore.count, query, txn, query_text=query_text)

        if compilation.is_bulk_delete:
            keys = self._call_store(
                lambda: [e.key for e in self.datastore.scan(query.with_keys_only(), txn, window)],
                query_text=query_text)
            self._delete(keys, self.datastore.get_current_transaction(), query_text)
            return len(keys)

        records = self._call_store(self.datastore.scan, query, txn, window, query_text=query_text)
        return self._stream(records, compilation, acmd, plan)

    def _delete(self, keys: List, txn, query_text: Optional[str]):
        self._call_store(self.datastore.delete, keys, txn, query_text=query_text)
        for key in keys:
            self.materializer.cache.evict(key)
        logger.debug(f"批量删除 {len(keys)} 条记录: {query_text}")

    def _stream(self, records, compilation: QueryCompilation, acmd: ClassMetadata,
                plan: ResultPlan) -> StreamingQueryResult:
        scope = self.scope_provider() if self.scope_provider is not None else None
        token = scope.new_token() if scope is not None else None
        return StreamingQueryResult(records, self._transformer(compilation, acmd, plan),
                                    token, compilation.query_text)

    def _transformer(self, compilation: QueryCompilation, acmd: ClassMetadata,
                     plan: ResultPlan) -> Callable[[Entity], Any]:
        if plan.projection:
            return lambda entity: self.materializer.build_projection(entity, acmd, plan.projection)
        if plan.shape is ResultShape.KEYS_ONLY:
            return lambda entity: self.materializer.build_identifier_only(entity, acmd)
        ignore_cache = self._flag(compilation, "ignore_cache")
        return lambda entity: self.materializer.build_whole(entity, acmd, ignore_cache)

    def _flag(self, compilation: QueryCompilation, name: str) -> bool:
        """查询扩展优先于全局配置"""
        if name in compilation.extensions:
            return bool(compilation.extensions[name])
        return bool(getattr(self.config, name))

    def _call_store(self, fn: Callable, *args, query_text: Optional[str] = None):
        try:
            return fn(*args)
        except KindQueryError:
            raise
        except Exception as e:
            logger.error(f"存储操作失败: {e}")
            raise DatastoreFailureError(
                f"Datastore failure while executing query <{query_text}>: {e}", query_text) from e
