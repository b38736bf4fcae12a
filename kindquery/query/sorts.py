"""
排序编译模块 - 将排序列表编译为原生排序子句
"""

from typing import List

from loguru import logger

from .expressions import OrderExpression, QueryCompilation
from .native import CompiledQueryBuilder
from .operators import direction_for
from .predicates import no_metadata_error, strip_alias
from ..core.exceptions import UnsupportedDatastoreFeatureError
from ..core.metadata import ClassMetadata, MetadataRegistry
from ..storage.keys import KEY_RESERVED_PROPERTY


class SortCompiler:
    """
    排序编译器
    """

    def __init__(self,
                 compilation: QueryCompilation,
                 acmd: ClassMetadata,
                 metadata: MetadataRegistry,
                 builder: CompiledQueryBuilder):
        self.compilation = compilation
        self.acmd = acmd
        self.metadata = metadata
        self.builder = builder
        self.query_text = compilation.query_text

    def compile(self):
        """按顺序添加排序子句"""
        order_bys: List[OrderExpression] = self.compilation.ordering or []
        for order in order_bys:
            self.add_sort(order)
        if order_bys:
            logger.debug(f"排序编译完成: {[s.property_name for s in self.builder.sorts]}")

    def add_sort(self, order: OrderExpression):
        direction = direction_for(order.direction)
        path = strip_alias(order.path, self.compilation.candidate_alias)
        member = self.metadata.member_for(self.acmd, path, self.query_text)
        if member is None:
            raise no_metadata_error(".".join(order.path), self.acmd, self.query_text)

        if member.parent_pk:
            # 祖先没有稳定的排序
            raise UnsupportedDatastoreFeatureError("Cannot sort by parent.", self.query_text)
        if member.primary_key:
            sort_property = KEY_RESERVED_PROPERTY
        else:
            sort_property = self.metadata.property_name_for(member)
        self.builder.add_sort(sort_property, direction)
