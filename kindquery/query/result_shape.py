"""
结果形态模块 - 校验结果表达式并判定整记录、仅主键、投影或计数
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from loguru import logger

from .expressions import Identifier, Join, MethodCall, Node, QueryCompilation, walk
from .predicates import no_metadata_error, strip_alias
from ..core.exceptions import UnsupportedDatastoreFeatureError, UnsupportedDatastoreOperatorError
from ..core.metadata import ClassMetadata, MemberMetadata, MetadataRegistry


class ResultShape(Enum):
    """支持的结果类型"""
    ENTITY = "entity"                           # 返回完整对象
    ENTITY_PROJECTION = "entity_projection"     # 返回对象的部分字段
    COUNT = "count"                             # 返回计数
    KEYS_ONLY = "keys_only"                     # 只返回主键


@dataclass(frozen=True)
class ResultPlan:
    shape: ResultShape
    projection: Tuple[Tuple[Tuple[str, ...], MemberMetadata], ...] = field(default_factory=tuple)

    @property
    def projected_members(self) -> List[MemberMetadata]:
        return [member for _, member in self.projection]


def aggregate_and_row_results_error(query_text: Optional[str]) -> UnsupportedDatastoreFeatureError:
    # 聚合函数不能与具体字段同时出现在结果表达式中
    return UnsupportedDatastoreFeatureError(
        "Cannot combine an aggregate results with row results.", query_text)


class ResultShapeValidator:
    """
    结果形态校验器 - 拒绝存储无法原生执行的分组、HAVING 与连接
    """

    def __init__(self, compilation: QueryCompilation, acmd: ClassMetadata,
                 metadata: MetadataRegistry):
        self.compilation = compilation
        self.acmd = acmd
        self.metadata = metadata
        self.query_text = compilation.query_text

    def validate(self) -> ResultPlan:
        """
        校验查询结构并返回结果计划

        Returns:
            ResultPlan

        Raises:
            UnsupportedDatastoreFeatureError: 分组、HAVING、连接或非法的结果组合
        """
        # 不支持内存中的聚合，出现分组或 HAVING 直接报错
        if self.compilation.grouping:
            raise UnsupportedDatastoreFeatureError(
                "Cannot fulfill queries with a grouping (GROUP BY).", self.query_text)
        if self.compilation.having is not None:
            raise UnsupportedDatastoreFeatureError(
                "Cannot fulfill queries with a HAVING clause.", self.query_text)

        for from_expr in self.compilation.from_exprs or []:
            self.check_not_join(from_expr)

        plan = self.validate_result_expression()
        logger.debug(f"结果形态: {plan.shape.value}, 投影字段: "
                     f"{['.'.join(path) for path, _ in plan.projection]}")
        return plan

    def check_not_join(self, expr: Node):
        for node in walk(expr):
            if isinstance(node, Join):
                raise UnsupportedDatastoreFeatureError(
                    "Cannot fulfill queries with joins.", self.query_text)

    def validate_result_expression(self) -> ResultPlan:
        shape = None
        projection = []
        alias = self.compilation.candidate_alias
        for result_expr in self.compilation.result or []:
            if isinstance(result_expr, MethodCall):
                if not self._is_count(result_expr):
                    raise UnsupportedDatastoreOperatorError(self.query_text, result_expr.name)
                elif projection:
                    raise aggregate_and_row_results_error(self.query_text)
                else:
                    shape = ResultShape.COUNT
            elif isinstance(result_expr, Identifier):
                if shape is ResultShape.COUNT:
                    raise aggregate_and_row_results_error(self.query_text)
                if shape is None:
                    shape = ResultShape.KEYS_ONLY
                if result_expr.path != (alias,):
                    path = strip_alias(result_expr.path, alias)
                    member = self.metadata.member_for(self.acmd, path, self.query_text)
                    if member is None:
                        raise no_metadata_error(result_expr.id, self.acmd, self.query_text)
                    projection.append((path, member))
                    if len(path) > 1 or not member.primary_key:
                        # 只要有一个非主键字段，结果即锁定为投影
                        shape = ResultShape.ENTITY_PROJECTION
            else:
                raise UnsupportedDatastoreFeatureError(
                    f"Unsupported result expression: {type(result_expr).__name__}",
                    self.query_text)

        return ResultPlan(shape or ResultShape.ENTITY, tuple(projection))

    def _is_count(self, invocation: MethodCall) -> bool:
        if invocation.name.lower() != "count":
            return False
        if not invocation.args:
            return True
        # count(this) 与 count() 等价
        return (len(invocation.args) == 1
                and isinstance(invocation.args[0], Identifier)
                and invocation.args[0].path == (self.compilation.candidate_alias,))
