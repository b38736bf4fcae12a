"""
谓词编译模块 - 将过滤谓词树编译为原生过滤、祖先约束或批量主键集合
"""

import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple
from loguru import logger

from .expressions import (
    Comparison, Conjunction, Disjunction, Identifier, Literal, MethodCall,
    Node, Operator, Parameter, QueryCompilation, UnaryOperation,
)
from .native import CompiledQueryBuilder
from .operators import (
    FilterOperator, check_not_equal_operand, check_supported, native_operator_for,
    OPERATOR_MAP,
)
from ..core.exceptions import (
    QueryValidationError, UnsupportedDatastoreFeatureError, UnsupportedDatastoreOperatorError,
)
from ..core.metadata import ClassMetadata, MemberMetadata, MetadataRegistry
from ..storage.keys import KEY_RESERVED_PROPERTY, Key, string_to_key
from ..storage.materializer import datastore_value

WILDCARD = "%"

MULTI_VALUED_TYPES = (list, tuple, set, frozenset)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# CURRENT_TIMESTAMP / CURRENT_DATE 使用的时钟，测试中可替换
NOW_PROVIDER: Callable[[], datetime.datetime] = _utcnow


def upper_limit_for_starts_with(prefix: str) -> Optional[str]:
    """
    计算前缀扫描的上界，例如 "ya" -> "yb"

    在字节层面进行，以贴合存储的实际排序：去掉末尾的 0xFF 字节后把最后一个
    字节加一。不存在上界时（空串或全部为 0xFF）返回 None。
    """
    data = prefix.encode("utf-8", errors="surrogateescape").rstrip(b"\xff")
    if not data:
        return None
    upper = data[:-1] + bytes([data[-1] + 1])
    return upper.decode("utf-8", errors="surrogateescape")


def negate_number(value: Any) -> Any:
    if isinstance(value, Decimal):
        # 存储不支持 Decimal 过滤，转为浮点
        return float(-value)
    if isinstance(value, float):
        return -value
    return -int(value)


def is_multi_valued(value: Any) -> bool:
    return isinstance(value, MULTI_VALUED_TYPES)


class PredicateCompiler:
    """
    谓词编译器 - 递归遍历过滤表达式并写入编译累加器
    """

    def __init__(self,
                 compilation: QueryCompilation,
                 acmd: ClassMetadata,
                 metadata: MetadataRegistry,
                 parameters: Optional[Dict[Any, Any]],
                 builder: CompiledQueryBuilder):
        """
        初始化谓词编译器

        Args:
            compilation: 外部编译器产出的查询
            acmd: 候选类元数据
            metadata: 元数据注册表
            parameters: 参数值，按名称或位置索引
            builder: 编译累加器
        """
        self.compilation = compilation
        self.acmd = acmd
        self.metadata = metadata
        self.parameters = parameters or {}
        self.builder = builder
        self.query_text = compilation.query_text

    def compile(self):
        """编译查询的过滤表达式"""
        self.add_expression(self.compilation.filter)
        logger.debug(f"过滤编译完成: {len(self.builder.filters)} 个过滤条件, "
                     f"祖先: {self.builder.ancestor}, 批量读取: {self.builder.is_batch_lookup}")

    def add_expression(self, expr: Optional[Node]):
        """
        递归遍历表达式，在合适的位置添加过滤条件

        Raises:
            UnsupportedDatastoreOperatorError: 遇到不支持的运算符
            UnsupportedDatastoreFeatureError: 遇到不支持的查询结构
        """
        if expr is None:
            return
        operator = getattr(expr, "operator", None)
        if isinstance(expr, Disjunction) or operator is Operator.OR:
            raise UnsupportedDatastoreFeatureError(
                "Cannot fulfill queries with disjunctions (OR).", self.query_text)
        check_supported(operator, self.query_text)

        if isinstance(expr, Conjunction):
            self.add_expression(expr.left)
            self.add_expression(expr.right)
        elif isinstance(expr, Comparison):
            if expr.op not in OPERATOR_MAP:
                raise UnsupportedDatastoreOperatorError(self.query_text, expr.op)
            elif isinstance(expr.left, Identifier):
                self.add_left_identifier(expr.left, expr.op, expr.right)
            else:
                self.add_expression(expr.left)
                self.add_expression(expr.right)
        elif isinstance(expr, Identifier):
            # 单独的标识符不产生过滤条件
            return
        elif isinstance(expr, MethodCall):
            self.add_method_call(expr)
        else:
            raise UnsupportedDatastoreFeatureError(
                f"Unexpected expression type while parsing query: {type(expr).__name__}",
                self.query_text)

    def add_method_call(self, invocation: MethodCall):
        if len(invocation.args) != 1:
            raise self._unsupported_method(invocation)
        if invocation.name == "contains":
            self._handle_contains(invocation)
        elif invocation.name == "startsWith":
            self._handle_starts_with(invocation)
        elif invocation.name == "matches":
            self._handle_matches(invocation)
        else:
            raise self._unsupported_method(invocation)

    def _handle_contains(self, invocation: MethodCall):
        # 对重复字段的成员判断等价于元素相等
        param = invocation.args[0]
        if isinstance(invocation.receiver, Identifier):
            self.add_left_identifier(invocation.receiver, Operator.EQ, param)
        elif isinstance(invocation.receiver, Parameter) and isinstance(param, Identifier):
            # :ids.contains(id)，即 JPQL 的 IN :ids
            self.add_left_identifier(param, Operator.EQ, invocation.receiver)
        else:
            raise self._unsupported_method(invocation)

    def _handle_starts_with(self, invocation: MethodCall):
        param = invocation.args[0]
        if isinstance(invocation.receiver, Identifier) and isinstance(param, Literal):
            prefix = param.value
        elif isinstance(invocation.receiver, Identifier) and isinstance(param, Parameter):
            prefix = self.parameter_value(param)
        else:
            raise self._unsupported_method(invocation)
        if not isinstance(prefix, str):
            raise QueryValidationError(
                f"startsWith only supported on strings (received a {type(prefix).__name__}).",
                self.query_text)
        self._add_prefix(invocation.receiver, prefix)

    def _handle_matches(self, invocation: MethodCall):
        param = invocation.args[0]
        if isinstance(invocation.receiver, Identifier) and isinstance(param, Literal):
            prefix = self._prefix_from_matches(param.value)
        elif isinstance(invocation.receiver, Identifier) and isinstance(param, Parameter):
            prefix = self._prefix_from_matches(self.parameter_value(param))
        else:
            raise self._unsupported_method(invocation)
        self._add_prefix(invocation.receiver, prefix)

    def _prefix_from_matches(self, matches_expr: Any) -> str:
        if not isinstance(matches_expr, str):
            raise QueryValidationError(
                "Prefix matching only supported on strings (received a "
                f"{type(matches_expr).__name__}).", self.query_text)
        if not matches_expr.endswith(WILDCARD) or matches_expr.count(WILDCARD) != 1:
            raise UnsupportedDatastoreFeatureError(
                "Wildcard must appear at the end of the expression string "
                "(only prefix matches are supported)", self.query_text)
        return matches_expr[:-1]

    def _add_prefix(self, left: Identifier, prefix: str):
        """前缀匹配编译为 field >= prefix 与 field < upper(prefix)"""
        self.add_left_identifier(left, Operator.GTEQ, Literal(prefix))
        upper = upper_limit_for_starts_with(prefix)
        if upper is not None:
            self.add_left_identifier(left, Operator.LT, Literal(upper))
        else:
            logger.debug(f"前缀 {prefix!r} 没有上界，仅使用下界过滤")

    def parameter_value(self, pe: Parameter) -> Any:
        """按位置（隐式参数）或名称取参数值"""
        params = self.parameters
        if pe.position is not None and params.get(pe.position) is not None:
            return params[pe.position]
        if pe.name is not None and pe.name in params:
            return params[pe.name]
        if pe.position is not None and pe.position in params:
            return None
        raise QueryValidationError(f"No value supplied for parameter {pe}.", self.query_text)

    def value_of(self, right: Optional[Node]) -> Any:
        """计算比较右侧的取值"""
        if isinstance(right, Identifier):
            if right.id in self.parameters:
                return self.parameters[right.id]
            raise UnsupportedDatastoreFeatureError(
                f"Right side of expression references field {right.id}; "
                "comparisons between two properties are not supported.", self.query_text)
        elif isinstance(right, Literal):
            return right.value
        elif isinstance(right, Parameter):
            return self.parameter_value(right)
        elif isinstance(right, UnaryOperation) and self._is_negated_number(right):
            # 唯一允许的嵌套表达式: val = -33
            return negate_number(right.operand.value)
        elif isinstance(right, (Comparison, UnaryOperation, Conjunction, Disjunction)):
            left = getattr(right, "left", getattr(right, "operand", None))
            raise UnsupportedDatastoreFeatureError(
                "Right side of expression is composed of unsupported components.  "
                f"Left: {type(left).__name__}, Op: {right.operator}, "
                f"Right: {getattr(right, 'right', None)}", self.query_text)
        elif isinstance(right, MethodCall):
            if right.name in ("CURRENT_TIMESTAMP", "CURRENT_DATE"):
                return NOW_PROVIDER()
            raise self._unsupported_method(right)
        raise UnsupportedDatastoreFeatureError(
            f"Right side of expression is of unexpected type: {type(right).__name__}",
            self.query_text)

    @staticmethod
    def _is_negated_number(node: UnaryOperation) -> bool:
        return (node.op is Operator.NEG
                and isinstance(node.operand, Literal)
                and isinstance(node.operand.value, (int, float, Decimal))
                and not isinstance(node.operand.value, bool))

    def add_left_identifier(self, left: Identifier, operator: Operator, right: Optional[Node]):
        """处理左侧为字段引用的比较"""
        op = native_operator_for(operator, self.query_text)
        value = self.value_of(right)
        check_not_equal_operand(operator, value, self.query_text)

        member = self.resolve_member(left)
        if member.is_relation:
            self._add_relation_filter(op, member, value)
        elif member.parent_pk:
            self._add_parent_filter(op, self._decode_parent_key(value))
        else:
            if member.primary_key:
                if is_multi_valued(value):
                    self._start_batch_lookup(op, value)
                    return
                property_name = KEY_RESERVED_PROPERTY
                value = self.to_key(value, self.acmd.kind)
            else:
                property_name = self.metadata.property_name_for(member)
            if is_multi_valued(value):
                raise QueryValidationError(
                    "Collection parameters are only supported when filtering on primary key.",
                    self.query_text)
            self.builder.add_filter(property_name, op, self.to_datastore_value(member, value))

    def _start_batch_lookup(self, op: FilterOperator, values: Any):
        if self.builder.filters:
            # 只有在没有其他过滤条件时才能批量读取
            raise self.builder.invalid_batch_lookup()
        if op is not FilterOperator.EQUAL:
            raise QueryValidationError(
                "Batch lookup by primary key is only supported with the equality operator.",
                self.query_text)
        self.builder.start_batch_lookup(self.to_key(v, self.acmd.kind) for v in values)

    def resolve_member(self, identifier: Identifier) -> MemberMetadata:
        path = strip_alias(identifier.path, self.compilation.candidate_alias)
        member = self.metadata.member_for(self.acmd, path, self.query_text)
        if member is None:
            raise no_metadata_error(identifier.id, self.acmd, self.query_text)
        return member

    def _add_parent_filter(self, op: FilterOperator, key: Optional[Key]):
        # 祖先条件只支持相等
        if op is not FilterOperator.EQUAL:
            raise UnsupportedDatastoreFeatureError(
                f"Operator is of type {op.name} but the datastore only supports parent queries "
                "using the equality operator.", self.query_text)
        if key is None:
            raise UnsupportedDatastoreFeatureError(
                "Received a null parent parameter.  The datastore does not support querying "
                "for null parents.", self.query_text)
        self.builder.set_ancestor(key)

    def _decode_parent_key(self, value: Any) -> Optional[Key]:
        if value is None or isinstance(value, Key):
            return value
        if isinstance(value, str):
            try:
                return string_to_key(value)
            except ValueError as e:
                raise QueryValidationError(
                    f"{self.query_text}: Parent value {value!r} is not an encoded key.",
                    self.query_text) from e
        raise QueryValidationError(
            f"{self.query_text}: Parent value {value!r} must be a Key or an encoded key string.",
            self.query_text)

    def _add_relation_filter(self, op: FilterOperator, member: MemberMetadata, value: Any):
        related = self.metadata.get(member.related_class)
        if related is None:
            raise QueryValidationError(
                f"No meta data for {member.related_class!r}.", self.query_text)

        if value is None or isinstance(value, (Key, str, int)):
            # 允许直接传入关联对象的键
            related_key = value
        else:
            related_key = getattr(value, related.primary_key_member.name, None)
            if related_key is None:
                raise QueryValidationError(
                    f"{self.query_text}: Parameter value {value!r} does not have an id.",
                    self.query_text)

        key = None
        if related_key is not None:
            key = self.to_key(related_key, related.kind)
            if key.kind != related.kind:
                raise QueryValidationError(
                    f"{self.query_text}: Field {self.acmd.full_class_name}.{member.name} maps to "
                    f"kind {related.kind} but parameter value contains Key of kind {key.kind}",
                    self.query_text)

        if not member.parent_key_provider:
            # 一对一的拥有方：子记录键的父键即为所求
            if op is not FilterOperator.EQUAL:
                raise UnsupportedDatastoreFeatureError(
                    "Only the equals operator is supported on conditions involving the owning "
                    "side of a one-to-one.", self.query_text)
            if key is None:
                raise QueryValidationError(
                    f"{self.query_text}: Cannot query for parents with null children.",
                    self.query_text)
            if key.parent is None:
                raise QueryValidationError(
                    f"{self.query_text}: Key of parameter value does not have a parent.",
                    self.query_text)
            self.builder.add_filter(KEY_RESERVED_PROPERTY, FilterOperator.EQUAL, key.parent)
        elif key is None:
            raise QueryValidationError(
                f"{self.query_text}: Cannot query for objects with null parents.",
                self.query_text)
        else:
            self._add_parent_filter(op, key)

    def to_key(self, value: Any, kind: str) -> Optional[Key]:
        """将主键取值转换为存储键"""
        if value is None or isinstance(value, Key):
            return value
        if isinstance(value, str):
            try:
                return string_to_key(value)
            except ValueError:
                return Key(kind, value)
        if isinstance(value, int) and not isinstance(value, bool):
            return Key(kind, value)
        raise QueryValidationError(
            f"{self.query_text}: Cannot convert {value!r} to a key of kind {kind}.",
            self.query_text)

    def to_datastore_value(self, member: MemberMetadata, value: Any) -> Any:
        if isinstance(value, str) and member.declared_type is Key:
            try:
                return string_to_key(value)
            except ValueError as e:
                raise QueryValidationError(
                    f"{self.query_text}: Value {value!r} for {member.name} is not an encoded key.",
                    self.query_text) from e
        return datastore_value(value)

    def _unsupported_method(self, invocation: MethodCall) -> UnsupportedDatastoreFeatureError:
        return UnsupportedDatastoreFeatureError(
            f"Unsupported method <{invocation.name}> while parsing expression: {invocation}",
            self.query_text)


def strip_alias(path: Tuple[str, ...], alias: Optional[str]) -> Tuple[str, ...]:
    """多段路径的首段与候选别名相同时去掉首段"""
    if alias is not None and len(path) > 1 and path[0] == alias:
        return path[1:]
    return path


def no_metadata_error(member: str, acmd: ClassMetadata,
                      query_text: Optional[str]) -> QueryValidationError:
    return QueryValidationError(
        f"No meta-data for member named {member} on class {acmd.full_class_name}.  "
        "Are you sure you provided the correct member name in your query?", query_text)


def compile_filter(compilation: QueryCompilation,
                   metadata: MetadataRegistry,
                   parameters: Optional[Dict[Any, Any]],
                   builder: CompiledQueryBuilder):
    """编译查询过滤条件的便捷入口"""
    acmd = metadata.get(compilation.candidate_class)
    if acmd is None:
        raise QueryValidationError(
            f"No meta data for {compilation.candidate_class!r}.", compilation.query_text)
    PredicateCompiler(compilation, acmd, metadata, parameters, builder).compile()
