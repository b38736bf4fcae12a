"""
运算符映射模块 - 谓词运算符到存储原生过滤运算符
"""

from enum import Enum
from typing import Any, Dict, Optional

from .expressions import Operator
from ..core.exceptions import UnsupportedDatastoreOperatorError


class FilterOperator(Enum):
    """存储原生过滤运算符"""
    EQUAL = "="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="

    def __str__(self) -> str:
        return self.value


class SortDirection(Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


UNSUPPORTED_OPERATORS = frozenset([
    Operator.ADD,
    Operator.BETWEEN,
    Operator.COM,
    Operator.CONCAT,
    Operator.DIV,
    Operator.IS,
    Operator.ISNOT,
    Operator.LIKE,
    Operator.MOD,
    Operator.NEG,
    Operator.MUL,
    Operator.NOT,
    Operator.SUB,
])

OPERATOR_MAP: Dict[Operator, FilterOperator] = {
    Operator.EQ: FilterOperator.EQUAL,
    Operator.GT: FilterOperator.GREATER_THAN,
    Operator.GTEQ: FilterOperator.GREATER_THAN_OR_EQUAL,
    Operator.LT: FilterOperator.LESS_THAN,
    Operator.LTEQ: FilterOperator.LESS_THAN_OR_EQUAL,
    # 仅当右侧为 null 时可用: x != null 等价于 x > null
    Operator.NOTEQ: FilterOperator.GREATER_THAN,
}


def is_unsupported(op: Optional[Operator]) -> bool:
    return op in UNSUPPORTED_OPERATORS


def check_supported(op: Optional[Operator], query_text: Optional[str]):
    """遇到静态不支持的运算符立即拒绝"""
    if is_unsupported(op):
        raise UnsupportedDatastoreOperatorError(query_text, op)


def native_operator_for(op: Operator, query_text: Optional[str] = None) -> FilterOperator:
    """
    查找原生过滤运算符

    Raises:
        UnsupportedDatastoreOperatorError: 存储没有对应的运算符
    """
    native = OPERATOR_MAP.get(op)
    if native is None:
        raise UnsupportedDatastoreOperatorError(query_text, op)
    return native


def check_not_equal_operand(op: Operator, value: Any, query_text: Optional[str]):
    """不等运算符只支持与 null 比较"""
    if op is Operator.NOTEQ and value is not None:
        raise UnsupportedDatastoreOperatorError(
            query_text, Operator.NOTEQ,
            "The 'not equal' operator is only supported when the operator argument is 'null'")


def direction_for(token: Optional[str]) -> SortDirection:
    """未指定或为 ascending 时升序，其余一律降序"""
    if token is None or token.lower() in ("ascending", "asc"):
        return SortDirection.ASCENDING
    return SortDirection.DESCENDING
