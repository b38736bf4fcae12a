"""
表达式模块 - 外部编译器产出的谓词树与查询编译结果
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple


class Operator(Enum):
    """谓词树中出现的运算符"""
    EQ = "=="
    NOTEQ = "!="
    GT = ">"
    GTEQ = ">="
    LT = "<"
    LTEQ = "<="
    AND = "&&"
    OR = "||"
    NOT = "!"
    NEG = "unary -"
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"
    CONCAT = "CONCAT"
    COM = "~"
    BETWEEN = "BETWEEN"
    IS = "IS"
    ISNOT = "IS NOT"
    LIKE = "LIKE"

    def __str__(self) -> str:
        return self.name


class QueryType(Enum):
    SELECT = "select"
    BULK_DELETE = "delete"
    BULK_UPDATE = "update"


@dataclass(frozen=True)
class Node:
    """谓词树节点基类"""

    def children(self) -> Iterator["Node"]:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Node):
                yield value
            elif isinstance(value, tuple):
                for item in value:
                    if isinstance(item, Node):
                        yield item


@dataclass(frozen=True)
class Conjunction(Node):
    left: Node
    right: Node

    @property
    def operator(self) -> Operator:
        return Operator.AND


@dataclass(frozen=True)
class Disjunction(Node):
    left: Node
    right: Node

    @property
    def operator(self) -> Operator:
        return Operator.OR


@dataclass(frozen=True)
class Comparison(Node):
    """二元运算，左右均为节点"""
    op: Operator
    left: Node
    right: Optional[Node]

    @property
    def operator(self) -> Operator:
        return self.op


@dataclass(frozen=True)
class UnaryOperation(Node):
    op: Operator
    operand: Node

    @property
    def operator(self) -> Operator:
        return self.op


@dataclass(frozen=True)
class MethodCall(Node):
    name: str
    receiver: Optional[Node] = None
    args: Tuple[Node, ...] = ()

    def __str__(self) -> str:
        args = ", ".join(str(a) for a in self.args)
        if self.receiver is None:
            return f"{self.name}({args})"
        return f"{self.receiver}.{self.name}({args})"


@dataclass(frozen=True)
class Identifier(Node):
    path: Tuple[str, ...]

    @classmethod
    def of(cls, dotted: str) -> "Identifier":
        return cls(tuple(dotted.split(".")))

    @property
    def id(self) -> str:
        return ".".join(self.path)

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True)
class Parameter(Node):
    name: Optional[str] = None
    position: Optional[int] = None

    def __str__(self) -> str:
        if self.name is not None:
            return f":{self.name}"
        return f"?{self.position}"


@dataclass(frozen=True)
class CandidateSource(Node):
    """FROM 子句中的候选类"""
    cls: type
    alias: str = "this"


@dataclass(frozen=True)
class Join(Node):
    left: Node
    right: Node
    alias: Optional[str] = None


@dataclass(frozen=True)
class OrderExpression:
    path: Tuple[str, ...]
    direction: Optional[str] = None

    @classmethod
    def of(cls, dotted: str, direction: Optional[str] = None) -> "OrderExpression":
        return cls(tuple(dotted.split(".")), direction)


@dataclass
class QueryCompilation:
    """
    外部编译器的产物 - 过滤、排序、结果与来源子句
    """
    candidate_class: Optional[type]
    filter: Optional[Node] = None
    ordering: List[OrderExpression] = field(default_factory=list)
    result: List[Node] = field(default_factory=list)
    from_exprs: List[Node] = field(default_factory=list)
    grouping: Optional[List[Node]] = None
    having: Optional[Node] = None
    candidate_alias: str = "this"
    query_type: QueryType = QueryType.SELECT
    query_text: str = ""
    extensions: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_bulk_delete(self) -> bool:
        return self.query_type is QueryType.BULK_DELETE


def walk(node: Node) -> Iterator[Node]:
    """先序遍历节点及其所有子节点"""
    yield node
    for child in node.children():
        yield from walk(child)


# 常用构造函数

def eq(path: str, value: Node) -> Comparison:
    return Comparison(Operator.EQ, Identifier.of(path), value)


def and_(*nodes: Node) -> Node:
    result = nodes[0]
    for node in nodes[1:]:
        result = Conjunction(result, node)
    return result
