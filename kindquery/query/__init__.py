"""
查询层模块 - 谓词编译与执行
"""

from .executor import QueryExecutor
from .streaming import StreamingQueryResult

__all__ = ["QueryExecutor", "StreamingQueryResult"]
