"""
KindQueryDB - 面向层级键值存储的对象查询翻译引擎

将 JDOQL/JPQL 风格的谓词树编译为存储原生的过滤、排序与祖先约束，
执行后以惰性流的形式返回领域对象。
"""

__version__ = "0.1.0"
__author__ = "KindQueryDB Team"

from .core.database import KindQueryDB
from .core.config import Config

__all__ = ["KindQueryDB", "Config"]
