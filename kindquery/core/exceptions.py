"""
自定义异常类
"""

from typing import Any, Optional


class KindQueryError(Exception):
    """查询引擎通用错误，携带原始查询文本。"""

    def __init__(self, message: str, query_text: Optional[str] = None):
        super().__init__(message)
        self.query_text = query_text


class UnsupportedDatastoreOperatorError(KindQueryError):
    """存储无法执行的运算符。"""

    def __init__(self, query_text: Optional[str], operator: Any, msg: Optional[str] = None):
        self.operator = operator
        self.msg = msg
        message = f"Problem with query <{query_text}>: datastore does not support operator {operator}"
        if msg:
            message = f"{message}.  {msg}"
        super().__init__(message, query_text)


class UnsupportedDatastoreFeatureError(KindQueryError):
    """存储无法执行的查询结构（连接、分组、析取等）。"""

    def __init__(self, reason: str, query_text: Optional[str]):
        self.reason = reason
        super().__init__(f"Problem with query <{query_text}>: {reason}", query_text)


class QueryValidationError(KindQueryError):
    """调用方或模式错误：缺少元数据、未知成员、参数值非法等。"""

    fatal = True


class DatastoreFailureError(KindQueryError):
    """与存储通信失败，已包装为引擎自身的错误。"""


class DatastoreError(Exception):
    """存储客户端自身抛出的错误。"""
