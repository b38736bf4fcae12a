"""
流式结果模块 - 按需物化存储记录，资源作用域释放后断开
"""

from collections.abc import Sequence
from typing import Any, Callable, Iterable, List, Optional

from loguru import logger

from ..core.exceptions import DatastoreFailureError, KindQueryError


class CancellationToken:
    """协作式取消标记，每次拉取记录前检查"""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True


class ConnectionScope:
    """
    资源作用域 - 为流式结果发放取消标记，flush 时统一取消
    """

    def __init__(self):
        self.tokens: List[CancellationToken] = []
        self.closed = False

    def new_token(self) -> CancellationToken:
        token = CancellationToken()
        self.tokens.append(token)
        return token

    def flush(self):
        """通知作用域内的所有流式结果断开"""
        for token in self.tokens:
            token.cancel()
        if self.tokens:
            logger.debug(f"资源作用域已刷新，断开 {len(self.tokens)} 个流式结果")
        self.tokens.clear()

    def close(self):
        self.flush()
        self.closed = True

    def __enter__(self) -> "ConnectionScope":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class StreamingQueryResult(Sequence):
    """
    流式查询结果

    只在调用方需要时从存储拉取下一条记录并物化；已物化的元素会缓存，
    因此可以重复遍历。取消标记生效后不再访问存储，已物化的元素仍然有效。
    """

    def __init__(self,
                 records: Iterable[Any],
                 transformer: Callable[[Any], Any],
                 token: Optional[CancellationToken] = None,
                 query_text: Optional[str] = None):
        """
        初始化流式结果

        Args:
            records: 存储返回的惰性记录序列
            transformer: 记录到领域值的转换函数
            token: 所属资源作用域发放的取消标记
            query_text: 原始查询文本，用于错误信息
        """
        self._source = iter(records)
        self._transformer = transformer
        self._token = token
        self._query_text = query_text
        self._cache: List[Any] = []
        self._exhausted = False
        self._disconnected = False

    @property
    def is_disconnected(self) -> bool:
        return self._disconnected

    @property
    def is_exhausted(self) -> bool:
        return self._exhausted

    def disconnect(self):
        """永久断开与存储迭代器的连接"""
        if not self._disconnected:
            self._disconnected = True
            self._source = iter(())
            logger.warning(f"流式结果已断开，保留 {len(self._cache)} 条已物化结果: {self._query_text}")

    def _pull(self) -> bool:
        """拉取并物化下一条记录，没有更多记录时返回 False"""
        if self._exhausted or self._disconnected:
            return False
        if self._token is not None and self._token.cancelled:
            self.disconnect()
            return False
        try:
            record = next(self._source)
        except StopIteration:
            self._exhausted = True
            return False
        except KindQueryError:
            raise
        except Exception as e:
            logger.error(f"读取查询结果失败: {e}")
            raise DatastoreFailureError(
                f"Datastore failure while reading results of query <{self._query_text}>: {e}",
                self._query_text) from e
        self._cache.append(self._transformer(record))
        return True

    def _fill_to(self, index: int) -> bool:
        while len(self._cache) <= index:
            if not self._pull():
                return False
        return True

    def __iter__(self):
        i = 0
        while True:
            if i < len(self._cache) or self._pull():
                yield self._cache[i]
                i += 1
            else:
                return

    def __len__(self) -> int:
        # 获取大小需要读完全部结果
        while self._pull():
            pass
        return len(self._cache)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return list(self)[index]
        if index < 0:
            # 负下标需要先读完全部结果
            len(self)
            return self._cache[index]
        if not self._fill_to(index):
            raise IndexError("查询结果下标越界")
        return self._cache[index]

    def __bool__(self) -> bool:
        return self._fill_to(0)

    def __repr__(self) -> str:
        state = "disconnected" if self._disconnected else ("exhausted" if self._exhausted else "open")
        return f"<StreamingQueryResult {state} materialized={len(self._cache)}>"
