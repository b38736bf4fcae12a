"""
KindQueryDB 基本使用示例
"""

from dataclasses import dataclass, field
from pathlib import Path

# 添加项目根目录到 Python 路径
import sys
sys.path.append(str(Path(__file__).parent.parent))

from kindquery.core.database import KindQueryDB
from kindquery.core.config import Config
from kindquery.core.exceptions import KindQueryError
from kindquery.query.expressions import (
    Disjunction, Identifier, Literal, MethodCall, OrderExpression, Parameter,
    QueryCompilation, QueryType, eq,
)
from kindquery.storage.keys import Key


@dataclass
class Author:
    id: int = field(default=None, metadata={"primary_key": True})
    name: str = None


@dataclass
class Book:
    id: int = field(default=None, metadata={"primary_key": True})
    author_key: Key = field(default=None, metadata={"parent_pk": True})
    title: str = None
    year: int = None
    tags: list = field(default_factory=list)


def basic_example():
    """基本使用示例"""
    print("=== KindQueryDB 基本使用示例 ===\n")

    # 初始化数据库
    config = Config()
    db = KindQueryDB(config)

    try:
        db.register(Author)
        db.register(Book)

        # 1. 写入数据
        print("1. 写入数据...")
        herbert = db.put(Author(name="Frank Herbert"))
        with db.transaction():
            db.put(Book(author_key=herbert, title="Dune", year=1965, tags=["sf", "classic"]))
            db.put(Book(author_key=herbert, title="Dune Messiah", year=1969, tags=["sf"]))
        db.put(Book(title="Emma", year=1815, tags=["classic"]))
        db.put(Book(title="Ivanhoe", year=1819))
        print("写入 1 位作者与 4 本书")

        # 2. 过滤与排序
        print("\n2. 过滤与排序...")
        compilation = QueryCompilation(
            Book,
            filter=MethodCall("contains", Identifier.of("tags"), (Literal("classic"),)),
            ordering=[OrderExpression.of("year", "descending")],
            query_text="select from Book where tags.contains('classic') order by year desc",
        )
        for book in db.execute(compilation):
            print(f"  {book.year} {book.title}")
        print(f"原生查询: {db.latest_datastore_query}")

        # 3. 祖先查询
        print("\n3. 按作者查询...")
        compilation = QueryCompilation(Book, filter=eq("author_key", Parameter(name="author")))
        titles = [book.title for book in db.execute(compilation, parameters={"author": herbert})]
        print(f"  {titles}")

        # 4. 前缀匹配与分页
        print("\n4. 前缀匹配与分页...")
        compilation = QueryCompilation(
            Book, filter=MethodCall("matches", Identifier.of("title"), (Literal("Dune%"),)))
        print(f"  第二条: {[book.title for book in db.execute(compilation, 1, 2)]}")

        # 5. 计数与投影
        print("\n5. 计数与投影...")
        count = db.execute(QueryCompilation(Book, result=[MethodCall("count")]))
        print(f"  共 {count} 本书")
        projection = QueryCompilation(Book, result=[Identifier.of("title"), Identifier.of("year")])
        print(f"  {list(db.execute(projection))}")

        # 6. 批量主键读取与删除
        print("\n6. 批量删除...")
        book_ids = list(db.execute(QueryCompilation(Book, result=[Identifier.of("id")],
                                                    filter=eq("year", Literal(1819)))))
        deleted = db.execute(QueryCompilation(Book, filter=eq("id", Literal(book_ids)),
                                              query_type=QueryType.BULK_DELETE))
        print(f"  删除 {deleted} 条记录")

        # 7. 存储不支持的查询
        print("\n7. 不支持的查询...")
        try:
            db.execute(QueryCompilation(Book, filter=Disjunction(
                eq("year", Literal(1965)), eq("year", Literal(1815))), query_text="year == 1965 || year == 1815"))
        except KindQueryError as e:
            print(f"  {e}")

    finally:
        db.close()


if __name__ == "__main__":
    basic_example()
