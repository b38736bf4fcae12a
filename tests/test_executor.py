"""
查询执行器测试
"""

import pytest
from pathlib import Path

# 添加项目根目录到 Python 路径
import sys
sys.path.append(str(Path(__file__).parent.parent))

from kindquery.core.config import Config, QueryConfig
from kindquery.core.database import KindQueryDB
from kindquery.core.exceptions import (
    DatastoreFailureError, QueryValidationError, UnsupportedDatastoreFeatureError,
)
from kindquery.query.executor import QueryExecutor
from kindquery.query.expressions import (
    Identifier, Literal, MethodCall, OrderExpression, Parameter, QueryCompilation, QueryType, eq,
)
from kindquery.query.native import BatchGetQuery, ScanQuery
from kindquery.storage.keys import Key
from kindquery.storage.materializer import EntityMaterializer
from kindquery.storage.memory_store import MemoryDatastore

from domain import DOMAIN_CLASSES, Author, Book, Genre

AUTHOR = Key("Author", 1)


class SpyDatastore(MemoryDatastore):
    """记录每次扫描所用事务的存储"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scan_txns = []

    def scan(self, query, txn=None, window=None, keys_only=False):
        self.scan_txns.append(txn)
        return super().scan(query, txn, window, keys_only)


class BrokenDatastore(MemoryDatastore):
    def scan(self, query, txn=None, window=None, keys_only=False):
        raise RuntimeError("backend unavailable")


class FlakyDatastore(MemoryDatastore):
    """读到第二条记录时连接断开"""

    def _stream(self, matched, offset, limit, keys_only):
        for i, entity in enumerate(super()._stream(matched, offset, limit, keys_only)):
            if i == 1:
                raise ConnectionError("connection reset")
            yield entity


def make_db(datastore=None, config=None):
    db = KindQueryDB(config=config, datastore=datastore)
    for cls in DOMAIN_CLASSES:
        db.register(cls)
    db.put(Author(id=1, name="Herbert"))
    db.put(Book(id=1, author_key=AUTHOR, title="Dune", genre=Genre.FICTION, price=10, tags=["sf"]))
    db.put(Book(id=2, author_key=AUTHOR, title="Children", genre=Genre.SCIENCE, price=8))
    db.put(Book(id=3, title="Emma", genre=Genre.FICTION, price=8))
    db.put(Book(id=4, title="Ivanhoe", genre=Genre.HISTORY, price=12))
    db.identity_cache.clear()
    db.datastore.operation_counts.clear()
    return db


@pytest.fixture
def db():
    db = make_db()
    yield db
    db.close()


def query(**kwargs):
    kwargs.setdefault("query_text", "select from Book")
    return QueryCompilation(Book, **kwargs)


def titles(result):
    return [book.title for book in result]


def count():
    return MethodCall("count")


class TestSelect:
    """行查询测试类"""

    def test_select_all(self, db):
        assert titles(db.execute(query())) == ["Dune", "Children", "Emma", "Ivanhoe"]

    def test_filter(self, db):
        result = db.execute(query(filter=eq("genre", Parameter(name="g"))), parameters={"g": Genre.FICTION})
        assert titles(result) == ["Dune", "Emma"]
        assert isinstance(db.latest_datastore_query, ScanQuery)

    def test_ordering(self, db):
        ordering = [OrderExpression.of("price", "descending"), OrderExpression.of("title")]
        assert titles(db.execute(query(ordering=ordering))) == ["Ivanhoe", "Dune", "Children", "Emma"]

    def test_range(self, db):
        assert titles(db.execute(query(), 1, 3)) == ["Children", "Emma"]
        assert titles(db.execute(query(), 3)) == ["Ivanhoe"]

    def test_starts_with(self, db):
        expr = MethodCall("startsWith", Identifier.of("title"), (Literal("E"),))
        assert titles(db.execute(query(filter=expr))) == ["Emma"]

    def test_list_property(self, db):
        expr = MethodCall("contains", Identifier.of("tags"), (Literal("sf"),))
        assert titles(db.execute(query(filter=expr))) == ["Dune"]

    def test_results_are_lazy(self, db):
        result = db.execute(query())
        assert db.datastore.records_read == 0
        assert result[0].title == "Dune"
        assert db.datastore.records_read == 1

    def test_keys_only(self, db):
        result = list(db.execute(query(result=[Identifier.of("this")])))
        assert [book.id for book in result] == [1, 2, 3, 4]
        assert all("title" not in vars(book) for book in result)
        assert db.latest_datastore_query.keys_only

    def test_whole_record_after_keys_only(self, db):
        """仅主键查询缓存的对象在整记录查询中被补全"""
        hollow = list(db.execute(query(result=[Identifier.of("this")])))
        result = list(db.execute(query()))
        assert titles(result) == ["Dune", "Children", "Emma", "Ivanhoe"]
        assert result[0].tags == ["sf"]
        assert result[0] is hollow[0]
        assert not db.identity_cache.is_hollow(Key("Book", 1, AUTHOR))

    def test_key_projection_uses_keys_only_scan(self, db):
        assert list(db.execute(query(result=[Identifier.of("id")]))) == [1, 2, 3, 4]
        assert db.latest_datastore_query.keys_only

    def test_projection(self, db):
        result = db.execute(query(result=[Identifier.of("title"), Identifier.of("price")],
                                  filter=eq("price", Literal(8))))
        assert list(result) == [("Children", 8), ("Emma", 8)]
        assert not db.latest_datastore_query.keys_only


class TestEmptyRange:
    """空窗口测试类"""

    @pytest.mark.parametrize("from_incl, to_excl", [(None, 0), (2, 2), (3, 1)])
    def test_rows(self, db, from_incl, to_excl):
        assert db.execute(query(), from_incl, to_excl) == []
        assert sum(db.datastore.operation_counts.values()) == 0

    def test_count_and_delete(self, db):
        assert db.execute(query(result=[count()]), 0, 0) == 0
        assert db.execute(query(query_type=QueryType.BULK_DELETE), 5, 5) == 0
        assert sum(db.datastore.operation_counts.values()) == 0

    def test_batch(self, db):
        assert db.execute(query(filter=eq("id", Literal([1, 2]))), None, 0) == []
        assert db.datastore.operation_counts["get"] == 0


class TestCount:
    """计数测试类"""

    def test_count(self, db):
        assert db.execute(query(result=[count()])) == 4
        assert db.execute(query(result=[count()], filter=eq("price", Literal(8)))) == 2

    @pytest.mark.parametrize("from_incl, to_excl", [(0, 3), (1, None)])
    def test_count_with_range(self, db, from_incl, to_excl):
        with pytest.raises(UnsupportedDatastoreFeatureError):
            db.execute(query(result=[count()]), from_incl, to_excl)
        assert db.datastore.operation_counts["count"] == 0


class TestBatchLookup:
    """批量主键读取测试类"""

    def test_results_in_requested_order(self, db):
        result = db.execute(query(filter=eq("id", Literal([4, 3, 99, 4]))))
        assert titles(result) == ["Ivanhoe", "Emma"]
        assert db.latest_datastore_query == BatchGetQuery("Book", (Key("Book", 4), Key("Book", 3), Key("Book", 99)))
        assert db.datastore.operation_counts["scan"] == 0

    def test_in_parameter(self, db):
        expr = MethodCall("contains", Parameter(name="ids"), (Identifier.of("id"),))
        result = db.execute(query(filter=expr), parameters={"ids": [3, 4]})
        assert titles(result) == ["Emma", "Ivanhoe"]

    def test_batch_count(self, db):
        assert db.execute(query(filter=eq("id", Literal([3, 4, 99])), result=[count()])) == 2

    def test_batch_count_with_range(self, db):
        with pytest.raises(UnsupportedDatastoreFeatureError):
            db.execute(query(filter=eq("id", Literal([3, 4, 99])), result=[count()]), 1, 3)
        assert db.datastore.operation_counts["get"] == 0

    def test_batch_range(self, db):
        assert titles(db.execute(query(filter=eq("id", Literal([3, 4]))), 1)) == ["Ivanhoe"]


class TestBulkDelete:
    """批量删除测试类"""

    def test_delete_by_filter(self, db):
        deleted = db.execute(query(query_type=QueryType.BULK_DELETE, filter=eq("price", Literal(8))))
        assert deleted == 2
        assert db.latest_datastore_query.keys_only
        assert titles(db.execute(query())) == ["Dune", "Ivanhoe"]

    def test_delete_batch_reports_submitted_keys(self, db):
        deleted = db.execute(query(query_type=QueryType.BULK_DELETE, filter=eq("id", Literal([3, 4, 99]))))
        assert deleted == 3
        assert titles(db.execute(query())) == ["Dune", "Children"]

    def test_accurate_delete_counts_existing_keys(self, db):
        compilation = query(query_type=QueryType.BULK_DELETE, filter=eq("id", Literal([3, 99])),
                            extensions={"slow_but_more_accurate_delete": True})
        assert db.execute(compilation) == 1
        assert db.datastore.operation_counts["get"] == 1

    def test_accurate_delete_from_config(self):
        db = make_db(config=Config(query=QueryConfig(slow_but_more_accurate_delete=True)))
        assert db.execute(query(query_type=QueryType.BULK_DELETE, filter=eq("id", Literal([4, 5])))) == 1

    def test_delete_evicts_identity_cache(self, db):
        emma = db.execute(query(filter=eq("id", Literal(3))))[0]
        assert Key("Book", 3) in db.identity_cache
        db.execute(query(query_type=QueryType.BULK_DELETE, filter=eq("id", Literal(emma.id))))
        assert Key("Book", 3) not in db.identity_cache


class TestValidation:
    """执行前校验测试类"""

    def test_bulk_update(self, db):
        with pytest.raises(QueryValidationError) as exc_info:
            db.execute(query(query_type=QueryType.BULK_UPDATE))
        assert "Only select and delete" in str(exc_info.value)

    def test_negative_range(self, db):
        with pytest.raises(QueryValidationError) as exc_info:
            db.execute(query(), -1, 2)
        assert exc_info.value.query_text == "select from Book"

    def test_missing_candidate(self, db):
        with pytest.raises(QueryValidationError):
            db.execute(QueryCompilation(None))

    def test_missing_metadata(self, db):
        class Magazine:
            pass

        with pytest.raises(QueryValidationError):
            db.execute(QueryCompilation(Magazine))

    def test_rejections_happen_before_store_calls(self, db):
        with pytest.raises(UnsupportedDatastoreFeatureError):
            db.execute(query(grouping=[Identifier.of("title")]))
        assert sum(db.datastore.operation_counts.values()) == 0


class TestTransactions:
    """事务内执行测试类"""

    @pytest.fixture
    def spy_db(self):
        return make_db(datastore=SpyDatastore())

    def test_ancestor_query_joins_transaction(self, spy_db):
        with spy_db.transaction() as txn:
            result = spy_db.execute(query(filter=eq("author_key", Literal(AUTHOR))))
            assert titles(result) == ["Dune", "Children"]
            assert spy_db.datastore.scan_txns[-1] is txn

    def test_excluded_from_transaction(self, spy_db):
        compilation = query(filter=eq("author_key", Literal(AUTHOR)),
                            extensions={"exclude_query_from_txn": True})
        with spy_db.transaction():
            assert titles(spy_db.execute(compilation)) == ["Dune", "Children"]
            assert spy_db.datastore.scan_txns[-1] is None

    def test_non_ancestor_query_runs_outside_transaction(self, spy_db):
        with spy_db.transaction():
            assert len(spy_db.execute(query())) == 4
            assert spy_db.datastore.scan_txns[-1] is None

    def test_delete_inside_transaction_waits_for_commit(self, spy_db):
        with spy_db.transaction():
            spy_db.execute(query(query_type=QueryType.BULK_DELETE, filter=eq("author_key", Literal(AUTHOR))))
            assert len(spy_db.execute(query())) == 4
        assert titles(spy_db.execute(query())) == ["Emma", "Ivanhoe"]


class TestStoreFailures:
    """存储故障测试类"""

    def test_failure_at_dispatch(self):
        db = make_db(datastore=BrokenDatastore())
        with pytest.raises(DatastoreFailureError) as exc_info:
            db.execute(query())
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_failure_while_streaming(self):
        db = make_db(datastore=FlakyDatastore())
        result = db.execute(query())
        assert result[0].title == "Dune"
        with pytest.raises(DatastoreFailureError):
            list(result)


class TestCancellation:
    """资源作用域取消测试类"""

    def test_flush_disconnects_results(self, db):
        result = db.execute(query())
        assert result[0].title == "Dune"
        db.flush()
        assert titles(result) == ["Dune"]
        assert result.is_disconnected
        assert db.datastore.records_read == 1

    def test_new_connection_flushes_previous_scope(self, db):
        result = db.execute(query())
        db.connection()
        assert list(result) == []

    def test_standalone_executor(self):
        db = make_db()
        executor = QueryExecutor(db.datastore, db.metadata, EntityMaterializer(db.metadata))
        result = executor.execute(query(filter=eq("price", Literal(8))))
        assert titles(result) == ["Children", "Emma"]
        assert executor.latest_datastore_query.kind == "Book"
