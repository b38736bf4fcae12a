"""
KindQueryDB 测试文件
"""

import datetime

import pytest
from pathlib import Path

# 添加项目根目录到 Python 路径
import sys
sys.path.append(str(Path(__file__).parent.parent))

from kindquery import KindQueryDB, Config
from kindquery.core.config import StorageConfig
from kindquery.core.exceptions import QueryValidationError
from kindquery.query import predicates
from kindquery.query.expressions import (
    Comparison, Identifier, Literal, MethodCall, Operator, OrderExpression, Parameter,
    QueryCompilation, eq,
)
from kindquery.storage.keys import Key, key_to_string

from domain import (
    DOMAIN_CLASSES, Address, Author, Book, Chapter, Genre, Note, Person, Profile,
)

AUTHOR = Key("Author", 1)


class TestKindQueryDB:
    """KindQueryDB 测试类"""

    @pytest.fixture
    def db(self):
        """创建测试数据库实例"""
        db = KindQueryDB(Config())
        for cls in DOMAIN_CLASSES:
            db.register(cls)
        yield db
        db.close()

    def test_put_assigns_ids(self, db):
        """未指定主键时分配 ID 并回写"""
        first, second = Book(title="A"), Book(title="B")
        db.put(first)
        db.put(second)
        assert (first.id, second.id) == (1, 2)
        assert db.get(Book, 2) is second

    def test_get_missing(self, db):
        assert db.get(Book, 42) is None

    def test_get_round_trip(self, db):
        db.put(Book(id=5, title="Dune", genre=Genre.FICTION, cover=b"\x00"))
        db.identity_cache.clear()
        book = db.get(Book, 5)
        assert book.title == "Dune"
        assert book.genre is Genre.FICTION
        assert book.cover == b"\x00"

    def test_put_unregistered(self, db):
        class Magazine:
            pass

        with pytest.raises(QueryValidationError):
            db.put(Magazine())

    def test_transaction_commit(self, db):
        with db.transaction():
            db.put(Book(id=1, title="Dune"))
            assert db.datastore.get([Key("Book", 1)]) == {}
        assert db.get(Book, 1).title == "Dune"

    def test_transaction_rollback(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.put(Book(id=1, title="Dune"))
                raise RuntimeError("boom")
        assert db.get(Book, 1) is None
        assert db.datastore.get_current_transaction() is None

    def test_child_relation_query(self, db):
        """按关系成员查询编译为祖先约束"""
        dune = Book(id=4, title="Dune")
        db.put(dune)
        db.put(Chapter(book=dune, title="Prologue", number=0))
        db.put(Chapter(book=dune, title="Arrakis", number=2))
        db.put(Chapter(book=dune, title="Caladan", number=1))
        db.put(Chapter(book=Book(id=5), title="Elsewhere", number=1))

        compilation = QueryCompilation(Chapter, filter=eq("book", Parameter(name="b")),
                                       ordering=[OrderExpression.of("number")],
                                       query_text="select from Chapter where book == :b order by number")
        result = db.execute(compilation, parameters={"b": dune})
        assert [c.title for c in result] == ["Prologue", "Caladan", "Arrakis"]
        assert db.latest_datastore_query.ancestor == Key("Book", 4)

    def test_owning_relation_query(self, db):
        db.put(Person(id="bob", nickname="B"))
        db.put(Person(id="amy", nickname="A"))
        profile_key = Key("Profile", 1, Key("Person", "bob"))
        db.put(Profile(key=profile_key, bio="hello"))

        result = db.execute(QueryCompilation(Person, filter=eq("profile", Literal(profile_key))))
        assert [p.id for p in result] == ["bob"]

    def test_embedded_query(self, db):
        db.put(Author(id=1, name="Zola", address=Address("Paris", "75001")))
        db.put(Author(id=2, name="Dickens", address=Address("London", "EC1")))
        db.identity_cache.clear()

        result = list(db.execute(QueryCompilation(Author, filter=eq("address.city", Literal("London")))))
        assert [a.name for a in result] == ["Dickens"]
        assert result[0].address == Address("London", "EC1")

    def test_encoded_keys(self, db):
        note = Note(parent=key_to_string(AUTHOR), text="hi")
        db.put(note)
        assert note.id == key_to_string(Key("Note", 1, AUTHOR))

        result = db.execute(QueryCompilation(Note, filter=eq("parent", Literal(note.parent))))
        assert [n.text for n in result] == ["hi"]

    def test_current_date(self, db, monkeypatch):
        now = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
        monkeypatch.setattr(predicates, "NOW_PROVIDER", lambda: now)
        db.put(Book(id=1, title="Old", published=now - datetime.timedelta(days=10)))
        db.put(Book(id=2, title="Future", published=now + datetime.timedelta(days=10)))

        expr = Comparison(Operator.LT, Identifier.of("published"), MethodCall("CURRENT_TIMESTAMP"))
        assert [b.title for b in db.execute(QueryCompilation(Book, filter=expr))] == ["Old"]

    def test_candidate_alias_from_config(self):
        config = Config()
        config.query.candidate_alias = "b"
        with KindQueryDB(config) as db:
            db.register(Book)
            db.put(Book(id=1, title="Dune"))
            compilation = QueryCompilation(Book, filter=eq("b.title", Literal("Dune")), candidate_alias=None)
            assert len(db.execute(compilation)) == 1

    def test_close_disconnects_results(self, db):
        db.put(Book(id=1, title="A"))
        db.put(Book(id=2, title="B"))
        result = db.execute(QueryCompilation(Book))
        db.close()
        assert list(result) == []
        assert db.scope.closed

    def test_unsupported_backend(self):
        with pytest.raises(ValueError):
            KindQueryDB(Config(storage=StorageConfig(backend="bigtable")))
