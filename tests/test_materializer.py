"""
记录物化测试
"""

import pytest
from pathlib import Path

# 添加项目根目录到 Python 路径
import sys
sys.path.append(str(Path(__file__).parent.parent))

from kindquery.storage.datastore import Entity
from kindquery.storage.keys import Key, ShortBlob, key_to_string
from kindquery.storage.materializer import EntityMaterializer, IdentityCache
from kindquery.storage.memory_store import MemoryDatastore

from domain import Address, Author, Book, Chapter, Genre, Note, make_registry

AUTHOR = Key("Author", 1)


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def materializer(registry):
    return EntityMaterializer(registry, IdentityCache())


@pytest.fixture
def book_entity():
    return Entity(Key("Book", 7, AUTHOR), {
        "title": "Dune",
        "genre": "SCIENCE",
        "price": 9.5,
        "tags": ["sf"],
        "isbn_code": "978",
        "cover": ShortBlob(b"\x89PNG"),
    })


class TestBuildWhole:
    """整对象物化测试类"""

    def test_populates_members(self, materializer, book_entity):
        book = materializer.build_whole(book_entity, Book)
        assert book.id == 7
        assert book.author_key == AUTHOR
        assert book.title == "Dune"
        assert book.genre is Genre.SCIENCE
        assert book.isbn == "978"
        assert book.cover == b"\x89PNG"
        assert book.tags == ["sf"]
        assert book.published is None

    def test_identity_cache(self, materializer, book_entity):
        first = materializer.build_whole(book_entity, Book)
        assert materializer.build_whole(book_entity, Book) is first
        assert book_entity.key in materializer.cache

    def test_ignore_cache(self, materializer, book_entity):
        first = materializer.build_whole(book_entity, Book)
        second = materializer.build_whole(book_entity, Book, ignore_cache=True)
        assert second is not first
        assert second == first

    def test_embedded_object(self, materializer):
        entity = Entity(Key("Author", 2), {"name": "Zola", "city": "Paris", "zip": "75001"})
        author = materializer.build_whole(entity, Author)
        assert author.address == Address("Paris", "75001")

    def test_absent_embedded_object(self, materializer):
        author = materializer.build_whole(Entity(Key("Author", 3), {"name": "Anon"}), Author)
        assert author.address is None

    def test_child_relation_gets_parent_key(self, materializer):
        chapter = materializer.build_whole(Entity(Key("Chapter", 1, Key("Book", 4)), {"title": "I"}), Chapter)
        assert chapter.book == Key("Book", 4)
        assert chapter.key == Key("Chapter", 1, Key("Book", 4))

    def test_encoded_keys(self, materializer):
        key = Key("Note", 3, AUTHOR)
        note = materializer.build_whole(Entity(key, {"text": "hi"}), Note)
        assert note.id == key_to_string(key)
        assert note.parent == key_to_string(AUTHOR)


class TestOtherShapes:
    """仅身份对象与投影测试类"""

    def test_identifier_only(self, materializer, book_entity):
        book = materializer.build_identifier_only(Entity(book_entity.key), Book)
        assert book.id == 7
        assert book.author_key == AUTHOR
        assert "title" not in vars(book)

    def test_build_whole_fills_identifier_only(self, materializer, book_entity):
        hollow = materializer.build_identifier_only(Entity(book_entity.key), Book)
        assert materializer.cache.is_hollow(book_entity.key)
        book = materializer.build_whole(book_entity, Book)
        assert book is hollow
        assert book.title == "Dune"
        assert not materializer.cache.is_hollow(book_entity.key)

    def test_single_projection(self, materializer, registry, book_entity):
        acmd = registry.get(Book)
        projection = [(("title",), acmd.members["title"])]
        assert materializer.build_projection(book_entity, acmd, projection) == "Dune"

    def test_multiple_projection(self, materializer, registry, book_entity):
        acmd = registry.get(Book)
        projection = [(("id",), acmd.members["id"]), (("genre",), acmd.members["genre"]),
                      (("isbn",), acmd.members["isbn"])]
        assert materializer.build_projection(book_entity, acmd, projection) == (7, Genre.SCIENCE, "978")


class TestToEntity:
    """对象到记录的转换测试类"""

    def test_book(self, materializer):
        book = Book(id=7, author_key=AUTHOR, title="Dune", genre=Genre.FICTION, cover=b"x", isbn="978")
        entity = materializer.to_entity(book, Book)
        assert entity.key == Key("Book", 7, AUTHOR)
        assert entity.properties["genre"] == "FICTION"
        assert entity.properties["cover"] == ShortBlob(b"x")
        assert entity.properties["isbn_code"] == "978"
        assert "id" not in entity.properties
        assert "author_key" not in entity.properties

    def test_allocates_id(self, materializer):
        store = MemoryDatastore()
        entity = materializer.to_entity(Book(title="New"), Book, store)
        assert entity.key == Key("Book", 1)

    def test_embedded_is_flattened(self, materializer):
        entity = materializer.to_entity(Author(id=1, name="Zola", address=Address("Paris", "75001")), Author)
        assert entity.properties == {"name": "Zola", "city": "Paris", "zip": "75001"}

    def test_child_relation_supplies_parent(self, materializer):
        entity = materializer.to_entity(Chapter(key=None, book=Book(id=4), title="I"), Chapter, MemoryDatastore())
        assert entity.key.parent == Key("Book", 4)
        assert "book" not in entity.properties
