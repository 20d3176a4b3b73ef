import io
import os

import pytest

from book import Book
from library import DuplicateBookError, Library

JPEG = b"\xff\xd8\xff\xe0" + b"x" * 200


def _book(title="Test Book", author="Test Author", **kwargs):
    return Library.build_book({"title": title, "author": author, **kwargs})


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book = lib.add_book(_book("Ulysses", "James Joyce", isbn="9780199535675"))

    assert book.id is not None
    assert lib.find_book(book.id).title == "Ulysses"
    assert len(lib.list_books()) == 1
    assert lib.list_books()[0].status == "want-to-read"


def test_duplicate_isbn_is_rejected(lib):
    existing = lib.add_book(_book("A-old", isbn="9780000000001"))

    with pytest.raises(DuplicateBookError) as excinfo:
        lib.add_book(_book("A", isbn="9780000000001"))

    assert excinfo.value.existing.id == existing.id
    assert excinfo.value.existing.title == "A-old"
    assert excinfo.value.key == "isbn"
    assert len(lib.list_books()) == 1


def test_duplicate_external_id_without_isbn_is_rejected(lib):
    existing = lib.add_book(_book("Old", external_catalog_id="26858994"))

    with pytest.raises(DuplicateBookError) as excinfo:
        lib.add_book(_book("New", external_catalog_id="26858994"))

    assert excinfo.value.existing.id == existing.id
    assert excinfo.value.key == "external_catalog_id"
    assert len(lib.list_books()) == 1


def test_find_duplicate_checks_isbn_before_external_id(lib):
    by_isbn = lib.add_book(_book("By ISBN", isbn="111"))
    lib.add_book(_book("By external id", external_catalog_id="ext-1"))

    existing, key = lib.find_duplicate("111", "ext-1")
    assert existing.id == by_isbn.id
    assert key == "isbn"


def test_find_duplicate_falls_back_to_external_id_when_isbn_unknown(lib):
    other = lib.add_book(_book("By external id", external_catalog_id="ext-1"))

    existing, key = lib.find_duplicate("999", "ext-1")
    assert existing.id == other.id
    assert key == "external_catalog_id"


def test_find_duplicate_is_exact_and_case_sensitive(lib):
    lib.add_book(_book("X", isbn="080442957X"))
    assert lib.find_duplicate("080442957x", None) is None
    assert lib.find_duplicate(None, None) is None
    assert lib.find_duplicate("", "") is None


def test_books_without_keys_never_collide(lib):
    lib.add_book(_book("Same"))
    lib.add_book(_book("Same"))
    assert len(lib.list_books()) == 2


def test_blank_isbn_stored_as_null(lib):
    a = lib.add_book(_book("A", isbn="  "))
    b = lib.add_book(_book("B", isbn=""))
    assert a.isbn is None and b.isbn is None


def test_add_book_localizes_remote_cover(lib, image_host):
    image_host.routes["https://img.example/c.jpg"] = (200, {}, JPEG)
    book = lib.add_book(_book(isbn="123", cover_url="https://img.example/c.jpg"))
    assert book.cover_url.startswith("/uploads/")
    assert "123" in book.cover_url


def test_add_book_keeps_remote_url_when_download_fails(lib, image_host):
    url = "https://img.example/gone.jpg"
    image_host.routes[url] = (500, {}, b"")
    book = lib.add_book(_book(cover_url=url))
    assert lib.find_book(book.id).cover_url == url


def test_duplicate_does_not_download_cover(lib, image_host):
    lib.add_book(_book(isbn="123"))
    image_host.routes["https://img.example/c.jpg"] = (200, {}, JPEG)
    with pytest.raises(DuplicateBookError):
        lib.add_book(_book(isbn="123", cover_url="https://img.example/c.jpg"))
    assert image_host.requests == []


def test_build_book_validation():
    with pytest.raises(ValueError, match="title is required"):
        Library.build_book({"title": " ", "author": "x"})
    with pytest.raises(ValueError, match="Invalid status"):
        Library.build_book({"title": "t", "author": "a", "status": "lost"})
    with pytest.raises(ValueError, match="reading_progress"):
        Library.build_book({"title": "t", "author": "a", "reading_progress": 150})
    with pytest.raises(ValueError, match="rating"):
        Library.build_book({"title": "t", "author": "a", "rating": 11})


def test_build_book_maps_legacy_status():
    assert Library.build_book({"title": "t", "author": "a", "status": "已读"}).status == "read"


def test_quotes_round_trip(lib):
    book = lib.add_book(_book(quotes=[{"content": "old style", "id": 7}, "plain text"]))
    stored = lib.find_book(book.id)
    assert stored.quotes == [{"id": 7, "text": "old style"}, {"id": 2, "text": "plain text"}]


def test_list_books_search_sort_and_status(lib):
    lib.add_book(_book("Dune", "Frank Herbert", rating=9, reading_date="2024-01-01", status="read"))
    lib.add_book(_book("Emma", "Jane Austen", rating=7, reading_date="2025-03-01"))
    lib.add_book(_book("Persuasion", "Jane Austen", rating=8, reading_date="2023-06-01", status="reading"))

    assert [b.title for b in lib.list_books(search="Austen")] == ["Persuasion", "Emma"]
    assert [b.title for b in lib.list_books(sort="rating")] == ["Dune", "Persuasion", "Emma"]
    assert [b.title for b in lib.list_books(sort="date")] == ["Emma", "Dune", "Persuasion"]
    assert [b.title for b in lib.list_books(status="read")] == ["Dune"]
    # default is newest first
    assert lib.list_books()[0].title == "Persuasion"


def test_update_book_partial(lib):
    book = lib.add_book(_book("Original Title", "Original Author"))

    updated = lib.update_book(book.id, {"title": "Only Title Changed"})
    assert updated.title == "Only Title Changed"
    assert updated.author == "Original Author"

    updated = lib.update_book(book.id, {"status": "reading", "reading_progress": 40})
    assert updated.status == "reading"
    assert updated.reading_progress == 40
    assert updated.title == "Only Title Changed"


def test_update_book_requires_fields(lib):
    book = lib.add_book(_book())
    with pytest.raises(ValueError, match="No fields to update"):
        lib.update_book(book.id, {})


def test_update_book_not_found(lib):
    assert lib.update_book(12345, {"title": "New Title"}) is None


def test_update_book_localizes_remote_cover(lib, image_host):
    book = lib.add_book(_book())
    image_host.routes["https://img.example/new.webp"] = (200, {}, JPEG)

    updated = lib.update_book(book.id, {"cover_url": "https://img.example/new.webp"})
    assert updated.cover_url.startswith("/uploads/")
    assert updated.cover_url.endswith(".webp")


def test_update_book_cover_failure_keeps_remote_url(lib, image_host):
    book = lib.add_book(_book())
    updated = lib.update_book(book.id, {"cover_url": "https://img.example/missing.jpg"})
    assert updated.cover_url == "https://img.example/missing.jpg"


def test_update_book_clears_cover(lib):
    book = lib.add_book(_book(cover_url="/uploads/a.jpg"))
    assert lib.update_book(book.id, {"cover_url": None}).cover_url is None


def test_update_into_taken_isbn_is_reported(lib):
    lib.add_book(_book("First", isbn="111"))
    second = lib.add_book(_book("Second", isbn="222"))
    with pytest.raises(DuplicateBookError) as excinfo:
        lib.update_book(second.id, {"isbn": "111"})
    assert excinfo.value.existing.title == "First"


def test_remove_book(lib):
    book = lib.add_book(_book())
    assert lib.remove_book(book.id) is True
    assert lib.remove_book(book.id) is False
    assert lib.find_book(book.id) is None


def test_ids_are_not_reused(lib):
    first = lib.add_book(_book("First"))
    lib.remove_book(first.id)
    second = lib.add_book(_book("Second"))
    assert second.id > first.id


def test_persistence(tmp_path, localizer):
    db_file = str(tmp_path / "persist.db")
    lib = Library(db_file=db_file, cover_localizer=localizer, seed=False)
    book = lib.add_book(_book("Sapiens", "Yuval Noah Harari", isbn="9780099590088"))

    lib2 = Library(db_file=db_file, cover_localizer=localizer, seed=False)
    assert len(lib2.list_books()) == 1
    assert lib2.find_book(book.id).title == "Sapiens"


# ------------------------- Batch import ------------------------- #
def test_import_books_skips_collisions(lib):
    lib.add_book(_book("Existing by ISBN", isbn="111"))
    lib.add_book(_book("Existing by id", external_catalog_id="ext-9"))

    candidates = [
        {"title": "New 1", "author": "a", "isbn": "222"},
        {"title": "Dup ISBN", "author": "a", "isbn": "111"},
        {"title": "New 2", "author": "a"},
        {"title": "Dup id", "author": "a", "external_catalog_id": "ext-9"},
        {"title": "New 3", "author": "a", "external_catalog_id": "ext-10"},
    ]
    result = lib.import_books(candidates)

    assert result.imported == 3
    assert result.skipped == 2
    assert [item["title"] for item in result.skipped_items] == ["Dup ISBN", "Dup id"]
    assert "isbn" in result.skipped_items[0]["reason"] and "111" in result.skipped_items[0]["reason"]
    assert "external_catalog_id" in result.skipped_items[1]["reason"]
    assert len(lib.list_books()) == 5


def test_import_books_dedups_within_batch(lib):
    result = lib.import_books([
        {"title": "Once", "author": "a", "isbn": "333"},
        {"title": "Twice", "author": "a", "isbn": "333"},
    ])
    assert result.imported == 1
    assert result.skipped_items[0]["title"] == "Twice"


def test_import_books_skips_invalid_items(lib):
    result = lib.import_books([{"author": "nobody"}, {"title": "Fine", "author": "a"}])
    assert result.imported == 1
    assert result.skipped_items[0]["title"] == "(untitled)"
    assert result.skipped_items[0]["reason"].startswith("invalid")


def test_import_books_cover_failure_does_not_abort(lib, image_host):
    image_host.routes["https://img.example/ok.jpg"] = (200, {}, JPEG)
    result = lib.import_books([
        {"title": "Broken cover", "author": "a", "cover_url": "https://img.example/broken.jpg"},
        {"title": "Good cover", "author": "a", "cover_url": "https://img.example/ok.jpg"},
    ])
    assert result.imported == 2
    covers = {b.title: b.cover_url for b in lib.list_books()}
    assert covers["Broken cover"] == "https://img.example/broken.jpg"
    assert covers["Good cover"].startswith("/uploads/")


def test_import_books_deterministic_covers(lib, image_host, uploads_dir):
    os.makedirs(uploads_dir, exist_ok=True)
    with open(os.path.join(uploads_dir, "annual_444.jpg"), "wb") as f:
        f.write(JPEG)

    result = lib.import_books(
        [{"title": "Annual", "author": "a", "isbn": "444", "cover_url": "https://img.example/a.jpg"}],
        cover_prefix="annual",
    )

    assert result.imported == 1
    assert lib.find_book(result.ids[0]).cover_url == "/uploads/annual_444.jpg"
    assert image_host.requests == []


def test_import_accepts_book_instances(lib):
    result = lib.import_books([Book(title="Prebuilt", author="a", isbn="555")])
    assert result.imported == 1


# ------------------------- ISBN backfill ------------------------- #
def test_backfill_isbns(lib):
    exact = lib.add_book(_book("小王子"))
    partial = lib.add_book(_book("我看见的世界 : 李飞飞自传"))
    lib.add_book(_book("Unknown book"))
    lib.add_book(_book("Has ISBN", isbn="9787020042494"))
    conflicting = lib.add_book(_book("Taken"))

    result = lib.backfill_isbns({
        "小王子": "9787020042495",
        "我看见的世界": "9787521762181",
        "Taken": "9787020042494",
    })

    assert lib.find_book(exact.id).isbn == "9787020042495"
    assert lib.find_book(partial.id).isbn == "9787521762181"
    assert lib.find_book(conflicting.id).isbn is None
    assert result.not_found == ["Unknown book"]
    assert result.conflicts == [("Taken", "9787020042494")]
    assert len(result.updated) == 2


def test_import_books_survives_malformed_cover_redirect(lib, image_host):
    bad = "https://img.example/bad.jpg"
    image_host.routes[bad] = (302, {"location": "http://[broken/b.jpg"}, b"")

    result = lib.import_books([
        {"title": "Bad redirect", "author": "a", "cover_url": bad},
        {"title": "Fine", "author": "a"},
    ])

    assert result.imported == 2
    assert lib.find_book(result.ids[0]).cover_url == bad


def test_import_books_deterministic_cover_with_unsafe_isbn(lib, image_host, uploads_dir):
    image_host.routes["https://img.example/a.jpg"] = (200, {}, JPEG)

    result = lib.import_books(
        [{"title": "Slashed", "author": "a", "isbn": "978/7-02", "cover_url": "https://img.example/a.jpg"}],
        cover_prefix="annual",
    )

    assert lib.find_book(result.ids[0]).cover_url == "/uploads/annual_978_7-02.jpg"
    assert os.path.exists(os.path.join(uploads_dir, "annual_978_7-02.jpg"))


def test_new_book_without_rating_gets_default(lib):
    book = lib.add_book(_book())
    assert lib.find_book(book.id).rating == 5
    assert lib.add_book(_book("Zero", rating=0)).rating == 0


def test_build_book_rejects_nan_rating():
    with pytest.raises(ValueError, match="rating"):
        Library.build_book({"title": "t", "author": "a", "rating": float("nan")})
    with pytest.raises(ValueError, match="personal_rating"):
        Library.build_book({"title": "t", "author": "a", "personal_rating": "nan"})


def test_set_cover_stores_upload(lib, uploads_dir):
    book = lib.add_book(_book())

    updated = lib.set_cover(book.id, io.BytesIO(JPEG), "front.webp")

    assert updated.cover_url.startswith("/uploads/") and updated.cover_url.endswith(".webp")
    assert os.path.exists(os.path.join(uploads_dir, updated.cover_url.rsplit("/", 1)[1]))
    assert lib.set_cover(999, io.BytesIO(JPEG), "front.webp") is None


def test_add_book_with_uploaded_cover(lib, image_host):
    book = lib.add_book(_book(cover_url="https://img.example/ignored.jpg"),
                        cover_file=io.BytesIO(JPEG), cover_filename="c.png")
    assert book.cover_url.startswith("/uploads/") and book.cover_url.endswith(".png")
    assert image_host.requests == []
