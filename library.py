import json
import logging
import re
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Tuple, Union

import database
from book import BOOK_COLUMNS, DEFAULT_RATING, Book, normalize_quotes
from config import settings
from covers import CoverLocalizer, is_remote, safe_key
from database import get_db_connection, initialize_database
from note import Note
from utils.validators import BookValidator, TextValidator

logger = logging.getLogger(__name__)

# Fields a partial update may touch
UPDATABLE_FIELDS = (
    "title", "author", "isbn", "external_catalog_id", "cover_url", "status", "rating",
    "personal_rating", "summary", "review", "quotes", "reading_date", "total_pages",
    "reading_progress", "file_url", "recommendation", "publisher",
)

SORT_CLAUSES = {
    "rating": "ORDER BY rating DESC, id DESC",
    "date": "ORDER BY reading_date DESC, id DESC",
}
DEFAULT_SORT = "ORDER BY id DESC"


class DuplicateBookError(ValueError):
    """Raised when a new book collides with an existing one on ISBN or external catalog id."""

    def __init__(self, existing: Book, key: str, value: str) -> None:
        self.existing = existing
        self.key = key
        self.value = value
        super().__init__(f"Book with {key} {value} already exists (id {existing.id}: {existing.title}).")


class BookNotFoundError(LookupError):
    pass


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    skipped_items: List[Dict[str, str]] = field(default_factory=list)
    ids: List[int] = field(default_factory=list)

    def skip(self, title: str, reason: str) -> None:
        self.skipped += 1
        self.skipped_items.append({"title": title, "reason": reason})

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "skipped_items": list(self.skipped_items),
            "ids": list(self.ids),
        }


@dataclass
class BackfillResult:
    updated: List[Tuple[str, str]] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    conflicts: List[Tuple[str, str]] = field(default_factory=list)


class Library:
    """Manages the book catalog, its notes and cover localization."""

    def __init__(self, db_file: Optional[str] = None, cover_localizer: Optional[CoverLocalizer] = None,
                 seed: Optional[bool] = None) -> None:
        # Module-level helpers in database.py read DATABASE_FILE, so callers and
        # tests point the whole process at another catalog by passing db_file.
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database(seed=settings.seed_sample_data if seed is None else seed)
        self.covers = cover_localizer or CoverLocalizer()

    # ------------------------- Lookups ------------------------- #
    def list_books(self, search: Optional[str] = None, sort: Optional[str] = None,
                   status: Optional[str] = None) -> List[Book]:
        """All books, optionally filtered by a title/author substring and status."""
        clauses, params = [], []
        if search:
            clauses.append("(title LIKE ? OR author LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        if status:
            clauses.append("status = ?")
            params.append(BookValidator.status(status))
        query = "SELECT * FROM books"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " " + SORT_CLAUSES.get(sort or "", DEFAULT_SORT)

        conn = get_db_connection()
        try:
            rows = conn.execute(query, params).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_book(self, book_id: int) -> Optional[Book]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def count_books(self) -> int:
        conn = get_db_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        finally:
            conn.close()

    def find_duplicate(self, isbn: Optional[str], external_catalog_id: Optional[str]) -> Optional[Tuple[Book, str]]:
        """Return ``(existing_book, matched_key)`` for the first identity key that matches, else None.

        ISBN is checked first; the external catalog id only when the ISBN is
        absent or unknown. Both lookups are exact and hit unique indexes.
        """
        if isbn:
            book = self._find_by("isbn", isbn)
            if book:
                return book, "isbn"
        if external_catalog_id:
            book = self._find_by("external_catalog_id", external_catalog_id)
            if book:
                return book, "external_catalog_id"
        return None

    def _find_by(self, column: str, value: str) -> Optional[Book]:
        conn = get_db_connection()
        try:
            row = conn.execute(f"SELECT * FROM books WHERE {column} = ?", (value,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    # ------------------------- Core operations ------------------------- #
    @staticmethod
    def build_book(data: Dict[str, Any]) -> Book:
        """Validate a candidate record and return an unsaved Book."""
        rating = BookValidator.rating(data.get("rating"))
        return Book(
            title=TextValidator.require(data.get("title"), "title"),
            author=TextValidator.require(data.get("author"), "author"),
            isbn=BookValidator.identity_key(data.get("isbn")),
            external_catalog_id=BookValidator.identity_key(data.get("external_catalog_id")),
            cover_url=TextValidator.clean_optional(data.get("cover_url")),
            status=BookValidator.status(data.get("status")),
            rating=DEFAULT_RATING if rating is None else rating,
            personal_rating=BookValidator.rating(data.get("personal_rating"), "personal_rating"),
            summary=data.get("summary"),
            review=data.get("review"),
            quotes=data.get("quotes"),
            reading_date=TextValidator.clean_optional(data.get("reading_date")),
            total_pages=BookValidator.non_negative_int(data.get("total_pages"), "total_pages"),
            reading_progress=BookValidator.non_negative_int(data.get("reading_progress"), "reading_progress", 100),
            file_url=TextValidator.clean_optional(data.get("file_url")),
            recommendation=TextValidator.clean_optional(data.get("recommendation")),
            publisher=TextValidator.clean_optional(data.get("publisher")),
        )

    def add_book(self, book: Book, cover_file: Optional[BinaryIO] = None,
                 cover_filename: Optional[str] = None) -> Book:
        """Insert a new book. Raises DuplicateBookError when its ISBN or external id is taken.

        An uploaded ``cover_file`` takes precedence over ``book.cover_url``.
        """
        match = self.find_duplicate(book.isbn, book.external_catalog_id)
        if match:
            existing, key = match
            raise DuplicateBookError(existing, key, getattr(book, key))

        if cover_file is not None:
            book.cover_url = self.covers.store_upload(cover_file, cover_filename)
        else:
            book.cover_url = self.covers.localize(book.cover_url, key=book.isbn or book.external_catalog_id)
        try:
            return self._insert(book)
        except sqlite3.IntegrityError as e:
            # Lost a race against another writer between lookup and insert
            match = self.find_duplicate(book.isbn, book.external_catalog_id)
            if match:
                existing, key = match
                raise DuplicateBookError(existing, key, getattr(book, key)) from e
            raise

    def _insert(self, book: Book) -> Book:
        placeholders = ", ".join("?" for _ in BOOK_COLUMNS)
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                f"INSERT INTO books ({', '.join(BOOK_COLUMNS)}) VALUES ({placeholders})",
                book.to_row(),
            )
            conn.commit()
            book.id = cursor.lastrowid
        finally:
            conn.close()
        stored = self.find_book(book.id)
        return stored or book

    def import_books(self, candidates: Iterable[Union[Dict[str, Any], Book]], delay: Optional[float] = None,
                     cover_prefix: Optional[str] = None) -> ImportResult:
        """Add candidates one at a time, skipping the ones that are invalid or already cataloged.

        With ``cover_prefix`` covers go to deterministic file names
        (``<prefix>_<isbn or title>.jpg``) and existing files are reused.
        A failing item never stops the rest of the batch.
        """
        delay = settings.import_delay_seconds if delay is None else delay
        result = ImportResult()
        for position, candidate in enumerate(candidates):
            if position and delay:
                time.sleep(delay)

            if isinstance(candidate, Book):
                book = candidate
            else:
                title = str(candidate.get("title") or "").strip() or "(untitled)"
                try:
                    book = self.build_book(candidate)
                except ValueError as e:
                    logger.info("Skipping %s: %s", title, e)
                    result.skip(title, f"invalid: {e}")
                    continue

            match = self.find_duplicate(book.isbn, book.external_catalog_id)
            if match:
                existing, key = match
                reason = f"{key} already exists: {getattr(book, key)} (id {existing.id})"
                logger.info("Skipping %s: %s", book.title, reason)
                result.skip(book.title, reason)
                continue

            if cover_prefix:
                slug = safe_key(book.isbn) if book.isbn else re.sub(r"[^\w]", "_", book.title)
                book.cover_url = self.covers.localize_deterministic(book.cover_url, f"{cover_prefix}_{slug}.jpg")
            else:
                book.cover_url = self.covers.localize(book.cover_url, key=book.isbn or book.external_catalog_id)

            try:
                stored = self._insert(book)
            except sqlite3.Error as e:
                logger.warning("Insert failed for %s: %s", book.title, e)
                result.skip(book.title, f"insert failed: {e}")
                continue
            result.imported += 1
            result.ids.append(stored.id)

        logger.info("Batch import finished: %d imported, %d skipped", result.imported, result.skipped)
        return result

    def update_book(self, book_id: int, changes: Dict[str, Any]) -> Optional[Book]:
        """Apply a partial update; only keys present in ``changes`` are written.

        Returns the updated book, or None when it does not exist. A remote
        ``cover_url`` is localized first; ``cover_url=None`` clears the cover.
        """
        changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        if not changes:
            raise ValueError("No fields to update.")

        book = self.find_book(book_id)
        if not book:
            return None

        values = self._validate_changes(changes)
        if is_remote(values.get("cover_url")):
            values["cover_url"] = self.covers.localize(values["cover_url"], key=str(book_id))

        set_clause = ", ".join(f"{column} = ?" for column in values)
        conn = get_db_connection()
        try:
            conn.execute(f"UPDATE books SET {set_clause} WHERE id = ?", (*values.values(), book_id))
            conn.commit()
        except sqlite3.IntegrityError as e:
            key = "external_catalog_id" if "external_catalog_id" in str(e) else "isbn"
            existing = self._find_by(key, values.get(key)) if values.get(key) else None
            if existing:
                raise DuplicateBookError(existing, key, values[key]) from e
            raise
        finally:
            conn.close()
        return self.find_book(book_id)

    @staticmethod
    def _validate_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for key, value in changes.items():
            if key in ("title", "author"):
                values[key] = TextValidator.require(value, key)
            elif key in ("isbn", "external_catalog_id"):
                values[key] = BookValidator.identity_key(value)
            elif key == "status":
                values[key] = BookValidator.status(value)
            elif key == "rating":
                rating = BookValidator.rating(value)
                values[key] = DEFAULT_RATING if rating is None else rating
            elif key == "personal_rating":
                values[key] = BookValidator.rating(value, key)
            elif key == "total_pages":
                values[key] = BookValidator.non_negative_int(value, key)
            elif key == "reading_progress":
                values[key] = BookValidator.non_negative_int(value, key, 100)
            elif key == "quotes":
                values[key] = json.dumps(normalize_quotes(value), ensure_ascii=False)
            elif key in ("summary", "review"):
                values[key] = value
            else:
                values[key] = TextValidator.clean_optional(value)
        return values

    def set_cover(self, book_id: int, cover_file: BinaryIO, cover_filename: Optional[str] = None) -> Optional[Book]:
        """Store an uploaded cover image for a book. Returns None when the book does not exist."""
        if not self.find_book(book_id):
            return None
        reference = self.covers.store_upload(cover_file, cover_filename)
        return self.update_book(book_id, {"cover_url": reference})

    def remove_book(self, book_id: int) -> bool:
        """Delete a book and, through the foreign key cascade, its notes."""
        conn = get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def backfill_isbns(self, isbns_by_title: Dict[str, str]) -> BackfillResult:
        """Fill in missing ISBNs from a title -> ISBN map.

        Exact title matches win; otherwise the first key that contains the title,
        or is contained in it, is used. ISBNs already owned by another book are
        reported as conflicts and left alone.
        """
        result = BackfillResult()
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT id, title FROM books WHERE isbn IS NULL OR isbn = ''").fetchall()
            for row in rows:
                title = row["title"]
                isbn = isbns_by_title.get(title)
                if not isbn:
                    for key, value in isbns_by_title.items():
                        if key in title or title in key:
                            isbn = value
                            break
                if not isbn:
                    result.not_found.append(title)
                    continue
                owner = conn.execute("SELECT id FROM books WHERE isbn = ?", (isbn,)).fetchone()
                if owner:
                    result.conflicts.append((title, isbn))
                    continue
                conn.execute("UPDATE books SET isbn = ? WHERE id = ?", (isbn, row["id"]))
                result.updated.append((title, isbn))
            conn.commit()
        finally:
            conn.close()
        return result

    # ------------------------- Notes ------------------------- #
    def list_notes(self, book_id: int) -> List[Note]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM notes WHERE book_id = ? ORDER BY created_at DESC, id DESC", (book_id,)
            ).fetchall()
            return [Note.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_note(self, note_id: int) -> Optional[Note]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
            return Note.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def add_note(self, book_id: int, content: str, page_number: Optional[int] = None) -> Note:
        content = TextValidator.require(content, "content")
        if not self.find_book(book_id):
            raise BookNotFoundError(f"Book {book_id} not found.")
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO notes (book_id, content, page_number) VALUES (?, ?, ?)",
                (book_id, content, page_number),
            )
            conn.commit()
            note_id = cursor.lastrowid
        finally:
            conn.close()
        return self.find_note(note_id)

    def import_notes(self, book_id: int, content: Union[str, List[Any]]) -> int:
        """Insert many notes in one transaction; all or nothing.

        ``content`` is either text split into one note per non-blank line, or a
        list of strings / ``{"content", "page_number"}`` dicts.
        """
        if isinstance(content, str):
            items: List[Any] = [line for line in content.split("\n") if line.strip()]
        else:
            items = list(content or [])
        if not items:
            raise ValueError("Content is required.")
        if not self.find_book(book_id):
            raise BookNotFoundError(f"Book {book_id} not found.")

        rows = []
        for item in items:
            if isinstance(item, dict):
                text, page = item.get("content"), item.get("page_number")
            else:
                text, page = item, None
            rows.append((book_id, TextValidator.require(text, "content"), page))

        conn = get_db_connection()
        try:
            with conn:
                conn.executemany("INSERT INTO notes (book_id, content, page_number) VALUES (?, ?, ?)", rows)
        finally:
            conn.close()
        return len(rows)

    def update_note(self, note_id: int, content: str) -> Optional[Note]:
        content = TextValidator.require(content, "content")
        conn = get_db_connection()
        try:
            cursor = conn.execute("UPDATE notes SET content = ? WHERE id = ?", (content, note_id))
            conn.commit()
            if cursor.rowcount == 0:
                return None
        finally:
            conn.close()
        return self.find_note(note_id)

    def remove_note(self, note_id: int) -> bool:
        conn = get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def close(self) -> None:
        """Release the HTTP client used for cover downloads."""
        self.covers.close()
