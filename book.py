from __future__ import annotations

import json

STATUS_WANT_TO_READ = "want-to-read"
STATUS_READING = "reading"
STATUS_READ = "read"
STATUSES = (STATUS_WANT_TO_READ, STATUS_READING, STATUS_READ)

# Rating given to a new book created without one
DEFAULT_RATING = 5

# Retired status values still found in older databases and import files
LEGACY_STATUSES = {
    "想读": STATUS_WANT_TO_READ,
    "在读": STATUS_READING,
    "已读": STATUS_READ,
    "to-read": STATUS_WANT_TO_READ,
    "wishlist": STATUS_WANT_TO_READ,
    "currently-reading": STATUS_READING,
    "finished": STATUS_READ,
    "abandoned": STATUS_READ,
}

# Columns written by inserts/updates, in table order (id and created_at are server-assigned)
BOOK_COLUMNS = (
    "title", "author", "isbn", "external_catalog_id", "cover_url", "status",
    "rating", "personal_rating", "summary", "review", "quotes", "reading_date",
    "total_pages", "reading_progress", "file_url", "recommendation", "publisher",
)


def normalize_quotes(quotes) -> list:
    """Coerce stored or submitted quotes into ``[{"id": int, "text": str}, ...]``.

    Accepts a JSON string, a list of strings, or a list of dicts using either
    ``text`` or the older ``content`` key. Missing ids are numbered by position.
    """
    if quotes is None or quotes == "":
        return []
    if isinstance(quotes, str):
        try:
            quotes = json.loads(quotes)
        except ValueError:
            return [{"id": 1, "text": quotes}]
    if not isinstance(quotes, list):
        return []

    normalized = []
    for position, item in enumerate(quotes, 1):
        if isinstance(item, str):
            text, ident = item, None
        elif isinstance(item, dict):
            text = item.get("text", item.get("content"))
            ident = item.get("id")
        else:
            continue
        if text is None or not str(text).strip():
            continue
        normalized.append({"id": ident if ident is not None else position, "text": str(text)})
    return normalized


class Book:
    """A single book in the catalog."""

    def __init__(self, title: str, author: str, isbn: str | None = None, external_catalog_id: str | None = None,
                 cover_url: str | None = None, status: str = STATUS_WANT_TO_READ,
                 rating: float = DEFAULT_RATING, personal_rating: float | None = None,
                 summary: str | None = None, review: str | None = None, quotes: list | None = None,
                 reading_date: str | None = None, total_pages: int = 0, reading_progress: int = 0,
                 file_url: str | None = None, recommendation: str | None = None, publisher: str | None = None,
                 id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn
        self.external_catalog_id = external_catalog_id
        self.cover_url = cover_url
        self.status = status
        self.rating = rating if rating is not None else DEFAULT_RATING
        self.personal_rating = personal_rating
        self.summary = summary
        self.review = review
        self.quotes = normalize_quotes(quotes)
        self.reading_date = reading_date
        self.total_pages = total_pages or 0
        self.reading_progress = reading_progress or 0
        self.file_url = file_url
        self.recommendation = recommendation
        self.publisher = publisher
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (#{self.id})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "external_catalog_id": self.external_catalog_id,
            "cover_url": self.cover_url,
            "status": self.status,
            "rating": self.rating,
            "personal_rating": self.personal_rating,
            "summary": self.summary,
            "review": self.review,
            "quotes": list(self.quotes),
            "reading_date": self.reading_date,
            "total_pages": self.total_pages,
            "reading_progress": self.reading_progress,
            "file_url": self.file_url,
            "recommendation": self.recommendation,
            "publisher": self.publisher,
            "created_at": self.created_at,
        }

    def to_row(self) -> tuple:
        """Values for ``BOOK_COLUMNS``, with quotes serialized to JSON text."""
        values = self.to_dict()
        values["quotes"] = json.dumps(self.quotes, ensure_ascii=False)
        return tuple(values[column] for column in BOOK_COLUMNS)

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            external_catalog_id=data.get("external_catalog_id"),
            cover_url=data.get("cover_url"),
            status=data.get("status") or STATUS_WANT_TO_READ,
            rating=data.get("rating"),
            personal_rating=data.get("personal_rating"),
            summary=data.get("summary"),
            review=data.get("review"),
            quotes=data.get("quotes"),
            reading_date=data.get("reading_date"),
            total_pages=data.get("total_pages"),
            reading_progress=data.get("reading_progress"),
            file_url=data.get("file_url"),
            recommendation=data.get("recommendation"),
            publisher=data.get("publisher"),
            created_at=data.get("created_at"),
        )
