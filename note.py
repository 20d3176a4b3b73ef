from __future__ import annotations


class Note:
    """A reading note attached to exactly one book."""

    def __init__(self, book_id: int, content: str, page_number: int | None = None,
                 id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.content = content
        self.page_number = page_number
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "content": self.content,
            "page_number": self.page_number,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Note":
        return Note(
            id=data.get("id"),
            book_id=data["book_id"],
            content=data["content"],
            page_number=data.get("page_number"),
            created_at=data.get("created_at"),
        )
