import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from config import settings
from library import BookNotFoundError, DuplicateBookError, Library

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s started with %d books", settings.app_name, settings.app_version, library.count_books())
    try:
        yield
    finally:
        library.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_cache_headers(request: Request, call_next):
    response = await call_next(request)
    # Localized covers never change once written
    if request.url.path.startswith(settings.uploads_url_prefix + "/"):
        response.headers["Cache-Control"] = "public, max-age=86400"
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


# --- Models ---
class QuoteModel(BaseModel):
    id: int | None = None
    text: str


class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str | None = None
    external_catalog_id: str | None = None
    cover_url: str | None = None
    status: str
    rating: float = 0
    personal_rating: float | None = None
    summary: str | None = None
    review: str | None = None
    quotes: List[QuoteModel] = []
    reading_date: str | None = None
    total_pages: int = 0
    reading_progress: int = 0
    file_url: str | None = None
    recommendation: str | None = None
    publisher: str | None = None
    created_at: str | None = None


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str | None = None
    external_catalog_id: str | None = Field(default=None, description="Identifier in a third-party catalog, e.g. Douban")
    cover_url: str | None = Field(default=None, description="Remote images are downloaded into the uploads directory")
    status: str | None = None
    rating: float | None = None
    personal_rating: float | None = None
    summary: str | None = None
    review: str | None = None
    quotes: List[QuoteModel] | None = None
    reading_date: str | None = None
    total_pages: int | None = None
    reading_progress: int | None = None
    file_url: str | None = None
    recommendation: str | None = None
    publisher: str | None = None


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    external_catalog_id: str | None = None
    cover_url: str | None = None
    status: str | None = None
    rating: float | None = None
    personal_rating: float | None = None
    summary: str | None = None
    review: str | None = None
    quotes: List[QuoteModel] | None = None
    reading_date: str | None = None
    total_pages: int | None = None
    reading_progress: int | None = None
    file_url: str | None = None
    recommendation: str | None = None
    publisher: str | None = None


class BookCandidateModel(BookCreateModel):
    # Checked per item during the import so one bad record only skips itself
    title: str | None = None
    author: str | None = None


class BatchImportModel(BaseModel):
    books: List[BookCandidateModel]


class SkippedItemModel(BaseModel):
    title: str
    reason: str


class BatchImportResponse(BaseModel):
    imported: int
    skipped: int
    skipped_items: List[SkippedItemModel]
    ids: List[int]


class NoteModel(BaseModel):
    id: int
    book_id: int
    content: str
    page_number: int | None = None
    created_at: str | None = None


class NoteCreateModel(BaseModel):
    content: str
    page_number: int | None = None


class NoteImportItem(BaseModel):
    content: str
    page_number: int | None = None


class NoteImportModel(BaseModel):
    content: Union[str, List[Union[NoteImportItem, str]]]


class NoteUpdateModel(BaseModel):
    content: str


# --- Helpers ---
def _conflict(e: DuplicateBookError) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={
            "message": str(e),
            "key": e.key,
            "existing_book": {"id": e.existing.id, "title": e.existing.title},
        },
    )


def _require_book(book_id: int):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check with a quick database round trip."""
    db_ok = True
    total = 0
    try:
        total = library.count_books()
    except Exception as e:
        logger.error("Health check database error: %s", e)
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "total_books": total,
        "db": db_ok,
    }


# --- Books ---
@app.get("/api/books", response_model=List[BookModel])
def get_books(
    search: Optional[str] = Query(None, description="Substring of title or author"),
    sort: Optional[str] = Query(None, description="rating | date; newest first by default"),
    status: Optional[str] = Query(None, description="want-to-read | reading | read"),
):
    try:
        books = library.list_books(search=search, sort=sort, status=status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [BookModel(**b.to_dict()) for b in books]


@app.get("/api/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    return BookModel(**_require_book(book_id).to_dict())


@app.post("/api/books", status_code=201)
def add_book(payload: BookCreateModel):
    """Add a book. Duplicate ISBN or external catalog id -> 409 naming the existing book."""
    try:
        book = library.build_book(payload.model_dump())
        book = library.add_book(book)
    except DuplicateBookError as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": book.id, "success": True, "book": BookModel(**book.to_dict())}


@app.post("/api/books/upload", status_code=201)
def add_book_with_cover(
    title: str = Form(...),
    author: str = Form(...),
    isbn: Optional[str] = Form(None),
    external_catalog_id: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    rating: Optional[float] = Form(None),
    summary: Optional[str] = Form(None),
    review: Optional[str] = Form(None),
    quotes: Optional[str] = Form(None, description="JSON array of quotes"),
    reading_date: Optional[str] = Form(None),
    total_pages: Optional[int] = Form(None),
    reading_progress: Optional[int] = Form(None),
    file_url: Optional[str] = Form(None),
    cover_url: Optional[str] = Form(None),
    cover: Optional[UploadFile] = File(None),
):
    """Add a book from a multipart form; an uploaded ``cover`` file wins over ``cover_url``."""
    data = {
        "title": title, "author": author, "isbn": isbn, "external_catalog_id": external_catalog_id,
        "status": status, "rating": rating, "summary": summary, "review": review, "quotes": quotes,
        "reading_date": reading_date, "total_pages": total_pages, "reading_progress": reading_progress,
        "file_url": file_url, "cover_url": cover_url,
    }
    try:
        book = library.build_book(data)
        if cover is not None and cover.filename:
            book = library.add_book(book, cover_file=cover.file, cover_filename=cover.filename)
        else:
            book = library.add_book(book)
    except DuplicateBookError as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"id": book.id, "success": True, "book": BookModel(**book.to_dict())}


@app.post("/api/books/batch", response_model=BatchImportResponse)
def import_books(payload: BatchImportModel):
    """Import many books; duplicates and invalid items are skipped, never failing the batch."""
    result = library.import_books([item.model_dump() for item in payload.books])
    return BatchImportResponse(**result.to_dict())


@app.put("/api/books/{book_id}", response_model=BookModel)
def update_book(book_id: int, update: BookUpdateModel):
    """Partially update a book; only the supplied fields change."""
    changes: Dict[str, Any] = update.model_dump(exclude_unset=True)
    try:
        book = library.update_book(book_id, changes)
    except DuplicateBookError as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


@app.put("/api/books/{book_id}/cover", response_model=BookModel)
def upload_cover(book_id: int, cover: UploadFile = File(...)):
    """Replace a book's cover with an uploaded image."""
    book = library.set_cover(book_id, cover.file, cover.filename)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


@app.delete("/api/books/{book_id}")
def delete_book(book_id: int):
    if not library.remove_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    return {"success": True}


# --- Notes ---
@app.get("/api/books/{book_id}/notes", response_model=List[NoteModel])
def get_notes(book_id: int):
    _require_book(book_id)
    return [NoteModel(**n.to_dict()) for n in library.list_notes(book_id)]


@app.post("/api/books/{book_id}/notes", response_model=NoteModel, status_code=201)
def add_note(book_id: int, payload: NoteCreateModel):
    try:
        note = library.add_note(book_id, payload.content, payload.page_number)
    except BookNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return NoteModel(**note.to_dict())


@app.post("/api/books/{book_id}/notes/import")
def import_notes(book_id: int, payload: NoteImportModel):
    """Bulk-import notes from text (one per line) or a list, in a single transaction."""
    content = payload.content
    if isinstance(content, list):
        content = [item.model_dump() if isinstance(item, NoteImportItem) else item for item in content]
    try:
        count = library.import_notes(book_id, content)
    except BookNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "count": count}


@app.put("/api/notes/{note_id}", response_model=NoteModel)
def update_note(note_id: int, payload: NoteUpdateModel):
    try:
        note = library.update_note(note_id, payload.content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not note:
        raise HTTPException(status_code=404, detail="Note not found.")
    return NoteModel(**note.to_dict())


@app.delete("/api/notes/{note_id}")
def delete_note(note_id: int):
    if not library.remove_note(note_id):
        raise HTTPException(status_code=404, detail="Note not found.")
    return {"success": True}


# --- Static files ---
os.makedirs(settings.uploads_dir, exist_ok=True)
app.mount(settings.uploads_url_prefix, StaticFiles(directory=settings.uploads_dir), name="uploads")


@lru_cache(maxsize=1)
def _load_index_html() -> str:
    """Read the built SPA entry once; the file does not change while the process runs."""
    with open(os.path.join(settings.frontend_dir, "index.html"), "r", encoding="utf-8") as f:
        return f.read()


@app.get("/", response_class=HTMLResponse)
def read_root():
    """Serve the frontend entry page."""
    try:
        return HTMLResponse(_load_index_html())
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Frontend has not been built.")
