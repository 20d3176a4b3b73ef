import json
import logging
import os
import sqlite3
from typing import Callable, List, Tuple

from book import LEGACY_STATUSES
from config import settings

logger = logging.getLogger(__name__)

# Default database file. Library(db_file=...) overrides this for tests and tools.
DATABASE_FILE = settings.db_file


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite catalog with foreign keys enforced."""
    directory = os.path.dirname(os.path.abspath(DATABASE_FILE))
    os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(DATABASE_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # Required for ON DELETE CASCADE from books to notes
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the tables if they do not exist and add columns missing from older databases."""
    cursor = conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            isbn TEXT,
            external_catalog_id TEXT,
            cover_url TEXT,
            status TEXT NOT NULL DEFAULT 'want-to-read',
            rating REAL DEFAULT 5,
            personal_rating REAL,
            summary TEXT,
            review TEXT,
            quotes TEXT DEFAULT '[]',
            reading_date TEXT,
            total_pages INTEGER DEFAULT 0,
            reading_progress INTEGER DEFAULT 0,
            file_url TEXT,
            recommendation TEXT,
            publisher TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id INTEGER NOT NULL,
            content TEXT NOT NULL,
            page_number INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            name TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Older databases predate the identity keys and import metadata
    cursor.execute("PRAGMA table_info(books)")
    columns = [column[1] for column in cursor.fetchall()]
    if 'isbn' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN isbn TEXT")
    if 'external_catalog_id' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN external_catalog_id TEXT")
    if 'personal_rating' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN personal_rating REAL")
    if 'recommendation' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN recommendation TEXT")
    if 'publisher' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN publisher TEXT")
    if 'file_url' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN file_url TEXT")
    if 'created_at' not in columns:
        # SQLite does not allow a non-constant default through ALTER TABLE, so backfill instead
        cursor.execute("ALTER TABLE books ADD COLUMN created_at TIMESTAMP")
        cursor.execute("UPDATE books SET created_at = CURRENT_TIMESTAMP WHERE created_at IS NULL")

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_status ON books(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_notes_book_id ON notes(book_id)")


def create_unique_indexes(conn: sqlite3.Connection) -> None:
    """Enforce uniqueness of the non-null identity keys.

    Runs after the data migrations so blank keys are already NULL. A legacy
    database that holds real duplicates keeps working without the index.
    """
    for column in ("isbn", "external_catalog_id"):
        try:
            conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS idx_books_{column}_unique "
                f"ON books({column}) WHERE {column} IS NOT NULL"
            )
        except sqlite3.IntegrityError as e:
            logger.warning("Could not enforce unique %s, duplicate values present: %s", column, e)


# ------------------------- Data migrations ------------------------- #
def _migrate_blank_identity_keys(conn: sqlite3.Connection) -> None:
    conn.execute("UPDATE books SET isbn = NULL WHERE TRIM(isbn) = ''")
    conn.execute("UPDATE books SET external_catalog_id = NULL WHERE TRIM(external_catalog_id) = ''")


def _migrate_status_values(conn: sqlite3.Connection) -> None:
    for legacy, current in LEGACY_STATUSES.items():
        conn.execute("UPDATE books SET status = ? WHERE status = ?", (current, legacy))


MIGRATIONS: List[Tuple[str, Callable[[sqlite3.Connection], None]]] = [
    ("blank_identity_keys_to_null", _migrate_blank_identity_keys),
    ("status_values_v2", _migrate_status_values),
]


def applied_migrations(conn: sqlite3.Connection) -> List[str]:
    rows = conn.execute("SELECT name FROM schema_migrations ORDER BY applied_at, name").fetchall()
    return [row["name"] for row in rows]


def run_migrations(conn: sqlite3.Connection) -> List[str]:
    """Run each named migration at most once. Returns the names applied now."""
    done = set(applied_migrations(conn))
    applied = []
    for name, migrate in MIGRATIONS:
        if name in done:
            continue
        migrate(conn)
        conn.execute("INSERT INTO schema_migrations (name) VALUES (?)", (name,))
        applied.append(name)
        logger.info("Applied migration %s", name)
    return applied


# ------------------------- Sample data ------------------------- #
SAMPLE_BOOKS = [
    {
        "title": "红楼梦", "author": "曹雪芹", "reading_date": "2025-01-15", "status": "read", "rating": 5,
        "summary": "中国封建社会的百科全书，通过贾王史薛四大家族的兴衰，展现了封建社会的百态。",
        "review": "中国文学史上不可逾越的高山。",
        "quotes": [{"id": 1, "text": "满纸荒唐言，一把辛酸泪。"}, {"id": 2, "text": "假作真时真亦假，无为有处有还无。"}],
        "cover_url": "https://images.unsplash.com/photo-1544947950-fa07a98d237f?auto=format&fit=crop&q=80&w=400",
        "reading_progress": 100, "total_pages": 500,
    },
    {
        "title": "万历十五年", "author": "黄仁宇", "reading_date": "2024-11-20", "status": "read", "rating": 4,
        "summary": "从看似平淡的明朝万历十五年入手，剖析中国传统社会的结构与制度。",
        "review": "大历史观的代表作，深入浅出，令人深思。",
        "quotes": [{"id": 3, "text": "大凡高度的组织，其重心必在下层。"}],
        "cover_url": "https://images.unsplash.com/photo-1512820790803-714041054363?auto=format&fit=crop&q=80&w=400",
        "reading_progress": 100, "total_pages": 320,
    },
    {
        "title": "解忧杂货店", "author": "东野圭吾", "reading_date": None, "status": "reading", "rating": 4,
        "summary": "温情治愈的悬疑小说，穿越时空的信件连接起了几个人的命运。",
        "review": "所有的救赎，最后其实都是自救。",
        "quotes": [{"id": 5, "text": "正因为是白纸，所以可以画任何地图。"}],
        "cover_url": "https://images.unsplash.com/photo-1532012197367-e338c0d96f2d?auto=format&fit=crop&q=80&w=400",
        "reading_progress": 65, "total_pages": 280,
    },
]


def seed_sample_books(conn: sqlite3.Connection) -> int:
    """Insert the sample books into an empty catalog. Returns the number inserted."""
    count = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
    if count > 0:
        return 0
    for item in SAMPLE_BOOKS:
        conn.execute(
            """
            INSERT INTO books (title, author, reading_date, status, rating, summary, review,
                               quotes, cover_url, reading_progress, total_pages)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item["title"], item["author"], item["reading_date"], item["status"], item["rating"],
                item["summary"], item["review"], json.dumps(item["quotes"], ensure_ascii=False),
                item["cover_url"], item["reading_progress"], item["total_pages"],
            ),
        )
    logger.info("Seeded %d sample books", len(SAMPLE_BOOKS))
    return len(SAMPLE_BOOKS)


def initialize_database(seed: bool = False) -> None:
    """Create tables, run pending migrations and optionally seed an empty catalog."""
    conn = get_db_connection()
    try:
        create_tables(conn)
        run_migrations(conn)
        create_unique_indexes(conn)
        if seed:
            seed_sample_books(conn)
        conn.commit()
    finally:
        conn.close()
