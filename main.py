import json
import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from library import BookNotFoundError, Library
from utils.ui_helpers import print_import_result, print_list_result, set_output_mode

APP_NAME = "Reading Library CLI"

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
console = Console()


class LibraryManager:
    """Lazily created Library shared by the commands of one process."""
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = getattr(database, "DATABASE_FILE", None)
        # Rebuild when the database file changed underneath us (e.g. per-test databases)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = Library()
            cls._db_file_snapshot = current_db
        return cls._instance


def _read_json(file_path: str):
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("list")
def cli_list(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="want-to-read | reading | read"),
    search: Optional[str] = typer.Option(None, "--search", help="Substring of title or author"),
):
    """List the books in the catalog."""
    lib = LibraryManager.get_instance()
    try:
        books = lib.list_books(search=search, status=status)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print_list_result(books)


@app.command("import")
def cli_import(
    file_path: str,
    delay: float = typer.Option(0.0, "--delay", help="Seconds to wait between books to pace cover downloads"),
    deterministic_covers: Optional[str] = typer.Option(
        None,
        "--deterministic-covers",
        help="Save covers as <PREFIX>_<isbn or title>.jpg and reuse files already downloaded",
    ),
):
    """Import books from a JSON array, skipping the ones already in the catalog."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    try:
        data = _read_json(file_path)
    except ValueError as e:
        print(f"Could not parse {file_path}: {e}")
        raise typer.Exit(code=1)
    if isinstance(data, dict):
        data = data.get("books", [])
    if not isinstance(data, list):
        print("Expected a JSON array of books.")
        raise typer.Exit(code=1)

    lib = LibraryManager.get_instance()
    candidates = [item for item in data if isinstance(item, dict)]
    with console.status(f"Importing {len(candidates)} books..."):
        result = lib.import_books(candidates, delay=delay, cover_prefix=deterministic_covers)
    print_import_result(result.to_dict())


@app.command("backfill-isbn")
def cli_backfill_isbn(file_path: str):
    """Fill in missing ISBNs from a JSON object mapping titles to ISBNs."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    mapping = _read_json(file_path)
    if not isinstance(mapping, dict):
        print("Expected a JSON object of title -> ISBN.")
        raise typer.Exit(code=1)

    result = LibraryManager.get_instance().backfill_isbns(mapping)
    for title, isbn in result.updated:
        print(f"Updated: {title} -> {isbn}")
    for title, isbn in result.conflicts:
        print(f"Conflict: {title} -> {isbn} already used by another book")
    for title in result.not_found:
        print(f"Not found: {title}")
    print(f"{len(result.updated)} updated, {len(result.conflicts)} conflicts, {len(result.not_found)} not found")


@app.command("import-notes")
def cli_import_notes(book_id: int, file_path: str):
    """Import notes for a book from a text file, one note per line."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    with open(file_path, "r", encoding="utf-8") as f:
        content = f.read()
    try:
        count = LibraryManager.get_instance().import_notes(book_id, content)
    except (BookNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Imported {count} notes for book #{book_id}.")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"[green]Starting API on http://{host}:{port}/[/]")
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
