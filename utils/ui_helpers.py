import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output mode: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_list_result(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: '#id [status] Title by Author' lines, or 'No books in library.'
    - json: array of id, title, author, status, isbn
    - rich: a Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        payload = [
            {"id": b.id, "title": b.title, "author": b.author, "status": b.status, "isbn": b.isbn}
            for b in books
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Status", style="green")
        table.add_column("ISBN", style="dim")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.status, b.isbn or "")
        _console.print(table)
    else:
        for b in books:
            print(f"#{b.id} [{b.status}] {b.title} by {b.author}")


def print_import_result(result: Dict[str, Any]) -> None:
    """Print a batch import summary followed by the skipped titles."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(result, ensure_ascii=False))
        return

    imported = result.get("imported", 0)
    skipped = result.get("skipped", 0)
    items = result.get("skipped_items", [])
    if mode == "rich":
        content = f"[bold]Imported:[/] {imported}\n[bold]Skipped:[/] {skipped}"
        _console.print(Panel.fit(content, title="📥 Import", border_style="blue"))
        if items:
            table = Table(show_lines=False, header_style="bold yellow")
            table.add_column("Title")
            table.add_column("Reason")
            for item in items:
                table.add_row(item["title"], item["reason"])
            _console.print(table)
    else:
        print(f"Imported: {imported}")
        print(f"Skipped: {skipped}")
        for item in items:
            print(f"  - {item['title']}: {item['reason']}")
