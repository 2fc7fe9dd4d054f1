import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

# Environment variable holding the CLI output mode: 'plain' (default), 'json' or 'rich'
OUTPUT_MODE_ENV = "LENDING_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _dump(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def print_books(books: List[Any], pagination: Dict[str, Any] = None) -> None:
    """Print catalog entries in the current output mode.
    - plain: 'id | isbn | title by author (available/total)' lines
    - json: list of book summaries
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _dump({"books": [b.summary() for b in books], "pagination": pagination})
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Copies", justify="right")
        for b in books:
            colour = "green" if b.is_available else "red"
            table.add_row(b.id, b.isbn, escape(b.title), escape(b.author),
                          f"[{colour}]{b.available_copies}/{b.total_copies}[/]")
        _console.print(table)
        if pagination:
            _console.print(f"[dim]Page {pagination['current']} of {pagination['pages']} "
                           f"({pagination['total']} books)[/]")
    else:
        for b in books:
            print(f"{b.id} | {b.isbn} | {b.title} by {b.author} ({b.available_copies}/{b.total_copies})")


def print_stats(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if mode == "json":
        _dump(stats)
    elif mode == "rich":
        content = (
            f"[bold]Total Books:[/] {stats['total_books']}\n"
            f"[bold]Unique Authors:[/] {stats['unique_authors']}\n"
            f"[bold]Copies Available:[/] {stats['available_copies']}/{stats['total_copies']}\n"
            f"[bold]Active Loans:[/] {stats['active_loans']}"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats['total_books']}")
        print(f"Unique Authors: {stats['unique_authors']}")
        print(f"Copies Available: {stats['available_copies']}/{stats['total_copies']}")
        print(f"Active Loans: {stats['active_loans']}")


def print_message(message: str, payload: Dict[str, Any] = None, style: str = "green") -> None:
    """One-line outcome of a command, with its data in json mode."""
    mode = get_output_mode()

    if mode == "json":
        _dump({"success": True, "message": message, "data": payload or {}})
    elif mode == "rich":
        _console.print(f"[{style}]{escape(message)}[/]")
    else:
        print(message)


def print_error(error: Dict[str, Any]) -> None:
    """Render a failure envelope (``LibraryError.to_dict()``)."""
    mode = get_output_mode()

    if mode == "json":
        _dump(error)
        return
    lines = [f"Error: {error['message']}"]
    lines.extend(f"  - {detail}" for detail in error.get("errors") or [])
    if mode == "rich":
        _console.print("[bold red]" + escape("\n".join(lines)) + "[/]")
    else:
        print("\n".join(lines))
