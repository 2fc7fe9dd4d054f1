import logging
import sys
from dataclasses import dataclass
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm

from lending_library.accounts import AccountStore
from lending_library.config import settings
from lending_library.database import Database
from lending_library.errors import AccountNotFound, EntryNotFound, LibraryError
from lending_library.lending import LendingService
from lending_library.library import Library
from lending_library.seed import seed_database
from lending_library.ui_helpers import (
    print_books,
    print_error,
    print_message,
    print_stats,
    set_output_mode,
)

APP_NAME = "Lending Library CLI"

console = Console()
logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: Database
    library: Library
    accounts: AccountStore
    lending: LendingService


def _services(ctx: typer.Context) -> Services:
    """Open the configured database once per invocation."""
    if not isinstance(ctx.obj, Services):
        db = Database(ctx.obj.get("db_file") if isinstance(ctx.obj, dict) else None)
        db.initialize()
        library = Library(db)
        accounts = AccountStore(db)
        ctx.obj = Services(db, library, accounts, LendingService(db, library, accounts))
    return ctx.obj


def _fail(exc: LibraryError) -> None:
    print_error(exc.to_dict())
    raise typer.Exit(code=1)


def _resolve_user(services: Services, email: str):
    account = services.accounts.find_by_email(email)
    if account is None:
        raise AccountNotFound(f"No account registered for {email}")
    return account


def _resolve_book(services: Services, ref: str):
    """Accept either a book id or an ISBN."""
    book = services.library.find_book(ref) or services.library.find_by_isbn(ref)
    if book is None:
        raise EntryNotFound(f"Book {ref} not found")
    return book


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db_file: Optional[str] = typer.Option(
        None,
        "--db",
        envvar="LIBRARY_DB_FILE",
        help="SQLite database file",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr"),
):
    """Global options for the CLI."""
    if output:
        set_output_mode(output)
    logging.basicConfig(level=settings.log_level if verbose else logging.WARNING, stream=sys.stderr)
    ctx.obj = {"db_file": db_file}


@app.command("init-db")
def cli_init_db(ctx: typer.Context):
    """Create the tables if they do not exist."""
    services = _services(ctx)
    print_message(f"Database ready at {services.db.db_file}")


@app.command("seed")
def cli_seed(ctx: typer.Context):
    """Create the admin account and sample books."""
    services = _services(ctx)
    try:
        added = seed_database(services.library, services.accounts)
    except LibraryError as e:
        _fail(e)
    print_message(f"Seeded {added} books", {"added": added})


@app.command("list")
def cli_list(
    ctx: typer.Context,
    page: int = typer.Option(1, "--page", "-p", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", "-l", min=1),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Match title, author or ISBN"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    available: bool = typer.Option(False, "--available", help="Only books with copies on the shelf"),
):
    """List catalog entries, newest first."""
    services = _services(ctx)
    result = services.library.list_books(
        page=page, limit=limit, search=search, genre=genre,
        availability="available" if available else None,
    )
    print_books(result["books"], result["pagination"])


@app.command("search")
def cli_search(ctx: typer.Context, query: str = typer.Argument(..., help="Search query")):
    """Search titles, authors, genres and ISBNs."""
    services = _services(ctx)
    try:
        books = services.library.search_books(query)
    except LibraryError as e:
        _fail(e)
    print_books(books)


@app.command("add")
def cli_add(
    ctx: typer.Context,
    title: str = typer.Option(..., "--title", "-t"),
    author: str = typer.Option(..., "--author", "-a"),
    isbn: str = typer.Option(..., "--isbn", "-i"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    published_year: Optional[int] = typer.Option(None, "--year", "-y"),
    copies: int = typer.Option(1, "--copies", "-c"),
    admin_email: Optional[str] = typer.Option(None, "--as", help="Admin email recorded as addedBy"),
):
    """Add a book to the catalog."""
    services = _services(ctx)
    try:
        added_by = _resolve_user(services, admin_email).id if admin_email else None
        book = services.library.add_book(
            {
                "title": title, "author": author, "isbn": isbn, "genre": genre,
                "description": description, "published_year": published_year, "total_copies": copies,
            },
            added_by=added_by,
        )
    except LibraryError as e:
        _fail(e)
    print_message(f"Successfully added: {book.title} by {book.author} [{book.id}]", {"book": book.to_dict()})


@app.command("remove")
def cli_remove(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Book id or ISBN"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Remove a book that has no copies on loan."""
    services = _services(ctx)
    try:
        book = _resolve_book(services, ref)
        if not yes and not Confirm.ask(f"Delete '{book.title}'?", default=False, console=console):
            print_message("Deletion cancelled.", style="blue")
            return
        services.library.remove_book(book.id)
    except LibraryError as e:
        _fail(e)
    print_message(f"Book {book.title} has been removed.", {"bookId": book.id})


@app.command("create-admin")
def cli_create_admin(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-e"),
    name: str = typer.Option("Library Administrator", "--name", "-n"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
):
    """Create an admin account (or report the existing one)."""
    services = _services(ctx)
    try:
        account = services.accounts.ensure_admin(name, email, password)
    except LibraryError as e:
        _fail(e)
    print_message(f"Admin account: {account.email} [{account.id}]", {"user": account.to_dict()})


@app.command("set-active")
def cli_set_active(
    ctx: typer.Context,
    email: str = typer.Argument(...),
    active: bool = typer.Option(True, "--active/--inactive"),
):
    """Activate or deactivate an account."""
    services = _services(ctx)
    try:
        account = services.accounts.set_active(_resolve_user(services, email).id, active)
    except LibraryError as e:
        _fail(e)
    state = "active" if account.is_active else "inactive"
    print_message(f"Account {account.email} is now {state}", {"user": account.to_dict()})


@app.command("borrow")
def cli_borrow(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Book id or ISBN"),
    email: str = typer.Option(..., "--user", "-u", help="Borrower email"),
):
    """Lend one copy of a book to a borrower."""
    services = _services(ctx)
    try:
        book = _resolve_book(services, ref)
        account = _resolve_user(services, email)
        result = services.lending.borrow(book.id, account.id)
    except LibraryError as e:
        _fail(e)
    due = result["dueDate"].date().isoformat()
    print_message(f"{account.name} borrowed '{result['title']}', due {due}", result)


@app.command("return")
def cli_return(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Book id or ISBN"),
    email: str = typer.Option(..., "--user", "-u", help="Borrower email"),
):
    """Take back a borrowed copy."""
    services = _services(ctx)
    try:
        book = _resolve_book(services, ref)
        account = _resolve_user(services, email)
        result = services.lending.return_book(book.id, account.id)
    except LibraryError as e:
        _fail(e)
    print_message(
        f"{account.name} returned '{result['title']}', {result['availableCopies']} copies available", result
    )


@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Show catalog statistics."""
    print_stats(_services(ctx).library.get_statistics())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"[green]Starting {settings.app_name} on http://{host}:{port}/[/]")
    uvicorn.run("lending_library.api:app", host=host, port=port, reload=reload,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
