import json
import logging
import subprocess
import sys
from typing import List, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from lending.accounts import Accounts
from lending.config import settings
from lending.errors import LendingError
from lending.library import Library
from lending.models import Loan

logging.basicConfig(level=settings.log_level)

console = Console()
app = typer.Typer(help="Library lending CLI")

# Global options set by the callback
_options = {"db_file": None, "output": "plain"}


def _get_library() -> Library:
    return Library(db_file=_options["db_file"])


def _fail(error: LendingError) -> None:
    print(f"Error [{error.reason}]: {error.message}")
    raise typer.Exit(code=1)


def _print_loans(loans: List[Loan], empty_message: str, title: str) -> None:
    mode = _options["output"]
    if not loans:
        print(empty_message)
        return
    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, box=box.SIMPLE, header_style="bold cyan")
        table.add_column("Book", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Status")
        table.add_column("Due")
        for loan in loans:
            data = loan.to_dict()
            table.add_row(str(data["book_id"]), data["title"], data["author"], data["status"], data["due_date"])
        console.print(table)
    else:
        for loan in loans:
            data = loan.to_dict()
            print(f"{data['book_id']} - {data['title']} by {data['author']} [{data['status']}] due {data['due_date']}")


@app.callback()
def _global_options(
    db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
    output: str = typer.Option("plain", "--output", "-o", help="Output format: plain | json | rich"),
):
    """Global options for the CLI."""
    _options["db_file"] = db_file
    _options["output"] = output.lower().strip() if output else "plain"


@app.command("init-db")
def cli_init_db():
    """Create the database schema."""
    lib = _get_library()
    lib.close()
    print("Database initialised.")


@app.command("add-user")
def cli_add_user(
    name: str,
    surname: str,
    email: Optional[str] = typer.Option(None, "--email"),
    admin: bool = typer.Option(False, "--admin", help="Grant admin privileges"),
):
    """Register a user and print its id."""
    lib = _get_library()
    try:
        user = Accounts(lib).create_user(name, surname, email=email, is_admin=admin)
    except LendingError as e:
        _fail(e)
    finally:
        lib.close()
    print(f"User created: {user.id}")


@app.command("add-book")
def cli_add_book(
    title: str,
    author: Optional[List[str]] = typer.Option(None, "--author", "-a", help="Author as 'First Last'; repeat for several"),
    genre: Optional[List[str]] = typer.Option(None, "--genre", "-g", help="Genre name; repeat for several"),
):
    """Add a book to the catalog."""
    authors = []
    for name in author or []:
        first, _, last = name.strip().partition(" ")
        authors.append((first, last or "Unknown"))
    lib = _get_library()
    try:
        book = lib.catalog.add_book(title, authors, genre or [])
    except LendingError as e:
        _fail(e)
    finally:
        lib.close()
    print(f"Book added: {book.id} - {book.title}")


@app.command("borrow")
def cli_borrow(user_id: str, book_id: int):
    """Borrow a book on behalf of a user."""
    lib = _get_library()
    try:
        loan = lib.borrow(user_id, book_id)
    except LendingError as e:
        _fail(e)
    finally:
        lib.close()
    print(f"Book {loan.book_id} borrowed, due {loan.due_date.date().isoformat()}")


@app.command("return")
def cli_return(user_id: str, book_id: int):
    """Return a borrowed book."""
    lib = _get_library()
    try:
        lib.return_book(user_id, book_id)
    except LendingError as e:
        _fail(e)
    finally:
        lib.close()
    print(f"Book {book_id} returned.")


@app.command("loans")
def cli_loans(user_id: str):
    """List the books a user currently holds."""
    lib = _get_library()
    try:
        loans = lib.list_active(user_id)
    finally:
        lib.close()
    _print_loans(loans, "No active loans.", "Active loans")


@app.command("history")
def cli_history(user_id: str):
    """Show a user's full loan history, newest first."""
    lib = _get_library()
    try:
        loans = lib.list_history(user_id)
    finally:
        lib.close()
    _print_loans(loans, "No loan history.", "Loan history")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "lending.api:app", "--host", host, "--port", str(port)]
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
