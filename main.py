import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

import database
from config import configure_logging, settings
from library import Library, LibraryError

APP_NAME = "Book Lending Server"

app = typer.Typer(help=f"{APP_NAME} management commands")
console = Console()


@app.callback()
def _main():
    configure_logging()


def _open_library() -> tuple:
    client = database.create_client()
    return client, Library(database.get_database(client))


@app.command("serve")
def cli_serve(host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
              port: Optional[int] = typer.Option(None, "--port", help="Listening port"),
              reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Run the HTTP server with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Book server running at: http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
        "--log-level", settings.log_level.lower(),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be found. Make sure it is installed.")
        raise typer.Exit(code=1)


@app.command("init-db")
def cli_init_db():
    """Create indexes and rewrite legacy string quantities."""
    client = database.create_client()
    try:
        db = database.get_database(client)
        database.create_indexes(db)
        migrated = database.migrate_quantity_types(db)
    finally:
        database.close_client(client)
    print(f"Indexes ready. {migrated} book quantities migrated.")


@app.command("seed-categories")
def cli_seed_categories():
    """Insert the default categories into an empty category collection."""
    client = database.create_client()
    try:
        inserted = database.seed_categories(database.get_database(client))
    finally:
        database.close_client(client)
    if inserted:
        print(f"Inserted {inserted} categories.")
    else:
        print("Categories already present; nothing inserted.")


@app.command("list")
def cli_list():
    """Show every book with its available quantity."""
    client, lib = _open_library()
    try:
        books = lib.list_books()
    except LibraryError as e:
        console.print(f"[bold red]{e.message}[/]")
        raise typer.Exit(code=1)
    finally:
        database.close_client(client)

    if not books:
        print("No books in library.")
        return

    table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
    table.add_column("ID", style="magenta", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Author", style="white")
    table.add_column("Category", style="white")
    table.add_column("Qty", justify="right")
    for book in books:
        table.add_row(book.id or "", book.name, book.author_name, book.category or "", str(book.quantity))
    console.print(table)


@app.command("loans")
def cli_loans(email: str = typer.Argument(..., help="Borrower email")):
    """Show the active loans of one borrower."""
    client, lib = _open_library()
    try:
        loans = lib.list_borrowed(email)
    except LibraryError as e:
        console.print(f"[bold red]{e.message}[/]")
        raise typer.Exit(code=1)
    finally:
        database.close_client(client)

    if not loans:
        print(f"No borrowed books for {email}.")
        return

    table = Table(title=f"Loans for {email}", header_style="bold cyan")
    table.add_column("Loan ID", style="magenta", no_wrap=True)
    table.add_column("Book", style="white")
    table.add_column("Borrowed", style="white")
    table.add_column("Due", style="white")
    for loan in loans:
        data = loan.to_dict()
        table.add_row(
            data["_id"] or "",
            (loan.book_details or {}).get("name", ""),
            data.get("borrowDate") or "",
            data.get("returnDate") or "",
        )
    console.print(table)


@app.command("stats")
def cli_stats():
    """Print catalog and lending counts."""
    client, lib = _open_library()
    try:
        stats = lib.get_statistics()
    except LibraryError as e:
        console.print(f"[bold red]{e.message}[/]")
        raise typer.Exit(code=1)
    finally:
        database.close_client(client)
    print(f"Books: {stats['total_books']}")
    print(f"Categories: {stats['total_categories']}")
    print(f"Active loans: {stats['active_loans']}")


if __name__ == "__main__":
    app()
