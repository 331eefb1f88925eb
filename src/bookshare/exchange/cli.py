"""Command-line interface for the exchange store.

Built with Typer for commands and Rich for output. The commands are
read-only views over the store, plus database initialisation.
"""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import get_config
from .coordinator import Coordinator
from .db import get_db
from .db.schemas import ListingStatus
from .errors import ExchangeError
from .listings import ListingManager
from .logconfig import configure_logging
from .stats import DatabaseStatsSink
from .threads.schemas import ThreadResponse

# Create the main app
app = typer.Typer(
    name="bookshare",
    help="Inspect the book exchange store.",
    no_args_is_help=True,
)

# Rich console for pretty output
console = Console()


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def _database():
    return get_db(str(get_config().db_path))


def format_thread_table(threads: list[ThreadResponse], title: str = "Threads") -> Table:
    """Create a rich table for displaying threads."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Thread", style="dim", no_wrap=True)
    table.add_column("Listing", style="cyan", no_wrap=True)
    table.add_column("Owner", style="green")
    table.add_column("Requester", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Due", justify="center")

    for thread in threads:
        due = getattr(thread.state, "loan_due_date", None)
        due_text = due.isoformat() if due else "-"
        if thread.is_overdue:
            due_text = f"[bold red]{due_text}[/bold red]"
        table.add_row(
            thread.id[:8],
            thread.listing_id[:8],
            thread.owner_id,
            thread.requester_id,
            thread.status.value,
            due_text,
        )

    return table


@app.callback()
def main_callback() -> None:
    """Inspect the book exchange store."""
    config = get_config()
    configure_logging(config.log_level, config.log_json)


# ============================================================================
# Commands
# ============================================================================


@app.command()
def init() -> None:
    """Create the database and its tables."""
    config = get_config()
    errors = config.validate()
    if errors:
        for error in errors:
            print_error(error)
        raise typer.Exit(1)

    db = _database()
    db.create_tables()
    print_success(f"Database ready at {config.db_path}")


@app.command()
def listings(
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Filter by owner"),
    status: Optional[ListingStatus] = typer.Option(
        None, "--status", "-s", help="Filter by status"
    ),
) -> None:
    """List book listings."""
    manager = ListingManager(_database())
    results = manager.list_listings(owner_id=owner, status=status)

    if not results:
        console.print("[dim]No listings found.[/dim]")
        return

    table = Table(title="Listings", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan", max_width=40)
    table.add_column("Owner", style="green")
    table.add_column("Modality")
    table.add_column("Status", style="yellow")

    for listing in results:
        table.add_row(
            listing.id[:8],
            listing.title,
            listing.owner_id,
            listing.modality.value,
            listing.status.value,
        )

    console.print(table)


@app.command()
def threads(
    user_id: str = typer.Argument(..., help="User whose inbox to show"),
) -> None:
    """Show a user's negotiation threads, newest activity first."""
    coordinator = Coordinator(_database())
    results = coordinator.list_threads(user_id)

    if not results:
        console.print("[dim]No threads found.[/dim]")
        return

    console.print(format_thread_table(results, title=f"Threads for {user_id}"))


@app.command()
def interests(
    owner_id: str = typer.Argument(..., help="Listing owner"),
) -> None:
    """Show open requests across an owner's listings."""
    coordinator = Coordinator(_database())
    try:
        summary = coordinator.summarize(owner_id)
    except ExchangeError as e:
        print_error(str(e))
        raise typer.Exit(1)

    console.print(
        f"[bold]{summary.total_count}[/bold] open requests from "
        f"[bold]{summary.unique_people}[/bold] people on "
        f"[bold]{summary.unique_posts}[/bold] listings"
    )
    if not summary.interests:
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Listing", style="cyan", no_wrap=True)
    table.add_column("Requester", style="green")
    table.add_column("Since", style="dim")
    for interest in summary.interests:
        table.add_row(
            interest.listing_id[:8],
            interest.interested_user_id,
            interest.created_at.strftime("%Y-%m-%d"),
        )
    console.print(table)


@app.command()
def overdue(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this lender or borrower"),
) -> None:
    """Show loans past their due date."""
    coordinator = Coordinator(_database())
    results = coordinator.overdue_loans(user_id=user)

    if not results:
        console.print("[dim]No overdue loans.[/dim]")
        return

    console.print(format_thread_table(results, title="Overdue Loans"))
    print_warning(f"{len(results)} loan(s) overdue")


@app.command()
def stats(
    user_id: str = typer.Argument(..., help="User whose profile counters to show"),
) -> None:
    """Show a user's exchange statistics."""
    sink = DatabaseStatsSink(_database())
    result = sink.get_stats(user_id)

    table = Table(title=f"Stats for {user_id}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    table.add_row("Books given", str(result.books_given))
    table.add_row("Books received", str(result.books_received))
    table.add_row("Books loaned", str(result.books_loaned))
    table.add_row("Books borrowed", str(result.books_borrowed))
    table.add_row("Books traded", str(result.books_traded))
    table.add_row("Bookshares", str(result.bookshares))

    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"bookshare version {__version__}")


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
