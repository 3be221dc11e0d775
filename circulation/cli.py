import subprocess
import sys
from typing import Dict, Optional

import typer

from circulation.catalog import Catalog
from circulation.config import settings
from circulation.exceptions import CirculationError, InventoryInvariantError
from circulation.inventory import InventoryLedger
from circulation.loans import LoanLifecycle
from circulation.models import Actor, LoanResult, LoanStatus, Role
from circulation.ui_helpers import (
    print_items_result,
    print_loan_detail,
    print_loans_result,
    print_summary,
    set_output_mode,
)

APP_NAME = "Circulation CLI"


class CirculationManager:
    """One set of components per database file, created on first use."""

    _instances: Dict[str, "CirculationManager"] = {}
    db_file: Optional[str] = None

    def __init__(self, db_file: str) -> None:
        self.catalog = Catalog(db_file)
        self.ledger = InventoryLedger(db_file)
        self.loans = LoanLifecycle(db_file, ledger=self.ledger)

    @classmethod
    def get_instance(cls) -> "CirculationManager":
        db_file = cls.db_file or settings.database_file
        if db_file not in cls._instances:
            cls._instances[db_file] = cls(db_file)
        return cls._instances[db_file]


def _actor(actor_id: str, role: str) -> Actor:
    try:
        return Actor(id=actor_id, role=Role(role.lower()))
    except ValueError:
        raise typer.BadParameter(f"Unknown role: {role}. Use member, librarian or admin.")


def _report(result: LoanResult) -> None:
    if result.ok:
        print_loan_detail(result.loan)
    else:
        print(f"Failed ({result.error.value}): {result.detail}")
        raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)

ACTOR_OPTION = typer.Option(..., "--as", help="Id of the acting user")
ROLE_OPTION = typer.Option("member", "--role", help="member | librarian | admin")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="Database file (default: LIBRARY_DB_FILE)"),
):
    """Global options for the CLI (output mode, database)."""
    if output:
        set_output_mode(output)
    CirculationManager.db_file = db


@app.command("items")
def cli_items():
    """List catalog items with their availability."""
    print_items_result(CirculationManager.get_instance().catalog.list_items())


@app.command("add-item")
def cli_add_item(
    item_id: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Total copies owned"),
    title: str = typer.Option("", "--title", "-t"),
):
    """Add an item to the catalog."""
    try:
        item = CirculationManager.get_instance().catalog.add_item(item_id, copies, title=title)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Added {item.id} with {item.total_copies} copies.")


@app.command("borrow")
def cli_borrow(
    item_id: str,
    actor_id: str = ACTOR_OPTION,
    role: str = ROLE_OPTION,
    borrower: Optional[str] = typer.Option(None, "--for", help="Borrow on behalf of this member (staff only)"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Loan period in days"),
):
    """Borrow a copy of an item."""
    actor = _actor(actor_id, role)
    borrower_actor = Actor(id=borrower, role=Role.MEMBER) if borrower else actor
    try:
        result = CirculationManager.get_instance().loans.create_loan(
            item_id, borrower_actor, loan_period_days=days, initiator=actor,
        )
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    _report(result)


@app.command("request-return")
def cli_request_return(loan_id: int, actor_id: str = ACTOR_OPTION, role: str = ROLE_OPTION):
    """Ask staff to check a borrowed copy back in."""
    _report(CirculationManager.get_instance().loans.request_return(loan_id, _actor(actor_id, role)))


@app.command("approve-return")
def cli_approve_return(loan_id: int, actor_id: str = ACTOR_OPTION, role: str = ROLE_OPTION):
    """Approve a return (staff)."""
    _report(CirculationManager.get_instance().loans.approve_return(loan_id, _actor(actor_id, role)))


@app.command("direct-return")
def cli_direct_return(loan_id: int, actor_id: str = ACTOR_OPTION, role: str = ROLE_OPTION):
    """Check a copy in without a return request (staff)."""
    _report(CirculationManager.get_instance().loans.direct_return(loan_id, _actor(actor_id, role)))


@app.command("loans")
def cli_loans(
    borrower: Optional[str] = typer.Option(None, "--borrower", "-b"),
    item: Optional[str] = typer.Option(None, "--item", "-i"),
    status: Optional[LoanStatus] = typer.Option(None, "--status", "-s"),
):
    """List loans, optionally filtered."""
    loans = CirculationManager.get_instance().loans.list_loans(borrower_id=borrower, item_id=item, status=status)
    print_loans_result(loans)


@app.command("sweep")
def cli_sweep():
    """Mark loans past their due date as overdue."""
    count = CirculationManager.get_instance().loans.recompute_overdue()
    print_summary({"overdue_marked": count})


@app.command("verify")
def cli_verify(item: Optional[str] = typer.Option(None, "--item", "-i")):
    """Check copy counts against outstanding loans."""
    try:
        checked = CirculationManager.get_instance().ledger.verify(item)
    except InventoryInvariantError as e:
        print(f"Invariant violated: {e}")
        raise typer.Exit(code=2)
    except CirculationError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print_summary({"items_checked": len(checked), "status": "ok"})


@app.command("serve")
def cli_serve():
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "circulation.api:create_app",
        "--factory",
        "--host", host,
        "--port", str(port),
    ]
    subprocess.run(args)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
