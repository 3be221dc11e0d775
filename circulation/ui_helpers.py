import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "CIRCULATION_CLI_OUTPUT"

_console = Console()

_STATUS_STYLE = {
    "active": "green",
    "pending_return": "yellow",
    "overdue": "red",
    "returned": "dim",
}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_items_result(items: List[Any]) -> None:
    """Print catalog items in the current output mode."""
    mode = get_output_mode()

    if not items:
        print("No items in catalog.")
        return

    if mode == "json":
        print(json.dumps([item.to_dict() for item in items], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Catalog", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("On loan / Total", justify="right")
        for item in items:
            table.add_row(item.id, item.title, f"{item.copies_on_loan}/{item.total_copies}")
        _console.print(table)
    else:
        for item in items:
            print(f"{item.id} - {item.title} ({item.available_copies}/{item.total_copies} available)")


def print_loans_result(loans: List[Any]) -> None:
    """Print loans in the current output mode.
    - plain: one '#id item -> borrower [status] due ...' line per loan
    - json: JSON array of loan dicts
    - rich: Rich table with status colors
    """
    mode = get_output_mode()

    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🔖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("#", justify="right")
        table.add_column("Item", style="magenta")
        table.add_column("Borrower")
        table.add_column("Due")
        table.add_column("Status")
        table.add_column("Fine", justify="right")
        for loan in loans:
            style = _STATUS_STYLE.get(loan.status.value, "white")
            table.add_row(
                str(loan.id), loan.item_id, loan.borrower_id,
                loan.due_at.strftime("%Y-%m-%d"),
                f"[{style}]{loan.status.value}[/]", str(loan.fine_amount),
            )
        _console.print(table)
    else:
        for loan in loans:
            print(
                f"#{loan.id} {loan.item_id} -> {loan.borrower_id} [{loan.status.value}] "
                f"due {loan.due_at.strftime('%Y-%m-%d')} fine {loan.fine_amount}"
            )


def print_loan_detail(loan: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(loan.to_dict(), ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Item:[/] {loan.item_id}\n[bold]Borrower:[/] {loan.borrower_id}\n"
            f"[bold]Status:[/] {loan.status.value}\n[bold]Due:[/] {loan.due_at.isoformat()}\n"
            f"[bold]Fine:[/] {loan.fine_amount}"
        )
        _console.print(Panel.fit(content, title=f"Loan #{loan.id}", border_style="blue"))
    else:
        print(f"Loan #{loan.id}: {loan.item_id} -> {loan.borrower_id} [{loan.status.value}]")
        print(f"Due: {loan.due_at.isoformat()}")
        print(f"Fine: {loan.fine_amount}")


def print_summary(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {value}" for key, value in stats.items())
        _console.print(Panel.fit(content, title="📊 Summary", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{key}: {value}")
