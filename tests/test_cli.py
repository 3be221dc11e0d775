import json

import pytest
from typer.testing import CliRunner
from unittest.mock import patch

from circulation.cli import app
from circulation.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture
def cli(db_file, monkeypatch):
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")

    def invoke(*args):
        return runner.invoke(app, ["--db", db_file, *args])

    return invoke


def test_items_empty(cli):
    result = cli("items")
    assert result.exit_code == 0
    assert "No items in catalog." in result.stdout


def test_add_item_and_list(cli):
    result = cli("add-item", "dune", "--copies", "2", "--title", "Dune")
    assert result.exit_code == 0
    assert "Added dune with 2 copies." in result.stdout

    result = cli("items")
    assert "dune - Dune (2/2 available)" in result.stdout


def test_borrow_return_cycle(cli):
    cli("add-item", "dune", "--copies", "1")

    result = cli("borrow", "dune", "--as", "alice")
    assert result.exit_code == 0
    assert "Loan #1: dune -> alice [active]" in result.stdout

    result = cli("borrow", "dune", "--as", "bob")
    assert result.exit_code == 1
    assert "Failed (item_unavailable)" in result.stdout

    result = cli("request-return", "1", "--as", "alice")
    assert "[pending_return]" in result.stdout

    result = cli("approve-return", "1", "--as", "alice")
    assert result.exit_code == 1
    assert "Failed (forbidden)" in result.stdout

    result = cli("approve-return", "1", "--as", "lib-1", "--role", "librarian")
    assert result.exit_code == 0
    assert "[returned]" in result.stdout

    result = cli("verify")
    assert result.exit_code == 0
    assert "status: ok" in result.stdout


def test_loans_json_output(cli, db_file):
    cli("add-item", "dune", "--copies", "3")
    cli("borrow", "dune", "--as", "alice")
    cli("borrow", "dune", "--as", "lib-1", "--role", "librarian", "--for", "bob")

    result = runner.invoke(app, ["--output", "json", "--db", db_file, "loans", "--status", "active"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert {loan["borrower_id"] for loan in payload} == {"alice", "bob"}


def test_sweep_with_nothing_due(cli):
    result = cli("sweep")
    assert result.exit_code == 0
    assert "overdue_marked: 0" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run, cli):
    result = cli("serve")
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_subprocess_run.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "circulation.api:create_app" in args
    assert "--factory" in args
