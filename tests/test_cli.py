import json
import re
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from lending import database
from lending.cli import app

runner = CliRunner()


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "cli.db")


def invoke(db, *args):
    return runner.invoke(app, ["--db", db, *args])


def create_user(db):
    result = invoke(db, "add-user", "Ada", "Lovelace")
    assert result.exit_code == 0
    return re.search(r"User created: (\S+)", result.stdout).group(1)


def create_book(db, title="Solaris"):
    result = invoke(db, "add-book", title, "--author", "Stanislaw Lem")
    assert result.exit_code == 0
    return re.search(r"Book added: (\d+) - ", result.stdout).group(1)


def test_init_db(db):
    result = invoke(db, "init-db")
    assert result.exit_code == 0
    assert "Database initialised." in result.stdout


def test_loans_empty(db):
    user_id = create_user(db)
    result = invoke(db, "loans", user_id)
    assert result.exit_code == 0
    assert "No active loans." in result.stdout


def test_borrow_list_and_return(db):
    user_id = create_user(db)
    book_id = create_book(db)

    result = invoke(db, "borrow", user_id, book_id)
    assert result.exit_code == 0
    assert f"Book {book_id} borrowed" in result.stdout

    result = invoke(db, "loans", user_id)
    assert "Solaris by Stanislaw Lem [borrowed]" in result.stdout

    result = invoke(db, "return", user_id, book_id)
    assert result.exit_code == 0
    assert f"Book {book_id} returned." in result.stdout

    result = runner.invoke(app, ["--db", db, "--output", "json", "history", user_id])
    [entry] = json.loads(result.stdout)
    assert entry["status"] == "returned"


def test_borrow_error_reports_reason(db):
    user_id = create_user(db)
    result = invoke(db, "borrow", user_id, "777")
    assert result.exit_code == 1
    assert "Error [not_found]: Book not found." in result.stdout


def test_return_without_loan(db):
    user_id = create_user(db)
    result = invoke(db, "return", user_id, "5")
    assert result.exit_code == 1
    assert "no_active_loan" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run):
    result = runner.invoke(app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "lending.api:app" in args
    assert "8123" in args


@pytest.mark.parametrize("command", [
    ["loans", "someone"],
    ["history", "someone"],
    ["borrow", "someone", "1"],
    ["add-book", "Dune", "--genre", "Science Fiction"],
])
def test_commands_close_the_pool(db, command):
    invoke(db, *command)
    assert database._pool is None
