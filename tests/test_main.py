"""
Tests for the command-line entry point.
"""

import logging

import pytest
import yaml

from database_ops import AccountType
from financial_app import create_app
from main import main


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("DB_CONNECTION_STRING", raising=False)
    connection_string = f"sqlite:///{(tmp_path / 'cli.db').as_posix()}"
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "database": {"connection_string": connection_string},
        "logging": {"level": "WARNING"},
    }))
    return path, connection_string


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_init_db(config_file, capsys):
    path, _ = config_file
    assert main(["-c", str(path), "init-db"]) == 0
    assert "created" in capsys.readouterr().out


def test_create_key_is_idempotent(config_file, capsys):
    path, connection_string = config_file

    assert main(["-c", str(path), "create-key", "--user", "u1"]) == 0
    assert main(["-c", str(path), "create-key", "--user", "u1"]) == 0

    out = capsys.readouterr().out
    assert "Created encryption key for user u1" in out
    assert "already has an encryption key" in out

    app = create_app({}, connection_string=connection_string)
    try:
        assert app.key_store.has_user_key("u1")
    finally:
        app.close()


def test_process_recurring_reports_results(config_file, capsys):
    path, connection_string = config_file
    app = create_app({}, connection_string=connection_string)
    try:
        account = app.accounts.create_account("u1", "Checking", AccountType.SAVINGS, 100)
        app.recurring.create_recurring_transaction("u1", {
            "account_id": account["id"], "description": "Gym", "amount": 30,
            "type": "EXPENSE", "category": "Health", "frequency": "MONTHLY",
            "start_date": "2024-01-05",
        })
    finally:
        app.close()

    assert main(["-c", str(path), "process-recurring", "--date", "2024-02-10"]) == 0
    assert "success" in capsys.readouterr().out

    assert main(["-c", str(path), "process-recurring", "--date", "2024-02-10"]) == 0
    assert "No recurring transactions due" in capsys.readouterr().out


def test_list_accounts_shows_plaintext(config_file, capsys):
    path, connection_string = config_file
    app = create_app({}, connection_string=connection_string)
    try:
        app.accounts.create_account("u1", "Emergency Fund", AccountType.SAVINGS, 1234.5)
    finally:
        app.close()

    assert main(["-c", str(path), "list-accounts", "--user", "u1"]) == 0
    out = capsys.readouterr().out
    assert "Emergency Fund" in out
    assert "1,234.50" in out


def test_invalid_config_fails(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_text("logging: [broken")
    assert main(["-c", str(path), "init-db"]) == 1
    assert "Error loading config" in capsys.readouterr().err
