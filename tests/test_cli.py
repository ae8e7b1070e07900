"""Tests for the command line interface."""

from uuid import uuid4

import pytest

from ledger_engine.cli import LedgerCli


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


class TestLedgerCli:
    def test_no_command_prints_help(self, capsys):
        assert LedgerCli().run([]) == 1
        assert "init-db" in capsys.readouterr().out

    def test_ledger_id_must_be_a_uuid(self):
        with pytest.raises(SystemExit):
            LedgerCli().run(["show-ledger", "--ledger-id", "not-a-uuid"])

    def test_init_then_drain_empty_outbox(self, database_url, capsys):
        cli = LedgerCli()

        assert cli.run(["--database-url", database_url, "init-db"]) == 0
        assert cli.run(["--database-url", database_url, "drain-outbox"]) == 0

        out = capsys.readouterr().out
        assert "Schema created." in out
        assert "Dispatched: 0" in out
        assert "Pending:    0" in out

    def test_show_unknown_ledger(self, database_url, capsys):
        cli = LedgerCli()
        cli.run(["--database-url", database_url, "init-db"])

        code = cli.run(["--database-url", database_url, "show-ledger", "--ledger-id", str(uuid4())])

        assert code == 1
        assert "NOT_FOUND" in capsys.readouterr().err
