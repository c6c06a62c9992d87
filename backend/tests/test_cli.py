"""Tests for the admin CLI."""

import asyncio
import json

import pytest

from certvault.cli.admin import create_parser, main
from certvault.database import close_db, init_db


@pytest.fixture
def bundle_file(tmp_path, root_ca):
    path = tmp_path / "bundle.json"
    path.write_text(json.dumps({
        "version": "1.0",
        "exported_at": 1700000000,
        "certificates": [
            {"hostname": "web.test.local", "certificate_pem": root_ca.cert_pem, "created_at": 1700000000},
        ],
    }))
    return path


@pytest.fixture
def database_path(tmp_path, monkeypatch):
    """Point the CLI at a file database with the schema already created."""
    path = tmp_path / "certvault.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{path}")

    async def create():
        await init_db()
        await close_db()

    asyncio.run(create())
    return path


class TestParser:

    def test_commands(self):
        parser = create_parser()

        args = parser.parse_args(["history", "web.test.local", "-n", "5", "--format", "json"])

        assert args.command == "history"
        assert args.limit == 5
        assert args.format == "json"


class TestValidateBackup:
    """Tests for validate-backup."""

    def test_valid(self, bundle_file, capsys):
        assert main(["--no-color", "validate-backup", str(bundle_file)]) == 0

        assert "Backup is valid" in capsys.readouterr().out

    def test_invalid_json_output(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps({"version": "3.0", "exported_at": 0}))

        assert main(["validate-backup", str(path), "--format", "json"]) == 1

        result = json.loads(capsys.readouterr().out)
        assert result["valid"] is False
        assert "Unsupported backup version: 3.0" in result["errors"]

    def test_missing_file(self, tmp_path):
        assert main(["--no-color", "validate-backup", str(tmp_path / "missing.json")]) == 1


class TestListBackups:
    """Tests for list-backups."""

    def test_explicit_directory(self, tmp_path, capsys):
        (tmp_path / "certvault-backup.manual.20260101T120000000000.json").write_text(
            json.dumps({"certificates": [{}, {}], "config": {"ca_name": "Lab CA"}})
        )
        (tmp_path / "notes.txt").write_text("ignored")

        assert main(["list-backups", str(tmp_path), "--format", "json"]) == 0

        backups = json.loads(capsys.readouterr().out)
        assert [b["filename"] for b in backups] == ["certvault-backup.manual.20260101T120000000000.json"]
        assert backups[0]["certificate_count"] == 2
        assert backups[0]["ca_name"] == "Lab CA"

    def test_disabled_without_directory(self):
        assert main(["--no-color", "list-backups"]) == 2


class TestHistory:
    """Tests for history."""

    def test_empty_history(self, database_path, capsys):
        assert main(["history", "web.test.local", "--format", "json"]) == 0

        assert json.loads(capsys.readouterr().out) == []

    def test_negative_limit(self, database_path):
        assert main(["--no-color", "history", "web.test.local", "--limit", "-1"]) == 1

    def test_missing_database_is_not_created(self, tmp_path, monkeypatch):
        path = tmp_path / "absent.db"
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{path}")

        assert main(["--no-color", "history", "web.test.local"]) == 2
        assert not path.exists()
