from pathlib import Path

import pytest

import db
import vault_cli
from settings import SyncSettings
from vaultsync import conflicts
from vaultsync.kv_store import JsonKeyValueStore
from vaultsync.vault import build_vault


@pytest.fixture
def cli_env(local_db: Path, tmp_path: Path, monkeypatch):
    kv_path = tmp_path / "state.json"
    monkeypatch.setattr(vault_cli, "configure_logging", lambda *args, **kwargs: tmp_path / "cli.log")
    monkeypatch.setattr(vault_cli, "load_sync_settings", lambda: SyncSettings())
    monkeypatch.setattr(
        vault_cli,
        "build_vault",
        lambda settings: build_vault(settings, kv_store=JsonKeyValueStore(kv_path)),
    )
    return tmp_path


def test_add_list_edit_delete(cli_env, capsys) -> None:
    assert vault_cli.main(["add", "--site", "mail", "--username", "alice", "--secret", "c1"]) == 0
    record_id = db.list_credentials()[0].id

    assert vault_cli.main(["edit", str(record_id), "--comments", "work"]) == 0
    assert db.fetch_credential(record_id).comments == "work"

    capsys.readouterr()
    assert vault_cli.main(["list"]) == 0
    listing = capsys.readouterr().out
    assert "mail" in listing
    assert "alice" in listing
    assert "c1" not in listing

    assert vault_cli.main(["delete", str(record_id)]) == 0
    assert db.count_credentials() == 0


def test_edit_unknown_record_fails(cli_env, capsys) -> None:
    assert vault_cli.main(["edit", "77", "--site", "x"]) == 1
    assert "not found" in capsys.readouterr().err


def test_edit_without_fields_fails(cli_env, capsys) -> None:
    assert vault_cli.main(["edit", "1"]) == 1
    assert "nothing to change" in capsys.readouterr().err


def test_sync_reports_disabled(cli_env, capsys) -> None:
    assert vault_cli.main(["sync"]) == 0
    assert "disabled" in capsys.readouterr().out


def test_status_output(cli_env, capsys) -> None:
    assert vault_cli.main(["status"]) == 0
    out = capsys.readouterr().out
    assert "Cloud sync    : disabled" in out
    assert "Pending ops   : 0" in out
    assert "Last sync     : never" in out


def test_watch_requires_cloud_sync(cli_env, capsys) -> None:
    assert vault_cli.main(["watch", "--duration", "0"]) == 1
    assert "disabled" in capsys.readouterr().err


def test_conflicts_listing(cli_env, capsys) -> None:
    assert vault_cli.main(["conflicts"]) == 0
    assert "No conflicts" in capsys.readouterr().out

    conflicts.record(3, {"username": ("a", "b")}, winner="remote")
    assert vault_cli.main(["conflicts", "--limit", "1"]) == 0
    assert '"record_id": 3' in capsys.readouterr().out


def test_status_reports_unusable_account(cli_env, monkeypatch, capsys) -> None:
    settings = SyncSettings(
        spreadsheet_id="sheet-1",
        credential_path=str(cli_env / "missing.json"),
        cloud_sync_enabled=True,
    )
    monkeypatch.setattr(vault_cli, "load_sync_settings", lambda: settings)

    assert vault_cli.main(["status"]) == 0
    out = capsys.readouterr().out
    assert "Cloud sync    : enabled" in out
    assert "Account       : unusable" in out
