"""
Command Line Tests

Commands that run without a backend: export, import, status and the
signed-out paths of sync and login.
"""

import json

import pytest

from checklist.main import build_parser, main

from conftest import task

API_URL = "http://checklist.test/api/v1"


def run_cli(tmp_path, *argv):
    return main(["--data-dir", str(tmp_path), "--api-url", API_URL, *argv])


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_parser_options():
    args = build_parser().parse_args(["-v", "--api-url", API_URL, "login", "--provider", "github"])

    assert args.verbose
    assert args.command == "login"
    assert args.provider == "github"


def test_import_then_export(tmp_path, capsys):
    source = tmp_path / "in.json"
    target = tmp_path / "out.json"
    document = {"categories": [{"id": "work"}], "tasks": [task("a")], "boards": []}
    source.write_text(json.dumps(document), encoding="utf-8")

    assert run_cli(tmp_path, "import", str(source)) == 0
    assert run_cli(tmp_path, "export", str(target)) == 0

    assert json.loads(target.read_text(encoding="utf-8")) == document
    assert "Data imported successfully." in capsys.readouterr().out


def test_invalid_import(tmp_path, capsys):
    source = tmp_path / "broken.json"
    source.write_text("{not json", encoding="utf-8")

    assert run_cli(tmp_path, "import", str(source)) == 1
    assert "Import failed" in capsys.readouterr().out


def test_missing_import_file(tmp_path, capsys):
    assert run_cli(tmp_path, "import", str(tmp_path / "nope.json")) == 1
    assert "Import failed" in capsys.readouterr().out


def test_status(tmp_path, capsys):
    assert run_cli(tmp_path, "status") == 0

    out = capsys.readouterr().out
    assert "Signed in: False" in out
    assert "Last synced: Never" in out


def test_sync_requires_sign_in(tmp_path, capsys):
    assert run_cli(tmp_path, "sync") == 1
    assert "Not signed in." in capsys.readouterr().out


def test_provider_login_prints_url(tmp_path, capsys):
    assert run_cli(tmp_path, "login", "--provider", "google") == 0

    out = capsys.readouterr().out
    assert f"{API_URL}/auth/authorize?provider=google" in out


def test_restore_without_backup(tmp_path, capsys):
    assert run_cli(tmp_path, "restore-backup") == 1
    assert "No backup found." in capsys.readouterr().out
