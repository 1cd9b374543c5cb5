"""Tests for the bookvault command line interface."""

import json

import pytest

import bookvault.cli.__main__ as cli_main
from bookvault.core import Bookvault


@pytest.fixture
def run(monkeypatch, remote, config, capsys):
    """Run the CLI against the shared FakeRemote; returns captured stdout."""

    def factory(owner_id=None):
        return Bookvault(owner_id=owner_id or "cli-owner", remote=remote, config=config)

    monkeypatch.setattr(cli_main, "Bookvault", factory)

    def _run(*argv):
        cli_main.main(list(argv))
        return capsys.readouterr().out

    return _run


def _json(out):
    return json.loads(out)


def test_package_exports_bookvault():
    import bookvault

    assert bookvault.Bookvault is Bookvault


def test_help_exits_cleanly(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli_main.main(["--help"])
    assert excinfo.value.code == 0
    assert "bookmark" in capsys.readouterr().out


class TestBookmarks:
    def test_add_and_list(self, run):
        assert "Bookmark saved" in run("bookmark", "add", "https://example.com", "--title", "Example")
        listed = _json(run("bookmark", "list", "--json"))
        assert [b["title"] for b in listed] == ["Example"]
        assert listed[0]["url"] == "https://example.com"

    def test_add_json_returns_payload(self, run):
        payload = _json(run("bookmark", "add", "https://a.example", "--tag", "b", "--tag", "a", "--json"))
        assert payload["tags"] == ["a", "b"]
        assert payload["title"] == "https://a.example"

    def test_tag_counts(self, run):
        run("bookmark", "add", "https://a.example", "--tag", "news")
        run("bookmark", "add", "https://b.example", "--tag", "news", "--tag", "daily")
        assert _json(run("bookmark", "tags", "--json")) == {"news": 2, "daily": 1}

    def test_list_filters_by_tag(self, run):
        run("bookmark", "add", "https://a.example", "--tag", "news")
        run("bookmark", "add", "https://b.example")
        listed = _json(run("bookmark", "list", "--tag", "news", "--json"))
        assert [b["url"] for b in listed] == ["https://a.example"]

    def test_empty_list(self, run):
        assert "No bookmarks." in run("bookmark", "list")

    def test_remove(self, run):
        record_id = _json(run("bookmark", "add", "https://a.example", "--json"))["id"]
        assert "deleted" in run("bookmark", "rm", record_id)
        assert _json(run("bookmark", "list", "--json")) == []

    def test_remove_unknown_exits(self, run, capsys):
        with pytest.raises(SystemExit) as excinfo:
            run("bookmark", "rm", "missing")
        assert excinfo.value.code == 1
        assert "not found" in capsys.readouterr().out

    def test_empty_url_exits(self, run):
        with pytest.raises(SystemExit) as excinfo:
            run("bookmark", "add", "")
        assert excinfo.value.code == 1

    def test_export_then_import_skips_duplicates(self, run, tmp_path):
        run("bookmark", "add", "https://a.example", "--title", "A")
        path = tmp_path / "bookmarks.json"
        assert "Exported 1 bookmarks" in run("bookmark", "export", str(path))
        assert [b["title"] for b in json.loads(path.read_text())] == ["A"]

        summary = _json(run("bookmark", "import", str(path), "--json"))
        assert summary["imported"] == 0
        assert summary["skipped"] == 1
        assert len(_json(run("bookmark", "list", "--json"))) == 1

    def test_import_replace(self, run, tmp_path):
        run("bookmark", "add", "https://old.example")
        path = tmp_path / "in.json"
        path.write_text(json.dumps([{"url": "https://new.example", "title": "New"}]))

        out = run("bookmark", "import", str(path), "--mode", "replace")
        assert "Imported 1 bookmarks (replace)" in out
        assert "1 existing bookmarks removed" in out
        assert [b["url"] for b in _json(run("bookmark", "list", "--json"))] == ["https://new.example"]

    def test_import_invalid_file_exits(self, run, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(SystemExit) as excinfo:
            run("bookmark", "import", str(path))
        assert excinfo.value.code == 1

    def test_import_missing_file_exits(self, run, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            run("bookmark", "import", str(tmp_path / "nope.json"))
        assert excinfo.value.code == 1


class TestSpaces:
    def test_add_and_list(self, run):
        assert "Space created: Work" in run("space", "add", "Work")
        spaces = _json(run("space", "list", "--json"))
        assert [s["name"] for s in spaces] == ["Work"]

    def test_pin_view(self, run):
        run("space", "add", "Work")
        space_id = _json(run("space", "list", "--json"))[0]["id"]
        assert "Pinned view saved" in run("space", "pin", space_id, "Reading", "--tag", "later")
        assert "(1 pinned views)" in run("space", "list")


class TestSync:
    def test_status_reports_pending(self, run):
        run("sync", "mode", "plaintext")
        run("bookmark", "add", "https://a.example")
        status = _json(run("sync", "status", "--json"))
        assert status["mode"] == "plaintext"
        assert status["pending"] == 1
        assert status["online"] is True

    def test_run_pushes(self, run, remote):
        run("sync", "mode", "plaintext")
        run("bookmark", "add", "https://a.example")
        result = _json(run("sync", "run", "--json"))
        assert result["pushed"] == 1
        assert result["errors"] == []
        assert len(remote.live(encrypted=False)) == 1
        assert remote.settings["syncMode"] == "plaintext"

    def test_offline_run_exits_nonzero(self, run, remote):
        run("sync", "mode", "plaintext")
        run("bookmark", "add", "https://a.example")
        remote.offline = True
        with pytest.raises(SystemExit) as excinfo:
            run("sync", "push")
        assert excinfo.value.code == 1

    def test_e2e_mode_needs_vault_command(self, run, capsys):
        with pytest.raises(SystemExit):
            run("sync", "mode", "e2e")
        assert "vault enable" in capsys.readouterr().out

    def test_without_credentials(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            cli_main.main(["sync", "status"])
        assert excinfo.value.code == 1
        assert "auth login" in capsys.readouterr().out

    def test_conflicts_empty(self, run):
        run("sync", "mode", "plaintext")
        assert "No unresolved conflicts" in run("sync", "conflicts")


class TestAuth:
    def test_login_and_status(self, run):
        assert "Credentials saved" in run(
            "auth", "login", "https://api.example.com", "secret-token-value", "--owner", "own_1"
        )
        status = _json(run("auth", "status", "--json"))
        assert status["authenticated"] is True
        assert status["credentials"]["auth_token"] == "secr...alue"
        assert status["credentials"]["owner_id"] == "own_1"

    def test_login_rejects_remote_http(self, run, capsys):
        with pytest.raises(SystemExit):
            run("auth", "login", "http://api.example.com", "token")
        assert "https" in capsys.readouterr().out

    def test_logout(self, run):
        run("auth", "login", "https://api.example.com", "token")
        assert "Logged out" in run("auth", "logout")
        assert "Not logged in" in run("auth", "status")


class TestVault:
    def test_enable_then_unlock_in_new_process(self, run, remote, monkeypatch):
        monkeypatch.setenv("BOOKVAULT_PASSPHRASE", "correct horse battery staple")
        run("sync", "mode", "plaintext")
        run("bookmark", "add", "https://a.example", "--title", "Secret")
        run("sync", "run")

        out = run("vault", "enable", "--recovery-codes", "1")
        assert "Vault enabled: 1 records encrypted" in out
        assert "Recovery codes" in out
        assert len(remote.live(encrypted=True)) == 1
        assert remote.live(encrypted=False) == []

        # Each CLI invocation starts locked and unlocks from the environment
        listed = _json(run("bookmark", "list", "--json"))
        assert [b["title"] for b in listed] == ["Secret"]
        status = _json(run("vault", "status", "--json"))
        assert status["mode"] == "e2e"
        assert status["remote"]["enabled"] is True

    def test_resume_without_transition(self, run):
        assert "No interrupted transition" in run("vault", "resume")
