"""Tests for the chatcore CLI commands."""

import json
import os

import pytest

from chatcore import cli
from chatcore.client import ChatCore


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "chat.db")
    cli.init(db=path)
    cli.user_add("alice", display_name="Alice", db=path)
    cli.user_add("bob", db=path)
    return path


class TestInit:
    def test_creates_database(self, tmp_path, capsys):
        path = tmp_path / "chat.db"
        cli.init(db=str(path))
        assert path.exists()
        assert "schema version 3" in capsys.readouterr().out

    def test_missing_database(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.user_list(db=str(tmp_path / "missing.db"))
        assert exc_info.value.code == 1
        assert "chatcore init" in capsys.readouterr().err

    def test_db_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CHATCORE_DB", str(tmp_path / "env.db"))
        assert cli.resolve_db_path(None) == tmp_path / "env.db"
        assert str(cli.resolve_db_path("explicit.db")) == "explicit.db"


class TestDirectory:
    def test_user_list(self, db_path, capsys):
        capsys.readouterr()
        cli.user_list(db=db_path)
        assert capsys.readouterr().out.splitlines() == ["alice (Alice)", "bob"]

    def test_duplicate_user(self, db_path, capsys):
        with pytest.raises(SystemExit):
            cli.user_add("alice", db=db_path)
        assert "conflict" in capsys.readouterr().err

    def test_stream_add(self, db_path, capsys):
        cli.stream_add("live-1", title="Launch", db=db_path)
        assert "Added stream live-1" in capsys.readouterr().out

    def test_stream_add_without_comments(self, db_path, capsys):
        cli.stream_add("live-2", comments=False, db=db_path)
        assert "Added stream live-2 (comments off)" in capsys.readouterr().out
        with ChatCore.local(db_path) as chat:
            assert not chat.backend.stream_allows_comments("live-2")

    def test_stream_comments(self, db_path, capsys):
        cli.stream_add("live-1", db=db_path)
        cli.stream_comments("live-1", disabled=True, db=db_path)
        assert "Comments off for stream live-1" in capsys.readouterr().out
        with ChatCore.local(db_path) as chat:
            assert not chat.backend.stream_allows_comments("live-1")

        cli.stream_comments("live-1", db=db_path)
        with ChatCore.local(db_path) as chat:
            assert chat.backend.stream_allows_comments("live-1")

    def test_stream_comments_unknown_stream(self, db_path, capsys):
        with pytest.raises(SystemExit):
            cli.stream_comments("nope", db=db_path)
        assert "not_found" in capsys.readouterr().err


class TestDirectMessages:
    def test_send_and_list(self, db_path, capsys):
        cli.dm_send("alice", "bob", "Hello!", db=db_path)
        cli.dm_send("bob", "alice", "Hi!", db=db_path)
        capsys.readouterr()

        cli.dm_list("bob", "alice", oldest=True, db=db_path)
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].endswith("alice: Hello!")
        assert lines[1].endswith("bob: Hi!")
        assert lines[-1] == "-- page 1/1, 2 messages"

    def test_list_json(self, db_path, capsys):
        cli.dm_send("alice", "bob", "Hello!", db=db_path)
        capsys.readouterr()

        cli.dm_list("bob", "alice", json_output=True, db=db_path)
        data = json.loads(capsys.readouterr().out)
        assert data["items"][0]["content"] == "Hello!"
        assert data["pagination"]["total"] == 1

    def test_list_empty(self, db_path, capsys):
        capsys.readouterr()
        cli.dm_list("bob", "alice", db=db_path)
        assert capsys.readouterr().out.strip() == "No messages."

    def test_send_to_unknown_user(self, db_path, capsys):
        with pytest.raises(SystemExit):
            cli.dm_send("alice", "mallory", "hi", db=db_path)
        assert "not_found" in capsys.readouterr().err

    def test_read_and_conversations(self, db_path, capsys):
        cli.dm_send("alice", "bob", "one", db=db_path)
        cli.dm_send("alice", "bob", "two", db=db_path)
        capsys.readouterr()

        cli.conversations("bob", db=db_path)
        assert "alice  unread=2  last: two" in capsys.readouterr().out

        cli.read("bob", "alice", db=db_path)
        assert "0 unread" in capsys.readouterr().out

        cli.conversations("bob", db=db_path)
        assert "unread=0" in capsys.readouterr().out

    def test_no_conversations(self, db_path, capsys):
        capsys.readouterr()
        cli.conversations("alice", db=db_path)
        assert capsys.readouterr().out.strip() == "No conversations."


class TestServe:
    def test_requires_auth_choice(self, monkeypatch, capsys):
        monkeypatch.delenv("CHATCORE_AUTH_MODULE", raising=False)
        with pytest.raises(SystemExit):
            cli.serve()
        assert "No auth method configured" in capsys.readouterr().err

    def test_no_auth_runs_uvicorn(self, monkeypatch, tmp_path):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
        monkeypatch.setenv("CHATCORE_DB", "placeholder.db")
        monkeypatch.setenv("CHATCORE_NO_AUTH", "1")

        cli.serve(no_auth=True, port=9001, db=str(tmp_path / "served.db"))

        assert calls == [("chatcore.api:app", {"host": "0.0.0.0", "port": 9001, "reload": False})]
        assert os.environ["CHATCORE_DB"] == str(tmp_path / "served.db")
