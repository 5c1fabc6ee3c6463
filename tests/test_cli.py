"""
Tests for localchat.cli and the terminal presenter, using click's CliRunner.

The CLI is pointed at a temporary database and a scripted backend.
"""

import pytest
from click.testing import CliRunner

import localchat.cli as cli_module
from localchat.cli import cli
from localchat.errors import BackendError
from localchat.models import ConversationSummary, Turn
from localchat.presentation import TerminalPresenter
from localchat.storage import ConversationStore

from .conftest import ScriptedBackend


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    db_path = tmp_path / "data" / "chat_history.sqlite"
    monkeypatch.setattr(cli_module, "DATA_DIR", db_path.parent)
    monkeypatch.setattr(cli_module, "SQLITE_PATH", db_path)
    return db_path.parent


@pytest.fixture
def cli_store(data_dir):
    store = ConversationStore(data_dir / "chat_history.sqlite")
    store.initialize()
    return store


@pytest.fixture
def cli_backend(monkeypatch):
    backend = ScriptedBackend()
    monkeypatch.setattr(cli_module, "OllamaBackend", lambda *args, **kwargs: backend)
    return backend


@pytest.fixture
def runner():
    return CliRunner()


def seed(store, title="Trip Planning", model="phi4:latest", messages=(("user", "Hi"), ("assistant", "Hello!"))):
    cid = store.create_conversation(model)
    store.rename_conversation(cid, title)
    for role, content in messages:
        store.append_message(cid, role, content)
    return cid


class TestHistoryCommands:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "localchat" in result.output

    def test_history_empty(self, runner, data_dir):
        result = runner.invoke(cli, ["history"])
        assert result.exit_code == 0
        assert "No chats yet." in result.output

    def test_history_lists_titles(self, runner, cli_store):
        cid = seed(cli_store)
        result = runner.invoke(cli, ["history"])
        assert result.exit_code == 0
        assert "Trip Planning" in result.output
        assert str(cid) in result.output

    def test_show_prints_transcript(self, runner, cli_store):
        cid = seed(cli_store)
        result = runner.invoke(cli, ["show", str(cid)])
        assert result.exit_code == 0
        assert "Trip Planning" in result.output
        assert "Model: phi4:latest" in result.output
        assert "Hello!" in result.output

    def test_show_missing_chat_fails(self, runner, cli_store):
        result = runner.invoke(cli, ["show", "99"])
        assert result.exit_code != 0
        assert "Conversation not found: 99" in result.output

    def test_rename(self, runner, cli_store):
        cid = seed(cli_store)
        result = runner.invoke(cli, ["rename", str(cid), "Packing List"])
        assert result.exit_code == 0
        assert cli_store.get_conversation(cid).title == "Packing List"

    def test_delete_requires_confirmation(self, runner, cli_store):
        cid = seed(cli_store)
        result = runner.invoke(cli, ["delete", str(cid)], input="n\n")
        assert result.exit_code != 0
        assert cli_store.count_messages(cid) == 2

        result = runner.invoke(cli, ["delete", str(cid), "--yes"])
        assert result.exit_code == 0
        assert cli_store.list_conversations() == []
        assert cli_store.list_messages(cid) == []

    def test_stats(self, runner, cli_store):
        seed(cli_store)
        result = runner.invoke(cli, ["stats"])
        assert result.exit_code == 0
        assert "Conversations:  1" in result.output
        assert "Messages:       2" in result.output
        assert "phi4:latest: 1" in result.output

    def test_stats_without_data(self, runner, data_dir):
        result = runner.invoke(cli, ["stats"])
        assert result.exit_code == 0
        assert "No chats found" in result.output

    def test_reset(self, runner, cli_store, data_dir):
        result = runner.invoke(cli, ["reset", "--yes"])
        assert result.exit_code == 0
        assert not data_dir.exists()

    def test_models_lists_server_models(self, runner, cli_backend):
        result = runner.invoke(cli, ["models"])
        assert result.exit_code == 0
        assert "llama3.2:1b" in result.output

    def test_models_falls_back_when_unreachable(self, runner, cli_backend, monkeypatch):
        def unreachable():
            raise BackendError("connection refused")

        monkeypatch.setattr(cli_backend, "list_models", unreachable)
        result = runner.invoke(cli, ["models"])
        assert result.exit_code == 0
        assert "gemma2:27b" in result.output


class TestChatRepl:
    def test_send_streams_and_saves(self, runner, cli_store, cli_backend):
        result = runner.invoke(cli, ["chat", "--model", "llama3.2:1b"], input="Hello\n/quit\n")
        assert result.exit_code == 0, result.output
        assert "Hi there!" in result.output

        (conversation,) = cli_store.list_conversations()
        assert conversation.title == "Friendly Greeting"
        assert [(m.role, m.content) for m in cli_store.list_messages(conversation.id)] == [
            ("user", "Hello"),
            ("assistant", "Hi there!"),
        ]
        assert cli_store.get_conversation_model(conversation.id) == "llama3.2:1b"

    def test_blank_lines_and_eof(self, runner, cli_store, cli_backend):
        result = runner.invoke(cli, ["chat"], input="   \n\n")
        assert result.exit_code == 0
        assert cli_store.list_conversations() == []

    def test_slash_commands(self, runner, cli_store, cli_backend):
        old = seed(cli_store, title="Old Chat")
        result = runner.invoke(
            cli,
            ["chat"],
            input=f"/help\n/list\n/open {old}\n/model gemma2:27b\n/model\n/models\n/bogus\n/quit\n",
        )
        assert result.exit_code == 0, result.output
        assert "Slash commands" in result.output
        assert "Old Chat" in result.output
        assert "Hello!" in result.output
        assert "Switched to model: gemma2:27b" in result.output
        assert "Current model: gemma2:27b" in result.output
        assert "llama3.2:1b" in result.output
        assert "Unknown command /bogus" in result.output
        assert cli_store.get_conversation_model(old) == "gemma2:27b"

    def test_new_and_delete(self, runner, cli_store, cli_backend):
        doomed = seed(cli_store, title="Doomed")
        result = runner.invoke(cli, ["chat"], input=f"/new\n/delete {doomed}\n/delete x\n/quit\n")
        assert result.exit_code == 0, result.output
        titles = [c.title for c in cli_store.list_conversations()]
        assert titles == ["New Chat"]
        assert "Chat deleted" in result.output
        assert "Expected a chat ID" in result.output

    def test_open_missing_chat_reports_error(self, runner, cli_store, cli_backend):
        result = runner.invoke(cli, ["chat"], input="/open 404\n/quit\n")
        assert result.exit_code == 0
        assert "Conversation not found: 404" in result.output

    def test_resume_reopens_latest_chat(self, runner, cli_store, cli_backend):
        cid = seed(cli_store, title="Latest")
        result = runner.invoke(cli, ["chat", "--resume"], input="More please\n/quit\n")
        assert result.exit_code == 0, result.output
        assert cli_store.count_messages(cid) == 4
        session = cli_backend.sessions[0]
        assert [(t.role, t.content) for t in session.loaded_history] == [
            ("user", "Hi"),
            ("assistant", "Hello!"),
        ]

    def test_backend_failure_is_reported(self, runner, cli_store, cli_backend):
        cli_backend.tokens = []
        cli_backend.fail_with = BackendError("model not loaded")
        result = runner.invoke(cli, ["chat"], input="Hello\n/quit\n")
        assert result.exit_code == 0
        assert "Error streaming: model not loaded" in result.output
        (conversation,) = cli_store.list_conversations()
        assert cli_store.count_messages(conversation.id) == 1


class TestTerminalPresenter:
    def test_streams_only_new_text(self, capsys):
        presenter = TerminalPresenter()
        presenter.render_streaming_delta("Hi")
        presenter.render_streaming_delta("Hi there")
        presenter.render_streaming_delta("Hi there!")
        presenter.clear_streaming_indicator()
        out = capsys.readouterr().out
        assert out.count("Hi") == 1
        assert "Hi there!" in out

    def test_extension_of_shown_conversation_is_not_reprinted(self, capsys):
        presenter = TerminalPresenter()
        presenter.render_conversation([Turn(role="user", content="first")])
        presenter.render_conversation(
            [Turn(role="user", content="first"), Turn(role="assistant", content="reply")]
        )
        out = capsys.readouterr().out
        assert out.count("first") == 1
        assert "reply" not in out

    def test_different_conversation_is_printed(self, capsys):
        presenter = TerminalPresenter()
        presenter.render_conversation([Turn(role="user", content="one")])
        presenter.render_conversation([Turn(role="user", content="two")])
        out = capsys.readouterr().out
        assert "one" in out and "two" in out

    def test_notifications_go_to_stderr(self, capsys):
        TerminalPresenter().notify("Chat deleted", "info")
        captured = capsys.readouterr()
        assert "Chat deleted" in captured.err
        assert captured.out == ""

    def test_conversation_list_marks_active(self, capsys):
        presenter = TerminalPresenter(show_conversation_list=True)
        presenter.render_conversation_list(
            [
                ConversationSummary(id=2, title="Second", created_at="2026-01-02 10:00:00.000"),
                ConversationSummary(id=1, title="First", created_at="2026-01-01 10:00:00.000"),
            ],
            active_id=1,
        )
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("  ")
        assert lines[1].startswith("*")
