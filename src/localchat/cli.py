"""CLI interface for localchat."""

from __future__ import annotations

import logging
import shlex
import shutil
import sys

import click

from . import __version__
from .backend import ModelBackend, OllamaBackend
from .config import AVAILABLE_MODELS, DATA_DIR, DEFAULT_MODEL, LOG_LEVEL, OLLAMA_BASE_URL, SQLITE_PATH
from .errors import BackendError, BusyError, InvalidInput, LocalChatError
from .manager import ConversationManager
from .presentation import TerminalPresenter, echo_conversation_list
from .storage import ConversationStore
from .worker import StreamWorker

logger = logging.getLogger(__name__)

HELP_TEXT = """Slash commands
/help              Show command help
/new               Start a new chat
/model [NAME]      Show or switch the model for this chat
/models            List models available on the server
/list              List saved chats
/open ID           Open a saved chat
/delete ID         Delete a saved chat
/quit              Leave (Ctrl+D works too)

Press Ctrl+C while a reply is streaming to stop it."""


def _open_store() -> ConversationStore:
    store = ConversationStore(SQLITE_PATH)
    try:
        store.initialize()
    except LocalChatError as exc:
        raise click.ClickException(str(exc)) from exc
    return store


@click.group()
@click.version_option(version=__version__, prog_name="localchat")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def cli(verbose: bool):
    """localchat: chat with language models running on your own machine.

    Conversations are streamed from a local Ollama server and saved to a
    SQLite database so you can pick them up again later.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command()
@click.option("-m", "--model", default=DEFAULT_MODEL, show_default=True, help="Model for new chats")
@click.option("--resume/--no-resume", default=False, help="Reopen the most recent chat")
def chat(model: str, resume: bool):
    """Start an interactive chat session.

    Type a message and press Enter to send it. Lines starting with / are
    commands; type /help to list them.
    """
    store = _open_store()
    backend = OllamaBackend()
    presenter = TerminalPresenter()
    manager = ConversationManager(store, backend, presenter, model=model)

    click.echo(f"localchat {__version__} ({OLLAMA_BASE_URL}, model {model})")
    click.echo("Type /help for commands.")
    if resume and manager.resume_latest() is None:
        click.echo("No saved chats yet.")

    while True:
        try:
            line = click.prompt(">", default="", show_default=False, prompt_suffix=" ")
        except click.Abort:
            click.echo()
            break

        if line.startswith("/"):
            try:
                if not _run_slash_command(manager, line):
                    break
            except LocalChatError as exc:
                _report(presenter, exc)
            continue

        try:
            manager.send(line)
        except InvalidInput:
            continue
        except LocalChatError as exc:
            _report(presenter, exc)
            continue
        _wait_for_reply(manager)


def _report(presenter: TerminalPresenter, exc: LocalChatError) -> None:
    # Busy rejections have already been announced by the manager
    if not isinstance(exc, BusyError):
        presenter.notify(str(exc), "error")


def _wait_for_reply(manager: ConversationManager) -> None:
    """Stream the reply on a worker thread; Ctrl+C asks it to stop."""
    worker = StreamWorker(manager.controller).start()
    while True:
        try:
            if worker.join(0.1):
                break
        except KeyboardInterrupt:
            manager.stop()
    if worker.error is not None:
        raise worker.error


def _run_slash_command(manager: ConversationManager, line: str) -> bool:
    """Run one slash command. Returns False when the session should end."""
    try:
        parts = shlex.split(line)
    except ValueError as exc:
        manager.presenter.notify(f"Could not parse command: {exc}", "error")
        return True
    command, args = parts[0].lower(), parts[1:]

    if command in ("/quit", "/exit"):
        return False
    if command == "/help":
        click.echo(HELP_TEXT)
    elif command == "/new":
        manager.new_chat()
    elif command == "/model":
        if args:
            manager.switch_model(args[0])
        else:
            click.echo(f"Current model: {manager.state.selected_model}")
    elif command == "/models":
        for name in _available_models(manager.backend):
            marker = "*" if name == manager.state.selected_model else " "
            click.echo(f"{marker} {name}")
    elif command == "/list":
        echo_conversation_list(
            manager.store.list_conversations(), manager.active_conversation_id
        )
    elif command in ("/open", "/delete"):
        conversation_id = _parse_id(manager, args)
        if conversation_id is None:
            return True
        if command == "/open":
            manager.select_chat(conversation_id)
        else:
            manager.delete_chat(conversation_id)
    else:
        manager.presenter.notify(f"Unknown command {command}. Type /help.", "warning")
    return True


def _parse_id(manager: ConversationManager, args: list[str]) -> int | None:
    if len(args) != 1 or not args[0].isdigit():
        manager.presenter.notify("Expected a chat ID, e.g. /open 3", "warning")
        return None
    return int(args[0])


def _available_models(backend: ModelBackend) -> list[str]:
    try:
        models = backend.list_models()
    except BackendError as exc:
        logger.warning("Falling back to configured models: %s", exc)
        return list(AVAILABLE_MODELS)
    return models or list(AVAILABLE_MODELS)


@cli.command()
def history():
    """List saved chats, newest first."""
    store = _open_store()
    echo_conversation_list(store.list_conversations())


@cli.command()
@click.argument("conversation_id", type=int)
def show(conversation_id: int):
    """Print the transcript of a saved chat."""
    store = _open_store()
    try:
        conversation = store.get_conversation(conversation_id)
    except LocalChatError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(click.style(conversation.title, bold=True))
    click.echo(f"Model: {conversation.model} | Created: {conversation.created_at[:16]}")
    click.echo()
    for msg in store.list_messages(conversation_id):
        label = "You" if msg.role == "user" else "Assistant"
        click.echo(click.style(f"{label}:", bold=True))
        click.echo(msg.content)
        click.echo()


@cli.command()
@click.argument("conversation_id", type=int)
@click.argument("title")
def rename(conversation_id: int, title: str):
    """Rename a saved chat."""
    store = _open_store()
    try:
        store.rename_conversation(conversation_id, title)
    except LocalChatError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Renamed chat {conversation_id} to {title!r}")


@cli.command()
@click.argument("conversation_id", type=int)
@click.confirmation_option(prompt="Delete this chat and all of its messages?")
def delete(conversation_id: int):
    """Delete a saved chat."""
    store = _open_store()
    try:
        store.delete_conversation(conversation_id)
    except LocalChatError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted chat {conversation_id}")


@cli.command()
def models():
    """List models available on the local server."""
    backend = OllamaBackend()
    try:
        names = backend.list_models()
    except BackendError as exc:
        click.echo(f"Could not reach {OLLAMA_BASE_URL}: {exc}", err=True)
        click.echo("Configured defaults:")
        names = list(AVAILABLE_MODELS)
    for name in names:
        click.echo(f"  {name}")


@cli.command()
def stats():
    """Show statistics about your saved chats."""
    if not SQLITE_PATH.exists():
        click.echo("No chats found. Start one with:")
        click.echo("  localchat chat")
        return

    store = _open_store()
    s = store.get_stats()

    click.echo()
    click.echo(click.style("localchat Statistics", bold=True))
    click.echo(f"  Conversations:  {s['total_conversations']:,}")
    click.echo(f"  Messages:       {s['total_messages']:,}")
    click.echo(f"  Avg msgs/conv:  {s['avg_messages_per_conversation']}")
    if s["date_range_start"]:
        click.echo(f"  Date range:     {s['date_range_start']} → {s['date_range_end']}")
    if s["top_models"]:
        click.echo("  Models used:")
        for m in s["top_models"]:
            click.echo(f"    {m['model']}: {m['count']:,}")

    db_size = SQLITE_PATH.stat().st_size / (1024 * 1024)
    click.echo(f"  Storage:        {db_size:.1f} MB")
    click.echo(f"  Location:       {DATA_DIR}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="This will delete all saved chats. Are you sure?")
def reset():
    """Delete all saved chats and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
