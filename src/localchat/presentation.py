"""Presentation boundary: what the chat engine tells a UI to draw."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

import click

from .models import ConversationSummary, NotifyLevel, Turn

_LEVEL_COLORS = {"info": "cyan", "warning": "yellow", "error": "red"}


class Presenter(Protocol):
    """Render callbacks invoked by the chat engine. The engine never reads back."""

    def render_conversation(self, turns: Sequence[Turn]) -> None: ...

    def render_streaming_delta(self, accumulated_text: str) -> None: ...

    def clear_streaming_indicator(self) -> None: ...

    def notify(self, message: str, level: NotifyLevel = "info") -> None: ...

    def render_conversation_list(
        self, conversations: Sequence[ConversationSummary], active_id: int | None
    ) -> None: ...


class TerminalPresenter:
    """Presenter for an interactive terminal session.

    Streaming output is printed incrementally. A transcript is only printed
    when the conversation shown changes; when the new message list merely
    extends what is already on screen (the user typed it, or it was just
    streamed) nothing is reprinted.
    """

    def __init__(self, show_conversation_list: bool = False):
        self.show_conversation_list = show_conversation_list
        self._shown: list[tuple[str, str]] = []
        self._streamed = 0

    def render_conversation(self, turns: Sequence[Turn]) -> None:
        rows = [(t.role, t.content) for t in turns]
        if rows[: len(self._shown)] == self._shown and self._shown:
            self._shown = rows
            return
        self._shown = rows
        click.echo(click.style("─" * 40, dim=True))
        if not rows:
            click.echo(click.style("(empty conversation)", dim=True))
        for role, content in rows:
            label = "You" if role == "user" else "Assistant"
            click.echo(click.style(f"{label}:", bold=True))
            click.echo(content)
            click.echo()

    def render_streaming_delta(self, accumulated_text: str) -> None:
        if self._streamed == 0:
            click.echo(click.style("Assistant:", bold=True))
        click.echo(accumulated_text[self._streamed :], nl=False)
        self._streamed = len(accumulated_text)

    def clear_streaming_indicator(self) -> None:
        if self._streamed:
            click.echo()
            click.echo()
        self._streamed = 0

    def notify(self, message: str, level: NotifyLevel = "info") -> None:
        click.echo(click.style(message, fg=_LEVEL_COLORS.get(level)), err=True)

    def render_conversation_list(
        self, conversations: Sequence[ConversationSummary], active_id: int | None
    ) -> None:
        if not self.show_conversation_list:
            return
        echo_conversation_list(conversations, active_id)


def echo_conversation_list(
    conversations: Sequence[ConversationSummary], active_id: int | None = None
) -> None:
    if not conversations:
        click.echo("No chats yet.")
        return
    for c in conversations:
        marker = "*" if c.id == active_id else " "
        title = click.style(c.title, bold=c.id == active_id)
        click.echo(f"{marker} {c.id:>4}  {title}  ({c.created_at[:16]})")
