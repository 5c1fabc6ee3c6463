"""
Shared fixtures and fakes for the localchat test suite.

No test talks to a real Ollama server: the engine is exercised with a
scripted in-memory backend, and the HTTP adapter with httpx.MockTransport.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from localchat.backend import END_OF_STREAM, ChatSession, ModelBackend, TokenStream
from localchat.controller import StreamController
from localchat.errors import BackendError
from localchat.manager import ConversationManager
from localchat.storage import ConversationStore

# ---------------------------------------------------------------------------
# Scripted backend
# ---------------------------------------------------------------------------


class ScriptedStream(TokenStream):
    """Yields the scripted tokens, then ends or raises ``fail_with``.

    ``gate`` (optional) is waited on before each token, letting a test hold
    the stream mid-generation.
    """

    def __init__(self, tokens, fail_with=None, gate=None):
        self.tokens = list(tokens)
        self.fail_with = fail_with
        self.gate = gate
        self.next_calls = 0
        self.closed = False

    def next(self):
        self.next_calls += 1
        if self.closed:
            return END_OF_STREAM
        if self.gate is not None:
            self.gate.wait(5)
        if self.tokens:
            return self.tokens.pop(0)
        if self.fail_with is not None:
            self.closed = True
            raise self.fail_with
        return END_OF_STREAM

    def close(self):
        self.closed = True


class ScriptedSession(ChatSession):
    def __init__(self, backend, model):
        super().__init__(model)
        self.backend = backend
        self.prompts: list[str] = []
        self.loaded_history: list | None = None

    def load_history(self, turns):
        super().load_history(turns)
        self.loaded_history = list(self.turns)

    def stream_reply(self, prompt):
        self.prompts.append(prompt)
        if self.backend.open_error is not None:
            raise self.backend.open_error
        stream = ScriptedStream(
            self.backend.tokens, fail_with=self.backend.fail_with, gate=self.backend.gate
        )
        self.backend.streams.append(stream)
        return stream

    def complete(self, prompt):
        self.backend.completions.append((self.model, prompt))
        if isinstance(self.backend.title_reply, Exception):
            raise self.backend.title_reply
        return self.backend.title_reply


class ScriptedBackend(ModelBackend):
    """In-memory backend recording every session, stream and completion."""

    def __init__(self, tokens=("Hi", " there", "!"), title_reply="Friendly Greeting\n"):
        self.tokens = list(tokens)
        self.title_reply = title_reply
        self.fail_with: BackendError | None = None
        self.open_error: BackendError | None = None
        self.gate: threading.Event | None = None
        self.sessions: list[ScriptedSession] = []
        self.streams: list[ScriptedStream] = []
        self.completions: list[tuple[str, str]] = []

    def open_session(self, model, endpoint=None):
        session = ScriptedSession(self, model)
        self.sessions.append(session)
        return session

    def list_models(self):
        return ["llama3.2:1b", "phi4:latest"]


# ---------------------------------------------------------------------------
# Recording presenter
# ---------------------------------------------------------------------------


class RecordingPresenter:
    def __init__(self):
        self.events: list[tuple] = []
        self.conversations: list[list[tuple[str, str]]] = []
        self.deltas: list[str] = []
        self.notifications: list[tuple[str, str]] = []
        self.lists: list[tuple[list, int | None]] = []
        self.cleared = 0

    def render_conversation(self, turns):
        rows = [(t.role, t.content) for t in turns]
        self.conversations.append(rows)
        self.events.append(("conversation", rows))

    def render_streaming_delta(self, accumulated_text):
        self.deltas.append(accumulated_text)
        self.events.append(("delta", accumulated_text))

    def clear_streaming_indicator(self):
        self.cleared += 1
        self.events.append(("clear",))

    def notify(self, message, level="info"):
        self.notifications.append((message, level))
        self.events.append(("notify", message, level))

    def render_conversation_list(self, conversations, active_id):
        self.lists.append(([c.title for c in conversations], active_id))
        self.events.append(("list", active_id))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path: Path) -> ConversationStore:
    s = ConversationStore(tmp_path / "chat_history.sqlite")
    s.initialize()
    return s


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def controller(store, backend, presenter) -> StreamController:
    return StreamController(store, backend, presenter, title_model="phi4:latest")


@pytest.fixture
def manager(store, backend, presenter, controller) -> ConversationManager:
    return ConversationManager(store, backend, presenter, controller, model="llama3.2:1b")
