"""Streaming session controller: drives the single in-flight generation.

    IDLE --begin_send--> STREAMING --end of stream--> COMPLETING --> IDLE
                             |  \\--backend error---> FAILING -----> IDLE
                             \\--stop requested-----> CANCELLING --> IDLE

Each ``step()`` pulls at most one token, so whoever drives the controller
decides where the blocking network read happens (see ``worker.py``).
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field

from .backend import END_OF_STREAM, ChatSession, ModelBackend, TokenStream
from .config import STOP_SUFFIX, TITLE_MODEL
from .errors import AlreadyStreamingError, BackendError, LocalChatError
from .models import Message
from .presentation import Presenter
from .storage import ConversationStore

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Based on this chat, generate a brief (3-5 words) title for the conversation:\n"
    "```chat\n{transcript}\n```\n"
    "Just provide the title followed by a new line."
)


class StreamState(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETING = "completing"
    CANCELLING = "cancelling"
    FAILING = "failing"


@dataclass
class StreamingSession:
    """The transient state of one generation."""

    conversation_id: int
    stream: TokenStream
    accumulated: str = ""
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    error: Exception | None = None


def build_title_prompt(messages: list[Message]) -> str:
    transcript = "\n".join(f"{m.role}: {m.content}" for m in messages)
    return TITLE_PROMPT.format(transcript=transcript)


class StreamController:
    """Owns the single generation slot and persists what it produces."""

    def __init__(
        self,
        store: ConversationStore,
        backend: ModelBackend,
        presenter: Presenter,
        title_model: str = TITLE_MODEL,
    ):
        self.store = store
        self.backend = backend
        self.presenter = presenter
        self.title_model = title_model
        self._state = StreamState.IDLE
        self._session: StreamingSession | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._state is not StreamState.IDLE

    @property
    def conversation_id(self) -> int | None:
        """Id of the conversation the in-flight reply belongs to."""
        session = self._session
        return session.conversation_id if session else None

    def begin_send(self, conversation_id: int, prompt: str, chat: ChatSession) -> None:
        """Start streaming a reply to ``prompt``.

        Raises:
            AlreadyStreamingError: another generation is still in flight.
        """
        with self._lock:
            if self._state is not StreamState.IDLE:
                self.presenter.notify("A reply is already being generated", "warning")
                raise AlreadyStreamingError("A reply is already being generated")
            # Stop requests are accepted from here on, even before the stream opens
            session = StreamingSession(conversation_id, _ClosedStream())
            self._session = session
            self._state = StreamState.STREAMING

        logger.debug("Streaming reply for conversation %s", conversation_id)
        try:
            session.stream = chat.stream_reply(prompt)
        except BackendError as exc:
            session.error = exc
            self._finish(StreamState.FAILING)
        except BaseException:
            self._session = None
            self._state = StreamState.IDLE
            raise

    def request_stop(self) -> None:
        """Ask the in-flight generation to stop before its next token."""
        session = self._session
        if session is not None:
            session.cancel_requested.set()

    def step(self) -> bool:
        """Advance the generation by one token. Returns True while still streaming."""
        session = self._session
        if self._state is not StreamState.STREAMING or session is None:
            return False

        if session.cancel_requested.is_set():
            self._finish(StreamState.CANCELLING)
            return False

        try:
            token = session.stream.next()
            if token is not END_OF_STREAM and not isinstance(token, str):
                raise BackendError(f"Backend produced a non-text token: {token!r}")
        except BackendError as exc:
            logger.warning("Stream for conversation %s failed: %s", session.conversation_id, exc)
            session.error = exc
            self._finish(StreamState.FAILING)
            return False
        except Exception as exc:
            logger.exception("Stream for conversation %s crashed", session.conversation_id)
            session.error = exc
            self._finish(StreamState.FAILING)
            return False

        if token is END_OF_STREAM:
            self._finish(StreamState.COMPLETING)
            return False

        session.accumulated += token
        self.presenter.render_streaming_delta(session.accumulated)
        return True

    def drain(self) -> None:
        """Step until the generation reaches a terminal state."""
        while self.step():
            pass

    # -- Terminal states -----------------------------------------------------

    def _finish(self, state: StreamState) -> None:
        session = self._session
        assert session is not None
        self._state = state
        logger.debug("Conversation %s: %s", session.conversation_id, state.value)
        try:
            if state is StreamState.COMPLETING:
                self._save_reply(session, session.accumulated)
            elif state is StreamState.CANCELLING:
                if session.accumulated:
                    self._save_reply(session, session.accumulated + STOP_SUFFIX, titled=False)
                self.presenter.notify("Generation stopped", "info")
            else:
                if session.accumulated:
                    self._save_reply(session, session.accumulated)
                self.presenter.notify(f"Error streaming: {session.error}", "error")
        except LocalChatError as exc:
            logger.warning("Could not save reply: %s", exc)
            self.presenter.notify(f"Could not save reply: {exc}", "error")
        finally:
            session.stream.close()
            self.presenter.clear_streaming_indicator()
            self._session = None
            self._state = StreamState.IDLE
        self._render(session.conversation_id)

    def _save_reply(self, session: StreamingSession, content: str, titled: bool = True) -> None:
        self.store.append_message(session.conversation_id, "assistant", content)
        if titled and self.store.count_messages(session.conversation_id) == 2:
            self._generate_title(session.conversation_id)

    def _generate_title(self, conversation_id: int) -> None:
        """Name the conversation after its first exchange. Failures keep the default."""
        try:
            prompt = build_title_prompt(self.store.list_messages(conversation_id))
            reply = self.backend.open_session(self.title_model).complete(prompt)
            # Leading blank lines are skipped, so "\nTitle" still yields "Title"
            lines = reply.strip().splitlines()
            title = lines[0].strip() if lines else ""
            if title:
                self.store.rename_conversation(conversation_id, title)
                logger.debug("Conversation %s titled %r", conversation_id, title)
        except LocalChatError as exc:
            logger.warning("Title generation failed for conversation %s: %s", conversation_id, exc)
            self.presenter.notify("Could not generate chat title", "warning")

    def _render(self, conversation_id: int) -> None:
        try:
            self.presenter.render_conversation(self.store.list_messages(conversation_id))
            self.presenter.render_conversation_list(
                self.store.list_conversations(), conversation_id
            )
        except LocalChatError as exc:
            logger.warning("Could not reload conversation %s: %s", conversation_id, exc)


class _ClosedStream(TokenStream):
    def next(self):
        return END_OF_STREAM
