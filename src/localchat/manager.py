"""Conversation manager: the chat lifecycle behind every user command."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .backend import ChatSession, ModelBackend
from .config import DEFAULT_MODEL
from .controller import StreamController
from .errors import BusyError, InvalidInput, StorageError
from .presentation import Presenter
from .storage import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class ChatState:
    """Process-local UI state: which chat is open and its backend session."""

    selected_model: str
    active_conversation_id: int | None = None
    active_session: ChatSession | None = None

    def activate(self, conversation_id: int, session: ChatSession | None = None) -> None:
        self.active_conversation_id = conversation_id
        self.active_session = session

    def clear(self) -> None:
        self.active_conversation_id = None
        self.active_session = None

    def drop_session(self) -> None:
        self.active_session = None


class ConversationManager:
    """Maps user commands onto the store, the backend and the stream controller.

    Rejected commands notify the presenter and raise the matching error
    without changing any state.
    """

    def __init__(
        self,
        store: ConversationStore,
        backend: ModelBackend,
        presenter: Presenter,
        controller: StreamController | None = None,
        model: str = DEFAULT_MODEL,
    ):
        self.store = store
        self.backend = backend
        self.presenter = presenter
        self.controller = controller or StreamController(store, backend, presenter)
        self.state = ChatState(selected_model=model)

    @property
    def active_conversation_id(self) -> int | None:
        return self.state.active_conversation_id

    @property
    def is_streaming(self) -> bool:
        return self.controller.is_streaming

    def _reject_if_streaming(self, action: str) -> None:
        if self.controller.is_streaming:
            self.presenter.notify(f"Cannot {action} while a reply is streaming", "warning")
            raise BusyError(f"Cannot {action} while a reply is streaming")

    def refresh_conversation_list(self) -> None:
        self.presenter.render_conversation_list(
            self.store.list_conversations(), self.state.active_conversation_id
        )

    def new_chat(self, model: str | None = None) -> int:
        """Create an empty conversation and make it the active one."""
        self._reject_if_streaming("start a new chat")
        model = model or self.state.selected_model
        try:
            conversation_id = self.store.create_conversation(model)
        except StorageError:
            self.presenter.notify("Error creating new chat", "error")
            raise

        self.state.selected_model = model
        self.state.activate(conversation_id)
        logger.info("New chat %s with %s", conversation_id, model)
        self.presenter.render_conversation([])
        self.refresh_conversation_list()
        return conversation_id

    def select_chat(self, conversation_id: int) -> None:
        """Open a stored conversation and load its history into a new session."""
        self._reject_if_streaming("switch chats")
        conversation = self.store.get_conversation(conversation_id)
        messages = self.store.list_messages(conversation_id)

        session = self.backend.open_session(conversation.model)
        session.load_history(messages)
        self.state.activate(conversation_id, session)
        self.state.selected_model = conversation.model
        logger.info("Selected chat %s (%d messages)", conversation_id, len(messages))
        self.presenter.render_conversation(messages)
        self.refresh_conversation_list()

    def resume_latest(self) -> int | None:
        """Select the most recently created conversation, if there is one."""
        conversation_id = self.store.latest_conversation_id()
        if conversation_id is not None:
            self.select_chat(conversation_id)
        return conversation_id

    def delete_chat(self, conversation_id: int) -> None:
        if self.controller.conversation_id == conversation_id:
            self._reject_if_streaming("delete this chat")
        try:
            self.store.delete_conversation(conversation_id)
        except StorageError:
            self.presenter.notify("Error deleting chat", "error")
            raise

        if self.state.active_conversation_id == conversation_id:
            self.state.clear()
            self.presenter.render_conversation([])
        logger.info("Deleted chat %s", conversation_id)
        self.presenter.notify("Chat deleted", "info")
        self.refresh_conversation_list()

    def send(self, text: str) -> None:
        """Persist ``text`` as a user message and start streaming the reply.

        Raises:
            InvalidInput: ``text`` is blank. Nothing is notified or stored.
            BusyError: a reply is already streaming.
        """
        if not text or not text.strip():
            raise InvalidInput("Nothing to send")
        self._reject_if_streaming("send")

        if self.state.active_conversation_id is None:
            self.new_chat(self.state.selected_model)
        conversation_id = self.state.active_conversation_id
        session = self._ensure_session(conversation_id)

        self.store.append_message(conversation_id, "user", text)
        self.presenter.render_conversation(self.store.list_messages(conversation_id))
        self.controller.begin_send(conversation_id, text, session)

    def _ensure_session(self, conversation_id: int) -> ChatSession:
        """Reuse the cached backend session or open one on the stored history."""
        if self.state.active_session is None:
            model = self.store.get_conversation_model(conversation_id)
            session = self.backend.open_session(model)
            session.load_history(self.store.list_messages(conversation_id))
            self.state.active_session = session
        return self.state.active_session

    def stop(self) -> None:
        if not self.controller.is_streaming:
            return
        self.controller.request_stop()
        self.presenter.notify("Stopping generation...", "info")

    def switch_model(self, model: str) -> None:
        """Use ``model`` for the next reply. Stored messages are left as they are."""
        self.state.selected_model = model
        conversation_id = self.state.active_conversation_id
        if conversation_id is None:
            return
        self.store.set_conversation_model(conversation_id, model)
        self.state.drop_session()
        logger.info("Chat %s switched to %s", conversation_id, model)
        self.presenter.notify(f"Switched to model: {model}", "info")
