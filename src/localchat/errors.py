"""Error taxonomy shared by the store, the backend adapter and the chat engine."""

from __future__ import annotations

__all__ = [
    "AlreadyStreamingError",
    "BackendError",
    "BusyError",
    "InvalidInput",
    "LocalChatError",
    "NotFound",
    "StorageError",
    "StorageInitError",
    "StorageWriteError",
]


class LocalChatError(Exception):
    """Base class for every error raised by localchat."""


class StorageError(LocalChatError):
    """The chat database could not be read or written."""


class StorageInitError(StorageError):
    """The chat database could not be opened or its schema created."""


class StorageWriteError(StorageError):
    """A write to the chat database failed and was rolled back."""


class NotFound(LocalChatError):
    """No conversation exists with the requested id."""

    def __init__(self, conversation_id: int):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class BackendError(LocalChatError):
    """The model backend failed (network, HTTP status or model error)."""


class AlreadyStreamingError(LocalChatError):
    """A generation is already in flight; only one may run at a time."""


class BusyError(LocalChatError):
    """The action is not allowed while a reply is streaming."""


class InvalidInput(LocalChatError):
    """The message to send is empty or whitespace only."""
