"""Data models for conversations and messages."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

Role = Literal["user", "assistant"]
NotifyLevel = Literal["info", "warning", "error"]


class Turn(BaseModel):
    role: Role
    content: str


class Message(Turn):
    id: int
    conversation_id: int
    created_at: str


class ConversationSummary(BaseModel):
    id: int
    title: str
    created_at: str


class Conversation(ConversationSummary):
    model: str
