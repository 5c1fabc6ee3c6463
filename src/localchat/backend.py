"""Model backend adapter: chat sessions and pull-based token streams.

The chat engine only talks to the abstract classes at the top of this module.
``OllamaBackend`` implements them against a local Ollama server's
``/api/chat`` endpoint, which streams newline-delimited JSON objects::

    {"message": {"role": "assistant", "content": "Hi"}, "done": false}
    {"message": {"role": "assistant", "content": ""}, "done": true}
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import ExitStack
from typing import Any, Final

import httpx

from .config import CONNECT_TIMEOUT, OLLAMA_BASE_URL, REQUEST_TIMEOUT
from .errors import BackendError
from .models import Turn

logger = logging.getLogger(__name__)


class _EndOfStream:
    __slots__ = ()

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM: Final = _EndOfStream()


class TokenStream(ABC):
    """A cancellable source of incremental text tokens."""

    @abstractmethod
    def next(self) -> str | _EndOfStream:
        """Return the next token, or ``END_OF_STREAM`` once the reply is finished.

        Raises:
            BackendError: the generation failed. The stream is finished
                afterwards and later calls return ``END_OF_STREAM``.
        """

    def close(self) -> None:
        """Release the underlying connection. Safe to call more than once."""


class ChatSession(ABC):
    """A conversation with one model, carrying its prior turns."""

    def __init__(self, model: str):
        self.model = model
        self.turns: list[Turn] = []

    def load_history(self, turns: Iterable[Turn]) -> None:
        """Replace the session's prior context."""
        self.turns = [Turn(role=t.role, content=t.content) for t in turns]

    def record_exchange(self, prompt: str, reply: str) -> None:
        self.turns.append(Turn(role="user", content=prompt))
        if reply:
            self.turns.append(Turn(role="assistant", content=reply))

    @abstractmethod
    def stream_reply(self, prompt: str) -> TokenStream:
        """Start generating a reply to ``prompt``."""

    @abstractmethod
    def complete(self, prompt: str) -> str:
        """Generate a whole reply to ``prompt`` in one blocking call."""


class ModelBackend(ABC):
    @abstractmethod
    def open_session(self, model: str, endpoint: str | None = None) -> ChatSession:
        """Create a session bound to ``model``. Sends nothing."""

    def list_models(self) -> list[str]:
        return []


# -- Ollama --------------------------------------------------------------------


def _timeout() -> httpx.Timeout:
    return httpx.Timeout(REQUEST_TIMEOUT, connect=CONNECT_TIMEOUT)


def _parse_line(line: str) -> dict[str, Any]:
    try:
        chunk = json.loads(line)
    except json.JSONDecodeError as exc:
        raise BackendError(f"Malformed response line: {line[:100]!r}") from exc
    if not isinstance(chunk, dict):
        raise BackendError(f"Unexpected response line: {line[:100]!r}")
    if chunk.get("error"):
        raise BackendError(str(chunk["error"]))
    return chunk


def _content(chunk: dict[str, Any], line: str) -> str:
    """The text carried by a chat response chunk ("" when it has none)."""
    message = chunk.get("message") or {}
    if not isinstance(message, dict):
        raise BackendError(f"Unexpected message in response line: {line[:100]!r}")
    content = message.get("content") or ""
    if not isinstance(content, str):
        raise BackendError(f"Unexpected content in response line: {line[:100]!r}")
    return content


class OllamaTokenStream(TokenStream):
    """Token stream over one streaming ``POST /api/chat`` response."""

    def __init__(
        self,
        session: OllamaSession,
        prompt: str,
        payload: dict[str, Any],
        transport: httpx.BaseTransport | None = None,
    ):
        self._session = session
        self._prompt = prompt
        self._payload = payload
        self._transport = transport
        self._resources: ExitStack | None = None
        self._lines: Iterator[str] | None = None
        self._reply: list[str] = []
        self._finished = False

    def _open(self) -> Iterator[str]:
        url = f"{self._session.endpoint}/api/chat"
        logger.debug("Streaming from %s (model=%s)", url, self._session.model)
        self._resources = ExitStack()
        client = self._resources.enter_context(
            httpx.Client(timeout=_timeout(), transport=self._transport)
        )
        response = self._resources.enter_context(
            client.stream("POST", url, json=self._payload)
        )
        if response.status_code >= 400:
            body = response.read().decode(errors="replace")
            raise BackendError(f"HTTP {response.status_code} from {url}: {body[:500]}")
        return response.iter_lines()

    def next(self) -> str | _EndOfStream:
        if self._finished:
            return END_OF_STREAM
        try:
            if self._lines is None:
                self._lines = self._open()
            for line in self._lines:
                if not line.strip():
                    continue
                chunk = _parse_line(line)
                if chunk.get("done"):
                    self._finish()
                    return END_OF_STREAM
                token = _content(chunk, line)
                if token:
                    self._reply.append(token)
                    return token
            # Connection ended without a "done" marker
            self._finish()
            return END_OF_STREAM
        except httpx.HTTPError as exc:
            self._finish()
            raise BackendError(f"Streaming request failed: {exc}") from exc
        except BackendError:
            self._finish()
            raise

    def close(self) -> None:
        if not self._finished:
            self._finish()

    def _finish(self) -> None:
        self._finished = True
        if self._resources is not None:
            self._resources.close()
            self._resources = None
        self._session.record_exchange(self._prompt, "".join(self._reply))


class OllamaSession(ChatSession):
    def __init__(
        self,
        model: str,
        endpoint: str,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(model)
        self.endpoint = endpoint.rstrip("/")
        self._transport = transport

    def _payload(self, prompt: str, stream: bool) -> dict[str, Any]:
        messages = [t.model_dump() for t in self.turns]
        messages.append({"role": "user", "content": prompt})
        return {"model": self.model, "messages": messages, "stream": stream}

    def stream_reply(self, prompt: str) -> TokenStream:
        return OllamaTokenStream(
            self, prompt, self._payload(prompt, stream=True), transport=self._transport
        )

    def complete(self, prompt: str) -> str:
        url = f"{self.endpoint}/api/chat"
        logger.debug("Completion request to %s (model=%s)", url, self.model)
        try:
            with httpx.Client(timeout=_timeout(), transport=self._transport) as client:
                response = client.post(url, json=self._payload(prompt, stream=False))
        except httpx.HTTPError as exc:
            raise BackendError(f"Completion request failed: {exc}") from exc

        if response.status_code >= 400:
            raise BackendError(f"HTTP {response.status_code} from {url}: {response.text[:500]}")
        chunk = _parse_line(response.text)
        reply = _content(chunk, response.text)
        self.record_exchange(prompt, reply)
        return reply


class OllamaBackend(ModelBackend):
    """Backend for a local Ollama server."""

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def open_session(self, model: str, endpoint: str | None = None) -> OllamaSession:
        return OllamaSession(model, endpoint or self.base_url, transport=self._transport)

    def list_models(self) -> list[str]:
        """Names of the models installed on the server."""
        url = f"{self.base_url}/api/tags"
        try:
            with httpx.Client(timeout=_timeout(), transport=self._transport) as client:
                response = client.get(url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise BackendError(f"Could not list models at {url}: {exc}") from exc
        return [m["name"] for m in data.get("models", []) if m.get("name")]
