"""Central configuration for paths, endpoints and constants."""

import os
from pathlib import Path

# Data directory, override with LOCALCHAT_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("LOCALCHAT_DATA_DIR", str(Path.home() / ".localchat"))
)

# Database path
SQLITE_PATH = DATA_DIR / "chat_history.sqlite"

# Local inference server (Ollama)
OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "http://127.0.0.1:11434")

# Read timeout for backend calls in seconds; unset means wait indefinitely
_timeout = os.environ.get("LOCALCHAT_REQUEST_TIMEOUT")
REQUEST_TIMEOUT = float(_timeout) if _timeout else None
CONNECT_TIMEOUT = 10.0

# Models
DEFAULT_MODEL = os.environ.get("LOCALCHAT_MODEL", "phi4:latest")
TITLE_MODEL = os.environ.get("LOCALCHAT_TITLE_MODEL", "phi4:latest")
AVAILABLE_MODELS = ["phi4:latest", "qwq:latest", "gemma2:27b", "llama3.2:1b"]

# Conversation defaults
DEFAULT_TITLE = "New Chat"
STOP_SUFFIX = " (stopped)"

LOG_LEVEL = os.environ.get("LOCALCHAT_LOG_LEVEL", "WARNING").upper()
