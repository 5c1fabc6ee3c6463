"""localchat: chat with locally hosted language models."""

__version__ = "0.1.0"
