"""
Chatter - terminal chat client for Gemini and Ollama models.

This package provides a streaming conversation engine with an optional
agent mode in which the model may call a small set of filesystem tools
inside operator-approved directories.
"""

__version__ = "1.0.0"
__author__ = "Chatter Development Team"

__all__ = [
    "models",
    "services",
    "lib",
    "cli"
]
