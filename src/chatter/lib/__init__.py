"""Chatter library: configuration, logging and tracing."""
