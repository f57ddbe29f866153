"""Chatter services: permission guard, tools, provider adapters, orchestrator and persistence."""
