"""Chatter command-line interface."""
