"""Lobby coordination engine for the Wordslop party game."""

__version__ = "0.1.0"
