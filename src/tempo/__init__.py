"""Tempo — scheduled AI messages and payments for Telegram groups."""

__version__ = "0.1.0"
