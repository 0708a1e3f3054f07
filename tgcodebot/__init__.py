"""Telegram bot that runs Claude Code and GitHub CLI coding sessions in Docker containers."""

__version__ = "0.1.0"