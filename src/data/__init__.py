"""Relational storage package."""

from .store import GameStore

__all__ = ["GameStore"]
