"""Persistence layer for the sync engine."""

from .repository import SyncRepository

__all__ = ["SyncRepository"]
