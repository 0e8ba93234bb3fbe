"""
Core module initialization.

Contains configuration and runtime status models for the MailSync service.
"""

from .config import Config
from .models import SyncProcessingStatus

__all__ = [
    'Config',
    'SyncProcessingStatus',
]
