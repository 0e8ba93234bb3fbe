"""
MailSync service package.

Wires the sync engine to configuration, a poll/push scheduler and the HTTP
trigger surface.
"""

__version__ = "0.1.0"

from .realtime_manager import RealTimeSyncManager
