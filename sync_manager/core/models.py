"""
Runtime status models for the MailSync service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class SyncProcessingStatus:
    """
    Status tracking for a dispatched account sync.

    Attributes:
        account_id: Account being synchronized
        trigger: What started the sync (poll, push, manual)
        folders: Folders requested; empty means every configured folder
        status: pending, processing, completed or error
        message: Human-readable status message
        start_time: When the dispatch started
        end_time: When the dispatch finished
        results: Per-folder SyncResult dictionaries
        error_details: Error information if the dispatch failed
    """
    account_id: str
    trigger: str = "poll"
    folders: List[str] = field(default_factory=list)
    status: str = "pending"
    message: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    error_details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "trigger": self.trigger,
            "folders": list(self.folders),
            "status": self.status,
            "message": self.message,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "results": list(self.results),
            "error_details": self.error_details,
        }
