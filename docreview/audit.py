"""
Session Audit Logging

Records every session state transition to a JSON Lines file for
compliance review and debugging.
"""

from typing import Any, Dict, List, Optional, Union
from pathlib import Path
import json
import threading

from .events import AuditSink, TransitionEvent


class JsonlAuditSink(AuditSink):
    """
    Audit sink writing transition events as JSON Lines

    Thread-safe for concurrent sessions.
    """

    def __init__(self, log_file: Union[str, Path] = Path(".docreview/audit.jsonl")):
        """
        Initialize audit sink

        Args:
            log_file: Path to audit log file
        """
        self.log_file = Path(log_file)
        self._lock = threading.Lock()
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: TransitionEvent) -> None:
        line = event.model_dump_json()
        with self._lock:
            with open(self.log_file, 'a') as f:
                f.write(line + '\n')

    def _read(self) -> List[Dict[str, Any]]:
        if not self.log_file.exists():
            return []

        entries = []
        with open(self.log_file, 'r') as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue
        return entries

    def query(
        self,
        session_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        to_status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Query audit entries in write order

        Args:
            session_id: Filter by session
            actor_id: Filter by acting user
            to_status: Filter by resulting status
            limit: Maximum number of entries to return
        """
        entries = []
        for entry in self._read():
            if session_id and entry.get("session_id") != session_id:
                continue
            if actor_id and entry.get("actor_id") != actor_id:
                continue
            if to_status and entry.get("to_status") != to_status:
                continue

            entries.append(entry)
            if limit and len(entries) >= limit:
                break

        return entries

    def get_recent(self, count: int = 10) -> List[Dict[str, Any]]:
        """Most recent audit entries, newest first."""
        return list(reversed(self._read()[-count:]))

    def clear(self) -> None:
        with self._lock:
            if self.log_file.exists():
                self.log_file.unlink()
