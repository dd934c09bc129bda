"""Append-only JSONL journal of orchestration events."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List
import json
import logging
import threading
import time

logger = logging.getLogger(__name__)


@dataclass
class AuditLog:
    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def log(self, event: str, data: Dict[str, Any] | None = None) -> None:
        payload = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "event": event,
            "data": data or {},
        }
        line = json.dumps(payload, default=str) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)

    def read(self, request_id: str | None = None, limit: int = 200) -> List[Dict[str, Any]]:
        """Most recent entries, optionally for one request."""
        if not self.path.exists():
            return []
        entries: List[Dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    logger.debug("Skipping malformed journal line")
                    continue
                if request_id and (entry.get("data") or {}).get("request_id") != request_id:
                    continue
                entries.append(entry)
        return entries[-limit:] if limit else entries
