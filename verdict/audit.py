"""Append-only JSONL audit trail for moderation writes."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import json
import logging

from verdict.types import utc_now

logger = logging.getLogger(__name__)


@dataclass
class AuditLog:
    path: Path

    def log(self, event: str, data: Dict[str, Any] | None = None, actor: str | None = None) -> bool:
        """Append one entry. Failures are logged and reported as False, never raised."""
        payload = {
            "timestamp": utc_now().isoformat(timespec="seconds"),
            "event": event,
            "actor": actor or "system",
            "data": data or {},
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, default=str) + "\n")
        except (OSError, TypeError, ValueError):
            logger.warning("Failed to write audit event %s", event, exc_info=True)
            return False
        return True

    def entries(self, event: str | None = None) -> list[Dict[str, Any]]:
        if not self.path.exists():
            return []
        results = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if event is None or entry.get("event") == event:
                results.append(entry)
        return results
