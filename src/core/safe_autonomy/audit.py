"""
Safe Autonomy: Audit Trail

Subscribes to the event bus and turns each event into an AuditEntry.
Optionally persists to JSONL (one JSON object per line). Never modifies or
deletes existing lines. Thread-safe via threading lock.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import AuditConfig
from .event_bus import Event, EventBus
from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditTrail:
    """Append-only log of AuditEntry records."""

    def __init__(self, config: Optional[AuditConfig] = None):
        self._config = config or AuditConfig()
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()
        self._load()

    def attach(self, bus: EventBus) -> None:
        """Record every event published on the bus."""
        bus.subscribe_all(self.on_event)

    def detach(self, bus: EventBus) -> None:
        bus.unsubscribe(self.on_event)

    def on_event(self, event: Event) -> None:
        payload = dict(event.payload)
        entity_id = payload.pop("entity_id", "")
        actor = payload.pop("actor", "system")
        self.record(
            entity_id=entity_id,
            entity_kind=event.kind,
            transition=event.transition,
            actor=actor,
            details=payload,
            timestamp=datetime.fromtimestamp(event.timestamp, tz=timezone.utc),
        )

    def record(
        self,
        entity_id: str,
        entity_kind: str,
        transition: str,
        actor: str = "system",
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[AuditEntry]:
        """Append a new entry. Persist immediately."""
        if not self._config.enabled:
            return None
        entry = AuditEntry(
            entity_id=entity_id,
            entity_kind=entity_kind,
            transition=transition,
            actor=actor,
            details=details or {},
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def query(
        self,
        entity_id: Optional[str] = None,
        entity_kind: Optional[str] = None,
        transition: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEntry]:
        """Entries matching every given filter, oldest first."""
        with self._lock:
            entries = list(self._entries)
        return [
            e for e in entries
            if (entity_id is None or e.entity_id == entity_id)
            and (entity_kind is None or e.entity_kind == entity_kind)
            and (transition is None or e.transition == transition)
            and (since is None or e.timestamp >= since)
        ]

    def get_recent(self, n: int = 100) -> List[AuditEntry]:
        """Last N entries, newest first."""
        with self._lock:
            return list(reversed(self._entries[-n:]))

    @property
    def total_entries(self) -> int:
        with self._lock:
            return len(self._entries)

    def _persist(self, entry: AuditEntry) -> None:
        """Append single entry as JSON line to the JSONL file."""
        if not self._config.path:
            return
        path = Path(self._config.path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        except Exception as e:
            logger.error("Failed to persist audit entry %s: %s", entry.id, e)

    def _load(self) -> None:
        """Load existing entries from the JSONL file."""
        if not self._config.path:
            return
        path = Path(self._config.path)
        if not path.exists():
            return

        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    self._entries.append(AuditEntry.from_dict(json.loads(line)))
            logger.info("Loaded %d audit entries from %s", len(self._entries), path)
        except Exception as e:
            logger.error("Failed to load audit trail: %s", e)
