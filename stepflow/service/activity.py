from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Literal, Optional

ActivityKind = Literal["logs", "notifications", "execution_results"]

ACTIVITY_KINDS = ("logs", "notifications", "execution_results")


@dataclass
class ActivityEntry:
    tenant_id: str
    kind: str
    content: str
    title: str = ""
    agent_id: Optional[str] = None
    run_id: Optional[str] = None
    level: str = "info"
    meta: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class ActivityStore:
    """In-memory, per-tenant activity feed (run logs, site notices, run summaries).

    Each (tenant, kind) bucket keeps at most ``max_entries_per_kind`` entries;
    the oldest are dropped first.
    """

    def __init__(
        self,
        *,
        max_entries_per_kind: int = 1000,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.max_entries_per_kind = max_entries_per_kind
        self.clock = clock
        self._entries: Dict[tuple[str, str], Deque[ActivityEntry]] = {}
        self._lock = threading.Lock()

    def append(
        self,
        tenant_id: str,
        kind: str,
        content: str,
        *,
        title: str = "",
        agent_id: Optional[str] = None,
        run_id: Optional[str] = None,
        level: str = "info",
        meta: Optional[Dict[str, Any]] = None,
    ) -> ActivityEntry:
        if kind not in ACTIVITY_KINDS:
            raise ValueError(f"unknown activity kind {kind!r}")
        entry = ActivityEntry(
            tenant_id=tenant_id,
            kind=kind,
            content=content,
            title=title,
            agent_id=agent_id,
            run_id=run_id,
            level=level,
            meta=dict(meta or {}),
            created_at=self.clock(),
        )
        with self._lock:
            bucket = self._entries.setdefault(
                (tenant_id, kind), deque(maxlen=self.max_entries_per_kind)
            )
            bucket.append(entry)
        return entry

    def query(
        self,
        tenant_id: str,
        kind: str,
        *,
        keyword: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ActivityEntry]:
        """Entries newest first, filtered by case-insensitive keyword and start time."""
        with self._lock:
            entries = list(self._entries.get((tenant_id, kind), ()))
        needle = (keyword or "").strip().lower()
        matched = []
        for entry in reversed(entries):
            if since is not None and entry.created_at < since:
                continue
            if needle and needle not in f"{entry.title}\n{entry.content}".lower():
                continue
            matched.append(entry)
            if len(matched) >= limit:
                break
        return matched

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
