"""
Activity Recorder

Append-only, human-readable audit events ("Deploying Token to casper-test",
"Staked 1000 CSPR ..."). Recording is fire-and-forget for the orchestrator.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from .models import utcnow


@dataclass
class ActivityItem:
    kind: str
    description: str
    status: str  # 'pending', 'success', 'failed'
    metadata: Dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=utcnow)


class ActivityRecorder(ABC):

    @abstractmethod
    def record(self, kind: str, description: str, status: str,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        ...

    def recent(self, limit: int = 50) -> List[ActivityItem]:
        return []


class InMemoryActivityRecorder(ActivityRecorder):

    def __init__(self):
        self.items: List[ActivityItem] = []

    def record(self, kind: str, description: str, status: str,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        self.items.append(ActivityItem(kind, description, status, dict(metadata or {})))

    def recent(self, limit: int = 50) -> List[ActivityItem]:
        return list(reversed(self.items[-limit:]))

    def kinds(self) -> List[str]:
        return [item.kind for item in self.items]


class SQLiteActivityRecorder(ActivityRecorder):
    """Activity log table, usually sharing a database file with the ledger"""

    def __init__(self, db_path: str = "operations.db"):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS activities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                description TEXT NOT NULL,
                status TEXT NOT NULL,
                metadata TEXT,
                recorded_at TIMESTAMP NOT NULL
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_activities_recorded ON activities(recorded_at)")
        self.conn.commit()

    def record(self, kind: str, description: str, status: str,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO activities (kind, description, status, metadata, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (kind, description, status, json.dumps(metadata or {}, default=str),
                 utcnow().isoformat()),
            )
            self.conn.commit()

    def recent(self, limit: int = 50) -> List[ActivityItem]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM activities ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            ActivityItem(
                kind=row['kind'],
                description=row['description'],
                status=row['status'],
                metadata=json.loads(row['metadata'] or '{}'),
                recorded_at=datetime.fromisoformat(row['recorded_at']),
            )
            for row in rows
        ]

    def close(self):
        self.conn.close()


def record_safely(recorder: Optional[ActivityRecorder], kind: str, description: str,
                  status: str, metadata: Optional[Dict[str, Any]] = None) -> None:
    """Record an activity; recorder failures are logged, never raised"""
    if recorder is None:
        return
    try:
        recorder.record(kind, description, status, metadata or {})
    except Exception as e:
        logger.warning(f"Activity recorder failed for {kind}: {e}")
