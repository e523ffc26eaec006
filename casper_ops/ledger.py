"""
Operation Ledger

Durable record of every long-running operation and its lifecycle stage.

The orchestrator only needs create / update / get / list_by_owner; writes
are single-row and keyed by operation id. Two implementations:
- SQLiteOperationLedger: persistent, for the platform
- InMemoryOperationLedger: for tests and sandbox runs
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import UnknownOperation
from .models import Operation, OperationKind


class OperationLedger(ABC):
    """Narrow ledger interface consumed by the orchestrator"""

    @abstractmethod
    def create(self, operation: Operation) -> None:
        """Persist a new operation. Raises ValueError on duplicate id."""
        ...

    @abstractmethod
    def update(self, operation_id: str, changes: Dict[str, Any]) -> Operation:
        """Apply a partial update (Operation field name -> new value)."""
        ...

    @abstractmethod
    def get(self, operation_id: str) -> Optional[Operation]:
        ...

    @abstractmethod
    def list_by_owner(self, owner_key: str, kind: Optional[OperationKind] = None) -> List[Operation]:
        ...

    @abstractmethod
    def list_all(self, kind: Optional[OperationKind] = None) -> List[Operation]:
        ...

    def close(self):
        pass


def _apply_changes(operation: Operation, changes: Dict[str, Any]) -> Operation:
    for name, value in changes.items():
        if not hasattr(operation, name):
            raise ValueError(f"Unknown operation field: {name}")
        if name in ('id', 'kind', 'owner_key', 'created_at'):
            raise ValueError(f"Operation field {name} is immutable")
        setattr(operation, name, value)
    return operation


class InMemoryOperationLedger(OperationLedger):
    """Dict-backed ledger; stores serialised copies so callers never share state"""

    def __init__(self):
        self._rows: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def create(self, operation: Operation) -> None:
        with self._lock:
            if operation.id in self._rows:
                raise ValueError(f"Duplicate operation id: {operation.id}")
            self._rows[operation.id] = operation.to_dict()

    def update(self, operation_id: str, changes: Dict[str, Any]) -> Operation:
        with self._lock:
            row = self._rows.get(operation_id)
            if row is None:
                raise UnknownOperation(operation_id)
            operation = _apply_changes(Operation.from_dict(row), changes)
            self._rows[operation_id] = operation.to_dict()
            return operation

    def get(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            row = self._rows.get(operation_id)
            return Operation.from_dict(row) if row else None

    def list_by_owner(self, owner_key: str, kind: Optional[OperationKind] = None) -> List[Operation]:
        return [op for op in self.list_all(kind) if op.owner_key == owner_key]

    def list_all(self, kind: Optional[OperationKind] = None) -> List[Operation]:
        with self._lock:
            operations = [Operation.from_dict(row) for row in self._rows.values()]
        if kind is not None:
            operations = [op for op in operations if op.kind == kind]
        return sorted(operations, key=lambda op: op.created_at)


class SQLiteOperationLedger(OperationLedger):
    """
    SQLite ledger

    Features:
    - One row per operation, keyed by id
    - Kind-specific payload / result stored as JSON
    - Indexes on owner, kind and stage for dashboard queries
    """

    def __init__(self, db_path: str = "operations.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for a throwaway ledger)
        """
        self.db_path = db_path if db_path == ":memory:" else str(Path(db_path))
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._initialize_db()
        logger.info(f"Operation ledger initialized: {self.db_path}")

    def _initialize_db(self):
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS operations (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                owner_key TEXT NOT NULL,
                stage TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL,
                result TEXT,
                error TEXT,
                created_at TIMESTAMP NOT NULL,
                stage_entered_at TIMESTAMP NOT NULL,
                last_polled_at TIMESTAMP,
                terminal_at TIMESTAMP,
                CONSTRAINT valid_kind CHECK (kind IN ('deployment', 'stake', 'bridge')),
                CONSTRAINT non_negative_attempts CHECK (attempts >= 0)
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_operations_owner ON operations(owner_key)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_operations_kind ON operations(kind)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_operations_stage ON operations(stage)")
        self.conn.commit()
        logger.debug("Ledger tables created successfully")

    @staticmethod
    def _to_row(operation: Operation) -> Dict:
        data = operation.to_dict()
        data['payload'] = json.dumps(data['payload'])
        data['result'] = json.dumps(data['result']) if data['result'] is not None else None
        return data

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Operation:
        data = dict(row)
        data['payload'] = json.loads(data['payload'])
        data['result'] = json.loads(data['result']) if data['result'] else None
        return Operation.from_dict(data)

    def create(self, operation: Operation) -> None:
        row = self._to_row(operation)
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO operations (
                        id, kind, owner_key, stage, attempts, payload, result, error,
                        created_at, stage_entered_at, last_polled_at, terminal_at
                    ) VALUES (
                        :id, :kind, :owner_key, :stage, :attempts, :payload, :result, :error,
                        :created_at, :stage_entered_at, :last_polled_at, :terminal_at
                    )
                """, row)
                self.conn.commit()
            except sqlite3.IntegrityError:
                self.conn.rollback()
                logger.error(f"✗ Duplicate operation record: {operation.id}")
                raise ValueError(f"Duplicate operation id: {operation.id}")
        logger.debug(f"Operation recorded: {operation.id} ({operation.kind.value})")

    def update(self, operation_id: str, changes: Dict[str, Any]) -> Operation:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
            if row is None:
                raise UnknownOperation(operation_id)

            operation = _apply_changes(self._from_row(row), changes)
            data = self._to_row(operation)
            try:
                self.conn.execute("""
                    UPDATE operations
                    SET stage = :stage, attempts = :attempts, payload = :payload,
                        result = :result, error = :error, stage_entered_at = :stage_entered_at,
                        last_polled_at = :last_polled_at, terminal_at = :terminal_at
                    WHERE id = :id
                """, data)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"Error updating operation {operation_id}: {e}")
                raise
        return operation

    def get(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
        return self._from_row(row) if row else None

    def list_by_owner(self, owner_key: str, kind: Optional[OperationKind] = None) -> List[Operation]:
        query = "SELECT * FROM operations WHERE owner_key = ?"
        params: List[Any] = [owner_key]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at, rowid"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._from_row(row) for row in rows]

    def list_all(self, kind: Optional[OperationKind] = None) -> List[Operation]:
        query = "SELECT * FROM operations"
        params: List[Any] = []
        if kind is not None:
            query += " WHERE kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at, rowid"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._from_row(row) for row in rows]

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Operation ledger closed")
