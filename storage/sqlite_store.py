# storage/sqlite_store.py
"""
SQLite storage engine for traces, steps and details

Three-table design, each row keyed by its generated ID:
1. traces  - one row per webhook/cron invocation
2. steps   - FK trace_id
3. details - FK step_id and trace_id

Every row keeps its full JSON document in `data`; the columns beside it
exist only to back the query service's indexes (status, correlation IDs,
trace_id, start time).
"""

import asyncio
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from observability.models import CORRELATION_FIELDS
from storage.exceptions import StoreUnavailableError, TrackingStoreError
from storage.store import (
    CleanupResult,
    TRACE_DEFAULTS,
    TracePage,
    TrackingStore,
    decode_cursor,
    encode_cursor,
    new_row,
    terminal_patch,
)


_TRACE_COLUMNS = ("system", "status", "date_started") + CORRELATION_FIELDS


class SQLiteTrackingStore(TrackingStore):
    """
    SQLite-backed tracking store.

    All statements run on a worker thread through asyncio.to_thread and are
    serialized by a lock, so one connection is shared safely.
    """

    SCHEMA_VERSION = "1.0.0"

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> "SQLiteTrackingStore":
        """Open the database and make sure the schema exists."""
        if self.conn is not None:
            return self
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        self.init_schema()
        return self

    def init_schema(self) -> None:
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS _metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS traces (
                trace_id TEXT PRIMARY KEY,
                system TEXT,
                status TEXT NOT NULL,
                date_started INTEGER NOT NULL,
                contact_id TEXT,
                opportunity_id TEXT,
                matter_id TEXT,
                invoice_id TEXT,
                appointment_id TEXT,
                data TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_traces_status ON traces(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_traces_started ON traces(date_started, trace_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_traces_system ON traces(system, date_started)")
        for field_name in CORRELATION_FIELDS:
            cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_traces_{field_name} ON traces({field_name})")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS steps (
                step_id TEXT PRIMARY KEY,
                trace_id TEXT NOT NULL,
                sequence INTEGER,
                data TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_steps_trace_id ON steps(trace_id)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS details (
                detail_id TEXT PRIMARY KEY,
                trace_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                sequence INTEGER,
                data TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_details_trace_id ON details(trace_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_details_step_id ON details(step_id)")

        cursor.execute("""
            INSERT OR REPLACE INTO _metadata (key, value)
            VALUES ('schema_version', ?)
        """, (self.SCHEMA_VERSION,))

        self.conn.commit()

    async def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # ============================================================
    # EXECUTION
    # ============================================================

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        def call() -> Any:
            with self._lock:
                if self.conn is None:
                    self.connect()
                try:
                    result = fn(self.conn)
                    self.conn.commit()
                    return result
                except sqlite3.Error as e:
                    self.conn.rollback()
                    raise TrackingStoreError(str(e)) from e

        return await asyncio.to_thread(call)

    @staticmethod
    def _load(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        return json.loads(row["data"]) if row is not None else None

    @staticmethod
    def _dump(document: Dict[str, Any]) -> str:
        return json.dumps(document, default=str)

    def _write_trace(self, conn: sqlite3.Connection, document: Dict[str, Any]) -> None:
        conn.execute(
            f"""
            INSERT OR REPLACE INTO traces (trace_id, {", ".join(_TRACE_COLUMNS)}, data)
            VALUES (?, {", ".join("?" for _ in _TRACE_COLUMNS)}, ?)
            """,
            (document["trace_id"], *(document.get(column) for column in _TRACE_COLUMNS), self._dump(document)),
        )

    # ============================================================
    # TRACES
    # ============================================================

    async def create_trace(self, row: Dict[str, Any]) -> None:
        document = new_row(row, self.now_ms(), TRACE_DEFAULTS)
        await self._run(lambda conn: self._write_trace(conn, document))

    async def finish_trace(self, trace_id: str, status: str, fields: Dict[str, Any]) -> bool:
        now_ms = self.now_ms()

        def apply(conn: sqlite3.Connection) -> bool:
            document = self._load(conn.execute(
                "SELECT data FROM traces WHERE trace_id = ?", (trace_id,)
            ).fetchone())
            if document is None:
                return False
            patch = terminal_patch(document, status, fields, now_ms)
            if patch is None:
                return False
            document.update(patch)
            self._write_trace(conn, document)
            return True

        return await self._run(apply)

    async def update_trace(self, trace_id: str, fields: Dict[str, Any]) -> bool:
        fields = {key: value for key, value in fields.items() if key != "status" and value is not None}

        def apply(conn: sqlite3.Connection) -> bool:
            document = self._load(conn.execute(
                "SELECT data FROM traces WHERE trace_id = ?", (trace_id,)
            ).fetchone())
            if document is None:
                return False
            document.update(fields)
            self._write_trace(conn, document)
            return True

        return await self._run(apply)

    # ============================================================
    # STEPS / DETAILS
    # ============================================================

    async def create_step(self, row: Dict[str, Any]) -> None:
        document = new_row(row, self.now_ms())
        await self._run(lambda conn: conn.execute(
            "INSERT OR REPLACE INTO steps (step_id, trace_id, sequence, data) VALUES (?, ?, ?, ?)",
            (document["step_id"], document["trace_id"], document.get("sequence"), self._dump(document)),
        ))

    async def finish_step(self, step_id: str, status: str, fields: Dict[str, Any]) -> bool:
        return await self._finish_child("steps", "step_id", step_id, status, fields)

    async def create_detail(self, row: Dict[str, Any]) -> None:
        document = new_row(row, self.now_ms())
        await self._run(lambda conn: conn.execute(
            """
            INSERT OR REPLACE INTO details (detail_id, trace_id, step_id, sequence, data)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                document["detail_id"],
                document["trace_id"],
                document["step_id"],
                document.get("sequence"),
                self._dump(document),
            ),
        ))

    async def finish_detail(self, detail_id: str, status: str, fields: Dict[str, Any]) -> bool:
        return await self._finish_child("details", "detail_id", detail_id, status, fields)

    async def _finish_child(
        self,
        table: str,
        key_column: str,
        key: str,
        status: str,
        fields: Dict[str, Any],
    ) -> bool:
        now_ms = self.now_ms()

        def apply(conn: sqlite3.Connection) -> bool:
            document = self._load(conn.execute(
                f"SELECT data FROM {table} WHERE {key_column} = ?", (key,)
            ).fetchone())
            if document is None:
                return False
            patch = terminal_patch(document, status, fields, now_ms)
            if patch is None:
                return False
            document.update(patch)
            conn.execute(
                f"UPDATE {table} SET data = ? WHERE {key_column} = ?",
                (self._dump(document), key),
            )
            return True

        return await self._run(apply)

    # ============================================================
    # READS
    # ============================================================

    async def get_trace(self, trace_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(lambda conn: self._load(conn.execute(
            "SELECT data FROM traces WHERE trace_id = ?", (trace_id,)
        ).fetchone()))

    async def list_traces(
        self,
        system: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TracePage:
        clauses: List[str] = []
        params: List[Any] = []
        if system is not None:
            clauses.append("system = ?")
            params.append(system)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        position = decode_cursor(cursor)
        if position is not None:
            clauses.append("(date_started < ? OR (date_started = ? AND trace_id < ?))")
            params.extend([position[0], position[0], position[1]])

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT data FROM traces {where}
            ORDER BY date_started DESC, trace_id DESC
            LIMIT ?
        """
        params.append(limit + 1)

        rows = await self._run(lambda conn: [self._load(r) for r in conn.execute(sql, params).fetchall()])
        has_more = len(rows) > limit
        items = rows[:limit]
        return TracePage(
            items=items,
            has_more=has_more,
            next_cursor=encode_cursor(items[-1]) if has_more and items else None,
        )

    async def find_traces(self, field_name: str, value: str, limit: int = 50) -> List[Dict[str, Any]]:
        self.check_correlation_field(field_name)
        sql = f"""
            SELECT data FROM traces WHERE {field_name} = ?
            ORDER BY date_started DESC, trace_id DESC
            LIMIT ?
        """
        return await self._run(lambda conn: [
            self._load(r) for r in conn.execute(sql, (value, limit)).fetchall()
        ])

    async def get_steps(self, trace_id: str) -> List[Dict[str, Any]]:
        return await self._run(lambda conn: [
            self._load(r) for r in conn.execute(
                "SELECT data FROM steps WHERE trace_id = ?", (trace_id,)
            ).fetchall()
        ])

    async def get_details(self, trace_id: str) -> List[Dict[str, Any]]:
        return await self._run(lambda conn: [
            self._load(r) for r in conn.execute(
                "SELECT data FROM details WHERE trace_id = ?", (trace_id,)
            ).fetchall()
        ])

    async def scan_traces(
        self,
        system: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if system is not None:
            clauses.append("system = ?")
            params.append(system)
        if since is not None:
            clauses.append("date_started >= ?")
            params.append(since)
        if until is not None:
            clauses.append("date_started <= ?")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        return await self._run(lambda conn: [
            self._load(r) for r in conn.execute(f"SELECT data FROM traces {where}", params).fetchall()
        ])

    async def delete_traces_before(self, cutoff_ms: int, batch_size: int = 100) -> CleanupResult:
        def apply(conn: sqlite3.Connection) -> CleanupResult:
            trace_ids = [
                row["trace_id"] for row in conn.execute(
                    """
                    SELECT trace_id FROM traces WHERE date_started < ?
                    ORDER BY date_started ASC LIMIT ?
                    """,
                    (cutoff_ms, batch_size + 1),
                ).fetchall()
            ]
            result = CleanupResult(has_more=len(trace_ids) > batch_size)
            for trace_id in trace_ids[:batch_size]:
                result.deleted_details += conn.execute(
                    "DELETE FROM details WHERE trace_id = ?", (trace_id,)
                ).rowcount
                result.deleted_steps += conn.execute(
                    "DELETE FROM steps WHERE trace_id = ?", (trace_id,)
                ).rowcount
                result.deleted_traces += conn.execute(
                    "DELETE FROM traces WHERE trace_id = ?", (trace_id,)
                ).rowcount
            return result

        return await self._run(apply)
