"""SQLite implementation of the cadence repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from ..errors import IdempotencyConflict
from ..graph import CadenceGraph
from .models import (
    EnrollmentStatus,
    LeadEnrollment,
    LinkedAccount,
    ScheduleEntry,
    ScheduleStatus,
    StepInstance,
    utcnow,
)
from .repository import CadenceRepository

_LIVE_PREDICATE = "status NOT IN ('canceled', 'skipped_due_to_state_change')"


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteCadenceRepository(CadenceRepository):
    """Persist cadence state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cadences (
                owner_id TEXT NOT NULL,
                cadence_id TEXT NOT NULL,
                graph_json TEXT NOT NULL,
                status TEXT NOT NULL,
                PRIMARY KEY (owner_id, cadence_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                cadence_id TEXT NOT NULL,
                lead_id TEXT NOT NULL,
                timezone TEXT NOT NULL,
                current_step_id TEXT,
                status TEXT NOT NULL,
                lead_json TEXT,
                signals_json TEXT,
                started_at TEXT NOT NULL,
                last_error TEXT,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (cadence_id, lead_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_instances (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                enrollment_id TEXT NOT NULL,
                cadence_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                lead_id TEXT NOT NULL,
                node_kind TEXT NOT NULL,
                day_offset INTEGER NOT NULL,
                status TEXT NOT NULL,
                branch TEXT,
                inputs_json TEXT,
                rendered_content TEXT,
                result_json TEXT,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (enrollment_id, step_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schedule_entries (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                cadence_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                lead_id TEXT NOT NULL,
                enrollment_id TEXT NOT NULL,
                step_instance_id TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                scheduled_at TEXT NOT NULL,
                timezone TEXT NOT NULL,
                node_kind TEXT NOT NULL,
                channel TEXT,
                status TEXT NOT NULL,
                claimed_at TEXT,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_schedule_live_fingerprint
            ON schedule_entries (fingerprint) WHERE {_LIVE_PREDICATE}
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_schedule_due
            ON schedule_entries (status, scheduled_at)
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS linked_accounts (
                owner_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                account_id TEXT,
                status TEXT NOT NULL,
                connected_at TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (owner_id, provider)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _to_enrollment(row: sqlite3.Row) -> LeadEnrollment:
        return LeadEnrollment(
            id=row["id"],
            owner_id=row["owner_id"],
            cadence_id=row["cadence_id"],
            lead_id=row["lead_id"],
            timezone=row["timezone"],
            current_step_id=row["current_step_id"],
            status=row["status"],
            lead=_load(row["lead_json"]) or {},
            signals=_load(row["signals_json"]) or {},
            started_at=_dt(row["started_at"]),
            last_error=row["last_error"],
            version=row["version"],
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _to_instance(row: sqlite3.Row) -> StepInstance:
        return StepInstance(
            id=row["id"],
            owner_id=row["owner_id"],
            enrollment_id=row["enrollment_id"],
            cadence_id=row["cadence_id"],
            step_id=row["step_id"],
            lead_id=row["lead_id"],
            node_kind=row["node_kind"],
            day_offset=row["day_offset"],
            status=row["status"],
            branch=row["branch"],
            inputs=_load(row["inputs_json"]),
            rendered_content=row["rendered_content"],
            result=_load(row["result_json"]),
            last_error=row["last_error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _to_entry(row: sqlite3.Row) -> ScheduleEntry:
        return ScheduleEntry(
            id=row["id"],
            owner_id=row["owner_id"],
            cadence_id=row["cadence_id"],
            step_id=row["step_id"],
            lead_id=row["lead_id"],
            enrollment_id=row["enrollment_id"],
            step_instance_id=row["step_instance_id"],
            fingerprint=row["fingerprint"],
            scheduled_at=_dt(row["scheduled_at"]),
            timezone=row["timezone"],
            node_kind=row["node_kind"],
            channel=row["channel"],
            status=row["status"],
            claimed_at=_dt(row["claimed_at"]),
            last_error=row["last_error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Graphs
    async def save_graph(self, graph: CadenceGraph) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO cadences (owner_id, cadence_id, graph_json, status)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (owner_id, cadence_id)
            DO UPDATE SET graph_json = excluded.graph_json, status = excluded.status
            """,
            graph.owner_id,
            graph.cadence_id,
            graph.model_dump_json(),
            graph.status.value,
        )

    async def get_graph(self, owner_id: str, cadence_id: str) -> CadenceGraph | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT graph_json FROM cadences WHERE owner_id = ? AND cadence_id = ?",
            owner_id,
            cadence_id,
        )
        if not row:
            return None
        return CadenceGraph.model_validate_json(row["graph_json"])

    async def delete_graph(self, owner_id: str, cadence_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM cadences WHERE owner_id = ? AND cadence_id = ?",
            owner_id,
            cadence_id,
        )

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(self, enrollment: LeadEnrollment) -> LeadEnrollment:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO enrollments (
                id, owner_id, cadence_id, lead_id, timezone, current_step_id, status,
                lead_json, signals_json, started_at, last_error, version, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            enrollment.id,
            enrollment.owner_id,
            enrollment.cadence_id,
            enrollment.lead_id,
            enrollment.timezone,
            enrollment.current_step_id,
            enrollment.status.value,
            _json(enrollment.lead),
            _json(enrollment.signals),
            _ts(enrollment.started_at),
            enrollment.last_error,
            enrollment.version,
            _ts(enrollment.updated_at),
        )
        stored = await self.find_enrollment(
            enrollment.owner_id, enrollment.cadence_id, enrollment.lead_id
        )
        return stored or enrollment

    async def get_enrollment(
        self, owner_id: str, enrollment_id: str
    ) -> LeadEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM enrollments WHERE owner_id = ? AND id = ?",
            owner_id,
            enrollment_id,
        )
        return self._to_enrollment(row) if row else None

    async def find_enrollment(
        self, owner_id: str, cadence_id: str, lead_id: str
    ) -> LeadEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM enrollments WHERE owner_id = ? AND cadence_id = ? AND lead_id = ?",
            owner_id,
            cadence_id,
            lead_id,
        )
        return self._to_enrollment(row) if row else None

    async def list_enrollments(
        self,
        owner_id: str,
        cadence_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[LeadEnrollment]:
        query = "SELECT * FROM enrollments WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if cadence_id is not None:
            query += " AND cadence_id = ?"
            params.append(cadence_id)
        if status is not None:
            query += " AND status = ?"
            params.append(EnrollmentStatus(status).value)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY started_at", *params)
        return [self._to_enrollment(r) for r in rows]

    async def compare_and_swap_enrollment(
        self, enrollment: LeadEnrollment, expected_version: int
    ) -> bool:
        updated_at = utcnow()
        count = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments
            SET timezone = ?, current_step_id = ?, status = ?, lead_json = ?,
                signals_json = ?, last_error = ?, version = ?, updated_at = ?
            WHERE id = ? AND owner_id = ? AND version = ?
            """,
            enrollment.timezone,
            enrollment.current_step_id,
            enrollment.status.value,
            _json(enrollment.lead),
            _json(enrollment.signals),
            enrollment.last_error,
            expected_version + 1,
            _ts(updated_at),
            enrollment.id,
            enrollment.owner_id,
            expected_version,
        )
        if count != 1:
            return False
        enrollment.version = expected_version + 1
        enrollment.updated_at = updated_at
        return True

    # ------------------------------------------------------------------
    # Step instances
    async def create_step_instance(self, instance: StepInstance) -> StepInstance:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO step_instances (
                id, owner_id, enrollment_id, cadence_id, step_id, lead_id, node_kind,
                day_offset, status, branch, inputs_json, rendered_content, result_json,
                last_error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            instance.id,
            instance.owner_id,
            instance.enrollment_id,
            instance.cadence_id,
            instance.step_id,
            instance.lead_id,
            instance.node_kind,
            instance.day_offset,
            instance.status.value,
            instance.branch,
            _json(instance.inputs),
            instance.rendered_content,
            _json(instance.result),
            instance.last_error,
            _ts(instance.created_at),
            _ts(instance.updated_at),
        )
        stored = await self.get_step_instance(
            instance.owner_id, instance.enrollment_id, instance.step_id
        )
        return stored or instance

    async def get_step_instance(
        self, owner_id: str, enrollment_id: str, step_id: str
    ) -> StepInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM step_instances WHERE owner_id = ? AND enrollment_id = ? AND step_id = ?",
            owner_id,
            enrollment_id,
            step_id,
        )
        return self._to_instance(row) if row else None

    async def list_step_instances(
        self, owner_id: str, enrollment_id: str
    ) -> list[StepInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_instances WHERE owner_id = ? AND enrollment_id = ? ORDER BY rowid",
            owner_id,
            enrollment_id,
        )
        return [self._to_instance(r) for r in rows]

    async def update_step_instance(self, instance: StepInstance) -> None:
        instance.updated_at = utcnow()
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_instances
            SET status = ?, branch = ?, inputs_json = ?, rendered_content = ?,
                result_json = ?, last_error = ?, updated_at = ?
            WHERE id = ? AND owner_id = ?
            """,
            instance.status.value,
            instance.branch,
            _json(instance.inputs),
            instance.rendered_content,
            _json(instance.result),
            instance.last_error,
            _ts(instance.updated_at),
            instance.id,
            instance.owner_id,
        )

    # ------------------------------------------------------------------
    # Schedule entries
    async def insert_schedule_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO schedule_entries (
                    id, owner_id, cadence_id, step_id, lead_id, enrollment_id,
                    step_instance_id, fingerprint, scheduled_at, timezone, node_kind,
                    channel, status, claimed_at, last_error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                entry.id,
                entry.owner_id,
                entry.cadence_id,
                entry.step_id,
                entry.lead_id,
                entry.enrollment_id,
                entry.step_instance_id,
                entry.fingerprint,
                _ts(entry.scheduled_at),
                entry.timezone,
                entry.node_kind,
                entry.channel,
                entry.status.value,
                _ts(entry.claimed_at),
                entry.last_error,
                _ts(entry.created_at),
                _ts(entry.updated_at),
            )
        except sqlite3.IntegrityError as exc:
            existing = await self.get_live_schedule_entry(entry.owner_id, entry.fingerprint)
            if existing is None:
                raise
            raise IdempotencyConflict(entry.fingerprint, existing) from exc
        return entry

    async def get_schedule_entry(
        self, owner_id: str, entry_id: str
    ) -> ScheduleEntry | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM schedule_entries WHERE owner_id = ? AND id = ?",
            owner_id,
            entry_id,
        )
        return self._to_entry(row) if row else None

    async def get_live_schedule_entry(
        self, owner_id: str, fingerprint: str
    ) -> ScheduleEntry | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT * FROM schedule_entries WHERE owner_id = ? AND fingerprint = ? AND {_LIVE_PREDICATE}",
            owner_id,
            fingerprint,
        )
        return self._to_entry(row) if row else None

    async def list_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: Optional[str] = None,
        status: Optional[ScheduleStatus] = None,
    ) -> list[ScheduleEntry]:
        query = "SELECT * FROM schedule_entries WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if enrollment_id is not None:
            query += " AND enrollment_id = ?"
            params.append(enrollment_id)
        if status is not None:
            query += " AND status = ?"
            params.append(ScheduleStatus(status).value)
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY scheduled_at", *params
        )
        return [self._to_entry(r) for r in rows]

    async def update_schedule_status(
        self,
        owner_id: str,
        entry_id: str,
        status: ScheduleStatus,
        expected: Optional[ScheduleStatus] = None,
        last_error: Optional[str] = None,
    ) -> bool:
        query = """
            UPDATE schedule_entries
            SET status = ?, last_error = COALESCE(?, last_error), updated_at = ?
            WHERE owner_id = ? AND id = ?
        """
        params: list[Any] = [
            ScheduleStatus(status).value,
            last_error,
            _ts(utcnow()),
            owner_id,
            entry_id,
        ]
        if expected is not None:
            query += " AND status = ?"
            params.append(ScheduleStatus(expected).value)
        count = await asyncio.to_thread(self._execute, query, *params)
        return count == 1

    async def transition_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: str,
        from_status: ScheduleStatus,
        to_status: ScheduleStatus,
    ) -> int:
        return await asyncio.to_thread(
            self._execute,
            """
            UPDATE schedule_entries SET status = ?, updated_at = ?
            WHERE owner_id = ? AND enrollment_id = ? AND status = ?
            """,
            ScheduleStatus(to_status).value,
            _ts(utcnow()),
            owner_id,
            enrollment_id,
            ScheduleStatus(from_status).value,
        )

    def _claim(
        self, now: datetime, limit: int, expired: Optional[datetime]
    ) -> list[sqlite3.Row]:
        # Without a lease the cutoff is NULL and only unclaimed rows match.
        claimable = "(claimed_at IS NULL OR claimed_at <= ?)"
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"""
                SELECT id FROM schedule_entries
                WHERE status = 'scheduled' AND {claimable} AND scheduled_at <= ?
                ORDER BY scheduled_at LIMIT ?
                """,
                (_ts(expired), _ts(now), limit),
            )
            ids = [r["id"] for r in cur.fetchall()]
            claimed = []
            for entry_id in ids:
                cur.execute(
                    f"UPDATE schedule_entries SET claimed_at = ? WHERE id = ? AND {claimable}",
                    (_ts(now), entry_id, _ts(expired)),
                )
                if cur.rowcount == 1:
                    claimed.append(entry_id)
            self._conn.commit()
            if not claimed:
                return []
            marks = ", ".join("?" for _ in claimed)
            cur.execute(
                f"SELECT * FROM schedule_entries WHERE id IN ({marks}) ORDER BY scheduled_at",
                claimed,
            )
            return cur.fetchall()

    async def claim_due_entries(
        self, now: datetime, limit: int = 100, lease: Optional[timedelta] = None
    ) -> list[ScheduleEntry]:
        expired = now - lease if lease is not None else None
        rows = await asyncio.to_thread(self._claim, now, limit, expired)
        return [self._to_entry(r) for r in rows]

    async def release_claim(self, owner_id: str, entry_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute,
            """
            UPDATE schedule_entries SET claimed_at = NULL
            WHERE owner_id = ? AND id = ? AND status = 'scheduled'
            """,
            owner_id,
            entry_id,
        )
        return count == 1

    # ------------------------------------------------------------------
    # Linked accounts
    async def save_linked_account(self, account: LinkedAccount) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO linked_accounts (owner_id, provider, account_id, status, connected_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (owner_id, provider) DO UPDATE SET
                account_id = excluded.account_id,
                status = excluded.status,
                connected_at = excluded.connected_at,
                updated_at = excluded.updated_at
            """,
            account.owner_id,
            account.provider,
            account.account_id,
            account.status,
            _ts(account.connected_at),
            _ts(account.updated_at),
        )

    async def get_linked_account(
        self, owner_id: str, provider: str
    ) -> LinkedAccount | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM linked_accounts WHERE owner_id = ? AND provider = ?",
            owner_id,
            provider,
        )
        if not row:
            return None
        return LinkedAccount(
            owner_id=row["owner_id"],
            provider=row["provider"],
            account_id=row["account_id"],
            status=row["status"],
            connected_at=_dt(row["connected_at"]),
            updated_at=_dt(row["updated_at"]),
        )
