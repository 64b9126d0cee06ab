"""PostgreSQL implementation of the cadence repository."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Optional

import asyncpg

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


def _json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 3"
    return int(status.split()[-1])


class PostgresCadenceRepository(CadenceRepository):
    """Persist cadence state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cadences (
                owner_id TEXT NOT NULL,
                cadence_id TEXT NOT NULL,
                graph JSONB NOT NULL,
                status TEXT NOT NULL,
                PRIMARY KEY (owner_id, cadence_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                cadence_id TEXT NOT NULL,
                lead_id TEXT NOT NULL,
                timezone TEXT NOT NULL,
                current_step_id TEXT,
                status TEXT NOT NULL,
                lead JSONB,
                signals JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                last_error TEXT,
                version INTEGER NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                UNIQUE (cadence_id, lead_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_instances (
                seq BIGSERIAL,
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
                inputs JSONB,
                rendered_content TEXT,
                result JSONB,
                last_error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                UNIQUE (enrollment_id, step_id)
            )
            """
        )
        await conn.execute(
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
                scheduled_at TIMESTAMPTZ NOT NULL,
                timezone TEXT NOT NULL,
                node_kind TEXT NOT NULL,
                channel TEXT,
                status TEXT NOT NULL,
                claimed_at TIMESTAMPTZ,
                last_error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_schedule_live_fingerprint
            ON schedule_entries (fingerprint) WHERE {_LIVE_PREDICATE}
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS linked_accounts (
                owner_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                account_id TEXT,
                status TEXT NOT NULL,
                connected_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (owner_id, provider)
            )
            """
        )

    @staticmethod
    def _to_enrollment(row: asyncpg.Record) -> LeadEnrollment:
        data = dict(row)
        data["lead"] = _load(data["lead"]) or {}
        data["signals"] = _load(data["signals"]) or {}
        return LeadEnrollment(**data)

    @staticmethod
    def _to_instance(row: asyncpg.Record) -> StepInstance:
        data = dict(row)
        data.pop("seq", None)
        data["inputs"] = _load(data["inputs"])
        data["result"] = _load(data["result"])
        return StepInstance(**data)

    @staticmethod
    def _to_entry(row: asyncpg.Record) -> ScheduleEntry:
        return ScheduleEntry(**dict(row))

    # ------------------------------------------------------------------
    async def save_graph(self, graph: CadenceGraph) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO cadences (owner_id, cadence_id, graph, status)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (owner_id, cadence_id)
                DO UPDATE SET graph = EXCLUDED.graph, status = EXCLUDED.status
                """,
                graph.owner_id,
                graph.cadence_id,
                graph.model_dump_json(),
                graph.status.value,
            )
        finally:
            await conn.close()

    async def get_graph(self, owner_id: str, cadence_id: str) -> CadenceGraph | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT graph FROM cadences WHERE owner_id = $1 AND cadence_id = $2",
                owner_id,
                cadence_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return CadenceGraph.model_validate(_load(row["graph"]))

    async def delete_graph(self, owner_id: str, cadence_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM cadences WHERE owner_id = $1 AND cadence_id = $2",
                owner_id,
                cadence_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: LeadEnrollment) -> LeadEnrollment:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO enrollments (
                    id, owner_id, cadence_id, lead_id, timezone, current_step_id, status,
                    lead, signals, started_at, last_error, version, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (cadence_id, lead_id) DO NOTHING
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
                enrollment.started_at,
                enrollment.last_error,
                enrollment.version,
                enrollment.updated_at,
            )
            row = await conn.fetchrow(
                "SELECT * FROM enrollments WHERE owner_id = $1 AND cadence_id = $2 AND lead_id = $3",
                enrollment.owner_id,
                enrollment.cadence_id,
                enrollment.lead_id,
            )
        finally:
            await conn.close()
        return self._to_enrollment(row) if row else enrollment

    async def get_enrollment(
        self, owner_id: str, enrollment_id: str
    ) -> LeadEnrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM enrollments WHERE owner_id = $1 AND id = $2",
                owner_id,
                enrollment_id,
            )
        finally:
            await conn.close()
        return self._to_enrollment(row) if row else None

    async def find_enrollment(
        self, owner_id: str, cadence_id: str, lead_id: str
    ) -> LeadEnrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM enrollments WHERE owner_id = $1 AND cadence_id = $2 AND lead_id = $3",
                owner_id,
                cadence_id,
                lead_id,
            )
        finally:
            await conn.close()
        return self._to_enrollment(row) if row else None

    async def list_enrollments(
        self,
        owner_id: str,
        cadence_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[LeadEnrollment]:
        query = "SELECT * FROM enrollments WHERE owner_id = $1"
        params: list[Any] = [owner_id]
        if cadence_id is not None:
            params.append(cadence_id)
            query += f" AND cadence_id = ${len(params)}"
        if status is not None:
            params.append(EnrollmentStatus(status).value)
            query += f" AND status = ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY started_at", *params)
        finally:
            await conn.close()
        return [self._to_enrollment(r) for r in rows]

    async def compare_and_swap_enrollment(
        self, enrollment: LeadEnrollment, expected_version: int
    ) -> bool:
        updated_at = utcnow()
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE enrollments
                SET timezone = $1, current_step_id = $2, status = $3, lead = $4,
                    signals = $5, last_error = $6, version = $7, updated_at = $8
                WHERE id = $9 AND owner_id = $10 AND version = $11
                """,
                enrollment.timezone,
                enrollment.current_step_id,
                enrollment.status.value,
                _json(enrollment.lead),
                _json(enrollment.signals),
                enrollment.last_error,
                expected_version + 1,
                updated_at,
                enrollment.id,
                enrollment.owner_id,
                expected_version,
            )
        finally:
            await conn.close()
        if _affected(status) != 1:
            return False
        enrollment.version = expected_version + 1
        enrollment.updated_at = updated_at
        return True

    # ------------------------------------------------------------------
    async def create_step_instance(self, instance: StepInstance) -> StepInstance:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_instances (
                    id, owner_id, enrollment_id, cadence_id, step_id, lead_id, node_kind,
                    day_offset, status, branch, inputs, rendered_content, result,
                    last_error, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
                ON CONFLICT (enrollment_id, step_id) DO NOTHING
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
                instance.created_at,
                instance.updated_at,
            )
            row = await conn.fetchrow(
                "SELECT * FROM step_instances WHERE owner_id = $1 AND enrollment_id = $2 AND step_id = $3",
                instance.owner_id,
                instance.enrollment_id,
                instance.step_id,
            )
        finally:
            await conn.close()
        return self._to_instance(row) if row else instance

    async def get_step_instance(
        self, owner_id: str, enrollment_id: str, step_id: str
    ) -> StepInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM step_instances WHERE owner_id = $1 AND enrollment_id = $2 AND step_id = $3",
                owner_id,
                enrollment_id,
                step_id,
            )
        finally:
            await conn.close()
        return self._to_instance(row) if row else None

    async def list_step_instances(
        self, owner_id: str, enrollment_id: str
    ) -> list[StepInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_instances WHERE owner_id = $1 AND enrollment_id = $2 ORDER BY seq",
                owner_id,
                enrollment_id,
            )
        finally:
            await conn.close()
        return [self._to_instance(r) for r in rows]

    async def update_step_instance(self, instance: StepInstance) -> None:
        instance.updated_at = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE step_instances
                SET status = $1, branch = $2, inputs = $3, rendered_content = $4,
                    result = $5, last_error = $6, updated_at = $7
                WHERE id = $8 AND owner_id = $9
                """,
                instance.status.value,
                instance.branch,
                _json(instance.inputs),
                instance.rendered_content,
                _json(instance.result),
                instance.last_error,
                instance.updated_at,
                instance.id,
                instance.owner_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def insert_schedule_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO schedule_entries (
                    id, owner_id, cadence_id, step_id, lead_id, enrollment_id,
                    step_instance_id, fingerprint, scheduled_at, timezone, node_kind,
                    channel, status, claimed_at, last_error, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                """,
                entry.id,
                entry.owner_id,
                entry.cadence_id,
                entry.step_id,
                entry.lead_id,
                entry.enrollment_id,
                entry.step_instance_id,
                entry.fingerprint,
                entry.scheduled_at,
                entry.timezone,
                entry.node_kind,
                entry.channel,
                entry.status.value,
                entry.claimed_at,
                entry.last_error,
                entry.created_at,
                entry.updated_at,
            )
        except asyncpg.UniqueViolationError as exc:
            existing = await conn.fetchrow(
                f"SELECT * FROM schedule_entries WHERE fingerprint = $1 AND {_LIVE_PREDICATE}",
                entry.fingerprint,
            )
            raise IdempotencyConflict(
                entry.fingerprint, self._to_entry(existing) if existing else None
            ) from exc
        finally:
            await conn.close()
        return entry

    async def get_schedule_entry(
        self, owner_id: str, entry_id: str
    ) -> ScheduleEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM schedule_entries WHERE owner_id = $1 AND id = $2",
                owner_id,
                entry_id,
            )
        finally:
            await conn.close()
        return self._to_entry(row) if row else None

    async def get_live_schedule_entry(
        self, owner_id: str, fingerprint: str
    ) -> ScheduleEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT * FROM schedule_entries WHERE owner_id = $1 AND fingerprint = $2 AND {_LIVE_PREDICATE}",
                owner_id,
                fingerprint,
            )
        finally:
            await conn.close()
        return self._to_entry(row) if row else None

    async def list_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: Optional[str] = None,
        status: Optional[ScheduleStatus] = None,
    ) -> list[ScheduleEntry]:
        query = "SELECT * FROM schedule_entries WHERE owner_id = $1"
        params: list[Any] = [owner_id]
        if enrollment_id is not None:
            params.append(enrollment_id)
            query += f" AND enrollment_id = ${len(params)}"
        if status is not None:
            params.append(ScheduleStatus(status).value)
            query += f" AND status = ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY scheduled_at", *params)
        finally:
            await conn.close()
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
            SET status = $1, last_error = COALESCE($2, last_error), updated_at = $3
            WHERE owner_id = $4 AND id = $5
        """
        params: list[Any] = [
            ScheduleStatus(status).value,
            last_error,
            utcnow(),
            owner_id,
            entry_id,
        ]
        if expected is not None:
            params.append(ScheduleStatus(expected).value)
            query += " AND status = $6"
        conn = await self._connect()
        try:
            result = await conn.execute(query, *params)
        finally:
            await conn.close()
        return _affected(result) == 1

    async def transition_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: str,
        from_status: ScheduleStatus,
        to_status: ScheduleStatus,
    ) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE schedule_entries SET status = $1, updated_at = $2
                WHERE owner_id = $3 AND enrollment_id = $4 AND status = $5
                """,
                ScheduleStatus(to_status).value,
                utcnow(),
                owner_id,
                enrollment_id,
                ScheduleStatus(from_status).value,
            )
        finally:
            await conn.close()
        return _affected(result)

    async def claim_due_entries(
        self, now: datetime, limit: int = 100, lease: Optional[timedelta] = None
    ) -> list[ScheduleEntry]:
        expired = now - lease if lease is not None else None
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                UPDATE schedule_entries SET claimed_at = $1
                WHERE id IN (
                    SELECT id FROM schedule_entries
                    WHERE status = 'scheduled'
                      AND (claimed_at IS NULL OR claimed_at <= $3::timestamptz)
                      AND scheduled_at <= $1
                    ORDER BY scheduled_at
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                now,
                limit,
                expired,
            )
        finally:
            await conn.close()
        entries = [self._to_entry(r) for r in rows]
        return sorted(entries, key=lambda e: e.scheduled_at)

    async def release_claim(self, owner_id: str, entry_id: str) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE schedule_entries SET claimed_at = NULL
                WHERE owner_id = $1 AND id = $2 AND status = 'scheduled'
                """,
                owner_id,
                entry_id,
            )
        finally:
            await conn.close()
        return _affected(result) == 1

    # ------------------------------------------------------------------
    async def save_linked_account(self, account: LinkedAccount) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO linked_accounts (owner_id, provider, account_id, status, connected_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (owner_id, provider) DO UPDATE SET
                    account_id = EXCLUDED.account_id,
                    status = EXCLUDED.status,
                    connected_at = EXCLUDED.connected_at,
                    updated_at = EXCLUDED.updated_at
                """,
                account.owner_id,
                account.provider,
                account.account_id,
                account.status,
                account.connected_at,
                account.updated_at,
            )
        finally:
            await conn.close()

    async def get_linked_account(
        self, owner_id: str, provider: str
    ) -> LinkedAccount | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM linked_accounts WHERE owner_id = $1 AND provider = $2",
                owner_id,
                provider,
            )
        finally:
            await conn.close()
        return LinkedAccount(**dict(row)) if row else None
