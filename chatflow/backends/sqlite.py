"""SQLite backend for persistent storage.

This backend uses aiosqlite, storing each flow and execution as a JSON
document plus the indexed columns the scheduler queries on. Compare-and-set
writes run inside ``BEGIN IMMEDIATE`` transactions so concurrent connections
(and processes) serialize on the database write lock.

The database schema:
- flows: id, tenant_id, lineage_id, status, version, counters, data (JSON)
- executions: id, flow_id, lineage_id, conversation_id, status, version,
  claimed_at, wake_deadline, cancel_requested, created_at, data (JSON)
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional

import aiosqlite

from chatflow.backends.base import ACTIVE_STATUSES
from chatflow.core.definition import FlowDefinition, FlowStatus
from chatflow.core.execution import Execution, ExecutionStatus, WakeEvent, utcnow
from chatflow.utils.errors import ClaimLostError, FlowNotFoundError


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so string comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def _placeholders(values: List[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteBackend:
    """SQLite-based flow and execution persistence.

    It provides durable storage that survives process restarts; running
    claims left behind by a crashed worker are picked up by the scheduler
    sweep once their lease expires.
    """

    def __init__(self, db_path: str = "chatflow.db"):
        """Initialize SQLite backend.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._initialized = False

    def _connect(self):
        return aiosqlite.connect(self.db_path, isolation_level=None)

    async def _ensure_initialized(self):
        """Ensure database and tables exist."""
        if self._initialized:
            return

        # Create directory if needed
        db_dir = Path(self.db_path).parent
        if db_dir and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS flows (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    lineage_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    execution_count INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    flow_id TEXT NOT NULL,
                    lineage_id TEXT NOT NULL,
                    conversation_id TEXT,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    claimed_at TEXT,
                    wake_deadline TEXT,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_flows_tenant ON flows(tenant_id, status)"
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_executions_active
                ON executions(lineage_id, conversation_id, status)
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_wake ON executions(status, wake_deadline)"
            )

        self._initialized = True

    # -- flows -------------------------------------------------------------

    def _flow_from_row(self, row) -> FlowDefinition:
        data = json.loads(row[0])
        data["execution_count"], data["success_count"], data["failure_count"] = row[1], row[2], row[3]
        return FlowDefinition.from_dict(data)

    async def save_flow(self, flow: FlowDefinition) -> None:
        await self._ensure_initialized()

        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO flows (id, tenant_id, lineage_id, status, version,
                                   execution_count, success_count, failure_count,
                                   created_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id)
                DO UPDATE SET
                    tenant_id = excluded.tenant_id,
                    lineage_id = excluded.lineage_id,
                    status = excluded.status,
                    version = excluded.version,
                    data = excluded.data
                """,
                (
                    flow.id,
                    flow.tenant_id,
                    flow.lineage_id,
                    flow.status.value,
                    flow.version,
                    flow.execution_count,
                    flow.success_count,
                    flow.failure_count,
                    _ts(flow.created_at),
                    json.dumps(flow.to_dict()),
                ),
            )

    async def load_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        await self._ensure_initialized()

        async with self._connect() as db:
            async with db.execute(
                """
                SELECT data, execution_count, success_count, failure_count
                FROM flows WHERE id = ?
                """,
                (flow_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return self._flow_from_row(row) if row else None

    async def list_flows(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[FlowStatus] = None,
        lineage_id: Optional[str] = None,
    ) -> List[FlowDefinition]:
        await self._ensure_initialized()

        clauses, params = [], []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if lineage_id is not None:
            clauses.append("lineage_id = ?")
            params.append(lineage_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT data, execution_count, success_count, failure_count
                FROM flows {where} ORDER BY created_at, version
                """,
                params,
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._flow_from_row(row) for row in rows]

    async def increment_flow_counters(
        self,
        flow_id: str,
        executions: int = 0,
        successes: int = 0,
        failures: int = 0,
    ) -> None:
        await self._ensure_initialized()

        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE flows SET
                    execution_count = execution_count + ?,
                    success_count = success_count + ?,
                    failure_count = failure_count + ?
                WHERE id = ?
                """,
                (executions, successes, failures, flow_id),
            )
            if cursor.rowcount == 0:
                raise FlowNotFoundError(flow_id)

    # -- executions --------------------------------------------------------

    def _row_values(self, execution: Execution) -> tuple:
        return (
            execution.flow_id,
            execution.lineage_id,
            execution.conversation_id,
            execution.status.value,
            execution.version,
            _ts(execution.claimed_at),
            _ts(execution.wake.deadline) if execution.wake else None,
            json.dumps(execution.to_dict()),
        )

    async def _select(self, where: str, params: Iterable[Any], order: str = "created_at") -> List[Execution]:
        await self._ensure_initialized()

        async with self._connect() as db:
            async with db.execute(
                f"SELECT data FROM executions WHERE {where} ORDER BY {order}",
                list(params),
            ) as cursor:
                rows = await cursor.fetchall()
                return [Execution.from_dict(json.loads(row[0])) for row in rows]

    async def insert_execution(self, execution: Execution, exclusive: bool = True) -> bool:
        await self._ensure_initialized()

        statuses = [s.value for s in ACTIVE_STATUSES]
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                if exclusive:
                    async with db.execute(
                        f"""
                        SELECT 1 FROM executions
                        WHERE lineage_id = ? AND conversation_id IS ?
                          AND status IN ({_placeholders(statuses)})
                        LIMIT 1
                        """,
                        [execution.lineage_id, execution.conversation_id, *statuses],
                    ) as cursor:
                        if await cursor.fetchone() is not None:
                            await db.execute("ROLLBACK")
                            return False
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO executions
                        (flow_id, lineage_id, conversation_id, status, version,
                         claimed_at, wake_deadline, data, id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (*self._row_values(execution), execution.id, _ts(execution.created_at)),
                )
                inserted = cursor.rowcount == 1
                await db.execute("COMMIT")
                return inserted
            except Exception:
                await db.execute("ROLLBACK")
                raise

    async def load_execution(self, execution_id: str) -> Optional[Execution]:
        found = await self._select("id = ?", [execution_id])
        return found[0] if found else None

    async def save_execution(self, execution: Execution, expected_version: int) -> Execution:
        await self._ensure_initialized()

        updated = Execution.from_dict(execution.to_dict())
        updated.version = expected_version + 1
        updated.updated_at = utcnow()

        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE executions SET
                    flow_id = ?, lineage_id = ?, conversation_id = ?, status = ?,
                    version = ?, claimed_at = ?, wake_deadline = ?, data = ?
                WHERE id = ? AND version = ?
                """,
                (*self._row_values(updated), execution.id, expected_version),
            )
            if cursor.rowcount == 0:
                raise ClaimLostError(execution.id, expected_version)

        execution.version = updated.version
        execution.updated_at = updated.updated_at
        return execution

    async def claim(
        self,
        execution_id: str,
        expected_version: int,
        worker_id: str,
        now: datetime,
        from_statuses: Iterable[ExecutionStatus],
        pending_event: Optional[WakeEvent] = None,
    ) -> Optional[Execution]:
        await self._ensure_initialized()

        allowed = {status.value for status in from_statuses}
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT data, version, status FROM executions WHERE id = ?",
                    (execution_id,),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None or row[1] != expected_version or row[2] not in allowed:
                    await db.execute("ROLLBACK")
                    return None

                execution = Execution.from_dict(json.loads(row[0]))
                execution.mark_claimed(worker_id, now, pending_event)
                execution.version = expected_version + 1
                execution.updated_at = utcnow()

                await db.execute(
                    """
                    UPDATE executions SET
                        flow_id = ?, lineage_id = ?, conversation_id = ?, status = ?,
                        version = ?, claimed_at = ?, wake_deadline = ?, data = ?
                    WHERE id = ? AND version = ?
                    """,
                    (*self._row_values(execution), execution_id, expected_version),
                )
                await db.execute("COMMIT")
                return execution
            except Exception:
                await db.execute("ROLLBACK")
                raise

    async def find_active(self, lineage_id: str, conversation_id: Optional[str]) -> List[Execution]:
        statuses = [s.value for s in ACTIVE_STATUSES]
        return await self._select(
            f"lineage_id = ? AND conversation_id IS ? AND status IN ({_placeholders(statuses)})",
            [lineage_id, conversation_id, *statuses],
        )

    async def list_executions(
        self,
        conversation_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        flow_id: Optional[str] = None,
    ) -> List[Execution]:
        clauses, params = ["1 = 1"], []
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({_placeholders(values)})")
            params.extend(values)
        if flow_id is not None:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        return await self._select(" AND ".join(clauses), params)

    async def due_wakes(self, now: datetime) -> List[Execution]:
        return await self._select(
            "status = ? AND wake_deadline IS NOT NULL AND wake_deadline <= ?",
            [ExecutionStatus.WAITING.value, _ts(now)],
            order="wake_deadline",
        )

    async def stale_claims(self, before: datetime) -> List[Execution]:
        return await self._select(
            "status = ? AND claimed_at IS NOT NULL AND claimed_at < ?",
            [ExecutionStatus.RUNNING.value, _ts(before)],
        )

    async def list_pending(self) -> List[Execution]:
        return await self.list_executions(statuses=[ExecutionStatus.PENDING])

    async def request_cancel(self, execution_id: str) -> None:
        await self._ensure_initialized()

        async with self._connect() as db:
            await db.execute(
                "UPDATE executions SET cancel_requested = 1 WHERE id = ?",
                (execution_id,),
            )

    async def cancel_requested(self, execution_id: str) -> bool:
        await self._ensure_initialized()

        async with self._connect() as db:
            async with db.execute(
                "SELECT cancel_requested FROM executions WHERE id = ?",
                (execution_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return bool(row and row[0])

    def __repr__(self) -> str:
        return f"SQLiteBackend(db_path='{self.db_path}')"
