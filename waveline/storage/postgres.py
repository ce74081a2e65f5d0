from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING, Any, ClassVar, Optional

from ..errors import RunNotFoundError, StoreError, WorkflowNotFoundError
from ..utils.logging import get_logger
from .base import CheckpointStore, RunQueue, WorkflowRunStore, WorkflowStore, ensure_same_definition, latest

if TYPE_CHECKING:  # pragma: no cover - for type hints
    from ..models import Checkpoint, RunStatus, Workflow, WorkflowRun

logger = get_logger()


class PostgresDatabase:
    """Shared connection to a PostgreSQL database with schema migrations."""

    LATEST_VERSION: ClassVar[int] = 1

    MIGRATIONS: ClassVar[dict[int, list[str]]] = {
        1: [
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT,
                version TEXT,
                definition JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT now(),
                PRIMARY KEY (workflow_id, version)
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                payload JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS checkpoints (
                run_id TEXT,
                seq BIGSERIAL,
                wave INTEGER NOT NULL,
                payload JSONB NOT NULL,
                PRIMARY KEY (run_id, seq)
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS run_queue (
                seq BIGSERIAL PRIMARY KEY,
                run_id TEXT UNIQUE NOT NULL
            );
            """,
        ]
    }

    def __init__(self, dsn: str | None = None) -> None:
        self.dsn = dsn or os.environ.get("DATABASE_URL", "postgresql://localhost/waveline")
        self._connect()
        self._migrate()

    def _connect(self) -> None:
        try:
            import psycopg
        except ImportError:  # pragma: no cover - optional dep
            raise RuntimeError("psycopg package required for PostgresDatabase")
        self._psycopg = psycopg
        try:
            self._conn = psycopg.connect(self.dsn, autocommit=True)
        except psycopg.Error as e:
            raise StoreError(f"cannot connect to {self.dsn}: {e}") from e

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        """Run *query* and return all fetched rows; driver errors become :class:`StoreError`."""
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall() if cur.description else []
        except self._psycopg.Error as e:
            raise StoreError(str(e)) from e

    def _get_version(self) -> int:
        self.execute("CREATE TABLE IF NOT EXISTS waveline_meta (key TEXT PRIMARY KEY, value TEXT)")
        rows = self.execute("SELECT value FROM waveline_meta WHERE key='version'")
        return int(rows[0][0]) if rows else 0

    def _set_version(self, version: int) -> None:
        self.execute(
            "INSERT INTO waveline_meta (key, value) VALUES ('version', %s)"
            " ON CONFLICT (key) DO UPDATE SET value=EXCLUDED.value",
            (str(version),),
        )

    def _migrate(self) -> None:
        version = self._get_version()
        for v in range(version + 1, self.LATEST_VERSION + 1):
            logger.info(f"applying waveline schema migration {v}")
            for stmt in self.MIGRATIONS.get(v, []):
                self.execute(stmt)
            self._set_version(v)

    def close(self) -> None:
        self._conn.close()


def _payload(value: Any) -> Any:
    # psycopg returns JSONB as decoded python objects
    return json.dumps(value) if isinstance(value, (dict, list)) else value


class PostgresWorkflowStore(WorkflowStore):
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def save(self, workflow: "Workflow") -> None:
        rows = self.db.execute(
            "SELECT definition FROM workflows WHERE workflow_id=%s AND version=%s",
            (workflow.id, workflow.version),
        )
        existing = self._load(rows[0][0]) if rows else None
        if ensure_same_definition(existing, workflow):
            self.db.execute(
                "INSERT INTO workflows (workflow_id, version, definition) VALUES (%s, %s, %s)",
                (workflow.id, workflow.version, workflow.model_dump_json()),
            )

    @staticmethod
    def _load(raw: Any) -> "Workflow":
        from ..models import Workflow

        return Workflow.model_validate_json(_payload(raw))

    def get(self, workflow_id: str, version: Optional[str] = None) -> "Workflow":
        if version is not None:
            rows = self.db.execute(
                "SELECT definition FROM workflows WHERE workflow_id=%s AND version=%s",
                (workflow_id, version),
            )
            found = self._load(rows[0][0]) if rows else None
        else:
            found = latest(self.list(workflow_id))
        if found is None:
            suffix = f" version {version}" if version else ""
            raise WorkflowNotFoundError(f"workflow '{workflow_id}'{suffix} not found")
        return found

    def list(self, workflow_id: Optional[str] = None) -> list["Workflow"]:
        if workflow_id is None:
            rows = self.db.execute("SELECT definition FROM workflows ORDER BY workflow_id, created_at")
        else:
            rows = self.db.execute(
                "SELECT definition FROM workflows WHERE workflow_id=%s ORDER BY created_at",
                (workflow_id,),
            )
        return [self._load(r[0]) for r in rows]


class PostgresRunStore(WorkflowRunStore):
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    @staticmethod
    def _load(raw: Any) -> "WorkflowRun":
        from ..models import WorkflowRun

        return WorkflowRun.model_validate_json(_payload(raw))

    def save(self, run: "WorkflowRun") -> None:
        self.db.execute(
            "INSERT INTO runs (run_id, workflow_id, status, payload, created_at) VALUES (%s, %s, %s, %s, %s)"
            " ON CONFLICT (run_id) DO UPDATE SET status=EXCLUDED.status, payload=EXCLUDED.payload",
            (run.id, run.workflow_id, run.status.value, run.model_dump_json(), run.created_at),
        )

    def get(self, run_id: str) -> "WorkflowRun":
        rows = self.db.execute("SELECT payload FROM runs WHERE run_id=%s", (run_id,))
        if not rows:
            raise RunNotFoundError(f"run '{run_id}' not found")
        return self._load(rows[0][0])

    def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional["RunStatus"] = None,
    ) -> list["WorkflowRun"]:
        clauses = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id=%s")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status=%s")
            params.append(status.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.execute(f"SELECT payload FROM runs{where} ORDER BY created_at", tuple(params))
        return [self._load(r[0]) for r in rows]


class PostgresCheckpointStore(CheckpointStore):
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    @staticmethod
    def _load(raw: Any) -> "Checkpoint":
        from ..models import Checkpoint

        return Checkpoint.model_validate_json(_payload(raw))

    def save(self, checkpoint: "Checkpoint") -> None:
        self.db.execute(
            "INSERT INTO checkpoints (run_id, wave, payload) VALUES (%s, %s, %s)",
            (checkpoint.run_id, checkpoint.wave, checkpoint.model_dump_json()),
        )

    def get(self, run_id: str) -> Optional["Checkpoint"]:
        rows = self.db.execute(
            "SELECT payload FROM checkpoints WHERE run_id=%s ORDER BY seq DESC LIMIT 1",
            (run_id,),
        )
        return self._load(rows[0][0]) if rows else None

    def list(self, run_id: str) -> list["Checkpoint"]:
        rows = self.db.execute("SELECT payload FROM checkpoints WHERE run_id=%s ORDER BY seq", (run_id,))
        return [self._load(r[0]) for r in rows]


class PostgresRunQueue(RunQueue):
    """Run queue safe for several workers sharing one database."""

    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def enqueue(self, run_id: str) -> None:
        self.db.execute("INSERT INTO run_queue (run_id) VALUES (%s) ON CONFLICT DO NOTHING", (run_id,))

    def fetch_next(self) -> Optional[str]:
        rows = self.db.execute(
            "DELETE FROM run_queue WHERE seq = ("
            " SELECT seq FROM run_queue ORDER BY seq LIMIT 1 FOR UPDATE SKIP LOCKED"
            ") RETURNING run_id"
        )
        return rows[0][0] if rows else None

    def __len__(self) -> int:
        rows = self.db.execute("SELECT count(*) FROM run_queue")
        return int(rows[0][0])
