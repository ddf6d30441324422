"""
Forgeline State Store

SQLite-backed persistence for everything the pipeline records:
outcomes, audit trail, monthly budgets, token usage, agent feedback,
code changes and the execution event stream.

One connection per operation, WAL journal, rows returned as dicts.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from forgeline.models import CodeChange, CodeChangeStatus, ExecutionResult, FileChange, FileSnapshot

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

_SCHEMA = f"""
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS outcomes (
    id                  TEXT PRIMARY KEY,
    agent_id            TEXT NOT NULL,
    task                TEXT NOT NULL,
    status              TEXT NOT NULL
                        CHECK (status IN ('success', 'partial_success', 'failed', 'infra_unavailable')),
    output              TEXT,
    error               TEXT,
    execution_time_ms   INTEGER,
    tokens_used         INTEGER,
    artifact_size_bytes INTEGER,
    project_id          TEXT,
    trace_id            TEXT,
    created_at          TEXT NOT NULL DEFAULT ({_NOW})
);

CREATE TABLE IF NOT EXISTS audit_log (
    id                  TEXT PRIMARY KEY,
    agent_id            TEXT NOT NULL,
    action              TEXT NOT NULL,
    input_hash          TEXT,
    output_hash         TEXT,
    sanitizer_warnings  TEXT,
    runtime             TEXT NOT NULL DEFAULT 'local',
    created_at          TEXT NOT NULL DEFAULT ({_NOW})
);

CREATE TABLE IF NOT EXISTS budgets (
    id            TEXT PRIMARY KEY,
    period        TEXT NOT NULL UNIQUE,
    total_tokens  INTEGER NOT NULL,
    used_tokens   INTEGER NOT NULL DEFAULT 0,
    hard_limit    INTEGER NOT NULL DEFAULT 1,
    created_at    TEXT NOT NULL DEFAULT ({_NOW})
);

CREATE TABLE IF NOT EXISTS token_usage (
    id             TEXT PRIMARY KEY,
    agent_id       TEXT NOT NULL,
    task_id        TEXT NOT NULL,
    input_tokens   INTEGER NOT NULL DEFAULT 0,
    output_tokens  INTEGER NOT NULL DEFAULT 0,
    total_tokens   INTEGER NOT NULL DEFAULT 0,
    cost_usd       REAL NOT NULL DEFAULT 0,
    created_at     TEXT NOT NULL DEFAULT ({_NOW})
);

CREATE TABLE IF NOT EXISTS agent_feedback (
    id          TEXT PRIMARY KEY,
    agent_id    TEXT NOT NULL,
    task_type   TEXT NOT NULL,
    grade       TEXT NOT NULL CHECK (grade IN ('SUCCESS', 'PARTIAL', 'FAILURE')),
    reasons     TEXT,
    created_at  TEXT NOT NULL DEFAULT ({_NOW})
);

CREATE TABLE IF NOT EXISTS code_changes (
    id             TEXT PRIMARY KEY,
    task_id        TEXT NOT NULL,
    description    TEXT NOT NULL,
    files_changed  TEXT NOT NULL,
    diff           TEXT,
    risk           INTEGER NOT NULL CHECK (risk BETWEEN 1 AND 5),
    status         TEXT NOT NULL DEFAULT 'pending'
                   CHECK (status IN ('pending', 'pending_approval', 'approved', 'applied',
                                     'failed', 'rolled_back', 'rejected')),
    test_output    TEXT,
    error          TEXT,
    approved_by    TEXT,
    approved_at    TEXT,
    applied_at     TEXT,
    branch_name    TEXT,
    commits        TEXT,
    pending_files  TEXT,
    snapshot       TEXT,
    project_id     TEXT,
    created_at     TEXT NOT NULL DEFAULT ({_NOW})
);

CREATE TABLE IF NOT EXISTS execution_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    trace_id    TEXT NOT NULL,
    agent       TEXT NOT NULL,
    event_type  TEXT NOT NULL,
    phase       TEXT,
    message     TEXT NOT NULL,
    metadata    TEXT,
    level       TEXT NOT NULL DEFAULT 'info' CHECK (level IN ('debug', 'info', 'warn', 'error')),
    created_at  TEXT NOT NULL DEFAULT ({_NOW})
);

CREATE INDEX IF NOT EXISTS idx_outcomes_agent   ON outcomes(agent_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_agent      ON token_usage(agent_id, created_at);
CREATE INDEX IF NOT EXISTS idx_feedback_agent   ON agent_feedback(agent_id, task_type, created_at);
CREATE INDEX IF NOT EXISTS idx_changes_status   ON code_changes(status);
CREATE INDEX IF NOT EXISTS idx_events_trace     ON execution_events(trace_id, id);
"""

_CHANGE_COLUMNS = (
    "id, task_id, description, files_changed, diff, risk, status, test_output, error, "
    "approved_by, approved_at, applied_at, branch_name, commits, pending_files, snapshot, project_id, created_at"
)


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def current_period(now: datetime | None = None) -> str:
    """Budget period key, YYYY-MM in UTC."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _since_days(days: int) -> str:
    return f"strftime('%Y-%m-%dT%H:%M:%fZ', 'now', '-{int(days)} days')"


class StateStore:
    """Persistent pipeline state. Safe to share across threads."""

    def __init__(self, db_path: Path | str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    # -----------------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------------

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as db:
            db.executescript(_SCHEMA)
        logger.debug(f"[STORE] Schema ready at {self._db_path}")

    # -----------------------------------------------------------------------
    # Outcomes
    # -----------------------------------------------------------------------

    def save_outcome(
        self,
        result: ExecutionResult,
        project_id: str | None = None,
        trace_id: str | None = None,
        created_at: str | None = None,
    ) -> str:
        outcome_id = str(uuid.uuid4())
        with self._conn() as db:
            db.execute(
                f"""INSERT INTO outcomes (id, agent_id, task, status, output, error,
                        execution_time_ms, tokens_used, artifact_size_bytes, project_id, trace_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, COALESCE(?, {_NOW}))""",
                (
                    outcome_id, result.agent, result.task, result.status, result.output,
                    result.error, result.execution_time_ms, result.tokens_used,
                    result.artifact_size_bytes, project_id, trace_id, created_at,
                ),
            )
        return outcome_id

    def recent_outcomes(self, limit: int = 20, agent_id: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM outcomes"
        params: list[Any] = []
        if agent_id:
            query += " WHERE agent_id = ?"
            params.append(agent_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._conn() as db:
            return [dict(r) for r in db.execute(query, params).fetchall()]

    def average_tokens_for_task(self, agent_id: str, task_type: str, days: int) -> float | None:
        """Average tokens per outcome for an agent that has feedback of this task type in the window."""
        with self._conn() as db:
            row = db.execute(
                f"""SELECT AVG(o.tokens_used) AS avg_tokens
                    FROM outcomes o
                    WHERE o.agent_id = ?
                      AND o.tokens_used IS NOT NULL
                      AND o.created_at >= {_since_days(days)}
                      AND EXISTS (
                        SELECT 1 FROM agent_feedback af
                        WHERE af.agent_id = o.agent_id
                          AND af.task_type = ?
                          AND af.created_at >= {_since_days(days)}
                      )""",
                (agent_id, task_type),
            ).fetchone()
        return row["avg_tokens"] if row else None

    # -----------------------------------------------------------------------
    # Audit
    # -----------------------------------------------------------------------

    def log_audit(
        self,
        agent_id: str,
        action: str,
        input_hash: str | None,
        output_hash: str | None,
        warnings: list[str] | None = None,
        runtime: str = "local",
    ) -> None:
        with self._conn() as db:
            db.execute(
                """INSERT INTO audit_log (id, agent_id, action, input_hash, output_hash, sanitizer_warnings, runtime)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(uuid.uuid4()), agent_id, action[:500], input_hash, output_hash,
                    json.dumps(warnings or []), runtime,
                ),
            )

    def audit_entries(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._conn() as db:
            rows = db.execute(
                "SELECT * FROM audit_log ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]

    # -----------------------------------------------------------------------
    # Budgets + token usage
    # -----------------------------------------------------------------------

    def ensure_current_budget(self, total_tokens: int, period: str | None = None) -> None:
        with self._conn() as db:
            db.execute(
                "INSERT OR IGNORE INTO budgets (id, period, total_tokens, hard_limit) VALUES (?, ?, ?, 1)",
                (str(uuid.uuid4()), period or current_period(), total_tokens),
            )

    def get_budget(self, period: str | None = None) -> dict[str, Any] | None:
        with self._conn() as db:
            row = db.execute(
                "SELECT * FROM budgets WHERE period = ?", (period or current_period(),)
            ).fetchone()
        return dict(row) if row else None

    def increment_used_tokens(self, tokens: int, period: str | None = None) -> None:
        with self._conn() as db:
            db.execute(
                "UPDATE budgets SET used_tokens = used_tokens + ? WHERE period = ?",
                (tokens, period or current_period()),
            )

    def set_hard_limit(self, enabled: bool, period: str | None = None) -> None:
        with self._conn() as db:
            db.execute(
                "UPDATE budgets SET hard_limit = ? WHERE period = ?",
                (1 if enabled else 0, period or current_period()),
            )

    def record_token_usage(
        self,
        agent_id: str,
        task_id: str,
        input_tokens: int,
        output_tokens: int,
        total_tokens: int,
        cost_usd: float = 0.0,
    ) -> None:
        with self._conn() as db:
            db.execute(
                """INSERT INTO token_usage (id, agent_id, task_id, input_tokens, output_tokens, total_tokens, cost_usd)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (str(uuid.uuid4()), agent_id, task_id, input_tokens, output_tokens, total_tokens, cost_usd),
            )

    def agent_monthly_usage(self, agent_id: str, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        month_start = _iso(now.replace(day=1, hour=0, minute=0, second=0, microsecond=0))
        with self._conn() as db:
            row = db.execute(
                "SELECT COALESCE(SUM(total_tokens), 0) AS total FROM token_usage WHERE agent_id = ? AND created_at >= ?",
                (agent_id, month_start),
            ).fetchone()
        return int(row["total"])

    def tasks_started_today(self, agent_id: str, now: datetime | None = None) -> int:
        """Distinct tasks that consumed tokens for this agent since UTC midnight."""
        now = now or datetime.now(timezone.utc)
        day_start = _iso(now.replace(hour=0, minute=0, second=0, microsecond=0))
        with self._conn() as db:
            row = db.execute(
                "SELECT COUNT(DISTINCT task_id) AS count FROM token_usage WHERE agent_id = ? AND created_at >= ?",
                (agent_id, day_start),
            ).fetchone()
        return int(row["count"])

    # -----------------------------------------------------------------------
    # Feedback
    # -----------------------------------------------------------------------

    def save_feedback(
        self,
        agent_id: str,
        task_type: str,
        grade: str,
        reasons: list[str] | None = None,
        created_at: str | None = None,
    ) -> None:
        with self._conn() as db:
            db.execute(
                f"""INSERT INTO agent_feedback (id, agent_id, task_type, grade, reasons, created_at)
                    VALUES (?, ?, ?, ?, ?, COALESCE(?, {_NOW}))""",
                (
                    str(uuid.uuid4()), agent_id, task_type, grade,
                    json.dumps(reasons) if reasons else None, created_at,
                ),
            )

    def recent_grades(self, agent_id: str, task_type: str, days: int) -> list[str]:
        with self._conn() as db:
            rows = db.execute(
                f"""SELECT grade FROM agent_feedback
                    WHERE agent_id = ? AND task_type = ? AND created_at >= {_since_days(days)}
                    ORDER BY created_at DESC""",
                (agent_id, task_type),
            ).fetchall()
        return [r["grade"] for r in rows]

    # -----------------------------------------------------------------------
    # Code changes
    # -----------------------------------------------------------------------

    def save_code_change(
        self,
        task_id: str,
        description: str,
        files_changed: list[str],
        risk: int,
        pending_files: list[FileChange] | None = None,
        project_id: str | None = None,
    ) -> str:
        change_id = str(uuid.uuid4())
        pending = json.dumps([f.model_dump() for f in pending_files]) if pending_files else None
        with self._conn() as db:
            db.execute(
                """INSERT INTO code_changes (id, task_id, description, files_changed, risk, pending_files, project_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (change_id, task_id, description, json.dumps(files_changed), risk, pending, project_id),
            )
        return change_id

    def get_code_change(self, change_id: str) -> CodeChange | None:
        """Look up by full id, or by a short prefix when it is unambiguous."""
        with self._conn() as db:
            row = db.execute(
                f"SELECT {_CHANGE_COLUMNS} FROM code_changes WHERE id = ?", (change_id,)
            ).fetchone()
            if row is None and len(change_id) >= 4:
                rows = db.execute(
                    f"SELECT {_CHANGE_COLUMNS} FROM code_changes WHERE id LIKE ?", (f"{change_id}%",)
                ).fetchall()
                row = rows[0] if len(rows) == 1 else None
        return CodeChange.from_row(row) if row else None

    def update_code_change_status(
        self,
        change_id: str,
        status: CodeChangeStatus,
        *,
        diff: str | None = None,
        test_output: str | None = None,
        error: str | None = None,
        approved_by: str | None = None,
        applied_at: str | None = None,
        branch_name: str | None = None,
        commits: list[str] | None = None,
        snapshot: list[FileSnapshot] | None = None,
    ) -> None:
        sets = ["status = ?"]
        values: list[Any] = [status]
        optional = {
            "diff": diff,
            "test_output": test_output,
            "error": error,
            "applied_at": applied_at,
            "branch_name": branch_name,
            "commits": json.dumps(commits) if commits is not None else None,
            "snapshot": json.dumps([s.model_dump() for s in snapshot]) if snapshot is not None else None,
        }
        for column, value in optional.items():
            if value is not None:
                sets.append(f"{column} = ?")
                values.append(value)
        if approved_by is not None:
            sets.append("approved_by = ?")
            sets.append(f"approved_at = {_NOW}")
            values.append(approved_by)

        values.append(change_id)
        with self._conn() as db:
            db.execute(f"UPDATE code_changes SET {', '.join(sets)} WHERE id = ?", values)
        logger.debug(f"[STORE] code change {change_id[:8]} -> {status}")

    def pending_approval_changes(self) -> list[CodeChange]:
        with self._conn() as db:
            rows = db.execute(
                f"""SELECT {_CHANGE_COLUMNS} FROM code_changes
                    WHERE status = 'pending_approval' ORDER BY created_at DESC"""
            ).fetchall()
        return [CodeChange.from_row(r) for r in rows]

    def recent_code_changes(self, days: int = 7) -> list[CodeChange]:
        with self._conn() as db:
            rows = db.execute(
                f"""SELECT {_CHANGE_COLUMNS} FROM code_changes
                    WHERE created_at >= {_since_days(days)} ORDER BY created_at DESC"""
            ).fetchall()
        return [CodeChange.from_row(r) for r in rows]

    # -----------------------------------------------------------------------
    # Execution events
    # -----------------------------------------------------------------------

    def append_event(
        self,
        trace_id: str,
        agent: str,
        event_type: str,
        message: str,
        phase: str | None = None,
        metadata: dict[str, Any] | None = None,
        level: str = "info",
    ) -> int:
        with self._conn() as db:
            cur = db.execute(
                """INSERT INTO execution_events (trace_id, agent, event_type, phase, message, metadata, level)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    trace_id, agent, event_type, phase, message,
                    json.dumps(metadata, default=str) if metadata else None, level,
                ),
            )
            return int(cur.lastrowid)

    def events_for_trace(self, trace_id: str) -> list[dict[str, Any]]:
        with self._conn() as db:
            rows = db.execute(
                "SELECT * FROM execution_events WHERE trace_id = ? ORDER BY id ASC", (trace_id,)
            ).fetchall()
        events = []
        for r in rows:
            event = dict(r)
            event["metadata"] = json.loads(event["metadata"]) if event["metadata"] else {}
            events.append(event)
        return events

    def recent_traces(self, limit: int = 10) -> list[dict[str, Any]]:
        with self._conn() as db:
            rows = db.execute(
                """SELECT trace_id, MIN(created_at) AS started_at, COUNT(*) AS events,
                          SUM(CASE WHEN level = 'error' THEN 1 ELSE 0 END) AS errors
                   FROM execution_events GROUP BY trace_id
                   ORDER BY MAX(id) DESC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]
