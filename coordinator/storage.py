"""SQLite 기반 영속 스토리지 헬퍼."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Sequence

from .models import (
    AgentRecord,
    AgentStatus,
    Job,
    JobState,
    Pipeline,
    PipelineState,
    Step,
    TriggerEvent,
    utcnow,
)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS pipelines (
    pipeline_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    state TEXT NOT NULL,
    definition TEXT NOT NULL,
    trigger TEXT NOT NULL,
    failed_job TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL UNIQUE,
    pipeline_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    name TEXT NOT NULL,
    steps TEXT NOT NULL,
    capabilities TEXT NOT NULL,
    needs TEXT NOT NULL,
    volumes TEXT NOT NULL,
    image TEXT,
    required INTEGER NOT NULL,
    timeout_seconds REAL NOT NULL,
    state TEXT NOT NULL,
    agent_id TEXT,
    attempt INTEGER NOT NULL DEFAULT 0,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    cancel_requested_at TEXT,
    failure_reason TEXT,
    failed_step TEXT,
    exit_code INTEGER,
    created_at TEXT NOT NULL,
    claimed_at TEXT,
    started_at TEXT,
    updated_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS jobs_by_state ON jobs (state, created_at, seq);
CREATE INDEX IF NOT EXISTS jobs_by_pipeline ON jobs (pipeline_id, position);

CREATE TABLE IF NOT EXISTS agents (
    agent_id TEXT PRIMARY KEY,
    token TEXT NOT NULL UNIQUE,
    capabilities TEXT NOT NULL,
    address TEXT,
    max_concurrency INTEGER NOT NULL,
    status TEXT NOT NULL,
    registered_at TEXT NOT NULL,
    last_heartbeat TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS job_logs (
    job_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    attempt INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    message TEXT NOT NULL,
    PRIMARY KEY (job_id, seq)
);
"""


class Storage:
    def __init__(self, db_path: Path | str) -> None:
        self._db_path = db_path
        # 코디네이터는 이벤트 루프와 테스트 스레드 양쪽에서 접근한다
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._bootstrap()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _bootstrap(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(_DB_SCHEMA)

    # Pipelines ----------------------------------------------------------

    def insert_pipeline(self, pipeline: Pipeline, jobs: Sequence[Job]) -> None:
        with self._lock, self._conn:
            self._conn.execute(*self._pipeline_upsert(pipeline))
            for job in jobs:
                self._conn.execute(*self._job_upsert(job))

    def update_pipeline(self, pipeline: Pipeline) -> None:
        with self._lock, self._conn:
            self._conn.execute(*self._pipeline_upsert(pipeline))

    def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM pipelines WHERE pipeline_id=?", (pipeline_id,)).fetchone()
        return self._row_to_pipeline(row) if row else None

    def list_pipelines(self, limit: int = 50, state: PipelineState | None = None) -> list[Pipeline]:
        sql = "SELECT * FROM pipelines"
        params: list[object] = []
        if state is not None:
            sql += " WHERE state=?"
            params.append(state.value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_pipeline(row) for row in rows]

    def list_finished_pipelines(self, before: datetime) -> list[Pipeline]:
        sql = "SELECT * FROM pipelines WHERE finished_at IS NOT NULL AND finished_at < ?"
        with self._lock:
            rows = self._conn.execute(sql, (before.isoformat(),)).fetchall()
        return [self._row_to_pipeline(row) for row in rows]

    def delete_pipeline(self, pipeline_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM job_logs WHERE job_id IN (SELECT job_id FROM jobs WHERE pipeline_id=?)",
                (pipeline_id,),
            )
            self._conn.execute("DELETE FROM jobs WHERE pipeline_id=?", (pipeline_id,))
            self._conn.execute("DELETE FROM pipelines WHERE pipeline_id=?", (pipeline_id,))

    # Jobs ---------------------------------------------------------------

    def upsert_job(self, job: Job) -> None:
        with self._lock, self._conn:
            self._conn.execute(*self._job_upsert(job))

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE job_id=?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        *,
        pipeline_id: str | None = None,
        states: Sequence[JobState] | None = None,
        agent_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Job]:
        """조건에 맞는 작업을 생성 순서대로. limit이 None이면 전부."""
        clauses: list[str] = []
        params: list[object] = []
        if pipeline_id is not None:
            clauses.append("pipeline_id = ?")
            params.append(pipeline_id)
        if agent_id is not None:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if states is not None:
            if not states:
                return []
            clauses.append(f"state IN ({', '.join(['?'] * len(states))})")
            params.extend(state.value for state in states)
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, seq ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend((limit, offset))
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def iter_jobs(self, *, states: Sequence[JobState], page_size: int = 500) -> Iterator[Job]:
        """list_jobs를 페이지 단위로 읽는다. 앞쪽에서 멈추는 스캔용."""
        offset = 0
        while True:
            page = self.list_jobs(states=states, limit=page_size, offset=offset)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def claim_job(self, job_id: str, agent_id: str, now: datetime) -> bool:
        """PENDING 작업을 조건부로 선점한다. 다른 호출자가 먼저 가져갔으면 False."""
        sql = """
        UPDATE jobs
        SET state = ?, agent_id = ?, attempt = attempt + 1, claimed_at = ?, updated_at = ?
        WHERE job_id = ? AND state = ? AND agent_id IS NULL
        """
        with self._lock, self._conn:
            cursor = self._conn.execute(
                sql,
                (
                    JobState.CLAIMED.value,
                    agent_id,
                    now.isoformat(),
                    now.isoformat(),
                    job_id,
                    JobState.PENDING.value,
                ),
            )
        return cursor.rowcount > 0

    # Job logs -----------------------------------------------------------

    def append_job_log(self, job_id: str, attempt: int, message: str, timestamp: datetime | None = None) -> int:
        with self._lock, self._conn:
            row = self._conn.execute("SELECT MAX(seq) FROM job_logs WHERE job_id=?", (job_id,)).fetchone()
            seq = (row[0] or 0) + 1
            self._conn.execute(
                "INSERT INTO job_logs (job_id, seq, attempt, timestamp, message) VALUES (?, ?, ?, ?, ?)",
                (job_id, seq, attempt, (timestamp or utcnow()).isoformat(), message),
            )
        return seq

    def list_job_logs(self, job_id: str, *, limit: int = 200, after_seq: int | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM job_logs WHERE job_id=?"
        params: list[object] = [job_id]
        if after_seq is not None:
            sql += " AND seq > ?"
            params.append(after_seq)
        sql += " ORDER BY seq ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    # Agents -------------------------------------------------------------

    def upsert_agent(self, agent: AgentRecord) -> None:
        payload = {
            "agent_id": agent.agent_id,
            "token": agent.token,
            "capabilities": json.dumps(agent.capabilities),
            "address": agent.address,
            "max_concurrency": agent.max_concurrency,
            "status": agent.status.value,
            "registered_at": agent.registered_at.isoformat(),
            "last_heartbeat": agent.last_heartbeat.isoformat(),
        }
        with self._lock, self._conn:
            self._conn.execute(*_upsert_sql("agents", "agent_id", payload))

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM agents WHERE agent_id=?", (agent_id,)).fetchone()
        return self._row_to_agent(row) if row else None

    def get_agent_by_token(self, token: str) -> AgentRecord | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM agents WHERE token=?", (token,)).fetchone()
        return self._row_to_agent(row) if row else None

    def list_agents(self) -> list[AgentRecord]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM agents ORDER BY agent_id").fetchall()
        return [self._row_to_agent(row) for row in rows]

    # Row mapping --------------------------------------------------------

    def _pipeline_upsert(self, pipeline: Pipeline) -> tuple[str, dict[str, Any]]:
        payload = {
            "pipeline_id": pipeline.pipeline_id,
            "name": pipeline.name,
            "state": pipeline.state.value,
            "definition": json.dumps(pipeline.definition),
            "trigger": json.dumps(pipeline.trigger.to_dict()),
            "failed_job": pipeline.failed_job,
            "cancel_requested": int(pipeline.cancel_requested),
            "created_at": pipeline.created_at.isoformat(),
            "finished_at": _iso(pipeline.finished_at),
        }
        return _upsert_sql("pipelines", "pipeline_id", payload)

    def _job_upsert(self, job: Job) -> tuple[str, dict[str, Any]]:
        payload = {
            "job_id": job.job_id,
            "pipeline_id": job.pipeline_id,
            "position": job.position,
            "name": job.name,
            "steps": json.dumps([step.to_dict() for step in job.steps]),
            "capabilities": json.dumps(job.capabilities),
            "needs": json.dumps(job.needs),
            "volumes": json.dumps(job.volumes),
            "image": job.image,
            "required": int(job.required),
            "timeout_seconds": job.timeout_seconds,
            "state": job.state.value,
            "agent_id": job.agent_id,
            "attempt": job.attempt,
            "cancel_requested": int(job.cancel_requested),
            "cancel_requested_at": _iso(job.cancel_requested_at),
            "failure_reason": job.failure_reason,
            "failed_step": job.failed_step,
            "exit_code": job.exit_code,
            "created_at": job.created_at.isoformat(),
            "claimed_at": _iso(job.claimed_at),
            "started_at": _iso(job.started_at),
            "updated_at": _iso(job.updated_at),
            "finished_at": _iso(job.finished_at),
        }
        return _upsert_sql("jobs", "job_id", payload)

    def _row_to_pipeline(self, row: sqlite3.Row) -> Pipeline:
        return Pipeline(
            pipeline_id=row["pipeline_id"],
            name=row["name"],
            state=PipelineState(row["state"]),
            definition=json.loads(row["definition"]),
            trigger=TriggerEvent.from_dict(json.loads(row["trigger"])),
            failed_job=row["failed_job"],
            cancel_requested=bool(row["cancel_requested"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            finished_at=_parse(row["finished_at"]),
        )

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            pipeline_id=row["pipeline_id"],
            position=row["position"],
            name=row["name"],
            steps=[Step(name=item["name"], command=item["command"]) for item in json.loads(row["steps"])],
            capabilities=json.loads(row["capabilities"]) or [],
            needs=json.loads(row["needs"]) or [],
            volumes=json.loads(row["volumes"]) or [],
            image=row["image"],
            required=bool(row["required"]),
            timeout_seconds=row["timeout_seconds"],
            state=JobState(row["state"]),
            agent_id=row["agent_id"],
            attempt=row["attempt"],
            cancel_requested=bool(row["cancel_requested"]),
            cancel_requested_at=_parse(row["cancel_requested_at"]),
            failure_reason=row["failure_reason"],
            failed_step=row["failed_step"],
            exit_code=row["exit_code"],
            created_at=datetime.fromisoformat(row["created_at"]),
            claimed_at=_parse(row["claimed_at"]),
            started_at=_parse(row["started_at"]),
            updated_at=_parse(row["updated_at"]),
            finished_at=_parse(row["finished_at"]),
        )

    def _row_to_agent(self, row: sqlite3.Row) -> AgentRecord:
        return AgentRecord(
            agent_id=row["agent_id"],
            token=row["token"],
            capabilities=json.loads(row["capabilities"]) or [],
            address=row["address"],
            max_concurrency=row["max_concurrency"],
            status=AgentStatus(row["status"]),
            registered_at=datetime.fromisoformat(row["registered_at"]),
            last_heartbeat=datetime.fromisoformat(row["last_heartbeat"]),
        )


def _upsert_sql(table: str, key: str, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    columns = ", ".join(payload.keys())
    placeholders = ", ".join([":" + column for column in payload.keys()])
    update_clause = ", ".join([f"{column}=excluded.{column}" for column in payload.keys() if column != key])
    sql = f"""
    INSERT INTO {table} ({columns})
    VALUES ({placeholders})
    ON CONFLICT({key}) DO UPDATE SET {update_clause}
    """
    return sql, payload


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def init_storage(db_path: str | Path) -> Storage:
    if str(db_path) != ":memory:":
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
    return Storage(db_path)
