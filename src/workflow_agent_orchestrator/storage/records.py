"""Persisted execution records for workflow runs and agent turns.

Records live in a single JSON file guarded by a lock. Status changes go
through the execution state machine, so terminal records can't be modified.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from workflow_agent_orchestrator.core.errors import IllegalTransitionError
from workflow_agent_orchestrator.storage.jsonfile import read_json, write_json
from workflow_agent_orchestrator.workflow.state_machine import (
    TERMINAL_STATES,
    ExecutionStatus,
    transition,
)


class ExecutionKind(str, Enum):
    WORKFLOW = "workflow"
    AGENT = "agent"


class NodeLog(BaseModel):
    node_id: str
    node_type: str
    status: Literal["started", "completed", "failed"]
    at: str
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


class ExecutionRecord(BaseModel):
    id: str
    session_id: str
    workflow_id: str | None = None
    kind: ExecutionKind = ExecutionKind.WORKFLOW
    status: ExecutionStatus = ExecutionStatus.CREATED
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    node_logs: list[NodeLog] = Field(default_factory=list)
    token_usage: dict[str, int] = Field(default_factory=lambda: {"input": 0, "output": 0})
    model_costs: int = 0
    charged_units: int = 0
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class ExecutionRecordStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[ExecutionRecord]:
        raw = read_json(self.path, [])
        if not isinstance(raw, list):
            return []
        return [ExecutionRecord.model_validate(item) for item in raw]

    def _save_unlocked(self, records: list[ExecutionRecord]) -> None:
        write_json(self.path, [r.model_dump(mode="json") for r in records])

    def list(
        self,
        *,
        session_id: str | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        with self._lock:
            records = self._load_unlocked()
        if session_id is not None:
            records = [r for r in records if r.session_id == session_id]
        if workflow_id is not None:
            records = [r for r in records if r.workflow_id == workflow_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit] if limit is not None else records

    def get(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            for record in self._load_unlocked():
                if record.id == execution_id:
                    return record
            return None

    def create(
        self,
        *,
        session_id: str,
        kind: ExecutionKind,
        input: dict[str, Any],
        workflow_id: str | None = None,
    ) -> ExecutionRecord:
        with self._lock:
            records = self._load_unlocked()
            now = _utc_iso_now()
            record = ExecutionRecord(
                id=str(uuid.uuid4()),
                session_id=session_id,
                workflow_id=workflow_id,
                kind=kind,
                input=input,
                created_at=now,
                updated_at=now,
            )
            records.append(record)
            self._save_unlocked(records)
            return record

    def update(self, execution_id: str, **updates: Any) -> ExecutionRecord:
        """Merge ``updates`` into a record.

        A ``status`` update must be a legal transition; ``started_at`` and
        ``completed_at`` are stamped automatically.

        Raises:
            KeyError: Unknown execution id.
            IllegalTransitionError: The record is terminal or the move is not allowed.
        """
        with self._lock:
            records = self._load_unlocked()
            for idx, record in enumerate(records):
                if record.id != execution_id:
                    continue
                if record.status in TERMINAL_STATES:
                    raise IllegalTransitionError(
                        f"Execution {execution_id} is {record.status.value} and can't be modified"
                    )
                now = _utc_iso_now()
                merged_updates: dict[str, Any] = {"updated_at": now, **updates}
                status = updates.get("status")
                if status is not None:
                    status = transition(record.status, ExecutionStatus(status))
                    merged_updates["status"] = status
                    if status is ExecutionStatus.RUNNING:
                        merged_updates.setdefault("started_at", now)
                    if status in TERMINAL_STATES:
                        merged_updates.setdefault("completed_at", now)
                merged = ExecutionRecord.model_validate(
                    {**record.model_dump(), **merged_updates}
                )
                records[idx] = merged
                self._save_unlocked(records)
                return merged
            raise KeyError(execution_id)

    def append_node_log(self, execution_id: str, entry: NodeLog) -> None:
        with self._lock:
            records = self._load_unlocked()
            for idx, record in enumerate(records):
                if record.id == execution_id:
                    records[idx] = record.model_copy(
                        update={
                            "node_logs": [*record.node_logs, entry],
                            "updated_at": _utc_iso_now(),
                        }
                    )
                    self._save_unlocked(records)
                    return
            raise KeyError(execution_id)
