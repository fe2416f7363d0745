"""Workflow definitions stored one JSON file per workflow."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from workflow_agent_orchestrator.core.errors import InvalidWorkflow, PersistenceError
from workflow_agent_orchestrator.storage.jsonfile import read_json, write_json
from workflow_agent_orchestrator.workflow.models import Workflow

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class WorkflowStore:
    directory: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _path(self, workflow_id: str) -> Path:
        if not _SAFE_ID.match(workflow_id):
            raise InvalidWorkflow(f"Invalid workflow id: {workflow_id!r}")
        return self.directory / f"{workflow_id}.json"

    def save(self, workflow: Workflow) -> Workflow:
        """Persist a workflow after checking it can actually be run.

        Raises:
            NoInputNode: The workflow doesn't have exactly one input node.
            InvalidWorkflow: The id can't be used as a file name.
            PersistenceError: The file can't be written.
        """
        workflow.find_root()
        path = self._path(workflow.id)
        with self._lock:
            now = _utc_iso_now()
            existing = read_json(path, None)
            created = existing.get("created_at") if isinstance(existing, dict) else None
            stored = workflow.model_copy(update={"created_at": created or now, "updated_at": now})
            write_json(path, stored.model_dump(mode="json"))
        logger.info(
            "Workflow saved",
            extra={"workflow_id": workflow.id, "nodes": len(workflow.nodes)},
        )
        return stored

    def get(self, workflow_id: str) -> Workflow | None:
        path = self._path(workflow_id)
        with self._lock:
            raw = read_json(path, None)
        if raw is None:
            return None
        return Workflow.load(raw)

    def list(self) -> list[Workflow]:
        workflows: list[Workflow] = []
        with self._lock:
            if not self.directory.exists():
                return []
            paths = sorted(self.directory.glob("*.json"))
            raws = [(p, read_json(p, None)) for p in paths]
        for path, raw in raws:
            if raw is None:
                continue
            try:
                workflows.append(Workflow.load(raw))
            except InvalidWorkflow as e:
                logger.warning(
                    "Skipping invalid stored workflow",
                    extra={"path": str(path), "error": str(e)},
                )
        return workflows

    def delete(self, workflow_id: str) -> bool:
        path = self._path(workflow_id)
        with self._lock:
            if not path.exists():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise PersistenceError(f"Unable to delete {path}: {e}") from e
        logger.info("Workflow deleted", extra={"workflow_id": workflow_id})
        return True
