"""Chat history per session."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

from workflow_agent_orchestrator.storage.jsonfile import read_json, write_json


class ConversationMessage(BaseModel):
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: str
    execution_id: str | None = None


@dataclass
class ConversationStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[ConversationMessage]:
        raw = read_json(self.path, [])
        if not isinstance(raw, list):
            return []
        return [ConversationMessage.model_validate(item) for item in raw]

    def append(
        self,
        session_id: str,
        role: Literal["user", "assistant"],
        content: str,
        execution_id: str | None = None,
    ) -> ConversationMessage:
        with self._lock:
            messages = self._load_unlocked()
            message = ConversationMessage(
                session_id=session_id,
                role=role,
                content=content,
                created_at=datetime.now(tz=UTC).isoformat(),
                execution_id=execution_id,
            )
            messages.append(message)
            write_json(self.path, [m.model_dump(mode="json") for m in messages])
            return message

    def history(self, session_id: str, limit: int | None = None) -> list[ConversationMessage]:
        """Messages for ``session_id``, oldest first; ``limit`` keeps the most recent ones."""
        with self._lock:
            messages = [m for m in self._load_unlocked() if m.session_id == session_id]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages
