"""Helpers shared by the JSON-file stores."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from workflow_agent_orchestrator.core.errors import PersistenceError

logger = logging.getLogger(__name__)


def read_json(path: Path, default: Any, *, strict: bool = False) -> Any:
    """Read ``path`` as JSON; a missing file yields ``default``.

    A file that doesn't decode also yields ``default`` unless ``strict`` is set.
    Stores whose file must never be silently reset (balances, transactions)
    read strictly.

    Raises:
        PersistenceError: The file exists but can't be read, or (``strict``)
            doesn't decode.
    """
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        if strict:
            raise PersistenceError(f"Corrupt state file {path}: {e}") from e
        logger.warning("Ignoring unreadable state file", extra={"path": str(path)})
        return default
    except OSError as e:
        raise PersistenceError(f"Unable to read {path}: {e}") from e


def write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` to ``path`` as indented JSON.

    The data goes to a temporary file in the same directory which then
    replaces ``path``, so readers see either the old or the new content.

    Raises:
        PersistenceError: The file can't be written.
    """
    text = json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n"
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise PersistenceError(f"Unable to write {path}: {e}") from e
