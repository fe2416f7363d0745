"""Unit tests for the command-line entrypoint."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from workflow_agent_orchestrator.cli import build_parser, main


@pytest.fixture(autouse=True)
def _state_dir(_isolated_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    state = tmp_path / "cli-state"
    monkeypatch.setenv("ORCHESTRATOR_STATE_STORAGE_PATH", str(state))
    monkeypatch.setenv("ORCHESTRATOR_LOG_FORMAT", "text")
    return state


def _write(path: Path, payload: Any) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def passthrough(tmp_path: Path) -> Path:
    return _write(
        tmp_path / "passthrough.json",
        {
            "id": "passthrough",
            "name": "Passthrough",
            "nodes": [
                {"id": "in", "type": "input", "connections": {"target": ["out"]}},
                {"id": "out", "type": "output"},
            ],
        },
    )


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_validate_workflow(passthrough: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["validate-workflow", str(passthrough)]) == 0
    assert "is valid: 2 nodes" in capsys.readouterr().out

    no_input = _write(tmp_path / "no_input.json", {"nodes": [{"id": "out", "type": "output"}]})
    assert main(["validate-workflow", str(no_input)]) == 3

    not_json = tmp_path / "broken.json"
    not_json.write_text("{", encoding="utf-8")
    assert main(["validate-workflow", str(not_json)]) == 3


def test_import_and_run_workflow(passthrough: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["import-workflow", str(passthrough)]) == 0
    assert "Saved workflow passthrough" in capsys.readouterr().out

    assert main(["run-workflow", "passthrough", "--input", '{"greeting": "hi"}', "--session-id", "s1"]) == 0
    out = capsys.readouterr().out
    assert '"status": "completed"' in out
    assert '"greeting": "hi"' in out


def test_run_failures_map_to_exit_codes(tmp_path: Path, linear_definition: dict[str, Any]) -> None:
    assert main(["run-workflow", "missing"]) == 2

    path = _write(tmp_path / "linear.json", linear_definition)
    assert main(["import-workflow", str(path)]) == 0
    # No API key configured, so the llm node has no capability behind it.
    assert main(["run-workflow", "linear", "--input", '{"text": "x"}']) == 4
    assert main(["run-workflow", "linear", "--input", "[1, 2]"]) == 2


def test_chat_without_api_key_is_a_configuration_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["chat", "hello"]) == 2
    assert "API key" in capsys.readouterr().err


def test_grant_and_balance(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["grant", "acct", "--renewable", "5", "--permanent", "2"]) == 0
    assert "total=7" in capsys.readouterr().out

    assert main(["balance", "acct"]) == 0
    assert '"total": 7' in capsys.readouterr().out

    assert main(["grant", "acct", "--renewable", "-1"]) == 2


def test_invalid_settings_exit_with_code_2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_AGENT_MAX_CYCLES", "0")
    assert main(["balance", "acct"]) == 2
