#!/usr/bin/env python3
"""Programmatic workflow execution example.

This demonstrates using the orchestrator components directly:

* load settings from `.env` (an LLM API key is required for the `llm` node)
* save a small summarise-then-branch workflow to the workflow store
* top up a billing account and run the workflow against it

State is written under `ORCHESTRATOR_STATE_STORAGE_PATH` (default `agent_state/`).
"""

from __future__ import annotations

import argparse
import json
from typing import Sequence

from workflow_agent_orchestrator.core.config import OrchestratorConfig
from workflow_agent_orchestrator.core.orchestrator import Orchestrator
from workflow_agent_orchestrator.workflow.models import Workflow

DEFINITION = {
    "id": "summarise-and-route",
    "name": "Summarise and route",
    "nodes": [
        {"id": "in", "type": "input", "connections": {"target": ["summary"]}},
        {
            "id": "summary",
            "type": "llm",
            "data": {"prompt": "Summarise in one sentence: {{text}}", "output_key": "summary"},
            "connections": {"target": ["route"]},
        },
        {
            "id": "route",
            "type": "conditional",
            "data": {"condition": "urgent", "true_branch": "escalate", "false_branch": "out"},
        },
        {
            "id": "escalate",
            "type": "llm",
            "data": {"prompt": "Draft a short escalation note for: {{summary}}", "output_key": "note"},
            "connections": {"target": ["out"]},
        },
        {"id": "out", "type": "output"},
    ],
}


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a sample workflow (programmatic example).")
    parser.add_argument("--text", required=True, help="Text to summarise")
    parser.add_argument("--urgent", action="store_true", help="Take the escalation branch")
    parser.add_argument("--account", default="demo", help="Billing account to charge")
    parser.add_argument("--grant", type=int, default=100, help="Units granted to the account first")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    orchestrator = Orchestrator(OrchestratorConfig())
    workflow = orchestrator.workflows.save(Workflow.load(DEFINITION))
    orchestrator.balances.grant(args.account, renewable=args.grant)

    result = orchestrator.run_workflow(
        workflow.id,
        {"text": args.text, "urgent": args.urgent},
        account_id=args.account,
    )

    print(json.dumps(result.to_json(), indent=2, default=str))
    print(f"Remaining balance: {orchestrator.balances.get_balance(args.account).total}")
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    raise SystemExit(main())
