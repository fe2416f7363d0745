"""CLI entrypoint for the workflow agent orchestrator.

Exit codes: 0 success, 1 unexpected failure, 2 configuration error, bad
arguments or unknown id, 3 invalid workflow definition, 4 failed execution
(including an insufficient balance).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from workflow_agent_orchestrator import __version__
from workflow_agent_orchestrator.core.config import OrchestratorConfig
from workflow_agent_orchestrator.core.errors import (
    BillingError,
    CapabilityError,
    ConfigurationError,
    InvalidWorkflow,
    NotFoundError,
)
from workflow_agent_orchestrator.core.orchestrator import Orchestrator
from workflow_agent_orchestrator.workflow.models import Workflow

logger = logging.getLogger(__name__)


def _read_definition(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidWorkflow(f"{path}: not valid JSON ({e})") from e


def _parse_input(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    if value.startswith("@"):
        value = Path(value[1:]).read_text(encoding="utf-8")
    data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("--input must be a JSON object")
    return data


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrator",
        description="Workflow graph executor, agent chat and token billing",
    )
    parser.add_argument(
        "--version", action="version", version=f"workflow-agent-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser(
        "validate-workflow", help="Validate a workflow definition file without saving it"
    )
    validate.add_argument("path", help="Path to a workflow JSON file")

    import_workflow = subparsers.add_parser(
        "import-workflow", help="Validate a workflow definition file and save it to the store"
    )
    import_workflow.add_argument("path", help="Path to a workflow JSON file")

    run = subparsers.add_parser("run-workflow", help="Execute a saved workflow")
    run.add_argument("workflow_id", help="Id of a saved workflow")
    run.add_argument(
        "--input",
        default=None,
        help="Initial bindings as a JSON object, or @path to read them from a file",
    )
    run.add_argument("--session-id", default=None, help="Session id (generated if omitted)")
    run.add_argument(
        "--account-id",
        default=None,
        help="Billing account; when omitted, node calls are not charged",
    )

    chat = subparsers.add_parser("chat", help="Send one message to the agent coordinator")
    chat.add_argument("message", help="User message")
    chat.add_argument("--session-id", default=None, help="Session id to continue")
    chat.add_argument("--account-id", default=None, help="Billing account to charge")
    chat.add_argument(
        "--workflow-id",
        default=None,
        help="Expose this saved workflow's nodes to the agent as tools",
    )

    balance = subparsers.add_parser("balance", help="Show an account's billing balance")
    balance.add_argument("account_id")

    grant = subparsers.add_parser("grant", help="Top up an account's billing balance")
    grant.add_argument("account_id")
    grant.add_argument("--renewable", type=int, default=0, help="Units added to the renewable pool")
    grant.add_argument("--permanent", type=int, default=0, help="Units added to the permanent pool")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = OrchestratorConfig()
    except ValidationError as e:
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    try:
        if args.command == "validate-workflow":
            config.setup_logging()
            workflow = Workflow.load(_read_definition(args.path))
            root = workflow.find_root()
            print(
                f"Workflow {workflow.name!r} is valid: {len(workflow.nodes)} nodes, "
                f"input node {root.id!r}"
            )
            return 0

        orchestrator = Orchestrator(config)

        if args.command == "import-workflow":
            workflow = orchestrator.workflows.save(Workflow.load(_read_definition(args.path)))
            print(f"Saved workflow {workflow.id}: {workflow.name}")
            return 0

        if args.command == "run-workflow":
            try:
                initial = _parse_input(args.input)
            except ValueError as e:
                print(f"Invalid --input: {e}", file=sys.stderr)
                return 2
            result = orchestrator.run_workflow(
                args.workflow_id,
                initial,
                session_id=args.session_id,
                account_id=args.account_id,
            )
            _print_json(result.to_json())
            if not result.succeeded:
                print(f"Execution failed: {result.error}", file=sys.stderr)
                return 4
            return 0

        if args.command == "chat":
            chat_result = orchestrator.chat(
                args.message,
                session_id=args.session_id,
                account_id=args.account_id,
                workflow_id=args.workflow_id,
            )
            print(chat_result.response)
            logger.info(
                "Chat turn finished",
                extra={
                    "session_id": chat_result.session_id,
                    "cycles": chat_result.cycles,
                    "stop_reason": chat_result.stop_reason,
                },
            )
            return 0

        if args.command == "balance":
            current = orchestrator.balances.get_balance(args.account_id)
            _print_json(current.model_dump(mode="json") | {"total": current.total})
            return 0

        if args.command == "grant":
            if args.renewable < 0 or args.permanent < 0:
                print("Grant amounts must be non-negative", file=sys.stderr)
                return 2
            updated = orchestrator.balances.grant(
                args.account_id, renewable=args.renewable, permanent=args.permanent
            )
            print(
                f"Balance for {updated.account_id}: renewable={updated.renewable} "
                f"permanent={updated.permanent} total={updated.total}"
            )
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (ConfigurationError, NotFoundError) as e:
        print(str(e), file=sys.stderr)
        return 2

    except InvalidWorkflow as e:
        print(f"Invalid workflow: {e}", file=sys.stderr)
        return 3

    except (BillingError, CapabilityError) as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 4

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
