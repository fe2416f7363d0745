"""Planner -> executor -> coordinator loop for free-form chat requests.

The planner drafts a plan over the available tools, the executor carries it
out through tool calls, and the coordinator decides whether to continue,
replan or stop. Decisions are structured (``continue | replan | end``); any
reply that doesn't parse as one ends the run. The loop is bounded by
``max_cycles`` executor visits and by a wall-clock deadline.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from workflow_agent_orchestrator.agents.state import (
    DECISION_TARGETS,
    AgentState,
    ControlNode,
    Decision,
)
from workflow_agent_orchestrator.agents.tools import ToolContext, ToolRegistry, build_tool_registry
from workflow_agent_orchestrator.billing.ledger import TokenLedger
from workflow_agent_orchestrator.core.config import AgentConfig
from workflow_agent_orchestrator.core.deadline import Deadline
from workflow_agent_orchestrator.core.errors import BillingError, OrchestratorError
from workflow_agent_orchestrator.core.usage import TokenCounter
from workflow_agent_orchestrator.llm.provider import Completion, LLMProvider, ResponseSchema
from workflow_agent_orchestrator.storage.conversations import ConversationStore
from workflow_agent_orchestrator.storage.records import ExecutionKind, ExecutionRecordStore
from workflow_agent_orchestrator.storage.workflows import WorkflowStore
from workflow_agent_orchestrator.workflow.executor import GraphExecutor
from workflow_agent_orchestrator.workflow.models import Workflow
from workflow_agent_orchestrator.workflow.state_machine import ExecutionStatus

logger = logging.getLogger(__name__)

PLAN_SCHEMA = ResponseSchema(
    name="plan",
    schema={
        "type": "object",
        "properties": {
            "steps": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "tool_name": {"type": "string"},
                        "purpose": {"type": "string"},
                    },
                    "required": ["tool_name", "purpose"],
                    "additionalProperties": False,
                },
            },
            "reasoning": {"type": "string"},
        },
        "required": ["steps", "reasoning"],
        "additionalProperties": False,
    },
)

DECISION_SCHEMA = ResponseSchema(
    name="coordinator_decision",
    schema={
        "type": "object",
        "properties": {
            "decision": {"type": "string", "enum": [d.value for d in Decision]},
            "reason": {"type": "string"},
        },
        "required": ["decision", "reason"],
        "additionalProperties": False,
    },
)

PLANNER_PROMPT = """You are the planning agent of a creative workflow assistant.
Break the user's request into a short sequence of tool calls.

Available tools:
{tools}
{workflow}
Reply with JSON: a list of steps (tool_name, purpose) and your reasoning.
Use an empty step list if the request can be answered directly."""

EXECUTOR_PROMPT = """You are the execution agent of a creative workflow assistant.
Carry out the plan below by calling tools, then answer the user with the result.
If a tool returns an error, adapt or explain the problem.

Plan:
{plan}"""

COORDINATOR_PROMPT = """You are the coordinating agent of a creative workflow assistant.
Given the request, the plan and the latest result, decide what happens next:
- "continue": the plan is sound but unfinished; run the executor again
- "replan": the plan is not working; draft a new one
- "end": the request is satisfied (or cannot be satisfied)
Reply with JSON containing the decision and a short reason."""


@dataclass(frozen=True, slots=True)
class AgentRunResult:
    execution_id: str
    session_id: str
    response: str
    cycles: int
    decisions: list[str] = field(default_factory=list)
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: str = "end"
    token_usage: dict[str, int] = field(default_factory=dict)
    charged_units: int = 0

    def to_json(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "session_id": self.session_id,
            "response": self.response,
            "cycles": self.cycles,
            "decisions": self.decisions,
            "tool_results": self.tool_results,
            "stop_reason": self.stop_reason,
            "token_usage": self.token_usage,
            "charged_units": self.charged_units,
        }


@dataclass
class _RunContext:
    session_id: str
    account_id: str | None
    deadline: Deadline
    tools: ToolRegistry
    tokens: TokenCounter = field(default_factory=TokenCounter)
    charged_units: int = 0


def parse_decision(text: str) -> tuple[Decision, str]:
    """Read a coordinator reply; anything unrecognised means ``end``."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return Decision.END, "unparsable coordinator reply"
    if not isinstance(data, dict):
        return Decision.END, "unparsable coordinator reply"
    raw = str(data.get("decision", "")).strip().lower()
    reason = str(data.get("reason", ""))
    try:
        return Decision(raw), reason
    except ValueError:
        return Decision.END, f"unknown decision {raw!r}"


def parse_plan(text: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict) and isinstance(data.get("steps"), list):
        return {"steps": data["steps"], "reasoning": str(data.get("reasoning", ""))}
    return {"steps": [], "reasoning": text}


class AgentCoordinator:
    """Drive one chat turn through the planner/executor/coordinator loop."""

    def __init__(
        self,
        provider: LLMProvider,
        executor: GraphExecutor,
        records: ExecutionRecordStore,
        conversations: ConversationStore | None = None,
        workflows: WorkflowStore | None = None,
        ledger: TokenLedger | None = None,
        config: AgentConfig | None = None,
    ) -> None:
        self.provider = provider
        self.executor = executor
        self.records = records
        self.conversations = conversations
        self.workflows = workflows
        self.ledger = ledger
        self.config = config or AgentConfig()

    def run(
        self,
        message: str,
        session_id: str,
        account_id: str | None = None,
        workflow: Workflow | None = None,
        history: list[dict[str, Any]] | None = None,
    ) -> AgentRunResult:
        """Answer ``message``.

        Args:
            message: The user's request.
            session_id: Conversation/session id.
            account_id: Account to bill reasoning and tool calls to.
            workflow: Loaded workflow whose nodes become tools.
            history: Earlier ``{"role", "content"}`` turns of this session.

        Raises:
            BillingError: A reasoning or tool call couldn't be paid for.
            CapabilityError: The reasoning provider failed.
            PersistenceError: The execution record couldn't be written.
        """
        if workflow is not None and "max_execution_time" in workflow.settings.model_fields_set:
            budget = workflow.settings.max_execution_time
        else:
            budget = self.config.max_execution_seconds

        ctx = _RunContext(
            session_id=session_id,
            account_id=account_id,
            deadline=Deadline(budget),
            tools=build_tool_registry(self.executor, self.workflows, workflow),
        )
        state = AgentState(
            session_id=session_id,
            workflow_data={
                "session_id": session_id,
                "workflow_id": workflow.id if workflow else None,
            },
            execution_context={"tool_results": [], "decisions": [], "last_result": ""},
        )
        for turn in history or []:
            state.add_message({"role": turn["role"], "content": turn["content"]})
        state.add_message({"role": "user", "content": message})

        record = self.records.create(
            session_id=session_id,
            kind=ExecutionKind.AGENT,
            input={"message": message},
            workflow_id=workflow.id if workflow else None,
        )
        self.records.update(record.id, status=ExecutionStatus.RUNNING)
        if self.conversations is not None:
            self.conversations.append(session_id, "user", message, execution_id=record.id)

        logger.info(
            "Agent run started",
            extra={"execution_id": record.id, "session_id": session_id, "tools": ctx.tools.names()},
        )

        try:
            stop_reason = self._loop(state, ctx, message)
        except OrchestratorError as e:
            logger.warning(
                "Agent run failed",
                extra={"execution_id": record.id, "session_id": session_id, "error": str(e)},
            )
            self.records.update(
                record.id,
                status=ExecutionStatus.FAILED,
                error=str(e),
                token_usage=ctx.tokens.to_json(),
                charged_units=ctx.charged_units,
            )
            raise
        except Exception as e:
            logger.exception("Unexpected error during agent run", extra={"execution_id": record.id})
            self.records.update(
                record.id,
                status=ExecutionStatus.FAILED,
                error=f"Unexpected error: {e}",
                token_usage=ctx.tokens.to_json(),
                charged_units=ctx.charged_units,
            )
            raise

        response =str(state.execution_context.get("last_result") or "")
        result = AgentRunResult(
            execution_id=record.id,
            session_id=session_id,
            response=response,
            cycles=state.cycles,
            decisions=list(state.execution_context["decisions"]),
            tool_results=list(state.execution_context["tool_results"]),
            stop_reason=stop_reason,
            token_usage=ctx.tokens.to_json(),
            charged_units=ctx.charged_units,
        )
        self.records.update(
            record.id,
            status=ExecutionStatus.COMPLETED,
            output={**result.to_json(), "plan": state.workflow_data.get("plan")},
            token_usage=ctx.tokens.to_json(),
            charged_units=ctx.charged_units,
        )
        if self.conversations is not None:
            self.conversations.append(session_id, "assistant", response, execution_id=record.id)

        logger.info(
            "Agent run completed",
            extra={
                "execution_id": record.id,
                "cycles": state.cycles,
                "stop_reason": stop_reason,
                "charged_units": ctx.charged_units,
            },
        )
        return result

    def _loop(self, state: AgentState, ctx: _RunContext, message: str) -> str:
        stop_reason = "end"
        while not state.finished:
            if ctx.deadline.expired():
                stop_reason = "deadline"
                state.move_to(ControlNode.END)
                break

            if state.active_node is ControlNode.PLANNER:
                self._plan(state, ctx)
                state.move_to(ControlNode.EXECUTOR)
            elif state.active_node is ControlNode.EXECUTOR:
                self._execute(state, ctx)
                state.move_to(ControlNode.COORDINATOR)
            else:
                decision, reason = self._coordinate(state, ctx, message)
                state.execution_context["decisions"].append(decision.value)
                target = DECISION_TARGETS[decision]
                if target is not ControlNode.END and state.cycles >= self.config.max_cycles:
                    logger.info(
                        "Agent cycle limit reached",
                        extra={"session_id": state.session_id, "cycles": state.cycles},
                    )
                    stop_reason = "max_cycles"
                    target = ControlNode.END
                logger.debug(
                    "Coordinator decision",
                    extra={"decision": decision.value, "reason": reason, "cycles": state.cycles},
                )
                state.move_to(target)
        return stop_reason

    def _plan(self, state: AgentState, ctx: _RunContext) -> None:
        tool_lines = "\n".join(f"- {s.name}: {s.description}" for s in ctx.tools.specs()) or "- (none)"
        workflow_id = state.workflow_data.get("workflow_id")
        workflow_line = f"\nA workflow is loaded: {workflow_id}\n" if workflow_id else ""
        prompt = PLANNER_PROMPT.format(tools=tool_lines, workflow=workflow_line)

        completion = self._reason(ctx, "planner", prompt, state.messages, response_schema=PLAN_SCHEMA)
        state.workflow_data["plan_text"] = completion.text
        state.workflow_data["plan"] = parse_plan(completion.text)

    def _execute(self, state: AgentState, ctx: _RunContext) -> None:
        plan = state.workflow_data.get("plan_text") or "(no plan)"
        system_prompt = EXECUTOR_PROMPT.format(plan=plan)
        tools = ctx.tools.specs() or None
        tool_context = ToolContext(ctx.session_id, ctx.account_id, ctx.deadline)

        for _ in range(self.config.max_tool_rounds):
            completion = self._reason(ctx, "executor", system_prompt, state.messages, tools=tools)
            if not completion.tool_calls:
                state.add_message({"role": "assistant", "content": completion.text})
                state.execution_context["last_result"] = completion.text
                return

            state.add_message(
                {
                    "role": "assistant",
                    "content": completion.text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.raw_arguments or "{}"},
                        }
                        for call in completion.tool_calls
                    ],
                }
            )
            for call in completion.tool_calls:
                output = self._call_tool(ctx, tool_context, call.name, call.arguments)
                state.execution_context["tool_results"].append({"tool": call.name, **output})
                state.add_message(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(output, ensure_ascii=False, default=str),
                    }
                )

        logger.info(
            "Executor reached tool round limit",
            extra={"session_id": ctx.session_id, "rounds": self.config.max_tool_rounds},
        )
        results = state.execution_context["tool_results"]
        if results:
            state.execution_context["last_result"] = json.dumps(results[-1], ensure_ascii=False, default=str)

    def _call_tool(
        self, ctx: _RunContext, tool_context: ToolContext, name: str, arguments: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            return ctx.tools.invoke(name, arguments, tool_context)
        except BillingError:
            raise
        except (OrchestratorError, ValueError) as e:
            logger.warning("Tool call failed", extra={"tool": name, "error": str(e)})
            return {"error": str(e)}

    def _coordinate(self, state: AgentState, ctx: _RunContext, message: str) -> tuple[Decision, str]:
        summary = (
            f"Request:\n{message}\n\n"
            f"Plan:\n{state.workflow_data.get('plan_text') or '(none)'}\n\n"
            f"Latest result:\n{state.execution_context.get('last_result') or '(none)'}\n\n"
            f"Executor cycles so far: {state.cycles} of {self.config.max_cycles}"
        )
        completion = self._reason(
            ctx,
            "coordinator",
            COORDINATOR_PROMPT,
            [{"role": "user", "content": summary}],
            response_schema=DECISION_SCHEMA,
        )
        return parse_decision(completion.text)

    def _reason(
        self,
        ctx: _RunContext,
        role: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        **kwargs: Any,
    ) -> Completion:
        def call() -> Completion:
            return ctx.deadline.run(
                f"agent {role}", self.provider.complete, system_prompt, list(messages), **kwargs
            )

        if self.ledger is None or ctx.account_id is None:
            completion = call()
        else:
            input_text = "\n".join(
                [system_prompt, *(str(m.get("content") or "") for m in messages)]
            )
            completion, transaction = self.ledger.charge_for(
                ctx.account_id,
                ctx.session_id,
                self.provider.model,
                input_text,
                call,
                operation=f"agent:{role}",
            )
            ctx.charged_units += transaction.actual_charge_amount or 0

        ctx.tokens.add(completion.usage)
        return completion
