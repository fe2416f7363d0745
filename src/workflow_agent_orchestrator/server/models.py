"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class WorkflowSummary(BaseModel):
    id: str
    name: str
    description: str = ""
    node_count: int
    updated_at: str | None = None


class ExecuteRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    account_id: str | None = None


class ExecutionResponse(BaseModel):
    execution_id: str
    status: str
    output: dict[str, Any]
    error: str | None = None
    token_usage: dict[str, int] = Field(default_factory=dict)
    model_costs: int = 0
    charged_units: int = 0
    visited: list[str] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    session_id: str | None = None
    account_id: str | None = None
    workflow_id: str | None = None


class ChatResponse(BaseModel):
    execution_id: str
    session_id: str
    response: str
    cycles: int
    decisions: list[str] = Field(default_factory=list)
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    stop_reason: str
    token_usage: dict[str, int] = Field(default_factory=dict)
    charged_units: int = 0


class GrantRequest(BaseModel):
    renewable: int = Field(default=0, ge=0)
    permanent: int = Field(default=0, ge=0)


class BalanceResponse(BaseModel):
    account_id: str
    renewable: int
    permanent: int
    total: int
