"""Core configuration for the orchestrator."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_agent_orchestrator.core.logging import configure_logging


class LLMConfig(BaseSettings):
    """Configuration for the reasoning provider."""

    provider: Literal["openai", "xai"] = Field(
        default="openai",
        description="LLM provider to use (both speak the OpenAI chat completions API)",
    )
    api_key: str | None = Field(
        default=None,
        description="API key for the selected provider",
    )
    base_url: str | None = Field(
        default=None,
        description="Override the provider base URL (defaults per provider)",
    )
    model: str = Field(
        default="gpt-4o-mini",
        description="Default model for planner/executor/coordinator and llm nodes",
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=2.0,
        description="Default sampling temperature",
    )
    request_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout in seconds",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries performed by the SDK client on transient failures",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_LLM_",
        env_file=".env",
        extra="ignore",
    )


class GenerationConfig(BaseSettings):
    """Configuration for the HTTP image/video generation backend."""

    base_url: str | None = Field(
        default=None,
        description="Base URL of the generation service (image/video nodes are disabled if unset)",
    )
    api_key: str | None = Field(default=None, description="Bearer token for the generation service")
    image_path: str = Field(default="/api/generate", description="Image generation endpoint path")
    video_path: str = Field(
        default="/api/video-effects/generate",
        description="Video generation endpoint path",
    )
    timeout: float = Field(default=120.0, gt=0, description="HTTP timeout in seconds")
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries on connection errors and 5xx responses",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_GENERATION_",
        env_file=".env",
        extra="ignore",
    )


class BillingConfig(BaseSettings):
    """Configuration for the token ledger."""

    enabled: bool = Field(default=True, description="Bill capability calls when an account is given")
    output_multiple: float = Field(
        default=2.5,
        gt=0,
        description="Assumed output tokens per input token when pre-estimating",
    )
    safety_factor: float = Field(
        default=1.3,
        ge=1.0,
        description="Inflation applied to the pre-estimate",
    )
    cost_table_path: Path | None = Field(
        default=None,
        description="Optional JSON file overriding/extending the model-cost registry",
    )
    debit_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Compare-and-debit attempts before giving up on a contended balance",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_BILLING_",
        env_file=".env",
        extra="ignore",
    )


class ExecutionConfig(BaseSettings):
    """Configuration for the graph executor."""

    default_max_execution_time: float = Field(
        default=300.0,
        gt=0,
        description="Deadline (seconds) for workflows that don't set max_execution_time",
    )
    loop_iteration_ceiling: int = Field(
        default=100,
        gt=0,
        description="Hard upper bound on loop node iterations regardless of node config",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_EXECUTION_",
        env_file=".env",
        extra="ignore",
    )


class AgentConfig(BaseSettings):
    """Configuration for the planner/executor/coordinator loop."""

    max_cycles: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum executor visits per agent run",
    )
    max_tool_rounds: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Maximum tool-calling rounds within one executor step",
    )
    max_execution_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Wall-clock budget for one agent run",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_AGENT_",
        env_file=".env",
        extra="ignore",
    )


class StateConfig(BaseSettings):
    """Configuration for local JSON persistence."""

    storage_path: Path = Field(
        default=Path(".state"),
        description="Directory holding workflows, executions, balances and transactions",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_STATE_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def workflows_dir(self) -> Path:
        return self.storage_path / "workflows"

    @property
    def executions_file(self) -> Path:
        return self.storage_path / "executions.json"

    @property
    def balances_file(self) -> Path:
        return self.storage_path / "balances.json"

    @property
    def transactions_file(self) -> Path:
        return self.storage_path / "transactions.json"

    @property
    def conversations_file(self) -> Path:
        return self.storage_path / "conversations.json"


class ServerConfig(BaseSettings):
    """Configuration for the REST server."""

    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_SERVER_",
        env_file=".env",
        extra="ignore",
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


class OrchestratorConfig(BaseSettings):
    """Main configuration for the orchestrator."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    llm: LLMConfig = Field(default_factory=LLMConfig, description="LLM configuration")
    generation: GenerationConfig = Field(
        default_factory=GenerationConfig,
        description="Generation backend configuration",
    )
    billing: BillingConfig = Field(default_factory=BillingConfig, description="Billing configuration")
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Graph executor configuration",
    )
    agent: AgentConfig = Field(default_factory=AgentConfig, description="Agent loop configuration")
    state: StateConfig = Field(default_factory=StateConfig, description="State configuration")
    server: ServerConfig = Field(default_factory=ServerConfig, description="Server configuration")

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        level = "DEBUG" if self.debug else self.log_level
        configure_logging(level, fmt=self.log_format)
