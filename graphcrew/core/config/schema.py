"""GraphCrew configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from graphcrew.messages.pruning import ContextPruningSettings, resolve_context_pruning_settings


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    """Single LLM provider."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """LLM providers (LiteLLM multi-provider)."""

    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    bedrock: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class AgentConfig(BaseModel):
    """One agent in the crew (agents[*])."""

    agent_id: str
    provider: str = "anthropic"
    model: str = "anthropic/claude-sonnet-4-5-20250929"
    instructions: str = ""
    additional_instructions: str = ""
    max_context_tokens: int | None = None
    stream_buffer: float = 0.0  # min seconds between model calls
    prompt_cache: bool = False
    temperature: float = 0.7
    max_tokens: int = 4096
    handoffs: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=lambda: ["*"])
    deferred_tools: list[str] = Field(default_factory=list)


class ContextPruningConfig(BaseModel):
    """Partial pruning overrides; unset fields keep their defaults."""

    enabled: bool | None = None
    keep_last_assistants: int | None = None
    soft_trim_ratio: float | None = None
    hard_clear_ratio: float | None = None
    min_prunable_tool_chars: int | None = None
    soft_trim: dict[str, int] = Field(default_factory=dict)
    hard_clear: dict[str, bool | str] = Field(default_factory=dict)

    def resolve(self) -> ContextPruningSettings:
        return resolve_context_pruning_settings(self)


class SummarizationTrigger(BaseModel):
    """When cut-off messages get summarized.

    ``token_ratio``: pre-prune usage of the window is at least ``value``.
    ``remaining_tokens``: at most ``value`` tokens left before pruning.
    ``messages_to_refine``: at least ``value`` messages were cut off.
    """

    type: Literal["token_ratio", "remaining_tokens", "messages_to_refine"]
    value: float | None = None


class SummarizationConfig(BaseModel):
    """Fold messages dropped by pruning into the durable summary."""

    enabled: bool = False
    trigger: SummarizationTrigger | None = None
    model: str | None = None  # defaults to the agent's model
    prompt: str | None = None
    max_tokens: int = 1024


class ExecutionConfig(BaseModel):
    handle_tool_errors: bool = True
    max_overflow_retries: int = 1
    recursion_limit: int = 25
    include_tool_schema_tokens: bool = True
    include_summary_tokens: bool = True


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings, env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        GRAPHCREW_EXECUTION__HANDLE_TOOL_ERRORS=false
        GRAPHCREW_PRUNING__ENABLED=true
        GRAPHCREW_PROVIDERS__ANTHROPIC__API_KEY=sk-...
    """

    model_config = SettingsConfigDict(
        env_prefix="GRAPHCREW_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    agents: list[AgentConfig] = Field(default_factory=list)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    pruning: ContextPruningConfig = Field(default_factory=ContextPruningConfig)
    summarization: SummarizationConfig = Field(default_factory=SummarizationConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML arrives as init kwargs; env must win over it
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @model_validator(mode="after")
    def _check_crew(self) -> Config:
        ids = self.agent_ids
        duplicates = sorted({a for a in ids if ids.count(a) > 1})
        if duplicates:
            raise ValueError(f"Duplicate agent ids: {duplicates}")
        for agent in self.agents:
            unknown = sorted(set(agent.handoffs) - set(ids))
            if unknown:
                raise ValueError(f"Agent '{agent.agent_id}' hands off to unknown agents: {unknown}")
        return self

    # ── Lookups ─────────────────────────────────────────────

    def get_agent(self, agent_id: str) -> AgentConfig:
        for agent in self.agents:
            if agent.agent_id == agent_id:
                return agent
        raise KeyError(f"Unknown agent '{agent_id}'")

    @property
    def agent_ids(self) -> list[str]:
        return [a.agent_id for a in self.agents]

    # ── Provider helpers ────────────────────────────────────

    def get_api_key(self, model: str) -> str | None:
        """Get API key for model name. Falls back to first available."""
        model_name = model.lower()

        keyword_map: dict[str, ProviderConfig] = {
            "bedrock": self.providers.bedrock,
            "anthropic": self.providers.anthropic,
            "claude": self.providers.anthropic,
            "openai": self.providers.openai,
            "gpt": self.providers.openai,
            "openrouter": self.providers.openrouter,
            "deepseek": self.providers.deepseek,
            "groq": self.providers.groq,
            "gemini": self.providers.gemini,
        }
        for keyword, provider in keyword_map.items():
            if keyword in model_name and provider.api_key:
                return provider.api_key

        # Fallback: first key found
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and p.api_key:
                return p.api_key
        return None

    def get_api_base(self, model: str) -> str | None:
        """Get API base URL for model name."""
        model_name = model.lower()
        if "openrouter" in model_name:
            return self.providers.openrouter.api_base or "https://openrouter.ai/api/v1"
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and name in model_name and p.api_base:
                return p.api_base
        return None
