"""Pydantic configuration models for relay.

All config is loaded from ~/.relay/config.json and can be overridden
via RELAY_ prefixed environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_serializer, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.main import JsonConfigSettingsSource

POINTER_NAMES: tuple[str, ...] = ("main", "task", "reasoning", "quick")


class ModelProfile(BaseModel):
    """Connection details and limits for one concrete model.

    Profiles are immutable once loaded. Editing a profile means replacing
    it through the ModelSelector, which also drops the cached adapter.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    name: str = Field(default="", description="Display name. Defaults to model_name.")
    provider: str = Field(
        default="openai",
        description="Provider identity: anthropic, openai, custom_openai, gemini, "
        "deepseek, qwen, kimi, glm, minimax, or demo.",
    )
    model_name: str = Field(default="", description="Model identifier sent to the provider.")
    api_key: SecretStr = SecretStr("")
    base_url: str = Field(default="", description="API base URL. Empty = provider default.")
    max_tokens: int = Field(
        default=4096,
        ge=0,
        le=200_000,
        description="Maximum tokens the model can generate per response. 0 = provider default.",
    )
    context_length: int = Field(default=128_000, ge=0)
    supports_vision: bool | None = Field(
        default=None, description="Override the adapter's vision capability guess."
    )
    supports_thinking: bool | None = Field(
        default=None, description="Override the adapter's thinking capability guess."
    )
    supports_tools: bool | None = Field(
        default=None, description="Override the adapter's tool-calling capability guess."
    )
    is_active: bool = True

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_serializer("api_key", when_used="json")
    @staticmethod
    def _serialize_api_key(v: SecretStr) -> str:
        return v.get_secret_value()

    @property
    def display_name(self) -> str:
        return self.name or self.model_name


class ModelPointers(BaseModel):
    """Logical model roles mapped to profile model names."""

    main: str = ""
    task: str = ""
    reasoning: str = ""
    quick: str = ""


class AgentDefaults(BaseModel):
    """Default turn parameters applied to every turn unless overridden."""

    pointer: str = Field(
        default="main",
        description="Model pointer used when an agent has no model override.",
    )
    temperature: float | None = Field(
        default=None,
        ge=0.0,
        le=2.0,
        description="Sampling temperature. None = provider default.",
    )
    max_tool_rounds: int = Field(
        default=0,
        ge=0,
        description="Maximum tool rounds per turn before the turn fails. 0 = unlimited (default).",
    )
    system_prompt: str = Field(
        default="You are a helpful assistant.",
        description="System prompt used when the agent does not define one.",
    )


class AgentProfile(BaseModel):
    """Named agent with its own system prompt, tool allow-list, and model.

    ``tools`` is either the wildcard "*" (every tool) or an explicit list of
    tool names. Names not on the list are denied.
    """

    system_prompt: str = ""
    tools: list[str] | str = Field(default="*")
    model: str = Field(default="", description="Model name override. Empty = use the pointer.")

    @field_validator("tools")
    @classmethod
    def _check_wildcard(cls, v: list[str] | str) -> list[str] | str:
        if isinstance(v, str) and v != "*":
            raise ValueError("tools must be '*' or a list of tool names")
        return v


class AgentsConfig(BaseModel):
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    profiles: dict[str, AgentProfile] = Field(default_factory=dict)


class HttpConfig(BaseModel):
    """Timeouts and pool limits for the adapters' HTTP clients."""

    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=120.0, gt=0)
    max_connections: int = Field(default=10, ge=1, le=1000)
    max_keepalive_connections: int = Field(default=5, ge=0, le=1000)


class RelayConfig(BaseSettings):
    """Root configuration for relay.

    Loaded from ~/.relay/config.json with RELAY_ env var overrides.
    Uses JsonConfigSettingsSource so pydantic-settings reads the JSON file
    and merges it with environment variable overrides.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_nested_delimiter="__",
        json_file=Path("~/.relay/config.json").expanduser(),
        json_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    model_profiles: list[ModelProfile] = Field(default_factory=list)
    model_pointers: ModelPointers = Field(default_factory=ModelPointers)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Enable JSON file loading alongside env vars and init kwargs."""
        return (
            init_settings,
            env_settings,
            JsonConfigSettingsSource(settings_cls),
        )
