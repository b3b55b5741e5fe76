"""Provider registry: metadata for known providers and the adapter factory.

Each ProviderSpec names the wire protocol a provider speaks and its default
endpoint. ``create_adapter`` turns a ModelProfile into the matching
ModelAdapter.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

import httpx
from loguru import logger
from pydantic import SecretStr

from relay.config.schema import HttpConfig, ModelProfile
from relay.providers.exceptions import ConfigError
from relay.providers.types import ModelAdapter

DEMO_API_KEY = "demo"


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    """Metadata for a single LLM provider."""

    name: str
    display_name: str
    protocol: str
    api_base: str
    api_key_env: str = ""
    stream_usage: bool = True


PROVIDERS: tuple[ProviderSpec, ...] = (
    ProviderSpec(
        name="anthropic",
        display_name="Anthropic",
        protocol="anthropic",
        api_base="https://api.anthropic.com",
        api_key_env="ANTHROPIC_API_KEY",
    ),
    ProviderSpec(
        name="openai",
        display_name="OpenAI",
        protocol="openai",
        api_base="https://api.openai.com/v1",
        api_key_env="OPENAI_API_KEY",
    ),
    # Self-hosted or third-party OpenAI-compatible endpoint; base_url is required
    ProviderSpec(
        name="custom_openai",
        display_name="Custom OpenAI-compatible",
        protocol="openai",
        api_base="",
        stream_usage=False,
    ),
    ProviderSpec(
        name="gemini",
        display_name="Google Gemini",
        protocol="gemini",
        api_base="https://generativelanguage.googleapis.com",
        api_key_env="GEMINI_API_KEY",
    ),
    ProviderSpec(
        name="deepseek",
        display_name="DeepSeek",
        protocol="openai",
        api_base="https://api.deepseek.com/v1",
        api_key_env="DEEPSEEK_API_KEY",
    ),
    ProviderSpec(
        name="qwen",
        display_name="Qwen (DashScope)",
        protocol="openai",
        api_base="https://dashscope.aliyuncs.com/compatible-mode/v1",
        api_key_env="DASHSCOPE_API_KEY",
    ),
    ProviderSpec(
        name="kimi",
        display_name="Moonshot / Kimi",
        protocol="openai",
        api_base="https://api.moonshot.cn/v1",
        api_key_env="MOONSHOT_API_KEY",
    ),
    ProviderSpec(
        name="glm",
        display_name="Zhipu GLM",
        protocol="openai",
        api_base="https://open.bigmodel.cn/api/paas/v4",
        api_key_env="ZHIPU_API_KEY",
        stream_usage=False,
    ),
    ProviderSpec(
        name="minimax",
        display_name="MiniMax",
        protocol="openai",
        api_base="https://api.minimax.chat/v1",
        api_key_env="MINIMAX_API_KEY",
        stream_usage=False,
    ),
    ProviderSpec(
        name="demo",
        display_name="Demo (offline)",
        protocol="demo",
        api_base="",
    ),
)

_SPEC_BY_NAME: dict[str, ProviderSpec] = {s.name: s for s in PROVIDERS}


class ProviderRegistry:
    """Lookup provider metadata."""

    @staticmethod
    def get_spec(name: str) -> ProviderSpec | None:
        return _SPEC_BY_NAME.get(name.strip().lower())

    @staticmethod
    def list_providers() -> list[ProviderSpec]:
        return list(PROVIDERS)


def is_demo_profile(profile: ModelProfile) -> bool:
    return profile.provider == "demo" or profile.api_key.get_secret_value() == DEMO_API_KEY


def _with_env_api_key(profile: ModelProfile, spec: ProviderSpec) -> ModelProfile:
    """Fill a missing API key from the provider's environment variable."""
    if profile.api_key.get_secret_value() or not spec.api_key_env:
        return profile
    env_key = os.environ.get(spec.api_key_env, "")
    if not env_key:
        return profile
    logger.debug("Using {} for profile {}", spec.api_key_env, profile.display_name)
    return profile.model_copy(update={"api_key": SecretStr(env_key)})


def create_adapter(
    profile: ModelProfile,
    *,
    http: HttpConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ModelAdapter:
    """Instantiate the adapter for a model profile.

    Raises ConfigError for an unknown provider or a provider that needs a
    base URL the profile does not supply.
    """
    if is_demo_profile(profile):
        from relay.providers.demo import DemoModelAdapter

        logger.info("Creating demo adapter for {}", profile.display_name or "demo")
        return DemoModelAdapter(profile)

    spec = ProviderRegistry.get_spec(profile.provider)
    if spec is None:
        known = ", ".join(s.name for s in PROVIDERS)
        raise ConfigError(
            f"Unknown provider '{profile.provider}' for model {profile.model_name}",
            provider=profile.provider,
            hint=f"Use one of: {known}.",
        )

    api_base = profile.base_url or spec.api_base
    if not api_base:
        raise ConfigError(
            f"[{spec.name}] No base_url configured for model {profile.model_name}",
            provider=spec.name,
            hint="Set base_url on this model profile in ~/.relay/config.json.",
        )

    profile = _with_env_api_key(profile, spec)
    logger.info(
        "Creating adapter: {} (model={}, base={})",
        spec.display_name,
        profile.model_name,
        api_base,
    )

    if spec.protocol == "anthropic":
        from relay.providers.anthropic_adapter import AnthropicAdapter

        return AnthropicAdapter(
            profile, provider_name=spec.name, api_base=api_base, http=http, transport=transport
        )

    if spec.protocol == "gemini":
        from relay.providers.gemini_adapter import GeminiAdapter

        return GeminiAdapter(
            profile, provider_name=spec.name, api_base=api_base, http=http, transport=transport
        )

    from relay.providers.openai_adapter import OpenAICompatAdapter

    return OpenAICompatAdapter(
        profile,
        provider_name=spec.name,
        api_base=api_base,
        http=http,
        transport=transport,
        stream_usage=spec.stream_usage,
    )
