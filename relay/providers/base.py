"""Shared streaming transport for HTTP-backed protocol adapters.

HttpModelAdapter owns configuration and a pooled httpx.AsyncClient and
nothing else. Each query builds its own StreamParser, so one cached adapter
can serve any number of concurrent queries.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
from loguru import logger

from relay.config.schema import HttpConfig, ModelProfile
from relay.providers.exceptions import (
    ConfigError,
    ProtocolError,
    ProviderConnectionError,
    TransportError,
    raise_for_status,
)
from relay.providers.stream import StreamParser, iter_sse_data
from relay.providers.types import (
    Message,
    ModelAdapter,
    StreamChunk,
    ToolSpec,
    ValidationResult,
)


class HttpModelAdapter(ModelAdapter):
    """Base class for adapters that stream SSE over a single HTTP POST.

    Subclasses describe the vendor: request path, headers, payload, and the
    StreamParser that understands its frames.
    """

    def __init__(
        self,
        profile: ModelProfile,
        *,
        provider_name: str,
        api_base: str,
        http: HttpConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._profile = profile
        self._provider_name = provider_name
        self._api_base = api_base.rstrip("/")
        self._http = http or HttpConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def provider_name(self) -> str:
        return self._provider_name

    @property
    def profile(self) -> ModelProfile:
        return self._profile

    @property
    def model_name(self) -> str:
        return self._profile.model_name

    @property
    def api_key(self) -> str:
        return self._profile.api_key.get_secret_value()

    def validate(self) -> ValidationResult:
        if not self.api_key:
            return ValidationResult.failure("API key is not configured")
        if not self.model_name:
            return ValidationResult.failure("Model name is not configured")
        return ValidationResult.success()

    def query(
        self,
        messages: Sequence[Message],
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        result = self.validate()
        if not result.valid:
            raise ConfigError(
                f"[{self._provider_name}] {result.error_message} "
                f"(profile: {self._profile.display_name or '<unnamed>'})",
                provider=self._provider_name,
                hint="Set api_key and model_name on this model profile in ~/.relay/config.json.",
            )
        return self._stream(list(messages), system_prompt, list(tools or ()), dict(options or {}))

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._api_base,
                headers={"Content-Type": "application/json"},
                timeout=httpx.Timeout(
                    self._http.read_timeout,
                    connect=self._http.connect_timeout,
                ),
                limits=httpx.Limits(
                    max_connections=self._http.max_connections,
                    max_keepalive_connections=self._http.max_keepalive_connections,
                ),
                transport=self._transport,
            )
        return self._client

    async def _stream(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[ToolSpec],
        options: dict[str, Any],
    ) -> AsyncIterator[StreamChunk]:
        parser = self._new_parser()
        payload = self._build_payload(messages, system_prompt, tools, options)
        client = await self._get_client()

        logger.info(
            "{} query: model={}, messages={}, tools={}",
            self._provider_name,
            self.model_name,
            len(messages),
            len(tools),
        )

        try:
            async with client.stream(
                "POST",
                self._endpoint(),
                json=payload,
                headers=self._headers(),
                params=self._params(),
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise_for_status(
                        response.status_code,
                        self._provider_name,
                        self._api_base,
                        self.model_name,
                        raw_message=body,
                    )

                async for data in iter_sse_data(response.aiter_lines()):
                    try:
                        chunks = parser.feed(data)
                    except ProtocolError as exc:
                        logger.warning("Skipping malformed frame: {}", exc)
                        continue
                    for chunk in chunks:
                        yield chunk
                    if parser.done:
                        break
        except httpx.ConnectError as exc:
            raise ProviderConnectionError(
                f"[{self._provider_name}] Cannot connect to {self._api_base}",
                provider=self._provider_name,
                hint="Check that the base_url is correct and the service is reachable.",
            ) from exc
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"[{self._provider_name}] Request timed out waiting for {self.model_name}.",
                provider=self._provider_name,
                hint="The model may be slow or overloaded. Try again or raise http.read_timeout.",
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"[{self._provider_name}] HTTP error while streaming from {self.model_name}: {exc}",
                provider=self._provider_name,
            ) from exc

        if not parser.done:
            if parser.accumulator.is_empty:
                logger.warning(
                    "{} stream for {} ended with no output; completing with empty content",
                    self._provider_name,
                    self.model_name,
                )
            else:
                logger.debug("{} stream ended without a terminal event", self._provider_name)
            for chunk in parser.finish():
                yield chunk

    async def close(self) -> None:
        """Close the underlying HTTP client. Call on shutdown."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _params(self) -> dict[str, str] | None:
        return None

    def _resolve_flag(self, override: bool | None, default: bool) -> bool:
        return default if override is None else override

    @abstractmethod
    def _endpoint(self) -> str:
        """Request path relative to the API base."""
        ...

    @abstractmethod
    def _headers(self) -> dict[str, str]:
        ...

    @abstractmethod
    def _build_payload(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[ToolSpec],
        options: dict[str, Any],
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    def _new_parser(self) -> StreamParser:
        """Return a fresh parser for exactly one query."""
        ...
