"""Model selection: pointer resolution plus a per-model adapter cache.

The selector is the only place adapters are constructed at runtime. Adapters
are cached by model name and shared by every turn that resolves to that
model; editing or removing a profile drops its cache entry so the next
lookup builds a fresh adapter from the new profile.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import httpx
from loguru import logger

from relay.config.schema import HttpConfig, ModelProfile
from relay.config.store import ProfileStore
from relay.providers.exceptions import ProviderError
from relay.providers.registry import create_adapter
from relay.providers.types import ModelAdapter

AdapterFactory = Callable[..., ModelAdapter]


class ModelSelector:
    """Resolve model pointers and hand out cached adapters."""

    def __init__(
        self,
        store: ProfileStore,
        *,
        http: HttpConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        adapter_factory: AdapterFactory = create_adapter,
    ) -> None:
        self._store = store
        self._http = http
        self._transport = transport
        self._factory = adapter_factory
        self._cache: dict[str, ModelAdapter] = {}
        # Evicted adapters may still be serving an in-flight query; they are
        # closed on aclose() rather than at eviction time.
        self._retired: list[ModelAdapter] = []
        self._lock = threading.Lock()

    @property
    def store(self) -> ProfileStore:
        return self._store

    def resolve(self, pointer: str) -> str | None:
        """Map a pointer (main, task, reasoning, quick) to a model name."""
        return self._store.resolve_pointer(pointer)

    def get_adapter(self, model_name: str) -> ModelAdapter | None:
        """Return the cached adapter for ``model_name``, building it on first use.

        Returns None (and logs why) when the profile is missing, inactive, or
        the adapter cannot be constructed.
        """
        with self._lock:
            adapter = self._cache.get(model_name)
            if adapter is not None:
                return adapter

            profile = self._store.find_profile(model_name)
            if profile is None:
                logger.warning("No model profile found for {}", model_name)
                return None
            if not profile.is_active:
                logger.warning("Model profile {} is inactive", profile.display_name)
                return None

            try:
                adapter = self._factory(profile, http=self._http, transport=self._transport)
            except (ProviderError, ValueError) as exc:
                logger.error("Failed to create adapter for {}: {}", model_name, exc)
                return None

            self._cache[model_name] = adapter
            logger.debug("Cached {} adapter for {}", adapter.provider_name, model_name)
            return adapter

    def get_adapter_for_pointer(self, pointer: str) -> ModelAdapter | None:
        model_name = self.resolve(pointer)
        if model_name is None:
            return None
        return self.get_adapter(model_name)

    def update_profile(self, profile: ModelProfile) -> None:
        self._store.upsert_profile(profile)
        self.invalidate(profile.model_name)

    def add_profile(self, profile: ModelProfile) -> None:
        if self._store.find_profile(profile.model_name) is not None:
            logger.info("Replacing existing model profile {}", profile.model_name)
        self.update_profile(profile)

    def remove_profile(self, model_name: str) -> bool:
        removed = self._store.remove_profile(model_name)
        self.invalidate(model_name)
        return removed

    def set_pointer(self, pointer: str, model_name: str) -> bool:
        return self._store.set_pointer(pointer, model_name)

    def invalidate(self, model_name: str) -> None:
        with self._lock:
            adapter = self._cache.pop(model_name, None)
            if adapter is not None:
                self._retired.append(adapter)
                logger.debug("Invalidated cached adapter for {}", model_name)

    def clear_cache(self) -> None:
        with self._lock:
            self._retired.extend(self._cache.values())
            self._cache.clear()

    def cached_models(self) -> list[str]:
        with self._lock:
            return list(self._cache)

    async def aclose(self) -> None:
        """Close the HTTP clients of every adapter this selector created."""
        with self._lock:
            adapters = [*self._cache.values(), *self._retired]
            self._cache.clear()
            self._retired.clear()
        for adapter in adapters:
            await adapter.close()
