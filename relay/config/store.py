"""Model profile store backed by RelayConfig.

Implements the profile-store contract the ModelSelector consumes
(``find_profile`` / ``resolve_pointer``) and the mutations behind profile
editing. When constructed with a path, every mutation is saved back to disk.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol

from loguru import logger

from relay.config.loader import save_config
from relay.config.schema import POINTER_NAMES, ModelProfile, RelayConfig


class ProfileStore(Protocol):
    """What the selector needs from wherever profiles live."""

    def find_profile(self, model_name: str) -> ModelProfile | None: ...

    def resolve_pointer(self, pointer: str) -> str | None: ...

    def upsert_profile(self, profile: ModelProfile) -> None: ...

    def remove_profile(self, model_name: str) -> bool: ...

    def set_pointer(self, pointer: str, model_name: str) -> bool: ...


class ConfigProfileStore:
    """ProfileStore over the ``model_profiles`` and ``model_pointers`` config sections."""

    def __init__(self, config: RelayConfig, *, path: Path | None = None) -> None:
        self._config = config
        self._path = path
        self._lock = threading.Lock()

    @property
    def config(self) -> RelayConfig:
        return self._config

    def list_profiles(self) -> list[ModelProfile]:
        with self._lock:
            return list(self._config.model_profiles)

    def find_profile(self, model_name: str) -> ModelProfile | None:
        with self._lock:
            for profile in self._config.model_profiles:
                if profile.model_name == model_name:
                    return profile
        return None

    def resolve_pointer(self, pointer: str) -> str | None:
        key = pointer.strip().lower()
        if key not in POINTER_NAMES:
            logger.warning("Unknown model pointer: {}", pointer)
            return None
        model_name = getattr(self._config.model_pointers, key)
        if not model_name:
            logger.warning("Model pointer '{}' is not configured", key)
            return None
        return model_name

    def upsert_profile(self, profile: ModelProfile) -> None:
        with self._lock:
            kept = [p for p in self._config.model_profiles if p.model_name != profile.model_name]
            kept.append(profile)
            self._config.model_profiles = kept
        self._persist()

    def remove_profile(self, model_name: str) -> bool:
        with self._lock:
            before = len(self._config.model_profiles)
            self._config.model_profiles = [
                p for p in self._config.model_profiles if p.model_name != model_name
            ]
            removed = len(self._config.model_profiles) != before
        if removed:
            self._persist()
        return removed

    def set_pointer(self, pointer: str, model_name: str) -> bool:
        key = pointer.strip().lower()
        if key not in POINTER_NAMES:
            logger.warning("Unknown model pointer: {}", pointer)
            return False
        setattr(self._config.model_pointers, key, model_name)
        self._persist()
        return True

    def _persist(self) -> None:
        if self._path is None:
            return
        save_config(self._config, self._path)
        logger.debug("Saved model profiles to {}", self._path)
