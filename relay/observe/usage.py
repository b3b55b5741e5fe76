"""Per-model token usage ledger.

Thread-safe accumulation of TokenUsage keyed by model name. Totals only
ever grow: negative inputs are clamped to zero. Reads hand back copies so
callers can never mutate the running totals.
"""

from __future__ import annotations

import threading

from loguru import logger

from relay.providers.types import TokenUsage


def _clamped(usage: TokenUsage) -> TokenUsage:
    return TokenUsage(
        input_tokens=max(usage.input_tokens, 0),
        output_tokens=max(usage.output_tokens, 0),
        cache_read_tokens=max(usage.cache_read_tokens, 0),
        cache_creation_tokens=max(usage.cache_creation_tokens, 0),
    )


class UsageLedger:
    """Running per-model token totals.

    ``record`` is meant to be called once per completed query. All methods
    are safe to call from any thread or asyncio task.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals: dict[str, TokenUsage] = {}
        self._requests: dict[str, int] = {}

    def record(self, model_name: str, usage: TokenUsage) -> None:
        usage = _clamped(usage)
        with self._lock:
            self._totals[model_name] = self._totals.get(model_name, TokenUsage()) + usage
            self._requests[model_name] = self._requests.get(model_name, 0) + 1
        logger.debug(
            "Usage recorded for {}: +{} in, +{} out",
            model_name,
            usage.input_tokens,
            usage.output_tokens,
        )

    def get(self, model_name: str) -> TokenUsage:
        with self._lock:
            return self._totals.get(model_name, TokenUsage())

    def request_count(self, model_name: str) -> int:
        with self._lock:
            return self._requests.get(model_name, 0)

    def snapshot(self) -> dict[str, TokenUsage]:
        """Return a copy of the per-model totals."""
        with self._lock:
            return dict(self._totals)

    def total(self) -> TokenUsage:
        with self._lock:
            result = TokenUsage()
            for usage in self._totals.values():
                result = result + usage
            return result
