"""Observability module: token usage accounting for relay."""

from relay.observe.usage import UsageLedger

__all__ = ["UsageLedger"]
