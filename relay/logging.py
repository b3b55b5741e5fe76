"""Logging configuration for relay using loguru.

Call `setup_logging()` once at startup. Provides:
- Console output on stderr with configurable verbosity
- Rotating file log at ~/.relay/logs/relay.log

Both sinks pass through a patcher that redacts API-key shaped strings,
since provider error bodies sometimes echo the credential back.
"""

from __future__ import annotations

import re
import sys
from pathlib import Path

from loguru import logger

_CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - {message}"
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"sk-(?:ant-)?[A-Za-z0-9_\-]{20,}"), "[REDACTED_API_KEY]"),
    (re.compile(r"AIza[0-9A-Za-z_\-]{30,}"), "[REDACTED_API_KEY]"),
    (re.compile(r"(Bearer\s+)[A-Za-z0-9\-_.~+/]{20,}=*", re.IGNORECASE), r"\1[REDACTED_TOKEN]"),
]


def redact_secrets(text: str) -> str:
    """Replace high-confidence credential patterns in ``text``."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _redacting_patcher(record: dict) -> None:
    record["message"] = redact_secrets(record["message"])


def get_log_dir() -> Path:
    return Path.home() / ".relay" / "logs"


def setup_logging(
    verbose: bool = False,
    quiet: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Configure loguru sinks for console and file output.

    Args:
        verbose: Show DEBUG-level messages on console.
        quiet: Suppress console output below WARNING.
        log_dir: Directory for log files. Defaults to ~/.relay/logs.
    """
    logger.remove()
    logger.configure(patcher=_redacting_patcher)

    if quiet:
        console_level = "WARNING"
    elif verbose:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        format=_CONSOLE_FORMAT,
        colorize=True,
    )

    log_path = log_dir or get_log_dir()
    log_path.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_path / "relay.log",
        level="DEBUG",
        format=_FILE_FORMAT,
        rotation="10 MB",
        retention=5,
        encoding="utf-8",
        enqueue=True,
    )
