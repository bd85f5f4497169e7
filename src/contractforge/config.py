"""Build option configuration and validation helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass

from contractforge.errors import ConfigurationError

DEFAULT_EXEC_TIMEOUT = 1800.0
DEFAULT_MAX_DIAGNOSTIC_CHARS = 16_000


@dataclass(frozen=True, slots=True)
class BuildOptions:
    locked: bool = False
    exec_timeout: float | None = DEFAULT_EXEC_TIMEOUT
    max_diagnostic_chars: int = DEFAULT_MAX_DIAGNOSTIC_CHARS
    workers: int | None = None
    run_as_host_user: bool = True

    def __post_init__(self) -> None:
        if self.exec_timeout is not None and self.exec_timeout <= 0:
            raise ConfigurationError(
                "Tool timeout must be positive.",
                hint="Pass a positive number of seconds or omit the timeout.",
                context={"exec_timeout": str(self.exec_timeout)},
            )
        if self.max_diagnostic_chars < 256:
            raise ConfigurationError(
                "Diagnostic bound is too small to be useful.",
                context={"max_diagnostic_chars": str(self.max_diagnostic_chars)},
            )
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(
                "Worker count must be at least 1.",
                context={"workers": str(self.workers)},
            )


def worker_count(options: BuildOptions, jobs: int) -> int:
    """Size the per-artifact pool to host parallelism, never above the job count."""
    limit = options.workers or os.cpu_count() or 1
    return max(1, min(limit, jobs))


def bounded(text: str, limit: int) -> str:
    """Keep the tail of *text*; tool errors are reported last."""
    if len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"[... {dropped} characters truncated ...]\n{text[-limit:]}"
